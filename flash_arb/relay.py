"""
Private relay client (Flashbots-compatible bundle API).

Requests are JSON-RPC POSTs signed by a detached identity key: the
X-Flashbots-Signature header carries "<address>:<signature>", where the
signature is an EIP-191 personal sign over the hex keccak of the body.
The identity key only authenticates requests; it holds no funds.
"""

import asyncio
import json
from typing import Any, Dict, List, Optional

import aiohttp
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from web3 import Web3

from .exceptions import RelayError
from .utils import get_logger

logger = get_logger(__name__)

FLASHBOTS_RELAY_URL = "https://relay.flashbots.net"


class FlashbotsRelay:
    """
    Bundle submission and simulation against a private relay.

    Args:
        auth_account: Identity used to sign requests; a fresh random one
            when omitted
        relay_url: Relay JSON-RPC endpoint
        session: Shared aiohttp session; one is created per request when
            omitted
    """

    def __init__(
        self,
        auth_account: Optional[LocalAccount] = None,
        relay_url: str = FLASHBOTS_RELAY_URL,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 10.0,
    ):
        self.auth_account = auth_account or Account.create()
        self.relay_url = relay_url
        self._session = session
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._request_id = 0

    def signature_header(self, body: str) -> str:
        """X-Flashbots-Signature value for a request body."""
        digest = Web3.to_hex(Web3.keccak(text=body))
        signed = self.auth_account.sign_message(encode_defunct(text=digest))
        return f"{self.auth_account.address}:{Web3.to_hex(signed.signature)}"

    def _payload(self, method: str, params: List[Any]) -> str:
        self._request_id += 1
        return json.dumps(
            {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        )

    async def _post(self, method: str, params: List[Any]) -> Dict[str, Any]:
        body = self._payload(method, params)
        headers = {
            "Content-Type": "application/json",
            "X-Flashbots-Signature": self.signature_header(body),
        }

        try:
            if self._session is not None:
                return await self._send(self._session, method, body, headers)
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                return await self._send(session, method, body, headers)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise RelayError(
                f"{method} failed: {type(e).__name__}: {e}",
                status_code=None,
                endpoint=self.relay_url,
            ) from e

    async def _send(
        self, session: aiohttp.ClientSession, method: str, body: str, headers: Dict[str, str]
    ) -> Dict[str, Any]:
        async with session.post(self.relay_url, data=body, headers=headers) as response:
            if not 200 <= response.status < 300:
                text = await response.text()
                raise RelayError(
                    f"{method} failed: {response.status} {response.reason}: {text}",
                    status_code=response.status,
                    endpoint=self.relay_url,
                )
            data = await response.json(content_type=None)

        if isinstance(data, dict) and data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise RelayError(
                f"{method} rejected: {message}",
                status_code=response.status,
                endpoint=self.relay_url,
                details={"error": error},
            )

        logger.debug(f"{method} -> {data}")
        return data

    async def send_bundle(self, signed_txs: List[str], target_block: int) -> Dict[str, Any]:
        """eth_sendBundle for one target block."""
        return await self._post(
            "eth_sendBundle", [{"txs": signed_txs, "blockNumber": hex(target_block)}]
        )

    async def simulate(
        self, signed_txs: List[str], block_number: int, state_block: str = "latest"
    ) -> Dict[str, Any]:
        """eth_callBundle: execute the bundle against a state block without sending."""
        return await self._post(
            "eth_callBundle",
            [
                {
                    "txs": signed_txs,
                    "blockNumber": hex(block_number),
                    "stateBlockNumber": state_block,
                }
            ],
        )
