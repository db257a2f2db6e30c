"""
Configuration loading and validation for the flash-loan arbitrage engine.

Operator settings come from a YAML file; secrets and RPC URLs come from the
environment (the CLI loads a .env file first). The chain registry is built
in and can be extended or overridden from the YAML `chains:` block.
"""

import os
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from .adapters.v3 import DEFAULT_FEE_TIERS
from .exceptions import FlashArbError
from .relay import FLASHBOTS_RELAY_URL


class ConfigError(FlashArbError):
    """Raised when config is invalid or missing required fields."""

    pass


UNISWAP_V3_FACTORY = "0x1F98431c8aD98523631AE4a59f267346ea31F984"
SUSHISWAP_FACTORY_MAINNET = "0xC0AEe478e3658e2610c5F7A4A2E1777cE9e4f2Ac"
SUSHISWAP_FACTORY = "0xc35DADB65012eC5796536bD9864eD8773aBc74C4"

DEFAULT_CHAINS: Dict[str, Dict[str, Any]] = {
    "ethereum": {
        "chain_id": 1,
        "name": "Ethereum Mainnet",
        "rpc_env": "RPC_ETHEREUM",
        "uniswap_v3_factory": UNISWAP_V3_FACTORY,
        "v2_factory": SUSHISWAP_FACTORY_MAINNET,
        "flashbots": True,
        "tokens": {
            "WETH": {"address": "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2", "decimals": 18},
            "USDC": {"address": "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48", "decimals": 6},
            "USDT": {"address": "0xdAC17F958D2ee523a2206206994597C13D831ec7", "decimals": 6},
            "DAI": {"address": "0x6B175474E89094C44Da98b954EedeAC495271d0F", "decimals": 18},
        },
    },
    "polygon": {
        "chain_id": 137,
        "name": "Polygon",
        "rpc_env": "RPC_POLYGON",
        "uniswap_v3_factory": UNISWAP_V3_FACTORY,
        "v2_factory": SUSHISWAP_FACTORY,
        "flashbots": False,
        "tokens": {
            "WMATIC": {"address": "0x0d500B1d8E8eF31E21C99d1Db9A6444d3ADf1270", "decimals": 18},
            "USDC": {"address": "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174", "decimals": 6},
            "USDT": {"address": "0xc2132D05D31c914a87C6611C10748AEb04B58e8F", "decimals": 6},
            "DAI": {"address": "0x8f3Cf7ad23Cd3CaDbD9735AFf958023239c6A063", "decimals": 18},
        },
    },
    "arbitrum": {
        "chain_id": 42161,
        "name": "Arbitrum One",
        "rpc_env": "RPC_ARBITRUM",
        "uniswap_v3_factory": UNISWAP_V3_FACTORY,
        "v2_factory": SUSHISWAP_FACTORY,
        "flashbots": False,
        "tokens": {
            "WETH": {"address": "0x82aF49447D8a07e3bd95BD0d56f35241523fBab1", "decimals": 18},
            "USDC": {"address": "0xFF970A61A04b1cA14834A43f5dE4533eBDDB5CC8", "decimals": 6},
            "USDT": {"address": "0xFd086bC7CD5C481DCC9C85ebE478A1C0b69FCbb9", "decimals": 6},
            "DAI": {"address": "0xDA10009cBd5D07dd0CeCc66161FC93D7c9000da1", "decimals": 18},
        },
    },
    "bsc": {
        "chain_id": 56,
        "name": "BNB Smart Chain",
        "rpc_env": "RPC_BSC",
        # PancakeSwap V3
        "uniswap_v3_factory": "0x0BFbCF9fa4f9C56B0F40a671Ad40E0805A091865",
        "v2_factory": SUSHISWAP_FACTORY,
        "flashbots": False,
        "tokens": {
            "WBNB": {"address": "0xbb4CdB9CBd36B01bD1cBaEBF2De08d9173bc095c", "decimals": 18},
            "USDC": {"address": "0x8AC76a51cc950d9822D68b83fE1Ad97B32Cd580d", "decimals": 18},
            "USDT": {"address": "0x55d398326f99059fF775485246999027B3197955", "decimals": 18},
            "DAI": {"address": "0x1AF3F329e8BE154074D8769D1FFa4eE058B1DBc3", "decimals": 18},
        },
    },
}


class ChainConfig:
    """
    One chain's venue and token registry.

    Attributes:
        key: Registry key (e.g. "ethereum")
        chain_id: EVM chain id
        rpc_env: Environment variable holding the RPC URL
        uniswap_v3_factory: Concentrated-liquidity factory
        v2_factory: Constant-product factory
        flashbots: True when bundles can go through the private relay
        tokens: Dict of {symbol -> {address, decimals}}
        stableswap_pools: List of {name, address, coins}
    """

    def __init__(self, key: str, chain_dict: Dict[str, Any]):
        self.key = key
        self.name: str = chain_dict.get("name", key)
        self.chain_id: int = _get_required(chain_dict, "chain_id", int, key)
        self.rpc_env: str = _get_required(chain_dict, "rpc_env", str, key)
        self.uniswap_v3_factory: Optional[str] = chain_dict.get("uniswap_v3_factory")
        self.v2_factory: Optional[str] = chain_dict.get("v2_factory")
        self.flashbots: bool = bool(chain_dict.get("flashbots", False))
        self.tokens = _parse_tokens(chain_dict.get("tokens", {}), key)
        self.stableswap_pools = _parse_stableswap_pools(
            chain_dict.get("stableswap_pools", []), key
        )

        if not (self.uniswap_v3_factory or self.v2_factory or self.stableswap_pools):
            raise ConfigError(f"Chain '{key}' has no venues configured")

    def token(self, symbol: str) -> Dict[str, Any]:
        if symbol not in self.tokens:
            raise ConfigError(f"Token '{symbol}' not configured on chain '{self.key}'")
        return self.tokens[symbol]

    def token_decimals(self) -> Dict[str, int]:
        """Address -> decimals lookup for the planner."""
        return {info["address"]: info["decimals"] for info in self.tokens.values()}


def _get_required(d: Dict, key: str, expected_type: type, where: str = "") -> Any:
    """Get required config field with type validation."""
    prefix = f"{where}." if where else ""
    if key not in d:
        raise ConfigError(f"Missing required config field: {prefix}{key}")
    val = d[key]
    # bool is an int subclass; reject True where a chain id is expected
    if not isinstance(val, expected_type) or (
        isinstance(val, bool) and expected_type is not bool
    ):
        raise ConfigError(
            f"Config field '{prefix}{key}' must be {expected_type.__name__}, "
            f"got {type(val).__name__}"
        )
    return val


def _parse_tokens(tokens_raw: Any, chain: str) -> Dict[str, Dict[str, Any]]:
    if not isinstance(tokens_raw, dict):
        raise ConfigError(f"Chain '{chain}' tokens must be a dict")
    tokens = {}
    for symbol, info in tokens_raw.items():
        if not isinstance(info, dict):
            raise ConfigError(f"Token '{symbol}' config must be a dict")
        if "address" not in info:
            raise ConfigError(f"Token '{symbol}' missing 'address'")
        if "decimals" not in info:
            raise ConfigError(f"Token '{symbol}' missing 'decimals'")

        tokens[symbol] = {
            "address": info["address"],
            "decimals": int(info["decimals"]),
        }
    return tokens


def _parse_stableswap_pools(pools_raw: Any, chain: str) -> List[Dict[str, Any]]:
    if not isinstance(pools_raw, list):
        raise ConfigError(f"Chain '{chain}' stableswap_pools must be a list")
    pools = []
    for i, pool in enumerate(pools_raw):
        if not isinstance(pool, dict):
            raise ConfigError(f"Stableswap pool {i} must be a dict")
        name = pool.get("name")
        address = pool.get("address")
        coins = pool.get("coins")
        if not all([name, address, coins]):
            raise ConfigError(
                f"Stableswap pool {i} missing required fields (name, address, coins)"
            )
        if not isinstance(coins, list) or len(coins) < 2:
            raise ConfigError(f"Stableswap pool '{name}' needs at least two coins")
        pools.append({"name": name, "address": address, "coins": list(coins)})
    return pools


def _merge_chains(user_chains: Any) -> Dict[str, Dict[str, Any]]:
    """Overlay user chain entries on the built-in registry, key by key."""
    if user_chains is None:
        user_chains = {}
    if not isinstance(user_chains, dict):
        raise ConfigError("chains must be a dict")

    merged = {key: dict(entry) for key, entry in DEFAULT_CHAINS.items()}
    for key, entry in user_chains.items():
        if not isinstance(entry, dict):
            raise ConfigError(f"Chain '{key}' config must be a dict")
        base = merged.get(key, {})
        combined = {**base, **entry}
        if "tokens" in entry and "tokens" in base:
            combined["tokens"] = {**base["tokens"], **entry["tokens"]}
        merged[key] = combined
    return merged


class FlashArbConfig:
    """
    Parsed and validated engine configuration.

    Attributes:
        network: Selected chain key
        chain: ChainConfig of the selected network
        pairs: List of (symbolA, symbolB); prices are symbolB per symbolA
        scan_interval_sec: Seconds between scan ticks
        min_profit_bps: Minimum spread to report an opportunity
        loan_notional: Loan size in whole units of the borrowed token
        trade_live: If False, opportunities are only logged and dry-run
        fee_tiers: Concentrated-liquidity fee tiers to quote
        gas_buffer_pct: Headroom on top of the gas estimate
        max_slippage_bps: Per-leg minimum-output tolerance; 0 disables
            minimum outputs
        once: If True, run a single scan and exit
        metrics_port: Port for the Prometheus endpoint, None to disable
        relay_url: Private relay endpoint
        rpc_url: Resolved from the chain's rpc_env variable
        private_key: Operator key (PRIVATE_KEY)
        contract_address: Settlement contract (ARB_CONTRACT_ADDRESS)
    """

    def __init__(self, config_dict: Dict[str, Any], env: Optional[Mapping[str, str]] = None):
        env = os.environ if env is None else env

        self.network: str = _get_required(config_dict, "network", str)
        chains = _merge_chains(config_dict.get("chains"))
        if self.network not in chains:
            raise ConfigError(
                f"Unknown network '{self.network}' (known: {', '.join(sorted(chains))})"
            )
        self.chain = ChainConfig(self.network, chains[self.network])

        self.pairs: List[Tuple[str, str]] = self._parse_pairs(config_dict.get("pairs"))

        self.scan_interval_sec: float = float(config_dict.get("scan_interval_sec", 2.0))
        if self.scan_interval_sec <= 0:
            raise ConfigError("scan_interval_sec must be positive")

        self.min_profit_bps: int = int(config_dict.get("min_profit_bps", 15))
        if self.min_profit_bps < 0:
            raise ConfigError("min_profit_bps must be non-negative")

        try:
            self.loan_notional: Decimal = Decimal(str(config_dict.get("loan_notional", 10000)))
        except InvalidOperation as e:
            raise ConfigError(f"loan_notional is not a number: {e}") from e
        if self.loan_notional <= 0:
            raise ConfigError("loan_notional must be positive")

        self.trade_live: bool = bool(config_dict.get("trade_live", False))
        self.fee_tiers: Tuple[int, ...] = tuple(
            int(f) for f in config_dict.get("fee_tiers", DEFAULT_FEE_TIERS)
        )
        self.gas_buffer_pct: int = int(config_dict.get("gas_buffer_pct", 30))
        self.max_slippage_bps: int = int(config_dict.get("max_slippage_bps", 0))
        if not 0 <= self.max_slippage_bps <= 10_000:
            raise ConfigError("max_slippage_bps must be in [0, 10000]")
        self.once: bool = bool(config_dict.get("once", False))
        self.metrics_port: Optional[int] = config_dict.get("metrics_port")
        self.relay_url: str = config_dict.get("relay_url", FLASHBOTS_RELAY_URL)

        self.rpc_url: Optional[str] = env.get(self.chain.rpc_env)
        self.private_key: Optional[str] = env.get("PRIVATE_KEY") or None
        self.contract_address: Optional[str] = env.get("ARB_CONTRACT_ADDRESS") or None

        if self.trade_live and not (self.private_key and self.contract_address):
            raise ConfigError(
                "trade_live requires PRIVATE_KEY and ARB_CONTRACT_ADDRESS in the environment"
            )

    def _parse_pairs(self, pairs_raw: Any) -> List[Tuple[str, str]]:
        if not pairs_raw:
            raise ConfigError("At least one pair must be configured")
        if not isinstance(pairs_raw, list):
            raise ConfigError("pairs must be a list")

        pairs = []
        for i, pair in enumerate(pairs_raw):
            if not isinstance(pair, (list, tuple)) or len(pair) != 2:
                raise ConfigError(f"Pair {i} must be [symbolA, symbolB]")
            a, b = pair
            if a == b:
                raise ConfigError(f"Pair {i} repeats token '{a}'")
            self.chain.token(a)
            self.chain.token(b)
            pairs.append((a, b))
        return pairs

    @property
    def slippage_bps(self) -> Optional[int]:
        """Slippage for the planner; None keeps minimum outputs at zero."""
        return self.max_slippage_bps or None

    @property
    def use_private_relay(self) -> bool:
        return self.chain.flashbots


def load_config(
    config_path: str,
    env: Optional[Mapping[str, str]] = None,
    network: Optional[str] = None,
) -> FlashArbConfig:
    """
    Load and validate config from YAML file.

    Args:
        config_path: Path to config YAML file
        env: Environment mapping (defaults to os.environ)
        network: Overrides the file's network key

    Returns:
        Validated FlashArbConfig instance

    Raises:
        ConfigError: If config invalid or file not found
    """
    if not os.path.exists(config_path):
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with open(config_path, "r") as f:
            config_dict = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML: {e}") from e

    if not isinstance(config_dict, dict):
        raise ConfigError("Config file must contain a YAML dictionary")

    if network:
        config_dict["network"] = network

    return FlashArbConfig(config_dict, env)
