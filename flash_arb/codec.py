"""
ABI codec for the settlement contract's ArbParams struct.

The contract decodes a single tuple with this exact field order:

    (uint8 dex1, uint8 dex2, address tokenBorrow, address tokenIntermediate,
     uint24 fee1, uint24 fee2, address curvePool1, address curvePool2,
     int128 curveI1, int128 curveJ1, int128 curveI2, int128 curveJ2,
     uint256 amountOutMin1, uint256 amountOutMin2)

Fields a leg does not use are encoded as zero or the zero address.
"""

from typing import Tuple

from eth_abi import decode, encode
from eth_utils import to_checksum_address

from .exceptions import UnsupportedVenueError
from .types import (
    ConcentratedRoute,
    ConstantProductRoute,
    LegRoute,
    SettlementPlan,
    StableswapRoute,
    VenueKind,
)
from .utils import ZERO_ADDRESS

ARB_PARAMS_TYPE = (
    "(uint8,uint8,address,address,uint24,uint24,address,address,"
    "int128,int128,int128,int128,uint256,uint256)"
)


def _leg_fields(route: LegRoute) -> Tuple[int, int, str, int, int]:
    """(venue byte, fee tier, curve pool, curve i, curve j) for one leg."""
    if isinstance(route, ConstantProductRoute):
        return VenueKind.CONSTANT_PRODUCT.value, 0, ZERO_ADDRESS, 0, 0
    if isinstance(route, ConcentratedRoute):
        return VenueKind.CONCENTRATED.value, route.fee_tier, ZERO_ADDRESS, 0, 0
    if isinstance(route, StableswapRoute):
        return VenueKind.STABLESWAP.value, 0, route.pool, route.i, route.j
    raise UnsupportedVenueError(f"Cannot encode leg route {route!r}", venue_kind=route)


def _leg_route(kind_byte: int, fee: int, pool: str, i: int, j: int) -> LegRoute:
    try:
        kind = VenueKind(kind_byte)
    except ValueError:
        raise UnsupportedVenueError(
            f"Unsupported venue type code {kind_byte}", venue_kind=kind_byte
        ) from None

    if kind is VenueKind.CONSTANT_PRODUCT:
        return ConstantProductRoute()
    if kind is VenueKind.CONCENTRATED:
        return ConcentratedRoute(fee_tier=fee)
    return StableswapRoute(pool=to_checksum_address(pool), i=i, j=j)


def plan_to_tuple(plan: SettlementPlan) -> tuple:
    """Flatten a plan into ArbParams field order."""
    dex1, fee1, pool1, i1, j1 = _leg_fields(plan.leg1)
    dex2, fee2, pool2, i2, j2 = _leg_fields(plan.leg2)
    return (
        dex1,
        dex2,
        plan.borrowed_token,
        plan.intermediate_token,
        fee1,
        fee2,
        pool1,
        pool2,
        i1,
        j1,
        i2,
        j2,
        plan.min_out_leg1,
        plan.min_out_leg2,
    )


def encode_plan(plan: SettlementPlan) -> bytes:
    """ABI-encode a plan as the contract's arbParams bytes."""
    return encode([ARB_PARAMS_TYPE], [plan_to_tuple(plan)])


def decode_plan(data: bytes, borrow_amount: int = 0) -> SettlementPlan:
    """
    Decode arbParams bytes back into a SettlementPlan.

    The borrowed amount travels beside the payload rather than inside it,
    so the caller passes it in.

    Raises:
        UnsupportedVenueError: If either venue byte is not a known VenueKind
    """
    (fields,) = decode([ARB_PARAMS_TYPE], data)
    (
        dex1,
        dex2,
        token_borrow,
        token_intermediate,
        fee1,
        fee2,
        pool1,
        pool2,
        i1,
        j1,
        i2,
        j2,
        min_out1,
        min_out2,
    ) = fields

    return SettlementPlan(
        leg1=_leg_route(dex1, fee1, pool1, i1, j1),
        leg2=_leg_route(dex2, fee2, pool2, i2, j2),
        borrowed_token=to_checksum_address(token_borrow),
        intermediate_token=to_checksum_address(token_intermediate),
        borrow_amount=borrow_amount,
        min_out_leg1=min_out1,
        min_out_leg2=min_out2,
    )
