"""
Swap pricing for the constant product formula: x * y = k

The quote uses k as committed before the swap:
    reserve_in_after  = reserve_in + amount_in
    reserve_out_after = k // reserve_in_after
    amount_out        = reserve_out - reserve_out_after

k is recomputed from the new reserves once the swap commits, so integer
truncation makes it drift slightly from swap to swap.
"""
import logging

from pairpool.config import UINT256_MAX
from pairpool.errors import PoolDrainage, PoolNotActive
from pairpool.ledger import Reserves, bounded

logger = logging.getLogger(__name__)


def get_amount_out(reserve_in: int, reserve_out: int, constant_product: int,
                   amount_in: int, round_up: bool = False,
                   max_value: int = UINT256_MAX) -> int:
    """
    Calculate swap output against explicit reserves.

    Args:
        reserve_in: Reserve of the asset being provided
        reserve_out: Reserve of the asset being received
        constant_product: k committed before this swap
        amount_in: Units provided
        round_up: Round the remaining output reserve up instead of down
        max_value: Overflow bound for the new input reserve

    Returns:
        Units of the output asset, always strictly below reserve_out

    Raises:
        PoolDrainage: If the output would empty the opposite reserve
        Overflow: If the new input reserve exceeds max_value
    """
    reserve_in_after = bounded(reserve_in + amount_in, max_value, 'swap_reserve_in')
    if reserve_in_after == 0:
        raise PoolDrainage(reserve_out, reserve_out)

    if round_up:
        reserve_out_after = -(-constant_product // reserve_in_after)
    else:
        reserve_out_after = constant_product // reserve_in_after
    amount_out = reserve_out - reserve_out_after

    # Never hand out the whole opposite reserve
    if amount_out == reserve_out:
        amount_out -= 1
    if amount_out < 0 or amount_out >= reserve_out:
        raise PoolDrainage(amount_out, reserve_out)

    return amount_out


def quote_a_to_b(reserves: Reserves, amount_in: int, round_up: bool = False,
                 max_value: int = UINT256_MAX) -> int:
    """Token B received for providing amount_in of token A."""
    _require_liquidity(reserves)
    amount_out = get_amount_out(
        reserves.reserve_a, reserves.reserve_b, reserves.constant_product,
        amount_in, round_up=round_up, max_value=max_value,
    )
    logger.debug(f"Quote A->B: {amount_in} -> {amount_out}")
    return amount_out


def quote_b_to_a(reserves: Reserves, amount_in: int, round_up: bool = False,
                 max_value: int = UINT256_MAX) -> int:
    """Token A received for providing amount_in of token B."""
    _require_liquidity(reserves)
    amount_out = get_amount_out(
        reserves.reserve_b, reserves.reserve_a, reserves.constant_product,
        amount_in, round_up=round_up, max_value=max_value,
    )
    logger.debug(f"Quote B->A: {amount_in} -> {amount_out}")
    return amount_out


def _require_liquidity(reserves: Reserves):
    if reserves.reserve_a == 0 or reserves.reserve_b == 0:
        raise PoolNotActive("Zero liquidity")
