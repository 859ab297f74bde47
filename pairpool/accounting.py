"""
Liquidity accounting: share issuance on deposit and proportional
redemption on withdrawal.

Share math (integer, truncating):
    first deposit:  minted = seed_multiplier * precision
    later deposits: minted = total_shares * amount_a // reserve_a
    withdrawal:     amount_x = shares * reserve_x // total_shares

Truncation always leaves the rounding dust in the pool.
"""
import logging
from types import MappingProxyType
from typing import Mapping, Optional

from pairpool.config import PoolConfig
from pairpool.errors import (
    InsufficientOwnedShares,
    InsufficientPoolShares,
    InsufficientShareIssue,
    PoolNotActive,
    RatioMismatch,
)
from pairpool.ledger import Reserves, bounded

logger = logging.getLogger(__name__)


class ShareBook:
    """
    Immutable record of outstanding shares and who owns them.

    mint() and burn() return a new book; the original is never modified,
    which lets the coordinator stage a change and discard it on failure.
    """

    __slots__ = ('_total_shares', '_positions')

    def __init__(self, positions: Optional[Mapping] = None):
        owned = {party: int(shares) for party, shares in (positions or {}).items() if shares}
        if any(shares < 0 for shares in owned.values()):
            raise ValueError("Share positions cannot be negative")
        self._positions = MappingProxyType(owned)
        self._total_shares = sum(owned.values())

    @property
    def total_shares(self) -> int:
        return self._total_shares

    @property
    def positions(self) -> Mapping:
        """Read-only view of party -> shares."""
        return self._positions

    def shares_of(self, party) -> int:
        return self._positions.get(party, 0)

    def mint(self, party, shares: int) -> 'ShareBook':
        positions = dict(self._positions)
        positions[party] = positions.get(party, 0) + shares
        return ShareBook(positions)

    def burn(self, party, shares: int) -> 'ShareBook':
        owned = self.shares_of(party)
        if shares > owned:
            raise InsufficientOwnedShares(party, shares, owned)
        positions = dict(self._positions)
        positions[party] = owned - shares
        return ShareBook(positions)

    def to_dict(self) -> dict:
        return dict(self._positions)

    def __eq__(self, other) -> bool:
        if not isinstance(other, ShareBook):
            return NotImplemented
        return dict(self._positions) == dict(other._positions)

    def __repr__(self) -> str:
        return f"ShareBook(total_shares={self._total_shares}, holders={len(self._positions)})"


class LiquidityAccounting:
    """Share issuance and redemption against a reserve snapshot."""

    def __init__(self, config: PoolConfig = None, book: ShareBook = None):
        self.config = config or PoolConfig()
        self._book = book or ShareBook()

    @property
    def book(self) -> ShareBook:
        return self._book

    @property
    def total_shares(self) -> int:
        return self._book.total_shares

    def shares_of(self, party) -> int:
        return self._book.shares_of(party)

    def install(self, book: ShareBook):
        """Make a previously staged share book current."""
        self._book = book

    def shares_for_deposit(self, reserves: Reserves, amount_a: int, amount_b: int,
                           total_shares: Optional[int] = None) -> int:
        """
        Calculate shares minted for depositing amount_a and amount_b.

        The first deposit mints the fixed seed issuance regardless of the
        amounts. After that both amounts must imply the same share count
        once each figure is divided by the tolerance divisor. That check
        is deliberately coarse: it absorbs integer-division noise rather
        than proving exact proportionality. The token A figure is minted.

        Args:
            reserves: Reserve snapshot to price against
            amount_a: Units of token A deposited
            amount_b: Units of token B deposited
            total_shares: Outstanding shares, defaults to the current book

        Returns:
            Shares to mint

        Raises:
            RatioMismatch: If the two share figures disagree
            InsufficientShareIssue: If the deposit mints nothing
            Overflow: If an intermediate product exceeds the value bound
        """
        if total_shares is None:
            total_shares = self.total_shares

        if total_shares == 0:
            return self.config.seed_shares

        if reserves.reserve_a == 0 or reserves.reserve_b == 0:
            raise PoolNotActive("Pool has outstanding shares but an empty reserve")

        bound = self.config.max_value
        shares_a = bounded(total_shares * amount_a, bound, 'deposit_shares_a') // reserves.reserve_a
        shares_b = bounded(total_shares * amount_b, bound, 'deposit_shares_b') // reserves.reserve_b

        tolerance = self.config.ratio_tolerance
        if shares_a // tolerance != shares_b // tolerance:
            raise RatioMismatch(shares_a, shares_b, tolerance)

        if shares_a == 0:
            raise InsufficientShareIssue("Deposit too small to mint any shares")

        return shares_a

    def amounts_for_withdraw(self, reserves: Reserves, shares: int,
                             total_shares: Optional[int] = None) -> tuple[int, int]:
        """
        Calculate the reserve amounts redeemed by burning shares.

        Returns:
            (amount_a, amount_b), each floor-divided

        Raises:
            InsufficientPoolShares: If shares exceeds the outstanding total
            PoolNotActive: If the pool has no outstanding shares
        """
        if total_shares is None:
            total_shares = self.total_shares

        if shares > total_shares:
            raise InsufficientPoolShares(shares, total_shares)
        if total_shares == 0:
            raise PoolNotActive("Pool has no outstanding shares")

        bound = self.config.max_value
        amount_a = bounded(shares * reserves.reserve_a, bound, 'withdraw_amount_a') // total_shares
        amount_b = bounded(shares * reserves.reserve_b, bound, 'withdraw_amount_b') // total_shares
        return amount_a, amount_b

    def __repr__(self) -> str:
        return f"LiquidityAccounting({self._book!r})"
