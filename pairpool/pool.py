"""
Two-asset constant product liquidity pool.

Pool coordinates the three mutating operations (deposit, swap, withdraw)
over the reserve ledger and the liquidity accounting. Each operation runs
under the pool's exclusive lock and follows the same sequence:

1. validate inputs and compute the staged reserves and share book
2. move assets through the transfer collaborators
3. install the staged state

A failure at any step leaves the pool untouched; transfers already made
for that operation are reversed before the error propagates.
"""
import logging
import threading
import time
from dataclasses import dataclass, asdict
from decimal import Decimal
from typing import Callable, Optional

from pairpool.accounting import LiquidityAccounting, ShareBook
from pairpool.assets import POOL_ADDRESS, AssetTransfer
from pairpool.config import PoolConfig
from pairpool.errors import (
    InsufficientOwnedShares,
    InvalidAmount,
    PoolDrained,
    PoolError,
    PoolNotActive,
    TransferFailed,
)
from pairpool.ledger import ReserveLedger, Reserves, bounded
from pairpool.pricing import quote_a_to_b, quote_b_to_a
from pairpool.state import PoolPhase, PoolState

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

DEPOSIT = 'deposit'
SWAP = 'swap'
WITHDRAW = 'withdraw'


@dataclass(frozen=True)
class SwapRecord:
    """Data describing one committed swap, handed to swap listeners."""
    party: object
    asset_in: str
    amount_in: int
    asset_out: str
    amount_out: int
    reserve_a: int
    reserve_b: int
    timestamp: float

    def to_dict(self) -> dict:
        return asdict(self)


def _require_amount(name: str, value, positive: bool = True):
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidAmount(name, value)
    if value < 0 or (positive and value == 0):
        raise InvalidAmount(name, value)


class _TransferBatch:
    """Transfers completed by one operation, reversed if the operation aborts."""

    def __init__(self, pool: 'Pool', party):
        self.pool = pool
        self.party = party
        self._completed = []

    def pull(self, asset: AssetTransfer, amount: int):
        """Move amount from the party into the pool."""
        ok, error = _attempt(asset.transfer_from, self.party, self.pool.address, amount)
        if not ok:
            self._abort(asset, 'in', amount, error)
        self._completed.append((asset, 'in', amount))

    def push(self, asset: AssetTransfer, amount: int):
        """Move amount from the pool to the party."""
        ok, error = _attempt(asset.transfer, self.party, amount)
        if not ok:
            self._abort(asset, 'out', amount, error)
        self._completed.append((asset, 'out', amount))

    def rollback(self) -> bool:
        """Reverse completed transfers, newest first. Returns False if any reversal failed."""
        compensated = True
        for asset, direction, amount in reversed(self._completed):
            if direction == 'in':
                ok, error = _attempt(asset.transfer, self.party, amount)
            else:
                ok, error = _attempt(asset.transfer_from, self.party, self.pool.address, amount)
            if not ok:
                compensated = False
                logger.error(
                    f"Could not reverse {direction} transfer of {amount} {asset.symbol} "
                    f"for {self.party!r}: {error or 'refused'}"
                )
        self._completed = []
        return compensated

    def _abort(self, asset: AssetTransfer, direction: str, amount: int,
               error: Optional[Exception]):
        compensated = self.rollback()
        raise TransferFailed(asset.symbol, direction, self.party, amount,
                             compensated=compensated) from error


def _spot_price(state: PoolState) -> Decimal:
    if state.reserve_a == 0:
        return Decimal(0)
    return Decimal(state.reserve_b) / Decimal(state.reserve_a)


def _attempt(transfer: Callable, *args) -> tuple[bool, Optional[Exception]]:
    try:
        return bool(transfer(*args)), None
    except Exception as e:
        return False, e


class Pool:
    """
    A constant product pool over token_a and token_b.

    Parties are opaque identifiers passed to every mutating call. Quotes
    read the last committed PoolState without taking the lock.
    """

    def __init__(self, token_a: AssetTransfer, token_b: AssetTransfer,
                 config: PoolConfig = None, address=POOL_ADDRESS,
                 clock: Callable[[], float] = time.time):
        self.config = config or PoolConfig()
        self.token_a = token_a
        self.token_b = token_b
        self.address = address
        self.clock = clock

        self.ledger = ReserveLedger(max_value=self.config.max_value)
        self.accounting = LiquidityAccounting(self.config)
        self._phase = PoolPhase.UNINITIALIZED
        self._state = PoolState()

        self._lock = threading.Lock()
        self._swap_listeners = []
        self._operation_listeners = []

    @classmethod
    def restore(cls, token_a: AssetTransfer, token_b: AssetTransfer,
                state: PoolState, **kwargs) -> 'Pool':
        """
        Rebuild a pool from a saved state.

        Raises:
            InvariantViolation: If the state is inconsistent
            Overflow: If a reserve exceeds the configured bound
        """
        state.check_invariants()
        pool = cls(token_a, token_b, **kwargs)
        reserves = pool.ledger.stage(state.reserve_a, state.reserve_b)
        bounded(state.total_shares, pool.config.max_value, 'total_shares')
        pool._phase = state.phase
        pool._commit(reserves, state.book)
        return pool

    # ==========================================================================
    # MUTATING OPERATIONS
    # ==========================================================================

    def add_liquidity(self, party, amount_a: int, amount_b: int) -> int:
        """
        Deposit both assets and mint pool shares to party.

        Returns:
            Shares minted
        """
        return self._execute(DEPOSIT, party, self._deposit, party, amount_a, amount_b)

    def swap_token_a(self, party, amount_a: int) -> int:
        """Swap amount_a of token A for token B. Returns token B received."""
        amount_out, record = self._execute(SWAP, party, self._swap, party, True, amount_a)
        self._emit_swap(record)
        return amount_out

    def swap_token_b(self, party, amount_b: int) -> int:
        """Swap amount_b of token B for token A. Returns token A received."""
        amount_out, record = self._execute(SWAP, party, self._swap, party, False, amount_b)
        self._emit_swap(record)
        return amount_out

    def remove_liquidity(self, party, shares: int) -> tuple[int, int]:
        """
        Burn shares owned by party and pay out its slice of both reserves.

        Returns:
            (amount_a, amount_b) paid to party
        """
        return self._execute(WITHDRAW, party, self._withdraw, party, shares)

    def _execute(self, kind: str, party, operation: Callable, *args):
        start = time.perf_counter()
        try:
            with self._lock:
                result = operation(*args)
        except PoolError as e:
            logger.warning(f"{kind.capitalize()} rejected for {party!r}: {e}")
            self._emit_operation(kind, 'rejected', time.perf_counter() - start)
            raise
        self._emit_operation(kind, 'committed', time.perf_counter() - start)
        return result

    def _deposit(self, party, amount_a: int, amount_b: int) -> int:
        _require_amount('amount_a', amount_a)
        _require_amount('amount_b', amount_b)

        reserves = self.ledger.reserves
        book = self.accounting.book
        seeding = book.total_shares == 0
        if seeding and self._phase is PoolPhase.ACTIVE and not self.config.allow_reseed:
            raise PoolDrained("All shares were redeemed and re-seeding is disabled")

        minted = self.accounting.shares_for_deposit(reserves, amount_a, amount_b)
        staged_reserves = self.ledger.stage(
            reserves.reserve_a + amount_a, reserves.reserve_b + amount_b
        )
        staged_book = book.mint(party, minted)
        bounded(staged_book.total_shares, self.config.max_value, 'total_shares')

        batch = _TransferBatch(self, party)
        batch.pull(self.token_a, amount_a)
        batch.pull(self.token_b, amount_b)

        self._commit(staged_reserves, staged_book)

        if seeding:
            logger.info(
                f"Pool seeded by {party!r}: {amount_a} {self.token_a.symbol} / "
                f"{amount_b} {self.token_b.symbol}"
            )
        logger.info(
            f"Liquidity added by {party!r}: {amount_a} {self.token_a.symbol}, "
            f"{amount_b} {self.token_b.symbol} -> {minted} shares"
        )
        return minted

    def _swap(self, party, input_is_a: bool, amount_in: int) -> tuple[int, SwapRecord]:
        _require_amount('amount_in', amount_in)

        reserves = self.ledger.reserves
        if self.accounting.total_shares == 0:
            raise PoolNotActive("Zero liquidity")

        round_up = self.config.swap_rounding == 'ceil'
        if input_is_a:
            asset_in, asset_out = self.token_a, self.token_b
            amount_out = quote_a_to_b(reserves, amount_in, round_up=round_up,
                                      max_value=self.config.max_value)
            new_a = reserves.reserve_a + amount_in
            new_b = reserves.reserve_b - amount_out
        else:
            asset_in, asset_out = self.token_b, self.token_a
            amount_out = quote_b_to_a(reserves, amount_in, round_up=round_up,
                                      max_value=self.config.max_value)
            new_a = reserves.reserve_a - amount_out
            new_b = reserves.reserve_b + amount_in
        staged_reserves = self.ledger.stage(new_a, new_b)

        batch = _TransferBatch(self, party)
        batch.pull(asset_in, amount_in)
        batch.push(asset_out, amount_out)

        self._commit(staged_reserves, self.accounting.book)

        record = SwapRecord(
            party=party,
            asset_in=asset_in.symbol,
            amount_in=amount_in,
            asset_out=asset_out.symbol,
            amount_out=amount_out,
            reserve_a=staged_reserves.reserve_a,
            reserve_b=staged_reserves.reserve_b,
            timestamp=self.clock(),
        )
        logger.info(
            f"Swap by {party!r}: {amount_in} {asset_in.symbol} -> "
            f"{amount_out} {asset_out.symbol}, k={staged_reserves.constant_product}"
        )
        return amount_out, record

    def _withdraw(self, party, shares: int) -> tuple[int, int]:
        _require_amount('shares', shares)

        reserves = self.ledger.reserves
        book = self.accounting.book
        amount_a, amount_b = self.accounting.amounts_for_withdraw(reserves, shares)

        owned = book.shares_of(party)
        if shares > owned:
            raise InsufficientOwnedShares(party, shares, owned)

        staged_book = book.burn(party, shares)
        staged_reserves = self.ledger.stage(
            reserves.reserve_a - amount_a, reserves.reserve_b - amount_b
        )

        batch = _TransferBatch(self, party)
        batch.push(self.token_a, amount_a)
        batch.push(self.token_b, amount_b)

        self._commit(staged_reserves, staged_book)

        logger.info(
            f"Liquidity removed by {party!r}: {shares} shares -> "
            f"{amount_a} {self.token_a.symbol}, {amount_b} {self.token_b.symbol}"
        )
        if staged_book.total_shares == 0:
            logger.info("All pool shares redeemed")
        return amount_a, amount_b

    def _commit(self, reserves: Reserves, book: ShareBook):
        self.ledger.install(reserves)
        self.accounting.install(book)
        if book.total_shares > 0:
            self._phase = PoolPhase.ACTIVE
        self._state = PoolState(phase=self._phase, reserves=reserves, book=book)

    # ==========================================================================
    # READ-ONLY QUERIES
    # ==========================================================================

    def calculate_token_b_deposit(self, amount_a: int) -> int:
        """Token B to deposit alongside amount_a at the current ratio."""
        _require_amount('amount_a', amount_a, positive=False)
        reserves = self._active_state().reserves
        product = bounded(reserves.reserve_b * amount_a, self.config.max_value, 'deposit_quote')
        return product // reserves.reserve_a

    def calculate_token_a_deposit(self, amount_b: int) -> int:
        """Token A to deposit alongside amount_b at the current ratio."""
        _require_amount('amount_b', amount_b, positive=False)
        reserves = self._active_state().reserves
        product = bounded(reserves.reserve_a * amount_b, self.config.max_value, 'deposit_quote')
        return product // reserves.reserve_b

    def calculate_token_a_swap(self, amount_a: int) -> int:
        """Token B a swap of amount_a token A would return right now."""
        _require_amount('amount_a', amount_a, positive=False)
        return quote_a_to_b(self._active_state().reserves, amount_a,
                            round_up=self.config.swap_rounding == 'ceil',
                            max_value=self.config.max_value)

    def calculate_token_b_swap(self, amount_b: int) -> int:
        """Token A a swap of amount_b token B would return right now."""
        _require_amount('amount_b', amount_b, positive=False)
        return quote_b_to_a(self._active_state().reserves, amount_b,
                            round_up=self.config.swap_rounding == 'ceil',
                            max_value=self.config.max_value)

    def calculate_withdraw_amount(self, shares: int) -> tuple[int, int]:
        """Amounts of both tokens that burning shares would return right now."""
        _require_amount('shares', shares, positive=False)
        state = self._state
        return self.accounting.amounts_for_withdraw(
            state.reserves, shares, total_shares=state.total_shares
        )

    def _active_state(self) -> PoolState:
        state = self._state
        if state.total_shares == 0:
            raise PoolNotActive("Zero liquidity")
        return state

    def snapshot(self) -> PoolState:
        """The last committed state."""
        return self._state

    def check_invariants(self):
        self._state.check_invariants()

    @property
    def phase(self) -> PoolPhase:
        return self._state.phase

    @property
    def reserve_a(self) -> int:
        return self._state.reserve_a

    @property
    def reserve_b(self) -> int:
        return self._state.reserve_b

    @property
    def constant_product(self) -> int:
        return self._state.constant_product

    @property
    def total_shares(self) -> int:
        return self._state.total_shares

    def shares_of(self, party) -> int:
        return self._state.book.shares_of(party)

    @property
    def current_price(self) -> Decimal:
        """Token B per token A at the current reserves."""
        return _spot_price(self._state)

    def get_pool_stats(self) -> dict:
        """Get current pool statistics."""
        state = self._state
        return {
            'phase': state.phase.value,
            'reserve_a': str(state.reserve_a),
            'reserve_b': str(state.reserve_b),
            'constant_product': str(state.constant_product),
            'total_shares': str(state.total_shares),
            'current_price': str(_spot_price(state)),
        }

    # ==========================================================================
    # LISTENERS
    # ==========================================================================

    def add_swap_listener(self, listener: Callable[[SwapRecord], None]):
        """Register a consumer of SwapRecord, called after each committed swap."""
        self._swap_listeners.append(listener)

    def add_operation_listener(self, listener: Callable[[str, str, float], None]):
        """Register a callback(kind, status, latency_seconds) for every operation."""
        self._operation_listeners.append(listener)

    def _emit_swap(self, record: SwapRecord):
        for listener in self._swap_listeners:
            try:
                listener(record)
            except Exception:
                logger.exception(f"Swap listener {listener!r} failed")

    def _emit_operation(self, kind: str, status: str, latency: float):
        for listener in self._operation_listeners:
            try:
                listener(kind, status, latency)
            except Exception:
                logger.exception(f"Operation listener {listener!r} failed")

    def __repr__(self) -> str:
        state = self._state
        return (
            f"Pool("
            f"{self.token_a.symbol}/{self.token_b.symbol}, "
            f"phase={state.phase.value}, "
            f"reserve_a={state.reserve_a}, "
            f"reserve_b={state.reserve_b}, "
            f"total_shares={state.total_shares})"
        )
