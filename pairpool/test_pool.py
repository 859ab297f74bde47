"""
Test Suite: Pool Operation Coordinator

Tests deposits, swaps and withdrawals end to end against in-memory asset
ledgers, including atomicity when the transfer collaborator fails and
invariant preservation under concurrent access.
"""
import random
import threading
import pytest
from concurrent.futures import ThreadPoolExecutor, as_completed
from decimal import Decimal
from pairpool.accounting import ShareBook
from pairpool.assets import POOL_ADDRESS, AssetLedger
from pairpool.config import PRECISION, PoolConfig
from pairpool.errors import (
    InsufficientOwnedShares,
    InsufficientPoolShares,
    InvalidAmount,
    InvariantViolation,
    Overflow,
    PoolDrained,
    PoolError,
    PoolNotActive,
    RatioMismatch,
    TransferFailed,
)
from pairpool.ledger import Reserves
from pairpool.pool import Pool, SwapRecord
from pairpool.state import PoolPhase, PoolState

ALICE = b'\x00' * 19 + b'\xa1'
BOB = b'\x00' * 19 + b'\xb0'
CAROL = b'\x00' * 19 + b'\xc0'

FUNDING = 10 ** 12


class FlakyLedger(AssetLedger):
    """AssetLedger whose transfers can be switched to refuse or raise."""

    def __init__(self, symbol):
        super().__init__(symbol)
        self.refuse_transfer = False
        self.refuse_transfer_from = False
        self.raise_on_transfer_from = False

    def transfer_from(self, sender, recipient, amount):
        if self.raise_on_transfer_from:
            raise RuntimeError("asset system unavailable")
        if self.refuse_transfer_from:
            return False
        return super().transfer_from(sender, recipient, amount)

    def transfer(self, recipient, amount):
        if self.refuse_transfer:
            return False
        return super().transfer(recipient, amount)


@pytest.fixture
def token_a():
    ledger = FlakyLedger('AAA')
    for party in (ALICE, BOB):
        ledger.mint(party, FUNDING)
    return ledger


@pytest.fixture
def token_b():
    ledger = FlakyLedger('BBB')
    for party in (ALICE, BOB):
        ledger.mint(party, FUNDING)
    return ledger


@pytest.fixture
def pool(token_a, token_b):
    return Pool(token_a, token_b, clock=lambda: 1_700_000_000.0)


@pytest.fixture
def pool_1to2(pool):
    """Pool seeded by alice with (1000 A, 2000 B)."""
    pool.add_liquidity(ALICE, 1000, 2000)
    return pool


@pytest.fixture
def pool_1to1(pool):
    """Pool seeded by alice with (1000 A, 1000 B)."""
    pool.add_liquidity(ALICE, 1000, 1000)
    return pool


def assert_balances_match_reserves(pool, token_a, token_b):
    assert token_a.balance_of(POOL_ADDRESS) == pool.reserve_a
    assert token_b.balance_of(POOL_ADDRESS) == pool.reserve_b


class TestDeposit:

    def test_seed_deposit(self, pool, token_a, token_b):
        minted = pool.add_liquidity(ALICE, 1000, 2000)

        assert minted == 100 * 10 ** 18
        assert pool.phase is PoolPhase.ACTIVE
        assert pool.shares_of(ALICE) == minted
        assert pool.total_shares == minted
        assert (pool.reserve_a, pool.reserve_b) == (1000, 2000)
        assert pool.constant_product == 2_000_000
        assert token_a.balance_of(ALICE) == FUNDING - 1000
        assert token_b.balance_of(ALICE) == FUNDING - 2000
        assert_balances_match_reserves(pool, token_a, token_b)

    def test_proportional_deposit(self, pool_1to2):
        minted = pool_1to2.add_liquidity(BOB, 100, 200)

        assert minted == 10 * PRECISION
        assert pool_1to2.shares_of(BOB) == 10 * PRECISION
        assert pool_1to2.total_shares == 110 * PRECISION
        assert pool_1to2.constant_product == 1100 * 2200

    def test_wrong_ratio_leaves_no_trace(self, pool_1to2, token_a, token_b):
        before = pool_1to2.snapshot()

        with pytest.raises(RatioMismatch):
            pool_1to2.add_liquidity(BOB, 100, 150)

        assert pool_1to2.snapshot() is before
        assert token_a.balance_of(BOB) == FUNDING
        assert token_b.balance_of(BOB) == FUNDING

    def test_zero_amount_rejected(self, pool):
        with pytest.raises(InvalidAmount):
            pool.add_liquidity(ALICE, 0, 100)
        assert pool.phase is PoolPhase.UNINITIALIZED

    def test_non_integer_amount_rejected(self, pool):
        with pytest.raises(InvalidAmount):
            pool.add_liquidity(ALICE, 10.5, 100)
        with pytest.raises(InvalidAmount):
            pool.add_liquidity(ALICE, True, 100)

    def test_second_transfer_failure_refunds_first(self, pool_1to2, token_a, token_b):
        before = pool_1to2.snapshot()
        token_b.raise_on_transfer_from = True

        with pytest.raises(TransferFailed) as exc_info:
            pool_1to2.add_liquidity(BOB, 100, 200)

        error = exc_info.value
        assert error.asset == 'BBB'
        assert error.direction == 'in'
        assert error.compensated is True
        assert isinstance(error.__cause__, RuntimeError)
        assert pool_1to2.snapshot() is before
        assert token_a.balance_of(BOB) == FUNDING
        assert_balances_match_reserves(pool_1to2, token_a, token_b)

    def test_unfunded_party(self, pool_1to2, token_a, token_b):
        with pytest.raises(TransferFailed):
            pool_1to2.add_liquidity(CAROL, 100, 200)
        assert pool_1to2.shares_of(CAROL) == 0
        assert_balances_match_reserves(pool_1to2, token_a, token_b)

    def test_overflow_rejected_before_transfer(self, token_a, token_b):
        pool = Pool(token_a, token_b, config=PoolConfig(precision=1, max_value=10 ** 6))
        assert pool.add_liquidity(ALICE, 1000, 999) == 100

        with pytest.raises(Overflow):
            pool.add_liquidity(BOB, 1000, 999)

        assert token_a.balance_of(BOB) == FUNDING
        assert (pool.reserve_a, pool.reserve_b) == (1000, 999)


class TestSwap:

    def test_swap_token_a(self, pool_1to1, token_a, token_b):
        amount_out = pool_1to1.swap_token_a(BOB, 100)

        assert amount_out == 91
        assert (pool_1to1.reserve_a, pool_1to1.reserve_b) == (1100, 909)
        assert pool_1to1.constant_product == 1100 * 909
        assert token_a.balance_of(BOB) == FUNDING - 100
        assert token_b.balance_of(BOB) == FUNDING + 91
        assert_balances_match_reserves(pool_1to1, token_a, token_b)

    def test_swap_token_b(self, pool_1to2):
        assert pool_1to2.swap_token_b(BOB, 200) == 91
        assert (pool_1to2.reserve_a, pool_1to2.reserve_b) == (909, 2200)

    def test_swap_does_not_change_shares(self, pool_1to1):
        pool_1to1.swap_token_a(BOB, 100)
        assert pool_1to1.total_shares == 100 * PRECISION
        assert pool_1to1.shares_of(BOB) == 0

    def test_quote_matches_execution(self, pool_1to2):
        quote = pool_1to2.calculate_token_a_swap(250)
        assert pool_1to2.swap_token_a(BOB, 250) == quote

    def test_huge_swap_never_drains(self, pool_1to1):
        amount_out = pool_1to1.swap_token_a(BOB, 10 ** 9)

        assert amount_out == 999
        assert pool_1to1.reserve_b == 1
        pool_1to1.check_invariants()

    def test_swap_on_uninitialized_pool(self, pool):
        with pytest.raises(PoolNotActive):
            pool.swap_token_a(BOB, 100)

    def test_zero_swap_rejected(self, pool_1to1):
        with pytest.raises(InvalidAmount):
            pool_1to1.swap_token_b(BOB, 0)

    def test_input_transfer_failure(self, pool_1to1, token_a, token_b):
        before = pool_1to1.snapshot()

        with pytest.raises(TransferFailed) as exc_info:
            pool_1to1.swap_token_a(CAROL, 100)

        assert exc_info.value.direction == 'in'
        assert pool_1to1.snapshot() is before
        assert token_b.balance_of(CAROL) == 0

    def test_output_transfer_failure_refunds_input(self, pool_1to1, token_a, token_b):
        before = pool_1to1.snapshot()
        token_b.refuse_transfer = True

        with pytest.raises(TransferFailed) as exc_info:
            pool_1to1.swap_token_a(BOB, 100)

        assert exc_info.value.direction == 'out'
        assert exc_info.value.compensated is True
        assert pool_1to1.snapshot() is before
        assert token_a.balance_of(BOB) == FUNDING
        assert token_b.balance_of(BOB) == FUNDING
        assert_balances_match_reserves(pool_1to1, token_a, token_b)

    def test_swap_record_emitted(self, pool_1to1):
        records = []
        pool_1to1.add_swap_listener(records.append)

        pool_1to1.swap_token_a(BOB, 100)

        assert records == [SwapRecord(
            party=BOB,
            asset_in='AAA',
            amount_in=100,
            asset_out='BBB',
            amount_out=91,
            reserve_a=1100,
            reserve_b=909,
            timestamp=1_700_000_000.0,
        )]
        assert records[0].to_dict()['amount_out'] == 91

    def test_no_record_for_failed_swap(self, pool_1to1):
        records = []
        pool_1to1.add_swap_listener(records.append)

        with pytest.raises(TransferFailed):
            pool_1to1.swap_token_a(CAROL, 100)
        assert records == []

    def test_failing_listener_does_not_undo_swap(self, pool_1to1):
        def broken(record):
            raise ValueError("listener bug")

        pool_1to1.add_swap_listener(broken)
        assert pool_1to1.swap_token_a(BOB, 100) == 91
        assert pool_1to1.reserve_a == 1100

    def test_ceil_rounding_pool(self, token_a, token_b):
        pool = Pool(token_a, token_b, config=PoolConfig(swap_rounding='ceil'))
        pool.add_liquidity(ALICE, 1000, 1000)

        out_b = pool.swap_token_a(BOB, 100)
        back_a = pool.swap_token_b(BOB, out_b)

        assert out_b == 90
        assert back_a <= 100
        pool.check_invariants()


class TestWithdraw:

    def test_sole_provider_withdraws_everything(self, pool_1to2, token_a, token_b):
        amounts = pool_1to2.remove_liquidity(ALICE, 100 * PRECISION)

        assert amounts == (1000, 2000)
        assert pool_1to2.total_shares == 0
        assert pool_1to2.shares_of(ALICE) == 0
        assert (pool_1to2.reserve_a, pool_1to2.reserve_b) == (0, 0)
        assert pool_1to2.phase is PoolPhase.ACTIVE
        assert token_a.balance_of(ALICE) == FUNDING
        assert token_b.balance_of(ALICE) == FUNDING
        pool_1to2.check_invariants()

    def test_sole_provider_after_swaps(self, pool_1to1):
        pool_1to1.swap_token_a(BOB, 137)
        pool_1to1.swap_token_b(BOB, 59)
        reserve_a, reserve_b = pool_1to1.reserve_a, pool_1to1.reserve_b

        amount_a, amount_b = pool_1to1.remove_liquidity(ALICE, pool_1to1.shares_of(ALICE))

        assert reserve_a - 1 <= amount_a <= reserve_a
        assert reserve_b - 1 <= amount_b <= reserve_b
        assert pool_1to1.total_shares == 0

    def test_partial_withdraw(self, pool_1to2):
        assert pool_1to2.remove_liquidity(ALICE, 10 * PRECISION) == (100, 200)
        assert pool_1to2.shares_of(ALICE) == 90 * PRECISION
        assert pool_1to2.constant_product == 900 * 1800

    def test_more_than_owned(self, pool_1to2):
        pool_1to2.add_liquidity(BOB, 100, 200)
        before = pool_1to2.snapshot()

        with pytest.raises(InsufficientOwnedShares) as exc_info:
            pool_1to2.remove_liquidity(BOB, 11 * PRECISION)

        assert exc_info.value.owned == 10 * PRECISION
        assert pool_1to2.snapshot() is before

    def test_more_than_pool_total(self, pool_1to2):
        with pytest.raises(InsufficientPoolShares):
            pool_1to2.remove_liquidity(ALICE, 200 * PRECISION)
        assert pool_1to2.shares_of(ALICE) == 100 * PRECISION

    def test_zero_shares_rejected(self, pool_1to2):
        with pytest.raises(InvalidAmount):
            pool_1to2.remove_liquidity(ALICE, 0)

    def test_payout_failure(self, pool_1to2, token_a, token_b):
        before = pool_1to2.snapshot()
        token_b.refuse_transfer = True

        with pytest.raises(TransferFailed) as exc_info:
            pool_1to2.remove_liquidity(ALICE, 10 * PRECISION)

        assert exc_info.value.compensated is True
        assert pool_1to2.snapshot() is before
        assert token_a.balance_of(ALICE) == FUNDING - 1000
        assert_balances_match_reserves(pool_1to2, token_a, token_b)

    def test_failed_compensation_is_reported(self, pool_1to2):
        before = pool_1to2.snapshot()
        pool_1to2.token_a.refuse_transfer_from = True
        pool_1to2.token_b.refuse_transfer = True

        with pytest.raises(TransferFailed) as exc_info:
            pool_1to2.remove_liquidity(ALICE, 10 * PRECISION)

        assert exc_info.value.compensated is False
        assert pool_1to2.snapshot() is before


class TestLifecycle:

    def test_reseed_after_full_withdrawal(self, pool_1to2):
        pool_1to2.remove_liquidity(ALICE, 100 * PRECISION)

        minted = pool_1to2.add_liquidity(BOB, 5, 7)

        assert minted == 100 * PRECISION
        assert (pool_1to2.reserve_a, pool_1to2.reserve_b) == (5, 7)
        assert pool_1to2.phase is PoolPhase.ACTIVE

    def test_reseed_disabled(self, token_a, token_b):
        pool = Pool(token_a, token_b, config=PoolConfig(allow_reseed=False))
        pool.add_liquidity(ALICE, 1000, 2000)
        pool.remove_liquidity(ALICE, 100 * PRECISION)

        with pytest.raises(PoolDrained):
            pool.add_liquidity(BOB, 5, 7)
        assert token_a.balance_of(BOB) == FUNDING

    def test_swap_after_full_withdrawal(self, pool_1to2):
        pool_1to2.remove_liquidity(ALICE, 100 * PRECISION)
        with pytest.raises(PoolNotActive):
            pool_1to2.swap_token_a(BOB, 10)

    def test_restore_from_snapshot(self, pool_1to2, token_a, token_b):
        pool_1to2.add_liquidity(BOB, 100, 200)
        pool_1to2.swap_token_a(BOB, 50)

        restored = Pool.restore(token_a, token_b, pool_1to2.snapshot())

        assert restored.get_pool_stats() == pool_1to2.get_pool_stats()
        assert restored.shares_of(BOB) == pool_1to2.shares_of(BOB)
        assert restored.calculate_token_b_swap(77) == pool_1to2.calculate_token_b_swap(77)

    def test_restore_rejects_inconsistent_state(self, token_a, token_b):
        state = PoolState(reserves=Reserves(10, 10, 100), book=ShareBook())
        with pytest.raises(InvariantViolation):
            Pool.restore(token_a, token_b, state)


class TestQueries:

    def test_deposit_companions(self, pool_1to2):
        assert pool_1to2.calculate_token_b_deposit(100) == 200
        assert pool_1to2.calculate_token_a_deposit(200) == 100
        assert pool_1to2.calculate_token_b_deposit(1) == 2

    def test_swap_quotes(self, pool_1to2):
        assert pool_1to2.calculate_token_a_swap(100) == 182
        assert pool_1to2.calculate_token_b_swap(200) == 91

    def test_withdraw_quote(self, pool_1to2):
        assert pool_1to2.calculate_withdraw_amount(10 * PRECISION) == (100, 200)
        assert pool_1to2.calculate_withdraw_amount(0) == (0, 0)
        with pytest.raises(InsufficientPoolShares):
            pool_1to2.calculate_withdraw_amount(101 * PRECISION)

    def test_queries_do_not_mutate(self, pool_1to2):
        before = pool_1to2.snapshot()
        pool_1to2.calculate_token_a_swap(500)
        pool_1to2.calculate_withdraw_amount(PRECISION)
        assert pool_1to2.snapshot() is before

    def test_queries_on_empty_pool(self, pool):
        with pytest.raises(PoolNotActive):
            pool.calculate_token_b_deposit(100)
        with pytest.raises(PoolNotActive):
            pool.calculate_token_a_swap(100)
        with pytest.raises(PoolNotActive):
            pool.calculate_withdraw_amount(0)

    def test_pool_stats(self, pool_1to2):
        stats = pool_1to2.get_pool_stats()

        assert stats['phase'] == 'active'
        assert stats['reserve_a'] == '1000'
        assert stats['constant_product'] == '2000000'
        assert stats['total_shares'] == str(100 * PRECISION)
        assert pool_1to2.current_price == Decimal(2)


class TestInvariants:

    def test_random_operation_sequence(self, pool, token_a, token_b):
        rng = random.Random(7)
        parties = [ALICE, BOB]
        pool.add_liquidity(ALICE, 10_000, 30_000)

        for _ in range(300):
            party = rng.choice(parties)
            action = rng.choice(['deposit', 'swap_a', 'swap_b', 'withdraw'])
            try:
                if action == 'deposit':
                    amount_a = rng.randint(1, 5_000)
                    pool.add_liquidity(party, amount_a, pool.calculate_token_b_deposit(amount_a))
                elif action == 'swap_a':
                    pool.swap_token_a(party, rng.randint(1, 5_000))
                elif action == 'swap_b':
                    pool.swap_token_b(party, rng.randint(1, 5_000))
                else:
                    owned = pool.shares_of(party)
                    if owned:
                        pool.remove_liquidity(party, rng.randint(1, owned))
            except PoolError:
                pass

            state = pool.snapshot()
            state.check_invariants()
            assert state.constant_product == state.reserve_a * state.reserve_b
            assert sum(state.book.positions.values()) == state.total_shares
            assert_balances_match_reserves(pool, token_a, token_b)

    def test_operation_listener(self, pool):
        events = []
        pool.add_operation_listener(lambda kind, status, latency: events.append((kind, status)))

        pool.add_liquidity(ALICE, 1000, 1000)
        with pytest.raises(RatioMismatch):
            pool.add_liquidity(BOB, 100, 300)
        pool.swap_token_a(BOB, 10)

        assert events == [
            ('deposit', 'committed'),
            ('deposit', 'rejected'),
            ('swap', 'committed'),
        ]


class TestConcurrency:

    def test_concurrent_swaps_and_readers(self, pool, token_a, token_b):
        pool.add_liquidity(ALICE, 10 ** 6, 10 ** 6)
        stop = threading.Event()
        torn_reads = []

        def reader():
            while not stop.is_set():
                state = pool.snapshot()
                if state.constant_product != state.reserve_a * state.reserve_b:
                    torn_reads.append(state)

        def swapper(i):
            party = ALICE if i % 2 else BOB
            if i % 3:
                return pool.swap_token_a(party, 100 + i)
            return pool.swap_token_b(party, 100 + i)

        reader_thread = threading.Thread(target=reader)
        reader_thread.start()
        try:
            with ThreadPoolExecutor(max_workers=8) as executor:
                futures = [executor.submit(swapper, i) for i in range(200)]
                results = [future.result() for future in as_completed(futures)]
        finally:
            stop.set()
            reader_thread.join()

        assert len(results) == 200
        assert torn_reads == []
        pool.check_invariants()
        assert_balances_match_reserves(pool, token_a, token_b)

    def test_concurrent_deposits_and_withdrawals(self, pool, token_a, token_b):
        pool.add_liquidity(ALICE, 10 ** 6, 2 * 10 ** 6)

        def provider(i):
            party = BOB if i % 2 else ALICE
            try:
                pool.add_liquidity(party, 1000, 2000)
                pool.remove_liquidity(party, PRECISION)
            except PoolError:
                pass

        with ThreadPoolExecutor(max_workers=8) as executor:
            for future in as_completed([executor.submit(provider, i) for i in range(100)]):
                future.result()

        pool.check_invariants()
        assert_balances_match_reserves(pool, token_a, token_b)
