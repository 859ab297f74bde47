"""
Reserve ledger: the two pool reserves and their constant product k.

Reserves are held in an immutable snapshot that is replaced as a whole on
every commit, so readers never see a product computed from other reserves
than the ones next to it.
"""
import logging
from dataclasses import dataclass

from pairpool.config import UINT256_MAX
from pairpool.errors import InvalidAmount, Overflow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Reserves:
    """A committed pair of reserves and the product derived from them."""
    reserve_a: int = 0
    reserve_b: int = 0
    constant_product: int = 0

    def to_dict(self) -> dict:
        return {
            'reserve_a': self.reserve_a,
            'reserve_b': self.reserve_b,
            'constant_product': self.constant_product,
        }


def bounded(value: int, bound: int, operation: str) -> int:
    """Return value unchanged, or raise Overflow if it exceeds bound."""
    if value > bound:
        raise Overflow(operation, value, bound)
    return value


class ReserveLedger:
    """
    Holds the current reserves. Performs no policy validation: callers
    decide whether a transition is allowed, the ledger only guarantees
    that a commit replaces reserves and product together.
    """

    def __init__(self, reserve_a: int = 0, reserve_b: int = 0,
                 max_value: int = UINT256_MAX):
        self.max_value = max_value
        self._reserves = self.stage(reserve_a, reserve_b)

    @property
    def reserves(self) -> Reserves:
        return self._reserves

    @property
    def reserve_a(self) -> int:
        return self._reserves.reserve_a

    @property
    def reserve_b(self) -> int:
        return self._reserves.reserve_b

    @property
    def constant_product(self) -> int:
        return self._reserves.constant_product

    def stage(self, reserve_a: int, reserve_b: int) -> Reserves:
        """
        Build the snapshot a commit of these reserves would produce.

        Raises:
            InvalidAmount: If a reserve is negative
            Overflow: If a reserve or their product exceeds max_value
        """
        if reserve_a < 0:
            raise InvalidAmount('reserve_a', reserve_a)
        if reserve_b < 0:
            raise InvalidAmount('reserve_b', reserve_b)

        bounded(reserve_a, self.max_value, 'reserve_a')
        bounded(reserve_b, self.max_value, 'reserve_b')
        product = bounded(reserve_a * reserve_b, self.max_value, 'constant_product')
        return Reserves(reserve_a, reserve_b, product)

    def install(self, reserves: Reserves):
        """Make a previously staged snapshot current."""
        self._reserves = reserves
        logger.debug(
            f"Reserves committed: a={reserves.reserve_a}, b={reserves.reserve_b}, "
            f"k={reserves.constant_product}"
        )

    def commit(self, reserve_a: int, reserve_b: int) -> Reserves:
        """Set new reserves and recompute k in one step."""
        reserves = self.stage(reserve_a, reserve_b)
        self.install(reserves)
        return reserves

    def __repr__(self) -> str:
        return (
            f"ReserveLedger("
            f"reserve_a={self.reserve_a}, "
            f"reserve_b={self.reserve_b}, "
            f"k={self.constant_product})"
        )
