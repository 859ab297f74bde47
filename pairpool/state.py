"""
Point-in-time pool state: phase, reserves and share positions.

A PoolState is what readers see and what gets persisted. Encoding uses
msgpack; parties may be bytes or str and survive the round trip as-is.
"""
from dataclasses import dataclass, field
from enum import Enum

import msgpack

from pairpool.accounting import ShareBook
from pairpool.errors import InvariantViolation
from pairpool.ledger import Reserves


class PoolPhase(Enum):
    UNINITIALIZED = 'uninitialized'
    ACTIVE = 'active'


@dataclass(frozen=True)
class PoolState:
    """Immutable snapshot of everything a pool owns."""
    phase: PoolPhase = PoolPhase.UNINITIALIZED
    reserves: Reserves = field(default_factory=Reserves)
    book: ShareBook = field(default_factory=ShareBook)

    @property
    def reserve_a(self) -> int:
        return self.reserves.reserve_a

    @property
    def reserve_b(self) -> int:
        return self.reserves.reserve_b

    @property
    def constant_product(self) -> int:
        return self.reserves.constant_product

    @property
    def total_shares(self) -> int:
        return self.book.total_shares

    def check_invariants(self):
        """
        Verify the pool state is internally consistent.

        Raises:
            InvariantViolation: Describing the first broken rule
        """
        reserves = self.reserves
        if reserves.reserve_a < 0 or reserves.reserve_b < 0:
            raise InvariantViolation("Reserves cannot be negative")

        if reserves.constant_product != reserves.reserve_a * reserves.reserve_b:
            raise InvariantViolation(
                f"Stale constant product: k={reserves.constant_product}, "
                f"a*b={reserves.reserve_a * reserves.reserve_b}"
            )

        if self.book.total_shares > 0:
            if self.phase is not PoolPhase.ACTIVE:
                raise InvariantViolation("Outstanding shares in an uninitialized pool")
            if reserves.reserve_a == 0 or reserves.reserve_b == 0:
                raise InvariantViolation("Active pool with an empty reserve")

        if self.phase is PoolPhase.UNINITIALIZED and (reserves.reserve_a or reserves.reserve_b):
            raise InvariantViolation("Uninitialized pool holding reserves")

        if sum(self.book.positions.values()) != self.book.total_shares:
            raise InvariantViolation("Share positions do not sum to total shares")

    def to_dict(self) -> dict:
        """
        Convert to dict for storage.
        """
        return {
            'phase': self.phase.value,
            'reserve_a': self.reserves.reserve_a,
            'reserve_b': self.reserves.reserve_b,
            'positions': [[party, shares] for party, shares in self.book.positions.items()],
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'PoolState':
        reserve_a = int(data['reserve_a'])
        reserve_b = int(data['reserve_b'])
        positions = {
            bytes(party) if isinstance(party, (bytes, bytearray)) else party: int(shares)
            for party, shares in data.get('positions', [])
        }
        return cls(
            phase=PoolPhase(data.get('phase', PoolPhase.UNINITIALIZED.value)),
            reserves=Reserves(reserve_a, reserve_b, reserve_a * reserve_b),
            book=ShareBook(positions),
        )

    def to_bytes(self) -> bytes:
        """Encode with msgpack. Values past 64 bits are stored as strings."""
        data = self.to_dict()
        data['reserve_a'] = str(data['reserve_a'])
        data['reserve_b'] = str(data['reserve_b'])
        data['positions'] = [[party, str(shares)] for party, shares in data['positions']]
        return msgpack.packb(data, use_bin_type=True)

    @classmethod
    def from_bytes(cls, raw: bytes) -> 'PoolState':
        return cls.from_dict(msgpack.unpackb(raw, raw=False))
