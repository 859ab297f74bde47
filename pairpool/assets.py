"""
Asset transfer collaborator.

The pool only needs to move units of an asset between a party and itself.
AssetTransfer describes that capability; AssetLedger is an in-memory
implementation with plain balances, usable wherever no external asset
system exists.
"""
import logging
import threading
from collections import defaultdict
from typing import Protocol

logger = logging.getLogger(__name__)

# Default party identifier of the pool itself
POOL_ADDRESS = b'\x00' * 19 + b'\x05'


class AssetTransfer(Protocol):
    """What the pool requires from each of its two assets."""

    symbol: str

    def transfer_from(self, sender, recipient, amount: int) -> bool:
        """Move amount from sender to recipient. Returns success."""
        ...

    def transfer(self, recipient, amount: int) -> bool:
        """Move amount from the pool's own balance to recipient. Returns success."""
        ...


class AssetLedger:
    """
    In-memory balances for one fungible asset.

    transfer() always debits `owner`, the party the asset system treats as
    the caller; for a pool's assets that is the pool's address.
    """

    def __init__(self, symbol: str, owner=POOL_ADDRESS):
        self.symbol = symbol
        self.owner = owner
        self.balances = defaultdict(int)
        self.lock = threading.Lock()

    def mint(self, party, amount: int):
        """Credit new units to party."""
        if amount < 0:
            raise ValueError("Cannot mint a negative amount")
        with self.lock:
            self.balances[party] += amount

    def balance_of(self, party) -> int:
        with self.lock:
            return self.balances.get(party, 0)

    def total_supply(self) -> int:
        with self.lock:
            return sum(self.balances.values())

    def transfer_from(self, sender, recipient, amount: int) -> bool:
        return self._move(sender, recipient, amount)

    def transfer(self, recipient, amount: int) -> bool:
        return self._move(self.owner, recipient, amount)

    def _move(self, sender, recipient, amount: int) -> bool:
        if amount < 0:
            return False
        with self.lock:
            if self.balances.get(sender, 0) < amount:
                logger.debug(f"Insufficient {self.symbol} balance for transfer of {amount}")
                return False
            self.balances[sender] -= amount
            self.balances[recipient] += amount
        return True

    def __repr__(self) -> str:
        return f"AssetLedger(symbol={self.symbol!r}, holders={len(self.balances)})"
