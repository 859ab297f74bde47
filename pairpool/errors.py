"""
Typed failures raised by pool operations.

Every error is scoped to the single operation that raised it: the pool
state is left exactly as it was before the call.
"""


class PoolError(Exception):
    """Base class for every rejected pool operation."""
    pass


class InvalidAmount(PoolError):
    """Raised when an amount or share count is not a usable unsigned integer."""

    def __init__(self, name: str, value):
        self.name = name
        self.value = value
        super().__init__(f"Invalid {name}: {value!r}")


class Overflow(PoolError):
    """Raised when a computed value would exceed the representable range."""

    def __init__(self, operation: str, value: int, bound: int):
        self.operation = operation
        self.value = value
        self.bound = bound
        super().__init__(f"Arithmetic overflow in {operation}: result exceeds {bound}")


class PoolNotActive(PoolError):
    """Raised when an operation needs outstanding shares but the pool has none."""
    pass


class PoolDrained(PoolError):
    """Raised when a fully redeemed pool refuses to be seeded again."""
    pass


class RatioMismatch(PoolError):
    """Raised when deposit amounts do not match the current reserve ratio."""

    def __init__(self, shares_a: int, shares_b: int, tolerance: int):
        self.shares_a = shares_a
        self.shares_b = shares_b
        self.tolerance = tolerance
        super().__init__(
            f"Deposit ratio mismatch: token A implies {shares_a} shares, "
            f"token B implies {shares_b} shares (tolerance divisor {tolerance})"
        )


class InsufficientShareIssue(PoolError):
    """Raised when a deposit is too small to mint a single share unit."""
    pass


class PoolDrainage(PoolError):
    """Raised when a swap would empty the opposite reserve."""

    def __init__(self, amount_out: int, reserve_out: int):
        self.amount_out = amount_out
        self.reserve_out = reserve_out
        super().__init__(
            f"Swap would drain pool: output {amount_out} against reserve {reserve_out}"
        )


class InsufficientPoolShares(PoolError):
    """Raised when more shares are requested than exist in the pool."""

    def __init__(self, requested: int, total_shares: int):
        self.requested = requested
        self.total_shares = total_shares
        super().__init__(
            f"Requested {requested} shares but pool has only {total_shares}"
        )


class InsufficientOwnedShares(PoolError):
    """Raised when a party redeems more shares than it owns."""

    def __init__(self, party, requested: int, owned: int):
        self.party = party
        self.requested = requested
        self.owned = owned
        super().__init__(
            f"Party {_format_party(party)} owns {owned} shares, requested {requested}"
        )


class TransferFailed(PoolError):
    """
    Raised when the asset transfer collaborator refuses or fails a transfer.

    Attributes:
        asset: Symbol of the asset being moved
        direction: 'in' for party -> pool, 'out' for pool -> party
        amount: Units requested
        compensated: False if reversing earlier transfers of the same
            operation also failed and balances need manual reconciliation
    """

    def __init__(self, asset: str, direction: str, party, amount: int,
                 compensated: bool = True):
        self.asset = asset
        self.direction = direction
        self.party = party
        self.amount = amount
        self.compensated = compensated
        super().__init__(
            f"Transfer of {amount} {asset} ({direction}) for party "
            f"{_format_party(party)} failed"
        )


class InvariantViolation(PoolError):
    """Raised when a pool state fails its consistency checks."""
    pass


def _format_party(party) -> str:
    if isinstance(party, (bytes, bytearray)):
        return party.hex()
    return str(party)
