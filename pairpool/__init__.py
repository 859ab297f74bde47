"""
Two-asset constant product liquidity pool.
"""
from pairpool.assets import POOL_ADDRESS, AssetLedger, AssetTransfer
from pairpool.config import PRECISION, Config, MonitoringConfig, PoolConfig
from pairpool.errors import (
    InsufficientOwnedShares,
    InsufficientPoolShares,
    InsufficientShareIssue,
    InvalidAmount,
    InvariantViolation,
    Overflow,
    PoolDrainage,
    PoolDrained,
    PoolError,
    PoolNotActive,
    RatioMismatch,
    TransferFailed,
)
from pairpool.pool import Pool, SwapRecord
from pairpool.state import PoolPhase, PoolState
