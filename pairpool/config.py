"""
Configuration management for the liquidity pool.
"""
import json
import os
from dataclasses import dataclass, asdict

# Share scaling factor
PRECISION = 10 ** 18

# Shares minted by the deposit that initializes the pool, in PRECISION units
SEED_MULTIPLIER = 100

# Deposit share figures must agree after integer division by this value
RATIO_TOLERANCE = 1000

# Widest unsigned integer the pool will store or compute with
UINT256_MAX = 2 ** 256 - 1

SWAP_ROUNDING_MODES = ('floor', 'ceil')


@dataclass
class PoolConfig:
    """Pool arithmetic configuration."""
    precision: int = PRECISION
    seed_multiplier: int = SEED_MULTIPLIER
    ratio_tolerance: int = RATIO_TOLERANCE
    max_value: int = UINT256_MAX
    # 'floor' divides the product by the new input reserve truncating;
    # 'ceil' rounds the remaining output reserve up instead.
    swap_rounding: str = 'floor'
    # Seed again at the fixed issuance once every share has been redeemed
    allow_reseed: bool = True

    def __post_init__(self):
        if self.precision < 1:
            raise ValueError("precision must be positive")
        if self.seed_multiplier < 1:
            raise ValueError("seed_multiplier must be positive")
        if self.ratio_tolerance < 1:
            raise ValueError("ratio_tolerance must be at least 1")
        if self.max_value < 1:
            raise ValueError("max_value must be positive")
        if self.swap_rounding not in SWAP_ROUNDING_MODES:
            raise ValueError(
                f"swap_rounding must be one of {SWAP_ROUNDING_MODES}, "
                f"got {self.swap_rounding!r}"
            )

    @property
    def seed_shares(self) -> int:
        """Shares minted by the initializing deposit."""
        return self.seed_multiplier * self.precision


@dataclass
class MonitoringConfig:
    """Monitoring configuration."""
    host: str = "127.0.0.1"
    port: int = 9090
    enabled: bool = False


@dataclass
class Config:
    """Main configuration."""
    pool: PoolConfig
    monitoring: MonitoringConfig

    @classmethod
    def default(cls) -> 'Config':
        """Create default configuration."""
        return cls(
            pool=PoolConfig(),
            monitoring=MonitoringConfig()
        )

    @classmethod
    def from_file(cls, path: str) -> 'Config':
        """Load configuration from JSON file."""
        with open(path, 'r') as f:
            data = json.load(f)

        return cls(
            pool=PoolConfig(**data.get('pool', {})),
            monitoring=MonitoringConfig(**data.get('monitoring', {}))
        )

    def to_file(self, path: str):
        """Save configuration to JSON file."""
        os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'pool': asdict(self.pool),
            'monitoring': asdict(self.monitoring)
        }
