"""
Configuration module for cl-circle

Contains the CircleConfig dataclass that holds all tunable parameters
for the savings circle ledger and the reputation registry.

Every ledger operation captures a CircleConfigSnapshot at entry so a
runtime config change cannot alter fee or interest rates halfway
through a payout.
"""

from dataclasses import dataclass
from typing import Optional, Dict


# Type mapping for config fields (for validation)
CONFIG_FIELD_TYPES: Dict[str, type] = {
    'treasury_id': str,
    'protocol_fee_pct': int,
    'simulated_apr_pct': int,
    'protocol_interest_share_pct': int,
    'min_reputation_score': int,
    'contribution_score_unit': int,
    'lock_timeout_seconds': int,
    'dry_run': bool,
}

# Range constraints for numeric fields
CONFIG_FIELD_RANGES: Dict[str, tuple] = {
    'protocol_fee_pct': (0, 10),
    'simulated_apr_pct': (0, 100),
    'protocol_interest_share_pct': (0, 100),
    'min_reputation_score': (0, 1000),
    'contribution_score_unit': (1, 1_000_000_000),
    'lock_timeout_seconds': (1, 60),
}


@dataclass
class CircleConfig:
    """
    Configuration container for the circle plugin.

    All values can be set via plugin options at startup.
    """

    # Database path
    db_path: str = '~/.lightning/cl_circle.db'

    # Receiver of protocol fee withdrawals (defaults to our node at init)
    treasury_id: Optional[str] = None

    # Economics (integer percents, all math floors)
    protocol_fee_pct: int = 1                  # 1% of amount*members*duration at activation
    simulated_apr_pct: int = 4                 # 4% simulated yield per year
    protocol_interest_share_pct: int = 20      # Protocol keeps 20% of interest

    # Reputation
    min_reputation_score: int = 500            # Default threshold for meets-minimum checks
    contribution_score_unit: int = 1000        # 10 points per 1000 sats contributed

    # Serialization of guarded entry points
    lock_timeout_seconds: int = 10

    # Record payouts without sending funds
    dry_run: bool = False

    def snapshot(self) -> 'CircleConfigSnapshot':
        """
        Create an immutable snapshot for a single ledger operation.
        """
        return CircleConfigSnapshot.from_config(self)

    def validate(self) -> Optional[str]:
        """
        Validate configuration values.

        Returns:
            Error message if invalid, None if valid
        """
        for key, expected in CONFIG_FIELD_TYPES.items():
            value = getattr(self, key, None)
            if value is None:
                continue
            if expected is int and (isinstance(value, bool) or not isinstance(value, int)):
                return f"Config {key}={value!r} must be an integer"
            if expected is bool and not isinstance(value, bool):
                return f"Config {key}={value!r} must be a boolean"
            if expected is str and not isinstance(value, str):
                return f"Config {key}={value!r} must be a string"

        for key, (min_val, max_val) in CONFIG_FIELD_RANGES.items():
            value = getattr(self, key, None)
            if value is not None and not (min_val <= value <= max_val):
                return f"Config {key}={value} out of range [{min_val}, {max_val}]"

        return None


@dataclass(frozen=True)
class CircleConfigSnapshot:
    """
    Immutable configuration snapshot for one ledger operation.
    """

    db_path: str
    treasury_id: Optional[str]
    protocol_fee_pct: int
    simulated_apr_pct: int
    protocol_interest_share_pct: int
    min_reputation_score: int
    contribution_score_unit: int
    lock_timeout_seconds: int
    dry_run: bool

    @classmethod
    def from_config(cls, config: CircleConfig) -> 'CircleConfigSnapshot':
        """Create a frozen snapshot from mutable config."""
        return cls(
            db_path=config.db_path,
            treasury_id=config.treasury_id,
            protocol_fee_pct=config.protocol_fee_pct,
            simulated_apr_pct=config.simulated_apr_pct,
            protocol_interest_share_pct=config.protocol_interest_share_pct,
            min_reputation_score=config.min_reputation_score,
            contribution_score_unit=config.contribution_score_unit,
            lock_timeout_seconds=config.lock_timeout_seconds,
            dry_run=config.dry_run,
        )
