"""
Reputation Registry module for cl-circle

Tracks per-user reputation counters fed by the circle ledger and derives
a capped score and a discrete tier from them.

Score Formula (recomputed after every contribution or completion):
- 50 points per completed circle
- up to 500 points for the on-time payment ratio (0 with no payments)
- minus 100 points per missed payment (running total floored at 0)
- 10 points per contribution unit contributed (1000 sats by default)
- 5 points per 30-day month since the account was first seen
- capped at 1000

Tiers: [0,250) BRONZE, [250,500) SILVER, [500,750) GOLD,
[750,1000) PLATINUM, 1000 DIAMOND.

The account-age term depends on the time of the recompute, so a stored
score is a snapshot, not an invariant of the counters.

Security: every mutator requires the caller to be on the allowlist that
the registry owner maintains.
"""

import time
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import Unauthorized
from .events import (
    CallerAuthorized,
    CallerRevoked,
    ReputationUpdated,
    record_event,
)


# Score weights
POINTS_PER_COMPLETED_CIRCLE = 50
ON_TIME_RATIO_POINTS = 500
MISSED_PAYMENT_PENALTY = 100
POINTS_PER_CONTRIBUTION_UNIT = 10
POINTS_PER_MONTH = 5
MAX_SCORE = 1000

DEFAULT_CONTRIBUTION_UNIT = 1000   # sats per contribution step
SECONDS_PER_MONTH = 30 * 86400


class ReputationTier(str, Enum):
    """Discrete reputation brackets derived from the capped score."""
    BRONZE = "BRONZE"
    SILVER = "SILVER"
    GOLD = "GOLD"
    PLATINUM = "PLATINUM"
    DIAMOND = "DIAMOND"


# Lower bound of each tier, highest first
TIER_THRESHOLDS = (
    (1000, ReputationTier.DIAMOND),
    (750, ReputationTier.PLATINUM),
    (500, ReputationTier.GOLD),
    (250, ReputationTier.SILVER),
    (0, ReputationTier.BRONZE),
)


@dataclass
class UserReputation:
    """Reputation counters and the derived score for one user."""
    user: str
    circles_completed: int = 0
    circles_active: int = 0
    total_contributed: int = 0
    on_time_payments: int = 0
    missed_payments: int = 0
    account_created: int = 0
    last_active: int = 0
    reputation_score: int = 0
    tier: str = ReputationTier.BRONZE.value

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'UserReputation':
        return cls(**{k: row[k] for k in cls.__dataclass_fields__ if k in row})


def calculate_score(rep: UserReputation, now: int,
                    contribution_unit: int = DEFAULT_CONTRIBUTION_UNIT) -> int:
    """
    Compute the capped reputation score from counters at time `now`.

    Pure function: identical counters and time always give the same score.
    """
    score = rep.circles_completed * POINTS_PER_COMPLETED_CIRCLE

    total_payments = rep.on_time_payments + rep.missed_payments
    if total_payments > 0:
        score += rep.on_time_payments * ON_TIME_RATIO_POINTS // total_payments

    penalty = rep.missed_payments * MISSED_PAYMENT_PENALTY
    score = score - penalty if score > penalty else 0

    score += (rep.total_contributed // contribution_unit) * POINTS_PER_CONTRIBUTION_UNIT

    if rep.account_created > 0 and now > rep.account_created:
        months = (now - rep.account_created) // SECONDS_PER_MONTH
        score += months * POINTS_PER_MONTH

    return min(score, MAX_SCORE)


def tier_for_score(score: int) -> ReputationTier:
    for threshold, tier in TIER_THRESHOLDS:
        if score >= threshold:
            return tier
    return ReputationTier.BRONZE


class ReputationRegistry:
    """
    Owns per-user reputation state.

    The ledger is a passive producer: it tells the registry about joins,
    contributions and completions and never reads reputation back.
    """

    def __init__(self, database, owner: str, plugin=None,
                 contribution_unit: int = DEFAULT_CONTRIBUTION_UNIT):
        """
        Initialize the registry.

        Args:
            database: CircleDatabase instance (shared with the ledger)
            owner: Identity allowed to manage the authorized-caller list
            plugin: Plugin instance for logging (optional)
            contribution_unit: Sats per contribution score step
        """
        self.db = database
        self.owner = owner
        self.plugin = plugin
        self.contribution_unit = contribution_unit

    def _log(self, msg: str, level: str = "info") -> None:
        if self.plugin:
            self.plugin.log(f"[Reputation] {msg}", level=level)

    # =========================================================================
    # AUTHORIZATION
    # =========================================================================

    def _require_owner(self, caller: str) -> None:
        if caller != self.owner:
            raise Unauthorized(f"{caller[:16]} is not the registry owner")

    def _require_authorized(self, caller: str) -> None:
        if not self.db.is_authorized_caller(caller):
            raise Unauthorized(f"{caller[:16]} is not an authorized caller")

    def authorize_caller(self, caller: str, address: str) -> bool:
        """
        Add an address to the allowlist.

        Returns:
            True if newly added, False if it was already authorized
        """
        self._require_owner(caller)
        with self.db.transaction():
            added = self.db.add_authorized_caller(address)
            if added:
                record_event(self.db, CallerAuthorized(caller=address))
        if added:
            self._log(f"Authorized caller {address[:16]}")
        return added

    def revoke_caller(self, caller: str, address: str) -> bool:
        """
        Remove an address from the allowlist.

        Returns:
            True if removed, False if it was not authorized
        """
        self._require_owner(caller)
        with self.db.transaction():
            removed = self.db.remove_authorized_caller(address)
            if removed:
                record_event(self.db, CallerRevoked(caller=address))
        if removed:
            self._log(f"Revoked caller {address[:16]}")
        return removed

    def is_authorized(self, address: str) -> bool:
        return self.db.is_authorized_caller(address)

    def get_authorized_callers(self) -> List[str]:
        return self.db.get_authorized_callers()

    # =========================================================================
    # MUTATORS (authorized callers only)
    # =========================================================================

    def _load(self, user: str, now: int) -> UserReputation:
        """Load a user's counters, creating them on first touch."""
        row = self.db.get_user_reputation(user)
        rep = UserReputation.from_row(row) if row else UserReputation(user=user)
        if rep.account_created == 0:
            rep.account_created = now
            rep.last_active = now
        return rep

    def _save(self, rep: UserReputation) -> None:
        self.db.save_user_reputation(
            rep.user,
            circles_completed=rep.circles_completed,
            circles_active=rep.circles_active,
            total_contributed=rep.total_contributed,
            on_time_payments=rep.on_time_payments,
            missed_payments=rep.missed_payments,
            account_created=rep.account_created,
            last_active=rep.last_active,
            reputation_score=rep.reputation_score,
            tier=rep.tier,
        )

    def _update_score(self, rep: UserReputation, now: int) -> None:
        rep.reputation_score = calculate_score(rep, now, self.contribution_unit)
        rep.tier = tier_for_score(rep.reputation_score).value
        record_event(self.db, ReputationUpdated(
            user=rep.user,
            new_score=rep.reputation_score,
            tier=rep.tier,
        ), timestamp=now)

    def initialize_user(self, caller: str, user: str) -> None:
        """Set account timestamps on first touch. Idempotent."""
        self._require_authorized(caller)
        now = int(time.time())
        with self.db.transaction():
            row = self.db.get_user_reputation(user)
            if row and row["account_created"] != 0:
                return
            self._save(self._load(user, now))

    def record_contribution(self, caller: str, user: str, amount: int,
                            on_time: bool) -> UserReputation:
        self._require_authorized(caller)
        now = int(time.time())
        with self.db.transaction():
            rep = self._load(user, now)
            rep.total_contributed += amount
            if on_time:
                rep.on_time_payments += 1
            else:
                rep.missed_payments += 1
            rep.last_active = now
            self._update_score(rep, now)
            self._save(rep)
        return rep

    def record_circle_completion(self, caller: str, user: str) -> UserReputation:
        self._require_authorized(caller)
        now = int(time.time())
        with self.db.transaction():
            rep = self._load(user, now)
            rep.circles_completed += 1
            if rep.circles_active > 0:
                rep.circles_active -= 1
            rep.last_active = now
            self._update_score(rep, now)
            self._save(rep)
        return rep

    def record_circle_joined(self, caller: str, user: str) -> UserReputation:
        """Count an active circle. Does not recompute the score."""
        self._require_authorized(caller)
        now = int(time.time())
        with self.db.transaction():
            rep = self._load(user, now)
            rep.circles_active += 1
            rep.last_active = now
            self._save(rep)
        return rep

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_reputation(self, user: str) -> UserReputation:
        """Stored snapshot; all zeros for an unknown user."""
        row = self.db.get_user_reputation(user)
        return UserReputation.from_row(row) if row else UserReputation(user=user)

    def get_score(self, user: str) -> int:
        return self.get_reputation(user).reputation_score

    def get_tier_name(self, user: str) -> str:
        return self.get_reputation(user).tier

    def meets_minimum_score(self, user: str, min_score: int) -> bool:
        return self.get_score(user) >= min_score

    def preview_score(self, user: str, now: Optional[int] = None) -> int:
        """Score the stored counters would produce if recomputed at `now`."""
        if now is None:
            now = int(time.time())
        return calculate_score(self.get_reputation(user), now, self.contribution_unit)
