"""
Circle Ledger module for cl-circle

Implements rotating savings circles: a fixed group of members contributes
a fixed amount every period, and each round one member receives the pooled
contributions plus a simulated interest bonus.

Lifecycle:
    PENDING --(membership reaches MIN_MEMBERS)--> ACTIVE
    ACTIVE  --(current_round reaches duration)--> COMPLETED
    CANCELLED is defined but no transition leads to it.

Payout Math (integer sats, every division floors):
    round_pool        = contribution_amount * member_count
    interest          = round_pool * apr_pct * frequency / (SECONDS_PER_YEAR * 100)
    protocol_interest = interest * interest_share_pct / 100
    payout            = round_pool + (interest - protocol_interest)

Interest uses the contribution period as its time base, not elapsed
wall-clock time. It is not backed by escrow: with exact contributions the
escrow holds round_pool only, so a payout with non-zero interest needs
overpayment to clear the balance check.

Atomicity:
    Every mutating call runs in one database transaction. The outbound
    transfer is the last step inside it; if the transfer raises, all
    bookkeeping for the call (balances, flags, logs, events, reputation)
    is rolled back.

Thread Safety:
    join_circle, contribute, process_payout and withdraw_protocol_fees share
    a ReentrancyGuard: calls from different threads run one at a time, and a
    nested call on the same thread (e.g. from inside a transfer) fails fast
    with ReentrantCall.
"""

import hashlib
import threading
import time
from dataclasses import dataclass, asdict, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from .errors import (
    AlreadyMember,
    AlreadyPaidOut,
    CircleAlreadyActive,
    CircleFull,
    CircleNotActive,
    CircleNotFound,
    DuplicateContribution,
    InsufficientBalance,
    InsufficientContribution,
    InvalidAmount,
    InvalidDuration,
    InvalidFrequency,
    InvalidGoalType,
    LedgerBusy,
    NotMember,
    ReentrantCall,
    RoundIncomplete,
    TransferFailed,
    Unauthorized,
)
from .events import (
    CircleCompleted,
    CircleCreated,
    CircleStarted,
    ContributionMade,
    MemberJoined,
    PayoutProcessed,
    ProtocolFeesWithdrawn,
    record_event,
)


# =============================================================================
# CONSTANTS
# =============================================================================

MIN_MEMBERS = 3
MAX_MEMBERS = 12
SECONDS_PER_YEAR = 365 * 86400

# Identity the ledger presents to the reputation registry
LEDGER_ID = 'cl-circle-ledger'


# =============================================================================
# ENUMS
# =============================================================================

class CircleStatus(str, Enum):
    PENDING = 'pending'
    ACTIVE = 'active'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'  # No transition leads here yet


class GoalType(str, Enum):
    """Savings goal of a circle. Informational only."""
    EMERGENCY_FUND = 'emergency_fund'
    EDUCATION = 'education'
    BUSINESS = 'business'
    HOUSING = 'housing'
    TRAVEL = 'travel'
    GENERAL = 'general'


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class Circle:
    """A savings circle and its escrow."""
    circle_id: str
    creator: str
    contribution_amount: int
    frequency: int
    duration: int
    created_at: int
    start_time: int
    status: CircleStatus
    goal_type: GoalType
    members: List[str] = field(default_factory=list)
    current_round: int = 0
    total_pooled: int = 0
    total_interest_earned: int = 0
    balance: int = 0

    @classmethod
    def from_row(cls, row: Dict[str, Any], members: List[str]) -> 'Circle':
        return cls(
            circle_id=row['circle_id'],
            creator=row['creator'],
            contribution_amount=row['contribution_amount'],
            frequency=row['frequency'],
            duration=row['duration'],
            created_at=row['created_at'],
            start_time=row['start_time'],
            status=CircleStatus(row['status']),
            goal_type=GoalType(row['goal_type']),
            members=members,
            current_round=row['current_round'],
            total_pooled=row['total_pooled'],
            total_interest_earned=row['total_interest_earned'],
            balance=row['balance'],
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['status'] = self.status.value
        data['goal_type'] = self.goal_type.value
        data['member_count'] = len(self.members)
        return data


@dataclass
class Contribution:
    member: str
    amount: int
    timestamp: int
    round: int


@dataclass
class Payout:
    """A processed payout. `amount` is the round pool, `interest` the member bonus."""
    recipient: str
    amount: int
    interest: int
    timestamp: int
    round: int

    @property
    def total(self) -> int:
        return self.amount + self.interest


@dataclass
class PayoutQuote:
    """Breakdown of the next payout for a circle."""
    round_pool: int
    interest: int
    protocol_interest: int
    member_interest: int
    payout: int

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


def calculate_payout_amounts(contribution_amount: int, member_count: int,
                             frequency: int, apr_pct: int,
                             interest_share_pct: int) -> PayoutQuote:
    """Simple-interest payout for one round, using the period as time base."""
    round_pool = contribution_amount * member_count
    interest = round_pool * apr_pct * frequency // (SECONDS_PER_YEAR * 100)
    protocol_interest = interest * interest_share_pct // 100
    member_interest = interest - protocol_interest
    return PayoutQuote(
        round_pool=round_pool,
        interest=interest,
        protocol_interest=protocol_interest,
        member_interest=member_interest,
        payout=round_pool + member_interest,
    )


def make_circle_id(creator: str, created_at: int, amount: int, seq: int) -> str:
    """Circle id from creator, creation time and amount, salted with a sequence."""
    return hashlib.sha256(f"{creator}:{created_at}:{amount}:{seq}".encode()).hexdigest()


# =============================================================================
# REENTRANCY GUARD
# =============================================================================

class ReentrancyGuard:
    """
    Serialize guarded entry points and reject same-thread re-entry.

    Acquisition uses a timeout so a stuck call cannot stall every caller.
    """

    def __init__(self, timeout_seconds: int = 10):
        self.timeout_seconds = timeout_seconds
        self._lock = threading.Lock()
        self._local = threading.local()

    @property
    def entered(self) -> bool:
        return getattr(self._local, 'entered', False)

    def __enter__(self) -> 'ReentrancyGuard':
        if self.entered:
            raise ReentrantCall("Nested call into a guarded ledger entry point")
        if not self._lock.acquire(timeout=self.timeout_seconds):
            raise LedgerBusy(
                f"Ledger lock acquisition timed out after {self.timeout_seconds}s"
            )
        self._local.entered = True
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self._local.entered = False
        self._lock.release()
        return False


# =============================================================================
# CIRCLE LEDGER
# =============================================================================

Transfer = Callable[[str, int], Any]


class CircleLedger:
    """
    Owns circles, membership, contributions, escrow and payout rotation.

    Reputation updates are pushed to the registry inside the same
    transaction; the ledger never reads reputation back.
    """

    def __init__(self, database, config, transfer: Optional[Transfer] = None,
                 reputation=None, plugin=None, ledger_id: str = LEDGER_ID,
                 coordinator: Optional[str] = None):
        """
        Initialize the ledger.

        Args:
            database: CircleDatabase instance
            config: CircleConfig (snapshotted per operation)
            transfer: Callable(recipient, amount_sats) that sends value or
                raises TransferFailed
            reputation: ReputationRegistry to notify (optional)
            plugin: Plugin instance for logging (optional)
            ledger_id: Identity used when calling the registry
            coordinator: Node running the ledger; may withdraw fees to the
                treasury (optional)
        """
        self.db = database
        self.config = config
        self.transfer = transfer
        self.reputation = reputation
        self.plugin = plugin
        self.ledger_id = ledger_id
        self.coordinator = coordinator
        self._guard = ReentrancyGuard(config.lock_timeout_seconds)

    def _log(self, msg: str, level: str = "info") -> None:
        if self.plugin:
            self.plugin.log(f"[Ledger] {msg}", level=level)

    # =========================================================================
    # HELPERS
    # =========================================================================

    @staticmethod
    def parse_goal_type(goal: Union[GoalType, str, int, None]) -> GoalType:
        """Accept a GoalType, its value or name, or its index."""
        if goal is None:
            return GoalType.GENERAL
        if isinstance(goal, GoalType):
            return goal
        if isinstance(goal, int) and not isinstance(goal, bool):
            members = list(GoalType)
            if 0 <= goal < len(members):
                return members[goal]
            raise InvalidGoalType(f"Unknown goal index {goal}")
        if isinstance(goal, str):
            text = goal.strip().lower()
            for goal_type in GoalType:
                if text in (goal_type.value, goal_type.name.lower()):
                    return goal_type
        raise InvalidGoalType(f"Unknown goal type {goal!r}")

    def _require_circle(self, circle_id: str) -> Circle:
        row = self.db.get_circle(circle_id)
        if not row:
            raise CircleNotFound(f"Circle {circle_id} does not exist")
        return Circle.from_row(row, self.db.get_circle_members(circle_id))

    def _save_circle(self, circle: Circle) -> None:
        self.db.update_circle(
            circle.circle_id,
            start_time=circle.start_time,
            status=circle.status.value,
            current_round=circle.current_round,
            total_pooled=circle.total_pooled,
            total_interest_earned=circle.total_interest_earned,
            balance=circle.balance,
        )

    def _credit_contribution(self, circle: Circle, member: str, value: int,
                             now: int, on_time: bool) -> None:
        """Log a contribution for the current round and pool the full value."""
        self.db.record_circle_contribution(
            circle.circle_id, member, value, now, circle.current_round
        )
        circle.total_pooled += value
        circle.balance += value
        record_event(self.db, ContributionMade(
            circle_id=circle.circle_id,
            member=member,
            amount=value,
            round=circle.current_round,
        ), circle_id=circle.circle_id, timestamp=now)
        if self.reputation:
            self.reputation.record_contribution(self.ledger_id, member, value, on_time)

    def _send(self, recipient: str, amount: int) -> None:
        if self.transfer is None:
            raise TransferFailed("No transfer method configured")
        try:
            self.transfer(recipient, amount)
        except TransferFailed:
            raise
        except Exception as e:
            raise TransferFailed(f"Transfer to {recipient[:16]} failed: {e}") from e

    # =========================================================================
    # CIRCLE LIFECYCLE
    # =========================================================================

    def create_circle(self, caller: str, contribution_amount: int, frequency: int,
                      duration: int, goal_type: Union[GoalType, str, int, None] = None) -> str:
        """
        Create a PENDING circle with the caller as its only member.

        No funds move. The creator contributes for round 0 once the circle
        is active.

        Returns:
            The new circle id
        """
        if not isinstance(contribution_amount, int) or contribution_amount <= 0:
            raise InvalidAmount(f"Contribution amount must be positive, got {contribution_amount}")
        if not isinstance(duration, int) or not (MIN_MEMBERS <= duration <= MAX_MEMBERS):
            raise InvalidDuration(
                f"Duration must be between {MIN_MEMBERS} and {MAX_MEMBERS}, got {duration}"
            )
        if not isinstance(frequency, int) or frequency <= 0:
            raise InvalidFrequency(f"Frequency must be a positive number of seconds, got {frequency}")
        goal = self.parse_goal_type(goal_type)

        now = int(time.time())
        with self.db.transaction():
            seq = self.db.next_circle_seq()
            circle_id = make_circle_id(caller, now, contribution_amount, seq)
            self.db.insert_circle(
                circle_id, seq, caller, contribution_amount, frequency,
                duration, now, CircleStatus.PENDING.value, goal.value
            )
            self.db.add_circle_member(circle_id, caller, now)
            record_event(self.db, CircleCreated(
                circle_id=circle_id,
                creator=caller,
                contribution_amount=contribution_amount,
                frequency=frequency,
                duration=duration,
                goal_type=goal.value,
            ), circle_id=circle_id, timestamp=now)
            if self.reputation:
                self.reputation.initialize_user(self.ledger_id, caller)
                self.reputation.record_circle_joined(self.ledger_id, caller)

        self._log(
            f"Circle {circle_id[:16]}... created by {caller[:16]}... "
            f"({contribution_amount} sats x {duration} rounds, goal={goal.value})"
        )
        return circle_id

    def join_circle(self, caller: str, circle_id: str, value: int) -> Circle:
        """
        Join a PENDING circle, paying the round-0 contribution.

        The full value is pooled (overpayment is not refunded). Reaching
        MIN_MEMBERS activates the circle and accrues the one-time protocol
        fee to the fee bucket, not to escrow.
        """
        with self._guard:
            cfg = self.config.snapshot()
            with self.db.transaction():
                circle = self._require_circle(circle_id)
                if circle.status != CircleStatus.PENDING:
                    raise CircleAlreadyActive(f"Circle {circle_id[:16]}... is {circle.status.value}")
                if caller in circle.members:
                    raise AlreadyMember(f"{caller[:16]}... already belongs to circle {circle_id[:16]}...")
                if len(circle.members) >= MAX_MEMBERS:
                    raise CircleFull(f"Circle {circle_id[:16]}... has {MAX_MEMBERS} members")
                if value < circle.contribution_amount:
                    raise InsufficientContribution(
                        f"Sent {value} sats, contribution is {circle.contribution_amount}"
                    )

                now = int(time.time())
                self.db.add_circle_member(circle_id, caller, now)
                circle.members.append(caller)
                record_event(self.db, MemberJoined(
                    circle_id=circle_id,
                    member=caller,
                    member_count=len(circle.members),
                ), circle_id=circle_id, timestamp=now)
                if self.reputation:
                    self.reputation.record_circle_joined(self.ledger_id, caller)

                self._credit_contribution(circle, caller, value, now, on_time=True)

                started = False
                if len(circle.members) >= MIN_MEMBERS:
                    circle.status = CircleStatus.ACTIVE
                    circle.start_time = now
                    fee = (circle.contribution_amount * len(circle.members)
                           * circle.duration * cfg.protocol_fee_pct // 100)
                    self.db.add_protocol_fees(fee)
                    record_event(self.db, CircleStarted(
                        circle_id=circle_id,
                        start_time=now,
                        member_count=len(circle.members),
                    ), circle_id=circle_id, timestamp=now)
                    started = True

                self._save_circle(circle)

        self._log(f"{caller[:16]}... joined circle {circle_id[:16]}... with {value} sats")
        if started:
            self._log(f"Circle {circle_id[:16]}... started with {len(circle.members)} members")
        return circle

    def contribute(self, caller: str, circle_id: str, value: int) -> Circle:
        """
        Contribute for the current round of an ACTIVE circle.

        Contributions after the current period ends still count for the
        round but are reported to the registry as missed payments.
        """
        with self._guard:
            with self.db.transaction():
                circle = self._require_circle(circle_id)
                if circle.status != CircleStatus.ACTIVE:
                    raise CircleNotActive(f"Circle {circle_id[:16]}... is {circle.status.value}")
                if caller not in circle.members:
                    raise NotMember(f"{caller[:16]}... is not a member of {circle_id[:16]}...")
                if self.db.has_contributed(circle_id, circle.current_round, caller):
                    raise DuplicateContribution(
                        f"{caller[:16]}... already contributed in round {circle.current_round}"
                    )
                if value < circle.contribution_amount:
                    raise InsufficientContribution(
                        f"Sent {value} sats, contribution is {circle.contribution_amount}"
                    )

                now = int(time.time())
                deadline = circle.start_time + (circle.current_round + 1) * circle.frequency
                on_time = now <= deadline
                self._credit_contribution(circle, caller, value, now, on_time=on_time)
                self._save_circle(circle)

        if not on_time:
            self._log(
                f"Late contribution from {caller[:16]}... in circle {circle_id[:16]}... "
                f"round {circle.current_round}",
                level='warn'
            )
        return circle

    def process_payout(self, caller: str, circle_id: str, recipient: str) -> Payout:
        """
        Pay the current round's pool plus member interest to `recipient`.

        Requires every current member to have contributed this round and the
        recipient never to have been paid by this circle. Advances the round
        and completes the circle when the round count reaches its duration.

        `caller` is not checked: anyone may trigger a payout once the round
        is complete. It is recorded in the log line only.
        """
        with self._guard:
            cfg = self.config.snapshot()
            with self.db.transaction():
                circle = self._require_circle(circle_id)
                if circle.status != CircleStatus.ACTIVE:
                    raise CircleNotActive(f"Circle {circle_id[:16]}... is {circle.status.value}")
                if recipient not in circle.members:
                    raise NotMember(f"{recipient[:16]}... is not a member of {circle_id[:16]}...")
                if self.db.has_received_payout(circle_id, recipient):
                    raise AlreadyPaidOut(f"{recipient[:16]}... was already paid by {circle_id[:16]}...")

                contributed = 0
                for member in circle.members:
                    if self.db.has_contributed(circle_id, circle.current_round, member):
                        contributed += 1
                if contributed < len(circle.members):
                    raise RoundIncomplete(
                        f"Round {circle.current_round}: {contributed}/{len(circle.members)} contributed"
                    )

                quote = calculate_payout_amounts(
                    circle.contribution_amount,
                    len(circle.members),
                    circle.frequency,
                    cfg.simulated_apr_pct,
                    cfg.protocol_interest_share_pct,
                )
                if circle.balance < quote.payout:
                    raise InsufficientBalance(
                        f"Escrow {circle.balance} sats < payout {quote.payout} sats"
                    )

                now = int(time.time())
                paid_round = circle.current_round
                circle.balance -= quote.payout
                circle.total_interest_earned += quote.member_interest
                self.db.record_circle_payout(
                    circle_id, recipient, quote.round_pool, quote.member_interest,
                    now, paid_round
                )
                self.db.add_protocol_fees(quote.protocol_interest)
                record_event(self.db, PayoutProcessed(
                    circle_id=circle_id,
                    recipient=recipient,
                    amount=quote.payout,
                    interest=quote.member_interest,
                    round=paid_round,
                ), circle_id=circle_id, timestamp=now)

                circle.current_round += 1
                completed = circle.current_round >= circle.duration
                if completed:
                    circle.status = CircleStatus.COMPLETED
                    record_event(self.db, CircleCompleted(
                        circle_id=circle_id,
                        total_pooled=circle.total_pooled,
                        total_interest=circle.total_interest_earned,
                    ), circle_id=circle_id, timestamp=now)
                    if self.reputation:
                        for member in circle.members:
                            self.reputation.record_circle_completion(self.ledger_id, member)

                self._save_circle(circle)

                # Value leaves last; a failure here rolls back everything above
                self._send(recipient, quote.payout)

        self._log(
            f"Paid {quote.payout} sats ({quote.member_interest} interest) to "
            f"{recipient[:16]}... from circle {circle_id[:16]}... round {paid_round} "
            f"(triggered by {caller[:16]}...)"
        )
        if completed:
            self._log(f"Circle {circle_id[:16]}... completed after {circle.duration} rounds")

        return Payout(
            recipient=recipient,
            amount=quote.round_pool,
            interest=quote.member_interest,
            timestamp=now,
            round=paid_round,
        )

    def withdraw_protocol_fees(self, caller: str) -> int:
        """
        Send the whole protocol fee bucket to the treasury.

        The bucket is a running counter shared by all circles; it is not
        drawn from, or checked against, any single circle's escrow.

        Returns:
            Amount withdrawn in sats
        """
        with self._guard:
            cfg = self.config.snapshot()
            if not cfg.treasury_id:
                raise Unauthorized("No protocol treasury configured")
            if caller not in (cfg.treasury_id, self.coordinator):
                raise Unauthorized(
                    f"{caller[:16]}... is neither the protocol treasury nor the coordinator"
                )
            with self.db.transaction():
                amount = self.db.get_protocol_fee_balance()
                if amount <= 0:
                    raise InsufficientBalance("No protocol fees to withdraw")
                self.db.set_protocol_fee_balance(0)
                record_event(self.db, ProtocolFeesWithdrawn(
                    treasury=cfg.treasury_id,
                    amount=amount,
                ))
                self._send(cfg.treasury_id, amount)

        self._log(f"Withdrew {amount} sats of protocol fees to treasury")
        return amount

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_circle(self, circle_id: str) -> Circle:
        return self._require_circle(circle_id)

    def get_members(self, circle_id: str) -> List[str]:
        self._require_circle(circle_id)
        return self.db.get_circle_members(circle_id)

    def get_contributions(self, circle_id: str) -> List[Contribution]:
        self._require_circle(circle_id)
        return [Contribution(**row) for row in self.db.get_circle_contributions(circle_id)]

    def get_payouts(self, circle_id: str) -> List[Payout]:
        self._require_circle(circle_id)
        return [Payout(**row) for row in self.db.get_circle_payouts(circle_id)]

    def has_contributed(self, circle_id: str, round_num: int, member: str) -> bool:
        return self.db.has_contributed(circle_id, round_num, member)

    def has_received_payout(self, circle_id: str, member: str) -> bool:
        return self.db.has_received_payout(circle_id, member)

    def get_circle_balance(self, circle_id: str) -> int:
        return self._require_circle(circle_id).balance

    def get_protocol_fee_balance(self) -> int:
        return self.db.get_protocol_fee_balance()

    def get_user_circles(self, member: str) -> List[str]:
        return self.db.get_member_circles(member)

    def get_circle_count(self) -> int:
        return self.db.get_circle_count()

    def calculate_payout(self, circle_id: str) -> PayoutQuote:
        """Preview the next payout without changing anything."""
        circle = self._require_circle(circle_id)
        cfg = self.config.snapshot()
        return calculate_payout_amounts(
            circle.contribution_amount,
            len(circle.members),
            circle.frequency,
            cfg.simulated_apr_pct,
            cfg.protocol_interest_share_pct,
        )

    def get_events(self, circle_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        return self.db.get_events(circle_id=circle_id, limit=limit)
