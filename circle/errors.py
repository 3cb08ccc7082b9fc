"""
Domain errors for cl-circle.

Every error aborts the whole call: the ledger and registry raise inside a
database transaction, so the rollback discards any mutation made before
the failing check. RPC handlers turn these into {"error": code} dicts.
"""


class CircleError(Exception):
    """Base class for all ledger and registry errors."""
    code = "circle_error"


# =============================================================================
# LEDGER ERRORS
# =============================================================================

class InvalidAmount(CircleError):
    """Raised when a contribution amount is zero or negative."""
    code = "invalid_amount"


class InvalidDuration(CircleError):
    """Raised when a duration falls outside [MIN_MEMBERS, MAX_MEMBERS]."""
    code = "invalid_duration"


class InvalidFrequency(CircleError):
    """Raised when a contribution period is not a positive number of seconds."""
    code = "invalid_frequency"


class InvalidGoalType(CircleError):
    """Raised when the goal category is not one of GoalType."""
    code = "invalid_goal_type"


class CircleNotFound(CircleError):
    code = "circle_not_found"


class CircleAlreadyActive(CircleError):
    """Raised when joining a circle that is no longer PENDING."""
    code = "circle_already_active"


class CircleNotActive(CircleError):
    code = "circle_not_active"


class AlreadyMember(CircleError):
    code = "already_member"


class NotMember(CircleError):
    code = "not_member"


class CircleFull(CircleError):
    code = "circle_full"


class InsufficientContribution(CircleError):
    """Raised when the attached value is below the circle's contribution amount."""
    code = "insufficient_contribution"


class DuplicateContribution(CircleError):
    """Raised when a member contributes twice in the same round."""
    code = "duplicate_contribution"


class AlreadyPaidOut(CircleError):
    """Raised when the recipient already received this circle's payout."""
    code = "already_paid_out"


class RoundIncomplete(CircleError):
    """Raised when a payout is requested before every member contributed."""
    code = "round_incomplete"


class InsufficientBalance(CircleError):
    """Raised when escrow (or the fee bucket) cannot cover a transfer."""
    code = "insufficient_balance"


class TransferFailed(CircleError):
    """Raised when the outbound value transfer fails."""
    code = "transfer_failed"


class ReentrantCall(CircleError):
    """Raised when a guarded entry point is re-entered on the same call stack."""
    code = "reentrant_call"


class LedgerBusy(CircleError):
    """Raised when the ledger lock cannot be acquired within the timeout."""
    code = "ledger_busy"


# =============================================================================
# REGISTRY ERRORS
# =============================================================================

class Unauthorized(CircleError):
    """Raised when a caller lacks permission for a mutating entry point."""
    code = "unauthorized"
