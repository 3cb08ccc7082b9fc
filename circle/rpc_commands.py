"""
RPC Command Handlers for cl-circle

This module contains the implementation logic for circle-* and
reputation-* RPC commands. The actual @plugin.method() decorators remain in
cl-circle.py, which creates thin wrappers that call these handler functions.

Design Pattern:
    - Each handler receives a CircleContext with all dependencies
    - Handlers are plain functions that can be easily tested
    - Domain errors (CircleError) are returned as {"error": code, "message": ...}
    - Caller identity defaults to our node's pubkey
"""

import functools
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, Optional

from .errors import CircleError


@dataclass
class CircleContext:
    """
    Context object holding all dependencies for RPC command handlers.
    """
    database: Any  # CircleDatabase
    config: Any    # CircleConfig
    ledger: Any    # CircleLedger
    reputation: Any  # ReputationRegistry
    our_pubkey: str
    log: Callable[[str, str], None] = None  # Logger function: (msg, level) -> None


def _error_response(exc: CircleError) -> Dict[str, Any]:
    return {"error": exc.code, "message": str(exc)}


def returns_error_dict(func: Callable[..., Dict[str, Any]]) -> Callable[..., Dict[str, Any]]:
    """Convert CircleError raised by a handler into the error-dict shape."""
    @functools.wraps(func)
    def wrapper(ctx: CircleContext, *args, **kwargs) -> Dict[str, Any]:
        if not ctx.ledger or not ctx.reputation:
            return {"error": "Not initialized"}
        try:
            return func(ctx, *args, **kwargs)
        except CircleError as e:
            if ctx.log:
                ctx.log(f"cl-circle: {func.__name__} failed: {e.code}: {e}", 'debug')
            return _error_response(e)
    return wrapper


def _parse_int(value: Any) -> Optional[int]:
    """Parse an integer RPC argument; None if it is not an integer."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isascii():
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _invalid(name: str, value: Any) -> Dict[str, Any]:
    return {"error": "invalid_argument", "message": f"{name} must be an integer, got {value!r}"}


# =============================================================================
# CIRCLE COMMANDS
# =============================================================================

@returns_error_dict
def create(ctx: CircleContext, amount_sats, frequency, duration,
           goal: Any = None, member_id: str = None) -> Dict[str, Any]:
    """
    Create a new savings circle.

    Args:
        ctx: CircleContext
        amount_sats: Contribution per period
        frequency: Period length in seconds
        duration: Number of rounds (3-12)
        goal: Goal category name or index
        member_id: Creator (defaults to our node)

    Returns:
        Dict with the new circle id and its metadata.
    """
    parsed = {}
    for name, value in (("amount_sats", amount_sats), ("frequency", frequency),
                        ("duration", duration)):
        parsed[name] = _parse_int(value)
        if parsed[name] is None:
            return _invalid(name, value)

    creator = member_id or ctx.our_pubkey
    circle_id = ctx.ledger.create_circle(
        creator, parsed["amount_sats"], parsed["frequency"], parsed["duration"], goal
    )
    return {
        "circle_id": circle_id,
        "circle": ctx.ledger.get_circle(circle_id).to_dict(),
    }


@returns_error_dict
def join(ctx: CircleContext, circle_id: str, amount_sats,
         member_id: str = None) -> Dict[str, Any]:
    """Join a pending circle, paying the round-0 contribution."""
    value = _parse_int(amount_sats)
    if value is None:
        return _invalid("amount_sats", amount_sats)

    circle = ctx.ledger.join_circle(member_id or ctx.our_pubkey, circle_id, value)
    return {
        "circle_id": circle_id,
        "status": circle.status.value,
        "member_count": len(circle.members),
        "balance_sats": circle.balance,
    }


@returns_error_dict
def contribute(ctx: CircleContext, circle_id: str, amount_sats,
               member_id: str = None) -> Dict[str, Any]:
    """Contribute for the current round of an active circle."""
    value = _parse_int(amount_sats)
    if value is None:
        return _invalid("amount_sats", amount_sats)

    circle = ctx.ledger.contribute(member_id or ctx.our_pubkey, circle_id, value)
    return {
        "circle_id": circle_id,
        "round": circle.current_round,
        "balance_sats": circle.balance,
    }


@returns_error_dict
def payout(ctx: CircleContext, circle_id: str, recipient: str) -> Dict[str, Any]:
    """
    Process the current round's payout to `recipient`.

    Permission: any caller (the round-complete and balance checks gate it)
    """
    result = ctx.ledger.process_payout(ctx.our_pubkey, circle_id, recipient)
    circle = ctx.ledger.get_circle(circle_id)
    return {
        "circle_id": circle_id,
        "payout": asdict(result),
        "total_sats": result.total,
        "status": circle.status.value,
        "current_round": circle.current_round,
    }


@returns_error_dict
def info(ctx: CircleContext, circle_id: str) -> Dict[str, Any]:
    """Full circle metadata plus the next payout preview."""
    circle = ctx.ledger.get_circle(circle_id)
    return {
        "circle": circle.to_dict(),
        "next_payout": ctx.ledger.calculate_payout(circle_id).to_dict(),
    }


@returns_error_dict
def list_circles(ctx: CircleContext, member_id: str = None) -> Dict[str, Any]:
    """List circles a member belongs to."""
    member = member_id or ctx.our_pubkey
    circle_ids = ctx.ledger.get_user_circles(member)
    return {
        "member_id": member,
        "count": len(circle_ids),
        "circles": [ctx.ledger.get_circle(cid).to_dict() for cid in circle_ids],
    }


@returns_error_dict
def contributions(ctx: CircleContext, circle_id: str) -> Dict[str, Any]:
    rows = ctx.ledger.get_contributions(circle_id)
    return {
        "circle_id": circle_id,
        "count": len(rows),
        "contributions": [asdict(c) for c in rows],
    }


@returns_error_dict
def payouts(ctx: CircleContext, circle_id: str) -> Dict[str, Any]:
    rows = ctx.ledger.get_payouts(circle_id)
    return {
        "circle_id": circle_id,
        "count": len(rows),
        "payouts": [asdict(p) for p in rows],
    }


@returns_error_dict
def has_contributed(ctx: CircleContext, circle_id: str, round_num,
                    member_id: str) -> Dict[str, Any]:
    parsed = _parse_int(round_num)
    if parsed is None:
        return _invalid("round", round_num)
    return {
        "circle_id": circle_id,
        "round": parsed,
        "member_id": member_id,
        "contributed": ctx.ledger.has_contributed(circle_id, parsed, member_id),
    }


@returns_error_dict
def events(ctx: CircleContext, circle_id: str = None, limit=100) -> Dict[str, Any]:
    """Most recent events, oldest first, as stored JSON payloads."""
    parsed = _parse_int(limit)
    if parsed is None or parsed <= 0:
        return _invalid("limit", limit)
    rows = ctx.ledger.get_events(circle_id=circle_id, limit=parsed)
    return {
        "count": len(rows),
        "events": [
            {"id": r["id"], "type": r["event_type"], "timestamp": r["timestamp"],
             "payload": r["payload"]}
            for r in rows
        ],
    }


@returns_error_dict
def fees(ctx: CircleContext) -> Dict[str, Any]:
    return {
        "protocol_fee_balance_sats": ctx.ledger.get_protocol_fee_balance(),
        "treasury_id": ctx.config.treasury_id,
    }


@returns_error_dict
def withdraw_fees(ctx: CircleContext) -> Dict[str, Any]:
    """
    Send accrued protocol fees to the treasury.

    Permission: this node (the coordinator) or the treasury
    """
    amount = ctx.ledger.withdraw_protocol_fees(ctx.our_pubkey)
    return {"withdrawn_sats": amount, "treasury_id": ctx.config.treasury_id}


def get_config(ctx: CircleContext) -> Dict[str, Any]:
    """Current configuration values."""
    if not ctx.config:
        return {"error": "Not initialized"}
    snapshot = ctx.config.snapshot()
    return asdict(snapshot)


# =============================================================================
# REPUTATION COMMANDS
# =============================================================================

@returns_error_dict
def reputation(ctx: CircleContext, user: str = None) -> Dict[str, Any]:
    """Reputation snapshot, raw score and tier name for a user."""
    user = user or ctx.our_pubkey
    rep = ctx.reputation.get_reputation(user)
    return {
        "reputation": rep.to_dict(),
        "score": ctx.reputation.get_score(user),
        "tier": ctx.reputation.get_tier_name(user),
    }


@returns_error_dict
def meets_minimum(ctx: CircleContext, user: str, min_score=None) -> Dict[str, Any]:
    if min_score is None:
        threshold = ctx.config.min_reputation_score
    else:
        threshold = _parse_int(min_score)
        if threshold is None:
            return _invalid("min_score", min_score)
    return {
        "user": user,
        "min_score": threshold,
        "meets_minimum": ctx.reputation.meets_minimum_score(user, threshold),
    }


@returns_error_dict
def authorize(ctx: CircleContext, address: str) -> Dict[str, Any]:
    """
    Add an address to the registry's authorized-caller list.

    Permission: registry owner only
    """
    added = ctx.reputation.authorize_caller(ctx.our_pubkey, address)
    return {
        "address": address,
        "authorized": True,
        "changed": added,
        "authorized_callers": ctx.reputation.get_authorized_callers(),
    }


@returns_error_dict
def revoke(ctx: CircleContext, address: str) -> Dict[str, Any]:
    """
    Remove an address from the registry's authorized-caller list.

    Permission: registry owner only
    """
    removed = ctx.reputation.revoke_caller(ctx.our_pubkey, address)
    return {
        "address": address,
        "authorized": False,
        "changed": removed,
        "authorized_callers": ctx.reputation.get_authorized_callers(),
    }
