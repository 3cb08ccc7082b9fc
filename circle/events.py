"""
Event module for cl-circle

Defines the immutable event records emitted by the ledger and the
reputation registry. Events are the durable, append-only record of what
happened and are consumed by external indexers.

Encoding:
    Each event is serialized as compact JSON. Keys appear in the dataclass
    declaration order (never sorted), so the encoding of a given event is
    byte-stable across releases. New fields may only be appended.

    {"type":"payout_processed","circle_id":"..","recipient":"..",...}
"""

import json
import time
from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, Dict, Optional, Type


class EventType(str, Enum):
    """
    Event types emitted by the ledger and registry.

    Using str, Enum for JSON serialization compatibility.
    """
    CIRCLE_CREATED = 'circle_created'
    MEMBER_JOINED = 'member_joined'
    CIRCLE_STARTED = 'circle_started'
    CONTRIBUTION_MADE = 'contribution_made'
    PAYOUT_PROCESSED = 'payout_processed'
    CIRCLE_COMPLETED = 'circle_completed'
    REPUTATION_UPDATED = 'reputation_updated'
    PROTOCOL_FEES_WITHDRAWN = 'protocol_fees_withdrawn'
    CALLER_AUTHORIZED = 'caller_authorized'
    CALLER_REVOKED = 'caller_revoked'


# =============================================================================
# EVENT RECORDS
# =============================================================================

@dataclass(frozen=True)
class CircleCreated:
    circle_id: str
    creator: str
    contribution_amount: int
    frequency: int
    duration: int
    goal_type: str

    event_type = EventType.CIRCLE_CREATED


@dataclass(frozen=True)
class MemberJoined:
    circle_id: str
    member: str
    member_count: int

    event_type = EventType.MEMBER_JOINED


@dataclass(frozen=True)
class CircleStarted:
    circle_id: str
    start_time: int
    member_count: int

    event_type = EventType.CIRCLE_STARTED


@dataclass(frozen=True)
class ContributionMade:
    circle_id: str
    member: str
    amount: int
    round: int

    event_type = EventType.CONTRIBUTION_MADE


@dataclass(frozen=True)
class PayoutProcessed:
    circle_id: str
    recipient: str
    amount: int
    interest: int
    round: int

    event_type = EventType.PAYOUT_PROCESSED


@dataclass(frozen=True)
class CircleCompleted:
    circle_id: str
    total_pooled: int
    total_interest: int

    event_type = EventType.CIRCLE_COMPLETED


@dataclass(frozen=True)
class ReputationUpdated:
    user: str
    new_score: int
    tier: str

    event_type = EventType.REPUTATION_UPDATED


@dataclass(frozen=True)
class ProtocolFeesWithdrawn:
    treasury: str
    amount: int

    event_type = EventType.PROTOCOL_FEES_WITHDRAWN


@dataclass(frozen=True)
class CallerAuthorized:
    caller: str

    event_type = EventType.CALLER_AUTHORIZED


@dataclass(frozen=True)
class CallerRevoked:
    caller: str

    event_type = EventType.CALLER_REVOKED


EVENT_CLASSES: Dict[EventType, Type] = {
    cls.event_type: cls for cls in (
        CircleCreated, MemberJoined, CircleStarted, ContributionMade,
        PayoutProcessed, CircleCompleted, ReputationUpdated,
        ProtocolFeesWithdrawn, CallerAuthorized, CallerRevoked,
    )
}


# =============================================================================
# SERIALIZATION
# =============================================================================

def event_to_dict(event: Any) -> Dict[str, Any]:
    """Return the event as an ordered dict, type first."""
    data: Dict[str, Any] = {"type": event.event_type.value}
    for f in fields(event):
        data[f.name] = getattr(event, f.name)
    return data


def serialize_event(event: Any) -> str:
    """Encode an event as compact JSON with keys in declaration order."""
    return json.dumps(event_to_dict(event), separators=(',', ':'))


def deserialize_event(data: str) -> Optional[Any]:
    """
    Decode an event produced by serialize_event.

    Returns:
        The event record, or None if the payload is malformed or unknown
    """
    try:
        payload = json.loads(data)
    except (json.JSONDecodeError, TypeError):
        return None

    if not isinstance(payload, dict):
        return None

    try:
        event_type = EventType(payload.get("type"))
    except ValueError:
        return None

    cls = EVENT_CLASSES[event_type]
    names = [f.name for f in fields(cls)]
    if any(name not in payload for name in names):
        return None

    return cls(**{name: payload[name] for name in names})


def record_event(database: Any, event: Any, circle_id: Optional[str] = None,
                 timestamp: Optional[int] = None) -> int:
    """
    Append an event to the database event log.

    Must be called inside the transaction of the state change it describes
    so a rollback discards the event too.

    Returns:
        The event's sequence id
    """
    return database.append_event(
        event.event_type.value,
        circle_id,
        serialize_event(event),
        timestamp if timestamp is not None else int(time.time()),
    )
