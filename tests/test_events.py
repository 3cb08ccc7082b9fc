"""
Tests for circle event records and their JSON encoding.
"""

import json
from unittest.mock import MagicMock

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from circle.events import (
    EVENT_CLASSES,
    EventType,
    CircleCreated,
    PayoutProcessed,
    ReputationUpdated,
    deserialize_event,
    event_to_dict,
    record_event,
    serialize_event,
)


def test_every_event_type_has_a_class():
    assert set(EVENT_CLASSES) == set(EventType)
    for event_type, cls in EVENT_CLASSES.items():
        assert cls.event_type == event_type


def test_serialization_is_compact_with_type_first():
    event = PayoutProcessed(
        circle_id='c1', recipient='02' + 'a' * 64, amount=3000, interest=0, round=0
    )
    data = serialize_event(event)
    assert ' ' not in data
    assert data.startswith('{"type":"payout_processed","circle_id":"c1"')
    assert list(json.loads(data)) == [
        'type', 'circle_id', 'recipient', 'amount', 'interest', 'round'
    ]


def test_deserialize_restores_record():
    event = CircleCreated(
        circle_id='c1', creator='alice', contribution_amount=1000,
        frequency=86400, duration=3, goal_type='education'
    )
    assert deserialize_event(serialize_event(event)) == event


def test_deserialize_rejects_bad_payloads():
    assert deserialize_event('not json') is None
    assert deserialize_event('[1, 2]') is None
    assert deserialize_event('{"type": "unknown_event"}') is None
    # Missing fields
    assert deserialize_event('{"type": "reputation_updated", "user": "bob"}') is None
    assert deserialize_event(None) is None


def test_event_to_dict_uses_enum_value():
    event = ReputationUpdated(user='bob', new_score=380, tier='SILVER')
    assert event_to_dict(event) == {
        'type': 'reputation_updated', 'user': 'bob', 'new_score': 380, 'tier': 'SILVER'
    }


def test_record_event_appends_to_database():
    db = MagicMock()
    db.append_event.return_value = 7
    event = ReputationUpdated(user='bob', new_score=0, tier='BRONZE')

    assert record_event(db, event, circle_id=None, timestamp=1700000000) == 7
    db.append_event.assert_called_once_with(
        'reputation_updated', None, serialize_event(event), 1700000000
    )
