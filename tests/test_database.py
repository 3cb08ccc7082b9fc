"""
Tests for the CircleDatabase persistence layer.

Tests cover:
- Schema creation and the seeded fee bucket
- Transaction commit, rollback and nested scopes
- Membership ordering and flag tables
- Event log ordering and filtering
"""

import sqlite3
import threading
import pytest
from unittest.mock import MagicMock

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from circle.database import CircleDatabase


CREATOR = '02' + 'a' * 64
MEMBER_B = '02' + 'b' * 64


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def mock_plugin():
    return MagicMock()


@pytest.fixture
def database(tmp_path, mock_plugin):
    db = CircleDatabase(str(tmp_path / 'circle.db'), mock_plugin)
    db.initialize()
    yield db
    db.close()


def _insert(db, circle_id='c1', seq=1):
    db.insert_circle(circle_id, seq, CREATOR, 1000, 86400, 3, 1700000000,
                     'pending', 'general')
    db.add_circle_member(circle_id, CREATOR, 1700000000)


# =============================================================================
# SCHEMA
# =============================================================================

def test_initialize_is_idempotent(database):
    database.initialize()
    assert database.get_protocol_fee_balance() == 0
    assert database.get_circle_count() == 0


def test_creates_parent_directory(tmp_path, mock_plugin):
    path = tmp_path / 'nested' / 'dir' / 'circle.db'
    db = CircleDatabase(str(path), mock_plugin)
    db.initialize()
    assert path.exists()
    db.close()


def test_insert_and_get_circle(database):
    _insert(database)
    row = database.get_circle('c1')
    assert row['creator'] == CREATOR
    assert row['status'] == 'pending'
    assert row['balance'] == 0
    assert row['current_round'] == 0
    assert database.get_circle('missing') is None


def test_negative_balance_rejected(database):
    _insert(database)
    with pytest.raises(sqlite3.IntegrityError):
        database.update_circle('c1', balance=-1)


def test_update_circle_ignores_unknown_fields(database):
    _insert(database)
    assert database.update_circle('c1', creator='someone') is False
    assert database.get_circle('c1')['creator'] == CREATOR


# =============================================================================
# TRANSACTIONS
# =============================================================================

def test_transaction_commits(database):
    with database.transaction():
        _insert(database)
        database.add_protocol_fees(30)
    assert database.get_circle('c1') is not None
    assert database.get_protocol_fee_balance() == 30


def test_transaction_rolls_back_on_error(database):
    with pytest.raises(RuntimeError):
        with database.transaction():
            _insert(database)
            database.add_protocol_fees(30)
            raise RuntimeError("boom")
    assert database.get_circle('c1') is None
    assert database.get_protocol_fee_balance() == 0
    assert not database.in_transaction()


def test_nested_transaction_joins_outer(database):
    with pytest.raises(ValueError):
        with database.transaction():
            database.add_protocol_fees(10)
            with database.transaction():
                database.add_protocol_fees(5)
                assert database.in_transaction()
            # Inner scope must not have committed
            raise ValueError("outer failure")
    assert database.get_protocol_fee_balance() == 0


def test_nested_error_rolls_back_outer(database):
    with pytest.raises(KeyError):
        with database.transaction():
            database.add_protocol_fees(10)
            with database.transaction():
                raise KeyError("inner")
    assert database.get_protocol_fee_balance() == 0


def test_connections_are_thread_local(database):
    main_conn = database._get_connection()
    seen = []

    def worker():
        seen.append(database._get_connection())
        database.close()

    t = threading.Thread(target=worker)
    t.start()
    t.join()
    assert seen and seen[0] is not main_conn


# =============================================================================
# MEMBERSHIP AND FLAGS
# =============================================================================

def test_members_in_join_order(database):
    _insert(database)
    assert database.add_circle_member('c1', MEMBER_B, 1700000100) == 1
    assert database.get_circle_members('c1') == [CREATOR, MEMBER_B]
    assert database.is_circle_member('c1', MEMBER_B)
    assert database.get_member_circles(MEMBER_B) == ['c1']


def test_contribution_flag_is_per_round(database):
    _insert(database)
    database.record_circle_contribution('c1', CREATOR, 1000, 1700000000, 0)
    assert database.has_contributed('c1', 0, CREATOR)
    assert not database.has_contributed('c1', 1, CREATOR)
    assert database.get_circle_contributions('c1') == [
        {'member': CREATOR, 'amount': 1000, 'timestamp': 1700000000, 'round': 0}
    ]


def test_duplicate_round_flag_rejected(database):
    _insert(database)
    database.record_circle_contribution('c1', CREATOR, 1000, 1700000000, 0)
    with pytest.raises(sqlite3.IntegrityError):
        database.record_circle_contribution('c1', CREATOR, 1000, 1700000001, 0)


def test_payout_flag_is_lifetime(database):
    _insert(database)
    database.record_circle_payout('c1', CREATOR, 3000, 0, 1700000000, 0)
    assert database.has_received_payout('c1', CREATOR)
    assert not database.has_received_payout('c1', MEMBER_B)
    assert database.get_circle_payouts('c1')[0]['amount'] == 3000


# =============================================================================
# FEES, REPUTATION, ALLOWLIST
# =============================================================================

def test_fee_bucket(database):
    database.add_protocol_fees(30)
    database.add_protocol_fees(12)
    assert database.get_protocol_fee_balance() == 42
    database.set_protocol_fee_balance(0)
    assert database.get_protocol_fee_balance() == 0


def test_save_user_reputation_upserts(database):
    database.save_user_reputation(CREATOR, 0, 1, 0, 0, 0, 100, 100, 0, 'BRONZE')
    database.save_user_reputation(CREATOR, 1, 0, 5000, 3, 0, 100, 200, 600, 'GOLD')
    row = database.get_user_reputation(CREATOR)
    assert row['circles_completed'] == 1
    assert row['reputation_score'] == 600
    assert row['tier'] == 'GOLD'
    assert row['account_created'] == 100


def test_authorized_callers(database):
    assert database.add_authorized_caller('ledger') is True
    assert database.add_authorized_caller('ledger') is False
    assert database.is_authorized_caller('ledger')
    assert database.get_authorized_callers() == ['ledger']
    assert database.remove_authorized_caller('ledger') is True
    assert database.remove_authorized_caller('ledger') is False
    assert not database.is_authorized_caller('ledger')


# =============================================================================
# EVENT LOG
# =============================================================================

def test_events_oldest_first_with_limit(database):
    for i in range(5):
        database.append_event('member_joined', 'c1', f'{{"n":{i}}}', 1700000000 + i)
    database.append_event('caller_authorized', None, '{}', 1700000010)

    rows = database.get_events(limit=3)
    assert [r['payload'] for r in rows] == ['{"n":3}', '{"n":4}', '{}']

    rows = database.get_events(circle_id='c1')
    assert len(rows) == 5
    assert rows[0]['payload'] == '{"n":0}'
