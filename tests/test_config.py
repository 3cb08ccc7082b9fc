"""
Tests for CircleConfig validation and snapshots.
"""

import dataclasses
import pytest

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from circle.config import CircleConfig, CircleConfigSnapshot


def test_defaults_are_valid():
    config = CircleConfig()
    assert config.validate() is None
    assert config.protocol_fee_pct == 1
    assert config.simulated_apr_pct == 4
    assert config.protocol_interest_share_pct == 20
    assert config.min_reputation_score == 500


@pytest.mark.parametrize("field_name,value", [
    ("protocol_fee_pct", 11),
    ("protocol_interest_share_pct", 101),
    ("simulated_apr_pct", -1),
    ("lock_timeout_seconds", 0),
    ("contribution_score_unit", 0),
])
def test_out_of_range_rejected(field_name, value):
    config = CircleConfig(**{field_name: value})
    error = config.validate()
    assert error is not None
    assert field_name in error


def test_wrong_types_rejected():
    assert "integer" in CircleConfig(protocol_fee_pct="1").validate()
    assert "integer" in CircleConfig(protocol_fee_pct=True).validate()
    assert "boolean" in CircleConfig(dry_run="yes").validate()
    assert "string" in CircleConfig(treasury_id=42).validate()


def test_snapshot_is_frozen_and_detached():
    config = CircleConfig(treasury_id='02' + 't' * 64)
    snap = config.snapshot()
    assert isinstance(snap, CircleConfigSnapshot)

    with pytest.raises(dataclasses.FrozenInstanceError):
        snap.protocol_fee_pct = 5

    config.protocol_fee_pct = 5
    assert snap.protocol_fee_pct == 1
    assert snap.treasury_id == config.treasury_id


def test_snapshot_fields_mirror_config():
    config = CircleConfig()
    snap_fields = {f.name for f in dataclasses.fields(CircleConfigSnapshot)}
    config_fields = {f.name for f in dataclasses.fields(CircleConfig)}
    assert snap_fields == config_fields
    assert 'version' not in dataclasses.asdict(config.snapshot())
