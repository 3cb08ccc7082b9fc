"""
Tests for circle-* and reputation-* RPC handlers.

Tests the handler layer that the plugin's @plugin.method wrappers call:
- Argument parsing and invalid_argument responses
- Domain errors returned as {"error": code, "message": ...}
- Caller identity defaulting to our node
- Registry owner and treasury permissions
"""

import pytest
from unittest.mock import MagicMock

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from circle import rpc_commands
from circle.config import CircleConfig
from circle.database import CircleDatabase
from circle.ledger import CircleLedger, LEDGER_ID
from circle.payments import RecordingTransfer
from circle.reputation import ReputationRegistry
from circle.rpc_commands import CircleContext


OUR_PUBKEY = '02' + '0' * 64
BOB = '02' + 'b' * 64
CAROL = '02' + 'c' * 64


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def mock_plugin():
    """Create a mock plugin for testing."""
    plugin = MagicMock()
    plugin.log = MagicMock()
    return plugin


@pytest.fixture
def database(mock_plugin, tmp_path):
    """Create a test database."""
    db = CircleDatabase(str(tmp_path / "test_rpc.db"), mock_plugin)
    db.initialize()
    return db


@pytest.fixture
def config():
    return CircleConfig(treasury_id=OUR_PUBKEY, dry_run=True)


@pytest.fixture
def transfer():
    return RecordingTransfer()


@pytest.fixture
def ctx(database, config, transfer, mock_plugin):
    """Wire the handlers the way plugin init does."""
    registry = ReputationRegistry(database, owner=OUR_PUBKEY, plugin=mock_plugin)
    registry.authorize_caller(OUR_PUBKEY, LEDGER_ID)
    ledger = CircleLedger(database, config, transfer=transfer,
                          reputation=registry, plugin=mock_plugin,
                          coordinator=OUR_PUBKEY)
    return CircleContext(
        database=database,
        config=config,
        ledger=ledger,
        reputation=registry,
        our_pubkey=OUR_PUBKEY,
        log=MagicMock(),
    )


def _started_circle(ctx):
    result = rpc_commands.create(ctx, 1000, 86400, 3, 'business')
    circle_id = result["circle_id"]
    rpc_commands.join(ctx, circle_id, 1000, member_id=BOB)
    rpc_commands.join(ctx, circle_id, "1000", member_id=CAROL)
    return circle_id


# =============================================================================
# CIRCLE COMMANDS
# =============================================================================

class TestCircleCommands:

    def test_create_defaults_to_our_node(self, ctx):
        result = rpc_commands.create(ctx, "1000", "86400", "3")
        assert "error" not in result
        circle = result["circle"]
        assert circle["creator"] == OUR_PUBKEY
        assert circle["status"] == "pending"
        assert circle["goal_type"] == "general"
        assert circle["member_count"] == 1

    @pytest.mark.parametrize("args,name", [
        (("abc", 86400, 3), "amount_sats"),
        ((1000, 1.5, 3), "frequency"),
        ((1000, 86400, True), "duration"),
    ])
    def test_create_rejects_non_integers(self, ctx, args, name):
        result = rpc_commands.create(ctx, *args)
        assert result["error"] == "invalid_argument"
        assert name in result["message"]
        assert ctx.ledger.get_circle_count() == 0

    def test_domain_errors_become_error_dicts(self, ctx):
        result = rpc_commands.create(ctx, 1000, 86400, 20)
        assert result["error"] == "invalid_duration"
        assert "message" in result

        result = rpc_commands.join(ctx, "f" * 64, 1000, member_id=BOB)
        assert result["error"] == "circle_not_found"

        result = rpc_commands.create(ctx, 1000, 86400, 3, "yacht")
        assert result["error"] == "invalid_goal_type"
        assert ctx.log.called

    def test_join_and_activation(self, ctx):
        circle_id = rpc_commands.create(ctx, 1000, 86400, 3)["circle_id"]
        result = rpc_commands.join(ctx, circle_id, 1000, member_id=BOB)
        assert result == {
            "circle_id": circle_id, "status": "pending",
            "member_count": 2, "balance_sats": 1000,
        }
        result = rpc_commands.join(ctx, circle_id, 1000, member_id=CAROL)
        assert result["status"] == "active"

        result = rpc_commands.join(ctx, circle_id, 1000, member_id="03" + "d" * 64)
        assert result["error"] == "circle_already_active"

    def test_contribute_and_payout(self, ctx, transfer):
        circle_id = _started_circle(ctx)

        result = rpc_commands.contribute(ctx, circle_id, 1000)
        assert result == {"circle_id": circle_id, "round": 0, "balance_sats": 3000}

        result = rpc_commands.payout(ctx, circle_id, BOB)
        assert result["total_sats"] == 3000
        assert result["payout"]["recipient"] == BOB
        assert result["payout"]["round"] == 0
        assert result["status"] == "active"
        assert result["current_round"] == 1
        assert transfer.transfers[-1]["recipient"] == BOB

        result = rpc_commands.payout(ctx, circle_id, CAROL)
        assert result["error"] == "round_incomplete"

    def test_contribute_invalid_amount(self, ctx):
        circle_id = _started_circle(ctx)
        result = rpc_commands.contribute(ctx, circle_id, "lots")
        assert result["error"] == "invalid_argument"

    @pytest.mark.parametrize("amount", ["--5", "5-", "\u00b2", "\u0663", "", " "])
    def test_malformed_integers_are_rejected(self, ctx, amount):
        result = rpc_commands.create(ctx, amount, 86400, 3)
        assert result["error"] == "invalid_argument"
        assert ctx.ledger.get_circle_count() == 0

    def test_signed_and_padded_integers_parse(self, ctx):
        assert rpc_commands.create(ctx, " 1000 ", "86400", "+3")["circle"]["duration"] == 3
        assert rpc_commands.create(ctx, "-5", 86400, 3)["error"] == "invalid_amount"

    def test_info_and_listing(self, ctx):
        circle_id = _started_circle(ctx)

        info = rpc_commands.info(ctx, circle_id)
        assert info["circle"]["members"] == [OUR_PUBKEY, BOB, CAROL]
        assert info["next_payout"]["payout"] == 3000

        listing = rpc_commands.list_circles(ctx, member_id=BOB)
        assert listing["count"] == 1
        assert listing["circles"][0]["circle_id"] == circle_id

        contribs = rpc_commands.contributions(ctx, circle_id)
        assert contribs["count"] == 2
        assert {c["member"] for c in contribs["contributions"]} == {BOB, CAROL}

        assert rpc_commands.payouts(ctx, circle_id)["count"] == 0

        result = rpc_commands.has_contributed(ctx, circle_id, "0", BOB)
        assert result["contributed"] is True
        result = rpc_commands.has_contributed(ctx, circle_id, 0, OUR_PUBKEY)
        assert result["contributed"] is False
        assert rpc_commands.has_contributed(ctx, circle_id, "x", BOB)["error"] == "invalid_argument"

        assert rpc_commands.info(ctx, "f" * 64)["error"] == "circle_not_found"

    def test_events(self, ctx):
        circle_id = _started_circle(ctx)
        result = rpc_commands.events(ctx, circle_id=circle_id, limit=2)
        assert result["count"] == 2
        assert [e["type"] for e in result["events"]] == ["contribution_made", "circle_started"]
        assert rpc_commands.events(ctx, limit=0)["error"] == "invalid_argument"

    def test_fees_and_withdrawal(self, ctx, transfer):
        _started_circle(ctx)
        assert rpc_commands.fees(ctx) == {
            "protocol_fee_balance_sats": 90, "treasury_id": OUR_PUBKEY,
        }
        assert rpc_commands.withdraw_fees(ctx) == {
            "withdrawn_sats": 90, "treasury_id": OUR_PUBKEY,
        }
        assert rpc_commands.withdraw_fees(ctx)["error"] == "insufficient_balance"

    def test_coordinator_withdraws_to_remote_treasury(self, ctx, transfer):
        remote_treasury = "03" + "e" * 64
        ctx.config.treasury_id = remote_treasury
        _started_circle(ctx)

        result = rpc_commands.withdraw_fees(ctx)
        assert result == {"withdrawn_sats": 90, "treasury_id": remote_treasury}
        assert transfer.transfers[-1] == {
            "recipient": remote_treasury, "amount_sats": 90, "status": "recorded",
        }
        assert rpc_commands.fees(ctx)["protocol_fee_balance_sats"] == 0

    def test_withdrawal_rejects_other_nodes(self, ctx):
        _started_circle(ctx)
        ctx.config.treasury_id = BOB
        ctx.our_pubkey = CAROL
        assert rpc_commands.withdraw_fees(ctx)["error"] == "unauthorized"
        assert ctx.ledger.get_protocol_fee_balance() == 90

    def test_get_config(self, ctx):
        result = rpc_commands.get_config(ctx)
        assert result["protocol_fee_pct"] == 1
        assert result["dry_run"] is True
        assert result["treasury_id"] == OUR_PUBKEY

    def test_not_initialized(self, ctx):
        ctx.ledger = None
        assert rpc_commands.fees(ctx) == {"error": "Not initialized"}


# =============================================================================
# REPUTATION COMMANDS
# =============================================================================

class TestReputationCommands:

    def test_reputation_after_join(self, ctx):
        _started_circle(ctx)
        result = rpc_commands.reputation(ctx, BOB)
        assert result["score"] == 510
        assert result["tier"] == "GOLD"
        assert result["reputation"]["circles_active"] == 1

        ours = rpc_commands.reputation(ctx)
        assert ours["reputation"]["user"] == OUR_PUBKEY
        assert ours["score"] == 0

    def test_meets_minimum_uses_configured_default(self, ctx):
        _started_circle(ctx)
        result = rpc_commands.meets_minimum(ctx, BOB)
        assert result["min_score"] == 500
        assert result["meets_minimum"] is True

        result = rpc_commands.meets_minimum(ctx, BOB, "600")
        assert result["meets_minimum"] is False
        assert rpc_commands.meets_minimum(ctx, BOB, "high")["error"] == "invalid_argument"

    def test_authorize_and_revoke(self, ctx):
        result = rpc_commands.authorize(ctx, BOB)
        assert result["changed"] is True
        assert BOB in result["authorized_callers"]

        result = rpc_commands.revoke(ctx, BOB)
        assert result["changed"] is True
        assert result["authorized_callers"] == [LEDGER_ID]

        assert rpc_commands.revoke(ctx, BOB)["changed"] is False

    def test_only_owner_manages_allowlist(self, ctx):
        ctx.our_pubkey = BOB
        assert rpc_commands.authorize(ctx, CAROL)["error"] == "unauthorized"
        assert not ctx.reputation.is_authorized(CAROL)
