#!/usr/bin/env python3
"""
cl-circle: Rotating Savings Circles for Core Lightning

This plugin runs a savings circle ledger on a Core Lightning node. It provides:
- Circles with a fixed contribution per period and a payout rotation
- Escrowed pooled balances and a simulated interest bonus on each payout
- A reputation registry scoring members on contributions and completions
- Payouts sent to members via keysend

ARCHITECTURE:
-------------
The node operating the plugin is the circle coordinator. It records joins
and contributions, holds the escrow, and pays each round's recipient.

    cl-circle.py (RPC surface, options)
         │
         ▼
    circle.rpc_commands  →  circle.ledger  →  circle.reputation
                                  │
                                  ▼
                           circle.payments (keysend)

DEPENDENCIES:
- pyln-client: Core Lightning plugin framework

License: MIT
"""

from typing import Dict, Optional, Any

from pyln.client import Plugin

from circle import __version__
from circle import rpc_commands
from circle.config import CircleConfig
from circle.database import CircleDatabase
from circle.ledger import CircleLedger, LEDGER_ID
from circle.payments import KeysendTransfer, RecordingTransfer
from circle.reputation import ReputationRegistry
from circle.rpc_commands import CircleContext

# Initialize the plugin
plugin = Plugin()

# =============================================================================
# GLOBAL INSTANCES (initialized in init)
# =============================================================================

database: Optional[CircleDatabase] = None
config: Optional[CircleConfig] = None
reputation: Optional[ReputationRegistry] = None
ledger: Optional[CircleLedger] = None
ctx: Optional[CircleContext] = None
our_pubkey: Optional[str] = None


def _parse_bool(value: Any, default: bool = False) -> bool:
    """Parse a boolean-ish option value safely."""
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _not_initialized() -> Dict[str, Any]:
    return {"error": "cl-circle not initialized"}


# =============================================================================
# PLUGIN OPTIONS
# =============================================================================

plugin.add_option(
    name='circle-db-path',
    default='~/.lightning/cl_circle.db',
    description='Path to the SQLite database for circle state'
)

plugin.add_option(
    name='circle-treasury',
    default='',
    description='Node id receiving protocol fee withdrawals (default: this node)'
)

plugin.add_option(
    name='circle-protocol-fee-pct',
    default='1',
    description='One-time protocol fee at activation, percent of amount*members*duration'
)

plugin.add_option(
    name='circle-apr-pct',
    default='4',
    description='Simulated annual interest rate applied to each payout (percent)'
)

plugin.add_option(
    name='circle-interest-share-pct',
    default='20',
    description='Share of simulated interest kept by the protocol (percent)'
)

plugin.add_option(
    name='circle-min-reputation',
    default='500',
    description='Default minimum score for reputation-meets-minimum'
)

plugin.add_option(
    name='circle-score-unit',
    default='1000',
    description='Sats per 10 reputation points of lifetime contributions'
)

plugin.add_option(
    name='circle-lock-timeout',
    default='10',
    description='Seconds to wait for the ledger lock before failing a call'
)

plugin.add_option(
    name='circle-dry-run',
    default='false',
    description='Record payouts and withdrawals without sending funds'
)


# =============================================================================
# INITIALIZATION
# =============================================================================

@plugin.init()
def init(options: Dict[str, Any], configuration: Dict[str, Any], plugin: Plugin, **kwargs):
    """
    Initialize the cl-circle plugin.

    Steps:
    1. Parse and validate options
    2. Initialize database
    3. Create the reputation registry and authorize the ledger on it
    4. Create the ledger with the keysend (or recording) transfer
    """
    global database, config, reputation, ledger, ctx, our_pubkey

    plugin.log("cl-circle: Initializing savings circle ledger...")

    our_pubkey = plugin.rpc.getinfo()['id']

    try:
        config = CircleConfig(
            db_path=options.get('circle-db-path', '~/.lightning/cl_circle.db'),
            treasury_id=options.get('circle-treasury') or our_pubkey,
            protocol_fee_pct=int(options.get('circle-protocol-fee-pct', '1')),
            simulated_apr_pct=int(options.get('circle-apr-pct', '4')),
            protocol_interest_share_pct=int(options.get('circle-interest-share-pct', '20')),
            min_reputation_score=int(options.get('circle-min-reputation', '500')),
            contribution_score_unit=int(options.get('circle-score-unit', '1000')),
            lock_timeout_seconds=int(options.get('circle-lock-timeout', '10')),
            dry_run=_parse_bool(options.get('circle-dry-run', 'false')),
        )
    except ValueError as e:
        plugin.log(f"cl-circle: Invalid option: {e}", level='broken')
        return {"disable": f"Invalid option: {e}"}

    error = config.validate()
    if error:
        plugin.log(f"cl-circle: {error}", level='broken')
        return {"disable": error}

    database = CircleDatabase(config.db_path, plugin)
    database.initialize()
    plugin.log(f"cl-circle: Database initialized at {config.db_path}")

    reputation = ReputationRegistry(
        database,
        owner=our_pubkey,
        plugin=plugin,
        contribution_unit=config.contribution_score_unit,
    )
    # The ledger is the only producer of reputation updates
    reputation.authorize_caller(our_pubkey, LEDGER_ID)

    if config.dry_run:
        transfer = RecordingTransfer()
        plugin.log("cl-circle: Dry-run mode, payouts will not send funds", level='warn')
    else:
        transfer = KeysendTransfer(plugin.rpc, plugin)

    ledger = CircleLedger(
        database,
        config,
        transfer=transfer,
        reputation=reputation,
        plugin=plugin,
        coordinator=our_pubkey,
    )

    ctx = CircleContext(
        database=database,
        config=config,
        ledger=ledger,
        reputation=reputation,
        our_pubkey=our_pubkey,
        log=lambda msg, level='info': plugin.log(msg, level=level),
    )

    plugin.log(
        f"cl-circle: Initialization complete ({database.get_circle_count()} circles, "
        f"treasury {config.treasury_id[:16]}...)"
    )


# =============================================================================
# CIRCLE RPC COMMANDS
# =============================================================================

@plugin.method("circle-status")
def circle_status(plugin: Plugin):
    """
    Get plugin status: circle count, fee bucket and version.
    """
    if not ctx:
        return _not_initialized()

    return {
        "circles": database.get_circle_count(),
        "protocol_fee_balance_sats": database.get_protocol_fee_balance(),
        "treasury_id": config.treasury_id,
        "dry_run": config.dry_run,
        "version": __version__,
    }


@plugin.method("circle-create")
def circle_create(plugin: Plugin, amount_sats, frequency, duration,
                  goal=None, member_id: str = None):
    """
    Create a savings circle.

    Args:
        amount_sats: Contribution per period in sats
        frequency: Period length in seconds
        duration: Number of rounds (3-12)
        goal: emergency_fund, education, business, housing, travel or general
        member_id: Creator node id (default: this node)
    """
    if not ctx:
        return _not_initialized()
    return rpc_commands.create(ctx, amount_sats, frequency, duration, goal, member_id)


@plugin.method("circle-join")
def circle_join(plugin: Plugin, circle_id: str, amount_sats, member_id: str = None):
    """Join a pending circle with the round-0 contribution."""
    if not ctx:
        return _not_initialized()
    return rpc_commands.join(ctx, circle_id, amount_sats, member_id)


@plugin.method("circle-contribute")
def circle_contribute(plugin: Plugin, circle_id: str, amount_sats, member_id: str = None):
    """Contribute for the current round of an active circle."""
    if not ctx:
        return _not_initialized()
    return rpc_commands.contribute(ctx, circle_id, amount_sats, member_id)


@plugin.method("circle-payout")
def circle_payout(plugin: Plugin, circle_id: str, recipient: str):
    """Pay the current round to a member who has not been paid yet."""
    if not ctx:
        return _not_initialized()
    return rpc_commands.payout(ctx, circle_id, recipient)


@plugin.method("circle-info")
def circle_info(plugin: Plugin, circle_id: str):
    """Circle metadata, members and the next payout preview."""
    if not ctx:
        return _not_initialized()
    return rpc_commands.info(ctx, circle_id)


@plugin.method("circle-list")
def circle_list(plugin: Plugin, member_id: str = None):
    """Circles a member belongs to (default: this node)."""
    if not ctx:
        return _not_initialized()
    return rpc_commands.list_circles(ctx, member_id)


@plugin.method("circle-contributions")
def circle_contributions(plugin: Plugin, circle_id: str):
    if not ctx:
        return _not_initialized()
    return rpc_commands.contributions(ctx, circle_id)


@plugin.method("circle-payouts")
def circle_payouts(plugin: Plugin, circle_id: str):
    if not ctx:
        return _not_initialized()
    return rpc_commands.payouts(ctx, circle_id)


@plugin.method("circle-has-contributed")
def circle_has_contributed(plugin: Plugin, circle_id: str, round, member_id: str):
    if not ctx:
        return _not_initialized()
    return rpc_commands.has_contributed(ctx, circle_id, round, member_id)


@plugin.method("circle-events")
def circle_events(plugin: Plugin, circle_id: str = None, limit=100):
    """Event log, optionally filtered to one circle."""
    if not ctx:
        return _not_initialized()
    return rpc_commands.events(ctx, circle_id, limit)


@plugin.method("circle-fees")
def circle_fees(plugin: Plugin):
    if not ctx:
        return _not_initialized()
    return rpc_commands.fees(ctx)


@plugin.method("circle-withdraw-fees")
def circle_withdraw_fees(plugin: Plugin):
    """
    Send accrued protocol fees to the treasury.

    Permission: this node (the coordinator) or the treasury
    """
    if not ctx:
        return _not_initialized()
    return rpc_commands.withdraw_fees(ctx)


@plugin.method("circle-config")
def circle_config(plugin: Plugin):
    if not ctx:
        return _not_initialized()
    return rpc_commands.get_config(ctx)


# =============================================================================
# REPUTATION RPC COMMANDS
# =============================================================================

@plugin.method("reputation-get")
def reputation_get(plugin: Plugin, user: str = None):
    """Reputation snapshot, score and tier (default: this node)."""
    if not ctx:
        return _not_initialized()
    return rpc_commands.reputation(ctx, user)


@plugin.method("reputation-meets-minimum")
def reputation_meets_minimum(plugin: Plugin, user: str, min_score=None):
    if not ctx:
        return _not_initialized()
    return rpc_commands.meets_minimum(ctx, user, min_score)


@plugin.method("reputation-authorize")
def reputation_authorize(plugin: Plugin, address: str):
    """
    Allow `address` to update reputation.

    Permission: registry owner only
    """
    if not ctx:
        return _not_initialized()
    return rpc_commands.authorize(ctx, address)


@plugin.method("reputation-revoke")
def reputation_revoke(plugin: Plugin, address: str):
    """
    Stop `address` from updating reputation.

    Permission: registry owner only
    """
    if not ctx:
        return _not_initialized()
    return rpc_commands.revoke(ctx, address)


# =============================================================================
# MAIN
# =============================================================================

plugin.run()
