"""
Circle package for cl-circle

This package contains the core modules for the savings circle layer:
- config: Configuration dataclass and snapshot pattern
- database: SQLite persistence with thread-local connections and transactions
- events: Append-only event records with stable field order
- errors: Domain errors raised by the ledger and the registry
- ledger: Circle lifecycle, contributions, escrow and payout rotation
- reputation: Per-user reputation counters, score and tier
- payments: Outbound value transfer (keysend) for payouts and fee withdrawal
- rpc_commands: Handler functions behind the circle-* and reputation-* RPCs
"""

__version__ = "0.1.0"
