"""
Database module for cl-circle

Handles SQLite persistence for:
- Circles (metadata, status, round counter, escrow balance)
- Membership in join order
- Contribution and payout logs (append-only)
- Per-round contribution flags and lifetime payout flags
- Protocol fee bucket
- User reputation counters and the authorized-caller allowlist
- Event log (append-only)

Thread Safety:
- Uses threading.local() to provide each thread with its own SQLite connection
- Mutating ledger and registry calls run inside transaction(), which wraps
  BEGIN IMMEDIATE / COMMIT and rolls back on any exception
"""

import sqlite3
import os
import time
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Any


PROTOCOL_FEE_BALANCE_KEY = 'protocol_fee_balance'


class CircleDatabase:
    """
    SQLite database manager for the circle plugin.

    The ledger and the reputation registry share one database so a ledger
    call and the registry updates it triggers commit or roll back together.
    """

    def __init__(self, db_path: str, plugin):
        """
        Initialize the database manager.

        Args:
            db_path: Path to SQLite database file
            plugin: Reference to the pyln Plugin (or proxy) for logging
        """
        self.db_path = os.path.expanduser(db_path)
        self.plugin = plugin
        # Thread-local storage for connections and transaction depth
        self._local = threading.local()

    def _log(self, msg: str, level: str = "info") -> None:
        if self.plugin:
            self.plugin.log(f"CircleDatabase: {msg}", level=level)

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get or create a thread-local database connection.

        Returns:
            sqlite3.Connection: Thread-local database connection
        """
        if not hasattr(self._local, 'conn') or self._local.conn is None:
            directory = os.path.dirname(self.db_path)
            if directory:
                os.makedirs(directory, exist_ok=True)

            self._local.conn = sqlite3.connect(
                self.db_path,
                isolation_level=None  # Autocommit mode, transactions are explicit
            )
            self._local.conn.row_factory = sqlite3.Row
            self._local.conn.execute("PRAGMA journal_mode=WAL;")
            self._local.depth = 0

            self._log(
                f"Created thread-local connection (thread={threading.current_thread().name})",
                level='debug'
            )
        return self._local.conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block atomically.

        Nested scopes join the outermost transaction; only the outermost
        scope commits. Any exception rolls back everything written since
        the outermost BEGIN and is re-raised.
        """
        conn = self._get_connection()
        if self._local.depth > 0:
            self._local.depth += 1
            try:
                yield conn
            finally:
                self._local.depth -= 1
            return

        conn.execute("BEGIN IMMEDIATE")
        self._local.depth = 1
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")
        finally:
            self._local.depth = 0

    def in_transaction(self) -> bool:
        self._get_connection()
        return self._local.depth > 0

    def close(self) -> None:
        """Close this thread's connection."""
        conn = getattr(self._local, 'conn', None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    def initialize(self):
        """Create database tables if they don't exist."""
        conn = self._get_connection()

        # =====================================================================
        # CIRCLES TABLE
        # =====================================================================
        conn.execute("""
            CREATE TABLE IF NOT EXISTS circles (
                circle_id TEXT PRIMARY KEY,
                seq INTEGER NOT NULL UNIQUE,
                creator TEXT NOT NULL,
                contribution_amount INTEGER NOT NULL,
                frequency INTEGER NOT NULL,
                duration INTEGER NOT NULL,
                created_at INTEGER NOT NULL,
                start_time INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL DEFAULT 'pending',
                goal_type TEXT NOT NULL,
                current_round INTEGER NOT NULL DEFAULT 0,
                total_pooled INTEGER NOT NULL DEFAULT 0,
                total_interest_earned INTEGER NOT NULL DEFAULT 0,
                balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0)
            )
        """)

        # =====================================================================
        # MEMBERSHIP TABLE
        # =====================================================================
        # position preserves join order; the creator is position 0
        conn.execute("""
            CREATE TABLE IF NOT EXISTS circle_members (
                circle_id TEXT NOT NULL,
                member TEXT NOT NULL,
                position INTEGER NOT NULL,
                joined_at INTEGER NOT NULL,
                PRIMARY KEY (circle_id, member)
            )
        """)

        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_circle_members_member
            ON circle_members(member)
        """)

        # =====================================================================
        # CONTRIBUTION LOG + ROUND FLAGS
        # =====================================================================
        conn.execute("""
            CREATE TABLE IF NOT EXISTS circle_contributions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                circle_id TEXT NOT NULL,
                member TEXT NOT NULL,
                amount INTEGER NOT NULL,
                timestamp INTEGER NOT NULL,
                round INTEGER NOT NULL
            )
        """)

        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_circle_contributions_circle
            ON circle_contributions(circle_id, id)
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS round_contributions (
                circle_id TEXT NOT NULL,
                round INTEGER NOT NULL,
                member TEXT NOT NULL,
                PRIMARY KEY (circle_id, round, member)
            )
        """)

        # =====================================================================
        # PAYOUT LOG + LIFETIME FLAGS
        # =====================================================================
        conn.execute("""
            CREATE TABLE IF NOT EXISTS circle_payouts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                circle_id TEXT NOT NULL,
                recipient TEXT NOT NULL,
                amount INTEGER NOT NULL,
                interest INTEGER NOT NULL,
                timestamp INTEGER NOT NULL,
                round INTEGER NOT NULL
            )
        """)

        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_circle_payouts_circle
            ON circle_payouts(circle_id, id)
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS payout_flags (
                circle_id TEXT NOT NULL,
                member TEXT NOT NULL,
                PRIMARY KEY (circle_id, member)
            )
        """)

        # =====================================================================
        # PROTOCOL STATE TABLE
        # =====================================================================
        # Shared counters not tied to any one circle (protocol fee bucket)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS protocol_state (
                key TEXT PRIMARY KEY,
                value INTEGER NOT NULL DEFAULT 0
            )
        """)

        conn.execute(
            "INSERT OR IGNORE INTO protocol_state (key, value) VALUES (?, 0)",
            (PROTOCOL_FEE_BALANCE_KEY,)
        )

        # =====================================================================
        # REPUTATION TABLES
        # =====================================================================
        conn.execute("""
            CREATE TABLE IF NOT EXISTS user_reputation (
                user TEXT PRIMARY KEY,
                circles_completed INTEGER NOT NULL DEFAULT 0,
                circles_active INTEGER NOT NULL DEFAULT 0,
                total_contributed INTEGER NOT NULL DEFAULT 0,
                on_time_payments INTEGER NOT NULL DEFAULT 0,
                missed_payments INTEGER NOT NULL DEFAULT 0,
                account_created INTEGER NOT NULL DEFAULT 0,
                last_active INTEGER NOT NULL DEFAULT 0,
                reputation_score INTEGER NOT NULL DEFAULT 0,
                tier TEXT NOT NULL DEFAULT 'BRONZE'
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS authorized_callers (
                caller TEXT PRIMARY KEY,
                authorized_at INTEGER NOT NULL
            )
        """)

        # =====================================================================
        # EVENT LOG
        # =====================================================================
        conn.execute("""
            CREATE TABLE IF NOT EXISTS circle_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                event_type TEXT NOT NULL,
                circle_id TEXT,
                payload TEXT NOT NULL,
                timestamp INTEGER NOT NULL
            )
        """)

        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_circle_events_circle
            ON circle_events(circle_id, id)
        """)

        conn.execute("PRAGMA optimize;")
        self._log("Schema initialized")

    # =========================================================================
    # CIRCLE OPERATIONS
    # =========================================================================

    def next_circle_seq(self) -> int:
        """Return the sequence number the next created circle will get."""
        conn = self._get_connection()
        row = conn.execute("SELECT COALESCE(MAX(seq), 0) AS seq FROM circles").fetchone()
        return row['seq'] + 1

    def insert_circle(self, circle_id: str, seq: int, creator: str,
                      contribution_amount: int, frequency: int, duration: int,
                      created_at: int, status: str, goal_type: str) -> None:
        conn = self._get_connection()
        conn.execute("""
            INSERT INTO circles (
                circle_id, seq, creator, contribution_amount, frequency,
                duration, created_at, status, goal_type
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (circle_id, seq, creator, contribution_amount, frequency,
              duration, created_at, status, goal_type))

    def get_circle(self, circle_id: str) -> Optional[Dict[str, Any]]:
        """Get circle row by id."""
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM circles WHERE circle_id = ?",
            (circle_id,)
        ).fetchone()
        return dict(row) if row else None

    def get_circle_count(self) -> int:
        conn = self._get_connection()
        row = conn.execute("SELECT COUNT(*) AS cnt FROM circles").fetchone()
        return row['cnt']

    def update_circle(self, circle_id: str, **kwargs) -> bool:
        """
        Update circle fields.

        Allowed fields: start_time, status, current_round, total_pooled,
                        total_interest_earned, balance
        """
        allowed = {'start_time', 'status', 'current_round', 'total_pooled',
                   'total_interest_earned', 'balance'}
        updates = {k: v for k, v in kwargs.items() if k in allowed}

        if not updates:
            return False

        conn = self._get_connection()
        set_clause = ", ".join(f"{k} = ?" for k in updates.keys())
        values = list(updates.values()) + [circle_id]

        result = conn.execute(
            f"UPDATE circles SET {set_clause} WHERE circle_id = ?",
            values
        )
        return result.rowcount > 0

    # =========================================================================
    # MEMBERSHIP OPERATIONS
    # =========================================================================

    def add_circle_member(self, circle_id: str, member: str, joined_at: int) -> int:
        """
        Append a member to a circle.

        Returns:
            The member's position (0 for the creator)
        """
        conn = self._get_connection()
        row = conn.execute(
            "SELECT COUNT(*) AS cnt FROM circle_members WHERE circle_id = ?",
            (circle_id,)
        ).fetchone()
        position = row['cnt']
        conn.execute("""
            INSERT INTO circle_members (circle_id, member, position, joined_at)
            VALUES (?, ?, ?, ?)
        """, (circle_id, member, position, joined_at))
        return position

    def get_circle_members(self, circle_id: str) -> List[str]:
        """Get members of a circle in join order."""
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT member FROM circle_members WHERE circle_id = ? ORDER BY position",
            (circle_id,)
        ).fetchall()
        return [row['member'] for row in rows]

    def is_circle_member(self, circle_id: str, member: str) -> bool:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT 1 FROM circle_members WHERE circle_id = ? AND member = ?",
            (circle_id, member)
        ).fetchone()
        return row is not None

    def get_member_circles(self, member: str) -> List[str]:
        """Get ids of all circles a member belongs to, oldest first."""
        conn = self._get_connection()
        rows = conn.execute("""
            SELECT m.circle_id FROM circle_members m
            JOIN circles c ON c.circle_id = m.circle_id
            WHERE m.member = ?
            ORDER BY c.seq
        """, (member,)).fetchall()
        return [row['circle_id'] for row in rows]

    # =========================================================================
    # CONTRIBUTION OPERATIONS
    # =========================================================================

    def record_circle_contribution(self, circle_id: str, member: str,
                                   amount: int, timestamp: int, round_num: int) -> None:
        """Append to the contribution log and set the round flag."""
        conn = self._get_connection()
        conn.execute("""
            INSERT INTO circle_contributions (circle_id, member, amount, timestamp, round)
            VALUES (?, ?, ?, ?, ?)
        """, (circle_id, member, amount, timestamp, round_num))
        conn.execute("""
            INSERT INTO round_contributions (circle_id, round, member)
            VALUES (?, ?, ?)
        """, (circle_id, round_num, member))

    def has_contributed(self, circle_id: str, round_num: int, member: str) -> bool:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT 1 FROM round_contributions WHERE circle_id = ? AND round = ? AND member = ?",
            (circle_id, round_num, member)
        ).fetchone()
        return row is not None

    def get_circle_contributions(self, circle_id: str) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        rows = conn.execute("""
            SELECT member, amount, timestamp, round FROM circle_contributions
            WHERE circle_id = ? ORDER BY id
        """, (circle_id,)).fetchall()
        return [dict(row) for row in rows]

    # =========================================================================
    # PAYOUT OPERATIONS
    # =========================================================================

    def record_circle_payout(self, circle_id: str, recipient: str, amount: int,
                             interest: int, timestamp: int, round_num: int) -> None:
        """Append to the payout log and set the lifetime payout flag."""
        conn = self._get_connection()
        conn.execute("""
            INSERT INTO circle_payouts (circle_id, recipient, amount, interest, timestamp, round)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (circle_id, recipient, amount, interest, timestamp, round_num))
        conn.execute(
            "INSERT INTO payout_flags (circle_id, member) VALUES (?, ?)",
            (circle_id, recipient)
        )

    def has_received_payout(self, circle_id: str, member: str) -> bool:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT 1 FROM payout_flags WHERE circle_id = ? AND member = ?",
            (circle_id, member)
        ).fetchone()
        return row is not None

    def get_circle_payouts(self, circle_id: str) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        rows = conn.execute("""
            SELECT recipient, amount, interest, timestamp, round FROM circle_payouts
            WHERE circle_id = ? ORDER BY id
        """, (circle_id,)).fetchall()
        return [dict(row) for row in rows]

    # =========================================================================
    # PROTOCOL FEE BUCKET
    # =========================================================================

    def get_protocol_fee_balance(self) -> int:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT value FROM protocol_state WHERE key = ?",
            (PROTOCOL_FEE_BALANCE_KEY,)
        ).fetchone()
        return row['value'] if row else 0

    def add_protocol_fees(self, amount: int) -> None:
        conn = self._get_connection()
        conn.execute(
            "UPDATE protocol_state SET value = value + ? WHERE key = ?",
            (amount, PROTOCOL_FEE_BALANCE_KEY)
        )

    def set_protocol_fee_balance(self, amount: int) -> None:
        conn = self._get_connection()
        conn.execute(
            "UPDATE protocol_state SET value = ? WHERE key = ?",
            (amount, PROTOCOL_FEE_BALANCE_KEY)
        )

    # =========================================================================
    # REPUTATION OPERATIONS
    # =========================================================================

    def get_user_reputation(self, user: str) -> Optional[Dict[str, Any]]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM user_reputation WHERE user = ?",
            (user,)
        ).fetchone()
        return dict(row) if row else None

    def save_user_reputation(self, user: str, circles_completed: int,
                             circles_active: int, total_contributed: int,
                             on_time_payments: int, missed_payments: int,
                             account_created: int, last_active: int,
                             reputation_score: int, tier: str) -> None:
        """Insert or replace the full reputation row for a user."""
        conn = self._get_connection()
        conn.execute("""
            INSERT INTO user_reputation (
                user, circles_completed, circles_active, total_contributed,
                on_time_payments, missed_payments, account_created, last_active,
                reputation_score, tier
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user) DO UPDATE SET
                circles_completed = excluded.circles_completed,
                circles_active = excluded.circles_active,
                total_contributed = excluded.total_contributed,
                on_time_payments = excluded.on_time_payments,
                missed_payments = excluded.missed_payments,
                account_created = excluded.account_created,
                last_active = excluded.last_active,
                reputation_score = excluded.reputation_score,
                tier = excluded.tier
        """, (user, circles_completed, circles_active, total_contributed,
              on_time_payments, missed_payments, account_created, last_active,
              reputation_score, tier))

    def add_authorized_caller(self, caller: str) -> bool:
        """Add a caller to the allowlist (idempotent)."""
        conn = self._get_connection()
        result = conn.execute(
            "INSERT OR IGNORE INTO authorized_callers (caller, authorized_at) VALUES (?, ?)",
            (caller, int(time.time()))
        )
        return result.rowcount > 0

    def remove_authorized_caller(self, caller: str) -> bool:
        conn = self._get_connection()
        result = conn.execute(
            "DELETE FROM authorized_callers WHERE caller = ?",
            (caller,)
        )
        return result.rowcount > 0

    def is_authorized_caller(self, caller: str) -> bool:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT 1 FROM authorized_callers WHERE caller = ?",
            (caller,)
        ).fetchone()
        return row is not None

    def get_authorized_callers(self) -> List[str]:
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT caller FROM authorized_callers ORDER BY authorized_at, caller"
        ).fetchall()
        return [row['caller'] for row in rows]

    # =========================================================================
    # EVENT LOG
    # =========================================================================

    def append_event(self, event_type: str, circle_id: Optional[str],
                     payload: str, timestamp: int) -> int:
        conn = self._get_connection()
        cursor = conn.execute("""
            INSERT INTO circle_events (event_type, circle_id, payload, timestamp)
            VALUES (?, ?, ?, ?)
        """, (event_type, circle_id, payload, timestamp))
        return cursor.lastrowid

    def get_events(self, circle_id: Optional[str] = None,
                   limit: int = 100) -> List[Dict[str, Any]]:
        """Get events oldest first, optionally for one circle."""
        conn = self._get_connection()
        if circle_id is None:
            rows = conn.execute("""
                SELECT * FROM (
                    SELECT * FROM circle_events ORDER BY id DESC LIMIT ?
                ) ORDER BY id
            """, (limit,)).fetchall()
        else:
            rows = conn.execute("""
                SELECT * FROM (
                    SELECT * FROM circle_events WHERE circle_id = ?
                    ORDER BY id DESC LIMIT ?
                ) ORDER BY id
            """, (circle_id, limit)).fetchall()
        return [dict(row) for row in rows]
