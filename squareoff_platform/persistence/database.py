#===================================================================
# database.py
#
# - scheduled_exits / scheduled_exit_audit     (exit intents)
# - order_states / order_state_history         (order lifecycle)
# - WAL + busy_timeout for concurrent threads
# - Every state transition = one BEGIN IMMEDIATE transaction
#
# The partial unique index on scheduled_exits(position_id) is what
# guarantees at most one active exit per position.
#===================================================================

import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parents[2]
_DEFAULT_DB_PATH = (
    _PROJECT_ROOT
    / "squareoff_platform"
    / "persistence"
    / "data"
    / "squareoff.db"
)

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS scheduled_exits (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        position_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        symbol TEXT NOT NULL,

        scheduled_exit_time TEXT NOT NULL,
        scheduled_for_date TEXT NOT NULL,

        status TEXT NOT NULL,
        execution_attempts INTEGER NOT NULL DEFAULT 0,
        last_execution_attempt TEXT,
        last_execution_error TEXT,

        scheduled_by_process_id TEXT NOT NULL,
        scheduler_version TEXT NOT NULL,
        scheduled_at TEXT NOT NULL,

        executed_at TEXT,
        execution_method TEXT,
        execution_details TEXT,

        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_scheduled_exits_active_position
    ON scheduled_exits(position_id)
    WHERE status IN ('PENDING', 'EXECUTING')
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_scheduled_exits_status_date
    ON scheduled_exits(status, scheduled_for_date)
    """,
    """
    CREATE TABLE IF NOT EXISTS scheduled_exit_audit (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        exit_id INTEGER NOT NULL REFERENCES scheduled_exits(id) ON DELETE CASCADE,
        timestamp TEXT NOT NULL,
        action TEXT NOT NULL,
        details TEXT,
        process_id TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_scheduled_exit_audit_exit
    ON scheduled_exit_audit(exit_id, id)
    """,
    """
    CREATE TABLE IF NOT EXISTS order_states (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        order_id TEXT NOT NULL UNIQUE,
        trade_execution_id TEXT,
        user_id TEXT NOT NULL,

        symbol TEXT NOT NULL,
        exchange TEXT NOT NULL,
        order_type TEXT NOT NULL,
        transaction_type TEXT NOT NULL,
        product TEXT,
        quantity INTEGER NOT NULL,
        price REAL,

        placement_status TEXT NOT NULL,
        confirmation_status TEXT NOT NULL,
        execution_status TEXT NOT NULL,

        executed_quantity INTEGER NOT NULL DEFAULT 0,
        executed_price REAL,
        pending_quantity INTEGER,

        confirmation_attempts INTEGER NOT NULL DEFAULT 0,
        total_confirmation_time INTEGER NOT NULL DEFAULT 0,
        last_status_check TEXT,
        partial_since TEXT,

        error TEXT,
        status_message TEXT,
        needs_manual_review INTEGER NOT NULL DEFAULT 0,
        manual_review_reason TEXT,

        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_order_states_confirmation
    ON order_states(confirmation_status, created_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS order_state_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        order_id TEXT NOT NULL REFERENCES order_states(order_id) ON DELETE CASCADE,
        status TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        details TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_order_state_history_order
    ON order_state_history(order_id, id)
    """,
)


def resolve_db_path(explicit: Optional[Union[str, Path]] = None) -> Path:
    """Explicit path > SQUAREOFF_DB_PATH env > package default."""
    if explicit:
        return Path(explicit)
    return Path(os.environ.get("SQUAREOFF_DB_PATH") or _DEFAULT_DB_PATH)


class Database:
    """
    sqlite3 connection factory.

    A fresh connection per unit of work; connections run in autocommit
    mode and transactions are opened explicitly with BEGIN IMMEDIATE so
    the write lock is taken before the conditional UPDATE is evaluated.
    """

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        self.db_path = resolve_db_path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._schema_lock = threading.Lock()
        self._schema_ready = False
        self.init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path,
            check_same_thread=False,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row

        # 🔒 WAL mode for concurrent read/write from multiple threads
        conn.execute("PRAGMA journal_mode=WAL")
        # 🔒 Wait up to 5s for locked DB instead of failing immediately
        conn.execute("PRAGMA busy_timeout=5000")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def init_schema(self) -> None:
        with self._schema_lock:
            if self._schema_ready:
                return
            conn = self._connect()
            try:
                for statement in SCHEMA:
                    conn.execute(statement)
            finally:
                conn.close()
            self._schema_ready = True
            logger.info("DB READY | path=%s", self.db_path)

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Read-only unit of work."""
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Write unit of work. Commits on success, rolls back on any exception."""
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()
