# ===================================================================
# ScheduledExitRepository
#
# Durable source of truth for exit intents. In-memory timers are a cache
# of what this table says.
#
# Guarantees:
# - At most one PENDING/EXECUTING row per position (partial unique index)
# - Every status change is a conditional UPDATE + audit INSERT in one
#   BEGIN IMMEDIATE transaction; a lost race writes nothing
# - Audit rows are append-only, ordered by autoincrement id
# ===================================================================

import logging
import sqlite3
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from squareoff_platform.core.errors import DuplicateActiveSchedule
from squareoff_platform.persistence.database import Database
from squareoff_platform.persistence.models import (
    ACTIVE_EXIT_STATUSES,
    TERMINAL_EXIT_STATUSES,
    AuditEntry,
    ExitStatus,
    ScheduledExit,
    dumps_details,
)

logger = logging.getLogger(__name__)

# Columns a transition may set besides status / updated_at
_MUTABLE_COLUMNS = {
    "execution_attempts",
    "last_execution_attempt",
    "last_execution_error",
    "executed_at",
    "execution_method",
    "execution_details",
}


def _values(statuses: Iterable) -> List[str]:
    return [getattr(s, "value", s) for s in statuses]


def _placeholders(n: int) -> str:
    return ", ".join("?" for _ in range(n))


class ScheduledExitRepository:
    """
    Persistence only.

    - No timers
    - No broker calls
    - Callers pass timestamps from their clock (UTC ISO strings)
    """

    def __init__(self, db: Database):
        self.db = db

    # -----------------------------
    # CREATE
    # -----------------------------
    def create(
        self,
        record: ScheduledExit,
        audit_details: Optional[Dict[str, Any]] = None,
    ) -> ScheduledExit:
        """
        Insert a PENDING exit plus its SCHEDULED audit entry.

        Raises DuplicateActiveSchedule when another active row for the
        position won the insert.
        """
        try:
            with self.db.transaction() as conn:
                cur = conn.execute(
                    """
                    INSERT INTO scheduled_exits (
                        position_id, user_id, symbol,
                        scheduled_exit_time, scheduled_for_date,
                        status, execution_attempts,
                        scheduled_by_process_id, scheduler_version, scheduled_at,
                        created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.position_id,
                        record.user_id,
                        record.symbol,
                        record.scheduled_exit_time,
                        record.scheduled_for_date,
                        ExitStatus.PENDING.value,
                        record.scheduled_by.process_id,
                        record.scheduled_by.scheduler_version,
                        record.scheduled_by.scheduled_at,
                        record.created_at,
                        record.updated_at,
                    ),
                )
                exit_id = cur.lastrowid
                self._insert_audit(
                    conn,
                    exit_id,
                    record.created_at,
                    "SCHEDULED",
                    audit_details,
                    record.scheduled_by.process_id,
                )
        except sqlite3.IntegrityError as e:
            if "position_id" in str(e) or "UNIQUE" in str(e).upper():
                raise DuplicateActiveSchedule(record.position_id) from e
            raise

        return self.get_by_id(exit_id)

    # -----------------------------
    # TRANSITIONS
    # -----------------------------
    def transition(
        self,
        exit_id: int,
        from_statuses: Sequence[ExitStatus],
        to_status: ExitStatus,
        *,
        now: str,
        action: str,
        process_id: str,
        details: Optional[Dict[str, Any]] = None,
        increment_attempts: bool = False,
        **fields,
    ) -> bool:
        """
        Atomic conditional status change.

        Returns False (and writes nothing) when the row is no longer in one
        of ``from_statuses``. An active→active conflict on the partial
        unique index surfaces as DuplicateActiveSchedule.
        """
        unknown = set(fields) - _MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"Unsupported scheduled_exits columns: {sorted(unknown)}")

        sets = ["status = ?", "updated_at = ?"]
        params: List[Any] = [getattr(to_status, "value", to_status), now]
        if increment_attempts:
            sets.append("execution_attempts = execution_attempts + 1")
        for column, value in fields.items():
            if column == "execution_details":
                value = dumps_details(value)
            elif column == "execution_method" and value is not None:
                value = getattr(value, "value", value)
            sets.append(f"{column} = ?")
            params.append(value)

        froms = _values(from_statuses)
        params.append(exit_id)
        params.extend(froms)

        try:
            with self.db.transaction() as conn:
                cur = conn.execute(
                    f"""
                    UPDATE scheduled_exits
                    SET {", ".join(sets)}
                    WHERE id = ?
                    AND status IN ({_placeholders(len(froms))})
                    """,
                    params,
                )
                if cur.rowcount != 1:
                    return False
                self._insert_audit(conn, exit_id, now, action, details, process_id)
                return True
        except sqlite3.IntegrityError as e:
            position_id = self._position_for(exit_id)
            raise DuplicateActiveSchedule(position_id) from e

    def append_audit(
        self,
        exit_id: int,
        *,
        now: str,
        action: str,
        process_id: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        with self.db.transaction() as conn:
            self._insert_audit(conn, exit_id, now, action, details, process_id)

    def _insert_audit(self, conn, exit_id, timestamp, action, details, process_id):
        conn.execute(
            """
            INSERT INTO scheduled_exit_audit (exit_id, timestamp, action, details, process_id)
            VALUES (?, ?, ?, ?, ?)
            """,
            (exit_id, timestamp, getattr(action, "value", action), dumps_details(details), process_id),
        )

    # -----------------------------
    # READ
    # -----------------------------
    def get_by_id(self, exit_id: int, with_audit: bool = True) -> Optional[ScheduledExit]:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM scheduled_exits WHERE id = ?", (exit_id,)
            ).fetchone()
            if not row:
                return None
            audit = self._load_audit(conn, exit_id) if with_audit else None
        return ScheduledExit.from_row(row, audit)

    def get_active(self, position_id: str) -> Optional[ScheduledExit]:
        """The PENDING/EXECUTING record for a position, if any."""
        statuses = _values(ACTIVE_EXIT_STATUSES)
        with self.db.connection() as conn:
            row = conn.execute(
                f"""
                SELECT * FROM scheduled_exits
                WHERE position_id = ?
                AND status IN ({_placeholders(len(statuses))})
                """,
                (position_id, *statuses),
            ).fetchone()
            if not row:
                return None
            audit = self._load_audit(conn, row["id"])
        return ScheduledExit.from_row(row, audit)

    def get_latest(self, position_id: str) -> Optional[ScheduledExit]:
        """Most recent record for a position regardless of status."""
        with self.db.connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM scheduled_exits
                WHERE position_id = ?
                ORDER BY id DESC
                LIMIT 1
                """,
                (position_id,),
            ).fetchone()
            if not row:
                return None
            audit = self._load_audit(conn, row["id"])
        return ScheduledExit.from_row(row, audit)

    def list_active(
        self,
        for_date: Optional[str] = None,
        statuses: Sequence[ExitStatus] = ACTIVE_EXIT_STATUSES,
    ) -> List[ScheduledExit]:
        values = _values(statuses)
        sql = f"""
            SELECT * FROM scheduled_exits
            WHERE status IN ({_placeholders(len(values))})
        """
        params: List[Any] = list(values)
        if for_date is not None:
            sql += " AND scheduled_for_date = ?"
            params.append(for_date)
        sql += " ORDER BY scheduled_for_date, scheduled_exit_time, id"

        with self.db.connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [ScheduledExit.from_row(r) for r in rows]

    def list_active_before(self, for_date: str) -> List[ScheduledExit]:
        """Active records left over from an earlier trading date."""
        statuses = _values(ACTIVE_EXIT_STATUSES)
        with self.db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM scheduled_exits
                WHERE status IN ({_placeholders(len(statuses))})
                AND scheduled_for_date < ?
                ORDER BY id
                """,
                (*statuses, for_date),
            ).fetchall()
        return [ScheduledExit.from_row(r) for r in rows]

    def query(
        self,
        *,
        status: Optional[str] = None,
        user_id: Optional[str] = None,
        for_date: Optional[str] = None,
        position_id: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> Tuple[List[ScheduledExit], int]:
        """Filtered, paginated listing. Returns (records, total)."""
        clauses, params = [], []
        if status:
            clauses.append("status = ?")
            params.append(status)
        if user_id:
            clauses.append("user_id = ?")
            params.append(user_id)
        if for_date:
            clauses.append("scheduled_for_date = ?")
            params.append(for_date)
        if position_id:
            clauses.append("position_id = ?")
            params.append(position_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self.db.connection() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) FROM scheduled_exits {where}", params
            ).fetchone()[0]
            rows = conn.execute(
                f"""
                SELECT * FROM scheduled_exits {where}
                ORDER BY id DESC
                LIMIT ? OFFSET ?
                """,
                (*params, limit, offset),
            ).fetchall()
        return [ScheduledExit.from_row(r) for r in rows], total

    def count_by_status(self, for_date: Optional[str] = None) -> Dict[str, int]:
        sql = "SELECT status, COUNT(*) AS n FROM scheduled_exits"
        params: Tuple = ()
        if for_date:
            sql += " WHERE scheduled_for_date = ?"
            params = (for_date,)
        sql += " GROUP BY status"

        counts = {s.value: 0 for s in ExitStatus}
        with self.db.connection() as conn:
            for row in conn.execute(sql, params).fetchall():
                counts[row["status"]] = row["n"]
        return counts

    def _load_audit(self, conn, exit_id: int) -> List[AuditEntry]:
        rows = conn.execute(
            """
            SELECT timestamp, action, details, process_id
            FROM scheduled_exit_audit
            WHERE exit_id = ?
            ORDER BY id
            """,
            (exit_id,),
        ).fetchall()
        return [AuditEntry.from_row(r) for r in rows]

    def _position_for(self, exit_id: int) -> str:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT position_id FROM scheduled_exits WHERE id = ?", (exit_id,)
            ).fetchone()
        return row["position_id"] if row else str(exit_id)

    # -----------------------------
    # HOUSEKEEPING
    # -----------------------------
    def purge_terminal(self, older_than: str) -> int:
        """Delete terminal records (and their audit) last updated before ``older_than``."""
        statuses = _values(TERMINAL_EXIT_STATUSES)
        with self.db.transaction() as conn:
            ids = [
                r["id"]
                for r in conn.execute(
                    f"""
                    SELECT id FROM scheduled_exits
                    WHERE status IN ({_placeholders(len(statuses))})
                    AND updated_at < ?
                    """,
                    (*statuses, older_than),
                ).fetchall()
            ]
            if not ids:
                return 0
            conn.executemany(
                "DELETE FROM scheduled_exit_audit WHERE exit_id = ?", [(i,) for i in ids]
            )
            conn.executemany(
                "DELETE FROM scheduled_exits WHERE id = ?", [(i,) for i in ids]
            )

        logger.info("PURGED SCHEDULED EXITS | count=%s | older_than=%s", len(ids), older_than)
        return len(ids)
