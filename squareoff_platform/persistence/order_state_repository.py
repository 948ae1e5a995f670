# ===================================================================
# OrderStateRepository
#
# Durable source of truth for order confirmation state.
#
# Guarantees:
# - order_id unique
# - placement_status written once at insert, never updated
# - Poll results are applied with optimistic concurrency on
#   (confirmation_status, confirmation_attempts); a stale poll writes
#   nothing, including its history entry
# - Rows with needs_manual_review = 1 are never purged
# ===================================================================

import logging
from typing import Any, Dict, List, Optional, Tuple

from squareoff_platform.persistence.database import Database
from squareoff_platform.persistence.models import (
    TERMINAL_CONFIRMATION_STATUSES,
    UNRESOLVED_CONFIRMATION_STATUSES,
    ConfirmationStatus,
    OrderState,
    StatusHistoryEntry,
    dumps_details,
)

logger = logging.getLogger(__name__)

_POLL_COLUMNS = {
    "confirmation_status",
    "execution_status",
    "executed_quantity",
    "executed_price",
    "pending_quantity",
    "total_confirmation_time",
    "last_status_check",
    "partial_since",
    "error",
    "status_message",
    "needs_manual_review",
    "manual_review_reason",
}


def _enum_value(value):
    return getattr(value, "value", value)


class OrderStateRepository:
    """Persistence only. No broker calls, no scheduling."""

    def __init__(self, db: Database):
        self.db = db

    # -----------------------------
    # CREATE
    # -----------------------------
    def create(self, state: OrderState) -> OrderState:
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO order_states (
                    order_id, trade_execution_id, user_id,
                    symbol, exchange, order_type, transaction_type, product,
                    quantity, price,
                    placement_status, confirmation_status, execution_status,
                    executed_quantity, executed_price, pending_quantity,
                    confirmation_attempts, total_confirmation_time,
                    error, status_message,
                    needs_manual_review, manual_review_reason,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, 0, ?, ?, ?, ?, ?, ?)
                """,
                (
                    state.order_id,
                    state.trade_execution_id,
                    state.user_id,
                    state.symbol,
                    state.exchange,
                    state.order_type,
                    state.transaction_type,
                    state.product,
                    state.quantity,
                    state.price,
                    _enum_value(state.placement_status),
                    _enum_value(state.confirmation_status),
                    _enum_value(state.execution_status),
                    state.executed_quantity,
                    state.executed_price,
                    state.pending_quantity,
                    state.error,
                    state.status_message,
                    int(state.needs_manual_review),
                    state.manual_review_reason,
                    state.created_at,
                    state.updated_at,
                ),
            )
        return self.get(state.order_id)

    # -----------------------------
    # UPDATE
    # -----------------------------
    def apply_poll(
        self,
        order_id: str,
        *,
        expected_attempts: int,
        now: str,
        history_status: str,
        history_details: Optional[Dict[str, Any]] = None,
        **fields,
    ) -> bool:
        """
        Record one poll cycle: bump confirmation_attempts, apply ``fields``
        and append exactly one history entry.

        Returns False when another poll already advanced the row or the
        row left PENDING/CONFIRMING.
        """
        unknown = set(fields) - _POLL_COLUMNS
        if unknown:
            raise ValueError(f"Unsupported order_states columns: {sorted(unknown)}")

        sets = ["confirmation_attempts = confirmation_attempts + 1", "updated_at = ?"]
        params: List[Any] = [now]
        for column, value in fields.items():
            if column == "needs_manual_review":
                value = int(bool(value))
            sets.append(f"{column} = ?")
            params.append(_enum_value(value))

        unresolved = [s.value for s in UNRESOLVED_CONFIRMATION_STATUSES]
        params.extend([order_id, expected_attempts, *unresolved])

        with self.db.transaction() as conn:
            cur = conn.execute(
                f"""
                UPDATE order_states
                SET {", ".join(sets)}
                WHERE order_id = ?
                AND confirmation_attempts = ?
                AND confirmation_status IN (?, ?)
                """,
                params,
            )
            if cur.rowcount != 1:
                return False
            self._insert_history(conn, order_id, history_status, now, history_details)
            return True

    def resolve_manual_review(self, order_id: str, *, now: str, note: Optional[str] = None) -> bool:
        """Clear the review flag. confirmation_status is left untouched."""
        with self.db.transaction() as conn:
            cur = conn.execute(
                """
                UPDATE order_states
                SET needs_manual_review = 0, updated_at = ?
                WHERE order_id = ?
                """,
                (now, order_id),
            )
            if cur.rowcount != 1:
                return False
            self._insert_history(
                conn, order_id, "MANUAL_REVIEW_RESOLVED", now, {"note": note} if note else None
            )
            return True

    def _insert_history(self, conn, order_id, status, timestamp, details):
        conn.execute(
            """
            INSERT INTO order_state_history (order_id, status, timestamp, details)
            VALUES (?, ?, ?, ?)
            """,
            (order_id, _enum_value(status), timestamp, dumps_details(details)),
        )

    # -----------------------------
    # READ
    # -----------------------------
    def get(self, order_id: str, with_history: bool = True) -> Optional[OrderState]:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM order_states WHERE order_id = ?", (order_id,)
            ).fetchone()
            if not row:
                return None
            history = self._load_history(conn, order_id) if with_history else None
        return OrderState.from_row(row, history)

    def list_unresolved(self) -> List[OrderState]:
        """Orders the confirmation monitor must (re)adopt."""
        statuses = [s.value for s in UNRESOLVED_CONFIRMATION_STATUSES]
        with self.db.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM order_states
                WHERE confirmation_status IN (?, ?)
                ORDER BY created_at
                """,
                statuses,
            ).fetchall()
        return [OrderState.from_row(r) for r in rows]

    def list_by_trade(self, trade_execution_id: str) -> List[OrderState]:
        with self.db.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM order_states
                WHERE trade_execution_id = ?
                ORDER BY created_at, id
                """,
                (trade_execution_id,),
            ).fetchall()
        return [OrderState.from_row(r) for r in rows]

    def query(
        self,
        *,
        confirmation_status: Optional[str] = None,
        user_id: Optional[str] = None,
        needs_review: Optional[bool] = None,
        created_from: Optional[str] = None,
        created_to: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> Tuple[List[OrderState], int]:
        clauses, params = [], []
        if confirmation_status:
            clauses.append("confirmation_status = ?")
            params.append(confirmation_status)
        if user_id:
            clauses.append("user_id = ?")
            params.append(user_id)
        if needs_review is not None:
            clauses.append("needs_manual_review = ?")
            params.append(int(needs_review))
        if created_from:
            clauses.append("created_at >= ?")
            params.append(created_from)
        if created_to:
            clauses.append("created_at < ?")
            params.append(created_to)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self.db.connection() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) FROM order_states {where}", params
            ).fetchone()[0]
            rows = conn.execute(
                f"""
                SELECT * FROM order_states {where}
                ORDER BY created_at DESC, id DESC
                LIMIT ? OFFSET ?
                """,
                (*params, limit, offset),
            ).fetchall()
        return [OrderState.from_row(r) for r in rows], total

    def count_by_status(
        self,
        created_from: Optional[str] = None,
        created_to: Optional[str] = None,
    ) -> Dict[str, int]:
        clauses, params = [], []
        if created_from:
            clauses.append("created_at >= ?")
            params.append(created_from)
        if created_to:
            clauses.append("created_at < ?")
            params.append(created_to)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        counts = {s.value: 0 for s in ConfirmationStatus}
        with self.db.connection() as conn:
            for row in conn.execute(
                f"""
                SELECT confirmation_status, COUNT(*) AS n
                FROM order_states {where}
                GROUP BY confirmation_status
                """,
                params,
            ).fetchall():
                counts[row["confirmation_status"]] = row["n"]
            counts["needs_review"] = conn.execute(
                f"""
                SELECT COUNT(*) FROM order_states
                {where + ' AND' if where else 'WHERE'} needs_manual_review = 1
                """,
                params,
            ).fetchone()[0]
        return counts

    def _load_history(self, conn, order_id: str) -> List[StatusHistoryEntry]:
        rows = conn.execute(
            """
            SELECT status, timestamp, details
            FROM order_state_history
            WHERE order_id = ?
            ORDER BY id
            """,
            (order_id,),
        ).fetchall()
        return [StatusHistoryEntry.from_row(r) for r in rows]

    # -----------------------------
    # HOUSEKEEPING
    # -----------------------------
    def purge_terminal(self, older_than: str) -> int:
        """Delete resolved orders older than ``older_than``; never a flagged one."""
        statuses = [s.value for s in TERMINAL_CONFIRMATION_STATUSES]
        with self.db.transaction() as conn:
            order_ids = [
                r["order_id"]
                for r in conn.execute(
                    """
                    SELECT order_id FROM order_states
                    WHERE confirmation_status IN (?, ?, ?)
                    AND needs_manual_review = 0
                    AND updated_at < ?
                    """,
                    (*statuses, older_than),
                ).fetchall()
            ]
            if not order_ids:
                return 0
            conn.executemany(
                "DELETE FROM order_state_history WHERE order_id = ?", [(o,) for o in order_ids]
            )
            conn.executemany(
                "DELETE FROM order_states WHERE order_id = ?", [(o,) for o in order_ids]
            )

        logger.info("PURGED ORDER STATES | count=%s | older_than=%s", len(order_ids), older_than)
        return len(order_ids)
