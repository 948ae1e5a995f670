#===================================================================
# 🔒 STATUS CONTRACTS
#
# ScheduledExit.status
#   PENDING   → EXECUTING → COMPLETED | FAILED
#   PENDING   → CANCELLED
#   EXECUTING → CANCELLED        (emergency stop only)
#   EXECUTING / FAILED → PENDING (administrative reset only)
#
# OrderState.confirmation_status
#   PENDING → CONFIRMING → CONFIRMED
#   PENDING | CONFIRMING → TIMEOUT | FAILED   (both set needs_manual_review)
#
# placement_status is written once at placement and never changes.
#===================================================================

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class ExitStatus(str, Enum):
    PENDING = "PENDING"
    EXECUTING = "EXECUTING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


ACTIVE_EXIT_STATUSES = (ExitStatus.PENDING, ExitStatus.EXECUTING)
TERMINAL_EXIT_STATUSES = (ExitStatus.COMPLETED, ExitStatus.FAILED, ExitStatus.CANCELLED)


class ExecutionMethod(str, Enum):
    AUTO_TIMEOUT = "AUTO_TIMEOUT"
    MANUAL_TRIGGER = "MANUAL_TRIGGER"
    RESTART_RECOVERY = "RESTART_RECOVERY"
    IMMEDIATE_EXECUTION = "IMMEDIATE_EXECUTION"


class AuditAction(str, Enum):
    SCHEDULED = "SCHEDULED"
    RESCHEDULED = "RESCHEDULED"
    CANCELLED = "CANCELLED"
    RESTART_DETECTED = "RESTART_DETECTED"
    RESCHEDULED_AFTER_RESTART = "RESCHEDULED_AFTER_RESTART"
    AUTO_CANCELLED = "AUTO_CANCELLED"
    OVERDUE_DETECTED = "OVERDUE_DETECTED"
    EXECUTION_STARTED = "EXECUTION_STARTED"
    EXECUTION_COMPLETED = "EXECUTION_COMPLETED"
    EXECUTION_FAILED = "EXECUTION_FAILED"
    EXECUTION_ERROR = "EXECUTION_ERROR"
    STALLED_DETECTED = "STALLED_DETECTED"
    STALE_SESSION = "STALE_SESSION"
    EMERGENCY_STOP = "EMERGENCY_STOP"
    ADMIN_RESET = "ADMIN_RESET"


class PlacementStatus(str, Enum):
    PLACED = "PLACED"
    PLACEMENT_FAILED = "PLACEMENT_FAILED"
    PLACEMENT_ERROR = "PLACEMENT_ERROR"


class ConfirmationStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMING = "CONFIRMING"
    CONFIRMED = "CONFIRMED"
    TIMEOUT = "TIMEOUT"
    FAILED = "FAILED"


UNRESOLVED_CONFIRMATION_STATUSES = (ConfirmationStatus.PENDING, ConfirmationStatus.CONFIRMING)
TERMINAL_CONFIRMATION_STATUSES = (
    ConfirmationStatus.CONFIRMED,
    ConfirmationStatus.TIMEOUT,
    ConfirmationStatus.FAILED,
)


class ExecutionStatus(str, Enum):
    COMPLETE = "COMPLETE"
    PARTIAL = "PARTIAL"
    OPEN = "OPEN"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"
    UNKNOWN = "UNKNOWN"


TERMINAL_EXECUTION_STATUSES = (
    ExecutionStatus.COMPLETE,
    ExecutionStatus.CANCELLED,
    ExecutionStatus.REJECTED,
)


class HistoryStatus(str, Enum):
    EXECUTION_CONFIRMED = "EXECUTION_CONFIRMED"
    EXECUTION_FAILED = "EXECUTION_FAILED"
    STILL_PENDING = "STILL_PENDING"
    CHECK_ERROR = "CHECK_ERROR"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    MANUAL_REVIEW_REQUIRED = "MANUAL_REVIEW_REQUIRED"
    MANUAL_REVIEW_RESOLVED = "MANUAL_REVIEW_RESOLVED"


def dumps_details(details: Optional[Dict[str, Any]]) -> Optional[str]:
    if details is None:
        return None
    return json.dumps(details, default=str, sort_keys=True)


def loads_details(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if not raw:
        return None
    return json.loads(raw)


# ======================================================
# SCHEDULED EXIT
# ======================================================

@dataclass
class AuditEntry:
    timestamp: str
    action: str
    details: Optional[Dict[str, Any]]
    process_id: str

    @classmethod
    def from_row(cls, row) -> "AuditEntry":
        return cls(
            timestamp=row["timestamp"],
            action=row["action"],
            details=loads_details(row["details"]),
            process_id=row["process_id"],
        )


@dataclass
class ScheduledBy:
    process_id: str
    scheduler_version: str
    scheduled_at: str


@dataclass
class ScheduledExit:
    # ---- Identity ----
    position_id: str
    user_id: str
    symbol: str

    # ---- Schedule (venue local) ----
    scheduled_exit_time: str        # HH:MM
    scheduled_for_date: str         # YYYY-MM-DD

    # ---- State ----
    status: ExitStatus
    scheduled_by: ScheduledBy
    created_at: str
    updated_at: str

    execution_attempts: int = 0
    last_execution_attempt: Optional[str] = None
    last_execution_error: Optional[str] = None

    # ---- Outcome ----
    executed_at: Optional[str] = None
    execution_method: Optional[ExecutionMethod] = None
    execution_details: Optional[Dict[str, Any]] = None

    id: Optional[int] = None
    audit_log: List[AuditEntry] = field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_EXIT_STATUSES

    @classmethod
    def from_row(cls, row, audit_log: Optional[List[AuditEntry]] = None) -> "ScheduledExit":
        method = row["execution_method"]
        return cls(
            id=row["id"],
            position_id=row["position_id"],
            user_id=row["user_id"],
            symbol=row["symbol"],
            scheduled_exit_time=row["scheduled_exit_time"],
            scheduled_for_date=row["scheduled_for_date"],
            status=ExitStatus(row["status"]),
            execution_attempts=row["execution_attempts"],
            last_execution_attempt=row["last_execution_attempt"],
            last_execution_error=row["last_execution_error"],
            scheduled_by=ScheduledBy(
                process_id=row["scheduled_by_process_id"],
                scheduler_version=row["scheduler_version"],
                scheduled_at=row["scheduled_at"],
            ),
            executed_at=row["executed_at"],
            execution_method=ExecutionMethod(method) if method else None,
            execution_details=loads_details(row["execution_details"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            audit_log=audit_log or [],
        )


# ======================================================
# ORDER STATE
# ======================================================

@dataclass
class StatusHistoryEntry:
    status: str
    timestamp: str
    details: Optional[Dict[str, Any]]

    @classmethod
    def from_row(cls, row) -> "StatusHistoryEntry":
        return cls(
            status=row["status"],
            timestamp=row["timestamp"],
            details=loads_details(row["details"]),
        )


@dataclass
class OrderState:
    # ---- Identity ----
    order_id: str
    user_id: str
    trade_execution_id: Optional[str]

    # ---- Order facts ----
    symbol: str
    exchange: str
    order_type: str             # MARKET | LIMIT | SL | SL-M
    transaction_type: str       # BUY | SELL
    quantity: int
    price: Optional[float]
    product: Optional[str]      # MIS | CNC | NRML

    # ---- State machines ----
    placement_status: PlacementStatus
    confirmation_status: ConfirmationStatus
    execution_status: ExecutionStatus

    created_at: str
    updated_at: str

    # ---- Fill data ----
    executed_quantity: int = 0
    executed_price: Optional[float] = None
    pending_quantity: Optional[int] = None

    # ---- Monitoring ----
    confirmation_attempts: int = 0
    total_confirmation_time: int = 0    # milliseconds since placement
    last_status_check: Optional[str] = None
    partial_since: Optional[str] = None

    error: Optional[str] = None
    status_message: Optional[str] = None
    needs_manual_review: bool = False
    manual_review_reason: Optional[str] = None

    id: Optional[int] = None
    status_history: List[StatusHistoryEntry] = field(default_factory=list)

    @property
    def is_unresolved(self) -> bool:
        return self.confirmation_status in UNRESOLVED_CONFIRMATION_STATUSES

    @classmethod
    def from_row(cls, row, history: Optional[List[StatusHistoryEntry]] = None) -> "OrderState":
        return cls(
            id=row["id"],
            order_id=row["order_id"],
            user_id=row["user_id"],
            trade_execution_id=row["trade_execution_id"],
            symbol=row["symbol"],
            exchange=row["exchange"],
            order_type=row["order_type"],
            transaction_type=row["transaction_type"],
            quantity=row["quantity"],
            price=row["price"],
            product=row["product"],
            placement_status=PlacementStatus(row["placement_status"]),
            confirmation_status=ConfirmationStatus(row["confirmation_status"]),
            execution_status=ExecutionStatus(row["execution_status"]),
            executed_quantity=row["executed_quantity"],
            executed_price=row["executed_price"],
            pending_quantity=row["pending_quantity"],
            confirmation_attempts=row["confirmation_attempts"],
            total_confirmation_time=row["total_confirmation_time"],
            last_status_check=row["last_status_check"],
            partial_since=row["partial_since"],
            error=row["error"],
            status_message=row["status_message"],
            needs_manual_review=bool(row["needs_manual_review"]),
            manual_review_reason=row["manual_review_reason"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            status_history=history or [],
        )
