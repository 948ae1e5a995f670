#!/usr/bin/env python3
"""
ADMIN SCHEMAS

Query and view models for the admin / reporting facade.

- Query schemas validate filters and pagination coming from the admin layer
- View schemas are read-only projections of durable records
- Views are safe to evolve; nothing in execution reads them
"""
#==============================================
# File        : schemas.py
# Role        : Admin facade query / view contract
# Guarantees  :
#   - Enum-safe status filters
#   - Bounded pagination (1 <= limit <= 500)
#   - No execution coupling
#==============================================
from datetime import date as Date
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from squareoff_platform.persistence.models import (
    ConfirmationStatus,
    ExitStatus,
    OrderState,
    ScheduledExit,
)

T = TypeVar("T")


# ============================================================
# QUERIES
# ============================================================


class PageQuery(BaseModel):
    page: int = Field(1, ge=1)
    limit: int = Field(50, ge=1, le=500)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


class ExitQuery(PageQuery):
    status: Optional[ExitStatus] = None
    user_id: Optional[str] = None
    date: Optional[Date] = None
    position_id: Optional[str] = None


class OrderQuery(PageQuery):
    status: Optional[ConfirmationStatus] = None
    user_id: Optional[str] = None
    date: Optional[Date] = None
    needs_review: Optional[bool] = None


class Page(BaseModel, Generic[T]):
    items: List[T]
    total: int
    page: int
    limit: int
    pages: int


# ============================================================
# VIEWS
# ============================================================

class AuditEntryView(BaseModel):
    timestamp: str
    action: str
    details: Optional[Dict[str, Any]] = None
    process_id: str


class ScheduledExitView(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    id: int
    position_id: str
    user_id: str
    symbol: str
    scheduled_exit_time: str
    scheduled_for_date: str
    status: ExitStatus
    execution_attempts: int
    last_execution_attempt: Optional[str] = None
    last_execution_error: Optional[str] = None
    scheduled_by_process_id: str
    scheduler_version: str
    scheduled_at: str
    executed_at: Optional[str] = None
    execution_method: Optional[str] = None
    execution_details: Optional[Dict[str, Any]] = None
    created_at: str
    updated_at: str
    audit_log: List[AuditEntryView] = Field(default_factory=list)

    @classmethod
    def from_record(cls, record: ScheduledExit, include_audit: bool = False) -> "ScheduledExitView":
        return cls(
            id=record.id,
            position_id=record.position_id,
            user_id=record.user_id,
            symbol=record.symbol,
            scheduled_exit_time=record.scheduled_exit_time,
            scheduled_for_date=record.scheduled_for_date,
            status=record.status,
            execution_attempts=record.execution_attempts,
            last_execution_attempt=record.last_execution_attempt,
            last_execution_error=record.last_execution_error,
            scheduled_by_process_id=record.scheduled_by.process_id,
            scheduler_version=record.scheduled_by.scheduler_version,
            scheduled_at=record.scheduled_by.scheduled_at,
            executed_at=record.executed_at,
            execution_method=record.execution_method.value if record.execution_method else None,
            execution_details=record.execution_details,
            created_at=record.created_at,
            updated_at=record.updated_at,
            audit_log=[
                AuditEntryView(
                    timestamp=a.timestamp,
                    action=a.action,
                    details=a.details,
                    process_id=a.process_id,
                )
                for a in record.audit_log
            ] if include_audit else [],
        )


class StatusHistoryView(BaseModel):
    status: str
    timestamp: str
    details: Optional[Dict[str, Any]] = None


class OrderStateView(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    order_id: str
    trade_execution_id: Optional[str] = None
    user_id: str
    symbol: str
    exchange: str
    order_type: str
    transaction_type: str
    product: Optional[str] = None
    quantity: int
    price: Optional[float] = None
    placement_status: str
    confirmation_status: str
    execution_status: str
    executed_quantity: int
    executed_price: Optional[float] = None
    pending_quantity: Optional[int] = None
    confirmation_attempts: int
    total_confirmation_time: int
    last_status_check: Optional[str] = None
    error: Optional[str] = None
    status_message: Optional[str] = None
    needs_manual_review: bool
    manual_review_reason: Optional[str] = None
    created_at: str
    updated_at: str
    status_history: List[StatusHistoryView] = Field(default_factory=list)

    @classmethod
    def from_record(cls, state: OrderState, include_history: bool = False) -> "OrderStateView":
        return cls(
            order_id=state.order_id,
            trade_execution_id=state.trade_execution_id,
            user_id=state.user_id,
            symbol=state.symbol,
            exchange=state.exchange,
            order_type=state.order_type,
            transaction_type=state.transaction_type,
            product=state.product,
            quantity=state.quantity,
            price=state.price,
            placement_status=state.placement_status.value,
            confirmation_status=state.confirmation_status.value,
            execution_status=state.execution_status.value,
            executed_quantity=state.executed_quantity,
            executed_price=state.executed_price,
            pending_quantity=state.pending_quantity,
            confirmation_attempts=state.confirmation_attempts,
            total_confirmation_time=state.total_confirmation_time,
            last_status_check=state.last_status_check,
            error=state.error,
            status_message=state.status_message,
            needs_manual_review=state.needs_manual_review,
            manual_review_reason=state.manual_review_reason,
            created_at=state.created_at,
            updated_at=state.updated_at,
            status_history=[
                StatusHistoryView(status=h.status, timestamp=h.timestamp, details=h.details)
                for h in state.status_history
            ] if include_history else [],
        )


class StatisticsView(BaseModel):
    scheduled_exits: Dict[str, int]
    scheduled_exits_today: Dict[str, int]
    orders: Dict[str, int]
    orders_today: Dict[str, int]
    needs_review: int
