#!/usr/bin/env python3
"""
ADMIN / REPORTING FACADE

In-process surface for whatever admin layer sits on top.

Authorities:
- scheduled_exits / order_states tables (via repositories) for all reads
- ExitScheduler / OrderConfirmationMonitor for every mutation

❌ No business logic here
❌ No broker access
"""

import math
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, Optional, Tuple

from squareoff_platform.api.admin.schemas import (
    ExitQuery,
    OrderQuery,
    OrderStateView,
    Page,
    ScheduledExitView,
    StatisticsView,
)
from squareoff_platform.core.errors import OrderStateNotFound, ScheduledExitNotFound
from squareoff_platform.execution.exit_scheduler import ExitScheduler
from squareoff_platform.execution.order_monitor import OrderConfirmationMonitor
from squareoff_platform.logging.logger_config import get_component_logger
from squareoff_platform.persistence.exit_repository import ScheduledExitRepository
from squareoff_platform.persistence.order_state_repository import OrderStateRepository
from squareoff_platform.utils.clock import VenueClock, to_utc_iso

logger = get_component_logger("admin")

DEFAULT_RETENTION_DAYS = 30


class AdminService:
    def __init__(
        self,
        scheduler: ExitScheduler,
        monitor: OrderConfirmationMonitor,
        exit_repo: ScheduledExitRepository,
        order_repo: OrderStateRepository,
        clock: VenueClock,
        retention_days: int = DEFAULT_RETENTION_DAYS,
    ):
        self.scheduler = scheduler
        self.monitor = monitor
        self.exit_repo = exit_repo
        self.order_repo = order_repo
        self.clock = clock
        self.retention_days = retention_days

    # ==================================================
    # STATUS
    # ==================================================
    def get_scheduler_status(self) -> Dict[str, Any]:
        return self.scheduler.get_status()

    def get_monitor_status(self) -> Dict[str, Any]:
        return self.monitor.get_status()

    def get_statistics(self) -> StatisticsView:
        today = self.clock.today()
        day_start, day_end = self._day_bounds(today)

        orders = self.order_repo.count_by_status()
        orders_today = self.order_repo.count_by_status(created_from=day_start, created_to=day_end)

        return StatisticsView(
            scheduled_exits=self.exit_repo.count_by_status(),
            scheduled_exits_today=self.exit_repo.count_by_status(for_date=today.isoformat()),
            orders=orders,
            orders_today=orders_today,
            needs_review=orders["needs_review"],
        )

    # ==================================================
    # QUERIES
    # ==================================================
    def list_scheduled_exits(self, query: Optional[ExitQuery] = None) -> Page[ScheduledExitView]:
        query = query or ExitQuery()
        records, total = self.exit_repo.query(
            status=query.status.value if query.status else None,
            user_id=query.user_id,
            for_date=query.date.isoformat() if query.date else None,
            position_id=query.position_id,
            offset=query.offset,
            limit=query.limit,
        )
        return self._page([ScheduledExitView.from_record(r) for r in records], total, query)

    def get_scheduled_exit(self, position_id: str) -> ScheduledExitView:
        """Latest record for the position, with its full audit log."""
        record = self.exit_repo.get_latest(position_id)
        if record is None:
            raise ScheduledExitNotFound(position_id)
        return ScheduledExitView.from_record(record, include_audit=True)

    def list_order_states(self, query: Optional[OrderQuery] = None) -> Page[OrderStateView]:
        query = query or OrderQuery()
        created_from = created_to = None
        if query.date:
            created_from, created_to = self._day_bounds(query.date)

        states, total = self.order_repo.query(
            confirmation_status=query.status.value if query.status else None,
            user_id=query.user_id,
            needs_review=query.needs_review,
            created_from=created_from,
            created_to=created_to,
            offset=query.offset,
            limit=query.limit,
        )
        return self._page([OrderStateView.from_record(s) for s in states], total, query)

    def get_order_state(self, order_id: str) -> OrderStateView:
        state = self.order_repo.get(order_id)
        if state is None:
            raise OrderStateNotFound(order_id)
        return OrderStateView.from_record(state, include_history=True)

    # ==================================================
    # MUTATIONS (delegated)
    # ==================================================
    def cancel_exit(self, position_id: str, reason: str = "Cancelled by admin") -> bool:
        logger.warning("ADMIN | cancel exit | position=%s | reason=%s", position_id, reason)
        return self.scheduler.cancel_position_exit(position_id, reason)

    def emergency_stop(self, reason: str = "Emergency stop by admin") -> Dict[str, Any]:
        logger.critical("ADMIN | emergency stop | reason=%s", reason)
        return self.scheduler.emergency_stop(reason)

    def reset_exit(self, position_id: str) -> ScheduledExitView:
        logger.warning("ADMIN | reset exit | position=%s", position_id)
        return ScheduledExitView.from_record(self.scheduler.reset_exit(position_id), include_audit=True)

    def force_reschedule(self) -> Dict[str, Any]:
        logger.warning("ADMIN | force reschedule")
        return self.scheduler.force_reschedule()

    def trigger_exit_now(self, position_id: str) -> ScheduledExitView:
        logger.warning("ADMIN | trigger exit now | position=%s", position_id)
        return ScheduledExitView.from_record(
            self.scheduler.trigger_exit_now(position_id), include_audit=True
        )

    def resolve_manual_review(self, order_id: str, note: Optional[str] = None) -> OrderStateView:
        logger.info("ADMIN | resolve manual review | order_id=%s", order_id)
        return OrderStateView.from_record(
            self.monitor.resolve_manual_review(order_id, note), include_history=True
        )

    def start_monitor(self) -> Dict[str, Any]:
        self.monitor.start()
        return self.monitor.get_status()

    def stop_monitor(self) -> Dict[str, Any]:
        self.monitor.stop()
        return self.monitor.get_status()

    # ==================================================
    # HOUSEKEEPING
    # ==================================================
    def purge_terminal_records(self, retention_days: Optional[int] = None) -> Dict[str, Any]:
        """
        Delete terminal exits and resolved orders older than the retention
        window. Orders flagged for manual review are always kept.
        """
        days = retention_days if retention_days is not None else self.retention_days
        if days < 1:
            raise ValueError(f"retention_days must be >= 1, got {days}")

        cutoff = to_utc_iso(self.clock.now() - timedelta(days=days))
        exits = self.exit_repo.purge_terminal(cutoff)
        orders = self.order_repo.purge_terminal(cutoff)

        logger.info("ADMIN | purge | retention_days=%s | exits=%s | orders=%s", days, exits, orders)
        return {"retention_days": days, "cutoff": cutoff, "scheduled_exits": exits, "order_states": orders}

    # ==================================================
    # HELPERS
    # ==================================================
    def _day_bounds(self, day: date) -> Tuple[str, str]:
        """Venue-local calendar day → [start, end) as UTC ISO strings."""
        start = datetime.combine(day, time.min, tzinfo=self.clock.tz)
        end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=self.clock.tz)
        return to_utc_iso(start), to_utc_iso(end)

    @staticmethod
    def _page(items, total: int, query) -> Page:
        return Page(
            items=items,
            total=total,
            page=query.page,
            limit=query.limit,
            pages=math.ceil(total / query.limit) if total else 0,
        )
