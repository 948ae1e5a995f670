#!/usr/bin/env python3
"""
ORDER CONFIRMATION MONITOR
==========================

Drives every placed order from PENDING to a terminal confirmation state
using broker truth.

Invariants:
- One poll task per tracked order (a slow broker answer for one order
  never delays another)
- Exactly one status_history entry per poll; confirmation_attempts counts polls
- Poll results land through an optimistic conditional update; two ticks
  can never double-transition the same order
- executed_quantity <= quantity, always (broker overfills are clamped and flagged)
- TIMEOUT and FAILED always set needs_manual_review
- A broker cancel or reject after a partial fill sets needs_manual_review
- Durable store is authoritative; the in-memory timer map is a cache
"""

import threading
from typing import Any, Callable, Dict, Optional

from squareoff_platform.brokers.base import (
    BrokerAuthError,
    BrokerError,
    BrokerOrderNotFound,
    BrokerOrderStatus,
    BrokerRegistry,
)
from squareoff_platform.core.config import MonitorSettings
from squareoff_platform.core.errors import OrderStateNotFound
from squareoff_platform.execution.timers import KeyedLocks
from squareoff_platform.logging.logger_config import get_component_logger
from squareoff_platform.persistence.models import (
    TERMINAL_EXECUTION_STATUSES,
    ConfirmationStatus,
    ExecutionStatus,
    HistoryStatus,
    OrderState,
)
from squareoff_platform.persistence.order_state_repository import OrderStateRepository
from squareoff_platform.utils.clock import VenueClock, from_iso, to_utc_iso

logger = get_component_logger("order_monitor")

ManualReviewHook = Callable[[OrderState, str], None]


def derive_execution_status(order_quantity: int, broker: BrokerOrderStatus) -> ExecutionStatus:
    """
    Broker fill data → ExecutionStatus.

    filled == quantity                → COMPLETE
    broker CANCELLED / REJECTED       → CANCELLED / REJECTED
    0 < filled < quantity and live    → PARTIAL
    anything else                     → OPEN
    """
    filled = min(broker.filled_quantity, order_quantity)
    if order_quantity > 0 and filled == order_quantity:
        return ExecutionStatus.COMPLETE
    if broker.status == "CANCELLED":
        return ExecutionStatus.CANCELLED
    if broker.status == "REJECTED":
        return ExecutionStatus.REJECTED
    if 0 < filled < order_quantity and broker.is_live:
        return ExecutionStatus.PARTIAL
    return ExecutionStatus.OPEN


class OrderConfirmationMonitor:
    """
    Responsibilities:
    - Poll broker order status with exponential backoff
    - Persist every poll outcome
    - Escalate timeouts, auth failures and stuck partial fills to manual review
    - Re-adopt unresolved orders from the durable store on start and on sweep
    """

    def __init__(
        self,
        repo: OrderStateRepository,
        brokers: BrokerRegistry,
        settings: MonitorSettings,
        clock: VenueClock,
        timers,
        on_manual_review: Optional[ManualReviewHook] = None,
    ):
        self.repo = repo
        self.brokers = brokers
        self.settings = settings
        self.clock = clock
        self.timers = timers
        self.on_manual_review = on_manual_review

        self._lock = threading.RLock()
        self._order_locks = KeyedLocks()
        self._poll_timers: Dict[str, Any] = {}
        self._sweep_handle = None
        self._running = False

        self._inflight = 0
        self._inflight_cv = threading.Condition()

    # --------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        with self._lock:
            if self._running:
                logger.info("Order monitor already running")
                return
            self._running = True

            adopted = self._adopt_unresolved()
            self._sweep_handle = self.timers.repeat(
                self.settings.sweep_interval_sec, self._sweep, name="order-monitor-sweep"
            )

        logger.info("🚀 ORDER MONITOR STARTED | adopted=%s", adopted)

    def stop(self, timeout: float = 30.0) -> None:
        """Disarm pending polls and let in-flight polls finish."""
        with self._lock:
            if not self._running:
                return
            self._running = False
            handles = list(self._poll_timers.values())
            self._poll_timers.clear()
            if self._sweep_handle is not None:
                self._sweep_handle.cancel()
                self._sweep_handle = None

        for handle in handles:
            handle.cancel()

        with self._inflight_cv:
            finished = self._inflight_cv.wait_for(lambda: self._inflight == 0, timeout=timeout)
        if not finished:
            logger.warning("⚠️ ORDER MONITOR STOP | in-flight polls still running after %.0fs", timeout)

        logger.info("🛑 ORDER MONITOR STOPPED | disarmed=%s", len(handles))

    # --------------------------------------------------
    # TRACKING
    # --------------------------------------------------

    def track(self, order_id: str) -> None:
        """Begin confirmation polling for a freshly placed order."""
        if not self._running:
            logger.warning(
                "TRACK DEFERRED | order_id=%s | monitor stopped, order will be adopted on start",
                order_id,
            )
            return
        self._arm(order_id, self.settings.initial_interval_sec)

    def is_tracked(self, order_id: str) -> bool:
        with self._lock:
            return order_id in self._poll_timers

    def backoff_interval(self, attempts: int) -> float:
        """Delay before the poll following ``attempts`` completed polls."""
        exponent = max(attempts - 1, 0)
        return min(
            self.settings.initial_interval_sec * (2 ** exponent),
            self.settings.max_interval_sec,
        )

    def _arm(self, order_id: str, delay: float) -> None:
        with self._lock:
            if not self._running:
                return
            previous = self._poll_timers.pop(order_id, None)
            if previous is not None:
                previous.cancel()

            holder = {}

            def _fire():
                self._on_poll_timer(order_id, holder.get("handle"))

            handle = self.timers.schedule(delay, _fire, name=f"confirm-{order_id}")
            holder["handle"] = handle
            self._poll_timers[order_id] = handle

        logger.debug("POLL ARMED | order_id=%s | delay=%.1fs", order_id, delay)

    def _untrack(self, order_id: str) -> None:
        with self._lock:
            handle = self._poll_timers.pop(order_id, None)
        if handle is not None:
            handle.cancel()

    def _on_poll_timer(self, order_id: str, handle) -> None:
        with self._lock:
            if self._poll_timers.get(order_id) is handle:
                self._poll_timers.pop(order_id, None)
        try:
            self.poll_order(order_id)
        except Exception:
            logger.exception("POLL TASK ERROR | order_id=%s", order_id)

    def _adopt_unresolved(self) -> int:
        adopted = 0
        for state in self.repo.list_unresolved():
            if self.is_tracked(state.order_id):
                continue
            delay = self.backoff_interval(state.confirmation_attempts) if state.confirmation_attempts else (
                self.settings.initial_interval_sec
            )
            self._arm(state.order_id, delay)
            adopted += 1
        return adopted

    def _sweep(self) -> None:
        if not self._running:
            return
        adopted = self._adopt_unresolved()
        if adopted:
            logger.warning("SWEEP | re-adopted %s untracked orders", adopted)

    # --------------------------------------------------
    # POLL CYCLE
    # --------------------------------------------------

    def poll_order(self, order_id: str) -> OrderState:
        """
        Run one confirmation poll for ``order_id`` and persist the outcome.

        Schedules the next poll (with backoff) while the monitor is running
        and the order is still unresolved.
        """
        with self._inflight_cv:
            self._inflight += 1
        try:
            with self._order_locks.get(order_id):
                return self._poll_locked(order_id)
        finally:
            with self._inflight_cv:
                self._inflight -= 1
                self._inflight_cv.notify_all()

    def _poll_locked(self, order_id: str) -> OrderState:
        state = self.repo.get(order_id, with_history=False)
        if state is None:
            self._untrack(order_id)
            raise OrderStateNotFound(order_id)

        if not state.is_unresolved:
            self._untrack(order_id)
            self._order_locks.discard(order_id)
            return self.repo.get(order_id)

        now_dt = self.clock.now()
        now = to_utc_iso(now_dt)
        attempts = state.confirmation_attempts + 1
        elapsed_ms = max(0, int((now_dt - from_iso(state.created_at)).total_seconds() * 1000))

        fields: Dict[str, Any] = {
            "last_status_check": now,
            "total_confirmation_time": elapsed_ms,
        }
        details: Dict[str, Any] = {"attempt": attempts}
        review_reason: Optional[str] = None
        terminal = False

        try:
            broker = self.brokers.get(state.user_id).get_order_status(order_id)

        except BrokerAuthError as e:
            review_reason = f"Broker authentication failed: {e}"
            fields.update(
                confirmation_status=ConfirmationStatus.FAILED,
                error=str(e),
                status_message=review_reason,
                needs_manual_review=True,
                manual_review_reason=review_reason,
            )
            details["error"] = str(e)
            history_status = HistoryStatus.EXECUTION_FAILED
            terminal = True
            logger.error("❌ CONFIRMATION FAILED | order_id=%s | auth error=%s", order_id, e)

        except BrokerOrderNotFound as e:
            fields.update(confirmation_status=ConfirmationStatus.CONFIRMING, error=str(e))
            details["error"] = str(e)
            history_status = HistoryStatus.ORDER_NOT_FOUND
            logger.warning("ORDER NOT FOUND | order_id=%s | attempt=%s", order_id, attempts)

        except BrokerError as e:
            fields.update(confirmation_status=ConfirmationStatus.CONFIRMING, error=str(e))
            details["error"] = str(e)
            history_status = HistoryStatus.CHECK_ERROR
            logger.warning("CHECK ERROR | order_id=%s | attempt=%s | error=%s", order_id, attempts, e)

        except Exception as e:
            logger.exception("CHECK ERROR | order_id=%s | attempt=%s | unexpected", order_id, attempts)
            fields.update(confirmation_status=ConfirmationStatus.CONFIRMING, error=str(e))
            details["error"] = str(e)
            history_status = HistoryStatus.CHECK_ERROR

        else:
            history_status, terminal, review_reason = self._apply_broker_status(
                state, broker, now, fields, details
            )

        # ---- escalation on ceilings (non-terminal only) ----
        if not terminal:
            if attempts >= self.settings.max_attempts or elapsed_ms >= self.settings.timeout_sec * 1000:
                review_reason = (
                    f"Confirmation timed out after {attempts} checks "
                    f"({elapsed_ms / 1000:.0f}s) without a terminal broker status"
                )
                fields.update(
                    confirmation_status=ConfirmationStatus.TIMEOUT,
                    status_message=review_reason,
                    needs_manual_review=True,
                    manual_review_reason=review_reason,
                )
                details["escalation"] = "TIMEOUT"
                history_status = HistoryStatus.MANUAL_REVIEW_REQUIRED
                terminal = True

        applied = self.repo.apply_poll(
            order_id,
            expected_attempts=state.confirmation_attempts,
            now=now,
            history_status=history_status,
            history_details=details,
            **fields,
        )
        if not applied:
            logger.warning("POLL DISCARDED | order_id=%s | state advanced concurrently", order_id)
            return self.repo.get(order_id)

        updated = self.repo.get(order_id)

        logger.info(
            "POLL | order_id=%s | attempt=%s | confirmation=%s | execution=%s | filled=%s/%s",
            order_id,
            attempts,
            updated.confirmation_status.value,
            updated.execution_status.value,
            updated.executed_quantity,
            updated.quantity,
        )

        if review_reason and updated.needs_manual_review:
            self._notify_manual_review(updated, review_reason)

        if terminal:
            self._untrack(order_id)
            self._order_locks.discard(order_id)
            if (
                updated.confirmation_status == ConfirmationStatus.CONFIRMED
                and updated.execution_status in (ExecutionStatus.CANCELLED, ExecutionStatus.REJECTED)
                and updated.executed_quantity == 0
            ):
                self._alert_unfilled(updated)
        elif self._running:
            self._arm(order_id, self.backoff_interval(attempts))

        return updated

    def _apply_broker_status(
        self,
        state: OrderState,
        broker: BrokerOrderStatus,
        now: str,
        fields: Dict[str, Any],
        details: Dict[str, Any],
    ):
        """Fill ``fields``/``details`` from a broker answer. Returns (history_status, terminal, review_reason)."""
        review_reason = None
        filled = broker.filled_quantity

        if filled > state.quantity:
            review_reason = (
                f"Broker reported filled quantity {filled} above order quantity {state.quantity}"
            )
            logger.error("❌ OVERFILL REPORTED | order_id=%s | %s", state.order_id, review_reason)
            fields.update(needs_manual_review=True, manual_review_reason=review_reason)
            details["reported_filled_quantity"] = filled
            filled = state.quantity

        execution_status = derive_execution_status(state.quantity, broker)

        fields.update(
            execution_status=execution_status,
            executed_quantity=filled,
            executed_price=broker.average_price,
            pending_quantity=max(state.quantity - filled, 0),
            status_message=broker.status_message or broker.status,
            error=None,
        )
        details.update(
            broker_status=broker.status,
            execution_status=execution_status.value,
            filled_quantity=filled,
            average_price=broker.average_price,
        )

        if execution_status in TERMINAL_EXECUTION_STATUSES:
            fields["confirmation_status"] = ConfirmationStatus.CONFIRMED
            fields["partial_since"] = None

            # broker closed the order with part of it unfilled
            if execution_status != ExecutionStatus.COMPLETE and 0 < filled < state.quantity:
                review_reason = (
                    f"Partial fill {filled}/{state.quantity} then {execution_status.value}"
                )
                logger.error("❌ PARTIAL FILL CLOSED | order_id=%s | %s", state.order_id, review_reason)
                fields.update(needs_manual_review=True, manual_review_reason=review_reason)
            history_status = (
                HistoryStatus.MANUAL_REVIEW_REQUIRED if review_reason else HistoryStatus.EXECUTION_CONFIRMED
            )
            return history_status, True, review_reason

        fields["confirmation_status"] = ConfirmationStatus.CONFIRMING
        history_status = HistoryStatus.STILL_PENDING

        if execution_status == ExecutionStatus.PARTIAL:
            partial_since = state.partial_since or now
            fields["partial_since"] = partial_since
            partial_for = (from_iso(now) - from_iso(partial_since)).total_seconds()
            details["partial_for_sec"] = round(partial_for, 1)

            if partial_for >= self.settings.partial_fill_grace_sec and not state.needs_manual_review:
                review_reason = (
                    f"Partial fill {filled}/{state.quantity} unchanged for {partial_for:.0f}s"
                )
                fields.update(needs_manual_review=True, manual_review_reason=review_reason)
                history_status = HistoryStatus.MANUAL_REVIEW_REQUIRED
        else:
            fields["partial_since"] = None

        if review_reason and history_status != HistoryStatus.MANUAL_REVIEW_REQUIRED:
            history_status = HistoryStatus.MANUAL_REVIEW_REQUIRED

        return history_status, False, review_reason

    # --------------------------------------------------
    # ADMIN
    # --------------------------------------------------

    def resolve_manual_review(self, order_id: str, note: Optional[str] = None) -> OrderState:
        """Clear the review flag after out-of-band reconciliation."""
        with self._order_locks.get(order_id):
            if self.repo.get(order_id, with_history=False) is None:
                raise OrderStateNotFound(order_id)
            self.repo.resolve_manual_review(order_id, now=to_utc_iso(self.clock.now()), note=note)

        logger.info("MANUAL REVIEW RESOLVED | order_id=%s | note=%s", order_id, note)
        return self.repo.get(order_id)

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            tracked = sorted(self._poll_timers)
        return {
            "is_running": self._running,
            "tracked_orders": len(tracked),
            "tracked_order_ids": tracked,
            "settings": {
                "initial_interval_sec": self.settings.initial_interval_sec,
                "max_interval_sec": self.settings.max_interval_sec,
                "max_attempts": self.settings.max_attempts,
                "timeout_sec": self.settings.timeout_sec,
                "partial_fill_grace_sec": self.settings.partial_fill_grace_sec,
            },
        }

    def _alert_unfilled(self, state: OrderState) -> None:
        """
        A confirmed order the broker cancelled or rejected with nothing filled.

        Orders placed for a trade (exit orders carry the position id) leave
        that position open, so a human is alerted. The review flag stays
        clear: the order itself is fully resolved.
        """
        logger.warning(
            "⚠️ ORDER CONFIRMED NOT FILLED | order_id=%s | execution=%s | msg=%s",
            state.order_id, state.execution_status.value, state.status_message,
        )
        if not state.trade_execution_id:
            return
        self._notify_manual_review(
            state,
            f"{state.transaction_type} {state.symbol} x{state.quantity} "
            f"{state.execution_status.value} with nothing filled; "
            f"position {state.trade_execution_id} is still open",
        )

    def _notify_manual_review(self, state: OrderState, reason: str) -> None:
        logger.critical(
            "🚨 MANUAL REVIEW REQUIRED | order_id=%s | user=%s | symbol=%s | reason=%s",
            state.order_id, state.user_id, state.symbol, reason,
        )
        if self.on_manual_review is None:
            return
        try:
            self.on_manual_review(state, reason)
        except Exception:
            logger.exception("Manual review hook failed | order_id=%s", state.order_id)
