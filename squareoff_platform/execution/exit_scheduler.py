#!/usr/bin/env python3
"""
RESTART-RESISTANT EXIT SCHEDULER
================================

Guarantees that every scheduled intraday position is squared off at its
exit time on its trading date, even when the process restarts mid-session.

Invariants:
- The scheduled_exits row is the source of truth; timers are a cache
- At most one PENDING/EXECUTING row per position
- PENDING→EXECUTING and PENDING→CANCELLED are atomic conditional updates,
  so a cancel racing a timer fire yields exactly one outcome
- Per-position mutations are serialized in-process by a keyed lock
- execution_attempts is bumped before each broker attempt; the record goes
  FAILED once attempts reach the configured ceiling
- Exit-time arithmetic happens in the venue time zone only
- initialize() reports ready only after restart recovery has run to completion

Execution methods:
    AUTO_TIMEOUT         timer fired at the scheduled time
    RESTART_RECOVERY     found overdue (or mid-execution) during startup
    IMMEDIATE_EXECUTION  overdue at schedule / reschedule time
    MANUAL_TRIGGER       administrative "exit now"
"""

import os
import socket
import threading
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from squareoff_platform.brokers.base import (
    BrokerAuthError,
    BrokerRejectedError,
    BrokerTransientError,
)
from squareoff_platform.core.config import ExitSchedulerSettings
from squareoff_platform.core.errors import (
    DuplicateActiveSchedule,
    InvalidExitTime,
    InvalidExitTransition,
    ScheduledExitNotFound,
    SchedulerNotInitialized,
)
from squareoff_platform.execution.order_placement import OrderPlacementService
from squareoff_platform.execution.timers import KeyedLocks
from squareoff_platform.logging.logger_config import get_component_logger
from squareoff_platform.persistence.exit_repository import ScheduledExitRepository
from squareoff_platform.persistence.models import (
    ACTIVE_EXIT_STATUSES,
    AuditAction,
    ExecutionMethod,
    ExitStatus,
    ScheduledBy,
    ScheduledExit,
)
from squareoff_platform.utils.clock import VenueClock, from_iso, parse_exit_time, to_utc_iso

logger = get_component_logger("exit_scheduler")

ManualInterventionHook = Callable[[ScheduledExit, str], None]


def default_process_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:8]}"


class ExitScheduler:
    """
    Responsibilities:
    - Schedule / cancel exits (idempotent per position)
    - Arm one in-memory timer per active position
    - Execute exits through OrderPlacementService with bounded retries
    - Restart recovery, stalled-execution health check, emergency stop
    """

    def __init__(
        self,
        repo: ScheduledExitRepository,
        placement: OrderPlacementService,
        settings: ExitSchedulerSettings,
        clock: VenueClock,
        timers,
        on_manual_intervention: Optional[ManualInterventionHook] = None,
        process_id: Optional[str] = None,
    ):
        self.repo = repo
        self.placement = placement
        self.settings = settings
        self.clock = clock
        self.timers = timers
        self.on_manual_intervention = on_manual_intervention
        self.process_id = process_id or default_process_id()

        self.is_initialized = False
        self.start_time: Optional[str] = None

        self._init_lock = threading.Lock()
        self._timers_lock = threading.RLock()
        self._active_timers: Dict[str, Any] = {}
        self._position_locks = KeyedLocks()
        self._executing: set = set()
        self._health_handle = None

    # ==================================================
    # LIFECYCLE
    # ==================================================

    def initialize(self) -> Dict[str, Any]:
        """Run restart recovery, then start the health check. Idempotent."""
        with self._init_lock:
            if self.is_initialized:
                return self.get_status()

            logger.info(
                "🚀 EXIT SCHEDULER INITIALIZING | process=%s | version=%s",
                self.process_id,
                self.settings.scheduler_version,
            )
            summary = self._recover_after_restart()

            self._health_handle = self.timers.repeat(
                self.settings.health_check_interval_sec,
                self._health_check,
                name="exit-scheduler-health",
            )
            self.start_time = to_utc_iso(self.clock.now())
            self.is_initialized = True

        logger.info("✅ EXIT SCHEDULER READY | recovery=%s", summary)
        return self.get_status()

    def shutdown(self) -> None:
        """Disarm timers. Durable records stay as they are for the next process."""
        with self._init_lock:
            if self._health_handle is not None:
                self._health_handle.cancel()
                self._health_handle = None
            cleared = self._disarm_all()
            self.is_initialized = False

        logger.info("🛑 EXIT SCHEDULER SHUTDOWN | timers_cleared=%s", cleared)

    def _require_initialized(self) -> None:
        if not self.is_initialized:
            raise SchedulerNotInitialized()

    # ==================================================
    # SCHEDULE / CANCEL
    # ==================================================

    def schedule_position_exit(
        self,
        position_id: str,
        exit_time: Optional[str] = None,
        *,
        user_id: str,
        symbol: str,
    ) -> ScheduledExit:
        """
        Register an exit for ``position_id`` today at ``exit_time`` (venue time).

        Idempotent: an existing active record is returned unchanged.
        """
        self._require_initialized()

        exit_time = exit_time or self.settings.default_exit_time
        try:
            parse_exit_time(exit_time)
        except ValueError:
            raise InvalidExitTime(exit_time)

        with self._position_locks.get(position_id):
            existing = self.repo.get_active(position_id)
            if existing is not None:
                logger.info(
                    "EXIT ALREADY SCHEDULED | position=%s | status=%s | time=%s",
                    position_id, existing.status.value, existing.scheduled_exit_time,
                )
                return existing

            now_dt = self.clock.now()
            now = to_utc_iso(now_dt)
            today = now_dt.date()
            record = ScheduledExit(
                position_id=position_id,
                user_id=user_id,
                symbol=symbol,
                scheduled_exit_time=exit_time,
                scheduled_for_date=today.isoformat(),
                status=ExitStatus.PENDING,
                scheduled_by=ScheduledBy(
                    process_id=self.process_id,
                    scheduler_version=self.settings.scheduler_version,
                    scheduled_at=now,
                ),
                created_at=now,
                updated_at=now,
            )

            try:
                record = self.repo.create(
                    record,
                    audit_details={
                        "exit_time": exit_time,
                        "date": today.isoformat(),
                        "timezone": self.clock.tz_name,
                        "symbol": symbol,
                    },
                )
            except DuplicateActiveSchedule:
                logger.info("EXIT SCHEDULE RACE | position=%s | returning winner", position_id)
                return self.repo.get_active(position_id)

            delay = self.clock.seconds_until(self.clock.exit_datetime(today, exit_time))
            if delay <= 0:
                logger.warning(
                    "EXIT OVERDUE AT SCHEDULE | position=%s | time=%s | executing now",
                    position_id, exit_time,
                )
                self._arm(record, 0, ExecutionMethod.IMMEDIATE_EXECUTION)
            else:
                self._arm(record, delay, ExecutionMethod.AUTO_TIMEOUT)

        logger.info(
            "EXIT SCHEDULED | position=%s | user=%s | symbol=%s | time=%s | in=%.0fs",
            position_id, user_id, symbol, exit_time, max(delay, 0),
        )
        return record

    def cancel_position_exit(self, position_id: str, reason: str = "Position closed") -> bool:
        """
        PENDING → CANCELLED.

        Returns False when the record is not cancellable (already executing
        or terminal). Raises ScheduledExitNotFound when the position has no
        record at all. Works without an armed timer.
        """
        if self.repo.get_latest(position_id) is None:
            raise ScheduledExitNotFound(position_id)

        with self._position_locks.get(position_id):
            active = self.repo.get_active(position_id)
            if active is None or active.status != ExitStatus.PENDING:
                logger.info(
                    "CANCEL REJECTED | position=%s | status=%s",
                    position_id, active.status.value if active else "TERMINAL",
                )
                return False

            cancelled = self.repo.transition(
                active.id,
                [ExitStatus.PENDING],
                ExitStatus.CANCELLED,
                now=to_utc_iso(self.clock.now()),
                action=AuditAction.CANCELLED,
                process_id=self.process_id,
                details={"reason": reason},
            )
            if cancelled:
                self._disarm(position_id)
                self._position_locks.discard(position_id)

        logger.info("EXIT CANCEL | position=%s | cancelled=%s | reason=%s", position_id, cancelled, reason)
        return cancelled

    # ==================================================
    # TIMERS
    # ==================================================

    def _arm(self, record: ScheduledExit, delay: float, method: ExecutionMethod) -> None:
        position_id = record.position_id
        exit_id = record.id
        holder = {}

        def _fire():
            self._on_timer(position_id, exit_id, method, holder.get("handle"))

        with self._timers_lock:
            previous = self._active_timers.pop(position_id, None)
            if previous is not None:
                previous.cancel()
            handle = self.timers.schedule(max(0.0, delay), _fire, name=f"exit-{position_id}")
            holder["handle"] = handle
            self._active_timers[position_id] = handle

        logger.debug("TIMER ARMED | position=%s | delay=%.1fs | method=%s", position_id, delay, method.value)

    def _disarm(self, position_id: str) -> bool:
        with self._timers_lock:
            handle = self._active_timers.pop(position_id, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def _disarm_all(self) -> int:
        with self._timers_lock:
            handles = list(self._active_timers.values())
            self._active_timers.clear()
        for handle in handles:
            handle.cancel()
        return len(handles)

    def _on_timer(self, position_id: str, exit_id: int, method: ExecutionMethod, handle) -> None:
        with self._timers_lock:
            if self._active_timers.get(position_id) is handle:
                self._active_timers.pop(position_id, None)
        try:
            self._execute(exit_id, method)
        except Exception:
            logger.exception("EXIT TIMER ERROR | position=%s | exit_id=%s", position_id, exit_id)

    # ==================================================
    # EXECUTION
    # ==================================================

    def _execute(self, exit_id: int, method: ExecutionMethod) -> Optional[ScheduledExit]:
        record = self.repo.get_by_id(exit_id, with_audit=False)
        if record is None:
            logger.error("EXECUTE SKIPPED | exit_id=%s | record missing", exit_id)
            return None

        position_id = record.position_id
        with self._position_locks.get(position_id):
            self._executing.add(position_id)
            try:
                result = self._execute_locked(exit_id, method)
            finally:
                self._executing.discard(position_id)

        if result is not None and not result.is_active:
            self._position_locks.discard(position_id)
        return result

    def _execute_locked(self, exit_id: int, method: ExecutionMethod) -> Optional[ScheduledExit]:
        record = self.repo.get_by_id(exit_id, with_audit=False)
        if record is None or record.status not in ACTIVE_EXIT_STATUSES:
            logger.info(
                "EXECUTE SKIPPED | exit_id=%s | status=%s",
                exit_id, record.status.value if record else "MISSING",
            )
            return record

        now = to_utc_iso(self.clock.now())

        if record.execution_attempts >= self.settings.max_attempts:
            error = record.last_execution_error or "attempt ceiling reached"
            self._fail(record, now, AuditAction.EXECUTION_FAILED, error, {
                "attempts": record.execution_attempts,
                "reason": "attempt ceiling already reached",
            })
            return self.repo.get_by_id(exit_id)

        attempt = record.execution_attempts + 1
        started = self.repo.transition(
            exit_id,
            [record.status],
            ExitStatus.EXECUTING,
            now=now,
            action=AuditAction.EXECUTION_STARTED,
            process_id=self.process_id,
            details={"method": method.value, "attempt": attempt},
            increment_attempts=True,
            last_execution_attempt=now,
            execution_method=method,
        )
        if not started:
            logger.info("EXECUTE LOST RACE | position=%s | exit_id=%s", record.position_id, exit_id)
            return self.repo.get_by_id(exit_id)

        logger.critical(
            "EXIT EXECUTING | position=%s | user=%s | symbol=%s | attempt=%s/%s | method=%s",
            record.position_id, record.user_id, record.symbol,
            attempt, self.settings.max_attempts, method.value,
        )

        try:
            result = self.placement.place_exit_order(record)

        except (BrokerRejectedError, BrokerAuthError) as e:
            self._fail(record, to_utc_iso(self.clock.now()), AuditAction.EXECUTION_FAILED, str(e), {
                "attempt": attempt,
                "error_type": type(e).__name__,
                "retryable": False,
            })

        except BrokerTransientError as e:
            self._attempt_failed(record, attempt, method, AuditAction.EXECUTION_FAILED, e)

        except Exception as e:
            logger.exception("EXIT EXECUTION ERROR | position=%s", record.position_id)
            self._attempt_failed(record, attempt, method, AuditAction.EXECUTION_ERROR, e)

        else:
            done = to_utc_iso(self.clock.now())
            completed = self.repo.transition(
                exit_id,
                [ExitStatus.EXECUTING],
                ExitStatus.COMPLETED,
                now=done,
                action=AuditAction.EXECUTION_COMPLETED,
                process_id=self.process_id,
                details=result.to_details(),
                executed_at=done,
                execution_method=method,
                execution_details=result.to_details(),
                last_execution_error=None,
            )
            if completed:
                logger.info(
                    "✅ EXIT COMPLETED | position=%s | order_id=%s | externally_closed=%s",
                    record.position_id, result.order_id, result.externally_closed,
                )
            else:
                logger.error(
                    "❌ EXIT COMPLETION NOT RECORDED | position=%s | order_id=%s | record left EXECUTING",
                    record.position_id, result.order_id,
                )

        return self.repo.get_by_id(exit_id)

    def _attempt_failed(
        self,
        record: ScheduledExit,
        attempt: int,
        method: ExecutionMethod,
        action: AuditAction,
        error: Exception,
    ) -> None:
        now = to_utc_iso(self.clock.now())

        if attempt >= self.settings.max_attempts:
            self._fail(record, now, action, str(error), {
                "attempt": attempt,
                "error_type": type(error).__name__,
                "final": True,
            })
            return

        recorded = self.repo.transition(
            record.id,
            [ExitStatus.EXECUTING],
            ExitStatus.EXECUTING,
            now=now,
            action=action,
            process_id=self.process_id,
            details={
                "attempt": attempt,
                "error": str(error),
                "error_type": type(error).__name__,
                "retry_in_sec": self.settings.retry_delay_sec,
            },
            last_execution_error=str(error),
        )
        if not recorded:
            return

        logger.warning(
            "EXIT ATTEMPT FAILED | position=%s | attempt=%s/%s | retry_in=%.1fs | error=%s",
            record.position_id, attempt, self.settings.max_attempts,
            self.settings.retry_delay_sec, error,
        )
        self._arm(record, self.settings.retry_delay_sec, method)

    def _fail(
        self,
        record: ScheduledExit,
        now: str,
        action: AuditAction,
        error: str,
        details: Dict[str, Any],
        from_statuses=ACTIVE_EXIT_STATUSES,
    ) -> bool:
        details = dict(details, error=error)
        failed = self.repo.transition(
            record.id,
            list(from_statuses),
            ExitStatus.FAILED,
            now=now,
            action=action,
            process_id=self.process_id,
            details=details,
            last_execution_error=error,
        )
        if failed:
            self._disarm(record.position_id)
            self._position_locks.discard(record.position_id)
            logger.critical(
                "❌ EXIT FAILED | position=%s | user=%s | symbol=%s | error=%s",
                record.position_id, record.user_id, record.symbol, error,
            )
            self._notify_manual_intervention(record, error)
        return failed

    def _notify_manual_intervention(self, record: ScheduledExit, reason: str) -> None:
        logger.critical(
            "🚨 MANUAL INTERVENTION REQUIRED | position=%s | user=%s | symbol=%s | reason=%s",
            record.position_id, record.user_id, record.symbol, reason,
        )
        if self.on_manual_intervention is None:
            return
        try:
            latest = self.repo.get_by_id(record.id) or record
            self.on_manual_intervention(latest, reason)
        except Exception:
            logger.exception("Manual intervention hook failed | position=%s", record.position_id)

    # ==================================================
    # RESTART RECOVERY
    # ==================================================

    def _recover_after_restart(self) -> Dict[str, int]:
        summary = {"stale": 0, "rearmed": 0, "executed": 0, "errors": 0}
        now_dt = self.clock.now()
        today = now_dt.date().isoformat()
        now = to_utc_iso(now_dt)

        # ---- earlier sessions: window closed, never auto-exit tomorrow ----
        for record in self.repo.list_active_before(today):
            try:
                if self._fail(
                    record, now, AuditAction.STALE_SESSION,
                    f"Trading session {record.scheduled_for_date} ended before exit executed",
                    {"scheduled_for_date": record.scheduled_for_date, "status": record.status.value},
                ):
                    summary["stale"] += 1
            except Exception:
                summary["errors"] += 1
                logger.exception("RECOVERY ERROR | stale position=%s", record.position_id)

        # ---- today's session ----
        for record in self.repo.list_active(for_date=today):
            try:
                summary[self._recover_record(record, today)] += 1
            except Exception:
                summary["errors"] += 1
                logger.exception("RECOVERY ERROR | position=%s", record.position_id)

        logger.info("RESTART RECOVERY COMPLETE | %s", summary)
        return summary

    def _recover_record(self, record: ScheduledExit, today: str) -> str:
        now_dt = self.clock.now()
        now = to_utc_iso(now_dt)

        if record.scheduled_by.process_id != self.process_id:
            self.repo.append_audit(
                record.id,
                now=now,
                action=AuditAction.RESTART_DETECTED,
                process_id=self.process_id,
                details={
                    "previous_process_id": record.scheduled_by.process_id,
                    "previous_version": record.scheduled_by.scheduler_version,
                    "status": record.status.value,
                },
            )

        if record.status == ExitStatus.EXECUTING:
            logger.warning(
                "RECOVERY | position=%s was EXECUTING when the previous process stopped",
                record.position_id,
            )
            self._execute(record.id, ExecutionMethod.RESTART_RECOVERY)
            return "executed"

        exit_dt = self.clock.exit_datetime(now_dt.date(), record.scheduled_exit_time)
        if exit_dt > now_dt:
            self.repo.append_audit(
                record.id,
                now=now,
                action=AuditAction.RESCHEDULED_AFTER_RESTART,
                process_id=self.process_id,
                details={"exit_time": record.scheduled_exit_time, "date": today},
            )
            self._arm(record, (exit_dt - now_dt).total_seconds(), ExecutionMethod.AUTO_TIMEOUT)
            return "rearmed"

        overdue_min = (now_dt - exit_dt).total_seconds() / 60
        self.repo.append_audit(
            record.id,
            now=now,
            action=AuditAction.OVERDUE_DETECTED,
            process_id=self.process_id,
            details={
                "exit_time": record.scheduled_exit_time,
                "minutes_overdue": round(overdue_min, 1),
            },
        )
        logger.warning(
            "RECOVERY | overdue exit | position=%s | time=%s | overdue=%.1fmin",
            record.position_id, record.scheduled_exit_time, overdue_min,
        )
        self._execute(record.id, ExecutionMethod.RESTART_RECOVERY)
        return "executed"

    # ==================================================
    # HEALTH CHECK
    # ==================================================

    def _health_check(self) -> None:
        if not self.is_initialized:
            return
        self.check_stalled_executions()
        self._rearm_orphaned_pending()

    def check_stalled_executions(self) -> List[str]:
        """
        EXECUTING records idle past the stall timeout with nothing in this
        process working on them → FAILED + manual intervention.
        """
        now_dt = self.clock.now()
        threshold = now_dt - timedelta(seconds=self.settings.stall_timeout_sec)
        stalled = []

        for record in self.repo.list_active(statuses=[ExitStatus.EXECUTING]):
            position_id = record.position_id
            with self._timers_lock:
                has_timer = position_id in self._active_timers
            if position_id in self._executing or has_timer:
                continue

            last = from_iso(record.last_execution_attempt)
            if last is not None and last > threshold:
                continue

            with self._position_locks.get(position_id):
                if self._fail(
                    record,
                    to_utc_iso(now_dt),
                    AuditAction.STALLED_DETECTED,
                    f"Execution stalled for more than {self.settings.stall_timeout_sec:.0f}s",
                    {"last_execution_attempt": record.last_execution_attempt},
                    from_statuses=[ExitStatus.EXECUTING],
                ):
                    stalled.append(position_id)

        if stalled:
            logger.error("STALLED EXECUTIONS | positions=%s", stalled)
        return stalled

    def _rearm_orphaned_pending(self) -> None:
        """Today's PENDING records without a timer in this process (timer loss)."""
        today = self.clock.today().isoformat()
        for record in self.repo.list_active(for_date=today, statuses=[ExitStatus.PENDING]):
            with self._timers_lock:
                if record.position_id in self._active_timers:
                    continue
            if record.position_id in self._executing:
                continue
            try:
                self._rearm_or_execute(record, ExecutionMethod.IMMEDIATE_EXECUTION)
                logger.warning("ORPHANED EXIT RE-ARMED | position=%s", record.position_id)
            except Exception:
                logger.exception("HEALTH CHECK ERROR | position=%s", record.position_id)

    def _rearm_or_execute(self, record: ScheduledExit, overdue_method: ExecutionMethod) -> bool:
        """Arm a timer for a future exit or a zero-delay timer for an overdue one. True if overdue."""
        now_dt = self.clock.now()
        exit_dt = self.clock.exit_datetime(now_dt.date(), record.scheduled_exit_time)
        if exit_dt > now_dt:
            self._arm(record, (exit_dt - now_dt).total_seconds(), ExecutionMethod.AUTO_TIMEOUT)
            return False

        self.repo.append_audit(
            record.id,
            now=to_utc_iso(now_dt),
            action=AuditAction.OVERDUE_DETECTED,
            process_id=self.process_id,
            details={
                "exit_time": record.scheduled_exit_time,
                "minutes_overdue": round((now_dt - exit_dt).total_seconds() / 60, 1),
            },
        )
        self._arm(record, 0, overdue_method)
        return True

    # ==================================================
    # ADMINISTRATIVE OPERATIONS
    # ==================================================

    def emergency_stop(self, reason: str = "Emergency stop") -> Dict[str, Any]:
        """
        Disarm every timer, then cancel every PENDING/EXECUTING record.
        Best-effort: one failing record never stops the rest.
        """
        logger.critical("🚨 EMERGENCY STOP | reason=%s", reason)

        timers_cleared = self._disarm_all()
        cancelled = 0
        errors: List[Dict[str, str]] = []

        for record in self.repo.list_active():
            try:
                with self._position_locks.get(record.position_id):
                    if self.repo.transition(
                        record.id,
                        list(ACTIVE_EXIT_STATUSES),
                        ExitStatus.CANCELLED,
                        now=to_utc_iso(self.clock.now()),
                        action=AuditAction.EMERGENCY_STOP,
                        process_id=self.process_id,
                        details={"reason": reason, "previous_status": record.status.value},
                    ):
                        self._position_locks.discard(record.position_id)
                        cancelled += 1
            except Exception as e:
                logger.exception("EMERGENCY STOP ERROR | position=%s", record.position_id)
                errors.append({"position_id": record.position_id, "error": str(e)})

        summary = {"timers_cleared": timers_cleared, "cancelled": cancelled, "errors": errors}
        logger.critical("🚨 EMERGENCY STOP COMPLETE | %s", summary)
        return summary

    def force_reschedule(self) -> Dict[str, Any]:
        """
        Re-arm today's PENDING exits whose position is still open at the broker.
        Positions already flat are cancelled.
        """
        self._require_initialized()

        rearmed = executed = cancelled = 0
        errors: List[Dict[str, str]] = []
        today = self.clock.today().isoformat()

        for record in self.repo.list_active(for_date=today, statuses=[ExitStatus.PENDING]):
            try:
                with self._position_locks.get(record.position_id):
                    position = self.placement.get_open_position(record.user_id, record.symbol)
                    if position is None:
                        if self.repo.transition(
                            record.id,
                            [ExitStatus.PENDING],
                            ExitStatus.CANCELLED,
                            now=to_utc_iso(self.clock.now()),
                            action=AuditAction.AUTO_CANCELLED,
                            process_id=self.process_id,
                            details={"reason": "Position no longer open at broker"},
                        ):
                            self._disarm(record.position_id)
                            self._position_locks.discard(record.position_id)
                            cancelled += 1
                        continue

                    self.repo.append_audit(
                        record.id,
                        now=to_utc_iso(self.clock.now()),
                        action=AuditAction.RESCHEDULED,
                        process_id=self.process_id,
                        details={
                            "exit_time": record.scheduled_exit_time,
                            "broker_quantity": position.quantity,
                            "scheduler_version": self.settings.scheduler_version,
                        },
                    )
                    if self._rearm_or_execute(record, ExecutionMethod.IMMEDIATE_EXECUTION):
                        executed += 1
                    else:
                        rearmed += 1
            except Exception as e:
                logger.exception("FORCE RESCHEDULE ERROR | position=%s", record.position_id)
                errors.append({"position_id": record.position_id, "error": str(e)})

        summary = {"rearmed": rearmed, "executed": executed, "cancelled": cancelled, "errors": errors}
        logger.warning("FORCE RESCHEDULE | %s", summary)
        return summary

    def reset_exit(self, position_id: str) -> ScheduledExit:
        """Administrative FAILED/EXECUTING → PENDING with the attempt counter cleared."""
        latest = self.repo.get_latest(position_id)
        if latest is None:
            raise ScheduledExitNotFound(position_id)

        with self._position_locks.get(position_id):
            latest = self.repo.get_latest(position_id)
            if latest.status not in (ExitStatus.FAILED, ExitStatus.EXECUTING):
                raise InvalidExitTransition(
                    f"Cannot reset exit for {position_id} from {latest.status.value}"
                )

            reset = self.repo.transition(
                latest.id,
                [ExitStatus.FAILED, ExitStatus.EXECUTING],
                ExitStatus.PENDING,
                now=to_utc_iso(self.clock.now()),
                action=AuditAction.ADMIN_RESET,
                process_id=self.process_id,
                details={
                    "previous_status": latest.status.value,
                    "previous_attempts": latest.execution_attempts,
                    "previous_error": latest.last_execution_error,
                },
                execution_attempts=0,
                last_execution_error=None,
            )
            if not reset:
                raise InvalidExitTransition(f"Exit for {position_id} changed state during reset")

            self._disarm(position_id)
            record = self.repo.get_by_id(latest.id)
            if self.is_initialized and record.scheduled_for_date == self.clock.today().isoformat():
                self._rearm_or_execute(record, ExecutionMethod.IMMEDIATE_EXECUTION)

        logger.warning("EXIT RESET | position=%s | previous=%s", position_id, latest.status.value)
        return self.repo.get_by_id(latest.id)

    def trigger_exit_now(self, position_id: str) -> ScheduledExit:
        """Execute the active exit immediately (MANUAL_TRIGGER)."""
        self._require_initialized()

        active = self.repo.get_active(position_id)
        if active is None:
            raise ScheduledExitNotFound(position_id)

        self._disarm(position_id)
        logger.warning("MANUAL EXIT TRIGGER | position=%s", position_id)
        return self._execute(active.id, ExecutionMethod.MANUAL_TRIGGER)

    # ==================================================
    # STATUS
    # ==================================================

    def get_status(self) -> Dict[str, Any]:
        with self._timers_lock:
            timer_ids = sorted(self._active_timers)
        return {
            "is_initialized": self.is_initialized,
            "process_id": self.process_id,
            "scheduler_version": self.settings.scheduler_version,
            "start_time": self.start_time,
            "timezone": self.clock.tz_name,
            "active_timers": len(timer_ids),
            "active_timer_ids": timer_ids,
        }
