"""
EXIT SCHEDULER TESTS
====================

Covers scheduling idempotency, timer firing, retries and the attempt
ceiling, cancellation races, restart recovery and administrative paths.
"""

import sqlite3
import threading
from datetime import timedelta

import pytest

from squareoff_platform.brokers.base import BrokerRejectedError, BrokerTransientError
from squareoff_platform.core.errors import (
    InvalidExitTime,
    InvalidExitTransition,
    ScheduledExitNotFound,
    SchedulerNotInitialized,
)
from squareoff_platform.persistence.models import (
    AuditAction,
    ConfirmationStatus,
    ExecutionMethod,
    ExecutionStatus,
    ExitStatus,
    PlacementStatus,
    ScheduledBy,
    ScheduledExit,
)
from squareoff_platform.utils.clock import to_utc_iso

from .conftest import USER


def _actions(record):
    return [a.action for a in record.audit_log]


def _seed_exit(exit_repo, clock, position_id, exit_time, symbol="INFY", process_id="proc-dead", for_date=None):
    now = to_utc_iso(clock.now())
    return exit_repo.create(
        ScheduledExit(
            position_id=position_id,
            user_id=USER,
            symbol=symbol,
            scheduled_exit_time=exit_time,
            scheduled_for_date=(for_date or clock.today()).isoformat(),
            status=ExitStatus.PENDING,
            scheduled_by=ScheduledBy(process_id=process_id, scheduler_version="2.0.0", scheduled_at=now),
            created_at=now,
            updated_at=now,
        )
    )


# ======================================================
# SCHEDULING
# ======================================================

class TestScheduling:

    def test_requires_initialize(self, make_scheduler):
        s = make_scheduler()
        with pytest.raises(SchedulerNotInitialized):
            s.schedule_position_exit("P1", "15:15", user_id=USER, symbol="INFY")

    @pytest.mark.parametrize("bad", ["3pm", "25:00", "15:60", "1515", "9:15"])
    def test_rejects_malformed_exit_time(self, scheduler, bad):
        with pytest.raises(InvalidExitTime):
            scheduler.schedule_position_exit("P1", bad, user_id=USER, symbol="INFY")

    def test_schedule_is_idempotent(self, scheduler, exit_repo):
        first = scheduler.schedule_position_exit("P1", "15:15", user_id=USER, symbol="INFY")
        second = scheduler.schedule_position_exit("P1", "15:30", user_id=USER, symbol="INFY")

        assert second.id == first.id
        assert second.scheduled_exit_time == "15:15"
        _, total = exit_repo.query(position_id="P1")
        assert total == 1
        assert scheduler.get_status()["active_timer_ids"] == ["P1"]

    def test_default_exit_time_used(self, scheduler):
        record = scheduler.schedule_position_exit("P1", user_id=USER, symbol="INFY")
        assert record.scheduled_exit_time == "15:15"

    def test_concurrent_insert_conflict_returns_winner(self, scheduler, exit_repo, monkeypatch):
        winner = _seed_exit(exit_repo, scheduler.clock, "P1", "15:15", process_id="other")

        real_get_active = exit_repo.get_active
        calls = []

        def racing_get_active(position_id):
            calls.append(position_id)
            return None if len(calls) == 1 else real_get_active(position_id)

        monkeypatch.setattr(exit_repo, "get_active", racing_get_active)

        result = scheduler.schedule_position_exit("P1", "15:20", user_id=USER, symbol="INFY")

        assert result.id == winner.id
        assert result.scheduled_exit_time == "15:15"

    def test_timer_armed_in_venue_time(self, scheduler, timers, clock):
        record = scheduler.schedule_position_exit("P1", "15:15", user_id=USER, symbol="INFY")

        pending = timers.pending("exit-P1")
        assert len(pending) == 1
        assert pending[0].due == clock.now() + timedelta(minutes=75)
        assert record.scheduled_for_date == "2026-03-10"
        assert record.scheduled_by.process_id == "proc-1"
        assert _actions(record) == ["SCHEDULED"]

    def test_overdue_at_schedule_executes_immediately(self, scheduler, timers, broker, exit_repo):
        broker.set_position("INFY", 10)

        scheduler.schedule_position_exit("P1", "13:00", user_id=USER, symbol="INFY")
        timers.run_due()

        record = exit_repo.get_latest("P1")
        assert record.status == ExitStatus.COMPLETED
        assert record.execution_method == ExecutionMethod.IMMEDIATE_EXECUTION
        assert len(broker.placed) == 1


# ======================================================
# CONCRETE SCENARIO: 15:15 SQUARE-OFF
# ======================================================

class TestScheduledSquareOff:

    def test_position_squared_off_and_confirmed(self, scheduler, monitor, timers, broker, exit_repo, order_repo):
        broker.set_position("INFY", 50)
        broker.default_script = ["OPEN", "COMPLETE"]
        monitor.start()

        record = scheduler.schedule_position_exit("P1", "15:15", user_id=USER, symbol="INFY")
        assert record.status == ExitStatus.PENDING

        # 14:00 → 15:15
        timers.advance(75 * 60)

        record = exit_repo.get_latest("P1")
        assert record.status == ExitStatus.COMPLETED
        assert record.execution_method == ExecutionMethod.AUTO_TIMEOUT
        assert record.execution_attempts == 1
        assert _actions(record) == ["SCHEDULED", "EXECUTION_STARTED", "EXECUTION_COMPLETED"]

        assert len(broker.placed) == 1
        placed = broker.placed[0]
        assert placed.transaction_type == "SELL"
        assert placed.quantity == 50
        assert placed.order_type == "MARKET"

        order_id = record.execution_details["order_id"]
        state = order_repo.get(order_id)
        assert state.placement_status == PlacementStatus.PLACED
        assert state.confirmation_status == ConfirmationStatus.PENDING
        assert state.trade_execution_id == "P1"

        # two polls: OPEN then COMPLETE
        timers.advance(10)

        state = order_repo.get(order_id)
        assert state.confirmation_status == ConfirmationStatus.CONFIRMED
        assert state.execution_status == ExecutionStatus.COMPLETE
        assert state.executed_quantity == 50
        assert len(state.status_history) == 2
        assert state.confirmation_attempts == 2
        assert not monitor.is_tracked(order_id)

    def test_rejected_exit_order_raises_alert(
        self, scheduler, monitor, timers, broker, exit_repo, order_repo, review_alerts
    ):
        broker.set_position("INFY", 50)
        broker.flatten_on_fill = False
        broker.default_script = ["REJECTED"]
        monitor.start()

        scheduler.schedule_position_exit("P1", "15:15", user_id=USER, symbol="INFY")
        timers.advance(75 * 60 + 10)

        record = exit_repo.get_latest("P1")
        order_id = record.execution_details["order_id"]
        state = order_repo.get(order_id)
        assert record.status == ExitStatus.COMPLETED
        assert state.confirmation_status == ConfirmationStatus.CONFIRMED
        assert state.execution_status == ExecutionStatus.REJECTED
        assert [oid for oid, _ in review_alerts] == [order_id]
        assert broker.positions["INFY"].quantity == 50

    def test_short_position_bought_back(self, scheduler, timers, broker):
        broker.set_position("INFY", -25)

        scheduler.schedule_position_exit("P1", "15:15", user_id=USER, symbol="INFY")
        timers.advance(75 * 60)

        assert broker.placed[0].transaction_type == "BUY"
        assert broker.placed[0].quantity == 25

    def test_externally_closed_position_completes_without_order(self, scheduler, timers, broker, exit_repo):
        scheduler.schedule_position_exit("P1", "15:15", user_id=USER, symbol="INFY")
        timers.advance(75 * 60)

        record = exit_repo.get_latest("P1")
        assert record.status == ExitStatus.COMPLETED
        assert record.execution_details["externally_closed"] is True
        assert broker.placed == []


# ======================================================
# RETRIES / ATTEMPT CEILING
# ======================================================

class TestAttemptCeiling:

    def test_always_failing_exit_fails_after_exactly_max_attempts(
        self, scheduler, timers, broker, exit_repo, order_repo, intervention_alerts
    ):
        broker.set_position("INFY", 50)
        broker.place_failures = [BrokerTransientError("timeout") for _ in range(10)]

        scheduler.schedule_position_exit("P1", "15:15", user_id=USER, symbol="INFY")
        timers.advance(75 * 60)
        timers.advance(600)

        record = exit_repo.get_latest("P1")
        assert record.status == ExitStatus.FAILED
        assert record.execution_attempts == 3
        assert len(broker.place_failures) == 7
        assert "timeout" in record.last_execution_error
        assert intervention_alerts == [("P1", record.last_execution_error)]
        assert timers.pending("exit-P1") == []

        states, total = order_repo.query()
        assert total == 3
        assert {s.placement_status for s in states} == {PlacementStatus.PLACEMENT_ERROR}
        assert all(s.needs_manual_review for s in states)

    def test_transient_failure_then_success(self, scheduler, timers, broker, exit_repo):
        broker.set_position("INFY", 50)
        broker.position_failures = [BrokerTransientError("positions timeout")]

        scheduler.schedule_position_exit("P1", "15:15", user_id=USER, symbol="INFY")
        timers.advance(75 * 60)

        record = exit_repo.get_latest("P1")
        assert record.status == ExitStatus.EXECUTING
        assert record.execution_attempts == 1
        assert len(timers.pending("exit-P1")) == 1

        timers.advance(5)

        record = exit_repo.get_latest("P1")
        assert record.status == ExitStatus.COMPLETED
        assert record.execution_attempts == 2
        assert record.execution_method == ExecutionMethod.AUTO_TIMEOUT
        assert _actions(record).count("EXECUTION_FAILED") == 1

    def test_lost_acknowledgement_adopts_broker_order(
        self, scheduler, monitor, timers, broker, exit_repo, order_repo
    ):
        broker.set_position("INFY", 50)
        broker.flatten_on_fill = False
        broker.default_script = ["OPEN", "COMPLETE"]
        broker.lost_acks = [BrokerTransientError("read timed out")]
        monitor.start()

        scheduler.schedule_position_exit("P1", "15:15", user_id=USER, symbol="INFY")
        timers.advance(75 * 60)

        record = exit_repo.get_latest("P1")
        assert record.status == ExitStatus.EXECUTING
        assert len(broker.placed) == 1

        timers.advance(5)

        record = exit_repo.get_latest("P1")
        assert record.status == ExitStatus.COMPLETED
        assert record.execution_attempts == 2
        assert record.execution_details["order_id"] == "ORD1"
        assert record.execution_details["message"] == "Exit order from an earlier attempt adopted"
        assert len(broker.placed) == 1

        timers.advance(10)

        state = order_repo.get("ORD1")
        assert state.placement_status == PlacementStatus.PLACED
        assert state.confirmation_status == ConfirmationStatus.CONFIRMED
        assert state.execution_status == ExecutionStatus.COMPLETE

    def test_rejection_fails_without_retry(self, scheduler, timers, broker, exit_repo, intervention_alerts):
        broker.set_position("INFY", 50)
        broker.place_failures = [BrokerRejectedError("Insufficient margin")]

        scheduler.schedule_position_exit("P1", "15:15", user_id=USER, symbol="INFY")
        timers.advance(75 * 60 + 60)

        record = exit_repo.get_latest("P1")
        assert record.status == ExitStatus.FAILED
        assert record.execution_attempts == 1
        assert len(intervention_alerts) == 1

    def test_unknown_user_is_auth_failure(self, scheduler, timers, exit_repo):
        scheduler.schedule_position_exit("P1", "15:15", user_id="ZZ9999", symbol="INFY")
        timers.advance(75 * 60)

        record = exit_repo.get_latest("P1")
        assert record.status == ExitStatus.FAILED
        assert record.execution_attempts == 1
        assert "ZZ9999" in record.last_execution_error


# ======================================================
# CANCELLATION
# ======================================================

class TestCancellation:

    def test_cancel_pending_exit(self, scheduler, timers, broker, exit_repo):
        broker.set_position("INFY", 50)
        scheduler.schedule_position_exit("P1", "15:15", user_id=USER, symbol="INFY")

        assert scheduler.cancel_position_exit("P1", "closed by user") is True

        timers.advance(75 * 60)
        record = exit_repo.get_latest("P1")
        assert record.status == ExitStatus.CANCELLED
        assert record.audit_log[-1].details == {"reason": "closed by user"}
        assert broker.placed == []
        assert scheduler.get_status()["active_timers"] == 0

    def test_terminal_exits_release_position_locks(self, scheduler, timers, exit_repo):
        scheduler.schedule_position_exit("P1", "15:15", user_id=USER, symbol="INFY")
        scheduler.schedule_position_exit("P2", "15:15", user_id=USER, symbol="TCS")
        assert len(scheduler._position_locks) == 2

        scheduler.cancel_position_exit("P1")
        timers.advance(75 * 60)

        assert exit_repo.get_latest("P2").status == ExitStatus.COMPLETED
        assert len(scheduler._position_locks) == 0

    def test_cancel_unknown_position(self, scheduler):
        with pytest.raises(ScheduledExitNotFound):
            scheduler.cancel_position_exit("NOPE")

    def test_cancel_without_armed_timer(self, scheduler, exit_repo):
        _seed_exit(exit_repo, scheduler.clock, "P7", "15:15")
        assert scheduler.cancel_position_exit("P7") is True
        assert exit_repo.get_latest("P7").status == ExitStatus.CANCELLED

    def test_cancel_wins_then_stale_timer_fires(self, scheduler, timers, broker, exit_repo):
        broker.set_position("INFY", 50)
        scheduler.schedule_position_exit("P1", "15:15", user_id=USER, symbol="INFY")
        timer = timers.pending("exit-P1")[0]

        assert scheduler.cancel_position_exit("P1") is True
        timer.callback()

        assert exit_repo.get_latest("P1").status == ExitStatus.CANCELLED
        assert broker.placed == []

    def test_execution_wins_and_cancel_is_rejected(self, scheduler, timers, broker, exit_repo, placement, monkeypatch):
        broker.set_position("INFY", 50)
        scheduler.schedule_position_exit("P1", "15:15", user_id=USER, symbol="INFY")

        real_place = placement.place_exit_order
        outcome = {}

        def place_while_cancel_races(record):
            worker = threading.Thread(
                target=lambda: outcome.setdefault("cancel", scheduler.cancel_position_exit("P1"))
            )
            worker.start()
            outcome["worker"] = worker
            return real_place(record)

        monkeypatch.setattr(placement, "place_exit_order", place_while_cancel_races)

        timers.advance(75 * 60)
        outcome["worker"].join(timeout=5)

        record = exit_repo.get_latest("P1")
        assert outcome["cancel"] is False
        assert record.status == ExitStatus.COMPLETED
        assert "CANCELLED" not in _actions(record)
        assert len(broker.placed) == 1


# ======================================================
# RESTART RECOVERY
# ======================================================

class TestRestartRecovery:

    def test_overdue_exit_executes_on_startup(self, make_scheduler, clock, broker, exit_repo):
        first = make_scheduler("proc-old")
        first.initialize()
        first.schedule_position_exit("P1", "14:30", user_id=USER, symbol="INFY")
        first.shutdown()

        # process was down through the exit time
        clock.advance(60 * 60)
        broker.set_position("INFY", -20)

        second = make_scheduler("proc-new")
        second.initialize()

        record = exit_repo.get_latest("P1")
        assert record.status == ExitStatus.COMPLETED
        assert record.execution_method == ExecutionMethod.RESTART_RECOVERY
        assert broker.placed[0].transaction_type == "BUY"
        assert broker.placed[0].quantity == 20

        actions = _actions(record)
        assert actions[:3] == ["SCHEDULED", "RESTART_DETECTED", "OVERDUE_DETECTED"]
        assert record.audit_log[0].process_id == "proc-old"
        assert record.audit_log[1].details["previous_process_id"] == "proc-old"
        assert all(a.process_id == "proc-new" for a in record.audit_log[1:])
        second.shutdown()

    def test_recovery_completes_before_initialized(self, make_scheduler, clock, broker, exit_repo, placement, monkeypatch):
        _seed_exit(exit_repo, clock, "P1", "13:30")
        broker.set_position("INFY", 5)
        second = make_scheduler("proc-new")

        seen = []
        real_place = placement.place_exit_order

        def spy(record):
            seen.append(second.is_initialized)
            return real_place(record)

        monkeypatch.setattr(placement, "place_exit_order", spy)

        status = second.initialize()

        assert seen == [False]
        assert status["is_initialized"] is True
        second.shutdown()

    def test_future_exit_is_rearmed(self, make_scheduler, clock, broker, exit_repo, timers):
        _seed_exit(exit_repo, clock, "P1", "15:15")

        s = make_scheduler("proc-new")
        s.initialize()

        record = exit_repo.get_latest("P1")
        assert record.status == ExitStatus.PENDING
        assert "RESCHEDULED_AFTER_RESTART" in _actions(record)
        assert s.get_status()["active_timer_ids"] == ["P1"]
        assert broker.placed == []

        broker.set_position("INFY", 50)
        timers.advance(75 * 60)
        assert exit_repo.get_latest("P1").execution_method == ExecutionMethod.AUTO_TIMEOUT
        s.shutdown()

    def test_interrupted_execution_is_resumed_without_double_exit(self, make_scheduler, clock, broker, exit_repo):
        record = _seed_exit(exit_repo, clock, "P1", "13:30")
        exit_repo.transition(
            record.id,
            [ExitStatus.PENDING],
            ExitStatus.EXECUTING,
            now=to_utc_iso(clock.now()),
            action=AuditAction.EXECUTION_STARTED,
            process_id="proc-dead",
            increment_attempts=True,
            last_execution_attempt=to_utc_iso(clock.now()),
        )
        # previous process got the order through before dying: broker shows flat

        s = make_scheduler("proc-new")
        s.initialize()

        record = exit_repo.get_latest("P1")
        assert record.status == ExitStatus.COMPLETED
        assert record.execution_method == ExecutionMethod.RESTART_RECOVERY
        assert record.execution_details["externally_closed"] is True
        assert record.execution_attempts == 2
        assert broker.placed == []
        s.shutdown()

    def test_previous_session_exits_fail_as_stale(self, make_scheduler, clock, broker, exit_repo, intervention_alerts):
        yesterday = clock.today() - timedelta(days=1)
        _seed_exit(exit_repo, clock, "P0", "15:15", for_date=yesterday)
        broker.set_position("INFY", 50)

        s = make_scheduler("proc-new")
        s.initialize()

        record = exit_repo.get_latest("P0")
        assert record.status == ExitStatus.FAILED
        assert _actions(record)[-1] == "STALE_SESSION"
        assert broker.placed == []
        assert [p for p, _ in intervention_alerts] == ["P0"]
        s.shutdown()

    def test_initialize_is_idempotent(self, scheduler, timers):
        scheduler.initialize()
        assert len([t for t in timers.repeating if t.name == "exit-scheduler-health"]) == 1


# ======================================================
# HEALTH CHECK
# ======================================================

class TestHealthCheck:

    def _executing(self, exit_repo, clock, position_id, minutes_ago):
        record = _seed_exit(exit_repo, clock, position_id, "13:00")
        ts = to_utc_iso(clock.now() - timedelta(minutes=minutes_ago))
        exit_repo.transition(
            record.id,
            [ExitStatus.PENDING],
            ExitStatus.EXECUTING,
            now=ts,
            action=AuditAction.EXECUTION_STARTED,
            process_id="proc-dead",
            increment_attempts=True,
            last_execution_attempt=ts,
        )
        return record

    def test_stalled_execution_marked_failed(self, scheduler, exit_repo, intervention_alerts):
        self._executing(exit_repo, scheduler.clock, "P9", minutes_ago=10)
        self._executing(exit_repo, scheduler.clock, "P8", minutes_ago=1)

        stalled = scheduler.check_stalled_executions()

        assert stalled == ["P9"]
        assert exit_repo.get_latest("P9").status == ExitStatus.FAILED
        assert _actions(exit_repo.get_latest("P9"))[-1] == "STALLED_DETECTED"
        assert exit_repo.get_latest("P8").status == ExitStatus.EXECUTING
        assert [p for p, _ in intervention_alerts] == ["P9"]

    def test_health_tick_rearms_orphaned_pending(self, scheduler, exit_repo, timers):
        _seed_exit(exit_repo, scheduler.clock, "P5", "15:15")

        timers.fire_repeating("exit-scheduler-health")

        assert "P5" in scheduler.get_status()["active_timer_ids"]


# ======================================================
# ADMINISTRATIVE OPERATIONS
# ======================================================

class TestAdministrative:

    def test_emergency_stop_cancels_everything(self, scheduler, timers, broker, exit_repo):
        broker.set_position("INFY", 50)
        broker.set_position("TCS", 10)
        broker.set_position("SBIN", 30)
        scheduler.schedule_position_exit("P1", "15:15", user_id=USER, symbol="INFY")
        scheduler.schedule_position_exit("P2", "15:30", user_id=USER, symbol="TCS")

        # P3 fails once at 14:05 and sits in EXECUTING waiting for its retry
        broker.place_failures = [BrokerTransientError("timeout")]
        scheduler.schedule_position_exit("P3", "14:05", user_id=USER, symbol="SBIN")
        timers.advance(5 * 60)
        assert exit_repo.get_latest("P3").status == ExitStatus.EXECUTING

        summary = scheduler.emergency_stop("kill switch")

        assert summary == {"timers_cleared": 3, "cancelled": 3, "errors": []}
        for pid in ("P1", "P2", "P3"):
            record = exit_repo.get_latest(pid)
            assert record.status == ExitStatus.CANCELLED
            assert _actions(record)[-1] == "EMERGENCY_STOP"

        timers.advance(2 * 60 * 60)
        assert broker.placed == []

    def test_emergency_stop_is_best_effort(self, scheduler, exit_repo, monkeypatch):
        p1 = scheduler.schedule_position_exit("P1", "15:15", user_id=USER, symbol="INFY")
        scheduler.schedule_position_exit("P2", "15:15", user_id=USER, symbol="TCS")

        real_transition = exit_repo.transition

        def flaky(exit_id, *args, **kwargs):
            if exit_id == p1.id:
                raise sqlite3.OperationalError("database is locked")
            return real_transition(exit_id, *args, **kwargs)

        monkeypatch.setattr(exit_repo, "transition", flaky)

        summary = scheduler.emergency_stop()

        assert summary["cancelled"] == 1
        assert summary["errors"] == [{"position_id": "P1", "error": "database is locked"}]
        assert exit_repo.get_latest("P2").status == ExitStatus.CANCELLED

    def test_force_reschedule(self, scheduler, broker, exit_repo):
        broker.set_position("INFY", 50)
        scheduler.schedule_position_exit("P1", "15:15", user_id=USER, symbol="INFY")
        scheduler.schedule_position_exit("P2", "15:15", user_id=USER, symbol="TCS")

        summary = scheduler.force_reschedule()

        assert summary == {"rearmed": 1, "executed": 0, "cancelled": 1, "errors": []}
        assert exit_repo.get_latest("P2").status == ExitStatus.CANCELLED
        assert _actions(exit_repo.get_latest("P2"))[-1] == "AUTO_CANCELLED"
        assert "RESCHEDULED" in _actions(exit_repo.get_latest("P1"))
        assert scheduler.get_status()["active_timer_ids"] == ["P1"]

    def test_force_reschedule_executes_overdue(self, scheduler, clock, timers, broker, exit_repo):
        broker.set_position("INFY", 50)
        scheduler.schedule_position_exit("P1", "15:15", user_id=USER, symbol="INFY")

        # timer lost: clock passes the exit time without it firing
        clock.advance(2 * 60 * 60)
        summary = scheduler.force_reschedule()
        timers.run_due()

        assert summary["executed"] == 1
        record = exit_repo.get_latest("P1")
        assert record.status == ExitStatus.COMPLETED
        assert record.execution_method == ExecutionMethod.IMMEDIATE_EXECUTION
        assert len(broker.placed) == 1

    def test_reset_failed_exit(self, scheduler, timers, broker, exit_repo):
        broker.set_position("INFY", 50)
        broker.place_failures = [BrokerRejectedError("RMS block")]
        scheduler.schedule_position_exit("P1", "15:15", user_id=USER, symbol="INFY")
        timers.advance(75 * 60)
        assert exit_repo.get_latest("P1").status == ExitStatus.FAILED

        record = scheduler.reset_exit("P1")

        assert record.status == ExitStatus.PENDING
        assert record.execution_attempts == 0
        assert record.last_execution_error is None
        assert "ADMIN_RESET" in _actions(record)

        timers.run_due()
        record = exit_repo.get_latest("P1")
        assert record.status == ExitStatus.COMPLETED
        assert record.execution_attempts == 1

    def test_reset_rejects_non_resettable_status(self, scheduler):
        scheduler.schedule_position_exit("P1", "15:15", user_id=USER, symbol="INFY")
        with pytest.raises(InvalidExitTransition):
            scheduler.reset_exit("P1")
        with pytest.raises(ScheduledExitNotFound):
            scheduler.reset_exit("NOPE")

    def test_trigger_exit_now(self, scheduler, broker, exit_repo):
        broker.set_position("INFY", 50)
        scheduler.schedule_position_exit("P1", "15:15", user_id=USER, symbol="INFY")

        record = scheduler.trigger_exit_now("P1")

        assert record.status == ExitStatus.COMPLETED
        assert record.execution_method == ExecutionMethod.MANUAL_TRIGGER
        assert scheduler.get_status()["active_timers"] == 0
        with pytest.raises(ScheduledExitNotFound):
            scheduler.trigger_exit_now("P1")

    def test_status_snapshot(self, scheduler):
        scheduler.schedule_position_exit("P2", "15:30", user_id=USER, symbol="TCS")
        scheduler.schedule_position_exit("P1", "15:15", user_id=USER, symbol="INFY")

        status = scheduler.get_status()

        assert status["is_initialized"] is True
        assert status["process_id"] == "proc-1"
        assert status["scheduler_version"] == "2.1.0"
        assert status["active_timers"] == 2
        assert status["active_timer_ids"] == ["P1", "P2"]
        assert status["start_time"] is not None
