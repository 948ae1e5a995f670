from datetime import date, timedelta

import pytest
from pydantic import ValidationError

from squareoff_platform.api.admin.admin_service import AdminService
from squareoff_platform.api.admin.schemas import ExitQuery, OrderQuery
from squareoff_platform.brokers.base import BrokerAuthError, BrokerOrderRequest
from squareoff_platform.core.errors import OrderStateNotFound, ScheduledExitNotFound
from squareoff_platform.persistence.models import (
    ConfirmationStatus,
    ExitStatus,
)

from .conftest import USER


@pytest.fixture
def admin(scheduler, monitor, exit_repo, order_repo, clock):
    return AdminService(scheduler, monitor, exit_repo, order_repo, clock, retention_days=30)


@pytest.fixture
def populated(scheduler, timers, broker, monitor):
    """P1 completed with a confirmed order, P2 and P3 pending, P4 pending for another user."""
    broker.set_position("INFY", 50)
    broker.default_script = ["COMPLETE"]
    monitor.start()

    scheduler.schedule_position_exit("P1", "14:30", user_id=USER, symbol="INFY")
    scheduler.schedule_position_exit("P2", "15:15", user_id=USER, symbol="TCS")
    scheduler.schedule_position_exit("P3", "15:20", user_id=USER, symbol="SBIN")
    scheduler.schedule_position_exit("P4", "15:20", user_id="XY9876", symbol="SBIN")

    # 14:00 → 14:31: P1 fires, its order confirms on the first poll
    timers.advance(31 * 60)


class TestQueries:

    def test_query_schemas_validate_pagination(self):
        with pytest.raises(ValidationError):
            ExitQuery(page=0)
        with pytest.raises(ValidationError):
            OrderQuery(limit=501)
        with pytest.raises(ValidationError):
            ExitQuery(status="DONE")

        query = ExitQuery(page=3, limit=20, date="2026-03-10")
        assert query.offset == 40
        assert query.date == date(2026, 3, 10)

    def test_list_scheduled_exits_with_filters(self, admin, populated):
        page = admin.list_scheduled_exits(ExitQuery(status=ExitStatus.PENDING))
        assert page.total == 3
        assert {item.position_id for item in page.items} == {"P2", "P3", "P4"}
        assert all(item.status == "PENDING" for item in page.items)
        assert all(item.audit_log == [] for item in page.items)

        page = admin.list_scheduled_exits(ExitQuery(user_id="XY9876"))
        assert [item.position_id for item in page.items] == ["P4"]

        page = admin.list_scheduled_exits(ExitQuery(date=date(2026, 3, 9)))
        assert page.total == 0
        assert page.pages == 0

    def test_pagination(self, admin, populated):
        page = admin.list_scheduled_exits(ExitQuery(page=2, limit=3))

        assert page.total == 4
        assert page.pages == 2
        assert page.page == 2
        assert len(page.items) == 1
        # newest first: the last page holds the first record
        assert page.items[0].position_id == "P1"

    def test_get_scheduled_exit_includes_audit(self, admin, populated):
        view = admin.get_scheduled_exit("P1")

        assert view.status == "COMPLETED"
        assert view.execution_method == "AUTO_TIMEOUT"
        assert [a.action for a in view.audit_log] == [
            "SCHEDULED", "EXECUTION_STARTED", "EXECUTION_COMPLETED",
        ]
        with pytest.raises(ScheduledExitNotFound):
            admin.get_scheduled_exit("NOPE")

    def test_order_queries(self, admin, populated):
        page = admin.list_order_states(OrderQuery(status=ConfirmationStatus.CONFIRMED))
        assert page.total == 1
        order_id = page.items[0].order_id

        view = admin.get_order_state(order_id)
        assert view.confirmation_status == "CONFIRMED"
        assert view.trade_execution_id == "P1"
        assert [h.status for h in view.status_history] == ["EXECUTION_CONFIRMED"]

        assert admin.list_order_states(OrderQuery(date=date(2026, 3, 10))).total == 1
        assert admin.list_order_states(OrderQuery(date=date(2026, 3, 11))).total == 0
        assert admin.list_order_states(OrderQuery(needs_review=True)).total == 0

        with pytest.raises(OrderStateNotFound):
            admin.get_order_state("MISSING")

    def test_statistics(self, admin, populated):
        stats = admin.get_statistics()

        assert stats.scheduled_exits["PENDING"] == 3
        assert stats.scheduled_exits["COMPLETED"] == 1
        assert stats.scheduled_exits_today["PENDING"] == 3
        assert stats.orders["CONFIRMED"] == 1
        assert stats.orders_today["CONFIRMED"] == 1
        assert stats.needs_review == 0

    def test_status_passthrough(self, admin, populated):
        assert admin.get_scheduler_status()["active_timer_ids"] == ["P2", "P3", "P4"]
        assert admin.get_monitor_status()["is_running"] is True


class TestMutations:

    def test_cancel_exit(self, admin, populated, exit_repo):
        assert admin.cancel_exit("P2") is True
        assert exit_repo.get_latest("P2").status == ExitStatus.CANCELLED
        assert admin.cancel_exit("P1") is False

    def test_emergency_stop(self, admin, populated):
        summary = admin.emergency_stop()
        assert summary["cancelled"] == 3
        assert admin.get_scheduler_status()["active_timers"] == 0

    def test_trigger_exit_now(self, admin, populated, broker):
        broker.set_position("TCS", -5)

        view = admin.trigger_exit_now("P2")

        assert view.status == "COMPLETED"
        assert view.execution_method == "MANUAL_TRIGGER"

    def test_resolve_manual_review(self, admin, order_repo, broker, monitor, clock, placement):
        monitor.start()
        result = placement.place_order(BrokerOrderRequest("INFY", "NSE", "SELL", 5), user_id=USER)
        broker.scripts[result.order_id] = [BrokerAuthError("session expired")]
        monitor.poll_order(result.order_id)
        assert admin.get_statistics().needs_review == 1

        view = admin.resolve_manual_review(result.order_id, note="checked broker book")

        assert view.needs_manual_review is False
        assert view.status_history[-1].status == "MANUAL_REVIEW_RESOLVED"
        assert admin.get_statistics().needs_review == 0

    def test_monitor_start_stop(self, admin):
        assert admin.start_monitor()["is_running"] is True
        assert admin.stop_monitor()["is_running"] is False


class TestHousekeeping:

    def test_purge_respects_retention(self, admin, populated, clock, exit_repo):
        assert admin.purge_terminal_records()["scheduled_exits"] == 0

        clock.advance(int(timedelta(days=31).total_seconds()))
        summary = admin.purge_terminal_records()

        assert summary["retention_days"] == 30
        assert summary["scheduled_exits"] == 1
        assert summary["order_states"] == 1
        assert exit_repo.get_latest("P1") is None
        assert exit_repo.get_latest("P2") is not None

    def test_purge_rejects_invalid_retention(self, admin):
        with pytest.raises(ValueError):
            admin.purge_terminal_records(retention_days=0)
