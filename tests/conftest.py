from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from squareoff_platform.brokers.base import BrokerRegistry
from squareoff_platform.core.config import ExitSchedulerSettings, MonitorSettings
from squareoff_platform.execution.exit_scheduler import ExitScheduler
from squareoff_platform.execution.order_monitor import OrderConfirmationMonitor
from squareoff_platform.execution.order_placement import OrderPlacementService
from squareoff_platform.persistence.database import Database
from squareoff_platform.persistence.exit_repository import ScheduledExitRepository
from squareoff_platform.persistence.order_state_repository import OrderStateRepository

from .fake_broker import FakeBroker
from .fake_timers import FakeClock, ManualTimerFactory

IST = ZoneInfo("Asia/Kolkata")
USER = "AB1234"


@pytest.fixture
def db(tmp_path):
    return Database(tmp_path / "squareoff_test.db")


@pytest.fixture
def exit_repo(db):
    return ScheduledExitRepository(db)


@pytest.fixture
def order_repo(db):
    return OrderStateRepository(db)


@pytest.fixture
def clock():
    # Tuesday 14:00 IST
    return FakeClock(datetime(2026, 3, 10, 14, 0, tzinfo=IST))


@pytest.fixture
def timers(clock):
    return ManualTimerFactory(clock)


@pytest.fixture
def broker():
    return FakeBroker(USER)


@pytest.fixture
def brokers(broker):
    registry = BrokerRegistry()
    registry.register(USER, broker)
    return registry


@pytest.fixture
def exit_settings():
    return ExitSchedulerSettings(
        timezone="Asia/Kolkata",
        default_exit_time="15:15",
        max_attempts=3,
        retry_delay_sec=5,
        stall_timeout_sec=300,
        health_check_interval_sec=30,
    )


@pytest.fixture
def monitor_settings():
    return MonitorSettings(
        initial_interval_sec=2,
        max_interval_sec=60,
        max_attempts=12,
        timeout_sec=1800,
        partial_fill_grace_sec=300,
        sweep_interval_sec=30,
    )


@pytest.fixture
def review_alerts():
    return []


@pytest.fixture
def monitor(order_repo, brokers, monitor_settings, clock, timers, review_alerts):
    return OrderConfirmationMonitor(
        order_repo,
        brokers,
        monitor_settings,
        clock,
        timers,
        on_manual_review=lambda state, reason: review_alerts.append((state.order_id, reason)),
    )


@pytest.fixture
def placement(order_repo, brokers, monitor, clock):
    return OrderPlacementService(order_repo, brokers, monitor, clock)


@pytest.fixture
def intervention_alerts():
    return []


@pytest.fixture
def make_scheduler(exit_repo, placement, exit_settings, clock, timers, intervention_alerts):
    """Build a scheduler as a given process; a new process_id simulates a restart."""

    def _make(process_id="proc-1", settings=None):
        return ExitScheduler(
            exit_repo,
            placement,
            settings or exit_settings,
            clock,
            timers,
            on_manual_intervention=lambda rec, reason: intervention_alerts.append((rec.position_id, reason)),
            process_id=process_id,
        )

    return _make


@pytest.fixture
def scheduler(make_scheduler):
    s = make_scheduler()
    s.initialize()
    yield s
    s.shutdown()
