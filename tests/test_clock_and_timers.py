import threading
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from squareoff_platform.execution.timers import KeyedLocks, ThreadingTimerFactory
from squareoff_platform.utils.clock import VenueClock, from_iso, parse_exit_time, to_utc_iso


class TestVenueClock:

    @pytest.mark.parametrize("value, expected", [("15:15", (15, 15)), ("09:05", (9, 5)), (" 23:59 ", (23, 59))])
    def test_parse_exit_time(self, value, expected):
        assert parse_exit_time(value) == expected

    @pytest.mark.parametrize("value", ["24:00", "9:15", "15-15", None, 1515])
    def test_parse_exit_time_rejects(self, value):
        with pytest.raises(ValueError):
            parse_exit_time(value)

    def test_exit_datetime_is_venue_local(self):
        clock = VenueClock("Asia/Kolkata")

        exit_dt = clock.exit_datetime(date(2026, 3, 10), "15:15")

        assert exit_dt.tzinfo == ZoneInfo("Asia/Kolkata")
        assert exit_dt.astimezone(timezone.utc).strftime("%H:%M") == "09:45"

    def test_utc_iso_round_trip_orders_as_strings(self):
        ist = ZoneInfo("Asia/Kolkata")
        early = to_utc_iso(datetime(2026, 3, 10, 9, 15, tzinfo=ist))
        late = to_utc_iso(datetime(2026, 3, 10, 15, 15, tzinfo=ist))

        assert early.endswith("+00:00")
        assert early < late
        assert from_iso(late) == datetime(2026, 3, 10, 15, 15, tzinfo=ist)
        assert from_iso(None) is None

    def test_naive_datetime_rejected(self):
        with pytest.raises(ValueError):
            to_utc_iso(datetime(2026, 3, 10, 15, 15))


class TestTimers:

    def test_one_shot_timer_fires(self):
        fired = threading.Event()
        ThreadingTimerFactory().schedule(0.01, fired.set, name="exit-P1")
        assert fired.wait(2)

    def test_cancelled_timer_never_fires(self):
        fired = threading.Event()
        handle = ThreadingTimerFactory().schedule(0.2, fired.set)
        handle.cancel()
        assert not fired.wait(0.4)

    def test_repeating_task_survives_callback_errors(self):
        calls = []
        done = threading.Event()

        def tick():
            calls.append(1)
            if len(calls) >= 3:
                done.set()
            raise RuntimeError("tick failed")

        task = ThreadingTimerFactory().repeat(0.01, tick, name="health")
        try:
            assert done.wait(2)
        finally:
            task.cancel()

    def test_keyed_locks(self):
        locks = KeyedLocks()

        assert locks.get("P1") is locks.get("P1")
        assert locks.get("P1") is not locks.get("P2")
        assert len(locks) == 2

        locks.discard("P1")
        assert len(locks) == 1
