"""
Domain errors for the exit scheduler and the confirmation monitor.

Broker errors live in squareoff_platform.brokers.base.
"""


class SchedulerError(Exception):
    """Base class for exit scheduler failures."""


class DuplicateActiveSchedule(SchedulerError):
    """An active (PENDING/EXECUTING) exit already exists for the position."""

    def __init__(self, position_id: str):
        super().__init__(f"Active scheduled exit already exists for position {position_id}")
        self.position_id = position_id


class ScheduledExitNotFound(SchedulerError):
    def __init__(self, position_id: str):
        super().__init__(f"No scheduled exit found for position {position_id}")
        self.position_id = position_id


class InvalidExitTime(SchedulerError):
    def __init__(self, value):
        super().__init__(f"Exit time must be HH:MM (24h), got: {value!r}")
        self.value = value


class SchedulerNotInitialized(SchedulerError):
    def __init__(self):
        super().__init__("Exit scheduler not initialized, run initialize() first")


class InvalidExitTransition(SchedulerError):
    """Administrative action not allowed from the record's current status."""


class MonitorError(Exception):
    """Base class for confirmation monitor failures."""


class OrderStateNotFound(MonitorError):
    def __init__(self, order_id: str):
        super().__init__(f"No order state found for order {order_id}")
        self.order_id = order_id
