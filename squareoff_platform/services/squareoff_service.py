#!/usr/bin/env python3
"""
SQUAREOFF SERVICE
=================

Composition root for one scheduling process.

Start order (leaves first):
    Database → repositories → broker registry → confirmation monitor
    → placement path → exit scheduler (restart recovery) → admin facade

Shutdown order is the reverse: scheduler timers first, then the monitor
lets in-flight polls finish. Durable records are never touched on shutdown.
"""

from typing import Optional

from squareoff_platform.api.admin.admin_service import AdminService
from squareoff_platform.brokers.base import BrokerRegistry
from squareoff_platform.brokers.kite.client import KiteClient
from squareoff_platform.core.config import Config
from squareoff_platform.execution.exit_scheduler import ExitScheduler
from squareoff_platform.execution.order_monitor import OrderConfirmationMonitor
from squareoff_platform.execution.order_placement import OrderPlacementService
from squareoff_platform.execution.timers import ThreadingTimerFactory
from squareoff_platform.logging.logger_config import get_component_logger
from squareoff_platform.notifications.telegram import TelegramNotifier
from squareoff_platform.persistence.database import Database
from squareoff_platform.persistence.exit_repository import ScheduledExitRepository
from squareoff_platform.persistence.order_state_repository import OrderStateRepository
from squareoff_platform.utils.clock import VenueClock

logger = get_component_logger("execution_service")


class SquareoffService:
    """Owns every long-lived component. Construct once in main()."""

    def __init__(
        self,
        config: Config,
        *,
        db: Optional[Database] = None,
        brokers: Optional[BrokerRegistry] = None,
        clock: Optional[VenueClock] = None,
        timers=None,
        notifier: Optional[TelegramNotifier] = None,
    ):
        self.config = config
        self.clock = clock or VenueClock(config.trading_timezone)
        self.timers = timers or ThreadingTimerFactory()
        self.db = db or Database(config.db_path)

        self.exit_repo = ScheduledExitRepository(self.db)
        self.order_repo = OrderStateRepository(self.db)

        self.brokers = brokers or self._build_brokers(config)

        if notifier is None and config.is_telegram_enabled():
            telegram = config.get_telegram_config()
            notifier = TelegramNotifier(telegram["bot_token"], telegram["chat_id"])
        self.notifier = notifier

        self.monitor = OrderConfirmationMonitor(
            self.order_repo,
            self.brokers,
            config.monitor_settings(),
            self.clock,
            self.timers,
            on_manual_review=notifier.notify_order_review if notifier else None,
        )
        self.placement = OrderPlacementService(
            self.order_repo,
            self.brokers,
            self.monitor,
            self.clock,
        )
        self.scheduler = ExitScheduler(
            self.exit_repo,
            self.placement,
            config.exit_scheduler_settings(),
            self.clock,
            self.timers,
            on_manual_intervention=notifier.notify_exit_failed if notifier else None,
        )
        self.admin = AdminService(
            self.scheduler,
            self.monitor,
            self.exit_repo,
            self.order_repo,
            self.clock,
            retention_days=config.record_retention_days,
        )

    @staticmethod
    def _build_brokers(config: Config) -> BrokerRegistry:
        registry = BrokerRegistry()
        creds = config.get_kite_credentials()
        registry.register(
            config.broker_user_id,
            KiteClient(
                user_id=config.broker_user_id,
                api_key=creds["api_key"],
                access_token=creds["access_token"],
                base_url=creds["base_url"],
                timeout_sec=config.broker_timeout_sec,
                max_calls_per_sec=config.broker_max_calls_per_sec,
            ),
        )
        return registry

    def start(self) -> None:
        """Monitor first so exit orders placed during restart recovery are tracked."""
        logger.info("Starting confirmation monitor...")
        self.monitor.start()

        logger.info("Initializing exit scheduler (restart recovery)...")
        status = self.scheduler.initialize()
        logger.info(
            "✅ SQUAREOFF SERVICE READY | process=%s | armed_timers=%s",
            status["process_id"],
            status["active_timers"],
        )

    def shutdown(self) -> None:
        logger.info("🛑 Shutting down squareoff service...")
        try:
            self.scheduler.shutdown()
        except Exception:
            logger.exception("❌ Error shutting down exit scheduler")
        try:
            self.monitor.stop()
        except Exception:
            logger.exception("❌ Error stopping confirmation monitor")
        logger.info("✅ Squareoff service stopped")
