#!/usr/bin/env python3
"""
Telegram Notifier Module

Manual-intervention alerts for the exit scheduler and the confirmation
monitor, over the Telegram Bot HTTP API. Delivery failures are logged and
never raised into the caller.
"""

import html
import logging
from datetime import datetime
from typing import Literal, Optional

import requests

from squareoff_platform.persistence.models import OrderState, ScheduledExit

logger = logging.getLogger(__name__)


class TelegramNotifier:
    """Send alerts to one chat using simple HTTP requests."""

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        timeout_sec: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.timeout_sec = timeout_sec
        self.base_url = f"https://api.telegram.org/bot{bot_token}"
        self.session = session or requests.Session()
        self.is_connected = False

    def test_connection(self) -> bool:
        """Test Telegram bot connection."""
        try:
            response = self.session.get(f"{self.base_url}/getMe", timeout=self.timeout_sec)
            if response.status_code == 200 and response.json().get("ok"):
                bot_name = response.json()["result"].get("first_name")
                logger.info("Telegram bot connected successfully: %s", bot_name)
                self.is_connected = True
                return True

            logger.error("Telegram bot test failed: HTTP %s | %s", response.status_code, response.text)
        except requests.exceptions.RequestException as e:
            logger.error("Failed to test Telegram connection: %s", e)
        except ValueError as e:
            logger.error("Telegram returned invalid JSON: %s", e)

        self.is_connected = False
        return False

    def send_message(
        self,
        message: str,
        parse_mode: Literal["HTML", "MarkdownV2"] = "HTML",
    ) -> bool:
        """Send message to Telegram. Returns False on any delivery failure."""
        try:
            response = self.session.post(
                f"{self.base_url}/sendMessage",
                json={"chat_id": self.chat_id, "text": message, "parse_mode": parse_mode},
                timeout=self.timeout_sec,
            )

            if response.status_code == 200 and response.json().get("ok"):
                logger.debug("Telegram message sent successfully")
                return True

            logger.error("Failed to send Telegram message: HTTP %s | %s", response.status_code, response.text)
            return False

        except requests.exceptions.Timeout:
            logger.error("Telegram message timeout")
            return False
        except requests.exceptions.RequestException as e:
            logger.error("Telegram request error: %s", e)
            return False
        except ValueError as e:
            logger.error("Telegram returned invalid JSON: %s", e)
            return False

    # --------------------------------------------------
    # Manual-intervention hooks
    # --------------------------------------------------

    def notify_exit_failed(self, record: ScheduledExit, reason: str) -> bool:
        """ExitScheduler on_manual_intervention hook."""
        message = (
            f"🚨 <b>AUTO EXIT FAILED - MANUAL ACTION REQUIRED</b>\n"
            f"⏰ {datetime.now().strftime('%H:%M:%S')}\n"
            f"━━━━━━━━━━━━━━━━━━━━\n\n"
            f"📌 Position: {html.escape(record.position_id)}\n"
            f"👤 User: {html.escape(record.user_id)}\n"
            f"📈 Symbol: {html.escape(record.symbol)}\n"
            f"🕒 Exit time: {record.scheduled_exit_time} ({record.scheduled_for_date})\n"
            f"🔁 Attempts: {record.execution_attempts}\n"
            f"❌ Reason: {html.escape(reason)}"
        )
        return self.send_message(message)

    def notify_order_review(self, state: OrderState, reason: str) -> bool:
        """OrderConfirmationMonitor on_manual_review hook."""
        message = (
            f"⚠️ <b>ORDER NEEDS MANUAL REVIEW</b>\n"
            f"⏰ {datetime.now().strftime('%H:%M:%S')}\n"
            f"━━━━━━━━━━━━━━━━━━━━\n\n"
            f"🆔 Order: {html.escape(state.order_id)}\n"
            f"👤 User: {html.escape(state.user_id)}\n"
            f"📈 {state.transaction_type} {html.escape(state.symbol)} x{state.quantity}\n"
            f"📊 Status: {state.confirmation_status.value} / {state.execution_status.value}\n"
            f"✅ Filled: {state.executed_quantity}/{state.quantity}\n"
            f"❌ Reason: {html.escape(reason)}"
        )
        return self.send_message(message)
