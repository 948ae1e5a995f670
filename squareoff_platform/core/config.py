#!/usr/bin/env python3
"""
Configuration Management Module

Responsibilities:
- Load environment variables exactly ONCE
- Validate broker credentials and every scheduler / monitor knob
- Provide structured config access (settings dataclasses for services)
- Secure credential handling (masked summaries only)

Exit scheduler and confirmation monitor ceilings are operational tuning
parameters. They MUST come from env, never hard-coded at call sites.

All exit-time arithmetic happens in TRADING_TIMEZONE (venue local time),
never in host-process local time.
"""
import os
import re
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Dict, Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_EXIT_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""
    pass


@dataclass(frozen=True)
class ExitSchedulerSettings:
    timezone: str = "Asia/Kolkata"
    default_exit_time: str = "15:15"
    max_attempts: int = 3
    retry_delay_sec: float = 5.0
    stall_timeout_sec: float = 300.0
    health_check_interval_sec: float = 30.0
    scheduler_version: str = "2.1.0"


@dataclass(frozen=True)
class MonitorSettings:
    initial_interval_sec: float = 2.0
    max_interval_sec: float = 60.0
    max_attempts: int = 12
    timeout_sec: float = 1800.0
    partial_fill_grace_sec: float = 300.0
    sweep_interval_sec: float = 30.0


class Config:
    """
    Central configuration object.

    Create ONCE in main.py and inject/pass everywhere.
    """

    def __init__(self, env_path: Optional[Path] = None):
        self.env_path: Path = Path(env_path) if env_path else (
            Path(__file__).resolve().parents[2] / "config_env" / "primary.env"
        )
        self._load_env()
        self._load_values()
        self._validate()

    # ------------------------------------------------------------------
    # ENV LOADING
    # ------------------------------------------------------------------

    def _load_env(self) -> None:
        """Load environment file with security checks."""
        if not self.env_path.exists():
            raise FileNotFoundError(f".env file not found: {self.env_path}")

        if os.name != 'nt':
            mode = self.env_path.stat().st_mode
            if mode & 0o004:
                logger.warning(
                    "⚠️ SECURITY: Environment file is world-readable. "
                    "Run: chmod 600 %s", self.env_path
                )

        load_dotenv(self.env_path)
        logger.info("Environment configuration loaded successfully")

    # ------------------------------------------------------------------
    # VALUE LOADING
    # ------------------------------------------------------------------

    def _load_values(self) -> None:
        """Load configuration values from environment."""

        # === Broker (Kite) ===
        self.kite_api_key: Optional[str] = self._strip_comment(os.getenv("KITE_API_KEY", "")) or None
        self.kite_access_token: Optional[str] = self._strip_comment(os.getenv("KITE_ACCESS_TOKEN", "")) or None
        self.kite_base_url: str = self._strip_comment(
            os.getenv("KITE_BASE_URL", "https://api.kite.trade")
        ).rstrip("/")
        self.broker_user_id: Optional[str] = self._strip_comment(os.getenv("BROKER_USER_ID", "")) or None
        self.broker_timeout_sec: float = self._parse_float(
            os.getenv("BROKER_TIMEOUT_SEC", "10"), "BROKER_TIMEOUT_SEC", 1, 120
        )
        self.broker_max_calls_per_sec: int = self._parse_int(
            os.getenv("BROKER_MAX_CALLS_PER_SEC", "10"), "BROKER_MAX_CALLS_PER_SEC", 1, 50
        )

        # === Trading venue ===
        self.trading_timezone: str = self._strip_comment(os.getenv("TRADING_TIMEZONE", "Asia/Kolkata"))
        self.default_exit_time: str = self._strip_comment(os.getenv("DEFAULT_EXIT_TIME", "15:15"))

        # === Exit scheduler ===
        self.exit_max_attempts: int = self._parse_int(
            os.getenv("EXIT_MAX_ATTEMPTS", "3"), "EXIT_MAX_ATTEMPTS", 1, 10
        )
        self.exit_retry_delay_sec: float = self._parse_float(
            os.getenv("EXIT_RETRY_DELAY_SEC", "5"), "EXIT_RETRY_DELAY_SEC", 0.1, 300
        )
        self.exit_stall_timeout_sec: float = self._parse_float(
            os.getenv("EXIT_STALL_TIMEOUT_SEC", "300"), "EXIT_STALL_TIMEOUT_SEC", 10, 3600
        )
        self.scheduler_health_check_sec: float = self._parse_float(
            os.getenv("SCHEDULER_HEALTH_CHECK_SEC", "30"), "SCHEDULER_HEALTH_CHECK_SEC", 1, 3600
        )

        # === Confirmation monitor ===
        self.confirm_initial_interval_sec: float = self._parse_float(
            os.getenv("CONFIRM_INITIAL_INTERVAL_SEC", "2"), "CONFIRM_INITIAL_INTERVAL_SEC", 0.1, 300
        )
        self.confirm_max_interval_sec: float = self._parse_float(
            os.getenv("CONFIRM_MAX_INTERVAL_SEC", "60"), "CONFIRM_MAX_INTERVAL_SEC", 0.1, 3600
        )
        self.confirm_max_attempts: int = self._parse_int(
            os.getenv("CONFIRM_MAX_ATTEMPTS", "12"), "CONFIRM_MAX_ATTEMPTS", 1, 1000
        )
        self.confirm_timeout_sec: float = self._parse_float(
            os.getenv("CONFIRM_TIMEOUT_SEC", "1800"), "CONFIRM_TIMEOUT_SEC", 1, 86400
        )
        self.partial_fill_grace_sec: float = self._parse_float(
            os.getenv("PARTIAL_FILL_GRACE_SEC", "300"), "PARTIAL_FILL_GRACE_SEC", 0, 86400
        )
        self.monitor_sweep_sec: float = self._parse_float(
            os.getenv("MONITOR_SWEEP_SEC", "30"), "MONITOR_SWEEP_SEC", 1, 3600
        )

        # === Housekeeping ===
        self.record_retention_days: int = self._parse_int(
            os.getenv("RECORD_RETENTION_DAYS", "30"), "RECORD_RETENTION_DAYS", 1, 3650
        )

        # === Storage / logs ===
        self.db_path: Optional[str] = self._strip_comment(os.getenv("SQUAREOFF_DB_PATH", "")) or None
        self.log_dir: str = self._strip_comment(os.getenv("LOG_DIR", "logs"))
        self.log_level: str = self._strip_comment(os.getenv("LOG_LEVEL", "INFO")).upper()

        # === Telegram (optional) ===
        self.telegram_bot_token: Optional[str] = self._strip_comment(os.getenv("TELEGRAM_TOKEN", "")) or None
        self.telegram_chat_id: Optional[str] = self._strip_comment(os.getenv("TELEGRAM_CHAT_ID", "")) or None

    # ------------------------------------------------------------------
    # PARSING HELPERS
    # ------------------------------------------------------------------

    def _strip_comment(self, value: str) -> str:
        """Strip comments from config values (everything after #)."""
        if '#' in value:
            return value.split('#')[0].strip()
        return value.strip()

    def _parse_float(
        self,
        value: str,
        name: str,
        min_val: Optional[float] = None,
        max_val: Optional[float] = None
    ) -> float:
        """Parse and validate float with optional bounds, stripping comments."""
        try:
            num = float(self._strip_comment(value))
            if min_val is not None and num < min_val:
                raise ValueError(f"{name} must be >= {min_val}, got: {num}")
            if max_val is not None and num > max_val:
                raise ValueError(f"{name} must be <= {max_val}, got: {num}")
            return num
        except ValueError as e:
            raise ConfigValidationError(f"Invalid {name} value '{value}': {e}")

    def _parse_int(
        self,
        value: str,
        name: str,
        min_val: Optional[int] = None,
        max_val: Optional[int] = None
    ) -> int:
        """Parse and validate integer with optional bounds, stripping comments."""
        try:
            num = int(self._strip_comment(value))
            if min_val is not None and num < min_val:
                raise ValueError(f"{name} must be >= {min_val}, got: {num}")
            if max_val is not None and num > max_val:
                raise ValueError(f"{name} must be <= {max_val}, got: {num}")
            return num
        except ValueError as e:
            raise ConfigValidationError(f"Invalid {name} value '{value}': {e}")

    # ------------------------------------------------------------------
    # VALIDATION
    # ------------------------------------------------------------------

    def _validate(self) -> None:
        # -------------------------------------------------
        # 1️⃣ Required credentials
        # -------------------------------------------------
        required = {
            "KITE_API_KEY": self.kite_api_key,
            "KITE_ACCESS_TOKEN": self.kite_access_token,
            "BROKER_USER_ID": self.broker_user_id,
        }
        missing = [k for k, v in required.items() if not v]
        if missing:
            raise ConfigValidationError(f"Missing required config values: {missing}")

        # -------------------------------------------------
        # 2️⃣ Venue
        # -------------------------------------------------
        try:
            ZoneInfo(self.trading_timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise ConfigValidationError(
                f"TRADING_TIMEZONE is not a known IANA zone: {self.trading_timezone}"
            )

        if not _EXIT_TIME_RE.match(self.default_exit_time):
            raise ConfigValidationError(
                f"DEFAULT_EXIT_TIME must be HH:MM, got: {self.default_exit_time}"
            )

        # -------------------------------------------------
        # 3️⃣ Monitor backoff consistency
        # -------------------------------------------------
        if self.confirm_max_interval_sec < self.confirm_initial_interval_sec:
            raise ConfigValidationError(
                "CONFIRM_MAX_INTERVAL_SEC must be >= CONFIRM_INITIAL_INTERVAL_SEC"
            )

        # -------------------------------------------------
        # 4️⃣ Logging
        # -------------------------------------------------
        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigValidationError(f"Invalid LOG_LEVEL: {self.log_level}")

        # -------------------------------------------------
        # 5️⃣ Telegram consistency
        # -------------------------------------------------
        has_token = bool(self.telegram_bot_token)
        has_chat = bool(self.telegram_chat_id)

        if has_token != has_chat:
            logger.warning(
                "⚠️ Partial Telegram configuration detected. "
                "Both TELEGRAM_TOKEN and TELEGRAM_CHAT_ID required for alerts."
            )
        elif not has_token:
            logger.info("Telegram notifications disabled (optional)")
        elif not self.telegram_chat_id.lstrip("-").isdigit():
            raise ConfigValidationError(
                f"TELEGRAM_CHAT_ID must be numeric, got: {self.telegram_chat_id}"
            )

        logger.info("✅ Configuration validated successfully")

    # ------------------------------------------------------------------
    # ACCESSORS
    # ------------------------------------------------------------------

    def get_kite_credentials(self) -> Dict[str, str]:
        """
        ⚠️ WARNING: Contains sensitive data. Do NOT log this dictionary.
        """
        return {
            "api_key": self.kite_api_key,
            "access_token": self.kite_access_token,
            "base_url": self.kite_base_url,
        }

    def exit_scheduler_settings(self) -> ExitSchedulerSettings:
        return ExitSchedulerSettings(
            timezone=self.trading_timezone,
            default_exit_time=self.default_exit_time,
            max_attempts=self.exit_max_attempts,
            retry_delay_sec=self.exit_retry_delay_sec,
            stall_timeout_sec=self.exit_stall_timeout_sec,
            health_check_interval_sec=self.scheduler_health_check_sec,
        )

    def monitor_settings(self) -> MonitorSettings:
        return MonitorSettings(
            initial_interval_sec=self.confirm_initial_interval_sec,
            max_interval_sec=self.confirm_max_interval_sec,
            max_attempts=self.confirm_max_attempts,
            timeout_sec=self.confirm_timeout_sec,
            partial_fill_grace_sec=self.partial_fill_grace_sec,
            sweep_interval_sec=self.monitor_sweep_sec,
        )

    def is_telegram_enabled(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id)

    def get_telegram_config(self) -> Dict[str, Optional[str]]:
        """⚠️ WARNING: Contains bot token. Handle securely."""
        return {
            "bot_token": self.telegram_bot_token,
            "chat_id": self.telegram_chat_id,
        }

    # ------------------------------------------------------------------
    # DIAGNOSTICS
    # ------------------------------------------------------------------

    def get_config_summary(self, include_sensitive: bool = False) -> Dict[str, Any]:
        summary = {
            "venue": {
                "timezone": self.trading_timezone,
                "default_exit_time": self.default_exit_time,
            },
            "exit_scheduler": {
                "max_attempts": self.exit_max_attempts,
                "retry_delay_sec": self.exit_retry_delay_sec,
                "stall_timeout_sec": self.exit_stall_timeout_sec,
            },
            "confirmation_monitor": {
                "initial_interval_sec": self.confirm_initial_interval_sec,
                "max_interval_sec": self.confirm_max_interval_sec,
                "max_attempts": self.confirm_max_attempts,
                "timeout_sec": self.confirm_timeout_sec,
                "partial_fill_grace_sec": self.partial_fill_grace_sec,
            },
            "features": {
                "telegram_enabled": self.is_telegram_enabled(),
                "retention_days": self.record_retention_days,
            },
            "endpoints": {
                "kite_base_url": self.kite_base_url,
            },
        }

        if include_sensitive:
            summary["credentials_status"] = {
                "broker_user_id": self._mask_string(self.broker_user_id),
                "kite_api_key": self._mask_string(self.kite_api_key),
                "kite_access_token": self._mask_string(self.kite_access_token),
            }

        return summary

    def _mask_string(self, value: Optional[str]) -> str:
        """Mask sensitive string for safe logging."""
        if not value:
            return "***MISSING***"
        if len(value) <= 4:
            return "***"
        return f"{value[:2]}***{value[-2:]}"
