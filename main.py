#!/usr/bin/env python3
"""
SQUAREOFF SERVICE ENTRY POINT
=============================

Purpose:
- Run the restart-resistant exit scheduler
- Run the order confirmation monitor
- Recover scheduled exits left by a previous process

STRICT RULES:
- ONE scheduling process per database
- NO strategy / signal logic here
- Durable records are the source of truth; a restart is always safe

PRODUCTION HARDENING:
- Graceful shutdown coordination
- Proper signal handling
- Fail-fast on startup errors
"""

import sys
import os
import signal
import logging
import threading
import argparse
from pathlib import Path
from typing import Optional

from squareoff_platform.core.config import Config
from squareoff_platform.logging.logger_config import setup_application_logging, get_component_logger
from squareoff_platform.services.squareoff_service import SquareoffService

# ---------------------------------------------------------------------
# GLOBALS (FOR SIGNAL HANDLING)
# ---------------------------------------------------------------------
service_instance: Optional[SquareoffService] = None
logger: Optional[logging.Logger] = None
shutdown_event = threading.Event()


# ---------------------------------------------------------------------
# GRACEFUL SHUTDOWN HANDLER (SYSTEMD SAFE)
# ---------------------------------------------------------------------
def signal_handler(signum, frame):
    if logger:
        logger.warning(f"🛑 Received shutdown signal: {signum}")
    shutdown_event.set()


def main():
    global service_instance, logger

    parser = argparse.ArgumentParser(description="Squareoff Platform")
    parser.add_argument(
        "--env",
        type=str,
        default=None,
        help="Path to .env file (default: config_env/primary.env)"
    )
    args = parser.parse_args()

    env_path = None
    if args.env:
        env_path = Path(args.env)
        if not env_path.is_absolute():
            env_path = Path(__file__).resolve().parent / env_path

    try:
        # -------------------------------------------------
        # CONFIG LOADING
        # -------------------------------------------------
        config = Config(env_path=env_path)

        # -------------------------------------------------
        # LOGGING SETUP
        # -------------------------------------------------
        log_dir = Path(config.log_dir)
        if not log_dir.is_absolute():
            log_dir = Path(__file__).resolve().parent / log_dir / config.broker_user_id

        setup_application_logging(log_dir=str(log_dir), level=config.log_level)
        logger = get_component_logger('execution_service')

        logger.info("=" * 70)
        logger.info("🚀 STARTING SQUAREOFF SERVICE")
        logger.info("=" * 70)
        logger.info(f"PID: {os.getpid()}")
        logger.info(f"Python: {sys.version}")
        logger.info("Configuration: %s", config.get_config_summary())

        # -------------------------------------------------
        # SIGNAL HANDLERS (MUST BE IN MAIN THREAD)
        # -------------------------------------------------
        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)
        logger.info("Signal handlers installed")

        # -------------------------------------------------
        # SERVICE START (restart recovery runs here)
        # -------------------------------------------------
        service_instance = SquareoffService(config)
        service_instance.start()

        if service_instance.notifier:
            service_instance.notifier.send_message(
                f"✅ <b>SQUAREOFF SERVICE READY</b>\n"
                f"🕒 Default exit: {config.default_exit_time} ({config.trading_timezone})"
            )

        logger.info("=" * 70)
        logger.info("✅ SQUAREOFF SERVICE READY")
        logger.info("=" * 70)

        shutdown_event.wait()

    except KeyboardInterrupt:
        if logger:
            logger.info("Received keyboard interrupt")
        shutdown_event.set()

    except Exception as exc:
        if logger:
            logger.critical(f"FATAL ERROR: {exc}", exc_info=True)
        else:
            print(f"CRITICAL ERROR: {exc}")
            import traceback
            traceback.print_exc()
        sys.exit(1)

    finally:
        if service_instance:
            service_instance.shutdown()
        if logger:
            logger.info("🏁 Squareoff service stopped")


# ---------------------------------------------------------------------
# ENTRY POINT
# ---------------------------------------------------------------------
if __name__ == "__main__":
    main()
