#!/usr/bin/env python3
"""
CENTRALIZED LOGGING CONFIGURATION
==================================

Purpose:
- Setup per-component loggers with rotating file handlers
- Isolate logs by service: exit_scheduler, order_monitor, order_placement, persistence, broker, admin
- Each logger has its own rotating log file (50MB, 10 backups)
- All logs also go to console with clean formatting

USAGE:
    from squareoff_platform.logging.logger_config import setup_application_logging, get_component_logger

    # Setup once in main
    setup_application_logging(log_dir="logs", level="INFO")

    # Get logger in each module
    logger = get_component_logger("exit_scheduler")

Component Loggers:
    - EXECUTION_SERVICE (main.py)
    - EXIT_SCHEDULER (ExitScheduler)
    - ORDER_MONITOR (OrderConfirmationMonitor)
    - ORDER_PLACEMENT (OrderPlacementService)
    - ADMIN (AdminService)
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional, Dict

# Standard format: [TIMESTAMP] [LEVEL] [COMPONENT] [MESSAGE]
LOG_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)-20s | %(message)s'
LOG_DATETIME_FORMAT = '%Y-%m-%d %H:%M:%S'

# Key → logger name
# Loggers using __name__ (e.g. 'squareoff_platform.brokers.kite.client') are
# children of their parent logger, so we register parent loggers as well.
COMPONENT_NAMES = {
    # ---- Core execution ----
    'execution_service': 'EXECUTION_SERVICE',
    'exit_scheduler':    'EXIT_SCHEDULER',
    'order_monitor':     'ORDER_MONITOR',
    'order_placement':   'ORDER_PLACEMENT',

    # ---- Admin facade ----
    'admin':             'ADMIN',

    # ---- Persistence ----
    'persistence':       'squareoff_platform.persistence',

    # ---- Broker ----
    'broker':            'squareoff_platform.brokers',     # catches kite client logs

    # ---- Notifications / Telegram ----
    'notifications':     'squareoff_platform.notifications',

    # ---- Core / Config ----
    'core':              'squareoff_platform.core',
}

# Global configuration
_log_dir: Optional[Path] = None
_log_level: str = 'INFO'
_console_handler: Optional[logging.StreamHandler] = None
_component_handlers: Dict[str, logging.handlers.RotatingFileHandler] = {}


def setup_application_logging(
    log_dir: str = 'logs',
    level: str = 'INFO',
    max_bytes: int = 50 * 1024 * 1024,  # 50 MB per file
    backup_count: int = 10,
) -> None:
    """
    Initialize application-wide logging with per-component rotating handlers.

    This MUST be called once at application startup (in main()).

    Args:
        log_dir: Directory to store log files
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        max_bytes: Max size of a log file before rotation (default 50MB)
        backup_count: Number of backup files to keep (default 10)
    """
    global _log_dir, _log_level, _console_handler

    _log_dir = Path(log_dir)
    _log_level = level

    _log_dir.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    # Remove any existing handlers to avoid duplicates
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATETIME_FORMAT)

    _console_handler = logging.StreamHandler(sys.stdout)
    _console_handler.setLevel(getattr(logging, level.upper()))
    _console_handler.setFormatter(formatter)
    root_logger.addHandler(_console_handler)

    # urllib3 logs every broker poll at DEBUG
    logging.getLogger('urllib3').setLevel(logging.WARNING)

    _setup_component_handlers(max_bytes, backup_count, formatter)

    # 🔒 CATCH-ALL: root file handler so NO log message is lost.
    _root_log_file = _log_dir / "application.log"
    _root_fh = logging.handlers.RotatingFileHandler(
        _root_log_file,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding='utf-8',
    )
    _root_fh.setLevel(getattr(logging, level.upper()))
    _root_fh.setFormatter(formatter)
    root_logger.addHandler(_root_fh)


def _setup_component_handlers(max_bytes: int, backup_count: int, formatter: logging.Formatter) -> None:
    """
    Setup rotating file handlers for each component and attach them immediately,
    so modules using logging.getLogger(__name__) also land in a component file.
    """
    for key, component_name in COMPONENT_NAMES.items():
        log_file = _log_dir / f"{key}.log"

        handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding='utf-8'
        )
        handler.setLevel(getattr(logging, _log_level.upper()))
        handler.setFormatter(formatter)

        previous = _component_handlers.get(component_name)
        _component_handlers[component_name] = handler

        logger = logging.getLogger(component_name)
        if previous is not None and previous in logger.handlers:
            logger.removeHandler(previous)
            previous.close()
        logger.addHandler(handler)


def get_component_logger(component_key: str) -> logging.Logger:
    """
    Get or create a logger for a specific component.

    Args:
        component_key: Key from COMPONENT_NAMES dict

    Returns:
        Configured logger for the component

    Example:
        logger = get_component_logger('exit_scheduler')
        logger.info("Starting restart recovery")
    """
    if component_key not in COMPONENT_NAMES:
        raise ValueError(f"Unknown component: {component_key}. Must be one of {list(COMPONENT_NAMES.keys())}")

    component_name = COMPONENT_NAMES[component_key]
    logger = logging.getLogger(component_name)

    if not any(isinstance(h, logging.handlers.RotatingFileHandler) for h in logger.handlers):
        if component_name in _component_handlers:
            logger.addHandler(_component_handlers[component_name])

    return logger


def get_log_files() -> Dict[str, Path]:
    """Paths of all active component log files."""
    return {
        component_name: Path(handler.baseFilename)
        for component_name, handler in _component_handlers.items()
    }
