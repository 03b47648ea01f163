"""
Logging configuration and utilities.

All crawler components log through standard library loggers obtained from
``get_logger``; ``setup_logging`` wires the console/file handlers and the
structlog processor chain once per process.
"""

import logging
import logging.handlers
import sys
import threading
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import schedule
import structlog


_cleanup_lock = threading.Lock()
_cleanup_scheduler: Optional[schedule.Scheduler] = None


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    retention_days: int = 7
) -> None:
    """
    Set up structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional log file path
        retention_days: Number of days to retain rotated log files
    """
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper()))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    ))
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        # Rotate daily, keep retention_days backups
        file_handler = logging.handlers.TimedRotatingFileHandler(
            log_file,
            when='midnight',
            interval=1,
            backupCount=retention_days,
            encoding='utf-8'
        )
        file_handler.suffix = "%Y-%m-%d"
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(threadName)s - %(message)s'
        ))
        root_logger.addHandler(file_handler)

        _start_log_cleanup_scheduler(log_path.parent, retention_days)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Standard library logger
    """
    return logging.getLogger(name)


def get_structured_logger(name: str):
    """Get a structlog logger bound to ``name`` for key/value event logging."""
    return structlog.get_logger(name)


def _start_log_cleanup_scheduler(logs_dir: Path, retention_days: int) -> None:
    """Start a daily job removing log files older than the retention window."""
    global _cleanup_scheduler

    with _cleanup_lock:
        if _cleanup_scheduler is not None:
            return
        _cleanup_scheduler = schedule.Scheduler()

    _cleanup_scheduler.every().day.at("02:00").do(
        cleanup_old_logs, logs_dir, retention_days
    )

    def run_scheduler():
        while True:
            _cleanup_scheduler.run_pending()
            time.sleep(60)

    threading.Thread(target=run_scheduler, name="LogCleanup", daemon=True).start()


def cleanup_old_logs(logs_dir: Path, retention_days: int = 7) -> int:
    """
    Remove log files older than the retention period.

    Args:
        logs_dir: Directory holding the log files
        retention_days: Number of days to keep

    Returns:
        Number of files removed
    """
    if not logs_dir.exists():
        return 0

    cleaned_count = 0
    cutoff_date = datetime.now() - timedelta(days=retention_days)

    for log_file in logs_dir.glob("*.log*"):
        if not log_file.is_file():
            continue
        file_mtime = datetime.fromtimestamp(log_file.stat().st_mtime)
        if file_mtime < cutoff_date:
            try:
                log_file.unlink()
                cleaned_count += 1
            except OSError as e:
                logging.getLogger(__name__).warning(
                    f"Failed to remove old log file {log_file}: {e}"
                )

    return cleaned_count
