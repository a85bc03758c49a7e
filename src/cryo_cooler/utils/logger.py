"""
Logging configuration for the cryo cooler controller

Two rotating files are written under ~/.cryo_cooler/logs: the full log at the
requested level and an error-only log that survives long unattended runs.
"""

import logging
import sys
import time
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Optional, Union


DEFAULT_LOG_DIR = Path.home() / ".cryo_cooler" / "logs"
LOG_FILE_NAME = "cryo_cooler.log"
ERROR_LOG_FILE_NAME = "cryo_cooler_errors.log"

# Thread name matters here: tick and caller threads interleave
LOG_FORMAT = "%(asctime)s - %(threadName)s - %(name)s - %(levelname)s - %(message)s"

ERROR_LOG_MAX_BYTES = 5 * 1024 * 1024
ERROR_LOG_BACKUPS = 3
LOG_RETENTION_DAYS = 30


def _rotating_handler(path: Path, level: int, max_bytes: int, backups: int,
                      formatter: logging.Formatter) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backups, encoding='utf-8')
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logger(log_level=logging.INFO, max_size_mb: int = 10, backup_count: int = 5,
                 log_dir: Optional[Union[str, Path]] = None, console: bool = True) -> Path:
    """
    Configure the root logger for a controller run.

    Args:
        log_level: Level for the main log and the console (default: INFO)
        max_size_mb: Main log size in MB before rotation (default: 10)
        backup_count: Rotated main logs to keep (default: 5)
        log_dir: Directory for log files (default: ~/.cryo_cooler/logs)
        console: Mirror the main log to stderr

    Returns:
        Path of the main log file
    """
    directory = Path(log_dir) if log_dir is not None else DEFAULT_LOG_DIR
    directory.mkdir(parents=True, exist_ok=True)
    log_file = directory / LOG_FILE_NAME

    formatter = logging.Formatter(LOG_FORMAT)
    handlers = [
        _rotating_handler(log_file, log_level, max_size_mb * 1024 * 1024, backup_count, formatter),
        _rotating_handler(directory / ERROR_LOG_FILE_NAME, logging.ERROR,
                          ERROR_LOG_MAX_BYTES, ERROR_LOG_BACKUPS, formatter),
    ]
    if console:
        stream = logging.StreamHandler(sys.stderr)
        stream.setLevel(log_level)
        stream.setFormatter(formatter)
        handlers.append(stream)

    root = logging.getLogger()
    root.setLevel(log_level)
    # Re-initialization replaces whatever was installed before
    for old in list(root.handlers):
        root.removeHandler(old)
        old.close()
    for handler in handlers:
        root.addHandler(handler)

    # pyserial logs port enumeration details at DEBUG
    logging.getLogger("serial").setLevel(logging.WARNING)

    removed = _cleanup_old_logs(directory, days=LOG_RETENTION_DAYS)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging to {log_file}")
    if removed:
        logger.info(f"Removed {removed} log file(s) older than {LOG_RETENTION_DAYS} days")
    return log_file


def _cleanup_old_logs(log_dir: Path, days: int) -> int:
    """Delete log files not modified for `days` days. Returns the count removed."""
    cutoff = time.time() - days * 86400
    removed = 0
    for path in log_dir.glob("*.log*"):
        try:
            if path.stat().st_mtime < cutoff:
                path.unlink()
                removed += 1
        except OSError as e:
            logging.getLogger(__name__).debug(f"Could not remove old log {path}: {e}")
    return removed
