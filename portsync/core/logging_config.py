"""
Logging configuration.
"""
import logging
import sys
from pathlib import Path
from logging.handlers import RotatingFileHandler

from portsync.core.config import settings


def setup_logging(level: str = None, log_dir: str = None):
    """Configure application logging (console on stderr plus a rotating file)."""
    log_level = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)

    # Configure root logger
    logger = logging.getLogger()
    logger.setLevel(log_level)

    # Console handler (stderr keeps stdout free for command output)
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    console_handler.setFormatter(console_formatter)
    logger.addHandler(console_handler)

    # File handler
    log_dir = Path(log_dir or settings.LOG_DIR)
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_dir / "portsync.log",
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5
        )
    except OSError as e:
        logger.warning(f"File logging disabled, cannot write to {log_dir}: {e}")
        return

    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s"
    )
    file_handler.setFormatter(file_formatter)
    logger.addHandler(file_handler)
