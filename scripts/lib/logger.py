"""
Logging setup for Pipeline Pulse.
Every sync script, analytics module and API router logs through a named
logger with console output plus a daily file under logs/.

Usage:
    from scripts.lib.logger import setup_logger
    logger = setup_logger("close_sync")
    logger.info("Fetched %d leads", count)
"""
import logging
import os
import sys
from datetime import datetime
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
LOG_DIR = Path(os.getenv("LOG_DIR", PROJECT_ROOT / "logs"))

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logger(
    name: str,
    level: str = None,
    log_to_file: bool = None,
    log_dir: Path = None,
) -> logging.Logger:
    """
    Configure and return a named logger.

    Args:
        name: Logger name, e.g. "calendly_sync" or "dashboard_router".
        level: Logging level. Defaults to LOG_LEVEL from the environment.
        log_to_file: Also write to the daily log file. Defaults to true
            unless LOG_TO_FILE=false.
        log_dir: Directory for log files (default: project_root/logs).

    Returns:
        Configured logger instance.
    """
    logger = logging.getLogger(name)

    # Handlers are attached once per name
    if logger.handlers:
        return logger

    level = level or os.getenv("LOG_LEVEL", "INFO")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(logging.DEBUG)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_to_file is None:
        log_to_file = os.getenv("LOG_TO_FILE", "true").lower() == "true"

    if log_to_file:
        target_dir = Path(log_dir) if log_dir else LOG_DIR
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            log_file = target_dir / f"{datetime.now().strftime('%Y%m%d')}_pipeline_pulse.log"
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        except OSError as e:
            logger.warning("File logging disabled (%s): %s", target_dir, e)

    return logger
