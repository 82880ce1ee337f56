"""
CaseFlow — Logging

Usage:
    from caseflow.log import setup_logging, get_logger

    setup_logging()                 # once, at startup
    logger = get_logger(__name__)   # in any module
    logger.info("[Engine] Case claimed")
"""
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional

ROOT_LOGGER = "caseflow"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(level: str = "INFO", log_file: Optional[str] = None,
                  max_bytes: int = 10485760, backup_count: int = 5) -> logging.Logger:
    """Configure the `caseflow` logger: stdout handler plus optional rotating file."""
    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.handlers.RotatingFileHandler(path, maxBytes=max_bytes,
                                                  backupCount=backup_count, encoding="utf-8")
        fh.setFormatter(formatter)
        root.addHandler(fh)

    root.propagate = False
    return root


def get_logger(name: str) -> logging.Logger:
    """Child logger under the `caseflow` namespace."""
    if name == ROOT_LOGGER or name.startswith(ROOT_LOGGER + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
