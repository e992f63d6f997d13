"""Loguru sink configuration for the mastery engine."""

from __future__ import annotations

import sys
from pathlib import Path

from loguru import logger

CONSOLE_FORMAT = "<dim>{time:HH:mm:ss}</dim> | <level>{level: <8}</level> | {message}"
AUDIT_FORMAT = "{time:YYYY-MM-DDTHH:mm:ss.SSSZZ} | {message}"


def configure_logging(level: str = "INFO", fmt: str = CONSOLE_FORMAT) -> int:
    """Replace loguru's default handler with a single stderr sink."""
    logger.remove()
    return logger.add(sys.stderr, level=level.upper(), format=fmt)


def add_audit_sink(path: Path) -> int:
    """
    Append remediation audit records (those bound with audit=True) to a file.

    Returns:
        Sink id, for logger.remove()
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    return logger.add(
        str(path),
        level="INFO",
        format=AUDIT_FORMAT,
        filter=lambda record: record["extra"].get("audit", False),
        enqueue=True,
    )
