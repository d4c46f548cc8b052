"""
Log level for all dynsec-sync loggers.

Single level for every scope, taken from DYNSEC_LOG_LEVEL (default INFO).
The --verbose CLI flag overrides the environment.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _parse_level(raw: str) -> int:
    if not raw or not str(raw).strip():
        return logging.INFO
    raw = str(raw).strip().upper()
    if raw.isdigit():
        return int(raw)
    return int(getattr(logging, raw, logging.INFO))


def level_from_env() -> int:
    raw = os.environ.get("DYNSEC_LOG_LEVEL", "").strip()
    return _parse_level(raw) if raw else logging.INFO


def configure_logging(level: Optional[int] = None) -> None:
    """Install the root handler once and apply the resolved level."""
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    logging.getLogger().setLevel(level if level is not None else level_from_env())
