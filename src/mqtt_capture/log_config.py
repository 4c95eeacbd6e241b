"""
Log level resolution for mqtt-capture.

Single log level for all loggers. The --log-level flag takes precedence over
MQTT_CAPTURE_LOG_LEVEL env, which takes precedence over INFO.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

LOG_LEVEL_ENV = "MQTT_CAPTURE_LOG_LEVEL"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _parse_level(raw: Optional[str]) -> int:
    if not raw or not str(raw).strip():
        return logging.INFO
    raw = str(raw).strip().upper()
    if raw.isdigit():
        return int(raw)
    level = getattr(logging, raw, None)
    return level if isinstance(level, int) else logging.INFO


def resolve_level(flag: Optional[str] = None) -> int:
    if flag:
        return _parse_level(flag)
    return _parse_level(os.environ.get(LOG_LEVEL_ENV, ""))


def configure_logging(flag: Optional[str] = None) -> int:
    """Install the root handler once and apply the resolved level."""
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    level = resolve_level(flag)
    logging.getLogger().setLevel(level)
    return level
