"""
Output artifact: the captured set as a JSON array.

Writes go to a temp file in the target directory and are renamed into place,
so a failed write never leaves a truncated artifact behind.
"""

from __future__ import annotations

import json
import logging
import os
import random
import tempfile
from pathlib import Path
from typing import Any, Optional

from mqtt_capture.mqtt_client import CaptureError

logger = logging.getLogger(__name__)


class OutputWriteError(CaptureError):
    """Raised when the captured set cannot be written."""


def default_output_path(rng: Optional[random.Random] = None) -> Path:
    """output-<random u32>.json in the working directory."""
    rng = rng or random.Random()
    return Path(f"output-{rng.getrandbits(32)}.json")


def write_captured(path: str | Path, records: list[Any], *, pretty: bool = True) -> Path:
    """
    Serialize records in arrival order. Raises OutputWriteError on failure.
    """
    path = Path(path)
    parent = path.parent if str(path.parent) else Path(".")
    tmp_name: Optional[str] = None
    try:
        parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(parent))
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(records, f, indent=2 if pretty else None, ensure_ascii=False)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
        tmp_name = None
    except (OSError, TypeError, ValueError) as exc:
        raise OutputWriteError(f"Failed to write captured messages to {path}: {exc}") from exc
    finally:
        if tmp_name is not None:
            try:
                os.unlink(tmp_name)
            except OSError:
                logger.warning("Could not remove temp file %s", tmp_name)

    logger.info("Captured messages written to %s", path)
    return path


def read_captured(path: str | Path) -> list[Any]:
    with Path(path).open("r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, list):
        raise ValueError(f"{path} does not contain a JSON array")
    return data
