"""
Session statistics: running totals kept by the consume loop and the
throughput figures derived from them once capture has finished.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True, slots=True)
class Throughput:
    messages_per_second: int
    tags_per_second: int
    bytes_per_second: int


@dataclass(slots=True)
class SessionStats:
    """
    Totals only ever grow. message_count tracks decoded messages (the captured
    set); total_bytes also includes payloads that failed to decode.
    """

    message_count: int = 0
    total_bytes: int = 0
    total_tag_count: int = 0
    dropped_count: int = 0

    def record(self, payload_size: int, tag_count: int) -> None:
        """Account for one successfully decoded message."""
        self.message_count += 1
        self.total_bytes += payload_size
        self.total_tag_count += tag_count

    def record_dropped(self, payload_size: int) -> None:
        """Account for a payload that was received but could not be decoded."""
        self.dropped_count += 1
        self.total_bytes += payload_size

    def snapshot(self) -> SessionStats:
        return SessionStats(
            message_count=self.message_count,
            total_bytes=self.total_bytes,
            total_tag_count=self.total_tag_count,
            dropped_count=self.dropped_count,
        )

    def derive(self, capture_duration_s: int | float) -> Optional[Throughput]:
        """
        Per-second rates using integer division over whole elapsed seconds.
        Returns None when fewer than one full second elapsed (rate undefined).
        """
        seconds = int(capture_duration_s)
        if seconds <= 0:
            return None
        return Throughput(
            messages_per_second=self.message_count // seconds,
            tags_per_second=self.total_tag_count // seconds,
            bytes_per_second=self.total_bytes // seconds,
        )
