"""
Human-readable session summary printed after a capture.
"""

from __future__ import annotations

from typing import Optional

from mqtt_capture.stats import SessionStats, Throughput

_UNITS = ("B", "KiB", "MiB", "GiB", "TiB", "PiB")
NOT_AVAILABLE = "n/a"


def human_bytes(n: int) -> str:
    """Binary-prefixed size, e.g. 512 B, 1.50 KiB, 3.00 MiB."""
    if n < 1024:
        return f"{n} B"
    value = float(n)
    for unit in _UNITS[1:]:
        value /= 1024.0
        if value < 1024.0:
            break
    return f"{value:.2f} {unit}"


def summary_rows(
    subscribed_topics: int,
    stats: SessionStats,
    duration_s: int,
    throughput: Optional[Throughput],
) -> list[tuple[str, str]]:
    def rate(v: Optional[int]) -> str:
        return NOT_AVAILABLE if v is None else str(v)

    return [
        ("Subscribed Topics", str(subscribed_topics)),
        ("Total MQTT Messages", str(stats.message_count)),
        ("Total Tags", str(stats.total_tag_count)),
        ("Dropped Payloads", str(stats.dropped_count)),
        ("Capture Duration", str(duration_s)),
        ("MQTT Messages/Seconds", rate(throughput and throughput.messages_per_second)),
        ("MQTT Tags/Seconds", rate(throughput and throughput.tags_per_second)),
        (
            "MQTT Throughput (Bytes/Seconds)",
            NOT_AVAILABLE if throughput is None else human_bytes(throughput.bytes_per_second),
        ),
    ]


def render_table(rows: list[tuple[str, str]]) -> str:
    """Two-column key/value table with box-drawing borders."""
    kw = max(len(k) for k, _ in rows)
    vw = max(len(v) for _, v in rows)
    top = f"┌─{'─' * kw}─┬─{'─' * vw}─┐"
    bottom = f"└─{'─' * kw}─┴─{'─' * vw}─┘"
    body = [f"│ {k:<{kw}} │ {v:<{vw}} │" for k, v in rows]
    return "\n".join([top, *body, bottom])
