"""
Consume loop for a capture session.

Pulls items from a BrokerConnection until the capture duration has elapsed or
the session is cancelled. Messages are JSON-decoded and appended to the
captured set; loss signals block the loop in reconnect() until the broker is
back.

The elapsed-time check runs after every item (and after idle polls), so a
message that arrives just before the check can overrun the deadline by at
most one item.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from mqtt_capture.mqtt_client import (
    DEFAULT_POLL_TIMEOUT_S,
    BrokerConnection,
    InboundMessage,
    LossSignal,
    ReconnectAbortedError,
)
from mqtt_capture.report import human_bytes
from mqtt_capture.stats import SessionStats

logger = logging.getLogger(__name__)


class DecodeError(ValueError):
    """Payload is not valid UTF-8 JSON."""


class LoopState(str, Enum):
    IDLE = "idle"
    RECEIVING = "receiving"
    RECONNECTING = "reconnecting"
    STOPPED = "stopped"


@dataclass(slots=True)
class CaptureResult:
    records: list[Any]
    stats: SessionStats
    elapsed_s: float
    reconnects: int = 0
    aborted: Optional[str] = None  # set when a reconnect gave up

    @property
    def elapsed_whole_s(self) -> int:
        return int(self.elapsed_s)


def decode_payload(payload: bytes) -> Any:
    try:
        return json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError, RecursionError) as exc:
        raise DecodeError(str(exc)) from exc


def count_tags(value: Any) -> int:
    """
    Tags in a decoded payload: for an array of objects, the sum of the keys
    of each object. Anything else carries no tags.
    """
    if not isinstance(value, list):
        return 0
    return sum(len(group) for group in value if isinstance(group, dict))


@dataclass
class ConsumeLoop:
    connection: BrokerConnection
    duration_s: float
    on_record: Optional[Callable[[Any], None]] = None
    on_stats: Optional[Callable[[SessionStats, float], None]] = None
    cancel: threading.Event = field(default_factory=threading.Event)
    clock: Callable[[], float] = time.monotonic
    poll_timeout_s: float = DEFAULT_POLL_TIMEOUT_S
    reconnect_delay_s: float = 1.0
    max_reconnect_attempts: Optional[int] = None

    state: LoopState = field(default=LoopState.IDLE, init=False)

    def run(self) -> CaptureResult:
        if self.state is not LoopState.IDLE:
            raise RuntimeError(f"Consume loop already used (state={self.state.value})")

        result = CaptureResult(records=[], stats=SessionStats(), elapsed_s=0.0)
        start = self.clock()
        self.state = LoopState.RECEIVING
        logger.info("Capturing MQTT messages for %s seconds!", self.duration_s)

        try:
            while not self.cancel.is_set():
                item = self.connection.receive(self.poll_timeout_s)

                if isinstance(item, LossSignal):
                    try:
                        self._reconnect(item, result)
                    except ReconnectAbortedError as exc:
                        if not self.cancel.is_set():
                            logger.error("Stopping capture: %s", exc)
                            result.aborted = str(exc)
                        break
                elif isinstance(item, InboundMessage):
                    self._consume(item, result)

                elapsed = self.clock() - start
                if elapsed > self.duration_s:
                    break

                if isinstance(item, InboundMessage):
                    logger.debug(
                        "Capturing %d MQTT Events | Total Message Size: %s | Elapsed time in seconds: %d",
                        len(result.records),
                        human_bytes(result.stats.total_bytes),
                        int(elapsed),
                    )
                    if self.on_stats is not None:
                        self.on_stats(result.stats.snapshot(), elapsed)

            if self.cancel.is_set():
                logger.info("Capture cancelled")
        finally:
            result.elapsed_s = self.clock() - start
            self.state = LoopState.STOPPED

        return result

    def _consume(self, msg: InboundMessage, result: CaptureResult) -> None:
        size = len(msg.payload)
        try:
            value = decode_payload(msg.payload)
        except DecodeError as exc:
            # received but unparseable: counts toward bytes, not the captured set
            result.stats.record_dropped(size)
            logger.debug("Dropped undecodable payload on %s: %s", msg.topic, exc)
            return

        result.records.append(value)
        result.stats.record(size, count_tags(value))
        if self.on_record is not None:
            self.on_record(value)

    def _reconnect(self, signal: LossSignal, result: CaptureResult) -> None:
        self.state = LoopState.RECONNECTING
        logger.warning("Connection lost (%s); reconnecting", signal.reason)
        self.connection.reconnect(
            delay_s=self.reconnect_delay_s,
            max_attempts=self.max_reconnect_attempts,
            cancel=self.cancel,
        )
        result.reconnects += 1
        self.state = LoopState.RECEIVING


def run_capture(
    connection: BrokerConnection,
    duration_s: float,
    on_record: Optional[Callable[[Any], None]] = None,
    on_stats: Optional[Callable[[SessionStats, float], None]] = None,
    **kwargs: Any,
) -> CaptureResult:
    """Run one consume loop to completion on the calling thread."""
    loop = ConsumeLoop(connection, duration_s, on_record=on_record, on_stats=on_stats, **kwargs)
    return loop.run()
