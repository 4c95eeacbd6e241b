"""
Capture session controller.

resolve topics -> connect -> subscribe -> consume loop on a worker thread ->
join -> write captured set -> disconnect. The connection is always
disconnected, whichever step fails. If the worker outlives the cancel
grace period it keeps the connection and disconnects it itself on exit.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from mqtt_capture.capture import CaptureResult, ConsumeLoop
from mqtt_capture.config import CaptureConfig, parse_topics
from mqtt_capture.mqtt_client import (
    DEFAULT_POLL_TIMEOUT_S,
    BrokerConnection,
    CaptureError,
    Credentials,
    TlsPolicy,
    connect,
)
from mqtt_capture.output import default_output_path, write_captured
from mqtt_capture.stats import Throughput

DEFAULT_DURATION_S = 10
# slack on top of duration + one reconnect delay before the outer ceiling fires
JOIN_GRACE_S = 5.0
# how long to wait for the worker after cancelling it
CANCEL_JOIN_S = 5.0


@dataclass(slots=True)
class SessionResult:
    topics: list[str]
    capture: CaptureResult
    throughput: Optional[Throughput]
    output_path: Path


class SessionController:
    """
    Owns one capture session. The worker thread exclusively owns the
    connection, captured set and stats until it is joined; stop() may be
    called from any thread (or a signal handler) to end the capture early.
    """

    def __init__(
        self,
        config: CaptureConfig,
        duration_s: float = DEFAULT_DURATION_S,
        output_path: Optional[str | Path] = None,
        *,
        log: Optional[logging.Logger] = None,
        rng: Optional[random.Random] = None,
        join_timeout_s: Optional[float] = None,
        poll_timeout_s: float = DEFAULT_POLL_TIMEOUT_S,
        connector: Callable[..., BrokerConnection] = connect,
        writer: Callable[[Path, list[Any]], Any] = write_captured,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if duration_s <= 0:
            raise ValueError("duration_s must be > 0")
        self.config = config
        self.duration_s = duration_s
        self.log = log or logging.getLogger(__name__)
        self.output_path = Path(output_path) if output_path else default_output_path(rng)
        self.poll_timeout_s = poll_timeout_s
        self.cancel = threading.Event()

        self._connector = connector
        self._writer = writer
        self._clock = clock
        self._abandoned = False

        if join_timeout_s is None:
            join_timeout_s = duration_s + config.reconnect_delay_s + JOIN_GRACE_S
        elif join_timeout_s < duration_s:
            # flagged, not corrected: the ceiling will cut the capture short
            self.log.warning(
                "Join timeout %.1fs is shorter than the capture duration %.1fs; "
                "messages in flight will be lost",
                join_timeout_s,
                duration_s,
            )
        self.join_timeout_s = join_timeout_s

    def stop(self) -> None:
        """Request early end of the capture. Safe to call from any thread."""
        self.cancel.set()

    def _open(self) -> BrokerConnection:
        cfg = self.config
        return self._connector(
            cfg.endpoint,
            cfg.client_id,
            Credentials(cfg.username, cfg.password),
            TlsPolicy(insecure_skip_verify=cfg.insecure_skip_verify, ca_certs=cfg.ca_certs),
            keepalive=cfg.keepalive_s,
            clean_session=cfg.clean_session,
        )

    def run(self) -> SessionResult:
        """
        Run the session to completion. ConnectError and SubscribeError abort
        before any capture; OutputWriteError is raised after disconnecting.
        """
        topics, qos = parse_topics(self.config)

        conn = self._open()
        self._abandoned = False
        try:
            conn.subscribe_many(topics, qos)
            capture = self._capture(conn)
            if capture.aborted:
                self.log.warning("Capture ended early: %s", capture.aborted)
            self._writer(self.output_path, capture.records)
        finally:
            if not self._abandoned:
                conn.disconnect()

        return SessionResult(
            topics=topics,
            capture=capture,
            throughput=capture.stats.derive(capture.elapsed_whole_s),
            output_path=self.output_path,
        )

    def _capture(self, conn: BrokerConnection) -> CaptureResult:
        loop = ConsumeLoop(
            conn,
            self.duration_s,
            cancel=self.cancel,
            clock=self._clock,
            poll_timeout_s=self.poll_timeout_s,
            reconnect_delay_s=self.config.reconnect_delay_s,
            max_reconnect_attempts=self.config.max_reconnect_attempts,
        )
        outcome: dict[str, Any] = {}
        handoff = threading.Lock()
        owner = {"worker_done": False, "abandoned": False}

        def _worker() -> None:
            try:
                outcome["result"] = loop.run()
            except Exception as exc:
                outcome["error"] = exc
            finally:
                with handoff:
                    owner["worker_done"] = True
                    abandoned = owner["abandoned"]
                # the controller gave up on us, so the connection is ours to close
                if abandoned:
                    conn.disconnect()

        worker = threading.Thread(target=_worker, name="mqtt-capture", daemon=True)
        worker.start()
        worker.join(timeout=self.join_timeout_s)

        if worker.is_alive():
            self.log.warning(
                "Capture still running after %.1fs; cancelling", self.join_timeout_s
            )
            self.cancel.set()
            worker.join(timeout=CANCEL_JOIN_S)

        with handoff:
            if not owner["worker_done"]:
                owner["abandoned"] = True
                self._abandoned = True
        if self._abandoned:
            raise CaptureError("Capture worker did not stop after cancellation")
        worker.join()

        if "error" in outcome:
            raise outcome["error"]
        return outcome["result"]
