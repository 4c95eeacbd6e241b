"""
MQTT connection manager for capture sessions.

Connect, subscribe-many, consume the inbound stream, reconnect with a fixed
delay, disconnect. The paho network loop is pumped by whoever calls receive(),
so a single worker thread owns the connection while it consumes.
"""

from __future__ import annotations

import logging
import ssl
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence, Union

import paho.mqtt.client as mqtt

from mqtt_capture.config import Endpoint

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT_S = 10.0
DEFAULT_POLL_TIMEOUT_S = 0.5


class CaptureError(RuntimeError):
    """Base class for fatal capture session errors."""


class ConnectError(CaptureError):
    """Broker refused or could not be reached on the initial connect."""


class SubscribeError(CaptureError):
    """Subscription request failed or was rejected by the broker."""


class ReconnectAbortedError(CaptureError):
    """Reconnect gave up: attempt cap reached or session cancelled."""


@dataclass(frozen=True, slots=True)
class Credentials:
    username: str
    password: str

    def __repr__(self) -> str:
        return f"Credentials(username={self.username!r}, password='***')"


@dataclass(frozen=True, slots=True)
class TlsPolicy:
    """
    TLS settings for ssl:// endpoints.

    insecure_skip_verify disables broker certificate and hostname validation.
    That keeps self-signed brokers reachable at the cost of trusting any peer.
    """

    insecure_skip_verify: bool = True
    ca_certs: Optional[str] = None


@dataclass(frozen=True, slots=True)
class InboundMessage:
    topic: str
    payload: bytes


@dataclass(frozen=True, slots=True)
class LossSignal:
    """Transport reported no connection; distinct from an undecodable payload."""

    reason: str


InboundItem = Union[InboundMessage, LossSignal]


class BrokerConnection:
    """
    One live session with a broker. Created by connect(); not thread-safe,
    so it must be used from one thread at a time.
    """

    def __init__(
        self,
        endpoint: Endpoint,
        client_id: str,
        credentials: Credentials,
        tls: TlsPolicy,
        *,
        keepalive: int = 30,
        clean_session: bool = True,
    ) -> None:
        self.endpoint = endpoint
        self.client_id = client_id
        self.credentials = credentials
        self.tls = tls
        self.keepalive = keepalive
        self.clean_session = clean_session

        self._client: Optional[mqtt.Client] = None
        self._inbox: deque[InboundMessage] = deque()
        self._subscriptions: list[tuple[str, int]] = []

        self._connack = threading.Event()
        self._connack_failure: Optional[str] = None
        self._suback: dict[int, list[Any]] = {}
        self._awaiting_suback: set[int] = set()
        self._restore_mid: Optional[int] = None
        self._lost = False

    @property
    def connected(self) -> bool:
        return bool(self._client and self._client.is_connected())

    def _build_client(self) -> mqtt.Client:
        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            protocol=mqtt.MQTTv311,
            clean_session=self.clean_session,
        )
        client.username_pw_set(self.credentials.username, self.credentials.password)

        if self.endpoint.tls:
            if self.tls.insecure_skip_verify:
                logger.warning(
                    "TLS server certificate validation disabled for %s", self.endpoint.uri
                )
                client.tls_set(ca_certs=self.tls.ca_certs, cert_reqs=ssl.CERT_NONE)
                client.tls_insecure_set(True)
            else:
                client.tls_set(ca_certs=self.tls.ca_certs, cert_reqs=ssl.CERT_REQUIRED)

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_subscribe = self._on_subscribe
        client.on_message = self._on_message
        return client

    def _on_connect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any = None) -> None:
        if reason_code.is_failure:
            self._connack_failure = str(reason_code)
            logger.error("MQTT connect refused: %s", reason_code)
            self._connack.set()
            return

        self._connack_failure = None
        self._lost = False
        self._connack.set()
        logger.info("Connected to the broker %s", self.endpoint.uri)

        # clean sessions drop subscriptions, so restore them after a reconnect
        if self._subscriptions:
            rc, mid = client.subscribe(list(self._subscriptions))
            if rc != mqtt.MQTT_ERR_SUCCESS:
                logger.error("Restoring subscriptions failed: %s", mqtt.error_string(rc))
                return
            self._restore_mid = mid
            logger.info("Restoring %d subscriptions", len(self._subscriptions))

    def _on_disconnect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any = None) -> None:
        if getattr(reason_code, "is_failure", False):
            logger.warning("Unexpected disconnect: %s", reason_code)
        self._lost = True

    def _on_subscribe(self, client: mqtt.Client, userdata: Any, mid: int, reason_codes: Any, properties: Any = None) -> None:
        if mid in self._awaiting_suback:
            self._suback[mid] = list(reason_codes)
        elif mid == self._restore_mid:
            self._restore_mid = None
            self._check_restored(list(reason_codes))
        else:
            logger.debug("Ignoring SUBACK for unknown mid %s", mid)

    def _check_restored(self, granted: list[Any]) -> None:
        rejected = [t for (t, _), code in zip(self._subscriptions, granted) if getattr(code, "is_failure", False)]
        if rejected:
            logger.error("Broker rejected restored subscriptions: %s", rejected)
        else:
            logger.info("Restored %d subscriptions", len(self._subscriptions))

    def _on_message(self, client: mqtt.Client, userdata: Any, msg: mqtt.MQTTMessage) -> None:
        self._inbox.append(InboundMessage(topic=msg.topic, payload=bytes(msg.payload)))

    def _pump_until(
        self,
        done: Callable[[], bool],
        timeout_s: float,
        cancel: Optional[threading.Event] = None,
    ) -> bool:
        deadline = time.monotonic() + timeout_s
        while not done():
            if cancel is not None and cancel.is_set():
                raise ReconnectAbortedError("Reconnect cancelled")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            rc = self._client.loop(timeout=min(0.1, remaining))
            if rc != mqtt.MQTT_ERR_SUCCESS and not done():
                return False
        return True

    def open(self, timeout_s: float = DEFAULT_CONNECT_TIMEOUT_S) -> None:
        """Establish the transport session and wait for CONNACK. Raises ConnectError."""
        self._client = self._build_client()
        self._connack.clear()
        try:
            self._client.connect(self.endpoint.host, self.endpoint.port, keepalive=self.keepalive)
        except (OSError, ValueError) as exc:
            raise ConnectError(f"Cannot reach broker {self.endpoint.uri}: {exc}") from exc

        if not self._pump_until(self._connack.is_set, timeout_s):
            raise ConnectError(f"No CONNACK from {self.endpoint.uri} within {timeout_s:.0f}s")
        if self._connack_failure is not None:
            raise ConnectError(f"Broker {self.endpoint.uri} refused connection: {self._connack_failure}")

    def subscribe_many(
        self,
        topics: Sequence[str],
        qos_levels: Sequence[int],
        *,
        timeout_s: float = DEFAULT_CONNECT_TIMEOUT_S,
    ) -> None:
        """
        Subscribe to all topics in one SUBSCRIBE request and wait for the SUBACK.
        Raises SubscribeError if the request fails or any topic is rejected.
        """
        if len(topics) != len(qos_levels):
            raise SubscribeError(f"{len(topics)} topics but {len(qos_levels)} qos levels")
        if not topics:
            raise SubscribeError("No topics to subscribe")
        if not self._client:
            raise SubscribeError("Not connected")

        pairs = list(zip(topics, qos_levels))
        try:
            rc, mid = self._client.subscribe(pairs)
        except ValueError as exc:
            raise SubscribeError(f"Invalid subscription: {exc}") from exc
        if rc != mqtt.MQTT_ERR_SUCCESS:
            raise SubscribeError(f"Subscribe request failed: {mqtt.error_string(rc)}")

        self._awaiting_suback.add(mid)
        try:
            if not self._pump_until(lambda: mid in self._suback, timeout_s):
                raise SubscribeError(f"No SUBACK within {timeout_s:.0f}s")
            granted = self._suback.pop(mid)
        finally:
            self._awaiting_suback.discard(mid)

        rejected = [t for (t, _), code in zip(pairs, granted) if getattr(code, "is_failure", False)]
        if rejected:
            raise SubscribeError(f"Broker rejected subscriptions: {rejected}")

        self._subscriptions = pairs
        for topic, qos in pairs:
            logger.info("Subscribed to topic: %s with QoS: %s", topic, qos)

    def receive(self, timeout_s: float = DEFAULT_POLL_TIMEOUT_S) -> Optional[InboundItem]:
        """
        Next item from the inbound stream.

        Returns an InboundMessage, a LossSignal when the transport is down,
        or None when nothing arrived within timeout_s.
        """
        if self._inbox:
            return self._inbox.popleft()
        if self._lost or not self._client:
            return LossSignal("connection lost")

        rc = self._client.loop(timeout=timeout_s)
        if self._inbox:
            return self._inbox.popleft()
        if rc != mqtt.MQTT_ERR_SUCCESS or self._lost:
            self._lost = True
            return LossSignal(mqtt.error_string(rc) if rc != mqtt.MQTT_ERR_SUCCESS else "connection lost")
        return None

    def reconnect(
        self,
        *,
        delay_s: float = 1.0,
        max_attempts: Optional[int] = None,
        cancel: Optional[threading.Event] = None,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> int:
        """
        Block until the session is re-established. Retries with a fixed delay,
        forever unless max_attempts is set or cancel is triggered
        (ReconnectAbortedError). Cancel is also honoured while waiting for the
        CONNACK. Returns the number of failed attempts.
        """
        attempt = 0
        while True:
            if cancel is not None and cancel.is_set():
                raise ReconnectAbortedError("Reconnect cancelled")
            try:
                self._try_reconnect(cancel)
                logger.info("Reconnected to the broker %s", self.endpoint.uri)
                return attempt
            except (OSError, ConnectError) as exc:
                attempt += 1
                logger.error("Error reconnecting #%d: %s", attempt, exc)
            if max_attempts is not None and attempt >= max_attempts:
                raise ReconnectAbortedError(f"Giving up after {attempt} reconnect attempts")
            if cancel is not None:
                if cancel.wait(timeout=delay_s):
                    raise ReconnectAbortedError("Reconnect cancelled")
            else:
                sleep(delay_s)

    def _try_reconnect(self, cancel: Optional[threading.Event] = None) -> None:
        self._connack.clear()
        if self._client is None:
            self._client = self._build_client()
            self._client.connect(self.endpoint.host, self.endpoint.port, keepalive=self.keepalive)
        else:
            self._client.reconnect()
        if not self._pump_until(self._connack.is_set, DEFAULT_CONNECT_TIMEOUT_S, cancel):
            raise ConnectError("no CONNACK")
        if self._connack_failure is not None:
            raise ConnectError(f"refused: {self._connack_failure}")

    def disconnect(self) -> None:
        """Best-effort close; failures are logged, never raised."""
        if not self._client:
            return
        try:
            self._client.disconnect()
            # flush the DISCONNECT packet
            self._client.loop(timeout=0.1)
            logger.info("Disconnected from the broker!")
        except Exception:
            logger.exception("Error disconnecting from broker")
        finally:
            self._client = None
            self._lost = True


def connect(
    endpoint: Endpoint,
    client_id: str,
    credentials: Credentials,
    tls: TlsPolicy,
    *,
    keepalive: int = 30,
    clean_session: bool = True,
    timeout_s: float = DEFAULT_CONNECT_TIMEOUT_S,
) -> BrokerConnection:
    """Open a BrokerConnection. Raises ConnectError; callers treat it as fatal."""
    conn = BrokerConnection(
        endpoint,
        client_id,
        credentials,
        tls,
        keepalive=keepalive,
        clean_session=clean_session,
    )
    conn.open(timeout_s=timeout_s)
    return conn
