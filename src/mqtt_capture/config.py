"""
Capture session configuration.

Values come from a YAML document, optionally overridden by environment
variables (a local ./.env file is loaded first via python-dotenv).

Priority (lowest -> highest):
1) built-in defaults for optional keys
2) YAML document (config.yaml by default)
3) process environment variables (MQTT_HOSTNAME, MQTT_CLIENT_ID, MQTT_USERNAME, MQTT_PASSWORD)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlsplit

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yaml"

# Use `#` for wildcard subscriptions, e.g. "weather/#"
DEFAULT_TOPICS = ("topic_1", "topic_2")
DEFAULT_QOS = 0

_ENV_OVERRIDES = {
    "MQTT_HOSTNAME": "hostname",
    "MQTT_CLIENT_ID": "client_id",
    "MQTT_USERNAME": "username",
    "MQTT_PASSWORD": "password",
}

_PLAIN_SCHEMES = {"mqtt": 1883, "tcp": 1883}
_TLS_SCHEMES = {"ssl": 8883, "mqtts": 8883}


class ConfigError(ValueError):
    """Raised when configuration is missing or invalid."""


@dataclass(frozen=True, slots=True)
class Topic:
    name: str
    qos: int


@dataclass(frozen=True, slots=True)
class Endpoint:
    host: str
    port: int
    tls: bool

    @property
    def uri(self) -> str:
        scheme = "ssl" if self.tls else "mqtt"
        return f"{scheme}://{self.host}:{self.port}"


@dataclass(frozen=True, slots=True)
class CaptureConfig:
    hostname: str
    client_id: str
    username: str
    password: str
    subscribed_topics: tuple[Topic, ...]
    qos: int = 0  # legacy top-level default, subscriptions use per-topic qos
    insecure_skip_verify: bool = True
    ca_certs: Optional[str] = None
    keepalive_s: int = 30
    clean_session: bool = True
    reconnect_delay_s: float = 1.0
    max_reconnect_attempts: Optional[int] = None  # None retries forever

    @property
    def endpoint(self) -> Endpoint:
        return parse_endpoint(self.hostname)


def default_config() -> CaptureConfig:
    """Built-in fallback: two topics at QoS 0 against a local broker."""
    return CaptureConfig(
        hostname="mqtt://localhost:1883",
        client_id="TEMP_CLIENT",
        username="TEMP_USER",
        password="temppassword",
        subscribed_topics=tuple(Topic(name, DEFAULT_QOS) for name in DEFAULT_TOPICS),
    )


def parse_endpoint(raw: str) -> Endpoint:
    """
    Parse a broker URI. mqtt:// and tcp:// are plain TCP, ssl:// and mqtts://
    use TLS. A bare host[:port] is plain TCP.
    """
    if not raw or not raw.strip():
        raise ConfigError("Broker hostname is empty")
    raw = raw.strip()
    if "://" not in raw:
        raw = f"mqtt://{raw}"

    parts = urlsplit(raw)
    scheme = parts.scheme.lower()
    if scheme in _PLAIN_SCHEMES:
        tls, default_port = False, _PLAIN_SCHEMES[scheme]
    elif scheme in _TLS_SCHEMES:
        tls, default_port = True, _TLS_SCHEMES[scheme]
    else:
        raise ConfigError(f"Unsupported broker scheme: {parts.scheme!r}")

    if not parts.hostname:
        raise ConfigError(f"Broker URI has no host: {raw!r}")
    try:
        port = parts.port or default_port
    except ValueError as exc:
        raise ConfigError(f"Invalid port in broker URI: {raw!r}") from exc

    return Endpoint(host=parts.hostname, port=port, tls=tls)


def _require_str(doc: dict[str, Any], key: str) -> str:
    v = doc.get(key)
    if v is None or v == "":
        raise ConfigError(f"Missing required config field: {key}")
    if not isinstance(v, (str, int)) or isinstance(v, bool):
        raise ConfigError(f"Invalid value for {key}: {v!r}")
    return str(v)


def _parse_qos(raw: Any, where: str) -> int:
    if isinstance(raw, bool) or not isinstance(raw, int) or raw not in (0, 1, 2):
        raise ConfigError(f"Invalid qos for {where}: {raw!r} (expected 0, 1 or 2)")
    return raw


def _parse_topics(raw: Any) -> tuple[Topic, ...]:
    if not isinstance(raw, list) or not raw:
        raise ConfigError("subscribed_topics must be a non-empty list")

    topics = []
    for i, entry in enumerate(raw):
        if not isinstance(entry, dict):
            raise ConfigError(f"subscribed_topics[{i}] must be a mapping with name and qos")
        name = entry.get("name")
        if not isinstance(name, str) or not name:
            raise ConfigError(f"subscribed_topics[{i}].name must be a non-empty string")
        topics.append(Topic(name=name, qos=_parse_qos(entry.get("qos"), name)))
    return tuple(topics)


def _optional_int(doc: dict[str, Any], key: str, default: Optional[int], *, minimum: int) -> Optional[int]:
    raw = doc.get(key, default)
    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise ConfigError(f"Invalid integer for {key}: {raw!r}")
    if raw < minimum:
        raise ConfigError(f"{key} must be >= {minimum}")
    return raw


def _from_document(doc: dict[str, Any]) -> CaptureConfig:
    reconnect_delay = doc.get("reconnect_delay_s", 1.0)
    if isinstance(reconnect_delay, bool) or not isinstance(reconnect_delay, (int, float)) or reconnect_delay < 0:
        raise ConfigError(f"Invalid reconnect_delay_s: {reconnect_delay!r}")

    insecure = doc.get("insecure_skip_verify", True)
    clean = doc.get("clean_session", True)
    for key, value in (("insecure_skip_verify", insecure), ("clean_session", clean)):
        if not isinstance(value, bool):
            raise ConfigError(f"{key} must be a boolean")

    ca_certs = doc.get("ca_certs")
    if ca_certs is not None and not isinstance(ca_certs, str):
        raise ConfigError(f"Invalid ca_certs: {ca_certs!r}")

    cfg = CaptureConfig(
        hostname=_require_str(doc, "hostname"),
        client_id=_require_str(doc, "client_id"),
        username=_require_str(doc, "username"),
        password=_require_str(doc, "password"),
        subscribed_topics=_parse_topics(doc.get("subscribed_topics")),
        qos=_parse_qos(doc.get("qos", 0), "qos"),
        insecure_skip_verify=insecure,
        ca_certs=ca_certs,
        keepalive_s=_optional_int(doc, "keepalive_s", 30, minimum=1),
        clean_session=clean,
        reconnect_delay_s=float(reconnect_delay),
        max_reconnect_attempts=_optional_int(doc, "max_reconnect_attempts", None, minimum=1),
    )
    # Validate the endpoint early so a bad URI is a config problem, not a connect failure.
    parse_endpoint(cfg.hostname)
    return cfg


def _load_dotenv() -> None:
    if Path(".env").is_file():
        # do not override existing env vars
        load_dotenv(Path(".env"), override=False)


def apply_env_overrides(cfg: CaptureConfig) -> CaptureConfig:
    changes = {}
    for env_key, field in _ENV_OVERRIDES.items():
        v = os.getenv(env_key)
        if v:
            changes[field] = v
    if not changes:
        return cfg
    logger.debug("Config overridden from environment: %s", sorted(changes))
    updated = replace(cfg, **changes)
    parse_endpoint(updated.hostname)
    return updated


def load_config(path: str | Path = DEFAULT_CONFIG_PATH, *, dotenv_enabled: bool = True) -> CaptureConfig:
    """
    Load and validate the YAML config document, then apply env overrides.

    Returns an immutable CaptureConfig. Raises ConfigError on failure.
    """
    p = Path(path)
    try:
        with p.open("r", encoding="utf-8") as f:
            doc = yaml.safe_load(f)
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {p}") from exc
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {p}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {p}: {exc}") from exc

    if not isinstance(doc, dict):
        raise ConfigError(f"Config document must be a mapping: {p}")

    cfg = _from_document(doc)
    if dotenv_enabled:
        _load_dotenv()
    return apply_env_overrides(cfg)


def load_config_or_default(path: str | Path = DEFAULT_CONFIG_PATH, *, dotenv_enabled: bool = True) -> CaptureConfig:
    """Load config; on ConfigError log it and fall back to default_config()."""
    try:
        return load_config(path, dotenv_enabled=dotenv_enabled)
    except ConfigError as exc:
        logger.warning("%s; using built-in default config", exc)
        return default_config()


def parse_topics(cfg: CaptureConfig) -> tuple[list[str], list[int]]:
    """Split subscribed topics into parallel name and qos lists, in document order."""
    names = [t.name for t in cfg.subscribed_topics]
    qos = [t.qos for t in cfg.subscribed_topics]
    return names, qos
