"""
Pytest configuration and shared fixtures
"""
import os
import sys
from unittest.mock import MagicMock

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))


@pytest.fixture
def clean_env(monkeypatch):
    """Remove env overrides that would leak into config loading"""
    for key in ("MQTT_HOSTNAME", "MQTT_CLIENT_ID", "MQTT_USERNAME", "MQTT_PASSWORD", "MQTT_CAPTURE_LOG_LEVEL"):
        # setenv first so teardown also removes values loaded from .env files
        monkeypatch.setenv(key, "")
        monkeypatch.delenv(key)


@pytest.fixture
def config_file(tmp_path):
    """Write a YAML config document and return its path"""

    def _write(text: str):
        p = tmp_path / "config.yaml"
        p.write_text(text, encoding="utf-8")
        return p

    return _write


@pytest.fixture
def valid_config_yaml():
    return """
hostname: "mqtt://broker.local:1883"
client_id: "capture-1"
username: "user"
password: "secret"
subscribed_topics:
  - name: "t1"
    qos: 0
  - name: "t2"
    qos: 1
"""


@pytest.fixture
def fake_paho_client(monkeypatch):
    """
    Patch paho.mqtt.client.Client to return a controllable fake.
    """
    import paho.mqtt.client as mqtt

    fake = MagicMock()
    fake.is_connected.return_value = True
    fake.loop.return_value = mqtt.MQTT_ERR_SUCCESS
    fake.subscribe.return_value = (mqtt.MQTT_ERR_SUCCESS, 7)

    def _ctor(*args, **kwargs):
        return fake

    monkeypatch.setattr("paho.mqtt.client.Client", _ctor)
    return fake
