from __future__ import annotations

import logging

import pytest

from mqtt_capture.log_config import configure_logging, resolve_level


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("debug", logging.DEBUG),
        ("WARNING", logging.WARNING),
        ("10", 10),
        ("bogus", logging.INFO),
        ("", logging.INFO),
    ],
)
def test_resolve_level_from_flag(raw, expected, clean_env):
    assert resolve_level(raw) == expected


def test_env_used_when_no_flag(monkeypatch, clean_env):
    monkeypatch.setenv("MQTT_CAPTURE_LOG_LEVEL", "error")
    assert resolve_level(None) == logging.ERROR


def test_flag_beats_env(monkeypatch, clean_env):
    monkeypatch.setenv("MQTT_CAPTURE_LOG_LEVEL", "error")
    assert resolve_level("debug") == logging.DEBUG


def test_configure_logging_sets_root_level(clean_env):
    root = logging.getLogger()
    previous = root.level
    try:
        assert configure_logging("warning") == logging.WARNING
        assert root.level == logging.WARNING
    finally:
        root.setLevel(previous)
