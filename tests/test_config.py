"""Tests for YAML configuration loading."""
from __future__ import annotations

from pathlib import Path

import pytest

from expiry_notifier.config import ConfigurationError, load_config


def test_missing_file_uses_defaults(tmp_path):
    config = load_config(tmp_path / "absent.yaml")

    assert config.server.port == 3000
    assert config.delivery.cadence_match == "exact"
    assert config.delivery.history_limit == 2000
    assert config.graph.request_timeout == 15.0
    assert config.storage.history_file == Path("data") / "state" / "history.json"


def test_yaml_values_are_loaded(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text(
        "server:\n"
        "  port: 8080\n"
        "storage:\n"
        f"  data_root: {tmp_path / 'data'}\n"
        "delivery:\n"
        "  cadence_match: catch_up\n"
        "  message_interval_seconds: 0.5\n",
        encoding="utf-8",
    )

    config = load_config(path)

    assert config.server.port == 8080
    assert config.storage.queue_file == tmp_path / "data" / "state" / "queue.json"
    assert config.delivery.cadence_match == "catch_up"
    assert config.delivery.message_interval_seconds == 0.5


def test_environment_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("EXPIRY_DELIVERY__HISTORY_LIMIT", "50")
    monkeypatch.setenv("EXPIRY_DELIVERY__CADENCE_AWARE", "false")
    monkeypatch.setenv("PORT", "9000")

    config = load_config(tmp_path / "absent.yaml")

    assert config.delivery.history_limit == 50
    assert config.delivery.cadence_aware is False
    assert config.server.port == 9000


def test_config_path_from_environment(tmp_path, monkeypatch):
    path = tmp_path / "custom.yaml"
    path.write_text("logging:\n  level: debug\n", encoding="utf-8")
    monkeypatch.setenv("EXPIRY_CONFIG", str(path))

    assert load_config().logging.level == "DEBUG"


@pytest.mark.parametrize(
    "content",
    [
        "delivery:\n  cadence_match: nearest\n",
        "delivery:\n  history_limit: 0\n",
        "server:\n  port: eighty\n",
        "- just\n- a list\n",
        "server: [unclosed\n",
    ],
)
def test_invalid_configuration(tmp_path, content):
    path = tmp_path / "settings.yaml"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigurationError):
        load_config(path)
