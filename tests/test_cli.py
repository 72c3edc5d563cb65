"""Tests for the operator CLI."""
from __future__ import annotations

import json

from typer.testing import CliRunner

from expiry_notifier.cli import app
from expiry_notifier.models import AuditEntry
from expiry_notifier.storage import HistoryStore

runner = CliRunner()


def _settings(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text(f"storage:\n  data_root: {tmp_path / 'data'}\n", encoding="utf-8")
    return path


def test_history_newest_first(tmp_path):
    settings = _settings(tmp_path)
    store = HistoryStore(tmp_path / "data" / "state" / "history.json")
    store.append(AuditEntry("t1", "a@contoso.com", "p1", "sent"))
    store.append(AuditEntry("t2", "b@contoso.com", "p1", "sent"))

    result = runner.invoke(app, ["history", "--config", str(settings), "--limit", "1"])

    assert result.exit_code == 0
    assert [entry["recipient"] for entry in json.loads(result.output)] == ["b@contoso.com"]


def test_history_empty(tmp_path):
    result = runner.invoke(app, ["history", "--config", str(_settings(tmp_path))])

    assert result.exit_code == 0
    assert "No deliveries recorded yet." in result.output


def test_users_without_credentials(tmp_path):
    result = runner.invoke(app, ["users", "--config", str(_settings(tmp_path))])

    assert result.exit_code == 1
    assert "No directory credentials" in result.output
