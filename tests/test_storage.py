"""Unit tests for JSON file persistence."""
from __future__ import annotations

import json
import logging
import threading
from unittest.mock import patch

import pytest

from expiry_notifier.models import (
    AuditEntry,
    GraphApiConfig,
    NotificationProfile,
    ProfileValidationError,
    QueueItem,
    ValidationResult,
)
from expiry_notifier.storage import (
    EnvironmentNotFoundError,
    EnvironmentStore,
    HistoryStore,
    JsonFileStore,
    ProfileStore,
    QueueStore,
    read_json_safe,
    write_json_atomic,
)


class TestAtomicFiles:
    def test_missing_file_returns_default(self, tmp_path):
        assert read_json_safe(tmp_path / "absent.json", []) == []

    def test_corrupt_file_returns_default_and_warns(self, tmp_path, caplog):
        path = tmp_path / "history.json"
        path.write_text('[{"timestamp": ', encoding="utf-8")

        with caplog.at_level(logging.WARNING, logger="expiry_notifier.storage"):
            assert read_json_safe(path, {}) == {}
        assert "IO_CORRUPTION" in caplog.text

    def test_empty_file_returns_default(self, tmp_path):
        path = tmp_path / "queue.json"
        path.write_text("  \n", encoding="utf-8")

        assert read_json_safe(path, []) == []

    def test_failed_write_keeps_previous_content(self, tmp_path):
        path = tmp_path / "state" / "history.json"
        write_json_atomic(path, [{"recipient": "old"}])

        def _explode(data, handle, **kwargs):
            handle.write('[{"recipient": "ne')
            raise OSError("disk full")

        with patch("expiry_notifier.storage.json.dump", side_effect=_explode):
            with pytest.raises(OSError):
                write_json_atomic(path, [{"recipient": "new"}])

        assert json.loads(path.read_text(encoding="utf-8")) == [{"recipient": "old"}]
        assert [p.name for p in path.parent.iterdir()] == ["history.json"]

    def test_concurrent_updates_are_serialized(self, tmp_path):
        store = JsonFileStore(tmp_path / "counter.json", list)

        def _worker(worker_id: int) -> None:
            for step in range(5):
                store.update(lambda items: items + [f"{worker_id}-{step}"])

        threads = [threading.Thread(target=_worker, args=(n,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(store.read()) == 40


class TestHistoryStore:
    def test_cap_drops_oldest(self, tmp_path):
        path = tmp_path / "history.json"
        write_json_atomic(
            path,
            [AuditEntry(f"t{n}", f"user{n}@contoso.com", "p1", "sent").to_dict() for n in range(2000)],
        )
        store = HistoryStore(path, limit=2000)

        store.append(AuditEntry("t2000", "user2000@contoso.com", "p1", "sent"))

        entries = store.entries()
        assert len(entries) == 2000
        assert entries[0].recipient == "user1@contoso.com"
        assert entries[-1].recipient == "user2000@contoso.com"

    def test_newest_first(self, tmp_path):
        store = HistoryStore(tmp_path / "history.json")
        store.append(AuditEntry("t1", "a@contoso.com", "p1", "sent"))
        store.append(AuditEntry("t2", "b@contoso.com", "p1", "failed", error="550"))

        assert [entry.recipient for entry in store.newest_first()] == ["b@contoso.com", "a@contoso.com"]
        assert store.newest_first()[0].error == "550"


class TestEnvironmentStore:
    def test_default_environment_created_on_first_read(self, tmp_path):
        store = EnvironmentStore(tmp_path / "environments.json")

        active = store.active()

        assert active.name == "Global Controller"
        assert active.graph.default_expiry_days == 90
        assert [env.id for env in store.list()] == [active.id]

    def test_add_and_switch_keep_one_active(self, tmp_path):
        store = EnvironmentStore(tmp_path / "environments.json")
        default = store.active()
        staging = store.add("Staging")

        assert store.active().id == staging.id
        store.switch(default.id)

        flags = {env.id: env.active for env in store.list()}
        assert flags == {default.id: True, staging.id: False}

    def test_switch_to_unknown_environment(self, tmp_path):
        store = EnvironmentStore(tmp_path / "environments.json")
        store.active()

        with pytest.raises(EnvironmentNotFoundError):
            store.switch("missing")
        assert store.active().active

    def test_update_graph_resets_validation(self, tmp_path):
        store = EnvironmentStore(tmp_path / "environments.json")
        env = store.active()
        store.record_validation(env.id, ValidationResult(True, True, True, "2024-03-01T00:00:00Z"))

        updated = store.update(env.id, graph=GraphApiConfig("t", "c", "s", 60))

        assert updated.graph.default_expiry_days == 60
        assert store.get(env.id).last_validation.auth is False

    def test_delete_promotes_another_environment(self, tmp_path):
        store = EnvironmentStore(tmp_path / "environments.json")
        default = store.active()
        staging = store.add("Staging")

        store.delete(staging.id)

        assert store.active().id == default.id


class TestProfileStore:
    def test_save_assigns_id_and_normalizes_cadence(self, tmp_path):
        store = ProfileStore(tmp_path / "profiles.json")

        saved = store.save(NotificationProfile(id="", name="Standard", days_before=[1, 7, 14, 7]))

        assert saved.id
        assert store.get(saved.id).days_before == [14, 7, 1]

    def test_save_replaces_existing(self, tmp_path):
        store = ProfileStore(tmp_path / "profiles.json")
        saved = store.save(NotificationProfile(id="p1", name="Standard"))

        store.save(NotificationProfile(id=saved.id, name="Renamed"))

        assert [profile.name for profile in store.list()] == ["Renamed"]

    @pytest.mark.parametrize(
        "profile",
        [
            NotificationProfile(id="p1", name="Empty", days_before=[]),
            NotificationProfile(id="p1", name="Negative", days_before=[7, -2]),
            NotificationProfile(id="p1", name=""),
            NotificationProfile(id="p1", name="Status", status="sometimes"),
            NotificationProfile(id="p1", name="Clock", preferred_time="25:00"),
        ],
    )
    def test_invalid_profiles_are_not_persisted(self, tmp_path, profile):
        store = ProfileStore(tmp_path / "profiles.json")

        with pytest.raises(ProfileValidationError):
            store.save(profile)
        assert store.list() == []

    def test_delete(self, tmp_path):
        store = ProfileStore(tmp_path / "profiles.json")
        store.save(NotificationProfile(id="p1", name="Standard"))

        assert store.delete("p1") is True
        assert store.delete("p1") is False


class TestQueueStore:
    def _item(self, item_id: str, when: str) -> QueueItem:
        return QueueItem(id=item_id, recipient=f"{item_id}@contoso.com", scheduled_for=when, profile_name="Standard")

    def test_items_sorted_by_schedule(self, tmp_path):
        store = QueueStore(tmp_path / "queue.json")
        store.add([self._item("late", "2024-03-02T09:00:00Z"), self._item("early", "2024-03-01T09:00:00Z")])

        assert [item.id for item in store.list()] == ["early", "late"]

    def test_cancel_removes_exactly_one(self, tmp_path):
        store = QueueStore(tmp_path / "queue.json")
        store.add([self._item("a", "2024-03-01T09:00:00Z"), self._item("b", "2024-03-01T10:00:00Z")])

        assert store.cancel("a") is True
        assert store.cancel("a") is False
        assert [item.id for item in store.list()] == ["b"]

    def test_clear(self, tmp_path):
        store = QueueStore(tmp_path / "queue.json")
        store.add([self._item("a", "2024-03-01T09:00:00Z")])

        assert store.clear() == 1
        assert store.list() == []

    def test_toggle_pause_is_independent_of_items(self, tmp_path):
        store = QueueStore(tmp_path / "queue.json")
        store.add([self._item("a", "2024-03-01T09:00:00Z")])

        assert store.toggle_pause() is True
        assert store.is_paused() is True
        assert len(store.list()) == 1
        assert store.toggle_pause() is False

    def test_reads_legacy_list_layout(self, tmp_path):
        path = tmp_path / "queue.json"
        path.write_text(json.dumps([{"id": "a", "recipient": "a@contoso.com", "scheduledFor": "x"}]), encoding="utf-8")
        store = QueueStore(path)

        assert store.is_paused() is False
        assert [item.id for item in store.list()] == ["a"]
