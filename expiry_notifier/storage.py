"""JSON file persistence for environments, profiles, audit history and the queue."""
from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from .models import (
    AuditEntry,
    EnvironmentProfile,
    GraphApiConfig,
    NotificationProfile,
    QueueItem,
    SmtpConfig,
    ValidationResult,
)


DEFAULT_HISTORY_LIMIT = 2000

logger = logging.getLogger(__name__)

_LOCKS: Dict[Path, threading.RLock] = {}
_LOCKS_GUARD = threading.Lock()


def _lock_for(path: Path) -> threading.RLock:
    key = path.resolve()
    with _LOCKS_GUARD:
        lock = _LOCKS.get(key)
        if lock is None:
            lock = threading.RLock()
            _LOCKS[key] = lock
        return lock


def read_json_safe(path: Path, default: Any) -> Any:
    """Read ``path``; missing, empty or corrupt files yield ``default``."""

    if not path.exists():
        return default
    try:
        with path.open("r", encoding="utf-8") as handle:
            content = handle.read().strip()
        return json.loads(content) if content else default
    except (OSError, ValueError):
        logger.warning("IO_CORRUPTION: Using default for %s", path.name)
        return default


def write_json_atomic(path: Path, data: Any) -> None:
    """Write to a temporary sibling, then rename over ``path``."""

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f"{path.name}.{uuid.uuid4().hex}.tmp")
    try:
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2)
            handle.flush()
            os.fsync(handle.fileno())
        tmp_path.replace(path)
    except Exception:
        logger.error("IO_FAULT: Atomic write failed for %s", path.name)
        if tmp_path.exists():
            tmp_path.unlink()
        raise


class JsonFileStore:
    """Whole-file read-modify-write with one lock per file."""

    def __init__(self, path: Path, default_factory: Callable[[], Any] = list) -> None:
        self.path = Path(path)
        self._default_factory = default_factory
        self._lock = _lock_for(self.path)

    def read(self) -> Any:
        with self._lock:
            return read_json_safe(self.path, self._default_factory())

    def write(self, data: Any) -> None:
        with self._lock:
            write_json_atomic(self.path, data)

    def update(self, mutate: Callable[[Any], Any]) -> Any:
        """Apply ``mutate`` to the current content and persist what it returns."""

        with self._lock:
            current = read_json_safe(self.path, self._default_factory())
            updated = mutate(current)
            write_json_atomic(self.path, updated)
            return updated


class EnvironmentNotFoundError(KeyError):
    pass


class EnvironmentStore:
    """Environment profiles, exactly one of which is active."""

    def __init__(self, path: Path) -> None:
        self._store = JsonFileStore(path, list)

    def _load(self, raw: Any) -> List[EnvironmentProfile]:
        environments: List[EnvironmentProfile] = []
        for entry in raw if isinstance(raw, list) else []:
            if isinstance(entry, dict):
                environments.append(EnvironmentProfile.from_dict(entry))
        return environments

    @staticmethod
    def _dump(environments: Iterable[EnvironmentProfile]) -> List[Dict[str, Any]]:
        return [environment.to_dict() for environment in environments]

    def list(self) -> List[EnvironmentProfile]:
        return self._load(self._store.read())

    def active(self) -> EnvironmentProfile:
        """Return the active environment, creating the default one on first use."""

        result: Dict[str, EnvironmentProfile] = {}

        def _mutate(raw: Any) -> List[Dict[str, Any]]:
            environments = self._load(raw)
            if not environments:
                environments = [EnvironmentProfile.default()]
            chosen = next((env for env in environments if env.active), environments[0])
            for environment in environments:
                environment.active = environment is chosen
            result["active"] = chosen
            return self._dump(environments)

        environments = self.list()
        chosen = next((env for env in environments if env.active), None)
        if chosen is not None and sum(1 for env in environments if env.active) == 1:
            return chosen
        self._store.update(_mutate)
        return result["active"]

    def get(self, environment_id: str) -> EnvironmentProfile:
        for environment in self.list():
            if environment.id == environment_id:
                return environment
        raise EnvironmentNotFoundError(environment_id)

    def add(self, name: str) -> EnvironmentProfile:
        created = EnvironmentProfile(id=uuid.uuid4().hex, name=name.strip(), active=True)

        def _mutate(raw: Any) -> List[Dict[str, Any]]:
            environments = self._load(raw)
            for environment in environments:
                environment.active = False
            environments.append(created)
            return self._dump(environments)

        self._store.update(_mutate)
        return created

    def switch(self, environment_id: str) -> None:
        def _mutate(raw: Any) -> List[Dict[str, Any]]:
            environments = self._load(raw)
            if not any(env.id == environment_id for env in environments):
                raise EnvironmentNotFoundError(environment_id)
            for environment in environments:
                environment.active = environment.id == environment_id
            return self._dump(environments)

        self._store.update(_mutate)

    def update(
        self,
        environment_id: str,
        graph: Optional[GraphApiConfig] = None,
        smtp: Optional[SmtpConfig] = None,
        name: Optional[str] = None,
    ) -> EnvironmentProfile:
        result: Dict[str, EnvironmentProfile] = {}

        def _mutate(raw: Any) -> List[Dict[str, Any]]:
            environments = self._load(raw)
            for environment in environments:
                if environment.id != environment_id:
                    continue
                if graph is not None:
                    environment.graph = graph
                    environment.last_validation = ValidationResult()
                if smtp is not None:
                    environment.smtp = smtp
                if name:
                    environment.name = name.strip()
                result["environment"] = environment
                break
            else:
                raise EnvironmentNotFoundError(environment_id)
            return self._dump(environments)

        self._store.update(_mutate)
        return result["environment"]

    def delete(self, environment_id: str) -> None:
        def _mutate(raw: Any) -> List[Dict[str, Any]]:
            environments = self._load(raw)
            remaining = [env for env in environments if env.id != environment_id]
            if len(remaining) == len(environments):
                raise EnvironmentNotFoundError(environment_id)
            if remaining and not any(env.active for env in remaining):
                remaining[0].active = True
            return self._dump(remaining)

        self._store.update(_mutate)

    def record_validation(self, environment_id: Optional[str], result: ValidationResult) -> None:
        def _mutate(raw: Any) -> List[Dict[str, Any]]:
            environments = self._load(raw)
            target = next((env for env in environments if env.id == environment_id), None)
            target = target or next((env for env in environments if env.active), None)
            target = target or (environments[0] if environments else None)
            if target is not None:
                target.last_validation = result
            return self._dump(environments)

        self._store.update(_mutate)


class ProfileStore:
    """Notification profiles keyed by id."""

    def __init__(self, path: Path) -> None:
        self._store = JsonFileStore(path, list)

    def list(self) -> List[NotificationProfile]:
        profiles: List[NotificationProfile] = []
        for entry in self._store.read():
            if not isinstance(entry, dict):
                continue
            try:
                profiles.append(NotificationProfile.from_dict(entry))
            except ValueError as exc:
                logger.warning("Skipping unreadable profile %s: %s", entry.get("id"), exc)
        return profiles

    def get(self, profile_id: str) -> Optional[NotificationProfile]:
        return next((profile for profile in self.list() if profile.id == profile_id), None)

    def save(self, profile: NotificationProfile) -> NotificationProfile:
        saved = profile.validated()

        def _mutate(raw: Any) -> List[Dict[str, Any]]:
            entries = [entry for entry in (raw if isinstance(raw, list) else []) if isinstance(entry, dict)]
            for index, entry in enumerate(entries):
                if entry.get("id") == saved.id:
                    entries[index] = saved.to_dict()
                    break
            else:
                entries.append(saved.to_dict())
            return entries

        self._store.update(_mutate)
        return saved

    def delete(self, profile_id: str) -> bool:
        removed: Dict[str, bool] = {"value": False}

        def _mutate(raw: Any) -> List[Dict[str, Any]]:
            entries = [entry for entry in (raw if isinstance(raw, list) else []) if isinstance(entry, dict)]
            kept = [entry for entry in entries if entry.get("id") != profile_id]
            removed["value"] = len(kept) != len(entries)
            return kept

        self._store.update(_mutate)
        return removed["value"]


class HistoryStore:
    """Append-only audit log capped to the most recent ``limit`` entries."""

    def __init__(self, path: Path, limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        self._store = JsonFileStore(path, list)
        self.limit = limit

    def append(self, entry: AuditEntry) -> None:
        def _mutate(raw: Any) -> List[Dict[str, Any]]:
            entries = list(raw) if isinstance(raw, list) else []
            entries.append(entry.to_dict())
            return entries[-self.limit :]

        self._store.update(_mutate)

    def entries(self) -> List[AuditEntry]:
        """Entries in insertion order (oldest first)."""

        raw = self._store.read()
        return [AuditEntry.from_dict(entry) for entry in raw if isinstance(entry, dict)] if isinstance(raw, list) else []

    def newest_first(self) -> List[AuditEntry]:
        return list(reversed(self.entries()))


class QueueStore:
    """Scheduled-but-unsent deliveries plus the global pause flag."""

    def __init__(self, path: Path) -> None:
        self._store = JsonFileStore(path, dict)

    @staticmethod
    def _normalize(raw: Any) -> Dict[str, Any]:
        if isinstance(raw, list):
            return {"paused": False, "items": raw}
        if not isinstance(raw, dict):
            return {"paused": False, "items": []}
        items = raw.get("items")
        return {
            "paused": bool(raw.get("paused", False)),
            "items": items if isinstance(items, list) else [],
        }

    def list(self) -> List[QueueItem]:
        state = self._normalize(self._store.read())
        items = [QueueItem.from_dict(entry) for entry in state["items"] if isinstance(entry, dict)]
        items.sort(key=lambda item: item.scheduled_for)
        return items

    def is_paused(self) -> bool:
        return self._normalize(self._store.read())["paused"]

    def add(self, items: Iterable[QueueItem]) -> List[QueueItem]:
        added = list(items)

        def _mutate(raw: Any) -> Dict[str, Any]:
            state = self._normalize(raw)
            state["items"] = state["items"] + [item.to_dict() for item in added]
            return state

        self._store.update(_mutate)
        return added

    def cancel(self, item_id: str) -> bool:
        removed: Dict[str, bool] = {"value": False}

        def _mutate(raw: Any) -> Dict[str, Any]:
            state = self._normalize(raw)
            kept = [entry for entry in state["items"] if not (isinstance(entry, dict) and entry.get("id") == item_id)]
            removed["value"] = len(kept) != len(state["items"])
            state["items"] = kept
            return state

        self._store.update(_mutate)
        return removed["value"]

    def clear(self) -> int:
        cleared: Dict[str, int] = {"value": 0}

        def _mutate(raw: Any) -> Dict[str, Any]:
            state = self._normalize(raw)
            cleared["value"] = len(state["items"])
            state["items"] = []
            return state

        self._store.update(_mutate)
        return cleared["value"]

    def toggle_pause(self) -> bool:
        def _mutate(raw: Any) -> Dict[str, Any]:
            state = self._normalize(raw)
            state["paused"] = not state["paused"]
            return state

        return bool(self._store.update(_mutate)["paused"])


__all__ = [
    "DEFAULT_HISTORY_LIMIT",
    "EnvironmentNotFoundError",
    "EnvironmentStore",
    "HistoryStore",
    "JsonFileStore",
    "ProfileStore",
    "QueueStore",
    "read_json_safe",
    "write_json_atomic",
]
