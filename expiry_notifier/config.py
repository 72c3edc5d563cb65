"""Configuration loading utilities for the password expiry notifier."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


DEFAULT_CONFIG_PATH = Path("config/settings.yaml")
ENV_CONFIG_PATH = "EXPIRY_CONFIG"
ENV_PREFIX = "EXPIRY_"
ENV_PORT = "PORT"

CADENCE_MATCH_MODES = ("exact", "catch_up")


@dataclass
class ServerConfig:
    """Settings for the HTTP listener."""

    host: str = "0.0.0.0"
    port: int = 3000
    debug: bool = False


@dataclass
class StorageConfig:
    """Filesystem locations used by the application."""

    data_root: Path = Path("data")

    @property
    def environments_file(self) -> Path:
        return self.data_root / "config" / "environments.json"

    @property
    def profiles_file(self) -> Path:
        return self.data_root / "config" / "profiles.json"

    @property
    def history_file(self) -> Path:
        return self.data_root / "state" / "history.json"

    @property
    def queue_file(self) -> Path:
        return self.data_root / "state" / "queue.json"

    @property
    def logs_dir(self) -> Path:
        return self.data_root / "logs"


@dataclass
class GraphConfig:
    """Transport settings for Microsoft Graph calls (credentials live per environment)."""

    request_timeout: float = 15.0
    max_retries: int = 5
    default_retry_after: int = 2


@dataclass
class DeliveryConfig:
    """Settings for notification runs."""

    message_interval_seconds: float = 2.0
    history_limit: int = 2000
    cadence_match: str = "exact"
    cadence_aware: bool = True
    critical_threshold_days: int = 14


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file_name: str = "system.log"
    max_bytes: int = 5 * 1024 * 1024
    backup_count: int = 3
    event_buffer_size: int = 500


@dataclass
class AppConfig:
    """Aggregate configuration for the application."""

    server: ServerConfig = field(default_factory=ServerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    graph: GraphConfig = field(default_factory=GraphConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


class ConfigurationError(RuntimeError):
    """Raised when the configuration file or environment variables are invalid."""


def _load_from_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as file:
            payload = yaml.safe_load(file) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Configuration file '{path}' is not valid YAML: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigurationError(f"Configuration file '{path}' must contain a mapping.")
    return payload


def _apply_environment_overrides(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Override configuration values with environment variables."""

    overrides: Dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX) or key == ENV_CONFIG_PATH:
            continue
        path = key[len(ENV_PREFIX) :].lower().split("__")
        if len(path) < 2:
            continue
        node = overrides
        for part in path[:-1]:
            node = node.setdefault(part, {})
        node[path[-1]] = value

    port = os.environ.get(ENV_PORT)
    if port:
        overrides.setdefault("server", {})["port"] = port

    if overrides:
        config_dict = _deep_merge(config_dict, overrides)
    return config_dict


def _deep_merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            result[key] = _deep_merge(base[key], value)
        else:
            result[key] = value
    return result


def _resolve_config_path(path: Optional[Path] = None) -> Path:
    if path is not None:
        return Path(path)
    env_path = os.environ.get(ENV_CONFIG_PATH)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value.strip())
    return int(value)


def _to_float(value: Any) -> float:
    if isinstance(value, str):
        return float(value.strip())
    return float(value)


def _section(config_dict: Dict[str, Any], key: str) -> Dict[str, Any]:
    section = config_dict.get(key) or {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"Configuration section '{key}' must be a mapping.")
    return section


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load application configuration from disk and environment variables."""

    config_dict = _apply_environment_overrides(_load_from_file(_resolve_config_path(path)))

    server_section = _section(config_dict, "server")
    storage_section = _section(config_dict, "storage")
    graph_section = _section(config_dict, "graph")
    delivery_section = _section(config_dict, "delivery")
    logging_section = _section(config_dict, "logging")

    defaults = AppConfig()
    try:
        server = ServerConfig(
            host=str(server_section.get("host", defaults.server.host)),
            port=_to_int(server_section.get("port", defaults.server.port)),
            debug=_to_bool(server_section.get("debug", defaults.server.debug)),
        )
        storage = StorageConfig(
            data_root=Path(storage_section.get("data_root", defaults.storage.data_root)),
        )
        graph = GraphConfig(
            request_timeout=_to_float(
                graph_section.get("request_timeout", defaults.graph.request_timeout)
            ),
            max_retries=_to_int(graph_section.get("max_retries", defaults.graph.max_retries)),
            default_retry_after=_to_int(
                graph_section.get("default_retry_after", defaults.graph.default_retry_after)
            ),
        )
        delivery = DeliveryConfig(
            message_interval_seconds=_to_float(
                delivery_section.get(
                    "message_interval_seconds", defaults.delivery.message_interval_seconds
                )
            ),
            history_limit=_to_int(
                delivery_section.get("history_limit", defaults.delivery.history_limit)
            ),
            cadence_match=str(
                delivery_section.get("cadence_match", defaults.delivery.cadence_match)
            ).strip().lower(),
            cadence_aware=_to_bool(
                delivery_section.get("cadence_aware", defaults.delivery.cadence_aware)
            ),
            critical_threshold_days=_to_int(
                delivery_section.get(
                    "critical_threshold_days", defaults.delivery.critical_threshold_days
                )
            ),
        )
        log_config = LoggingConfig(
            level=str(logging_section.get("level", defaults.logging.level)).upper(),
            file_name=str(logging_section.get("file_name", defaults.logging.file_name)),
            max_bytes=_to_int(logging_section.get("max_bytes", defaults.logging.max_bytes)),
            backup_count=_to_int(
                logging_section.get("backup_count", defaults.logging.backup_count)
            ),
            event_buffer_size=_to_int(
                logging_section.get("event_buffer_size", defaults.logging.event_buffer_size)
            ),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid configuration value: {exc}") from exc

    if delivery.cadence_match not in CADENCE_MATCH_MODES:
        raise ConfigurationError(
            f"delivery.cadence_match must be one of {', '.join(CADENCE_MATCH_MODES)}; "
            f"got '{delivery.cadence_match}'."
        )
    if delivery.history_limit < 1:
        raise ConfigurationError("delivery.history_limit must be at least 1.")
    if delivery.message_interval_seconds < 0:
        raise ConfigurationError("delivery.message_interval_seconds cannot be negative.")

    return AppConfig(
        server=server,
        storage=storage,
        graph=graph,
        delivery=delivery,
        logging=log_config,
    )


__all__ = [
    "AppConfig",
    "CADENCE_MATCH_MODES",
    "ConfigurationError",
    "DeliveryConfig",
    "GraphConfig",
    "LoggingConfig",
    "ServerConfig",
    "StorageConfig",
    "load_config",
]
