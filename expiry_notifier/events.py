"""Log event channel and logging setup."""
from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any, Callable, Deque, Dict, List, Optional

from .config import AppConfig


LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LogEvent:
    timestamp: str
    level: str
    message: str
    source: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "level": self.level,
            "message": self.message,
            "source": self.source,
        }


Subscriber = Callable[[LogEvent], None]


class EventChannel:
    """Fan-out of log events to any number of independent subscribers."""

    def __init__(self) -> None:
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback``; the returned callable unsubscribes it."""

        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, event: LogEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            try:
                subscriber(event)
            except Exception:  # pragma: no cover
                logger.debug("Event subscriber %r failed", subscriber, exc_info=True)


class RecentEvents:
    """Bounded buffer subscriber backing the console view."""

    def __init__(self, size: int = 500) -> None:
        self._events: Deque[LogEvent] = deque(maxlen=size)
        self._lock = threading.Lock()

    def __call__(self, event: LogEvent) -> None:
        with self._lock:
            self._events.append(event)

    def snapshot(self, limit: Optional[int] = None) -> List[LogEvent]:
        with self._lock:
            events = list(self._events)
        return events[-limit:] if limit else events


class ChannelHandler(logging.Handler):
    """Bridge standard logging records onto an :class:`EventChannel`."""

    def __init__(self, channel: EventChannel, level: int = logging.NOTSET) -> None:
        super().__init__(level)
        self.channel = channel

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = LogEvent(
                timestamp=datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
                level=record.levelname.lower(),
                message=record.getMessage(),
                source=record.name,
            )
        except Exception:
            self.handleError(record)
            return
        self.channel.publish(event)


def configure_logging(config: AppConfig, channel: EventChannel) -> List[logging.Handler]:
    """Attach console, rotating file and channel handlers to the package logger."""

    package_logger = logging.getLogger("expiry_notifier")
    package_logger.setLevel(getattr(logging, config.logging.level, logging.INFO))
    for handler in list(package_logger.handlers):
        if getattr(handler, "_expiry_notifier", False):
            package_logger.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT)
    handlers: List[logging.Handler] = []

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    handlers.append(console)

    logs_dir = config.storage.logs_dir
    try:
        logs_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            logs_dir / config.logging.file_name,
            maxBytes=config.logging.max_bytes,
            backupCount=config.logging.backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)
    except OSError as exc:
        logger.warning("File logging disabled, cannot write to %s: %s", logs_dir, exc)

    handlers.append(ChannelHandler(channel))

    for handler in handlers:
        handler._expiry_notifier = True  # type: ignore[attr-defined]
        package_logger.addHandler(handler)
    return handlers


__all__ = [
    "ChannelHandler",
    "EventChannel",
    "LogEvent",
    "RecentEvents",
    "configure_logging",
]
