"""Notification channel and structured diagnostics.

Presentation code subscribes to :class:`NotificationChannel` to show toasts.
:class:`Diagnostics` records every degrade path (hash fallback, secret
cipher failures, dropped writes, snapshot failures, retention delete
failures) so callers and tests can observe them without scraping logs.
"""
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from .schemas import Notification, NotificationType

logger = logging.getLogger(__name__)

NotificationListener = Callable[[Notification], None]


@dataclass
class DiagnosticEvent:
    code: str
    message: str
    detail: dict[str, Any] = field(default_factory=dict)
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class Diagnostics:
    def __init__(self, max_events: int = 500) -> None:
        self.events: deque[DiagnosticEvent] = deque(maxlen=max_events)

    def record(self, code: str, message: str, **detail: Any) -> DiagnosticEvent:
        event = DiagnosticEvent(code=code, message=message, detail=detail)
        self.events.append(event)
        logger.warning("%s: %s %s", code, message, detail or "")
        return event

    def codes(self) -> list[str]:
        return [event.code for event in self.events]

    def clear(self) -> None:
        self.events.clear()


class NotificationChannel:
    def __init__(self, history_size: int = 100) -> None:
        self.history: deque[Notification] = deque(maxlen=history_size)
        self._listeners: list[NotificationListener] = []

    def subscribe(self, listener: NotificationListener) -> None:
        self._listeners.append(listener)

    def emit(
        self,
        title: str,
        message: str,
        type: NotificationType,
        silent: bool = False,
        duration: Optional[int] = None,
    ) -> Notification:
        notification = Notification(title=title, message=message, type=type, silent=silent, duration=duration)
        self.history.append(notification)
        for listener in list(self._listeners):
            try:
                listener(notification)
            except Exception:
                logger.exception("notification listener failed")
        return notification

    def drain(self) -> list[Notification]:
        items = list(self.history)
        self.history.clear()
        return items
