"""User-facing notifications raised by the tracker."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Notification:
    title: str
    message: str
    created_at: datetime


class Notifier(Protocol):
    def notify(self, title: str, message: str) -> None: ...


class LogNotifier:
    """Logs notifications and keeps the most recent ones for the UI to poll."""

    def __init__(self, history: int = 20) -> None:
        self._recent: deque[Notification] = deque(maxlen=history)

    def notify(self, title: str, message: str) -> None:
        logger.info("%s: %s", title, message)
        self._recent.append(Notification(title, message, datetime.now()))

    def recent(self) -> list[Notification]:
        return list(self._recent)
