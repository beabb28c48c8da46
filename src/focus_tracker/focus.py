"""Timed focus sessions that force blocking on."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from .blocking import BlockingPolicyEngine
from .config import MAX_FOCUS_MINUTES, MIN_FOCUS_MINUTES
from .errors import StorageError, ValidationError
from .models import FocusSession
from .notifications import Notifier
from .scheduler import Clock
from .store import FOCUS_SESSION, KeyValueStore

logger = logging.getLogger(__name__)


class FocusSessionMachine:
    """Idle / Active(end_time) state machine.

    Every transition updates the blocking engine, persists the session and
    notifies the user. Stopping or expiring only recomputes block rules when
    the manual toggle is off; with manual blocking on, the rule set is the
    same either way.
    """

    def __init__(
        self,
        engine: BlockingPolicyEngine,
        store: KeyValueStore,
        notifier: Notifier,
        *,
        clock: Clock = datetime.now,
    ) -> None:
        self._engine = engine
        self._store = store
        self._notifier = notifier
        self._clock = clock
        self._session: Optional[FocusSession] = None

    @property
    def session(self) -> Optional[FocusSession]:
        return self._session

    @property
    def active(self) -> bool:
        return self._session is not None and self._session.active

    def remaining(self) -> timedelta:
        if self._session is None:
            return timedelta(0)
        return self._session.remaining(self._clock())

    def restore(self, session: Optional[FocusSession]) -> None:
        """Adopt a persisted session at startup without side effects."""
        self._session = session if session is not None and session.active else None
        self._engine.set_focus_session(self._session)

    async def start(self, duration_minutes: int) -> FocusSession:
        if isinstance(duration_minutes, bool) or not isinstance(duration_minutes, int):
            raise ValidationError("focus duration must be a whole number of minutes")
        if not MIN_FOCUS_MINUTES <= duration_minutes <= MAX_FOCUS_MINUTES:
            raise ValidationError(
                f"focus duration must be between {MIN_FOCUS_MINUTES} and "
                f"{MAX_FOCUS_MINUTES} minutes, got {duration_minutes}"
            )
        now = self._clock()
        if self.active:
            logger.info("Replacing running focus session ending %s", self._session.end_time)
        self._session = FocusSession(
            active=True,
            started_at=now,
            end_time=now + timedelta(minutes=duration_minutes),
            duration_minutes=duration_minutes,
        )
        self._engine.set_focus_session(self._session)
        await self._persist()
        await self._engine.recompute_rules()
        self._notifier.notify(
            "Focus Session Started", "Distracting sites are now blocked. Stay focused!"
        )
        return self._session

    async def stop(self) -> bool:
        """End the running session; returns False when nothing was running."""
        if not self.active:
            return False
        ended = self._session
        self._session = None
        self._engine.set_focus_session(None)
        await self._persist()
        if not self._engine.state.manual_enabled:
            await self._engine.recompute_rules()
        logger.info("Focus session started %s ended", ended.started_at)
        self._notifier.notify("Focus Session Ended", "Great job staying focused!")
        return True

    async def tick(self) -> bool:
        """Expire the session once its end time has passed."""
        if self.active and self._clock() >= self._session.end_time:
            return await self.stop()
        return False

    async def _persist(self) -> None:
        value = self._session.to_dict() if self._session else None
        try:
            await self._store.set(FOCUS_SESSION, value)
        except StorageError as exc:
            logger.warning("Could not persist focus session: %s", exc)
