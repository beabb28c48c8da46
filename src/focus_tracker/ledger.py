"""Per-day, per-domain accumulated time."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from .errors import StorageError, ValidationError
from .store import TIME_LEDGER, KeyValueStore

logger = logging.getLogger(__name__)

LedgerData = dict[str, dict[str, float]]


class TimeLedger:
    """Authoritative record of time spent, persisted write-through.

    Values only ever grow: ``record`` adds, ``merge_max`` raises cells to the
    larger of two copies. A failed write keeps the in-memory value and marks
    the ledger dirty so the next mutation writes it again.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store
        self._data: LedgerData = {}
        self._dirty = False

    @property
    def dirty(self) -> bool:
        return self._dirty

    async def load(self) -> None:
        raw = await self._store.get(TIME_LEDGER, {}) or {}
        self._data = _coerce(raw)
        self._dirty = False
        logger.debug("Loaded ledger with %d day(s)", len(self._data))

    async def record(self, date: str, domain: str, delta: float) -> float:
        if not domain:
            raise ValidationError("domain must not be empty")
        if delta < 0:
            raise ValidationError(f"negative time delta {delta!r} for {domain}")
        day = self._data.setdefault(date, {})
        day[domain] = day.get(domain, 0) + delta
        await self._persist()
        return day[domain]

    def snapshot(self, date: str) -> dict[str, float]:
        return dict(self._data.get(date, {}))

    def dates(self) -> list[str]:
        return sorted(self._data)

    def total(self, date: str) -> float:
        return sum(self._data.get(date, {}).values())

    def to_document(self, dates: Optional[list[str]] = None) -> LedgerData:
        keys = self.dates() if dates is None else [d for d in dates if d in self._data]
        return {day: dict(self._data[day]) for day in keys}

    async def merge_max(self, other: Mapping[str, Mapping[str, float]]) -> list[str]:
        """Raise every cell to ``max(local, other)``; return the changed dates."""
        changed: list[str] = []
        for day, sites in other.items():
            local = self._data.setdefault(day, {})
            day_changed = False
            for domain, seconds in sites.items():
                if seconds > local.get(domain, 0):
                    local[domain] = seconds
                    day_changed = True
            if not local:
                del self._data[day]
            if day_changed:
                changed.append(day)
        if changed or self._dirty:
            await self._persist()
        return sorted(changed)

    async def replace(self, data: Mapping[str, Mapping[str, float]]) -> None:
        """Swap in a whole ledger; only used when importing a state document."""
        self._data = _coerce(data)
        await self._persist()

    async def flush(self) -> bool:
        if not self._dirty:
            return True
        await self._persist()
        return not self._dirty

    async def _persist(self) -> None:
        try:
            await self._store.set(TIME_LEDGER, self._data)
        except StorageError as exc:
            self._dirty = True
            logger.warning("Ledger write failed; will retry on next update: %s", exc)
        else:
            self._dirty = False


def _coerce(raw: Any) -> LedgerData:
    data: LedgerData = {}
    if not isinstance(raw, Mapping):
        return data
    for day, sites in raw.items():
        if not isinstance(sites, Mapping):
            continue
        cleaned = {
            str(domain): float(seconds)
            if not float(seconds).is_integer()
            else int(seconds)
            for domain, seconds in sites.items()
            if isinstance(seconds, (int, float)) and seconds >= 0
        }
        if cleaned:
            data[str(day)] = cleaned
    return data
