"""Domain models for tracked browsing activity."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Optional

from .config import DEFAULT_DISTRACTING_SITES, DEFAULT_PRODUCTIVE_SITES

DATE_FMT = "%Y-%m-%d"


def date_key(value: datetime | date) -> str:
    """Return the ledger key for the calendar day containing ``value``."""
    return value.strftime(DATE_FMT)


def parse_date_key(value: str) -> date:
    return datetime.strptime(value, DATE_FMT).date()


class Category(str, enum.Enum):
    PRODUCTIVE = "productive"
    DISTRACTING = "distracting"
    NEUTRAL = "neutral"


class Decision(str, enum.Enum):
    ALLOW = "allow"
    BLOCK = "block"


class SiteList(str, enum.Enum):
    """The three user-editable domain lists."""

    BLOCKED = "blocked"
    PRODUCTIVE = "productive"
    DISTRACTING = "distracting"


@dataclass(slots=True)
class ActivitySample:
    """Active time observed in one browsing context since the previous emit."""

    domain: str
    active_delta: float
    observed_at: datetime
    url: Optional[str] = None
    title: Optional[str] = None


@dataclass(slots=True)
class FocusSession:
    active: bool
    started_at: datetime
    end_time: datetime
    duration_minutes: int

    def remaining(self, now: datetime) -> timedelta:
        if not self.active:
            return timedelta(0)
        return max(self.end_time - now, timedelta(0))

    def to_dict(self) -> dict[str, Any]:
        return {
            "active": self.active,
            "startedAt": self.started_at.isoformat(),
            "endTime": self.end_time.isoformat(),
            "durationMinutes": self.duration_minutes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FocusSession":
        return cls(
            active=bool(data.get("active", False)),
            started_at=datetime.fromisoformat(data["startedAt"]),
            end_time=datetime.fromisoformat(data["endTime"]),
            duration_minutes=int(data["durationMinutes"]),
        )


@dataclass(slots=True)
class BlockingState:
    """Inputs that decide whether blocking is in force."""

    manual_enabled: bool = False
    focus_session: Optional[FocusSession] = None

    @property
    def active(self) -> bool:
        return self.manual_enabled or (
            self.focus_session is not None and self.focus_session.active
        )


@dataclass(slots=True, frozen=True)
class BlockRule:
    id: int
    domain: str
    redirect_url: str

    @property
    def url_filter(self) -> str:
        return f"*://*.{self.domain}/*"


@dataclass(slots=True, frozen=True)
class BlockRuleSet:
    """Rules installed for the current blocking state.

    Two rule sets are equal when they cover the same domains, whatever the
    order or ids of the individual rules.
    """

    rules: tuple[BlockRule, ...] = ()

    @property
    def domains(self) -> frozenset[str]:
        return frozenset(rule.domain for rule in self.rules)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, BlockRuleSet):
            return NotImplemented
        return self.domains == other.domains

    def __hash__(self) -> int:
        return hash(self.domains)

    def __len__(self) -> int:
        return len(self.rules)

    def __bool__(self) -> bool:
        return bool(self.rules)


@dataclass(slots=True)
class Preferences:
    productive_sites: list[str] = field(
        default_factory=lambda: list(DEFAULT_PRODUCTIVE_SITES)
    )
    distracting_sites: list[str] = field(
        default_factory=lambda: list(DEFAULT_DISTRACTING_SITES)
    )
    blocked_sites: list[str] = field(default_factory=list)
    updated_at: Optional[datetime] = None

    def sites(self, which: SiteList) -> list[str]:
        if which is SiteList.BLOCKED:
            return self.blocked_sites
        if which is SiteList.PRODUCTIVE:
            return self.productive_sites
        return self.distracting_sites

    def copy(self) -> "Preferences":
        return Preferences(
            productive_sites=list(self.productive_sites),
            distracting_sites=list(self.distracting_sites),
            blocked_sites=list(self.blocked_sites),
            updated_at=self.updated_at,
        )

    def same_lists(self, other: "Preferences") -> bool:
        return (
            self.productive_sites == other.productive_sites
            and self.distracting_sites == other.distracting_sites
            and self.blocked_sites == other.blocked_sites
        )


@dataclass(slots=True)
class TopSite:
    domain: str
    time_spent: float
    category: Category


@dataclass(slots=True)
class DailyReport:
    """Summary of one calendar day of tracked time."""

    date: str
    total_time: float
    productive_time: float
    distracting_time: float
    productivity_score: int
    site_data: dict[str, float]
    top_sites: list[TopSite] = field(default_factory=list)
    generated_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date,
            "totalTime": self.total_time,
            "productiveTime": self.productive_time,
            "distractingTime": self.distracting_time,
            "productivityScore": self.productivity_score,
            "siteData": dict(self.site_data),
            "topSites": [
                {
                    "domain": site.domain,
                    "timeSpent": site.time_spent,
                    "category": site.category.value,
                }
                for site in self.top_sites
            ],
            "generatedAt": self.generated_at.isoformat() if self.generated_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DailyReport":
        generated = data.get("generatedAt")
        return cls(
            date=data["date"],
            total_time=data["totalTime"],
            productive_time=data["productiveTime"],
            distracting_time=data["distractingTime"],
            productivity_score=int(data["productivityScore"]),
            site_data=dict(data.get("siteData") or {}),
            top_sites=[
                TopSite(
                    domain=item["domain"],
                    time_spent=item["timeSpent"],
                    category=Category(item["category"]),
                )
                for item in data.get("topSites") or []
            ],
            generated_at=datetime.fromisoformat(generated) if generated else None,
        )


@dataclass(slots=True)
class SyncStatus:
    last_sync: Optional[datetime] = None
    sync_needed: bool = True
    last_error: Optional[str] = None


@dataclass(slots=True)
class RemoteStatus:
    last_sync: Optional[datetime]
    latest_entry: Optional[datetime]
    latest_report: Optional[datetime]
    sync_needed: bool
