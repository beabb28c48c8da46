"""Serializable state document used for export and import."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator

from .config import MAX_FOCUS_MINUTES, MIN_FOCUS_MINUTES
from .errors import ValidationError
from .models import FocusSession


class FocusSessionPayload(BaseModel):
    active: bool = True
    started_at: Optional[datetime] = Field(default=None, alias="startedAt")
    end_time: datetime = Field(alias="endTime")
    duration_minutes: int = Field(
        alias="durationMinutes", ge=MIN_FOCUS_MINUTES, le=MAX_FOCUS_MINUTES
    )

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_session(self) -> FocusSession:
        started = self.started_at or self.end_time - timedelta(minutes=self.duration_minutes)
        return FocusSession(
            active=self.active,
            started_at=_naive(started),
            end_time=_naive(self.end_time),
            duration_minutes=self.duration_minutes,
        )


class StateDocument(BaseModel):
    """The whole local state as one JSON document."""

    time_ledger: dict[str, dict[str, float]] = Field(default_factory=dict, alias="timeLedger")
    blocked_sites: list[str] = Field(default_factory=list, alias="blockedSites")
    productive_sites: list[str] = Field(default_factory=list, alias="productiveSites")
    distracting_sites: list[str] = Field(default_factory=list, alias="distractingSites")
    preferences_updated_at: Optional[datetime] = Field(default=None, alias="preferencesUpdatedAt")
    blocking_enabled: bool = Field(default=False, alias="blockingEnabled")
    focus_session: Optional[FocusSessionPayload] = Field(default=None, alias="focusSession")
    last_sync: Optional[datetime] = Field(default=None, alias="lastSync")
    daily_reports: dict[str, dict[str, Any]] = Field(default_factory=dict, alias="dailyReports")
    export_date: Optional[datetime] = Field(default=None, alias="exportDate")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("time_ledger")
    @classmethod
    def _non_negative(cls, value: dict[str, dict[str, float]]) -> dict[str, dict[str, float]]:
        for day, sites in value.items():
            for domain, seconds in sites.items():
                if seconds < 0:
                    raise ValueError(f"negative time for {domain} on {day}")
                if not domain:
                    raise ValueError(f"empty domain on {day}")
        return value

    @field_validator("blocked_sites", "productive_sites", "distracting_sites")
    @classmethod
    def _no_blank_sites(cls, value: list[str]) -> list[str]:
        cleaned = [site.strip() for site in value]
        if any(not site for site in cleaned):
            raise ValueError("site lists must not contain empty entries")
        return cleaned

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)


def parse_state_document(data: Any) -> StateDocument:
    """Validate an imported document; raises ``ValidationError`` on bad input."""
    try:
        if isinstance(data, (str, bytes)):
            return StateDocument.model_validate_json(data)
        return StateDocument.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(f"invalid state document: {exc}") from exc


def _naive(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value
