"""Typed view over the ``tickets.metadata_json`` attribute bag.

Keys are stored camelCase (the shape existing rows already have) and exposed
snake_case. Keys this module does not know about are carried through untouched.
All timestamps are naive UTC, like every other column in the store.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from common_core.errors import ValidationError


def _naive_utc(v: Optional[datetime]) -> Optional[datetime]:
    if v is not None and v.tzinfo is not None:
        return v.astimezone(timezone.utc).replace(tzinfo=None)
    return v


class _Bag(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class Comment(_Bag):
    text: str
    author_id: Optional[str] = Field(default=None, alias="authorId")
    author_role: Optional[str] = Field(default=None, alias="authorRole")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")

    @field_validator("created_at")
    @classmethod
    def to_naive_utc(cls, v):
        return _naive_utc(v)


class TatExtension(_Bag):
    previous_tat_date: Optional[datetime] = Field(default=None, alias="previousTATDate")
    new_tat_date: datetime = Field(alias="newTATDate")
    extended_at: datetime = Field(alias="extendedAt")
    extended_by: Optional[str] = Field(default=None, alias="extendedBy")
    reason: Optional[str] = None

    @field_validator("previous_tat_date", "new_tat_date", "extended_at")
    @classmethod
    def to_naive_utc(cls, v):
        return _naive_utc(v)


class TicketMetadata(_Bag):
    comments: list[Comment] = Field(default_factory=list)

    tat: Optional[str] = None
    tat_date: Optional[datetime] = Field(default=None, alias="tatDate")
    tat_set_at: Optional[datetime] = Field(default=None, alias="tatSetAt")
    tat_set_by: Optional[str] = Field(default=None, alias="tatSetBy")
    tat_pause_start: Optional[datetime] = Field(default=None, alias="tatPauseStart")
    # seconds of finished pause windows only
    tat_paused_duration: Optional[float] = Field(default=None, alias="tatPausedDuration", ge=0)
    tat_extensions: list[TatExtension] = Field(default_factory=list, alias="tatExtensions")

    resolved_at: Optional[datetime] = Field(default=None, alias="resolvedAt")
    reopened_at: Optional[datetime] = Field(default=None, alias="reopenedAt")
    reopen_count: int = Field(default=0, alias="reopenCount", ge=0)
    sla_breached_at: Optional[datetime] = Field(default=None, alias="slaBreachedAt")

    slack_message_ts: Optional[str] = Field(default=None, alias="slackMessageTs")
    slack_channel: Optional[str] = Field(default=None, alias="slackChannel")
    email_message_id: Optional[str] = Field(default=None, alias="emailMessageId")
    original_email_subject: Optional[str] = Field(default=None, alias="originalEmailSubject")

    @field_validator(
        "tat_date",
        "tat_set_at",
        "tat_pause_start",
        "resolved_at",
        "reopened_at",
        "sla_breached_at",
    )
    @classmethod
    def to_naive_utc(cls, v):
        return _naive_utc(v)

    @classmethod
    def parse(cls, raw: Any) -> "TicketMetadata":
        if raw is None:
            return cls()
        if not isinstance(raw, dict):
            raise ValidationError("INVALID_METADATA", "ticket metadata must be an object")
        try:
            return cls.model_validate(raw)
        except PydanticValidationError as e:
            raise ValidationError("INVALID_METADATA", str(e)) from e

    def dump(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @property
    def is_tat_paused(self) -> bool:
        return self.tat_pause_start is not None

    def pause_tat(self, now: datetime) -> None:
        if self.tat_pause_start is None:
            self.tat_pause_start = now
        if self.tat_paused_duration is None:
            self.tat_paused_duration = 0.0

    def resume_tat(self, now: datetime) -> None:
        if self.tat_pause_start is None:
            return
        elapsed = max(0.0, (now - self.tat_pause_start).total_seconds())
        self.tat_paused_duration = (self.tat_paused_duration or 0.0) + elapsed
        self.tat_pause_start = None

    def reset_tat_cycle(self) -> None:
        self.tat = None
        self.tat_date = None
        self.tat_set_at = None
        self.tat_set_by = None
        self.tat_pause_start = None
        self.tat_paused_duration = None

    def effective_tat_deadline(self, now: datetime) -> Optional[datetime]:
        """tatDate pushed back by every pause, including one still running."""
        if self.tat_date is None:
            return None
        paused = self.tat_paused_duration or 0.0
        if self.tat_pause_start is not None:
            paused += max(0.0, (now - self.tat_pause_start).total_seconds())
        return self.tat_date + timedelta(seconds=paused)
