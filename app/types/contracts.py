"""Pydantic models for reminder/summary tool arguments and results.

These classes are framework-agnostic so they can be reused by workers, the
HTTP surface and tests without pulling in the database layer.
"""

from __future__ import annotations

from datetime import date as calendar_date
from typing import Any, List, Literal, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import AwareDatetime, BaseModel, Field, field_validator, model_validator

Frequency = Literal["DAILY", "WEEKLY", "MONTHLY", "CRON"]
Weekday = Literal["MO", "TU", "WE", "TH", "FR", "SA", "SU"]
Grain = Literal["day", "week", "month", "year"]
ReminderStatus = Literal["scheduled", "sent", "cancelled", "failed"]

WEEKDAYS: tuple[str, ...] = ("MO", "TU", "WE", "TH", "FR", "SA", "SU")
GRAINS: tuple[str, ...] = ("day", "week", "month", "year")


def validate_timezone(name: str) -> str:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"timezone '{name}' is not a valid Olson timezone string")
    return name


class RepeatRule(BaseModel):
    """How a reminder recurs after it fires."""

    freq: Frequency
    interval: int = Field(default=1, ge=1)
    by_day: List[Weekday] = Field(default_factory=list)
    cron: Optional[str] = None
    until: Optional[AwareDatetime] = None
    count: Optional[int] = Field(default=None, ge=1)

    @field_validator("freq", mode="before")
    def _upper_freq(cls, v):  # noqa: N805
        return v.upper() if isinstance(v, str) else v

    @field_validator("by_day", mode="before")
    def _normalise_days(cls, v):  # noqa: N805
        if v is None:
            return []
        days = [d.upper() if isinstance(d, str) else d for d in v]
        return sorted(set(days), key=lambda d: WEEKDAYS.index(d) if d in WEEKDAYS else 99)

    @model_validator(mode="after")
    def _cron_expression(self):
        if self.freq == "CRON":
            if not self.cron or not self.cron.strip():
                raise ValueError("a cron expression is required when freq is CRON")
        else:
            self.cron = None
        return self


class CreateReminderArgs(BaseModel):
    topic_id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    due: AwareDatetime
    description: Optional[str] = None
    timezone: Optional[str] = None
    repeat: Optional[RepeatRule] = None

    @field_validator("title")
    def _strip_title(cls, v: str):  # noqa: N805
        v = v.strip()
        if not v:
            raise ValueError("title must not be blank")
        return v

    @field_validator("timezone")
    def _validate_tz(cls, v):  # noqa: N805
        return validate_timezone(v) if v else None


class DateRange(BaseModel):
    start: Optional[AwareDatetime] = None
    end: Optional[AwareDatetime] = None

    @model_validator(mode="after")
    def _ordered(self):
        if self.start and self.end and self.end < self.start:
            raise ValueError("range end must not be before range start")
        return self


class ListRemindersArgs(BaseModel):
    topic_id: str = Field(min_length=1)
    range: Optional[DateRange] = None


class CancelReminderArgs(BaseModel):
    reminder_id: str = Field(min_length=1)


class GetSummaryArgs(BaseModel):
    topic_id: str = Field(min_length=1)
    grain: Grain
    # A calendar date is read in the topic's timezone; an instant is converted to it.
    date: Optional[Union[AwareDatetime, calendar_date]] = None


class AppendNoteArgs(BaseModel):
    topic_id: str = Field(min_length=1)
    text: str = Field(min_length=1)
    tags: List[str] = Field(default_factory=list)

    @field_validator("text")
    def _strip_text(cls, v: str):  # noqa: N805
        v = v.strip()
        if not v:
            raise ValueError("note text must not be blank")
        return v

    @field_validator("tags", mode="before")
    def _clean_tags(cls, v):  # noqa: N805
        if v is None:
            return []
        return [t.strip() for t in v if isinstance(t, str) and t.strip()]


class GetContextWindowArgs(BaseModel):
    topic_id: str = Field(min_length=1)
    limit: int = Field(default=20, ge=1, le=100)


class ToolContext(BaseModel):
    """Who invoked a tool and where the answer belongs."""

    chat_id: int
    thread_id: Optional[int] = None
    user_id: Optional[int] = None


class ToolResult(BaseModel):
    success: bool
    result: Any = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, result: Any) -> "ToolResult":
        return cls(success=True, result=result)

    @classmethod
    def fail(cls, error: str) -> "ToolResult":
        return cls(success=False, error=error)

    def envelope(self) -> dict:
        if self.success:
            return {"success": True, "result": self.result}
        return {"success": False, "error": self.error}
