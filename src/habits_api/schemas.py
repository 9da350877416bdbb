from __future__ import annotations

from datetime import date, datetime
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .recurrence import build_rrule, validate_rrule
from .utils import ensure_not_past, format_date

DayInput = Union[date, str]


def _validate_name(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    s = v.strip()
    if not (1 <= len(s) <= 200):
        raise ValueError("name length must be between 1 and 200 characters")
    return s


# PUBLIC_INTERFACE
class TodoCreate(BaseModel):
    """
    Schema for creating a one-off todo on a given day.
    """

    model_config = ConfigDict(json_schema_extra={"example": {"name": "Buy groceries", "date": "2099-02-01"}})

    name: str = Field(..., description="Todo name", min_length=1, max_length=200)
    date: str = Field(..., description="Day of the todo as YYYY-MM-DD; today or later")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return _validate_name(v)  # type: ignore[return-value]

    @field_validator("date", mode="before")
    @classmethod
    def validate_date(cls, v: DayInput) -> str:
        return ensure_not_past(v, "tasks")


# PUBLIC_INTERFACE
class TodoUpdate(BaseModel):
    """
    Schema for editing a single todo instance ("edit this instance").
    All fields are optional; only provided fields will be updated.
    """

    model_config = ConfigDict(json_schema_extra={"example": {"name": "Buy groceries and milk", "completed": True}})

    name: Optional[str] = Field(default=None, description="Todo name", min_length=1, max_length=200)
    date: Optional[str] = Field(default=None, description="Move the todo to this day (YYYY-MM-DD)")
    completed: Optional[bool] = Field(default=None, description="Completion status flag")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: Optional[str]) -> Optional[str]:
        return _validate_name(v)

    @field_validator("date", mode="before")
    @classmethod
    def validate_date(cls, v: Optional[DayInput]) -> Optional[str]:
        return None if v is None else ensure_not_past(v, "tasks")


# PUBLIC_INTERFACE
class TodoOut(BaseModel):
    """
    Schema returned by the API for a todo instance.
    """

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "id": "a1b2c3_2025-01-06",
                "name": "Stretch",
                "date": "2025-01-06",
                "completed": False,
                "is_recurring": True,
                "recurrence_id": "a1b2c3",
                "created_at": "2025-01-01T10:15:30.123456+00:00",
                "edited_at": None,
            }
        }
    )

    id: str = Field(..., description="Instance identifier")
    name: str = Field(..., description="Todo name")
    date: str = Field(..., description="Day of the todo (YYYY-MM-DD)")
    completed: bool = Field(..., description="Completion status flag")
    is_recurring: bool = Field(..., description="Generated from a recurrence pattern")
    recurrence_id: Optional[str] = Field(default=None, description="Owning recurrence pattern id")
    created_at: datetime = Field(..., description="Creation timestamp")
    edited_at: Optional[datetime] = Field(default=None, description="Last edit timestamp")


# PUBLIC_INTERFACE
class RecurrenceForm(BaseModel):
    """
    Recurrence expressed as form fields instead of a raw rule string.
    """

    frequency: Literal["DAILY", "WEEKLY", "MONTHLY", "YEARLY"]
    interval: int = Field(default=1, ge=1, description="Step in units of the frequency")
    weekdays: Optional[List[str]] = Field(default=None, description="WEEKLY: weekday codes, e.g. ['MO','WE']")
    month_day: Optional[int] = Field(default=None, description="MONTHLY/YEARLY: day of month (1..31)")
    week_position: Optional[int] = Field(default=None, description="MONTHLY: 1..4, or -1 for last")
    weekday: Optional[str] = Field(default=None, description="MONTHLY with week_position: weekday code")
    month: Optional[int] = Field(default=None, description="YEARLY: month (1..12)")

    def to_rrule(self) -> str:
        return build_rrule(
            self.frequency,
            interval=self.interval,
            weekdays=self.weekdays,
            month_day=self.month_day,
            week_position=self.week_position,
            weekday=self.weekday,
            month=self.month,
        )


# PUBLIC_INTERFACE
class RecurrenceCreate(BaseModel):
    """
    Schema for creating a recurring todo. Give either ``rrule`` or ``form``.
    """

    model_config = ConfigDict(
        json_schema_extra={
            "example": {"name": "Stretch", "rrule": "FREQ=WEEKLY;BYDAY=MO,WE,FR", "starts_on": "2099-01-01"}
        }
    )

    name: str = Field(..., description="Habit name", min_length=1, max_length=200)
    rrule: Optional[str] = Field(default=None, description="Recurrence rule, e.g. FREQ=WEEKLY;BYDAY=MO")
    form: Optional[RecurrenceForm] = Field(default=None, description="Recurrence as form fields")
    starts_on: Optional[str] = Field(default=None, description="First day (YYYY-MM-DD); defaults to today")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return _validate_name(v)  # type: ignore[return-value]

    @field_validator("rrule")
    @classmethod
    def validate_rule(cls, v: Optional[str]) -> Optional[str]:
        return None if v is None else validate_rrule(v)

    @field_validator("starts_on", mode="before")
    @classmethod
    def validate_starts_on(cls, v: Optional[DayInput]) -> Optional[str]:
        return None if v is None else ensure_not_past(v, "start date")

    @model_validator(mode="after")
    def resolve_rule(self) -> "RecurrenceCreate":
        if (self.rrule is None) == (self.form is None):
            raise ValueError("provide exactly one of rrule or form")
        if self.form is not None:
            self.rrule = self.form.to_rrule()
        return self


# PUBLIC_INTERFACE
class RecurrenceUpdate(BaseModel):
    """
    Schema for editing a recurring series. Instances dated on or after
    ``from_date`` (default today) that are not completed follow the change.
    """

    model_config = ConfigDict(
        json_schema_extra={"example": {"name": "Morning stretch", "rrule": "FREQ=DAILY", "from_date": "2099-01-10"}}
    )

    name: Optional[str] = Field(default=None, description="Habit name", min_length=1, max_length=200)
    rrule: Optional[str] = Field(default=None, description="New recurrence rule")
    starts_on: Optional[str] = Field(default=None, description="New first day (YYYY-MM-DD)")
    from_date: Optional[str] = Field(default=None, description="Apply to this day and later (YYYY-MM-DD)")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: Optional[str]) -> Optional[str]:
        return _validate_name(v)

    @field_validator("rrule")
    @classmethod
    def validate_rule(cls, v: Optional[str]) -> Optional[str]:
        return None if v is None else validate_rrule(v)

    @field_validator("starts_on", mode="before")
    @classmethod
    def validate_starts_on(cls, v: Optional[DayInput]) -> Optional[str]:
        return None if v is None else ensure_not_past(v, "start date")

    @field_validator("from_date", mode="before")
    @classmethod
    def validate_from_date(cls, v: Optional[DayInput]) -> Optional[str]:
        return None if v is None else format_date(v)


# PUBLIC_INTERFACE
class RecurrenceOut(BaseModel):
    """
    Schema returned by the API for a recurrence pattern.
    """

    id: str = Field(..., description="Pattern identifier")
    name: str = Field(..., description="Habit name")
    rrule: str = Field(..., description="Recurrence rule")
    starts_on: Optional[str] = Field(default=None, description="First day; absent on legacy patterns")
    created_at: datetime = Field(..., description="Creation timestamp")
    edited_at: Optional[datetime] = Field(default=None, description="Last edit timestamp")


class Window(BaseModel):
    """Inclusive date window; ``end`` defaults to the single day ``start``."""

    start: str = Field(..., description="First day (YYYY-MM-DD)")
    end: Optional[str] = Field(default=None, description="Last day (YYYY-MM-DD)")

    @field_validator("start", "end", mode="before")
    @classmethod
    def validate_day(cls, v: Optional[DayInput]) -> Optional[str]:
        return None if v is None else format_date(v)

    @model_validator(mode="after")
    def check_order(self) -> "Window":
        if self.end is not None and self.end < self.start:
            raise ValueError("end must not be before start")
        return self


class PatternRefreshOut(BaseModel):
    pattern_id: str
    name: str
    created: int


class RefreshOut(BaseModel):
    created: int = Field(..., description="Instances created across all patterns")
    patterns: List[PatternRefreshOut]


class OrphanGroupOut(BaseModel):
    recurrence_id: str
    count: int
    instances: List[TodoOut]


class OrphanReportOut(BaseModel):
    total_recurring: int = Field(..., description="Recurring instances inspected")
    valid_pattern_count: int = Field(..., description="Existing recurrence patterns")
    orphan_count: int
    groups: List[OrphanGroupOut]


class OrphanFixRequest(BaseModel):
    action: Literal["mark-non-recurring", "delete"] = "mark-non-recurring"


class OrphanFixOut(BaseModel):
    action: str
    affected: int


class DailyStatOut(BaseModel):
    date: str
    total: int
    completed: int


class RecurringStatOut(BaseModel):
    recurrence_id: str
    name: str
    total: int
    completed: int
    completion_rate: float = Field(..., description="Completed share in percent")


class ClientConfigOut(BaseModel):
    today: str = Field(..., description="Server local date")
    navigation_months_ahead: int = Field(..., description="Months past the current one the UI may browse")
    last_navigable_month: str = Field(..., description="First day of the last month the UI may show")
