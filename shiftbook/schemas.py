import datetime as dt
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, model_validator, validator

HHMM_PATTERN = r"^([01]?[0-9]|2[0-3]):[0-5][0-9]$"
COLOR_PATTERN = r"^#([A-Fa-f0-9]{6}|[A-Fa-f0-9]{3})$"
STATUS_PATTERN = "^(SCHEDULED|CONFIRMED|IN_PROGRESS|COMPLETED|CANCELLED|NO_SHOW)$"


def _minutes(value: str) -> int:
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


def _upper_status(value):
    if isinstance(value, str):
        return value.strip().upper()
    return value


class PageMeta(BaseModel):
    page: int
    limit: int
    total: int
    totalPages: int


# Team


class OrganizationOut(BaseModel):
    id: int
    slug: str
    name: str
    timezone: str


class OrganizationUpdate(BaseModel):
    timezone: str = Field(min_length=1, max_length=64)


class MemberCreate(BaseModel):
    name: str = Field(min_length=2, max_length=120)
    external_id: str | None = Field(default=None, max_length=120)


class MemberUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=2, max_length=120)
    is_active: bool | None = None


class MemberIdentitySync(BaseModel):
    external_id: str = Field(min_length=1, max_length=120)
    name: str = Field(min_length=2, max_length=120)
    is_active: bool = True


class MemberOut(BaseModel):
    id: int
    name: str
    external_id: str | None = None
    is_active: bool
    service_ids: list[int] = []


class ServiceCreate(BaseModel):
    name: str = Field(min_length=2, max_length=120)
    duration_minutes: int = Field(ge=1, le=480)
    price: float = Field(default=0, ge=0)
    category_id: int | None = None


class ServiceOut(BaseModel):
    id: int
    name: str
    duration_minutes: int
    price: float
    category_id: int | None = None
    is_active: bool


class MemberServiceAssign(BaseModel):
    service_id: int = Field(gt=0)


class ClientCreate(BaseModel):
    name: str = Field(min_length=2, max_length=120)
    phone: str | None = Field(default=None, min_length=7, max_length=40)


class ClientOut(BaseModel):
    id: int
    name: str
    phone: str | None = None


# Appointments


class AppointmentCreate(BaseModel):
    member_id: int = Field(gt=0)
    service_id: int = Field(gt=0)
    start_time: datetime
    client_id: int | None = Field(default=None, gt=0)
    walk_in_client_name: str | None = Field(default=None, min_length=1, max_length=100)
    walk_in_client_phone: str | None = Field(default=None, max_length=20)
    duration_minutes: int | None = Field(default=None, ge=1, le=480)
    notes: str | None = Field(default=None, max_length=500)
    internal_notes: str | None = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def _validate_walk_in(self):
        has_client = self.client_id is not None
        has_walk_in = bool((self.walk_in_client_name or "").strip())
        if has_client == has_walk_in:
            raise ValueError("Provide exactly one of client_id or walk_in_client_name")
        if has_client and (self.walk_in_client_phone or self.duration_minutes is not None):
            raise ValueError("Walk-in fields are only allowed for walk-in appointments")
        return self


class AppointmentUpdate(BaseModel):
    start_time: datetime | None = None
    status: str | None = Field(default=None, pattern=STATUS_PATTERN)
    notes: str | None = Field(default=None, max_length=500)
    internal_notes: str | None = Field(default=None, max_length=500)
    cancellation_reason: str | None = Field(default=None, max_length=200)

    @validator("status", pre=True)
    @classmethod
    def normalize_status(cls, value):
        return _upper_status(value)


class AppointmentReschedule(BaseModel):
    start_time: datetime
    notes: str | None = Field(default=None, max_length=500)


class AppointmentCancel(BaseModel):
    reason: str = Field(min_length=1, max_length=200)


class AppointmentConvert(BaseModel):
    client_id: int = Field(gt=0)


class AppointmentOut(BaseModel):
    id: int
    member_id: int
    service_id: int
    client_id: int | None = None
    walk_in_client_name: str | None = None
    walk_in_client_phone: str | None = None
    is_walk_in: bool
    start_time: datetime
    end_time: datetime
    duration_minutes: int
    price: float
    status: str
    notes: str | None = None
    internal_notes: str | None = None
    cancellation_reason: str | None = None
    cancelled_at: datetime | None = None
    booked_by_user_id: str | None = None
    cancelled_by_user_id: str | None = None
    created_at: datetime
    updated_at: datetime


class AppointmentPage(BaseModel):
    data: list[AppointmentOut]
    meta: PageMeta


class AppointmentStatusEventOut(BaseModel):
    id: int
    appointment_id: int
    from_status: str | None = None
    to_status: str
    actor: str | None = None
    note: str | None = None
    created_at: datetime


class ConflictOut(BaseModel):
    entity_type: str
    entity_id: int
    start: datetime
    end: datetime
    label: str


class AvailabilityOut(BaseModel):
    available: bool
    reason: str | None = None
    message: str | None = None
    shift_id: int | None = None
    window_start: datetime
    window_end: datetime
    conflict: ConflictOut | None = None


class SlotOut(BaseModel):
    shift_id: int
    start_time: str
    end_time: str
    starts_at: datetime
    ends_at: datetime
    available: bool
    reason: str | None = None


# Shifts


class BreakPeriod(BaseModel):
    start_time: str = Field(pattern=HHMM_PATTERN)
    end_time: str = Field(pattern=HHMM_PATTERN)
    title: str | None = Field(default=None, min_length=1, max_length=50)

    @validator("end_time")
    @classmethod
    def validate_end_after_start(cls, value: str, values: dict):
        start_time = values.get("start_time")
        if start_time and _minutes(value) <= _minutes(start_time):
            raise ValueError("End time must be after start time")
        return value


class ShiftFields(BaseModel):
    start_time: str = Field(pattern=HHMM_PATTERN)
    end_time: str = Field(pattern=HHMM_PATTERN)
    title: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    color: str | None = Field(default=None, pattern=COLOR_PATTERN)
    breaks: list[BreakPeriod] = Field(default_factory=list, max_length=5)

    @model_validator(mode="after")
    def _validate_duration(self):
        duration = _minutes(self.end_time) - _minutes(self.start_time)
        if duration < 30 or duration > 720:
            raise ValueError("Shift duration must be between 30 minutes and 12 hours")
        return self


class ShiftCreate(ShiftFields):
    member_id: int = Field(gt=0)
    date: dt.date


class RecurrenceOptions(BaseModel):
    pattern: str = Field(pattern="^(DAILY|WEEKLY|BI_WEEKLY|MONTHLY|CUSTOM)$")
    end_date: dt.date | None = None
    max_occurrences: int | None = Field(default=None, ge=1, le=365)
    interval: int = Field(default=1, ge=1, le=30)
    days_of_week: list[int] | None = Field(default=None, max_length=7)

    @validator("pattern", pre=True)
    @classmethod
    def normalize_pattern(cls, value):
        return str(value or "").strip().upper()

    @validator("days_of_week")
    @classmethod
    def validate_days_of_week(cls, value: list[int] | None):
        if value is None:
            return value
        if any(day < 0 or day > 6 for day in value):
            raise ValueError("days_of_week values must be between 0 (Sunday) and 6 (Saturday)")
        return sorted(set(value))

    @model_validator(mode="after")
    def _validate_termination(self):
        if self.end_date is None and self.max_occurrences is None:
            raise ValueError("Either end_date or max_occurrences must be provided")
        return self


class RecurringShiftCreate(ShiftCreate):
    recurrence: RecurrenceOptions

    @model_validator(mode="after")
    def _validate_end_date(self):
        if self.recurrence.end_date and self.recurrence.end_date < self.date:
            raise ValueError("Recurrence end_date must not be before the shift date")
        return self


class ShiftUpdate(BaseModel):
    date: dt.date | None = None
    start_time: str | None = Field(default=None, pattern=HHMM_PATTERN)
    end_time: str | None = Field(default=None, pattern=HHMM_PATTERN)
    title: str | None = Field(default=None, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    color: str | None = Field(default=None, pattern=COLOR_PATTERN)
    breaks: list[BreakPeriod] | None = Field(default=None, max_length=5)
    status: str | None = Field(default=None, pattern=STATUS_PATTERN)

    @validator("status", pre=True)
    @classmethod
    def normalize_status(cls, value):
        return _upper_status(value)


class BreakOut(BaseModel):
    start_time: str
    end_time: str
    title: str | None = None


class ShiftOut(BaseModel):
    id: int
    member_id: int
    date: dt.date
    start_time: str
    end_time: str
    duration_minutes: int
    title: str | None = None
    description: str | None = None
    color: str | None = None
    status: str
    breaks: list[BreakOut] = []
    is_recurring: bool
    recurrence_pattern: str | None = None
    parent_shift_id: int | None = None
    created_by_user_id: str | None = None
    created_at: datetime
    updated_at: datetime


class ShiftPage(BaseModel):
    data: list[ShiftOut]
    meta: PageMeta


class SkippedOccurrenceOut(BaseModel):
    date: dt.date
    reason: str
    entity_type: str | None = None
    entity_id: int | None = None


class RecurringShiftOut(BaseModel):
    created_shifts: list[ShiftOut]
    total_shifts_created: int
    skipped: list[SkippedOccurrenceOut]


class BulkShiftUpdate(BaseModel):
    shift_ids: list[int] = Field(min_length=1, max_length=50)
    status: str | None = Field(default=None, pattern=STATUS_PATTERN)
    color: str | None = Field(default=None, pattern=COLOR_PATTERN)

    @validator("status", pre=True)
    @classmethod
    def normalize_status(cls, value):
        return _upper_status(value)

    @model_validator(mode="after")
    def _validate_fields(self):
        if self.status is None and self.color is None:
            raise ValueError("At least one field to update is required")
        return self


class BulkShiftDelete(BaseModel):
    shift_ids: list[int] = Field(min_length=1, max_length=50)
    delete_recurring: bool = False


class CopyShiftsRequest(BaseModel):
    source_date: dt.date
    target_dates: list[dt.date] = Field(min_length=1, max_length=31)
    member_ids: list[int] | None = Field(default=None, max_length=20)
    override_existing: bool = False


class BatchFailureOut(BaseModel):
    item: Any
    reason: str
    code: str


class BulkShiftOut(BaseModel):
    succeeded: list[int]
    failed: list[BatchFailureOut]


class CopyShiftsOut(BaseModel):
    succeeded: list[ShiftOut]
    failed: list[BatchFailureOut]


class DayScheduleOut(BaseModel):
    date: dt.date
    day_name: str
    shifts: list[ShiftOut]
    total_hours: float


class WeeklyScheduleOut(BaseModel):
    week_start: dt.date
    week_end: dt.date
    days: list[DayScheduleOut]


class ShiftStatsOut(BaseModel):
    total_shifts: int
    scheduled_shifts: int
    confirmed_shifts: int
    in_progress_shifts: int
    completed_shifts: int
    cancelled_shifts: int
    no_show_shifts: int
    total_hours: float
    average_shift_duration: float
