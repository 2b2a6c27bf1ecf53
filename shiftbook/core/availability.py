"""Read-only availability projection.

The scheduler books through :func:`evaluate_window` as well, so an
``available`` answer here is exactly what a booking of that window would
accept until a competing write lands.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import ConflictError, ValidationError
from ..models import Shift
from ..request_context import TenantContext
from ..statuses import ShiftStatus
from ..team import resolve_bookable
from .conflicts import (
    ENTITY_APPOINTMENT,
    ConflictingEntity,
    conflict_error,
    find_conflicts,
    org_timezone,
    shift_window_utc,
)
from .timewindow import (
    format_hhmm,
    local_to_utc_naive,
    local_window_to_utc,
    overlaps,
    parse_hhmm,
    utc_naive_to_local,
)

REASON_OUTSIDE_SHIFT = "outside_shift"
REASON_OVERLAPS_BREAK = "overlaps_break"
REASON_CONFLICT = "conflict"


@dataclass(frozen=True)
class AvailabilityResult:
    available: bool
    window_start: datetime
    window_end: datetime
    reason: str | None = None
    shift_id: int | None = None
    conflict: ConflictingEntity | None = None

    @property
    def message(self) -> str | None:
        if self.reason == REASON_OUTSIDE_SHIFT:
            return "Member has no active shift covering this time"
        if self.reason == REASON_OVERLAPS_BREAK:
            return f"Time overlaps a break in shift #{self.shift_id}"
        if self.reason == REASON_CONFLICT and self.conflict is not None:
            return f"Time window overlaps existing {self.conflict.label}"
        return None

    def to_dict(self) -> dict:
        return {
            "available": self.available,
            "reason": self.reason,
            "message": self.message,
            "shift_id": self.shift_id,
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
            "conflict": self.conflict.to_dict() if self.conflict else None,
        }

    def raise_if_unavailable(self) -> None:
        if self.available:
            return
        if self.conflict is not None:
            raise conflict_error(self.conflict)
        raise ConflictError(self.message or "Time window unavailable", "shift", self.shift_id)


def _shifts_around(
    db: Session, org_id: int, member_id: int, window_start: datetime, window_end: datetime
) -> list[Shift]:
    stmt = (
        select(Shift)
        .where(
            Shift.org_id == org_id,
            Shift.member_id == member_id,
            Shift.status != ShiftStatus.CANCELLED.value,
            Shift.date >= (window_start - timedelta(days=1)).date(),
            Shift.date <= (window_end + timedelta(days=1)).date(),
        )
        .order_by(Shift.date.asc(), Shift.start_time.asc())
    )
    return db.execute(stmt).scalars().all()


def break_windows_utc(shift: Shift, tz_name: str) -> list[tuple[datetime, datetime]]:
    return [
        local_window_to_utc(shift.date, item["startTime"], item["endTime"], tz_name)
        for item in shift.breaks
    ]


def find_covering_shift(
    db: Session, org_id: int, member_id: int, window_start: datetime, window_end: datetime
) -> tuple[Shift | None, str | None]:
    """Return ``(shift, None)`` for a shift covering the whole window outside
    its breaks, or ``(shift_or_none, reason)`` when there is none."""
    tz_name = org_timezone(db, org_id)
    break_hit = None
    for shift in _shifts_around(db, org_id, member_id, window_start, window_end):
        shift_start, shift_end = shift_window_utc(shift, tz_name)
        if not (shift_start <= window_start and window_end <= shift_end):
            continue
        if any(
            overlaps(window_start, window_end, b_start, b_end)
            for b_start, b_end in break_windows_utc(shift, tz_name)
        ):
            break_hit = break_hit or shift
            continue
        return shift, None
    if break_hit is not None:
        return break_hit, REASON_OVERLAPS_BREAK
    return None, REASON_OUTSIDE_SHIFT


def evaluate_window(
    db: Session,
    org_id: int,
    member_id: int,
    window_start: datetime,
    window_end: datetime,
    exclude_id: int | None = None,
) -> AvailabilityResult:
    shift_id = None
    if settings.REQUIRE_SHIFT_COVERAGE:
        shift, reason = find_covering_shift(db, org_id, member_id, window_start, window_end)
        shift_id = shift.id if shift else None
        if reason:
            return AvailabilityResult(
                available=False,
                window_start=window_start,
                window_end=window_end,
                reason=reason,
                shift_id=shift_id,
            )

    conflicts = find_conflicts(
        db,
        org_id,
        member_id,
        window_start,
        window_end,
        exclude_id=exclude_id,
        entity_types=(ENTITY_APPOINTMENT,),
    )
    if conflicts:
        return AvailabilityResult(
            available=False,
            window_start=window_start,
            window_end=window_end,
            reason=REASON_CONFLICT,
            shift_id=shift_id,
            conflict=conflicts[0],
        )
    return AvailabilityResult(
        available=True, window_start=window_start, window_end=window_end, shift_id=shift_id
    )


def _minutes_of(at_time) -> int:
    if isinstance(at_time, time):
        return at_time.hour * 60 + at_time.minute
    return parse_hhmm(at_time)


def is_available(
    db: Session,
    ctx: TenantContext,
    member_id: int,
    service_id: int,
    day: date,
    at_time,
) -> AvailabilityResult:
    """Can ``member_id`` perform ``service_id`` starting at ``day`` + ``at_time``
    (organization-local)?"""
    member, service = resolve_bookable(db, ctx, member_id, service_id)
    tz_name = org_timezone(db, ctx.org_id)
    window_start = local_to_utc_naive(day, _minutes_of(at_time), tz_name)
    window_end = window_start + timedelta(minutes=int(service.duration_minutes))
    return evaluate_window(db, ctx.org_id, member.id, window_start, window_end)


def list_available_slots(
    db: Session,
    ctx: TenantContext,
    member_id: int,
    service_id: int,
    day: date,
    interval_minutes: int = 30,
) -> list[dict]:
    step = int(interval_minutes)
    if step < 5 or step > 240:
        raise ValidationError("interval_minutes must be between 5 and 240")
    member, service = resolve_bookable(db, ctx, member_id, service_id)
    tz_name = org_timezone(db, ctx.org_id)
    duration = timedelta(minutes=int(service.duration_minutes))

    shifts = db.execute(
        select(Shift)
        .where(
            Shift.org_id == ctx.org_id,
            Shift.member_id == member.id,
            Shift.date == day,
            Shift.status != ShiftStatus.CANCELLED.value,
        )
        .order_by(Shift.start_time.asc())
    ).scalars().all()

    out: list[dict] = []
    for shift in shifts:
        cursor_min = parse_hhmm(shift.start_time)
        _, shift_end = shift_window_utc(shift, tz_name)
        while True:
            window_start = local_to_utc_naive(day, cursor_min, tz_name)
            window_end = window_start + duration
            if window_end > shift_end:
                break
            result = evaluate_window(db, ctx.org_id, member.id, window_start, window_end)
            out.append(
                {
                    "shift_id": shift.id,
                    "start_time": format_hhmm(cursor_min),
                    "end_time": utc_naive_to_local(window_end, tz_name).strftime("%H:%M"),
                    "starts_at": window_start,
                    "ends_at": window_end,
                    "available": result.available,
                    "reason": result.reason,
                }
            )
            cursor_min += step
    return out
