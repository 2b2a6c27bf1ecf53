import json
import re
from datetime import date, timedelta

import structlog
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from .config import settings
from .core.conflicts import ENTITY_SHIFT, org_timezone, raise_on_conflict
from .core.locking import write_member_schedule
from .core.timewindow import (
    duration_minutes,
    local_today,
    local_window_to_utc,
    overlaps,
    parse_hhmm,
    weekday_of,
)
from .errors import InvalidTransition, NotFound, ValidationError
from .models import Shift
from .pagination import Page, paginate
from .request_context import TenantContext
from .statuses import ShiftStatus, ensure_transition, is_terminal, normalize_status
from .team import get_member

log = structlog.get_logger("shiftbook.shifts")

MIN_SHIFT_MINUTES = 30
MAX_SHIFT_MINUTES = 720
MAX_BREAKS = 5
COLOR_RE = re.compile(r"^#([A-Fa-f0-9]{6}|[A-Fa-f0-9]{3})$")
DAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


def _break_value(item: dict, camel: str, snake: str):
    value = item.get(camel)
    return item.get(snake) if value is None else value


def validate_shift_fields(
    start_time: str, end_time: str, breaks: list[dict] | None = None
) -> tuple[int, list[dict]]:
    """Check times, duration bounds and breaks.

    Returns ``(duration_minutes, normalized_breaks)``; breaks come back sorted
    and keyed ``startTime``/``endTime``/``title``.
    """
    start_min = parse_hhmm(start_time)
    end_min = parse_hhmm(end_time)
    if end_min <= start_min:
        raise ValidationError("Start time must be before end time")
    duration = duration_minutes(start_time, end_time)
    if duration < MIN_SHIFT_MINUTES:
        raise ValidationError(f"Shift must be at least {MIN_SHIFT_MINUTES} minutes long")
    if duration > MAX_SHIFT_MINUTES:
        raise ValidationError(f"Shift cannot be longer than {MAX_SHIFT_MINUTES // 60} hours")

    items = list(breaks or [])
    if len(items) > MAX_BREAKS:
        raise ValidationError(f"A shift can have at most {MAX_BREAKS} breaks")

    spans: list[tuple[int, int, dict]] = []
    for item in items:
        if not isinstance(item, dict):
            raise ValidationError("Each break must be an object with startTime and endTime")
        b_start = _break_value(item, "startTime", "start_time")
        b_end = _break_value(item, "endTime", "end_time")
        b_start_min, b_end_min = parse_hhmm(b_start), parse_hhmm(b_end)
        if b_end_min <= b_start_min:
            raise ValidationError("Break start time must be before end time")
        if b_start_min < start_min or b_end_min > end_min:
            raise ValidationError("Breaks must fall within the shift window")
        normalized = {"startTime": b_start.strip(), "endTime": b_end.strip()}
        title = (item.get("title") or "").strip()
        if len(title) > 50:
            raise ValidationError("Break title must be at most 50 characters")
        if title:
            normalized["title"] = title
        spans.append((b_start_min, b_end_min, normalized))

    spans.sort(key=lambda span: span[0])
    for prev, nxt in zip(spans, spans[1:]):
        if overlaps(prev[0], prev[1], nxt[0], nxt[1]):
            raise ValidationError("Breaks must not overlap each other")
    return duration, [span[2] for span in spans]


def validate_color(color: str | None) -> str:
    value = (color or "").strip() or settings.DEFAULT_SHIFT_COLOR
    if not COLOR_RE.match(value):
        raise ValidationError("Color must be a valid hex color code")
    return value


def ensure_not_past(db: Session, org_id: int, day: date) -> None:
    if day < local_today(org_timezone(db, org_id)):
        raise ValidationError("Shift date cannot be in the past")


def shift_window(db: Session, org_id: int, day: date, start_time: str, end_time: str):
    return local_window_to_utc(day, start_time, end_time, org_timezone(db, org_id))


def make_shift(
    ctx: TenantContext,
    member_id: int,
    day: date,
    start_time: str,
    end_time: str,
    duration: int,
    breaks: list[dict],
    *,
    title: str | None = None,
    description: str | None = None,
    color: str | None = None,
    is_recurring: bool = False,
    recurrence_pattern: str | None = None,
) -> Shift:
    return Shift(
        org_id=ctx.org_id,
        member_id=member_id,
        date=day,
        start_time=start_time.strip(),
        end_time=end_time.strip(),
        duration_minutes=duration,
        title=(title or "").strip() or None,
        description=(description or "").strip() or None,
        color=validate_color(color),
        status=ShiftStatus.SCHEDULED.value,
        breaks_json=json.dumps(breaks) if breaks else None,
        is_recurring=is_recurring,
        recurrence_pattern=recurrence_pattern,
        created_by_user_id=ctx.actor,
    )


def _check_text(title: str | None, description: str | None) -> None:
    if title is not None and len(title.strip()) > 100:
        raise ValidationError("title must be at most 100 characters")
    if description is not None and len(description.strip()) > 500:
        raise ValidationError("description must be at most 500 characters")


def create_shift(
    db: Session,
    ctx: TenantContext,
    *,
    member_id: int,
    day: date,
    start_time: str,
    end_time: str,
    title: str | None = None,
    description: str | None = None,
    color: str | None = None,
    breaks: list[dict] | None = None,
) -> Shift:
    duration, normalized_breaks = validate_shift_fields(start_time, end_time, breaks)
    validate_color(color)
    _check_text(title, description)
    member = get_member(db, ctx, member_id, require_active=True)
    ensure_not_past(db, ctx.org_id, day)
    window_start, window_end = shift_window(db, ctx.org_id, day, start_time, end_time)

    def apply() -> Shift:
        raise_on_conflict(
            db, ctx.org_id, member.id, window_start, window_end, entity_types=(ENTITY_SHIFT,)
        )
        shift = make_shift(
            ctx,
            member.id,
            day,
            start_time,
            end_time,
            duration,
            normalized_breaks,
            title=title,
            description=description,
            color=color,
        )
        db.add(shift)
        db.flush()
        return shift

    shift = write_member_schedule(db, ctx.org_id, member.id, apply)
    db.refresh(shift)
    log.info(
        "shift_created",
        org_id=ctx.org_id,
        shift_id=shift.id,
        member_id=member.id,
        date=day.isoformat(),
    )
    return shift


def get_shift(db: Session, ctx: TenantContext, shift_id: int) -> Shift:
    shift = db.execute(
        select(Shift).where(Shift.org_id == ctx.org_id, Shift.id == shift_id)
    ).scalar_one_or_none()
    if shift is None:
        raise NotFound("shift", shift_id)
    return shift


def list_shifts(
    db: Session,
    ctx: TenantContext,
    *,
    member_id: int | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    status: str | None = None,
    include_recurring: bool = True,
    page: int | None = None,
    limit: int | None = None,
) -> Page:
    stmt = select(Shift).where(Shift.org_id == ctx.org_id)
    if member_id is not None:
        stmt = stmt.where(Shift.member_id == member_id)
    if start_date is not None:
        stmt = stmt.where(Shift.date >= start_date)
    if end_date is not None:
        stmt = stmt.where(Shift.date <= end_date)
    if status is not None:
        stmt = stmt.where(Shift.status == normalize_status(status, ShiftStatus))
    if not include_recurring:
        stmt = stmt.where(Shift.is_recurring.is_(False))
    stmt = stmt.order_by(Shift.date.asc(), Shift.start_time.asc(), Shift.id.asc())
    return paginate(db, stmt, page, limit)


def update_shift(
    db: Session,
    ctx: TenantContext,
    shift_id: int,
    *,
    day: date | None = None,
    start_time: str | None = None,
    end_time: str | None = None,
    title: str | None = None,
    description: str | None = None,
    color: str | None = None,
    breaks: list[dict] | None = None,
    status: str | ShiftStatus | None = None,
) -> Shift:
    shift = get_shift(db, ctx, shift_id)
    current_status = shift.status
    target_status = normalize_status(status, ShiftStatus) if status is not None else None
    moves = any(value is not None for value in (day, start_time, end_time, breaks))

    if is_terminal(current_status) and (moves or target_status is not None):
        raise InvalidTransition(current_status, target_status)
    if target_status is not None:
        ensure_transition(current_status, target_status)
    if color is not None:
        validate_color(color)
    _check_text(title, description)

    new_day = day or shift.date
    new_start = start_time or shift.start_time
    new_end = end_time or shift.end_time
    duration, normalized_breaks = validate_shift_fields(
        new_start, new_end, breaks if breaks is not None else shift.breaks
    )
    if day is not None and day != shift.date:
        ensure_not_past(db, ctx.org_id, day)
    member_id = shift.member_id

    def apply_fields(row: Shift) -> None:
        if title is not None:
            row.title = title.strip() or None
        if description is not None:
            row.description = description.strip() or None
        if color is not None:
            row.color = validate_color(color)
        if target_status is not None:
            row.status = target_status

    if not moves:
        apply_fields(shift)
        db.commit()
        db.refresh(shift)
        log.info("shift_updated", org_id=ctx.org_id, shift_id=shift.id, status=shift.status)
        return shift

    window_start, window_end = shift_window(db, ctx.org_id, new_day, new_start, new_end)

    def apply() -> Shift:
        row = get_shift(db, ctx, shift_id)
        if target_status != ShiftStatus.CANCELLED.value:
            raise_on_conflict(
                db,
                ctx.org_id,
                member_id,
                window_start,
                window_end,
                exclude_id=row.id,
                entity_types=(ENTITY_SHIFT,),
            )
        row.date = new_day
        row.start_time = new_start.strip()
        row.end_time = new_end.strip()
        row.duration_minutes = duration
        row.breaks_json = json.dumps(normalized_breaks) if normalized_breaks else None
        apply_fields(row)
        db.flush()
        return row

    shift = write_member_schedule(db, ctx.org_id, member_id, apply)
    db.refresh(shift)
    log.info(
        "shift_updated",
        org_id=ctx.org_id,
        shift_id=shift.id,
        status=shift.status,
        date=shift.date.isoformat(),
    )
    return shift


def is_series_root(shift: Shift) -> bool:
    return bool(shift.is_recurring) and shift.parent_shift_id in (None, shift.id)


def delete_shift(db: Session, ctx: TenantContext, shift_id: int) -> int:
    """Delete a shift; deleting a series root removes the whole series.

    Returns the number of deleted rows.
    """
    shift = get_shift(db, ctx, shift_id)
    if is_series_root(shift):
        result = db.execute(
            delete(Shift)
            .where(
                Shift.org_id == ctx.org_id,
                Shift.parent_shift_id == shift.id,
                Shift.id != shift.id,
            )
            .execution_options(synchronize_session=False)
        )
        removed = int(result.rowcount or 0)
    else:
        removed = 0
    db.delete(shift)
    db.commit()
    removed += 1
    log.info("shift_deleted", org_id=ctx.org_id, shift_id=shift_id, deleted=removed)
    return removed


def delete_series(db: Session, ctx: TenantContext, series_id: int) -> int:
    children = db.execute(
        delete(Shift)
        .where(
            Shift.org_id == ctx.org_id,
            Shift.parent_shift_id == series_id,
            Shift.id != series_id,
        )
        .execution_options(synchronize_session=False)
    )
    root = db.execute(
        delete(Shift)
        .where(Shift.org_id == ctx.org_id, Shift.id == series_id)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return int(children.rowcount or 0) + int(root.rowcount or 0)


def _hours(shift: Shift) -> float:
    return round(int(shift.duration_minutes or 0) / 60, 2)


def get_weekly_schedule(
    db: Session, ctx: TenantContext, week_start: date, member_id: int | None = None
) -> dict:
    if weekday_of(week_start) != 1:
        raise ValidationError("Week start must be a Monday")
    week_end = week_start + timedelta(days=6)
    stmt = select(Shift).where(
        Shift.org_id == ctx.org_id, Shift.date >= week_start, Shift.date <= week_end
    )
    if member_id is not None:
        stmt = stmt.where(Shift.member_id == member_id)
    shifts = db.execute(
        stmt.order_by(Shift.date.asc(), Shift.start_time.asc(), Shift.id.asc())
    ).scalars().all()

    days = []
    for offset in range(7):
        current = week_start + timedelta(days=offset)
        day_shifts = [row for row in shifts if row.date == current]
        days.append(
            {
                "date": current,
                "day_name": DAY_NAMES[offset],
                "shifts": day_shifts,
                "total_hours": round(
                    sum(
                        _hours(row)
                        for row in day_shifts
                        if row.status != ShiftStatus.CANCELLED.value
                    ),
                    2,
                ),
            }
        )
    return {"week_start": week_start, "week_end": week_end, "days": days}


def get_shift_stats(
    db: Session,
    ctx: TenantContext,
    member_id: int | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
) -> dict:
    stmt = select(Shift).where(Shift.org_id == ctx.org_id)
    if member_id is not None:
        stmt = stmt.where(Shift.member_id == member_id)
    if start_date is not None:
        stmt = stmt.where(Shift.date >= start_date)
    if end_date is not None:
        stmt = stmt.where(Shift.date <= end_date)
    rows = db.execute(stmt).scalars().all()

    by_status = {status.value: 0 for status in ShiftStatus}
    total_hours = 0.0
    for row in rows:
        by_status[row.status] = by_status.get(row.status, 0) + 1
        total_hours += int(row.duration_minutes or 0) / 60
    total = len(rows)
    return {
        "total_shifts": total,
        "scheduled_shifts": by_status[ShiftStatus.SCHEDULED.value],
        "confirmed_shifts": by_status[ShiftStatus.CONFIRMED.value],
        "in_progress_shifts": by_status[ShiftStatus.IN_PROGRESS.value],
        "completed_shifts": by_status[ShiftStatus.COMPLETED.value],
        "cancelled_shifts": by_status[ShiftStatus.CANCELLED.value],
        "no_show_shifts": by_status[ShiftStatus.NO_SHOW.value],
        "total_hours": round(total_hours, 2),
        "average_shift_duration": round(total_hours / total, 2) if total else 0.0,
    }
