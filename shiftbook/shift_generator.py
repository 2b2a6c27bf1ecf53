"""Recurring series and batch operations over shifts.

Every operation here is partial-success: per-occurrence or per-item problems
land in the result, only a malformed request fails the whole call.
"""

from dataclasses import dataclass, field
from datetime import date, timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import settings
from .core.conflicts import ENTITY_SHIFT, conflict_error, find_conflicts
from .core.locking import write_member_schedule
from .core.timewindow import add_occurrence, matches_days_of_week
from .errors import NotFound, SchedulingError, ValidationError
from .models import Shift
from .request_context import TenantContext
from .shifts import (
    delete_series,
    delete_shift,
    ensure_not_past,
    get_shift,
    make_shift,
    shift_window,
    validate_color,
    validate_shift_fields,
)
from .statuses import RecurrencePattern, ShiftStatus, ensure_transition, normalize_status
from .team import get_member

log = structlog.get_logger("shiftbook.shift_generator")

MAX_OCCURRENCES = 365
MAX_CUSTOM_INTERVAL = 30
MAX_BULK_IDS = 50
MAX_COPY_TARGET_DATES = 31
MAX_COPY_MEMBERS = 20


@dataclass
class RecurrenceSpec:
    pattern: RecurrencePattern | str
    end_date: date | None = None
    max_occurrences: int | None = None
    interval: int = 1
    days_of_week: list[int] | None = None


@dataclass
class RecurringShiftResult:
    created_shifts: list[Shift]
    skipped: list[dict]

    @property
    def total_shifts_created(self) -> int:
        return len(self.created_shifts)


@dataclass
class BatchResult:
    succeeded: list = field(default_factory=list)
    failed: list[dict] = field(default_factory=list)

    def fail(self, item, exc: SchedulingError) -> None:
        self.failed.append({"item": item, "reason": exc.message, "code": exc.code})


def validate_recurrence(spec: RecurrenceSpec, base_day: date) -> RecurrenceSpec:
    try:
        pattern = RecurrencePattern(str(getattr(spec.pattern, "value", spec.pattern)).upper())
    except ValueError:
        raise ValidationError(f"Invalid recurrence pattern: {spec.pattern}") from None
    if spec.end_date is None and spec.max_occurrences is None:
        raise ValidationError("Recurrence needs an end_date or max_occurrences")
    if spec.max_occurrences is not None and not (
        1 <= int(spec.max_occurrences) <= MAX_OCCURRENCES
    ):
        raise ValidationError(f"max_occurrences must be between 1 and {MAX_OCCURRENCES}")
    if spec.end_date is not None and spec.end_date < base_day:
        raise ValidationError("Recurrence end_date must not be before the first shift date")

    interval = int(spec.interval or 1)
    days_of_week = None
    if pattern == RecurrencePattern.CUSTOM:
        if interval < 1 or interval > MAX_CUSTOM_INTERVAL:
            raise ValidationError(f"interval must be between 1 and {MAX_CUSTOM_INTERVAL}")
        if spec.days_of_week:
            days_of_week = sorted({int(d) for d in spec.days_of_week})
            if days_of_week[0] < 0 or days_of_week[-1] > 6:
                raise ValidationError("days_of_week values must be between 0 and 6")
    return RecurrenceSpec(
        pattern=pattern,
        end_date=spec.end_date,
        max_occurrences=int(spec.max_occurrences) if spec.max_occurrences is not None else None,
        interval=interval,
        days_of_week=days_of_week,
    )


def occurrence_dates(spec: RecurrenceSpec, base_day: date):
    """Yield the series dates in order, index 0 being ``base_day``."""
    horizon = base_day + timedelta(days=max(1, settings.RECURRENCE_HORIZON_DAYS))
    limit = spec.max_occurrences or MAX_OCCURRENCES
    counted = 0
    index = 0
    while counted < limit:
        day = add_occurrence(base_day, spec.pattern, spec.interval, index)
        index += 1
        if day > horizon or (spec.end_date is not None and day > spec.end_date):
            return
        if spec.pattern == RecurrencePattern.CUSTOM and not matches_days_of_week(
            day, spec.days_of_week
        ):
            continue
        counted += 1
        yield day


def create_recurring_shift(
    db: Session,
    ctx: TenantContext,
    *,
    member_id: int,
    day: date,
    start_time: str,
    end_time: str,
    recurrence: RecurrenceSpec,
    title: str | None = None,
    description: str | None = None,
    color: str | None = None,
    breaks: list[dict] | None = None,
) -> RecurringShiftResult:
    duration, normalized_breaks = validate_shift_fields(start_time, end_time, breaks)
    validate_color(color)
    spec = validate_recurrence(recurrence, day)
    member = get_member(db, ctx, member_id, require_active=True)
    ensure_not_past(db, ctx.org_id, day)
    dates = list(occurrence_dates(spec, day))

    def apply() -> RecurringShiftResult:
        created: list[Shift] = []
        skipped: list[dict] = []
        root_id = None
        for occurrence in dates:
            window_start, window_end = shift_window(
                db, ctx.org_id, occurrence, start_time, end_time
            )
            conflicts = find_conflicts(
                db,
                ctx.org_id,
                member.id,
                window_start,
                window_end,
                entity_types=(ENTITY_SHIFT,),
            )
            if conflicts:
                skipped.append(
                    {
                        "date": occurrence,
                        "reason": conflict_error(conflicts[0]).message,
                        "entity_type": conflicts[0].entity_type,
                        "entity_id": conflicts[0].entity_id,
                    }
                )
                continue
            shift = make_shift(
                ctx,
                member.id,
                occurrence,
                start_time,
                end_time,
                duration,
                normalized_breaks,
                title=title,
                description=description,
                color=color,
                is_recurring=True,
                recurrence_pattern=spec.pattern.value,
            )
            db.add(shift)
            db.flush()
            if root_id is None:
                root_id = shift.id
            shift.parent_shift_id = root_id
            db.flush()
            created.append(shift)
        return RecurringShiftResult(created_shifts=created, skipped=skipped)

    result = write_member_schedule(db, ctx.org_id, member.id, apply)
    for shift in result.created_shifts:
        db.refresh(shift)
    log.info(
        "recurring_shift_created",
        org_id=ctx.org_id,
        member_id=member.id,
        pattern=spec.pattern.value,
        created=result.total_shifts_created,
        skipped=len(result.skipped),
    )
    return result


def _validate_ids(shift_ids) -> list[int]:
    ids = list(dict.fromkeys(int(x) for x in (shift_ids or [])))
    if not ids:
        raise ValidationError("At least one shift id is required")
    if len(ids) > MAX_BULK_IDS:
        raise ValidationError(f"At most {MAX_BULK_IDS} shift ids per request")
    return ids


def bulk_update_shifts(
    db: Session,
    ctx: TenantContext,
    shift_ids: list[int],
    *,
    status: str | ShiftStatus | None = None,
    color: str | None = None,
) -> BatchResult:
    ids = _validate_ids(shift_ids)
    if status is None and color is None:
        raise ValidationError("Provide status or color to update")
    target_status = normalize_status(status, ShiftStatus) if status is not None else None
    target_color = validate_color(color) if color is not None else None

    result = BatchResult()
    for shift_id in ids:
        try:
            shift = get_shift(db, ctx, shift_id)
            if target_status is not None:
                ensure_transition(shift.status, target_status)
                shift.status = target_status
            if target_color is not None:
                shift.color = target_color
            db.commit()
        except SchedulingError as exc:
            db.rollback()
            result.fail(shift_id, exc)
            continue
        result.succeeded.append(shift_id)
    log.info(
        "shifts_bulk_updated",
        org_id=ctx.org_id,
        succeeded=len(result.succeeded),
        failed=len(result.failed),
    )
    return result


def bulk_delete_shifts(
    db: Session, ctx: TenantContext, shift_ids: list[int], delete_recurring: bool = False
) -> BatchResult:
    ids = _validate_ids(shift_ids)
    removed_ids: set[int] = set()
    result = BatchResult()
    for shift_id in ids:
        if shift_id in removed_ids:
            result.succeeded.append(shift_id)
            continue
        try:
            shift = get_shift(db, ctx, shift_id)
            series_id = shift.parent_shift_id
            if series_id is not None and (delete_recurring or series_id == shift.id):
                removed_ids.update(
                    db.execute(
                        select(Shift.id).where(
                            Shift.org_id == ctx.org_id, Shift.parent_shift_id == series_id
                        )
                    )
                    .scalars()
                    .all()
                )
                delete_series(db, ctx, series_id)
            else:
                delete_shift(db, ctx, shift_id)
        except SchedulingError as exc:
            db.rollback()
            result.fail(shift_id, exc)
            continue
        removed_ids.add(shift_id)
        result.succeeded.append(shift_id)
    log.info(
        "shifts_bulk_deleted",
        org_id=ctx.org_id,
        succeeded=len(result.succeeded),
        failed=len(result.failed),
    )
    return result


def copy_shifts(
    db: Session,
    ctx: TenantContext,
    source_date: date,
    target_dates: list[date],
    member_ids: list[int] | None = None,
    override_existing: bool = False,
) -> BatchResult:
    targets = list(dict.fromkeys(target_dates or []))
    if not targets:
        raise ValidationError("At least one target date is required")
    if len(targets) > MAX_COPY_TARGET_DATES:
        raise ValidationError(f"At most {MAX_COPY_TARGET_DATES} target dates per request")
    if source_date in targets:
        raise ValidationError("Target dates must differ from the source date")
    members = list(dict.fromkeys(int(x) for x in (member_ids or [])))
    if len(members) > MAX_COPY_MEMBERS:
        raise ValidationError(f"At most {MAX_COPY_MEMBERS} members per request")

    stmt = select(Shift).where(
        Shift.org_id == ctx.org_id,
        Shift.date == source_date,
        Shift.status != ShiftStatus.CANCELLED.value,
    )
    if members:
        stmt = stmt.where(Shift.member_id.in_(members))
    sources = db.execute(stmt.order_by(Shift.member_id.asc(), Shift.start_time.asc())).scalars().all()
    if not sources:
        raise NotFound("shift", message="No shifts to copy on the source date")

    templates = [
        {
            "id": row.id,
            "member_id": row.member_id,
            "start_time": row.start_time,
            "end_time": row.end_time,
            "duration": row.duration_minutes,
            "breaks": row.breaks,
            "title": row.title,
            "description": row.description,
            "color": row.color,
        }
        for row in sources
    ]

    result = BatchResult()
    for target in targets:
        for template in templates:
            item = {"source_shift_id": template["id"], "date": target}
            try:
                result.succeeded.append(
                    _copy_one(db, ctx, template, target, override_existing)
                )
            except SchedulingError as exc:
                result.fail(item, exc)
    log.info(
        "shifts_copied",
        org_id=ctx.org_id,
        source_date=source_date.isoformat(),
        succeeded=len(result.succeeded),
        failed=len(result.failed),
    )
    return result


def _copy_one(
    db: Session, ctx: TenantContext, template: dict, target: date, override_existing: bool
) -> Shift:
    member = get_member(db, ctx, template["member_id"], require_active=True)
    ensure_not_past(db, ctx.org_id, target)
    window_start, window_end = shift_window(
        db, ctx.org_id, target, template["start_time"], template["end_time"]
    )

    def apply() -> Shift:
        conflicts = find_conflicts(
            db, ctx.org_id, member.id, window_start, window_end, entity_types=(ENTITY_SHIFT,)
        )
        if conflicts and not override_existing:
            raise conflict_error(conflicts[0])
        for conflict in conflicts:
            existing = get_shift(db, ctx, conflict.entity_id)
            ensure_transition(existing.status, ShiftStatus.CANCELLED.value)
            existing.status = ShiftStatus.CANCELLED.value
        shift = make_shift(
            ctx,
            member.id,
            target,
            template["start_time"],
            template["end_time"],
            template["duration"],
            template["breaks"],
            title=template["title"],
            description=template["description"],
            color=template["color"],
        )
        db.add(shift)
        db.flush()
        return shift

    shift = write_member_schedule(db, ctx.org_id, member.id, apply)
    db.refresh(shift)
    return shift
