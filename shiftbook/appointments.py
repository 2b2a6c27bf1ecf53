from datetime import date, datetime, time, timedelta

import structlog
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from .config import settings
from .core.availability import evaluate_window
from .core.locking import write_member_schedule
from .core.timewindow import to_utc_naive
from .errors import InvalidState, InvalidTransition, NotFound, ValidationError
from .models import Appointment, AppointmentStatusEvent, utc_now_naive
from .pagination import Page, paginate
from .request_context import TenantContext
from .statuses import AppointmentStatus, ensure_transition, is_terminal, normalize_status
from .team import get_client, get_member, resolve_bookable

log = structlog.get_logger("shiftbook.appointments")

MAX_WALK_IN_DURATION = 480
MAX_NOTES_LENGTH = 500
MAX_REASON_LENGTH = 200
UPCOMING_STATUSES = (AppointmentStatus.SCHEDULED.value, AppointmentStatus.CONFIRMED.value)


def _clean(value: str | None) -> str | None:
    return (value or "").strip() or None


def _require_datetime(value, field: str) -> datetime:
    if not isinstance(value, datetime):
        raise ValidationError(f"{field} must be a datetime")
    return to_utc_naive(value)


def _check_length(value: str | None, limit: int, field: str) -> None:
    if value is not None and len(value) > limit:
        raise ValidationError(f"{field} must be at most {limit} characters")


def add_status_event(
    db: Session,
    org_id: int,
    appointment_id: int,
    from_status: str | None,
    to_status: str,
    actor: str | None = None,
    note: str | None = None,
) -> AppointmentStatusEvent:
    event = AppointmentStatusEvent(
        org_id=org_id,
        appointment_id=appointment_id,
        from_status=from_status,
        to_status=to_status,
        actor=_clean(actor),
        note=_clean(note),
        created_at=utc_now_naive(),
    )
    db.add(event)
    db.flush()
    return event


def get_appointment(db: Session, ctx: TenantContext, appointment_id: int) -> Appointment:
    appointment = db.execute(
        select(Appointment).where(
            Appointment.org_id == ctx.org_id, Appointment.id == appointment_id
        )
    ).scalar_one_or_none()
    if appointment is None:
        raise NotFound("appointment", appointment_id)
    return appointment


def create_appointment(
    db: Session,
    ctx: TenantContext,
    *,
    member_id: int,
    service_id: int,
    start_time: datetime,
    client_id: int | None = None,
    walk_in_client_name: str | None = None,
    walk_in_client_phone: str | None = None,
    duration_minutes: int | None = None,
    notes: str | None = None,
    internal_notes: str | None = None,
) -> Appointment:
    walk_in_name = _clean(walk_in_client_name)
    walk_in_phone = _clean(walk_in_client_phone)
    if (client_id is None) == (walk_in_name is None):
        raise ValidationError("Provide exactly one of client_id or walk_in_client_name")
    if client_id is not None and (walk_in_phone or duration_minutes is not None):
        raise ValidationError("Walk-in fields are only allowed for walk-in appointments")
    _check_length(walk_in_name, 100, "walk_in_client_name")
    _check_length(walk_in_phone, 20, "walk_in_client_phone")
    _check_length(notes, MAX_NOTES_LENGTH, "notes")
    _check_length(internal_notes, MAX_NOTES_LENGTH, "internal_notes")
    start_at = _require_datetime(start_time, "start_time")

    member, service = resolve_bookable(db, ctx, member_id, service_id)
    if client_id is not None:
        get_client(db, ctx, client_id)

    resolved_duration = int(
        duration_minutes if duration_minutes is not None else service.duration_minutes
    )
    if resolved_duration < 1 or resolved_duration > MAX_WALK_IN_DURATION:
        raise ValidationError(
            f"duration_minutes must be between 1 and {MAX_WALK_IN_DURATION}"
        )
    end_at = start_at + timedelta(minutes=resolved_duration)

    def apply() -> Appointment:
        evaluate_window(db, ctx.org_id, member.id, start_at, end_at).raise_if_unavailable()
        appointment = Appointment(
            org_id=ctx.org_id,
            member_id=member.id,
            service_id=service.id,
            client_id=client_id,
            walk_in_client_name=walk_in_name,
            walk_in_client_phone=walk_in_phone,
            start_time=start_at,
            end_time=end_at,
            duration_minutes=resolved_duration,
            price=service.price,
            status=AppointmentStatus.SCHEDULED.value,
            notes=_clean(notes),
            internal_notes=_clean(internal_notes),
            booked_by_user_id=ctx.actor,
        )
        db.add(appointment)
        db.flush()
        add_status_event(
            db,
            ctx.org_id,
            appointment.id,
            None,
            appointment.status,
            actor=ctx.actor,
            note="created",
        )
        return appointment

    appointment = write_member_schedule(db, ctx.org_id, member.id, apply)
    db.refresh(appointment)
    log.info(
        "appointment_created",
        org_id=ctx.org_id,
        appointment_id=appointment.id,
        member_id=member.id,
        walk_in=appointment.is_walk_in,
        start_time=appointment.start_time.isoformat(),
    )
    return appointment


def _append_notes(existing: str | None, addition: str | None) -> str | None:
    addition = _clean(addition)
    if not addition:
        return existing
    if not existing:
        return addition
    return f"{existing}\n{addition}"


def _move_appointment(
    db: Session,
    ctx: TenantContext,
    appointment_id: int,
    new_start: datetime,
    mutate=None,
) -> Appointment:
    current = get_appointment(db, ctx, appointment_id)
    get_member(db, ctx, current.member_id, require_active=True)
    member_id = current.member_id

    def apply() -> Appointment:
        appointment = get_appointment(db, ctx, appointment_id)
        new_end = new_start + timedelta(minutes=int(appointment.duration_minutes))
        evaluate_window(
            db, ctx.org_id, member_id, new_start, new_end, exclude_id=appointment.id
        ).raise_if_unavailable()
        appointment.start_time = new_start
        appointment.end_time = new_end
        if mutate is not None:
            mutate(appointment)
        db.flush()
        return appointment

    appointment = write_member_schedule(db, ctx.org_id, member_id, apply)
    db.refresh(appointment)
    return appointment


def reschedule_appointment(
    db: Session,
    ctx: TenantContext,
    appointment_id: int,
    new_start_time: datetime,
    notes: str | None = None,
) -> Appointment:
    appointment = get_appointment(db, ctx, appointment_id)
    if is_terminal(appointment.status):
        raise InvalidTransition(
            appointment.status, message=f"Cannot reschedule a {appointment.status} appointment"
        )
    _check_length(notes, MAX_NOTES_LENGTH, "notes")
    new_start = _require_datetime(new_start_time, "new_start_time")
    previous_start = appointment.start_time

    def add_note(row: Appointment) -> None:
        row.notes = _append_notes(row.notes, notes)

    appointment = _move_appointment(db, ctx, appointment_id, new_start, mutate=add_note)
    log.info(
        "appointment_rescheduled",
        org_id=ctx.org_id,
        appointment_id=appointment.id,
        previous_start=previous_start.isoformat(),
        start_time=appointment.start_time.isoformat(),
    )
    return appointment


def _apply_cancellation(
    db: Session, ctx: TenantContext, appointment: Appointment, reason: str | None
) -> None:
    normalized_reason = _clean(reason)
    if not normalized_reason:
        raise InvalidState("Cancellation reason is required")
    _check_length(normalized_reason, MAX_REASON_LENGTH, "cancellation_reason")
    previous = appointment.status
    ensure_transition(previous, AppointmentStatus.CANCELLED.value)
    appointment.status = AppointmentStatus.CANCELLED.value
    appointment.cancellation_reason = normalized_reason
    appointment.cancelled_at = utc_now_naive()
    appointment.cancelled_by_user_id = ctx.actor
    add_status_event(
        db,
        ctx.org_id,
        appointment.id,
        previous,
        appointment.status,
        actor=ctx.actor,
        note=normalized_reason,
    )


def cancel_appointment(
    db: Session, ctx: TenantContext, appointment_id: int, reason: str
) -> Appointment:
    appointment = get_appointment(db, ctx, appointment_id)
    if not _clean(reason):
        raise InvalidState("Cancellation reason is required")
    if is_terminal(appointment.status):
        raise InvalidTransition(appointment.status, AppointmentStatus.CANCELLED.value)
    _apply_cancellation(db, ctx, appointment, reason)
    db.commit()
    db.refresh(appointment)
    log.info("appointment_cancelled", org_id=ctx.org_id, appointment_id=appointment.id)
    return appointment


def convert_walk_in_appointment(
    db: Session, ctx: TenantContext, appointment_id: int, client_id: int
) -> Appointment:
    appointment = get_appointment(db, ctx, appointment_id)
    if is_terminal(appointment.status):
        raise InvalidTransition(
            appointment.status, message=f"Cannot convert a {appointment.status} appointment"
        )
    if appointment.client_id is not None:
        raise InvalidState("Appointment already has a client")
    client = get_client(db, ctx, client_id)
    appointment.client_id = client.id
    appointment.walk_in_client_name = None
    appointment.walk_in_client_phone = None
    db.commit()
    db.refresh(appointment)
    log.info(
        "walk_in_converted",
        org_id=ctx.org_id,
        appointment_id=appointment.id,
        client_id=client.id,
    )
    return appointment


def update_appointment(
    db: Session,
    ctx: TenantContext,
    appointment_id: int,
    *,
    start_time: datetime | None = None,
    status: str | AppointmentStatus | None = None,
    notes: str | None = None,
    internal_notes: str | None = None,
    cancellation_reason: str | None = None,
) -> Appointment:
    appointment = get_appointment(db, ctx, appointment_id)
    current_status = appointment.status
    target_status = normalize_status(status) if status is not None else None
    _check_length(notes, MAX_NOTES_LENGTH, "notes")
    _check_length(internal_notes, MAX_NOTES_LENGTH, "internal_notes")

    if is_terminal(current_status):
        if start_time is not None or target_status is not None:
            raise InvalidTransition(current_status, target_status)
        if cancellation_reason is not None:
            raise InvalidTransition(
                current_status, message="Only notes can change on a closed appointment"
            )
    if target_status is not None:
        ensure_transition(current_status, target_status)
    if target_status == AppointmentStatus.CANCELLED.value and current_status != target_status:
        if not _clean(cancellation_reason):
            raise InvalidState("Cancellation reason is required")
    elif cancellation_reason is not None:
        raise InvalidState("cancellation_reason is only accepted when cancelling")
    new_start = _require_datetime(start_time, "start_time") if start_time is not None else None

    def apply_fields(row: Appointment) -> None:
        if notes is not None:
            row.notes = _clean(notes)
        if internal_notes is not None:
            row.internal_notes = _clean(internal_notes)
        if target_status is None or target_status == row.status:
            return
        if target_status == AppointmentStatus.CANCELLED.value:
            _apply_cancellation(db, ctx, row, cancellation_reason)
            return
        previous = row.status
        row.status = target_status
        add_status_event(db, ctx.org_id, row.id, previous, target_status, actor=ctx.actor)

    if new_start is not None:
        appointment = _move_appointment(db, ctx, appointment_id, new_start, mutate=apply_fields)
    else:
        apply_fields(appointment)
        db.commit()
        db.refresh(appointment)

    log.info(
        "appointment_updated",
        org_id=ctx.org_id,
        appointment_id=appointment.id,
        from_status=current_status,
        status=appointment.status,
        moved=new_start is not None,
    )
    return appointment


def list_appointments(
    db: Session,
    ctx: TenantContext,
    *,
    member_id: int | None = None,
    client_id: int | None = None,
    service_id: int | None = None,
    status: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    is_walk_in: bool | None = None,
    search: str | None = None,
    page: int | None = None,
    limit: int | None = None,
) -> Page:
    stmt = select(Appointment).where(Appointment.org_id == ctx.org_id)
    if member_id is not None:
        stmt = stmt.where(Appointment.member_id == member_id)
    if client_id is not None:
        stmt = stmt.where(Appointment.client_id == client_id)
    if service_id is not None:
        stmt = stmt.where(Appointment.service_id == service_id)
    if status is not None:
        stmt = stmt.where(Appointment.status == normalize_status(status))
    if date_from is not None:
        stmt = stmt.where(Appointment.start_time >= datetime.combine(date_from, time.min))
    if date_to is not None:
        stmt = stmt.where(
            Appointment.start_time < datetime.combine(date_to + timedelta(days=1), time.min)
        )
    if is_walk_in is True:
        stmt = stmt.where(Appointment.client_id.is_(None))
    elif is_walk_in is False:
        stmt = stmt.where(Appointment.client_id.is_not(None))
    if search and search.strip():
        pattern = f"%{search.strip()}%"
        stmt = stmt.where(
            or_(
                Appointment.walk_in_client_name.ilike(pattern),
                Appointment.notes.ilike(pattern),
            )
        )
    stmt = stmt.order_by(Appointment.start_time.asc(), Appointment.id.asc())
    return paginate(db, stmt, page, limit)


def list_member_upcoming_appointments(
    db: Session,
    ctx: TenantContext,
    member_id: int,
    days: int | None = None,
    now: datetime | None = None,
) -> list[Appointment]:
    get_member(db, ctx, member_id)
    horizon_days = int(days if days is not None else settings.UPCOMING_APPOINTMENTS_DAYS)
    if horizon_days < 1 or horizon_days > 90:
        raise ValidationError("days must be between 1 and 90")
    start = to_utc_naive(now) if now is not None else utc_now_naive()
    end = start + timedelta(days=horizon_days)
    stmt = (
        select(Appointment)
        .where(
            Appointment.org_id == ctx.org_id,
            Appointment.member_id == member_id,
            Appointment.status.in_(UPCOMING_STATUSES),
            Appointment.start_time >= start,
            Appointment.start_time <= end,
        )
        .order_by(Appointment.start_time.asc())
    )
    return db.execute(stmt).scalars().all()


def list_client_appointment_history(
    db: Session, ctx: TenantContext, client_id: int
) -> list[Appointment]:
    get_client(db, ctx, client_id)
    stmt = (
        select(Appointment)
        .where(Appointment.org_id == ctx.org_id, Appointment.client_id == client_id)
        .order_by(Appointment.start_time.desc(), Appointment.id.desc())
    )
    return db.execute(stmt).scalars().all()


def list_appointment_status_events(
    db: Session, ctx: TenantContext, appointment_id: int
) -> list[AppointmentStatusEvent]:
    get_appointment(db, ctx, appointment_id)
    stmt = (
        select(AppointmentStatusEvent)
        .where(
            AppointmentStatusEvent.org_id == ctx.org_id,
            AppointmentStatusEvent.appointment_id == appointment_id,
        )
        .order_by(AppointmentStatusEvent.created_at.asc(), AppointmentStatusEvent.id.asc())
    )
    return db.execute(stmt).scalars().all()
