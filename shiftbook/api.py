from datetime import date
from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from . import appointments as appointment_service
from . import shift_generator, shifts as shift_service, team
from .config import settings
from .core.availability import is_available, list_available_slots
from .db import get_db
from .errors import SchedulingError
from .models import Appointment, Member, Organization, Service, Shift
from .request_context import TenantContext
from .schemas import (
    AppointmentCancel,
    AppointmentConvert,
    AppointmentCreate,
    AppointmentOut,
    AppointmentPage,
    AppointmentReschedule,
    AppointmentStatusEventOut,
    AppointmentUpdate,
    AvailabilityOut,
    BreakOut,
    BulkShiftDelete,
    BulkShiftOut,
    BulkShiftUpdate,
    ClientCreate,
    ClientOut,
    CopyShiftsOut,
    CopyShiftsRequest,
    MemberCreate,
    MemberIdentitySync,
    MemberOut,
    MemberServiceAssign,
    MemberUpdate,
    OrganizationOut,
    OrganizationUpdate,
    PageMeta,
    RecurringShiftCreate,
    RecurringShiftOut,
    ServiceCreate,
    ServiceOut,
    ShiftCreate,
    ShiftOut,
    ShiftPage,
    ShiftStatsOut,
    ShiftUpdate,
    SlotOut,
    WeeklyScheduleOut,
)

router = APIRouter(prefix="/api")
log = structlog.get_logger("shiftbook.api")


async def scheduling_error_handler(request: Request, exc: SchedulingError):
    log.info(
        "scheduling_error",
        code=exc.code,
        status_code=exc.status_code,
        detail=exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SchedulingError, scheduling_error_handler)


def _resolve_org_or_default(db: Session, org_slug: Optional[str]) -> Organization:
    slug = (org_slug or settings.DEFAULT_ORG_SLUG).strip().lower()
    org_name = settings.DEFAULT_ORG_NAME if slug == settings.DEFAULT_ORG_SLUG else slug
    return team.get_or_create_organization(db, slug=slug, name=org_name)


def get_current_org(
    db: Session = Depends(get_db),
    x_org_slug: Optional[str] = Header(default=None),
) -> Organization:
    return _resolve_org_or_default(db, x_org_slug)


def get_tenant_context(
    org: Organization = Depends(get_current_org),
    x_user_id: Optional[str] = Header(default=None),
) -> TenantContext:
    return TenantContext(org_id=org.id, user_id=(x_user_id or "").strip() or None)


def _to_org_out(org: Organization) -> OrganizationOut:
    return OrganizationOut(id=org.id, slug=org.slug, name=org.name, timezone=org.timezone)


def _to_member_out(db: Session, member: Member) -> MemberOut:
    return MemberOut(
        id=member.id,
        name=member.name,
        external_id=member.external_id,
        is_active=bool(member.is_active),
        service_ids=team.list_member_service_ids(db, member.org_id, member.id),
    )


def _to_service_out(service: Service) -> ServiceOut:
    return ServiceOut(
        id=service.id,
        name=service.name,
        duration_minutes=service.duration_minutes,
        price=float(service.price or 0),
        category_id=service.category_id,
        is_active=bool(service.is_active),
    )


def _to_appointment_out(a: Appointment) -> AppointmentOut:
    return AppointmentOut(
        id=a.id,
        member_id=a.member_id,
        service_id=a.service_id,
        client_id=a.client_id,
        walk_in_client_name=a.walk_in_client_name,
        walk_in_client_phone=a.walk_in_client_phone,
        is_walk_in=a.is_walk_in,
        start_time=a.start_time,
        end_time=a.end_time,
        duration_minutes=a.duration_minutes,
        price=float(a.price or 0),
        status=a.status,
        notes=a.notes,
        internal_notes=a.internal_notes,
        cancellation_reason=a.cancellation_reason,
        cancelled_at=a.cancelled_at,
        booked_by_user_id=a.booked_by_user_id,
        cancelled_by_user_id=a.cancelled_by_user_id,
        created_at=a.created_at,
        updated_at=a.updated_at,
    )


def _to_shift_out(s: Shift) -> ShiftOut:
    return ShiftOut(
        id=s.id,
        member_id=s.member_id,
        date=s.date,
        start_time=s.start_time,
        end_time=s.end_time,
        duration_minutes=s.duration_minutes,
        title=s.title,
        description=s.description,
        color=s.color,
        status=s.status,
        breaks=[
            BreakOut(start_time=b["startTime"], end_time=b["endTime"], title=b.get("title"))
            for b in s.breaks
        ],
        is_recurring=bool(s.is_recurring),
        recurrence_pattern=s.recurrence_pattern,
        parent_shift_id=s.parent_shift_id,
        created_by_user_id=s.created_by_user_id,
        created_at=s.created_at,
        updated_at=s.updated_at,
    )


def _breaks_payload(breaks) -> list[dict] | None:
    if breaks is None:
        return None
    return [item.model_dump(exclude_none=True) for item in breaks]


# Organization and team


@router.get("/organization", response_model=OrganizationOut)
def read_organization(org: Organization = Depends(get_current_org)):
    return _to_org_out(org)


@router.patch("/organization", response_model=OrganizationOut)
def patch_organization(
    payload: OrganizationUpdate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    return _to_org_out(team.set_organization_timezone(db, ctx, payload.timezone))


@router.get("/members", response_model=List[MemberOut])
def list_members(
    include_inactive: bool = Query(False),
    q: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    rows = team.list_members(db, ctx, include_inactive=include_inactive, q=q)
    return [_to_member_out(db, row) for row in rows]


@router.post("/members", response_model=MemberOut, status_code=status.HTTP_201_CREATED)
def add_member(
    payload: MemberCreate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    member = team.create_member(db, ctx, payload.name, external_id=payload.external_id)
    return _to_member_out(db, member)


@router.put("/members/identity", response_model=MemberOut)
def sync_member_identity(
    payload: MemberIdentitySync,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    member = team.upsert_member_from_identity(
        db, ctx, payload.external_id, payload.name, is_active=payload.is_active
    )
    return _to_member_out(db, member)


@router.patch("/members/{member_id}", response_model=MemberOut)
def patch_member(
    member_id: int,
    payload: MemberUpdate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    member = team.update_member(
        db, ctx, member_id, name=payload.name, is_active=payload.is_active
    )
    return _to_member_out(db, member)


@router.post("/members/{member_id}/deactivate", response_model=MemberOut)
def deactivate_member(
    member_id: int,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    return _to_member_out(db, team.deactivate_member(db, ctx, member_id))


@router.post("/members/{member_id}/services", response_model=MemberOut)
def assign_member_service(
    member_id: int,
    payload: MemberServiceAssign,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    team.assign_service(db, ctx, member_id, payload.service_id)
    return _to_member_out(db, team.get_member(db, ctx, member_id))


@router.delete("/members/{member_id}/services/{service_id}", status_code=status.HTTP_204_NO_CONTENT)
def unassign_member_service(
    member_id: int,
    service_id: int,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    team.unassign_service(db, ctx, member_id, service_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/services", response_model=List[ServiceOut])
def list_services(
    include_inactive: bool = Query(False),
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    return [_to_service_out(row) for row in team.list_services(db, ctx, include_inactive)]


@router.post("/services", response_model=ServiceOut, status_code=status.HTTP_201_CREATED)
def add_service(
    payload: ServiceCreate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    service = team.create_service(
        db,
        ctx,
        payload.name,
        payload.duration_minutes,
        price=payload.price,
        category_id=payload.category_id,
    )
    return _to_service_out(service)


@router.post("/services/{service_id}/deactivate", response_model=ServiceOut)
def deactivate_service(
    service_id: int,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    return _to_service_out(team.deactivate_service(db, ctx, service_id))


@router.post("/clients", response_model=ClientOut, status_code=status.HTTP_201_CREATED)
def add_client(
    payload: ClientCreate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    client = team.create_client(db, ctx, payload.name, phone=payload.phone)
    return ClientOut(id=client.id, name=client.name, phone=client.phone)


@router.get("/clients/{client_id}/appointments", response_model=List[AppointmentOut])
def client_appointment_history(
    client_id: int,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    rows = appointment_service.list_client_appointment_history(db, ctx, client_id)
    return [_to_appointment_out(row) for row in rows]


# Availability


@router.get("/members/{member_id}/availability", response_model=AvailabilityOut)
def member_availability(
    member_id: int,
    service_id: int = Query(..., gt=0),
    day: date = Query(...),
    at: str = Query(..., pattern=r"^([01]?[0-9]|2[0-3]):[0-5][0-9]$"),
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    result = is_available(db, ctx, member_id, service_id, day, at)
    return AvailabilityOut(**result.to_dict())


@router.get("/members/{member_id}/slots", response_model=List[SlotOut])
def member_slots(
    member_id: int,
    service_id: int = Query(..., gt=0),
    day: date = Query(...),
    interval_minutes: int = Query(30, ge=5, le=240),
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    rows = list_available_slots(db, ctx, member_id, service_id, day, interval_minutes)
    return [SlotOut(**row) for row in rows]


@router.get("/members/{member_id}/appointments/upcoming", response_model=List[AppointmentOut])
def member_upcoming_appointments(
    member_id: int,
    days: int = Query(settings.UPCOMING_APPOINTMENTS_DAYS, ge=1, le=90),
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    rows = appointment_service.list_member_upcoming_appointments(db, ctx, member_id, days=days)
    return [_to_appointment_out(row) for row in rows]


# Appointments


@router.post("/appointments", response_model=AppointmentOut, status_code=status.HTTP_201_CREATED)
def add_appointment(
    payload: AppointmentCreate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    appointment = appointment_service.create_appointment(
        db,
        ctx,
        member_id=payload.member_id,
        service_id=payload.service_id,
        start_time=payload.start_time,
        client_id=payload.client_id,
        walk_in_client_name=payload.walk_in_client_name,
        walk_in_client_phone=payload.walk_in_client_phone,
        duration_minutes=payload.duration_minutes,
        notes=payload.notes,
        internal_notes=payload.internal_notes,
    )
    return _to_appointment_out(appointment)


@router.get("/appointments", response_model=AppointmentPage)
def list_appointments(
    member_id: Optional[int] = Query(None),
    client_id: Optional[int] = Query(None),
    service_id: Optional[int] = Query(None),
    status_filter: Optional[str] = Query(None, alias="status"),
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    is_walk_in: Optional[bool] = Query(None),
    search: Optional[str] = Query(None, max_length=100),
    page: int = Query(1, ge=1),
    limit: int = Query(settings.DEFAULT_PAGE_LIMIT, ge=1, le=settings.MAX_PAGE_LIMIT),
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    result = appointment_service.list_appointments(
        db,
        ctx,
        member_id=member_id,
        client_id=client_id,
        service_id=service_id,
        status=status_filter,
        date_from=date_from,
        date_to=date_to,
        is_walk_in=is_walk_in,
        search=search,
        page=page,
        limit=limit,
    )
    return AppointmentPage(
        data=[_to_appointment_out(row) for row in result.items],
        meta=PageMeta(**result.meta()),
    )


@router.get("/appointments/{appointment_id}", response_model=AppointmentOut)
def read_appointment(
    appointment_id: int,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    return _to_appointment_out(appointment_service.get_appointment(db, ctx, appointment_id))


@router.patch("/appointments/{appointment_id}", response_model=AppointmentOut)
def patch_appointment(
    appointment_id: int,
    payload: AppointmentUpdate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    appointment = appointment_service.update_appointment(
        db,
        ctx,
        appointment_id,
        start_time=payload.start_time,
        status=payload.status,
        notes=payload.notes,
        internal_notes=payload.internal_notes,
        cancellation_reason=payload.cancellation_reason,
    )
    return _to_appointment_out(appointment)


@router.post("/appointments/{appointment_id}/reschedule", response_model=AppointmentOut)
def reschedule_appointment(
    appointment_id: int,
    payload: AppointmentReschedule,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    appointment = appointment_service.reschedule_appointment(
        db, ctx, appointment_id, payload.start_time, notes=payload.notes
    )
    return _to_appointment_out(appointment)


@router.post("/appointments/{appointment_id}/cancel", response_model=AppointmentOut)
def cancel_appointment(
    appointment_id: int,
    payload: AppointmentCancel,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    appointment = appointment_service.cancel_appointment(db, ctx, appointment_id, payload.reason)
    return _to_appointment_out(appointment)


@router.post("/appointments/{appointment_id}/convert", response_model=AppointmentOut)
def convert_walk_in(
    appointment_id: int,
    payload: AppointmentConvert,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    appointment = appointment_service.convert_walk_in_appointment(
        db, ctx, appointment_id, payload.client_id
    )
    return _to_appointment_out(appointment)


@router.get(
    "/appointments/{appointment_id}/events",
    response_model=List[AppointmentStatusEventOut],
)
def appointment_events(
    appointment_id: int,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    rows = appointment_service.list_appointment_status_events(db, ctx, appointment_id)
    return [
        AppointmentStatusEventOut(
            id=row.id,
            appointment_id=row.appointment_id,
            from_status=row.from_status,
            to_status=row.to_status,
            actor=row.actor,
            note=row.note,
            created_at=row.created_at,
        )
        for row in rows
    ]


# Shifts


@router.post("/shifts", response_model=ShiftOut, status_code=status.HTTP_201_CREATED)
def add_shift(
    payload: ShiftCreate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    shift = shift_service.create_shift(
        db,
        ctx,
        member_id=payload.member_id,
        day=payload.date,
        start_time=payload.start_time,
        end_time=payload.end_time,
        title=payload.title,
        description=payload.description,
        color=payload.color,
        breaks=_breaks_payload(payload.breaks),
    )
    return _to_shift_out(shift)


@router.post(
    "/shifts/recurring", response_model=RecurringShiftOut, status_code=status.HTTP_201_CREATED
)
def add_recurring_shift(
    payload: RecurringShiftCreate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    options = payload.recurrence
    result = shift_generator.create_recurring_shift(
        db,
        ctx,
        member_id=payload.member_id,
        day=payload.date,
        start_time=payload.start_time,
        end_time=payload.end_time,
        recurrence=shift_generator.RecurrenceSpec(
            pattern=options.pattern,
            end_date=options.end_date,
            max_occurrences=options.max_occurrences,
            interval=options.interval,
            days_of_week=options.days_of_week,
        ),
        title=payload.title,
        description=payload.description,
        color=payload.color,
        breaks=_breaks_payload(payload.breaks),
    )
    return RecurringShiftOut(
        created_shifts=[_to_shift_out(row) for row in result.created_shifts],
        total_shifts_created=result.total_shifts_created,
        skipped=result.skipped,
    )


@router.get("/shifts", response_model=ShiftPage)
def list_shifts(
    member_id: Optional[int] = Query(None),
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    status_filter: Optional[str] = Query(None, alias="status"),
    include_recurring: bool = Query(True),
    page: int = Query(1, ge=1),
    limit: int = Query(settings.DEFAULT_PAGE_LIMIT, ge=1, le=settings.MAX_PAGE_LIMIT),
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    result = shift_service.list_shifts(
        db,
        ctx,
        member_id=member_id,
        start_date=start_date,
        end_date=end_date,
        status=status_filter,
        include_recurring=include_recurring,
        page=page,
        limit=limit,
    )
    return ShiftPage(
        data=[_to_shift_out(row) for row in result.items],
        meta=PageMeta(**result.meta()),
    )


@router.get("/shifts/weekly", response_model=WeeklyScheduleOut)
def weekly_schedule(
    week_start: date = Query(...),
    member_id: Optional[int] = Query(None),
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    schedule = shift_service.get_weekly_schedule(db, ctx, week_start, member_id=member_id)
    for day in schedule["days"]:
        day["shifts"] = [_to_shift_out(row) for row in day["shifts"]]
    return WeeklyScheduleOut(**schedule)


@router.get("/shifts/stats", response_model=ShiftStatsOut)
def shift_stats(
    member_id: Optional[int] = Query(None),
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    stats = shift_service.get_shift_stats(
        db, ctx, member_id=member_id, start_date=start_date, end_date=end_date
    )
    return ShiftStatsOut(**stats)


@router.post("/shifts/bulk-update", response_model=BulkShiftOut)
def bulk_update_shifts(
    payload: BulkShiftUpdate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    result = shift_generator.bulk_update_shifts(
        db, ctx, payload.shift_ids, status=payload.status, color=payload.color
    )
    return BulkShiftOut(succeeded=result.succeeded, failed=result.failed)


@router.post("/shifts/bulk-delete", response_model=BulkShiftOut)
def bulk_delete_shifts(
    payload: BulkShiftDelete,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    result = shift_generator.bulk_delete_shifts(
        db, ctx, payload.shift_ids, delete_recurring=payload.delete_recurring
    )
    return BulkShiftOut(succeeded=result.succeeded, failed=result.failed)


@router.post("/shifts/copy", response_model=CopyShiftsOut)
def copy_shifts(
    payload: CopyShiftsRequest,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    result = shift_generator.copy_shifts(
        db,
        ctx,
        payload.source_date,
        payload.target_dates,
        member_ids=payload.member_ids,
        override_existing=payload.override_existing,
    )
    return CopyShiftsOut(
        succeeded=[_to_shift_out(row) for row in result.succeeded],
        failed=result.failed,
    )


@router.get("/shifts/{shift_id}", response_model=ShiftOut)
def read_shift(
    shift_id: int,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    return _to_shift_out(shift_service.get_shift(db, ctx, shift_id))


@router.patch("/shifts/{shift_id}", response_model=ShiftOut)
def patch_shift(
    shift_id: int,
    payload: ShiftUpdate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    shift = shift_service.update_shift(
        db,
        ctx,
        shift_id,
        day=payload.date,
        start_time=payload.start_time,
        end_time=payload.end_time,
        title=payload.title,
        description=payload.description,
        color=payload.color,
        breaks=_breaks_payload(payload.breaks),
        status=payload.status,
    )
    return _to_shift_out(shift)


@router.delete("/shifts/{shift_id}")
def remove_shift(
    shift_id: int,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
):
    deleted = shift_service.delete_shift(db, ctx, shift_id)
    return {"deleted": deleted}
