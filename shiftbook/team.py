from decimal import Decimal

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import settings
from .core.timewindow import get_zone
from .errors import Inactive, InvalidState, NotFound, ValidationError
from .models import Client, Member, MemberService, Organization, Service
from .request_context import TenantContext

log = structlog.get_logger("shiftbook.team")

MIN_SERVICE_DURATION = 1
MAX_SERVICE_DURATION = 480


def _normalize_name(name: str | None) -> str:
    return (name or "").strip()


def get_or_create_organization(
    db: Session, slug: str, name: str | None = None, timezone: str | None = None
) -> Organization:
    normalized_slug = (slug or "").strip().lower()
    if not normalized_slug:
        raise ValidationError("Organization slug is required")
    org = db.execute(
        select(Organization).where(Organization.slug == normalized_slug)
    ).scalar_one_or_none()
    if org:
        return org

    tz_name = (timezone or settings.DEFAULT_ORG_TIMEZONE).strip()
    get_zone(tz_name)
    org = Organization(
        slug=normalized_slug,
        name=_normalize_name(name) or normalized_slug,
        timezone=tz_name,
    )
    db.add(org)
    db.commit()
    db.refresh(org)
    log.info("organization_created", org_id=org.id, slug=org.slug)
    return org


def get_organization(db: Session, org_id: int) -> Organization:
    org = db.get(Organization, org_id)
    if org is None:
        raise NotFound("organization", org_id)
    return org


def set_organization_timezone(db: Session, ctx: TenantContext, timezone: str) -> Organization:
    org = get_organization(db, ctx.org_id)
    tz_name = (timezone or "").strip()
    get_zone(tz_name)
    org.timezone = tz_name
    db.commit()
    db.refresh(org)
    return org


# Members


def get_member(
    db: Session, ctx: TenantContext, member_id: int, require_active: bool = False
) -> Member:
    member = db.execute(
        select(Member).where(Member.org_id == ctx.org_id, Member.id == member_id)
    ).scalar_one_or_none()
    if member is None:
        raise NotFound("member", member_id)
    if require_active and not member.is_active:
        raise Inactive("member", member_id)
    return member


def list_members(
    db: Session, ctx: TenantContext, include_inactive: bool = False, q: str | None = None
) -> list[Member]:
    stmt = select(Member).where(Member.org_id == ctx.org_id)
    if not include_inactive:
        stmt = stmt.where(Member.is_active.is_(True))
    if q:
        stmt = stmt.where(Member.name.ilike(f"%{q.strip()}%"))
    return db.execute(stmt.order_by(Member.name.asc(), Member.id.asc())).scalars().all()


def create_member(
    db: Session, ctx: TenantContext, name: str, external_id: str | None = None
) -> Member:
    normalized_name = _normalize_name(name)
    if not normalized_name:
        raise ValidationError("Member name is required")

    existing = db.execute(
        select(Member).where(Member.org_id == ctx.org_id, Member.name == normalized_name)
    ).scalar_one_or_none()
    if existing:
        if existing.is_active:
            raise InvalidState("Member already exists")
        existing.is_active = True
        db.commit()
        db.refresh(existing)
        return existing

    member = Member(
        org_id=ctx.org_id,
        name=normalized_name,
        external_id=(external_id or "").strip() or None,
        is_active=True,
        schedule_version=0,
    )
    db.add(member)
    db.commit()
    db.refresh(member)
    log.info("member_created", org_id=ctx.org_id, member_id=member.id)
    return member


def update_member(
    db: Session,
    ctx: TenantContext,
    member_id: int,
    *,
    name: str | None = None,
    is_active: bool | None = None,
) -> Member:
    member = get_member(db, ctx, member_id)
    if name is not None:
        normalized_name = _normalize_name(name)
        if not normalized_name:
            raise ValidationError("Member name is required")
        if normalized_name != member.name:
            duplicate = db.execute(
                select(Member).where(
                    Member.org_id == ctx.org_id, Member.name == normalized_name
                )
            ).scalar_one_or_none()
            if duplicate and duplicate.id != member.id:
                raise InvalidState("Member name already exists")
            member.name = normalized_name
    if is_active is not None:
        member.is_active = bool(is_active)
    db.commit()
    db.refresh(member)
    return member


def deactivate_member(db: Session, ctx: TenantContext, member_id: int) -> Member:
    member = get_member(db, ctx, member_id)
    if member.is_active:
        member.is_active = False
        db.commit()
        db.refresh(member)
        log.info("member_deactivated", org_id=ctx.org_id, member_id=member.id)
    return member


def upsert_member_from_identity(
    db: Session,
    ctx: TenantContext,
    external_id: str,
    name: str,
    is_active: bool = True,
) -> Member:
    """Idempotent sync of an identity-provider user into a local member."""
    key = (external_id or "").strip()
    if not key:
        raise ValidationError("external_id is required")
    normalized_name = _normalize_name(name)
    member = db.execute(
        select(Member).where(Member.org_id == ctx.org_id, Member.external_id == key)
    ).scalar_one_or_none()
    if member is None and normalized_name:
        # An unlinked member with the same name is the same person.
        namesake = db.execute(
            select(Member).where(Member.org_id == ctx.org_id, Member.name == normalized_name)
        ).scalar_one_or_none()
        if namesake is not None:
            if namesake.external_id is not None:
                raise InvalidState("Member name is already linked to another identity")
            namesake.external_id = key
            member = namesake
    if member is None:
        member = Member(org_id=ctx.org_id, external_id=key, schedule_version=0)
        db.add(member)
    member.name = normalized_name or member.name or key
    member.is_active = bool(is_active)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise InvalidState("Member name is already taken") from None
    db.refresh(member)
    log.info("member_identity_synced", org_id=ctx.org_id, member_id=member.id)
    return member


# Services


def get_service(
    db: Session, ctx: TenantContext, service_id: int, require_active: bool = False
) -> Service:
    service = db.execute(
        select(Service).where(Service.org_id == ctx.org_id, Service.id == service_id)
    ).scalar_one_or_none()
    if service is None:
        raise NotFound("service", service_id)
    if require_active and not service.is_active:
        raise Inactive("service", service_id)
    return service


def list_services(
    db: Session, ctx: TenantContext, include_inactive: bool = False
) -> list[Service]:
    stmt = select(Service).where(Service.org_id == ctx.org_id)
    if not include_inactive:
        stmt = stmt.where(Service.is_active.is_(True))
    return db.execute(stmt.order_by(Service.name.asc(), Service.id.asc())).scalars().all()


def _validate_service_duration(duration_minutes: int) -> int:
    value = int(duration_minutes)
    if value < MIN_SERVICE_DURATION or value > MAX_SERVICE_DURATION:
        raise ValidationError(
            f"Service duration must be between {MIN_SERVICE_DURATION} and "
            f"{MAX_SERVICE_DURATION} minutes"
        )
    return value


def create_service(
    db: Session,
    ctx: TenantContext,
    name: str,
    duration_minutes: int,
    price: float | Decimal = 0,
    category_id: int | None = None,
) -> Service:
    normalized_name = _normalize_name(name)
    if not normalized_name:
        raise ValidationError("Service name is required")
    if Decimal(str(price)) < 0:
        raise ValidationError("Service price must be >= 0")
    existing = db.execute(
        select(Service).where(Service.org_id == ctx.org_id, Service.name == normalized_name)
    ).scalar_one_or_none()
    if existing:
        raise InvalidState("Service already exists")

    service = Service(
        org_id=ctx.org_id,
        name=normalized_name,
        duration_minutes=_validate_service_duration(duration_minutes),
        price=Decimal(str(price)),
        category_id=category_id,
        is_active=True,
    )
    db.add(service)
    db.commit()
    db.refresh(service)
    return service


def deactivate_service(db: Session, ctx: TenantContext, service_id: int) -> Service:
    service = get_service(db, ctx, service_id)
    if service.is_active:
        service.is_active = False
        db.commit()
        db.refresh(service)
    return service


# Member <-> service assignments


def assign_service(
    db: Session, ctx: TenantContext, member_id: int, service_id: int
) -> MemberService:
    get_member(db, ctx, member_id)
    get_service(db, ctx, service_id)
    row = db.execute(
        select(MemberService).where(
            MemberService.org_id == ctx.org_id,
            MemberService.member_id == member_id,
            MemberService.service_id == service_id,
        )
    ).scalar_one_or_none()
    if row:
        return row
    row = MemberService(org_id=ctx.org_id, member_id=member_id, service_id=service_id)
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def unassign_service(db: Session, ctx: TenantContext, member_id: int, service_id: int) -> bool:
    row = db.execute(
        select(MemberService).where(
            MemberService.org_id == ctx.org_id,
            MemberService.member_id == member_id,
            MemberService.service_id == service_id,
        )
    ).scalar_one_or_none()
    if row is None:
        return False
    db.delete(row)
    db.commit()
    return True


def list_member_service_ids(db: Session, org_id: int, member_id: int) -> list[int]:
    return list(
        db.execute(
            select(MemberService.service_id).where(
                MemberService.org_id == org_id, MemberService.member_id == member_id
            )
        )
        .scalars()
        .all()
    )


def member_provides_service(db: Session, org_id: int, member_id: int, service_id: int) -> bool:
    """A member with no assignments may perform any service."""
    total = db.execute(
        select(func.count(MemberService.id)).where(
            MemberService.org_id == org_id, MemberService.member_id == member_id
        )
    ).scalar_one()
    if int(total or 0) == 0:
        return True
    match = db.execute(
        select(MemberService.id).where(
            MemberService.org_id == org_id,
            MemberService.member_id == member_id,
            MemberService.service_id == service_id,
        )
    ).first()
    return match is not None


def resolve_bookable(
    db: Session, ctx: TenantContext, member_id: int, service_id: int
) -> tuple[Member, Service]:
    member = get_member(db, ctx, member_id, require_active=True)
    service = get_service(db, ctx, service_id, require_active=True)
    if not member_provides_service(db, ctx.org_id, member.id, service.id):
        raise InvalidState("Member does not provide this service")
    return member, service


# Clients


def get_client(db: Session, ctx: TenantContext, client_id: int) -> Client:
    client = db.execute(
        select(Client).where(Client.org_id == ctx.org_id, Client.id == client_id)
    ).scalar_one_or_none()
    if client is None:
        raise NotFound("client", client_id)
    return client


def create_client(
    db: Session, ctx: TenantContext, name: str, phone: str | None = None
) -> Client:
    normalized_name = _normalize_name(name)
    if not normalized_name:
        raise ValidationError("Client name is required")
    client = Client(
        org_id=ctx.org_id, name=normalized_name, phone=(phone or "").strip() or None
    )
    db.add(client)
    db.commit()
    db.refresh(client)
    return client
