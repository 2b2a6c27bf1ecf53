from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..errors import ConflictError
from ..models import Appointment, Organization, Shift
from ..statuses import AppointmentStatus, ShiftStatus
from .timewindow import local_window_to_utc, overlaps, to_utc_naive

ENTITY_APPOINTMENT = "appointment"
ENTITY_SHIFT = "shift"
ALL_ENTITY_TYPES = (ENTITY_APPOINTMENT, ENTITY_SHIFT)


@dataclass(frozen=True)
class ConflictingEntity:
    entity_type: str
    entity_id: int
    start: datetime
    end: datetime
    label: str

    def to_dict(self) -> dict:
        return {
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "label": self.label,
        }


def org_timezone(db: Session, org_id: int) -> str:
    tz_name = db.scalar(select(Organization.timezone).where(Organization.id == org_id))
    return tz_name or "UTC"


def shift_window_utc(shift: Shift, tz_name: str) -> tuple[datetime, datetime]:
    return local_window_to_utc(shift.date, shift.start_time, shift.end_time, tz_name)


def _appointment_conflicts(
    db: Session,
    org_id: int,
    member_id: int,
    window_start: datetime,
    window_end: datetime,
    exclude_id: int | None,
) -> list[ConflictingEntity]:
    stmt = select(Appointment).where(
        Appointment.org_id == org_id,
        Appointment.member_id == member_id,
        Appointment.status != AppointmentStatus.CANCELLED.value,
        Appointment.start_time < window_end,
        Appointment.end_time > window_start,
    )
    if exclude_id is not None:
        stmt = stmt.where(Appointment.id != exclude_id)

    found = []
    for row in db.execute(stmt).scalars().all():
        found.append(
            ConflictingEntity(
                entity_type=ENTITY_APPOINTMENT,
                entity_id=row.id,
                start=row.start_time,
                end=row.end_time,
                label=f"appointment #{row.id} ({row.start_time:%Y-%m-%d %H:%M}"
                f"-{row.end_time:%H:%M} UTC)",
            )
        )
    return found


def _shift_conflicts(
    db: Session,
    org_id: int,
    member_id: int,
    window_start: datetime,
    window_end: datetime,
    exclude_id: int | None,
) -> list[ConflictingEntity]:
    tz_name = org_timezone(db, org_id)
    # Local dates can sit a day either side of the UTC window
    stmt = select(Shift).where(
        Shift.org_id == org_id,
        Shift.member_id == member_id,
        Shift.status != ShiftStatus.CANCELLED.value,
        Shift.date >= (window_start - timedelta(days=1)).date(),
        Shift.date <= (window_end + timedelta(days=1)).date(),
    )
    if exclude_id is not None:
        stmt = stmt.where(Shift.id != exclude_id)

    found = []
    for row in db.execute(stmt).scalars().all():
        shift_start, shift_end = shift_window_utc(row, tz_name)
        if not overlaps(window_start, window_end, shift_start, shift_end):
            continue
        found.append(
            ConflictingEntity(
                entity_type=ENTITY_SHIFT,
                entity_id=row.id,
                start=shift_start,
                end=shift_end,
                label=f"shift #{row.id} ({row.date.isoformat()} "
                f"{row.start_time}-{row.end_time})",
            )
        )
    return found


def find_conflicts(
    db: Session,
    org_id: int,
    member_id: int,
    window_start: datetime,
    window_end: datetime,
    exclude_id: int | None = None,
    entity_types: tuple[str, ...] = ALL_ENTITY_TYPES,
    exclude_type: str | None = None,
) -> list[ConflictingEntity]:
    """Return every non-cancelled appointment or shift of the member overlapping
    ``[window_start, window_end)``.

    ``exclude_id`` skips the record being re-validated. When both entity types
    are scanned, ``exclude_type`` says which table the id belongs to.
    """
    if not isinstance(org_id, int) or org_id <= 0:
        raise TypeError(f"org_id must be a positive int, got {org_id!r}")
    window_start = to_utc_naive(window_start)
    window_end = to_utc_naive(window_end)
    if window_end <= window_start:
        return []

    conflicts: list[ConflictingEntity] = []
    for entity_type in entity_types:
        skip = exclude_id if exclude_type in (None, entity_type) else None
        if entity_type == ENTITY_APPOINTMENT:
            conflicts.extend(
                _appointment_conflicts(db, org_id, member_id, window_start, window_end, skip)
            )
        elif entity_type == ENTITY_SHIFT:
            conflicts.extend(
                _shift_conflicts(db, org_id, member_id, window_start, window_end, skip)
            )
        else:
            raise ValueError(f"Unknown entity type: {entity_type}")
    conflicts.sort(key=lambda item: (item.start, item.entity_type, item.entity_id))
    return conflicts


def conflict_error(conflict: ConflictingEntity) -> ConflictError:
    return ConflictError(
        f"Time window overlaps existing {conflict.label}",
        entity_type=conflict.entity_type,
        entity_id=conflict.entity_id,
    )


def raise_on_conflict(
    db: Session,
    org_id: int,
    member_id: int,
    window_start: datetime,
    window_end: datetime,
    exclude_id: int | None = None,
    entity_types: tuple[str, ...] = ALL_ENTITY_TYPES,
    exclude_type: str | None = None,
) -> None:
    conflicts = find_conflicts(
        db,
        org_id,
        member_id,
        window_start,
        window_end,
        exclude_id=exclude_id,
        entity_types=entity_types,
        exclude_type=exclude_type,
    )
    if conflicts:
        raise conflict_error(conflicts[0])
