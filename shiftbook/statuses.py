from enum import Enum

from .errors import InvalidTransition, ValidationError


class AppointmentStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    CONFIRMED = "CONFIRMED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"


class ShiftStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    CONFIRMED = "CONFIRMED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"


class RecurrencePattern(str, Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    BI_WEEKLY = "BI_WEEKLY"
    MONTHLY = "MONTHLY"
    CUSTOM = "CUSTOM"


# Shared by appointments and shifts; keyed by the raw value stored in the db.
ALLOWED_STATUS_TRANSITIONS: dict[str, set[str]] = {
    "SCHEDULED": {"CONFIRMED", "IN_PROGRESS", "CANCELLED", "NO_SHOW"},
    "CONFIRMED": {"IN_PROGRESS", "CANCELLED", "NO_SHOW"},
    "IN_PROGRESS": {"COMPLETED", "NO_SHOW"},
    "COMPLETED": set(),
    "CANCELLED": set(),
    "NO_SHOW": set(),
}
TERMINAL_STATUSES = frozenset(k for k, v in ALLOWED_STATUS_TRANSITIONS.items() if not v)


def normalize_status(value, enum_cls=AppointmentStatus) -> str:
    raw = value.value if isinstance(value, Enum) else str(value or "")
    normalized = raw.strip().upper()
    try:
        return enum_cls(normalized).value
    except ValueError:
        raise ValidationError(f"Invalid status: {raw}") from None


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def ensure_transition(current: str, target: str) -> None:
    if current in TERMINAL_STATUSES:
        raise InvalidTransition(current, target if target != current else None)
    if target == current:
        return
    if target not in ALLOWED_STATUS_TRANSITIONS.get(current, set()):
        raise InvalidTransition(current, target)
