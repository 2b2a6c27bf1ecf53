"""Typed failures raised by the scheduling engine.

All of them subclass ``ValueError`` so callers that only care about "bad
request" can keep catching ``ValueError``; the HTTP layer maps each class to
its own status code.
"""


class SchedulingError(ValueError):
    status_code = 400
    code = "scheduling_error"

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        payload = {"detail": self.message, "code": self.code}
        payload.update({k: v for k, v in self.details.items() if v is not None})
        return payload


class ValidationError(SchedulingError):
    code = "validation_error"


class NotFound(SchedulingError):
    status_code = 404
    code = "not_found"

    def __init__(self, entity_type: str, entity_id=None, message: str | None = None):
        super().__init__(
            message or f"{entity_type.capitalize()} not found",
            entity_type=entity_type,
            entity_id=entity_id,
        )
        self.entity_type = entity_type
        self.entity_id = entity_id


class ConflictError(SchedulingError):
    status_code = 409
    code = "conflict"

    def __init__(self, message: str, entity_type: str | None = None, entity_id=None):
        super().__init__(message, entity_type=entity_type, entity_id=entity_id)
        self.entity_type = entity_type
        self.entity_id = entity_id


class InvalidTransition(SchedulingError):
    code = "invalid_transition"

    def __init__(self, current: str, target: str | None = None, message: str | None = None):
        if message is None:
            if target is None:
                message = f"Status {current} is terminal and cannot change"
            else:
                message = f"Invalid status transition: {current} -> {target}"
        super().__init__(message, current_status=current, target_status=target)
        self.current = current
        self.target = target


class InvalidState(SchedulingError):
    code = "invalid_state"


class Inactive(SchedulingError):
    status_code = 409
    code = "inactive"

    def __init__(self, entity_type: str, entity_id=None):
        super().__init__(
            f"{entity_type.capitalize()} is inactive",
            entity_type=entity_type,
            entity_id=entity_id,
        )
        self.entity_type = entity_type
        self.entity_id = entity_id
