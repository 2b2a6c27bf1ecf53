from dataclasses import dataclass


@dataclass(frozen=True)
class TenantContext:
    """Verified caller identity, passed explicitly into every engine call."""

    org_id: int
    user_id: str | None = None

    def __post_init__(self):
        if not isinstance(self.org_id, int) or isinstance(self.org_id, bool) or self.org_id <= 0:
            # Tenant scoping is a programming contract, not a recoverable input error
            raise TypeError(f"TenantContext.org_id must be a positive int, got {self.org_id!r}")

    @property
    def actor(self) -> str | None:
        return (self.user_id or "").strip() or None
