import math
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .config import settings
from .errors import ValidationError


@dataclass(frozen=True)
class Page:
    items: list
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        if self.total == 0:
            return 0
        return math.ceil(self.total / self.limit)

    def meta(self) -> dict:
        return {
            "page": self.page,
            "limit": self.limit,
            "total": self.total,
            "totalPages": self.total_pages,
        }


def normalize_page(page: int | None, limit: int | None) -> tuple[int, int]:
    resolved_page = int(page or 1)
    resolved_limit = int(limit or settings.DEFAULT_PAGE_LIMIT)
    if resolved_page < 1:
        raise ValidationError("page must be >= 1")
    if resolved_limit < 1 or resolved_limit > settings.MAX_PAGE_LIMIT:
        raise ValidationError(f"limit must be between 1 and {settings.MAX_PAGE_LIMIT}")
    return resolved_page, resolved_limit


def paginate(db: Session, stmt, page: int | None = None, limit: int | None = None) -> Page:
    """Run an ordered ``select()`` for one page and count the full result."""
    resolved_page, resolved_limit = normalize_page(page, limit)
    total = db.execute(
        select(func.count()).select_from(stmt.order_by(None).subquery())
    ).scalar_one()
    items = (
        db.execute(stmt.offset((resolved_page - 1) * resolved_limit).limit(resolved_limit))
        .scalars()
        .all()
    )
    return Page(items=list(items), page=resolved_page, limit=resolved_limit, total=int(total))
