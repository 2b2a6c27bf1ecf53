"""Per-member serialization for schedule writes.

Two layers: an in-process lock keyed by ``(org_id, member_id)`` so threads in
one worker never interleave their check-then-write, and an optimistic claim on
``Member.schedule_version`` so writers in other processes lose cleanly and
retry instead of double-booking.
"""

from contextlib import contextmanager
from threading import Lock
from weakref import WeakValueDictionary

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import ConflictError
from ..models import Member

log = structlog.get_logger("shiftbook.locking")

_registry_lock = Lock()
# Entries vanish once no thread holds or waits on the lock.
_member_locks: "WeakValueDictionary[tuple[int, int], Lock]" = WeakValueDictionary()


def _lock_for(org_id: int, member_id: int) -> Lock:
    key = (int(org_id), int(member_id))
    with _registry_lock:
        lock = _member_locks.get(key)
        if lock is None:
            lock = Lock()
            _member_locks[key] = lock
        return lock


@contextmanager
def member_schedule_lock(org_id: int, member_id: int):
    lock = _lock_for(org_id, member_id)
    with lock:
        yield


def read_schedule_version(db: Session, org_id: int, member_id: int) -> int:
    version = db.scalar(
        select(Member.schedule_version).where(Member.id == member_id, Member.org_id == org_id)
    )
    return int(version or 0)


def claim_member_schedule(db: Session, org_id: int, member_id: int, expected_version: int) -> bool:
    result = db.execute(
        update(Member)
        .where(
            Member.id == member_id,
            Member.org_id == org_id,
            Member.schedule_version == expected_version,
        )
        .values(schedule_version=expected_version + 1)
        .execution_options(synchronize_session=False)
    )
    claimed = result.rowcount == 1
    if not claimed:
        log.warning(
            "schedule_claim_lost",
            org_id=org_id,
            member_id=member_id,
            expected_version=expected_version,
        )
    return claimed


def write_member_schedule(db: Session, org_id: int, member_id: int, apply):
    """Run ``apply`` (check + stage changes) for one member under the member
    lock and commit it only if the optimistic version claim still holds.

    ``apply`` is re-run from scratch after a lost claim, so it must reload
    whatever it mutates.
    """
    attempts = max(1, int(settings.BOOKING_WRITE_RETRIES))
    with member_schedule_lock(org_id, member_id):
        for attempt in range(1, attempts + 1):
            version = read_schedule_version(db, org_id, member_id)
            try:
                result = apply()
                claimed = claim_member_schedule(db, org_id, member_id, version)
            except OperationalError:
                # Another process holds the write lock; same as a lost claim
                db.rollback()
                log.warning(
                    "schedule_write_busy", org_id=org_id, member_id=member_id, attempt=attempt
                )
                continue
            except Exception:
                db.rollback()
                raise
            if claimed:
                db.commit()
                return result
            db.rollback()
            log.warning("schedule_write_retry", org_id=org_id, member_id=member_id, attempt=attempt)
    raise ConflictError(
        "Member schedule changed concurrently, please retry",
        entity_type="member",
        entity_id=member_id,
    )
