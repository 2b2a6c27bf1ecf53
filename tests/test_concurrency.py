import gc
import threading
from datetime import date, datetime, time, timedelta

import pytest
from sqlalchemy import create_engine, update
from sqlalchemy.orm import sessionmaker

from shiftbook import appointments, team
from shiftbook.core import locking
from shiftbook.core.locking import (
    member_schedule_lock,
    read_schedule_version,
    write_member_schedule,
)
from shiftbook.db import enable_sqlite_wal, init_db
from shiftbook.errors import ConflictError
from shiftbook.models import Member
from shiftbook.request_context import TenantContext
from shiftbook.shifts import create_shift

DAY = date.today() + timedelta(days=12)


def make_session_factory(tmp_path):
    db_path = tmp_path / "test_shiftbook_concurrency.db"
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    enable_sqlite_wal(engine)
    init_db(bind=engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


def seed(session_factory):
    with session_factory() as db:
        org = team.get_or_create_organization(db, "race", timezone="UTC")
        ctx = TenantContext(org_id=org.id, user_id="manager-1")
        member = team.create_member(db, ctx, "Nina")
        service = team.create_service(db, ctx, "Haircut", 60)
        client = team.create_client(db, ctx, "Client A")
        create_shift(db, ctx, member_id=member.id, day=DAY, start_time="09:00", end_time="17:00")
        return ctx, member.id, service.id, client.id


def test_parallel_bookings_of_same_window_yield_one_winner(tmp_path):
    session_factory = make_session_factory(tmp_path)
    ctx, member_id, service_id, client_id = seed(session_factory)
    start = datetime.combine(DAY, time(10, 0))
    barrier = threading.Barrier(2)
    outcomes = []
    outcomes_lock = threading.Lock()

    def worker():
        with session_factory() as db:
            barrier.wait()
            try:
                appointment = appointments.create_appointment(
                    db,
                    ctx,
                    member_id=member_id,
                    service_id=service_id,
                    start_time=start,
                    client_id=client_id,
                )
                result = ("ok", appointment.id)
            except ConflictError as exc:
                result = ("conflict", exc.code)
            with outcomes_lock:
                outcomes.append(result)

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(kind for kind, _ in outcomes) == ["conflict", "ok"]
    with session_factory() as db:
        assert appointments.list_appointments(db, ctx, member_id=member_id).total == 1


def test_lost_version_claim_reruns_the_write(tmp_path):
    session_factory = make_session_factory(tmp_path)
    ctx, member_id, _, _ = seed(session_factory)
    calls = []

    def bump_from_another_process():
        with session_factory() as other:
            other.execute(
                update(Member)
                .where(Member.id == member_id)
                .values(schedule_version=Member.schedule_version + 1)
            )
            other.commit()

    def apply():
        calls.append(len(calls) + 1)
        if len(calls) == 1:
            bump_from_another_process()
        return "written"

    with session_factory() as db:
        before = read_schedule_version(db, ctx.org_id, member_id)
        assert write_member_schedule(db, ctx.org_id, member_id, apply) == "written"
        assert calls == [1, 2]
        assert read_schedule_version(db, ctx.org_id, member_id) == before + 2


def test_write_gives_up_after_configured_retries(tmp_path, monkeypatch):
    from shiftbook.config import settings

    monkeypatch.setattr(settings, "BOOKING_WRITE_RETRIES", 2)
    session_factory = make_session_factory(tmp_path)
    ctx, member_id, _, _ = seed(session_factory)
    calls = []

    def apply():
        calls.append(1)
        with session_factory() as other:
            other.execute(
                update(Member)
                .where(Member.id == member_id)
                .values(schedule_version=Member.schedule_version + 1)
            )
            other.commit()

    with session_factory() as db:
        with pytest.raises(ConflictError) as exc_info:
            write_member_schedule(db, ctx.org_id, member_id, apply)

    assert len(calls) == 2
    assert exc_info.value.entity_type == "member"


def test_member_lock_registry_drops_idle_locks():
    key = (9101, 7)
    with member_schedule_lock(*key):
        assert key in locking._member_locks
    gc.collect()
    assert key not in locking._member_locks
