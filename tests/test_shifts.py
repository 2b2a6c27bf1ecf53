from datetime import date, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from shiftbook import shifts, team
from shiftbook.core.conflicts import ENTITY_SHIFT, find_conflicts
from shiftbook.errors import ConflictError, Inactive, InvalidTransition, NotFound, ValidationError
from shiftbook.db import init_db
from shiftbook.request_context import TenantContext

TODAY = date.today()
# First Monday at least a week out
MONDAY = TODAY + timedelta(days=7 + (7 - TODAY.weekday()) % 7)


def make_session(tmp_path):
    db_path = tmp_path / "test_shiftbook_shifts.db"
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    init_db(bind=engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)()


def seed(db):
    org = team.get_or_create_organization(db, "shifts-org", timezone="UTC")
    ctx = TenantContext(org_id=org.id, user_id="scheduler")
    member = team.create_member(db, ctx, "Nina")
    return ctx, member


def add(db, ctx, member, day=MONDAY, start="09:00", end="17:00", **kwargs):
    return shifts.create_shift(
        db, ctx, member_id=member.id, day=day, start_time=start, end_time=end, **kwargs
    )


def test_duration_bounds(tmp_path):
    db = make_session(tmp_path)
    ctx, member = seed(db)

    with pytest.raises(ValidationError):
        add(db, ctx, member, start="09:00", end="09:20")
    with pytest.raises(ValidationError):
        add(db, ctx, member, start="06:00", end="18:30")
    with pytest.raises(ValidationError):
        add(db, ctx, member, start="10:00", end="09:00")

    short = add(db, ctx, member, start="06:00", end="06:30")
    long = add(db, ctx, member, day=MONDAY + timedelta(days=1), start="06:00", end="18:00")
    assert short.duration_minutes == 30
    assert long.duration_minutes == 720


def test_create_shift_defaults_and_breaks(tmp_path):
    db = make_session(tmp_path)
    ctx, member = seed(db)

    shift = add(
        db,
        ctx,
        member,
        title="Morning",
        breaks=[
            {"start_time": "15:00", "end_time": "15:15"},
            {"startTime": "12:00", "endTime": "12:30", "title": "Lunch"},
        ],
    )

    assert shift.status == "SCHEDULED"
    assert shift.color == "#3B82F6"
    assert shift.created_by_user_id == "scheduler"
    assert shift.is_recurring is False
    assert shift.breaks == [
        {"startTime": "12:00", "endTime": "12:30", "title": "Lunch"},
        {"startTime": "15:00", "endTime": "15:15"},
    ]


@pytest.mark.parametrize(
    "breaks",
    [
        [{"startTime": "08:00", "endTime": "09:30"}],
        [{"startTime": "12:00", "endTime": "12:00"}],
        [{"startTime": "12:00", "endTime": "13:00"}, {"startTime": "12:30", "endTime": "13:30"}],
        [{"startTime": f"{h}:00", "endTime": f"{h}:10"} for h in range(10, 16)],
        [{"startTime": "12:00", "endTime": "12:30", "title": "x" * 51}],
    ],
)
def test_invalid_breaks_are_rejected(tmp_path, breaks):
    db = make_session(tmp_path)
    ctx, member = seed(db)

    with pytest.raises(ValidationError):
        add(db, ctx, member, breaks=breaks)


def test_past_dates_and_bad_colors_are_rejected(tmp_path):
    db = make_session(tmp_path)
    ctx, member = seed(db)

    with pytest.raises(ValidationError):
        add(db, ctx, member, day=TODAY - timedelta(days=2))
    with pytest.raises(ValidationError):
        add(db, ctx, member, color="blue")


def test_overlapping_shifts_conflict_regardless_of_breaks(tmp_path):
    db = make_session(tmp_path)
    ctx, member = seed(db)
    first = add(db, ctx, member, breaks=[{"startTime": "12:00", "endTime": "13:00"}])

    # A shift that fits exactly into the first one's break still overlaps it
    with pytest.raises(ConflictError) as exc_info:
        add(db, ctx, member, start="12:00", end="13:00")
    assert exc_info.value.entity_id == first.id

    back_to_back = add(db, ctx, member, start="17:00", end="18:00")
    assert back_to_back.id != first.id

    other = team.create_member(db, ctx, "Ola")
    assert add(db, ctx, other).member_id == other.id


def test_find_conflicts_scopes_by_entity_type_and_tenant(tmp_path):
    db = make_session(tmp_path)
    ctx, member = seed(db)
    shift = add(db, ctx, member)
    window_start, window_end = shifts.shift_window(db, ctx.org_id, MONDAY, "10:00", "11:00")

    found = find_conflicts(db, ctx.org_id, member.id, window_start, window_end)
    assert [(c.entity_type, c.entity_id) for c in found] == [(ENTITY_SHIFT, shift.id)]
    assert find_conflicts(
        db, ctx.org_id, member.id, window_start, window_end, entity_types=("appointment",)
    ) == []
    assert find_conflicts(
        db, ctx.org_id, member.id, window_start, window_end,
        exclude_id=shift.id, exclude_type=ENTITY_SHIFT,
    ) == []
    assert find_conflicts(db, ctx.org_id, member.id, window_end, window_start) == []

    other_org = team.get_or_create_organization(db, "elsewhere", timezone="UTC")
    assert find_conflicts(db, other_org.id, member.id, window_start, window_end) == []
    with pytest.raises(TypeError):
        find_conflicts(db, "1", member.id, window_start, window_end)


def test_inactive_member_cannot_get_shifts(tmp_path):
    db = make_session(tmp_path)
    ctx, member = seed(db)
    team.deactivate_member(db, ctx, member.id)

    with pytest.raises(Inactive):
        add(db, ctx, member)


def test_update_shift_moves_and_rechecks_conflicts(tmp_path):
    db = make_session(tmp_path)
    ctx, member = seed(db)
    morning = add(db, ctx, member, start="08:00", end="12:00")
    evening = add(db, ctx, member, start="16:00", end="20:00")

    with pytest.raises(ConflictError):
        shifts.update_shift(db, ctx, evening.id, start_time="11:00")

    moved = shifts.update_shift(db, ctx, evening.id, start_time="13:00", title="Late")
    assert moved.start_time == "13:00"
    assert moved.duration_minutes == 420
    assert moved.title == "Late"

    # Same window as itself is not a conflict
    same = shifts.update_shift(db, ctx, morning.id, start_time="08:00", end_time="12:00")
    assert same.id == morning.id


def test_terminal_shift_cannot_move_or_change_status(tmp_path):
    db = make_session(tmp_path)
    ctx, member = seed(db)
    shift = add(db, ctx, member)

    with pytest.raises(InvalidTransition):
        shifts.update_shift(db, ctx, shift.id, status="COMPLETED")

    shifts.update_shift(db, ctx, shift.id, status="cancelled")
    with pytest.raises(InvalidTransition):
        shifts.update_shift(db, ctx, shift.id, start_time="10:00")
    with pytest.raises(InvalidTransition):
        shifts.update_shift(db, ctx, shift.id, status="SCHEDULED")

    renamed = shifts.update_shift(db, ctx, shift.id, title="Called off")
    assert renamed.title == "Called off"

    # Cancelled shifts stop blocking the window
    replacement = add(db, ctx, member)
    assert replacement.status == "SCHEDULED"


def test_delete_shift_and_not_found(tmp_path):
    db = make_session(tmp_path)
    ctx, member = seed(db)
    shift = add(db, ctx, member)

    assert shifts.delete_shift(db, ctx, shift.id) == 1
    with pytest.raises(NotFound):
        shifts.get_shift(db, ctx, shift.id)
    with pytest.raises(NotFound):
        shifts.delete_shift(db, ctx, shift.id)


def test_list_shifts_filters_and_paginates(tmp_path):
    db = make_session(tmp_path)
    ctx, member = seed(db)
    other = team.create_member(db, ctx, "Ola")
    for offset in range(3):
        add(db, ctx, member, day=MONDAY + timedelta(days=offset))
    add(db, ctx, other)

    page = shifts.list_shifts(db, ctx, member_id=member.id, limit=2)
    assert page.total == 3
    assert page.total_pages == 2
    assert [row.date for row in page.items] == [MONDAY, MONDAY + timedelta(days=1)]

    ranged = shifts.list_shifts(db, ctx, start_date=MONDAY, end_date=MONDAY)
    assert ranged.total == 2

    with pytest.raises(ValidationError):
        shifts.list_shifts(db, ctx, limit=500)


def test_weekly_schedule_and_stats(tmp_path):
    db = make_session(tmp_path)
    ctx, member = seed(db)
    add(db, ctx, member, start="09:00", end="17:00")
    add(db, ctx, member, start="18:00", end="20:00")
    wednesday = add(db, ctx, member, day=MONDAY + timedelta(days=2), start="10:00", end="14:00")
    shifts.update_shift(db, ctx, wednesday.id, status="CANCELLED")

    schedule = shifts.get_weekly_schedule(db, ctx, MONDAY)
    assert schedule["week_end"] == MONDAY + timedelta(days=6)
    assert [day["day_name"] for day in schedule["days"]][:3] == ["Monday", "Tuesday", "Wednesday"]
    assert schedule["days"][0]["total_hours"] == 10.0
    assert len(schedule["days"][2]["shifts"]) == 1
    assert schedule["days"][2]["total_hours"] == 0.0

    with pytest.raises(ValidationError):
        shifts.get_weekly_schedule(db, ctx, MONDAY + timedelta(days=1))

    stats = shifts.get_shift_stats(db, ctx, member_id=member.id)
    assert stats["total_shifts"] == 3
    assert stats["scheduled_shifts"] == 2
    assert stats["cancelled_shifts"] == 1
    assert stats["total_hours"] == 14.0
    assert stats["average_shift_duration"] == pytest.approx(4.67)
