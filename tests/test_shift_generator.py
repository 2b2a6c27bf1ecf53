from datetime import date, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from shiftbook import shift_generator, shifts, team
from shiftbook.db import init_db
from shiftbook.errors import NotFound, ValidationError
from shiftbook.request_context import TenantContext
from shiftbook.shift_generator import RecurrenceSpec, occurrence_dates, validate_recurrence

TODAY = date.today()
MONDAY = TODAY + timedelta(days=7 + (7 - TODAY.weekday()) % 7)


def make_session(tmp_path):
    db_path = tmp_path / "test_shiftbook_generator.db"
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    init_db(bind=engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)()


def seed(db):
    org = team.get_or_create_organization(db, "generator-org", timezone="UTC")
    ctx = TenantContext(org_id=org.id, user_id="scheduler")
    member = team.create_member(db, ctx, "Nina")
    return ctx, member


def recurring(db, ctx, member, spec, day=MONDAY, start="09:00", end="17:00"):
    return shift_generator.create_recurring_shift(
        db,
        ctx,
        member_id=member.id,
        day=day,
        start_time=start,
        end_time=end,
        recurrence=spec,
    )


def test_daily_series_skips_conflicting_day(tmp_path):
    db = make_session(tmp_path)
    ctx, member = seed(db)
    blocker = shifts.create_shift(
        db,
        ctx,
        member_id=member.id,
        day=MONDAY + timedelta(days=2),
        start_time="12:00",
        end_time="14:00",
    )

    result = recurring(db, ctx, member, RecurrenceSpec("DAILY", max_occurrences=5))

    assert result.total_shifts_created == 4
    assert [row.date for row in result.created_shifts] == [
        MONDAY,
        MONDAY + timedelta(days=1),
        MONDAY + timedelta(days=3),
        MONDAY + timedelta(days=4),
    ]
    assert len(result.skipped) == 1
    skipped = result.skipped[0]
    assert skipped["date"] == MONDAY + timedelta(days=2)
    assert skipped["entity_type"] == "shift"
    assert skipped["entity_id"] == blocker.id

    root = result.created_shifts[0]
    assert all(row.is_recurring for row in result.created_shifts)
    assert all(row.parent_shift_id == root.id for row in result.created_shifts)
    assert all(row.recurrence_pattern == "DAILY" for row in result.created_shifts)


def test_weekly_series_stops_at_end_date(tmp_path):
    db = make_session(tmp_path)
    ctx, member = seed(db)

    result = recurring(
        db, ctx, member, RecurrenceSpec("weekly", end_date=MONDAY + timedelta(days=20))
    )

    assert [row.date for row in result.created_shifts] == [
        MONDAY,
        MONDAY + timedelta(days=7),
        MONDAY + timedelta(days=14),
    ]


def test_custom_pattern_filters_days_of_week():
    base = date(2030, 1, 7)  # Monday
    spec = validate_recurrence(
        RecurrenceSpec("CUSTOM", max_occurrences=4, interval=1, days_of_week=[1, 3]), base
    )

    assert list(occurrence_dates(spec, base)) == [
        date(2030, 1, 7),
        date(2030, 1, 9),
        date(2030, 1, 14),
        date(2030, 1, 16),
    ]


def test_monthly_occurrences_clamp_to_month_end():
    base = date(2030, 1, 31)
    spec = validate_recurrence(RecurrenceSpec("MONTHLY", max_occurrences=3), base)

    assert list(occurrence_dates(spec, base)) == [
        date(2030, 1, 31),
        date(2030, 2, 28),
        date(2030, 3, 31),
    ]


@pytest.mark.parametrize(
    "spec",
    [
        RecurrenceSpec("YEARLY", max_occurrences=3),
        RecurrenceSpec("DAILY"),
        RecurrenceSpec("DAILY", max_occurrences=0),
        RecurrenceSpec("DAILY", max_occurrences=366),
        RecurrenceSpec("DAILY", end_date=date(2029, 12, 31)),
        RecurrenceSpec("CUSTOM", max_occurrences=3, interval=31),
        RecurrenceSpec("CUSTOM", max_occurrences=3, days_of_week=[7]),
    ],
)
def test_invalid_recurrence_is_rejected(spec):
    with pytest.raises(ValidationError):
        validate_recurrence(spec, date(2030, 1, 1))


def test_deleting_series_root_removes_whole_series(tmp_path):
    db = make_session(tmp_path)
    ctx, member = seed(db)
    result = recurring(db, ctx, member, RecurrenceSpec("DAILY", max_occurrences=3))
    root, second, _ = result.created_shifts

    assert shifts.delete_shift(db, ctx, second.id) == 1
    assert shifts.delete_shift(db, ctx, root.id) == 2
    assert shifts.list_shifts(db, ctx).total == 0


def test_bulk_update_reports_per_item_failures(tmp_path):
    db = make_session(tmp_path)
    ctx, member = seed(db)
    first = shifts.create_shift(
        db, ctx, member_id=member.id, day=MONDAY, start_time="09:00", end_time="12:00"
    )
    second = shifts.create_shift(
        db, ctx, member_id=member.id, day=MONDAY, start_time="13:00", end_time="17:00"
    )
    shifts.update_shift(db, ctx, second.id, status="CANCELLED")

    result = shift_generator.bulk_update_shifts(
        db, ctx, [first.id, second.id, 9999], status="CONFIRMED", color="#FF0000"
    )

    assert result.succeeded == [first.id]
    assert [(f["item"], f["code"]) for f in result.failed] == [
        (second.id, "invalid_transition"),
        (9999, "not_found"),
    ]
    db.expire_all()
    updated = shifts.get_shift(db, ctx, first.id)
    assert (updated.status, updated.color) == ("CONFIRMED", "#FF0000")
    assert shifts.get_shift(db, ctx, second.id).color == "#3B82F6"

    with pytest.raises(ValidationError):
        shift_generator.bulk_update_shifts(db, ctx, [first.id])
    with pytest.raises(ValidationError):
        shift_generator.bulk_update_shifts(db, ctx, list(range(1, 52)), color="#000000")


def test_bulk_delete_with_recurring_flag(tmp_path):
    db = make_session(tmp_path)
    ctx, member = seed(db)
    series = recurring(db, ctx, member, RecurrenceSpec("DAILY", max_occurrences=3))
    single = shifts.create_shift(
        db,
        ctx,
        member_id=member.id,
        day=MONDAY + timedelta(days=10),
        start_time="09:00",
        end_time="10:00",
    )
    middle = series.created_shifts[1].id
    tail = series.created_shifts[2].id

    result = shift_generator.bulk_delete_shifts(
        db, ctx, [middle, tail, single.id, 4242], delete_recurring=True
    )

    assert result.succeeded == [middle, tail, single.id]
    assert [f["item"] for f in result.failed] == [4242]
    assert shifts.list_shifts(db, ctx).total == 0


def test_copy_shifts_to_other_days(tmp_path):
    db = make_session(tmp_path)
    ctx, member = seed(db)
    other = team.create_member(db, ctx, "Ola")
    shifts.create_shift(
        db,
        ctx,
        member_id=member.id,
        day=MONDAY,
        start_time="09:00",
        end_time="13:00",
        title="Morning",
        breaks=[{"startTime": "11:00", "endTime": "11:15"}],
    )
    shifts.create_shift(
        db, ctx, member_id=other.id, day=MONDAY, start_time="12:00", end_time="18:00"
    )
    tuesday = MONDAY + timedelta(days=1)
    blocker = shifts.create_shift(
        db, ctx, member_id=other.id, day=tuesday, start_time="15:00", end_time="16:00"
    )

    result = shift_generator.copy_shifts(db, ctx, MONDAY, [tuesday, tuesday + timedelta(days=1)])

    assert len(result.succeeded) == 3
    assert len(result.failed) == 1
    assert result.failed[0]["code"] == "conflict"
    copied = result.succeeded[0]
    assert (copied.date, copied.title, copied.is_recurring) == (tuesday, "Morning", False)
    assert copied.breaks == [{"startTime": "11:00", "endTime": "11:15"}]

    overridden = shift_generator.copy_shifts(
        db, ctx, MONDAY, [tuesday], member_ids=[other.id], override_existing=True
    )
    assert len(overridden.succeeded) == 1
    db.expire_all()
    assert shifts.get_shift(db, ctx, blocker.id).status == "CANCELLED"


def test_copy_shifts_validation(tmp_path):
    db = make_session(tmp_path)
    ctx, member = seed(db)

    with pytest.raises(ValidationError):
        shift_generator.copy_shifts(db, ctx, MONDAY, [])
    with pytest.raises(ValidationError):
        shift_generator.copy_shifts(db, ctx, MONDAY, [MONDAY])
    with pytest.raises(ValidationError):
        shift_generator.copy_shifts(
            db, ctx, MONDAY, [MONDAY + timedelta(days=i) for i in range(1, 33)]
        )
    with pytest.raises(NotFound):
        shift_generator.copy_shifts(db, ctx, MONDAY, [MONDAY + timedelta(days=1)])
