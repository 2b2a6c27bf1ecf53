import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from shiftbook import team
from shiftbook.db import init_db
from shiftbook.errors import InvalidState, ValidationError
from shiftbook.request_context import TenantContext


def make_session(tmp_path):
    db_path = tmp_path / "test_shiftbook_team.db"
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    init_db(bind=engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)()


def make_context(db, slug="team-org"):
    org = team.get_or_create_organization(db, slug, timezone="UTC")
    return TenantContext(org_id=org.id, user_id="idp-sync")


def test_identity_sync_links_existing_member_with_same_name(tmp_path):
    db = make_session(tmp_path)
    ctx = make_context(db)
    existing = team.create_member(db, ctx, "Nina")

    linked = team.upsert_member_from_identity(db, ctx, "ext-1", "Nina")
    again = team.upsert_member_from_identity(db, ctx, "ext-1", "  Nina ")

    assert linked.id == existing.id
    assert again.id == existing.id
    assert again.external_id == "ext-1"
    assert [m.id for m in team.list_members(db, ctx, include_inactive=True)] == [existing.id]


def test_identity_sync_refuses_name_held_by_another_identity(tmp_path):
    db = make_session(tmp_path)
    ctx = make_context(db)
    nina = team.upsert_member_from_identity(db, ctx, "ext-1", "Nina")
    ola = team.upsert_member_from_identity(db, ctx, "ext-2", "Ola")

    with pytest.raises(InvalidState):
        team.upsert_member_from_identity(db, ctx, "ext-3", "Nina")
    with pytest.raises(InvalidState):
        team.upsert_member_from_identity(db, ctx, "ext-2", "Nina")

    db.expire_all()
    assert team.get_member(db, ctx, ola.id).name == "Ola"
    assert team.get_member(db, ctx, nina.id).external_id == "ext-1"
    assert len(team.list_members(db, ctx, include_inactive=True)) == 2

    renamed = team.upsert_member_from_identity(db, ctx, "ext-2", "Ola Nowak", is_active=False)
    assert (renamed.name, renamed.is_active) == ("Ola Nowak", False)


def test_identity_sync_requires_external_id(tmp_path):
    db = make_session(tmp_path)
    ctx = make_context(db)

    with pytest.raises(ValidationError):
        team.upsert_member_from_identity(db, ctx, "  ", "Nina")
