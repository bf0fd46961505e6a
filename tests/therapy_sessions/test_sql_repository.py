import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from src.therapy_sessions.config import settings
from src.therapy_sessions.domain.errors import ConflictError, InvalidStateError, StoreError
from src.therapy_sessions.domain.models.session_request import SessionRequest, SessionRequestStatus, SessionRequestView
from src.therapy_sessions.infra.db.bootstrap import build_sql_repository, init_sql_repositories
from src.therapy_sessions.infra.db.inmemory import InMemorySessionRequestRepository
from src.therapy_sessions.infra.db.session import create_sqlalchemy_engine, create_sqlalchemy_session_factory
from src.therapy_sessions.infra.db.sql_session_requests import SqlSessionRequestRepository
from src.therapy_sessions.services.notifications.fanout import NotificationFanout
from src.therapy_sessions.services.session_requests.engine import SessionRequestEngine


@pytest.fixture
def sql_repository(tmp_path) -> SqlSessionRequestRepository:
    return build_sql_repository(f"sqlite:///{tmp_path / 'requests.db'}")


def _pending(child_id: str, *, minutes_ago: int = 0) -> SessionRequest:
    return SessionRequest(
        id=uuid4(),
        child_id=child_id,
        status=SessionRequestStatus.PENDING,
        description="Needs help with articulation",
        requested_at=datetime.now(timezone.utc) - timedelta(minutes=minutes_ago),
    )


async def test_add_and_get_round_trip(sql_repository):
    request = _pending("child-1")

    await sql_repository.add(request)
    loaded = await sql_repository.get(request.id)

    assert loaded is not None
    assert loaded.id == request.id
    assert loaded.status == SessionRequestStatus.PENDING
    assert loaded.requested_at == request.requested_at
    assert loaded.requested_at.tzinfo is not None


async def test_add_rejects_second_active_request_for_child(sql_repository):
    await sql_repository.add(_pending("child-1"))

    with pytest.raises(ConflictError):
        await sql_repository.add(_pending("child-1"))

    # Other children are unaffected.
    await sql_repository.add(_pending("child-2"))
    active = await sql_repository.list_by_status([SessionRequestStatus.PENDING])
    assert sorted(r.child_id for r in active) == ["child-1", "child-2"]


async def test_conditional_transition_only_applies_from_expected_state(sql_repository):
    request = _pending("child-1")
    await sql_repository.add(request)
    now = datetime.now(timezone.utc)

    accepted = await sql_repository.transition(
        request.id,
        expected=SessionRequestStatus.PENDING,
        changes={"status": SessionRequestStatus.IN_PROGRESS, "therapist_id": "t-1", "accepted_at": now},
    )
    assert accepted is not None
    assert accepted.status == SessionRequestStatus.IN_PROGRESS
    assert accepted.therapist_id == "t-1"

    again = await sql_repository.transition(
        request.id,
        expected=SessionRequestStatus.PENDING,
        changes={"status": SessionRequestStatus.IN_PROGRESS, "therapist_id": "t-2", "accepted_at": now},
    )
    assert again is None

    wrong_owner = await sql_repository.transition(
        request.id,
        expected=SessionRequestStatus.IN_PROGRESS,
        changes={"status": SessionRequestStatus.COMPLETED, "ended_at": now},
        therapist_id="t-2",
    )
    assert wrong_owner is None

    stored = await sql_repository.get(request.id)
    assert stored is not None
    assert stored.therapist_id == "t-1"
    assert stored.status == SessionRequestStatus.IN_PROGRESS


async def test_terminal_request_frees_the_child_slot(sql_repository):
    request = _pending("child-1")
    await sql_repository.add(request)
    await sql_repository.transition(
        request.id,
        expected=SessionRequestStatus.PENDING,
        changes={"status": SessionRequestStatus.DECLINED, "declined_at": datetime.now(timezone.utc)},
    )

    follow_up = _pending("child-1")
    await sql_repository.add(follow_up)

    latest = await sql_repository.latest_for_child("child-1")
    assert latest is not None
    assert latest.id == follow_up.id


async def test_latest_for_child_orders_by_request_time(sql_repository):
    older = _pending("child-1", minutes_ago=30)
    await sql_repository.add(older)
    await sql_repository.transition(
        older.id,
        expected=SessionRequestStatus.PENDING,
        changes={"status": SessionRequestStatus.CANCELLED, "cancelled_at": datetime.now(timezone.utc)},
    )
    newer = _pending("child-1")
    await sql_repository.add(newer)

    latest = await sql_repository.latest_for_child("child-1")
    assert latest is not None and latest.id == newer.id
    assert await sql_repository.latest_for_child("nobody") is None


async def test_engine_over_sql_store_allows_one_accept(sql_repository, directory, registry, child, therapist, other_therapist):
    engine = SessionRequestEngine(
        sql_repository,
        directory=directory,
        fanout=NotificationFanout(registry),
        pending_timeout_seconds=None,
    )
    created = await engine.create_request(child)

    results = await asyncio.gather(
        engine.accept_request(created.id, therapist.id),
        engine.accept_request(created.id, other_therapist.id),
        return_exceptions=True,
    )

    winners = [r for r in results if isinstance(r, SessionRequestView)]
    assert len(winners) == 1
    assert len([r for r in results if isinstance(r, InvalidStateError)]) == 1

    stored = await sql_repository.get(created.id)
    assert stored is not None
    assert stored.therapist_id == winners[0].therapist_id

    ended = await engine.end_session(created.id, winners[0].therapist_id)
    assert ended.requested_at <= ended.accepted_at <= ended.ended_at


def test_init_sql_repositories_is_noop_by_default(directory):
    engine = SessionRequestEngine(InMemorySessionRequestRepository(), directory=directory)

    assert init_sql_repositories("sqlite://", engine=engine) is False
    assert isinstance(engine.repository, InMemorySessionRequestRepository)


def test_init_sql_repositories_swaps_store_when_enabled(tmp_path, monkeypatch, directory):
    monkeypatch.setattr(settings, "use_sql_repos", True)
    engine = SessionRequestEngine(InMemorySessionRequestRepository(), directory=directory)

    assert init_sql_repositories(f"sqlite:///{tmp_path / 'boot.db'}", engine=engine) is True
    assert isinstance(engine.repository, SqlSessionRequestRepository)


async def test_database_errors_surface_as_store_error(tmp_path):
    # Tables were never created, so every statement fails inside SQLAlchemy.
    unmigrated = SqlSessionRequestRepository(
        create_sqlalchemy_session_factory(create_sqlalchemy_engine(f"sqlite:///{tmp_path / 'empty.db'}"))
    )

    with pytest.raises(StoreError):
        await unmigrated.add(_pending("child-1"))
    with pytest.raises(StoreError):
        await unmigrated.transition(
            uuid4(),
            expected=SessionRequestStatus.PENDING,
            changes={"status": SessionRequestStatus.CANCELLED},
        )
    with pytest.raises(StoreError):
        await unmigrated.list_by_status([SessionRequestStatus.PENDING])
