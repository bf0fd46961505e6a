from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping
from uuid import uuid4

import pytest

from src.therapy_sessions.domain.models.user import User, UserRole
from src.therapy_sessions.infra.db.inmemory import InMemorySessionRequestRepository
from src.therapy_sessions.services.directory.service import InMemoryDirectoryService, directory_service
from src.therapy_sessions.services.notifications.fanout import NotificationFanout
from src.therapy_sessions.services.presence.registry import PresenceRegistry
from src.therapy_sessions.services.session_requests.engine import SessionRequestEngine


class RecordingChannel:
    """DeliveryChannel that keeps every pushed message in memory."""

    def __init__(self) -> None:
        self.messages: List[Dict[str, Any]] = []

    async def send_json(self, data: Mapping[str, Any]) -> None:
        self.messages.append(dict(data))

    def types(self) -> List[str]:
        return [m["type"] for m in self.messages]

    def of_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [m["payload"] for m in self.messages if m["type"] == event_type]


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def make_user(role: UserRole, *, name: str = "Someone", children: List[str] | None = None) -> User:
    return User(id=f"{role.value}-{uuid4().hex[:8]}", role=role, name=name, children=children or [])


@pytest.fixture
def directory() -> InMemoryDirectoryService:
    return InMemoryDirectoryService()


@pytest.fixture
def registry() -> PresenceRegistry:
    return PresenceRegistry()


@pytest.fixture
def repository() -> InMemorySessionRequestRepository:
    return InMemorySessionRequestRepository()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine(repository, directory, registry) -> SessionRequestEngine:
    return SessionRequestEngine(
        repository,
        directory=directory,
        fanout=NotificationFanout(registry),
        pending_timeout_seconds=None,
    )


@pytest.fixture
def child(directory) -> User:
    user = make_user(UserRole.CHILD, name="Maya")
    user.disability_type = "Stuttering"
    return directory.upsert_user(user)


@pytest.fixture
def therapist(directory) -> User:
    return directory.upsert_user(make_user(UserRole.THERAPIST, name="Dr. Lee"))


@pytest.fixture
def other_therapist(directory) -> User:
    return directory.upsert_user(make_user(UserRole.THERAPIST, name="Dr. Park"))


@pytest.fixture
def api_users() -> Dict[str, User]:
    """Users seeded into the process-wide directory used by the HTTP API."""

    kid = directory_service.upsert_user(make_user(UserRole.CHILD, name="Sam"))
    parent = directory_service.upsert_user(make_user(UserRole.PARENT, name="Alex", children=[kid.id]))
    orphan_parent = directory_service.upsert_user(make_user(UserRole.PARENT, name="Jo"))
    therapist_a = directory_service.upsert_user(make_user(UserRole.THERAPIST, name="Dr. A"))
    therapist_b = directory_service.upsert_user(make_user(UserRole.THERAPIST, name="Dr. B"))
    return {
        "child": kid,
        "parent": parent,
        "orphan_parent": orphan_parent,
        "therapist_a": therapist_a,
        "therapist_b": therapist_b,
    }


@pytest.fixture
def channel_factory():
    return RecordingChannel


@pytest.fixture
def user_factory():
    return make_user
