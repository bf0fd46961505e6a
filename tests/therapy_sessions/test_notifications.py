import pytest

from src.therapy_sessions.domain.errors import InvalidStateError
from src.therapy_sessions.domain.models.user import UserRole
from src.therapy_sessions.services.notifications.fanout import (
    AllOfRole,
    EventType,
    NotificationEvent,
    NotificationFanout,
    SingleUser,
)
from src.therapy_sessions.services.presence.registry import PresenceRegistry


class BrokenChannel:
    async def send_json(self, data):
        raise ConnectionError("socket closed")


def test_register_overwrites_previous_channel(registry, channel_factory):
    old_tab = channel_factory()
    new_tab = channel_factory()

    registry.register("t-1", UserRole.THERAPIST, old_tab)
    registry.register("t-1", UserRole.THERAPIST, new_tab)

    assert len(registry) == 1
    entry = registry.get("t-1")
    assert entry is not None
    assert entry.channel is new_tab


def test_unregister_removes_only_matching_channel(registry, channel_factory):
    old_tab = channel_factory()
    new_tab = channel_factory()
    registry.register("t-1", UserRole.THERAPIST, old_tab)
    registry.register("t-1", UserRole.THERAPIST, new_tab)

    # The old tab disconnecting late must not evict the live one.
    assert registry.unregister(old_tab) is None
    assert registry.get("t-1") is not None

    assert registry.unregister(new_tab) == "t-1"
    assert registry.get("t-1") is None
    assert len(registry) == 0


def test_list_by_role(registry, channel_factory):
    registry.register("t-1", UserRole.THERAPIST, channel_factory())
    registry.register("t-2", UserRole.THERAPIST, channel_factory())
    registry.register("c-1", UserRole.CHILD, channel_factory())

    therapists = registry.list_by_role(UserRole.THERAPIST)

    assert sorted(e.user_id for e in therapists) == ["t-1", "t-2"]
    assert [e.user_id for e in registry.list_by_role(UserRole.CHILD)] == ["c-1"]
    assert registry.list_by_role(UserRole.PARENT) == []


async def test_single_user_policy_skips_offline_users(registry, channel_factory):
    online = channel_factory()
    registry.register("c-1", UserRole.CHILD, online)
    fanout = NotificationFanout(registry)

    delivered = await fanout.dispatch(
        NotificationEvent(
            type=EventType.SESSION_REQUEST_UPDATED,
            recipients=[SingleUser("c-1"), SingleUser("c-offline")],
            payload={"request_id": "r-1", "status": "in_progress"},
        )
    )

    assert delivered == 1
    assert online.messages == [
        {"type": "session_request_updated", "payload": {"request_id": "r-1", "status": "in_progress"}}
    ]


async def test_overlapping_policies_deliver_once(registry, channel_factory):
    therapist_channel = channel_factory()
    registry.register("t-1", UserRole.THERAPIST, therapist_channel)
    fanout = NotificationFanout(registry)

    delivered = await fanout.dispatch(
        NotificationEvent(
            type=EventType.SESSION_REQUEST_UPDATED,
            recipients=[SingleUser("t-1"), AllOfRole(UserRole.THERAPIST)],
            payload={"request_id": "r-1"},
        )
    )

    assert delivered == 1
    assert len(therapist_channel.messages) == 1


async def test_failing_channel_does_not_block_others(channel_factory):
    registry = PresenceRegistry()
    healthy = channel_factory()
    registry.register("t-1", UserRole.THERAPIST, BrokenChannel())
    registry.register("t-2", UserRole.THERAPIST, healthy)
    fanout = NotificationFanout(registry)

    delivered = await fanout.dispatch(
        NotificationEvent(
            type=EventType.SESSION_REQUEST_DELETED,
            recipients=[AllOfRole(UserRole.THERAPIST)],
            payload={"request_id": "r-1"},
        )
    )

    assert delivered == 1
    assert healthy.types() == ["session_request_deleted"]


async def test_new_request_reaches_only_registered_therapists(
    engine, registry, child, therapist, other_therapist, directory, user_factory, channel_factory
):
    late_therapist = directory.upsert_user(user_factory(UserRole.THERAPIST))
    t1, t2, kid = channel_factory(), channel_factory(), channel_factory()
    registry.register(therapist.id, UserRole.THERAPIST, t1)
    registry.register(other_therapist.id, UserRole.THERAPIST, t2)
    registry.register(child.id, UserRole.CHILD, kid)

    created = await engine.create_request(child, description="First session")

    for channel in (t1, t2):
        pushed = channel.of_type("new_session_request")
        assert len(pushed) == 1
        assert pushed[0]["request_id"] == str(created.id)
        assert pushed[0]["status"] == "pending"
        assert pushed[0]["description"] == "First session"
        assert pushed[0]["child"]["name"] == "Maya"
    assert kid.messages == []

    # A therapist who connects later catches up through the read path.
    late = channel_factory()
    registry.register(late_therapist.id, UserRole.THERAPIST, late)
    assert late.messages == []
    assert created.id in {r.id for r in await engine.list_active_requests()}


async def test_scenario_create_accept_end(engine, registry, child, therapist, other_therapist, channel_factory):
    t1, t2, kid = channel_factory(), channel_factory(), channel_factory()
    registry.register(therapist.id, UserRole.THERAPIST, t1)
    registry.register(other_therapist.id, UserRole.THERAPIST, t2)
    registry.register(child.id, UserRole.CHILD, kid)

    created = await engine.create_request(child)
    assert t1.of_type("new_session_request")[0]["request_id"] == str(created.id)

    await engine.accept_request(created.id, therapist.id)
    accepted = kid.of_type("session_request_updated")
    assert accepted[-1]["status"] == "in_progress"
    assert accepted[-1]["therapist_id"] == therapist.id
    assert accepted[-1]["accepted_at"] is not None
    # The other therapist learns the listing is taken.
    assert t2.of_type("session_request_updated")[-1]["status"] == "in_progress"

    await engine.end_session(created.id, therapist.id)
    assert kid.of_type("session_request_updated")[-1]["status"] == "completed"
    assert t1.of_type("session_request_updated")[-1]["status"] == "completed"
    assert t1.of_type("session_request_updated")[-1]["ended_at"] is not None
    # Only the owning therapist hears about the end.
    assert t2.of_type("session_request_updated")[-1]["status"] == "in_progress"


async def test_scenario_create_then_cancel(engine, registry, child, therapist, other_therapist, channel_factory):
    t1, t2 = channel_factory(), channel_factory()
    registry.register(therapist.id, UserRole.THERAPIST, t1)
    registry.register(other_therapist.id, UserRole.THERAPIST, t2)

    created = await engine.create_request(child)
    await engine.cancel_request(created.id, child)

    for channel in (t1, t2):
        assert channel.of_type("session_request_deleted") == [{"request_id": str(created.id)}]
    assert created.id not in {r.id for r in await engine.list_active_requests()}


async def test_decline_tells_child_and_clears_therapist_queues(
    engine, registry, child, therapist, other_therapist, channel_factory
):
    t1, t2, kid = channel_factory(), channel_factory(), channel_factory()
    registry.register(therapist.id, UserRole.THERAPIST, t1)
    registry.register(other_therapist.id, UserRole.THERAPIST, t2)
    registry.register(child.id, UserRole.CHILD, kid)

    created = await engine.create_request(child)
    await engine.decline_request(created.id, therapist.id)

    declined = kid.of_type("session_request_updated")
    assert declined[-1]["status"] == "declined"
    assert declined[-1]["declined_at"] is not None
    assert t1.of_type("session_request_deleted") == [{"request_id": str(created.id)}]
    assert t2.of_type("session_request_deleted") == [{"request_id": str(created.id)}]


async def test_failed_transition_sends_nothing(engine, registry, child, therapist, channel_factory):
    created = await engine.create_request(child)
    await engine.accept_request(created.id, therapist.id)

    kid = channel_factory()
    registry.register(child.id, UserRole.CHILD, kid)
    with pytest.raises(InvalidStateError):
        await engine.accept_request(created.id, therapist.id)

    assert kid.messages == []
