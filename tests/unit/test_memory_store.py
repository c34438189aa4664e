"""Unit tests for the in-process voice store.

Tests conditional session creation, participant upsert/update semantics,
signaling relay and realtime subscription ordering.
"""

import asyncio

import pytest

from src.voice_room.config import StoreConfig
from src.voice_room.errors import StoreError
from src.voice_room.models import (
    ParticipantChange,
    SessionDescription,
    SignalingMessage,
)
from src.voice_room.store import InMemoryVoiceStore, create_store
from src.voice_room.store.redis_store import RedisVoiceStore


@pytest.fixture
async def store() -> InMemoryVoiceStore:
    store = InMemoryVoiceStore()
    await store.connect()
    return store


def _offer(session_id: str, sender: str, recipient: str, sdp: str = "v=0") -> SignalingMessage:
    return SignalingMessage.offer(
        session_id, sender, recipient, SessionDescription(type="offer", sdp=sdp)
    )


def test_create_store_selects_backend() -> None:
    """Test store factory honours the configured backend."""
    assert isinstance(create_store(StoreConfig()), InMemoryVoiceStore)

    redis_store = create_store(StoreConfig(backend="redis"))
    assert isinstance(redis_store, RedisVoiceStore)
    assert redis_store.key_prefix == "voice:"


async def test_get_or_create_session_reuses_active(store: InMemoryVoiceStore) -> None:
    """Test the same team always receives the same active session."""
    first = await store.get_or_create_session("team-1")
    second = await store.get_or_create_session("team-1")
    other = await store.get_or_create_session("team-2")

    assert first.id == second.id
    assert other.id != first.id
    assert len(store.sessions) == 2


async def test_concurrent_session_creation_converges(store: InMemoryVoiceStore) -> None:
    """Test concurrent creators for one team share a single session."""
    sessions = await asyncio.gather(*(store.get_or_create_session("team-1") for _ in range(5)))

    assert len({s.id for s in sessions}) == 1
    assert len(store.sessions) == 1


async def test_inactive_session_is_replaced(store: InMemoryVoiceStore) -> None:
    session = await store.get_or_create_session("team-1")
    store.sessions[session.id] = session.model_copy(update={"is_active": False})

    replacement = await store.get_or_create_session("team-1")

    assert replacement.id != session.id
    assert replacement.is_active is True


async def test_upsert_unknown_session(store: InMemoryVoiceStore) -> None:
    with pytest.raises(StoreError, match="Unknown voice session"):
        await store.upsert_participant("missing", "alice")


async def test_upsert_reactivates_departed_participant(store: InMemoryVoiceStore) -> None:
    """Test rejoining clears left_at and overwrites flags."""
    session = await store.get_or_create_session("team-1")
    await store.upsert_participant(session.id, "alice", display_name="Alice")
    await store.update_participant(session.id, "alice", is_muted=True)
    await store.mark_departed(session.id, "alice")
    assert await store.list_participants(session.id) == []

    rejoined = await store.upsert_participant(session.id, "alice")

    assert rejoined.is_present is True
    assert rejoined.is_muted is False
    assert rejoined.display_name == "Alice"
    assert len(store.participants) == 1


async def test_update_participant_validation(store: InMemoryVoiceStore) -> None:
    session = await store.get_or_create_session("team-1")
    await store.upsert_participant(session.id, "alice")

    with pytest.raises(ValueError, match="not updatable"):
        await store.update_participant(session.id, "alice", user_id="mallory")

    with pytest.raises(ValueError, match="No participant fields"):
        await store.update_participant(session.id, "alice")

    with pytest.raises(LookupError):
        await store.update_participant(session.id, "bob", is_muted=True)


async def test_list_participants_ordered_and_filtered(store: InMemoryVoiceStore) -> None:
    """Test listing excludes departed rows and the excluded user, ordered by join time."""
    session = await store.get_or_create_session("team-1")
    for user_id in ("alice", "bob", "carol"):
        await store.upsert_participant(session.id, user_id)
    await store.mark_departed(session.id, "bob")

    everyone = await store.list_participants(session.id)
    others = await store.list_participants(session.id, exclude_user_id="alice")

    assert [p.user_id for p in everyone] == ["alice", "carol"]
    assert [p.user_id for p in others] == ["carol"]


async def test_signals_delivered_to_recipient_in_order(store: InMemoryVoiceStore) -> None:
    """Test each recipient sees only its own messages, in insertion order."""
    bob_feed = await store.subscribe_signals("bob")
    carol_feed = await store.subscribe_signals("carol")

    for n in range(3):
        await store.insert_signal(_offer("s1", "alice", "bob", sdp=f"v={n}"))
    await store.insert_signal(_offer("s1", "alice", "carol"))

    received = [bob_feed._queue.get_nowait().description().sdp for _ in range(3)]
    assert received == ["v=0", "v=1", "v=2"]
    assert bob_feed._queue.empty()
    assert carol_feed._queue.qsize() == 1
    assert len(store.signals) == 4


async def test_participant_changes_published(store: InMemoryVoiceStore) -> None:
    session = await store.get_or_create_session("team-1")
    feed = await store.subscribe_participants(session.id)

    await store.upsert_participant(session.id, "alice")
    await store.update_participant(session.id, "alice", is_speaking=True)
    await store.close()

    changes: list[ParticipantChange] = [change async for change in feed]

    assert [c.change for c in changes] == ["insert", "update"]
    assert changes[1].participant.is_speaking is True


async def test_closed_subscription_stops_receiving(store: InMemoryVoiceStore) -> None:
    """Test a closed subscription is unregistered and ends iteration."""
    feed = await store.subscribe_signals("bob")
    await feed.close()
    await feed.close()

    await store.insert_signal(_offer("s1", "alice", "bob"))

    assert feed.closed is True
    assert [item async for item in feed] == []
    assert store._signal_subs["bob"] == []
