"""End-to-end voice room scenarios.

Two coordinators join the same team room over a shared in-memory store.
Signaling travels through the store's realtime feeds exactly as it would
between two client processes.
"""

import asyncio

import pytest

from src.voice_room.coordinator import CoordinatorState, VoiceSessionCoordinator
from src.voice_room.media.base import ConnectionStateEvent, IceCandidateEvent, TrackEvent
from src.voice_room.models import IceCandidate, SignalKind
from src.voice_room.peer import PeerLinkState, PeerRole
from src.voice_room.store import InMemoryVoiceStore
from tests.helpers.media_fakes import FakeMediaBackend, make_noise, settle

pytestmark = pytest.mark.integration

TEAM = "team-7"


def kinds_between(store: InMemoryVoiceStore, sender: str, recipient: str) -> list[str]:
    return [
        m.kind.value
        for m in store.signals
        if m.from_user_id == sender and m.to_user_id == recipient
    ]


async def test_scenario_a_join_empty_room(
    xena: VoiceSessionCoordinator, shared_store: InMemoryVoiceStore
) -> None:
    """First participant creates the session and opens no links."""
    session_id = await xena.join(TEAM, "xena")

    assert list(shared_store.sessions) == [session_id]
    row = shared_store.participants[(session_id, "xena")]
    assert row.is_muted is False
    assert row.is_present
    assert xena.peer_links == {}
    assert shared_store.signals == []


async def test_scenario_b_second_participant_negotiates(
    xena: VoiceSessionCoordinator,
    yuri: VoiceSessionCoordinator,
    shared_store: InMemoryVoiceStore,
    xena_media: FakeMediaBackend,
    yuri_media: FakeMediaBackend,
) -> None:
    """Newcomer offers to the existing participant, who answers through the store."""
    session_id = await xena.join(TEAM, "xena")
    assert await yuri.join(TEAM, "yuri") == session_id
    await settle()

    assert kinds_between(shared_store, "yuri", "xena") == ["offer"]
    assert kinds_between(shared_store, "xena", "yuri") == ["answer"]

    outbound = yuri.peer_links["xena"]
    inbound = xena.peer_links["yuri"]
    assert outbound.role is PeerRole.INITIATOR
    assert inbound.role is PeerRole.RESPONDER

    # Offer and answer landed on the right connections
    assert xena_media.connections[0].remote_descriptions[0].type == "offer"
    assert yuri_media.connections[0].remote_descriptions[0].type == "answer"

    # Trickled candidates are relayed both ways
    yuri_media.connections[0].emit(
        IceCandidateEvent(IceCandidate(candidate="candidate:9 1 udp 1 10.0.0.9 5000 typ host"))
    )
    await settle()
    assert kinds_between(shared_store, "yuri", "xena") == ["offer", "ice-candidate"]
    assert len(xena_media.connections[0].remote_candidates) == 1

    # Transport comes up on both sides
    xena_media.connections[0].emit(TrackEvent(stream="yuri-audio"))
    xena_media.connections[0].emit(ConnectionStateEvent(state="connected"))
    yuri_media.connections[0].emit(ConnectionStateEvent(state="connected"))
    await settle()

    assert inbound.state is PeerLinkState.ESTABLISHED
    assert outbound.state is PeerLinkState.ESTABLISHED
    assert xena_media.sinks[0].user_id == "yuri"
    assert [p.user_id for p in xena.participants] == ["xena", "yuri"]


async def test_scenario_c_muted_never_speaks(
    xena: VoiceSessionCoordinator,
    shared_store: InMemoryVoiceStore,
    xena_media: FakeMediaBackend,
) -> None:
    """While muted, loud input never produces is_speaking=true."""
    session_id = await xena.join(TEAM, "xena")

    await xena.set_muted(True)
    xena_media.capture.samples = make_noise(amplitude=0.9)
    await asyncio.sleep(0.2)

    row = shared_store.participants[(session_id, "xena")]
    assert xena_media.capture.audio_track.enabled is False
    assert row.is_muted is True
    assert row.is_speaking is False
    assert xena.metrics.speaking_writes == 0


async def test_scenario_d_leave_closes_links_on_both_sides(
    xena: VoiceSessionCoordinator,
    yuri: VoiceSessionCoordinator,
    shared_store: InMemoryVoiceStore,
    xena_media: FakeMediaBackend,
    yuri_media: FakeMediaBackend,
) -> None:
    """Leaving closes local links and marks departure; the peer drops its link via the roster."""
    session_id = await xena.join(TEAM, "xena")
    await yuri.join(TEAM, "yuri")
    await settle()
    signals_before = len(shared_store.signals)

    await xena.leave()
    await settle()

    assert xena.state is CoordinatorState.DISCONNECTED
    assert xena_media.connections[0].closed is True
    assert shared_store.participants[(session_id, "xena")].left_at is not None

    # No teardown signaling message is sent
    assert len(shared_store.signals) == signals_before
    assert "xena" not in yuri.peer_links
    assert yuri_media.connections[0].closed is True
    assert [p.user_id for p in yuri.participants] == ["yuri"]
    assert xena_media.capture.stop_calls == 1


async def test_rejoin_renegotiates(
    xena: VoiceSessionCoordinator,
    yuri: VoiceSessionCoordinator,
    shared_store: InMemoryVoiceStore,
) -> None:
    """A participant who leaves and rejoins gets a fresh link from a new offer."""
    await xena.join(TEAM, "xena")
    await yuri.join(TEAM, "yuri")
    await settle()
    first_link = xena.peer_links["yuri"]

    await yuri.leave()
    await settle()
    assert first_link.is_closed

    await yuri.join(TEAM, "yuri")
    await settle()

    assert xena.peer_links["yuri"] is not first_link
    assert kinds_between(shared_store, "yuri", "xena") == ["offer", "offer"]
    assert kinds_between(shared_store, "xena", "yuri") == ["answer", "answer"]


async def test_simultaneous_join_converges_on_one_session(
    xena: VoiceSessionCoordinator,
    yuri: VoiceSessionCoordinator,
    shared_store: InMemoryVoiceStore,
) -> None:
    """Concurrent joins for one team land in the same session."""
    xena_session, yuri_session = await asyncio.gather(
        xena.join(TEAM, "xena"), yuri.join(TEAM, "yuri")
    )
    await settle()

    assert xena_session == yuri_session
    assert len(shared_store.sessions) == 1
    assert set(xena.peer_links) == {"yuri"}
    assert set(yuri.peer_links) == {"xena"}
    offers = [m for m in shared_store.signals if m.kind is SignalKind.OFFER]
    assert offers
