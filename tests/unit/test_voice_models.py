"""Unit tests for voice room data models and signaling payloads."""

import pytest

from src.voice_room.models import (
    IceCandidate,
    Participant,
    SessionDescription,
    SignalingMessage,
    SignalKind,
    VoiceSession,
    utcnow,
)


def test_voice_session_defaults() -> None:
    """Test new sessions are active with generated ids."""
    first = VoiceSession(team_id="team-1")
    second = VoiceSession(team_id="team-1")

    assert first.is_active is True
    assert first.id != second.id
    assert first.created_at.tzinfo is not None


def test_voice_session_requires_team() -> None:
    with pytest.raises(ValueError):
        VoiceSession(team_id="")


def test_participant_presence() -> None:
    """Test a participant is present until left_at is set."""
    participant = Participant(session_id="s1", user_id="alice")
    assert participant.is_present is True
    assert participant.is_muted is False
    assert participant.is_speaking is False

    departed = participant.model_copy(update={"left_at": utcnow()})
    assert departed.is_present is False


def test_signal_kind_wire_values() -> None:
    assert SignalKind.OFFER.value == "offer"
    assert SignalKind.ANSWER.value == "answer"
    assert SignalKind.ICE_CANDIDATE.value == "ice-candidate"


def test_offer_message_payload_shape() -> None:
    """Test offer payload is keyed by kind."""
    offer = SessionDescription(type="offer", sdp="v=0")
    message = SignalingMessage.offer("s1", "alice", "bob", offer)

    assert message.kind is SignalKind.OFFER
    assert message.payload == {"offer": {"type": "offer", "sdp": "v=0"}}
    assert message.description() == offer


def test_answer_message_payload_shape() -> None:
    answer = SessionDescription(type="answer", sdp="v=0 answer")
    message = SignalingMessage.answer("s1", "bob", "alice", answer)

    assert message.kind is SignalKind.ANSWER
    assert message.from_user_id == "bob"
    assert message.to_user_id == "alice"
    assert message.description().sdp == "v=0 answer"


def test_ice_candidate_message_payload_shape() -> None:
    candidate = IceCandidate(
        candidate="candidate:1 1 udp 2122260223 10.0.0.2 50000 typ host",
        sdp_mid="0",
        sdp_mline_index=0,
    )
    message = SignalingMessage.ice_candidate("s1", "alice", "bob", candidate)

    assert message.kind is SignalKind.ICE_CANDIDATE
    assert message.payload["candidate"]["sdp_mid"] == "0"
    assert message.candidate() == candidate


def test_signaling_message_json_uses_kind_value() -> None:
    """Test messages serialise with the wire kind name and parse back."""
    candidate = IceCandidate(candidate="candidate:2 1 udp 1 10.0.0.3 50001 typ host")
    message = SignalingMessage.ice_candidate("s1", "alice", "bob", candidate)

    data = message.model_dump_json()
    assert '"kind":"ice-candidate"' in data
    assert SignalingMessage.model_validate_json(data).candidate() == candidate


def test_description_rejects_candidate_message() -> None:
    message = SignalingMessage(
        session_id="s1",
        from_user_id="alice",
        to_user_id="bob",
        kind=SignalKind.ICE_CANDIDATE,
        payload={"candidate": {"candidate": "candidate:1"}},
    )
    with pytest.raises(ValueError, match="carry no session description"):
        message.description()


def test_candidate_rejects_offer_message() -> None:
    offer = SessionDescription(type="offer", sdp="v=0")
    message = SignalingMessage.offer("s1", "alice", "bob", offer)
    with pytest.raises(ValueError, match="carry no ICE candidate"):
        message.candidate()


def test_missing_payload_key() -> None:
    """Test malformed payloads raise ValueError rather than KeyError."""
    message = SignalingMessage(
        session_id="s1",
        from_user_id="alice",
        to_user_id="bob",
        kind=SignalKind.ANSWER,
        payload={"offer": {"type": "offer", "sdp": "v=0"}},
    )
    with pytest.raises(ValueError, match="missing 'answer' payload"):
        message.description()


def test_invalid_description_body() -> None:
    message = SignalingMessage(
        session_id="s1",
        from_user_id="alice",
        to_user_id="bob",
        kind=SignalKind.OFFER,
        payload={"offer": {"type": "rollback"}},
    )
    with pytest.raises(ValueError):
        message.description()
