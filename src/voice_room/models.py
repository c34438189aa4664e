"""Row and wire models for voice sessions, participants and signaling.

Signaling payloads keep the shape relayed between clients:
``{"offer": {...}}``, ``{"answer": {...}}`` or ``{"candidate": {...}}``.
"""

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field


def _new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


class SignalKind(str, Enum):
    """Signaling message kinds."""

    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"


# Payload key carrying the data for each kind
_PAYLOAD_KEYS: dict[SignalKind, str] = {
    SignalKind.OFFER: "offer",
    SignalKind.ANSWER: "answer",
    SignalKind.ICE_CANDIDATE: "candidate",
}


class VoiceSession(BaseModel):
    """One voice room for a team."""

    id: str = Field(default_factory=_new_id)
    team_id: str = Field(..., min_length=1)
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)


class Participant(BaseModel):
    """One user's membership in a voice session."""

    id: str = Field(default_factory=_new_id)
    session_id: str
    user_id: str
    is_muted: bool = False
    is_speaking: bool = False
    display_name: str | None = None
    joined_at: datetime = Field(default_factory=utcnow)
    left_at: datetime | None = None

    @property
    def is_present(self) -> bool:
        """True while the participant has not departed."""
        return self.left_at is None


class ParticipantChange(BaseModel):
    """Realtime notification for an inserted or updated participant row."""

    change: Literal["insert", "update"]
    participant: Participant


class SessionDescription(BaseModel):
    """SDP offer or answer."""

    type: Literal["offer", "answer"]
    sdp: str


class IceCandidate(BaseModel):
    """ICE candidate as relayed between peers."""

    candidate: str
    sdp_mid: str | None = None
    sdp_mline_index: int | None = None


class SignalingMessage(BaseModel):
    """Directed signaling message between two participants of a session."""

    id: str = Field(default_factory=_new_id)
    session_id: str
    from_user_id: str
    to_user_id: str
    kind: SignalKind
    payload: dict[str, Any]
    created_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def offer(
        cls, session_id: str, from_user_id: str, to_user_id: str, description: SessionDescription
    ) -> "SignalingMessage":
        return cls(
            session_id=session_id,
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            kind=SignalKind.OFFER,
            payload={"offer": description.model_dump()},
        )

    @classmethod
    def answer(
        cls, session_id: str, from_user_id: str, to_user_id: str, description: SessionDescription
    ) -> "SignalingMessage":
        return cls(
            session_id=session_id,
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            kind=SignalKind.ANSWER,
            payload={"answer": description.model_dump()},
        )

    @classmethod
    def ice_candidate(
        cls, session_id: str, from_user_id: str, to_user_id: str, candidate: IceCandidate
    ) -> "SignalingMessage":
        return cls(
            session_id=session_id,
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            kind=SignalKind.ICE_CANDIDATE,
            payload={"candidate": candidate.model_dump()},
        )

    def _payload_body(self) -> Any:
        key = _PAYLOAD_KEYS[self.kind]
        if key not in self.payload:
            raise ValueError(f"{self.kind.value} message is missing '{key}' payload")
        return self.payload[key]

    def description(self) -> SessionDescription:
        """Parse the offer/answer description out of the payload.

        Raises:
            ValueError: If the message is not an offer/answer or the payload is malformed
        """
        if self.kind is SignalKind.ICE_CANDIDATE:
            raise ValueError("ice-candidate messages carry no session description")
        return SessionDescription.model_validate(self._payload_body())

    def candidate(self) -> IceCandidate:
        """Parse the ICE candidate out of the payload.

        Raises:
            ValueError: If the message is not a candidate or the payload is malformed
        """
        if self.kind is not SignalKind.ICE_CANDIDATE:
            raise ValueError(f"{self.kind.value} messages carry no ICE candidate")
        return IceCandidate.model_validate(self._payload_body())
