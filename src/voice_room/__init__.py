"""Team voice room coordinator.

Joins a team's voice session, keeps a full mesh of peer-to-peer audio links
to every other participant, relays signaling through a shared store, and
publishes mute and speaking state.
"""

from src.voice_room.config import VoiceRoomConfig
from src.voice_room.coordinator import CoordinatorState, VoiceSessionCoordinator
from src.voice_room.errors import (
    JoinCancelledError,
    MediaAccessDenied,
    SessionUnavailable,
    SignalingDeliveryFailure,
    StoreError,
    TransportNegotiationFailure,
    VoiceRoomError,
)
from src.voice_room.models import (
    Participant,
    ParticipantChange,
    SignalingMessage,
    SignalKind,
    VoiceSession,
)
from src.voice_room.peer import PeerLink, PeerLinkState, PeerRole

__all__ = [
    "CoordinatorState",
    "JoinCancelledError",
    "MediaAccessDenied",
    "Participant",
    "ParticipantChange",
    "PeerLink",
    "PeerLinkState",
    "PeerRole",
    "SessionUnavailable",
    "SignalKind",
    "SignalingDeliveryFailure",
    "SignalingMessage",
    "StoreError",
    "TransportNegotiationFailure",
    "VoiceRoomConfig",
    "VoiceSession",
    "VoiceSessionCoordinator",
]
