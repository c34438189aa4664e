"""Error taxonomy for the voice room coordinator.

Failures during join are fatal and surfaced to the caller. Failures once a
room is connected are isolated to the affected peer link and only logged.
"""


class VoiceRoomError(Exception):
    """Base class for coordinator errors."""


class MediaAccessDenied(VoiceRoomError):
    """Microphone permission refused or no capture device available."""


class SessionUnavailable(VoiceRoomError):
    """Session lookup/create or participant upsert failed in the store."""


class SignalingDeliveryFailure(VoiceRoomError):
    """Writing an offer, answer, or ICE candidate to the store failed."""


class TransportNegotiationFailure(VoiceRoomError):
    """Underlying peer connection failed or rejected a description."""


class JoinCancelledError(VoiceRoomError):
    """join() was abandoned because leave() was called while it was pending."""


class StoreError(Exception):
    """Raised by store implementations on persistence failures."""
