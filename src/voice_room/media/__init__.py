"""Media collaborators: capture, peer connections, playback and analysis.

The aiortc backend is imported from ``src.voice_room.media.aiortc_backend``
directly so that the abstract layer does not pull in FFmpeg bindings.
"""

from src.voice_room.media.analysis import FrequencyAnalyser
from src.voice_room.media.base import (
    AudioSink,
    AudioTrack,
    ConnectionStateEvent,
    EventChannel,
    IceCandidateEvent,
    LocalCapture,
    MediaBackend,
    PeerConnection,
    PeerEvent,
    TrackEvent,
)

__all__ = [
    "AudioSink",
    "AudioTrack",
    "ConnectionStateEvent",
    "EventChannel",
    "FrequencyAnalyser",
    "IceCandidateEvent",
    "LocalCapture",
    "MediaBackend",
    "PeerConnection",
    "PeerEvent",
    "TrackEvent",
]
