"""Base media abstraction for capture, peer connections and playback.

Defines the interface a media backend (aiortc, or an in-process fake in
tests) must implement. Peer connection callbacks (track, ICE candidate,
connection state) are delivered as events on an ordered channel instead of
nested callbacks, so each peer link can consume them in a single task.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

import numpy as np
from numpy.typing import NDArray

from src.voice_room.config import CaptureConfig, RTCConfig
from src.voice_room.models import IceCandidate, SessionDescription


@dataclass(frozen=True)
class TrackEvent:
    """Remote media arrived on a connection."""

    stream: Any


@dataclass(frozen=True)
class IceCandidateEvent:
    """A local ICE candidate was gathered (None marks end of gathering)."""

    candidate: IceCandidate | None


@dataclass(frozen=True)
class ConnectionStateEvent:
    """Connection state changed (new, connecting, connected, disconnected, failed, closed)."""

    state: str


PeerEvent = TrackEvent | IceCandidateEvent | ConnectionStateEvent


class EventChannel:
    """Ordered, closable channel of peer connection events."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[PeerEvent | None] = asyncio.Queue()
        self._closed = False

    def emit(self, event: PeerEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)

    async def __aiter__(self) -> AsyncIterator[PeerEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event


class AudioTrack(ABC):
    """Local outbound audio track control."""

    @property
    @abstractmethod
    def enabled(self) -> bool:
        """Whether the track sends captured audio (False sends silence)."""
        pass

    @enabled.setter
    @abstractmethod
    def enabled(self, value: bool) -> None:
        pass


class LocalCapture(ABC):
    """Acquired microphone capture.

    Owns the capture device until ``stop()`` is called.
    """

    @property
    @abstractmethod
    def audio_track(self) -> AudioTrack:
        """Control for the outbound audio track (mute switch)."""
        pass

    @abstractmethod
    def tracks(self) -> list[Any]:
        """Tracks to attach to one new peer connection."""
        pass

    @abstractmethod
    def read_time_domain(self) -> NDArray[np.float32] | None:
        """Most recent captured samples in [-1, 1], or None if nothing captured yet."""
        pass

    @abstractmethod
    def stop(self) -> None:
        """Stop all capture tracks and release the device. Idempotent."""
        pass

    @property
    @abstractmethod
    def stopped(self) -> bool:
        pass


class PeerConnection(ABC):
    """One real-time media connection to a remote participant."""

    @abstractmethod
    def add_track(self, track: Any) -> None:
        """Attach a local track before negotiation."""
        pass

    @abstractmethod
    async def create_offer(self) -> SessionDescription:
        pass

    @abstractmethod
    async def create_answer(self) -> SessionDescription:
        pass

    @abstractmethod
    async def set_local_description(self, description: SessionDescription) -> None:
        pass

    @abstractmethod
    async def set_remote_description(self, description: SessionDescription) -> None:
        pass

    @abstractmethod
    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the connection and end its event channel. Idempotent."""
        pass

    @property
    @abstractmethod
    def connection_state(self) -> str:
        pass

    @property
    @abstractmethod
    def local_description(self) -> SessionDescription | None:
        pass

    @property
    @abstractmethod
    def has_remote_description(self) -> bool:
        pass

    @abstractmethod
    def events(self) -> AsyncIterator[PeerEvent]:
        """Connection events in the order they occurred."""
        pass


class AudioSink(ABC):
    """Rendered playback of one remote participant's audio."""

    @property
    @abstractmethod
    def user_id(self) -> str:
        pass

    @property
    @abstractmethod
    def volume(self) -> float:
        pass

    @volume.setter
    @abstractmethod
    def volume(self, value: float) -> None:
        pass

    @abstractmethod
    def remove(self) -> None:
        """Stop playback and release the output. Idempotent."""
        pass


class MediaBackend(ABC):
    """Factory for captures, connections and playback sinks."""

    @abstractmethod
    async def create_capture(self, config: CaptureConfig) -> LocalCapture:
        """Acquire the microphone.

        Raises:
            MediaAccessDenied: If permission is refused or no device exists
        """
        pass

    @abstractmethod
    def new_connection(self, config: RTCConfig) -> PeerConnection:
        pass

    @abstractmethod
    def render_remote(self, user_id: str, stream: Any, volume: float) -> AudioSink:
        pass
