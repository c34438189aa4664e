"""aiortc media backend.

Peer connections are ``aiortc.RTCPeerConnection`` instances. The microphone
is opened through ``aiortc.contrib.media.MediaPlayer`` (FFmpeg input
devices), optionally run through FFmpeg noise suppression and gain
normalisation filters, and fanned out with ``MediaRelay``: one subscription
per peer connection plus one tap feeding speaking detection. Remote audio is played
through a ``sounddevice`` output stream with volume applied in numpy.

aiortc gathers ICE candidates before ``setLocalDescription`` returns and
embeds them in the SDP, so no ICE candidate events are emitted. Candidates
received from browser peers are still applied with ``addIceCandidate``.
"""

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator
from fractions import Fraction
from typing import Any

import av
import av.filter
import numpy as np
from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaPlayer, MediaRelay
from aiortc.mediastreams import MediaStreamError
from aiortc.sdp import candidate_from_sdp
from numpy.typing import NDArray

from src.voice_room.config import CaptureConfig, RTCConfig
from src.voice_room.errors import MediaAccessDenied
from src.voice_room.media.base import (
    AudioSink,
    AudioTrack,
    ConnectionStateEvent,
    EventChannel,
    LocalCapture,
    MediaBackend,
    PeerConnection,
    PeerEvent,
    TrackEvent,
)
from src.voice_room.models import IceCandidate, SessionDescription

logger = logging.getLogger(__name__)

# Samples kept for analysis (enough for the largest supported FFT window)
ANALYSIS_BUFFER_SAMPLES = 32768
PLAYBACK_SAMPLE_RATE_HZ = 48000


def _pcm_to_float(frame: av.AudioFrame) -> NDArray[np.float32]:
    """Convert an audio frame to mono float32 samples in [-1, 1]."""
    samples = frame.to_ndarray()
    if samples.dtype == np.int16:
        data = samples.astype(np.float32) / 32768.0
    elif samples.dtype == np.int32:
        data = samples.astype(np.float32) / 2147483648.0
    else:
        data = samples.astype(np.float32)

    channels = len(frame.layout.channels)
    if frame.format.is_planar:
        return data.mean(axis=0) if channels > 1 else data.reshape(-1)
    return data.reshape(-1, channels).mean(axis=1) if channels > 1 else data.reshape(-1)


def capture_filters(config: CaptureConfig) -> list[tuple[str, str]]:
    """FFmpeg audio filters implementing the capture processing settings."""
    filters: list[tuple[str, str]] = []
    if config.noise_suppression:
        filters.append(("afftdn", "nf=-25"))
    if config.auto_gain_control:
        filters.append(("dynaudnorm", "f=150:g=15"))
    return filters


class FilteredAudioTrack(MediaStreamTrack):
    """Runs a source track through an FFmpeg filter chain.

    The graph is built from the first frame's format. Filters that buffer
    (``dynaudnorm``) delay output, so several source frames may be pulled
    before a processed frame is returned.
    """

    kind = "audio"

    def __init__(self, source: MediaStreamTrack, filters: list[tuple[str, str]]) -> None:
        super().__init__()
        self._source = source
        self._filters = filters
        self._graph: av.filter.Graph | None = None
        self._ready: deque[av.AudioFrame] = deque()

    def _build_graph(self, frame: av.AudioFrame) -> av.filter.Graph:
        graph = av.filter.Graph()
        nodes = [
            graph.add_abuffer(
                format=frame.format.name,
                sample_rate=frame.sample_rate,
                layout=frame.layout.name,
                time_base=frame.time_base or Fraction(1, frame.sample_rate),
            )
        ]
        nodes.extend(graph.add(name, args) for name, args in self._filters)
        nodes.append(graph.add("abuffersink"))
        graph.link_nodes(*nodes).configure()
        return graph

    async def recv(self) -> av.AudioFrame:
        while not self._ready:
            frame = await self._source.recv()
            if self._graph is None:
                self._graph = self._build_graph(frame)
            self._graph.push(frame)
            while True:
                try:
                    self._ready.append(self._graph.pull())
                except (av.error.BlockingIOError, av.error.EOFError):
                    break
        return self._ready.popleft()

    def stop(self) -> None:
        super().stop()
        self._source.stop()


class _MuteSwitch(AudioTrack):
    def __init__(self) -> None:
        self._enabled = True

    @property
    def enabled(self) -> bool:
        return self._enabled

    @enabled.setter
    def enabled(self, value: bool) -> None:
        self._enabled = value


class SwitchableAudioTrack(MediaStreamTrack):
    """Relays a source track, replacing frames with silence while disabled."""

    kind = "audio"

    def __init__(self, source: MediaStreamTrack, switch: _MuteSwitch) -> None:
        super().__init__()
        self._source = source
        self._switch = switch

    async def recv(self) -> av.AudioFrame:
        frame = await self._source.recv()
        if self._switch.enabled:
            return frame

        silent = av.AudioFrame(
            format=frame.format.name, layout=frame.layout.name, samples=frame.samples
        )
        for plane in silent.planes:
            plane.update(bytes(plane.buffer_size))
        silent.pts = frame.pts
        silent.sample_rate = frame.sample_rate
        if frame.time_base is not None:
            silent.time_base = frame.time_base
        return silent

    def stop(self) -> None:
        super().stop()
        self._source.stop()


class AiortcCapture(LocalCapture):
    """Microphone opened through FFmpeg and shared via a media relay."""

    def __init__(
        self, player: MediaPlayer, filters: list[tuple[str, str]] | None = None
    ) -> None:
        self._player = player
        self._source: MediaStreamTrack = (
            FilteredAudioTrack(player.audio, filters) if filters else player.audio
        )
        self._relay = MediaRelay()
        self._switch = _MuteSwitch()
        self._outbound: list[MediaStreamTrack] = []
        self._samples = np.zeros(0, dtype=np.float32)
        self._stopped = False
        self._tap_task = asyncio.create_task(
            self._tap(self._relay.subscribe(self._source)), name="capture-analysis-tap"
        )

    @property
    def audio_track(self) -> AudioTrack:
        return self._switch

    def tracks(self) -> list[Any]:
        track = SwitchableAudioTrack(self._relay.subscribe(self._source), self._switch)
        self._outbound.append(track)
        return [track]

    def read_time_domain(self) -> NDArray[np.float32] | None:
        if self._samples.size == 0:
            return None
        return self._samples.copy()

    async def _tap(self, track: MediaStreamTrack) -> None:
        while True:
            try:
                frame = await track.recv()
            except MediaStreamError:
                return
            mono = _pcm_to_float(frame)
            self._samples = np.concatenate([self._samples, mono])[-ANALYSIS_BUFFER_SAMPLES:]

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self._tap_task.cancel()
        for track in self._outbound:
            track.stop()
        self._source.stop()
        logger.info("Local capture stopped")

    @property
    def stopped(self) -> bool:
        return self._stopped


class AiortcPeerConnection(PeerConnection):
    """``RTCPeerConnection`` adapter emitting events on a channel."""

    def __init__(self, pc: RTCPeerConnection) -> None:
        self._pc = pc
        self._events = EventChannel()

        @pc.on("track")
        def _on_track(track: MediaStreamTrack) -> None:
            if track.kind == "audio":
                self._events.emit(TrackEvent(stream=track))

        @pc.on("connectionstatechange")
        def _on_state() -> None:
            self._events.emit(ConnectionStateEvent(state=pc.connectionState))

    def add_track(self, track: Any) -> None:
        self._pc.addTrack(track)

    async def create_offer(self) -> SessionDescription:
        offer = await self._pc.createOffer()
        return SessionDescription(type="offer", sdp=offer.sdp)

    async def create_answer(self) -> SessionDescription:
        answer = await self._pc.createAnswer()
        return SessionDescription(type="answer", sdp=answer.sdp)

    async def set_local_description(self, description: SessionDescription) -> None:
        await self._pc.setLocalDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )

    async def set_remote_description(self, description: SessionDescription) -> None:
        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        sdp = candidate.candidate
        if sdp.startswith("candidate:"):
            sdp = sdp[len("candidate:") :]
        if not sdp:
            # End-of-candidates marker
            return
        rtc_candidate = candidate_from_sdp(sdp)
        rtc_candidate.sdpMid = candidate.sdp_mid
        rtc_candidate.sdpMLineIndex = candidate.sdp_mline_index
        await self._pc.addIceCandidate(rtc_candidate)

    async def close(self) -> None:
        await self._pc.close()
        self._events.close()

    @property
    def connection_state(self) -> str:
        return self._pc.connectionState

    @property
    def local_description(self) -> SessionDescription | None:
        desc = self._pc.localDescription
        if desc is None:
            return None
        return SessionDescription(type=desc.type, sdp=desc.sdp)

    @property
    def has_remote_description(self) -> bool:
        return self._pc.remoteDescription is not None

    def events(self) -> AsyncIterator[PeerEvent]:
        return self._events.__aiter__()


class SoundDeviceSink(AudioSink):
    """Plays a remote audio track on the default output device."""

    def __init__(self, user_id: str, track: MediaStreamTrack, volume: float) -> None:
        self._user_id = user_id
        self._track = track
        self._volume = volume
        self._task = asyncio.create_task(self._play(), name=f"remote-audio:{user_id}")

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def volume(self) -> float:
        return self._volume

    @volume.setter
    def volume(self, value: float) -> None:
        self._volume = min(max(value, 0.0), 1.0)

    async def _play(self) -> None:
        import sounddevice as sd

        resampler = av.AudioResampler(format="s16", layout="mono", rate=PLAYBACK_SAMPLE_RATE_HZ)
        stream = sd.RawOutputStream(samplerate=PLAYBACK_SAMPLE_RATE_HZ, channels=1, dtype="int16")
        stream.start()
        try:
            while True:
                try:
                    frame = await self._track.recv()
                except MediaStreamError:
                    return
                for out in resampler.resample(frame):
                    pcm = out.to_ndarray().reshape(-1).astype(np.float32) * self._volume
                    data = np.clip(pcm, -32768, 32767).astype(np.int16).tobytes()
                    await asyncio.to_thread(stream.write, data)
        finally:
            stream.stop()
            stream.close()

    def remove(self) -> None:
        if not self._task.done():
            self._task.cancel()


class AiortcMediaBackend(MediaBackend):
    """Media backend built on aiortc, PyAV and sounddevice."""

    async def create_capture(self, config: CaptureConfig) -> LocalCapture:
        options = {
            "sample_rate": str(config.sample_rate),
            "channels": str(config.channels),
        }
        try:
            player = MediaPlayer(config.device, format=config.format, options=options)
        except (OSError, av.error.FFmpegError) as e:
            raise MediaAccessDenied(f"Cannot open capture device '{config.device}': {e}") from e

        if player.audio is None:
            raise MediaAccessDenied(f"Capture device '{config.device}' has no audio stream")

        filters = capture_filters(config)
        logger.info(
            "Local capture started",
            extra={
                "device": config.device,
                "format": config.format,
                "filters": [name for name, _ in filters],
            },
        )
        return AiortcCapture(player, filters)

    def new_connection(self, config: RTCConfig) -> PeerConnection:
        ice_servers = [
            RTCIceServer(urls=server.urls, username=server.username, credential=server.credential)
            for server in config.ice_servers
        ]
        return AiortcPeerConnection(RTCPeerConnection(RTCConfiguration(iceServers=ice_servers)))

    def render_remote(self, user_id: str, stream: Any, volume: float) -> AudioSink:
        return SoundDeviceSink(user_id, stream, volume)
