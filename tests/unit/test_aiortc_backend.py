"""Unit tests for the aiortc media backend adapters.

RTCPeerConnection and MediaPlayer are mocked; frame conversion and the mute
switch run against real PyAV frames.
"""

from fractions import Fraction
from unittest.mock import AsyncMock, MagicMock, patch

import av
import numpy as np
import pytest

from src.voice_room.config import CaptureConfig, IceServerConfig, RTCConfig
from src.voice_room.errors import MediaAccessDenied
from src.voice_room.media.aiortc_backend import (
    AiortcMediaBackend,
    AiortcPeerConnection,
    FilteredAudioTrack,
    SwitchableAudioTrack,
    capture_filters,
    _MuteSwitch,
    _pcm_to_float,
)
from src.voice_room.models import IceCandidate, SessionDescription


def make_frame(value: int = 16384, samples: int = 960) -> av.AudioFrame:
    """Create a packed mono s16 frame filled with ``value``."""
    data = np.full((1, samples), value, dtype=np.int16)
    frame = av.AudioFrame.from_ndarray(data, format="s16", layout="mono")
    frame.sample_rate = 48000
    frame.pts = 0
    frame.time_base = Fraction(1, 48000)
    return frame


def test_pcm_to_float_scales_int16() -> None:
    samples = _pcm_to_float(make_frame(16384))

    assert samples.dtype == np.float32
    assert samples.shape == (960,)
    assert samples[0] == pytest.approx(0.5)


def test_pcm_to_float_downmixes_stereo() -> None:
    data = np.zeros((1, 2 * 480), dtype=np.int16)
    data[0, 0::2] = 32767  # left
    frame = av.AudioFrame.from_ndarray(data, format="s16", layout="stereo")

    samples = _pcm_to_float(frame)

    assert samples.shape == (480,)
    assert samples[0] == pytest.approx(0.5, abs=1e-3)


async def test_switchable_track_outputs_silence_when_disabled() -> None:
    """Test the mute switch replaces captured audio with silence."""
    source = MagicMock()
    source.recv = AsyncMock(side_effect=lambda: make_frame(12000))
    switch = _MuteSwitch()
    track = SwitchableAudioTrack(source, switch)

    live = await track.recv()
    switch.enabled = False
    muted = await track.recv()

    assert live.to_ndarray().max() == 12000
    assert muted.to_ndarray().max() == 0
    assert muted.samples == live.samples
    assert muted.sample_rate == 48000


@pytest.fixture
def mock_pc() -> MagicMock:
    pc = MagicMock()
    pc.on = MagicMock(side_effect=lambda event: (lambda fn: fn))
    pc.createOffer = AsyncMock(return_value=MagicMock(sdp="v=0 offer", type="offer"))
    pc.setLocalDescription = AsyncMock()
    pc.setRemoteDescription = AsyncMock()
    pc.addIceCandidate = AsyncMock()
    pc.close = AsyncMock()
    pc.remoteDescription = None
    return pc


async def test_peer_connection_offer(mock_pc: MagicMock) -> None:
    connection = AiortcPeerConnection(mock_pc)

    offer = await connection.create_offer()
    await connection.set_local_description(offer)

    assert offer == SessionDescription(type="offer", sdp="v=0 offer")
    sent = mock_pc.setLocalDescription.await_args.args[0]
    assert sent.type == "offer"
    assert sent.sdp == "v=0 offer"
    assert connection.has_remote_description is False


async def test_peer_connection_parses_browser_candidate(mock_pc: MagicMock) -> None:
    """Test browser-style candidate strings are parsed and tagged with their m-line."""
    connection = AiortcPeerConnection(mock_pc)

    await connection.add_ice_candidate(
        IceCandidate(
            candidate="candidate:842163049 1 udp 1677729535 203.0.113.7 46154 typ srflx "
            "raddr 0.0.0.0 rport 0",
            sdp_mid="0",
            sdp_mline_index=0,
        )
    )

    rtc_candidate = mock_pc.addIceCandidate.await_args.args[0]
    assert rtc_candidate.ip == "203.0.113.7"
    assert rtc_candidate.port == 46154
    assert rtc_candidate.type == "srflx"
    assert rtc_candidate.sdpMid == "0"
    assert rtc_candidate.sdpMLineIndex == 0


async def test_peer_connection_ignores_end_of_candidates(mock_pc: MagicMock) -> None:
    connection = AiortcPeerConnection(mock_pc)

    await connection.add_ice_candidate(IceCandidate(candidate=""))

    mock_pc.addIceCandidate.assert_not_awaited()


async def test_peer_connection_close_ends_events(mock_pc: MagicMock) -> None:
    connection = AiortcPeerConnection(mock_pc)

    await connection.close()

    assert [event async for event in connection.events()] == []
    mock_pc.close.assert_awaited_once()


@patch("src.voice_room.media.aiortc_backend.MediaPlayer")
async def test_create_capture_denied(mock_player_class: MagicMock) -> None:
    """Test device open failures surface as MediaAccessDenied."""
    mock_player_class.side_effect = OSError("Permission denied")

    with pytest.raises(MediaAccessDenied, match="Cannot open capture device 'default'"):
        await AiortcMediaBackend().create_capture(CaptureConfig())


@patch("src.voice_room.media.aiortc_backend.MediaPlayer")
async def test_create_capture_without_audio(mock_player_class: MagicMock) -> None:
    mock_player_class.return_value = MagicMock(audio=None)

    with pytest.raises(MediaAccessDenied, match="has no audio stream"):
        await AiortcMediaBackend().create_capture(CaptureConfig(device="hw:1", format="alsa"))

    mock_player_class.assert_called_once_with(
        "hw:1", format="alsa", options={"sample_rate": "48000", "channels": "1"}
    )


def test_capture_filters_follow_config() -> None:
    assert capture_filters(CaptureConfig()) == [
        ("afftdn", "nf=-25"),
        ("dynaudnorm", "f=150:g=15"),
    ]
    assert capture_filters(CaptureConfig(noise_suppression=False)) == [
        ("dynaudnorm", "f=150:g=15")
    ]
    assert capture_filters(CaptureConfig(noise_suppression=False, auto_gain_control=False)) == []


async def test_filtered_track_applies_ffmpeg_chain() -> None:
    """Test captured frames pass through a real FFmpeg filter graph."""
    pts = iter(range(0, 960 * 100, 960))

    def next_frame() -> av.AudioFrame:
        frame = make_frame(16384)
        frame.pts = next(pts)
        return frame

    source = MagicMock()
    source.recv = AsyncMock(side_effect=next_frame)
    track = FilteredAudioTrack(source, [("volume", "0.5")])

    processed = await track.recv()

    samples = _pcm_to_float(processed)
    assert samples.size > 0
    assert samples.mean() == pytest.approx(0.25, abs=1e-3)

    track.stop()
    source.stop.assert_called_once()


@patch("src.voice_room.media.aiortc_backend.AiortcCapture")
@patch("src.voice_room.media.aiortc_backend.MediaPlayer")
async def test_create_capture_applies_processing(
    mock_player_class: MagicMock, mock_capture_class: MagicMock
) -> None:
    player = MagicMock()
    mock_player_class.return_value = player

    capture = await AiortcMediaBackend().create_capture(CaptureConfig(auto_gain_control=False))

    assert capture is mock_capture_class.return_value
    mock_capture_class.assert_called_once_with(player, [("afftdn", "nf=-25")])


@patch("src.voice_room.media.aiortc_backend.RTCPeerConnection")
def test_new_connection_uses_ice_servers(mock_pc_class: MagicMock) -> None:
    config = RTCConfig(
        ice_servers=[
            IceServerConfig(urls=["turn:turn.example.com:3478"], username="u", credential="p")
        ]
    )

    AiortcMediaBackend().new_connection(config)

    rtc_config = mock_pc_class.call_args.args[0]
    assert rtc_config.iceServers[0].urls == ["turn:turn.example.com:3478"]
    assert rtc_config.iceServers[0].username == "u"
