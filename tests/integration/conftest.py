"""Integration test fixtures.

Provides two coordinators ("xena" and "yuri") sharing one in-memory store,
each with its own in-process media backend, so full join/offer/answer
exchanges run end to end on a single event loop.
"""

import logging
from collections.abc import AsyncIterator

import pytest

from src.voice_room.config import VoiceRoomConfig
from src.voice_room.coordinator import VoiceSessionCoordinator
from src.voice_room.store import InMemoryVoiceStore
from tests.helpers.media_fakes import FakeMediaBackend

logger = logging.getLogger(__name__)


@pytest.fixture
async def shared_store() -> AsyncIterator[InMemoryVoiceStore]:
    """Store shared by every coordinator in a test."""
    store = InMemoryVoiceStore()
    await store.connect()
    yield store
    await store.close()


@pytest.fixture
def voice_config() -> VoiceRoomConfig:
    return VoiceRoomConfig()


@pytest.fixture
def xena_media() -> FakeMediaBackend:
    return FakeMediaBackend()


@pytest.fixture
def yuri_media() -> FakeMediaBackend:
    return FakeMediaBackend()


@pytest.fixture
async def xena(
    shared_store: InMemoryVoiceStore, xena_media: FakeMediaBackend, voice_config: VoiceRoomConfig
) -> AsyncIterator[VoiceSessionCoordinator]:
    coordinator = VoiceSessionCoordinator(shared_store, xena_media, voice_config)
    yield coordinator
    await coordinator.leave()


@pytest.fixture
async def yuri(
    shared_store: InMemoryVoiceStore, yuri_media: FakeMediaBackend, voice_config: VoiceRoomConfig
) -> AsyncIterator[VoiceSessionCoordinator]:
    coordinator = VoiceSessionCoordinator(shared_store, yuri_media, voice_config)
    yield coordinator
    await coordinator.leave()
