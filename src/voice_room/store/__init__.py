"""Stores for voice sessions, participants and signaling messages."""

from src.voice_room.config import StoreConfig
from src.voice_room.store.base import Subscription, VoiceStore
from src.voice_room.store.memory import InMemoryVoiceStore
from src.voice_room.store.redis_store import RedisVoiceStore


def create_store(config: StoreConfig) -> VoiceStore:
    """Build the store selected by configuration (not yet connected)."""
    if config.backend == "redis":
        return RedisVoiceStore(
            redis_url=config.redis.url,
            db=config.redis.db,
            key_prefix=config.redis.key_prefix,
            signal_ttl_seconds=config.redis.signal_ttl_seconds,
            connection_pool_size=config.redis.connection_pool_size,
        )
    return InMemoryVoiceStore()


__all__ = [
    "InMemoryVoiceStore",
    "RedisVoiceStore",
    "Subscription",
    "VoiceStore",
    "create_store",
]
