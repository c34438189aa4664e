"""Base store abstraction for voice sessions, participants and signaling.

Defines the interface every store implementation (in-memory, Redis) must
provide: conditional session creation, participant upsert and point updates,
signaling message relay, and realtime change subscriptions.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any, Generic, TypeVar

from src.voice_room.models import (
    Participant,
    ParticipantChange,
    SignalingMessage,
    VoiceSession,
    utcnow,
)

T = TypeVar("T")

# Participant fields that may be changed by a point update
UPDATABLE_PARTICIPANT_FIELDS = frozenset({"is_muted", "is_speaking", "left_at"})


class Subscription(Generic[T]):
    """Ordered realtime feed of store notifications.

    Iterating yields items in the order they were published to this
    subscription. Iteration ends once ``close()`` has been called.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._queue: asyncio.Queue[T | None] = asyncio.Queue()
        self._closed = False
        self._on_close: list[Any] = []

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, item: T) -> None:
        """Deliver an item to the subscriber. Ignored after close."""
        if not self._closed:
            self._queue.put_nowait(item)

    def add_close_callback(self, callback: Any) -> None:
        """Register a callable invoked (and awaited if a coroutine) on close."""
        self._on_close.append(callback)

    async def close(self) -> None:
        """Stop the feed. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)
        for callback in self._on_close:
            result = callback()
            if asyncio.iscoroutine(result):
                await result

    def __aiter__(self) -> AsyncIterator[T]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[T]:
        while True:
            item = await self._queue.get()
            if item is None:
                return
            yield item


class VoiceStore(ABC):
    """Shared store of voice sessions, participants and signaling messages.

    All methods raise ``StoreError`` on persistence failures.
    """

    @abstractmethod
    async def connect(self) -> None:
        """Open connections. Idempotent."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close connections and all open subscriptions. Idempotent."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Return True if the store is reachable."""
        pass

    @abstractmethod
    async def get_or_create_session(self, team_id: str) -> VoiceSession:
        """Return the team's active session, creating it if none exists.

        Concurrent callers for the same team must receive the same session.
        """
        pass

    @abstractmethod
    async def upsert_participant(
        self,
        session_id: str,
        user_id: str,
        *,
        is_muted: bool = False,
        is_speaking: bool = False,
        display_name: str | None = None,
    ) -> Participant:
        """Insert or overwrite the participant row keyed by (session, user).

        The row is reactivated: ``left_at`` is cleared.
        """
        pass

    @abstractmethod
    async def update_participant(
        self, session_id: str, user_id: str, **fields: Any
    ) -> Participant:
        """Point update of a participant's mutable fields.

        Raises:
            ValueError: If a field is not updatable
            LookupError: If the participant row does not exist
        """
        pass

    async def mark_departed(self, session_id: str, user_id: str) -> Participant:
        """Set the participant's departure timestamp."""
        return await self.update_participant(session_id, user_id, left_at=utcnow())

    @abstractmethod
    async def list_participants(
        self, session_id: str, exclude_user_id: str | None = None
    ) -> list[Participant]:
        """Return non-departed participants of a session ordered by join time."""
        pass

    @abstractmethod
    async def insert_signal(self, message: SignalingMessage) -> SignalingMessage:
        """Persist a signaling message and notify the recipient's subscriptions."""
        pass

    @abstractmethod
    async def subscribe_signals(self, user_id: str) -> Subscription[SignalingMessage]:
        """Subscribe to signaling messages addressed to ``user_id``."""
        pass

    @abstractmethod
    async def subscribe_participants(self, session_id: str) -> Subscription[ParticipantChange]:
        """Subscribe to participant row changes within a session."""
        pass

    @staticmethod
    def validate_update_fields(fields: dict[str, Any]) -> None:
        unknown = set(fields) - UPDATABLE_PARTICIPANT_FIELDS
        if unknown:
            raise ValueError(f"Participant fields not updatable: {sorted(unknown)}")
        if not fields:
            raise ValueError("No participant fields to update")
