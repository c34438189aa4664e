"""Peer link: one media connection to a remote participant.

A peer link wraps a ``PeerConnection`` with its negotiation role, its state
machine, the rendered remote audio sink, and the single task that consumes
the connection's event channel.

State Transitions:
- INITIATING → ESTABLISHED (transport connected after our offer was answered)
- RESPONDING → ESTABLISHED (transport connected after we answered an offer)
- INITIATING/RESPONDING/ESTABLISHED → FAILED (transport failed)
- * → CLOSED (local leave, remote departure, or transport closed)
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from src.voice_room.errors import TransportNegotiationFailure
from src.voice_room.media.base import AudioSink, PeerConnection, PeerEvent
from src.voice_room.models import IceCandidate, SessionDescription

logger = logging.getLogger(__name__)


class PeerRole(Enum):
    """Which side created the offer."""

    INITIATOR = "initiator"
    RESPONDER = "responder"


class PeerLinkState(Enum):
    """Peer link state machine states."""

    INITIATING = "initiating"
    RESPONDING = "responding"
    ESTABLISHED = "established"
    FAILED = "failed"
    CLOSED = "closed"


# Valid state transitions
VALID_LINK_TRANSITIONS: dict[PeerLinkState, set[PeerLinkState]] = {
    PeerLinkState.INITIATING: {
        PeerLinkState.ESTABLISHED,
        PeerLinkState.FAILED,
        PeerLinkState.CLOSED,
    },
    PeerLinkState.RESPONDING: {
        PeerLinkState.ESTABLISHED,
        PeerLinkState.FAILED,
        PeerLinkState.CLOSED,
    },
    PeerLinkState.ESTABLISHED: {PeerLinkState.FAILED, PeerLinkState.CLOSED},
    PeerLinkState.FAILED: {PeerLinkState.CLOSED},
    PeerLinkState.CLOSED: set(),  # Terminal state
}

PeerEventHandler = Callable[["PeerLink", PeerEvent], Awaitable[None]]


class PeerLink:
    """One direct media connection keyed by remote user id."""

    def __init__(self, remote_user_id: str, connection: PeerConnection, role: PeerRole) -> None:
        self.remote_user_id = remote_user_id
        self.connection = connection
        self.role = role
        self.state = (
            PeerLinkState.INITIATING if role is PeerRole.INITIATOR else PeerLinkState.RESPONDING
        )
        self.stream: Any = None
        self.sink: AudioSink | None = None

        # Candidates received before the remote description was applied
        self._pending_candidates: list[IceCandidate] = []
        self._dispatch_task: asyncio.Task[None] | None = None

    @property
    def is_closed(self) -> bool:
        return self.state is PeerLinkState.CLOSED

    @property
    def pending_candidates(self) -> int:
        return len(self._pending_candidates)

    def transition_state(self, new_state: PeerLinkState) -> None:
        """Transition link to a new state with validation.

        Args:
            new_state: Target state

        Raises:
            ValueError: If transition is invalid
        """
        if new_state not in VALID_LINK_TRANSITIONS.get(self.state, set()):
            raise ValueError(
                f"Invalid peer link transition: {self.state.value} → {new_state.value}"
            )

        old_state = self.state
        self.state = new_state

        logger.info(
            "Peer link state transition",
            extra={
                "remote_user_id": self.remote_user_id,
                "from_state": old_state.value,
                "to_state": new_state.value,
            },
        )

    def start_dispatch(self, handler: PeerEventHandler) -> None:
        """Consume connection events in order, one task per link."""
        if self._dispatch_task is not None:
            return
        self._dispatch_task = asyncio.create_task(
            self._dispatch(handler), name=f"peer-events:{self.remote_user_id}"
        )

    async def _dispatch(self, handler: PeerEventHandler) -> None:
        async for event in self.connection.events():
            if self.is_closed:
                return
            try:
                await handler(self, event)
            except Exception:
                logger.exception(
                    "Peer event handler failed",
                    extra={"remote_user_id": self.remote_user_id, "event": type(event).__name__},
                )

    async def create_offer(self) -> SessionDescription:
        """Create an offer and apply it as the local description."""
        try:
            offer = await self.connection.create_offer()
            await self.connection.set_local_description(offer)
        except Exception as e:
            raise TransportNegotiationFailure(
                f"Offer creation for '{self.remote_user_id}' failed: {e}"
            ) from e
        return self.connection.local_description or offer

    async def create_answer(self) -> SessionDescription:
        """Create an answer and apply it as the local description."""
        try:
            answer = await self.connection.create_answer()
            await self.connection.set_local_description(answer)
        except Exception as e:
            raise TransportNegotiationFailure(
                f"Answer creation for '{self.remote_user_id}' failed: {e}"
            ) from e
        return self.connection.local_description or answer

    async def apply_remote_description(self, description: SessionDescription) -> None:
        """Apply the remote offer/answer, then flush buffered candidates."""
        try:
            await self.connection.set_remote_description(description)
        except Exception as e:
            raise TransportNegotiationFailure(
                f"Remote {description.type} from '{self.remote_user_id}' rejected: {e}"
            ) from e
        await self._flush_candidates()

    async def add_candidate(self, candidate: IceCandidate) -> None:
        """Add a remote candidate, holding it until a remote description exists."""
        if not self.connection.has_remote_description:
            self._pending_candidates.append(candidate)
            return
        await self._apply_candidate(candidate)

    async def _flush_candidates(self) -> None:
        pending, self._pending_candidates = self._pending_candidates, []
        for candidate in pending:
            await self._apply_candidate(candidate)

    async def _apply_candidate(self, candidate: IceCandidate) -> None:
        try:
            await self.connection.add_ice_candidate(candidate)
        except Exception as e:
            raise TransportNegotiationFailure(
                f"ICE candidate from '{self.remote_user_id}' rejected: {e}"
            ) from e

    def mark_established(self) -> None:
        if self.state in (PeerLinkState.INITIATING, PeerLinkState.RESPONDING):
            self.transition_state(PeerLinkState.ESTABLISHED)

    def mark_failed(self) -> None:
        if self.state not in (PeerLinkState.FAILED, PeerLinkState.CLOSED):
            self.transition_state(PeerLinkState.FAILED)

    async def close(self) -> None:
        """Close the connection and remove the rendered sink. Idempotent."""
        if self.is_closed:
            return
        self.transition_state(PeerLinkState.CLOSED)

        if self.sink is not None:
            self.sink.remove()
            self.sink = None

        try:
            await self.connection.close()
        except Exception as e:
            logger.warning(f"Error closing peer connection to '{self.remote_user_id}': {e}")

        if self._dispatch_task is not None and self._dispatch_task is not asyncio.current_task():
            self._dispatch_task.cancel()
            try:
                await self._dispatch_task
            except asyncio.CancelledError:
                pass
        self._dispatch_task = None
        self._pending_candidates.clear()
