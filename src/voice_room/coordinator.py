"""Voice session coordinator.

Manages a local participant's presence in a team voice room: microphone
capture, session and participant bookkeeping in the shared store, a full
mesh of peer links to every other participant, signaling relayed through
the store, and speaking detection.

State Transitions:
- DISCONNECTED → JOINING (join called)
- JOINING → CONNECTED (capture, session and participant registration succeeded)
- JOINING → DISCONNECTED (join failed or was cancelled by leave; resources released)
- CONNECTED → DISCONNECTED (leave)

All work runs on one event loop. Operations suspend at store and transport
calls; no locking is needed for the peer link table.
"""

import asyncio
import logging
from collections.abc import Mapping
from enum import Enum
from types import MappingProxyType
from typing import Any

from src.voice_room.config import VoiceRoomConfig
from src.voice_room.errors import (
    JoinCancelledError,
    SessionUnavailable,
    SignalingDeliveryFailure,
    StoreError,
    TransportNegotiationFailure,
)
from src.voice_room.media.analysis import FrequencyAnalyser
from src.voice_room.media.base import (
    ConnectionStateEvent,
    IceCandidateEvent,
    LocalCapture,
    MediaBackend,
    PeerEvent,
    TrackEvent,
)
from src.voice_room.metrics import CoordinatorMetrics
from src.voice_room.models import (
    IceCandidate,
    Participant,
    ParticipantChange,
    SessionDescription,
    SignalingMessage,
    SignalKind,
)
from src.voice_room.peer import PeerLink, PeerRole
from src.voice_room.speaking import SpeakingDetector, SpeakingMonitor
from src.voice_room.store.base import Subscription, VoiceStore

logger = logging.getLogger(__name__)


class CoordinatorState(Enum):
    """Coordinator state machine states."""

    DISCONNECTED = "disconnected"
    JOINING = "joining"
    CONNECTED = "connected"


# Valid state transitions
VALID_TRANSITIONS: dict[CoordinatorState, set[CoordinatorState]] = {
    CoordinatorState.DISCONNECTED: {CoordinatorState.JOINING},
    CoordinatorState.JOINING: {CoordinatorState.CONNECTED, CoordinatorState.DISCONNECTED},
    CoordinatorState.CONNECTED: {CoordinatorState.DISCONNECTED},
}


class VoiceSessionCoordinator:
    """Coordinates one local participant's membership in a team voice room.

    Example:
        ```python
        store = InMemoryVoiceStore()
        await store.connect()
        coordinator = VoiceSessionCoordinator(store, AiortcMediaBackend())

        session_id = await coordinator.join("team-1", "alice")
        await coordinator.set_muted(True)
        await coordinator.leave()
        ```
    """

    def __init__(
        self,
        store: VoiceStore,
        media: MediaBackend,
        config: VoiceRoomConfig | None = None,
    ) -> None:
        """Initialize coordinator.

        Args:
            store: Shared session/participant/signaling store (already connected)
            media: Media backend for capture, connections and playback
            config: Voice room configuration (defaults if omitted)
        """
        self.store = store
        self.media = media
        self.config = config or VoiceRoomConfig()
        self.metrics = CoordinatorMetrics()

        self._state = CoordinatorState.DISCONNECTED
        self._team_id: str | None = None
        self._user_id: str | None = None
        self._session_id: str | None = None

        self._capture: LocalCapture | None = None
        self._links: dict[str, PeerLink] = {}
        self._early_candidates: dict[str, list[IceCandidate]] = {}
        self._participants: list[Participant] = []

        self._muted = False
        self._deafened = False

        self._speaking: SpeakingMonitor | None = None
        self._subscriptions: list[Subscription[Any]] = []
        self._listeners: list[asyncio.Task[None]] = []

        self._cancel_requested = False
        self._join_settled = asyncio.Event()
        self._join_settled.set()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> CoordinatorState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is CoordinatorState.CONNECTED

    @property
    def is_muted(self) -> bool:
        return self._muted

    @property
    def is_deafened(self) -> bool:
        return self._deafened

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def user_id(self) -> str | None:
        return self._user_id

    @property
    def peer_links(self) -> Mapping[str, PeerLink]:
        """Read-only view of live peer links keyed by remote user id."""
        return MappingProxyType(self._links)

    @property
    def participants(self) -> list[Participant]:
        """Cached roster of present participants (including self)."""
        return list(self._participants)

    def transition_state(self, new_state: CoordinatorState) -> None:
        """Transition coordinator to a new state with validation.

        Raises:
            ValueError: If transition is invalid
        """
        if new_state not in VALID_TRANSITIONS.get(self._state, set()):
            raise ValueError(
                f"Invalid coordinator transition: {self._state.value} → {new_state.value}"
            )

        old_state = self._state
        self._state = new_state

        logger.info(
            "Coordinator state transition",
            extra={
                "team_id": self._team_id,
                "user_id": self._user_id,
                "from_state": old_state.value,
                "to_state": new_state.value,
            },
        )

    # ------------------------------------------------------------------
    # Join / leave
    # ------------------------------------------------------------------

    def _check_cancelled(self) -> None:
        if self._cancel_requested:
            raise JoinCancelledError("join cancelled by leave()")

    async def join(self, team_id: str, user_id: str, display_name: str | None = None) -> str:
        """Join the team's voice room.

        Args:
            team_id: Team whose room to join
            user_id: Local user identifier
            display_name: Optional name shown in other participants' rosters

        Returns:
            Identifier of the joined session

        Raises:
            MediaAccessDenied: If microphone capture cannot be acquired
            SessionUnavailable: If session or participant registration fails
            JoinCancelledError: If leave() was called before join completed
            RuntimeError: If not currently disconnected
        """
        if self._state is not CoordinatorState.DISCONNECTED:
            raise RuntimeError(f"Cannot join while {self._state.value}")

        self._team_id = team_id
        self._user_id = user_id
        self._muted = False
        self._deafened = False
        self._cancel_requested = False
        self._join_settled.clear()
        self.metrics = CoordinatorMetrics()
        self.transition_state(CoordinatorState.JOINING)

        try:
            return await self._join(team_id, user_id, display_name)
        except BaseException as e:
            logger.warning(
                "Join failed, releasing resources",
                extra={"team_id": team_id, "user_id": user_id, "error": repr(e)},
            )
            await self._teardown()
            if self._state is not CoordinatorState.DISCONNECTED:
                self.transition_state(CoordinatorState.DISCONNECTED)
            raise
        finally:
            self._join_settled.set()

    async def _join(self, team_id: str, user_id: str, display_name: str | None) -> str:
        # 1. Microphone
        self._capture = await self.media.create_capture(self.config.capture)
        self.metrics.captures_acquired += 1
        self._check_cancelled()

        # 2. Session lookup-or-create
        try:
            session = await self.store.get_or_create_session(team_id)
        except StoreError as e:
            raise SessionUnavailable(f"Voice session for team '{team_id}' unavailable: {e}") from e
        self._check_cancelled()

        # 3. Participant registration
        try:
            await self.store.upsert_participant(
                session.id,
                user_id,
                is_muted=False,
                is_speaking=False,
                display_name=display_name,
            )
        except StoreError as e:
            raise SessionUnavailable(f"Participant registration failed: {e}") from e
        self._session_id = session.id
        self._check_cancelled()

        # 4. Realtime listeners and roster
        try:
            signal_sub = await self.store.subscribe_signals(user_id)
            self._subscriptions.append(signal_sub)
            participant_sub = await self.store.subscribe_participants(session.id)
            self._subscriptions.append(participant_sub)
            roster = await self.store.list_participants(session.id)
        except StoreError as e:
            raise SessionUnavailable(f"Voice session '{session.id}' unavailable: {e}") from e
        self._check_cancelled()

        self._participants = roster
        self._listeners = [
            asyncio.create_task(self._signal_listener(signal_sub), name=f"signals:{user_id}"),
            asyncio.create_task(
                self._participant_listener(participant_sub), name=f"participants:{session.id}"
            ),
        ]

        self.transition_state(CoordinatorState.CONNECTED)
        self.metrics.record_connected()
        logger.info(
            "Joined voice session",
            extra={
                "session_id": session.id,
                "team_id": team_id,
                "user_id": user_id,
                "participants": len(roster),
            },
        )

        # 5. Outbound links to everyone already present
        for participant in roster:
            if participant.user_id == user_id:
                continue
            await self._open_outbound_link(participant.user_id)
            if self._cancel_requested or self._session_id != session.id:
                raise JoinCancelledError("join cancelled by leave()")

        # 6. Speaking detection
        self._speaking = SpeakingMonitor(
            capture=self._capture,
            analyser=FrequencyAnalyser.from_config(self.config.speaking),
            detector=SpeakingDetector(self.config.speaking.threshold),
            is_muted=lambda: self._muted,
            write=self._write_speaking,
            interval_ms=self.config.speaking.sample_interval_ms,
        )
        self._speaking.start()

        return session.id

    async def leave(self) -> None:
        """Leave the voice room and release every resource.

        Idempotent. When called while join() is in progress, join is asked to
        stop at its next suspension point and this call waits for it to unwind.
        """
        if self._state is CoordinatorState.DISCONNECTED:
            return

        self._cancel_requested = True
        if not self._join_settled.is_set():
            # join() is still running, possibly inside its offer loop; it unwinds itself
            await self._join_settled.wait()
            return

        session_id = self._session_id
        await self._teardown()
        # A concurrent leave() may already have finished
        if self._state is not CoordinatorState.DISCONNECTED:
            self.transition_state(CoordinatorState.DISCONNECTED)
        logger.info(
            "Left voice session",
            extra={"session_id": session_id, "user_id": self._user_id},
        )

    async def _teardown(self) -> None:
        """Release capture, links, listeners and mark the participant departed."""
        if self._speaking is not None:
            await self._speaking.stop()
            self._speaking = None

        current = asyncio.current_task()
        for task in self._listeners:
            if task is not current:
                task.cancel()
        for task in self._listeners:
            if task is current:
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._listeners = []

        for sub in self._subscriptions:
            await sub.close()
        self._subscriptions = []

        links = list(self._links.values())
        self._links.clear()
        for link in links:
            await link.close()
        self._early_candidates.clear()

        if self._capture is not None:
            self._capture.stop()
            self._capture = None
            self.metrics.captures_released += 1

        if self._session_id is not None and self._user_id is not None:
            session_id, self._session_id = self._session_id, None
            try:
                await self.store.mark_departed(session_id, self._user_id)
            except (StoreError, LookupError) as e:
                logger.error(
                    "Failed to mark participant departed",
                    extra={"session_id": session_id, "user_id": self._user_id, "error": str(e)},
                )

        self._participants = []
        self.metrics.finalize()

    # ------------------------------------------------------------------
    # Local controls
    # ------------------------------------------------------------------

    async def set_muted(self, muted: bool) -> None:
        """Enable/disable the outbound track and persist the muted flag."""
        self._muted = muted
        if self._capture is not None:
            self._capture.audio_track.enabled = not muted

        if self._session_id is None or self._user_id is None:
            return
        try:
            await self.store.update_participant(self._session_id, self._user_id, is_muted=muted)
        except (StoreError, LookupError) as e:
            logger.error(
                "Failed to persist muted flag",
                extra={"session_id": self._session_id, "muted": muted, "error": str(e)},
            )

    async def set_deafened(self, deafened: bool) -> None:
        """Silence or restore playback of every remote participant.

        Deafening also mutes; undeafening leaves the mute state untouched.
        """
        self._deafened = deafened
        volume = 0.0 if deafened else 1.0
        for link in self._links.values():
            if link.sink is not None:
                link.sink.volume = volume

        if deafened and not self._muted:
            await self.set_muted(True)

    async def toggle_mute(self) -> None:
        await self.set_muted(not self._muted)

    async def toggle_deafen(self) -> None:
        await self.set_deafened(not self._deafened)

    async def refresh_participants(self) -> list[Participant]:
        """Reload the roster from the store."""
        if self._session_id is None:
            return []
        try:
            self._participants = await self.store.list_participants(self._session_id)
        except StoreError as e:
            logger.error(f"Failed to load participants: {e}")
        return self.participants

    async def _write_speaking(self, is_speaking: bool) -> None:
        if self._session_id is None or self._user_id is None:
            return
        await self.store.update_participant(
            self._session_id, self._user_id, is_speaking=is_speaking
        )
        self.metrics.speaking_writes += 1

    # ------------------------------------------------------------------
    # Peer links
    # ------------------------------------------------------------------

    def _create_link(self, remote_user_id: str, role: PeerRole) -> PeerLink:
        connection = self.media.new_connection(self.config.rtc)
        if self._capture is not None:
            for track in self._capture.tracks():
                connection.add_track(track)

        link = PeerLink(remote_user_id, connection, role)
        self._links[remote_user_id] = link
        link.start_dispatch(self._handle_peer_event)
        return link

    async def _open_outbound_link(self, remote_user_id: str) -> None:
        link = self._create_link(remote_user_id, PeerRole.INITIATOR)
        try:
            offer = await link.create_offer()
        except TransportNegotiationFailure as e:
            self._record_transport_failure(link, e)
            return
        if link.is_closed or self._cancel_requested:
            return

        try:
            await self._send_signal(SignalKind.OFFER, remote_user_id, offer)
        except SignalingDeliveryFailure as e:
            logger.error(
                "Offer not delivered, peer link stalled",
                extra={"remote_user_id": remote_user_id, "error": str(e)},
            )

    async def _close_link(self, remote_user_id: str) -> None:
        link = self._links.pop(remote_user_id, None)
        self._early_candidates.pop(remote_user_id, None)
        if link is not None:
            await link.close()

    def _record_transport_failure(self, link: PeerLink, error: Exception) -> None:
        self.metrics.transport_failures += 1
        link.mark_failed()
        logger.error(
            "Transport negotiation failure",
            extra={"remote_user_id": link.remote_user_id, "error": str(error)},
        )

    async def _send_signal(
        self, kind: SignalKind, to_user_id: str, body: SessionDescription | IceCandidate
    ) -> None:
        assert self._session_id is not None and self._user_id is not None
        if isinstance(body, IceCandidate):
            message = SignalingMessage.ice_candidate(
                self._session_id, self._user_id, to_user_id, body
            )
        elif kind is SignalKind.OFFER:
            message = SignalingMessage.offer(self._session_id, self._user_id, to_user_id, body)
        else:
            message = SignalingMessage.answer(self._session_id, self._user_id, to_user_id, body)

        try:
            await self.store.insert_signal(message)
        except StoreError as e:
            self.metrics.signaling_failures += 1
            raise SignalingDeliveryFailure(
                f"{kind.value} to '{to_user_id}' not delivered: {e}"
            ) from e
        self.metrics.record_signal_sent(kind)

    async def _handle_peer_event(self, link: PeerLink, event: PeerEvent) -> None:
        if isinstance(event, TrackEvent):
            link.stream = event.stream
            if link.sink is not None:
                link.sink.remove()
            link.sink = self.media.render_remote(
                link.remote_user_id, event.stream, volume=0.0 if self._deafened else 1.0
            )

        elif isinstance(event, IceCandidateEvent):
            if event.candidate is None or link.is_closed:
                return
            try:
                await self._send_signal(
                    SignalKind.ICE_CANDIDATE, link.remote_user_id, event.candidate
                )
            except SignalingDeliveryFailure as e:
                logger.error(
                    "ICE candidate not delivered",
                    extra={"remote_user_id": link.remote_user_id, "error": str(e)},
                )

        elif isinstance(event, ConnectionStateEvent):
            logger.info(
                "Peer connection state",
                extra={"remote_user_id": link.remote_user_id, "state": event.state},
            )
            if event.state == "connected":
                link.mark_established()
            elif event.state == "failed":
                self._record_transport_failure(
                    link, TransportNegotiationFailure("connection entered failed state")
                )
            elif event.state == "closed" and self._links.get(link.remote_user_id) is link:
                await self._close_link(link.remote_user_id)

    # ------------------------------------------------------------------
    # Incoming signaling
    # ------------------------------------------------------------------

    async def on_incoming_signal(self, message: SignalingMessage) -> None:
        """Apply a signaling message addressed to the local user.

        Never raises for malformed payloads, unknown senders or transport
        errors; those are logged and isolated to the affected peer link.
        """
        if (
            self._state is not CoordinatorState.CONNECTED
            or message.session_id != self._session_id
            or message.to_user_id != self._user_id
            or message.from_user_id == self._user_id
        ):
            logger.debug(
                "Ignoring signaling message",
                extra={"kind": message.kind.value, "from_user_id": message.from_user_id},
            )
            return

        self.metrics.record_signal_received(message.kind)
        sender = message.from_user_id

        try:
            if message.kind is SignalKind.OFFER:
                await self._handle_offer(sender, message.description())
            elif message.kind is SignalKind.ANSWER:
                await self._handle_answer(sender, message.description())
            else:
                await self._handle_candidate(sender, message.candidate())
        except ValueError as e:
            logger.warning(
                "Malformed signaling payload",
                extra={"kind": message.kind.value, "from_user_id": sender, "error": str(e)},
            )
        except TransportNegotiationFailure as e:
            link = self._links.get(sender)
            if link is not None:
                self._record_transport_failure(link, e)
            else:
                self.metrics.transport_failures += 1
                logger.error(f"Transport negotiation failure with '{sender}': {e}")
        except SignalingDeliveryFailure as e:
            logger.error(
                "Signaling reply not delivered, peer link stalled",
                extra={"remote_user_id": sender, "error": str(e)},
            )

    async def _handle_offer(self, sender: str, offer: SessionDescription) -> None:
        link = self._links.get(sender)
        colliding = (
            link is not None
            and link.role is PeerRole.INITIATOR
            and not link.connection.has_remote_description
        )
        if colliding:
            # Both sides offered at once: the lower user id keeps its offer
            assert self._user_id is not None
            if self._user_id < sender:
                logger.info("Ignoring colliding offer", extra={"remote_user_id": sender})
                return
            await self._close_link(sender)
            link = None

        if link is None or link.is_closed:
            link = self._create_link(sender, PeerRole.RESPONDER)

        await link.apply_remote_description(offer)
        for candidate in self._early_candidates.pop(sender, []):
            await link.add_candidate(candidate)
        if link.is_closed:
            return

        answer = await link.create_answer()
        if link.is_closed:
            return
        await self._send_signal(SignalKind.ANSWER, sender, answer)

    async def _handle_answer(self, sender: str, answer: SessionDescription) -> None:
        link = self._links.get(sender)
        if link is None or link.role is not PeerRole.INITIATOR:
            logger.debug("Answer without outbound link ignored", extra={"remote_user_id": sender})
            return
        if link.connection.has_remote_description:
            logger.debug("Duplicate answer ignored", extra={"remote_user_id": sender})
            return
        await link.apply_remote_description(answer)

    async def _handle_candidate(self, sender: str, candidate: IceCandidate) -> None:
        link = self._links.get(sender)
        if link is not None:
            await link.add_candidate(candidate)
            return

        signaling = self.config.signaling
        buffered = len(self._early_candidates.get(sender, ()))
        if signaling.buffer_early_candidates and buffered < signaling.max_buffered_candidates:
            self._early_candidates.setdefault(sender, []).append(candidate)
            self.metrics.candidates_buffered += 1
        else:
            self.metrics.candidates_dropped += 1
            logger.debug(
                "ICE candidate without peer link dropped", extra={"remote_user_id": sender}
            )

    # ------------------------------------------------------------------
    # Realtime listeners
    # ------------------------------------------------------------------

    async def _signal_listener(self, subscription: Subscription[SignalingMessage]) -> None:
        async for message in subscription:
            try:
                await self.on_incoming_signal(message)
            except Exception:
                logger.exception(
                    "Unhandled error processing signaling message",
                    extra={"kind": message.kind.value, "from_user_id": message.from_user_id},
                )

    async def _participant_listener(self, subscription: Subscription[ParticipantChange]) -> None:
        async for change in subscription:
            await self._on_participant_change(change)

    async def _on_participant_change(self, change: ParticipantChange) -> None:
        participant = change.participant
        if participant.session_id != self._session_id:
            return

        roster = [p for p in self._participants if p.user_id != participant.user_id]
        if participant.is_present:
            roster.append(participant)
        self._participants = sorted(roster, key=lambda p: p.joined_at)

        if participant.user_id != self._user_id and not participant.is_present:
            if participant.user_id in self._links:
                logger.info(
                    "Participant departed, closing peer link",
                    extra={"remote_user_id": participant.user_id},
                )
            await self._close_link(participant.user_id)

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    def get_metrics_summary(self) -> dict[str, Any]:
        """Get coordinator metrics summary for logging/monitoring."""
        return {
            "state": self._state.value,
            "session_id": self._session_id,
            "user_id": self._user_id,
            "peer_links": {uid: link.state.value for uid, link in self._links.items()},
            "muted": self._muted,
            "deafened": self._deafened,
            "signals_sent": dict(self.metrics.signals_sent),
            "signals_received": dict(self.metrics.signals_received),
            "candidates_buffered": self.metrics.candidates_buffered,
            "candidates_dropped": self.metrics.candidates_dropped,
            "signaling_failures": self.metrics.signaling_failures,
            "transport_failures": self.metrics.transport_failures,
            "speaking_writes": self.metrics.speaking_writes,
            "join_latency_ms": self.metrics.join_latency_ms,
            "connected_duration_s": self.metrics.connected_duration_s(),
        }
