"""In-process voice store.

Keeps sessions, participants and signaling messages in dictionaries and
fans notifications out to subscriptions synchronously, so delivery order
per subscriber equals insertion order. Suitable for tests and single-process
demos where every participant shares one event loop.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any

from src.voice_room.errors import StoreError
from src.voice_room.models import Participant, ParticipantChange, SignalingMessage, VoiceSession
from src.voice_room.store.base import Subscription, VoiceStore

logger = logging.getLogger(__name__)


class InMemoryVoiceStore(VoiceStore):
    """Dictionary-backed store with in-process realtime notifications."""

    def __init__(self) -> None:
        self.sessions: dict[str, VoiceSession] = {}
        self.participants: dict[tuple[str, str], Participant] = {}
        self.signals: list[SignalingMessage] = []

        self._session_lock = asyncio.Lock()
        self._signal_subs: dict[str, list[Subscription[SignalingMessage]]] = defaultdict(list)
        self._participant_subs: dict[str, list[Subscription[ParticipantChange]]] = defaultdict(
            list
        )
        self._connected = False

    async def connect(self) -> None:
        self._connected = True

    async def close(self) -> None:
        subs: list[Subscription[Any]] = []
        for signal_list in self._signal_subs.values():
            subs.extend(signal_list)
        for participant_list in self._participant_subs.values():
            subs.extend(participant_list)
        for sub in subs:
            await sub.close()
        self._connected = False

    async def health_check(self) -> bool:
        return True

    async def get_or_create_session(self, team_id: str) -> VoiceSession:
        async with self._session_lock:
            for session in self.sessions.values():
                if session.team_id == team_id and session.is_active:
                    return session

            session = VoiceSession(team_id=team_id)
            self.sessions[session.id] = session
            logger.info(
                "Voice session created",
                extra={"session_id": session.id, "team_id": team_id},
            )
            return session

    async def upsert_participant(
        self,
        session_id: str,
        user_id: str,
        *,
        is_muted: bool = False,
        is_speaking: bool = False,
        display_name: str | None = None,
    ) -> Participant:
        if session_id not in self.sessions:
            raise StoreError(f"Unknown voice session '{session_id}'")

        key = (session_id, user_id)
        existing = self.participants.get(key)
        if existing is None:
            participant = Participant(
                session_id=session_id,
                user_id=user_id,
                is_muted=is_muted,
                is_speaking=is_speaking,
                display_name=display_name,
            )
            change = "insert"
        else:
            participant = existing.model_copy(
                update={
                    "is_muted": is_muted,
                    "is_speaking": is_speaking,
                    "display_name": display_name or existing.display_name,
                    "left_at": None,
                }
            )
            change = "update"

        self.participants[key] = participant
        self._notify_participant(ParticipantChange(change=change, participant=participant))
        return participant

    async def update_participant(
        self, session_id: str, user_id: str, **fields: Any
    ) -> Participant:
        self.validate_update_fields(fields)

        key = (session_id, user_id)
        existing = self.participants.get(key)
        if existing is None:
            raise LookupError(f"No participant '{user_id}' in session '{session_id}'")

        participant = existing.model_copy(update=fields)
        self.participants[key] = participant
        self._notify_participant(ParticipantChange(change="update", participant=participant))
        return participant

    async def list_participants(
        self, session_id: str, exclude_user_id: str | None = None
    ) -> list[Participant]:
        rows = [
            p
            for (sid, uid), p in self.participants.items()
            if sid == session_id and p.is_present and uid != exclude_user_id
        ]
        return sorted(rows, key=lambda p: p.joined_at)

    async def insert_signal(self, message: SignalingMessage) -> SignalingMessage:
        self.signals.append(message)
        for sub in list(self._signal_subs.get(message.to_user_id, [])):
            sub.publish(message)
        return message

    async def subscribe_signals(self, user_id: str) -> Subscription[SignalingMessage]:
        sub: Subscription[SignalingMessage] = Subscription(f"signals:{user_id}")
        self._signal_subs[user_id].append(sub)
        sub.add_close_callback(lambda: self._signal_subs[user_id].remove(sub))
        return sub

    async def subscribe_participants(self, session_id: str) -> Subscription[ParticipantChange]:
        sub: Subscription[ParticipantChange] = Subscription(f"participants:{session_id}")
        self._participant_subs[session_id].append(sub)
        sub.add_close_callback(lambda: self._participant_subs[session_id].remove(sub))
        return sub

    def _notify_participant(self, change: ParticipantChange) -> None:
        for sub in list(self._participant_subs.get(change.participant.session_id, [])):
            sub.publish(change)
