"""Redis-backed voice store.

Sessions, participants and signaling messages are shared between every
client process through Redis. Realtime notifications use Redis pub/sub,
which preserves publish order per channel.

Key layout (``prefix`` defaults to ``voice:``)::

    {prefix}team:{team_id}:session          active session id (SET NX)
    {prefix}session:{session_id}            session JSON
    {prefix}session:{session_id}:members    set of participant user ids
    {prefix}session:{session_id}:participant:{user_id}   hash, one field per column
    {prefix}session:{session_id}:signals    list of signaling JSON (TTL)
    {prefix}signals:{user_id}               pub/sub channel for a recipient
    {prefix}participants:{session_id}       pub/sub channel for roster changes

Participant flags are separate hash fields so that a point update (HSET of
only the changed fields) never overwrites a concurrent update of another
flag.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ValidationError
from redis import asyncio as aioredis
from redis.asyncio import ConnectionPool

from src.voice_room.errors import StoreError
from src.voice_room.models import Participant, ParticipantChange, SignalingMessage, VoiceSession
from src.voice_room.store.base import Subscription, VoiceStore

logger = logging.getLogger(__name__)

# Delete KEYS[1] only while it still holds ARGV[1]
_COMPARE_AND_DELETE = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""

# Participant columns stored as "" when None
_NULLABLE_PARTICIPANT_FIELDS = ("display_name", "left_at")


def _encode_fields(fields: dict[str, Any]) -> dict[str, str]:
    """Encode participant columns as Redis hash field values."""
    encoded: dict[str, str] = {}
    for name, value in fields.items():
        if value is None:
            encoded[name] = ""
        elif isinstance(value, bool):
            encoded[name] = "1" if value else "0"
        elif isinstance(value, datetime):
            encoded[name] = value.isoformat()
        else:
            encoded[name] = str(value)
    return encoded


def _decode_participant(data: dict[str, str]) -> Participant:
    row: dict[str, Any] = dict(data)
    for name in _NULLABLE_PARTICIPANT_FIELDS:
        if not row.get(name):
            row[name] = None
    return Participant.model_validate(row)


class RedisVoiceStore(VoiceStore):
    """Voice store shared across processes via Redis.

    Session creation is a conditional insert on the per-team session key, so
    concurrent creators converge on a single active session.
    """

    def __init__(
        self,
        redis_url: str,
        db: int = 0,
        key_prefix: str = "voice:",
        signal_ttl_seconds: int = 3600,
        connection_pool_size: int = 10,
    ) -> None:
        """Initialize store with Redis connection settings.

        Args:
            redis_url: Redis connection URL (e.g., "redis://localhost:6379")
            db: Redis database number (0-15)
            key_prefix: Prefix for every key and channel
            signal_ttl_seconds: Retention of a session's signaling list
            connection_pool_size: Redis connection pool size
        """
        self.redis_url = redis_url
        self.db = db
        self.key_prefix = key_prefix
        self.signal_ttl_seconds = signal_ttl_seconds
        self.connection_pool_size = connection_pool_size

        # Connection pool (lazy initialization)
        self._pool: Any = None
        self._redis: Any = None
        self._connected = False
        self._subscriptions: set[Subscription[Any]] = set()

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def _team_key(self, team_id: str) -> str:
        return f"{self.key_prefix}team:{team_id}:session"

    def _session_key(self, session_id: str) -> str:
        return f"{self.key_prefix}session:{session_id}"

    def _members_key(self, session_id: str) -> str:
        return f"{self.key_prefix}session:{session_id}:members"

    def _participant_key(self, session_id: str, user_id: str) -> str:
        return f"{self.key_prefix}session:{session_id}:participant:{user_id}"

    def _signals_key(self, session_id: str) -> str:
        return f"{self.key_prefix}session:{session_id}:signals"

    def _signal_channel(self, user_id: str) -> str:
        return f"{self.key_prefix}signals:{user_id}"

    def _participant_channel(self, session_id: str) -> str:
        return f"{self.key_prefix}participants:{session_id}"

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Establish Redis connection pool.

        This method is idempotent - safe to call multiple times.

        Raises:
            StoreError: If Redis connection fails
        """
        if self._connected:
            return

        try:
            self._pool = ConnectionPool.from_url(
                self.redis_url,
                db=self.db,
                max_connections=self.connection_pool_size,
                decode_responses=True,
            )
            self._redis = aioredis.Redis(connection_pool=self._pool)

            # Test connection
            await self._redis.ping()
            self._connected = True
            logger.info(
                f"Connected to Redis at {self.redis_url} (db={self.db}, "
                f"pool_size={self.connection_pool_size})"
            )
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise StoreError(f"Redis connection failed: {e}") from e

    async def close(self) -> None:
        """Close subscriptions and the Redis connection pool.

        This method is idempotent - safe to call multiple times.
        """
        for sub in list(self._subscriptions):
            await sub.close()

        if not self._connected:
            return

        try:
            if self._redis:
                await self._redis.aclose()
            if self._pool:
                await self._pool.disconnect()
            self._connected = False
            logger.info("Disconnected from Redis")
        except Exception as e:
            logger.warning(f"Error during Redis disconnect: {e}")

    async def health_check(self) -> bool:
        """Check if Redis connection is healthy.

        Returns:
            True if Redis is reachable and responsive, False otherwise
        """
        if not self._connected or not self._redis:
            return False

        try:
            await self._redis.ping()
            return True
        except Exception as e:
            logger.warning(f"Redis health check failed: {e}")
            return False

    def _require_connection(self) -> Any:
        if not self._connected or not self._redis:
            raise StoreError("Redis not connected. Call connect() first.")
        return self._redis

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def _load_session(self, session_id: str) -> VoiceSession | None:
        data = await self._redis.get(self._session_key(session_id))
        if not data:
            return None
        return VoiceSession.model_validate_json(data)

    async def get_or_create_session(self, team_id: str) -> VoiceSession:
        redis = self._require_connection()
        team_key = self._team_key(team_id)

        try:
            session_id = await redis.get(team_key)
            if session_id:
                session = await self._load_session(session_id)
                if session is not None and session.is_active:
                    return session
                # Stale pointer; another client may already have replaced it
                await redis.eval(_COMPARE_AND_DELETE, 1, team_key, session_id)

            candidate = VoiceSession(team_id=team_id)
            await redis.set(self._session_key(candidate.id), candidate.model_dump_json())

            if await redis.set(team_key, candidate.id, nx=True):
                logger.info(
                    "Voice session created",
                    extra={"session_id": candidate.id, "team_id": team_id},
                )
                return candidate

            # Another client won the race; adopt its session
            await redis.delete(self._session_key(candidate.id))
            winner_id = await redis.get(team_key)
            session = await self._load_session(winner_id) if winner_id else None
            if session is None:
                raise StoreError(f"Active session for team '{team_id}' vanished during creation")
            logger.debug(
                "Lost session creation race, joining existing session",
                extra={"session_id": session.id, "team_id": team_id},
            )
            return session

        except StoreError:
            raise
        except Exception as e:
            logger.error(f"Failed to get or create session for team '{team_id}': {e}")
            raise StoreError(f"Session lookup/create failed: {e}") from e

    # ------------------------------------------------------------------
    # Participants
    # ------------------------------------------------------------------

    async def _load_participant(self, session_id: str, user_id: str) -> Participant | None:
        data = await self._redis.hgetall(self._participant_key(session_id, user_id))
        if not data:
            return None
        return _decode_participant(data)

    async def _publish_participant(self, participant: Participant, change: str) -> None:
        notification = ParticipantChange(
            change=change, participant=participant  # type: ignore[arg-type]
        )
        await self._redis.publish(
            self._participant_channel(participant.session_id),
            notification.model_dump_json(),
        )

    async def upsert_participant(
        self,
        session_id: str,
        user_id: str,
        *,
        is_muted: bool = False,
        is_speaking: bool = False,
        display_name: str | None = None,
    ) -> Participant:
        redis = self._require_connection()
        key = self._participant_key(session_id, user_id)

        try:
            if await self._load_session(session_id) is None:
                raise StoreError(f"Unknown voice session '{session_id}'")

            if await redis.exists(key):
                fields: dict[str, Any] = {
                    "is_muted": is_muted,
                    "is_speaking": is_speaking,
                    "left_at": None,
                }
                if display_name is not None:
                    fields["display_name"] = display_name
                await redis.hset(key, mapping=_encode_fields(fields))
                participant = await self._load_participant(session_id, user_id)
                if participant is None:
                    raise StoreError(f"Participant '{user_id}' vanished during upsert")
                change = "update"
            else:
                participant = Participant(
                    session_id=session_id,
                    user_id=user_id,
                    is_muted=is_muted,
                    is_speaking=is_speaking,
                    display_name=display_name,
                )
                await redis.hset(key, mapping=_encode_fields(participant.model_dump()))
                await redis.sadd(self._members_key(session_id), user_id)
                change = "insert"

            await self._publish_participant(participant, change)
            return participant

        except StoreError:
            raise
        except Exception as e:
            logger.error(f"Failed to upsert participant '{user_id}': {e}")
            raise StoreError(f"Participant upsert failed: {e}") from e

    async def update_participant(
        self, session_id: str, user_id: str, **fields: Any
    ) -> Participant:
        """Write only the given flags; concurrent updates of other flags survive."""
        self.validate_update_fields(fields)
        redis = self._require_connection()
        key = self._participant_key(session_id, user_id)

        try:
            exists = await redis.exists(key)
        except Exception as e:
            raise StoreError(f"Participant lookup failed: {e}") from e
        if not exists:
            raise LookupError(f"No participant '{user_id}' in session '{session_id}'")

        try:
            await redis.hset(key, mapping=_encode_fields(fields))
            participant = await self._load_participant(session_id, user_id)
            if participant is None:
                raise LookupError(f"No participant '{user_id}' in session '{session_id}'")
            await self._publish_participant(participant, "update")
        except LookupError:
            raise
        except Exception as e:
            logger.error(f"Failed to update participant '{user_id}': {e}")
            raise StoreError(f"Participant update failed: {e}") from e
        return participant

    async def list_participants(
        self, session_id: str, exclude_user_id: str | None = None
    ) -> list[Participant]:
        redis = self._require_connection()

        try:
            user_ids = await redis.smembers(self._members_key(session_id))
            rows = {
                user_id: await redis.hgetall(self._participant_key(session_id, user_id))
                for user_id in user_ids
                if user_id != exclude_user_id
            }
        except Exception as e:
            logger.error(f"Failed to list participants of session '{session_id}': {e}")
            raise StoreError(f"Participant listing failed: {e}") from e

        participants: list[Participant] = []
        for user_id, data in rows.items():
            if not data:
                continue
            try:
                participant = _decode_participant(data)
            except ValidationError as e:
                logger.warning(f"Skipping invalid participant data for '{user_id}': {e}")
                continue
            if participant.is_present:
                participants.append(participant)

        return sorted(participants, key=lambda p: p.joined_at)

    # ------------------------------------------------------------------
    # Signaling
    # ------------------------------------------------------------------

    async def insert_signal(self, message: SignalingMessage) -> SignalingMessage:
        redis = self._require_connection()
        data = message.model_dump_json()
        signals_key = self._signals_key(message.session_id)

        try:
            await redis.rpush(signals_key, data)
            await redis.expire(signals_key, self.signal_ttl_seconds)
            await redis.publish(self._signal_channel(message.to_user_id), data)
        except Exception as e:
            logger.error(
                "Failed to insert signaling message",
                extra={
                    "kind": message.kind.value,
                    "to_user_id": message.to_user_id,
                    "error": str(e),
                },
            )
            raise StoreError(f"Signal insert failed: {e}") from e

        return message

    async def subscribe_signals(self, user_id: str) -> Subscription[SignalingMessage]:
        return await self._subscribe(self._signal_channel(user_id), SignalingMessage)

    async def subscribe_participants(self, session_id: str) -> Subscription[ParticipantChange]:
        return await self._subscribe(self._participant_channel(session_id), ParticipantChange)

    async def _subscribe(self, channel: str, model: type[BaseModel]) -> Subscription[Any]:
        redis = self._require_connection()

        try:
            pubsub = redis.pubsub()
            await pubsub.subscribe(channel)
        except Exception as e:
            raise StoreError(f"Subscribe to '{channel}' failed: {e}") from e

        sub: Subscription[Any] = Subscription(channel)
        reader = asyncio.create_task(self._pump(pubsub, sub, model), name=f"redis-sub:{channel}")

        async def _teardown() -> None:
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
            try:
                await pubsub.unsubscribe(channel)
                await pubsub.aclose()
            except Exception as e:
                logger.debug(f"Error closing subscription '{channel}': {e}")
            self._subscriptions.discard(sub)

        sub.add_close_callback(_teardown)
        self._subscriptions.add(sub)
        return sub

    async def _pump(self, pubsub: Any, sub: Subscription[Any], model: type[BaseModel]) -> None:
        """Forward pub/sub messages into a subscription until cancelled."""
        while not sub.closed:
            try:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Subscription '{sub.name}' read failed: {e}")
                await asyncio.sleep(0.5)
                continue

            if message is None or message.get("type") != "message":
                continue

            try:
                sub.publish(model.model_validate_json(message["data"]))
            except ValidationError as e:
                logger.warning(f"Skipping invalid notification on '{sub.name}': {e}")
