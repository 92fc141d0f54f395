"""Redis-based conversation state store with per-key locking."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from redis.exceptions import LockError, RedisError

from quickbook.config import settings
from quickbook.core.errors import StorageUnavailable
from quickbook.infra.redis import get_redis, namespaced
from .models import ConversationKey, ConversationState

logger = logging.getLogger(__name__)

# Key prefixes
STATE_PREFIX = namespaced("conversation", "state", "")
LOCK_PREFIX = namespaced("conversation", "lock", "")


class KeyedLock:
    """asyncio locks created on demand per key and dropped when unused."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class ConversationStore:
    """
    Conversation state keyed by (salon_id, customer_handle).

    Key pattern: quickbook:v1:conversation:state:{salon_id}:{customer_handle}

    Gracefully handles Redis unavailability with in-memory fallback. Writes
    for one key are serialized by lock(): an in-process lock always, plus a
    Redis lock when Redis is reachable so several workers agree.
    """

    def __init__(
        self,
        ttl_seconds: Optional[int] = None,
        lock_timeout_seconds: Optional[float] = None,
    ):
        """Initialize store."""
        self._ttl = ttl_seconds or settings.conversation_ttl_seconds
        self._lock_timeout = lock_timeout_seconds or settings.conversation_lock_timeout_seconds
        self._in_memory_fallback: dict[str, ConversationState] = {}
        self._local_locks = KeyedLock()

    @property
    def ttl_seconds(self) -> int:
        return self._ttl

    def _key(self, key: ConversationKey) -> str:
        """Generate Redis key."""
        return f"{STATE_PREFIX}{key}"

    async def get(self, key: ConversationKey) -> Optional[ConversationState]:
        """
        Get conversation state.

        Returns:
            ConversationState or None if absent or expired
        """
        redis = await get_redis()

        if redis:
            try:
                data = await redis.get(self._key(key))
            except RedisError as e:
                logger.warning(f"Redis read failed, using in-memory fallback: {e}")
            else:
                if not data:
                    return None
                state = ConversationState.from_json(data)
                return None if state.is_expired() else state

        state = self._in_memory_fallback.get(str(key))
        if state is not None and state.is_expired():
            del self._in_memory_fallback[str(key)]
            logger.debug(f"Conversation {key} expired")
            return None
        return state

    async def put(
        self,
        key: ConversationKey,
        state: ConversationState,
        ttl: Optional[int] = None,
    ) -> None:
        """Save state and refresh its inactivity TTL."""
        ttl = ttl or self._ttl
        state.touch(ttl)

        redis = await get_redis()

        if redis:
            try:
                await redis.setex(self._key(key), ttl, state.to_json())
                logger.debug(f"Conversation {key} saved (v{state.version}, {state.phase.value})")
                return
            except RedisError as e:
                logger.warning(f"Redis write failed, using in-memory fallback: {e}")

        self._in_memory_fallback[str(key)] = state

    async def delete(self, key: ConversationKey) -> None:
        """Delete state."""
        self._in_memory_fallback.pop(str(key), None)

        redis = await get_redis()

        if redis:
            try:
                await redis.delete(self._key(key))
                logger.debug(f"Conversation {key} deleted")
            except RedisError as e:
                logger.warning(f"Redis delete failed for {key}: {e}")

    @asynccontextmanager
    async def lock(self, key: ConversationKey) -> AsyncIterator[None]:
        """
        Exclusive scope for read -> decide -> write on one conversation.

        Raises:
            StorageUnavailable: The distributed lock could not be taken
        """
        async with self._local_locks.hold(str(key)):
            redis = await get_redis()
            if redis is None:
                yield
                return

            distributed = redis.lock(
                f"{LOCK_PREFIX}{key}",
                timeout=self._lock_timeout,
                blocking_timeout=self._lock_timeout,
            )
            try:
                acquired = await distributed.acquire()
            except RedisError as e:
                logger.error(f"Failed to lock conversation {key}: {e}")
                raise StorageUnavailable(f"Conversation lock unavailable: {e}") from e
            if not acquired:
                raise StorageUnavailable(f"Timed out waiting for conversation lock {key}")

            try:
                yield
            finally:
                try:
                    await distributed.release()
                except LockError as e:
                    logger.warning(f"Conversation lock for {key} expired before release: {e}")
                except RedisError as e:
                    logger.warning(f"Failed to release conversation lock {key}: {e}")


# Singleton
_store: Optional[ConversationStore] = None


async def get_conversation_store() -> ConversationStore:
    """Get singleton ConversationStore."""
    global _store
    if _store is None:
        _store = ConversationStore()
    return _store
