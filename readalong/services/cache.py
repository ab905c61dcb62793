"""
Redis-backed cache for session views and its post-commit invalidation.

Cached projections:

- ``readalong:session:{session_id}``: single-session detail view
- ``readalong:sessions:...``: session list views, one key per query and caller
- ``readalong:participant:{participant_id}:...``: participant-scoped collections

Storage is authoritative; the cache is advisory. Reads and writes that fail
are logged and treated as misses. Invalidation failures are reported to the
caller of ``SessionCache.invalidate`` so the dispatcher can schedule a retry,
but never reach the join/leave caller.

Every invalidation bumps ``readalong:generation`` before deleting keys. A
read-through takes the generation before it reads storage and writes back
with ``set_json_if_current``, which refuses the write if any invalidation
ran in between. A snapshot read before a commit therefore cannot land in
the cache after that commit's invalidation.
"""

import json
import logging
import uuid
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from typing import Any, Callable

import redis

from readalong.config import CACHE_INVALIDATION_WORKERS, CACHE_KEY_PREFIX, SESSION_CACHE_TTL_S

logger = logging.getLogger(__name__)


class CacheUnavailableError(Exception):
    pass


def session_key(session_id: uuid.UUID) -> str:
    return f'{CACHE_KEY_PREFIX}:session:{session_id}'


def sessions_list_key(*parts: object) -> str:
    return ':'.join([f'{CACHE_KEY_PREFIX}:sessions', *(str(p) for p in parts)])


def participant_key(participant_id: uuid.UUID, *parts: object) -> str:
    return ':'.join([f'{CACHE_KEY_PREFIX}:participant:{participant_id}', *(str(p) for p in parts)])


GENERATION_KEY = f'{CACHE_KEY_PREFIX}:generation'
SESSIONS_PATTERN = f'{CACHE_KEY_PREFIX}:sessions:*'
ALL_PARTICIPANTS_PATTERN = f'{CACHE_KEY_PREFIX}:participant:*'


def participant_pattern(participant_id: uuid.UUID) -> str:
    return f'{CACHE_KEY_PREFIX}:participant:{participant_id}:*'


class SessionCache:
    def __init__(self, client: redis.Redis, ttl_s: int = SESSION_CACHE_TTL_S):
        self.client = client
        self.ttl_s = ttl_s

    def get_json(self, key: str) -> Any | None:
        try:
            raw = self.client.get(key)
        except redis.RedisError as e:
            logger.warning('Cache read failed for %s, falling back to storage: %s', key, e)
            return None

        if raw is None:
            return None

        try:
            return json.loads(raw)
        except ValueError:
            logger.warning('Discarding undecodable cache entry %s', key)
            return None

    def set_json(self, key: str, value: Any) -> None:
        try:
            self.client.setex(key, self.ttl_s, json.dumps(value))
        except redis.RedisError as e:
            logger.warning('Cache write failed for %s: %s', key, e)

    def generation(self) -> int | None:
        """Current invalidation generation, or None if Redis can't be reached."""
        try:
            return int(self.client.get(GENERATION_KEY) or 0)
        except redis.RedisError as e:
            logger.warning('Cache generation read failed: %s', e)
            return None

    def set_json_if_current(self, key: str, value: Any, generation: int | None) -> bool:
        """Write `value` only if no invalidation has run since `generation` was read."""
        if generation is None:
            return False

        payload = json.dumps(value)
        try:
            with self.client.pipeline() as pipe:
                pipe.watch(GENERATION_KEY)
                if int(pipe.get(GENERATION_KEY) or 0) != generation:
                    logger.debug('Skipping cache write for %s: invalidated during read', key)
                    return False
                pipe.multi()
                pipe.setex(key, self.ttl_s, payload)
                pipe.execute()
        except redis.WatchError:
            logger.debug('Skipping cache write for %s: invalidated during write', key)
            return False
        except redis.RedisError as e:
            logger.warning('Cache write failed for %s: %s', key, e)
            return False
        return True

    def invalidate(
        self,
        session_id: uuid.UUID,
        participant_id: uuid.UUID | None = None,
        *,
        all_participants: bool = False,
    ) -> int:
        """
        Evict the session's detail view and every collection view that may contain it.

        `all_participants` drops every participant-scoped view, for changes that
        touch all members at once (pause, resume, end).
        """
        try:
            self.client.incr(GENERATION_KEY)
            deleted = self.client.delete(session_key(session_id))
            deleted += self._delete_pattern(SESSIONS_PATTERN)
            if all_participants:
                deleted += self._delete_pattern(ALL_PARTICIPANTS_PATTERN)
            elif participant_id is not None:
                deleted += self._delete_pattern(participant_pattern(participant_id))
        except redis.RedisError as e:
            raise CacheUnavailableError(str(e)) from e

        logger.debug('Invalidated %d cache keys for session %s', deleted, session_id)
        return deleted

    def _delete_pattern(self, pattern: str) -> int:
        keys = list(self.client.scan_iter(match=pattern, count=100))
        if not keys:
            return 0
        return self.client.delete(*keys)


class InvalidationDispatcher:
    """
    Fire-and-forget invalidation, run strictly after the caller's commit.

    `dispatch` hands the work to a thread pool and returns at once, so a slow or
    unavailable Redis never delays a join or leave. A failed invalidation is
    logged and passed to `on_failure` (the out-of-band retry sink), if set.
    """

    def __init__(
        self,
        cache: SessionCache,
        executor: Executor | None = None,
        on_failure: Callable[[uuid.UUID, uuid.UUID | None, bool], None] | None = None,
    ):
        self.cache = cache
        self.on_failure = on_failure
        self._executor = executor or ThreadPoolExecutor(
            max_workers=CACHE_INVALIDATION_WORKERS,
            thread_name_prefix='cache-invalidation',
        )

    def dispatch(
        self,
        session_id: uuid.UUID,
        participant_id: uuid.UUID | None = None,
        *,
        all_participants: bool = False,
    ) -> Future | None:
        try:
            return self._executor.submit(self._invalidate, session_id, participant_id, all_participants)
        except RuntimeError:
            logger.warning('Invalidation executor is shut down; session %s cache stays stale until TTL', session_id)
            return None

    def _invalidate(self, session_id: uuid.UUID, participant_id: uuid.UUID | None, all_participants: bool) -> bool:
        try:
            self.cache.invalidate(session_id, participant_id, all_participants=all_participants)
            return True
        except CacheUnavailableError as e:
            logger.warning('Cache invalidation for session %s failed: %s', session_id, e)

        if self.on_failure is not None:
            try:
                self.on_failure(session_id, participant_id, all_participants)
            except Exception:
                logger.exception('Failed to schedule invalidation retry for session %s', session_id)
        return False

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
