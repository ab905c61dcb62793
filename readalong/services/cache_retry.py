import asyncio
import json
import logging
import uuid
from concurrent.futures import Future

import aio_pika
from starlette.concurrency import run_in_threadpool

from readalong.config import CACHE_RETRY_DELAY_S, CACHE_RETRY_MAX_ATTEMPTS
from readalong.rabbitmq import RMQPublisher
from readalong.services.cache import CacheUnavailableError, SessionCache

logger = logging.getLogger(__name__)

RETRY_ROUTING_KEYS = ['cache.session.*.invalidate']


def retry_routing_key(session_id: uuid.UUID) -> str:
    return f'cache.session.{session_id}.invalidate'


def retry_payload(
    session_id: uuid.UUID,
    participant_id: uuid.UUID | None,
    attempt: int,
    all_participants: bool = False,
) -> dict:
    return {
        'session_id': str(session_id),
        'participant_id': str(participant_id) if participant_id else None,
        'all_participants': all_participants,
        'attempt': attempt,
    }


def _parse_uuid(raw) -> uuid.UUID | None:
    if raw is None:
        return None
    try:
        return raw if isinstance(raw, uuid.UUID) else uuid.UUID(str(raw))
    except ValueError:
        return None


class InvalidationRetryPublisher:
    """
    Retry sink for InvalidationDispatcher.

    Called from dispatcher worker threads; schedules the publish on the
    application's event loop and returns without waiting for the broker.
    """

    def __init__(self, publisher: RMQPublisher, loop: asyncio.AbstractEventLoop):
        self.publisher = publisher
        self.loop = loop
        self._pending: set[Future] = set()

    def __call__(
        self,
        session_id: uuid.UUID,
        participant_id: uuid.UUID | None = None,
        all_participants: bool = False,
        attempt: int = 1,
    ) -> Future:
        future = asyncio.run_coroutine_threadsafe(
            self.publisher.publish(
                routing_key=retry_routing_key(session_id),
                payload=retry_payload(session_id, participant_id, attempt, all_participants),
            ),
            self.loop,
        )
        self._pending.add(future)
        future.add_done_callback(self._pending.discard)
        future.add_done_callback(self._log_failure)
        return future

    async def drain(self) -> None:
        """Wait for publishes already handed to the loop."""
        pending = [asyncio.wrap_future(f) for f in list(self._pending)]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    @staticmethod
    def _log_failure(future: Future) -> None:
        if future.cancelled():
            logger.warning('Cache invalidation retry publish was cancelled')
            return
        exc = future.exception()
        if exc is not None:
            logger.error('Failed to publish cache invalidation retry: %s', exc)


def make_invalidation_retry_handler(
    cache: SessionCache,
    publisher: RMQPublisher,
    max_attempts: int = CACHE_RETRY_MAX_ATTEMPTS,
    delay_s: float = CACHE_RETRY_DELAY_S,
):
    async def invalidation_retry_handler(inc_message: aio_pika.abc.AbstractIncomingMessage) -> None:
        try:
            data = json.loads(inc_message.body.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.warning('Bad cache retry message: %r', inc_message.body)
            return

        if not isinstance(data, dict):
            logger.warning('Bad cache retry message format: %r', data)
            return

        session_id = _parse_uuid(data.get('session_id'))
        if session_id is None:
            logger.warning('No session_id in cache retry message: %r', data)
            return

        participant_id = _parse_uuid(data.get('participant_id'))
        all_participants = data.get('all_participants') is True
        attempt = data.get('attempt')
        if not isinstance(attempt, int) or attempt < 1:
            attempt = 1

        try:
            await run_in_threadpool(cache.invalidate, session_id, participant_id, all_participants=all_participants)
            logger.info('Cache for session %s invalidated on retry %d', session_id, attempt)
            return
        except CacheUnavailableError as e:
            if attempt >= max_attempts:
                logger.error(
                    'Giving up cache invalidation for session %s after %d attempts: %s',
                    session_id, attempt, e,
                )
                return
            logger.warning('Cache invalidation retry %d for session %s failed: %s', attempt, session_id, e)

        if delay_s > 0:
            await asyncio.sleep(delay_s * attempt)

        await publisher.publish(
            routing_key=retry_routing_key(session_id),
            payload=retry_payload(session_id, participant_id, attempt + 1, all_participants),
        )

    return invalidation_retry_handler
