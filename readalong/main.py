import asyncio
import logging
from contextlib import asynccontextmanager

import redis
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.concurrency import run_in_threadpool

from readalong.api import api_router
from readalong.config import (
    ALLOW_JOIN_WHEN_PAUSED,
    ALREADY_JOINED_IS_ERROR,
    CACHE_EXCHANGE,
    CACHE_RETRY_QUEUE,
    LOG_LEVEL,
    MEMBERSHIP_MAX_ATTEMPTS,
    MEMBERSHIP_RETRY_BACKOFF_S,
    REDIS_URL,
    RMQ_URL,
)
from readalong.db.session import engine, init_db
from readalong.db.unit_of_work import UnitOfWork
from readalong.rabbitmq import RMQConnection, RMQConsumer, RMQPublisher
from readalong.services.cache import InvalidationDispatcher, SessionCache
from readalong.services.cache_retry import (
    RETRY_ROUTING_KEYS,
    InvalidationRetryPublisher,
    make_invalidation_retry_handler,
)
from readalong.services.coordinator import AdmissionCoordinator
from readalong.services.lifecycle import LifecycleManager

logging.basicConfig(level=LOG_LEVEL, format='%(asctime)s %(levelname)s %(name)s: %(message)s')
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()

    app.state.session_cache = SessionCache(redis.from_url(REDIS_URL, decode_responses=True))
    app.state.invalidation = InvalidationDispatcher(app.state.session_cache)

    unit_of_work = UnitOfWork(engine, max_attempts=MEMBERSHIP_MAX_ATTEMPTS, backoff_s=MEMBERSHIP_RETRY_BACKOFF_S)
    app.state.coordinator = AdmissionCoordinator(
        unit_of_work,
        app.state.invalidation,
        allow_join_when_paused=ALLOW_JOIN_WHEN_PAUSED,
        already_joined_is_error=ALREADY_JOINED_IS_ERROR,
    )
    app.state.lifecycle = LifecycleManager(unit_of_work, app.state.invalidation)

    app.state.rabbit = RMQConnection(RMQ_URL)
    await app.state.rabbit.connect()
    await app.state.rabbit.declare_exchange(CACHE_EXCHANGE)
    app.state.cache_publisher = RMQPublisher(app.state.rabbit, exchange_name=CACHE_EXCHANGE)
    app.state.retry_publisher = InvalidationRetryPublisher(app.state.cache_publisher, asyncio.get_running_loop())
    app.state.invalidation.on_failure = app.state.retry_publisher

    app.state.retry_consumer = RMQConsumer(
        app.state.rabbit,
        queue_name=CACHE_RETRY_QUEUE,
        routing_keys=RETRY_ROUTING_KEYS,
        exchange_name=CACHE_EXCHANGE,
    )
    await app.state.retry_consumer.start_consuming(
        handler=make_invalidation_retry_handler(app.state.session_cache, app.state.cache_publisher),
    )

    yield

    # workers may still hand retries to the loop; finish them before the broker goes away
    await run_in_threadpool(app.state.invalidation.shutdown, True)
    await app.state.retry_publisher.drain()
    await app.state.retry_consumer.stop_consuming()
    await app.state.rabbit.close()
    app.state.session_cache.client.close()


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)
