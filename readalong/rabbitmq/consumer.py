import logging
from typing import Awaitable, Callable

import aio_pika

from .connection import RMQConnection

logger = logging.getLogger(__name__)

MessageHandler = Callable[[aio_pika.abc.AbstractIncomingMessage], Awaitable[None]]


class RMQConsumer:
    """
    Durable queue bound to a topic exchange.

    Messages are acked once the handler returns, whether or not it raised:
    handlers own their retry policy and republish when they want another try.
    """

    def __init__(self, conn: RMQConnection, queue_name: str, routing_keys: list[str], exchange_name: str = 'cache'):
        self.conn = conn
        self.queue_name = queue_name
        self.routing_keys = routing_keys
        self.exchange_name = exchange_name
        self._queue: aio_pika.abc.AbstractQueue | None = None
        self._consumer_tag: str | None = None

    async def start_consuming(self, handler: MessageHandler, prefetch: int = 10) -> None:
        channel = await self.conn.get_channel()
        await channel.set_qos(prefetch_count=prefetch)
        exchange = await self.conn.declare_exchange(self.exchange_name)

        self._queue = await channel.declare_queue(self.queue_name, durable=True)
        for routing_key in self.routing_keys:
            await self._queue.bind(exchange, routing_key)

        async def on_message(message: aio_pika.abc.AbstractIncomingMessage) -> None:
            async with message.process(requeue=False):
                try:
                    await handler(message)
                except Exception:
                    logger.exception('Handler failed for %s on %s', message.routing_key, self.queue_name)

        self._consumer_tag = await self._queue.consume(on_message)
        logger.info('Consuming %s (%s)', self.queue_name, ', '.join(self.routing_keys))

    async def stop_consuming(self) -> None:
        if self._queue is None or self._consumer_tag is None:
            return
        try:
            await self._queue.cancel(self._consumer_tag)
        except aio_pika.exceptions.AMQPError as e:
            logger.warning('Could not cancel consumer on %s: %s', self.queue_name, e)
        self._consumer_tag = None
