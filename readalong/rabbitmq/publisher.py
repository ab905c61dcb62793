import json
import logging
import uuid
from datetime import datetime, UTC
from typing import Any

import aio_pika

from .connection import RMQConnection

logger = logging.getLogger(__name__)

APP_ID = 'readalong'


class RMQPublisher:
    def __init__(self, conn: RMQConnection, exchange_name: str = 'cache'):
        self.conn = conn
        self.exchange_name = exchange_name

    async def publish(self, routing_key: str, payload: dict[str, Any], headers: dict[str, str] | None = None) -> None:
        exchange = await self.conn.declare_exchange(self.exchange_name)
        message = aio_pika.Message(
            json.dumps(payload).encode(),
            content_type='application/json',
            message_id=str(uuid.uuid4()),
            timestamp=datetime.now(tz=UTC),
            app_id=APP_ID,
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            headers=headers or {},
        )
        await exchange.publish(message=message, routing_key=routing_key)
        logger.debug('Published %s to %s', routing_key, self.exchange_name)
