from .connection import RMQConnection
from .consumer import RMQConsumer
from .publisher import RMQPublisher

__all__ = ['RMQConnection', 'RMQConsumer', 'RMQPublisher']
