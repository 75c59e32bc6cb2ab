from shared.rabbitmq import EXCHANGE_NAME, RabbitPublisher

from .config import RABBIT_URL

publisher = RabbitPublisher(RABBIT_URL, EXCHANGE_NAME)
