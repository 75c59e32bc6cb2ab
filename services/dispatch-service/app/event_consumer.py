import asyncio
import logging

import aio_pika
from aio_pika import ExchangeType

from shared.events import parse_event
from shared.idempotency import claim_event, release_event
from shared.rabbitmq import EXCHANGE_NAME

from .broadcast import dispatch_booking
from .config import RABBIT_URL
from .db import SessionLocal
from .errors import NotFound
from .redis_client import redis_client

logger = logging.getLogger(__name__)

QUEUE_NAME = "dispatch_service_domain_events"

ROUTING_KEYS = [
    "booking.requested",
]

RETRY_SECONDS = 5


async def process_event(payload: dict, *, session_factory=SessionLocal, redis=None, notifier=None):
    """
    Handle one decoded domain event. Returns the dispatch result, or None
    when the event was malformed, unknown, or already handled.
    """
    redis = redis or redis_client
    event_id = payload.get("event_id")
    event_type = payload.get("event_type")
    data = payload.get("data") or {}

    if not event_id or event_type not in ROUTING_KEYS:
        return None

    booking_id = data.get("booking_id")
    if not booking_id:
        return None

    if not await claim_event(redis, event_id):
        logger.info("consumer: event %s already processed", event_id)
        return None

    try:
        async with session_factory() as db:
            return await dispatch_booking(db, booking_id, notifier=notifier)
    except NotFound:
        logger.warning("consumer: booking %s from event %s not found", booking_id, event_id)
        return None
    except Exception:
        # the requeued delivery must be able to claim it again
        await release_event(redis, event_id)
        raise


async def handle_message(message: aio_pika.IncomingMessage):
    # a failed dispatch is requeued once; the redelivery is the last attempt
    requeue = not message.redelivered
    async with message.process(requeue=requeue):
        payload = parse_event(message.body)
        if payload is None:
            logger.warning("consumer: dropping malformed message")
            return

        try:
            result = await process_event(payload)
        except Exception:
            if requeue:
                logger.warning("consumer: dispatch failed, requeueing event %s", payload["event_id"], exc_info=True)
            else:
                logger.error(
                    "consumer: dispatch failed twice for booking %s, dropping event %s; "
                    "retry with POST /bookings/{id}/dispatch",
                    payload["data"].get("booking_id"),
                    payload["event_id"],
                    exc_info=True,
                )
            raise

        if result is not None:
            logger.info(
                "consumer: booking %s dispatched to %d technicians",
                result.booking_id,
                result.count,
            )


async def _connect_and_consume():
    if not RABBIT_URL:
        raise RuntimeError("RABBIT_URL not set; cannot start consumer")

    connection = await aio_pika.connect_robust(RABBIT_URL)
    channel = await connection.channel()
    await channel.set_qos(prefetch_count=20)

    exchange = await channel.declare_exchange(
        EXCHANGE_NAME,
        ExchangeType.TOPIC,
        durable=True,
    )
    queue = await channel.declare_queue(QUEUE_NAME, durable=True)
    for rk in ROUTING_KEYS:
        await queue.bind(exchange, routing_key=rk)

    await queue.consume(handle_message)

    logger.info("dispatch consumer started")
    return connection


async def start_consumer_with_retry(stop_event: asyncio.Event):
    while not stop_event.is_set():
        try:
            return await _connect_and_consume()
        except Exception as e:
            logger.warning("consumer connect failed, retrying in %ss: %s", RETRY_SECONDS, e)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=RETRY_SECONDS)
            except asyncio.TimeoutError:
                continue

    return None
