import asyncio
import json
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select

from shared.events import build_event, parse_event, to_json
from shared.idempotency import processed_key

from app.event_consumer import handle_message, process_event
from app.expiry_worker import expire_stale_offers, expiry_loop
from app.models import BookingStatus, BroadcastStatus, JobBroadcast
from app.notifications import PostCommitTasks, post_commit
from factories import seed_booking, seed_offer, seed_service, seed_technician


@pytest.mark.asyncio
async def test_sweep_expires_only_stale_sent_offers(db):
    service = await seed_service(db)
    t1 = await seed_technician(db, service.id)
    t2 = await seed_technician(db, service.id)
    t3 = await seed_technician(db, service.id)
    booking = await seed_booking(db, service.id, status=BookingStatus.BROADCASTED)
    stale = await seed_offer(db, booking.id, t1.id, ttl_seconds=-5)
    fresh = await seed_offer(db, booking.id, t2.id, ttl_seconds=60)
    answered = await seed_offer(db, booking.id, t3.id, ttl_seconds=-5, status=BroadcastStatus.REJECTED)

    assert await expire_stale_offers(db) == 1

    async with db.begin():
        res = await db.execute(
            select(JobBroadcast.id, JobBroadcast.status).where(JobBroadcast.booking_id == booking.id)
        )
        statuses = dict(res.all())
    assert statuses[stale.id] == BroadcastStatus.EXPIRED
    assert statuses[fresh.id] == BroadcastStatus.SENT
    assert statuses[answered.id] == BroadcastStatus.REJECTED


@pytest.mark.asyncio
async def test_expiry_loop_stops_on_event(session_factory):
    stop = asyncio.Event()
    task = asyncio.create_task(expiry_loop(stop, session_factory=session_factory, interval=0.05))
    await asyncio.sleep(0.1)
    stop.set()
    await asyncio.wait_for(task, timeout=2)


@pytest.mark.asyncio
async def test_booking_requested_event_dispatches_once(db, session_factory, fake_redis, notifier):
    service = await seed_service(db)
    tech = await seed_technician(db, service.id)
    booking = await seed_booking(db, service.id)
    event = build_event("booking.requested", {"booking_id": booking.id})

    first = await process_event(event, session_factory=session_factory, redis=fake_redis, notifier=notifier)
    second = await process_event(event, session_factory=session_factory, redis=fake_redis, notifier=notifier)
    await post_commit.drain()

    assert first.sent_to == [tech.id]
    assert second is None
    assert await fake_redis.get(processed_key(event["event_id"])) == "1"


@pytest.mark.asyncio
async def test_unknown_or_malformed_events_ignored(fake_redis):
    assert await process_event({"event_type": "booking.requested"}, redis=fake_redis) is None
    assert await process_event(build_event("user.created", {}), redis=fake_redis) is None
    assert await process_event(build_event("booking.requested", {}), redis=fake_redis) is None


@pytest.mark.asyncio
async def test_failed_dispatch_releases_claim(fake_redis):
    event = build_event("booking.requested", {"booking_id": "b-1"})

    def broken_factory():
        raise RuntimeError("database unavailable")

    with pytest.raises(RuntimeError):
        await process_event(event, session_factory=broken_factory, redis=fake_redis)

    assert await fake_redis.get(processed_key(event["event_id"])) is None


@pytest.mark.asyncio
async def test_handle_message_drops_garbage():
    message = MagicMock()
    message.body = b"not json"

    await handle_message(message)

    message.process.assert_called_once()


@pytest.mark.parametrize(
    "raw",
    [b"not json", b"[1, 2]", b'{"event_type": "booking.requested", "data": {}}', b'{"event_id": "e", "event_type": "x", "data": 3}'],
)
def test_parse_event_rejects_malformed_envelopes(raw):
    assert parse_event(raw) is None


def test_parse_event_reads_published_envelope():
    event = build_event("booking.requested", {"booking_id": "b-1"})

    parsed = parse_event(to_json(event).encode())

    assert parsed == event
    assert parsed["source"] == "dispatch-service"


class RecordingMessage:
    """Stands in for an aio-pika delivery and records how it was settled."""

    def __init__(self, body: bytes, redelivered: bool = False):
        self.body = body
        self.redelivered = redelivered
        self.settled = None

    @asynccontextmanager
    async def process(self, requeue=False):
        try:
            yield
        except Exception:
            self.settled = "requeued" if requeue else "rejected"
            raise
        else:
            self.settled = "acked"


@pytest.mark.asyncio
async def test_failed_dispatch_is_requeued_once_then_dropped(monkeypatch, fake_redis):
    event = build_event("booking.requested", {"booking_id": "b-1"})
    body = json.dumps(event).encode()
    dispatch = AsyncMock(side_effect=RuntimeError("database unavailable"))
    monkeypatch.setattr("app.event_consumer.redis_client", fake_redis)
    monkeypatch.setattr("app.event_consumer.dispatch_booking", dispatch)

    first = RecordingMessage(body)
    with pytest.raises(RuntimeError):
        await handle_message(first)
    assert first.settled == "requeued"
    assert await fake_redis.get(processed_key(event["event_id"])) is None

    redelivery = RecordingMessage(body, redelivered=True)
    with pytest.raises(RuntimeError):
        await handle_message(redelivery)
    assert redelivery.settled == "rejected"
    assert dispatch.await_count == 2


@pytest.mark.asyncio
async def test_requeued_event_dispatches_on_redelivery(monkeypatch, fake_redis):
    event = build_event("booking.requested", {"booking_id": "b-1"})
    body = json.dumps(event).encode()
    outcome = MagicMock(booking_id="b-1", count=2)
    dispatch = AsyncMock(side_effect=[RuntimeError("deadlock"), outcome])
    monkeypatch.setattr("app.event_consumer.redis_client", fake_redis)
    monkeypatch.setattr("app.event_consumer.dispatch_booking", dispatch)

    with pytest.raises(RuntimeError):
        await handle_message(RecordingMessage(body))

    redelivery = RecordingMessage(body, redelivered=True)
    await handle_message(redelivery)

    assert redelivery.settled == "acked"
    assert await fake_redis.get(processed_key(event["event_id"])) == "1"


@pytest.mark.asyncio
async def test_post_commit_failures_are_contained():
    tasks = PostCommitTasks()

    async def boom():
        raise RuntimeError("push failed")

    async def ok():
        return "sent"

    tasks.schedule("boom", boom())
    tasks.schedule("ok", ok())
    assert tasks.pending == 2

    await tasks.drain()

    assert tasks.pending == 0
