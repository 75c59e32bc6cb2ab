import asyncio
import logging

from sqlalchemy import update

from .config import EXPIRY_SWEEP_INTERVAL_SECONDS
from .db import SessionLocal
from .models import BroadcastStatus, JobBroadcast, utcnow

logger = logging.getLogger(__name__)


async def expire_stale_offers(db, now=None) -> int:
    """
    Flip `sent` offers past their business expiry to `expired`. Bookkeeping
    only: acceptance already treats them as void at read time.
    """
    now = now or utcnow()
    async with db.begin():
        res = await db.execute(
            update(JobBroadcast)
            .where(
                JobBroadcast.status == BroadcastStatus.SENT,
                JobBroadcast.expires_at <= now,
            )
            .values(status=BroadcastStatus.EXPIRED)
            .execution_options(synchronize_session=False)
        )
    return res.rowcount or 0


async def expiry_loop(
    stop_event: asyncio.Event,
    session_factory=SessionLocal,
    interval: float = EXPIRY_SWEEP_INTERVAL_SECONDS,
):
    while not stop_event.is_set():
        try:
            async with session_factory() as db:
                count = await expire_stale_offers(db)
            if count:
                logger.info("expiry sweep: %d offers expired", count)
        except Exception:
            logger.exception("expiry sweep failed")

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue
