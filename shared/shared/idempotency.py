IDEMPOTENCY_TTL_SECONDS = 60 * 60 * 24


def processed_key(event_id: str) -> str:
    return f"processed_event:{event_id}"


async def claim_event(redis_client, event_id: str) -> bool:
    """
    Atomically claim an event id. Returns False when another consumer
    (or an earlier delivery) already claimed it.
    """
    claimed = await redis_client.set(
        processed_key(event_id), "1", ex=IDEMPOTENCY_TTL_SECONDS, nx=True
    )
    return bool(claimed)


async def release_event(redis_client, event_id: str):
    await redis_client.delete(processed_key(event_id))
