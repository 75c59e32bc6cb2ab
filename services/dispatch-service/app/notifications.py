import asyncio
import logging

from shared.events import build_event, to_json

from .rabbitmq import publisher as default_publisher

logger = logging.getLogger(__name__)

JOB_OFFER = "notify.technicians.job_offer"
JOB_TAKEN = "notify.technicians.job_taken"
CUSTOMER_EVENT = "notify.customer.{event}"


class Notifier:
    """
    Outbound notification channel. Delivery is handed to the push/socket
    gateway through the event bus; nothing here is guaranteed.
    """

    def __init__(self, publisher=None):
        self.publisher = publisher or default_publisher

    async def _emit(self, routing_key: str, data: dict):
        event = build_event(routing_key, data)
        await self.publisher.publish(routing_key, to_json(event))

    async def notify_technicians(self, technician_ids: list[str], job_summary: dict):
        if not technician_ids:
            return
        await self._emit(JOB_OFFER, {"technician_ids": list(technician_ids), "job": job_summary})

    async def notify_customer(self, customer_id: str, event: str, data: dict):
        await self._emit(
            CUSTOMER_EVENT.format(event=event),
            {"customer_id": customer_id, "event": event, **data},
        )

    async def notify_job_taken(self, technician_ids: list[str], booking_id: str):
        if not technician_ids:
            return
        await self._emit(JOB_TAKEN, {"technician_ids": list(technician_ids), "booking_id": booking_id})


class PostCommitTasks:
    """
    Fire-and-forget work scheduled once a transaction has committed.
    Failures are logged and never reach the caller.
    """

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()

    def schedule(self, name: str, coro) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("post-commit task %s failed: %s", task.get_name(), exc, exc_info=exc)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self):
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


notifier = Notifier()
post_commit = PostCommitTasks()
