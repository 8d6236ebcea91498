"""
Notification dispatcher: best-effort, at-least-once alerts.

For each actionable record, one job per sink. Unconfigured sinks are
skipped without an attempt. Configured sinks get up to ``max_attempts``
deliveries, sleeping ``attempt * base_delay`` between them. After the last
failure the job is logged and dropped: there is no durable queue and no
dead-letter store.

Sinks run concurrently and independently; one sink running out of attempts
never blocks or cancels another. Nothing here raises to the caller.

Usage:
    dispatcher = NotificationDispatcher([slack, webhook])
    dispatcher.submit(record)            # fire-and-forget from the pipeline
    results = await dispatcher.dispatch(record)   # awaitable, for tests/tools
    await dispatcher.drain()             # at shutdown
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable

from inboxsync.agent.schemas import EmailRecord, NotificationJob
from inboxsync.errors import DispatchFailure
from inboxsync.logging.audit import audit
from inboxsync.notify.sinks import NotificationSink

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_SECONDS = 1.0


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    FAILED = "failed"
    SKIPPED = "skipped"


class NotificationDispatcher:
    """Fans one record out to every sink with bounded linear retry."""

    def __init__(
        self,
        sinks: list[NotificationSink],
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._sinks = list(sinks)
        self._max_attempts = max_attempts
        self._base_delay = base_delay_seconds
        self._sleep = sleep
        self._pending: set[asyncio.Task] = set()

    @property
    def sinks(self) -> list[NotificationSink]:
        return list(self._sinks)

    def submit(self, record: EmailRecord) -> asyncio.Task:
        """Schedule dispatch in the background and return immediately."""
        task = asyncio.create_task(self.dispatch(record))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for every background dispatch still in flight."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    async def dispatch(self, record: EmailRecord) -> dict[str, DeliveryStatus]:
        """Deliver to all sinks concurrently. Returns the outcome per sink."""
        jobs = [NotificationJob(record=record, sink=sink.name) for sink in self._sinks]
        outcomes = await asyncio.gather(
            *(self._run_job(sink, job) for sink, job in zip(self._sinks, jobs))
        )
        return {sink.name: outcome for sink, outcome in zip(self._sinks, outcomes)}

    async def check_sinks(self) -> dict[str, dict]:
        """
        Check every configured sink once, without retry.

        Returns {sink name: {"configured", "reachable", "error"}}. An
        unconfigured sink reports reachable=None and is not contacted.
        """
        async def check_one(sink: NotificationSink) -> dict:
            if not sink.is_configured():
                return {"configured": False, "reachable": None, "error": None}
            try:
                await sink.check()
            except Exception as e:
                logger.warning(
                    "notify.sink_check_failed",
                    extra={"action": "notify.sink_check_failed", "sink": sink.name, "error": str(e)},
                )
                return {"configured": True, "reachable": False, "error": str(e)}
            return {"configured": True, "reachable": True, "error": None}

        results = await asyncio.gather(*(check_one(sink) for sink in self._sinks))
        return {sink.name: result for sink, result in zip(self._sinks, results)}

    async def _run_job(self, sink: NotificationSink, job: NotificationJob) -> DeliveryStatus:
        if not sink.is_configured():
            logger.debug(
                "notify.sink_not_configured",
                extra={"action": "notify.sink_not_configured", "sink": sink.name},
            )
            return DeliveryStatus.SKIPPED

        try:
            payload = sink.build_payload(job.record)
        except Exception as e:
            logger.error(
                "notify.payload_failed",
                extra={
                    "action": "notify.payload_failed",
                    "sink": sink.name,
                    "record_id": job.record.id,
                    "error": str(e),
                },
            )
            return DeliveryStatus.FAILED

        last_error = None
        for attempt in range(1, self._max_attempts + 1):
            job.attempt = attempt
            try:
                await sink.deliver(payload)
                audit.info(
                    "notify.delivered",
                    sink=sink.name,
                    record_id=job.record.id,
                    attempt=attempt,
                )
                return DeliveryStatus.DELIVERED
            except DispatchFailure as e:
                last_error = e
            except Exception as e:
                last_error = DispatchFailure(str(e))

            if attempt < self._max_attempts:
                job.delay_seconds = attempt * self._base_delay
                logger.warning(
                    "notify.attempt_failed",
                    extra={
                        "action": "notify.attempt_failed",
                        "sink": sink.name,
                        "record_id": job.record.id,
                        "attempt": attempt,
                        "wait_seconds": job.delay_seconds,
                        "error": str(last_error),
                    },
                )
                await self._sleep(job.delay_seconds)

        audit.error(
            "notify.dropped",
            sink=sink.name,
            record_id=job.record.id,
            attempts=job.attempt,
            error=str(last_error),
        )
        return DeliveryStatus.FAILED
