"""
Ingestion pipeline: raw messages in, classified records out.

For each message id in a batch, independently:

    fetch → parse → persist (processed=false) → classify → update category
    (processed=true) → broadcast to live subscribers → notify if actionable

Messages in a batch run concurrently (bounded by a semaphore). Within one
message the steps are strictly sequential, because classification logs and
updates against the persisted id. A failure in any step is caught for that
message only; the rest of the batch always completes.

The pipeline does not talk to IMAP itself. The caller passes a ``fetch``
coroutine that returns the RawMessage for a uid, or None if it is gone.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from inboxsync.agent.classifier import Classifier
from inboxsync.agent.schemas import (
    Category,
    EmailRecord,
    MailAccount,
    ParsedMessage,
    RawMessage,
    utcnow,
)
from inboxsync.api.live import NEW_EMAIL_EVENT, Publisher
from inboxsync.errors import ParseError
from inboxsync.logging.audit import audit
from inboxsync.mail.parser import parse_message
from inboxsync.notify.dispatcher import NotificationDispatcher
from inboxsync.store.client import DocumentStore

logger = logging.getLogger(__name__)

Fetcher = Callable[[int], Awaitable[Optional[RawMessage]]]


@dataclass
class BatchResult:
    """What happened to each message id in a batch."""
    processed: list[str] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    fetch_failed: list[int] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.processed) + len(self.skipped) + len(self.failed) + len(self.fetch_failed)


class IngestionPipeline:
    """Turns fetched messages into persisted, classified records."""

    def __init__(
        self,
        store: DocumentStore,
        classifier: Classifier,
        dispatcher: NotificationDispatcher,
        publisher: Publisher,
        actionable_category: Category = Category.INTERESTED,
        concurrency: int = 5,
    ):
        self._store = store
        self._classifier = classifier
        self._dispatcher = dispatcher
        self._publisher = publisher
        self._actionable = actionable_category
        self._concurrency = concurrency

    async def process_batch(
        self,
        account: MailAccount,
        uids: list[int],
        fetch: Fetcher,
    ) -> BatchResult:
        """Process every uid independently. Never raises for a single message."""
        result = BatchResult()
        if not uids:
            return result

        start = time.monotonic()
        semaphore = asyncio.Semaphore(self._concurrency)

        async def run(uid: int) -> None:
            async with semaphore:
                await self._process_one(account, uid, fetch, result)

        await asyncio.gather(*(run(uid) for uid in uids))

        audit.info(
            "pipeline.batch.completed",
            account_id=account.id,
            batch_size=len(uids),
            processed=len(result.processed),
            skipped=len(result.skipped),
            failed=len(result.failed),
            fetch_failed=len(result.fetch_failed),
            latency_ms=int((time.monotonic() - start) * 1000),
        )
        return result

    async def _process_one(
        self,
        account: MailAccount,
        uid: int,
        fetch: Fetcher,
        result: BatchResult,
    ) -> None:
        try:
            raw = await fetch(uid)
        except Exception as e:
            logger.error(
                "pipeline.fetch_failed",
                extra={"action": "pipeline.fetch_failed", "uid": uid, "error": str(e)},
            )
            result.fetch_failed.append(uid)
            return

        if raw is None:
            logger.info(
                "pipeline.message_gone",
                extra={"action": "pipeline.message_gone", "uid": uid},
            )
            result.skipped.append(uid)
            return

        try:
            parsed = parse_message(raw)
        except ParseError as e:
            logger.warning(
                "pipeline.parse_failed",
                extra={"action": "pipeline.parse_failed", "uid": uid, "error": str(e)},
            )
            result.skipped.append(uid)
            return

        try:
            record = await self.ingest(account, parsed)
        except Exception:
            logger.exception(
                "pipeline.message_failed",
                extra={"action": "pipeline.message_failed", "uid": uid},
            )
            result.failed.append(uid)
            return

        result.processed.append(record.id)

    async def ingest(self, account: MailAccount, parsed: ParsedMessage) -> EmailRecord:
        """
        Persist, classify and finalize one parsed message.

        Raises whatever the store raises; classification itself never fails
        because the classifier falls back to keywords.
        """
        record = EmailRecord.from_parsed(parsed, account)
        await self._store.persist(record)

        category = await self._classifier.classify(record)
        await self._store.update_category(record.id, category)

        record.category = category
        record.processed = True
        record.updated_at = utcnow()

        self._publish(record)

        if category == self._actionable:
            self._dispatcher.submit(record)

        logger.info(
            "pipeline.message.classified",
            extra={
                "action": "pipeline.message.classified",
                "record_id": record.id,
                "uid": parsed.uid,
                "category": category.value,
                "actionable": category == self._actionable,
            },
        )
        return record

    def _publish(self, record: EmailRecord) -> None:
        try:
            self._publisher.broadcast(NEW_EMAIL_EVENT, record)
        except Exception as e:
            logger.warning(
                "pipeline.broadcast_failed",
                extra={"action": "pipeline.broadcast_failed", "record_id": record.id, "error": str(e)},
            )
