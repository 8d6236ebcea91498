"""
Classification engine: assigns exactly one Category to an email.

Primary path: ask the LLM for a single category label. The answer must be
one of the five canonical labels, verbatim; anything else is rejected.

Fallback path: deterministic keyword matching (see keywords.py). Used when
the LLM is unreachable, errors, times out, or answers with an invalid label.
The fallback never fails, so classify() always returns a valid Category.

Usage:
    from inboxsync.agent.classifier import Classifier

    classifier = Classifier(llm_client=llm)
    category = await classifier.classify(record)
    result = await classifier.classify_with_sentiment(record)
"""

import asyncio
import logging
from typing import Iterable, Optional

from inboxsync.agent.keywords import fallback_category
from inboxsync.agent.prompts import (
    CLASSIFY_SYSTEM,
    SENTIMENT_INSTRUCTIONS,
    DEFAULT_SENTIMENT,
    build_classify_user,
    parse_category,
    parse_sentiment_response,
)
from inboxsync.agent.schemas import Category, EmailRecord, SentimentResult
from inboxsync.errors import ClassificationAmbiguity
from inboxsync.llm.client import LLMClient
from inboxsync.logging.audit import audit

logger = logging.getLogger(__name__)

CATEGORY_MAX_TOKENS = 50
SENTIMENT_MAX_TOKENS = 60
CLASSIFY_TEMPERATURE = 0.1
# One attempt: a failed call goes straight to the keyword fallback.
CLASSIFY_MAX_RETRIES = 1

BATCH_SIZE = 5
BATCH_PAUSE_SECONDS = 1.0


class Classifier:
    """Primary LLM classification with a deterministic keyword fallback."""

    def __init__(
        self,
        llm_client: LLMClient,
        max_tokens: int = CATEGORY_MAX_TOKENS,
        batch_pause_seconds: float = BATCH_PAUSE_SECONDS,
    ):
        self._llm = llm_client
        self._max_tokens = max_tokens
        self._batch_pause = batch_pause_seconds

    # =========================================================================
    # SINGLE EMAIL
    # =========================================================================

    async def classify(self, record: EmailRecord) -> Category:
        """Classify one email. Always returns one of the five categories."""
        return await self._classify(record, previous=None, purpose="classify")

    async def classify_with_context(
        self,
        record: EmailRecord,
        previous: list[dict],
    ) -> Category:
        """
        Classify with up to the last three prior thread messages as context.

        Args:
            record: The email to classify.
            previous: Earlier messages in the thread, oldest first, as dicts
                      with 'subject' and 'body' keys.
        """
        return await self._classify(record, previous=previous, purpose="classify_thread")

    async def classify_with_sentiment(self, record: EmailRecord) -> SentimentResult:
        """
        Classify and score sentiment (1-10) in a single call.

        Category and sentiment are parsed independently: an invalid category
        falls back to keywords while a valid sentiment is kept, and an
        unparsable sentiment defaults to 5.
        """
        try:
            result = await self._llm.complete(
                system=CLASSIFY_SYSTEM + SENTIMENT_INSTRUCTIONS,
                user=build_classify_user(record.sender, record.subject, record.body),
                max_tokens=SENTIMENT_MAX_TOKENS,
                temperature=CLASSIFY_TEMPERATURE,
                purpose="classify_sentiment",
                max_retries=CLASSIFY_MAX_RETRIES,
            )
        except Exception as e:
            category = self._fallback(record, reason="llm_error", error=str(e))
            return SentimentResult(category=category, sentiment=DEFAULT_SENTIMENT)

        category, sentiment = parse_sentiment_response(result.text)
        if category is None:
            category = self._fallback(record, reason="invalid_label")

        audit.info(
            "email.sentiment_scored",
            record_id=record.id,
            category=category.value,
            sentiment=sentiment,
        )
        return SentimentResult(category=category, sentiment=sentiment)

    # =========================================================================
    # BATCH
    # =========================================================================

    async def classify_batch(self, records: list[EmailRecord]) -> list[Category]:
        """
        Classify many emails in groups of five, pausing between groups
        to stay under rate limits. Results keep the input order.
        """
        results: list[Category] = []
        for start in range(0, len(records), BATCH_SIZE):
            group = records[start:start + BATCH_SIZE]
            results.extend(await asyncio.gather(*(self.classify(r) for r in group)))
            if start + BATCH_SIZE < len(records):
                await asyncio.sleep(self._batch_pause)
        return results

    @staticmethod
    def category_stats(records: Iterable[EmailRecord]) -> dict[str, int]:
        """Count processed records per canonical category label."""
        stats = {category.value: 0 for category in Category}
        for record in records:
            if record.category is not None:
                stats[record.category.value] += 1
        return stats

    # =========================================================================
    # INTERNALS
    # =========================================================================

    async def _classify(
        self,
        record: EmailRecord,
        previous: Optional[list[dict]],
        purpose: str,
    ) -> Category:
        try:
            category = await self._primary(record, previous, purpose)
        except ClassificationAmbiguity:
            return self._fallback(record, reason="invalid_label")
        except Exception as e:
            return self._fallback(record, reason="llm_error", error=str(e))

        audit.info(
            "email.classified",
            record_id=record.id,
            category=category.value,
            path="llm",
        )
        return category

    async def _primary(
        self,
        record: EmailRecord,
        previous: Optional[list[dict]],
        purpose: str,
    ) -> Category:
        result = await self._llm.complete(
            system=CLASSIFY_SYSTEM,
            user=build_classify_user(record.sender, record.subject, record.body, previous),
            max_tokens=self._max_tokens,
            temperature=CLASSIFY_TEMPERATURE,
            purpose=purpose,
            max_retries=CLASSIFY_MAX_RETRIES,
        )
        category = parse_category(result.text)
        if category is None:
            raise ClassificationAmbiguity(f"Not a category label ({len(result.text)} chars)")
        return category

    @staticmethod
    def _fallback(record: EmailRecord, reason: str, error: str = "") -> Category:
        category = fallback_category(record.subject, record.body)
        logger.warning(
            "email.classify_fallback",
            extra={
                "action": "email.classify_fallback",
                "record_id": record.id,
                "reason": reason,
                "category": category.value,
                "error": error,
            },
        )
        return category
