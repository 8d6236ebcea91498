"""
Retrieval-grounded reply suggestions.

Keeps a small vector index of (context, email, reply) examples. Given an
incoming email, it finds the closest examples and asks the LLM for a reply
in their style, with the operator's meeting link and product description
mixed in.

Lifecycle:
    service = RetrievalService(llm_client=llm, embedder=embedder, directory=...)
    await service.initialize()      # load from disk, or rebuild from seed
    suggestion = await service.suggest_reply(request)
    await service.add_example(context, email, reply)

The index is single-writer: add_example and suggest_reply share one lock,
so a query never sees an index and document list of different lengths.
"""

import asyncio
import logging
import time
import uuid
from pathlib import Path
from typing import Optional

from inboxsync.agent.prompts import build_reply_system, build_reply_user
from inboxsync.agent.schemas import (
    ExampleDocument,
    ReplySuggestion,
    SuggestionRequest,
)
from inboxsync.errors import ConnectivityError, ValidationError
from inboxsync.llm.client import LLMClient
from inboxsync.llm.embeddings import Embedder
from inboxsync.logging.audit import audit
from inboxsync.store.vector_index import IndexLoadError, VectorIndex

logger = logging.getLogger(__name__)

REPLY_TEMPERATURE = 0.7


def seed_examples(meeting_link: str) -> list[ExampleDocument]:
    """The fixed starting corpus. Replies point at the operator's booking link."""
    return [
        ExampleDocument(
            id="interested_response_1",
            context="Job application - interested response",
            email=(
                "Hi, Your resume has been shortlisted. When will be a good time "
                "for you to attend the technical interview?"
            ),
            reply=(
                "Thank you for shortlisting my profile! I'm available for a technical "
                f"interview. You can book a slot here: {meeting_link}"
            ),
        ),
        ExampleDocument(
            id="interested_response_2",
            context="Meeting request - positive response",
            email="We would like to schedule a call to discuss the opportunity further.",
            reply=(
                "I'd be happy to discuss the opportunity! Please feel free to book "
                f"a convenient time slot: {meeting_link}"
            ),
        ),
        ExampleDocument(
            id="interested_response_3",
            context="Follow-up - interested",
            email=(
                "Thanks for your application. We are interested in learning more "
                "about your background."
            ),
            reply=(
                "Thank you for your interest! I'd be glad to share more about my "
                f"background. You can schedule a call at your convenience: {meeting_link}"
            ),
        ),
        ExampleDocument(
            id="interested_response_4",
            context="Business opportunity - interested",
            email="Your profile looks interesting for our project. Can we set up a time to chat?",
            reply=(
                "I'm excited about the opportunity to contribute to your project! "
                f"Please book a suitable time for our conversation: {meeting_link}"
            ),
        ),
        ExampleDocument(
            id="interested_response_5",
            context="Interview invitation",
            email="We would like to invite you for an interview next week.",
            reply=(
                "Thank you for the interview invitation! I'm available next week. "
                f"You can choose a convenient time slot: {meeting_link}"
            ),
        ),
    ]


def confidence_from_similarities(similarities: list[float]) -> int:
    """Mean cosine similarity scaled to 0-100."""
    if not similarities:
        return 0
    mean = sum(similarities) / len(similarities)
    return max(0, min(100, round(mean * 100)))


class RetrievalService:
    """Embedding index of reply examples plus grounded reply generation."""

    def __init__(
        self,
        llm_client: LLMClient,
        embedder: Embedder,
        directory: Path,
        meeting_link: str,
        product_description: str,
        k: int = 3,
        max_tokens: int = 500,
    ):
        self._llm = llm_client
        self._embedder = embedder
        self._directory = Path(directory)
        self.meeting_link = meeting_link
        self.product_description = product_description
        self._k = k
        self._max_tokens = max_tokens
        self._index: Optional[VectorIndex] = None
        self._lock = asyncio.Lock()

    @property
    def initialized(self) -> bool:
        return self._index is not None

    @property
    def documents(self) -> list[ExampleDocument]:
        return list(self._index.documents) if self._index else []

    # =========================================================================
    # INITIALIZATION
    # =========================================================================

    async def initialize(self) -> None:
        """Load the persisted index, or rebuild from the seed corpus."""
        async with self._lock:
            try:
                self._index = await asyncio.to_thread(VectorIndex.load, self._directory)
                logger.info(
                    "retrieval.index_loaded",
                    extra={
                        "action": "retrieval.index_loaded",
                        "document_count": self._index.count,
                    },
                )
                return
            except IndexLoadError as e:
                logger.info(
                    "retrieval.index_rebuild",
                    extra={"action": "retrieval.index_rebuild", "reason": str(e)},
                )

            documents = seed_examples(self.meeting_link)
            vectors = await self._embedder.embed([d.embedding_text for d in documents])
            index = VectorIndex.build(self._directory, documents, vectors)
            await asyncio.to_thread(index.persist)
            self._index = index

            logger.info(
                "retrieval.index_built",
                extra={"action": "retrieval.index_built", "document_count": index.count},
            )

    # =========================================================================
    # QUERY
    # =========================================================================

    async def suggest_reply(self, request: SuggestionRequest) -> ReplySuggestion:
        """
        Draft a reply grounded on the k nearest examples.

        Raises:
            ValidationError: If subject and body are both empty. No
                             embedding or LLM call is made in that case.
            LLMError: If reply generation fails.
        """
        content = f"{request.subject or ''} {request.body or ''}".strip()
        if not content:
            raise ValidationError("No email content provided")
        if self._index is None:
            raise ConnectivityError("Reply suggestions unavailable: index not initialized")

        start = time.monotonic()
        query_vector = await self._embedder.embed([content])

        async with self._lock:
            neighbors = self._index.search(query_vector[0], self._k)

        examples = [doc for doc, _ in neighbors]
        confidence = confidence_from_similarities([sim for _, sim in neighbors])

        result = await self._llm.complete(
            system=build_reply_system(examples, self.meeting_link, self.product_description),
            user=build_reply_user(request.sender, request.subject, request.body),
            max_tokens=self._max_tokens,
            temperature=REPLY_TEMPERATURE,
            purpose="suggest_reply",
        )

        audit.info(
            "reply.suggested",
            example_ids=[d.id for d in examples],
            confidence=confidence,
            latency_ms=int((time.monotonic() - start) * 1000),
        )

        return ReplySuggestion(reply=result.text, examples=examples, confidence=confidence)

    # =========================================================================
    # ADMINISTRATION
    # =========================================================================

    async def add_example(self, context: str, email: str, reply: str) -> ExampleDocument:
        """Append one example to the index and persist it. Nothing changes if the write fails."""
        if not context.strip() or not email.strip() or not reply.strip():
            raise ValidationError("context, email and reply are all required")
        if self._index is None:
            raise ConnectivityError("Reply suggestions unavailable: index not initialized")

        document = ExampleDocument(
            id=f"custom_{uuid.uuid4().hex[:12]}",
            context=context,
            email=email,
            reply=reply,
        )
        vector = await self._embedder.embed([document.embedding_text])

        async with self._lock:
            ordinal = await asyncio.to_thread(self._index.add, document, vector[0])

        audit.info("retrieval.example_added", example_id=document.id, ordinal=ordinal)
        return document

    def stats(self) -> dict:
        return {
            "total_documents": self._index.count if self._index else 0,
            "meeting_link": self.meeting_link,
            "product_description": self.product_description,
            "initialized": self.initialized,
        }
