"""
Document store client (Elasticsearch REST API).

The pipeline needs exactly three things from the store: persist a new
record, set its category once classified, and fetch a record by id.
Search, pagination and aggregation belong to whoever queries the index;
this client does not implement them.

Every call carries a bounded timeout. Transport failures surface as
ConnectivityError; a fetch miss surfaces as NotFoundError.

Usage:
    from inboxsync.store.client import DocumentStore

    store = DocumentStore(base_url="http://localhost:9200", index="emails")
    await store.ensure_index()
    record_id = await store.persist(record)
    await store.update_category(record_id, Category.INTERESTED)
    record = await store.fetch_by_id(record_id)
"""

import logging
import time
from typing import Optional

import httpx

from inboxsync.agent.schemas import Category, EmailRecord, utcnow
from inboxsync.errors import ConnectivityError, NotFoundError
from inboxsync.logging.audit import audit

logger = logging.getLogger(__name__)

_TEXT_WITH_KEYWORD = {
    "type": "text",
    "analyzer": "standard",
    "fields": {"keyword": {"type": "keyword"}},
}

INDEX_MAPPINGS = {
    "mappings": {
        "properties": {
            "uid": {"type": "long"},
            "account": {"type": "keyword"},
            "account_email": {"type": "keyword"},
            "subject": _TEXT_WITH_KEYWORD,
            "from": _TEXT_WITH_KEYWORD,
            "to": _TEXT_WITH_KEYWORD,
            "body": {"type": "text", "analyzer": "standard"},
            "date": {"type": "date"},
            "folder": {"type": "keyword"},
            "category": {"type": "keyword"},
            "message_id": {"type": "keyword"},
            "processed": {"type": "boolean"},
            "created_at": {"type": "date"},
            "updated_at": {"type": "date"},
        }
    },
    "settings": {"number_of_shards": 1, "number_of_replicas": 0},
}


class DocumentStore:
    """Thin async wrapper over the Elasticsearch document endpoints."""

    def __init__(
        self,
        base_url: str,
        index: str = "emails",
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._index = index
        self._http = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout_seconds,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    async def close(self) -> None:
        await self._http.aclose()

    # =========================================================================
    # STARTUP
    # =========================================================================

    async def ping(self) -> None:
        """Raise ConnectivityError unless the cluster answers."""
        try:
            resp = await self._http.get("/")
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise ConnectivityError(f"Document store unreachable: {e}") from e

    async def ensure_index(self) -> None:
        """Create the email index with its mappings if it does not exist yet."""
        try:
            resp = await self._http.head(f"/{self._index}")
            if resp.status_code == 404:
                created = await self._http.put(f"/{self._index}", json=INDEX_MAPPINGS)
                # Another process may have created it in the meantime
                if created.status_code == 400 and "resource_already_exists" in created.text:
                    return
                created.raise_for_status()
                logger.info(
                    "store.index_created",
                    extra={"action": "store.index_created", "index": self._index},
                )
            else:
                resp.raise_for_status()
        except httpx.HTTPError as e:
            raise ConnectivityError(f"Could not prepare index {self._index}: {e}") from e

    # =========================================================================
    # RECORD OPERATIONS
    # =========================================================================

    async def persist(self, record: EmailRecord) -> str:
        """Store a new record. Returns its id."""
        start = time.monotonic()
        try:
            resp = await self._http.put(
                f"/{self._index}/_doc/{record.id}",
                json=record.to_document(),
            )
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(
                "store.persist.error",
                extra={"action": "store.persist.error", "record_id": record.id, "error": str(e)},
            )
            raise ConnectivityError(f"Could not persist record {record.id}: {e}") from e

        audit.info(
            "store.record.persisted",
            record_id=record.id,
            account_id=record.account,
            latency_ms=int((time.monotonic() - start) * 1000),
        )
        return record.id

    async def update_category(self, record_id: str, category: Category) -> None:
        """Set the category and mark the record processed, in one partial update."""
        doc = {
            "category": category.value,
            "processed": True,
            "updated_at": utcnow().isoformat(),
        }
        try:
            resp = await self._http.post(
                f"/{self._index}/_update/{record_id}",
                json={"doc": doc},
            )
            if resp.status_code == 404:
                raise NotFoundError(f"Email {record_id} not found")
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(
                "store.update.error",
                extra={"action": "store.update.error", "record_id": record_id, "error": str(e)},
            )
            raise ConnectivityError(f"Could not update record {record_id}: {e}") from e

    async def fetch_by_id(self, record_id: str) -> EmailRecord:
        """Fetch one record. Raises NotFoundError on a miss."""
        try:
            resp = await self._http.get(f"/{self._index}/_doc/{record_id}")
            if resp.status_code == 404:
                raise NotFoundError(f"Email {record_id} not found")
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as e:
            raise ConnectivityError(f"Could not fetch record {record_id}: {e}") from e

        if not data.get("found", True):
            raise NotFoundError(f"Email {record_id} not found")

        source = data.get("_source", {})
        source.setdefault("id", data.get("_id", record_id))
        return EmailRecord.model_validate(source)
