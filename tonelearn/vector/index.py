"""Similarity index over indexed example records.

The :class:`SimilarityIndex` contract is what ingestion, selection and
pattern analysis depend on. :class:`SupabaseVectorIndex` stores records in
a pgvector table and searches through a SQL function:

    example_records(id text primary key, user_id uuid, email_id text,
                    recipient_email text, relationship_type text,
                    sent_date timestamptz, embedding vector(1536),
                    payload jsonb)

    match_example_records(query_embedding, match_user_id, match_count,
                          match_threshold, filter_relationship_type,
                          filter_recipient_email, exclude_ids,
                          date_from, date_to)
        returns (id text, similarity float, payload jsonb)
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import Counter
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from tonelearn.core.config import Settings, get_settings
from tonelearn.core.exceptions import DatabaseError, NotFoundError
from tonelearn.core.resilience import retry
from tonelearn.db.supabase import SupabaseClient
from tonelearn.pipeline.models import IndexedExampleRecord, UsageUpdate

logger = logging.getLogger(__name__)


class SearchFilters(BaseModel):
    relationship_type: str | None = None
    recipient_email: str | None = None
    exclude_ids: list[str] = Field(default_factory=list)
    date_from: datetime | None = None
    date_to: datetime | None = None


class SearchRequest(BaseModel):
    user_id: str
    vector: list[float]
    filters: SearchFilters = Field(default_factory=SearchFilters)
    limit: int = 50
    score_threshold: float = 0.3


class SearchHit(BaseModel):
    id: str
    score: float
    payload: dict[str, Any] = Field(default_factory=dict)


class SimilarityIndex(ABC):
    """Vector store keyed by record id, partitioned by user."""

    async def initialize(self) -> None:
        """Prepare the backing store. Safe to call more than once."""

    @abstractmethod
    async def upsert(self, record: IndexedExampleRecord, vector: list[float]) -> None:
        """Insert or replace one record."""

    async def upsert_batch(self, items: list[tuple[IndexedExampleRecord, list[float]]]) -> None:
        """Insert or replace many records."""
        for record, vector in items:
            await self.upsert(record, vector)

    @abstractmethod
    async def search(self, request: SearchRequest) -> list[SearchHit]:
        """Return hits ranked by similarity, highest first."""

    @abstractmethod
    async def scroll_all(
        self, user_id: str, relationship_type: str | None = None
    ) -> list[dict[str, Any]]:
        """Return every stored payload for a user, optionally one relationship."""

    @abstractmethod
    async def delete_by_user(self, user_id: str) -> None:
        """Remove every record owned by ``user_id``."""

    @abstractmethod
    async def get_payload(self, record_id: str) -> dict[str, Any] | None:
        """Fetch a single stored payload, or None if absent."""

    @abstractmethod
    async def replace_payload(self, record_id: str, payload: dict[str, Any]) -> None:
        """Overwrite the stored payload of an existing record."""

    async def update_usage_stats(self, updates: list[UsageUpdate]) -> None:
        """Fold draft feedback into the usage counters of each record.

        Raises:
            NotFoundError: If a record id does not exist.
        """
        now = datetime.now(UTC).isoformat()
        for update in updates:
            payload = await self.get_payload(update.record_id)
            if payload is None:
                raise NotFoundError("Indexed example", update.record_id)
            apply_usage_update(payload, update, now)
            await self.replace_payload(update.record_id, payload)

    async def get_relationship_stats(self, user_id: str) -> dict[str, int]:
        """Count a user's records per relationship type."""
        payloads = await self.scroll_all(user_id)
        counts: Counter[str] = Counter(
            (p.get("relationship") or {}).get("type", "unknown") for p in payloads
        )
        return dict(counts)


def apply_usage_update(payload: dict[str, Any], update: UsageUpdate, now: str) -> None:
    """Mutate a stored payload with one usage update."""
    if update.was_used:
        payload["frequency_score"] = int(payload.get("frequency_score", 1)) + 1
        payload["last_used_at"] = now
    if update.was_edited:
        edits = int(payload.get("edit_count", 0))
        if update.edit_distance is not None:
            previous = float(payload.get("average_edit_distance", 0.0))
            payload["average_edit_distance"] = (
                previous * edits + update.edit_distance
            ) / (edits + 1)
        payload["edit_count"] = edits + 1
    if update.user_rating is not None:
        payload["user_rating"] = update.user_rating


class SupabaseVectorIndex(SimilarityIndex):
    """pgvector-backed index accessed through the Supabase client."""

    def __init__(self, db: SupabaseClient, config: Settings | None = None) -> None:
        """Initialize the index.

        Args:
            db: Shared Supabase handle.
            config: Settings for table/function names and paging.
        """
        self._db = db
        config = config or get_settings()
        self._table = config.VECTOR_TABLE
        self._match_function = config.VECTOR_MATCH_FUNCTION
        self._page_size = config.VECTOR_SCROLL_PAGE_SIZE
        self._initialized = False
        self._init_lock = asyncio.Lock()

    async def initialize(self) -> None:
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            try:
                query = self._db.get_client().table(self._table).select("id").limit(1)
                await asyncio.to_thread(query.execute)
            except Exception as e:
                logger.exception("Similarity index table check failed")
                raise DatabaseError(f"Failed to initialize similarity index: {e}") from e
            self._initialized = True
        logger.info("Similarity index ready", extra={"table": self._table})

    @staticmethod
    def _row(record: IndexedExampleRecord, vector: list[float]) -> dict[str, Any]:
        payload = record.to_payload()
        return {
            "id": record.id,
            "user_id": record.user_id,
            "email_id": record.email_id,
            "recipient_email": record.recipient_email.lower(),
            "relationship_type": record.relationship.type,
            "sent_date": payload.get("sent_date"),
            "embedding": vector,
            "payload": payload,
        }

    async def upsert(self, record: IndexedExampleRecord, vector: list[float]) -> None:
        await self.initialize()
        try:
            query = self._db.get_client().table(self._table).upsert(
                self._row(record, vector), on_conflict="id"
            )
            await asyncio.to_thread(query.execute)
        except Exception as e:
            logger.warning("Failed to upsert example record %s: %s", record.id, e)
            raise DatabaseError(f"Failed to upsert example record: {e}") from e

    async def upsert_batch(self, items: list[tuple[IndexedExampleRecord, list[float]]]) -> None:
        if not items:
            return
        await self.initialize()
        rows = [self._row(record, vector) for record, vector in items]
        try:
            query = self._db.get_client().table(self._table).upsert(rows, on_conflict="id")
            await asyncio.to_thread(query.execute)
        except Exception as e:
            logger.warning("Failed to upsert %d example records: %s", len(rows), e)
            raise DatabaseError(f"Failed to upsert example records: {e}") from e

    async def search(self, request: SearchRequest) -> list[SearchHit]:
        await self.initialize()
        filters = request.filters
        params: dict[str, Any] = {
            "query_embedding": request.vector,
            "match_user_id": request.user_id,
            "match_count": request.limit,
            "match_threshold": request.score_threshold,
            "filter_relationship_type": filters.relationship_type,
            "filter_recipient_email": (
                filters.recipient_email.lower() if filters.recipient_email else None
            ),
            "exclude_ids": filters.exclude_ids or None,
            "date_from": filters.date_from.isoformat() if filters.date_from else None,
            "date_to": filters.date_to.isoformat() if filters.date_to else None,
        }
        try:
            query = self._db.get_client().rpc(self._match_function, params)
            response = await asyncio.to_thread(query.execute)
        except Exception as e:
            logger.warning("Similarity search failed: %s", e)
            raise DatabaseError(f"Similarity search failed: {e}") from e

        hits = [
            SearchHit(
                id=row["id"],
                score=float(row.get("similarity", 0.0)),
                payload=row.get("payload") or {},
            )
            for row in response.data or []
        ]
        hits.sort(key=lambda hit: hit.score, reverse=True)
        return hits[: request.limit]

    @retry(max_attempts=3, initial_delay=0.5)
    async def _fetch_page(
        self, user_id: str, relationship_type: str | None, offset: int
    ) -> list[dict[str, Any]]:
        query = self._db.get_client().table(self._table).select("payload").eq("user_id", user_id)
        if relationship_type:
            query = query.eq("relationship_type", relationship_type)
        query = query.order("id").range(offset, offset + self._page_size - 1)
        response = await asyncio.to_thread(query.execute)
        return response.data or []

    async def scroll_all(
        self, user_id: str, relationship_type: str | None = None
    ) -> list[dict[str, Any]]:
        await self.initialize()
        payloads: list[dict[str, Any]] = []
        offset = 0
        try:
            while True:
                rows = await self._fetch_page(user_id, relationship_type, offset)
                payloads.extend(row["payload"] for row in rows)
                if len(rows) < self._page_size:
                    break
                offset += self._page_size
        except Exception as e:
            logger.warning("Scroll failed for user %s: %s", user_id, e)
            raise DatabaseError(f"Failed to read example records: {e}") from e
        return payloads

    async def delete_by_user(self, user_id: str) -> None:
        await self.initialize()
        try:
            query = self._db.get_client().table(self._table).delete().eq("user_id", user_id)
            await asyncio.to_thread(query.execute)
        except Exception as e:
            logger.exception("Failed to delete example records", extra={"user_id": user_id})
            raise DatabaseError(f"Failed to delete example records: {e}") from e
        logger.info("Deleted example records", extra={"user_id": user_id})

    async def get_payload(self, record_id: str) -> dict[str, Any] | None:
        await self.initialize()
        try:
            query = (
                self._db.get_client()
                .table(self._table)
                .select("payload")
                .eq("id", record_id)
                .limit(1)
            )
            response = await asyncio.to_thread(query.execute)
        except Exception as e:
            raise DatabaseError(f"Failed to read example record: {e}") from e
        rows = response.data or []
        return rows[0]["payload"] if rows else None

    async def replace_payload(self, record_id: str, payload: dict[str, Any]) -> None:
        await self.initialize()
        try:
            query = (
                self._db.get_client()
                .table(self._table)
                .update({"payload": payload})
                .eq("id", record_id)
            )
            await asyncio.to_thread(query.execute)
        except Exception as e:
            raise DatabaseError(f"Failed to update example record: {e}") from e
