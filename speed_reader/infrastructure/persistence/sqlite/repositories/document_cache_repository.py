"""SQLite implementation of the Reader document cache.

Both tables are keyed by ``(user_id, reader_document_id)``; every write is an
upsert that overwrites the previous copy of the document.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import peewee

from speed_reader.core.time_utils import to_naive_utc
from speed_reader.db.models import CachedArticle, CachedDocument, model_to_dict
from speed_reader.infrastructure.persistence.sqlite.base import SqliteBaseRepository

# Rows per INSERT statement, kept under SQLite's bound-parameter limit.
UPSERT_CHUNK_SIZE = 40


def _db_row(row: dict[str, Any]) -> dict[str, Any]:
    return {
        key: to_naive_utc(value) if isinstance(value, datetime) else value
        for key, value in row.items()
    }


def _upsert(model: type[peewee.Model], rows: list[dict[str, Any]]) -> int:
    conflict_target = [model.user, model.reader_document_id]
    preserve = [
        field
        for field in model._meta.sorted_fields
        if field.name not in ("id", "user", "reader_document_id")
    ]
    written = 0
    with model._meta.database.atomic():
        for chunk in peewee.chunked([_db_row(row) for row in rows], UPSERT_CHUNK_SIZE):
            model.insert_many(chunk).on_conflict(
                conflict_target=conflict_target, preserve=preserve
            ).execute()
            written += len(chunk)
    return written


class SqliteDocumentCacheRepositoryAdapter(SqliteBaseRepository):
    """Adapter for the cached_documents and cached_articles tables."""

    async def async_upsert_documents(self, rows: list[dict[str, Any]]) -> None:
        if not rows:
            return
        await self._execute(_upsert, CachedDocument, rows, operation_name="upsert_cached_documents")

    async def async_upsert_articles(self, rows: list[dict[str, Any]]) -> None:
        if not rows:
            return
        await self._execute(_upsert, CachedArticle, rows, operation_name="upsert_cached_articles")

    async def async_get_document(self, user_id: str, reader_document_id: str) -> dict[str, Any] | None:
        def _query() -> dict[str, Any] | None:
            document = CachedDocument.get_or_none(
                (CachedDocument.user == user_id)
                & (CachedDocument.reader_document_id == reader_document_id)
            )
            return model_to_dict(document)

        return await self._execute(_query, operation_name="get_cached_document", read_only=True)

    async def async_get_article(self, user_id: str, reader_document_id: str) -> dict[str, Any] | None:
        def _query() -> dict[str, Any] | None:
            article = CachedArticle.get_or_none(
                (CachedArticle.user == user_id)
                & (CachedArticle.reader_document_id == reader_document_id)
            )
            return model_to_dict(article)

        return await self._execute(_query, operation_name="get_cached_article", read_only=True)

    async def async_count_documents(self, user_id: str, location: str | None = None) -> int:
        def _count() -> int:
            query = CachedDocument.select().where(CachedDocument.user == user_id)
            if location:
                query = query.where(CachedDocument.location == location)
            return query.count()

        return await self._execute(_count, operation_name="count_cached_documents", read_only=True)
