"""Paginated, budget-aware pull of a single Reader location."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from speed_reader.adapters.readwise.sync.constants import MODE_INCREMENTAL
from speed_reader.adapters.readwise.sync.cursor import (
    CompletedCursor,
    Cursor,
    ResumableCursor,
    describe_cursor,
)
from speed_reader.adapters.readwise.sync.errors import CacheWriteError
from speed_reader.core.html_utils import html_to_plain_text
from speed_reader.core.time_utils import max_datetime, to_iso, utc_now

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from speed_reader.adapters.readwise.models import ReaderDocument, ReaderDocumentList
    from speed_reader.adapters.readwise.sync.budget import RequestBudget
    from speed_reader.adapters.readwise.sync.protocols import (
        DocumentCacheRepository,
        ReaderClientProtocol,
    )
    from speed_reader.domain.sync_location import SyncLocation

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LocationSyncResult:
    location: SyncLocation
    cursor: Cursor
    latest_updated_at: datetime | None
    completed: bool
    documents_synced: int = 0
    pages_fetched: int = 0
    deferred: bool = False


class LocationSyncer:
    """Pull one location page by page, caching every processed document.

    Each page costs one budget unit, plus one per document whose body was not
    returned inline. Both cache batches are flushed after every page, so a run
    that stops early never loses documents it already fetched.
    """

    def __init__(
        self,
        client: ReaderClientProtocol,
        cache: DocumentCacheRepository,
        *,
        user_id: str,
        page_size: int,
        html_normalizer: Callable[[str], str] = html_to_plain_text,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._client = client
        self._cache = cache
        self._user_id = user_id
        self._page_size = page_size
        self._html_normalizer = html_normalizer
        self._clock = clock
        # Resume position after the last flushed page of the current pull.
        self.checkpoint: tuple[SyncLocation, ResumableCursor] | None = None

    async def sync(
        self,
        location: SyncLocation,
        mode: str,
        cursor: Cursor,
        budget: RequestBudget,
        *,
        now: datetime | None = None,
        correlation_id: str | None = None,
    ) -> LocationSyncResult:
        start_time = time.time()
        now = now or self._clock()
        self.checkpoint = None
        page_token, watermark = _starting_point(cursor)
        # Only incremental passes narrow the listing; a backfill always walks everything.
        updated_after = watermark if mode == MODE_INCREMENTAL else None

        log_extra: dict[str, Any] = {
            "correlation_id": correlation_id,
            "user_id": self._user_id,
            "location": location.label,
            "mode": mode,
        }
        logger.info(
            "readwise_location_sync_start",
            extra={**log_extra, "cursor": describe_cursor(cursor), "budget_remaining": budget.remaining()},
        )

        latest_updated_at: datetime | None = None
        documents_synced = 0
        pages_fetched = 0

        while True:
            if not budget.can_request():
                if pages_fetched == 0:
                    # Nothing was fetched, so the stored position is still exact.
                    next_cursor: Cursor = cursor
                else:
                    next_cursor = ResumableCursor(
                        page_token=page_token or "",
                        watermark=latest_updated_at or watermark,
                    )
                return self._finish(
                    LocationSyncResult(
                        location=location,
                        cursor=next_cursor,
                        latest_updated_at=latest_updated_at,
                        completed=False,
                        documents_synced=documents_synced,
                        pages_fetched=pages_fetched,
                        deferred=True,
                    ),
                    log_extra,
                    start_time,
                )

            current_token = page_token

            async def _list_page() -> ReaderDocumentList:
                return await self._client.list_documents(
                    location=location.value,
                    page_cursor=current_token or None,
                    page_size=self._page_size,
                    updated_after=updated_after,
                    with_html_content=True,
                )

            page = await budget.track(_list_page)
            pages_fetched += 1

            article_rows: list[dict[str, Any]] = []
            document_rows: list[dict[str, Any]] = []
            cached_at = self._clock()
            deferred_mid_page = False

            for document in page.results:
                html = document.html_content if document.has_inline_content else None
                if not html:
                    if not budget.can_request():
                        deferred_mid_page = True
                        break
                    html = await self._fetch_content(document.id, budget)

                article_rows.append(self._article_row(document, html, cached_at))
                document_rows.append(self._document_row(document, cached_at))
                latest_updated_at = max_datetime(latest_updated_at, document.updated_at)

            await self._flush(article_rows, document_rows, log_extra)
            documents_synced += len(document_rows)

            logger.debug(
                "readwise_location_page_processed",
                extra={
                    **log_extra,
                    "documents": len(document_rows),
                    "page_results": len(page.results),
                    "has_next_page": bool(page.next_page_cursor),
                    "budget_remaining": budget.remaining(),
                },
            )

            if deferred_mid_page:
                resume_token = page.next_page_cursor or current_token or ""
                return self._finish(
                    LocationSyncResult(
                        location=location,
                        cursor=ResumableCursor(
                            page_token=resume_token,
                            watermark=latest_updated_at or watermark,
                        ),
                        latest_updated_at=latest_updated_at,
                        completed=False,
                        documents_synced=documents_synced,
                        pages_fetched=pages_fetched,
                        deferred=True,
                    ),
                    log_extra,
                    start_time,
                )

            if not page.next_page_cursor:
                final_watermark = latest_updated_at or watermark or now
                return self._finish(
                    LocationSyncResult(
                        location=location,
                        cursor=CompletedCursor(watermark=final_watermark),
                        latest_updated_at=latest_updated_at,
                        completed=True,
                        documents_synced=documents_synced,
                        pages_fetched=pages_fetched,
                    ),
                    log_extra,
                    start_time,
                )

            page_token = page.next_page_cursor
            self.checkpoint = (
                location,
                ResumableCursor(page_token=page_token, watermark=latest_updated_at or watermark),
            )

    async def _fetch_content(self, document_id: str, budget: RequestBudget) -> str | None:
        async def _get() -> ReaderDocument:
            return await self._client.get_document(document_id, with_content=True)

        document = await budget.track(_get)
        return document.html_content or None

    async def _flush(
        self,
        article_rows: list[dict[str, Any]],
        document_rows: list[dict[str, Any]],
        log_extra: dict[str, Any],
    ) -> None:
        if article_rows:
            try:
                await self._cache.async_upsert_articles(article_rows)
            except Exception as exc:
                logger.error("readwise_articles_batch_failed", extra={**log_extra, "error": str(exc)})
                raise CacheWriteError("articles", str(exc)) from exc

        if document_rows:
            try:
                await self._cache.async_upsert_documents(document_rows)
            except Exception as exc:
                logger.error("readwise_documents_batch_failed", extra={**log_extra, "error": str(exc)})
                raise CacheWriteError("documents", str(exc)) from exc

    def _article_row(
        self, document: ReaderDocument, html: str | None, cached_at: datetime
    ) -> dict[str, Any]:
        return {
            "user_id": self._user_id,
            "reader_document_id": document.id,
            "html_content": html,
            "plain_text": self._html_normalizer(html) if html else None,
            "word_count": document.word_count,
            "reader_updated_at": document.updated_at,
            "cached_at": cached_at,
        }

    def _document_row(self, document: ReaderDocument, cached_at: datetime) -> dict[str, Any]:
        return {
            "user_id": self._user_id,
            "reader_document_id": document.id,
            "title": document.title,
            "author": document.author,
            "source": document.source,
            "site_name": document.site_name,
            "url": document.url,
            "source_url": document.source_url,
            "category": document.category,
            "location": document.location,
            "tags": dict(document.tags),
            "word_count": document.word_count,
            "reading_progress": document.reading_progress,
            "summary": document.summary,
            "image_url": document.image_url,
            "published_date": document.published_date,
            "reader_created_at": document.created_at,
            "reader_last_moved_at": document.last_moved_at,
            "reader_saved_at": document.saved_at,
            "reader_updated_at": document.updated_at,
            "first_opened_at": document.first_opened_at,
            "last_opened_at": document.last_opened_at,
            "cached_at": cached_at,
        }

    @staticmethod
    def _finish(
        result: LocationSyncResult, log_extra: dict[str, Any], start_time: float
    ) -> LocationSyncResult:
        logger.info(
            "readwise_location_sync_complete",
            extra={
                **log_extra,
                "completed": result.completed,
                "deferred": result.deferred,
                "documents": result.documents_synced,
                "pages": result.pages_fetched,
                "latest_updated_at": to_iso(result.latest_updated_at),
                "cursor": describe_cursor(result.cursor),
                "duration_ms": int((time.time() - start_time) * 1000),
            },
        )
        return result


def _starting_point(cursor: Cursor) -> tuple[str | None, datetime | None]:
    """Resume token and watermark a pull starts from.

    A completed cursor carries no token, so the pull starts at the first page
    and its timestamp doubles as the watermark.
    """
    if isinstance(cursor, ResumableCursor):
        return cursor.page_token or None, cursor.watermark
    if isinstance(cursor, CompletedCursor):
        return None, cursor.watermark
    return None, None
