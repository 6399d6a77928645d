"""Pytest configuration and shared fixtures.

Besides fixtures, this module holds the in-memory fakes used by the sync
engine tests: a scripted Reader client and a recording cache repository.
"""

from __future__ import annotations

import os
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from speed_reader.adapters.readwise.client import ReaderNotFoundError
from speed_reader.adapters.readwise.models import ReaderDocument, ReaderDocumentList
from speed_reader.config import ReadwiseSyncConfig
from speed_reader.domain.sync_location import SyncLocation

NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=UTC)

_ENV_PREFIXES = ("READWISE_", "LOG_", "DB_PATH")


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch):
    """Keep developer environment variables out of config-dependent tests."""
    for name in list(os.environ):
        if name.startswith(_ENV_PREFIXES):
            monkeypatch.delenv(name, raising=False)


def make_document(
    doc_id: str,
    *,
    updated_at: datetime | None = None,
    html: str | None = "<p>Body</p>",
    location: str = "new",
    **overrides: Any,
) -> ReaderDocument:
    payload: dict[str, Any] = {
        "id": doc_id,
        "url": f"https://read.readwise.io/read/{doc_id}",
        "source_url": f"https://example.com/{doc_id}",
        "title": f"Document {doc_id}",
        "author": "Author",
        "category": "article",
        "location": location,
        "tags": {"python": {"name": "python"}},
        "word_count": 120,
        "reading_progress": 0.25,
        "created_at": "2024-01-01T00:00:00Z",
        "updated_at": (updated_at or NOW - timedelta(days=1)).isoformat(),
        "html_content": html,
    }
    payload.update(overrides)
    return ReaderDocument.model_validate(payload)


def make_page(
    documents: list[ReaderDocument], next_page_cursor: str | None = None
) -> ReaderDocumentList:
    return ReaderDocumentList(
        count=len(documents), next_page_cursor=next_page_cursor, results=documents
    )


def make_test_readwise_config(**overrides: Any) -> ReadwiseSyncConfig:
    return ReadwiseSyncConfig(**overrides)


class FakeReaderClient:
    """Serves scripted pages per location, keyed by page cursor.

    ``pages[location][None]`` is the first page; ``pages[location]["c2"]`` is
    the page returned for ``page_cursor="c2"``; an exception in place of a page
    is raised when that page is requested. ``errors`` maps a location to an
    exception raised whenever that location is listed.
    """

    def __init__(
        self,
        pages: dict[SyncLocation, dict[str | None, ReaderDocumentList | Exception]] | None = None,
        *,
        documents: dict[str, ReaderDocument] | None = None,
        errors: dict[SyncLocation, Exception] | None = None,
    ) -> None:
        self.pages = pages or {}
        self.documents = documents or {}
        self.errors = errors or {}
        self.list_calls: list[dict[str, Any]] = []
        self.get_calls: list[str] = []

    async def list_documents(self, **kwargs: Any) -> ReaderDocumentList:
        self.list_calls.append(kwargs)
        location = SyncLocation(kwargs["location"])
        if location in self.errors:
            raise self.errors[location]
        location_pages = self.pages.get(location, {None: make_page([])})
        page = location_pages[kwargs.get("page_cursor")]
        if isinstance(page, Exception):
            raise page
        return page

    async def get_document(self, document_id: str, with_content: bool = False) -> ReaderDocument:
        self.get_calls.append(document_id)
        if document_id not in self.documents:
            raise ReaderNotFoundError(f"Document not found: {document_id}")
        return self.documents[document_id]

    async def __aenter__(self) -> FakeReaderClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        return None

    def listed_locations(self) -> list[SyncLocation]:
        return [SyncLocation(call["location"]) for call in self.list_calls]


class RecordingCache:
    """Document cache that records every batch it receives."""

    def __init__(self, *, fail_on: str | None = None) -> None:
        self.document_batches: list[list[dict[str, Any]]] = []
        self.article_batches: list[list[dict[str, Any]]] = []
        self._fail_on = fail_on

    async def async_upsert_articles(self, rows: list[dict[str, Any]]) -> None:
        if self._fail_on == "articles":
            raise RuntimeError("disk full")
        self.article_batches.append(list(rows))

    async def async_upsert_documents(self, rows: list[dict[str, Any]]) -> None:
        if self._fail_on == "documents":
            raise RuntimeError("disk full")
        self.document_batches.append(list(rows))

    @property
    def document_ids(self) -> list[str]:
        return [row["reader_document_id"] for batch in self.document_batches for row in batch]
