"""Pydantic models for the Readwise Reader API v3."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator


class ReaderDocument(BaseModel):
    """A document (article, email, feed item, ...) in the user's Reader library."""

    id: str
    url: str = ""
    source_url: str | None = None
    title: str | None = None
    author: str | None = None
    source: str | None = None
    category: str = "article"
    location: str | None = None
    tags: dict[str, Any] = Field(default_factory=dict)
    site_name: str | None = None
    word_count: int | None = None
    reading_progress: float = 0.0
    summary: str | None = None
    image_url: str | None = None
    published_date: datetime | None = None
    notes: str | None = None
    parent_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    saved_at: datetime | None = None
    last_moved_at: datetime | None = None
    first_opened_at: datetime | None = None
    last_opened_at: datetime | None = None
    html_content: str | None = None

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @field_validator("tags", mode="before")
    @classmethod
    def _coerce_tags(cls, value: Any) -> dict[str, Any]:
        # Reader sends ``null`` for untagged documents.
        if value is None:
            return {}
        return value

    @field_validator("published_date", mode="before")
    @classmethod
    def _coerce_published_date(cls, value: Any) -> Any:
        # Older documents report the publish date as epoch milliseconds.
        if isinstance(value, int | float):
            return datetime.fromtimestamp(value / 1000, tz=UTC)
        if value == "":
            return None
        return value

    @field_validator("reading_progress", mode="before")
    @classmethod
    def _coerce_progress(cls, value: Any) -> Any:
        return 0.0 if value is None else value

    @property
    def has_inline_content(self) -> bool:
        return isinstance(self.html_content, str) and bool(self.html_content)


class ReaderDocumentList(BaseModel):
    """One page of the ``/list/`` endpoint."""

    count: int | None = None
    next_page_cursor: str | None = Field(default=None, alias="nextPageCursor")
    results: list[ReaderDocument] = Field(default_factory=list)

    model_config = {"populate_by_name": True, "extra": "ignore"}
