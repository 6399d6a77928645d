"""Peewee ORM models for the application database."""

from __future__ import annotations

import datetime as _dt
from typing import Any

import peewee
from playhouse.sqlite_ext import JSONField

# A proxy that will be initialised with the concrete database instance at runtime.
database_proxy: peewee.Database = peewee.DatabaseProxy()


def _utcnow() -> _dt.datetime:
    """Naive UTC now; every datetime column stores naive UTC."""
    return _dt.datetime.now(_dt.UTC).replace(tzinfo=None)


class BaseModel(peewee.Model):
    """Base Peewee model bound to the lazily initialised database proxy."""

    def save(self, *args: Any, **kwargs: Any) -> int:
        if hasattr(self, "updated_at"):
            self.updated_at = _utcnow()
        return super().save(*args, **kwargs)

    class Meta:
        database = database_proxy
        legacy_table_names = False


class User(BaseModel):
    id = peewee.TextField(primary_key=True)
    reader_access_token = peewee.TextField(null=True)
    created_at = peewee.DateTimeField(default=_utcnow)
    updated_at = peewee.DateTimeField(default=_utcnow)

    class Meta:
        table_name = "users"


class ReadwiseSyncState(BaseModel):
    """One row per account; cursors are stored in their encoded string form."""

    user = peewee.ForeignKeyField(
        User,
        primary_key=True,
        backref="readwise_sync_state",
        on_delete="CASCADE",
        column_name="user_id",
    )
    inbox_cursor = peewee.TextField(null=True)
    library_cursor = peewee.TextField(null=True)
    archive_cursor = peewee.TextField(null=True)
    shortlist_cursor = peewee.TextField(null=True)
    feed_cursor = peewee.TextField(null=True)
    initial_backfill_done = peewee.BooleanField(default=False)
    # Location labels whose completed cursor was written by this engine during backfill.
    backfilled_locations = JSONField(default=list)
    in_progress = peewee.BooleanField(default=False)
    lock_acquired_at = peewee.DateTimeField(null=True)
    window_started_at = peewee.DateTimeField(null=True)
    window_request_count = peewee.IntegerField(default=0)
    next_allowed_at = peewee.DateTimeField(null=True)
    last_429_at = peewee.DateTimeField(null=True)
    last_sync_at = peewee.DateTimeField(null=True)
    created_at = peewee.DateTimeField(default=_utcnow)
    updated_at = peewee.DateTimeField(default=_utcnow)

    class Meta:
        table_name = "readwise_sync_state"
        indexes = ((("in_progress", "next_allowed_at"), False),)


class CachedDocument(BaseModel):
    """Reader document metadata mirrored per user."""

    id = peewee.AutoField()
    user = peewee.ForeignKeyField(
        User, backref="cached_documents", on_delete="CASCADE", column_name="user_id"
    )
    reader_document_id = peewee.TextField()
    title = peewee.TextField(null=True)
    author = peewee.TextField(null=True)
    source = peewee.TextField(null=True)
    site_name = peewee.TextField(null=True)
    url = peewee.TextField(default="")
    source_url = peewee.TextField(null=True)
    category = peewee.TextField(default="article")
    location = peewee.TextField(null=True)
    tags = JSONField(default=dict)
    word_count = peewee.IntegerField(null=True)
    reading_progress = peewee.FloatField(default=0.0)
    summary = peewee.TextField(null=True)
    image_url = peewee.TextField(null=True)
    published_date = peewee.DateTimeField(null=True)
    reader_created_at = peewee.DateTimeField(null=True)
    reader_last_moved_at = peewee.DateTimeField(null=True)
    reader_saved_at = peewee.DateTimeField(null=True)
    reader_updated_at = peewee.DateTimeField(null=True)
    first_opened_at = peewee.DateTimeField(null=True)
    last_opened_at = peewee.DateTimeField(null=True)
    cached_at = peewee.DateTimeField(default=_utcnow)

    class Meta:
        table_name = "cached_documents"
        indexes = (
            (("user", "reader_document_id"), True),
            (("user", "location"), False),
        )


class CachedArticle(BaseModel):
    """Body content of a cached document, raw HTML plus normalized plain text."""

    id = peewee.AutoField()
    user = peewee.ForeignKeyField(
        User, backref="cached_articles", on_delete="CASCADE", column_name="user_id"
    )
    reader_document_id = peewee.TextField()
    html_content = peewee.TextField(null=True)
    plain_text = peewee.TextField(null=True)
    word_count = peewee.IntegerField(null=True)
    reader_updated_at = peewee.DateTimeField(null=True)
    cached_at = peewee.DateTimeField(default=_utcnow)

    class Meta:
        table_name = "cached_articles"
        indexes = ((("user", "reader_document_id"), True),)


ALL_MODELS: tuple[type[BaseModel], ...] = (
    User,
    ReadwiseSyncState,
    CachedDocument,
    CachedArticle,
)


def model_to_dict(model: BaseModel | None) -> dict[str, Any] | None:
    """Convert a Peewee model instance to a plain dictionary."""
    if model is None:
        return None
    data: dict[str, Any] = {}
    for field in model._meta.sorted_fields:
        if isinstance(field, peewee.ForeignKeyField):
            # Raw id, without loading the related row.
            data[field.name] = model.__data__.get(field.name)
            continue
        data[field.name] = getattr(model, field.name)
    return data
