"""Protocol definitions (ports) for Reader sync.

Keeping these as Protocols isolates the sync engine from the concrete HTTP
client and persistence layer.
"""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 - referenced in Protocol signatures
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from contextlib import AbstractAsyncContextManager

    from speed_reader.adapters.readwise.models import ReaderDocument, ReaderDocumentList
    from speed_reader.adapters.readwise.sync.state import SyncState, SyncStateDelta


class ReaderClientProtocol(Protocol):
    async def list_documents(
        self,
        *,
        location: str | None = None,
        page_cursor: str | None = None,
        page_size: int | None = None,
        updated_after: datetime | str | None = None,
        with_html_content: bool | None = None,
    ) -> ReaderDocumentList: ...

    async def get_document(self, document_id: str, with_content: bool = False) -> ReaderDocument: ...


class ReaderClientFactory(Protocol):
    def __call__(self, access_token: str) -> AbstractAsyncContextManager[ReaderClientProtocol]: ...


class DocumentCacheRepository(Protocol):
    async def async_upsert_articles(self, rows: list[dict[str, Any]]) -> None: ...

    async def async_upsert_documents(self, rows: list[dict[str, Any]]) -> None: ...


class SyncStateRepository(Protocol):
    async def async_get_state(self, user_id: str) -> SyncState | None: ...

    async def async_get_reader_token(self, user_id: str) -> str | None: ...

    async def async_try_acquire_lock(self, user_id: str, now: datetime) -> SyncState | None: ...

    async def async_release_stale_lock(self, user_id: str, *, older_than: datetime) -> bool: ...

    async def async_force_unlock(self, user_id: str) -> bool: ...

    async def async_apply_delta(
        self, user_id: str, delta: SyncStateDelta, *, last_sync_at: datetime
    ) -> None: ...

    async def async_mark_failed(
        self,
        user_id: str,
        *,
        next_allowed_at: datetime,
        delta: SyncStateDelta | None = None,
    ) -> None: ...

    async def async_list_due_user_ids(self, now: datetime) -> list[str]: ...
