from __future__ import annotations

from typing import TYPE_CHECKING, Any, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

    from speed_reader.db.session import DatabaseSessionManager

T = TypeVar("T")


class SqliteBaseRepository:
    """Base for SQLite adapters: every query runs through the session manager.

    Subclasses pass a blocking peewee callable to ``_execute``; it runs off the
    event loop inside a connection context, with the session's timeout and
    locked-database retry.
    """

    def __init__(self, session_manager: DatabaseSessionManager) -> None:
        self._session = session_manager

    async def _execute(
        self,
        operation: Callable[..., T],
        *args: Any,
        timeout: float | None = None,
        operation_name: str = "repository_operation",
        read_only: bool = False,
    ) -> T:
        return await self._session._safe_db_operation(
            operation,
            *args,
            timeout=timeout,
            operation_name=operation_name,
            read_only=read_only,
        )
