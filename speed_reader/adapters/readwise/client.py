"""Readwise Reader API client."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import deque
from typing import TYPE_CHECKING, Any, TypeVar

import httpx

from speed_reader.adapters.readwise.models import ReaderDocument, ReaderDocumentList

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from datetime import datetime
    from typing import Self

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_API_URL = "https://readwise.io/api/v3"
LIST_ENDPOINT = "/list/"

# Reader allows 20 read requests per minute per token.
RATE_LIMIT_REQUESTS = 20
RATE_LIMIT_WINDOW_SECONDS = 60.0

DEFAULT_MAX_RETRIES = 2
DEFAULT_BASE_DELAY = 1.0  # seconds
DEFAULT_MAX_DELAY = 10.0  # seconds
DEFAULT_JITTER = 0.1


class ReaderClientError(Exception):
    """Base exception for Reader client errors."""


class ReaderApiError(ReaderClientError):
    """Non-2xx response from the Reader API."""

    def __init__(
        self,
        message: str,
        status_code: int,
        *,
        detail: str | None = None,
        retry_after_seconds: int | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail
        self.retry_after_seconds = retry_after_seconds


class ReaderRateLimitError(ReaderApiError):
    """HTTP 429 from Reader, or the local request guard tripping first."""

    def __init__(
        self,
        message: str,
        *,
        detail: str | None = None,
        retry_after_seconds: int | None = None,
    ) -> None:
        super().__init__(
            message, 429, detail=detail, retry_after_seconds=retry_after_seconds
        )


class ReaderNotFoundError(ReaderApiError):
    def __init__(self, message: str, *, detail: str | None = None) -> None:
        super().__init__(message, 404, detail=detail)


def _is_retryable_error(exc: Exception) -> bool:
    """Only retry failures where the request never reached Reader.

    Any response, including 5xx, has already been counted against the
    per-minute quota by the remote side.
    """
    return isinstance(exc, httpx.ConnectError | httpx.ConnectTimeout)


def _calculate_delay(attempt: int, base_delay: float, max_delay: float, jitter: float) -> float:
    delay = min(base_delay * (2**attempt), max_delay)
    return delay + delay * jitter * random.random()


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    jitter: float = DEFAULT_JITTER,
    operation_name: str = "operation",
) -> T:
    """Execute an async function, retrying connection failures with exponential backoff.

    Raises:
        ReaderClientError: If all retries are exhausted
    """
    for attempt in range(max_retries + 1):
        try:
            return await func()
        except Exception as e:
            if not _is_retryable_error(e):
                raise

            if attempt == max_retries:
                logger.error(
                    "reader_retry_exhausted",
                    extra={
                        "operation": operation_name,
                        "attempts": attempt + 1,
                        "error": str(e),
                    },
                )
                raise ReaderClientError(
                    f"{operation_name} failed after {attempt + 1} attempts: {e}"
                ) from e

            delay = _calculate_delay(attempt, base_delay, max_delay, jitter)
            logger.warning(
                "reader_retry_attempt",
                extra={
                    "operation": operation_name,
                    "attempt": attempt + 1,
                    "max_retries": max_retries,
                    "delay_seconds": round(delay, 2),
                    "error": str(e),
                },
            )
            await asyncio.sleep(delay)

    raise ReaderClientError(f"{operation_name} failed")


def _parse_retry_after(value: str | None) -> int | None:
    if not value:
        return None
    try:
        seconds = int(value.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def _error_detail(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    detail = body.get("detail") or body.get("message")
    return str(detail) if detail else None


class _RequestWindowGuard:
    """Client-side sliding window so a single client never outruns Reader's quota."""

    def __init__(self, max_requests: int, window_seconds: float) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._timestamps: deque[float] = deque()

    def check(self) -> None:
        now = time.monotonic()
        cutoff = now - self.window_seconds
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()

        if len(self._timestamps) >= self.max_requests:
            wait = self.window_seconds - (now - self._timestamps[0])
            wait_seconds = max(int(wait + 0.999), 1)
            raise ReaderRateLimitError(
                f"Rate limit exceeded. Try again in {wait_seconds} seconds.",
                retry_after_seconds=wait_seconds,
            )

    def record(self) -> None:
        self._timestamps.append(time.monotonic())


class ReaderClient:
    """Async HTTP client for the Readwise Reader API."""

    def __init__(
        self,
        access_token: str,
        api_url: str = DEFAULT_API_URL,
        timeout: float = 30.0,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_delay: float = DEFAULT_BASE_DELAY,
        retry_max_delay: float = DEFAULT_MAX_DELAY,
        max_requests_per_window: int = RATE_LIMIT_REQUESTS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize Reader client.

        Args:
            access_token: Reader access token (sent as ``Token <value>``)
            api_url: Base URL for the Reader API
            timeout: Request timeout in seconds
            max_retries: Maximum retries for connection failures
            retry_base_delay: Base delay between retries in seconds
            retry_max_delay: Maximum delay between retries in seconds
            max_requests_per_window: Local guard, requests per 60 seconds
            transport: Optional httpx transport (used by tests)
        """
        self.api_url = api_url.rstrip("/")
        self.access_token = access_token
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self._guard = _RequestWindowGuard(max_requests_per_window, RATE_LIMIT_WINDOW_SECONDS)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> Self:
        self._client = httpx.AsyncClient(
            base_url=self.api_url,
            headers={
                "Authorization": f"Token {self.access_token}",
                "Content-Type": "application/json",
            },
            timeout=self.timeout,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise ReaderClientError("Client not initialized. Use async context manager.")
        return self._client

    async def _get_list(self, params: dict[str, Any], operation_name: str) -> ReaderDocumentList:
        self._guard.check()

        async def _fetch() -> httpx.Response:
            return await self.client.get(LIST_ENDPOINT, params=params)

        response = await retry_with_backoff(
            _fetch,
            max_retries=self.max_retries,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            operation_name=operation_name,
        )
        self._guard.record()
        self._raise_for_status(response)
        return ReaderDocumentList.model_validate(response.json())

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.is_success:
            return

        detail = _error_detail(response)
        message = detail or f"Request failed with status {response.status_code}"
        if response.status_code == 429:
            raise ReaderRateLimitError(
                message,
                detail=detail,
                retry_after_seconds=_parse_retry_after(response.headers.get("retry-after")),
            )
        if response.status_code == 404:
            raise ReaderNotFoundError(message, detail=detail)
        raise ReaderApiError(
            message,
            response.status_code,
            detail=detail,
            retry_after_seconds=_parse_retry_after(response.headers.get("retry-after")),
        )

    async def validate_token(self) -> bool:
        """Make a minimal request; raises ReaderApiError if the token is rejected."""
        await self._get_list({"limit": 1}, "validate_token")
        return True

    async def list_documents(
        self,
        *,
        location: str | None = None,
        page_cursor: str | None = None,
        page_size: int | None = None,
        updated_after: datetime | str | None = None,
        with_html_content: bool | None = None,
        category: str | None = None,
        tag: str | None = None,
    ) -> ReaderDocumentList:
        """List one page of documents from the user's Reader library."""
        params: dict[str, Any] = {}
        if location:
            params["location"] = location
        if category:
            params["category"] = category
        if tag:
            params["tag"] = tag
        if page_cursor:
            params["pageCursor"] = page_cursor
        if page_size:
            params["limit"] = page_size
        if updated_after:
            params["updatedAfter"] = (
                updated_after if isinstance(updated_after, str) else updated_after.isoformat()
            )
        if with_html_content is not None:
            params["withHtmlContent"] = "true" if with_html_content else "false"

        return await self._get_list(params, "list_documents")

    async def get_document(self, document_id: str, with_content: bool = False) -> ReaderDocument:
        params: dict[str, Any] = {"id": document_id}
        if with_content:
            params["withHtmlContent"] = "true"

        page = await self._get_list(params, f"get_document({document_id})")
        if not page.results:
            raise ReaderNotFoundError(f"Document not found: {document_id}")
        return page.results[0]
