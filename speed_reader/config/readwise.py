from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from speed_reader.domain.sync_location import SYNC_ORDER, SyncLocation

from ._validators import _parse_location_allow_list, _parse_positive_int_override

logger = logging.getLogger(__name__)

DEFAULT_MAX_REQUESTS_PER_WINDOW = 20
DEFAULT_PAGE_SIZE = 100
# The Reader list endpoint never returns more than 100 documents per page.
MAX_PAGE_SIZE = 100


class ReadwiseSyncConfig(BaseModel):
    """Readwise Reader API access and sync engine limits."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    api_url: str = Field(
        default="https://readwise.io/api/v3",
        validation_alias="READWISE_API_URL",
    )
    max_requests_per_window: int = Field(
        default=DEFAULT_MAX_REQUESTS_PER_WINDOW,
        validation_alias="READWISE_SYNC_MAX_REQUESTS_OVERRIDE",
        description="Remote calls allowed per 60 second window",
    )
    page_size: int = Field(
        default=DEFAULT_PAGE_SIZE,
        validation_alias="READWISE_SYNC_PAGE_SIZE_OVERRIDE",
    )
    allowed_locations: tuple[SyncLocation, ...] = Field(
        default=SYNC_ORDER,
        validation_alias="READWISE_SYNC_LOCATION_OVERRIDE",
        description="Locations that participate in sync (comma-separated)",
    )
    request_timeout_sec: float = Field(default=30.0, validation_alias="READWISE_REQUEST_TIMEOUT_SEC")
    stale_lock_seconds: int = Field(default=300, validation_alias="READWISE_SYNC_STALE_LOCK_SECONDS")

    @field_validator("api_url", mode="before")
    @classmethod
    def _validate_api_url(cls, value: Any) -> str:
        url = str(value or "https://readwise.io/api/v3").strip()
        if not url:
            return "https://readwise.io/api/v3"
        if not url.startswith(("http://", "https://")):
            msg = "Readwise API URL must start with http:// or https://"
            raise ValueError(msg)
        return url.rstrip("/")

    @field_validator("max_requests_per_window", mode="before")
    @classmethod
    def _validate_max_requests(cls, value: Any) -> int:
        return _parse_positive_int_override(
            value, default=DEFAULT_MAX_REQUESTS_PER_WINDOW, name="max_requests_per_window"
        )

    @field_validator("page_size", mode="before")
    @classmethod
    def _validate_page_size(cls, value: Any) -> int:
        parsed = _parse_positive_int_override(value, default=DEFAULT_PAGE_SIZE, name="page_size")
        return min(parsed, MAX_PAGE_SIZE)

    @field_validator("allowed_locations", mode="before")
    @classmethod
    def _validate_allowed_locations(cls, value: Any) -> tuple[SyncLocation, ...]:
        return _parse_location_allow_list(value)

    @field_validator("request_timeout_sec", mode="before")
    @classmethod
    def _validate_timeout(cls, value: Any) -> float:
        try:
            parsed = float(str(value if value not in (None, "") else 30.0))
        except ValueError as exc:
            msg = "Readwise request timeout must be a valid number"
            raise ValueError(msg) from exc
        if parsed <= 0 or parsed > 300:
            msg = "Readwise request timeout must be between 0 and 300 seconds"
            raise ValueError(msg)
        return parsed

    @field_validator("stale_lock_seconds", mode="before")
    @classmethod
    def _validate_stale_lock(cls, value: Any) -> int:
        try:
            parsed = int(str(value if value not in (None, "") else 300))
        except ValueError as exc:
            msg = "Stale lock timeout must be a valid integer"
            raise ValueError(msg) from exc
        if parsed < 60 or parsed > 86400:
            msg = "Stale lock timeout must be between 60 and 86400 seconds"
            raise ValueError(msg)
        return parsed

    @property
    def locations_overridden(self) -> bool:
        return self.allowed_locations != SYNC_ORDER
