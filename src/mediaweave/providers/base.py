"""Base protocol and failure taxonomy for catalog providers.

This module defines the CatalogProvider protocol that every catalog client
implements, the failure hierarchy shared by providers, the retry executor
and the reconciler, and the HTTP plumbing the concrete clients build on.
"""

import asyncio
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Protocol, runtime_checkable

import httpx

from mediaweave.models import (
    ChapterFragment,
    EpisodeFragment,
    MediaDetailFragment,
    MediaType,
    SearchPage,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class CatalogProvider(Protocol):
    """Protocol for all catalog providers.

    Error Handling Contract:
    - NetworkFailure: connectivity problems, timeouts, HTTP 408
    - RateLimitFailure: HTTP 429, carries the provider's Retry-After hint
    - ServerFailure: HTTP 5xx
    - ValidationFailure: malformed request or response, other HTTP 4xx
    """

    @property
    def provider_id(self) -> str:
        """Unique identifier for this provider (e.g., 'anilist', 'tmdb')."""
        ...

    async def search(
        self, query: str, media_type: MediaType, page: int = 1, per_page: int = 10
    ) -> SearchPage:
        """Search the catalog by title."""
        ...

    async def fetch_details(self, media_id: str, media_type: MediaType) -> MediaDetailFragment:
        """Fetch the full detail payload for one title."""
        ...

    async def fetch_episodes(self, media_id: str) -> list[EpisodeFragment]:
        """Fetch the episode list for one title (empty if unsupported)."""
        ...

    async def fetch_chapters(self, media_id: str) -> list[ChapterFragment]:
        """Fetch the chapter list for one title (empty if unsupported)."""
        ...

    async def close(self) -> None:
        """Release network resources."""
        ...


class ProviderError(Exception):
    """Base exception for all provider failures.

    Attributes:
        provider: The provider that failed.
        message: Human-readable error description.
        operation: Name of the operation that failed, set by the retry executor.
        attempts: Number of attempts made, set by the retry executor.
    """

    def __init__(
        self,
        provider: str,
        message: str,
        *,
        operation: str | None = None,
        attempts: int | None = None,
    ) -> None:
        self.provider = provider
        self.message = message
        self.operation = operation
        self.attempts = attempts
        super().__init__(f"[{provider}] {message}")


class NetworkFailure(ProviderError):
    """Connectivity failure or timeout. Retryable."""


class RateLimitFailure(ProviderError):
    """Provider signalled throttling (HTTP 429). Retryable after the cooldown."""

    def __init__(self, provider: str, retry_after: float | None = None, **kwargs: Any) -> None:
        msg = "Rate limited"
        if retry_after is not None:
            msg = f"Rate limited, retry after {retry_after:.0f}s"
        super().__init__(provider, msg, **kwargs)
        self.retry_after = retry_after


class ServerFailure(ProviderError):
    """Provider returned HTTP 5xx. Retryable."""

    def __init__(self, provider: str, status_code: int, **kwargs: Any) -> None:
        super().__init__(provider, f"Server error (HTTP {status_code})", **kwargs)
        self.status_code = status_code


class ValidationFailure(ProviderError):
    """Malformed request or response. Not retryable."""

    def __init__(
        self, provider: str, details: str | None = None, status_code: int | None = None, **kwargs: Any
    ) -> None:
        msg = "Invalid request or response"
        if details:
            msg = f"Invalid request or response: {details}"
        super().__init__(provider, msg, **kwargs)
        self.details = details
        self.status_code = status_code


class UnknownFailure(ProviderError):
    """Anything that does not fit the other categories."""


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header into seconds.

    Accepts both delta-seconds ("120") and HTTP-date forms.

    Args:
        value: Raw header value

    Returns:
        Seconds to wait, or None if the header is missing or unparseable
    """
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def handle_http_status(provider: str, response: httpx.Response) -> None:
    """Raise the taxonomy failure matching a non-success HTTP response.

    Args:
        provider: Provider that produced the response
        response: The HTTP response

    Raises:
        NetworkFailure: HTTP 408
        RateLimitFailure: HTTP 429
        ServerFailure: HTTP 5xx
        ValidationFailure: any other status >= 400
    """
    status = response.status_code
    if status < 400:
        return
    if status == 408:
        raise NetworkFailure(provider, "Request timed out (HTTP 408)")
    if status == 429:
        raise RateLimitFailure(provider, parse_retry_after(response.headers.get("retry-after")))
    if status >= 500:
        raise ServerFailure(provider, status)
    raise ValidationFailure(provider, f"HTTP {status}", status_code=status)


def classify_exception(provider: str, error: BaseException) -> ProviderError:
    """Convert any exception raised by a provider call into the taxonomy."""
    if isinstance(error, ProviderError):
        return error
    if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        return NetworkFailure(provider, "Request timed out")
    if isinstance(error, httpx.TimeoutException):
        return NetworkFailure(provider, f"Request timed out: {error}")
    if isinstance(error, httpx.TransportError):
        return NetworkFailure(provider, f"Connection error: {error}")
    if isinstance(error, httpx.HTTPStatusError):
        try:
            handle_http_status(provider, error.response)
        except ProviderError as classified:
            return classified
    return UnknownFailure(provider, f"{type(error).__name__}: {error}")


class HTTPCatalogProvider:
    """Shared httpx plumbing for catalog clients.

    Subclasses set BASE_URL and implement the CatalogProvider methods using
    _get_json/_post_json, which translate transport and status errors into
    the failure taxonomy.
    """

    BASE_URL = ""
    DEFAULT_TIMEOUT = 15.0  # seconds
    USER_AGENT = "mediaweave/0.1"

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client

    @property
    def provider_id(self) -> str:
        raise NotImplementedError

    def _default_headers(self) -> dict[str, str]:
        return {"User-Agent": self.USER_AGENT, "Accept": "application/json"}

    async def _get_client(self) -> httpx.AsyncClient:
        """Lazy initialization of HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.BASE_URL,
                timeout=httpx.Timeout(self.DEFAULT_TIMEOUT),
                headers=self._default_headers(),
            )
        return self._client

    async def _request_json(self, method: str, path: str, **kwargs: Any) -> Any:
        client = await self._get_client()
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning(f"{self.provider_id} timeout: {e}")
            raise NetworkFailure(self.provider_id, "Request timed out") from e
        except httpx.RequestError as e:
            # DNS, connection reset, etc.
            logger.error(f"{self.provider_id} request error: {e}")
            raise NetworkFailure(self.provider_id, f"Connection error: {e}") from e

        if response.status_code >= 400:
            logger.warning(f"{self.provider_id} HTTP {response.status_code} for {path}")
        handle_http_status(self.provider_id, response)

        try:
            return response.json()
        except ValueError as e:
            raise ValidationFailure(self.provider_id, "Invalid JSON response") from e

    async def _get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return await self._request_json("GET", path, params=params)

    async def _post_json(self, path: str, payload: dict[str, Any]) -> Any:
        return await self._request_json("POST", path, json=payload)

    async def fetch_episodes(self, media_id: str) -> list[EpisodeFragment]:
        return []

    async def fetch_chapters(self, media_id: str) -> list[ChapterFragment]:
        return []

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.debug(f"{self.provider_id} client closed")


__all__ = [
    "CatalogProvider",
    "HTTPCatalogProvider",
    "NetworkFailure",
    "ProviderError",
    "RateLimitFailure",
    "ServerFailure",
    "UnknownFailure",
    "ValidationFailure",
    "classify_exception",
    "handle_http_status",
    "parse_retry_after",
]
