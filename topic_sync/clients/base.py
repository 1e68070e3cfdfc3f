"""
Base API client with rate limiting, retries, and common functionality.
The chain and Forge clients inherit from this class.
"""
import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from topic_sync.config import Settings, get_settings
from topic_sync.errors import DecodeFailure, FetchFailure
from topic_sync.utils import get_logger

logger = get_logger(__name__)


class RateLimiter:
    """Token bucket rate limiter with async support."""

    def __init__(self, rate: float, capacity: Optional[float] = None):
        """
        Initialize rate limiter.

        Args:
            rate: Tokens per second
            capacity: Maximum burst capacity (default: rate * 2)
        """
        self.rate = rate
        self.capacity = capacity or rate * 2
        self.tokens = self.capacity
        self.last_update = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self, tokens: float = 1.0) -> float:
        """
        Acquire tokens, waiting if necessary.

        Returns:
            Wait time in seconds (0 if no wait needed)
        """
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self.last_update
            self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
            self.last_update = now

            if self.tokens >= tokens:
                self.tokens -= tokens
                return 0.0

            wait_time = (tokens - self.tokens) / self.rate
            await asyncio.sleep(wait_time)
            self.tokens = 0
            self.last_update = time.monotonic()
            return wait_time


class BaseAPIClient(ABC):
    """
    Abstract base class for the remote network clients.
    Provides rate limiting, retries, metrics and error translation.

    Transport errors, 5xx and 429 responses are retried; other 4xx responses
    fail immediately. Whatever escapes the retry loop is raised as
    FetchFailure, and unparseable bodies as DecodeFailure.
    """

    # Must be set by subclasses
    NAME: str = "unknown"

    def __init__(
        self,
        base_url: Optional[str] = None,
        rate_limit_rps: Optional[float] = None,
        timeout_seconds: Optional[int] = None,
        max_retries: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        settings: Optional[Settings] = None,
    ):
        self._settings = settings or get_settings()
        self._client: Optional[httpx.AsyncClient] = None
        self._transport = transport
        self.base_url = (base_url or self._get_default_base_url()).rstrip("/")

        # Rate limiting
        rps = rate_limit_rps or self._get_default_rate_limit()
        self._rate_limiter = RateLimiter(rps)

        # Timeout
        self._timeout = timeout_seconds or self._settings.api_timeout_seconds

        # Retry configuration
        self._max_retries = max_retries or self._settings.retry_max_attempts

        # Metrics
        self._request_count = 0
        self._error_count = 0
        self._bytes_transferred = 0
        self._total_latency_ms = 0.0

    @abstractmethod
    def _get_default_base_url(self) -> str:
        """Get the default base URL for this client."""
        pass

    @abstractmethod
    def _get_default_rate_limit(self) -> float:
        """Get default rate limit for this client."""
        pass

    def _get_headers(self) -> dict[str, str]:
        """Get headers for requests."""
        return {"Accept": "application/json"}

    async def __aenter__(self) -> "BaseAPIClient":
        await self.connect()
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        """Initialize the HTTP client."""
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self._timeout),
            limits=httpx.Limits(
                max_connections=self._settings.max_concurrency * 2,
                max_keepalive_connections=self._settings.max_concurrency,
            ),
            headers=self._get_headers(),
            transport=self._transport,
        )
        logger.info("API client connected", client=self.NAME, base_url=self.base_url)

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info(
                "API client closed",
                client=self.NAME,
                requests_made=self._request_count,
                errors=self._error_count,
            )

    async def _make_request(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        **kwargs,
    ) -> httpx.Response:
        """
        Make a single HTTP request with rate limiting.
        Does not include retry logic (handled by caller).
        """
        if not self._client:
            raise RuntimeError("Client not connected. Call connect() first.")

        wait_time = await self._rate_limiter.acquire()

        log = logger.bind(client=self.NAME, method=method, path=path)

        start = time.monotonic()

        try:
            response = await self._client.request(method, path, params=params, **kwargs)

            elapsed_ms = (time.monotonic() - start) * 1000
            self._request_count += 1
            self._total_latency_ms += elapsed_ms

            if response.content:
                self._bytes_transferred += len(response.content)

            log.debug(
                "API request completed",
                status=response.status_code,
                latency_ms=round(elapsed_ms, 2),
                wait_time=round(wait_time, 3),
            )

            # Handle rate limiting response
            if response.status_code == 429:
                retry_after = _parse_retry_after(response.headers.get("Retry-After"))
                retry_after = min(retry_after, self._settings.backoff_max_seconds)
                log.warning("Rate limited", retry_after=retry_after)
                await asyncio.sleep(retry_after)
                raise httpx.HTTPStatusError(
                    "Rate limited",
                    request=response.request,
                    response=response,
                )

            # Don't retry client errors (except 429)
            if 400 <= response.status_code < 500:
                log.warning(
                    "Client error",
                    status=response.status_code,
                    body=response.text[:500],
                )
                raise FetchFailure(
                    f"{self.NAME} {method} {path} returned {response.status_code}",
                    status_code=response.status_code,
                )

            response.raise_for_status()
            return response

        except Exception as e:
            self._error_count += 1
            log.error("API request failed", error=str(e))
            raise

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        **kwargs,
    ) -> httpx.Response:
        """Make request with retry logic; translate httpx errors to FetchFailure."""
        retrying = AsyncRetrying(
            retry=retry_if_exception_type((httpx.HTTPStatusError, httpx.TransportError)),
            stop=stop_after_attempt(self._max_retries),
            wait=wait_exponential_jitter(
                initial=self._settings.backoff_base_seconds,
                max=self._settings.backoff_max_seconds,
                jitter=self._settings.backoff_jitter,
            ),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await self._make_request(method, path, **kwargs)
        except httpx.HTTPStatusError as e:
            raise FetchFailure(
                f"{self.NAME} {method} {path} failed: {e}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise FetchFailure(f"{self.NAME} {method} {path} failed: {e}") from e

    async def get_json(
        self,
        path: str,
        params: Optional[dict[str, Any]] = None,
        **kwargs,
    ) -> Any:
        """
        Make a GET request with retries.
        Returns parsed JSON response.
        """
        response = await self._request_with_retry("GET", path, params=params, **kwargs)
        try:
            return response.json()
        except ValueError as e:
            raise DecodeFailure(f"{self.NAME} {path} returned invalid JSON: {e}") from e

    async def get_text(
        self,
        path: str,
        params: Optional[dict[str, Any]] = None,
        **kwargs,
    ) -> str:
        """Make a GET request with retries and return the body as text."""
        response = await self._request_with_retry("GET", path, params=params, **kwargs)
        return response.text

    def get_metrics(self) -> dict[str, Any]:
        """Get client metrics."""
        avg_latency = (
            self._total_latency_ms / self._request_count
            if self._request_count > 0
            else 0
        )
        return {
            "client": self.NAME,
            "requests": self._request_count,
            "errors": self._error_count,
            "error_rate": self._error_count / max(self._request_count, 1),
            "bytes_transferred": self._bytes_transferred,
            "avg_latency_ms": round(avg_latency, 2),
        }


def _parse_retry_after(value: Optional[str]) -> float:
    try:
        return max(float(value), 0.0)
    except (TypeError, ValueError):
        return 5.0
