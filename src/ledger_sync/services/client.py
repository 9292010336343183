"""HTTP client for the backend's poll routes and event stream.

This module provides the SyncClient class that handles all communication
between the sync engine and the backend. It includes:

- Lazily created ``httpx.AsyncClient`` with caller-provided auth headers
- Circuit breaker pattern for fault tolerance
- Metrics collection for monitoring
- Server-sent event decoding for the push channel
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import defaultdict
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx

from ledger_sync.core.errors import ChannelError, MalformedFragmentError, SyncDisabledError
from ledger_sync.core.settings import DOMAIN_TRANSACTIONS, SyncConfig

logger = logging.getLogger(__name__)

# HTTP status codes
HTTP_OK = 200
HTTP_INTERNAL_SERVER_ERROR = 500

TRANSACTIONS_PAGE_SIZE = 50

AuthHeaderProvider = Callable[[], Mapping[str, str]]


class CircuitState(Enum):
    """Circuit breaker states for the backend connection."""
    CLOSED = "closed"      # Normal operation - requests allowed
    OPEN = "open"          # Requests blocked until the recovery timeout
    HALF_OPEN = "half_open"  # Probing whether the backend is back


@dataclass
class ChannelMetrics:
    """Request counters per endpoint."""

    request_count: int = 0
    success_count: int = 0
    error_count: int = 0
    total_response_time: float = 0.0
    error_counts_by_type: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    endpoint_counts: dict[str, int] = field(default_factory=lambda: defaultdict(int))

    def record_request(
        self, endpoint: str, response_time: float, success: bool, error_type: str | None = None
    ) -> None:
        self.request_count += 1
        self.total_response_time += response_time
        self.endpoint_counts[endpoint] += 1
        if success:
            self.success_count += 1
        else:
            self.error_count += 1
            if error_type:
                self.error_counts_by_type[error_type] += 1

    def to_dict(self) -> dict[str, Any]:
        average = self.total_response_time / self.request_count if self.request_count else 0.0
        return {
            "request_count": self.request_count,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "average_response_time": average,
            "error_counts_by_type": dict(self.error_counts_by_type),
            "endpoint_counts": dict(self.endpoint_counts),
        }


@dataclass
class CircuitBreaker:
    """Blocks requests after repeated failures until a recovery timeout passes."""

    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    success_threshold: int = 2

    _state: CircuitState = CircuitState.CLOSED
    _failure_count: int = 0
    _success_count: int = 0
    _opened_at: float = 0.0

    @property
    def state(self) -> CircuitState:
        return self._state

    def is_open(self) -> bool:
        if self._state is CircuitState.OPEN:
            if time.monotonic() - self._opened_at > self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
                self._success_count = 0
            return self._state is CircuitState.OPEN
        return False

    def record_success(self) -> None:
        if self._state is CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.success_threshold:
                self._state = CircuitState.CLOSED
                self._failure_count = 0
        else:
            self._failure_count = 0

    def record_failure(self) -> None:
        self._failure_count += 1
        if self._state is CircuitState.HALF_OPEN or self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN
            self._opened_at = time.monotonic()

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "failure_count": self._failure_count,
            "is_open": self.is_open(),
        }


@dataclass(frozen=True)
class PushEvent:
    """One server-sent event from the push channel."""

    topic: str
    data: str
    event_id: str | None = None

    def payload(self) -> Any:
        try:
            return json.loads(self.data)
        except ValueError as exc:
            raise MalformedFragmentError(f"event {self.topic} is not valid JSON") from exc


class SseDecoder:
    """Incremental decoder for the ``text/event-stream`` line format."""

    def __init__(self) -> None:
        self._topic: str | None = None
        self._data: list[str] = []
        self._event_id: str | None = None

    def feed(self, line: str) -> PushEvent | None:
        """Consume one line; returns an event when a blank line ends one."""
        line = line.rstrip("\r\n")
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            self._topic = value
        elif name == "data":
            self._data.append(value)
        elif name == "id":
            self._event_id = value
        return None

    def _dispatch(self) -> PushEvent | None:
        topic, data, event_id = self._topic, self._data, self._event_id
        self._topic, self._data = None, []
        if not data:
            return None
        return PushEvent(topic=topic or "message", data="\n".join(data), event_id=event_id)


class SyncClient:
    """HTTP client wrapper for backend poll and push interactions."""

    def __init__(
        self,
        config: SyncConfig,
        *,
        auth_headers: AuthHeaderProvider | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Session configuration holding the base URL and paths.
            auth_headers: Returns headers carrying the session token; the token
                lifecycle belongs to the caller.
            transport: Optional httpx transport, mainly for tests.
        """
        self.config = config
        self._auth_headers = auth_headers
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()
        self._circuit_breaker = CircuitBreaker()
        self._metrics = ChannelMetrics()

    @property
    def enabled(self) -> bool:
        return bool(self.config.base_url)

    async def _ensure_client(self) -> httpx.AsyncClient:
        if not self.enabled:
            raise SyncDisabledError("No backend base URL configured")

        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    base_url=self.config.base_url or "",
                    timeout=httpx.Timeout(self.config.http_timeout_seconds),
                    transport=self._transport,
                )
        return self._client

    def _build_headers(self, extra: Mapping[str, str] | None = None) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._auth_headers is not None:
            headers.update(self._auth_headers())
        if extra:
            headers.update(extra)
        return headers

    async def _get(self, path: str, params: Mapping[str, Any] | None = None) -> httpx.Response:
        if self._circuit_breaker.is_open():
            raise ChannelError("Backend circuit breaker is open - service unavailable")

        client = await self._ensure_client()
        endpoint = f"GET {path}"
        start_time = time.monotonic()
        success = False
        error_type = None

        try:
            response = await client.get(path, params=params, headers=self._build_headers())
            if response.status_code >= HTTP_INTERNAL_SERVER_ERROR:
                self._circuit_breaker.record_failure()
                error_type = f"http_{response.status_code}"
                raise ChannelError(f"Backend responded with {response.status_code}")
            self._circuit_breaker.record_success()
            if response.status_code != HTTP_OK:
                error_type = f"http_{response.status_code}"
                raise ChannelError(f"Unexpected backend response ({response.status_code})")
            success = True
        except httpx.HTTPError as exc:
            self._circuit_breaker.record_failure()
            error_type = "network_error"
            raise ChannelError(f"Backend request failed: {exc}") from exc
        finally:
            self._metrics.record_request(
                endpoint, time.monotonic() - start_time, success, error_type
            )

        return response

    async def fetch_snapshot(self, domain: str) -> Any:
        """Fetch the current state of one poll domain and return the decoded body."""

        path = self.config.poll_paths[domain]
        params: dict[str, Any] = {}
        if domain == DOMAIN_TRANSACTIONS:
            params = {"page": 1, "limit": TRANSACTIONS_PAGE_SIZE}

        response = await self._get(path, params=params or None)
        try:
            return response.json()
        except ValueError as exc:
            raise MalformedFragmentError(f"{domain} response is not valid JSON") from exc

    @asynccontextmanager
    async def open_event_stream(
        self, topics: tuple[str, ...]
    ) -> AsyncIterator[AsyncIterator[PushEvent]]:
        """Open the server-sent event stream for the given topics.

        Entering the context means the subscription is established; the
        yielded iterator produces events until the server closes the stream.

        Raises:
            ChannelError: If the stream cannot be opened or breaks.
        """
        if self._circuit_breaker.is_open():
            raise ChannelError("Backend circuit breaker is open - service unavailable")

        client = await self._ensure_client()
        headers = self._build_headers({"Accept": "text/event-stream"})
        timeout = httpx.Timeout(self.config.http_timeout_seconds, read=None)

        try:
            async with client.stream(
                "GET",
                self.config.push_path,
                params={"topics": ",".join(topics)},
                headers=headers,
                timeout=timeout,
            ) as response:
                if response.status_code != HTTP_OK:
                    self._circuit_breaker.record_failure()
                    raise ChannelError(
                        f"Unexpected backend response ({response.status_code}) for event stream"
                    )
                self._circuit_breaker.record_success()
                self._metrics.record_request(f"STREAM {self.config.push_path}", 0.0, True)
                yield self._iter_events(response)
        except httpx.HTTPError as exc:
            self._circuit_breaker.record_failure()
            raise ChannelError(f"Event stream failed: {exc}") from exc

    async def _iter_events(self, response: httpx.Response) -> AsyncIterator[PushEvent]:
        decoder = SseDecoder()
        async for line in response.aiter_lines():
            event = decoder.feed(line)
            if event is not None:
                yield event

    def get_status(self) -> dict[str, Any]:
        """Return circuit breaker state and request metrics."""
        return {
            "enabled": self.enabled,
            "circuit_breaker": self._circuit_breaker.to_dict(),
            "metrics": self._metrics.to_dict(),
        }

    async def close(self) -> None:
        """Clean up underlying HTTP client resources."""

        async with self._client_lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None
