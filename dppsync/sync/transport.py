"""Sync transports: how operation batches reach the relay.

Handles network exchange with retry logic; the engine only sees
:class:`PushResult`/:class:`PullResult` or a :class:`TransportError`
once retries are exhausted.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

from ..errors import ConfigurationError, MalformedResponseError, TransportError
from ..operation import Operation
from .retry import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class PushResult:
    """Outcome of pushing one batch."""

    success: bool
    cursor: int | None = None
    count: int = 0
    accepted_ids: list[str] | None = None  # None: backend does not ack per operation


@dataclass
class PullResult:
    """One page of operations after a cursor."""

    ops: list[Operation] = field(default_factory=list)
    next_cursor: int = 0
    rejected_ids: list[str] = field(default_factory=list)  # Skipped as malformed


class SyncTransport(ABC):
    """Interface shared by the relay and spreadsheet backends."""

    @abstractmethod
    async def push(self, ops: list[Operation], client_id: str) -> PushResult:
        """Submit a batch of (already encrypted) operations."""

    @abstractmethod
    async def pull(self, cursor: int, client_id: str | None = None) -> PullResult:
        """Fetch operations after ``cursor``, oldest first."""

    @abstractmethod
    async def get_pending_count(self, cursor: int, client_id: str | None = None) -> int:
        """Count remote operations after ``cursor`` without fetching them."""


def is_transient(error: BaseException) -> bool:
    """Retry predicate for HTTP transports."""
    return isinstance(error, TransportError) and error.retryable


def _as_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise MalformedResponseError(f"'{name}' must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise MalformedResponseError(f"'{name}' must be an integer, got {value!r}") from e


class RelayTransport(SyncTransport):
    """HTTP JSON client for the relay server.

    Connection errors, timeouts, 5xx and 429 responses are retried with
    exponential backoff; other client errors fail immediately.
    """

    def __init__(
        self,
        remote_url: str | None = None,
        access_token: str | None = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        base_delay: float = 1.0,
        http_transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize the relay transport.

        Args:
            remote_url: Base URL of the relay (e.g., "http://relay:8889").
            access_token: Value sent as ``X-Access-Token``.
            timeout: Per-request timeout in seconds.
            max_retries: Maximum attempts per request.
            base_delay: First backoff delay in seconds.
            http_transport: Optional httpx transport (used by tests).
            sleep: Coroutine used for backoff waits.
        """
        self.remote_url = remote_url
        self.access_token = access_token
        self.timeout = timeout
        self.retry = RetryPolicy(
            max_attempts=max_retries,
            base_delay=base_delay,
            is_retryable=is_transient,
            sleep=sleep,
        )
        self._http_transport = http_transport

    def set_remote_url(self, url: str) -> None:
        """Set or update the remote URL."""
        self.remote_url = url
        logger.info(f"Remote URL set to {url}")

    def _endpoint(self, path: str) -> str:
        if not self.remote_url:
            raise ConfigurationError("Sync server URL not configured")
        return f"{self.remote_url.rstrip('/')}/api/sync{path}"

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: Any = None,
        client_id: str | None = None,
    ) -> dict[str, Any]:
        url = self._endpoint(path)
        headers = {"X-Access-Token": self.access_token or ""}
        if client_id:
            headers["X-Client-ID"] = client_id

        async def attempt() -> dict[str, Any]:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._http_transport
            ) as client:
                try:
                    response = await client.request(
                        method, url, params=params, json=json_data, headers=headers
                    )
                except httpx.TimeoutException as e:
                    raise TransportError(f"Request timeout ({self.timeout}s): {url}") from e
                except httpx.TransportError as e:
                    raise TransportError(f"Connection failed: {e}") from e

            status = response.status_code
            if status == 429 or status >= 500:
                raise TransportError(f"HTTP {status} from {url}", status_code=status)
            if status >= 400:
                raise TransportError(
                    f"HTTP {status}: {response.text}", retryable=False, status_code=status
                )

            try:
                data = response.json()
            except ValueError as e:
                raise MalformedResponseError(f"Response from {url} is not JSON") from e
            if not isinstance(data, dict):
                raise MalformedResponseError(f"Response from {url} is not an object")
            return data

        return await self.retry.run(attempt, name=f"{method} {path}")

    async def push(self, ops: list[Operation], client_id: str) -> PushResult:
        data = await self._request(
            "POST",
            "/push",
            json_data={"ops": [op.to_dict() for op in ops], "clientId": client_id},
            client_id=client_id,
        )

        success = data.get("success")
        if not isinstance(success, bool):
            raise MalformedResponseError("Push response is missing 'success'")

        cursor = data.get("cursor")
        accepted_ids = None
        if isinstance(data.get("acks"), list):
            accepted_ids = [str(ack["id"]) for ack in data["acks"] if isinstance(ack, dict) and "id" in ack]

        return PushResult(
            success=success,
            cursor=_as_int(cursor, "cursor") if cursor is not None else None,
            count=_as_int(data.get("count", len(ops)), "count"),
            accepted_ids=accepted_ids,
        )

    async def pull(self, cursor: int, client_id: str | None = None) -> PullResult:
        params: dict[str, Any] = {"cursor": cursor}
        if client_id:
            params["clientId"] = client_id

        data = await self._request("GET", "/pull", params=params)

        raw_ops = data.get("ops")
        if not isinstance(raw_ops, list):
            raise MalformedResponseError("Pull response is missing 'ops'")
        ops = []
        rejected_ids = []
        for index, raw in enumerate(raw_ops):
            try:
                ops.append(Operation.from_dict(raw))
            except MalformedResponseError as e:
                op_id = raw.get("id") if isinstance(raw, dict) else None
                rejected_ids.append(str(op_id) if op_id else f"#{cursor}+{index}")
                logger.warning(f"Skipping malformed operation in pull page: {e}")

        if not raw_ops:
            # Repeated empty polls never move the cursor backwards
            return PullResult(ops=[], next_cursor=cursor)

        return PullResult(
            ops=ops,
            next_cursor=_as_int(data.get("cursor"), "cursor"),
            rejected_ids=rejected_ids,
        )

    async def get_pending_count(self, cursor: int, client_id: str | None = None) -> int:
        params: dict[str, Any] = {"cursor": cursor}
        if client_id:
            params["clientId"] = client_id

        data = await self._request("GET", "/pending", params=params)
        return _as_int(data.get("count"), "count")
