"""Spreadsheet-backed transport: a Google Sheet as the append-only log.

Each sheet row after the header is one operation; the cursor is the
sheet row number of the last consumed row. All calls are retried on
rate limiting only, since the Sheets API throttles aggressively.
"""

import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from ..errors import ConfigurationError, MalformedResponseError, SyncError, TransportError
from ..operation import Operation, now_ms
from .retry import RetryPolicy
from .transport import PullResult, PushResult, SyncTransport

logger = logging.getLogger(__name__)

T = TypeVar("T")

SHEET_TITLE = "Operations"
HEADERS = [
    "id",
    "clientId",
    "table",
    "type",
    "key",
    "payload",
    "timestamp",
    "serverTimestamp",
    "keyHash",
]
HEADER_ROWS = 1

SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]


def _status_of(error: BaseException) -> int | None:
    resp = getattr(error, "resp", None)
    status = getattr(resp, "status", None) or getattr(error, "status_code", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def _error_reason(error: BaseException) -> str:
    """Body of a googleapiclient HttpError, where the provider reason lives."""
    content = getattr(error, "content", None)
    if isinstance(content, bytes):
        return content.decode("utf-8", errors="replace")
    return content if isinstance(content, str) else ""


def is_rate_limited(error: BaseException) -> bool:
    """True for HTTP 429 or a provider ``rateLimitExceeded`` reason.

    Errors without an HTTP status fall back to a "rate limit" phrase in
    the message.
    """
    status = _status_of(error)
    if status == 429:
        return True
    if "ratelimitexceeded" in _error_reason(error).lower():
        return True
    if status is not None:
        return False
    return re.search(r"\brate[ _-]?limit", str(error), re.IGNORECASE) is not None


class Worksheet(ABC):
    """Minimal synchronous view of a sheet used as an operation log."""

    @abstractmethod
    def ensure_sheet(self, headers: list[str]) -> None:
        """Create the sheet if missing and repair its header row."""

    @abstractmethod
    def row_count(self) -> int:
        """Number of rows in use, header included."""

    @abstractmethod
    def read_rows(self, start_row: int, count: int) -> list[list[str]]:
        """Read ``count`` rows starting at 1-based row ``start_row``."""

    @abstractmethod
    def append_rows(self, rows: list[list[Any]]) -> int:
        """Append rows and return the row number of the last one written."""


class GoogleSheetsWorksheet(Worksheet):
    """Worksheet backed by the Google Sheets v4 API."""

    def __init__(
        self,
        spreadsheet_id: str,
        credentials_file: str | None = None,
        title: str = SHEET_TITLE,
        service: Any = None,
    ):
        if not spreadsheet_id:
            raise ConfigurationError("Spreadsheet id not configured")
        self.spreadsheet_id = spreadsheet_id
        self.credentials_file = credentials_file
        self.title = title
        self._service = service

    def _get_service(self) -> Any:
        if self._service is None:
            if not self.credentials_file:
                raise ConfigurationError("Service account credentials file not configured")

            from google.oauth2 import service_account
            from googleapiclient.discovery import build

            credentials = service_account.Credentials.from_service_account_file(
                self.credentials_file, scopes=SCOPES
            )
            self._service = build("sheets", "v4", credentials=credentials, cache_discovery=False)
        return self._service

    def _last_column(self, width: int) -> str:
        return chr(ord("A") + width - 1)

    def _sheet_exists(self) -> bool:
        info = (
            self._get_service()
            .spreadsheets()
            .get(spreadsheetId=self.spreadsheet_id, fields="sheets.properties.title")
            .execute()
        )
        titles = [s["properties"]["title"] for s in info.get("sheets", [])]
        return self.title in titles

    def ensure_sheet(self, headers: list[str]) -> None:
        service = self._get_service()
        if not self._sheet_exists():
            service.spreadsheets().batchUpdate(
                spreadsheetId=self.spreadsheet_id,
                body={"requests": [{"addSheet": {"properties": {"title": self.title}}}]},
            ).execute()
            logger.info(f"Created sheet {self.title!r}")
            current: list[str] = []
        else:
            result = (
                service.spreadsheets()
                .values()
                .get(spreadsheetId=self.spreadsheet_id, range=f"{self.title}!1:1")
                .execute()
            )
            values = result.get("values", [])
            current = values[0] if values else []

        if current != headers:
            service.spreadsheets().values().update(
                spreadsheetId=self.spreadsheet_id,
                range=f"{self.title}!A1:{self._last_column(len(headers))}1",
                valueInputOption="RAW",
                body={"values": [headers]},
            ).execute()
            logger.info(f"Repaired header row of sheet {self.title!r}")

    def row_count(self) -> int:
        result = (
            self._get_service()
            .spreadsheets()
            .values()
            .get(spreadsheetId=self.spreadsheet_id, range=f"{self.title}!A:A")
            .execute()
        )
        return len(result.get("values", []))

    def read_rows(self, start_row: int, count: int) -> list[list[str]]:
        end_row = start_row + count - 1
        last_col = self._last_column(len(HEADERS))
        result = (
            self._get_service()
            .spreadsheets()
            .values()
            .get(
                spreadsheetId=self.spreadsheet_id,
                range=f"{self.title}!A{start_row}:{last_col}{end_row}",
            )
            .execute()
        )
        return result.get("values", [])

    def append_rows(self, rows: list[list[Any]]) -> int:
        result = (
            self._get_service()
            .spreadsheets()
            .values()
            .append(
                spreadsheetId=self.spreadsheet_id,
                range=f"{self.title}!A1",
                valueInputOption="RAW",
                insertDataOption="INSERT_ROWS",
                body={"values": rows},
            )
            .execute()
        )
        updated_range = result.get("updates", {}).get("updatedRange", "")
        match = re.search(r"(\d+)$", updated_range)
        if not match:
            raise MalformedResponseError(f"Unexpected append range: {updated_range!r}")
        return int(match.group(1))


def operation_to_row(op: Operation) -> list[Any]:
    data = op.to_dict()
    payload = data.get("payload")
    return [
        data["id"],
        data.get("clientId", ""),
        data["table"],
        data["type"],
        data["key"],
        json.dumps(payload) if not isinstance(payload, str) else payload,
        data["timestamp"],
        data.get("serverTimestamp", ""),
        data.get("keyHash", ""),
    ]


def row_to_operation(row: list[str]) -> Operation | None:
    """Parse a sheet row; blank rows yield None."""
    values = dict(zip(HEADERS, row))
    if not values.get("id"):
        return None

    payload: Any = values.get("payload", "")
    try:
        payload = json.loads(payload)
    except (TypeError, ValueError):
        pass

    return Operation.from_dict(
        {
            "id": values["id"],
            "clientId": values.get("clientId") or None,
            "table": values.get("table", ""),
            "type": values.get("type", ""),
            "key": values.get("key", ""),
            "payload": payload,
            "timestamp": values.get("timestamp") or 0,
            "serverTimestamp": values.get("serverTimestamp") or None,
            "keyHash": values.get("keyHash") or None,
        }
    )


class SheetsTransport(SyncTransport):
    """Transport that reads and appends operations in a spreadsheet."""

    def __init__(
        self,
        worksheet: Worksheet,
        max_retries: int = 3,
        base_delay: float = 1.0,
        page_size: int = 100,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.worksheet = worksheet
        self.page_size = page_size
        self.retry = RetryPolicy(
            max_attempts=max_retries,
            base_delay=base_delay,
            is_retryable=is_rate_limited,
            sleep=sleep,
        )

    async def _call(self, name: str, func: Callable[[], T]) -> T:
        """Run a blocking worksheet call in the executor, retrying rate limits."""

        async def attempt() -> T:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, func)

        try:
            return await self.retry.run(attempt, name=f"sheets {name}")
        except SyncError:
            raise
        except Exception as e:
            raise TransportError(
                f"Spreadsheet {name} failed: {e}",
                retryable=is_rate_limited(e),
                status_code=_status_of(e),
            ) from e

    async def push(self, ops: list[Operation], client_id: str) -> PushResult:
        server_timestamp = now_ms()
        rows = [
            operation_to_row(
                op.evolve(server_timestamp=server_timestamp, client_id=op.client_id or client_id)
            )
            for op in ops
        ]

        def append() -> int:
            self.worksheet.ensure_sheet(HEADERS)
            return self.worksheet.append_rows(rows)

        last_row = await self._call("append", append)
        logger.debug(f"Appended {len(rows)} rows, last row {last_row}")
        return PushResult(success=True, cursor=last_row, count=len(ops))

    async def pull(self, cursor: int, client_id: str | None = None) -> PullResult:
        # Rows already consumed after the header
        offset = max(cursor, HEADER_ROWS) - HEADER_ROWS

        def read() -> tuple[list[list[str]], int]:
            self.worksheet.ensure_sheet(HEADERS)
            start_row = HEADER_ROWS + offset + 1
            total = self.worksheet.row_count()
            if start_row > total:
                return [], offset + 1

            # Clamp the window to the sheet bounds
            limit = min(self.page_size, total - start_row + 1)
            rows = self.worksheet.read_rows(start_row, limit)
            if not rows:
                return [], offset + 1
            return rows, start_row + len(rows) - 1

        rows, next_cursor = await self._call("read", read)

        ops = []
        rejected_ids = []
        first_row = next_cursor - len(rows) + 1
        for row_number, row in enumerate(rows, start=first_row):
            try:
                op = row_to_operation(row)
            except MalformedResponseError as e:
                logger.warning(f"Skipping malformed sheet row {row_number}: {e}")
                rejected_ids.append(row[0] if row and row[0] else f"row {row_number}")
                continue
            if op is None:
                continue
            if client_id and op.client_id == client_id:
                continue
            ops.append(op)

        return PullResult(
            ops=ops, next_cursor=max(next_cursor, cursor), rejected_ids=rejected_ids
        )

    async def get_pending_count(self, cursor: int, client_id: str | None = None) -> int:
        def last_row() -> int:
            self.worksheet.ensure_sheet(HEADERS)
            return self.worksheet.row_count()

        total = await self._call("count", last_row)
        return max(0, total - max(cursor, HEADER_ROWS))
