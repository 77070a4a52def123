"""Sync engine: captures local mutations and replicates them via a transport.

Push ships unsynced operations (encrypted) to the relay; pull fetches
operations after the stored server cursor, decrypts and deduplicates
them, and applies them to the local tables in one transaction together
with the cursor advance.
"""

import asyncio
import logging
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from ..errors import (
    DecryptionError,
    EncryptionKeyMissingError,
    InvalidKeyError,
    SyncError,
    TransportError,
)
from ..operation import Operation, OperationType, now_ms
from ..store.local_store import SYNC_SOURCE, LocalStore
from .crypto import (
    KeyStore,
    SyncKey,
    decrypt_operation,
    encrypt_operation,
    fingerprint,
    import_key,
    verify_key,
)
from .oplog import OperationLog
from .tables import TableSpec
from .transport import SyncTransport

logger = logging.getLogger(__name__)

CLIENT_ID_SETTING = "sync_client_id"


class SyncStatus(Enum):
    """Externally visible engine state."""

    IDLE = "idle"
    PUSHING = "pushing"
    PULLING = "pulling"
    ERROR = "error"


class SyncEvent(Enum):
    STATUS_CHANGE = "status-change"
    SYNC_ERROR = "sync-error"
    SYNC_COMPLETE = "sync-complete"


class SyncOutcome(Enum):
    """Result of a single push, pull or full sync."""

    SUCCESS = "success"
    PARTIAL = "partial"  # Some operations could not be pushed or applied
    FAILED = "failed"
    OFFLINE = "offline"  # Remote unavailable after retries
    QUEUED = "queued"  # A push was already running; a follow-up was queued
    SKIPPED = "skipped"  # A pull was already running


class MigrationMode(Enum):
    """Which side is the source of truth after a key change."""

    AUTHORITY = "authority"
    MEMBER = "member"


@dataclass
class SyncResult:
    """Result of a sync operation."""

    status: SyncOutcome
    pushed: int = 0
    pulled: int = 0
    failed: int = 0
    failed_ids: list[str] = field(default_factory=list)
    error: str | None = None
    timestamp: datetime | None = None


@dataclass
class PendingCounts:
    push: int = 0
    pull: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"push": self.push, "pull": self.pull}


EventCallback = Callable[[dict[str, Any]], None]


class SyncEngine:
    """Offline-first replication of local tables through an operation log.

    Push and pull may overlap; each is serialized against itself. A push
    requested while another is running is coalesced into one follow-up
    cycle. Key rotation holds both locks.
    """

    def __init__(
        self,
        store: LocalStore,
        tables: Iterable[TableSpec],
        transport: SyncTransport,
        key_store: KeyStore | None = None,
        push_batch_size: int = 50,
        max_pull_loops: int = 100,
    ):
        """Initialize the sync engine.

        Args:
            store: Local table storage.
            tables: Replicated table descriptors.
            transport: Relay or spreadsheet backend.
            key_store: Source of the encryption key; defaults to the store settings.
            push_batch_size: Operations per push request.
            max_pull_loops: Maximum pages fetched by a single pull.
        """
        self.store = store
        self.log = OperationLog(store)
        self.tables: dict[str, TableSpec] = {spec.name: spec for spec in tables}
        self.transport = transport
        self.key_store = key_store or KeyStore(store)
        self.push_batch_size = push_batch_size
        self.max_pull_loops = max_pull_loops

        self._push_lock = asyncio.Lock()
        self._pull_lock = asyncio.Lock()
        self._push_queued = False
        self._destroyed = False

        self._status = SyncStatus.IDLE
        self._last_error: str | None = None
        self._last_sync_time: int | None = None
        self._consecutive_failures = 0

        self._listeners: dict[SyncEvent, list[EventCallback]] = {}
        self._client_id: str | None = None
        self._unhook: Callable[[], None] | None = None

    # ==================== Identity and Events ====================

    @property
    def client_id(self) -> str:
        """Stable identifier of this client, created on first use."""
        if self._client_id is None:
            client_id = self.store.get_setting(CLIENT_ID_SETTING)
            if not client_id:
                client_id = str(uuid.uuid4())
                self.store.set_setting(CLIENT_ID_SETTING, client_id)
                logger.info(f"Generated sync client id {client_id}")
            self._client_id = client_id
        return self._client_id

    @property
    def status(self) -> SyncStatus:
        return self._status

    @property
    def last_error(self) -> str | None:
        return self._last_error

    @property
    def last_sync_time(self) -> int | None:
        return self._last_sync_time

    def on(self, event: SyncEvent | str, callback: EventCallback) -> Callable[[], None]:
        """Subscribe to an engine event.

        Returns:
            A function that removes the subscription.
        """
        event = SyncEvent(event)
        self._listeners.setdefault(event, []).append(callback)

        def unsubscribe() -> None:
            listeners = self._listeners.get(event, [])
            if callback in listeners:
                listeners.remove(callback)

        return unsubscribe

    def _emit(self, event: SyncEvent, data: dict[str, Any]) -> None:
        for callback in list(self._listeners.get(event, [])):
            try:
                callback(data)
            except Exception as e:
                logger.error(f"Listener for {event.value} failed: {e}")

    def _set_status(self, status: SyncStatus, error: str | None = None) -> None:
        self._status = status
        if error:
            self._last_error = error
        elif status is SyncStatus.IDLE:
            self._last_error = None
        self._emit(SyncEvent.STATUS_CHANGE, {"status": status.value, "error": error})

    def _settle(self) -> None:
        """Return to idle, or to the state of the other in-flight cycle."""
        if self._pull_lock.locked() and self._status is not SyncStatus.PULLING:
            self._set_status(SyncStatus.PULLING)
        elif self._push_lock.locked() and self._status is not SyncStatus.PUSHING:
            self._set_status(SyncStatus.PUSHING)
        else:
            self._set_status(SyncStatus.IDLE)

    def _fail(self, kind: str, error: Exception) -> SyncResult:
        message = str(error) or type(error).__name__
        retryable = isinstance(error, SyncError) and error.retryable
        if isinstance(error, SyncError):
            logger.error(f"{kind.capitalize()} failed: {message}")
        else:
            logger.exception(f"{kind.capitalize()} failed unexpectedly: {message}")

        self._consecutive_failures += 1
        self._set_status(SyncStatus.ERROR, message)
        self._emit(
            SyncEvent.SYNC_ERROR,
            {"type": kind, "error": message, "retryable": retryable},
        )

        offline = (
            isinstance(error, TransportError) and error.retryable and error.status_code is None
        )
        return SyncResult(
            status=SyncOutcome.OFFLINE if offline else SyncOutcome.FAILED,
            error=message,
            timestamp=datetime.now(),
        )

    # ==================== Capture ====================

    def register(self) -> None:
        """Start capturing local writes and replay deferred operations."""
        if self._unhook is None:
            self._unhook = self.store.add_mutation_hook(self._capture)
        self.process_deferred_operations()

    def _capture(self, table: str, op_type: OperationType, key: str, row: dict[str, Any]) -> None:
        if table not in self.tables:
            return
        self.record_operation(table, op_type, key, row)

    def record_operation(
        self, table: str, op_type: OperationType, key: str, payload: Any
    ) -> Operation:
        """Append a local mutation to the operation log."""
        op = Operation.create(table, op_type, key, payload, client_id=self.client_id)
        return self.log.append(op)

    # ==================== Key Handling ====================

    def _require_key(self) -> SyncKey:
        key = self.key_store.load()
        if key is None:
            raise EncryptionKeyMissingError()
        return key

    # ==================== Push ====================

    async def push(self) -> SyncResult:
        """Push unsynced local operations to the server.

        Returns:
            SyncResult with push statistics.
        """
        if self._push_lock.locked():
            self._push_queued = True
            logger.debug("Push already in progress, queued a follow-up")
            return SyncResult(status=SyncOutcome.QUEUED)

        async with self._push_lock:
            result = await self._push_cycle()
            while self._push_queued and not self._destroyed:
                self._push_queued = False
                result = await self._push_cycle()
            return result

    async def _push_cycle(self) -> SyncResult:
        self._set_status(SyncStatus.PUSHING)
        try:
            key = self._require_key()
            ops = self.log.list_unsynced(tables=list(self.tables))
            if not ops:
                self._settle()
                return SyncResult(status=SyncOutcome.SUCCESS, timestamp=datetime.now())

            client_id = self.client_id

            pushed = 0
            partial = False
            for start in range(0, len(ops), self.push_batch_size):
                batch = ops[start:start + self.push_batch_size]
                sealed = [encrypt_operation(op, key) for op in batch]

                result = await self.transport.push(sealed, client_id)
                if not result.success:
                    raise TransportError("Server did not accept the push batch", retryable=True)

                if result.accepted_ids is None:
                    accepted = [op.id for op in batch]
                else:
                    acked = set(result.accepted_ids)
                    accepted = [op.id for op in batch if op.id in acked]
                fully_accepted = len(accepted) == len(batch)

                with self.store.transaction(source=SYNC_SOURCE):
                    self.log.mark_synced(accepted)
                    if fully_accepted and result.cursor is not None:
                        self._advance_after_push(result.cursor, len(batch))

                pushed += len(accepted)
                if not fully_accepted:
                    partial = True
                    logger.warning(
                        f"Server acknowledged {len(accepted)}/{len(batch)} operations; "
                        "the rest stay queued"
                    )

            self._consecutive_failures = 0
            self._last_sync_time = now_ms()
            self._settle()
            self._emit(SyncEvent.SYNC_COMPLETE, {"type": "push", "count": pushed})
            logger.info(f"Pushed {pushed} operations")
            return SyncResult(
                status=SyncOutcome.PARTIAL if partial else SyncOutcome.SUCCESS,
                pushed=pushed,
                timestamp=datetime.now(),
            )
        except Exception as e:
            return self._fail("push", e)

    def _advance_after_push(self, returned: int, batch_size: int) -> None:
        """Move the cursor past our own batch when nothing was interleaved.

        If the server cursor is beyond ``current + batch_size`` other
        clients wrote in between; leave the cursor so pull fetches them.
        """
        current = self.store.get_metadata().last_server_cursor
        expected = current + batch_size

        if returned == expected:
            self.store.advance_cursor(returned)
        elif returned > expected:
            logger.debug(
                f"Push cursor skipped: remote gap (server={returned} > expected={expected}), "
                "will pull to catch up"
            )
        else:
            logger.debug(
                f"Push cursor anomaly: server={returned} < expected={expected} "
                f"(current={current}), ignoring"
            )

    # ==================== Pull ====================

    async def pull(self, include_own: bool = False) -> SyncResult:
        """Pull and apply remote operations after the stored cursor.

        Args:
            include_own: Also request operations authored by this client
                (used after a member reset).

        Returns:
            SyncResult with pull statistics.
        """
        if self._pull_lock.locked():
            logger.warning("Pull already in progress, skipping")
            return SyncResult(status=SyncOutcome.SKIPPED)

        async with self._pull_lock:
            return await self._pull_cycle(include_own)

    async def _pull_cycle(self, include_own: bool) -> SyncResult:
        self._set_status(SyncStatus.PULLING)
        try:
            client_id = self.client_id
            key = self._require_key()
            key_hash = fingerprint(key)
            applied_total = 0
            failed_ids: list[str] = []

            for _ in range(self.max_pull_loops):
                cursor = self.store.get_metadata().last_server_cursor
                page = await self.transport.pull(cursor, None if include_own else client_id)

                if page.next_cursor <= cursor:
                    if page.ops:
                        logger.warning(
                            f"Rejected stale pull page: cursor {page.next_cursor} <= {cursor}"
                        )
                    break

                failed_ids.extend(page.rejected_ids)
                decrypted = []
                for op in page.ops:
                    if op.key_hash and op.key_hash != key_hash:
                        logger.debug(
                            f"Skipping op {op.id}: encrypted with key {op.key_hash}, "
                            f"current key is {key_hash}"
                        )
                        failed_ids.append(op.id)
                        continue
                    try:
                        decrypted.append(decrypt_operation(op, key))
                    except DecryptionError as e:
                        logger.warning(f"Failed to decrypt op {op.id}, skipping: {e}")
                        failed_ids.append(op.id)

                with self.store.transaction(source=SYNC_SOURCE):
                    applied_total += self._apply_batch(decrypted)
                    moved = self.store.advance_cursor(page.next_cursor)

                if not moved:
                    break
            else:
                logger.warning(f"Pull reached max loops ({self.max_pull_loops}), stopping")

            self._consecutive_failures = 0
            self._last_sync_time = now_ms()
            self._settle()
            self._emit(
                SyncEvent.SYNC_COMPLETE,
                {"type": "pull", "count": applied_total, "failed": len(failed_ids)},
            )
            if applied_total or failed_ids:
                logger.info(f"Pulled {applied_total} operations, {len(failed_ids)} unreadable")
            return SyncResult(
                status=SyncOutcome.PARTIAL if failed_ids else SyncOutcome.SUCCESS,
                pulled=applied_total,
                failed=len(failed_ids),
                failed_ids=failed_ids,
                timestamp=datetime.now(),
            )
        except Exception as e:
            return self._fail("pull", e)

    def _apply_batch(self, ops: list[Operation]) -> int:
        """Apply decrypted operations; caller holds a sync transaction.

        Returns:
            Number of operations newly applied to local tables.
        """
        applied = 0
        for op in ops:
            if self.log.contains(op.id):
                continue

            spec = self.tables.get(op.table)
            if spec is None:
                self.store.defer_operation(op)
            else:
                spec.apply(self.store, op)
                applied += 1
            self.log.record_applied(op)
        return applied

    def process_deferred_operations(self) -> int:
        """Replay deferred operations for tables that are now replicated.

        Each table is replayed in its own transaction; an operation that
        fails to apply is logged and dropped.

        Returns:
            Number of deferred operations applied.
        """
        applied = 0
        for table in self.store.deferred_tables():
            spec = self.tables.get(table)
            if spec is None:
                continue

            logger.info(f"Processing deferred operations for {table}")
            with self.store.transaction(source=SYNC_SOURCE):
                for op in self.store.deferred_operations(table):
                    try:
                        spec.apply(self.store, op)
                        applied += 1
                    except (ValueError, TypeError, KeyError) as e:
                        logger.error(f"Failed to apply deferred op {op.id} for {table}, skipping: {e}")
                self.store.delete_deferred(table)
        return applied

    # ==================== Status ====================

    async def get_pending_counts(self) -> PendingCounts:
        """Operations waiting to be pushed and remote operations not yet pulled.

        Read-only: a client id is not created here if none exists yet.
        """
        push = self.log.count_unsynced(tables=list(self.tables))

        pull = 0
        try:
            cursor = self.store.get_metadata().last_server_cursor
            client_id = self._client_id or self.store.get_setting(CLIENT_ID_SETTING)
            pull = await self.transport.get_pending_count(cursor, client_id)
        except (SyncError, OSError) as e:
            logger.warning(f"Failed to get remote pending count: {e}")

        return PendingCounts(push=push, pull=pull)

    def get_sync_status(self) -> dict[str, Any]:
        """Snapshot of engine state for display."""
        metadata = self.store.get_metadata()
        stats = self.log.get_stats()
        return {
            "client_id": self.client_id,
            "status": self._status.value,
            "last_error": self._last_error,
            "last_sync_time": self._last_sync_time,
            "last_server_cursor": metadata.last_server_cursor,
            "consecutive_failures": self._consecutive_failures,
            "pending_operations": stats["unsynced_operations"],
            "total_operations": stats["total_operations"],
            "tables": sorted(self.tables),
        }

    # ==================== Key Rotation ====================

    async def rotate_key(self, key_string: str, mode: MigrationMode | str) -> SyncResult:
        """Switch to a new encryption key.

        ``authority`` keeps local data and re-publishes it under the new
        key; ``member`` discards local data and re-pulls everything.

        Raises:
            InvalidKeyError: If the key fails verification (nothing changes).
        """
        mode = MigrationMode(mode)
        if not verify_key(key_string):
            raise InvalidKeyError("New sync key failed verification")
        key = import_key(key_string)

        async with self._push_lock, self._pull_lock:
            if mode is MigrationMode.AUTHORITY:
                self._reset_as_authority(key)
            else:
                self._reset_as_member(key)
            self._push_queued = False
            self._last_error = None
            self._last_sync_time = None

        logger.info(f"Rotated sync key to {fingerprint(key)} as {mode.value}")
        if mode is MigrationMode.AUTHORITY:
            return await self.push()
        return await self.pull(include_own=True)

    def _reset_as_authority(self, key: SyncKey) -> int:
        """Reset the cursor and regenerate one create per live row."""
        client_id = self.client_id
        count = 0
        with self.store.transaction(source=SYNC_SOURCE):
            self.store.clear_metadata()
            self.log.clear()
            self.store.clear_deferred()

            for spec in self.tables.values():
                rows = spec.live_rows(self.store)
                for row_key, row in rows:
                    self.log.append(
                        Operation.create(spec.name, OperationType.CREATE, row_key, row, client_id)
                    )
                count += len(rows)
                if rows:
                    logger.info(f"Regenerated {len(rows)} operations for table {spec.name}")

            self.key_store.save(key)
        return count

    def _reset_as_member(self, key: SyncKey) -> None:
        """Discard local data so a full pull repopulates it."""
        with self.store.transaction(source=SYNC_SOURCE):
            for spec in self.tables.values():
                self.store.clear_table(spec.name)
            self.log.clear()
            self.store.clear_metadata()
            self.store.clear_deferred()
            self.key_store.save(key)
        logger.info("Cleared local data for member re-sync")

    # ==================== Scheduling ====================

    async def full_sync(self) -> SyncResult:
        """Push, then pull."""
        push_result = await self.push()
        if push_result.status is SyncOutcome.OFFLINE:
            return push_result

        pull_result = await self.pull()
        status = pull_result.status
        if push_result.status is SyncOutcome.FAILED:
            status = SyncOutcome.FAILED
        elif status is SyncOutcome.SUCCESS and push_result.status is SyncOutcome.PARTIAL:
            status = SyncOutcome.PARTIAL

        return SyncResult(
            status=status,
            pushed=push_result.pushed,
            pulled=pull_result.pulled,
            failed=pull_result.failed,
            failed_ids=pull_result.failed_ids,
            error=push_result.error or pull_result.error,
            timestamp=datetime.now(),
        )

    async def sync_loop(
        self,
        interval_seconds: float = 300,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Run periodic push/pull cycles until stopped or destroyed.

        Args:
            interval_seconds: Seconds between sync attempts.
            stop_event: Event to signal loop should stop.
        """
        logger.info(f"Starting sync loop with {interval_seconds}s interval")

        while not self._destroyed:
            if stop_event and stop_event.is_set():
                break

            result = await self.full_sync()
            logger.info(
                f"Sync: {result.status.value}, "
                f"pushed={result.pushed}, pulled={result.pulled}"
            )

            # Adaptive interval: back off if consecutive failures
            wait_time = interval_seconds
            if self._consecutive_failures > 0:
                wait_time = min(interval_seconds * (2 ** self._consecutive_failures), 3600)
                logger.debug(f"Backing off sync for {wait_time}s")

            if stop_event:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=wait_time)
                    break
                except asyncio.TimeoutError:
                    pass
            else:
                await asyncio.sleep(wait_time)

        logger.info("Sync loop stopped")

    def destroy(self) -> None:
        """Stop scheduling and drop listeners; in-flight calls finish on their own."""
        self._destroyed = True
        self._listeners.clear()
        if self._unhook is not None:
            self._unhook()
            self._unhook = None
