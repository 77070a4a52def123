"""CLI entry point for dppsync."""

import argparse
import asyncio
import json
import logging
import signal
import sys
import traceback
from datetime import datetime
from pathlib import Path

from .config import Config, load_config
from .errors import SyncError
from .store import LocalStore
from .sync import (
    GoogleSheetsWorksheet,
    KeyStore,
    MigrationMode,
    RelayTransport,
    ReplicatedTable,
    SheetsTransport,
    SyncEngine,
    SyncOutcome,
    SyncResult,
    SyncTransport,
)
from .sync.crypto import KEY_SETTING, export_key, fingerprint, generate_key, verify_key

logger = logging.getLogger(__name__)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        try:
            return json.dumps(log_data)
        except (TypeError, ValueError):
            log_data["message"] = str(log_data["message"])
            return json.dumps(log_data)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure logging.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
    """
    if log_level:
        level_map = {
            "warning": logging.WARNING,
            "info": logging.INFO,
            "debug": logging.DEBUG,
        }
        level = level_map.get(log_level, logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    logging.basicConfig(level=level, handlers=[handler])


def build_transport(config: Config) -> SyncTransport:
    """Create the transport selected by ``sync.backend``."""
    if config.sync.backend == "sheets":
        worksheet = GoogleSheetsWorksheet(
            spreadsheet_id=config.sheets.spreadsheet_id,
            credentials_file=config.sheets.credentials_file,
            title=config.sheets.sheet_title,
        )
        return SheetsTransport(
            worksheet,
            max_retries=config.sheets.max_retries,
            base_delay=config.sheets.base_delay,
            page_size=config.sheets.page_size,
        )

    return RelayTransport(
        remote_url=config.sync.server_url or None,
        access_token=config.sync.access_token,
        timeout=config.sync.timeout,
        max_retries=config.sync.retry_max_attempts,
        base_delay=config.sync.retry_base_delay,
    )


def build_engine(config: Config) -> tuple[LocalStore, SyncEngine]:
    """Open the client database and wire a sync engine to it."""
    store = LocalStore(config.client.db_path)
    store.connect()

    engine = SyncEngine(
        store,
        ReplicatedTable.specs(),
        build_transport(config),
        key_store=KeyStore(store),
        push_batch_size=config.sync.push_batch_size,
        max_pull_loops=config.sync.max_pull_loops,
    )
    engine.register()
    return store, engine


def _print_result(result: SyncResult) -> int:
    data = {
        "status": result.status.value,
        "pushed": result.pushed,
        "pulled": result.pulled,
        "failed": result.failed,
    }
    if result.failed_ids:
        data["failed_ids"] = result.failed_ids
    if result.error:
        data["error"] = result.error
    print(json.dumps(data, indent=2))

    if result.status in (SyncOutcome.FAILED, SyncOutcome.OFFLINE):
        return 1
    return 0


async def cmd_serve(args: argparse.Namespace) -> int:
    """Run the relay server."""
    config = load_config(args.config)

    import uvicorn

    from .server import RelayStore, create_app

    host = args.host or config.server.host
    port = args.port or config.server.port

    store = RelayStore(config.server.db_path)
    store.connect()

    print("Starting dppsync relay")
    print(f"Database: {store.db_path}")
    print(f"URL: http://{host}:{port}")
    if not config.server.access_token:
        print("Warning: no access token configured, relay accepts all clients")

    app = create_app(config.server, store)

    try:
        verbose = getattr(args, "verbose", False)
        config_uvicorn = uvicorn.Config(
            app,
            host=host,
            port=port,
            log_level="info" if verbose else "warning",
        )
        server = uvicorn.Server(config_uvicorn)
        await server.serve()
    finally:
        store.close()

    return 0


def cmd_keygen(args: argparse.Namespace) -> int:
    """Generate and store a new sync key."""
    config = load_config(args.config)
    store = LocalStore(config.client.db_path)
    key_store = KeyStore(store)

    try:
        if key_store.load() is not None and not args.force:
            print("A sync key is already stored; use rotate-key or --force", file=sys.stderr)
            return 1

        key = generate_key()
        key_store.save(key)
        print(export_key(key))
        print(f"Fingerprint: {fingerprint(key)}", file=sys.stderr)
        return 0
    finally:
        store.close()


def cmd_verify_key(args: argparse.Namespace) -> int:
    """Check that a key string (or the stored key) can encrypt and decrypt."""
    if args.key:
        valid = verify_key(args.key)
    else:
        config = load_config(args.config)
        store = LocalStore(config.client.db_path)
        try:
            stored = store.get_setting(KEY_SETTING)
        finally:
            store.close()
        if not stored:
            print("No sync key stored", file=sys.stderr)
            return 1
        valid = verify_key(stored)

    print("valid" if valid else "invalid")
    return 0 if valid else 1


async def cmd_rotate_key(args: argparse.Namespace) -> int:
    """Switch to a new key as authority or member."""
    config = load_config(args.config)
    store, engine = build_engine(config)

    try:
        result = await engine.rotate_key(args.key, MigrationMode(args.mode))
        return _print_result(result)
    except SyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        engine.destroy()
        store.close()


async def cmd_push(args: argparse.Namespace) -> int:
    """Push unsynced operations once."""
    config = load_config(args.config)
    store, engine = build_engine(config)
    try:
        return _print_result(await engine.push())
    finally:
        engine.destroy()
        store.close()


async def cmd_pull(args: argparse.Namespace) -> int:
    """Pull remote operations once."""
    config = load_config(args.config)
    store, engine = build_engine(config)
    try:
        return _print_result(await engine.pull())
    finally:
        engine.destroy()
        store.close()


async def cmd_sync(args: argparse.Namespace) -> int:
    """Push then pull once."""
    config = load_config(args.config)
    store, engine = build_engine(config)
    try:
        return _print_result(await engine.full_sync())
    finally:
        engine.destroy()
        store.close()


async def cmd_status(args: argparse.Namespace) -> int:
    """Show sync state and pending counts."""
    config = load_config(args.config)
    store, engine = build_engine(config)

    try:
        status_data = {
            "timestamp": datetime.now().isoformat(),
            "client": {
                "name": config.client.name,
                "db_path": str(store.db_path),
            },
            "backend": config.sync.backend,
            "server_url": config.sync.server_url,
            "key_configured": engine.key_store.load() is not None,
            "sync": engine.get_sync_status(),
            "pending": (await engine.get_pending_counts()).to_dict(),
        }
        print(json.dumps(status_data, indent=2))
        return 0
    finally:
        engine.destroy()
        store.close()


async def cmd_run(args: argparse.Namespace) -> int:
    """Run the periodic sync loop until interrupted."""
    config = load_config(args.config)
    if not config.sync.enabled:
        print("Sync is disabled in configuration", file=sys.stderr)
        return 1

    store, engine = build_engine(config)
    interval = args.interval or config.sync.sync_interval_seconds

    print(f"Starting dppsync client: {config.client.name}")
    print(f"Backend: {config.sync.backend}, interval: {interval}s")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    try:
        await engine.sync_loop(interval_seconds=interval, stop_event=stop_event)
    finally:
        engine.destroy()
        store.close()

    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="dppsync",
        description="Offline-first operation-log sync with an encrypted relay",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (default: built-in defaults)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["warning", "info", "debug"],
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Run the relay server")
    serve_parser.add_argument(
        "-p", "--port",
        type=int,
        default=None,
        help="Port to listen on (default: server.port, 8889)",
    )
    serve_parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind to (default: server.host)",
    )
    serve_parser.set_defaults(func=cmd_serve)

    # Key commands
    keygen_parser = subparsers.add_parser("keygen", help="Generate and store a sync key")
    keygen_parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite an existing key without migrating data",
    )
    keygen_parser.set_defaults(func=cmd_keygen)

    verify_parser = subparsers.add_parser("verify-key", help="Verify a sync key")
    verify_parser.add_argument(
        "key",
        nargs="?",
        help="Base64 key to verify (default: the stored key)",
    )
    verify_parser.set_defaults(func=cmd_verify_key)

    rotate_parser = subparsers.add_parser("rotate-key", help="Switch to a new sync key")
    rotate_parser.add_argument("key", help="New base64 key")
    rotate_parser.add_argument(
        "--mode",
        choices=[m.value for m in MigrationMode],
        required=True,
        help="authority: republish local data; member: discard local data and re-pull",
    )
    rotate_parser.set_defaults(func=cmd_rotate_key)

    # Sync commands
    subparsers.add_parser("push", help="Push local operations once").set_defaults(func=cmd_push)
    subparsers.add_parser("pull", help="Pull remote operations once").set_defaults(func=cmd_pull)
    subparsers.add_parser("sync", help="Push then pull once").set_defaults(func=cmd_sync)
    subparsers.add_parser("status", help="Show sync status").set_defaults(func=cmd_status)

    run_parser = subparsers.add_parser("run", help="Run the periodic sync loop")
    run_parser.add_argument(
        "-i", "--interval",
        type=int,
        default=None,
        help="Seconds between sync cycles (default: sync.sync_interval_seconds)",
    )
    run_parser.set_defaults(func=cmd_run)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, getattr(args, "json", False))

    if not args.command:
        parser.print_help()
        return 1

    func = args.func
    is_async = getattr(args, "is_async", False) or asyncio.iscoroutinefunction(func)

    try:
        if is_async:
            return asyncio.run(func(args))
        return func(args)
    except SyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
