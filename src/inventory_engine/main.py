"""Command line entry point.

Examples::

    inventory-engine init-db
    inventory-engine sync --type inventory --mode smart --dry-run
    inventory-engine sync --type full --full-resync
    inventory-engine status --type inventory
    inventory-engine retry-failed 42
    inventory-engine watchdog --once
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from datetime import datetime, timedelta
from typing import Any, Sequence

import structlog

from inventory_engine.config import DEFAULT_CONFIG_PATH, EngineSettings, load_settings
from inventory_engine.db.models import SyncMode, SyncStatus, SyncType
from inventory_engine.db.session import create_engine, create_session_factory, init_db
from inventory_engine.errors import ConfigurationError, SyncAlreadyRunningError
from inventory_engine.logging_config import configure_structured_logging
from inventory_engine.orchestrator import SyncOrchestrator, SyncRequest
from inventory_engine.sync_log import SyncLogRepository, log_to_dict
from inventory_engine.upstream.client import UpstreamClient
from inventory_engine.watchdog import SyncWatchdog

logger = structlog.get_logger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_PARTIAL = 2
EXIT_ALREADY_RUNNING = 3

STATUS_EXIT_CODES = {
    SyncStatus.SUCCESS: EXIT_OK,
    SyncStatus.PARTIAL: EXIT_PARTIAL,
    SyncStatus.ERROR: EXIT_ERROR,
}


def _parse_since(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid ISO timestamp: {value}") from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="inventory-engine",
        description="Sync warehouse inventory, vendors and purchase orders from the upstream ERP.",
    )
    parser.add_argument("--config", default=str(DEFAULT_CONFIG_PATH), help="Path to config_vars.yaml")
    parser.add_argument("--env-file", default=None, help="Optional .env file")
    sub = parser.add_subparsers(dest="command", required=True)

    sync = sub.add_parser("sync", help="Run a sync")
    sync.add_argument("--type", dest="sync_type", choices=[t.value for t in SyncType], default="inventory")
    sync.add_argument("--mode", choices=[m.value for m in SyncMode], default="incremental")
    sync.add_argument("--full-resync", action="store_true")
    sync.add_argument("--replace-all", action="store_true", help="Delete local items missing upstream")
    sync.add_argument("--since", type=_parse_since, default=None, help="Incremental cutoff (ISO)")
    sync.add_argument("--dry-run", action="store_true")
    sync.add_argument("--priority-threshold", type=int, default=None)
    sync.add_argument("--vendor", dest="vendor_filter", default=None)
    sync.add_argument("--sku", dest="skus", action="append", default=[])

    status = sub.add_parser("status", help="Show running and latest sync")
    status.add_argument("--type", dest="sync_type", choices=[t.value for t in SyncType], default="inventory")

    retry = sub.add_parser("retry-failed", help="Re-sync the SKUs that failed in a run")
    retry.add_argument("log_id", type=int)
    retry.add_argument("--dry-run", action="store_true")

    watchdog = sub.add_parser("watchdog", help="Terminate stale running syncs")
    watchdog.add_argument("--once", action="store_true")
    watchdog.add_argument("--interval", type=float, default=60.0)

    sub.add_parser("init-db", help="Create tables")
    sub.add_parser("test-connection", help="Check upstream credentials")
    return parser


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))  # noqa: T201


async def _run_command(args: argparse.Namespace, settings: EngineSettings) -> int:
    engine = create_engine(settings.database_url)
    session_factory = create_session_factory(engine)
    try:
        if args.command == "init-db":
            await init_db(engine)
            _emit({"status": "ok"})
            return EXIT_OK

        if args.command == "watchdog":
            watchdog = SyncWatchdog(
                SyncLogRepository(session_factory),
                stale_after=timedelta(minutes=settings.stale_after_minutes),
                poll_interval=args.interval,
            )
            if args.once:
                _emit({"reaped": await watchdog.check_once()})
                return EXIT_OK
            await watchdog.run()
            return EXIT_OK

        async with UpstreamClient(settings.upstream) as client:
            if args.command == "test-connection":
                ok = await client.test_connection()
                _emit({"connected": ok})
                return EXIT_OK if ok else EXIT_ERROR

            orchestrator = SyncOrchestrator(session_factory, client, settings)
            if args.command == "status":
                view = await orchestrator.status(args.sync_type)
                _emit(
                    {
                        "sync_type": view.sync_type.value,
                        "running": log_to_dict(view.running),
                        "latest": log_to_dict(view.latest),
                        "recent": [
                            log_to_dict(log) for log in await orchestrator.sync_logs.recent(5)
                        ],
                    }
                )
                return EXIT_OK

            if args.command == "retry-failed":
                result = await orchestrator.retry_failed(args.log_id, dry_run=args.dry_run)
                if result is None:
                    _emit({"status": "nothing_to_retry", "log_id": args.log_id})
                    return EXIT_OK
            else:
                request = SyncRequest(
                    sync_type=SyncType(args.sync_type),
                    mode=SyncMode(args.mode),
                    full_resync=args.full_resync,
                    replace_all=args.replace_all,
                    filter_since=args.since,
                    dry_run=args.dry_run,
                    priority_threshold=args.priority_threshold,
                    vendor_filter=args.vendor_filter,
                    skus=tuple(args.skus),
                )
                result = await orchestrator.run(request)

            _emit(result.as_dict())
            return STATUS_EXIT_CODES[result.status]
    except SyncAlreadyRunningError as exc:
        _emit({"status": "already_running", **exc.payload})
        return EXIT_ALREADY_RUNNING
    finally:
        await engine.dispose()


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        settings = load_settings(args.config, dotenv_path=args.env_file)
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)  # noqa: T201
        return EXIT_ERROR

    configure_structured_logging(
        level=settings.log_level,
        environment=settings.environment,
        service_name="inventory-engine",
        enable_json=settings.log_json,
    )
    try:
        return asyncio.run(_run_command(args, settings))
    except ValueError as exc:
        logger.error("invalid_request", error=str(exc))
        return EXIT_ERROR
    except KeyboardInterrupt:
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
