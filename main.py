#!/usr/bin/env python3
"""SyncBridge CLI.

Keeps the legacy platform's devices and tenants converged with the protocol
engine, which is the source of truth.

Commands:
    serve                       Notification ingest + queue consumers + periodic
                                sweeps + control API, until SIGTERM/SIGINT
    reconcile <entity>          One forward sweep (protocol engine -> legacy)
    reconcile <entity> --reverse
                                Re-import legacy entities missing from the engine
    status [entity]             Counts and sweep state

Environment Variables Required:
    - NPL_ENGINE_URL, NPL_TOKEN_URL, NPL_CLIENT_ID (+ NPL_CLIENT_SECRET or
      NPL_USERNAME/NPL_PASSWORD)
    - LEGACY_BASE_URL, LEGACY_USERNAME, LEGACY_PASSWORD
    - RABBITMQ_* for the queue (unless SYNC_DIRECT_APPLY=true)

Example Usage:
    $ python main.py serve
    $ python main.py reconcile tenant
    $ python main.py reconcile device --reverse
    $ python main.py status --json
"""
import argparse
import asyncio
import json
import logging
import sys

import uvicorn

from src.syncbridge.api.exceptions import ConfigurationError, SyncBridgeError
from src.syncbridge.config import load_config
from src.syncbridge.control.app import create_app
from src.syncbridge.service import SyncService

logger = logging.getLogger("syncbridge")


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # aio-pika and aiormq are chatty at INFO
    logging.getLogger("aiormq").setLevel(logging.WARNING)
    logging.getLogger("aio_pika").setLevel(logging.WARNING)


async def serve(service: SyncService, port: int) -> None:
    """Run until uvicorn receives SIGTERM/SIGINT; the app lifespan stops the service."""
    app = create_app(service, manage_lifecycle=True)
    server = uvicorn.Server(uvicorn.Config(app, host="0.0.0.0", port=port, log_config=None))
    await server.serve()


async def reconcile(service: SyncService, entity: str, reverse: bool) -> dict:
    await service.open()
    try:
        if reverse:
            return await service.reconcile_target_to_source(entity)
        return await service.reconcile_source_to_target(entity)
    finally:
        await service.engine.close()
        await service.legacy.close()


async def status(service: SyncService, entity: str | None) -> dict:
    await service.open()
    try:
        return await service.get_sync_status(entity)
    finally:
        await service.engine.close()
        await service.legacy.close()


def print_report(report: dict) -> None:
    print(f"\n{report['entityClass']} sweep ({report['direction']})")
    print("=" * 50)
    if report["skipped"]:
        print("  Skipped: a sweep is already in progress")
        return
    print(f"  Source:   {report['sourceCount']:>6}")
    print(f"  Target:   {report['targetCount']:>6}")
    print(f"  Created:  {report['created']:>6}")
    print(f"  Updated:  {report['updated']:>6}")
    print(f"  Deleted:  {report['deleted']:>6}")
    print(f"  Kept:     {report['kept']:>6}")
    if report["durationSeconds"] is not None:
        print(f"  Duration: {report['durationSeconds']:.2f}s")
    if report["timedOut"]:
        print("  Timed out")
    if report["cancelled"]:
        print("  Cancelled")
    for error in report["errors"][:10]:
        print(f"  ! {error}")


def print_status(statuses: dict, single: bool) -> None:
    if single:
        statuses = {"": statuses}
    for name, state in statuses.items():
        if name:
            print(f"\n{name}")
        print(f"  Source count:     {state['sourceCount']}")
        print(f"  Target count:     {state['targetCount']}")
        print(f"  Sync in progress: {state['syncInProgress']}")
        print(f"  Last sync:        {state['lastSyncTime'] or 'never'}")
        if state.get("error"):
            print(f"  Error:            {state['error']}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Protocol engine to legacy platform sync",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--env-file", help="Path to a .env file (default: ./.env)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the sync service and control API")
    serve_parser.add_argument("--port", type=int, help="Control API port (default: CONTROL_PORT)")

    reconcile_parser = subparsers.add_parser("reconcile", help="Run one sweep")
    reconcile_parser.add_argument("entity", choices=["device", "tenant"])
    reconcile_parser.add_argument(
        "--reverse",
        action="store_true",
        help="Re-import legacy platform entities missing from the protocol engine",
    )
    reconcile_parser.add_argument("--json", action="store_true", help="Print the report as JSON")

    status_parser = subparsers.add_parser("status", help="Show counts and sweep state")
    status_parser.add_argument("entity", nargs="?", choices=["device", "tenant"])
    status_parser.add_argument("--json", action="store_true", help="Print status as JSON")

    return parser


def main() -> int:
    args = build_parser().parse_args()

    try:
        config = load_config(args.env_file)
    except ConfigurationError as e:
        print(f"Configuration error: {e.message}", file=sys.stderr)
        return 1

    setup_logging(config.log_level)
    logger.info(f"Config: {config}")

    if args.command == "serve":
        service = SyncService(config)
        asyncio.run(serve(service, args.port or config.control_port))
        return 0

    # One-shot commands apply directly; they never touch the queue.
    config.sync.direct_apply = True
    service = SyncService(config)

    try:
        if args.command == "reconcile":
            report = asyncio.run(reconcile(service, args.entity, args.reverse))
            if args.json:
                print(json.dumps(report, indent=2))
            else:
                print_report(report)
            return 0 if report["success"] else 2

        statuses = asyncio.run(status(service, args.entity))
        if args.json:
            print(json.dumps(statuses, indent=2))
        else:
            print_status(statuses, single=args.entity is not None)
        return 0
    except SyncBridgeError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
