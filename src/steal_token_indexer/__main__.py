"""Command-line entry point: ``python -m steal_token_indexer <command>``."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys

from pydantic import ValidationError

from steal_token_indexer.config import Settings, get_settings
from steal_token_indexer.pipeline import (
    IndexerPipeline,
    PipelineRole,
    create_backfill,
    create_block_scanner,
    create_events_queue,
    create_solana_client,
    create_upload_check_queue,
)
from steal_token_indexer.queue.streams import QueueBroker
from steal_token_indexer.storage.database import DatabaseManager

logger = logging.getLogger("steal_token_indexer")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

ROLE_COMMANDS = {
    "scan": [PipelineRole.SCAN],
    "consume": [PipelineRole.CONSUME],
    "upload-checks": [PipelineRole.UPLOAD_CHECKS],
}


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="steal-token-indexer",
        description="Index steal_token program activity into PostgreSQL",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run scanner, consumers and upload checks")
    run_parser.add_argument(
        "--roles",
        default=",".join(r.value for r in PipelineRole),
        help="Comma-separated subset of: scan, consume, upload-checks",
    )
    subparsers.add_parser("scan", help="Run only the block scanner")
    subparsers.add_parser("consume", help="Run only the event consumers")
    subparsers.add_parser("upload-checks", help="Run only the upload expiry sweep and reconciler")
    subparsers.add_parser("init-db", help="Create tables directly (development; use alembic in production)")

    rescan_parser = subparsers.add_parser("rescan-failed", help="Re-process blocks recorded as failed")
    rescan_parser.add_argument("--limit", type=int, default=100)

    track_parser = subparsers.add_parser("track-upload", help="Register a staged upload for confirmation")
    track_parser.add_argument("cid", help="Content id of the staged image")

    backfill_parser = subparsers.add_parser("backfill", help="Populate entities (and optionally history) from chain")
    backfill_parser.add_argument("--limit", type=int, default=None, help="Process at most this many accounts")
    backfill_parser.add_argument(
        "--history", action="store_true", help="Also insert each entity's past transactions"
    )

    subparsers.add_parser("show-config", help="Print the effective configuration (secrets redacted)")
    return parser.parse_args(argv)


def _parse_roles(raw: str) -> list[PipelineRole]:
    roles = []
    for part in raw.split(","):
        part = part.strip()
        if part:
            roles.append(PipelineRole(part))
    return roles


async def _run_pipeline(settings: Settings, roles: list[PipelineRole]) -> None:
    pipeline = IndexerPipeline(settings, roles=roles)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, pipeline.request_stop)
    await pipeline.run()


async def _init_db(settings: Settings) -> None:
    db = DatabaseManager(settings.database.url)
    try:
        await db.init_schema_async()
    finally:
        await db.dispose_async()


async def _rescan_failed(settings: Settings, *, limit: int) -> int:
    db = DatabaseManager(settings.database.url)
    client = create_solana_client(settings)
    try:
        async with QueueBroker(settings.redis.url) as broker:
            events = create_events_queue(broker, settings)
            await events.ensure_group()
            scanner = create_block_scanner(client, events, db, settings)
            resolved = await scanner.rescan_failed(limit=limit)
    finally:
        await client.aclose()
        await db.dispose_async()
    logger.info("Resolved %d failed block(s)", resolved)
    return resolved


async def _backfill(settings: Settings, *, limit: int | None, history: bool) -> None:
    db = DatabaseManager(settings.database.url)
    client = create_solana_client(settings)
    try:
        backfill = create_backfill(client, db, settings)
        entity_ids = await backfill.entities(limit=limit)
        if history:
            for entity_id in entity_ids:
                await backfill.history(entity_id)
    finally:
        await client.aclose()
        await db.dispose_async()
    stats = backfill.stats
    logger.info(
        "Backfill complete: %d entities written, %d history rows inserted",
        stats.entities_written,
        stats.history_inserted,
    )


async def _track_upload(settings: Settings, cid: str) -> None:
    async with QueueBroker(settings.redis.url) as broker:
        deadline = await create_upload_check_queue(broker, settings).enqueue(cid)
    logger.info("Upload %s must be confirmed by %s", cid, deadline.isoformat())


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    try:
        settings = get_settings()
    except ValidationError as e:
        logging.basicConfig(level=logging.ERROR, format=LOG_FORMAT)
        logger.error("Invalid configuration: %s", e)
        return 1

    logging.basicConfig(level=settings.get_logging_level(), format=LOG_FORMAT)

    if args.command == "show-config":
        print(json.dumps(settings.redacted_summary(), indent=2))
        return 0

    try:
        settings.validate_requirements(command=args.command)
        if args.command == "run":
            asyncio.run(_run_pipeline(settings, _parse_roles(args.roles)))
        elif args.command in ROLE_COMMANDS:
            asyncio.run(_run_pipeline(settings, ROLE_COMMANDS[args.command]))
        elif args.command == "init-db":
            asyncio.run(_init_db(settings))
        elif args.command == "rescan-failed":
            asyncio.run(_rescan_failed(settings, limit=args.limit))
        elif args.command == "track-upload":
            asyncio.run(_track_upload(settings, args.cid))
        elif args.command == "backfill":
            asyncio.run(_backfill(settings, limit=args.limit, history=args.history))
    except KeyboardInterrupt:
        return 130
    except Exception as e:
        logger.error("Fatal error in %s: %s", args.command, e, exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
