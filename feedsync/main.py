"""Command-line entry point: run the scheduler or trigger syncs by hand."""

import argparse
import asyncio
import json
import logging
import sys

from feedsync.config import get_settings
from feedsync.database import close_database, get_database
from feedsync.errors import InvalidFeedUrlError

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


async def _run_scheduler() -> None:
    from feedsync.jobs.scheduler import setup_scheduler, shutdown_scheduler

    await get_database()
    setup_scheduler()
    try:
        await asyncio.Event().wait()
    finally:
        shutdown_scheduler()


async def _sync_all() -> dict:
    from feedsync.jobs.sync_job import run_periodic_sync
    return await run_periodic_sync()


async def _sync_one(feed_id: int) -> dict | None:
    from feedsync.jobs.sync_job import trigger_sync_for_feed
    result = await trigger_sync_for_feed(feed_id)
    return result.model_dump(by_alias=True) if result else None


async def _disconnect(feed_id: int) -> dict:
    from feedsync.sync.health import disconnect_feed
    return {"disconnected": await disconnect_feed(feed_id)}


async def _connect(args: argparse.Namespace) -> dict:
    from feedsync.sync import connect_ics_feed, describe_feed
    feed = await connect_ics_feed(
        args.user_id,
        args.feed_url,
        organization_id=args.organization_id,
        scope=args.scope,
        sync=not args.no_sync,
    )
    return describe_feed(feed)


async def _main(args: argparse.Namespace) -> int:
    settings = get_settings()
    logger.info(f"Starting feedsync ({args.command}), database: {settings.database_path}")

    try:
        if args.command == "run":
            await _run_scheduler()
            return 0
        if args.command == "sync-all":
            output = await _sync_all()
        elif args.command == "sync":
            output = await _sync_one(args.feed_id)
        elif args.command == "connect":
            output = await _connect(args)
        else:
            output = await _disconnect(args.feed_id)
    except InvalidFeedUrlError as e:
        logger.error(f"Cannot connect feed: {e}")
        return 2
    finally:
        await close_database()

    print(json.dumps(output, indent=2))
    if output is None:
        return 1
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="feedsync", description="Calendar feed sync engine")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("run", help="Run the periodic sync scheduler until interrupted")
    commands.add_parser("sync-all", help="Sync every connected feed once")

    sync_cmd = commands.add_parser("sync", help="Sync one feed")
    sync_cmd.add_argument("feed_id", type=int)

    disconnect_cmd = commands.add_parser("disconnect", help="Disconnect a feed")
    disconnect_cmd.add_argument("feed_id", type=int)

    connect_cmd = commands.add_parser("connect", help="Connect an ICS feed and run its first sync")
    connect_cmd.add_argument("user_id", type=int)
    connect_cmd.add_argument("feed_url")
    connect_cmd.add_argument("--organization-id", default=None)
    connect_cmd.add_argument("--scope", choices=["personal", "org"], default="personal")
    connect_cmd.add_argument("--no-sync", action="store_true", help="Register without syncing")

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()
    try:
        return asyncio.run(_main(args))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
        return 0


if __name__ == "__main__":
    sys.exit(main())
