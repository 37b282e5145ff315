"""
Operator command line.

Usage:
    safety-ratings sync-csv
    safety-ratings import-file data/Safercar_data.csv
    safety-ratings run-batch --batch-size 25
    safety-ratings validate
"""

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from typing import Any, Optional

from pydantic import BaseModel

from safety_ratings.context import AppContext
from safety_ratings.core.exceptions import SafetyRatingsException
from safety_ratings.core.logging import get_logger, setup_logging
from safety_ratings.services.csv_importer import CsvSyncStatus

logger = get_logger(__name__)

Command = Callable[[AppContext, argparse.Namespace], Awaitable[Any]]


async def _sync_csv(ctx: AppContext, args: argparse.Namespace) -> Any:
    return await ctx.importer.sync()


async def _reimport(ctx: AppContext, args: argparse.Namespace) -> Any:
    return await ctx.importer.force_reimport(wipe=not args.keep)


async def _import_file(ctx: AppContext, args: argparse.Namespace) -> Any:
    return await ctx.importer.import_file(args.path, resume=not args.no_resume)


async def _discover(ctx: AppContext, args: argparse.Namespace) -> Any:
    return await ctx.discovery.discover_vehicles()


async def _run_batch(ctx: AppContext, args: argparse.Namespace) -> Any:
    return await ctx.worker.fetch_pending_batch(args.batch_size)


async def _reset_failures(ctx: AppContext, args: argparse.Namespace) -> Any:
    return {"reset": await ctx.worker.reset_failures()}


async def _refetch_all(ctx: AppContext, args: argparse.Namespace) -> Any:
    return {"reset": await ctx.worker.force_refetch_all()}


async def _backfill(ctx: AppContext, args: argparse.Namespace) -> Any:
    return await ctx.worker.backfill_missing_ratings(
        start_new=not args.resume,
        year=args.year,
        batch_size=args.batch_size,
    )


async def _validate(ctx: AppContext, args: argparse.Namespace) -> Any:
    return await ctx.reporter.validate_sync()


async def _health(ctx: AppContext, args: argparse.Namespace) -> Any:
    return await ctx.reporter.check_health()


async def _clear_cache(ctx: AppContext, args: argparse.Namespace) -> Any:
    return {"removed": await ctx.cache.clear_all()}


async def _cleanup(ctx: AppContext, args: argparse.Namespace) -> Any:
    result = await ctx.purge_expired()
    if args.files:
        await ctx.importer.cleanup()
    return result


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="safety-ratings",
        description="Maintain the NHTSA safety ratings store",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("sync-csv", help="Import the CSV dataset if it changed").set_defaults(handler=_sync_csv)

    reimport = sub.add_parser("reimport", help="Force a full CSV reimport")
    reimport.add_argument("--keep", action="store_true", help="Keep stored ratings instead of truncating")
    reimport.set_defaults(handler=_reimport)

    import_file = sub.add_parser("import-file", help="Import a local CSV file")
    import_file.add_argument("path", help="Path to a Safercar CSV file")
    import_file.add_argument("--no-resume", action="store_true", help="Ignore any saved checkpoint")
    import_file.set_defaults(handler=_import_file)

    sub.add_parser("discover", help="Seed the sync log from the vehicle catalog").set_defaults(handler=_discover)

    run_batch = sub.add_parser("run-batch", help="Run one reconciliation batch")
    run_batch.add_argument("--batch-size", type=int, default=None, help="Entries to process (default: BATCH_SIZE)")
    run_batch.set_defaults(handler=_run_batch)

    sub.add_parser("reset-failures", help="Retry failed vehicles").set_defaults(handler=_reset_failures)
    sub.add_parser("refetch-all", help="Reset every vehicle to pending").set_defaults(handler=_refetch_all)

    backfill = sub.add_parser("backfill", help="Fill stored ratings missing data from the API")
    backfill.add_argument("--resume", action="store_true", help="Continue the saved backfill session")
    backfill.add_argument("--year", type=int, default=None, help="Restrict to one model year")
    backfill.add_argument("--batch-size", type=int, default=None)
    backfill.set_defaults(handler=_backfill)

    sub.add_parser("validate", help="Validate sync status and alert operators").set_defaults(handler=_validate)
    sub.add_parser("health", help="Show pipeline health").set_defaults(handler=_health)
    sub.add_parser("clear-cache", help="Drop every ephemeral cache entry").set_defaults(handler=_clear_cache)

    cleanup = sub.add_parser("cleanup", help="Delete expired stored ratings")
    cleanup.add_argument("--files", action="store_true", help="Also remove the downloaded CSV")
    cleanup.set_defaults(handler=_cleanup)

    return parser


def _render(result: Any) -> str:
    if isinstance(result, BaseModel):
        result = result.model_dump(mode="json")
    return json.dumps(result, indent=2, default=str)


def _exit_code(result: Any) -> int:
    status = getattr(result, "status", None)
    if status == CsvSyncStatus.FAILED:
        return 1
    if getattr(result, "success", True) is False:
        return 1
    return 0


async def run(args: argparse.Namespace, context: Optional[AppContext] = None) -> int:
    ctx = context or AppContext.build()
    try:
        result = await args.handler(ctx, args)
    except SafetyRatingsException as e:
        logger.error(f"{args.command} failed: {e.message}")
        print(json.dumps(e.to_dict(), indent=2, default=str), file=sys.stderr)
        return 2
    finally:
        if context is None:
            await ctx.close()

    print(_render(result))
    return _exit_code(result)


def main(argv: Optional[list[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging()
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
