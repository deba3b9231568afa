"""Refresh the cached product catalog once, or on a fixed interval."""

from __future__ import annotations

import argparse
import asyncio
import logging
from collections.abc import Sequence

from storefront.cache_sync import ProductCacheUpdater
from storefront.config import ConfigurationError, settings
from storefront.printify_api import PrintifyApiError
from storefront.storage import ProductCacheError

logger = logging.getLogger(__name__)


async def run_forever(updater: ProductCacheUpdater, *, interval_hours: float) -> None:
    interval_seconds = interval_hours * 3600
    while True:
        try:
            await updater.run()
        except (PrintifyApiError, ProductCacheError) as exc:
            # The previous cache stays in place; try again next interval.
            logger.error("Scheduled product cache sync failed", extra={"error": str(exc)})
        await asyncio.sleep(interval_seconds)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Mirror the Printify catalog into the product cache object.")
    parser.add_argument("--loop", action="store_true", help="Keep running and sync on a fixed interval.")
    parser.add_argument(
        "--interval-hours",
        type=float,
        default=settings.CACHE_SYNC_INTERVAL_HOURS,
        help="Hours between syncs when --loop is set.",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=settings.LOG_LEVEL.upper())
    if args.interval_hours <= 0:
        logger.error("--interval-hours must be positive")
        return 2

    try:
        updater = ProductCacheUpdater()
        if args.loop:
            asyncio.run(run_forever(updater, interval_hours=args.interval_hours))
            return 0
        result = asyncio.run(updater.run())
    except ConfigurationError as exc:
        logger.error("Product cache sync is not configured", extra={"error": str(exc)})
        return 2
    except (PrintifyApiError, ProductCacheError):
        return 1
    print(f"Cache sync complete: key={result.object_key} count={result.count} changed={result.changed}")
    return 0
