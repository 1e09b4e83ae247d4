"""
Entry point for running a sync as a module.
Usage: python -m square_reconciler.workers {payments,catalog,ordinals} [--environment ENV]
"""
import argparse
import asyncio
import sys

import structlog

from square_reconciler.models.sync import SyncType
from square_reconciler.utils.logger import configure_logging
from square_reconciler.workers.catalog_sync import CatalogSyncEngine
from square_reconciler.workers.payment_sync import scheduled_payment_sync, sync_recent_payments

logger = structlog.get_logger()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="python -m square_reconciler.workers")
    parser.add_argument("job", choices=["payments", "catalog", "ordinals"])
    parser.add_argument(
        "--environment",
        choices=["production", "sandbox", "all"],
        default="all",
        help="Square environment for payment sync (default: all)",
    )
    parser.add_argument("--lookback-minutes", type=int, default=None)
    parser.add_argument("--force", action="store_true", help="Re-verify existing payments")
    return parser


async def run(args: argparse.Namespace) -> bool:
    if args.job == "payments":
        if args.environment == "all":
            result = await scheduled_payment_sync()
        else:
            result = await sync_recent_payments(
                lookback_minutes=args.lookback_minutes,
                environment=args.environment,
                sync_type=SyncType.SCHEDULED,
                force_sync=args.force,
            )
        logger.info(
            "Payment sync finished",
            sync_id=result.sync_id,
            success=result.success,
            found=result.payments_found,
            processed=result.payments_processed,
            failed=result.payments_failed,
            skipped=result.payments_skipped,
        )
        return result.success

    engine = CatalogSyncEngine()
    try:
        if args.job == "catalog":
            result = await engine.sync_catalog()
            logger.info(
                "Catalog sync finished",
                success=result.success,
                synced_products=result.synced_products,
                errors=len(result.errors),
            )
        else:
            result = await engine.resync_ordinals()
            logger.info(
                "Ordinal resync finished",
                success=result.success,
                updated=result.updated,
                skipped=result.skipped,
            )
        return result.success
    finally:
        await engine.close()


def main(argv=None) -> int:
    configure_logging()
    parser = build_parser()
    args = parser.parse_args(argv)
    # The scheduled all-environment sync has a fixed lookback and never forces
    custom_window = args.lookback_minutes is not None or args.force
    if args.job == "payments" and args.environment == "all" and custom_window:
        parser.error("--lookback-minutes and --force need a single --environment")
    return 0 if asyncio.run(run(args)) else 1


if __name__ == "__main__":
    sys.exit(main())
