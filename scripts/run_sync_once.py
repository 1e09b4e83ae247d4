"""
Single-pass reconciliation run for GitHub Actions.
Runs the scheduled payment sync across both Square environments, then
optionally refreshes catalog ordinals, then exits.
Designed to run on a cron schedule (every 15 minutes).

Reuses the worker entry points; no duplication of sync logic.
"""

import asyncio
import sys

import structlog

from square_reconciler.utils.logger import configure_logging
from square_reconciler.workers.catalog_sync import CatalogSyncEngine
from square_reconciler.workers.payment_sync import scheduled_payment_sync

configure_logging()
logger = structlog.get_logger()


async def main(with_ordinals: bool) -> None:
    logger.info("GitHub Actions reconciliation: starting")

    result = await scheduled_payment_sync()
    logger.info(
        "Scheduled payment sync done",
        sync_id=result.sync_id,
        success=result.success,
        found=result.payments_found,
        processed=result.payments_processed,
        failed=result.payments_failed,
    )

    ordinals_ok = True
    if with_ordinals:
        engine = CatalogSyncEngine()
        try:
            ordinals = await engine.resync_ordinals()
            ordinals_ok = ordinals.success
            logger.info("Ordinal resync done", updated=ordinals.updated, skipped=ordinals.skipped)
        finally:
            await engine.close()

    if not (result.success and ordinals_ok):
        logger.error("GitHub Actions reconciliation finished with failures")
        sys.exit(1)

    logger.info("GitHub Actions reconciliation: done")


if __name__ == "__main__":
    asyncio.run(main(with_ordinals="--with-ordinals" in sys.argv[1:]))
