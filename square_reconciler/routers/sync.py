"""
FastAPI router for admin and cron triggered sync runs.
"""
import asyncio
from typing import AsyncIterator, List

import structlog
from fastapi import APIRouter, Depends, Query

from square_reconciler.models.database import PaymentSyncStatus
from square_reconciler.models.sync import (
    CatalogSyncResult,
    OrdinalSyncResult,
    PaymentSyncRequest,
    PaymentSyncResult,
)
from square_reconciler.models.webhook import SquareEnvironment
from square_reconciler.routers.webhooks import PaymentServiceFactory, get_payment_service_factory
from square_reconciler.services.supabase_service import SupabaseService
from square_reconciler.workers.catalog_sync import CatalogSyncEngine, catalog_sync_lock
from square_reconciler.workers.payment_sync import scheduled_payment_sync

logger = structlog.get_logger()

router = APIRouter(prefix="/sync", tags=["sync"])


def get_supabase_service() -> SupabaseService:
    return SupabaseService()


async def get_catalog_engine() -> AsyncIterator[CatalogSyncEngine]:
    engine = CatalogSyncEngine(lock=catalog_sync_lock)
    try:
        yield engine
    finally:
        await engine.close()


@router.post("/payments", response_model=PaymentSyncResult)
async def sync_payments(
    request: PaymentSyncRequest,
    environment: SquareEnvironment = Query("production"),
    service_factory: PaymentServiceFactory = Depends(get_payment_service_factory),
):
    """Run one payment sync for a single Square environment."""
    logger.info("Manual payment sync requested", environment=environment)
    service = service_factory(environment)
    try:
        return await service.sync_payments(request)
    finally:
        await service.close()


@router.post("/payments/scheduled", response_model=PaymentSyncResult)
async def sync_payments_scheduled(
    service_factory: PaymentServiceFactory = Depends(get_payment_service_factory),
):
    """Cron entry point: short-lookback sync across every Square environment."""
    return await scheduled_payment_sync(service_factory=service_factory)


@router.get("/payments/history", response_model=List[PaymentSyncStatus])
async def payment_sync_history(
    limit: int = Query(20, ge=1, le=200),
    supabase_service: SupabaseService = Depends(get_supabase_service),
):
    return await asyncio.to_thread(supabase_service.get_payment_sync_history, limit)


@router.post("/catalog", response_model=CatalogSyncResult)
async def sync_catalog(engine: CatalogSyncEngine = Depends(get_catalog_engine)):
    """Mirror the Square catalog into local products."""
    return await engine.sync_catalog()


@router.post("/catalog/ordinals", response_model=OrdinalSyncResult)
async def sync_catalog_ordinals(engine: CatalogSyncEngine = Depends(get_catalog_engine)):
    """Refresh product display ordinals from Square without a full sync."""
    return await engine.resync_ordinals()
