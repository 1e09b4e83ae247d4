"""
Request and result models for payment and catalog sync runs.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from square_reconciler.models.webhook import SquareEnvironment


class SyncType(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    WEBHOOK_FALLBACK = "webhook_fallback"


class PaymentSyncRequest(BaseModel):
    lookback_minutes: int = 60
    sync_type: SyncType = SyncType.MANUAL
    merchant_id: Optional[str] = None
    force_sync: bool = False
    batch_size: int = Field(default=10, ge=1)


class PaymentSyncError(BaseModel):
    payment_id: str
    error: str


class PaymentSyncMetadata(BaseModel):
    environment: SquareEnvironment
    sync_type: SyncType
    merchant_id: Optional[str] = None


class PaymentSyncResult(BaseModel):
    """
    Outcome of one payment sync run.

    Every payment found ends in exactly one of processed, failed or skipped:
    ``payments_processed + payments_failed + payments_skipped == payments_found``.
    Force-sync updates and orphan relinks count toward ``payments_processed``
    only when they touch a payment that was not already counted.
    """
    success: bool = False
    sync_id: str
    payments_found: int = 0
    payments_processed: int = 0
    payments_failed: int = 0
    payments_skipped: int = 0
    errors: List[PaymentSyncError] = Field(default_factory=list)
    duration: float = 0.0  # milliseconds
    start_time: datetime
    end_time: datetime
    metadata: PaymentSyncMetadata


class CatalogSyncResult(BaseModel):
    success: bool
    message: str = ""
    synced_products: int = 0
    errors: List[str] = Field(default_factory=list)
    debug_info: Dict[str, Any] = Field(default_factory=dict)


class CateringLinkResult(BaseModel):
    categories: int = 0
    linked: int = 0
    images_backfilled: int = 0
    failed: int = 0


class OrdinalSyncResult(BaseModel):
    success: bool
    checked: int = 0
    updated: int = 0
    skipped: int = 0
    errors: List[str] = Field(default_factory=list)
