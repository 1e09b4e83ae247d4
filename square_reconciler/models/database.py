"""
Pydantic models for Supabase database tables.
These models represent the structure of data stored in Supabase.
"""
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"


class Order(BaseModel):
    """Model for orders table (only the columns the reconciler reads)."""
    id: UUID
    square_order_id: Optional[str] = None
    payment_status: PaymentStatus = PaymentStatus.PENDING
    created_at: Optional[datetime] = None


class Payment(BaseModel):
    """Model for payments table."""
    id: Optional[UUID] = None
    square_payment_id: str
    order_id: UUID
    amount: Decimal = Decimal("0")
    status: PaymentStatus = PaymentStatus.PENDING
    raw_data: Optional[Dict[str, Any]] = None
    notes: Optional[str] = None  # local-only, never touched by sync
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PaymentSyncStatus(BaseModel):
    """Model for payment_sync_status table."""
    id: Optional[UUID] = None
    sync_id: str
    sync_type: str
    merchant_id: Optional[str] = None
    start_time: datetime
    end_time: Optional[datetime] = None
    payments_found: int = 0
    payments_processed: int = 0
    payments_failed: int = 0
    error_details: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None


class SyncHistory(BaseModel):
    """Model for sync_history table (catalog sync runs)."""
    id: Optional[UUID] = None
    sync_id: str
    sync_type: str = "catalog"
    status: str = "RUNNING"  # RUNNING, COMPLETED, FAILED
    start_time: datetime
    end_time: Optional[datetime] = None
    products_synced: int = 0
    error_count: int = 0
    error_details: Optional[Dict[str, Any]] = None
    message: Optional[str] = None


class Category(BaseModel):
    """Model for categories table."""
    id: Optional[UUID] = None
    name: str
    slug: str
    description: Optional[str] = None
    order: int = 0
    is_active: bool = True


class Variant(BaseModel):
    """Model for variants table."""
    id: Optional[UUID] = None
    product_id: Optional[UUID] = None
    name: str
    price: Optional[Decimal] = None
    square_variant_id: Optional[str] = None


class Product(BaseModel):
    """Model for products table."""
    id: Optional[UUID] = None
    square_id: Optional[str] = None
    slug: str
    name: str
    description: str = ""
    price: Decimal = Decimal("0")
    images: List[str] = Field(default_factory=list)
    ordinal: Optional[int] = None
    category_id: Optional[UUID] = None
    active: bool = True
    variants: List[Variant] = Field(default_factory=list)
    updated_at: Optional[datetime] = None


class CateringItem(BaseModel):
    """Model for catering_items table (packaged catering offerings)."""
    id: UUID
    name: str
    square_product_id: Optional[str] = None
    square_category: Optional[str] = None
    image_url: Optional[str] = None
