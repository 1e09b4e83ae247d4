"""
Supabase service layer for database operations.
Owns every read/write the reconciler performs: payment sync status, payments,
orders, categories, products/variants, catering items and sync history.
"""

from typing import List, Optional, Dict, Any, Tuple
from uuid import UUID
from datetime import datetime, timezone
from supabase import create_client, Client
from postgrest.exceptions import APIError
import structlog
from square_reconciler.config import settings
from square_reconciler.models.database import (
    CateringItem,
    Category,
    Order,
    Payment,
    PaymentStatus,
    PaymentSyncStatus,
    Product,
    SyncHistory,
    Variant,
)

logger = structlog.get_logger()

UNIQUE_VIOLATION = "23505"


class UniqueConstraintError(Exception):
    """Raised when an insert/update violates a unique constraint."""

    def __init__(self, message: str, constraint: str = ""):
        super().__init__(message)
        self.constraint = constraint

    @property
    def is_variant_conflict(self) -> bool:
        return "square_variant_id" in self.constraint

    @property
    def is_slug_conflict(self) -> bool:
        return "slug" in self.constraint


def _translate(e: APIError) -> Exception:
    if e.code == UNIQUE_VIOLATION:
        constraint = " ".join(str(part) for part in (e.message, e.details) if part)
        return UniqueConstraintError(e.message or "unique constraint violated", constraint)
    return e


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class SupabaseService:
    """Service for interacting with Supabase database."""

    def __init__(self, client: Optional[Client] = None):
        """Initialize Supabase client."""
        self.client: Client = client or create_client(
            settings.supabase_url, settings.supabase_service_key
        )

    # Payment sync status

    def create_payment_sync_status(self, status: PaymentSyncStatus) -> PaymentSyncStatus:
        try:
            result = (
                self.client.table("payment_sync_status")
                .insert(status.model_dump(mode="json", exclude_none=True, exclude={"id"}))
                .execute()
            )
            if result.data:
                return PaymentSyncStatus(**result.data[0])
            raise Exception("No data returned from insert")
        except Exception as e:
            logger.error("Failed to create payment sync status", sync_id=status.sync_id, error=str(e))
            raise

    def update_payment_sync_status(self, sync_id: str, updates: Dict[str, Any]) -> None:
        """
        Update a payment sync status row.

        Args:
            sync_id: Sync run identifier
            updates: Column values (datetimes are serialized here)
        """
        payload = {
            k: (v.isoformat() if isinstance(v, datetime) else v) for k, v in updates.items()
        }
        try:
            self.client.table("payment_sync_status").update(payload).eq("sync_id", sync_id).execute()
        except Exception as e:
            logger.error("Failed to update payment sync status", sync_id=sync_id, error=str(e))
            raise

    def get_payment_sync_history(self, limit: int = 20) -> List[PaymentSyncStatus]:
        result = (
            self.client.table("payment_sync_status")
            .select("*")
            .order("start_time", desc=True)
            .limit(limit)
            .execute()
        )
        return [PaymentSyncStatus(**row) for row in result.data or []]

    # Catalog sync history

    def create_sync_history(self, history: SyncHistory) -> None:
        try:
            self.client.table("sync_history").insert(
                history.model_dump(mode="json", exclude_none=True, exclude={"id"})
            ).execute()
        except Exception as e:
            logger.error("Failed to create sync history", sync_id=history.sync_id, error=str(e))
            raise

    def update_sync_history(self, sync_id: str, updates: Dict[str, Any]) -> None:
        payload = {
            k: (v.isoformat() if isinstance(v, datetime) else v) for k, v in updates.items()
        }
        try:
            self.client.table("sync_history").update(payload).eq("sync_id", sync_id).execute()
        except Exception as e:
            logger.error("Failed to update sync history", sync_id=sync_id, error=str(e))
            raise

    # Payments and orders

    def find_missing_payments(
        self, square_payment_ids: List[str]
    ) -> Tuple[List[str], List[Payment]]:
        """
        Split Square payment IDs into those with and without a local record.
        Uses one IN query regardless of how many IDs are passed.

        Returns:
            Tuple of (missing square payment IDs, existing Payment records)
        """
        if not square_payment_ids:
            return [], []

        result = (
            self.client.table("payments")
            .select("*")
            .in_("square_payment_id", square_payment_ids)
            .execute()
        )
        existing = [Payment(**row) for row in result.data or []]
        existing_ids = {p.square_payment_id for p in existing}
        missing = [pid for pid in square_payment_ids if pid not in existing_ids]
        return missing, existing

    def find_orders_without_payments(self, since: datetime, limit: int = 50) -> List[Order]:
        """Orders created since `since` that have no payment row at all."""
        # Anti-join on the embedded relation: PostgREST drops orders that have payments
        result = (
            self.client.table("orders")
            .select("id, square_order_id, payment_status, created_at, payments(id)")
            .gte("created_at", since.isoformat())
            .is_("payments", "null")
            .order("created_at", desc=True)
            .limit(limit)
            .execute()
        )
        return [
            Order(**{k: v for k, v in row.items() if k != "payments"})
            for row in result.data or []
        ]

    def find_order_by_square_order_id(self, square_order_id: str) -> Optional[Order]:
        result = (
            self.client.table("orders")
            .select("id, square_order_id, payment_status, created_at")
            .eq("square_order_id", square_order_id)
            .limit(1)
            .execute()
        )
        if result.data:
            return Order(**result.data[0])
        return None

    def create_payment_from_square_data(self, payment: Payment) -> Payment:
        try:
            result = (
                self.client.table("payments")
                .insert(payment.model_dump(mode="json", exclude_none=True, exclude={"id"}))
                .execute()
            )
        except APIError as e:
            raise _translate(e) from e
        if result.data:
            return Payment(**result.data[0])
        raise Exception("No data returned from insert")

    def update_payment_from_square_data(
        self, square_payment_id: str, status: PaymentStatus, raw_data: Dict[str, Any]
    ) -> None:
        """Refresh status and raw snapshot only; local fields such as notes are left alone."""
        self.client.table("payments").update(
            {"status": status.value, "raw_data": raw_data, "updated_at": _utcnow()}
        ).eq("square_payment_id", square_payment_id).execute()

    def update_order_payment_status(self, order_id: UUID, status: PaymentStatus) -> None:
        self.client.table("orders").update(
            {"payment_status": status.value, "updated_at": _utcnow()}
        ).eq("id", str(order_id)).execute()

    # Categories

    def get_category_by_slug(self, slug: str) -> Optional[Category]:
        result = self.client.table("categories").select("*").eq("slug", slug).limit(1).execute()
        if result.data:
            return Category(**result.data[0])
        return None

    def get_category_by_name(self, name: str) -> Optional[Category]:
        result = self.client.table("categories").select("*").eq("name", name).limit(1).execute()
        if result.data:
            return Category(**result.data[0])
        return None

    def create_category(self, category: Category) -> Category:
        try:
            result = (
                self.client.table("categories")
                .insert(category.model_dump(mode="json", exclude_none=True, exclude={"id"}))
                .execute()
            )
        except APIError as e:
            raise _translate(e) from e
        if result.data:
            return Category(**result.data[0])
        raise Exception("No data returned from insert")

    # Products and variants

    def get_product_by_square_id(self, square_id: str) -> Optional[Product]:
        result = (
            self.client.table("products")
            .select("*, variants(*)")
            .eq("square_id", square_id)
            .limit(1)
            .execute()
        )
        if result.data:
            return Product(**result.data[0])
        return None

    def get_product_by_variant_square_id(self, square_variant_id: str) -> Optional[Product]:
        result = (
            self.client.table("variants")
            .select("product_id")
            .eq("square_variant_id", square_variant_id)
            .limit(1)
            .execute()
        )
        if not result.data:
            return None
        product = (
            self.client.table("products")
            .select("*, variants(*)")
            .eq("id", result.data[0]["product_id"])
            .limit(1)
            .execute()
        )
        if product.data:
            return Product(**product.data[0])
        return None

    def slug_exists(self, slug: str) -> bool:
        result = self.client.table("products").select("id").eq("slug", slug).limit(1).execute()
        return bool(result.data)

    def create_product(self, product: Product) -> Product:
        """
        Insert a product and its variants.
        If the variant insert fails the product row is removed again, so a
        failed create never leaves a variant-less duplicate behind.
        """
        row = product.model_dump(mode="json", exclude_none=True, exclude={"id", "variants"})
        try:
            result = self.client.table("products").insert(row).execute()
        except APIError as e:
            raise _translate(e) from e
        if not result.data:
            raise Exception("No data returned from insert")
        created = Product(**result.data[0])

        try:
            created.variants = self._insert_variants(created.id, product.variants)
        except Exception:
            self.client.table("products").delete().eq("id", str(created.id)).execute()
            raise
        return created

    def update_product(self, product_id: UUID, fields: Dict[str, Any]) -> None:
        payload = dict(fields)
        payload["updated_at"] = _utcnow()
        try:
            self.client.table("products").update(payload).eq("id", str(product_id)).execute()
        except APIError as e:
            raise _translate(e) from e

    def replace_variants(self, product_id: UUID, variants: List[Variant]) -> List[Variant]:
        """
        Delete every variant of the product, then insert the given set.
        If the insert fails the previous variants are put back before the error
        is raised, so a product is never left without variants.
        """
        previous = (
            self.client.table("variants").select("*").eq("product_id", str(product_id)).execute()
        ).data or []
        self.client.table("variants").delete().eq("product_id", str(product_id)).execute()
        try:
            return self._insert_variants(product_id, variants)
        except Exception:
            if previous:
                try:
                    self.client.table("variants").insert(previous).execute()
                except APIError as restore_error:
                    logger.error(
                        "Failed to restore previous variants",
                        product_id=str(product_id),
                        error=str(restore_error),
                    )
            raise

    def _insert_variants(self, product_id: Optional[UUID], variants: List[Variant]) -> List[Variant]:
        if not variants:
            return []
        rows = []
        for variant in variants:
            row = variant.model_dump(mode="json", exclude={"id", "product_id"})
            row["product_id"] = str(product_id)
            rows.append(row)
        try:
            result = self.client.table("variants").insert(rows).execute()
        except APIError as e:
            raise _translate(e) from e
        return [Variant(**row) for row in result.data or []]

    def list_square_products(self) -> List[Product]:
        result = (
            self.client.table("products")
            .select("id, square_id, slug, name, ordinal")
            .not_.is_("square_id", "null")
            .execute()
        )
        return [Product(**row) for row in result.data or []]

    def update_product_ordinal(self, product_id: UUID, ordinal: Optional[int]) -> None:
        self.client.table("products").update(
            {"ordinal": ordinal, "updated_at": _utcnow()}
        ).eq("id", str(product_id)).execute()

    # Catering items

    def list_catering_items(self) -> List[CateringItem]:
        result = self.client.table("catering_items").select("*").execute()
        return [CateringItem(**row) for row in result.data or []]

    def update_catering_item(self, item_id: UUID, fields: Dict[str, Any]) -> None:
        self.client.table("catering_items").update(fields).eq("id", str(item_id)).execute()

    # Metrics

    def record_webhook_metric(self, metric: Dict[str, Any]) -> None:
        self.client.table("webhook_metrics").insert(metric).execute()
