"""In-memory collaborators shared by the test modules."""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from square_reconciler.integrations.square.models import (
    CatalogSearchResult,
    SquarePayment,
)
from square_reconciler.models.database import (
    Category,
    CateringItem,
    Order,
    Payment,
    PaymentStatus,
    PaymentSyncStatus,
    Product,
    SyncHistory,
    Variant,
)
from square_reconciler.services.supabase_service import UniqueConstraintError


class FakeSupabase:
    """In-memory stand-in for SupabaseService with the same method contracts."""

    def __init__(self):
        self.orders: Dict[UUID, Order] = {}
        self.payments: Dict[str, Payment] = {}
        self.sync_status: Dict[str, Dict[str, Any]] = {}
        self.sync_history: Dict[str, Dict[str, Any]] = {}
        self.categories: List[Category] = []
        self.products: Dict[UUID, Product] = {}
        self.catering_items: Dict[UUID, CateringItem] = {}
        self.metrics: List[Dict[str, Any]] = []
        self.failing_payment_ids: set = set()
        self.flaky_payment_ids: set = set()
        self.create_product_calls = 0

    # Helpers for arranging state

    def add_order(self, square_order_id: str, status: PaymentStatus = PaymentStatus.PENDING) -> Order:
        order = Order(
            id=uuid4(),
            square_order_id=square_order_id,
            payment_status=status,
            created_at=datetime.now(timezone.utc),
        )
        self.orders[order.id] = order
        return order

    def add_product(self, **fields) -> Product:
        fields.setdefault("id", uuid4())
        product = Product(**fields)
        self.products[product.id] = product
        return product

    def product_by_square_id(self, square_id: str) -> Optional[Product]:
        return next((p for p in self.products.values() if p.square_id == square_id), None)

    # Payment sync status

    def create_payment_sync_status(self, status: PaymentSyncStatus) -> PaymentSyncStatus:
        self.sync_status[status.sync_id] = status.model_dump()
        return status

    def update_payment_sync_status(self, sync_id: str, updates: Dict[str, Any]) -> None:
        self.sync_status[sync_id].update(updates)

    def get_payment_sync_history(self, limit: int = 20) -> List[PaymentSyncStatus]:
        rows = [PaymentSyncStatus(**row) for row in self.sync_status.values()]
        return sorted(rows, key=lambda r: r.start_time, reverse=True)[:limit]

    def create_sync_history(self, history: SyncHistory) -> None:
        self.sync_history[history.sync_id] = history.model_dump()

    def update_sync_history(self, sync_id: str, updates: Dict[str, Any]) -> None:
        self.sync_history[sync_id].update(updates)

    # Payments and orders

    def find_missing_payments(self, square_payment_ids):
        existing = [self.payments[i] for i in square_payment_ids if i in self.payments]
        missing = [i for i in square_payment_ids if i not in self.payments]
        return missing, existing

    def find_orders_without_payments(self, since: datetime, limit: int = 50) -> List[Order]:
        paid_orders = {p.order_id for p in self.payments.values()}
        return [o for o in self.orders.values() if o.id not in paid_orders][:limit]

    def find_order_by_square_order_id(self, square_order_id: str) -> Optional[Order]:
        return next((o for o in self.orders.values() if o.square_order_id == square_order_id), None)

    def create_payment_from_square_data(self, payment: Payment) -> Payment:
        if payment.square_payment_id in self.flaky_payment_ids:
            self.flaky_payment_ids.discard(payment.square_payment_id)
            raise RuntimeError(f"connection reset for {payment.square_payment_id}")
        if payment.square_payment_id in self.failing_payment_ids:
            raise RuntimeError(f"insert failed for {payment.square_payment_id}")
        if payment.square_payment_id in self.payments:
            raise UniqueConstraintError("duplicate key", "payments_square_payment_id_key")
        created = payment.model_copy(update={"id": uuid4()})
        self.payments[payment.square_payment_id] = created
        return created

    def update_payment_from_square_data(self, square_payment_id, status, raw_data) -> None:
        current = self.payments[square_payment_id]
        self.payments[square_payment_id] = current.model_copy(
            update={"status": status, "raw_data": raw_data}
        )

    def update_order_payment_status(self, order_id: UUID, status: PaymentStatus) -> None:
        self.orders[order_id] = self.orders[order_id].model_copy(update={"payment_status": status})

    # Categories

    def get_category_by_slug(self, slug: str) -> Optional[Category]:
        return next((c for c in self.categories if c.slug == slug), None)

    def get_category_by_name(self, name: str) -> Optional[Category]:
        return next((c for c in self.categories if c.name == name), None)

    def create_category(self, category: Category) -> Category:
        if any(c.slug == category.slug for c in self.categories):
            raise UniqueConstraintError("duplicate key", "categories_slug_key")
        created = category.model_copy(update={"id": uuid4()})
        self.categories.append(created)
        return created

    # Products

    def get_product_by_square_id(self, square_id: str) -> Optional[Product]:
        return self.product_by_square_id(square_id)

    def get_product_by_variant_square_id(self, square_variant_id: str) -> Optional[Product]:
        return next(
            (
                p
                for p in self.products.values()
                if any(v.square_variant_id == square_variant_id for v in p.variants)
            ),
            None,
        )

    def slug_exists(self, slug: str) -> bool:
        return any(p.slug == slug for p in self.products.values())

    def create_product(self, product: Product) -> Product:
        self.create_product_calls += 1
        if self.slug_exists(product.slug):
            raise UniqueConstraintError("duplicate key", "products_slug_key")
        for variant in product.variants:
            if variant.square_variant_id and self.get_product_by_variant_square_id(
                variant.square_variant_id
            ):
                raise UniqueConstraintError("duplicate key", "variants_square_variant_id_key")
        created = product.model_copy(update={"id": uuid4()})
        self.products[created.id] = created
        return created

    def update_product(self, product_id: UUID, fields: Dict[str, Any]) -> None:
        current = self.products[product_id]
        self.products[product_id] = Product.model_validate({**current.model_dump(), **fields})

    def replace_variants(self, product_id: UUID, variants: List[Variant]) -> List[Variant]:
        current = self.products[product_id]
        self.products[product_id] = current.model_copy(update={"variants": list(variants)})
        return list(variants)

    def list_square_products(self) -> List[Product]:
        return [p for p in self.products.values() if p.square_id]

    def update_product_ordinal(self, product_id: UUID, ordinal: Optional[int]) -> None:
        self.products[product_id] = self.products[product_id].model_copy(update={"ordinal": ordinal})

    # Catering

    def add_catering_item(self, name: str, image_url: Optional[str] = None) -> CateringItem:
        item = CateringItem(id=uuid4(), name=name, image_url=image_url)
        self.catering_items[item.id] = item
        return item

    def list_catering_items(self) -> List[CateringItem]:
        return list(self.catering_items.values())

    def update_catering_item(self, item_id: UUID, fields: Dict[str, Any]) -> None:
        self.catering_items[item_id] = self.catering_items[item_id].model_copy(update=fields)

    def record_webhook_metric(self, metric: Dict[str, Any]) -> None:
        self.metrics.append(metric)


class FakeAlerts:
    """Records alerts and metrics instead of posting to Slack."""

    def __init__(self):
        self.alerts: List[Dict[str, Any]] = []
        self.metrics: List[Dict[str, Any]] = []

    async def send_webhook_alert(self, severity, title, message, details=None) -> bool:
        self.alerts.append(
            {"severity": severity, "title": title, "message": message, "details": details}
        )
        return True

    async def track_metric(self, type, environment, valid, duration, **extra) -> None:
        self.metrics.append(
            {"type": type, "environment": environment, "valid": valid, "duration": duration, **extra}
        )

    def severities(self) -> List[str]:
        return [a["severity"] for a in self.alerts]


class FakeSquareClient:
    """Square API double driven by canned payments, catalog data and live image URLs."""

    def __init__(
        self,
        environment: str = "production",
        payments: Optional[List[SquarePayment]] = None,
        page_size: int = 100,
        catalog: Optional[CatalogSearchResult] = None,
        live_images: Optional[set] = None,
        error: Optional[Exception] = None,
    ):
        self.environment = environment
        self.payments = payments or []
        self.page_size = page_size
        self.catalog = catalog or CatalogSearchResult()
        self.live_images = live_images or set()
        self.error = error
        self.list_calls = 0
        self.probed: List[str] = []
        self.retrieved: List[str] = []
        self.closed = False

    async def list_payments(self, begin_time, cursor=None, sort_order="DESC"):
        self.list_calls += 1
        if self.error:
            raise self.error
        start = int(cursor or 0)
        page = self.payments[start:start + self.page_size]
        next_cursor = start + self.page_size
        return page, (str(next_cursor) if next_cursor < len(self.payments) else None)

    async def search_catalog_all(self, object_types, include_related_objects=True, max_pages=10):
        if self.error:
            raise self.error
        return self.catalog

    async def retrieve_catalog_object(self, object_id):
        self.retrieved.append(object_id)
        return None

    async def image_exists(self, url: str) -> bool:
        self.probed.append(url)
        return url in self.live_images

    async def close(self):
        self.closed = True


def make_payment(
    payment_id: str,
    order_id: Optional[str] = None,
    status: str = "COMPLETED",
    amount: int = 1250,
) -> SquarePayment:
    return SquarePayment.model_validate(
        {
            "id": payment_id,
            "status": status,
            "order_id": order_id,
            "amount_money": {"amount": amount, "currency": "USD"},
            "created_at": datetime.now(timezone.utc).isoformat(),
            "source_type": "CARD",
        }
    )



class FakeRedis:
    """Just enough of redis.asyncio.Redis for the dedup store."""

    def __init__(self):
        self.values: Dict[str, str] = {}
        self.ttls: Dict[str, int] = {}
        self.closed = False

    async def exists(self, *keys) -> int:
        return sum(1 for k in keys if k in self.values)

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.values:
            return None
        self.values[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def delete(self, *keys) -> int:
        removed = 0
        for k in keys:
            removed += self.values.pop(k, None) is not None
            self.ttls.pop(k, None)
        return removed

    async def aclose(self):
        self.closed = True
