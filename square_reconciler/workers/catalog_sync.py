"""
Catalog sync engine - mirrors the Square catalog into local products.

One batched catalog search feeds a chunked per-item upsert (category, price,
variants, verified images), followed by a best-effort catering linking pass.
"""
import asyncio
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from square_reconciler.config import settings
from square_reconciler.integrations.square.models import (
    CatalogCategory,
    CatalogImage,
    CatalogItem,
)
from square_reconciler.integrations.square.transformer import (
    SquareTransformError,
    SquareTransformer,
)
from square_reconciler.models.database import Category, Product, SyncHistory, Variant
from square_reconciler.models.sync import CatalogSyncResult, CateringLinkResult, OrdinalSyncResult
from square_reconciler.services.slack_service import AlertService, get_alert_service
from square_reconciler.services.square_client import SquareClient
from square_reconciler.services.supabase_service import SupabaseService, UniqueConstraintError

logger = structlog.get_logger()

CATALOG_OBJECT_TYPES = ["ITEM", "IMAGE", "CATEGORY"]
DEFAULT_CATEGORY_NAME = "Default"
DEFAULT_CATEGORY_SLUG = "default"

CREATED = "created"
UPDATED = "updated"

# Serializes full catalog syncs within one process
catalog_sync_lock = asyncio.Lock()


def _timestamp_ms() -> int:
    return int(time.time() * 1000)


class CatalogSyncEngine:
    """Upserts Square catalog items into the local product tables."""

    def __init__(
        self,
        square_client: Optional[SquareClient] = None,
        supabase_service: Optional[SupabaseService] = None,
        alert_service: Optional[AlertService] = None,
        batch_size: Optional[int] = None,
        batch_delay_seconds: Optional[float] = None,
        lock: Optional[asyncio.Lock] = None,
    ):
        """
        Args:
            square_client: Square API client (defaults to the USE_SQUARE_SANDBOX environment)
            supabase_service: Persistence layer
            alert_service: Alert and metric side channel
            batch_size: Items upserted concurrently per chunk
            batch_delay_seconds: Pause between chunks
            lock: Advisory lock held for the whole sync run
        """
        self._owns_client = square_client is None
        self.square_client = square_client or SquareClient.from_settings()
        self.supabase_service = supabase_service or SupabaseService()
        self.alert_service = alert_service or get_alert_service()
        self.batch_size = batch_size or settings.catalog_sync_batch_size
        self.batch_delay_seconds = (
            batch_delay_seconds
            if batch_delay_seconds is not None
            else settings.catalog_sync_batch_delay_seconds
        )
        self.lock = lock
        self._category_cache: Dict[str, Category] = {}

    async def close(self):
        if self._owns_client:
            await self.square_client.close()

    async def _db(self, fn: Callable, *args, **kwargs):
        return await asyncio.to_thread(fn, *args, **kwargs)

    async def sync_catalog(self) -> CatalogSyncResult:
        """Run a full catalog sync. Never raises."""
        if self.lock is None:
            return await self._sync_catalog()
        if self.lock.locked():
            logger.info("Catalog sync already running, waiting for lock")
        async with self.lock:
            return await self._sync_catalog()

    async def _sync_catalog(self) -> CatalogSyncResult:
        sync_id = f"catalog_{_timestamp_ms()}"
        started = time.perf_counter()
        errors: List[str] = []
        debug_info: Dict[str, object] = {"sync_id": sync_id}
        synced = 0
        self._category_cache = {}

        log = logger.bind(sync_id=sync_id, environment=self.square_client.environment)
        log.info("Starting Square catalog sync")
        await self._record_history(
            "create",
            SyncHistory(sync_id=sync_id, start_time=datetime.now(timezone.utc)),
        )

        try:
            catalog = await self.square_client.search_catalog_all(
                CATALOG_OBJECT_TYPES, include_related_objects=True
            )
            categories = {c.id: c for c in catalog.categories()}
            images = catalog.images()

            all_items = catalog.items()
            items = [i for i in all_items if i.item_data is not None and not i.is_deleted]
            catering_categories = [
                c for c in categories.values() if SquareTransformer.is_catering_category(c.name)
            ]

            debug_info.update(
                items_found=len(all_items),
                items_skipped=len(all_items) - len(items),
                related_objects_found=len(catalog.related_objects),
                categories_found=len(categories),
                catering_categories=[c.name for c in catering_categories],
            )
            log.info(
                "Fetched Square catalog",
                items=len(items),
                categories=len(categories),
                images=len(images),
            )

            outcomes: Dict[str, int] = {CREATED: 0, UPDATED: 0}
            for start in range(0, len(items), self.batch_size):
                chunk = items[start:start + self.batch_size]
                results = await asyncio.gather(
                    *(self._sync_item(item, categories, images) for item in chunk),
                    return_exceptions=True,
                )
                for item, outcome in zip(chunk, results):
                    if isinstance(outcome, Exception):
                        log.error("Failed to sync catalog item", item_id=item.id, error=str(outcome))
                        errors.append(f"{item.id}: {outcome}")
                    else:
                        synced += 1
                        outcomes[outcome] += 1

                if start + self.batch_size < len(items) and self.batch_delay_seconds:
                    await asyncio.sleep(self.batch_delay_seconds)

            debug_info.update(products_created=outcomes[CREATED], products_updated=outcomes[UPDATED])

            if catering_categories:
                try:
                    link_result = await self.link_catering_items(catering_categories, items, images)
                    debug_info["catering"] = link_result.model_dump()
                except Exception as e:
                    log.error("Catering linking pass failed", error=str(e))
                    debug_info["catering_error"] = str(e)

            result = CatalogSyncResult(
                success=True,
                message="Products synced successfully",
                synced_products=synced,
                errors=errors,
                debug_info=debug_info,
            )
            log.info("Catalog sync completed", synced=synced, errors=len(errors))
            await self._record_history(
                "update",
                sync_id,
                {
                    "status": "COMPLETED",
                    "end_time": datetime.now(timezone.utc),
                    "products_synced": synced,
                    "error_count": len(errors),
                    "error_details": {"errors": errors} if errors else None,
                    "message": result.message,
                },
            )

        except Exception as e:
            log.error("Catalog sync failed", error=str(e), error_type=type(e).__name__)
            errors.append(str(e))
            result = CatalogSyncResult(
                success=False,
                message="An error occurred while syncing products",
                synced_products=synced,
                errors=errors,
                debug_info=debug_info,
            )
            await self._record_history(
                "update",
                sync_id,
                {
                    "status": "FAILED",
                    "end_time": datetime.now(timezone.utc),
                    "products_synced": synced,
                    "error_count": len(errors),
                    "error_details": {"errors": errors},
                    "message": f"Catalog sync failed: {e}",
                },
            )
            try:
                await self.alert_service.send_webhook_alert(
                    severity="high",
                    title="Catalog Sync Failed",
                    message=f"Catalog sync {sync_id} failed",
                    details={"sync_id": sync_id, "error": str(e)},
                )
            except Exception as alert_error:
                log.warning("Alert delivery failed", error=str(alert_error))

        try:
            await self.alert_service.track_metric(
                type="catalog_sync",
                environment=self.square_client.environment,
                valid=result.success,
                duration=(time.perf_counter() - started) * 1000,
            )
        except Exception as e:
            log.warning("Metric tracking failed", error=str(e))

        return result

    async def _record_history(self, action: str, *args) -> None:
        fn = (
            self.supabase_service.create_sync_history
            if action == "create"
            else self.supabase_service.update_sync_history
        )
        try:
            await self._db(fn, *args)
        except Exception as e:
            logger.warning("Could not record catalog sync history", action=action, error=str(e))

    # Categories

    async def get_or_create_category(self, name: str, slug: Optional[str] = None) -> Category:
        """
        Race-safe get-or-create by name.

        A concurrent insert surfaces as a unique violation; the winner is then
        re-read by slug, and only if that also fails is a timestamped slug used.
        """
        if name in self._category_cache:
            return self._category_cache[name]

        category = await self._db(self.supabase_service.get_category_by_name, name)
        if category is None:
            slug = slug or SquareTransformer.slugify(name) or "category"
            try:
                category = await self._db(
                    self.supabase_service.create_category,
                    Category(name=name, slug=slug, description=f"Square category {name}"),
                )
                logger.info("Created category", name=name, slug=slug)
            except UniqueConstraintError:
                category = await self._db(self.supabase_service.get_category_by_slug, slug)
                if category is None:
                    fallback_slug = f"{slug}-{_timestamp_ms()}"
                    logger.warning("Category slug race lost, using timestamped slug", slug=fallback_slug)
                    category = await self._db(
                        self.supabase_service.create_category,
                        Category(name=name, slug=fallback_slug),
                    )

        self._category_cache[name] = category
        return category

    async def get_default_category(self) -> Category:
        return await self.get_or_create_category(DEFAULT_CATEGORY_NAME, DEFAULT_CATEGORY_SLUG)

    async def _resolve_local_category(
        self, item: CatalogItem, categories: Dict[str, CatalogCategory]
    ) -> Tuple[Category, Optional[int]]:
        category_id, ordinal = SquareTransformer.resolve_category_ref(item)
        square_category = categories.get(category_id) if category_id else None
        if square_category is None or not square_category.name:
            return await self.get_default_category(), ordinal
        return await self.get_or_create_category(square_category.name), ordinal

    # Images

    async def resolve_item_images(
        self, item: CatalogItem, images: Dict[str, CatalogImage]
    ) -> List[str]:
        """Verified image URLs for an item, in Square's image order."""
        urls: List[str] = []
        for image_id in item.item_data.image_ids if item.item_data else []:
            image = images.get(image_id)
            if image is None:
                try:
                    retrieved = await self.square_client.retrieve_catalog_object(image_id)
                except Exception as e:
                    logger.warning("Failed to retrieve image", image_id=image_id, error=str(e))
                    continue
                image = retrieved if isinstance(retrieved, CatalogImage) else None
            if image is None or image.image_data is None or not image.image_data.url:
                logger.warning("No usable image data", image_id=image_id, item_id=item.id)
                continue
            urls.append(image.image_data.url)

        verified = await asyncio.gather(*(self._first_live_url(url) for url in urls))
        resolved: List[str] = []
        for url in verified:
            if url and url not in resolved:
                resolved.append(url)
        return resolved

    async def _first_live_url(self, url: str) -> Optional[str]:
        for candidate in SquareTransformer.candidate_image_urls(url):
            if await self.square_client.image_exists(candidate):
                return candidate
        logger.warning("Image URL did not resolve", url=url)
        return None

    # Products

    async def _sync_item(
        self,
        item: CatalogItem,
        categories: Dict[str, CatalogCategory],
        images: Dict[str, CatalogImage],
    ) -> str:
        data = item.item_data
        name = (data.name or "").strip()
        if not name:
            raise SquareTransformError(f"Catalog item {item.id} has no name")

        category, ordinal = await self._resolve_local_category(item, categories)
        variants, base_price = SquareTransformer.process_variations(data.variations)
        square_images = await self.resolve_item_images(item, images)

        existing = await self._db(self.supabase_service.get_product_by_square_id, item.id)
        fields = {
            "name": name,
            "price": str(base_price),
            "ordinal": ordinal,
            "category_id": str(category.id) if category.id else None,
        }
        if data.description is not None:
            fields["description"] = data.description

        if existing is not None:
            await self._update_existing(existing, fields, variants, square_images)
            logger.debug("Updated product", square_id=item.id, name=name)
            return UPDATED

        product = Product(
            square_id=item.id,
            slug=await self._unique_slug(name, item.id),
            name=name,
            description=data.description or "",
            price=base_price,
            images=SquareTransformer.resolve_images(None, square_images, name),
            ordinal=ordinal,
            category_id=category.id,
            variants=variants,
        )
        return await self._create_product(product, fields, variants, square_images)

    async def _update_existing(
        self,
        existing: Product,
        fields: Dict[str, object],
        variants: List[Variant],
        square_images: List[str],
    ) -> None:
        updates = dict(fields)
        updates["images"] = SquareTransformer.resolve_images(
            existing.images, square_images, str(fields["name"])
        )
        await self._db(self.supabase_service.update_product, existing.id, updates)
        await self._db(self.supabase_service.replace_variants, existing.id, variants)

    async def _unique_slug(self, name: str, square_id: str) -> str:
        slug = SquareTransformer.slugify(name) or square_id.lower()
        if await self._db(self.supabase_service.slug_exists, slug):
            slug = f"{slug}-{square_id[-6:].lower()}"
        return slug

    async def _create_product(
        self,
        product: Product,
        fields: Dict[str, object],
        variants: List[Variant],
        square_images: List[str],
    ) -> str:
        try:
            await self._db(self.supabase_service.create_product, product)
            logger.info("Created product", square_id=product.square_id, slug=product.slug)
            return CREATED
        except UniqueConstraintError as e:
            if e.is_variant_conflict:
                owner = await self._find_variant_owner(variants)
                if owner is None:
                    raise
                logger.warning(
                    "Variant already belongs to another product, updating it in place",
                    square_id=product.square_id,
                    product_id=str(owner.id),
                )
                await self._update_existing(
                    owner, {**fields, "square_id": product.square_id}, variants, square_images
                )
                return UPDATED

            retry_slug = f"{SquareTransformer.slugify(product.name) or product.square_id.lower()}-{_timestamp_ms()}"
            logger.warning("Product create collided, retrying with timestamped slug", slug=retry_slug)
            await self._db(
                self.supabase_service.create_product,
                product.model_copy(update={"slug": retry_slug}),
            )
            return CREATED

    async def _find_variant_owner(self, variants: List[Variant]) -> Optional[Product]:
        for variant in variants:
            if not variant.square_variant_id:
                continue
            owner = await self._db(
                self.supabase_service.get_product_by_variant_square_id, variant.square_variant_id
            )
            if owner is not None:
                return owner
        return None

    # Catering

    async def link_catering_items(
        self,
        catering_categories: List[CatalogCategory],
        items: List[CatalogItem],
        images: Dict[str, CatalogImage],
    ) -> CateringLinkResult:
        """
        Attach Square items from catering categories to local catering items
        whose normalized names match, backfilling missing images.
        Per-item failures are counted, never raised.
        """
        result = CateringLinkResult(categories=len(catering_categories))
        category_names = {c.id: c.name for c in catering_categories}

        by_name: Dict[str, Tuple[CatalogItem, str]] = {}
        for item in items:
            refs = [ref.id for ref in item.item_data.categories] or [item.item_data.category_id]
            category_name = next((category_names[r] for r in refs if r in category_names), None)
            if category_name and item.item_data.name:
                by_name.setdefault(
                    SquareTransformer.normalize_item_name(item.item_data.name),
                    (item, category_name),
                )

        if not by_name:
            return result

        catering_items = await self._db(self.supabase_service.list_catering_items)
        for catering_item in catering_items:
            match = by_name.get(SquareTransformer.normalize_item_name(catering_item.name))
            if match is None:
                continue
            square_item, category_name = match
            try:
                updates: Dict[str, object] = {
                    "square_product_id": square_item.id,
                    "square_category": category_name,
                }
                if not catering_item.image_url:
                    resolved = await self.resolve_item_images(square_item, images)
                    if resolved:
                        updates["image_url"] = resolved[0]
                        result.images_backfilled += 1
                await self._db(self.supabase_service.update_catering_item, catering_item.id, updates)
                result.linked += 1
            except Exception as e:
                result.failed += 1
                logger.warning(
                    "Failed to link catering item",
                    catering_item=catering_item.name,
                    square_id=square_item.id,
                    error=str(e),
                )

        logger.info(
            "Catering linking pass completed",
            linked=result.linked,
            images_backfilled=result.images_backfilled,
            failed=result.failed,
        )
        return result

    # Ordinals

    async def resync_ordinals(self) -> OrdinalSyncResult:
        """
        Copy Square's per-category display ordinals onto local products.
        Only differing ordinals are written; items without a Square ordinal are skipped.
        """
        result = OrdinalSyncResult(success=True)
        try:
            catalog = await self.square_client.search_catalog_all(
                ["ITEM"], include_related_objects=False
            )
            square_ordinals: Dict[str, Optional[int]] = {
                item.id: SquareTransformer.resolve_category_ref(item)[1] for item in catalog.items()
            }
            products = await self._db(self.supabase_service.list_square_products)
        except Exception as e:
            logger.error("Ordinal resync failed", error=str(e))
            return OrdinalSyncResult(success=False, errors=[str(e)])

        for product in products:
            result.checked += 1
            ordinal = square_ordinals.get(product.square_id)
            if ordinal is None:
                result.skipped += 1
                continue
            if ordinal == product.ordinal:
                continue
            try:
                await self._db(self.supabase_service.update_product_ordinal, product.id, ordinal)
                result.updated += 1
            except Exception as e:
                result.errors.append(f"{product.square_id}: {e}")
                logger.warning("Failed to update ordinal", square_id=product.square_id, error=str(e))

        logger.info(
            "Ordinal resync completed",
            checked=result.checked,
            updated=result.updated,
            skipped=result.skipped,
        )
        return result
