"""
Square data transformation service.
Pure helpers that turn parsed Square catalog objects into local product,
variant and category values. Nothing in here touches the network or database.
"""

import re
from decimal import Decimal
from typing import Any, List, Optional, Tuple

import structlog
from pydantic import ValidationError

from square_reconciler.integrations.square.models import CatalogItem, CatalogItemVariation
from square_reconciler.models.database import Variant

logger = structlog.get_logger()

SANDBOX_IMAGE_HOST = "items-images-sandbox.s3.amazonaws.com"
PRODUCTION_IMAGE_HOST = "items-images-production.s3.amazonaws.com"
SQUARE_IMAGE_MARKERS = (SANDBOX_IMAGE_HOST, PRODUCTION_IMAGE_HOST, "squarecdn.com", "square-")

# Words that mark an image as belonging to one specific flavour of a product
VARIANT_IMAGE_KEYWORDS = ("chocolate", "classic", "lemon", "gluten")

CATERING_PREFIX = "CATERING"


class SquareTransformError(Exception):
    """Raised when a Square catalog item cannot be turned into a product."""

    pass


class SquareTransformer:
    """Stateless transformations from Square catalog data to local records."""

    @staticmethod
    def slugify(name: str) -> str:
        """
        Create a URL-friendly slug.

        Example: "Alfajores - Classic (12)" -> "alfajores-classic-12"
        """
        slug = name.lower().strip()
        slug = re.sub(r"[^\w\s-]", "", slug)
        slug = re.sub(r"[\s_-]+", "-", slug)
        return slug.strip("-")

    @staticmethod
    def normalize_category_name(name: str) -> str:
        """
        Normalize a category name for comparison.
        "CATERING- BUFFET, STARTERS" -> "CATERING-BUFFET-STARTERS"
        """
        normalized = name.strip().upper()
        normalized = re.sub(r"\s*-\s*", "-", normalized)
        normalized = re.sub(r",\s*", "-", normalized)
        return re.sub(r"\s+", "-", normalized)

    @staticmethod
    def is_catering_category(name: Optional[str]) -> bool:
        if not name:
            return False
        normalized = SquareTransformer.normalize_category_name(name)
        return normalized == CATERING_PREFIX or normalized.startswith(f"{CATERING_PREFIX}-")

    @staticmethod
    def normalize_item_name(name: str) -> str:
        """
        Order-insensitive item name key.
        "Alfajores - Classic" and "Classic Alfajores" both become "alfajores classic".
        """
        words = re.sub(r"[^\w\s]", " ", name.lower()).split()
        return " ".join(sorted(words))

    @staticmethod
    def process_variations(raw_variations: List[dict[str, Any]]) -> Tuple[List[Variant], Decimal]:
        """
        Convert Square variations into local variants and pick the base price.

        The base price is the price of the first variation that has one, in
        major currency units. Variations without a price stay priceless.
        Malformed variations are dropped.

        Returns:
            Tuple of (variants, base price)
        """
        variants: List[Variant] = []
        base_price: Optional[Decimal] = None

        for raw in raw_variations:
            try:
                variation = CatalogItemVariation.model_validate(raw)
            except ValidationError as e:
                logger.warning(
                    "Skipping invalid variation",
                    variation_id=raw.get("id") if isinstance(raw, dict) else None,
                    error=str(e),
                )
                continue

            data = variation.item_variation_data
            if data is None or variation.is_deleted:
                logger.warning("Skipping variation without data", variation_id=variation.id)
                continue

            price = Decimal(data.price_money.amount) / 100 if data.price_money else None
            if base_price is None and price is not None:
                base_price = price

            variants.append(
                Variant(
                    name=data.name or "Regular",
                    price=price,
                    square_variant_id=variation.id,
                )
            )

        if not variants:
            logger.warning("No usable variations found for item")

        return variants, base_price if base_price is not None else Decimal("0")

    @staticmethod
    def resolve_category_ref(item: CatalogItem) -> Tuple[Optional[str], Optional[int]]:
        """
        Category id and display ordinal for an item.
        Prefers the categories array; falls back to the legacy category_id field.
        """
        data = item.item_data
        if data is None:
            return None, None
        if data.categories:
            first = data.categories[0]
            return first.id, first.ordinal
        return data.category_id, None

    @staticmethod
    def candidate_image_urls(url: str) -> List[str]:
        """
        URLs worth probing for one Square image, in order.
        Square serves the same file path from a sandbox and a production bucket.
        """
        if SANDBOX_IMAGE_HOST in url:
            sandbox_url = url
        elif PRODUCTION_IMAGE_HOST in url:
            sandbox_url = url.replace(PRODUCTION_IMAGE_HOST, SANDBOX_IMAGE_HOST)
        else:
            return [url]
        return [sandbox_url, sandbox_url.replace(SANDBOX_IMAGE_HOST, PRODUCTION_IMAGE_HOST)]

    @staticmethod
    def is_square_image(url: str) -> bool:
        return any(marker in url for marker in SQUARE_IMAGE_MARKERS)

    @staticmethod
    def has_variant_specific_images(product_name: str, images: List[str]) -> bool:
        name = product_name.lower()
        keywords = [k for k in VARIANT_IMAGE_KEYWORDS if k in name]
        if not keywords:
            return False
        filenames = [url.rsplit("/", 1)[-1].lower() for url in images]
        return any(k in filename for k in keywords for filename in filenames)

    @staticmethod
    def resolve_images(
        existing: Optional[List[str]],
        square_provided: List[str],
        product_name: str,
    ) -> List[str]:
        """
        Decide which images a product keeps after a sync.

        Args:
            existing: Current local images, or None for a brand-new product
            square_provided: Verified image URLs resolved from Square
            product_name: Used to spot flavour-specific curated images

        Returns:
            The image list to persist
        """
        if existing is None:
            return list(square_provided)

        if not square_provided:
            if existing:
                logger.debug(
                    "No Square images, keeping existing images",
                    product_name=product_name,
                    curated=not all(SquareTransformer.is_square_image(u) for u in existing),
                )
            return list(existing)

        if existing and SquareTransformer.has_variant_specific_images(product_name, existing):
            if len(square_provided) > len(existing):
                return list(square_provided)
            logger.debug("Keeping variant-specific images", product_name=product_name)
            return list(existing)

        return list(square_provided)
