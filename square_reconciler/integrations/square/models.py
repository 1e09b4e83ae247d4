"""
Pydantic models for Square API and webhook payloads.
Raw snake_case JSON from Square is parsed into these models exactly once,
at the client boundary, before any reconciliation logic touches it.
"""

from datetime import datetime
from typing import Annotated, Any, Literal, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

logger = structlog.get_logger()


class SquareMoney(BaseModel):
    """Square Money object - amount is in CENTS (smallest currency unit)."""

    amount: int  # Amount in cents (e.g., 10000 = $100.00)
    currency: str = "USD"


class CatalogCategoryRef(BaseModel):
    """Category reference on an item (newer API shape)."""

    id: str
    ordinal: int | None = None


class CatalogItemVariationData(BaseModel):
    name: str | None = None
    item_id: str | None = None
    price_money: SquareMoney | None = None


class CatalogItemVariation(BaseModel):
    """Square catalog variation (one purchasable option of an item)."""

    type: Literal["ITEM_VARIATION"]
    id: str
    is_deleted: bool = False
    item_variation_data: CatalogItemVariationData | None = None


class CatalogItemData(BaseModel):
    """Square item data within a catalog object."""

    name: str | None = None
    description: str | None = None
    category_id: str | None = None  # legacy single-category field
    categories: list[CatalogCategoryRef] = Field(default_factory=list)
    # Kept raw so a single malformed variation can be dropped without losing the item
    variations: list[dict[str, Any]] = Field(default_factory=list)
    image_ids: list[str] = Field(default_factory=list)


class CatalogItem(BaseModel):
    """Square catalog object of type ITEM."""

    type: Literal["ITEM"]
    id: str
    is_deleted: bool = False
    item_data: CatalogItemData | None = None


class CatalogImageData(BaseModel):
    name: str | None = None
    url: str | None = None
    caption: str | None = None


class CatalogImage(BaseModel):
    type: Literal["IMAGE"]
    id: str
    is_deleted: bool = False
    image_data: CatalogImageData | None = None


class CatalogCategoryData(BaseModel):
    name: str = ""


class CatalogCategory(BaseModel):
    type: Literal["CATEGORY"]
    id: str
    is_deleted: bool = False
    category_data: CatalogCategoryData | None = None

    @property
    def name(self) -> str:
        return self.category_data.name if self.category_data else ""


CatalogObject = Annotated[
    Union[CatalogItem, CatalogItemVariation, CatalogImage, CatalogCategory],
    Field(discriminator="type"),
]

_catalog_object_adapter: TypeAdapter[CatalogObject] = TypeAdapter(CatalogObject)

SUPPORTED_CATALOG_TYPES = {"ITEM", "ITEM_VARIATION", "IMAGE", "CATEGORY"}


def parse_catalog_object(raw: dict[str, Any]) -> CatalogObject | None:
    """
    Parse one raw Square catalog object.

    Returns None for object types this service does not handle, or for objects
    that fail validation (logged, never raised).
    """
    if raw.get("type") not in SUPPORTED_CATALOG_TYPES:
        return None
    try:
        return _catalog_object_adapter.validate_python(raw)
    except ValidationError as e:
        logger.warning(
            "Dropping malformed Square catalog object",
            object_id=raw.get("id"),
            object_type=raw.get("type"),
            error=str(e),
        )
        return None


def parse_catalog_objects(raw_objects: list[dict[str, Any]] | None) -> list[CatalogObject]:
    parsed = (parse_catalog_object(raw) for raw in raw_objects or [])
    return [obj for obj in parsed if obj is not None]


class CatalogSearchResult(BaseModel):
    """Parsed result of a catalog search call."""

    objects: list[CatalogObject] = Field(default_factory=list)
    related_objects: list[CatalogObject] = Field(default_factory=list)
    cursor: str | None = None

    def items(self) -> list[CatalogItem]:
        return [o for o in self.objects if isinstance(o, CatalogItem)]

    def categories(self) -> list[CatalogCategory]:
        seen: dict[str, CatalogCategory] = {}
        for obj in [*self.objects, *self.related_objects]:
            if isinstance(obj, CatalogCategory):
                seen.setdefault(obj.id, obj)
        return list(seen.values())

    def images(self) -> dict[str, CatalogImage]:
        images: dict[str, CatalogImage] = {}
        for obj in [*self.objects, *self.related_objects]:
            if isinstance(obj, CatalogImage):
                images.setdefault(obj.id, obj)
        return images


class SquarePayment(BaseModel):
    """Square payment as returned by the payments list endpoint."""

    model_config = ConfigDict(extra="allow")

    id: str
    status: str | None = None
    order_id: str | None = None
    amount_money: SquareMoney | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def snapshot(self) -> dict[str, Any]:
        """Full JSON-safe copy of the payment, including fields not modelled here."""
        return self.model_dump(mode="json", exclude_none=True)


class WebhookEventData(BaseModel):
    type: str
    id: str
    object: dict[str, Any] | None = None


class SquareWebhookEvent(BaseModel):
    """Envelope of every Square webhook notification."""

    model_config = ConfigDict(extra="allow")

    merchant_id: str
    type: str
    event_id: str
    created_at: datetime
    data: WebhookEventData
