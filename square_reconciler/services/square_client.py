"""
Square REST API client.
Wraps the catalog search/retrieve and payments list endpoints with httpx and
parses every response into the models in integrations.square.models.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx
import structlog

from square_reconciler.config import settings
from square_reconciler.integrations.square.models import (
    CatalogObject,
    CatalogSearchResult,
    SquarePayment,
    parse_catalog_object,
    parse_catalog_objects,
)
from square_reconciler.models.webhook import SquareEnvironment
from square_reconciler.utils.retry import retry_with_backoff

logger = structlog.get_logger()

SQUARE_PRODUCTION_URL = "https://connect.squareup.com"
SQUARE_SANDBOX_URL = "https://connect.squareupsandbox.com"


class SquareAPIError(Exception):
    """Raised when Square returns a non-2xx response."""

    def __init__(self, message: str, status_code: int, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.status_code = status_code
        self.errors = errors or []


class SquareClient:
    """Client for the subset of the Square API the reconciler consumes."""

    def __init__(
        self,
        environment: SquareEnvironment = "production",
        access_token: Optional[str] = None,
        base_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        image_check_timeout: Optional[float] = None,
    ):
        """
        Args:
            environment: 'production' or 'sandbox'
            access_token: Bearer token; defaults to the token configured for the environment
            base_url: Override for the API host
            http_client: Pre-built httpx client (tests inject a MockTransport here)
            image_check_timeout: Seconds allowed for an image existence probe
        """
        self.environment = environment
        if access_token is None:
            access_token = (
                settings.square_sandbox_token
                if environment == "sandbox"
                else settings.square_access_token
            )
        self.access_token = access_token.strip()
        self.base_url = (
            base_url
            or (SQUARE_SANDBOX_URL if environment == "sandbox" else SQUARE_PRODUCTION_URL)
        ).rstrip("/")
        self.image_check_timeout = image_check_timeout or settings.image_check_timeout_seconds
        # No default auth header: the same client probes third-party image hosts
        self.client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(30.0))

    @classmethod
    def for_environment(cls, environment: SquareEnvironment) -> "SquareClient":
        return cls(environment=environment)

    @classmethod
    def from_settings(cls) -> "SquareClient":
        """Client for the environment chosen by the explicit USE_SQUARE_SANDBOX flag."""
        return cls(environment="sandbox" if settings.use_square_sandbox else "production")

    async def close(self):
        await self.client.aclose()

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
            "Square-Version": settings.square_api_version,
        }

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        if not self.access_token:
            raise SquareAPIError(
                f"No Square access token configured for {self.environment}", status_code=401
            )

        response = await self.client.request(
            method, f"{self.base_url}{path}", headers=self._headers(), **kwargs
        )
        if response.status_code >= 400:
            try:
                errors = response.json().get("errors", [])
            except ValueError:
                errors = []
            detail = errors[0].get("detail") if errors else response.text[:200]
            raise SquareAPIError(
                f"Square API {method} {path} failed ({response.status_code}): {detail}",
                status_code=response.status_code,
                errors=errors,
            )
        return response.json() if response.content else {}

    @retry_with_backoff(
        max_attempts=settings.max_retry_attempts,
        initial_delay=settings.retry_initial_delay_seconds,
        multiplier=settings.retry_backoff_multiplier,
    )
    async def search_catalog(
        self,
        object_types: List[str],
        include_related_objects: bool = True,
        include_deleted_objects: bool = False,
        cursor: Optional[str] = None,
        limit: int = 1000,
    ) -> CatalogSearchResult:
        """
        Search catalog objects (POST /v2/catalog/search).

        Args:
            object_types: e.g. ["ITEM", "IMAGE", "CATEGORY"]
            include_related_objects: Inline categories/images referenced by the results
            include_deleted_objects: Deleted objects are excluded unless True
            cursor: Pagination cursor from a previous call
            limit: Page size (Square maximum is 1000)

        Returns:
            Parsed search result
        """
        body: Dict[str, Any] = {
            "object_types": object_types,
            "include_related_objects": include_related_objects,
            "include_deleted_objects": include_deleted_objects,
            "limit": limit,
        }
        if cursor:
            body["cursor"] = cursor

        data = await self._request("POST", "/v2/catalog/search", json=body)
        result = CatalogSearchResult(
            objects=parse_catalog_objects(data.get("objects")),
            related_objects=parse_catalog_objects(data.get("related_objects")),
            cursor=data.get("cursor"),
        )
        logger.debug(
            "Fetched catalog search page",
            environment=self.environment,
            objects=len(result.objects),
            related_objects=len(result.related_objects),
            has_more=bool(result.cursor),
        )
        return result

    async def search_catalog_all(
        self,
        object_types: List[str],
        include_related_objects: bool = True,
        max_pages: int = 10,
    ) -> CatalogSearchResult:
        """Follow catalog search cursors up to max_pages and merge the pages."""
        merged = CatalogSearchResult()
        cursor: Optional[str] = None
        for page in range(1, max_pages + 1):
            result = await self.search_catalog(
                object_types,
                include_related_objects=include_related_objects,
                include_deleted_objects=False,
                cursor=cursor,
            )
            merged.objects.extend(result.objects)
            merged.related_objects.extend(result.related_objects)
            cursor = result.cursor
            if not cursor:
                break
        else:
            logger.warning(
                "Catalog pagination stopped at page ceiling",
                max_pages=max_pages,
                environment=self.environment,
            )
        return merged

    async def retrieve_catalog_object(self, object_id: str) -> Optional[CatalogObject]:
        """Retrieve a single catalog object by id (GET /v2/catalog/object/{id})."""
        try:
            data = await self._request("GET", f"/v2/catalog/object/{object_id}")
        except SquareAPIError as e:
            if e.status_code == 404:
                return None
            raise
        raw = data.get("object")
        return parse_catalog_object(raw) if raw else None

    @retry_with_backoff(
        max_attempts=settings.max_retry_attempts,
        initial_delay=settings.retry_initial_delay_seconds,
        multiplier=settings.retry_backoff_multiplier,
    )
    async def list_payments(
        self,
        begin_time: datetime,
        cursor: Optional[str] = None,
        sort_order: str = "DESC",
    ) -> Tuple[List[SquarePayment], Optional[str]]:
        """
        List payments created at or after begin_time (GET /v2/payments).

        Returns:
            Tuple of (payments on this page, next cursor or None)
        """
        if begin_time.tzinfo is None:
            begin_time = begin_time.replace(tzinfo=timezone.utc)
        params: Dict[str, str] = {
            "begin_time": begin_time.astimezone(timezone.utc).isoformat().replace("+00:00", "Z"),
            "sort_order": sort_order,
        }
        if cursor:
            params["cursor"] = cursor

        data = await self._request("GET", "/v2/payments", params=params)
        payments: List[SquarePayment] = []
        for raw in data.get("payments") or []:
            try:
                payments.append(SquarePayment.model_validate(raw))
            except ValueError as e:
                logger.warning(
                    "Skipping malformed Square payment",
                    payment_id=raw.get("id") if isinstance(raw, dict) else None,
                    error=str(e),
                )
        return payments, data.get("cursor")

    async def image_exists(self, url: str) -> bool:
        """HEAD-probe an image URL with a short timeout. Never raises."""
        try:
            response = await self.client.head(
                url, timeout=self.image_check_timeout, follow_redirects=True
            )
            return response.status_code < 400
        except httpx.HTTPError as e:
            logger.debug("Image probe failed", url=url, error=str(e))
            return False
