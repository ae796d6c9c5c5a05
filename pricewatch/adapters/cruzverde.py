"""Cruz Verde adapter (JSON product service behind a guest session)."""

import logging
import re
from typing import Any, Optional
from urllib.parse import quote

from pricewatch.adapters.base import AdapterContext, AdapterRunResult, ResolvingAdapter, parse_money
from pricewatch.config import settings
from pricewatch.ingest.base import SourceListing
from pricewatch.ingest.http_client import FetchError, PermanentURLError, TransientFetchError

logger = logging.getLogger(__name__)

PRODUCT_ID_PATTERN = re.compile(r"COCV_\d+", re.IGNORECASE)


def extract_product_id(url: str) -> Optional[str]:
    """Cruz Verde product id (``COCV_123``) embedded in a product URL."""
    match = PRODUCT_ID_PATTERN.search(url or "")
    return match.group(0).upper() if match else None


def build_product_url(base_url: str, product_id: Optional[str], page_url: Optional[str]) -> Optional[str]:
    if not product_id or not page_url:
        return None
    slug = page_url.strip("/")
    return f"{base_url.rstrip('/')}/{slug}/{product_id}.html"


def resolve_prices(prices: Optional[dict[str, Any]]):
    """(list, promo); each falls back to the other when missing."""
    prices = prices or {}
    list_price = parse_money(prices.get("price-list-col"))
    promo_price = parse_money(prices.get("price-sale-col"))
    if promo_price is None or promo_price <= 0:
        promo_price = list_price
    if list_price is None:
        list_price = promo_price
    return list_price, promo_price


class CruzVerdeAdapter(ResolvingAdapter):
    """
    Adapter for Cruz Verde's product service.

    Every API call needs a guest session, obtained by posting an empty body
    to the login endpoint. A failed call drops the session and is retried
    once after logging in again.
    """

    adapter_id = "cruzverde"
    name = "Cruz Verde"
    supports_identifier_lookup = True
    default_delay_seconds = 0.4

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._session_ready = False

    @property
    def api_base(self) -> str:
        return settings.cruzverde_api_base.rstrip("/")

    @property
    def inventory_id(self) -> str:
        return settings.cruzverde_inventory_id

    @property
    def inventory_zone(self) -> str:
        return settings.cruzverde_inventory_zone or settings.cruzverde_inventory_id

    async def fetch_current_price(self, context: AdapterContext, url: str) -> SourceListing:
        self._session_ready = False
        return await super().fetch_current_price(context, url)

    async def run(self, context: AdapterContext) -> AdapterRunResult:
        self._session_ready = False
        return await super().run(context)

    async def _ensure_session(self) -> None:
        if self._session_ready:
            return
        try:
            await self.http.post(settings.cruzverde_login_url, content="{}")
            self._session_ready = True
        except FetchError as e:
            logger.warning(f"{self.name}: login failed: {e}")

    async def _get_json(self, url: str) -> Any:
        await self._ensure_session()
        try:
            return await self.http.get_json(url)
        except FetchError as e:
            logger.info(f"{self.name}: request failed, renewing session: {e}")
            self._session_ready = False
            self.http.reset_session()
            await self._ensure_session()
            return await self.http.get_json(url)

    def search_url(self, query: str) -> str:
        limit = int(self.setting("search_limit", 12))
        return (
            f"{self.api_base}/products/search?limit={limit}&offset=0&sort="
            f"&q={quote(query, safe='')}"
            f"&inventoryId={quote(self.inventory_id, safe='')}"
            f"&inventoryZone={quote(self.inventory_zone, safe='')}"
        )

    def summary_url(self, product_id: str) -> str:
        return (
            f"{self.api_base}/products/product-summary?ids[]={quote(product_id, safe='')}"
            "&fields=name&fields=prices&fields=brand&fields=pageURL"
            f"&inventoryId={quote(self.inventory_id, safe='')}"
        )

    def _hit_to_listing(self, base_url: str, hit: dict[str, Any]) -> Optional[SourceListing]:
        product_id = hit.get("productId")
        url = build_product_url(base_url, product_id, hit.get("pageURL"))
        if not url:
            return None
        list_price, promo_price = resolve_prices(hit.get("prices"))
        return SourceListing(
            url=url,
            name=hit.get("productName"),
            list_price=list_price,
            promo_price=promo_price,
            product_id=product_id,
            brand=hit.get("brand"),
        )

    async def _search_hits(self, context: AdapterContext, query: str) -> list[SourceListing]:
        payload = await self._get_json(self.search_url(query))
        if not isinstance(payload, dict):
            raise TransientFetchError(f"{self.name}: unexpected search payload")
        listings = []
        for hit in payload.get("hits") or []:
            if not isinstance(hit, dict):
                continue
            listing = self._hit_to_listing(context.base_url, hit)
            if listing is not None:
                listings.append(listing)
        return listings

    async def search_by_identifier(self, context: AdapterContext, ean: str) -> list[SourceListing]:
        listings = await self._search_hits(context, ean)
        for listing in listings:
            listing.external_id = ean
        return listings

    async def search(self, context: AdapterContext, query: str) -> list[SourceListing]:
        return await self._search_hits(context, query)

    async def fetch_by_url(self, context: AdapterContext, url: str) -> SourceListing:
        product_id = extract_product_id(url)
        if not product_id:
            raise PermanentURLError(f"{self.name}: no product id in {url}")

        payload = await self._get_json(self.summary_url(product_id))
        item = payload.get(product_id) if isinstance(payload, dict) else None
        if not isinstance(item, dict):
            raise PermanentURLError(f"{self.name}: product {product_id} not found")

        list_price, promo_price = resolve_prices(item.get("prices"))
        return SourceListing(
            url=build_product_url(context.base_url, product_id, item.get("pageURL")) or url,
            name=item.get("name"),
            list_price=list_price,
            promo_price=promo_price,
            product_id=product_id,
            brand=item.get("brand"),
        )
