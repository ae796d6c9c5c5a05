"""VTEX storefront adapter (catalog_system public API)."""

import logging
from typing import Any, Optional
from urllib.parse import quote, urlsplit

from pricewatch.adapters.base import AdapterContext, ResolvingAdapter, canonical_url, parse_money
from pricewatch.ingest.base import SourceListing
from pricewatch.ingest.http_client import PermanentURLError, TransientFetchError

logger = logging.getLogger(__name__)

SEARCH_PATH = "/api/catalog_system/pub/products/search"
BRAND_LIST_PATH = "/api/catalog_system/pub/brand/list"
MAX_PAGE_SIZE = 50


def extract_slug(url: str) -> Optional[str]:
    """Product slug from a VTEX product URL (``/{slug}/p``)."""
    segments = [s for s in urlsplit(url).path.split("/") if s]
    if not segments:
        return None
    if segments[-1].lower() == "p" and len(segments) >= 2:
        return segments[-2]
    return segments[-1]


def resolve_prices(product: dict[str, Any]):
    """(list, promo) from the first seller's commercial offer."""
    items = product.get("items") or []
    sellers = (items[0].get("sellers") or []) if items else []
    offer = (sellers[0].get("commertialOffer") or {}) if sellers else {}
    if not offer:
        return None, None

    price = parse_money(offer.get("Price"))
    list_price = parse_money(offer.get("ListPrice"))
    if list_price is None:
        list_price = parse_money(offer.get("PriceWithoutDiscount"))
    if list_price is None:
        list_price = price
    promo_price = price if price is not None else list_price
    return list_price, promo_price


class VtexAdapter(ResolvingAdapter):
    """
    Adapter for storefronts running on VTEX.

    The catalog is crawled brand by brand and cached; products are then
    matched in memory and only re-fetched to refresh a stale price.
    """

    adapter_id = "vtex"
    name = "VTEX"
    supports_identifier_lookup = True
    uses_catalog_cache = True

    @staticmethod
    def _base(context: AdapterContext) -> str:
        return context.base_url.rstrip("/")

    def product_url(self, base_url: str, product: dict[str, Any]) -> Optional[str]:
        link = product.get("link")
        if not link and product.get("linkText"):
            link = f"{base_url}/{product['linkText']}/p"
        if not link:
            return None
        return canonical_url(link.strip(), base_url)

    def to_listing(self, base_url: str, product: dict[str, Any]) -> Optional[SourceListing]:
        url = self.product_url(base_url, product)
        if not url:
            return None

        items = product.get("items") or []
        first_item = items[0] if items else {}
        categories = product.get("categories") or []
        list_price, promo_price = resolve_prices(product)
        unique_categories = list(dict.fromkeys(c.strip("/") for c in categories if c))

        return SourceListing(
            url=url,
            name=product.get("productName") or first_item.get("name"),
            list_price=list_price,
            promo_price=promo_price,
            external_id=first_item.get("ean") or None,
            product_id=product.get("productReference") or first_item.get("itemId"),
            brand=product.get("brand"),
            description=product.get("metaTagDescription"),
            categories=" | ".join(unique_categories) or None,
        )

    def _listings(self, base_url: str, payload: Any) -> list[SourceListing]:
        if not isinstance(payload, list):
            raise TransientFetchError(f"{self.name}: unexpected search payload")
        listings = []
        for product in payload:
            if not isinstance(product, dict):
                continue
            listing = self.to_listing(base_url, product)
            if listing is not None:
                listings.append(listing)
        return listings

    async def fetch_by_url(self, context: AdapterContext, url: str) -> SourceListing:
        base = self._base(context)
        slug = extract_slug(url)
        if not slug:
            raise PermanentURLError(f"{self.name}: cannot extract slug from {url}")

        payload = await self.http.get_json(f"{base}{SEARCH_PATH}/{quote(slug, safe='')}/p")
        listings = self._listings(base, payload)
        if not listings:
            raise PermanentURLError(f"{self.name}: no product for slug {slug}")
        return listings[0]

    async def search_by_identifier(self, context: AdapterContext, ean: str) -> list[SourceListing]:
        base = self._base(context)
        payload = await self.http.get_json(f"{base}{SEARCH_PATH}?fq=alternateIds_Ean:{quote(ean, safe='')}")
        return self._listings(base, payload)

    async def search(self, context: AdapterContext, query: str) -> list[SourceListing]:
        base = self._base(context)
        payload = await self.http.get_json(f"{base}{SEARCH_PATH}/{quote(query, safe='')}")
        return self._listings(base, payload)

    async def crawl_catalog(self, context: AdapterContext) -> list[SourceListing]:
        base = self._base(context)
        page_size = int(self.setting("catalog_page_size", MAX_PAGE_SIZE))
        page_size = min(max(page_size, 1), MAX_PAGE_SIZE)

        brands = await self.http.get_json(f"{base}{BRAND_LIST_PATH}")
        if not isinstance(brands, list):
            brands = []
        active = [b for b in brands if isinstance(b, dict) and b.get("isActive") and b.get("id") is not None]
        if not active:
            logger.warning(f"{self.name}: no active brands found, cannot build catalog")
            return []

        logger.info(f"{self.name}: crawling catalog for {len(active)} brands")
        by_url: dict[str, SourceListing] = {}
        for brand in active:
            if context.cancelled:
                break
            start = 0
            while not context.cancelled:
                end = start + page_size - 1
                payload = await self.http.get_json(
                    f"{base}{SEARCH_PATH}?fq=B:{brand['id']}&_from={start}&_to={end}"
                )
                page = self._listings(base, payload)
                if not page:
                    break
                for listing in page:
                    by_url[listing.url] = listing
                if len(payload) < page_size:
                    break
                start += page_size

        return list(by_url.values())


class BellaPielAdapter(VtexAdapter):
    """Bella Piel (VTEX storefront)."""

    adapter_id = "bellapiel"
    name = "Bella Piel"
