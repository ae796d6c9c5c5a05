"""Competitor adapter contract and the tiered product resolution algorithm."""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from enum import Enum
from html import unescape
from typing import Optional, Sequence
from urllib.parse import urljoin, urlsplit

import httpx

from pricewatch.ai.disambiguator import AIDisambiguator
from pricewatch.config import settings
from pricewatch.db.models import MatchMethod
from pricewatch.db.store import CatalogEntry, CatalogStore, ProductRow
from pricewatch.ingest.base import SourceListing
from pricewatch.ingest.http_client import AdapterHttpClient, FetchError
from pricewatch.matching.text_matcher import (
    build_search_query,
    filter_by_brand,
    normalize_text,
    rank_candidates,
)
from pricewatch.metrics import record_product_outcome

logger = logging.getLogger(__name__)

_MONEY_CHARS = re.compile(r"[^0-9.,]")


def parse_money(raw) -> Optional[Decimal]:
    """
    Parse a storefront price string.

    A separator followed by exactly two digits is the decimal point; every
    other separator groups thousands:

        "$90.700"    -> 90700
        "$36.989,00" -> 36989.00
        "1,234.50"   -> 1234.50
    """
    if raw is None:
        return None
    if isinstance(raw, (int, float, Decimal)) and not isinstance(raw, bool):
        return Decimal(str(raw))

    cleaned = _MONEY_CHARS.sub("", unescape(str(raw)))
    if not cleaned:
        return None

    last_sep = max(cleaned.rfind("."), cleaned.rfind(","))
    decimal_at = last_sep if last_sep >= 0 and len(cleaned) - last_sep - 1 == 2 else -1

    digits = []
    for i, ch in enumerate(cleaned):
        if ch.isdigit():
            digits.append(ch)
        elif i == decimal_at:
            digits.append(".")
    normalized = "".join(digits)
    if not normalized or normalized == ".":
        return None

    try:
        return Decimal(normalized)
    except InvalidOperation:
        return None


def canonical_url(url: str, base_url: str = "") -> str:
    """Absolute URL without query, fragment or trailing slash (cache key)."""
    absolute = urljoin(base_url.rstrip("/") + "/", url) if base_url else url
    parts = urlsplit(absolute)
    path = parts.path.rstrip("/")
    return f"{parts.scheme}://{parts.netloc.lower()}{path}"


def listing_from_entry(entry: CatalogEntry) -> SourceListing:
    return SourceListing(
        url=entry.url,
        name=entry.name,
        list_price=entry.list_price,
        promo_price=entry.promo_price,
        external_id=entry.external_id,
        product_id=entry.competitor_sku,
        brand=entry.brand,
        description=entry.description,
        categories=entry.categories,
        extracted_at=entry.extracted_at,
    )


def entry_from_listing(listing: SourceListing) -> CatalogEntry:
    return CatalogEntry(
        url=listing.url,
        name=listing.name,
        description=listing.description,
        external_id=listing.external_id,
        competitor_sku=listing.product_id,
        brand=listing.brand,
        categories=listing.categories,
        list_price=listing.list_price,
        promo_price=listing.promo_price,
        extracted_at=listing.extracted_at,
    )


@dataclass
class AdapterContext:
    """Everything an adapter needs to process one competitor in a run."""

    competitor_id: int
    competitor_name: str
    base_url: str
    run_id: int
    run_date: date
    only_new: bool = True
    batch_size: int = 0
    cancel_event: Optional[asyncio.Event] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()


@dataclass
class AdapterRunResult:
    """Counters reported by an adapter for one competitor."""

    processed: int = 0
    created: int = 0
    updated: int = 0
    errors: int = 0
    no_match: int = 0
    message: Optional[str] = None
    cancelled: bool = False


class ProductOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    NO_MATCH = "no_match"


@dataclass
class MatchDecision:
    """An accepted candidate and how it was chosen."""

    listing: SourceListing
    method: str
    score: float


@dataclass
class CatalogIndex:
    """In-memory view of a competitor's cached catalog."""

    listings: list[SourceListing] = field(default_factory=list)
    by_url: dict[str, SourceListing] = field(default_factory=dict)
    by_brand: dict[str, list[SourceListing]] = field(default_factory=dict)
    by_external_id: dict[str, list[SourceListing]] = field(default_factory=dict)

    @classmethod
    def build(cls, listings: Sequence[SourceListing], base_url: str = "") -> "CatalogIndex":
        index = cls(listings=list(listings))
        for listing in index.listings:
            index.by_url[canonical_url(listing.url, base_url)] = listing
            brand_key = normalize_text(listing.brand)
            if brand_key:
                index.by_brand.setdefault(brand_key, []).append(listing)
            if listing.external_id:
                index.by_external_id.setdefault(listing.external_id.strip(), []).append(listing)
        return index

    def __bool__(self) -> bool:
        return bool(self.listings)


class CompetitorAdapter(ABC):
    """Interface every competitor integration implements."""

    adapter_id: str = ""
    name: str = ""

    @abstractmethod
    async def run(self, context: AdapterContext) -> AdapterRunResult:
        """Resolve and price the target products of one competitor."""
        pass

    async def fetch_current_price(self, context: AdapterContext, url: str) -> SourceListing:
        """Read the live listing behind a stored URL without recording anything."""
        raise NotImplementedError(f"{self.name or self.adapter_id} cannot read a single product URL")


class ResolvingAdapter(CompetitorAdapter):
    """
    Generic tiered resolution; subclasses supply the source hooks.

    Per product, the first tier that applies is terminal:

    1. stored URL re-fetched (failure is an error, no search fallback)
    2. exact identifier (EAN) lookup
    3. fuzzy name match against the cached catalog or a live search
    4. AI disambiguation among the top candidates
    """

    supports_identifier_lookup: bool = False
    uses_catalog_cache: bool = False
    require_ean: bool = False
    default_delay_seconds: float = 0.3

    def __init__(
        self,
        store: CatalogStore,
        disambiguator: Optional[AIDisambiguator] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.store = store
        self.disambiguator = disambiguator
        self._http_client = http_client
        self.http: Optional[AdapterHttpClient] = None

    # ------------------------------------------------------------------
    # Source hooks
    # ------------------------------------------------------------------

    @abstractmethod
    async def fetch_by_url(self, context: AdapterContext, url: str) -> SourceListing:
        """Fetch a listing by its product URL. Raises on failure."""
        pass

    async def search_by_identifier(self, context: AdapterContext, ean: str) -> list[SourceListing]:
        """Listings carrying the given EAN."""
        return []

    @abstractmethod
    async def search(self, context: AdapterContext, query: str) -> list[SourceListing]:
        """Listings returned by a free-text search."""
        pass

    async def crawl_catalog(self, context: AdapterContext) -> list[SourceListing]:
        """Crawl the full competitor catalog."""
        return []

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def setting(self, key: str, fallback):
        return settings.adapter_value(self.adapter_id, key, fallback)

    @property
    def min_score(self) -> float:
        return float(self.setting("min_score", settings.match_min_score))

    @property
    def use_ai(self) -> bool:
        return bool(self.setting("use_ai", settings.match_use_ai)) and self.disambiguator is not None

    @property
    def ai_min_confidence(self) -> float:
        return float(self.setting("ai_min_confidence", settings.match_ai_min_confidence))

    @property
    def ai_candidates(self) -> int:
        return max(1, int(self.setting("ai_candidates", settings.match_ai_candidates)))

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def open_http(self) -> AdapterHttpClient:
        delay = float(self.setting("delay_seconds", self.default_delay_seconds))
        return AdapterHttpClient(self.name or self.adapter_id, delay, client=self._http_client)

    async def fetch_current_price(self, context: AdapterContext, url: str) -> SourceListing:
        async with self.open_http() as http:
            previous, self.http = self.http, http
            try:
                return await self.fetch_by_url(context, url)
            finally:
                self.http = previous

    async def run(self, context: AdapterContext) -> AdapterRunResult:
        result = AdapterRunResult()
        products = await self.store.load_target_products(
            context.competitor_id,
            context.run_date,
            context.only_new,
            context.batch_size,
            require_ean=self.require_ean,
        )
        if not products:
            logger.info(f"{self.name}: no products to process")
            return result

        total = len(products)
        log_every = max(25, total // 10)
        first_error: Optional[str] = None

        async with self.open_http() as http:
            self.http = http
            try:
                catalog = await self._prepare_catalog(context) if self.uses_catalog_cache else CatalogIndex()

                logger.info(
                    f"{self.name}: starting {total} products "
                    f"(only_new={context.only_new}, batch_size={context.batch_size})"
                )

                for product in products:
                    if context.cancelled:
                        logger.info(f"{self.name}: cancellation requested, stopping")
                        result.cancelled = True
                        break

                    result.processed += 1
                    try:
                        outcome = await self.resolve_product(context, product, catalog)
                    except FetchError as e:
                        result.errors += 1
                        first_error = first_error or str(e)
                        logger.warning(f"{self.name}: product {product.id} failed: {e}")
                        record_product_outcome(context.competitor_name, "error")
                    except Exception as e:
                        result.errors += 1
                        first_error = first_error or str(e)
                        logger.warning(
                            f"{self.name}: error processing product {product.id}: {e}",
                            exc_info=True,
                        )
                        record_product_outcome(context.competitor_name, "error")
                    else:
                        if outcome == ProductOutcome.CREATED:
                            result.created += 1
                        elif outcome == ProductOutcome.UPDATED:
                            result.updated += 1
                        else:
                            result.no_match += 1

                    if result.processed % log_every == 0 or result.processed == total:
                        logger.info(
                            f"{self.name}: progress {result.processed}/{total} "
                            f"(created={result.created}, updated={result.updated}, "
                            f"errors={result.errors}, no_match={result.no_match})"
                        )
            finally:
                self.http = None

        logger.info(
            f"{self.name}: done processed={result.processed} created={result.created} "
            f"updated={result.updated} errors={result.errors} no_match={result.no_match}"
        )
        if result.errors:
            result.message = f"{result.errors} product errors (first: {first_error})"
        return result

    async def _prepare_catalog(self, context: AdapterContext) -> CatalogIndex:
        """Use the cached catalog when fresh, otherwise crawl and store it."""
        entries = await self.store.load_catalog_entries(context.competitor_id)
        if entries:
            newest = max(
                (e.extracted_at for e in entries if e.extracted_at is not None),
                default=datetime.min,
            )
            if newest >= datetime.utcnow() - timedelta(days=settings.catalog_refresh_days):
                logger.info(f"{self.name}: using cached catalog items={len(entries)}")
                return CatalogIndex.build(
                    [listing_from_entry(e) for e in entries], context.base_url
                )

        try:
            crawled = await self.crawl_catalog(context)
        except FetchError as e:
            logger.warning(f"{self.name}: catalog crawl failed, using per-product search: {e}")
            return CatalogIndex()

        if context.cancelled:
            # Partial crawl, never cached
            logger.info(f"{self.name}: catalog crawl interrupted, discarding {len(crawled)} items")
            return CatalogIndex()

        if not crawled:
            logger.warning(f"{self.name}: empty catalog, using per-product search")
            return CatalogIndex()

        stored = await self.store.upsert_catalog_entries(
            context.competitor_id, [entry_from_listing(listing) for listing in crawled]
        )
        logger.info(f"{self.name}: catalog refreshed items={stored}")
        return CatalogIndex.build(crawled, context.base_url)

    async def resolve_product(
        self, context: AdapterContext, product: ProductRow, catalog: CatalogIndex
    ) -> ProductOutcome:
        """Run the resolution tiers for one product and persist the outcome."""
        # Tier 1: stored URL
        if product.url:
            listing = self._cached_for_today(context, catalog, product.url)
            if listing is None:
                listing = await self.fetch_by_url(context, product.url)
            # Method and score stay as they were
            await self.store.record_match(
                product.id,
                context.competitor_id,
                listing.url,
                listing.name,
                None,
                None,
                context.run_date,
                listing.list_price,
                listing.promo_price,
            )
            record_product_outcome(context.competitor_name, "updated", MatchMethod.URL.value)
            return ProductOutcome.UPDATED

        decision = await self._resolve_by_identifier(context, product, catalog)
        if decision is None:
            decision = await self._resolve_by_name(context, product, catalog)

        if decision is None:
            await self.store.mark_no_match(product.id, context.competitor_id)
            record_product_outcome(context.competitor_name, "no_match")
            return ProductOutcome.NO_MATCH

        listing = decision.listing
        if listing.extracted_at is None or listing.extracted_at.date() != context.run_date:
            listing = await self.fetch_by_url(context, listing.url)

        await self.store.record_match(
            product.id,
            context.competitor_id,
            listing.url,
            listing.name or decision.listing.name,
            decision.method,
            decision.score,
            context.run_date,
            listing.list_price,
            listing.promo_price,
        )
        outcome = ProductOutcome.UPDATED if product.match_method else ProductOutcome.CREATED
        record_product_outcome(context.competitor_name, outcome.value, decision.method)
        return outcome

    def _cached_for_today(
        self, context: AdapterContext, catalog: CatalogIndex, url: str
    ) -> Optional[SourceListing]:
        if not catalog:
            return None
        listing = catalog.by_url.get(canonical_url(url, context.base_url))
        if listing is None or listing.extracted_at is None:
            return None
        return listing if listing.extracted_at.date() == context.run_date else None

    async def _resolve_by_identifier(
        self, context: AdapterContext, product: ProductRow, catalog: CatalogIndex
    ) -> Optional[MatchDecision]:
        ean = (product.ean or "").strip()
        if not ean:
            return None

        if catalog:
            hits = list(catalog.by_external_id.get(ean, []))
        elif self.supports_identifier_lookup:
            hits = await self.search_by_identifier(context, ean)
        else:
            return None

        if not hits:
            return None
        if len(hits) == 1:
            return MatchDecision(hits[0], MatchMethod.EXACT_ID.value, 1.0)
        return await self.select_candidate(product.description, hits, MatchMethod.EXACT_ID.value)

    async def _resolve_by_name(
        self, context: AdapterContext, product: ProductRow, catalog: CatalogIndex
    ) -> Optional[MatchDecision]:
        query = build_search_query(product.description, settings.match_query_max_tokens)
        if not query:
            return None

        if catalog:
            brand_key = normalize_text(product.brand_name)
            candidates = catalog.by_brand.get(brand_key) if brand_key else None
            candidates = candidates or catalog.listings
        else:
            results = await self.search(context, query)
            # Prefer listings of the product's own brand when the search returned any
            candidates = filter_by_brand(product.brand_name, results, lambda c: c.brand) or results

        if not candidates:
            return None
        return await self.select_candidate(product.description, candidates, MatchMethod.FUZZY_NAME.value)

    async def select_candidate(
        self, description: str, candidates: Sequence[SourceListing], method: str
    ) -> Optional[MatchDecision]:
        """Accept the best candidate on score, else ask the AI, else nothing."""
        ranked = rank_candidates(description, candidates, lambda c: c.match_text)
        if not ranked:
            return None

        best, best_score = ranked[0]
        if best_score >= self.min_score:
            return MatchDecision(best, method, best_score)

        if not self.use_ai:
            logger.info(f"{self.name}: no match for '{description}' (best score {best_score:.2f})")
            return None

        top = [candidate for candidate, _ in ranked[: self.ai_candidates]]
        selection = await self.disambiguator.select(description, top)
        if selection is None or selection.confidence < self.ai_min_confidence:
            logger.info(f"{self.name}: AI found no match for '{description}'")
            return None
        return MatchDecision(selection.listing, MatchMethod.AI.value, selection.confidence)
