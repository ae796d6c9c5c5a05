"""Tests for tiered product resolution in ResolvingAdapter."""

import asyncio
from datetime import date, datetime, time, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from pricewatch.adapters.base import AdapterContext, ResolvingAdapter
from pricewatch.ai.disambiguator import AISelection
from pricewatch.config import settings
from pricewatch.db.models import CompetitorProduct, PriceSnapshot
from pricewatch.db.store import CatalogEntry
from pricewatch.ingest.base import SourceListing
from pricewatch.ingest.http_client import PermanentURLError, TransientFetchError
from pricewatch.matching.text_matcher import score

RUN_DATE = date(2026, 10, 18)
CREAM = "Crema Hidratante La Roche 50ml"


def listing(url, name, list_price="120.00", promo_price=None, ean=None, brand=None, extracted_at=None):
    return SourceListing(
        url=url,
        name=name,
        list_price=Decimal(list_price) if list_price else None,
        promo_price=Decimal(promo_price) if promo_price else None,
        external_id=ean,
        brand=brand,
        extracted_at=extracted_at or datetime.combine(RUN_DATE, time(12)),
    )


class FakeAdapter(ResolvingAdapter):
    """Adapter whose source is a set of in-memory responses."""

    adapter_id = "fake"
    name = "Fake"
    default_delay_seconds = 0.0

    def __init__(self, store, disambiguator=None, pages=None, results=None, ean_results=None, catalog=None):
        super().__init__(store, disambiguator)
        self.pages = pages or {}
        self.results = results or []
        self.ean_results = ean_results or {}
        self.catalog = catalog or []
        self.fetched = []
        self.queries = []
        self.crawls = 0

    async def fetch_by_url(self, context, url):
        self.fetched.append(url)
        page = self.pages[url]
        if isinstance(page, Exception):
            raise page
        return page

    async def search(self, context, query):
        self.queries.append(query)
        return list(self.results)

    async def search_by_identifier(self, context, ean):
        return list(self.ean_results.get(ean, []))

    async def crawl_catalog(self, context):
        self.crawls += 1
        return list(self.catalog)


class IdentifierAdapter(FakeAdapter):
    supports_identifier_lookup = True


class CatalogAdapter(FakeAdapter):
    uses_catalog_cache = True


class FakeAI:
    """Disambiguator that always picks one candidate with a fixed confidence."""

    def __init__(self, confidence, index=0):
        self.confidence = confidence
        self.index = index
        self.calls = []

    async def select(self, description, candidates):
        self.calls.append(list(candidates))
        return AISelection(self.index, self.confidence, candidates[self.index], "test")


def context(seed, run_date=RUN_DATE, batch_size=1, cancel_event=None):
    return AdapterContext(
        competitor_id=seed["competitor_id"],
        competitor_name="Bella Piel",
        base_url="https://shop.test",
        run_id=1,
        run_date=run_date,
        only_new=True,
        batch_size=batch_size,
        cancel_event=cancel_event,
    )


async def get_mapping(session_factory, product_id):
    async with session_factory() as session:
        result = await session.execute(
            select(CompetitorProduct).where(CompetitorProduct.product_id == product_id)
        )
        return result.scalar_one_or_none()


async def get_snapshots(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(PriceSnapshot))
        return result.scalars().all()


@pytest.fixture
def adapter_overrides(monkeypatch):
    """Per-test settings for the fake adapter id."""
    overrides = {}
    monkeypatch.setitem(settings.adapter_settings, "fake", overrides)
    return overrides


class TestStoredUrl:
    """Tier 1: a stored URL is re-fetched and nothing else is tried."""

    @pytest.mark.asyncio
    async def test_refresh_keeps_method_and_writes_snapshot(self, store, seed, session_factory):
        url = "https://shop.test/crema/p"
        await store.upsert_mapping(seed["cream_id"], seed["competitor_id"], url, "Crema", "fuzzy-name", 0.8)
        adapter = FakeAdapter(store, pages={url: listing(url, "Crema", "130.00", "95.00")})

        result = await adapter.run(context(seed))

        assert (result.processed, result.updated, result.created, result.errors) == (1, 1, 0, 0)
        mapping = await get_mapping(session_factory, seed["cream_id"])
        assert mapping.match_method == "fuzzy-name"
        assert mapping.match_score == Decimal("0.8000")
        snaps = await get_snapshots(session_factory)
        assert [(s.list_price, s.promo_price) for s in snaps] == [(Decimal("130.00"), Decimal("95.00"))]

    @pytest.mark.asyncio
    async def test_404_is_terminal_without_search(self, store, seed, session_factory):
        url = "https://shop.test/gone/p"
        await store.upsert_mapping(seed["cream_id"], seed["competitor_id"], url, "Crema", "fuzzy-name", 0.8)
        adapter = FakeAdapter(
            store,
            pages={url: PermanentURLError("Fake: 404")},
            results=[listing("https://shop.test/other/p", CREAM)],
        )

        result = await adapter.run(context(seed))

        assert result.errors == 1
        assert result.no_match == 0
        assert adapter.queries == []
        mapping = await get_mapping(session_factory, seed["cream_id"])
        assert mapping.url == url
        assert await get_snapshots(session_factory) == []

    @pytest.mark.asyncio
    async def test_timeout_leaves_mapping_unchanged(self, store, seed, session_factory):
        url = "https://shop.test/slow/p"
        await store.upsert_mapping(seed["cream_id"], seed["competitor_id"], url, "Crema", "ai", 0.7)
        adapter = FakeAdapter(store, pages={url: TransientFetchError("Fake: ReadTimeout")})

        result = await adapter.run(context(seed))

        assert (result.errors, result.updated) == (1, 0)
        assert "ReadTimeout" in result.message
        mapping = await get_mapping(session_factory, seed["cream_id"])
        assert (mapping.url, mapping.match_method) == (url, "ai")


class TestIdentifierTier:
    """Tier 2: EAN lookup."""

    @pytest.mark.asyncio
    async def test_single_hit_is_exact_match(self, store, seed, session_factory):
        hit = listing("https://shop.test/lrp/p", "Toleriane", "110.00", ean="7701234567890")
        adapter = IdentifierAdapter(store, ean_results={"7701234567890": [hit]})

        result = await adapter.run(context(seed))

        assert result.created == 1
        mapping = await get_mapping(session_factory, seed["cream_id"])
        assert mapping.match_method == "exact-id"
        assert mapping.match_score == Decimal("1.0000")
        assert adapter.queries == []

    @pytest.mark.asyncio
    async def test_rejected_multi_hit_falls_through_to_name_search(self, store, seed, session_factory):
        hits = [
            listing("https://shop.test/a/p", "Shampoo Anticaspa", ean="7701234567890"),
            listing("https://shop.test/b/p", "Jabon Liquido", ean="7701234567890"),
        ]
        good = listing("https://shop.test/crema/p", CREAM)
        adapter = IdentifierAdapter(store, ean_results={"7701234567890": hits}, results=[good])

        await adapter.run(context(seed))

        mapping = await get_mapping(session_factory, seed["cream_id"])
        assert mapping.match_method == "fuzzy-name"
        assert mapping.url == good.url

    @pytest.mark.asyncio
    async def test_stale_listing_is_refetched_for_prices(self, store, seed, session_factory):
        url = "https://shop.test/lrp/p"
        old = listing(url, "Toleriane", "100.00", ean="7701234567890",
                      extracted_at=datetime(2026, 10, 10, 8))
        fresh = listing(url, "Toleriane", "140.00")
        adapter = IdentifierAdapter(store, pages={url: fresh}, ean_results={"7701234567890": [old]})

        await adapter.run(context(seed))

        assert adapter.fetched == [url]
        snaps = await get_snapshots(session_factory)
        assert snaps[0].list_price == Decimal("140.00")


class TestNameTier:
    """Tiers 3 and 4: fuzzy match and AI disambiguation."""

    @pytest.mark.asyncio
    async def test_score_equal_to_threshold_is_accepted(self, store, seed, session_factory, adapter_overrides):
        candidate = listing("https://shop.test/crema/p", "LA ROCHE CREMA HIDRATANTE 50 ML")
        adapter_overrides["min_score"] = score(CREAM, candidate.match_text)
        adapter = FakeAdapter(store, results=[candidate])

        result = await adapter.run(context(seed))

        assert result.created == 1
        mapping = await get_mapping(session_factory, seed["cream_id"])
        assert mapping.match_method == "fuzzy-name"
        assert float(mapping.match_score) == pytest.approx(adapter_overrides["min_score"], abs=1e-4)
        assert adapter.queries == ["crema hidratante la roche 50ml"]

    @pytest.mark.asyncio
    async def test_score_below_threshold_without_ai_is_no_match(self, store, seed, session_factory, adapter_overrides):
        candidate = listing("https://shop.test/crema/p", "LA ROCHE CREMA HIDRATANTE 50 ML")
        adapter_overrides["min_score"] = score(CREAM, candidate.match_text) + 0.001
        adapter = FakeAdapter(store, results=[candidate])

        result = await adapter.run(context(seed))

        assert result.no_match == 1
        mapping = await get_mapping(session_factory, seed["cream_id"])
        assert mapping.match_method == "no-match"
        assert mapping.url is None

    @pytest.mark.asyncio
    async def test_ai_below_confidence_is_no_match(self, store, seed, session_factory, adapter_overrides):
        adapter_overrides["min_score"] = 0.99
        ai = FakeAI(confidence=0.4)
        adapter = FakeAdapter(store, ai, results=[listing("https://shop.test/x/p", "Crema Hidratante")])

        result = await adapter.run(context(seed))

        assert result.no_match == 1
        assert len(ai.calls) == 1
        mapping = await get_mapping(session_factory, seed["cream_id"])
        assert mapping.match_method == "no-match"

    @pytest.mark.asyncio
    async def test_ai_at_confidence_threshold_is_accepted(self, store, seed, session_factory, adapter_overrides):
        adapter_overrides["min_score"] = 0.99
        adapter_overrides["ai_min_confidence"] = 0.6
        ai = FakeAI(confidence=0.6)
        adapter = FakeAdapter(store, ai, results=[listing("https://shop.test/x/p", "Crema Hidratante")])

        result = await adapter.run(context(seed))

        assert result.created == 1
        mapping = await get_mapping(session_factory, seed["cream_id"])
        assert mapping.match_method == "ai"
        assert mapping.match_score == Decimal("0.6000")

    @pytest.mark.asyncio
    async def test_ai_sees_only_top_candidates(self, store, seed, adapter_overrides):
        adapter_overrides["min_score"] = 0.99
        adapter_overrides["ai_candidates"] = 2
        ai = FakeAI(confidence=0.1)
        results = [listing(f"https://shop.test/{i}/p", f"Crema {i}") for i in range(6)]
        adapter = FakeAdapter(store, ai, results=results)

        await adapter.run(context(seed))

        assert len(ai.calls[0]) == 2

    @pytest.mark.asyncio
    async def test_search_results_prefer_product_brand(self, store, seed, session_factory):
        other_brand = listing("https://shop.test/vichy-crema/p", CREAM, brand="Vichy")
        own_brand = listing("https://shop.test/lrp-crema/p", CREAM, brand="LA ROCHE POSAY")
        adapter = FakeAdapter(store, results=[other_brand, own_brand])

        await adapter.run(context(seed))

        mapping = await get_mapping(session_factory, seed["cream_id"])
        assert mapping.url == own_brand.url

    @pytest.mark.asyncio
    async def test_search_results_without_brand_match_are_all_ranked(self, store, seed, session_factory):
        unbranded = listing("https://shop.test/crema/p", CREAM)
        adapter = FakeAdapter(store, results=[unbranded])

        result = await adapter.run(context(seed))

        assert result.created == 1
        mapping = await get_mapping(session_factory, seed["cream_id"])
        assert mapping.url == unbranded.url

    @pytest.mark.asyncio
    async def test_no_match_products_are_skipped_next_run(self, store, seed, adapter_overrides):
        adapter = FakeAdapter(store, results=[])

        first = await adapter.run(context(seed, batch_size=0))
        second = await adapter.run(context(seed, batch_size=0, run_date=RUN_DATE + timedelta(days=1)))

        assert first.no_match == 2
        assert second.processed == 0


class TestCatalogCache:
    """Adapters that resolve against a cached full catalog."""

    @pytest.mark.asyncio
    async def test_crawls_once_then_reuses_cache(self, store, seed, session_factory):
        now = datetime.utcnow()
        today = now.date()
        crawled = [
            listing("https://shop.test/crema/p", "Crema Hidratante 50ml", brand="La Roche-Posay",
                    ean="7701234567890", extracted_at=now),
            listing("https://shop.test/serum/p", "Serum Vitamina C 30ml", brand="Vichy", extracted_at=now),
        ]
        first = CatalogAdapter(store, catalog=crawled)
        result = await first.run(context(seed, run_date=today, batch_size=0))

        assert first.crawls == 1
        assert result.created == 2
        assert first.fetched == []
        assert first.queries == []
        assert len(await store.load_catalog_entries(seed["competitor_id"])) == 2

        second = CatalogAdapter(store, catalog=crawled, pages={item.url: item for item in crawled})
        await second.run(context(seed, run_date=today + timedelta(days=1), batch_size=0))
        assert second.crawls == 0

    @pytest.mark.asyncio
    async def test_stale_cache_is_recrawled(self, store, seed):
        old = datetime.utcnow() - timedelta(days=settings.catalog_refresh_days + 3)
        await store.upsert_catalog_entry(
            seed["competitor_id"],
            CatalogEntry(url="https://shop.test/old/p", name="Old", extracted_at=old),
        )
        adapter = CatalogAdapter(store, catalog=[])

        await adapter.run(context(seed, run_date=datetime.utcnow().date()))

        assert adapter.crawls == 1

    @pytest.mark.asyncio
    async def test_crawl_interrupted_by_cancel_is_discarded(self, store, seed, session_factory):
        event = asyncio.Event()
        partial = [
            listing("https://shop.test/crema/p", CREAM, brand="La Roche-Posay", extracted_at=datetime.utcnow())
        ]

        class InterruptedCrawl(CatalogAdapter):
            async def crawl_catalog(self, context):
                event.set()
                return await super().crawl_catalog(context)

        adapter = InterruptedCrawl(store, catalog=partial)
        result = await adapter.run(
            context(seed, run_date=datetime.utcnow().date(), batch_size=0, cancel_event=event)
        )

        assert result.cancelled is True
        assert result.processed == 0
        assert await store.load_catalog_entries(seed["competitor_id"]) == []
        assert await get_mapping(session_factory, seed["cream_id"]) is None


@pytest.mark.asyncio
async def test_store_failure_counts_as_product_error(store, seed, monkeypatch):
    async def broken_record(*args, **kwargs):
        raise RuntimeError("snapshot write failed")

    monkeypatch.setattr(store, "record_match", broken_record)
    adapter = FakeAdapter(store, results=[listing("https://shop.test/crema/p", CREAM)])

    result = await adapter.run(context(seed))

    assert (result.processed, result.errors, result.created) == (1, 1, 0)
    assert "snapshot write failed" in result.message


@pytest.mark.asyncio
async def test_cancellation_stops_before_next_product(store, seed):
    event = asyncio.Event()
    event.set()
    adapter = FakeAdapter(store, results=[])

    result = await adapter.run(context(seed, batch_size=0, cancel_event=event))

    assert result.cancelled is True
    assert result.processed == 0
