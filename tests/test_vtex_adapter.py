"""Tests for the VTEX storefront adapter against a mocked storefront."""

import asyncio
from datetime import datetime
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import select

from pricewatch.adapters.base import AdapterContext, canonical_url, parse_money
from pricewatch.adapters.vtex import BellaPielAdapter, VtexAdapter, extract_slug, resolve_prices
from pricewatch.config import settings
from pricewatch.db.models import CompetitorProduct
from pricewatch.ingest.http_client import PermanentURLError

BASE = "https://shop.test"


def vtex_product(slug, name, brand, price, list_price, ean=None, reference=None):
    return {
        "productName": name,
        "brand": brand,
        "linkText": slug,
        "link": f"{BASE}/{slug}/p?skuId=1",
        "productReference": reference,
        "categories": ["/Cuidado Facial/", "/Cuidado Facial/"],
        "items": [
            {
                "itemId": "1",
                "ean": ean or "",
                "sellers": [{"commertialOffer": {"Price": price, "ListPrice": list_price}}],
            }
        ],
    }


CREAM = vtex_product("crema-lrp-50", "Crema Hidratante 50ml", "La Roche-Posay", 99000, 120000,
                     ean="7701234567890", reference="LRP-50")
SERUM = vtex_product("serum-vichy-30", "Serum Vitamina C 30ml", "Vichy", 150000, 150000)
MASK = vtex_product("mascarilla-lrp", "Mascarilla Purificante", "La Roche-Posay", 50000, 60000)


@pytest.fixture(autouse=True)
def no_delay(monkeypatch):
    monkeypatch.setitem(settings.adapter_settings, "vtex", {"delay_seconds": 0, "catalog_page_size": 2})
    monkeypatch.setitem(settings.adapter_settings, "bellapiel", {"delay_seconds": 0, "catalog_page_size": 2})


class Storefront:
    """MockTransport handler emulating the catalog_system API."""

    def __init__(self, products):
        self.products = products
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        params = request.url.params

        if path == "/api/catalog_system/pub/brand/list":
            return httpx.Response(200, json=[
                {"id": 1, "name": "La Roche-Posay", "isActive": True},
                {"id": 2, "name": "Discontinued", "isActive": False},
                {"id": 3, "name": "Vichy", "isActive": True},
            ])

        if path == "/api/catalog_system/pub/products/search":
            fq = params.get("fq", "")
            if fq.startswith("B:"):
                brand = {"1": "La Roche-Posay", "3": "Vichy"}[fq[2:]]
                matching = [p for p in self.products if p["brand"] == brand]
                start, end = int(params["_from"]), int(params["_to"])
                return httpx.Response(200, json=matching[start:end + 1])
            if fq.startswith("alternateIds_Ean:"):
                ean = fq.split(":", 1)[1]
                return httpx.Response(200, json=[p for p in self.products if p["items"][0]["ean"] == ean])

        if path.startswith("/api/catalog_system/pub/products/search/"):
            slug = path.rsplit("/search/", 1)[1].removesuffix("/p")
            return httpx.Response(200, json=[p for p in self.products if p["linkText"] == slug])

        return httpx.Response(404)


def context(seed, run_date):
    return AdapterContext(
        competitor_id=seed["competitor_id"],
        competitor_name="Bella Piel",
        base_url=BASE,
        run_id=1,
        run_date=run_date,
    )


class TestHelpers:
    """Tests for price and URL helpers."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("$90.700", Decimal("90700")),
            ("$36.989,00", Decimal("36989.00")),
            ("1,234.50", Decimal("1234.50")),
            ("$ 1.299.900", Decimal("1299900")),
            (45900, Decimal("45900")),
            (12.5, Decimal("12.5")),
            ("", None),
            ("N/A", None),
            (None, None),
        ],
    )
    def test_parse_money(self, raw, expected):
        assert parse_money(raw) == expected

    def test_canonical_url(self):
        assert canonical_url("/crema/p?skuId=1#top", BASE) == f"{BASE}/crema/p"
        assert canonical_url("https://SHOP.test/crema/p/") == f"{BASE}/crema/p"

    def test_extract_slug(self):
        assert extract_slug(f"{BASE}/crema-lrp-50/p") == "crema-lrp-50"
        assert extract_slug(f"{BASE}/crema-lrp-50") == "crema-lrp-50"
        assert extract_slug(BASE) is None

    def test_resolve_prices_falls_back(self):
        assert resolve_prices(CREAM) == (Decimal("120000"), Decimal("99000"))
        no_list = {"items": [{"sellers": [{"commertialOffer": {"Price": 100}}]}]}
        assert resolve_prices(no_list) == (Decimal("100"), Decimal("100"))
        assert resolve_prices({"items": []}) == (None, None)

    def test_to_listing(self):
        item = VtexAdapter(store=None).to_listing(BASE, CREAM)
        assert item.url == f"{BASE}/crema-lrp-50/p"
        assert item.external_id == "7701234567890"
        assert item.product_id == "LRP-50"
        assert item.categories == "Cuidado Facial"
        assert item.list_price == Decimal("120000")


@pytest.mark.asyncio
async def test_run_crawls_catalog_and_resolves(store, seed, session_factory):
    storefront = Storefront([CREAM, MASK, SERUM])
    client = httpx.AsyncClient(transport=httpx.MockTransport(storefront))
    adapter = BellaPielAdapter(store, http_client=client)

    result = await adapter.run(context(seed, datetime.utcnow().date()))
    await client.aclose()

    assert (result.processed, result.created, result.errors, result.no_match) == (2, 2, 0, 0)

    crawl_requests = [r for r in storefront.requests if "fq=B" in str(r.url)]
    assert all("B%3A2" not in str(r.url) and "B:2" not in str(r.url) for r in crawl_requests)
    # A full La Roche-Posay page asks for one more; the short Vichy page stops
    assert len(crawl_requests) == 3

    entries = await store.load_catalog_entries(seed["competitor_id"])
    assert {e.url for e in entries} == {
        f"{BASE}/crema-lrp-50/p",
        f"{BASE}/mascarilla-lrp/p",
        f"{BASE}/serum-vichy-30/p",
    }

    async with session_factory() as session:
        mappings = {
            m.product_id: m
            for m in (await session.execute(select(CompetitorProduct))).scalars().all()
        }
    assert mappings[seed["cream_id"]].match_method == "exact-id"
    assert mappings[seed["cream_id"]].url == f"{BASE}/crema-lrp-50/p"
    assert mappings[seed["serum_id"]].match_method == "fuzzy-name"


@pytest.mark.asyncio
async def test_fetch_by_url_and_missing_product(store, seed):
    client = httpx.AsyncClient(transport=httpx.MockTransport(Storefront([CREAM])))
    adapter = VtexAdapter(store, http_client=client)
    ctx = context(seed, datetime.utcnow().date())

    async with adapter.open_http() as http:
        adapter.http = http
        item = await adapter.fetch_by_url(ctx, f"{BASE}/crema-lrp-50/p")
        assert item.promo_price == Decimal("99000")

        with pytest.raises(PermanentURLError):
            await adapter.fetch_by_url(ctx, f"{BASE}/discontinued/p")

        hits = await adapter.search_by_identifier(ctx, "7701234567890")
        assert [h.url for h in hits] == [item.url]
    await client.aclose()


class CancellingStorefront(Storefront):
    """Requests cancellation while the first brand is being crawled."""

    def __init__(self, products, cancel_event):
        super().__init__(products)
        self.cancel_event = cancel_event

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.params.get("fq") == "B:1":
            self.cancel_event.set()
        return super().__call__(request)


@pytest.mark.asyncio
async def test_cancelled_crawl_is_not_cached(store, seed, session_factory):
    cancel_event = asyncio.Event()
    storefront = CancellingStorefront([CREAM, MASK, SERUM], cancel_event)
    client = httpx.AsyncClient(transport=httpx.MockTransport(storefront))
    adapter = BellaPielAdapter(store, http_client=client)
    ctx = context(seed, datetime.utcnow().date())
    ctx.cancel_event = cancel_event

    result = await adapter.run(ctx)

    assert result.cancelled is True
    assert result.processed == 0
    assert not any("B:3" in str(r.url) or "B%3A3" in str(r.url) for r in storefront.requests)
    assert await store.load_catalog_entries(seed["competitor_id"]) == []
    async with session_factory() as session:
        assert (await session.execute(select(CompetitorProduct))).scalars().all() == []

    await client.aclose()

    # The next run crawls every brand again and can match the Vichy serum
    client = httpx.AsyncClient(transport=httpx.MockTransport(Storefront([CREAM, MASK, SERUM])))
    adapter = BellaPielAdapter(store, http_client=client)
    result = await adapter.run(context(seed, datetime.utcnow().date()))
    await client.aclose()

    assert (result.processed, result.created, result.no_match) == (2, 2, 0)
    entries = await store.load_catalog_entries(seed["competitor_id"])
    assert f"{BASE}/serum-vichy-30/p" in {e.url for e in entries}


@pytest.mark.asyncio
async def test_fetch_current_price_reads_without_recording(store, seed, session_factory):
    storefront = Storefront([CREAM])
    client = httpx.AsyncClient(transport=httpx.MockTransport(storefront))
    adapter = BellaPielAdapter(store, http_client=client)

    ctx = context(seed, datetime.utcnow().date())
    item = await adapter.fetch_current_price(ctx, f"{BASE}/crema-lrp-50/p")
    await client.aclose()

    assert (item.list_price, item.promo_price) == (Decimal("120000"), Decimal("99000"))
    assert adapter.http is None
    assert len(storefront.requests) == 1
    async with session_factory() as session:
        assert (await session.execute(select(CompetitorProduct))).scalars().all() == []
