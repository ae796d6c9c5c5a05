"""Shared fixtures: a throwaway SQLite database and seed data."""

from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from pricewatch.db.models import AlertRule, Base, Brand, Competitor, Product
from pricewatch.db.store import SqlCatalogStore


@pytest.fixture
async def session_factory(tmp_path):
    """Session factory bound to a fresh SQLite database file."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield factory

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def store(session_factory):
    return SqlCatalogStore(session_factory)


@pytest.fixture
async def seed(session_factory):
    """One brand with a 20% list / 10% promo rule, two products and a competitor."""
    async with session_factory() as session:
        brand = Brand(name="La Roche-Posay")
        other_brand = Brand(name="Vichy")
        session.add_all([brand, other_brand])
        await session.flush()

        cream = Product(
            sku="SKU-1",
            ean="7701234567890",
            description="Crema Hidratante La Roche 50ml",
            brand_id=brand.id,
            list_price=Decimal("100.00"),
            promo_price=Decimal("90.00"),
        )
        serum = Product(
            sku="SKU-2",
            ean=None,
            description="Serum Vitamina C Vichy 30ml",
            brand_id=other_brand.id,
            list_price=Decimal("200.00"),
            promo_price=Decimal("180.00"),
        )
        competitor = Competitor(
            name="Bella Piel",
            base_url="https://www.bellapiel.com.co",
            adapter_id="bellapiel",
            is_active=True,
        )
        session.add_all([cream, serum, competitor])
        await session.flush()

        rule = AlertRule(
            brand_id=brand.id,
            list_price_threshold_percent=Decimal("20"),
            promo_price_threshold_percent=Decimal("10"),
            active=True,
        )
        session.add(rule)
        await session.commit()

        return {
            "brand_id": brand.id,
            "other_brand_id": other_brand.id,
            "cream_id": cream.id,
            "serum_id": serum.id,
            "competitor_id": competitor.id,
            "rule_id": rule.id,
        }
