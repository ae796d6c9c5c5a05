"""Catalog store: the persistence contract used by adapters and the alert engine.

Every write is an idempotent upsert keyed by a unique constraint, so adapters
may retry or race without creating duplicate mappings, snapshots or cache rows.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricewatch.db.models import (
    Alert,
    AlertRule,
    Brand,
    Competitor,
    CompetitorCatalogEntry,
    CompetitorProduct,
    MatchMethod,
    PriceSnapshot,
    Product,
)

logger = logging.getLogger(__name__)


@dataclass
class ProductRow:
    """A local product targeted by a reconciliation run."""

    id: int
    ean: Optional[str]
    description: str
    url: Optional[str] = None  # Stored competitor URL, if already mapped
    brand_name: Optional[str] = None
    match_method: Optional[str] = None
    sku: Optional[str] = None


@dataclass
class CompetitorRow:
    """An active competitor."""

    id: int
    name: str
    base_url: str
    adapter_id: Optional[str]


@dataclass
class MappingRow:
    """The stored (product, competitor) mapping."""

    product_id: int
    competitor_id: int
    url: Optional[str]
    name: Optional[str] = None
    match_method: Optional[str] = None
    match_score: Optional[Decimal] = None
    last_matched_at: Optional[datetime] = None


@dataclass
class CatalogEntry:
    """A cached competitor-side listing."""

    url: str
    name: Optional[str]
    description: Optional[str] = None
    external_id: Optional[str] = None
    competitor_sku: Optional[str] = None
    brand: Optional[str] = None
    categories: Optional[str] = None
    list_price: Optional[Decimal] = None
    promo_price: Optional[Decimal] = None
    extracted_at: Optional[datetime] = None


@dataclass
class AlertRuleRow:
    """An active per-brand alert rule."""

    id: int
    brand_id: int
    list_threshold: Optional[Decimal]
    promo_threshold: Optional[Decimal]


@dataclass
class SnapshotRow:
    """A day's snapshot joined with the product baseline."""

    product_id: int
    brand_id: Optional[int]
    description: str
    list_price: Optional[Decimal]
    promo_price: Optional[Decimal]
    baseline_list_price: Optional[Decimal]
    baseline_promo_price: Optional[Decimal]


@dataclass
class NewAlert:
    """An alert to be inserted."""

    product_id: int
    competitor_id: int
    type: str
    message: str
    alert_rule_id: Optional[int] = None
    created_at: Optional[datetime] = None


def normalize_ean(value: Optional[str]) -> Optional[str]:
    """
    Canonical 13-digit EAN from a user or catalog value.

    Non-digits are dropped; 12 digits (UPC-A) gain a leading zero and 14
    digits (GTIN-14) lose their indicator digit. Other lengths of at least 8
    are kept as they are.

    Returns:
        The normalized code, or None when it cannot be an EAN
    """
    if not value or not value.strip():
        return None

    digits = "".join(ch for ch in value if ch.isdigit())
    if len(digits) == 13:
        return digits
    if len(digits) == 12:
        return "0" + digits
    if len(digits) == 14:
        return digits[1:]
    return digits if len(digits) >= 8 else None


def _to_score(score: Optional[float]) -> Optional[Decimal]:
    if score is None:
        return None
    return Decimal(str(round(float(score), 4)))


class CatalogStore(ABC):
    """Persistence contract for the reconciliation core."""

    @abstractmethod
    async def load_target_products(
        self,
        competitor_id: int,
        run_date: date,
        only_new: bool,
        batch_size: int,
        require_ean: bool = False,
    ) -> list[ProductRow]:
        """Products to resolve for a competitor (skips standing no-match rows)."""

    @abstractmethod
    async def upsert_mapping(
        self,
        product_id: int,
        competitor_id: int,
        url: Optional[str],
        name: Optional[str],
        match_method: Optional[str],
        score: Optional[float],
        matched_at: Optional[datetime] = None,
    ) -> None:
        """Insert or update the (product, competitor) mapping."""

    @abstractmethod
    async def mark_no_match(self, product_id: int, competitor_id: int) -> None:
        """Record that no competitor listing could be resolved."""

    @abstractmethod
    async def upsert_snapshot(
        self,
        product_id: int,
        competitor_id: int,
        snapshot_date: date,
        list_price: Optional[Decimal],
        promo_price: Optional[Decimal],
    ) -> None:
        """Insert or overwrite the day's price snapshot."""

    @abstractmethod
    async def record_match(
        self,
        product_id: int,
        competitor_id: int,
        url: Optional[str],
        name: Optional[str],
        match_method: Optional[str],
        score: Optional[float],
        snapshot_date: date,
        list_price: Optional[Decimal],
        promo_price: Optional[Decimal],
    ) -> None:
        """Upsert mapping and snapshot atomically."""

    @abstractmethod
    async def upsert_catalog_entry(self, competitor_id: int, entry: CatalogEntry) -> None:
        """Insert or update a cached competitor listing."""

    @abstractmethod
    async def upsert_catalog_entries(
        self, competitor_id: int, entries: Iterable[CatalogEntry]
    ) -> int:
        """Upsert many cached listings in one transaction."""

    @abstractmethod
    async def load_catalog_entries(self, competitor_id: int) -> list[CatalogEntry]:
        """Load the cached catalog of a competitor."""

    @abstractmethod
    async def load_active_competitors(
        self, competitor_id: Optional[int] = None
    ) -> list[CompetitorRow]:
        """Active competitors, optionally filtered to one."""

    @abstractmethod
    async def load_active_alert_rules(self) -> list[AlertRuleRow]:
        """Active alert rules."""

    @abstractmethod
    async def load_snapshots_for_day(
        self, competitor_id: int, snapshot_date: date
    ) -> list[SnapshotRow]:
        """Snapshots of one day joined to their product baseline."""

    @abstractmethod
    async def load_no_match_mappings(self, competitor_id: int) -> list[int]:
        """Product ids whose mapping is a standing no-match."""

    @abstractmethod
    async def load_todays_alert_keys(
        self, competitor_id: int, day_start: datetime, day_end: datetime
    ) -> set[tuple[int, str]]:
        """(product_id, type) of alerts created in [day_start, day_end)."""

    @abstractmethod
    async def insert_alerts(self, alerts: list[NewAlert]) -> int:
        """Insert alerts, returning how many were written."""

    @abstractmethod
    async def has_products(self) -> bool:
        """Whether the local catalog holds any product."""

    @abstractmethod
    async def find_product_by_ean(self, ean: str) -> Optional[ProductRow]:
        """Local product whose EAN normalizes to the given one."""

    @abstractmethod
    async def load_competitor(self, competitor_id: int) -> Optional[CompetitorRow]:
        """A competitor by id, active or not."""

    @abstractmethod
    async def load_mapping(self, product_id: int, competitor_id: int) -> Optional[MappingRow]:
        """The stored mapping of a product for a competitor."""


class SqlCatalogStore(CatalogStore):
    """SQLAlchemy implementation (PostgreSQL in production, SQLite in tests)."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @staticmethod
    def _insert(session: AsyncSession, model):
        """Dialect-specific INSERT supporting ON CONFLICT."""
        dialect = session.get_bind().dialect.name
        if dialect == "postgresql":
            return pg_insert(model)
        if dialect == "sqlite":
            return sqlite_insert(model)
        raise NotImplementedError(f"Upserts not supported for dialect: {dialect}")

    def _mapping_stmt(
        self,
        session: AsyncSession,
        product_id: int,
        competitor_id: int,
        url: Optional[str],
        name: Optional[str],
        match_method: Optional[str],
        score: Optional[float],
        matched_at: Optional[datetime],
        clear_score: bool = False,
    ):
        matched_at = matched_at or datetime.utcnow()
        stmt = self._insert(session, CompetitorProduct).values(
            product_id=product_id,
            competitor_id=competitor_id,
            url=url,
            name=name,
            match_method=match_method,
            match_score=_to_score(score),
            last_matched_at=matched_at,
        )
        table = CompetitorProduct.__table__
        # URL always follows the latest resolution; the rest keeps prior values
        # when the caller has nothing new (e.g. a direct URL refresh)
        update = {
            "url": stmt.excluded.url,
            "name": func.coalesce(stmt.excluded.name, table.c.name),
            "match_method": func.coalesce(stmt.excluded.match_method, table.c.match_method),
            "match_score": (
                stmt.excluded.match_score
                if clear_score
                else func.coalesce(stmt.excluded.match_score, table.c.match_score)
            ),
            "last_matched_at": stmt.excluded.last_matched_at,
        }
        return stmt.on_conflict_do_update(
            index_elements=["product_id", "competitor_id"],
            set_=update,
        )

    def _snapshot_stmt(
        self,
        session: AsyncSession,
        product_id: int,
        competitor_id: int,
        snapshot_date: date,
        list_price: Optional[Decimal],
        promo_price: Optional[Decimal],
    ):
        stmt = self._insert(session, PriceSnapshot).values(
            product_id=product_id,
            competitor_id=competitor_id,
            snapshot_date=snapshot_date,
            list_price=list_price,
            promo_price=promo_price,
            created_at=datetime.utcnow(),
        )
        return stmt.on_conflict_do_update(
            index_elements=["product_id", "competitor_id", "snapshot_date"],
            set_={
                "list_price": stmt.excluded.list_price,
                "promo_price": stmt.excluded.promo_price,
            },
        )

    def _catalog_stmt(self, session: AsyncSession, competitor_id: int, entry: CatalogEntry):
        stmt = self._insert(session, CompetitorCatalogEntry).values(
            competitor_id=competitor_id,
            url=entry.url,
            name=entry.name,
            description=entry.description,
            external_id=entry.external_id,
            competitor_sku=entry.competitor_sku,
            brand=entry.brand,
            categories=entry.categories,
            list_price=entry.list_price,
            promo_price=entry.promo_price,
            extracted_at=entry.extracted_at or datetime.utcnow(),
        )
        excluded = stmt.excluded
        return stmt.on_conflict_do_update(
            index_elements=["competitor_id", "url"],
            set_={
                "name": excluded.name,
                "description": excluded.description,
                "external_id": excluded.external_id,
                "competitor_sku": excluded.competitor_sku,
                "brand": excluded.brand,
                "categories": excluded.categories,
                "list_price": excluded.list_price,
                "promo_price": excluded.promo_price,
                "extracted_at": excluded.extracted_at,
            },
        )

    async def load_target_products(
        self,
        competitor_id: int,
        run_date: date,
        only_new: bool,
        batch_size: int,
        require_ean: bool = False,
    ) -> list[ProductRow]:
        query = (
            select(
                Product.id,
                Product.ean,
                Product.description,
                CompetitorProduct.url,
                Brand.name,
                CompetitorProduct.match_method,
            )
            .outerjoin(
                CompetitorProduct,
                and_(
                    CompetitorProduct.product_id == Product.id,
                    CompetitorProduct.competitor_id == competitor_id,
                ),
            )
            .outerjoin(
                PriceSnapshot,
                and_(
                    PriceSnapshot.product_id == Product.id,
                    PriceSnapshot.competitor_id == competitor_id,
                    PriceSnapshot.snapshot_date == run_date,
                ),
            )
            .outerjoin(Brand, Brand.id == Product.brand_id)
            .where(
                or_(
                    CompetitorProduct.id.is_(None),
                    CompetitorProduct.match_method.is_(None),
                    CompetitorProduct.match_method != MatchMethod.NO_MATCH.value,
                    CompetitorProduct.url.is_not(None),
                )
            )
            .order_by(Product.id)
        )
        if require_ean:
            query = query.where(Product.ean.is_not(None))
        if only_new:
            query = query.where(PriceSnapshot.id.is_(None))
        if batch_size > 0:
            query = query.limit(batch_size)

        async with self._session_factory() as session:
            result = await session.execute(query)
            return [
                ProductRow(
                    id=row[0],
                    ean=row[1],
                    description=row[2],
                    url=row[3],
                    brand_name=row[4],
                    match_method=row[5],
                )
                for row in result.all()
            ]

    async def upsert_mapping(
        self,
        product_id: int,
        competitor_id: int,
        url: Optional[str],
        name: Optional[str],
        match_method: Optional[str],
        score: Optional[float],
        matched_at: Optional[datetime] = None,
    ) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    self._mapping_stmt(
                        session, product_id, competitor_id, url, name,
                        match_method, score, matched_at,
                    )
                )

    async def mark_no_match(self, product_id: int, competitor_id: int) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    self._mapping_stmt(
                        session,
                        product_id,
                        competitor_id,
                        url=None,
                        name=None,
                        match_method=MatchMethod.NO_MATCH.value,
                        score=None,
                        matched_at=datetime.utcnow(),
                        clear_score=True,
                    )
                )

    async def upsert_snapshot(
        self,
        product_id: int,
        competitor_id: int,
        snapshot_date: date,
        list_price: Optional[Decimal],
        promo_price: Optional[Decimal],
    ) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    self._snapshot_stmt(
                        session, product_id, competitor_id, snapshot_date,
                        list_price, promo_price,
                    )
                )

    async def record_match(
        self,
        product_id: int,
        competitor_id: int,
        url: Optional[str],
        name: Optional[str],
        match_method: Optional[str],
        score: Optional[float],
        snapshot_date: date,
        list_price: Optional[Decimal],
        promo_price: Optional[Decimal],
    ) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    self._mapping_stmt(
                        session, product_id, competitor_id, url, name,
                        match_method, score, datetime.utcnow(),
                    )
                )
                await session.execute(
                    self._snapshot_stmt(
                        session, product_id, competitor_id, snapshot_date,
                        list_price, promo_price,
                    )
                )

    async def upsert_catalog_entry(self, competitor_id: int, entry: CatalogEntry) -> None:
        await self.upsert_catalog_entries(competitor_id, [entry])

    async def upsert_catalog_entries(
        self, competitor_id: int, entries: Iterable[CatalogEntry]
    ) -> int:
        count = 0
        async with self._session_factory() as session:
            async with session.begin():
                for entry in entries:
                    await session.execute(self._catalog_stmt(session, competitor_id, entry))
                    count += 1
        return count

    async def load_catalog_entries(self, competitor_id: int) -> list[CatalogEntry]:
        query = (
            select(CompetitorCatalogEntry)
            .where(CompetitorCatalogEntry.competitor_id == competitor_id)
            .order_by(CompetitorCatalogEntry.id)
        )
        async with self._session_factory() as session:
            result = await session.execute(query)
            return [
                CatalogEntry(
                    url=row.url,
                    name=row.name,
                    description=row.description,
                    external_id=row.external_id,
                    competitor_sku=row.competitor_sku,
                    brand=row.brand,
                    categories=row.categories,
                    list_price=row.list_price,
                    promo_price=row.promo_price,
                    extracted_at=row.extracted_at,
                )
                for row in result.scalars().all()
            ]

    async def load_active_competitors(
        self, competitor_id: Optional[int] = None
    ) -> list[CompetitorRow]:
        query = select(Competitor).where(Competitor.is_active.is_(True)).order_by(Competitor.id)
        if competitor_id is not None:
            query = query.where(Competitor.id == competitor_id)

        async with self._session_factory() as session:
            result = await session.execute(query)
            return [
                CompetitorRow(
                    id=c.id,
                    name=c.name,
                    base_url=c.base_url or "",
                    adapter_id=c.adapter_id,
                )
                for c in result.scalars().all()
            ]

    async def load_active_alert_rules(self) -> list[AlertRuleRow]:
        query = select(AlertRule).where(AlertRule.active.is_(True)).order_by(AlertRule.id)
        async with self._session_factory() as session:
            result = await session.execute(query)
            return [
                AlertRuleRow(
                    id=rule.id,
                    brand_id=rule.brand_id,
                    list_threshold=rule.list_price_threshold_percent,
                    promo_threshold=rule.promo_price_threshold_percent,
                )
                for rule in result.scalars().all()
            ]

    async def load_snapshots_for_day(
        self, competitor_id: int, snapshot_date: date
    ) -> list[SnapshotRow]:
        query = (
            select(
                PriceSnapshot.product_id,
                Product.brand_id,
                Product.description,
                PriceSnapshot.list_price,
                PriceSnapshot.promo_price,
                Product.list_price,
                Product.promo_price,
            )
            .join(Product, Product.id == PriceSnapshot.product_id)
            .where(
                PriceSnapshot.competitor_id == competitor_id,
                PriceSnapshot.snapshot_date == snapshot_date,
            )
            .order_by(PriceSnapshot.product_id)
        )
        async with self._session_factory() as session:
            result = await session.execute(query)
            return [
                SnapshotRow(
                    product_id=row[0],
                    brand_id=row[1],
                    description=row[2],
                    list_price=row[3],
                    promo_price=row[4],
                    baseline_list_price=row[5],
                    baseline_promo_price=row[6],
                )
                for row in result.all()
            ]

    async def load_no_match_mappings(self, competitor_id: int) -> list[int]:
        query = (
            select(CompetitorProduct.product_id)
            .where(
                CompetitorProduct.competitor_id == competitor_id,
                CompetitorProduct.match_method == MatchMethod.NO_MATCH.value,
            )
            .order_by(CompetitorProduct.product_id)
        )
        async with self._session_factory() as session:
            result = await session.execute(query)
            return [row[0] for row in result.all()]

    async def load_todays_alert_keys(
        self, competitor_id: int, day_start: datetime, day_end: datetime
    ) -> set[tuple[int, str]]:
        query = select(Alert.product_id, Alert.type).where(
            Alert.competitor_id == competitor_id,
            Alert.created_at >= day_start,
            Alert.created_at < day_end,
        )
        async with self._session_factory() as session:
            result = await session.execute(query)
            return {(row[0], row[1]) for row in result.all()}

    async def insert_alerts(self, alerts: list[NewAlert]) -> int:
        if not alerts:
            return 0
        async with self._session_factory() as session:
            async with session.begin():
                session.add_all(
                    [
                        Alert(
                            product_id=a.product_id,
                            competitor_id=a.competitor_id,
                            alert_rule_id=a.alert_rule_id,
                            type=a.type,
                            message=a.message,
                            status="open",
                            created_at=a.created_at or datetime.utcnow(),
                        )
                        for a in alerts
                    ]
                )
        return len(alerts)

    async def has_products(self) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(select(Product.id).limit(1))
            return result.first() is not None

    async def find_product_by_ean(self, ean: str) -> Optional[ProductRow]:
        normalized = normalize_ean(ean)
        if normalized is None:
            return None

        async with self._session_factory() as session:
            result = await session.execute(
                select(Product).where(Product.ean == normalized).order_by(Product.id).limit(1)
            )
            product = result.scalar_one_or_none()
            if product is None:
                # Stored codes may carry spaces, dashes or a UPC/GTIN-14 length
                result = await session.execute(
                    select(Product).where(Product.ean.is_not(None)).order_by(Product.id)
                )
                product = next(
                    (p for p in result.scalars() if normalize_ean(p.ean) == normalized), None
                )

        if product is None:
            return None
        return ProductRow(id=product.id, ean=product.ean, description=product.description, sku=product.sku)

    async def load_competitor(self, competitor_id: int) -> Optional[CompetitorRow]:
        async with self._session_factory() as session:
            competitor = await session.get(Competitor, competitor_id)
            if competitor is None:
                return None
            return CompetitorRow(
                id=competitor.id,
                name=competitor.name,
                base_url=competitor.base_url or "",
                adapter_id=competitor.adapter_id,
            )

    async def load_mapping(self, product_id: int, competitor_id: int) -> Optional[MappingRow]:
        query = select(CompetitorProduct).where(
            CompetitorProduct.product_id == product_id,
            CompetitorProduct.competitor_id == competitor_id,
        )
        async with self._session_factory() as session:
            mapping = (await session.execute(query)).scalar_one_or_none()
            if mapping is None:
                return None
            return MappingRow(
                product_id=mapping.product_id,
                competitor_id=mapping.competitor_id,
                url=mapping.url,
                name=mapping.name,
                match_method=mapping.match_method,
                match_score=mapping.match_score,
                last_matched_at=mapping.last_matched_at,
            )
