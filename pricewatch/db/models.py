"""SQLAlchemy database models."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class MatchMethod(str, Enum):
    """How a local product was resolved to a competitor listing."""

    URL = "url"
    EXACT_ID = "exact-id"
    FUZZY_NAME = "fuzzy-name"
    AI = "ai"
    MANUAL = "manual"
    NO_MATCH = "no-match"


class AlertType(str, Enum):
    """Alert categories."""

    LIST = "list"
    PROMO = "promo"
    NO_MATCH = "no_match"


class RunStatus(str, Enum):
    """Lifecycle states of a reconciliation run."""

    RUNNING = "Running"
    SUCCESS = "Success"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class Brand(Base):
    """Product brand (alert rules are configured per brand)."""

    __tablename__ = "brands"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    products: Mapped[list["Product"]] = relationship("Product", back_populates="brand")


class Product(Base):
    """Local catalog item tracked against competitors."""

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    sku: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    ean: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, index=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    brand_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("brands.id"), nullable=True
    )
    # Baseline prices, edited by catalog administration only
    list_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    promo_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    brand: Mapped[Optional["Brand"]] = relationship("Brand", back_populates="products")


class Competitor(Base):
    """A tracked competitor storefront."""

    __tablename__ = "competitors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    base_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    adapter_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )


class CompetitorProduct(Base):
    """Resolved mapping between a local product and a competitor listing."""

    __tablename__ = "competitor_products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("products.id"), nullable=False
    )
    competitor_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("competitors.id"), nullable=False
    )
    url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    match_method: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    match_score: Mapped[Optional[Decimal]] = mapped_column(Numeric(6, 4), nullable=True)
    last_matched_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    product: Mapped["Product"] = relationship("Product")

    __table_args__ = (
        UniqueConstraint("product_id", "competitor_id", name="uq_competitor_product"),
    )


class PriceSnapshot(Base):
    """One day's observed prices for a (product, competitor) pair."""

    __tablename__ = "price_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("products.id"), nullable=False
    )
    competitor_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("competitors.id"), nullable=False
    )
    snapshot_date: Mapped[date] = mapped_column(Date, nullable=False)
    list_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    promo_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    product: Mapped["Product"] = relationship("Product")

    __table_args__ = (
        UniqueConstraint(
            "product_id", "competitor_id", "snapshot_date", name="uq_price_snapshot_day"
        ),
    )


class CompetitorCatalogEntry(Base):
    """Cached competitor-side listing, keyed by URL per competitor."""

    __tablename__ = "competitor_catalog"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    competitor_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("competitors.id"), nullable=False
    )
    url: Mapped[str] = mapped_column(String(1024), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    external_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)  # EAN
    competitor_sku: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    brand: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    categories: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # " | " joined
    list_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    promo_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    extracted_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("competitor_id", "url", name="uq_competitor_catalog_url"),
    )


class AlertRule(Base):
    """Per-brand price gap thresholds."""

    __tablename__ = "alert_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    brand_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("brands.id"), nullable=False
    )
    list_price_threshold_percent: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(6, 2), nullable=True
    )
    promo_price_threshold_percent: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(6, 2), nullable=True
    )
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )


class Alert(Base):
    """Price gap or coverage alert for a (product, competitor)."""

    __tablename__ = "alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("products.id"), nullable=False
    )
    competitor_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("competitors.id"), nullable=False
    )
    alert_rule_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("alert_rules.id"), nullable=True
    )
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(String(16), default="open", nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False, index=True
    )

    __table_args__ = (
        Index("ix_alerts_competitor_created", "competitor_id", "created_at"),
    )


class SchedulerRun(Base):
    """Lifecycle record of one reconciliation run."""

    __tablename__ = "scheduler_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    status: Mapped[str] = mapped_column(
        String(20), default=RunStatus.RUNNING.value, nullable=False
    )
    trigger_type: Mapped[str] = mapped_column(String(20), default="Scheduled", nullable=False)
    started_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # At most one row may hold 'Running'; this index is the admission gate
    __table_args__ = (
        Index(
            "uq_scheduler_runs_single_running",
            "status",
            unique=True,
            postgresql_where=text("status = 'Running'"),
            sqlite_where=text("status = 'Running'"),
        ),
    )


class SchedulerSettings(Base):
    """Calendar configuration for the scheduled daily run (single row)."""

    __tablename__ = "scheduler_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    daily_time: Mapped[str] = mapped_column(String(5), default="06:00", nullable=False)  # HH:MM
    days_of_week_mask: Mapped[int] = mapped_column(Integer, default=127, nullable=False)  # bit 0 = Monday
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
