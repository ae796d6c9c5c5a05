"""Source-side listing shared by adapters, the catalog cache and AI selection."""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional


@dataclass
class SourceListing:
    """A product as a competitor storefront exposes it."""

    url: str
    name: Optional[str]
    list_price: Optional[Decimal] = None
    promo_price: Optional[Decimal] = None
    external_id: Optional[str] = None  # EAN / GTIN
    product_id: Optional[str] = None  # Competitor's own id or SKU
    brand: Optional[str] = None
    description: Optional[str] = None
    categories: Optional[str] = None
    extracted_at: Optional[datetime] = None

    def __post_init__(self):
        if self.extracted_at is None:
            self.extracted_at = datetime.utcnow()

    @property
    def match_text(self) -> str:
        """Text scored against local descriptions."""
        if self.brand and self.name and self.brand.lower() not in self.name.lower():
            return f"{self.brand} {self.name}"
        return self.name or ""
