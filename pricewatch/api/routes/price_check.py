"""On-demand price check of one mapped product at one competitor."""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from pricewatch.adapters.base import AdapterContext
from pricewatch.adapters.registry import AdapterRegistry
from pricewatch.api.deps import get_registry, get_store
from pricewatch.db.store import CatalogStore, normalize_ean
from pricewatch.ingest.http_client import FetchError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/competitors", tags=["competitors"])


class CheckedProduct(BaseModel):
    id: int
    sku: Optional[str] = None
    ean: Optional[str] = None
    description: str


class CheckedCompetitor(BaseModel):
    id: int
    name: str
    adapter_id: Optional[str] = None


class StoredMapping(BaseModel):
    url: str
    match_method: Optional[str] = None
    match_score: Optional[Decimal] = None
    last_matched_at: Optional[datetime] = None


class LivePrice(BaseModel):
    url: str
    name: Optional[str] = None
    list_price: Optional[Decimal] = None
    promo_price: Optional[Decimal] = None


class PriceCheckResponse(BaseModel):
    """Stored mapping next to the price the competitor shows right now."""
    product: CheckedProduct
    competitor: CheckedCompetitor
    mapping: StoredMapping
    current: LivePrice


@router.get("/price-check", response_model=PriceCheckResponse)
async def check_price(
    competitor_id: int = Query(...),
    ean: str = Query(...),
    store: CatalogStore = Depends(get_store),
    registry: AdapterRegistry = Depends(get_registry),
):
    """
    Re-read the competitor page stored for a product, without recording it.

    Nothing is written: no snapshot, no mapping change.
    """
    if not ean.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="EAN is required")
    normalized = normalize_ean(ean)
    if normalized is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid EAN")

    product = await store.find_product_by_ean(normalized)
    if product is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No product with that EAN")

    competitor = await store.load_competitor(competitor_id)
    if competitor is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Competitor not found")

    mapping = await store.load_mapping(product.id, competitor.id)
    if mapping is None or not (mapping.url or "").strip():
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Product has no stored URL for this competitor",
        )

    if not competitor.adapter_id:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Competitor {competitor.name} has no adapter id",
        )
    adapter = registry.resolve(competitor.adapter_id)
    if adapter is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Adapter not found: {competitor.adapter_id}",
        )

    context = AdapterContext(
        competitor_id=competitor.id,
        competitor_name=competitor.name,
        base_url=competitor.base_url,
        run_id=0,
        run_date=datetime.utcnow().date(),
    )
    try:
        listing = await adapter.fetch_current_price(context, mapping.url)
    except NotImplementedError as e:
        raise HTTPException(status_code=status.HTTP_501_NOT_IMPLEMENTED, detail=str(e))
    except FetchError as e:
        logger.warning(f"Price check failed for product {product.id} at {competitor.name}: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    return PriceCheckResponse(
        product=CheckedProduct(id=product.id, sku=product.sku, ean=product.ean, description=product.description),
        competitor=CheckedCompetitor(id=competitor.id, name=competitor.name, adapter_id=competitor.adapter_id),
        mapping=StoredMapping(
            url=mapping.url,
            match_method=mapping.match_method,
            match_score=mapping.match_score,
            last_matched_at=mapping.last_matched_at,
        ),
        current=LivePrice(
            url=listing.url or mapping.url,
            name=listing.name,
            list_price=listing.list_price,
            promo_price=listing.promo_price,
        ),
    )
