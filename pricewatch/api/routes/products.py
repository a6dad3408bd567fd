"""Product management routes."""

import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from urllib.parse import urlparse

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch.api.deps import get_current_user_id, get_database
from pricewatch.db.models import Product
from pricewatch.errors import (
    DuplicateProduct,
    ExtractionError,
    InvalidReviewResolution,
    ProductNotFound,
    ScheduleConflict,
)
from pricewatch.extract.candidates import ExtractionMethod
from pricewatch.services.products import product_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/products", tags=["products"])

METHOD_PATTERN = "^(" + "|".join(m.value for m in ExtractionMethod) + ")$"


class ProductCreate(BaseModel):
    url: str
    refresh_interval: Optional[int] = Field(default=None, gt=0)
    chosen_price: Optional[Decimal] = Field(default=None, gt=0)
    chosen_method: Optional[str] = Field(default=None, pattern=METHOD_PATTERN)
    chosen_currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    price_drop_threshold: Optional[Decimal] = Field(default=None, gt=0)
    target_price: Optional[Decimal] = Field(default=None, gt=0)
    notify_back_in_stock: bool = False

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        parsed = urlparse(v.strip())
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("Invalid URL format")
        return v.strip()


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(default=None, max_length=255)
    refresh_interval: Optional[int] = Field(default=None, gt=0)
    price_drop_threshold: Optional[Decimal] = Field(default=None, gt=0)
    target_price: Optional[Decimal] = Field(default=None, gt=0)
    notify_back_in_stock: Optional[bool] = None
    ai_extraction_disabled: Optional[bool] = None
    ai_verification_disabled: Optional[bool] = None


class ReviewChoice(BaseModel):
    price: Decimal = Field(gt=0)
    method: str = Field(pattern=METHOD_PATTERN)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)


class BulkPause(BaseModel):
    ids: List[int] = Field(min_length=1)
    paused: bool


class CandidateResponse(BaseModel):
    price: Decimal
    currency: str
    method: str
    confidence: float
    context: Optional[str] = None


class SuggestedPriceResponse(BaseModel):
    price: Decimal
    currency: str


class ReviewResponse(BaseModel):
    needs_review: bool = True
    url: str
    name: Optional[str] = None
    image_url: Optional[str] = None
    stock_status: str = "unknown"
    candidates: List[CandidateResponse]
    suggested_price: Optional[SuggestedPriceResponse] = None


class ProductResponse(BaseModel):
    id: int
    url: str
    name: Optional[str]
    image_url: Optional[str]
    refresh_interval: int
    last_checked: Optional[datetime]
    next_check_at: Optional[datetime]
    checking_paused: bool
    stock_status: str
    price_drop_threshold: Optional[Decimal]
    target_price: Optional[Decimal]
    notify_back_in_stock: bool
    ai_extraction_disabled: bool
    ai_verification_disabled: bool
    ai_status: Optional[str]
    preferred_method: Optional[str]
    anchor_price: Optional[Decimal]
    review_pending: bool
    review_candidates: Optional[List[CandidateResponse]]
    review_suggested_price: Optional[SuggestedPriceResponse]
    consecutive_failures: int
    last_check_failed: bool
    last_error: Optional[str]
    created_at: datetime
    current_price: Optional[Decimal] = None
    currency: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class RefreshResponse(BaseModel):
    outcome: str
    product: ProductResponse


class PriceHistoryResponse(BaseModel):
    id: int
    price: Decimal
    currency: str
    ai_status: Optional[str]
    recorded_at: datetime

    model_config = ConfigDict(from_attributes=True)


class StockHistoryEntry(BaseModel):
    status: str
    changed_at: datetime

    model_config = ConfigDict(from_attributes=True)


class StockStatsResponse(BaseModel):
    availability_percent: float
    outage_count: int
    avg_outage_days: Optional[float]
    longest_outage_days: Optional[float]
    days_in_current_status: float
    current_status: str
    window_days: int


class StockTimelineResponse(BaseModel):
    stats: Optional[StockStatsResponse]
    history: List[StockHistoryEntry]


async def _product_response(db: AsyncSession, product: Product) -> ProductResponse:
    response = ProductResponse.model_validate(product)
    latest = await product_service.current_price(db, product.id)
    if latest is not None:
        response.current_price = latest.price
        response.currency = latest.currency
    return response


def _not_found(e: ProductNotFound) -> HTTPException:
    return HTTPException(status_code=404, detail="Product not found")


@router.get("", response_model=List[ProductResponse])
async def list_products(
    db: AsyncSession = Depends(get_database),
    user_id: int = Depends(get_current_user_id),
):
    """List the caller's products with their current price."""
    products = await product_service.list_products(db, user_id)
    return [await _product_response(db, p) for p in products]


@router.post("", response_model=ProductResponse | ReviewResponse, status_code=201)
async def create_product(
    product_data: ProductCreate,
    response: Response,
    db: AsyncSession = Depends(get_database),
    user_id: int = Depends(get_current_user_id),
):
    """
    Start tracking a product.

    When extraction strategies disagree nothing is created; the response
    (200) lists the candidates and the product must be created again with
    `chosen_price` and `chosen_method`.
    """
    try:
        result = await product_service.create_product(
            db,
            user_id,
            product_data.url,
            refresh_interval=product_data.refresh_interval,
            chosen_price=product_data.chosen_price,
            chosen_method=product_data.chosen_method,
            chosen_currency=product_data.chosen_currency,
            price_drop_threshold=product_data.price_drop_threshold,
            target_price=product_data.target_price,
            notify_back_in_stock=product_data.notify_back_in_stock,
        )
    except DuplicateProduct:
        raise HTTPException(status_code=409, detail="You are already tracking this product")
    except InvalidReviewResolution as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ExtractionError as e:
        logger.info(f"Create failed for {product_data.url}: {e}")
        raise HTTPException(status_code=400, detail="Could not extract price from the provided URL")

    if result.needs_review:
        response.status_code = status.HTTP_200_OK
        page = result.page
        suggested = result.review.suggested_price
        return ReviewResponse(
            url=product_data.url,
            name=page.name if page else None,
            image_url=page.image_url if page else None,
            stock_status=page.stock_status.value if page else "unknown",
            candidates=[CandidateResponse(**c.to_dict()) for c in result.review.candidates],
            suggested_price=SuggestedPriceResponse(**suggested.to_dict()) if suggested else None,
        )

    return await _product_response(db, result.product)


@router.post("/bulk/pause")
async def bulk_pause(
    data: BulkPause,
    db: AsyncSession = Depends(get_database),
    user_id: int = Depends(get_current_user_id),
):
    """Pause or resume checking for several products."""
    updated = await product_service.set_paused(db, user_id, data.ids, data.paused)
    return {
        "message": f"{updated} product(s) {'paused' if data.paused else 'resumed'}",
        "updated": updated,
    }


@router.get("/{product_id}", response_model=ProductResponse)
async def get_product(
    product_id: int,
    db: AsyncSession = Depends(get_database),
    user_id: int = Depends(get_current_user_id),
):
    try:
        product = await product_service.get_product(db, user_id, product_id)
    except ProductNotFound as e:
        raise _not_found(e)
    return await _product_response(db, product)


@router.put("/{product_id}", response_model=ProductResponse)
async def update_product(
    product_id: int,
    data: ProductUpdate,
    db: AsyncSession = Depends(get_database),
    user_id: int = Depends(get_current_user_id),
):
    """Update user-owned product settings."""
    try:
        product = await product_service.update_product(
            db, user_id, product_id, data.model_dump(exclude_unset=True)
        )
    except ProductNotFound as e:
        raise _not_found(e)
    return await _product_response(db, product)


@router.delete("/{product_id}")
async def delete_product(
    product_id: int,
    db: AsyncSession = Depends(get_database),
    user_id: int = Depends(get_current_user_id),
):
    try:
        await product_service.delete_product(db, user_id, product_id)
    except ProductNotFound as e:
        raise _not_found(e)
    return {"message": "Product deleted successfully"}


@router.post("/{product_id}/refresh", response_model=RefreshResponse)
async def refresh_product(
    product_id: int,
    db: AsyncSession = Depends(get_database),
    user_id: int = Depends(get_current_user_id),
):
    """Check a product now, waiting behind any running check."""
    try:
        outcome, product = await product_service.refresh_now(db, user_id, product_id)
    except ProductNotFound as e:
        raise _not_found(e)
    return RefreshResponse(outcome=outcome.value, product=await _product_response(db, product))


@router.post("/{product_id}/review", response_model=ProductResponse)
async def resolve_review(
    product_id: int,
    choice: ReviewChoice,
    db: AsyncSession = Depends(get_database),
    user_id: int = Depends(get_current_user_id),
):
    """Pick the correct price from a pending review."""
    try:
        product = await product_service.resolve_review(
            db, user_id, product_id, choice.price, choice.method, choice.currency
        )
    except ProductNotFound as e:
        raise _not_found(e)
    except InvalidReviewResolution as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ScheduleConflict as e:
        raise HTTPException(status_code=409, detail=str(e))
    return await _product_response(db, product)


@router.get("/{product_id}/prices", response_model=List[PriceHistoryResponse])
async def get_price_history(
    product_id: int,
    days: Optional[int] = Query(None, gt=0, description="Only the last N days"),
    db: AsyncSession = Depends(get_database),
    user_id: int = Depends(get_current_user_id),
):
    try:
        return await product_service.get_price_history(db, user_id, product_id, days)
    except ProductNotFound as e:
        raise _not_found(e)


@router.get("/{product_id}/stock", response_model=StockTimelineResponse)
async def get_stock_stats(
    product_id: int,
    window_days: Optional[int] = Query(None, gt=0, le=365),
    db: AsyncSession = Depends(get_database),
    user_id: int = Depends(get_current_user_id),
):
    """Availability statistics and the status timeline for a window."""
    try:
        stats, history = await product_service.get_stock_stats(db, user_id, product_id, window_days)
    except ProductNotFound as e:
        raise _not_found(e)
    return StockTimelineResponse(
        stats=StockStatsResponse(**stats.to_dict()) if stats else None,
        history=[StockHistoryEntry.model_validate(entry) for entry in history],
    )
