"""Notification history routes."""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch.api.deps import get_current_user_id, get_database
from pricewatch.services.products import product_service

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


class NotificationHistoryResponse(BaseModel):
    id: int
    product_id: Optional[int]
    notification_type: str
    triggered_at: datetime
    old_price: Optional[Decimal]
    new_price: Optional[Decimal]
    currency: Optional[str]
    old_stock_status: Optional[str]
    new_stock_status: Optional[str]
    channels_notified: List[str]
    product_name: Optional[str]
    product_url: Optional[str]

    model_config = ConfigDict(from_attributes=True)


class NotificationPage(BaseModel):
    items: List[NotificationHistoryResponse]
    total: int
    page: int
    limit: int


@router.get("/history", response_model=NotificationPage)
async def get_history(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    notification_type: Optional[str] = Query(
        None, alias="type", pattern="^(price_drop|price_target|stock_change)$"
    ),
    product_id: Optional[int] = Query(None),
    db: AsyncSession = Depends(get_database),
    user_id: int = Depends(get_current_user_id),
):
    """Paginated notification history, newest first."""
    items, total = await product_service.get_notification_history(
        db, user_id, page, limit, notification_type, product_id
    )
    return NotificationPage(items=items, total=total, page=page, limit=limit)


@router.get("/recent", response_model=List[NotificationHistoryResponse])
async def get_recent(
    limit: int = Query(10, ge=1, le=50),
    db: AsyncSession = Depends(get_database),
    user_id: int = Depends(get_current_user_id),
):
    return await product_service.recent_notifications(db, user_id, limit)


@router.get("/count")
async def get_recent_count(
    hours: int = Query(24, ge=1, le=24 * 30),
    db: AsyncSession = Depends(get_database),
    user_id: int = Depends(get_current_user_id),
):
    """Number of notifications in the last N hours (bell badge)."""
    return {"count": await product_service.count_recent(db, user_id, hours)}
