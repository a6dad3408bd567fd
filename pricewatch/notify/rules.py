"""Notification trigger rules."""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch.db.models import NotificationHistory
from pricewatch.extract.candidates import StockStatus


class NotificationType(str, Enum):
    PRICE_DROP = "price_drop"
    PRICE_TARGET = "price_target"
    STOCK_CHANGE = "stock_change"


@dataclass(frozen=True)
class AlertConfig:
    """Alerting fields of a product as freshly loaded from its row."""

    price_drop_threshold: Optional[Decimal] = None
    target_price: Optional[Decimal] = None
    notify_back_in_stock: bool = False

    @classmethod
    def from_product(cls, product) -> "AlertConfig":
        return cls(
            price_drop_threshold=product.price_drop_threshold,
            target_price=product.target_price,
            notify_back_in_stock=product.notify_back_in_stock,
        )


@dataclass(frozen=True)
class PriceUpdate:
    """One accepted observation compared to the previous one."""

    product_id: int
    new_price: Optional[Decimal]
    currency: str = "USD"
    old_price: Optional[Decimal] = None
    old_stock_status: str = StockStatus.UNKNOWN.value
    new_stock_status: str = StockStatus.UNKNOWN.value


def is_price_drop(update: PriceUpdate, config: AlertConfig) -> bool:
    if config.price_drop_threshold is None or update.old_price is None or update.new_price is None:
        return False
    return update.old_price - update.new_price >= config.price_drop_threshold


def is_target_reached(update: PriceUpdate, config: AlertConfig) -> bool:
    """Edge-triggered: only when crossing from above the target (or unknown)."""
    if config.target_price is None or update.new_price is None:
        return False
    if update.new_price > config.target_price:
        return False
    return update.old_price is None or update.old_price > config.target_price


def is_back_in_stock(update: PriceUpdate, config: AlertConfig) -> bool:
    if not config.notify_back_in_stock:
        return False
    return (
        update.new_stock_status == StockStatus.IN_STOCK.value
        and update.old_stock_status in (StockStatus.OUT_OF_STOCK.value, StockStatus.UNKNOWN.value)
    )


def evaluate_rules(
    update: PriceUpdate,
    config: AlertConfig,
    drop_already_notified: bool = False,
) -> list[NotificationType]:
    """
    Rules that fire for an update; each is independent.

    Args:
        update: Old and new price/stock
        config: Product alert settings
        drop_already_notified: A price_drop was already sent for this new price
    """
    fired = []
    if is_price_drop(update, config) and not drop_already_notified:
        fired.append(NotificationType.PRICE_DROP)
    if is_target_reached(update, config):
        fired.append(NotificationType.PRICE_TARGET)
    if is_back_in_stock(update, config):
        fired.append(NotificationType.STOCK_CHANGE)
    return fired


async def price_drop_already_notified(
    session: AsyncSession,
    product_id: int,
    new_price: Decimal,
) -> bool:
    """Whether a price_drop for this product at this price is in the history."""
    result = await session.execute(
        select(NotificationHistory.id)
        .where(
            NotificationHistory.product_id == product_id,
            NotificationHistory.notification_type == NotificationType.PRICE_DROP.value,
            NotificationHistory.new_price == new_price,
        )
        .limit(1)
    )
    return result.first() is not None
