"""Notification engine: evaluate rules, dispatch to channels, record history."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricewatch import metrics
from pricewatch.db.models import NotificationHistory, NotificationSettings, Product
from pricewatch.db.session import AsyncSessionLocal
from pricewatch.notify.channels import ChannelDispatcher, channel_dispatcher
from pricewatch.notify.formatters import NotificationPayload
from pricewatch.notify.rules import (
    AlertConfig,
    NotificationType,
    PriceUpdate,
    evaluate_rules,
    is_price_drop,
    price_drop_already_notified,
)
from pricewatch.utils.clock import utcnow

logger = logging.getLogger(__name__)


class NotificationEngine:
    """
    Turns one accepted observation into alerts.

    Rules are evaluated against the product row as it is now (not the
    snapshot the cycle started with). Channel delivery happens outside any
    database transaction; history is written afterwards in its own
    transaction, one row per fired type, even when every channel failed.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        dispatcher: Optional[ChannelDispatcher] = None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.dispatcher = dispatcher or channel_dispatcher

    async def _load(self, session: AsyncSession, product_id: int):
        product = await session.get(Product, product_id)
        if product is None:
            return None, None
        result = await session.execute(
            select(NotificationSettings).where(NotificationSettings.user_id == product.user_id)
        )
        return product, result.scalar_one_or_none()

    async def handle_update(self, update: PriceUpdate) -> list[NotificationHistory]:
        """
        Evaluate, dispatch and record alerts for one product update.

        Returns:
            The history rows written (empty when nothing fired)
        """
        async with self.session_factory() as session:
            product, channel_config = await self._load(session, update.product_id)
            if product is None:
                logger.info(f"Product {update.product_id} gone before notification, skipping")
                return []

            config = AlertConfig.from_product(product)
            already = False
            if is_price_drop(update, config):
                already = await price_drop_already_notified(session, product.id, update.new_price)
                if already:
                    logger.debug(
                        f"price_drop to {update.new_price} already notified for product {product.id}"
                    )

            fired = evaluate_rules(update, config, drop_already_notified=already)
            if not fired:
                return []

            user_id = product.user_id
            product_name = product.name or product.url
            product_url = product.url

        sent: list[tuple[NotificationType, list[str]]] = []
        for notification_type in fired:
            metrics.notifications_triggered_total.labels(
                notification_type=notification_type.value
            ).inc()
            payload = NotificationPayload(
                notification_type=notification_type.value,
                product_name=product_name,
                product_url=product_url,
                currency=update.currency,
                old_price=update.old_price,
                new_price=update.new_price,
                target_price=config.target_price,
                threshold=config.price_drop_threshold,
            )
            channels = await self.dispatcher.dispatch(payload, channel_config)
            logger.info(
                f"{notification_type.value} for product {update.product_id} "
                f"delivered via {channels or 'no channels'}"
            )
            sent.append((notification_type, channels))

        return await self._record(update, user_id, product_name, product_url, sent)

    async def _record(
        self,
        update: PriceUpdate,
        user_id: int,
        product_name: str,
        product_url: str,
        sent: list[tuple[NotificationType, list[str]]],
    ) -> list[NotificationHistory]:
        async with self.session_factory() as session:
            # The product may have been deleted while channels were sending
            exists = await session.get(Product, update.product_id) is not None
            if not exists:
                logger.info(
                    f"Product {update.product_id} deleted during dispatch, "
                    "recording notifications without product link"
                )

            rows = []
            now = utcnow()
            for notification_type, channels in sent:
                row = NotificationHistory(
                    user_id=user_id,
                    product_id=update.product_id if exists else None,
                    notification_type=notification_type.value,
                    triggered_at=now,
                    old_price=update.old_price,
                    new_price=update.new_price,
                    currency=update.currency,
                    old_stock_status=update.old_stock_status,
                    new_stock_status=update.new_stock_status,
                    channels_notified=channels,
                    product_name=product_name,
                    product_url=product_url,
                )
                session.add(row)
                rows.append(row)
            await session.commit()
        return rows

    # ------------------------------------------------------------------
    # History queries
    # ------------------------------------------------------------------

    @staticmethod
    async def get_history(
        session: AsyncSession,
        user_id: int,
        page: int = 1,
        limit: int = 20,
        notification_type: Optional[str] = None,
        product_id: Optional[int] = None,
    ) -> tuple[list[NotificationHistory], int]:
        """Paginated history, newest first. Returns (rows, total)."""
        filters = [NotificationHistory.user_id == user_id]
        if notification_type:
            filters.append(NotificationHistory.notification_type == notification_type)
        if product_id is not None:
            filters.append(NotificationHistory.product_id == product_id)

        total = await session.scalar(
            select(func.count()).select_from(NotificationHistory).where(*filters)
        )
        result = await session.execute(
            select(NotificationHistory)
            .where(*filters)
            .order_by(NotificationHistory.triggered_at.desc(), NotificationHistory.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(result.scalars().all()), total or 0

    @staticmethod
    async def recent(session: AsyncSession, user_id: int, limit: int = 10) -> list[NotificationHistory]:
        result = await session.execute(
            select(NotificationHistory)
            .where(NotificationHistory.user_id == user_id)
            .order_by(NotificationHistory.triggered_at.desc(), NotificationHistory.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    @staticmethod
    async def count_recent(
        session: AsyncSession,
        user_id: int,
        hours: int = 24,
        now: Optional[datetime] = None,
    ) -> int:
        since = (now or utcnow()) - timedelta(hours=hours)
        count = await session.scalar(
            select(func.count())
            .select_from(NotificationHistory)
            .where(
                NotificationHistory.user_id == user_id,
                NotificationHistory.triggered_at >= since,
            )
        )
        return count or 0


notification_engine = NotificationEngine()
