"""Product operations exposed to the HTTP layer."""

import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Any, Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch.config import settings
from pricewatch.db.models import NotificationHistory, NotificationSettings, PriceHistory, Product
from pricewatch.errors import (
    DuplicateProduct,
    ExtractionError,
    InvalidReviewResolution,
    ProductNotFound,
    StaleWriteRejected,
)
from pricewatch.extract.arbitrator import Accepted, Arbitrator, NeedsReview
from pricewatch.extract.candidates import (
    ExtractionMethod,
    FetchedPage,
    PriceCandidate,
    StockStatus,
    normalize_amount,
)
from pricewatch.extract.pipeline import ExtractionPipeline, ExtractionRun, extraction_pipeline
from pricewatch.notify.engine import NotificationEngine, notification_engine
from pricewatch.notify.rules import PriceUpdate
from pricewatch.stock.tracker import StockHistoryTracker, StockStats, stats_from_entries, stock_tracker
from pricewatch.utils.clock import utcnow
from pricewatch.worker.monitor import (
    CheckOutcome,
    CheckRunner,
    check_runner,
    clear_review,
    latest_price,
    mark_success,
    record_price,
)
from pricewatch.worker.product_lock import ProductLockManager, product_locks

logger = logging.getLogger(__name__)

# Columns the user may edit; everything else belongs to the scheduler
EDITABLE_FIELDS = frozenset({
    "name",
    "refresh_interval",
    "price_drop_threshold",
    "target_price",
    "notify_back_in_stock",
    "ai_extraction_disabled",
    "ai_verification_disabled",
})


@dataclass
class CreateResult:
    """Either a tracked product or a review the caller must resolve first."""

    product: Optional[Product] = None
    review: Optional[NeedsReview] = None
    page: Optional[FetchedPage] = None

    @property
    def needs_review(self) -> bool:
        return self.review is not None


def match_candidate(
    candidates: Iterable[PriceCandidate],
    price: Decimal,
    method: str,
    currency: Optional[str] = None,
) -> Optional[PriceCandidate]:
    """The candidate with this method whose normalized price equals `price`."""
    for candidate in candidates:
        if candidate.method.value != method:
            continue
        if currency and candidate.currency != currency.upper():
            continue
        if candidate.normalized_price == normalize_amount(Decimal(str(price)), candidate.currency):
            return candidate
    return None


class ProductService:
    """Create, inspect and steer tracked products for one user at a time."""

    def __init__(
        self,
        pipeline: Optional[ExtractionPipeline] = None,
        runner: Optional[CheckRunner] = None,
        notifier: Optional[NotificationEngine] = None,
        tracker: Optional[StockHistoryTracker] = None,
        locks: Optional[ProductLockManager] = None,
    ):
        self.pipeline = pipeline or extraction_pipeline
        self.runner = runner or check_runner
        self.notifier = notifier or notification_engine
        self.tracker = tracker or stock_tracker
        self.locks = locks or product_locks

    @staticmethod
    def clamp_interval(refresh_interval: Optional[int]) -> int:
        interval = refresh_interval or settings.default_refresh_interval
        return max(int(interval), settings.min_refresh_interval)

    async def get_product(self, session: AsyncSession, user_id: int, product_id: int) -> Product:
        result = await session.execute(
            select(Product).where(Product.id == product_id, Product.user_id == user_id)
        )
        product = result.scalar_one_or_none()
        if product is None:
            raise ProductNotFound(product_id)
        return product

    async def list_products(self, session: AsyncSession, user_id: int) -> list[Product]:
        result = await session.execute(
            select(Product).where(Product.user_id == user_id).order_by(Product.created_at.desc())
        )
        return list(result.scalars().all())

    async def current_price(self, session: AsyncSession, product_id: int) -> Optional[PriceHistory]:
        return await latest_price(session, product_id)

    async def _ai_flags(self, session: AsyncSession, user_id: int) -> tuple[bool, bool]:
        result = await session.execute(
            select(NotificationSettings).where(NotificationSettings.user_id == user_id)
        )
        user_settings = result.scalar_one_or_none()
        if user_settings is None or not settings.ai_enabled:
            return False, False
        return user_settings.ai_enabled, user_settings.ai_verification_enabled

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_product(
        self,
        session: AsyncSession,
        user_id: int,
        url: str,
        refresh_interval: Optional[int] = None,
        chosen_price: Optional[Decimal] = None,
        chosen_method: Optional[str] = None,
        chosen_currency: Optional[str] = None,
        **alerts: Any,
    ) -> CreateResult:
        """
        Start tracking a URL.

        Without a chosen price the page is extracted and arbitrated; a
        disagreement returns the review payload and creates nothing. With a
        chosen price (the caller's pick from an earlier review) that price is
        recorded and becomes the product's anchor.

        Raises:
            DuplicateProduct: The user already tracks this URL
            ExtractionError: No price found and the item is not out of stock
            InvalidReviewResolution: A chosen price without a method
        """
        if chosen_price is not None and not chosen_method:
            raise InvalidReviewResolution("A chosen price needs the method it came from")

        existing = await session.execute(
            select(Product.id).where(Product.user_id == user_id, Product.url == url)
        )
        if existing.first() is not None:
            raise DuplicateProduct(url)

        ai_extraction, ai_verification = await self._ai_flags(session, user_id)
        run = await self.pipeline.run(
            url,
            ai_extraction=ai_extraction,
            ai_verification=ai_verification and chosen_price is None,
        )

        anchor_price = None
        preferred_method = None
        accepted: Optional[Accepted] = None

        if chosen_price is not None:
            accepted = self._chosen(run, Decimal(str(chosen_price)), chosen_method, chosen_currency)
            anchor_price = accepted.price
            preferred_method = accepted.method.value
        elif isinstance(run.outcome, Accepted):
            accepted = run.outcome
        elif isinstance(run.outcome, NeedsReview):
            logger.info(f"New product {url} needs review before tracking")
            return CreateResult(review=run.outcome, page=run.page)
        elif run.stock_status != StockStatus.OUT_OF_STOCK:
            raise ExtractionError(f"Could not extract price from {url}: {run.outcome.reason}")

        now = utcnow()
        page = run.page
        product = Product(
            user_id=user_id,
            url=url,
            name=page.name[:255] if page and page.name else None,
            image_url=page.image_url if page else None,
            refresh_interval=self.clamp_interval(refresh_interval),
            stock_status=run.stock_status.value,
            anchor_price=anchor_price,
            preferred_method=preferred_method,
            ai_status=None if chosen_price is not None else run.ai_status,
            **{k: v for k, v in alerts.items() if k in EDITABLE_FIELDS and v is not None},
        )
        mark_success(product, now)
        session.add(product)
        try:
            await session.flush()
            if accepted is not None:
                await record_price(session, product.id, accepted, now, product.ai_status)
            await self.tracker.record_observation(session, product.id, product.stock_status, now)
            await session.commit()
        except IntegrityError as e:
            await session.rollback()
            raise DuplicateProduct(url) from e

        logger.info(
            f"Tracking product {product.id} ({url}) at "
            f"{accepted.price if accepted else 'no price'} {accepted.currency if accepted else ''}".rstrip()
        )
        return CreateResult(product=product, page=page)

    @staticmethod
    def _chosen(
        run: ExtractionRun,
        price: Decimal,
        method: str,
        currency: Optional[str],
    ) -> Accepted:
        match = match_candidate(run.candidates, price, method, currency)
        if match is None:
            # The page may have changed since the review was shown
            fallback_currency = currency or (run.candidates[0].currency if run.candidates else "USD")
            try:
                match = PriceCandidate(
                    price=price,
                    currency=fallback_currency,
                    method=ExtractionMethod(method),
                    confidence=1.0,
                    context="user selection",
                )
            except ValueError as e:
                raise InvalidReviewResolution(f"Unknown extraction method: {method}") from e
        return Arbitrator.force(match)

    # ------------------------------------------------------------------
    # Review, refresh, pause
    # ------------------------------------------------------------------

    async def resolve_review(
        self,
        session: AsyncSession,
        user_id: int,
        product_id: int,
        price: Decimal,
        method: str,
        currency: Optional[str] = None,
    ) -> Product:
        """
        Accept one of the stored review candidates.

        The chosen price is recorded, becomes the anchor for later cycles and
        the product returns to its normal schedule.

        Raises:
            ProductNotFound: Unknown product
            InvalidReviewResolution: No review pending, or choice not among its candidates
        """
        async with self.locks.claim_queued(product_id):
            product = await self.get_product(session, user_id, product_id)
            if not product.review_pending:
                raise InvalidReviewResolution(f"Product {product_id} has no pending review")

            candidates = [PriceCandidate.from_dict(c) for c in product.review_candidates or []]
            match = match_candidate(candidates, price, method, currency)
            if match is None:
                raise InvalidReviewResolution(
                    f"{price} via {method} is not one of the review candidates"
                )

            accepted = Arbitrator.force(match)
            now = utcnow()
            last = await latest_price(session, product_id)
            old_price = last.price if last is not None and last.currency == accepted.currency else None
            try:
                await record_price(session, product_id, accepted, now, None, last)
            except StaleWriteRejected as e:
                logger.warning(str(e))

            product.anchor_price = accepted.price
            product.preferred_method = accepted.method.value
            product.ai_status = None
            clear_review(product)
            mark_success(product, now)
            await session.commit()

        logger.info(f"Review resolved for product {product_id}: {accepted.price} via {method}")
        await self.notifier.handle_update(
            PriceUpdate(
                product_id=product_id,
                new_price=accepted.price,
                currency=accepted.currency,
                old_price=old_price,
                old_stock_status=product.stock_status,
                new_stock_status=product.stock_status,
            )
        )
        return product

    async def refresh_now(
        self,
        session: AsyncSession,
        user_id: int,
        product_id: int,
    ) -> tuple[CheckOutcome, Product]:
        """Run a check now; waits behind an in-flight cycle."""
        await self.get_product(session, user_id, product_id)
        outcome = await self.runner.refresh_now(product_id)

        product = await session.get(Product, product_id, populate_existing=True)
        if product is None:
            raise ProductNotFound(product_id)
        return outcome, product

    async def set_paused(
        self,
        session: AsyncSession,
        user_id: int,
        product_ids: list[int],
        paused: bool,
    ) -> int:
        """Pause or resume checking. Returns the number of products changed."""
        if not product_ids:
            return 0
        result = await session.execute(
            update(Product)
            .where(Product.user_id == user_id, Product.id.in_(product_ids))
            .values(checking_paused=paused)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        logger.info(f"{result.rowcount} product(s) {'paused' if paused else 'resumed'} for user {user_id}")
        return result.rowcount

    # ------------------------------------------------------------------
    # Editing
    # ------------------------------------------------------------------

    async def update_product(
        self,
        session: AsyncSession,
        user_id: int,
        product_id: int,
        changes: dict[str, Any],
    ) -> Product:
        product = await self.get_product(session, user_id, product_id)
        for field, value in changes.items():
            if field not in EDITABLE_FIELDS:
                raise ValueError(f"Field {field} cannot be edited")
            if field == "refresh_interval":
                value = self.clamp_interval(value)
                if product.last_checked is not None:
                    product.next_check_at = product.last_checked + timedelta(seconds=value)
            setattr(product, field, value)
        await session.commit()
        return product

    async def delete_product(self, session: AsyncSession, user_id: int, product_id: int) -> None:
        product = await self.get_product(session, user_id, product_id)
        await session.delete(product)
        await session.commit()
        self.locks.forget(product_id)
        logger.info(f"Deleted product {product_id}")

    # ------------------------------------------------------------------
    # History and statistics
    # ------------------------------------------------------------------

    async def get_price_history(
        self,
        session: AsyncSession,
        user_id: int,
        product_id: int,
        days: Optional[int] = None,
    ) -> list[PriceHistory]:
        await self.get_product(session, user_id, product_id)
        query = select(PriceHistory).where(PriceHistory.product_id == product_id)
        if days:
            query = query.where(PriceHistory.recorded_at >= utcnow() - timedelta(days=days))
        result = await session.execute(query.order_by(PriceHistory.recorded_at))
        return list(result.scalars().all())

    async def get_stock_stats(
        self,
        session: AsyncSession,
        user_id: int,
        product_id: int,
        window_days: Optional[int] = None,
    ) -> tuple[Optional[StockStats], list]:
        """Statistics plus the timeline entries they were computed from."""
        await self.get_product(session, user_id, product_id)
        window_days = window_days or settings.stats_default_window_days
        now = utcnow()
        history = await self.tracker.get_history(session, product_id, window_days, now)
        stats = stats_from_entries(history, window_days, now)
        return stats, history

    async def get_notification_history(
        self,
        session: AsyncSession,
        user_id: int,
        page: int = 1,
        limit: int = 20,
        notification_type: Optional[str] = None,
        product_id: Optional[int] = None,
    ) -> tuple[list[NotificationHistory], int]:
        page = max(page, 1)
        limit = max(1, min(limit, settings.notification_history_max_page_size))
        return await self.notifier.get_history(
            session, user_id, page, limit, notification_type, product_id
        )

    async def recent_notifications(
        self, session: AsyncSession, user_id: int, limit: int = 10
    ) -> list[NotificationHistory]:
        return await self.notifier.recent(session, user_id, limit)

    async def count_recent(self, session: AsyncSession, user_id: int, hours: int = 24) -> int:
        return await self.notifier.count_recent(session, user_id, hours)


product_service = ProductService()
