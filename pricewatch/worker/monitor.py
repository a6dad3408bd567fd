"""Check cycles: claim due products, extract, arbitrate, persist, notify."""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricewatch import metrics
from pricewatch.config import settings
from pricewatch.db.models import NotificationSettings, PriceHistory, Product
from pricewatch.db.session import AsyncSessionLocal
from pricewatch.errors import ScheduleConflict, StaleWriteRejected
from pricewatch.extract.arbitrator import Accepted, ExtractionFailed, NeedsReview
from pricewatch.extract.candidates import StockStatus
from pricewatch.extract.pipeline import ExtractionPipeline, ExtractionRun, extraction_pipeline
from pricewatch.logging_config import check_context
from pricewatch.notify.engine import NotificationEngine, notification_engine
from pricewatch.notify.rules import PriceUpdate
from pricewatch.stock.tracker import StockHistoryTracker, stock_tracker
from pricewatch.utils.clock import utcnow
from pricewatch.worker.product_lock import ProductLockManager, product_locks

logger = logging.getLogger(__name__)


class CheckOutcome(str, Enum):
    ACCEPTED = "accepted"
    NEEDS_REVIEW = "needs_review"
    EXTRACTION_FAILED = "extraction_failed"
    DROPPED = "dropped"  # product deleted or no longer due
    SKIPPED = "skipped"  # claimed elsewhere
    QUEUED = "queued"  # a refresh is already waiting
    ERROR = "error"


@dataclass(frozen=True)
class CheckTarget:
    """What a cycle needs from the product row, read when it starts."""

    product_id: int
    url: str
    ai_extraction: bool
    ai_verification: bool
    anchor_price: Optional[Decimal]
    preferred_method: Optional[str]


def backoff_delay(refresh_interval: int, failures: int, cap: Optional[int] = None) -> int:
    """Seconds until the next attempt after `failures` consecutive failures."""
    cap = settings.backoff_cap_seconds if cap is None else cap
    return min(refresh_interval * 2 ** max(failures - 1, 0), cap)


def is_due(product: Product, now: datetime) -> bool:
    return (
        not product.checking_paused
        and not product.review_pending
        and (product.next_check_at is None or product.next_check_at <= now)
    )


async def latest_price(session: AsyncSession, product_id: int) -> Optional[PriceHistory]:
    result = await session.execute(
        select(PriceHistory)
        .where(PriceHistory.product_id == product_id)
        .order_by(PriceHistory.recorded_at.desc(), PriceHistory.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def record_price(
    session: AsyncSession,
    product_id: int,
    accepted: Accepted,
    at: datetime,
    ai_status: Optional[str] = None,
    last: Optional[PriceHistory] = None,
) -> Optional[PriceHistory]:
    """
    Append a price history row when the price (or currency) changed.

    Raises:
        StaleWriteRejected: If `at` is not after the latest row
    """
    if last is not None:
        if last.price == accepted.price and last.currency == accepted.currency:
            return None
        if at <= last.recorded_at:
            metrics.stale_writes_total.labels(table="price_history").inc()
            raise StaleWriteRejected(
                "price_history",
                product_id,
                f"recorded_at {at.isoformat()} is not after {last.recorded_at.isoformat()}",
            )

    row = PriceHistory(
        product_id=product_id,
        price=accepted.price,
        currency=accepted.currency,
        ai_status=ai_status,
        recorded_at=at,
    )
    session.add(row)
    return row


def clear_review(product: Product) -> None:
    product.review_pending = False
    product.review_candidates = None
    product.review_suggested_price = None


def mark_success(product: Product, now: datetime) -> None:
    product.last_checked = now
    product.next_check_at = now + timedelta(seconds=product.refresh_interval)
    product.consecutive_failures = 0
    product.last_check_failed = False
    product.last_error = None


class CheckRunner:
    """
    Runs check cycles for due products on a bounded pool.

    A cycle holds the product lock from fetch to the last history write, so
    history per product is strictly ordered. Each persistence step re-reads
    the product row in its own transaction and touches only scheduler-owned
    columns; user edits made while the fetch ran survive.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        pipeline: Optional[ExtractionPipeline] = None,
        notifier: Optional[NotificationEngine] = None,
        locks: Optional[ProductLockManager] = None,
        tracker: Optional[StockHistoryTracker] = None,
        max_concurrent: Optional[int] = None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.pipeline = pipeline or extraction_pipeline
        self.notifier = notifier or notification_engine
        self.locks = locks or product_locks
        self.tracker = tracker or stock_tracker
        self._semaphore = asyncio.Semaphore(max_concurrent or settings.max_concurrent_checks)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def due_product_ids(self, now: Optional[datetime] = None) -> list[int]:
        now = now or utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                select(Product.id)
                .where(
                    Product.checking_paused.is_(False),
                    Product.review_pending.is_(False),
                    or_(Product.next_check_at.is_(None), Product.next_check_at <= now),
                )
                .order_by(Product.next_check_at.is_not(None), Product.next_check_at, Product.id)
                .limit(settings.due_batch_size)
            )
            return [row[0] for row in result.all()]

    async def run_due_checks(self) -> dict[str, int]:
        """Poll job: run every due product once. Returns outcome counts."""
        try:
            product_ids = await self.due_product_ids()
        except Exception:
            metrics.scheduler_runs_total.labels(status="error").inc()
            logger.exception("Due-product scan failed")
            return {}

        metrics.scheduler_last_run_timestamp.set(time.time())
        if not product_ids:
            metrics.scheduler_runs_total.labels(status="idle").inc()
            logger.debug("No products due")
            return {}

        logger.info(f"Running checks for {len(product_ids)} due product(s)")
        outcomes = await asyncio.gather(*(self._run_pooled(pid) for pid in product_ids))

        counts: dict[str, int] = {}
        for outcome in outcomes:
            counts[outcome.value] = counts.get(outcome.value, 0) + 1
        metrics.scheduler_runs_total.labels(status="success").inc()
        logger.info(f"Check run complete: {counts}")
        return counts

    async def _run_pooled(self, product_id: int) -> CheckOutcome:
        async with self._semaphore:
            try:
                async with self.locks.claim(product_id):
                    return await self.run_cycle(product_id, scheduled=True)
            except ScheduleConflict:
                logger.debug(f"Product {product_id} already claimed, skipping")
                metrics.checks_total.labels(outcome=CheckOutcome.SKIPPED.value).inc()
                return CheckOutcome.SKIPPED
            except Exception:
                logger.exception(f"Check cycle crashed for product {product_id}")
                metrics.checks_total.labels(outcome=CheckOutcome.ERROR.value).inc()
                return CheckOutcome.ERROR

    async def refresh_now(self, product_id: int) -> CheckOutcome:
        """
        Check a product immediately, ignoring its schedule.

        Waits behind an in-flight cycle. If a refresh is already waiting the
        call returns QUEUED without fetching.
        """
        try:
            async with self.locks.claim_queued(product_id):
                return await self.run_cycle(product_id, scheduled=False)
        except ScheduleConflict:
            logger.info(f"Refresh for product {product_id} already queued")
            return CheckOutcome.QUEUED

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------

    async def run_cycle(self, product_id: int, scheduled: bool = True) -> CheckOutcome:
        """Fetch, arbitrate and persist one product. Caller holds the product lock."""
        start = time.monotonic()
        metrics.checks_in_flight.inc()
        try:
            with check_context(product_id=product_id, trigger="scheduled" if scheduled else "manual"):
                target = await self._load_target(product_id, scheduled)
                if target is None:
                    outcome = CheckOutcome.DROPPED
                else:
                    outcome = await self._check(target)
        finally:
            metrics.checks_in_flight.dec()
            metrics.check_duration_seconds.observe(time.monotonic() - start)

        metrics.checks_total.labels(outcome=outcome.value).inc()
        return outcome

    async def _load_target(self, product_id: int, scheduled: bool) -> Optional[CheckTarget]:
        async with self.session_factory() as session:
            product = await session.get(Product, product_id)
            if product is None:
                logger.info(f"Product {product_id} no longer exists, skipping check")
                return None
            if scheduled and not is_due(product, utcnow()):
                logger.debug(f"Product {product_id} no longer due, skipping")
                return None

            result = await session.execute(
                select(NotificationSettings).where(NotificationSettings.user_id == product.user_id)
            )
            user_settings = result.scalar_one_or_none()
            user_ai = bool(user_settings and user_settings.ai_enabled)
            user_verify = bool(user_settings and user_settings.ai_verification_enabled)

            return CheckTarget(
                product_id=product.id,
                url=product.url,
                ai_extraction=settings.ai_enabled and user_ai and not product.ai_extraction_disabled,
                ai_verification=settings.ai_enabled
                and user_verify
                and not product.ai_verification_disabled,
                anchor_price=product.anchor_price,
                preferred_method=product.preferred_method,
            )

    async def _check(self, target: CheckTarget) -> CheckOutcome:
        try:
            run = await asyncio.wait_for(
                self.pipeline.run(
                    target.url,
                    ai_extraction=target.ai_extraction,
                    ai_verification=target.ai_verification,
                    anchor_price=target.anchor_price,
                    preferred_method=target.preferred_method,
                ),
                timeout=settings.cycle_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Check for product {target.product_id} timed out"
            )
            run = ExtractionRun(
                url=target.url,
                outcome=ExtractionFailed(
                    reason=f"Check timed out after {settings.cycle_timeout_seconds}s"
                ),
            )

        now = utcnow()
        outcome = run.outcome
        if isinstance(outcome, Accepted):
            update = await self._persist_accepted(target.product_id, run, now)
            if update is None:
                return CheckOutcome.DROPPED
            await self.notifier.handle_update(update)
            return CheckOutcome.ACCEPTED

        if isinstance(outcome, NeedsReview):
            stored = await self._persist_review(target.product_id, run, now)
            return CheckOutcome.NEEDS_REVIEW if stored else CheckOutcome.DROPPED

        stored = await self._persist_failure(target.product_id, outcome.reason, now)
        return CheckOutcome.EXTRACTION_FAILED if stored else CheckOutcome.DROPPED

    async def _lock_row(self, session: AsyncSession, product_id: int) -> Optional[Product]:
        result = await session.execute(
            select(Product).where(Product.id == product_id).with_for_update()
        )
        product = result.scalar_one_or_none()
        if product is None:
            logger.warning(f"Product {product_id} deleted during check, dropping results")
        return product

    async def _persist_accepted(
        self,
        product_id: int,
        run: ExtractionRun,
        now: datetime,
    ) -> Optional[PriceUpdate]:
        accepted: Accepted = run.outcome
        async with self.session_factory() as session:
            product = await self._lock_row(session, product_id)
            if product is None:
                return None

            last = await latest_price(session, product_id)
            old_price = last.price if last is not None and last.currency == accepted.currency else None
            old_stock = product.stock_status

            try:
                row = await record_price(session, product_id, accepted, now, run.ai_status, last)
                if row is not None:
                    logger.info(
                        f"Product {product_id} price {old_price} -> {accepted.price} {accepted.currency} "
                        f"via {accepted.method.value}{' (forced)' if accepted.forced else ''}"
                    )
            except StaleWriteRejected as e:
                logger.warning(str(e))

            new_stock = run.stock_status.value
            try:
                await self.tracker.record_observation(session, product_id, new_stock, now)
            except StaleWriteRejected as e:
                logger.warning(str(e))
            if new_stock != StockStatus.UNKNOWN.value:
                product.stock_status = new_stock

            if run.page is not None:
                if not product.name and run.page.name:
                    product.name = run.page.name[:255]
                if not product.image_url and run.page.image_url:
                    product.image_url = run.page.image_url
            product.ai_status = run.ai_status
            clear_review(product)
            mark_success(product, now)
            await session.commit()

        return PriceUpdate(
            product_id=product_id,
            new_price=accepted.price,
            currency=accepted.currency,
            old_price=old_price,
            old_stock_status=old_stock,
            new_stock_status=product.stock_status,
        )

    async def _persist_review(self, product_id: int, run: ExtractionRun, now: datetime) -> bool:
        review: NeedsReview = run.outcome
        async with self.session_factory() as session:
            product = await self._lock_row(session, product_id)
            if product is None:
                return False

            product.review_pending = True
            product.review_candidates = [c.to_dict() for c in review.candidates]
            product.review_suggested_price = (
                review.suggested_price.to_dict() if review.suggested_price else None
            )
            product.last_checked = now
            product.last_error = None
            await session.commit()

        metrics.reviews_raised_total.inc()
        logger.info(
            f"Product {product_id} needs review: {len(review.candidates)} disagreeing candidate(s)"
        )
        return True

    async def _persist_failure(self, product_id: int, reason: str, now: datetime) -> bool:
        async with self.session_factory() as session:
            product = await self._lock_row(session, product_id)
            if product is None:
                return False

            product.last_checked = now
            product.consecutive_failures += 1
            failures = product.consecutive_failures
            if failures <= settings.max_check_retries:
                delay = backoff_delay(product.refresh_interval, failures)
            else:
                delay = product.refresh_interval
                product.last_check_failed = True
            product.next_check_at = now + timedelta(seconds=delay)
            product.last_error = reason[:1000]
            await session.commit()

        logger.warning(
            f"Check failed for product {product_id} ({failures} in a row), "
            f"next attempt in {delay}s: {reason}"
        )
        return True


check_runner = CheckRunner()
