"""Transition-only stock history and availability statistics."""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch import metrics
from pricewatch.config import settings
from pricewatch.db.models import StockStatusHistory
from pricewatch.errors import StaleWriteRejected
from pricewatch.extract.candidates import StockStatus
from pricewatch.utils.clock import utcnow

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400.0


@dataclass(frozen=True)
class StockSegment:
    """A run of one status between two history entries (or now)."""

    status: str
    start: datetime
    end: datetime
    # Start before clipping to the window
    raw_start: datetime

    @property
    def seconds(self) -> float:
        return (self.end - self.start).total_seconds()


@dataclass
class StockStats:
    availability_percent: float
    outage_count: int
    avg_outage_days: Optional[float]
    longest_outage_days: Optional[float]
    days_in_current_status: float
    current_status: str
    window_days: int

    def to_dict(self) -> dict:
        return asdict(self)


def build_segments(
    entries: Sequence[StockStatusHistory],
    window_start: datetime,
    now: datetime,
) -> list[StockSegment]:
    """
    Pair each entry with the next one's changed_at (the last with now),
    clip to the window and drop segments that end before it.

    Entries must be ordered by changed_at.
    """
    entries = [e for e in entries if e.changed_at <= now]
    segments = []
    for index, entry in enumerate(entries):
        end = entries[index + 1].changed_at if index + 1 < len(entries) else now
        if end <= window_start:
            continue
        start = max(entry.changed_at, window_start)
        segments.append(StockSegment(status=entry.status, start=start, end=end, raw_start=entry.changed_at))
    return segments


def stats_from_entries(
    entries: Sequence[StockStatusHistory],
    window_days: int,
    now: datetime,
    precision: Optional[int] = None,
) -> Optional[StockStats]:
    """
    Availability statistics over the trailing window.

    Availability is measured against the whole window, so days before the
    first observation count as not in stock.
    """
    precision = settings.stats_precision if precision is None else precision
    window_start = now - timedelta(days=window_days)

    segments = build_segments(entries, window_start, now)
    if not segments:
        return None

    window_seconds = (now - window_start).total_seconds()
    in_stock = sum(s.seconds for s in segments if s.status == StockStatus.IN_STOCK.value)
    last = segments[-1]

    if window_seconds > 0:
        availability = in_stock / window_seconds * 100
    else:
        availability = 100.0 if last.status == StockStatus.IN_STOCK.value else 0.0

    outages = [
        s for s in segments
        if s.status == StockStatus.OUT_OF_STOCK.value and s.raw_start >= window_start
    ]
    outage_days = [s.seconds / SECONDS_PER_DAY for s in outages]

    return StockStats(
        availability_percent=round(availability, precision),
        outage_count=len(outages),
        avg_outage_days=round(sum(outage_days) / len(outage_days), precision) if outage_days else None,
        longest_outage_days=round(max(outage_days), precision) if outage_days else None,
        days_in_current_status=round((now - last.raw_start).total_seconds() / SECONDS_PER_DAY, precision),
        current_status=last.status,
        window_days=window_days,
    )


class StockHistoryTracker:
    """Appends stock transitions and answers history/statistics queries."""

    async def last_entry(self, session: AsyncSession, product_id: int) -> Optional[StockStatusHistory]:
        result = await session.execute(
            select(StockStatusHistory)
            .where(StockStatusHistory.product_id == product_id)
            .order_by(StockStatusHistory.changed_at.desc(), StockStatusHistory.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def record_observation(
        self,
        session: AsyncSession,
        product_id: int,
        status: str,
        at: Optional[datetime] = None,
    ) -> Optional[StockStatusHistory]:
        """
        Append a history entry if the status changed.

        Unknown observations are not recorded. Runs inside the caller's
        transaction and does not commit.

        Returns:
            The new entry, or None when nothing was written

        Raises:
            StaleWriteRejected: If `at` is not after the last entry
        """
        status = StockStatus(status).value
        if status == StockStatus.UNKNOWN.value:
            return None

        at = at or utcnow()
        last = await self.last_entry(session, product_id)
        if last is not None:
            if last.status == status:
                return None
            if at <= last.changed_at:
                metrics.stale_writes_total.labels(table="stock_status_history").inc()
                raise StaleWriteRejected(
                    "stock_status_history",
                    product_id,
                    f"changed_at {at.isoformat()} is not after {last.changed_at.isoformat()}",
                )

        entry = StockStatusHistory(product_id=product_id, status=status, changed_at=at)
        session.add(entry)
        await session.flush()
        logger.info(
            f"Stock status for product {product_id}: "
            f"{last.status if last else 'none'} -> {status}"
        )
        return entry

    async def get_history(
        self,
        session: AsyncSession,
        product_id: int,
        window_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> list[StockStatusHistory]:
        """Entries inside the window plus the last one before it."""
        window_days = window_days or settings.stats_default_window_days
        now = now or utcnow()
        window_start = now - timedelta(days=window_days)

        in_window = await session.execute(
            select(StockStatusHistory)
            .where(
                StockStatusHistory.product_id == product_id,
                StockStatusHistory.changed_at >= window_start,
                StockStatusHistory.changed_at <= now,
            )
            .order_by(StockStatusHistory.changed_at)
        )
        prior = await session.execute(
            select(StockStatusHistory)
            .where(
                StockStatusHistory.product_id == product_id,
                StockStatusHistory.changed_at < window_start,
            )
            .order_by(StockStatusHistory.changed_at.desc())
            .limit(1)
        )
        entries = list(in_window.scalars().all())
        before = prior.scalar_one_or_none()
        if before is not None:
            entries.insert(0, before)
        return entries

    async def compute_stats(
        self,
        session: AsyncSession,
        product_id: int,
        window_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Optional[StockStats]:
        window_days = window_days or settings.stats_default_window_days
        now = now or utcnow()
        entries = await self.get_history(session, product_id, window_days, now)
        return stats_from_entries(entries, window_days, now)


stock_tracker = StockHistoryTracker()
