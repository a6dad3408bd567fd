"""Tests for stock history recording and availability statistics."""

from datetime import datetime, timedelta

import pytest

from pricewatch.db.models import StockStatusHistory
from pricewatch.errors import StaleWriteRejected
from pricewatch.stock.tracker import StockHistoryTracker, stats_from_entries

T0 = datetime(2026, 3, 1, 12, 0, 0)


def entry(status, days):
    return StockStatusHistory(product_id=1, status=status, changed_at=T0 + timedelta(days=days))


def test_stats_over_full_window():
    entries = [entry("in_stock", 0), entry("out_of_stock", 5), entry("in_stock", 12)]

    stats = stats_from_entries(entries, window_days=15, now=T0 + timedelta(days=15), precision=1)

    assert stats.availability_percent == 53.3
    assert stats.outage_count == 1
    assert stats.avg_outage_days == 7.0
    assert stats.longest_outage_days == 7.0
    assert stats.days_in_current_status == 3.0
    assert stats.current_status == "in_stock"


def test_stats_clip_to_window():
    entries = [entry("in_stock", 0), entry("out_of_stock", 5), entry("in_stock", 12)]

    stats = stats_from_entries(entries, window_days=10, now=T0 + timedelta(days=15), precision=1)

    # Window: days 5..15, in stock for the last 3
    assert stats.availability_percent == 30.0
    assert stats.outage_count == 1


def test_outage_started_before_window_is_not_counted():
    entries = [entry("out_of_stock", 0), entry("in_stock", 8)]

    stats = stats_from_entries(entries, window_days=5, now=T0 + timedelta(days=10), precision=1)

    assert stats.outage_count == 0
    assert stats.avg_outage_days is None
    assert stats.availability_percent == 40.0
    # Not clipped to the window
    assert stats.days_in_current_status == 2.0


def test_availability_is_relative_to_whole_window():
    entries = [entry("out_of_stock", 0), entry("in_stock", 1)]

    stats = stats_from_entries(entries, window_days=30, now=T0 + timedelta(days=4), precision=1)

    # Three in-stock days out of a thirty day window
    assert stats.availability_percent == 10.0
    assert stats.window_days == 30


def test_no_entries_means_no_stats():
    assert stats_from_entries([], window_days=30, now=T0) is None


@pytest.mark.asyncio
async def test_record_observation_only_writes_transitions(session_factory, make_product):
    product = await make_product()
    tracker = StockHistoryTracker()

    async with session_factory() as session:
        first = await tracker.record_observation(session, product.id, "in_stock", at=T0)
        same = await tracker.record_observation(session, product.id, "in_stock", at=T0 + timedelta(hours=1))
        unknown = await tracker.record_observation(session, product.id, "unknown", at=T0 + timedelta(hours=2))
        changed = await tracker.record_observation(session, product.id, "out_of_stock", at=T0 + timedelta(hours=3))
        await session.commit()

    assert first is not None
    assert same is None
    assert unknown is None
    assert changed.status == "out_of_stock"

    async with session_factory() as session:
        history = await tracker.get_history(session, product.id, window_days=30, now=T0 + timedelta(days=1))
    assert [e.status for e in history] == ["in_stock", "out_of_stock"]


@pytest.mark.asyncio
async def test_record_observation_rejects_stale_write(session_factory, make_product):
    product = await make_product()
    tracker = StockHistoryTracker()

    async with session_factory() as session:
        await tracker.record_observation(session, product.id, "in_stock", at=T0)
        await session.commit()

        with pytest.raises(StaleWriteRejected):
            await tracker.record_observation(session, product.id, "out_of_stock", at=T0 - timedelta(minutes=5))


@pytest.mark.asyncio
async def test_history_includes_entry_before_window(session_factory, make_product):
    product = await make_product()
    tracker = StockHistoryTracker()

    async with session_factory() as session:
        await tracker.record_observation(session, product.id, "out_of_stock", at=T0)
        await tracker.record_observation(session, product.id, "in_stock", at=T0 + timedelta(days=20))
        await session.commit()

    now = T0 + timedelta(days=25)
    async with session_factory() as session:
        history = await tracker.get_history(session, product.id, window_days=10, now=now)
        stats = await tracker.compute_stats(session, product.id, window_days=10, now=now)

    assert [e.status for e in history] == ["out_of_stock", "in_stock"]
    assert stats.availability_percent == 50.0
    assert stats.current_status == "in_stock"
