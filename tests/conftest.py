"""Shared fixtures: a throwaway SQLite database and small builders."""

import itertools
import os
import tempfile

# Must be set before pricewatch.config is imported anywhere
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="pricewatch-logs-"))
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("OPENAI_API_KEY", "")
os.environ.setdefault("DOMAIN_MIN_INTERVAL_SECONDS", "0")
os.environ.setdefault("DOMAIN_JITTER_SECONDS", "0")

from decimal import Decimal

import pytest
import pytest_asyncio

from pricewatch.db.models import Base, NotificationSettings, Product, User
from pricewatch.db.session import create_engine, create_session_factory
from pricewatch.extract.arbitrator import Accepted, ExtractionFailed, NeedsReview, SuggestedPrice
from pricewatch.extract.candidates import ExtractionMethod, FetchedPage, PriceCandidate, StockStatus
from pricewatch.extract.pipeline import ExtractionRun


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'pricewatch.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest_asyncio.fixture
async def user(session_factory):
    async with session_factory() as session:
        user = User(email="shopper@example.com")
        session.add(user)
        await session.commit()
        return user


@pytest_asyncio.fixture
async def channel_settings(session_factory, user):
    async with session_factory() as session:
        config = NotificationSettings(
            user_id=user.id,
            telegram_bot_token="123:abc",
            telegram_chat_id="42",
            discord_webhook_url="https://discord.com/api/webhooks/1/xyz",
        )
        session.add(config)
        await session.commit()
        return config


_product_numbers = itertools.count(1)


@pytest.fixture
def make_product(session_factory, user):
    async def _make(**fields) -> Product:
        fields.setdefault("url", f"https://shop.example.com/item/{next(_product_numbers)}")
        fields.setdefault("name", "Widget")
        fields.setdefault("refresh_interval", 3600)
        async with session_factory() as session:
            product = Product(user_id=user.id, **fields)
            session.add(product)
            await session.commit()
            return product

    return _make


def candidate(price, method=ExtractionMethod.JSON_LD, confidence=0.9, currency="USD") -> PriceCandidate:
    return PriceCandidate(price=Decimal(str(price)), currency=currency, method=method, confidence=confidence)


@pytest.fixture
def make_run():
    """Build ExtractionRun results the way the pipeline would."""

    def _accepted(url, price, stock=StockStatus.IN_STOCK, currency="USD", name="Widget"):
        c = candidate(price, currency=currency)
        page = FetchedPage(url=url, html="<html></html>", name=name, stock_status=stock)
        outcome = Accepted(price=c.normalized_price, currency=c.currency, method=c.method, candidate=c)
        return ExtractionRun(url=url, outcome=outcome, page=page, candidates=[c])

    def _review(url, *prices):
        candidates = [
            candidate(p, method=ExtractionMethod.GENERIC_CSS, confidence=0.6) for p in prices
        ]
        page = FetchedPage(url=url, html="<html></html>", name="Widget")
        top = candidates[0]
        outcome = NeedsReview(
            candidates=candidates,
            suggested_price=SuggestedPrice(price=top.normalized_price, currency=top.currency),
        )
        return ExtractionRun(url=url, outcome=outcome, page=page, candidates=candidates)

    def _failed(url, reason="No price candidates found"):
        return ExtractionRun(url=url, outcome=ExtractionFailed(reason=reason))

    class Builders:
        accepted = staticmethod(_accepted)
        review = staticmethod(_review)
        failed = staticmethod(_failed)

    return Builders


class FakePipeline:
    """Returns queued runs in order; optionally blocks until released."""

    def __init__(self, runs=None):
        self.runs = list(runs or [])
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.gate = None
        self.on_run = None

    async def run(self, url, **kwargs):
        self.calls.append((url, kwargs))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.on_run is not None:
                await self.on_run(url)
            return self.runs.pop(0)
        finally:
            self.in_flight -= 1


class RecordingDispatcher:
    """Stands in for ChannelDispatcher; every dispatch 'succeeds' on telegram."""

    def __init__(self, channels=("telegram",)):
        self.payloads = []
        self.channels = list(channels)
        self.before_return = None

    async def dispatch(self, payload, config):
        self.payloads.append(payload)
        if self.before_return is not None:
            await self.before_return()
        return list(self.channels)


@pytest.fixture
def fake_pipeline():
    return FakePipeline()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()
