"""Fetch a page, run extraction strategies and arbitrate their candidates."""

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from pricewatch import metrics
from pricewatch.config import settings
from pricewatch.errors import BlockedError, ExtractionError
from pricewatch.extract.ai_verifier import AIVerifier, ai_verifier
from pricewatch.extract.arbitrator import (
    Accepted,
    ArbitrationOutcome,
    Arbitrator,
    ExtractionFailed,
    arbitrator as default_arbitrator,
)
from pricewatch.extract.candidates import FetchedPage, PriceCandidate, StockStatus
from pricewatch.extract.http_client import PageFetcher, page_fetcher
from pricewatch.extract.page_info import fill_page_info
from pricewatch.extract.rate_limiter import DomainThrottle, domain_throttle
from pricewatch.extract.strategies.ai import AIStrategy
from pricewatch.extract.strategies.base import ExtractionStrategy, StrategyError
from pricewatch.extract.strategies.generic_css import GenericCssStrategy
from pricewatch.extract.strategies.json_ld import JsonLdStrategy
from pricewatch.extract.strategies.site_specific import SiteSpecificStrategy

logger = logging.getLogger(__name__)


@dataclass
class ExtractionRun:
    """Everything one fetch produced."""

    url: str
    outcome: ArbitrationOutcome
    page: Optional[FetchedPage] = None
    candidates: list[PriceCandidate] = field(default_factory=list)
    ai_status: Optional[str] = None

    @property
    def stock_status(self) -> StockStatus:
        return self.page.stock_status if self.page is not None else StockStatus.UNKNOWN


def default_strategies() -> list[ExtractionStrategy]:
    return [JsonLdStrategy(), SiteSpecificStrategy(), GenericCssStrategy()]


class ExtractionPipeline:
    """
    One fetch, many strategies, one outcome.

    Non-AI strategies always run. The AI strategy only runs when they found
    nothing and AI extraction is allowed for the product. Every step is
    bounded by a timeout; a failing or timed-out strategy contributes no
    candidates.
    """

    def __init__(
        self,
        fetcher: Optional[PageFetcher] = None,
        throttle: Optional[DomainThrottle] = None,
        strategies: Optional[list[ExtractionStrategy]] = None,
        ai_strategy: Optional[ExtractionStrategy] = None,
        verifier: Optional[AIVerifier] = None,
        arbitrator: Optional[Arbitrator] = None,
    ):
        self.fetcher = fetcher or page_fetcher
        self.throttle = throttle or domain_throttle
        self.strategies = strategies if strategies is not None else default_strategies()
        self.ai_strategy = ai_strategy if ai_strategy is not None else AIStrategy()
        self.verifier = verifier or ai_verifier
        self.arbitrator = arbitrator or default_arbitrator

    async def fetch(self, url: str) -> FetchedPage:
        """Fetch under the origin throttle; timeouts become ExtractionError."""
        async with self.throttle.slot(url):
            try:
                return await asyncio.wait_for(
                    self.fetcher.fetch(url),
                    timeout=settings.fetch_timeout_seconds,
                )
            except asyncio.TimeoutError as e:
                metrics.fetch_errors_total.labels(error_type="timeout").inc()
                raise ExtractionError(f"Fetch timed out after {settings.fetch_timeout_seconds}s: {url}") from e
            except BlockedError:
                self.throttle.set_cooldown(url, settings.blocked_cooldown_seconds)
                raise

    async def _run_strategy(self, strategy: ExtractionStrategy, page: FetchedPage) -> list[PriceCandidate]:
        if not strategy.applies_to(page):
            return []
        try:
            candidates = await asyncio.wait_for(
                strategy.extract(page),
                timeout=settings.strategy_timeout_seconds,
            )
        except asyncio.TimeoutError:
            metrics.strategy_failures_total.labels(method=strategy.name, reason="timeout").inc()
            logger.warning(f"{strategy.name} timed out on {page.url}")
            return []
        except StrategyError as e:
            metrics.strategy_failures_total.labels(method=strategy.name, reason="error").inc()
            logger.warning(f"{strategy.name} failed on {page.url}: {e}")
            return []
        except Exception:
            metrics.strategy_failures_total.labels(method=strategy.name, reason="crash").inc()
            logger.exception(f"{strategy.name} crashed on {page.url}")
            return []

        if candidates:
            metrics.strategy_candidates_total.labels(method=strategy.name).inc(len(candidates))
        return list(candidates)

    async def collect(self, page: FetchedPage, ai_extraction: bool = False) -> list[PriceCandidate]:
        """Run strategies in priority order and fill page metadata."""
        candidates: list[PriceCandidate] = []
        for strategy in self.strategies:
            candidates.extend(await self._run_strategy(strategy, page))

        if not candidates and ai_extraction and self.ai_strategy is not None:
            logger.info(f"No candidates from markup for {page.url}, trying AI extraction")
            ai_candidates = await self._run_strategy(self.ai_strategy, page)
            candidates.extend(
                c for c in ai_candidates if c.confidence > settings.ai_min_extraction_confidence
            )

        fill_page_info(page)
        return candidates

    async def run(
        self,
        url: str,
        *,
        ai_extraction: bool = False,
        ai_verification: bool = False,
        anchor_price: Optional[Decimal] = None,
        preferred_method: Optional[str] = None,
    ) -> ExtractionRun:
        """Fetch, extract and arbitrate. Never raises for extraction problems."""
        try:
            page = await self.fetch(url)
        except ExtractionError as e:
            logger.warning(f"Fetch failed for {url}: {e}")
            return ExtractionRun(url=url, outcome=ExtractionFailed(reason=str(e)))

        candidates = await self.collect(page, ai_extraction=ai_extraction)
        if not candidates:
            return ExtractionRun(
                url=url,
                outcome=ExtractionFailed(reason="No price candidates found"),
                page=page,
            )

        outcome = self.arbitrator.resolve_with_preferences(
            candidates,
            anchor_price=anchor_price,
            preferred_method=preferred_method,
        )
        run = ExtractionRun(url=url, outcome=outcome, page=page, candidates=candidates)

        if (
            ai_verification
            and isinstance(outcome, Accepted)
            and not outcome.forced
            and self.arbitrator.is_unanimous(candidates)
            and self.verifier.available
        ):
            await self._verify(run)

        return run

    async def _verify(self, run: ExtractionRun) -> None:
        result = await self.verifier.verify(run.page, run.outcome, run.candidates)
        if result.review is not None:
            run.outcome = result.review
            run.candidates = list(result.review.candidates)
        else:
            run.outcome = result.accepted
            run.ai_status = result.ai_status
        if result.stock_status is not None and (
            run.page.stock_status == StockStatus.UNKNOWN
            or result.stock_status == StockStatus.OUT_OF_STOCK
        ):
            run.page.stock_status = result.stock_status


extraction_pipeline = ExtractionPipeline()
