"""Tests for extraction strategies, page info and the extraction pipeline."""

import json
from contextlib import asynccontextmanager
from decimal import Decimal
from importlib.metadata import version

import pytest
from selectolax.parser import HTMLParser

from pricewatch.ai.prompts import AIVerificationResponse
from pricewatch.errors import BlockedError
from pricewatch.extract.ai_verifier import AI_CORRECTED, AI_VERIFIED, AIVerifier
from pricewatch.extract.arbitrator import Accepted, Arbitrator, ExtractionFailed, NeedsReview
from pricewatch.extract.candidates import ExtractionMethod, FetchedPage, PriceCandidate, StockStatus
from pricewatch.extract.page_info import detect_stock_status, fill_page_info
from pricewatch.extract.pipeline import ExtractionPipeline
from pricewatch.extract.strategies.ai import AIStrategy
from pricewatch.extract.strategies.base import ExtractionStrategy, StrategyError
from pricewatch.extract.strategies.generic_css import GenericCssStrategy
from pricewatch.extract.strategies.json_ld import JsonLdStrategy
from pricewatch.extract.strategies.site_specific import SiteSpecificStrategy


def json_ld_page(data, url="https://shop.example.com/p/1", body=""):
    html = (
        "<html><head>"
        f'<script type="application/ld+json">{json.dumps(data)}</script>'
        f"</head><body>{body}</body></html>"
    )
    return FetchedPage(url=url, html=html)


class FakeLLM:
    available = True

    def __init__(self, response):
        self.response = response
        self.prompts = []

    async def call_llm_structured(self, prompt, response_schema, system_prompt="", purpose="general"):
        self.prompts.append(prompt)
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


class FakeFetcher:
    def __init__(self, page=None, error=None):
        self.page = page
        self.error = error

    async def fetch(self, url, headers=None):
        if self.error is not None:
            raise self.error
        return FetchedPage(url=url, html=self.page.html)


class NoThrottle:
    def __init__(self):
        self.cooldowns = {}

    @asynccontextmanager
    async def slot(self, url):
        yield 0.0

    def set_cooldown(self, url, seconds):
        self.cooldowns[url] = seconds


class BrokenStrategy(ExtractionStrategy):
    method = ExtractionMethod.SITE_SPECIFIC

    async def extract(self, page):
        raise StrategyError("selector table out of date")


# ---------------------------------------------------------------------------
# JSON-LD
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_json_ld_graph_with_offer_list():
    page = json_ld_page({
        "@context": "https://schema.org",
        "@graph": [
            {"@type": "WebPage", "name": "Shop"},
            {
                "@type": "Product",
                "name": "Espresso Machine",
                "image": ["https://cdn.example.com/espresso.jpg"],
                "offers": [{
                    "@type": "AggregateOffer",
                    "lowPrice": "189.00",
                    "highPrice": "249.00",
                    "priceCurrency": "EUR",
                    "availability": "https://schema.org/InStock",
                }],
            },
        ],
    })

    candidates = await JsonLdStrategy().extract(page)

    assert len(candidates) == 1
    assert candidates[0].price == Decimal("189.00")
    assert candidates[0].currency == "EUR"
    assert candidates[0].confidence == 0.9
    assert page.name == "Espresso Machine"
    assert page.image_url == "https://cdn.example.com/espresso.jpg"
    assert page.stock_status == StockStatus.IN_STOCK


@pytest.mark.asyncio
async def test_json_ld_price_specification_and_out_of_stock():
    page = json_ld_page({
        "@type": "Product",
        "name": "Kettle",
        "offers": {
            "priceSpecification": {"price": 39.5, "priceCurrency": "GBP"},
            "availability": "http://schema.org/OutOfStock",
        },
    })

    candidates = await JsonLdStrategy().extract(page)

    assert candidates[0].price == Decimal("39.5")
    assert candidates[0].currency == "GBP"
    assert page.stock_status == StockStatus.OUT_OF_STOCK


@pytest.mark.asyncio
async def test_json_ld_ignores_broken_blocks():
    page = FetchedPage(
        url="https://shop.example.com/p/2",
        html='<script type="application/ld+json">{not json</script>',
    )
    assert await JsonLdStrategy().extract(page) == []


# ---------------------------------------------------------------------------
# Markup strategies
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_generic_css_skips_was_price():
    page = FetchedPage(
        url="https://shop.example.com/p/3",
        html="""
        <div class="product">
          <span class="price price--was">$129.99</span>
          <span class="price">$99.99</span>
        </div>
        """,
    )

    candidates = await GenericCssStrategy().extract(page)

    assert [c.price for c in candidates] == [Decimal("99.99")]
    assert candidates[0].method == ExtractionMethod.GENERIC_CSS
    assert candidates[0].confidence == 0.6


@pytest.mark.asyncio
async def test_site_specific_amazon_skips_coupon_box():
    page = FetchedPage(
        url="https://www.amazon.com/dp/B000TEST",
        html="""
        <div id="corePrice_feature_div">
          <span class="a-price"><span class="a-offscreen">$49.99</span></span>
        </div>
        <div id="couponBadge" class="coupon">
          <div id="apex_desktop_newAccordionRow">
            <span class="a-price"><span class="a-offscreen">$5.00</span></span>
          </div>
        </div>
        """,
    )
    strategy = SiteSpecificStrategy()

    assert strategy.applies_to(page)
    candidates = await strategy.extract(page)

    assert [c.price for c in candidates] == [Decimal("49.99")]
    assert candidates[0].confidence == 0.85


def test_site_specific_does_not_apply_to_unknown_hosts():
    page = FetchedPage(url="https://shop.example.com/p/4", html="")
    assert not SiteSpecificStrategy().applies_to(page)


def test_stock_detection_from_markup():
    in_stock = HTMLParser('<main><button class="btn">Add to Cart</button></main>')
    out_of_stock = HTMLParser("<main><p>This item is currently unavailable.</p></main>")
    itemprop = HTMLParser('<link itemprop="availability" href="https://schema.org/OutOfStock">')

    assert detect_stock_status(in_stock) == StockStatus.IN_STOCK
    assert detect_stock_status(out_of_stock) == StockStatus.OUT_OF_STOCK
    assert detect_stock_status(itemprop) == StockStatus.OUT_OF_STOCK
    assert detect_stock_status(HTMLParser("<main><p>Hello</p></main>")) == StockStatus.UNKNOWN


def test_installed_selectolax_ships_modest_parser():
    major = int(version("selectolax").split(".")[0])
    assert major < 1
    assert HTMLParser('<p class="price">$5</p>').css_first("p.price").text() == "$5"


def test_fill_page_info_resolves_relative_image():
    page = FetchedPage(
        url="https://shop.example.com/p/5",
        html='<meta property="og:title" content="Desk Lamp"><meta property="og:image" content="/img/lamp.png">',
    )

    fill_page_info(page)

    assert page.name == "Desk Lamp"
    assert page.image_url == "https://shop.example.com/img/lamp.png"


# ---------------------------------------------------------------------------
# AI strategy and verifier
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_ai_strategy_uses_model_confidence():
    service = FakeLLM({"name": "Lamp", "price": "24.99", "currency": "USD", "stockStatus": "in_stock", "confidence": 0.8})
    page = FetchedPage(url="https://shop.example.com/p/6", html="<p>Lamp $24.99</p>")

    candidates = await AIStrategy(service=service).extract(page)

    assert candidates[0].price == Decimal("24.99")
    assert candidates[0].confidence == 0.8
    assert candidates[0].method == ExtractionMethod.AI
    assert page.stock_status == StockStatus.IN_STOCK


@pytest.mark.asyncio
async def test_ai_strategy_wraps_bad_responses():
    service = FakeLLM(ValueError("no JSON object"))
    page = FetchedPage(url="https://shop.example.com/p/7", html="<p></p>")

    with pytest.raises(StrategyError):
        await AIStrategy(service=service).extract(page)


def _accepted(price="20.00"):
    c = PriceCandidate(price=Decimal(price), currency="USD", method=ExtractionMethod.JSON_LD, confidence=0.9)
    return Accepted(price=c.normalized_price, currency="USD", method=c.method, candidate=c), c


@pytest.mark.asyncio
async def test_verifier_confirms_price():
    accepted, c = _accepted()
    verifier = AIVerifier(service=FakeLLM({"isCorrect": True, "confidence": 0.95, "stockStatus": "in_stock"}))
    page = FetchedPage(url="https://shop.example.com/p/8", html="<p></p>")

    result = await verifier.verify(page, accepted, [c])

    assert result.ai_status == AI_VERIFIED
    assert result.accepted is accepted
    assert result.stock_status == StockStatus.IN_STOCK


def test_verifier_corrects_to_extracted_candidate_or_raises_review():
    accepted, c = _accepted("20.00")
    other = PriceCandidate(price=Decimal("18.00"), currency="USD", method=ExtractionMethod.AI, confidence=0.2)
    verifier = AIVerifier(service=FakeLLM({}))

    corrected = verifier.apply(
        accepted,
        [c, other],
        _verification(isCorrect=False, suggestedPrice="18.00", confidence=0.9),
    )
    assert corrected.ai_status == AI_CORRECTED
    assert corrected.accepted.price == Decimal("18.00")
    assert corrected.accepted.forced is True

    unmatched = verifier.apply(
        accepted,
        [c, other],
        _verification(isCorrect=False, suggestedPrice="15.00", confidence=0.9, reason="Sale banner price"),
    )
    assert unmatched.ai_status is None
    assert [(x.price, x.method) for x in unmatched.review.candidates] == [
        (Decimal("20.00"), ExtractionMethod.JSON_LD),
        (Decimal("15.00"), ExtractionMethod.AI),
        (Decimal("18.00"), ExtractionMethod.AI),
    ]
    assert unmatched.review.candidates[1].context == "AI suggestion: Sale banner price"
    assert unmatched.review.suggested_price.price == Decimal("20.00")

    unsure = verifier.apply(
        accepted,
        [c, other],
        _verification(isCorrect=False, suggestedPrice="18.00", confidence=0.6),
    )
    assert unsure.accepted is accepted


def _verification(**data):
    return AIVerificationResponse.model_validate(data)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_pipeline_accepts_agreeing_strategies():
    page = json_ld_page(
        {"@type": "Product", "name": "Mug", "offers": {"price": "12.00", "priceCurrency": "USD"}},
        body='<span class="price">$12.00</span>',
    )
    pipeline = ExtractionPipeline(
        fetcher=FakeFetcher(page),
        throttle=NoThrottle(),
        strategies=[JsonLdStrategy(), GenericCssStrategy()],
        ai_strategy=AIStrategy(service=FakeLLM({})),
        verifier=AIVerifier(service=FakeLLM({})),
        arbitrator=Arbitrator(),
    )

    run = await pipeline.run(page.url)

    assert isinstance(run.outcome, Accepted)
    assert run.outcome.method == ExtractionMethod.JSON_LD
    assert run.outcome.price == Decimal("12.00")
    assert len(run.candidates) == 2
    assert run.page.name == "Mug"
    assert run.ai_status is None


@pytest.mark.asyncio
async def test_pipeline_survives_failing_strategy():
    page = FetchedPage(url="https://shop.example.com/p/9", html='<span class="price">$9.00</span>')
    pipeline = ExtractionPipeline(
        fetcher=FakeFetcher(page),
        throttle=NoThrottle(),
        strategies=[BrokenStrategy(), GenericCssStrategy()],
        ai_strategy=AIStrategy(service=FakeLLM({})),
        verifier=AIVerifier(service=FakeLLM({})),
    )

    run = await pipeline.run(page.url)

    assert isinstance(run.outcome, Accepted)
    assert run.outcome.price == Decimal("9.00")


@pytest.mark.asyncio
async def test_pipeline_ai_fallback_only_when_enabled():
    page = FetchedPage(url="https://shop.example.com/p/10", html="<p>nothing here</p>")
    service = FakeLLM({"price": "30.00", "currency": "USD", "confidence": 0.85})
    pipeline = ExtractionPipeline(
        fetcher=FakeFetcher(page),
        throttle=NoThrottle(),
        strategies=[GenericCssStrategy()],
        ai_strategy=AIStrategy(service=service),
        verifier=AIVerifier(service=FakeLLM({})),
    )

    without_ai = await pipeline.run(page.url)
    assert isinstance(without_ai.outcome, ExtractionFailed)
    assert service.prompts == []

    with_ai = await pipeline.run(page.url, ai_extraction=True)
    assert isinstance(with_ai.outcome, Accepted)
    assert with_ai.outcome.method == ExtractionMethod.AI


@pytest.mark.asyncio
async def test_pipeline_disagreement_needs_review():
    page = json_ld_page(
        {"@type": "Product", "offers": {"price": "80.00", "priceCurrency": "USD"}},
        body='<span class="price">$65.00</span>',
    )
    pipeline = ExtractionPipeline(
        fetcher=FakeFetcher(page),
        throttle=NoThrottle(),
        strategies=[JsonLdStrategy(), GenericCssStrategy()],
        ai_strategy=AIStrategy(service=FakeLLM({})),
        verifier=AIVerifier(service=FakeLLM({})),
        arbitrator=Arbitrator(strong_threshold=0.95),
    )

    run = await pipeline.run(page.url)

    assert isinstance(run.outcome, NeedsReview)
    assert run.outcome.suggested_price.price == Decimal("80.00")


@pytest.mark.asyncio
async def test_pipeline_blocked_fetch_sets_cooldown():
    throttle = NoThrottle()
    pipeline = ExtractionPipeline(
        fetcher=FakeFetcher(error=BlockedError("403 for url")),
        throttle=throttle,
        strategies=[],
        ai_strategy=AIStrategy(service=FakeLLM({})),
        verifier=AIVerifier(service=FakeLLM({})),
    )

    run = await pipeline.run("https://shop.example.com/p/11")

    assert isinstance(run.outcome, ExtractionFailed)
    assert "https://shop.example.com/p/11" in throttle.cooldowns


@pytest.mark.asyncio
async def test_pipeline_unmatched_ai_suggestion_needs_review():
    page = json_ld_page({"@type": "Product", "offers": {"price": "42.00", "priceCurrency": "USD"}})
    verdict = {"isCorrect": False, "suggestedPrice": "37.80", "confidence": 0.9, "reason": "Member price shown"}
    pipeline = ExtractionPipeline(
        fetcher=FakeFetcher(page),
        throttle=NoThrottle(),
        strategies=[JsonLdStrategy()],
        ai_strategy=AIStrategy(service=FakeLLM({})),
        verifier=AIVerifier(service=FakeLLM(verdict)),
    )

    run = await pipeline.run(page.url, ai_verification=True)

    assert isinstance(run.outcome, NeedsReview)
    assert [c.price for c in run.outcome.candidates] == [Decimal("42.00"), Decimal("37.80")]
    assert run.candidates == run.outcome.candidates
    assert run.ai_status is None
