"""Selector profiles for retailers whose markup is known."""

import logging
import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

from selectolax.parser import HTMLParser, Node

from pricewatch.extract.candidates import ExtractionMethod, FetchedPage, PriceCandidate
from pricewatch.extract.price_parser import is_instalment_text, parse_price
from pricewatch.extract.strategies.base import ExtractionStrategy

logger = logging.getLogger(__name__)

SITE_SPECIFIC_CONFIDENCE = 0.85

# Ancestors with these ids/classes hold coupons, savings or bundles
_PROMO_CONTAINER_RE = re.compile(r"coupon|savings|save|clipcoupon|promoprice|combo|bundle", re.IGNORECASE)


@dataclass(frozen=True)
class SiteProfile:
    """CSS selectors for one retailer."""

    name: str
    host_pattern: re.Pattern
    price_selectors: tuple[str, ...]
    name_selectors: tuple[str, ...] = ()
    image_selectors: tuple[str, ...] = ()
    # Collect every distinct price (sellers/variants) instead of the first
    collect_all: bool = False
    min_price: float = 0.0
    skip_promo_containers: bool = False

    def matches(self, url: str) -> bool:
        host = urlparse(url).netloc.lower()
        return bool(self.host_pattern.search(host))


SITE_PROFILES: list[SiteProfile] = [
    SiteProfile(
        name="amazon",
        host_pattern=re.compile(r"(^|\.)amazon\.(com|co\.uk|ca|de|fr|es|it|co\.jp|in|com\.au)$"),
        price_selectors=(
            "#corePrice_feature_div .a-price .a-offscreen",
            "#corePriceDisplay_desktop_feature_div .a-price .a-offscreen",
            "#apex_desktop_newAccordionRow .a-price .a-offscreen",
            "#apex_offerDisplay_desktop .a-price .a-offscreen",
            "#aod-offer-price .a-offscreen",
            "#olp-upd-new .a-color-price",
            "#newBuySection .a-color-price",
            "#buyNew_noncbb .a-color-price",
        ),
        name_selectors=("#productTitle", "#title"),
        image_selectors=("#landingImage", "#imgBlkFront"),
        collect_all=True,
        min_price=2.0,
        skip_promo_containers=True,
    ),
    SiteProfile(
        name="bestbuy",
        host_pattern=re.compile(r"(^|\.)bestbuy\.com$"),
        price_selectors=(
            '[data-testid="customer-price"] span',
            ".priceView-customer-price span",
            ".priceView-hero-price span",
            '[data-testid="product-price"]',
        ),
        name_selectors=("h1.heading-5", ".sku-title h1", '[data-testid="product-title"]', "h1"),
        image_selectors=("img.primary-image", '[data-testid="image-gallery-image"]'),
    ),
    SiteProfile(
        name="target",
        host_pattern=re.compile(r"(^|\.)target\.com$"),
        price_selectors=('[data-test="product-price"]', '[data-test="current-price"]'),
        name_selectors=('[data-test="product-title"]',),
        image_selectors=('[data-test="image-gallery-item-0"] img',),
    ),
    SiteProfile(
        name="ebay",
        host_pattern=re.compile(r"(^|\.)ebay\.(com|co\.uk|de|fr|ca|com\.au)$"),
        price_selectors=(
            '[data-testid="x-price-primary"] .ux-textspans',
            ".x-price-primary .ux-textspans",
            "#prcIsum",
            "#mm-saleDscPrc",
            ".vi-price .notranslate",
        ),
        name_selectors=("h1.x-item-title__mainTitle span", 'h1[itemprop="name"]'),
        image_selectors=('[data-testid="ux-image-carousel"] img', "#icImg"),
    ),
    SiteProfile(
        name="newegg",
        host_pattern=re.compile(r"(^|\.)newegg\.com$"),
        price_selectors=(".product-buy-box .price-current", ".price-current"),
        name_selectors=("h1.product-title",),
        image_selectors=(".product-view-img-original",),
        skip_promo_containers=True,
    ),
    SiteProfile(
        name="walmart",
        host_pattern=re.compile(r"(^|\.)walmart\.com$"),
        price_selectors=('[itemprop="price"]', '[data-testid="price-wrap"] span'),
        name_selectors=('h1[itemprop="name"]', "h1"),
        image_selectors=('[data-testid="hero-image-container"] img',),
    ),
    SiteProfile(
        name="homedepot",
        host_pattern=re.compile(r"(^|\.)homedepot\.com$"),
        price_selectors=('[data-testid="price-format"]', ".price-format__main-price"),
        name_selectors=("h1.product-details__title", "h1"),
    ),
]


def _in_promo_container(node: Node) -> bool:
    parent = node.parent
    while parent is not None:
        attrs = parent.attributes or {}
        marker = f"{attrs.get('id') or ''} {attrs.get('class') or ''}"
        if _PROMO_CONTAINER_RE.search(marker):
            return True
        parent = parent.parent
    return False


def _first_text(tree: HTMLParser, selectors: tuple[str, ...]) -> Optional[str]:
    for selector in selectors:
        node = tree.css_first(selector)
        if node is not None:
            text = node.text(strip=True)
            if text:
                return text
    return None


def _first_image(tree: HTMLParser, selectors: tuple[str, ...]) -> Optional[str]:
    for selector in selectors:
        node = tree.css_first(selector)
        if node is not None:
            attrs = node.attributes or {}
            src = attrs.get("src") or attrs.get("data-old-hires") or attrs.get("content")
            if src:
                return src
    return None


class SiteSpecificStrategy(ExtractionStrategy):
    """Runs the selector profile registered for the page's hostname."""

    method = ExtractionMethod.SITE_SPECIFIC

    def __init__(self, profiles: Optional[list[SiteProfile]] = None):
        self.profiles = SITE_PROFILES if profiles is None else profiles

    def _profile(self, url: str) -> Optional[SiteProfile]:
        for profile in self.profiles:
            if profile.matches(url):
                return profile
        return None

    def applies_to(self, page: FetchedPage) -> bool:
        return self._profile(page.url) is not None

    async def extract(self, page: FetchedPage) -> list[PriceCandidate]:
        profile = self._profile(page.url)
        if profile is None:
            return []

        tree = HTMLParser(page.html)
        candidates: list[PriceCandidate] = []
        seen = set()
        context = f"Site-specific extractor for {urlparse(page.url).netloc}"

        for selector in profile.price_selectors:
            for node in tree.css(selector):
                text = node.text(strip=True)
                if not text or is_instalment_text(text):
                    continue
                if profile.skip_promo_containers and _in_promo_container(node):
                    continue
                parsed = parse_price(text)
                if parsed is None or parsed.price < profile.min_price or parsed.price in seen:
                    continue
                seen.add(parsed.price)
                candidates.append(
                    PriceCandidate(
                        price=parsed.price,
                        currency=parsed.currency,
                        method=self.method,
                        confidence=SITE_SPECIFIC_CONFIDENCE,
                        context=context,
                    )
                )
                if not profile.collect_all:
                    break
            if candidates and not profile.collect_all:
                break

        if not page.name:
            page.name = _first_text(tree, profile.name_selectors)
        if not page.image_url:
            page.image_url = _first_image(tree, profile.image_selectors)

        logger.debug(f"{profile.name}: {len(candidates)} candidate(s) for {page.url}")
        return candidates
