"""Fallback price extraction from common e-commerce CSS selectors."""

import logging
import re
from typing import Optional

from selectolax.parser import HTMLParser, Node

from pricewatch.extract.candidates import ExtractionMethod, FetchedPage, PriceCandidate
from pricewatch.extract.price_parser import CURRENCY_SYMBOLS, ParsedPrice, parse_amount, parse_price
from pricewatch.extract.strategies.base import ExtractionStrategy

logger = logging.getLogger(__name__)

GENERIC_CSS_CONFIDENCE = 0.6
MAX_GENERIC_CANDIDATES = 3

GENERIC_PRICE_SELECTORS = [
    '[itemprop="price"]',
    "[data-price-amount]",  # Magento 2
    "[data-price]",
    "[data-product-price]",
    ".price-box .price",
    ".special-price .price",
    ".price",
    ".product-price",
    ".current-price",
    ".sale-price",
    ".final-price",
    ".offer-price",
    "#price",
    '[class*="price"]',
    '[class*="Price"]',
]

# Struck-through or reference prices
_SKIP_CLASS_RE = re.compile(r"original|was|old|regular|compare|strikethrough|line-through", re.IGNORECASE)
_CURRENCY_CODE_RE = re.compile(r"\b(CHF|EUR|GBP|USD|CAD|AUD|JPY|INR)\b", re.IGNORECASE)
_CURRENCY_SYMBOL_RE = re.compile(r"([$€£¥₹])")


def _classes(node: Optional[Node]) -> str:
    if node is None:
        return ""
    return (node.attributes or {}).get("class") or ""


def _currency_near(node: Node) -> str:
    """Look for a currency code or symbol in the node and its parent."""
    sources = [node.text(), node.parent.text() if node.parent is not None else ""]
    for source in sources:
        if not source:
            continue
        code = _CURRENCY_CODE_RE.search(source)
        if code:
            return code.group(1).upper()
        symbol = _CURRENCY_SYMBOL_RE.search(source)
        if symbol:
            return CURRENCY_SYMBOLS.get(symbol.group(1), "USD")
    return "USD"


def parse_node(node: Node) -> tuple[Optional[ParsedPrice], str]:
    """Read a price from a node's data attributes or text."""
    attrs = node.attributes or {}
    text = node.text(strip=True)

    amount = parse_amount(attrs.get("data-price-amount"))
    if amount is not None:
        return ParsedPrice(price=amount, currency=_currency_near(node)), "data-price-amount attribute"

    source = attrs.get("content") or attrs.get("data-price") or text
    parsed = parse_price(source) if source else None
    if parsed is not None and attrs.get("content") and not _CURRENCY_SYMBOL_RE.search(source):
        # itemprop="price" content is a bare number; the currency sits nearby
        parsed = ParsedPrice(price=parsed.price, currency=_currency_near(node))
    return parsed, text[:50]


class GenericCssStrategy(ExtractionStrategy):
    """Scans well-known price selectors, skipping was/compare-at prices."""

    method = ExtractionMethod.GENERIC_CSS

    def __init__(self, selectors: Optional[list[str]] = None, max_candidates: int = MAX_GENERIC_CANDIDATES):
        self.selectors = selectors or GENERIC_PRICE_SELECTORS
        self.max_candidates = max_candidates

    async def extract(self, page: FetchedPage) -> list[PriceCandidate]:
        tree = HTMLParser(page.html)
        candidates: list[PriceCandidate] = []
        seen = set()

        for selector in self.selectors:
            for node in tree.css(selector):
                if node.tag in ("script", "style", "meta") and not (node.attributes or {}).get("content"):
                    continue
                if _SKIP_CLASS_RE.search(_classes(node) + " " + _classes(node.parent)):
                    continue

                parsed, context = parse_node(node)
                if parsed is None or parsed.price in seen:
                    continue
                seen.add(parsed.price)
                candidates.append(
                    PriceCandidate(
                        price=parsed.price,
                        currency=parsed.currency,
                        method=self.method,
                        confidence=GENERIC_CSS_CONFIDENCE,
                        context=context or selector,
                    )
                )
                if len(candidates) >= self.max_candidates:
                    return candidates

        return candidates
