"""Extract prices from schema.org Product JSON-LD."""

import json
import logging
from typing import Any, Optional

from selectolax.parser import HTMLParser

from pricewatch.extract.candidates import (
    ExtractionMethod,
    FetchedPage,
    PriceCandidate,
    StockStatus,
)
from pricewatch.extract.price_parser import parse_amount
from pricewatch.extract.strategies.base import ExtractionStrategy

logger = logging.getLogger(__name__)

JSON_LD_CONFIDENCE = 0.9


def extract_json_ld(html: str) -> list[Any]:
    """
    Extract JSON-LD structured data from script tags.

    Returns list of JSON-LD objects found in the page; unparseable blocks
    are skipped.
    """
    results = []
    tree = HTMLParser(html)
    for script in tree.css('script[type="application/ld+json"]'):
        content = script.text()
        if not content:
            continue
        try:
            results.append(json.loads(content))
        except json.JSONDecodeError:
            continue
    return results


def _is_product(obj: dict) -> bool:
    obj_type = obj.get("@type", "")
    if isinstance(obj_type, list):
        return "Product" in obj_type
    return obj_type == "Product"


def find_product(data: Any) -> Optional[dict]:
    """Find the first Product node, descending into arrays and @graph."""
    if isinstance(data, list):
        for item in data:
            found = find_product(item)
            if found:
                return found
        return None

    if not isinstance(data, dict):
        return None

    if _is_product(data):
        return data

    graph = data.get("@graph")
    if isinstance(graph, list):
        return find_product(graph)
    return None


def first_offer(product: dict) -> Optional[dict]:
    offers = product.get("offers")
    if isinstance(offers, list):
        offers = offers[0] if offers else None
    return offers if isinstance(offers, dict) else None


def availability_to_status(availability: Optional[str]) -> StockStatus:
    """Map a schema.org availability URL or token to a stock status."""
    if not availability:
        return StockStatus.UNKNOWN
    avail = str(availability).lower()
    if "instock" in avail or "in_stock" in avail:
        return StockStatus.IN_STOCK
    if any(token in avail for token in ("outofstock", "out_of_stock", "soldout", "sold_out")):
        return StockStatus.OUT_OF_STOCK
    return StockStatus.UNKNOWN


def product_image(product: dict) -> Optional[str]:
    image = product.get("image")
    if isinstance(image, list):
        image = image[0] if image else None
    if isinstance(image, dict):
        image = image.get("url")
    return image if isinstance(image, str) else None


class JsonLdStrategy(ExtractionStrategy):
    """Reads price, currency, availability, name and image from JSON-LD."""

    method = ExtractionMethod.JSON_LD

    async def extract(self, page: FetchedPage) -> list[PriceCandidate]:
        candidates = []
        for data in extract_json_ld(page.html):
            product = find_product(data)
            if not product:
                continue

            if product.get("name") and not page.name:
                page.name = str(product["name"]).strip()
            if not page.image_url:
                page.image_url = product_image(product)

            offer = first_offer(product)
            if not offer:
                continue

            price_spec = offer.get("priceSpecification")
            if isinstance(price_spec, list):
                price_spec = price_spec[0] if price_spec else None
            price_spec = price_spec if isinstance(price_spec, dict) else {}

            # lowPrice for ranges, then the direct price, then the nested priceSpecification
            price = (
                parse_amount(offer.get("lowPrice"))
                or parse_amount(offer.get("price"))
                or parse_amount(price_spec.get("price"))
            )
            currency = offer.get("priceCurrency") or price_spec.get("priceCurrency") or "USD"

            status = availability_to_status(offer.get("availability"))
            if status != StockStatus.UNKNOWN:
                page.stock_status = status

            if price is None:
                continue
            candidates.append(
                PriceCandidate(
                    price=price,
                    currency=str(currency),
                    method=self.method,
                    confidence=JSON_LD_CONFIDENCE,
                    context=f"Structured data: {product.get('name') or 'Product'}",
                )
            )
            # First Product block with a price is authoritative
            break

        return candidates
