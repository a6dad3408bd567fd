"""Product name, image and stock status from page markup."""

from typing import Optional
from urllib.parse import urljoin

from selectolax.parser import HTMLParser

from pricewatch.extract.candidates import StockStatus

GENERIC_NAME_SELECTORS = [
    '[itemprop="name"]',
    'meta[property="og:title"]',
    'h1[class*="product"]',
    'h1[class*="title"]',
    ".product-title",
    ".product-name",
    "h1",
]

GENERIC_IMAGE_SELECTORS = [
    '[itemprop="image"]',
    'meta[property="og:image"]',
    ".product-image img",
    ".main-image img",
    "[data-zoom-image]",
    'img[class*="product"]',
]

MAIN_CONTENT_SELECTORS = 'main, [role="main"], #main, .main-content, .product-detail, .pdp-main'

PRE_ORDER_PHRASES = (
    "coming soon",
    "available soon",
    "arriving soon",
    "releases on",
    "release date",
    "expected release",
    "launching soon",
    "pre-order",
    "preorder",
    "pre order",
    "notify me when available",
    "notify when available",
    "email me when available",
    "join the waitlist",
    "join waitlist",
    "not yet released",
    "not yet available",
)

IN_STOCK_PHRASES = (
    "in stock",
    "add to cart",
    "add to basket",
    "buy now",
    "available now",
    "ships today",
    "ready to ship",
)

OUT_OF_STOCK_PHRASES = (
    "this item is out of stock",
    "this product is out of stock",
    "currently out of stock",
    "this item is currently unavailable",
    "this product is currently unavailable",
    "temporarily out of stock",
    "this item is sold out",
)

_PURCHASE_CONTEXT = ("$", "price", "buy", "cart", "order", "purchase")
_NOT_A_CART_BUTTON = ("pre-order", "preorder", "notify", "waitlist")


def extract_name(tree: HTMLParser) -> Optional[str]:
    for selector in GENERIC_NAME_SELECTORS:
        node = tree.css_first(selector)
        if node is None:
            continue
        text = (node.attributes or {}).get("content") or node.text(strip=True)
        if text and len(text) < 500:
            return text.strip()
    return None


def extract_image(tree: HTMLParser, base_url: str) -> Optional[str]:
    for selector in GENERIC_IMAGE_SELECTORS:
        node = tree.css_first(selector)
        if node is None:
            continue
        attrs = node.attributes or {}
        src = attrs.get("src") or attrs.get("content") or attrs.get("data-zoom-image") or attrs.get("data-src")
        if src:
            return urljoin(base_url, src)
    return None


def detect_stock_status(tree: HTMLParser) -> StockStatus:
    """
    Conservative stock detection from markup.

    Order: schema.org itemprop availability, pre-order/coming-soon text
    without in-stock wording, pre-order badges, a real add-to-cart button,
    out-of-stock badges, explicit out-of-stock sentences. Anything else is
    unknown.
    """
    availability_node = tree.css_first('[itemprop="availability"]')
    if availability_node is not None:
        attrs = availability_node.attributes or {}
        availability = (attrs.get("content") or attrs.get("href") or "").lower()
        if any(token in availability for token in ("outofstock", "discontinued", "preorder")):
            return StockStatus.OUT_OF_STOCK
        if "instock" in availability or "available" in availability:
            return StockStatus.IN_STOCK

    main_nodes = tree.css(MAIN_CONTENT_SELECTORS)
    text = " ".join(node.text(separator=" ") for node in main_nodes).lower()
    if not text.strip() and tree.body is not None:
        text = tree.body.text(separator=" ").lower()[:5000]

    has_in_stock_text = any(phrase in text for phrase in IN_STOCK_PHRASES)
    if not has_in_stock_text:
        for phrase in PRE_ORDER_PHRASES:
            index = text.find(phrase)
            if index < 0:
                continue
            context = text[max(0, index - 200):index + 200]
            if any(word in context for word in _PURCHASE_CONTEXT):
                return StockStatus.OUT_OF_STOCK

    for selector in ('[class*="pre-order"]', '[class*="preorder"]', '[class*="coming-soon"]'):
        if tree.css_first(selector) is not None:
            return StockStatus.OUT_OF_STOCK

    for button in tree.css('button, input[type="submit"], [data-testid*="add-to-cart"]'):
        attrs = button.attributes or {}
        label = f"{button.text()} {attrs.get('value') or ''}".lower()
        marker = f"{attrs.get('class') or ''} {attrs.get('id') or ''} {attrs.get('data-testid') or ''}".lower()
        looks_like_cart = "add to cart" in label or "add-to-cart" in marker
        if looks_like_cart and not any(word in label or word in marker for word in _NOT_A_CART_BUTTON):
            return StockStatus.IN_STOCK

    for selector in ('[class*="out-of-stock"]', '[class*="sold-out"]', '[data-testid*="out-of-stock"]'):
        if tree.css_first(selector) is not None:
            return StockStatus.OUT_OF_STOCK

    if any(phrase in text for phrase in OUT_OF_STOCK_PHRASES):
        return StockStatus.OUT_OF_STOCK

    return StockStatus.UNKNOWN


def fill_page_info(page) -> None:
    """Fill name, image and stock status not already set by a strategy."""
    tree = HTMLParser(page.html)
    if not page.name:
        page.name = extract_name(tree)
    if not page.image_url:
        page.image_url = extract_image(tree, page.url)
    elif not page.image_url.startswith(("http://", "https://")):
        page.image_url = urljoin(page.url, page.image_url)
    if page.stock_status == StockStatus.UNKNOWN:
        page.stock_status = detect_stock_status(tree)
