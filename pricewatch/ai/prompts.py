"""Prompt templates and response schemas for AI extraction and verification."""

from typing import Optional

from pydantic import BaseModel, Field, field_validator
from selectolax.parser import HTMLParser

from pricewatch.config import settings

EXTRACTION_SYSTEM_PROMPT = """You are a price extraction assistant. Analyze HTML content from a product page and extract the product information.

Important:
- Extract the CURRENT/SALE price, not the original price if there's a discount
- If you can't find a price with confidence, set price to null"""

VERIFICATION_SYSTEM_PROMPT = """You are a price and availability verification assistant. A product page was scraped and a price was found. Verify whether this price is correct AND whether the product is currently available for purchase.

Common price issues to watch for:
- The scraped price might be a "savings" amount (e.g., "Save $189.99")
- The scraped price might come from a bundle/combo deal section
- The scraped price might be shipping cost or add-on price
- The scraped price might be the original/crossed-out price instead of the sale price

Common availability issues to watch for:
- "Coming Soon", "Pre-order" or "Notify me when available" - NOT in stock
- "Out of stock" or "Sold out" - NOT in stock
- Product CAN be added to cart and purchased today - IN stock"""

EXTRACTION_SCHEMA = {
    "name": "string or null",
    "price": "number or null (current selling price)",
    "currency": "ISO currency code",
    "imageUrl": "string or null",
    "stockStatus": "in_stock | out_of_stock | unknown",
    "confidence": "number from 0 to 1",
}

VERIFICATION_SCHEMA = {
    "isCorrect": "boolean",
    "confidence": "number from 0 to 1",
    "suggestedPrice": "number or null (null if the scraped price is correct)",
    "suggestedCurrency": "currency code if suggesting a different price",
    "stockStatus": "in_stock | out_of_stock | unknown",
    "reason": "brief explanation covering price and availability",
}

_PRODUCT_SECTION_SELECTORS = (
    '[itemtype*="Product"]',
    '[class*="product"]',
    '[id*="product"]',
    '[class*="pdp"]',
    "main",
    '[role="main"]',
)


def prepare_html(html: str, max_chars: Optional[int] = None) -> str:
    """
    Shrink a page for the model: keep product JSON-LD, drop scripts and
    styles, focus on the product section and truncate.
    """
    max_chars = max_chars or settings.ai_html_max_chars
    tree = HTMLParser(html)

    json_ld = []
    for script in tree.css('script[type="application/ld+json"]'):
        text = script.text() or ""
        if "price" in text or "Product" in text or "Offer" in text:
            json_ld.append(text)

    tree.strip_tags(["script", "style", "noscript", "iframe", "svg", "meta", "link"])

    content = tree.body.html if tree.body is not None else html
    for selector in _PRODUCT_SECTION_SELECTORS:
        section = tree.css_first(selector)
        if section is not None and section.html and len(section.html) > 500:
            content = section.html
            break

    if json_ld:
        content = "JSON-LD Structured Data:\n" + "\n".join(json_ld) + "\n\nHTML Content:\n" + content

    if len(content) > max_chars:
        content = content[:max_chars] + "\n... [truncated]"
    return content


class ExtractionPrompt(BaseModel):
    """Prompt for extracting a price from page HTML."""

    url: str
    html: str

    def to_prompt(self) -> str:
        return f"Product page: {self.url}\n\nHTML Content:\n{prepare_html(self.html)}"


class VerificationPrompt(BaseModel):
    """Prompt for checking an already-accepted price."""

    url: str
    html: str
    price: str
    currency: str

    def to_prompt(self) -> str:
        return (
            f"Product page: {self.url}\n"
            f"Scraped Price: {self.price} {self.currency}\n\n"
            f"HTML Content:\n{prepare_html(self.html)}"
        )


def _clamp_confidence(value) -> float:
    try:
        return max(0.0, min(1.0, float(value)))
    except (TypeError, ValueError):
        return 0.5


class AIExtractionResponse(BaseModel):
    name: Optional[str] = None
    price: Optional[str] = None
    currency: str = "USD"
    image_url: Optional[str] = Field(default=None, alias="imageUrl")
    stock_status: str = Field(default="unknown", alias="stockStatus")
    confidence: float = 0.5

    model_config = {"populate_by_name": True}

    @field_validator("price", mode="before")
    @classmethod
    def _price_to_str(cls, value):
        return None if value is None else str(value)

    @field_validator("currency", mode="before")
    @classmethod
    def _currency_default(cls, value):
        return value or "USD"

    @field_validator("stock_status", mode="before")
    @classmethod
    def _stock_default(cls, value):
        return value if value in ("in_stock", "out_of_stock", "unknown") else "unknown"

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence_range(cls, value):
        return _clamp_confidence(value)


class AIVerificationResponse(BaseModel):
    is_correct: bool = Field(default=True, alias="isCorrect")
    confidence: float = 0.5
    suggested_price: Optional[str] = Field(default=None, alias="suggestedPrice")
    suggested_currency: Optional[str] = Field(default=None, alias="suggestedCurrency")
    stock_status: str = Field(default="unknown", alias="stockStatus")
    reason: str = ""

    model_config = {"populate_by_name": True}

    @field_validator("suggested_price", mode="before")
    @classmethod
    def _price_to_str(cls, value):
        return None if value is None else str(value)

    @field_validator("stock_status", mode="before")
    @classmethod
    def _stock_default(cls, value):
        return value if value in ("in_stock", "out_of_stock", "unknown") else "unknown"

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence_range(cls, value):
        return _clamp_confidence(value)

    @field_validator("reason", mode="before")
    @classmethod
    def _reason_default(cls, value):
        return value or ""
