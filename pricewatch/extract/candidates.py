"""Price candidate types shared by strategies and the arbitrator."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Optional


class StockStatus(str, Enum):
    """Observed availability of a product."""
    IN_STOCK = "in_stock"
    OUT_OF_STOCK = "out_of_stock"
    UNKNOWN = "unknown"


class ExtractionMethod(str, Enum):
    """Extraction strategies, declared in arbitration priority order."""
    JSON_LD = "json-ld"
    SITE_SPECIFIC = "site-specific"
    GENERIC_CSS = "generic-css"
    AI = "ai"


METHOD_PRIORITY: dict[ExtractionMethod, int] = {
    method: rank for rank, method in enumerate(ExtractionMethod)
}

# ISO 4217 exponents that differ from the usual two decimals
_ZERO_DECIMAL_CURRENCIES = frozenset({
    "BIF", "CLP", "DJF", "GNF", "ISK", "JPY", "KMF", "KRW", "PYG",
    "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
})
_THREE_DECIMAL_CURRENCIES = frozenset({"BHD", "IQD", "JOD", "KWD", "LYD", "OMR", "TND"})


def minor_unit_exponent(currency: str) -> int:
    """Number of decimal places in the currency's minor unit."""
    code = (currency or "").upper()
    if code in _ZERO_DECIMAL_CURRENCIES:
        return 0
    if code in _THREE_DECIMAL_CURRENCIES:
        return 3
    return 2


def normalize_amount(price: Decimal, currency: str) -> Decimal:
    """Round a price to its currency's minor unit."""
    quantum = Decimal(1).scaleb(-minor_unit_exponent(currency))
    return Decimal(price).quantize(quantum, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PriceCandidate:
    """One strategy's proposed price for a single fetch."""

    price: Decimal
    currency: str
    method: ExtractionMethod
    confidence: float
    context: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.price, Decimal):
            object.__setattr__(self, "price", Decimal(str(self.price)))
        object.__setattr__(self, "currency", (self.currency or "USD").upper())
        if not isinstance(self.method, ExtractionMethod):
            object.__setattr__(self, "method", ExtractionMethod(self.method))
        object.__setattr__(self, "confidence", max(0.0, min(1.0, float(self.confidence))))

    @property
    def normalized_price(self) -> Decimal:
        return normalize_amount(self.price, self.currency)

    def to_dict(self) -> dict[str, Any]:
        return {
            "price": str(self.price),
            "currency": self.currency,
            "method": self.method.value,
            "confidence": self.confidence,
            "context": self.context,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PriceCandidate":
        return cls(
            price=Decimal(str(data["price"])),
            currency=data.get("currency") or "USD",
            method=ExtractionMethod(data["method"]),
            confidence=float(data.get("confidence", 1.0)),
            context=data.get("context"),
        )


@dataclass
class FetchedPage:
    """HTML of one fetch plus metadata found while extracting."""

    url: str
    html: str
    status_code: int = 200
    name: Optional[str] = None
    image_url: Optional[str] = None
    stock_status: StockStatus = StockStatus.UNKNOWN
    extras: dict[str, Any] = field(default_factory=dict)
