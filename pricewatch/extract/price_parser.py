"""Parse display prices ("$1,299.99", "29,99 €", "CHF 49.-") into Decimals."""

import re
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

CURRENCY_SYMBOLS = {
    "$": "USD",
    "€": "EUR",
    "£": "GBP",
    "¥": "JPY",
    "₹": "INR",
    "fr.": "CHF",
}

CURRENCY_CODES = ("USD", "EUR", "GBP", "CAD", "AUD", "JPY", "INR", "CHF")

_NUMBER = r"\d[\d,.]*"

PRICE_PATTERNS = [
    # $29.99, €29,99 (symbol before)
    re.compile(rf"(?P<currency>[$€£¥₹])\s*(?P<price>{_NUMBER})"),
    # 29,99 € (symbol after, common in Europe)
    re.compile(rf"(?P<price>{_NUMBER})\s*(?P<currency>[$€£¥₹])"),
    # CHF 29.99, Fr. 29.99, USD 10
    re.compile(rf"(?P<currency>{'|'.join(CURRENCY_CODES)}|Fr\.)\s*(?P<price>{_NUMBER})", re.IGNORECASE),
    # 29.99 USD
    re.compile(rf"(?P<price>{_NUMBER})\s*(?P<currency>{'|'.join(CURRENCY_CODES)})", re.IGNORECASE),
]

# Financing / instalment text is never the product price
INSTALMENT_MARKERS = (
    "/mo",
    "per month",
    "monthly payment",
    "a month",
    "payments starting",
    "payment of",
    "payments of",
)
_INSTALMENT_RE = re.compile(r"\d+\s*payments?\b|\d+\s*mo\b")


@dataclass(frozen=True)
class ParsedPrice:
    price: Decimal
    currency: str


def _currency_code(token: str) -> str:
    token = token.strip()
    return CURRENCY_SYMBOLS.get(token.lower(), token.upper() if len(token) == 3 else "USD")


def normalize_number(text: str) -> Optional[Decimal]:
    """
    Turn a number string in US or European format into a Decimal.

    "1.234,56" -> 1234.56, "1,234.56" -> 1234.56, "29,99" -> 29.99
    """
    normalized = re.sub(r"\s", "", text or "").rstrip(".,")
    if not normalized:
        return None

    if re.search(r",\d{2}$", normalized) and not re.search(r"\.\d{2}$", normalized):
        normalized = normalized.replace(".", "").replace(",", ".")
    else:
        normalized = normalized.replace(",", "")
        # "1.234.567" style thousands separators
        if normalized.count(".") > 1:
            head, _, tail = normalized.rpartition(".")
            normalized = head.replace(".", "") + ("." + tail if len(tail) != 3 else tail)

    try:
        value = Decimal(normalized)
    except InvalidOperation:
        return None
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def is_instalment_text(text: str) -> bool:
    lower = text.lower()
    return any(marker in lower for marker in INSTALMENT_MARKERS) or bool(_INSTALMENT_RE.search(lower))


def parse_price(text: str, default_currency: str = "USD") -> Optional[ParsedPrice]:
    """
    Parse the first price in a piece of text.

    Returns None for empty text, zero/negative amounts and instalment
    offers such as "$25/mo" or "4 payments of $10".
    """
    if not text:
        return None

    clean = re.sub(r"\s+", " ", text.strip())
    if is_instalment_text(clean):
        return None

    for pattern in PRICE_PATTERNS:
        match = pattern.search(clean)
        if not match:
            continue
        price = normalize_number(match.group("price"))
        if price is not None and price > 0:
            return ParsedPrice(price=price, currency=_currency_code(match.group("currency")))

    number = re.search(r"\d[\d,.]*", clean)
    if number:
        price = normalize_number(number.group(0))
        if price is not None and price > 0:
            return ParsedPrice(price=price, currency=default_currency)

    return None


def parse_amount(value) -> Optional[Decimal]:
    """Parse a structured-data price value (number or numeric string)."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        amount = Decimal(str(value))
    else:
        amount = normalize_number(str(value))
    if amount is None or amount <= 0:
        return None
    return amount
