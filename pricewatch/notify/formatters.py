"""Message formatting for notification channels."""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from pricewatch.extract.candidates import minor_unit_exponent

CURRENCY_SYMBOLS = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
    "INR": "₹",
    "CHF": "CHF ",
    "CAD": "CA$",
    "AUD": "A$",
}

# Discord embed colors
COLOR_PRICE_DROP = 0x10B981  # Green
COLOR_TARGET = 0xF59E0B  # Amber
COLOR_BACK_IN_STOCK = 0x6366F1  # Indigo

TITLES = {
    "price_drop": "🔔 Price Drop Alert!",
    "price_target": "🎯 Target Price Reached!",
    "stock_change": "🎉 Back in Stock!",
}


@dataclass
class NotificationPayload:
    """Everything a channel needs to render one alert."""

    notification_type: str
    product_name: str
    product_url: str
    currency: str = "USD"
    old_price: Optional[Decimal] = None
    new_price: Optional[Decimal] = None
    target_price: Optional[Decimal] = None
    threshold: Optional[Decimal] = None

    @property
    def title(self) -> str:
        return TITLES[self.notification_type]


def format_price(amount: Optional[Decimal], currency: str = "USD") -> str:
    """
    Format a price with its currency symbol.

    Args:
        amount: Price amount (None renders as N/A)
        currency: ISO currency code

    Returns:
        Formatted price string (e.g., "$1,299.99", "€29.99", "¥1,500")
    """
    if amount is None:
        return "N/A"
    code = (currency or "USD").upper()
    symbol = CURRENCY_SYMBOLS.get(code)
    digits = minor_unit_exponent(code)
    number = f"{Decimal(amount):,.{digits}f}"
    if symbol is None:
        return f"{number} {code}"
    return f"{symbol}{number}"


def format_text_message(payload: NotificationPayload) -> str:
    """Plain-text body used by Telegram and ntfy."""
    name = payload.product_name
    url = payload.product_url
    currency = payload.currency

    if payload.notification_type == "price_drop":
        drop = ""
        if payload.old_price is not None and payload.new_price is not None:
            drop = f" (-{format_price(payload.old_price - payload.new_price, currency)})"
        return (
            f"{payload.title}\n\n"
            f"📦 {name}\n\n"
            f"💰 Price dropped from {format_price(payload.old_price, currency)} "
            f"to {format_price(payload.new_price, currency)}{drop}\n\n"
            f"🔗 {url}"
        )

    if payload.notification_type == "price_target":
        return (
            f"{payload.title}\n\n"
            f"📦 {name}\n\n"
            f"💰 Price is now {format_price(payload.new_price, currency)} "
            f"(your target: {format_price(payload.target_price, currency)})\n\n"
            f"🔗 {url}"
        )

    price = f" at {format_price(payload.new_price, currency)}" if payload.new_price is not None else ""
    return (
        f"{payload.title}\n\n"
        f"📦 {name}\n\n"
        f"✅ This item is now available{price}\n\n"
        f"🔗 {url}"
    )


def format_short_message(payload: NotificationPayload) -> str:
    """Body without title and link, for channels that carry those separately."""
    currency = payload.currency
    if payload.notification_type == "price_drop":
        return (
            f"{payload.product_name}\n\nPrice dropped from "
            f"{format_price(payload.old_price, currency)} to {format_price(payload.new_price, currency)}"
        )
    if payload.notification_type == "price_target":
        return (
            f"{payload.product_name}\n\nPrice is now {format_price(payload.new_price, currency)} "
            f"(your target: {format_price(payload.target_price, currency)})"
        )
    price = f" at {format_price(payload.new_price, currency)}" if payload.new_price is not None else ""
    return f"{payload.product_name}\n\nThis item is now available{price}"


def format_discord_embed(payload: NotificationPayload) -> dict[str, Any]:
    """Discord embed for an alert."""
    currency = payload.currency
    if payload.notification_type == "price_drop":
        color = COLOR_PRICE_DROP
        fields = [
            {"name": "Old Price", "value": format_price(payload.old_price, currency), "inline": True},
            {"name": "New Price", "value": format_price(payload.new_price, currency), "inline": True},
        ]
    elif payload.notification_type == "price_target":
        color = COLOR_TARGET
        fields = [
            {"name": "Current Price", "value": format_price(payload.new_price, currency), "inline": True},
            {"name": "Your Target", "value": format_price(payload.target_price, currency), "inline": True},
        ]
    else:
        color = COLOR_BACK_IN_STOCK
        price = format_price(payload.new_price, currency) if payload.new_price is not None else "Check link"
        fields = [
            {"name": "Price", "value": price, "inline": True},
            {"name": "Status", "value": "✅ Available", "inline": True},
        ]

    return {
        "title": payload.title,
        "description": payload.product_name,
        "color": color,
        "fields": fields,
        "url": payload.product_url,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
