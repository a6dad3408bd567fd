"""SQLAlchemy database models."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from pricewatch.db.encryption import EncryptedString
from pricewatch.utils.clock import utcnow


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class User(Base):
    """Owner of tracked products. Authentication lives outside this service."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    products: Mapped[list["Product"]] = relationship(
        "Product", back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )
    notification_settings: Mapped[Optional["NotificationSettings"]] = relationship(
        "NotificationSettings",
        back_populates="user",
        cascade="all, delete-orphan",
        uselist=False,
    )


class NotificationSettings(Base):
    """Per-user channel credentials and AI toggles."""

    __tablename__ = "notification_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )

    # Telegram
    telegram_bot_token: Mapped[Optional[str]] = mapped_column(EncryptedString(512), nullable=True)
    telegram_chat_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    telegram_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Discord
    discord_webhook_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    discord_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Pushover
    pushover_user_key: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    pushover_app_token: Mapped[Optional[str]] = mapped_column(EncryptedString(512), nullable=True)
    pushover_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # ntfy
    ntfy_topic: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    ntfy_server_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ntfy_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # AI toggles
    ai_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    ai_verification_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="notification_settings")


class Product(Base):
    """Tracked product page."""

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    url: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Scheduling (owned by the scheduler)
    refresh_interval: Mapped[int] = mapped_column(Integer, default=3600, nullable=False)
    last_checked: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    next_check_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    checking_paused: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_check_failed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    stock_status: Mapped[str] = mapped_column(String(20), default="unknown", nullable=False)

    # Alerting config (owned by the user)
    price_drop_threshold: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    target_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    notify_back_in_stock: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Extraction preferences
    ai_extraction_disabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    ai_verification_disabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    ai_status: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    preferred_method: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    anchor_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)

    # Pending review gate
    review_pending: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    review_candidates: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    review_suggested_price: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="products")
    price_history: Mapped[list["PriceHistory"]] = relationship(
        "PriceHistory",
        back_populates="product",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    stock_history: Mapped[list["StockStatusHistory"]] = relationship(
        "StockStatusHistory",
        back_populates="product",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        UniqueConstraint("user_id", "url", name="uq_product_user_url"),
        Index("ix_products_due", "checking_paused", "review_pending", "next_check_at"),
    )


class PriceHistory(Base):
    """Accepted prices, append-only."""

    __tablename__ = "price_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), default="USD", nullable=False)
    ai_status: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    product: Mapped["Product"] = relationship("Product", back_populates="price_history")

    __table_args__ = (Index("ix_price_history_product_date", "product_id", "recorded_at"),)


class StockStatusHistory(Base):
    """Stock status transitions, append-only."""

    __tablename__ = "stock_status_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    changed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    product: Mapped["Product"] = relationship("Product", back_populates="stock_history")

    __table_args__ = (
        UniqueConstraint("product_id", "changed_at", name="uq_stock_history_product_time"),
        Index("ix_stock_history_product_date", "product_id", "changed_at"),
    )


class NotificationHistory(Base):
    """Dispatched (or attempted) alerts."""

    __tablename__ = "notification_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    product_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("products.id", ondelete="SET NULL"), nullable=True
    )
    notification_type: Mapped[str] = mapped_column(String(32), nullable=False)
    triggered_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    old_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    new_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    old_stock_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    new_stock_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    channels_notified: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    # Denormalized for display after product deletion
    product_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    product_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_notification_history_user_time", "user_id", "triggered_at"),
        Index("ix_notification_history_product_type", "product_id", "notification_type"),
    )
