"""SQLAlchemy database models for orders, download tokens and their audit trail."""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

ORDER_STATUSES = ("pending", "paid", "refunded", "partially_refunded", "failed")


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC timestamp.

    PostgreSQL keeps ``timestamptz``; SQLite has no timezone support, so values
    are stored as naive UTC there. Results are always aware UTC datetimes.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Product(Base):
    """
    Catalog read model.

    Owned by the catalog subsystem; this service only reads it to resolve
    purchased line items and to locate downloadable files.
    """

    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    catalog_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    master_file_path: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)

    def __repr__(self) -> str:
        """String representation of Product."""
        return f"<Product(id={self.id}, name={self.name!r})>"


class Order(Base):
    """
    One purchase transaction.

    ``payment_reference`` is the Stripe checkout session id and the
    idempotency key: the unique index is what makes duplicate webhook
    deliveries collapse into a single row.
    """

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_reference: Mapped[str] = mapped_column(String(255), nullable=False)
    payment_intent_reference: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, index=True
    )
    user_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    customer_email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    customer_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    subtotal: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    total: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="eur")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    paid_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("total >= 0", name="non_negative_total"),
        CheckConstraint(
            "status IN ('pending', 'paid', 'refunded', 'partially_refunded', 'failed')",
            name="valid_order_status",
        ),
        Index("uq_orders_payment_reference", "payment_reference", unique=True),
        Index("idx_orders_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(id={self.id}, payment_reference={self.payment_reference}, "
            f"total={self.total}, status={self.status})>"
        )


class OrderItem(Base):
    """
    One purchased line.

    Name and price are snapshots taken at purchase time and never rewritten.
    ``product_ref`` is null when the line could not be matched to the catalog;
    such rows feed the unresolved-items queue.
    """

    __tablename__ = "order_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_ref: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    product_name_snapshot: Mapped[str] = mapped_column(String(500), nullable=False)
    unit_price_snapshot: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    resolution: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="positive_quantity"),
        CheckConstraint(
            "resolution IN ('embedded', 'exact', 'contains', 'unresolved')",
            name="valid_resolution",
        ),
    )

    def __repr__(self) -> str:
        """String representation of OrderItem."""
        return (
            f"<OrderItem(id={self.id}, order_id={self.order_id}, "
            f"product_ref={self.product_ref}, name={self.product_name_snapshot!r})>"
        )


class DownloadToken(Base):
    """
    Content access grant for one order item.

    ``download_count`` only moves up and never past ``max_downloads``;
    ``is_active`` only moves from true to false.
    """

    __tablename__ = "download_tokens"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_item_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("order_items.id", ondelete="CASCADE"), nullable=False
    )
    token: Mapped[str] = mapped_column(String(128), nullable=False)
    product_ref: Mapped[str] = mapped_column(String(64), nullable=False)
    user_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    max_downloads: Mapped[int] = mapped_column(Integer, nullable=False)
    download_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_download_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("max_downloads > 0", name="positive_max_downloads"),
        CheckConstraint(
            "download_count >= 0 AND download_count <= max_downloads",
            name="download_count_within_limit",
        ),
        Index("uq_download_tokens_token", "token", unique=True),
        Index("uq_download_tokens_order_item", "order_item_id", unique=True),
    )

    @property
    def downloads_remaining(self) -> int:
        return max(self.max_downloads - self.download_count, 0)

    def __repr__(self) -> str:
        """String representation of DownloadToken."""
        return (
            f"<DownloadToken(id={self.id}, product_ref={self.product_ref}, "
            f"count={self.download_count}/{self.max_downloads}, active={self.is_active})>"
        )


class DownloadLog(Base):
    """Append-only audit record, one row per successful download."""

    __tablename__ = "download_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    download_token_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("download_tokens.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    file_name: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        """String representation of DownloadLog."""
        return f"<DownloadLog(token_id={self.download_token_id}, at={self.created_at})>"


class WebhookFailure(Base):
    """
    Webhook events whose processing failed after signature verification.

    The provider already received a 2xx for these; this table is the
    remediation queue.
    """

    __tablename__ = "webhook_failures"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    error: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, index=True
    )

    def __repr__(self) -> str:
        """String representation of WebhookFailure."""
        return f"<WebhookFailure(event_id={self.event_id}, event_type={self.event_type})>"
