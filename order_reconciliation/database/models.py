"""SQLAlchemy database models for order reconciliation."""
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Order(Base):
    """
    Canonical order records.

    Exactly one row exists per ``(gateway_kind, provider_reference)``. The
    unique constraint on that pair is the only synchronization between the
    browser-return path and the webhook path.
    """

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    gateway_kind: Mapped[str] = mapped_column(String(32), nullable=False)
    provider_reference: Mapped[str] = mapped_column(String(255), nullable=False)
    secondary_reference: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True
    )
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    customer_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    customer_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    customer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    line_items: Mapped[List[Dict[str, Any]]] = mapped_column(JSONType, nullable=False)
    shipping_address: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    total_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("gateway_kind", "provider_reference", name="uq_orders_idempotency_key"),
        CheckConstraint("total_minor >= 0", name="non_negative_total"),
        CheckConstraint(
            "status IN ('pending_payment', 'paid', 'processing', 'completed', "
            "'cancelled', 'refunded')",
            name="valid_order_status",
        ),
        CheckConstraint(
            "gateway_kind IN ('card_session', 'card_intent', 'wallet', 'bank_transfer')",
            name="valid_gateway_kind",
        ),
        CheckConstraint("length(currency) = 3", name="valid_order_currency"),
        Index("idx_orders_customer_status", "customer_id", "status"),
    )

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(number={self.order_number}, gateway={self.gateway_kind}, "
            f"reference={self.provider_reference}, status={self.status})>"
        )


class BankTransferRequest(Base):
    """
    Orders awaiting a manual bank transfer.

    The bank transfer gateway synthesizes its confirmation from these rows.
    """

    __tablename__ = "bank_transfer_requests"

    reference: Mapped[str] = mapped_column(String(32), primary_key=True)
    customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_email: Mapped[str] = mapped_column(String(320), nullable=False)
    customer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    cart: Mapped[List[Dict[str, Any]]] = mapped_column(JSONType, nullable=False)
    shipping_address: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (CheckConstraint("amount_minor > 0", name="positive_transfer_amount"),)

    def __repr__(self) -> str:
        return f"<BankTransferRequest(reference={self.reference}, amount={self.amount_minor})>"


class NotificationLog(Base):
    """
    Notification job outcomes.

    One row per recipient per dispatch. Failed rows are picked up by the
    notification sweeper.
    """

    __tablename__ = "notification_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_number: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    recipient_role: Mapped[str] = mapped_column(String(16), nullable=False)
    recipient: Mapped[str | None] = mapped_column(String(320), nullable=True)
    template: Mapped[str] = mapped_column(String(64), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    redeliveries: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("recipient_role IN ('customer', 'business')", name="valid_recipient_role"),
        Index("idx_notification_logs_pending", "success", "redeliveries"),
    )

    def __repr__(self) -> str:
        return (
            f"<NotificationLog(order={self.order_number}, role={self.recipient_role}, "
            f"success={self.success})>"
        )
