import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import (
    Boolean, CheckConstraint, ForeignKey, Integer, String, Text, Index
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backoffice.database import Base
from backoffice.db_types import JSONType, Money, UTCDateTime, UUIDType, utcnow

if TYPE_CHECKING:
    from backoffice.models.return_request import ReturnRequest


class OrderStatus(str, Enum):
    """Order status enumeration."""
    PENDING = "PENDING"        # Placed, stock reserved, awaiting payment
    PAID = "PAID"              # Payment confirmed by the gateway
    PROCESSING = "PROCESSING"  # Being prepared in the warehouse
    SHIPPED = "SHIPPED"        # Handed to the courier
    DELIVERED = "DELIVERED"    # Received by the customer, return window open
    CANCELLED = "CANCELLED"    # Stock restored


class Order(Base):
    """
    Customer order.

    Totals satisfy ``total_amount = subtotal + shipping_amount - discount_amount``
    and are fixed at placement. Orders are never deleted.
    """
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint("total_amount >= 0", name="ck_orders_total_non_negative"),
        Index("ix_orders_customer_created", "customer_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    order_number: Mapped[str] = mapped_column(
        String(30),
        unique=True,
        nullable=False,
        index=True,
        comment="Human-readable order number e.g. ORD-20260115-1A2B3C4D"
    )
    idempotency_key: Mapped[Optional[str]] = mapped_column(
        String(100),
        unique=True,
        nullable=True,
        comment="Client-supplied key; a retried placement returns the same order"
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        nullable=False,
        comment="User id from the identity service"
    )
    status: Mapped[str] = mapped_column(
        String(30),
        default=OrderStatus.PENDING.value,
        nullable=False,
        index=True,
        comment="PENDING, PAID, PROCESSING, SHIPPED, DELIVERED, CANCELLED"
    )

    # Amounts
    subtotal: Mapped[Decimal] = mapped_column(Money, nullable=False)
    shipping_amount: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"), nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)

    # Shipping destination snapshot
    shipping_address: Mapped[dict] = mapped_column(JSONType, nullable=False)

    # Payment (filled from gateway notifications)
    payment_reference: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        comment="Gateway transaction id"
    )
    payment_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    payment_info: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    # Delivery & returns
    delivered_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    return_window_expires: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime,
        nullable=True,
        comment="Latest return window among the order's lines"
    )
    is_returnable: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    has_active_returns: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    total_returned_amount: Mapped[Decimal] = mapped_column(
        Money, default=Decimal("0.00"), nullable=False
    )

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    # Relationships
    items: Mapped[List["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        lazy="selectin",
        order_by="OrderItem.created_at",
    )
    status_history: Mapped[List["OrderStatusHistory"]] = relationship(
        "OrderStatusHistory",
        back_populates="order",
        order_by="OrderStatusHistory.created_at",
    )
    return_requests: Mapped[List["ReturnRequest"]] = relationship(
        "ReturnRequest",
        back_populates="order",
    )

    def __repr__(self) -> str:
        return f"<Order(number='{self.order_number}', status='{self.status}')>"


class OrderItem(Base):
    """Order line item. Immutable after placement."""
    __tablename__ = "order_items"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    product_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("products.id", ondelete="RESTRICT"),
        nullable=False
    )
    variation_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("product_variations.id", ondelete="SET NULL"),
        nullable=True
    )

    # Product snapshot (stored for historical record)
    product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    product_sku: Mapped[str] = mapped_column(String(50), nullable=False)
    category_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType(as_uuid=True), nullable=True)

    # Quantity & Pricing (price captured under the inventory lock)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)

    # Return window resolved from the line's policy at placement; NULL = not returnable
    return_window_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    return_window_expires: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    # Relationships
    order: Mapped["Order"] = relationship("Order", back_populates="items")

    @property
    def is_returnable(self) -> bool:
        return self.return_window_days is not None

    def __repr__(self) -> str:
        return f"<OrderItem(sku='{self.product_sku}', qty={self.quantity})>"


class OrderStatusHistory(Base):
    """Order status change history."""
    __tablename__ = "order_status_history"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    from_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    to_status: Mapped[str] = mapped_column(String(30), nullable=False)

    changed_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType(as_uuid=True), nullable=True)
    changed_by_role: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    order: Mapped["Order"] = relationship("Order", back_populates="status_history")

    def __repr__(self) -> str:
        return f"<OrderStatusHistory(from='{self.from_status}', to='{self.to_status}')>"
