import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import ForeignKey, Index, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backoffice.database import Base
from backoffice.db_types import JSONType, Money, UTCDateTime, UUIDType, utcnow

if TYPE_CHECKING:
    from backoffice.models.order import Order, OrderItem
    from backoffice.models.quality_check import QualityCheck


# ============================================================================
# ENUMS
# ============================================================================

class ReturnStatus(str, Enum):
    """Return request lifecycle."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    ITEM_RECEIVED = "ITEM_RECEIVED"
    QUALITY_CHECK = "QUALITY_CHECK"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


TERMINAL_RETURN_STATUSES = (
    ReturnStatus.COMPLETED.value,
    ReturnStatus.CANCELLED.value,
    ReturnStatus.REJECTED.value,
)


class ReturnReason(str, Enum):
    """Reason codes a customer can give."""
    DEFECTIVE = "DEFECTIVE"
    WRONG_ITEM = "WRONG_ITEM"
    NOT_AS_DESCRIBED = "NOT_AS_DESCRIBED"
    CHANGED_MIND = "CHANGED_MIND"
    DAMAGED_SHIPPING = "DAMAGED_SHIPPING"
    MISSING_PARTS = "MISSING_PARTS"
    SIZE_ISSUE = "SIZE_ISSUE"
    QUALITY_ISSUE = "QUALITY_ISSUE"


class ReturnType(str, Enum):
    REFUND = "REFUND"
    EXCHANGE = "EXCHANGE"
    STORE_CREDIT = "STORE_CREDIT"


class RefundMethod(str, Enum):
    ORIGINAL_PAYMENT = "ORIGINAL_PAYMENT"  # Refund through the payment gateway
    STORE_CREDIT = "STORE_CREDIT"
    BANK_TRANSFER = "BANK_TRANSFER"
    MANUAL = "MANUAL"


class RefundStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# ============================================================================
# MODEL
# ============================================================================

class ReturnRequest(Base):
    """
    Customer return request for one order line.

    At most one non-terminal request may exist per order line; the partial
    unique index below closes the race between the eligibility check and the
    insert.
    """
    __tablename__ = "return_requests"
    __table_args__ = (
        Index(
            "uq_return_requests_active_item",
            "order_item_id",
            unique=True,
            postgresql_where=text("status NOT IN ('COMPLETED', 'CANCELLED', 'REJECTED')"),
            sqlite_where=text("status NOT IN ('COMPLETED', 'CANCELLED', 'REJECTED')"),
        ),
        Index("ix_return_requests_user_created", "user_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    return_number: Mapped[str] = mapped_column(
        String(30),
        unique=True,
        nullable=False,
        index=True,
        comment="e.g. RET-20260115-1A2B3C4D"
    )

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    order_item_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("order_items.id", ondelete="RESTRICT"),
        nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), nullable=False)
    policy_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("return_policies.id", ondelete="SET NULL"),
        nullable=True,
        comment="Policy resolved when the request was created"
    )

    # Request
    reason_code: Mapped[str] = mapped_column(String(30), nullable=False)
    reason_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    return_type: Mapped[str] = mapped_column(String(20), default=ReturnType.REFUND.value, nullable=False)
    photos: Mapped[Optional[List[str]]] = mapped_column(JSONType, nullable=True)
    customer_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(
        String(30),
        default=ReturnStatus.PENDING.value,
        nullable=False,
        index=True
    )

    # Amounts
    requested_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    approved_amount: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    restocking_fee: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"), nullable=False)
    refund_amount: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)

    # Staff processing
    admin_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    processed_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType(as_uuid=True), nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    # Return shipment
    return_deadline: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    tracking_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    courier: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    received_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    received_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType(as_uuid=True), nullable=True)

    # Refund
    refund_method: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    refund_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    refund_key: Mapped[Optional[str]] = mapped_column(
        String(60),
        unique=True,
        nullable=True,
        comment="Deterministic idempotency key sent to the gateway"
    )
    refund_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    refund_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    refund_attempts: Mapped[int] = mapped_column(default=0, nullable=False)

    # Transition timestamps
    approved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    quality_checked_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    # Relationships
    order: Mapped["Order"] = relationship("Order", back_populates="return_requests")
    order_item: Mapped["OrderItem"] = relationship("OrderItem", lazy="joined", innerjoin=True)
    quality_check: Mapped[Optional["QualityCheck"]] = relationship(
        "QualityCheck",
        back_populates="return_request",
        uselist=False,
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<ReturnRequest(number='{self.return_number}', status='{self.status}')>"
