"""
Return policies.

A policy applies to a single product, to a whole category, or globally (both
``product_id`` and ``category_id`` NULL). See ReturnPolicyService for the
resolution order.
"""
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from sqlalchemy import Boolean, CheckConstraint, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from backoffice.database import Base
from backoffice.db_types import JSONType, UTCDateTime, UUIDType, utcnow


class PolicyScope(str, Enum):
    PRODUCT = "PRODUCT"
    CATEGORY = "CATEGORY"
    GLOBAL = "GLOBAL"


class ReturnShippingPayer(str, Enum):
    CUSTOMER = "CUSTOMER"
    SELLER = "SELLER"
    SHARED = "SHARED"


class ReturnPolicy(Base):
    """Return policy. Read-only for the return flow."""
    __tablename__ = "return_policies"
    __table_args__ = (
        CheckConstraint(
            "restocking_fee_percentage >= 0 AND restocking_fee_percentage <= 100",
            name="ck_return_policies_fee_range"
        ),
        CheckConstraint("return_window_days >= 0", name="ck_return_policies_window_non_negative"),
        Index("ix_return_policies_scope", "product_id", "category_id", "is_active"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Scope (both NULL = global default)
    product_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=True
    )
    category_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("categories.id", ondelete="CASCADE"),
        nullable=True
    )

    # Eligibility
    is_returnable: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    return_window_days: Mapped[int] = mapped_column(Integer, default=7, nullable=False)
    exchange_window_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Money
    restocking_fee_percentage: Mapped[Decimal] = mapped_column(
        Numeric(5, 2),
        default=Decimal("0.00"),
        nullable=False
    )
    return_shipping_paid_by: Mapped[str] = mapped_column(
        String(20),
        default=ReturnShippingPayer.CUSTOMER.value,
        nullable=False
    )

    # Reason codes; NULL allowed list = every reason allowed
    allowed_return_reasons: Mapped[Optional[List[str]]] = mapped_column(JSONType, nullable=True)
    excluded_return_reasons: Mapped[Optional[List[str]]] = mapped_column(JSONType, nullable=True)
    # Refund methods accepted; NULL = any
    refund_methods: Mapped[Optional[List[str]]] = mapped_column(JSONType, nullable=True)

    # Workflow flags
    requires_approval: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    quality_check_required: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    restock_sellable_items: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
        comment="Add sellable quantity back to inventory when inspection disposition is RESTOCK"
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    @property
    def scope(self) -> PolicyScope:
        if self.product_id is not None:
            return PolicyScope.PRODUCT
        if self.category_id is not None:
            return PolicyScope.CATEGORY
        return PolicyScope.GLOBAL

    def allows_reason(self, reason_code: str) -> bool:
        """Reason must be in the allowed list (if any) and not excluded."""
        if self.allowed_return_reasons and reason_code not in self.allowed_return_reasons:
            return False
        if self.excluded_return_reasons and reason_code in self.excluded_return_reasons:
            return False
        return True

    def allows_refund_method(self, method: str) -> bool:
        return not self.refund_methods or method in self.refund_methods

    def __repr__(self) -> str:
        return f"<ReturnPolicy(name='{self.name}', scope='{self.scope.value}', priority={self.priority})>"
