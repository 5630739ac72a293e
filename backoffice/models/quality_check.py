"""
Quality inspection of returned goods, and damaged stock found by it.

- QualityCheck: one per return request; immutable once COMPLETED
- DamagedInventory: damaged units routed to a disposition, never merged back
  into InventoryUnit
"""
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import CheckConstraint, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backoffice.database import Base
from backoffice.db_types import JSONType, Money, UTCDateTime, UUIDType, utcnow

if TYPE_CHECKING:
    from backoffice.models.return_request import ReturnRequest


# ============================================================================
# ENUMS
# ============================================================================

class QCStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"


class OverallCondition(str, Enum):
    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    FAIR = "FAIR"
    POOR = "POOR"
    DAMAGED = "DAMAGED"
    UNSELLABLE = "UNSELLABLE"


class QCDisposition(str, Enum):
    """Fate of the inspected goods as a whole."""
    RESTOCK = "RESTOCK"
    REPAIR = "REPAIR"
    SALVAGE = "SALVAGE"
    DISPOSE = "DISPOSE"
    RETURN_TO_SUPPLIER = "RETURN_TO_SUPPLIER"


class DamageType(str, Enum):
    PHYSICAL_DAMAGE = "PHYSICAL_DAMAGE"
    WATER_DAMAGE = "WATER_DAMAGE"
    MANUFACTURING_DEFECT = "MANUFACTURING_DEFECT"
    SHIPPING_DAMAGE = "SHIPPING_DAMAGE"
    CUSTOMER_DAMAGE = "CUSTOMER_DAMAGE"
    MISSING_PARTS = "MISSING_PARTS"
    OTHER = "OTHER"


class DamageSeverity(str, Enum):
    MINOR = "MINOR"
    MODERATE = "MODERATE"
    MAJOR = "MAJOR"
    TOTAL_LOSS = "TOTAL_LOSS"


class DamagedInventoryStatus(str, Enum):
    PENDING_ASSESSMENT = "PENDING_ASSESSMENT"
    ASSESSED = "ASSESSED"
    IN_REPAIR = "IN_REPAIR"
    REPAIRED = "REPAIRED"
    SALVAGED = "SALVAGED"
    DISPOSED = "DISPOSED"


class DamageDisposition(str, Enum):
    """Fate of the damaged units specifically."""
    REPAIR = "REPAIR"
    SALVAGE = "SALVAGE"
    DONATE = "DONATE"
    RECYCLE = "RECYCLE"
    DISPOSE = "DISPOSE"
    RETURN_TO_SUPPLIER = "RETURN_TO_SUPPLIER"


# ============================================================================
# MODELS
# ============================================================================

class QualityCheck(Base):
    """Inspection record for a returned order line."""
    __tablename__ = "quality_checks"
    __table_args__ = (
        CheckConstraint(
            "sellable_quantity + damaged_quantity + missing_quantity <= quantity_expected",
            name="ck_quality_checks_breakdown_within_expected"
        ),
        CheckConstraint(
            "sellable_quantity >= 0 AND damaged_quantity >= 0 AND missing_quantity >= 0",
            name="ck_quality_checks_breakdown_non_negative"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    qc_number: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    return_request_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("return_requests.id", ondelete="RESTRICT"),
        unique=True,
        nullable=False
    )
    product_id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), nullable=False)
    variation_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType(as_uuid=True), nullable=True)

    status: Mapped[str] = mapped_column(String(20), default=QCStatus.PENDING.value, nullable=False)

    quantity_expected: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_received: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    sellable_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    damaged_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    missing_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    restocked_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    overall_condition: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    disposition: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    estimated_repair_cost: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)

    inspector_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType(as_uuid=True), nullable=True)
    inspection_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    photos: Mapped[Optional[List[str]]] = mapped_column(JSONType, nullable=True)

    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    return_request: Mapped["ReturnRequest"] = relationship(
        "ReturnRequest",
        back_populates="quality_check",
    )
    damaged_items: Mapped[List["DamagedInventory"]] = relationship(
        "DamagedInventory",
        back_populates="quality_check",
        lazy="selectin",
    )

    @property
    def is_completed(self) -> bool:
        return self.status == QCStatus.COMPLETED.value

    def __repr__(self) -> str:
        return f"<QualityCheck(number='{self.qc_number}', status='{self.status}')>"


class DamagedInventory(Base):
    """Damaged units found during inspection."""
    __tablename__ = "damaged_inventory"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_damaged_inventory_quantity_positive"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    damage_number: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    quality_check_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("quality_checks.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    return_request_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("return_requests.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    product_id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), nullable=False)
    variation_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType(as_uuid=True), nullable=True)

    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    damage_type: Mapped[str] = mapped_column(String(30), nullable=False)
    damage_severity: Mapped[str] = mapped_column(String(20), nullable=False)
    damage_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(
        String(30),
        default=DamagedInventoryStatus.PENDING_ASSESSMENT.value,
        nullable=False
    )
    disposition: Mapped[str] = mapped_column(String(30), nullable=False)

    estimated_value: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    salvage_value: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    repair_cost: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)

    reported_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType(as_uuid=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    quality_check: Mapped["QualityCheck"] = relationship("QualityCheck", back_populates="damaged_items")

    def __repr__(self) -> str:
        return f"<DamagedInventory(number='{self.damage_number}', qty={self.quantity})>"
