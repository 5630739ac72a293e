import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, CheckConstraint, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backoffice.database import Base
from backoffice.db_types import UTCDateTime, UUIDType, utcnow


class InventoryUnit(Base):
    """
    Available stock for a product, or for one of its variations.

    A row with ``variation_id`` NULL is the product-level unit. Quantities are
    only changed by InventoryService under a row lock.
    """
    __tablename__ = "inventory_units"
    __table_args__ = (
        CheckConstraint("available_quantity >= 0", name="ck_inventory_units_available_non_negative"),
        Index("uq_inventory_units_sku", "product_id", "variation_id", unique=True),
        # NULLs are distinct in unique indexes, so product-level units need their own
        Index(
            "uq_inventory_units_product_level",
            "product_id",
            unique=True,
            postgresql_where=text("variation_id IS NULL"),
            sqlite_where=text("variation_id IS NULL"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    product_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("products.id", ondelete="RESTRICT"),
        nullable=False
    )
    variation_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("product_variations.id", ondelete="RESTRICT"),
        nullable=True
    )
    sku: Mapped[str] = mapped_column(String(50), nullable=False)

    available_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    product = relationship("Product")
    variation = relationship("ProductVariation")

    def __repr__(self) -> str:
        return f"<InventoryUnit(sku='{self.sku}', available={self.available_quantity})>"
