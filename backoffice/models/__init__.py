# Import all models so they register with Base.metadata
from backoffice.models.catalog import Category, Product, ProductVariation
from backoffice.models.inventory import InventoryUnit
from backoffice.models.order import Order, OrderItem, OrderStatus, OrderStatusHistory
from backoffice.models.return_policy import PolicyScope, ReturnPolicy
from backoffice.models.return_request import (
    RefundMethod,
    RefundStatus,
    ReturnReason,
    ReturnRequest,
    ReturnStatus,
    ReturnType,
    TERMINAL_RETURN_STATUSES,
)
from backoffice.models.quality_check import (
    DamageDisposition,
    DamageSeverity,
    DamageType,
    DamagedInventory,
    DamagedInventoryStatus,
    OverallCondition,
    QCDisposition,
    QCStatus,
    QualityCheck,
)

__all__ = [
    "Category",
    "Product",
    "ProductVariation",
    "InventoryUnit",
    "Order",
    "OrderItem",
    "OrderStatus",
    "OrderStatusHistory",
    "PolicyScope",
    "ReturnPolicy",
    "RefundMethod",
    "RefundStatus",
    "ReturnReason",
    "ReturnRequest",
    "ReturnStatus",
    "ReturnType",
    "TERMINAL_RETURN_STATUSES",
    "DamageDisposition",
    "DamageSeverity",
    "DamageType",
    "DamagedInventory",
    "DamagedInventoryStatus",
    "OverallCondition",
    "QCDisposition",
    "QCStatus",
    "QualityCheck",
]
