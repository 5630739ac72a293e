import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from backoffice.core.enum_utils import create_uppercase_validator
from backoffice.models.quality_check import (
    DamageDisposition,
    DamageSeverity,
    DamageType,
    OverallCondition,
    QCDisposition,
)
from backoffice.models.return_request import RefundMethod, ReturnReason, ReturnType
from backoffice.schemas.base import BaseCreateSchema, BaseResponseSchema, PaginatedResponse


# ==================== REQUESTS ====================

class ReturnRequestCreate(BaseCreateSchema):
    """Customer return request for one order line."""
    reason_code: ReturnReason
    reason_description: Optional[str] = Field(None, max_length=2000)
    return_type: ReturnType = ReturnType.REFUND
    refund_method: RefundMethod = RefundMethod.ORIGINAL_PAYMENT
    photos: List[str] = Field(default_factory=list, max_length=10)
    customer_notes: Optional[str] = Field(None, max_length=2000)

    _normalize_enums = create_uppercase_validator("reason_code", "return_type", "refund_method")


class ReturnProcessRequest(BaseCreateSchema):
    """Staff decision on a pending return."""
    action: Literal["approve", "reject"]
    admin_notes: Optional[str] = Field(None, max_length=2000)
    approved_amount: Optional[Decimal] = Field(None, ge=0)


class ReturnReceiveRequest(BaseCreateSchema):
    tracking_number: Optional[str] = Field(None, max_length=100)
    courier: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = Field(None, max_length=2000)


class QualityCheckComplete(BaseCreateSchema):
    """Inspection outcome. Damage fields apply only when damaged_quantity > 0."""
    overall_condition: OverallCondition
    sellable_quantity: int = Field(..., ge=0)
    damaged_quantity: int = Field(0, ge=0)
    missing_quantity: int = Field(0, ge=0)
    disposition: QCDisposition
    estimated_repair_cost: Optional[Decimal] = Field(None, ge=0)
    notes: Optional[str] = Field(None, max_length=4000)
    photos: List[str] = Field(default_factory=list, max_length=20)

    damage_disposition: Optional[DamageDisposition] = None
    damage_severity: Optional[DamageSeverity] = None
    damage_type: Optional[DamageType] = None
    damage_description: Optional[str] = Field(None, max_length=2000)
    salvage_value: Optional[Decimal] = Field(None, ge=0)
    repair_cost: Optional[Decimal] = Field(None, ge=0)

    _normalize_enums = create_uppercase_validator(
        "overall_condition",
        "disposition",
        "damage_disposition",
        "damage_severity",
        "damage_type",
    )


class RefundRequest(BaseCreateSchema):
    """Settle the refund for an inspected return."""
    amount: Optional[Decimal] = Field(
        None,
        ge=0,
        description="Approved/adjusted amount before restocking fee; defaults to the approved or requested amount",
    )
    refund_method: Optional[RefundMethod] = None
    refund_notes: Optional[str] = Field(None, max_length=2000)

    _normalize_method = create_uppercase_validator("refund_method")


# ==================== RESPONSES ====================

class EligibilityResponse(BaseModel):
    eligible: bool
    reason: Optional[str] = None
    message: str
    order_id: uuid.UUID
    order_item_id: uuid.UUID
    policy_id: Optional[uuid.UUID] = None
    return_window_expires: Optional[datetime] = None
    requested_amount: Optional[Decimal] = None
    restocking_fee: Optional[Decimal] = None
    requires_approval: Optional[bool] = None
    allowed_return_reasons: Optional[List[str]] = None


class DamagedInventoryResponse(BaseResponseSchema):
    id: uuid.UUID
    damage_number: str
    quality_check_id: uuid.UUID
    return_request_id: uuid.UUID
    product_id: uuid.UUID
    variation_id: Optional[uuid.UUID] = None
    quantity: int
    damage_type: str
    damage_severity: str
    damage_description: Optional[str] = None
    status: str
    disposition: str
    estimated_value: Optional[Decimal] = None
    salvage_value: Optional[Decimal] = None
    repair_cost: Optional[Decimal] = None
    created_at: datetime


class QualityCheckResponse(BaseResponseSchema):
    id: uuid.UUID
    qc_number: str
    return_request_id: uuid.UUID
    product_id: uuid.UUID
    variation_id: Optional[uuid.UUID] = None
    status: str
    quantity_expected: int
    quantity_received: int
    sellable_quantity: int
    damaged_quantity: int
    missing_quantity: int
    restocked_quantity: int
    overall_condition: Optional[str] = None
    disposition: Optional[str] = None
    estimated_repair_cost: Optional[Decimal] = None
    inspector_id: Optional[uuid.UUID] = None
    inspection_notes: Optional[str] = None
    photos: Optional[List[str]] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    damaged_items: List[DamagedInventoryResponse] = []


class ReturnRequestResponse(BaseResponseSchema):
    id: uuid.UUID
    return_number: str
    order_id: uuid.UUID
    order_item_id: uuid.UUID
    user_id: uuid.UUID
    policy_id: Optional[uuid.UUID] = None
    reason_code: str
    reason_description: Optional[str] = None
    return_type: str
    photos: Optional[List[str]] = None
    customer_notes: Optional[str] = None
    status: str
    requested_amount: Decimal
    approved_amount: Optional[Decimal] = None
    restocking_fee: Decimal
    refund_amount: Optional[Decimal] = None
    admin_notes: Optional[str] = None
    processed_by: Optional[uuid.UUID] = None
    processed_at: Optional[datetime] = None
    return_deadline: Optional[datetime] = None
    tracking_number: Optional[str] = None
    courier: Optional[str] = None
    received_date: Optional[datetime] = None
    refund_method: Optional[str] = None
    refund_status: Optional[str] = None
    refund_reference: Optional[str] = None
    refund_notes: Optional[str] = None
    refund_attempts: int
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    quality_checked_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    quality_check: Optional[QualityCheckResponse] = None


class ReturnListResponse(PaginatedResponse):
    items: List[ReturnRequestResponse]
