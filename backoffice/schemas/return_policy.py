import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import Field

from backoffice.core.enum_utils import create_uppercase_validator
from backoffice.models.return_policy import PolicyScope, ReturnShippingPayer
from backoffice.models.return_request import RefundMethod, ReturnReason
from backoffice.schemas.base import (
    BaseCreateSchema,
    BaseResponseSchema,
    BaseUpdateSchema,
    PaginatedResponse,
)


class ReturnPolicyCreate(BaseCreateSchema):
    """Leave product_id and category_id empty for the global default policy."""
    name: str = Field(..., min_length=1, max_length=255)
    product_id: Optional[uuid.UUID] = None
    category_id: Optional[uuid.UUID] = None
    is_returnable: bool = True
    return_window_days: int = Field(7, ge=0, le=365)
    exchange_window_days: Optional[int] = Field(None, ge=0, le=365)
    restocking_fee_percentage: Decimal = Field(Decimal("0"), ge=0, le=100)
    return_shipping_paid_by: ReturnShippingPayer = ReturnShippingPayer.CUSTOMER
    allowed_return_reasons: Optional[List[ReturnReason]] = None
    excluded_return_reasons: Optional[List[ReturnReason]] = None
    refund_methods: Optional[List[RefundMethod]] = None
    requires_approval: bool = True
    quality_check_required: bool = True
    restock_sellable_items: bool = False
    is_active: bool = True
    priority: int = 0
    notes: Optional[str] = None

    _normalize_enums = create_uppercase_validator(
        "return_shipping_paid_by",
        "allowed_return_reasons",
        "excluded_return_reasons",
        "refund_methods",
    )


class ReturnPolicyUpdate(BaseUpdateSchema):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    is_returnable: Optional[bool] = None
    return_window_days: Optional[int] = Field(None, ge=0, le=365)
    exchange_window_days: Optional[int] = Field(None, ge=0, le=365)
    restocking_fee_percentage: Optional[Decimal] = Field(None, ge=0, le=100)
    return_shipping_paid_by: Optional[ReturnShippingPayer] = None
    allowed_return_reasons: Optional[List[ReturnReason]] = None
    excluded_return_reasons: Optional[List[ReturnReason]] = None
    refund_methods: Optional[List[RefundMethod]] = None
    requires_approval: Optional[bool] = None
    quality_check_required: Optional[bool] = None
    restock_sellable_items: Optional[bool] = None
    is_active: Optional[bool] = None
    priority: Optional[int] = None
    notes: Optional[str] = None

    _normalize_enums = create_uppercase_validator(
        "return_shipping_paid_by",
        "allowed_return_reasons",
        "excluded_return_reasons",
        "refund_methods",
    )


class ReturnPolicyResponse(BaseResponseSchema):
    id: uuid.UUID
    name: str
    scope: PolicyScope
    product_id: Optional[uuid.UUID] = None
    category_id: Optional[uuid.UUID] = None
    is_returnable: bool
    return_window_days: int
    exchange_window_days: Optional[int] = None
    restocking_fee_percentage: Decimal
    return_shipping_paid_by: str
    allowed_return_reasons: Optional[List[str]] = None
    excluded_return_reasons: Optional[List[str]] = None
    refund_methods: Optional[List[str]] = None
    requires_approval: bool
    quality_check_required: bool
    restock_sellable_items: bool
    is_active: bool
    priority: int
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class ReturnPolicyListResponse(PaginatedResponse):
    items: List[ReturnPolicyResponse]
