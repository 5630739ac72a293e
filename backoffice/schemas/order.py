import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from backoffice.core.enum_utils import create_uppercase_validator
from backoffice.models.order import OrderStatus
from backoffice.schemas.base import (
    BaseCreateSchema,
    BaseResponseSchema,
    PaginatedResponse,
)


# ==================== ORDER ITEM SCHEMAS ====================

class OrderItemCreate(BaseModel):
    """Cart line. Price is always taken from the catalog, never from the client."""
    product_id: uuid.UUID
    variation_id: Optional[uuid.UUID] = None
    quantity: int = Field(..., ge=1, le=10000)


class OrderItemResponse(BaseResponseSchema):
    id: uuid.UUID
    product_id: uuid.UUID
    variation_id: Optional[uuid.UUID] = None
    product_name: str
    product_sku: str
    quantity: int
    unit_price: Decimal
    total_amount: Decimal
    return_window_days: Optional[int] = None
    return_window_expires: Optional[datetime] = None
    created_at: datetime


# ==================== ORDER SCHEMAS ====================

class ShippingAddress(BaseModel):
    """Delivery destination snapshot stored on the order."""
    recipient_name: str = Field(..., min_length=1, max_length=255)
    phone: str = Field(..., min_length=5, max_length=30)
    address_line1: str = Field(..., min_length=1, max_length=500)
    address_line2: Optional[str] = Field(None, max_length=500)
    city: str = Field(..., min_length=1, max_length=100)
    state: Optional[str] = Field(None, max_length=100)
    postal_code: str = Field(..., min_length=3, max_length=20)
    country: str = Field("ID", min_length=2, max_length=2)


class OrderCreate(BaseCreateSchema):
    """Order placement request."""
    items: List[OrderItemCreate] = Field(..., min_length=1)
    shipping_address: ShippingAddress
    shipping_amount: Decimal = Field(Decimal("0"), ge=0)
    discount_amount: Decimal = Field(Decimal("0"), ge=0)
    notes: Optional[str] = Field(None, max_length=2000)
    # Staff placing an order on behalf of a customer
    customer_id: Optional[uuid.UUID] = None
    idempotency_key: Optional[str] = Field(None, min_length=8, max_length=100)


class OrderStatusUpdate(BaseCreateSchema):
    status: OrderStatus
    notes: Optional[str] = Field(None, max_length=2000)

    _normalize_status = create_uppercase_validator("status")


class OrderStatusHistoryResponse(BaseResponseSchema):
    id: uuid.UUID
    from_status: Optional[str] = None
    to_status: str
    changed_by: Optional[uuid.UUID] = None
    changed_by_role: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime


class OrderResponse(BaseResponseSchema):
    id: uuid.UUID
    order_number: str
    customer_id: uuid.UUID
    status: str
    subtotal: Decimal
    shipping_amount: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    shipping_address: dict
    payment_reference: Optional[str] = None
    payment_type: Optional[str] = None
    payment_info: Optional[dict] = None
    paid_at: Optional[datetime] = None
    delivered_date: Optional[datetime] = None
    return_window_expires: Optional[datetime] = None
    is_returnable: bool
    has_active_returns: bool
    total_returned_amount: Decimal
    notes: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    items: List[OrderItemResponse] = []


class OrderListResponse(PaginatedResponse):
    """Paginated order list."""
    items: List[OrderResponse]
