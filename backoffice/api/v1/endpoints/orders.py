"""
Order API Endpoints

Placement, lookup and status changes. Customers act on their own orders;
staff drive fulfilment.
"""
import logging
import uuid
from typing import List, Optional

from fastapi import APIRouter, Header, Query, status

from backoffice.api.deps import DB, CurrentActor, Notifier
from backoffice.models.order import OrderStatus
from backoffice.schemas.base import page_count
from backoffice.schemas.order import (
    OrderCreate,
    OrderListResponse,
    OrderResponse,
    OrderStatusHistoryResponse,
    OrderStatusUpdate,
)
from backoffice.services.order_service import OrderService


logger = logging.getLogger(__name__)
router = APIRouter()


@router.post(
    "",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Place order",
)
async def place_order(
    data: OrderCreate,
    db: DB,
    actor: CurrentActor,
    notifier: Notifier,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key", max_length=100),
):
    """
    Reserve stock for every line and create a PENDING order.

    Sending the same ``Idempotency-Key`` again returns the original order.
    """
    service = OrderService(db, notifier=notifier)
    return await service.place_order(actor, data, idempotency_key=idempotency_key)


@router.get("", response_model=OrderListResponse, summary="List orders")
async def list_orders(
    db: DB,
    actor: CurrentActor,
    status_filter: Optional[OrderStatus] = Query(None, alias="status"),
    customer_id: Optional[uuid.UUID] = Query(None),
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100),
):
    service = OrderService(db)
    items, total = await service.list_orders(actor, status_filter, customer_id, page, size)
    return OrderListResponse(
        items=[OrderResponse.model_validate(order) for order in items],
        total=total,
        page=page,
        size=size,
        pages=page_count(total, size),
    )


@router.get("/{order_id}", response_model=OrderResponse, summary="Get order")
async def get_order(order_id: uuid.UUID, db: DB, actor: CurrentActor):
    return await OrderService(db).get_order(order_id, actor)


@router.get(
    "/{order_id}/history",
    response_model=List[OrderStatusHistoryResponse],
    summary="Order status history",
)
async def get_order_history(order_id: uuid.UUID, db: DB, actor: CurrentActor):
    return await OrderService(db).get_status_history(order_id, actor)


@router.put("/{order_id}/status", response_model=OrderResponse, summary="Change order status")
async def update_order_status(
    order_id: uuid.UUID,
    data: OrderStatusUpdate,
    db: DB,
    actor: CurrentActor,
    notifier: Notifier,
):
    """
    Move an order through its lifecycle.

    Customers may only cancel their own orders. Cancelling restores the
    reserved stock; delivering opens the return windows.
    """
    service = OrderService(db, notifier=notifier)
    return await service.transition_status(order_id, data.status, actor, data.notes)
