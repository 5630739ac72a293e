"""
Return API Endpoints

Customer-facing: eligibility, request, my returns, cancel.
Staff: approve/reject, receive, quality check, refund.
"""
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Query, status

from backoffice.api.deps import DB, CurrentActor, Gateway, Notifier, StaffActor
from backoffice.models.return_request import ReturnReason, ReturnStatus
from backoffice.schemas.base import page_count
from backoffice.schemas.return_request import (
    EligibilityResponse,
    QualityCheckComplete,
    RefundRequest,
    ReturnListResponse,
    ReturnProcessRequest,
    ReturnReceiveRequest,
    ReturnRequestCreate,
    ReturnRequestResponse,
)
from backoffice.services.quality_check_service import QualityCheckService
from backoffice.services.refund_service import RefundService
from backoffice.services.returns_service import Eligibility, ReturnsService


logger = logging.getLogger(__name__)
router = APIRouter()


def eligibility_response(result: Eligibility) -> EligibilityResponse:
    policy = result.policy
    return EligibilityResponse(
        eligible=result.eligible,
        reason=result.reason.value if result.reason else None,
        message=result.message,
        order_id=result.order.id,
        order_item_id=result.item.id,
        policy_id=policy.id if policy else None,
        return_window_expires=result.item.return_window_expires,
        requested_amount=result.requested_amount if result.eligible else None,
        restocking_fee=result.restocking_fee if result.eligible else None,
        requires_approval=policy.requires_approval if policy else None,
        allowed_return_reasons=policy.allowed_return_reasons if policy else None,
    )


def list_response(items, total: int, page: int, size: int) -> ReturnListResponse:
    return ReturnListResponse(
        items=[ReturnRequestResponse.model_validate(item) for item in items],
        total=total,
        page=page,
        size=size,
        pages=page_count(total, size),
    )


# ==================== Customer-Facing Endpoints ====================

@router.get(
    "/eligibility/{order_id}/{item_id}",
    response_model=EligibilityResponse,
    summary="Check return eligibility",
)
async def check_eligibility(
    order_id: uuid.UUID,
    item_id: uuid.UUID,
    db: DB,
    actor: CurrentActor,
    reason_code: Optional[ReturnReason] = Query(None),
):
    service = ReturnsService(db)
    result = await service.check_eligibility(order_id, item_id, actor, reason_code)
    return eligibility_response(result)


@router.post(
    "/request/{order_id}/{item_id}",
    response_model=ReturnRequestResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Request a return",
)
async def request_return(
    order_id: uuid.UUID,
    item_id: uuid.UUID,
    data: ReturnRequestCreate,
    db: DB,
    actor: CurrentActor,
    notifier: Notifier,
):
    """
    Open a return for one order line.

    Fails with 409 and a ``reason`` when the line is not eligible.
    """
    service = ReturnsService(db, notifier=notifier)
    return await service.create_return_request(order_id, item_id, actor, data)


@router.get("/my-returns", response_model=ReturnListResponse, summary="My returns")
async def my_returns(
    db: DB,
    actor: CurrentActor,
    status_filter: Optional[ReturnStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100),
):
    items, total = await ReturnsService(db).list_returns(
        actor, status_filter, page=page, size=size, user_id=actor.id
    )
    return list_response(items, total, page, size)


@router.put("/{return_id}/cancel", response_model=ReturnRequestResponse, summary="Cancel return")
async def cancel_return(return_id: uuid.UUID, db: DB, actor: CurrentActor, notifier: Notifier):
    service = ReturnsService(db, notifier=notifier)
    return await service.cancel_return(return_id, actor)


# ==================== Staff Endpoints ====================

@router.get("", response_model=ReturnListResponse, summary="List returns")
async def list_returns(
    db: DB,
    actor: StaffActor,
    status_filter: Optional[ReturnStatus] = Query(None, alias="status"),
    order_id: Optional[uuid.UUID] = Query(None),
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100),
):
    items, total = await ReturnsService(db).list_returns(actor, status_filter, order_id, page, size)
    return list_response(items, total, page, size)


@router.get("/{return_id}", response_model=ReturnRequestResponse, summary="Get return")
async def get_return(return_id: uuid.UUID, db: DB, actor: CurrentActor):
    return await ReturnsService(db).get_return(return_id, actor)


@router.post("/{return_id}/process", response_model=ReturnRequestResponse, summary="Approve or reject")
async def process_return(
    return_id: uuid.UUID,
    data: ReturnProcessRequest,
    db: DB,
    actor: StaffActor,
    notifier: Notifier,
):
    service = ReturnsService(db, notifier=notifier)
    return await service.process_return(
        return_id,
        approve=data.action == "approve",
        actor=actor,
        admin_notes=data.admin_notes,
        approved_amount=data.approved_amount,
    )


@router.post("/{return_id}/receive", response_model=ReturnRequestResponse, summary="Mark item received")
async def receive_return(
    return_id: uuid.UUID,
    data: ReturnReceiveRequest,
    db: DB,
    actor: StaffActor,
    notifier: Notifier,
):
    service = ReturnsService(db, notifier=notifier)
    return await service.mark_item_received(
        return_id, actor, data.tracking_number, data.courier, data.notes
    )


@router.post(
    "/{return_id}/quality-check",
    response_model=ReturnRequestResponse,
    summary="Complete quality check",
)
async def complete_quality_check(
    return_id: uuid.UUID,
    data: QualityCheckComplete,
    db: DB,
    actor: StaffActor,
    notifier: Notifier,
):
    service = QualityCheckService(db, notifier=notifier)
    return await service.complete_quality_check(return_id, data, actor)


@router.post("/{return_id}/refund", response_model=ReturnRequestResponse, summary="Settle refund")
async def settle_refund(
    return_id: uuid.UUID,
    data: RefundRequest,
    db: DB,
    actor: StaffActor,
    gateway: Gateway,
    notifier: Notifier,
):
    """
    Refund an inspected return.

    Safe to call again after a gateway failure; the same refund key is reused.
    """
    service = RefundService(db, gateway=gateway, notifier=notifier)
    return await service.settle_refund(
        return_id, actor, amount=data.amount, refund_method=data.refund_method, notes=data.refund_notes
    )
