"""
Payment API Endpoints

Midtrans HTTP notifications and manual status sync.
"""
import logging
from typing import Any, Dict

from fastapi import APIRouter, Body, HTTPException, status
from pydantic import ValidationError

from backoffice.api.deps import DB, Gateway, Notifier, StaffActor
from backoffice.config import settings
from backoffice.core.exceptions import ValidationFailedError
from backoffice.schemas.payment import PaymentSyncResponse, decode_notification
from backoffice.services.order_service import OrderService
from backoffice.services.payment_gateway import verify_signature


logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/notification", summary="Payment gateway notification")
async def payment_notification(
    db: DB,
    notifier: Notifier,
    payload: Dict[str, Any] = Body(...),
):
    """
    Receive a Midtrans notification.

    Only notifications signed with the configured server key are applied.
    Re-delivered notifications are acknowledged without changing the order again.
    """
    try:
        notification = decode_notification(payload)
    except ValidationError as e:
        raise ValidationFailedError(
            "Malformed payment notification",
            details={"errors": [f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in e.errors()]},
        )

    if not settings.MIDTRANS_SERVER_KEY:
        logger.error(f"Payment notification for {notification.order_id} refused: MIDTRANS_SERVER_KEY is not set")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment notifications are not configured",
        )

    if not verify_signature(
        notification.order_id,
        notification.status_code or "",
        notification.gross_amount or "",
        notification.signature_key,
    ):
        logger.warning(f"Rejected payment notification with bad signature for {notification.order_id}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid notification signature",
        )

    service = OrderService(db, notifier=notifier)
    order, changed = await service.apply_payment_notification(notification.normalize())
    return {
        "status": "ok",
        "order_number": order.order_number,
        "order_status": order.status,
        "changed": changed,
    }


@router.post(
    "/{order_number}/sync",
    response_model=PaymentSyncResponse,
    summary="Sync payment status from gateway",
)
async def sync_payment(
    order_number: str,
    db: DB,
    actor: StaffActor,
    gateway: Gateway,
    notifier: Notifier,
):
    """Query the gateway for the transaction and apply it (staff only)."""
    service = OrderService(db, notifier=notifier)
    order, notification, changed = await service.sync_payment_status(order_number, gateway)
    logger.info(f"Payment sync for {order_number} by {actor.id}: {notification.transaction_status}")
    return PaymentSyncResponse(
        order_number=order.order_number,
        transaction_status=notification.transaction_status,
        fraud_status=notification.fraud_status,
        order_status=order.status,
        changed=changed,
    )
