import uuid
from decimal import Decimal

from backoffice.services.notification_service import NotificationService, NotificationType, render


def test_render_fills_template():
    message = render(
        NotificationType.RETURN_REFUNDED,
        {"return_number": "RET-20260115-ABCD1234", "refund_amount": Decimal("18000.00"), "refund_reference": "rf-1"},
    )

    assert message == (
        "Your refund of 18000.00 for return #RET-20260115-ABCD1234 has been completed. "
        "Reference: rf-1"
    )


def test_render_with_missing_variable_returns_raw_template():
    message = render(NotificationType.ORDER_PLACED, {"order_number": "ORD-1"})

    assert "{total_amount}" in message


async def test_notify_without_webhook_only_logs(caplog):
    service = NotificationService(webhook_url="")

    with caplog.at_level("INFO", logger="backoffice.services.notification_service"):
        await service.notify(uuid.uuid4(), NotificationType.RETURN_CANCELLED, {"return_number": "RET-1"})

    assert "[NOTIFICATION] return_cancelled" in caplog.text


async def test_notify_never_raises(caplog):
    service = NotificationService(webhook_url="http://127.0.0.1:9/unreachable", timeout=0.5)

    await service.notify(uuid.uuid4(), NotificationType.ORDER_STATUS_CHANGED, {"order_number": "ORD-1", "status": "PAID"})

    assert "failed" in caplog.text
