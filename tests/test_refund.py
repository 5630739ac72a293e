import asyncio
from decimal import Decimal

import pytest

from backoffice.core.exceptions import (
    ConflictError,
    InvalidTransitionError,
    PaymentGatewayError,
    PermissionDeniedError,
    ValidationFailedError,
)
from backoffice.models import Order
from backoffice.models.return_request import RefundStatus, ReturnRequest, ReturnStatus
from backoffice.schemas.return_request import QualityCheckComplete, ReturnRequestCreate
from backoffice.services.notification_service import NotificationType
from backoffice.services.refund_service import net_refund_amount

from tests.conftest import Backoffice, reload


async def inspected_return(backoffice, seeder, customer, staff, quantity=2, refund_method="ORIGINAL_PAYMENT", **policy):
    policy.setdefault("name", "Global")
    await seeder.policy(**policy)
    shirt = await seeder.product(price="10000.00", stock=10)
    order = await backoffice.deliver(await backoffice.place(customer, (shirt, quantity)), staff)
    return_request = await backoffice.returns.create_return_request(
        order.id,
        order.items[0].id,
        customer,
        ReturnRequestCreate(reason_code="DEFECTIVE", refund_method=refund_method),
    )
    await backoffice.returns.process_return(return_request.id, True, staff)
    await backoffice.returns.mark_item_received(return_request.id, staff)
    await backoffice.quality.complete_quality_check(
        return_request.id,
        QualityCheckComplete(overall_condition="GOOD", sellable_quantity=quantity, disposition="RESTOCK"),
        staff,
    )
    return order, return_request


class TestSettleRefund:
    async def test_refund_through_gateway(self, backoffice, seeder, customer, staff, gateway, notifier):
        order, return_request = await inspected_return(
            backoffice, seeder, customer, staff, restocking_fee_percentage=Decimal("10")
        )
        expected_key = f"refund-{return_request.return_number}"

        result = await backoffice.refunds.settle_refund(return_request.id, staff)

        assert result.status == ReturnStatus.COMPLETED.value
        assert result.refund_status == RefundStatus.COMPLETED.value
        assert result.approved_amount == Decimal("20000.00")
        assert result.refund_amount == Decimal("18000.00")
        assert result.refund_key == expected_key
        assert result.refund_reference == f"rf-{expected_key}"
        assert result.refund_attempts == 1
        assert result.completed_at is not None

        [call] = gateway.refund_calls
        assert call["payment_reference"] == f"txn-{order.order_number}"
        assert call["amount"] == Decimal("18000.00")
        assert call["refund_key"] == expected_key
        assert call["reason"] == "DEFECTIVE"

        order = await reload(backoffice.session, Order, order.id)
        assert order.total_returned_amount == Decimal("18000.00")
        assert not order.has_active_returns
        assert notifier.templates()[-2:] == [
            NotificationType.RETURN_REFUND_PROCESSING,
            NotificationType.RETURN_REFUNDED,
        ]

    async def test_adjusted_amount(self, backoffice, seeder, customer, staff, gateway):
        _, return_request = await inspected_return(
            backoffice, seeder, customer, staff, restocking_fee_percentage=Decimal("10")
        )

        result = await backoffice.refunds.settle_refund(return_request.id, staff, amount=Decimal("15000"))

        assert result.approved_amount == Decimal("15000.00")
        assert result.refund_amount == Decimal("13000.00")

    async def test_amount_above_requested(self, backoffice, seeder, customer, staff, gateway):
        _, return_request = await inspected_return(backoffice, seeder, customer, staff)
        return_id = return_request.id

        with pytest.raises(ValidationFailedError):
            await backoffice.refunds.settle_refund(return_id, staff, amount=Decimal("20000.01"))

        return_request = await reload(backoffice.session, ReturnRequest, return_id)
        assert return_request.status == ReturnStatus.QUALITY_CHECK.value
        assert gateway.refund_calls == []

    async def test_failed_refund_is_retried_with_same_key(self, backoffice, seeder, customer, staff, gateway, notifier):
        order, return_request = await inspected_return(backoffice, seeder, customer, staff)
        return_id = return_request.id
        gateway.fail_next(message="Gateway timeout")

        with pytest.raises(PaymentGatewayError) as exc_info:
            await backoffice.refunds.settle_refund(return_id, staff)

        assert exc_info.value.details["retryable"] is True
        failed = await reload(backoffice.session, ReturnRequest, return_id)
        assert failed.status == ReturnStatus.PROCESSING.value
        assert failed.refund_status == RefundStatus.FAILED.value
        assert failed.refund_notes == "Gateway timeout"
        assert NotificationType.RETURN_REFUND_FAILED in notifier.templates()
        assert (await reload(backoffice.session, Order, order.id)).total_returned_amount == Decimal("0")

        result = await backoffice.refunds.settle_refund(return_id, staff)

        assert result.status == ReturnStatus.COMPLETED.value
        assert result.refund_attempts == 2
        keys = [call["refund_key"] for call in gateway.refund_calls]
        assert len(keys) == 2
        assert keys[0] == keys[1] == result.refund_key
        assert list(gateway.applied.values()) == [Decimal("20000.00")]
        assert notifier.templates().count(NotificationType.RETURN_REFUND_PROCESSING) == 1

    async def test_retry_cannot_change_terms(self, backoffice, seeder, customer, staff, gateway):
        _, return_request = await inspected_return(backoffice, seeder, customer, staff)
        return_id = return_request.id
        gateway.fail_next()
        with pytest.raises(PaymentGatewayError):
            await backoffice.refunds.settle_refund(return_id, staff)

        with pytest.raises(ConflictError):
            await backoffice.refunds.settle_refund(return_id, staff, amount=Decimal("100"))
        with pytest.raises(ConflictError):
            await backoffice.refunds.settle_refund(return_id, staff, refund_method="STORE_CREDIT")

    async def test_completed_refund_is_not_repeated(self, backoffice, seeder, customer, staff, gateway):
        order, return_request = await inspected_return(backoffice, seeder, customer, staff)
        first = await backoffice.refunds.settle_refund(return_request.id, staff)

        again = await backoffice.refunds.settle_refund(return_request.id, staff)

        assert again.id == first.id
        assert again.status == ReturnStatus.COMPLETED.value
        assert again.refund_attempts == 1
        assert len(gateway.refund_calls) == 1
        order = await reload(backoffice.session, Order, order.id)
        assert order.total_returned_amount == Decimal("20000.00")

    async def test_store_credit_settles_locally(self, backoffice, seeder, customer, staff, gateway):
        _, return_request = await inspected_return(
            backoffice, seeder, customer, staff, refund_method="STORE_CREDIT"
        )

        result = await backoffice.refunds.settle_refund(return_request.id, staff)

        assert result.status == ReturnStatus.COMPLETED.value
        assert result.refund_reference == f"STORE_CREDIT-{return_request.return_number}"
        assert gateway.refund_calls == []

    async def test_requires_inspection(self, backoffice, seeder, customer, staff):
        await seeder.policy(name="Global")
        shirt = await seeder.product()
        order = await backoffice.deliver(await backoffice.place(customer, (shirt, 1)), staff)
        return_request = await backoffice.returns.create_return_request(
            order.id, order.items[0].id, customer, ReturnRequestCreate(reason_code="DEFECTIVE")
        )

        with pytest.raises(InvalidTransitionError):
            await backoffice.refunds.settle_refund(return_request.id, staff)

    async def test_staff_only(self, backoffice, seeder, customer, staff):
        _, return_request = await inspected_return(backoffice, seeder, customer, staff)

        with pytest.raises(PermissionDeniedError):
            await backoffice.refunds.settle_refund(return_request.id, customer)


def test_net_refund_amount():
    assert net_refund_amount(Decimal("20000"), Decimal("2000")) == Decimal("18000.00")
    assert net_refund_amount(Decimal("100"), Decimal("250")) == Decimal("0.00")


class TestConcurrentSettlement:
    async def test_refunds_on_sibling_lines_both_count(
        self, backoffice, seeder, session_factory, customer, staff, clock, notifier, gateway
    ):
        await seeder.policy(name="Global")
        shirt = await seeder.product(price="10000.00", stock=5)
        hat = await seeder.product(price="5000.00", stock=5)
        order = await backoffice.deliver(await backoffice.place(customer, (shirt, 1), (hat, 1)), staff)
        order_id = order.id
        return_ids = []
        for item in order.items:
            return_request = await backoffice.returns.create_return_request(
                order_id, item.id, customer, ReturnRequestCreate(reason_code="DEFECTIVE")
            )
            await backoffice.returns.process_return(return_request.id, True, staff)
            await backoffice.returns.mark_item_received(return_request.id, staff)
            await backoffice.quality.complete_quality_check(
                return_request.id,
                QualityCheckComplete(overall_condition="GOOD", sellable_quantity=1, disposition="RESTOCK"),
                staff,
            )
            return_ids.append(return_request.id)

        async def settle(return_id):
            async with session_factory() as session:
                service = Backoffice(session, clock, notifier, gateway).refunds
                return await service.settle_refund(return_id, staff)

        results = await asyncio.gather(*(settle(return_id) for return_id in return_ids))

        assert [result.status for result in results] == [ReturnStatus.COMPLETED.value] * 2
        order = await reload(backoffice.session, Order, order_id)
        assert order.total_returned_amount == Decimal("15000.00")
        assert order.has_active_returns is False
