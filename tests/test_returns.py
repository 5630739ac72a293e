import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select

from backoffice.core.exceptions import (
    DuplicateActiveReturnError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ReturnNotEligibleError,
    ValidationFailedError,
)
from backoffice.core.permissions import Actor
from backoffice.models import Order
from backoffice.models.return_request import ReturnRequest, ReturnStatus
from backoffice.schemas.return_request import ReturnRequestCreate
from backoffice.services import return_state_machine
from backoffice.services.notification_service import NotificationType
from backoffice.services.returns_service import IneligibilityReason, restocking_fee_for

from tests.conftest import Backoffice, reload


def defective(**kwargs) -> ReturnRequestCreate:
    return ReturnRequestCreate(reason_code="DEFECTIVE", reason_description="Seam came apart", **kwargs)


async def delivered_order(backoffice, seeder, customer, staff, quantity=1, price="10000.00", **policy):
    policy.setdefault("name", "Global")
    policy.setdefault("return_window_days", 7)
    await seeder.policy(**policy)
    shirt = await seeder.product(price=price, stock=10)
    order = await backoffice.place(customer, (shirt, quantity))
    return await backoffice.deliver(order, staff)


async def fresh_order(session, order_id) -> Order:
    result = await session.execute(
        select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
    )
    order = result.scalar_one()
    await session.commit()
    return order


class TestEligibility:
    async def test_eligible_line(self, backoffice, seeder, customer, staff):
        order = await delivered_order(backoffice, seeder, customer, staff, restocking_fee_percentage=Decimal("10"))
        item = order.items[0]

        result = await backoffice.returns.check_eligibility(order.id, item.id, customer, "DEFECTIVE")

        assert result.eligible
        assert result.requested_amount == Decimal("10000.00")
        assert result.restocking_fee == Decimal("1000.00")

    async def test_order_not_delivered(self, backoffice, seeder, customer):
        await seeder.policy(name="Global")
        shirt = await seeder.product()
        order = await backoffice.place(customer, (shirt, 1))

        result = await backoffice.returns.check_eligibility(order.id, order.items[0].id, customer)

        assert not result.eligible
        assert result.reason == IneligibilityReason.ORDER_NOT_DELIVERED

    async def test_window_boundary(self, backoffice, seeder, customer, staff, clock):
        order = await delivered_order(backoffice, seeder, customer, staff, return_window_days=7)
        item = order.items[0]

        clock.advance(days=7)
        on_last_moment = await backoffice.returns.check_eligibility(order.id, item.id, customer)
        clock.advance(days=1)
        day_eight = await backoffice.returns.check_eligibility(order.id, item.id, customer)

        assert on_last_moment.eligible
        assert day_eight.reason == IneligibilityReason.WINDOW_EXPIRED
        assert day_eight.message == "Return window expired"

    async def test_expired_window_blocks_creation(self, backoffice, seeder, customer, staff, clock):
        order = await delivered_order(backoffice, seeder, customer, staff, return_window_days=7)
        order_id, item_id = order.id, order.items[0].id
        clock.advance(days=8)

        with pytest.raises(ReturnNotEligibleError) as exc_info:
            await backoffice.returns.create_return_request(order_id, item_id, customer, defective())

        assert exc_info.value.reason == "WINDOW_EXPIRED"
        assert exc_info.value.details["reason"] == "WINDOW_EXPIRED"

    async def test_reason_not_allowed(self, backoffice, seeder, customer, staff):
        order = await delivered_order(
            backoffice, seeder, customer, staff, allowed_return_reasons=["DEFECTIVE", "WRONG_ITEM"]
        )
        item = order.items[0]

        allowed = await backoffice.returns.check_eligibility(order.id, item.id, customer, "DEFECTIVE")
        refused = await backoffice.returns.check_eligibility(order.id, item.id, customer, "CHANGED_MIND")

        assert allowed.eligible
        assert refused.reason == IneligibilityReason.REASON_NOT_ALLOWED

    async def test_product_policy_not_returnable(self, backoffice, seeder, customer, staff):
        await seeder.policy(name="Global", return_window_days=7)
        clearance = await seeder.product(name="Clearance")
        shirt = await seeder.product(name="Shirt")
        await seeder.policy(name="Final sale", product_id=clearance.id, is_returnable=False)
        order = await backoffice.place(customer, (clearance, 1), (shirt, 1))
        order = await backoffice.deliver(order, staff)
        lines = {item.product_id: item for item in order.items}

        blocked = await backoffice.returns.check_eligibility(order.id, lines[clearance.id].id, customer)
        open_line = await backoffice.returns.check_eligibility(order.id, lines[shirt.id].id, customer)

        assert blocked.reason == IneligibilityReason.PRODUCT_NOT_RETURNABLE
        assert open_line.eligible

    async def test_unknown_item_and_foreign_order(self, backoffice, seeder, customer, other_customer, staff):
        order = await delivered_order(backoffice, seeder, customer, staff)
        item = order.items[0]

        with pytest.raises(NotFoundError):
            await backoffice.returns.check_eligibility(order.id, order.id, customer)
        with pytest.raises(NotFoundError):
            await backoffice.returns.check_eligibility(order.id, item.id, other_customer)


class TestCreateReturn:
    async def test_creates_pending_request(self, backoffice, seeder, customer, staff, clock, notifier):
        order = await delivered_order(
            backoffice, seeder, customer, staff, quantity=2, restocking_fee_percentage=Decimal("10")
        )
        item = order.items[0]

        return_request = await backoffice.returns.create_return_request(order.id, item.id, customer, defective())

        assert return_request.status == ReturnStatus.PENDING.value
        assert return_request.return_number.startswith("RET-")
        assert return_request.user_id == customer.id
        assert return_request.reason_code == "DEFECTIVE"
        assert return_request.requested_amount == Decimal("20000.00")
        assert return_request.restocking_fee == Decimal("2000.00")
        assert return_request.return_deadline > clock()
        assert return_request.quality_check is None

        order = await fresh_order(backoffice.session, order.id)
        assert order.has_active_returns
        assert NotificationType.RETURN_REQUESTED in notifier.templates()

    async def test_one_active_return_per_line(self, backoffice, seeder, customer, staff):
        order = await delivered_order(backoffice, seeder, customer, staff)
        order_id, item_id = order.id, order.items[0].id
        await backoffice.returns.create_return_request(order_id, item_id, customer, defective())

        with pytest.raises(DuplicateActiveReturnError) as exc_info:
            await backoffice.returns.create_return_request(order_id, item_id, customer, defective())

        assert exc_info.value.reason == "ACTIVE_RETURN_EXISTS"
        result = await backoffice.returns.check_eligibility(order_id, item_id, customer)
        assert result.reason == IneligibilityReason.ACTIVE_RETURN_EXISTS

    async def test_rejected_return_frees_the_line(self, backoffice, seeder, customer, staff):
        order = await delivered_order(backoffice, seeder, customer, staff)
        order_id, item_id = order.id, order.items[0].id
        first = await backoffice.returns.create_return_request(order_id, item_id, customer, defective())
        await backoffice.returns.process_return(first.id, False, staff, admin_notes="No defect visible")

        second = await backoffice.returns.create_return_request(order_id, item_id, customer, defective())

        assert second.id != first.id
        assert second.status == ReturnStatus.PENDING.value

    async def test_auto_approval(self, backoffice, seeder, customer, staff, clock, notifier):
        order = await delivered_order(backoffice, seeder, customer, staff, requires_approval=False)

        return_request = await backoffice.returns.create_return_request(
            order.id, order.items[0].id, customer, defective()
        )

        assert return_request.status == ReturnStatus.APPROVED.value
        assert return_request.approved_at == clock()
        assert return_request.approved_amount == return_request.requested_amount
        assert return_request.processed_by is None
        assert return_request.quality_check is not None
        assert return_request.quality_check.quantity_expected == 1
        assert notifier.templates()[-2:] == [NotificationType.RETURN_REQUESTED, NotificationType.RETURN_APPROVED]

    async def test_refund_method_must_be_accepted(self, backoffice, seeder, customer, staff):
        order = await delivered_order(backoffice, seeder, customer, staff, refund_methods=["STORE_CREDIT"])

        with pytest.raises(ValidationFailedError):
            await backoffice.returns.create_return_request(
                order.id, order.items[0].id, customer, defective(refund_method="original_payment")
            )

    async def test_staff_can_open_return_for_customer(self, backoffice, seeder, customer, staff):
        order = await delivered_order(backoffice, seeder, customer, staff)

        return_request = await backoffice.returns.create_return_request(
            order.id, order.items[0].id, staff, defective()
        )

        assert return_request.user_id == customer.id

    async def test_system_actor_cannot_request(self, backoffice, seeder, customer, staff):
        order = await delivered_order(backoffice, seeder, customer, staff)

        with pytest.raises(PermissionDeniedError):
            await backoffice.returns.create_return_request(
                order.id, order.items[0].id, Actor.system(), defective()
            )


class TestStaffDecisions:
    async def test_approve_creates_quality_check(self, backoffice, seeder, customer, staff, notifier):
        order = await delivered_order(backoffice, seeder, customer, staff, quantity=3)
        return_request = await backoffice.returns.create_return_request(
            order.id, order.items[0].id, customer, defective()
        )

        approved = await backoffice.returns.process_return(
            return_request.id, True, staff, admin_notes="OK", approved_amount=Decimal("25000")
        )

        assert approved.status == ReturnStatus.APPROVED.value
        assert approved.approved_amount == Decimal("25000")
        assert approved.processed_by == staff.id
        assert approved.quality_check.quantity_expected == 3
        assert NotificationType.RETURN_APPROVED in notifier.templates()

    async def test_approved_amount_capped(self, backoffice, seeder, customer, staff):
        order = await delivered_order(backoffice, seeder, customer, staff)
        return_request = await backoffice.returns.create_return_request(
            order.id, order.items[0].id, customer, defective()
        )
        return_id = return_request.id

        with pytest.raises(ValidationFailedError):
            await backoffice.returns.process_return(return_id, True, staff, approved_amount=Decimal("10000.01"))

        return_request = await reload(backoffice.session, ReturnRequest, return_id)
        assert return_request.status == ReturnStatus.PENDING.value

    async def test_customer_cannot_decide(self, backoffice, seeder, customer, staff):
        order = await delivered_order(backoffice, seeder, customer, staff)
        return_request = await backoffice.returns.create_return_request(
            order.id, order.items[0].id, customer, defective()
        )

        with pytest.raises(PermissionDeniedError):
            await backoffice.returns.process_return(return_request.id, True, customer)

    async def test_reject_clears_active_flag(self, backoffice, seeder, customer, staff):
        order = await delivered_order(backoffice, seeder, customer, staff)
        order_id = order.id
        return_request = await backoffice.returns.create_return_request(
            order_id, order.items[0].id, customer, defective()
        )

        rejected = await backoffice.returns.process_return(return_request.id, False, staff)

        assert rejected.status == ReturnStatus.REJECTED.value
        assert rejected.rejected_at is not None
        assert not (await fresh_order(backoffice.session, order_id)).has_active_returns

    async def test_receive_requires_approval(self, backoffice, seeder, customer, staff):
        order = await delivered_order(backoffice, seeder, customer, staff)
        return_request = await backoffice.returns.create_return_request(
            order.id, order.items[0].id, customer, defective()
        )
        return_id = return_request.id

        with pytest.raises(InvalidTransitionError):
            await backoffice.returns.mark_item_received(return_id, staff)

        await backoffice.returns.process_return(return_id, True, staff)
        received = await backoffice.returns.mark_item_received(
            return_id, staff, tracking_number="JNE123", courier="JNE"
        )
        assert received.status == ReturnStatus.ITEM_RECEIVED.value
        assert received.tracking_number == "JNE123"
        assert received.received_by == staff.id


class TestCancellation:
    async def test_customer_cancels_approved_return(self, backoffice, seeder, customer, staff):
        order = await delivered_order(backoffice, seeder, customer, staff)
        order_id = order.id
        return_request = await backoffice.returns.create_return_request(
            order_id, order.items[0].id, customer, defective()
        )
        await backoffice.returns.process_return(return_request.id, True, staff)

        cancelled = await backoffice.returns.cancel_return(return_request.id, customer)

        assert cancelled.status == ReturnStatus.CANCELLED.value
        assert cancelled.cancelled_at is not None
        assert not (await fresh_order(backoffice.session, order_id)).has_active_returns

    async def test_cannot_cancel_after_receipt(self, backoffice, seeder, customer, staff):
        order = await delivered_order(backoffice, seeder, customer, staff)
        return_request = await backoffice.returns.create_return_request(
            order.id, order.items[0].id, customer, defective()
        )
        return_id = return_request.id
        await backoffice.returns.process_return(return_id, True, staff)
        await backoffice.returns.mark_item_received(return_id, staff)

        with pytest.raises(InvalidTransitionError):
            await backoffice.returns.cancel_return(return_id, customer)

    async def test_only_owner_cancels(self, backoffice, seeder, customer, other_customer, staff):
        order = await delivered_order(backoffice, seeder, customer, staff)
        return_request = await backoffice.returns.create_return_request(
            order.id, order.items[0].id, customer, defective()
        )
        return_id = return_request.id

        with pytest.raises(NotFoundError):
            await backoffice.returns.cancel_return(return_id, other_customer)
        with pytest.raises(PermissionDeniedError):
            await backoffice.returns.cancel_return(return_id, staff)

    async def test_terminal_states_are_final(self, backoffice, seeder, customer, staff):
        order = await delivered_order(backoffice, seeder, customer, staff)
        return_request = await backoffice.returns.create_return_request(
            order.id, order.items[0].id, customer, defective()
        )
        return_id = return_request.id
        await backoffice.returns.cancel_return(return_id, customer)

        with pytest.raises(InvalidTransitionError):
            await backoffice.returns.process_return(return_id, True, staff)
        with pytest.raises(InvalidTransitionError):
            await backoffice.returns.cancel_return(return_id, customer)

    async def test_cancel_alongside_sibling_request_keeps_flag(
        self, backoffice, seeder, session_factory, customer, staff, clock, notifier, gateway
    ):
        await seeder.policy(name="Global", return_window_days=7)
        shirt = await seeder.product(stock=5)
        hat = await seeder.product(price="5000.00", stock=5)
        order = await backoffice.deliver(await backoffice.place(customer, (shirt, 1), (hat, 1)), staff)
        order_id = order.id
        first_item, second_item = order.items[0].id, order.items[1].id
        first = await backoffice.returns.create_return_request(order_id, first_item, customer, defective())
        first_id = first.id

        async def cancel_first():
            async with session_factory() as session:
                service = Backoffice(session, clock, notifier, gateway).returns
                return await service.cancel_return(first_id, customer)

        async def request_second():
            async with session_factory() as session:
                service = Backoffice(session, clock, notifier, gateway).returns
                return await service.create_return_request(order_id, second_item, customer, defective())

        cancelled, created = await asyncio.gather(cancel_first(), request_second())

        assert cancelled.status == ReturnStatus.CANCELLED.value
        assert created.status == ReturnStatus.PENDING.value
        assert (await fresh_order(backoffice.session, order_id)).has_active_returns


class TestListing:
    async def test_customer_list_is_scoped(self, backoffice, seeder, customer, other_customer, staff):
        await seeder.policy(name="Global")
        shirt = await seeder.product(stock=10)
        mine = await backoffice.deliver(await backoffice.place(customer, (shirt, 1)), staff)
        theirs = await backoffice.deliver(await backoffice.place(other_customer, (shirt, 1)), staff)
        await backoffice.returns.create_return_request(mine.id, mine.items[0].id, customer, defective())
        await backoffice.returns.create_return_request(theirs.id, theirs.items[0].id, other_customer, defective())

        own, total = await backoffice.returns.list_returns(customer)
        assert total == 1
        assert own[0].user_id == customer.id

        spoofed, total = await backoffice.returns.list_returns(customer, user_id=other_customer.id)
        assert total == 1
        assert spoofed[0].user_id == customer.id

        everything, total = await backoffice.returns.list_returns(staff)
        assert total == 2

        pending, total = await backoffice.returns.list_returns(staff, status="PENDING", order_id=theirs.id)
        assert total == 1


class TestReturnStateMachine:
    def test_no_state_is_revisited(self):
        forward = ["PENDING", "APPROVED", "ITEM_RECEIVED", "QUALITY_CHECK", "PROCESSING", "COMPLETED"]
        for index, status in enumerate(forward):
            for earlier in forward[:index]:
                assert not return_state_machine.can_transition(status, earlier)

    def test_processing_may_be_retried(self):
        assert return_state_machine.can_transition("PROCESSING", "PROCESSING")

    def test_active_statuses(self):
        assert set(return_state_machine.ACTIVE_RETURN_STATUSES) == {
            "PENDING", "APPROVED", "ITEM_RECEIVED", "QUALITY_CHECK", "PROCESSING"
        }


def test_restocking_fee_rounding():
    assert restocking_fee_for(Decimal("33333.33"), Decimal("15")) == Decimal("5000.00")
    assert restocking_fee_for(Decimal("100.00"), Decimal("0")) == Decimal("0.00")

