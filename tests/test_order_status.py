from datetime import timedelta
import uuid

import pytest

from backoffice.core.exceptions import InvalidTransitionError, NotFoundError, PermissionDeniedError
from backoffice.core.permissions import SYSTEM_ACTOR_ID, Actor, ActorRole
from backoffice.models import Order, OrderStatus
from backoffice.services import order_state_machine
from backoffice.services.notification_service import NotificationType

from tests.conftest import reload


class TestStateMachine:
    def test_happy_path_is_allowed(self):
        path = ["PENDING", "PAID", "PROCESSING", "SHIPPED", "DELIVERED"]
        for current, new in zip(path, path[1:]):
            assert order_state_machine.can_transition(current, new)

    @pytest.mark.parametrize("current,new", [
        ("PENDING", "SHIPPED"),
        ("PAID", "DELIVERED"),
        ("SHIPPED", "CANCELLED"),
        ("DELIVERED", "CANCELLED"),
        ("CANCELLED", "PENDING"),
    ])
    def test_invalid_transitions(self, current, new):
        with pytest.raises(InvalidTransitionError):
            order_state_machine.validate_transition(current, new)

    def test_terminal_states(self):
        assert order_state_machine.is_terminal("DELIVERED")
        assert order_state_machine.is_terminal("CANCELLED")
        assert not order_state_machine.is_terminal("SHIPPED")

    def test_system_actor_limited_to_payment_transitions(self):
        system = Actor.system()
        order_state_machine.validate_actor(system, None, "PAID")
        with pytest.raises(PermissionDeniedError):
            order_state_machine.validate_actor(system, None, "SHIPPED")


class TestTransitions:
    async def test_invalid_transition_leaves_order_unchanged(self, backoffice, seeder, customer, staff):
        shirt = await seeder.product()
        order = await backoffice.place(customer, (shirt, 1))
        order_id = order.id

        with pytest.raises(InvalidTransitionError):
            await backoffice.orders.transition_status(order_id, "SHIPPED", staff)

        order = await reload(backoffice.session, Order, order_id)
        assert order.status == OrderStatus.PENDING.value

    async def test_accepts_enum_member(self, backoffice, seeder, customer, staff):
        shirt = await seeder.product()
        order = await backoffice.place(customer, (shirt, 1))
        await backoffice.pay(order)

        order = await backoffice.orders.transition_status(order.id, OrderStatus.PROCESSING, staff)

        assert order.status == OrderStatus.PROCESSING.value

    async def test_status_change_notifies_customer(self, backoffice, seeder, customer, staff, notifier):
        shirt = await seeder.product()
        order = await backoffice.place(customer, (shirt, 1))

        await backoffice.orders.transition_status(order.id, "CANCELLED", staff)

        [event] = [entry for entry in notifier.sent if entry["template"] == NotificationType.ORDER_STATUS_CHANGED]
        assert event["user_id"] == customer.id
        assert event["context"]["status"] == "CANCELLED"
        assert event["context"]["previous_status"] == "PENDING"

    async def test_history_is_ordered(self, backoffice, seeder, customer, staff, clock):
        shirt = await seeder.product()
        order = await backoffice.place(customer, (shirt, 1))
        clock.advance(minutes=5)
        await backoffice.pay(order)
        for status in ("PROCESSING", "SHIPPED", "DELIVERED"):
            clock.advance(hours=1)
            await backoffice.orders.transition_status(order.id, status, staff)

        history = await backoffice.orders.get_status_history(order.id, customer)

        assert [entry.to_status for entry in history] == [
            "PENDING", "PAID", "PROCESSING", "SHIPPED", "DELIVERED"
        ]
        assert history[1].changed_by_role == "SYSTEM"
        assert history[-1].changed_by == staff.id

    async def test_history_reads_back_gateway_and_numeric_ids(self, backoffice, seeder, clock):
        customer = Actor(id=uuid.UUID("12345678-1234-5678-1234-567812345678"), role=ActorRole.CUSTOMER)
        shirt = await seeder.product()
        order = await backoffice.place(customer, (shirt, 1))
        clock.advance(minutes=5)
        await backoffice.pay(order)

        history = await backoffice.orders.get_status_history(order.id, customer)

        assert history[0].changed_by == customer.id
        assert history[-1].changed_by == SYSTEM_ACTOR_ID


class TestCancellation:
    async def test_cancel_restores_exact_stock_once(self, backoffice, seeder, customer, staff):
        shirt = await seeder.product(stock=10)
        large = await seeder.variation(shirt, stock=4)
        order = await backoffice.place(customer, (shirt, 3), (shirt, large, 2), (shirt, 1))
        shirt_id, large_id = shirt.id, large.id
        assert await seeder.stock(shirt_id) == 6
        assert await seeder.stock(shirt_id, large_id) == 2

        order = await backoffice.orders.transition_status(order.id, "CANCELLED", customer, notes="Changed my mind")
        order_id = order.id

        assert order.status == OrderStatus.CANCELLED.value
        assert order.cancelled_at is not None
        assert await seeder.stock(shirt_id) == 10
        assert await seeder.stock(shirt_id, large_id) == 4

        with pytest.raises(InvalidTransitionError):
            await backoffice.orders.transition_status(order_id, "CANCELLED", staff)

        assert await seeder.stock(shirt_id) == 10
        assert await seeder.stock(shirt_id, large_id) == 4

    async def test_paid_order_can_be_cancelled(self, backoffice, seeder, customer):
        shirt = await seeder.product(stock=5)
        order = await backoffice.place(customer, (shirt, 2))
        await backoffice.pay(order)

        order = await backoffice.orders.transition_status(order.id, "CANCELLED", customer)

        assert order.status == OrderStatus.CANCELLED.value
        assert await seeder.stock(shirt.id) == 5

    async def test_customer_cannot_ship(self, backoffice, seeder, customer):
        shirt = await seeder.product()
        order = await backoffice.place(customer, (shirt, 1))
        await backoffice.pay(order)

        with pytest.raises(PermissionDeniedError):
            await backoffice.orders.transition_status(order.id, "PROCESSING", customer)

    async def test_other_customer_sees_nothing(self, backoffice, seeder, customer, other_customer):
        shirt = await seeder.product()
        order = await backoffice.place(customer, (shirt, 1))
        order_id = order.id

        with pytest.raises(NotFoundError):
            await backoffice.orders.transition_status(order_id, "CANCELLED", other_customer)
        with pytest.raises(NotFoundError):
            await backoffice.orders.get_order(order_id, other_customer)

    async def test_shipped_order_cannot_be_cancelled(self, backoffice, seeder, customer, staff):
        shirt = await seeder.product(stock=3)
        shirt_id = shirt.id
        order = await backoffice.place(customer, (shirt, 1))
        await backoffice.pay(order)
        await backoffice.orders.transition_status(order.id, "PROCESSING", staff)
        await backoffice.orders.transition_status(order.id, "SHIPPED", staff)

        with pytest.raises(InvalidTransitionError):
            await backoffice.orders.transition_status(order.id, "CANCELLED", staff)

        assert await seeder.stock(shirt_id) == 2


class TestDeliveryWindows:
    async def test_each_line_gets_its_own_window(self, backoffice, seeder, customer, staff, clock):
        electronics = await seeder.category("Electronics")
        await seeder.policy(name="Global", return_window_days=7)
        await seeder.policy(name="Electronics", category_id=electronics.id, return_window_days=14)
        phone = await seeder.product(category=electronics, name="Phone")
        shirt = await seeder.product(name="Shirt")

        order = await backoffice.place(customer, (phone, 1), (shirt, 1))
        clock.advance(days=2)
        order = await backoffice.deliver(order, staff)

        delivered_at = clock()
        windows = {item.product_id: item for item in order.items}
        assert windows[phone.id].return_window_days == 14
        assert windows[phone.id].return_window_expires == delivered_at + timedelta(days=14)
        assert windows[shirt.id].return_window_days == 7
        assert windows[shirt.id].return_window_expires == delivered_at + timedelta(days=7)
        assert order.delivered_date == delivered_at
        assert order.return_window_expires == delivered_at + timedelta(days=14)
        assert order.is_returnable

    async def test_window_is_snapshotted_at_placement(self, backoffice, seeder, customer, staff, db_session):
        policy = await seeder.policy(name="Global", return_window_days=7)
        shirt = await seeder.product()
        order = await backoffice.place(customer, (shirt, 1))

        policy.return_window_days = 30
        await db_session.commit()
        order = await backoffice.deliver(order, staff)

        assert order.items[0].return_window_days == 7

    async def test_non_returnable_product(self, backoffice, seeder, customer, staff):
        await seeder.policy(name="Global", return_window_days=7)
        clearance = await seeder.product(name="Clearance")
        await seeder.policy(name="Final sale", product_id=clearance.id, is_returnable=False)

        order = await backoffice.place(customer, (clearance, 1))
        order = await backoffice.deliver(order, staff)

        [item] = order.items
        assert item.return_window_days is None
        assert item.return_window_expires is None
        assert order.return_window_expires is None
        assert not order.is_returnable

    async def test_no_policy_means_not_returnable(self, backoffice, seeder, customer, staff):
        shirt = await seeder.product()

        order = await backoffice.place(customer, (shirt, 1))
        order = await backoffice.deliver(order, staff)

        assert order.items[0].return_window_expires is None
        assert not order.is_returnable


class TestListing:
    async def test_customers_only_see_their_orders(self, backoffice, seeder, customer, other_customer, staff):
        shirt = await seeder.product(stock=10)
        await backoffice.place(customer, (shirt, 1))
        await backoffice.place(customer, (shirt, 1))
        await backoffice.place(other_customer, (shirt, 1))

        mine, total = await backoffice.orders.list_orders(customer)
        assert total == 2
        assert all(order.customer_id == customer.id for order in mine)

        everything, total = await backoffice.orders.list_orders(staff)
        assert total == 3

        filtered, total = await backoffice.orders.list_orders(staff, customer_id=other_customer.id)
        assert total == 1
        assert filtered[0].customer_id == other_customer.id

    async def test_status_filter(self, backoffice, seeder, customer, staff):
        shirt = await seeder.product(stock=10)
        first = await backoffice.place(customer, (shirt, 1))
        await backoffice.place(customer, (shirt, 1))
        await backoffice.orders.transition_status(first.id, "CANCELLED", staff)

        cancelled, total = await backoffice.orders.list_orders(staff, status="CANCELLED")

        assert total == 1
        assert cancelled[0].id == first.id
