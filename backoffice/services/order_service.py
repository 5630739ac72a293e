"""
Order placement and order lifecycle.

Placement reserves stock and materializes the order in one transaction.
Status changes go through order_state_machine and apply their side effects
(stock restoration on cancel, return-window stamping on delivery) in the same
transaction as the status write.
"""
import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from backoffice.core.enum_utils import get_enum_value
from backoffice.core.exceptions import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    SkuUnavailableError,
    ValidationFailedError,
)
from backoffice.core.permissions import Actor, can_view
from backoffice.database import apply_lock_timeout, lock_wait_guard
from backoffice.db_types import utcnow
from backoffice.models.order import Order, OrderItem, OrderStatus, OrderStatusHistory
from backoffice.schemas.order import OrderCreate, OrderItemCreate
from backoffice.schemas.payment import GatewayNotification, PaymentNotification, decode_notification
from backoffice.services import order_state_machine
from backoffice.services.catalog_service import CatalogProvider, SqlCatalogProvider
from backoffice.services.document_numbers import ORDER_PREFIX, generate_document_number
from backoffice.services.inventory_service import InventoryService, SkuKey
from backoffice.services.notification_service import NotificationService, NotificationType
from backoffice.services.payment_gateway import PaymentGateway
from backoffice.services.return_policy_service import ReturnPolicyService


logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")

# Midtrans transaction_status values
PAID_TRANSACTION_STATUSES = {"capture", "settlement"}
FAILED_TRANSACTION_STATUSES = {"cancel", "deny", "expire"}


def money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENTS)


def aggregate_lines(items: List[OrderItemCreate]) -> Dict[SkuKey, int]:
    """Merge duplicate SKUs in a cart, keeping first-seen order."""
    if not items:
        raise ValidationFailedError("Order must contain at least one item")

    requirements: Dict[SkuKey, int] = {}
    for item in items:
        if item.quantity <= 0:
            raise ValidationFailedError(
                "Quantity must be greater than zero",
                details={"product_id": str(item.product_id)},
            )
        key = (item.product_id, item.variation_id)
        requirements[key] = requirements.get(key, 0) + item.quantity
    return requirements


def target_status_for_payment(transaction_status: str, fraud_status: Optional[str]) -> Optional[str]:
    """
    Map a gateway transaction status to the order status it implies.

    Returns None when the notification does not move the order (payment still
    pending, or captured but held for fraud review).
    """
    if transaction_status in PAID_TRANSACTION_STATUSES:
        if fraud_status in (None, "", "accept"):
            return OrderStatus.PAID.value
        return None
    if transaction_status in FAILED_TRANSACTION_STATUSES:
        return OrderStatus.CANCELLED.value
    return None


class OrderService:
    """Order placement and status transitions."""

    def __init__(
        self,
        db: AsyncSession,
        catalog: Optional[CatalogProvider] = None,
        notifier: Optional[NotificationService] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.catalog = catalog or SqlCatalogProvider(db)
        self.notifier = notifier or NotificationService()
        self.clock = clock
        self.inventory = InventoryService(db)
        self.policies = ReturnPolicyService(db)

    # ==================== QUERIES ====================

    async def get_order(self, order_id: uuid.UUID, actor: Optional[Actor] = None) -> Order:
        order = await self.db.get(Order, order_id)
        if order is None or (actor is not None and not can_view(actor, order.customer_id)):
            raise NotFoundError("Order not found", details={"order_id": str(order_id)})
        return order

    async def get_order_by_number(self, order_number: str) -> Order:
        result = await self.db.execute(select(Order).where(Order.order_number == order_number))
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundError("Order not found", details={"order_number": order_number})
        return order

    async def _get_by_idempotency_key(self, key: str) -> Optional[Order]:
        result = await self.db.execute(select(Order).where(Order.idempotency_key == key))
        return result.scalar_one_or_none()

    async def _get_order_for_update(self, order_id: uuid.UUID) -> Order:
        result = await self.db.execute(
            select(Order)
            .where(Order.id == order_id)
            .with_for_update(of=Order)
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundError("Order not found", details={"order_id": str(order_id)})
        return order

    async def list_orders(
        self,
        actor: Actor,
        status: Optional[str] = None,
        customer_id: Optional[uuid.UUID] = None,
        page: int = 1,
        size: int = 20,
    ) -> Tuple[List[Order], int]:
        """Customers see their own orders; staff can filter by customer."""
        query = select(Order)
        if not actor.is_back_office:
            query = query.where(Order.customer_id == actor.id)
        elif customer_id is not None:
            query = query.where(Order.customer_id == customer_id)
        if status:
            query = query.where(Order.status == get_enum_value(status))

        total = (await self.db.execute(select(func.count()).select_from(query.subquery()))).scalar() or 0
        result = await self.db.execute(
            query.order_by(Order.created_at.desc()).offset((page - 1) * size).limit(size)
        )
        return list(result.scalars().all()), total

    async def get_status_history(self, order_id: uuid.UUID, actor: Actor) -> List[OrderStatusHistory]:
        await self.get_order(order_id, actor)
        result = await self.db.execute(
            select(OrderStatusHistory)
            .where(OrderStatusHistory.order_id == order_id)
            .order_by(OrderStatusHistory.created_at)
        )
        return list(result.scalars().all())

    # ==================== PLACEMENT ====================

    def _resolve_customer(self, actor: Actor, requested_customer: Optional[uuid.UUID]) -> uuid.UUID:
        if requested_customer is None or requested_customer == actor.id:
            return actor.id
        if not actor.is_staff:
            raise PermissionDeniedError("Only staff can place orders for another customer")
        return requested_customer

    async def place_order(
        self,
        actor: Actor,
        data: OrderCreate,
        idempotency_key: Optional[str] = None,
    ) -> Order:
        """
        Reserve stock for every line and create a PENDING order.

        Either every line is reserved and the order exists, or nothing changed.
        A retry with the same idempotency key returns the order created by the
        first attempt.

        Raises:
            ValidationFailedError: empty cart, bad quantity, negative total
            SkuUnavailableError / InsufficientStockError: naming the failing SKU
            LockTimeoutError: stock rows stayed locked past LOCK_TIMEOUT_MS
        """
        customer_id = self._resolve_customer(actor, data.customer_id)
        requirements = aggregate_lines(data.items)
        key = idempotency_key or data.idempotency_key

        try:
            async with lock_wait_guard(self.db, "order placement"):
                await apply_lock_timeout(self.db)
                existing = await self._get_by_idempotency_key(key) if key else None
                if existing is not None:
                    await self.db.commit()
                    return self._check_replay(existing, customer_id, key)
                order = await self._reserve_and_build(customer_id, data, requirements, key)
                await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            if key:
                # A concurrent request with the same key committed first
                async with lock_wait_guard(self.db, "order placement"):
                    existing = await self._get_by_idempotency_key(key)
                    await self.db.commit()
                if existing is not None:
                    return self._check_replay(existing, customer_id, key)
            raise
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            f"Placed order {order.order_number} for customer {customer_id}: "
            f"{len(order.items)} lines, total={order.total_amount}"
        )
        await self.notifier.notify(
            order.customer_id,
            NotificationType.ORDER_PLACED,
            {"order_number": order.order_number, "total_amount": order.total_amount},
        )
        return order

    def _check_replay(self, existing: Order, customer_id: uuid.UUID, key: str) -> Order:
        if existing.customer_id != customer_id:
            raise ConflictError(
                "Idempotency key already used for another customer",
                details={"idempotency_key": key},
            )
        logger.info(f"Idempotent replay of order {existing.order_number} (key={key})")
        return existing

    async def _reserve_and_build(
        self,
        customer_id: uuid.UUID,
        data: OrderCreate,
        requirements: Dict[SkuKey, int],
        idempotency_key: Optional[str],
    ) -> Order:
        now = self.clock()
        await self.inventory.reserve(requirements)

        items: List[OrderItem] = []
        subtotal = Decimal("0")
        for (product_id, variation_id), quantity in requirements.items():
            # Price is read after the stock row is locked
            sku = await self.catalog.get_sku(product_id, variation_id)
            if sku is None or not sku.active:
                raise SkuUnavailableError(
                    "Product is not available for sale",
                    details={
                        "product_id": str(product_id),
                        "variation_id": str(variation_id) if variation_id else None,
                    },
                )

            unit_price = money(sku.price)
            line_total = money(unit_price * quantity)
            subtotal += line_total

            resolution = await self.policies.resolve(sku.product_id, sku.category_id)
            items.append(OrderItem(
                product_id=product_id,
                variation_id=variation_id,
                product_name=sku.name,
                product_sku=sku.sku,
                category_id=sku.category_id,
                quantity=quantity,
                unit_price=unit_price,
                total_amount=line_total,
                return_window_days=resolution.window_days,
                created_at=now,
            ))

        shipping = money(data.shipping_amount)
        discount = money(data.discount_amount)
        total = money(subtotal + shipping - discount)
        if total < 0:
            raise ValidationFailedError(
                "Discount exceeds order value",
                details={"subtotal": str(subtotal), "discount_amount": str(discount)},
            )

        order = Order(
            order_number=generate_document_number(ORDER_PREFIX, now),
            idempotency_key=idempotency_key,
            customer_id=customer_id,
            status=OrderStatus.PENDING.value,
            subtotal=money(subtotal),
            shipping_amount=shipping,
            discount_amount=discount,
            total_amount=total,
            shipping_address=data.shipping_address.model_dump(),
            notes=data.notes,
            items=items,
            created_at=now,
            updated_at=now,
        )
        self.db.add(order)
        self.db.add(OrderStatusHistory(
            order=order,
            from_status=None,
            to_status=OrderStatus.PENDING.value,
            changed_by=customer_id,
            notes="Order placed",
            created_at=now,
        ))
        await self.db.flush()
        return order

    # ==================== STATUS TRANSITIONS ====================

    async def transition_status(
        self,
        order_id: uuid.UUID,
        new_status: str,
        actor: Actor,
        notes: Optional[str] = None,
    ) -> Order:
        """
        Move an order to ``new_status``.

        Raises:
            NotFoundError: unknown order, or a customer acting on someone else's order
            PermissionDeniedError: role may not perform this transition
            InvalidTransitionError: not allowed from the current status
        """
        new_status = get_enum_value(new_status)
        try:
            async with lock_wait_guard(self.db, "order status change"):
                await apply_lock_timeout(self.db)
                order = await self._get_order_for_update(order_id)
                if not can_view(actor, order.customer_id):
                    raise NotFoundError("Order not found", details={"order_id": str(order_id)})
                order_state_machine.validate_actor(actor, order.customer_id, new_status)
                previous = await self._apply_transition(order, new_status, actor, notes)
                await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self._after_transition(order, previous)
        return order

    async def _apply_transition(
        self,
        order: Order,
        new_status: str,
        actor: Actor,
        notes: Optional[str],
    ) -> str:
        """Validate and apply a transition on a locked order. Returns the previous status."""
        previous = order.status
        order_state_machine.validate_transition(previous, new_status)
        now = self.clock()

        if new_status == OrderStatus.CANCELLED.value:
            await self._restore_stock(order)
            order.cancelled_at = now
        elif new_status == OrderStatus.PAID.value:
            order.paid_at = order.paid_at or now
        elif new_status == OrderStatus.DELIVERED.value:
            self._stamp_delivery(order, now)

        order.status = new_status
        order.updated_at = now
        self.db.add(OrderStatusHistory(
            order_id=order.id,
            from_status=previous,
            to_status=new_status,
            changed_by=actor.id,
            changed_by_role=actor.role.value,
            notes=notes,
            created_at=now,
        ))
        await self.db.flush()
        return previous

    async def _after_transition(self, order: Order, previous: str) -> None:
        logger.info(
            f"Order {order.order_number}: {previous} -> {order.status} "
            f"({order_state_machine.get_transition_action(previous, order.status)})"
        )
        await self.notifier.notify(
            order.customer_id,
            NotificationType.ORDER_STATUS_CHANGED,
            {"order_number": order.order_number, "status": order.status, "previous_status": previous},
        )

    async def _restore_stock(self, order: Order) -> None:
        """Give back exactly what placement reserved."""
        quantities: Dict[SkuKey, int] = {}
        for item in order.items:
            key = (item.product_id, item.variation_id)
            quantities[key] = quantities.get(key, 0) + item.quantity
        movements = await self.inventory.release(quantities)
        for movement in movements:
            logger.info(
                f"Restored {movement.quantity} x {movement.unit.sku} for cancelled order "
                f"{order.order_number} ({movement.before} -> {movement.after})"
            )

    @staticmethod
    def _stamp_delivery(order: Order, delivered_at: datetime) -> None:
        """
        Open each line's return window from its own policy snapshot.

        The order-level expiry is the latest line expiry; eligibility is always
        checked against the line.
        """
        order.delivered_date = delivered_at
        latest: Optional[datetime] = None
        for item in order.items:
            if item.return_window_days is None:
                item.return_window_expires = None
                continue
            item.return_window_expires = delivered_at + timedelta(days=item.return_window_days)
            if latest is None or item.return_window_expires > latest:
                latest = item.return_window_expires
        order.return_window_expires = latest
        order.is_returnable = latest is not None

    # ==================== PAYMENT NOTIFICATIONS ====================

    async def apply_payment_notification(self, notification: PaymentNotification) -> Tuple[Order, bool]:
        """
        Apply a gateway status update to the order it references.

        Re-delivered or out-of-order notifications never fail: when the implied
        status is already reached, or can no longer be reached, the order is
        left as it is. Returns the order and whether its status changed.
        """
        actor = Actor.system()
        target = target_status_for_payment(notification.status, notification.fraud_status)
        previous: Optional[str] = None

        try:
            async with lock_wait_guard(self.db, "payment notification"):
                await apply_lock_timeout(self.db)
                order = await self.get_order_by_number(notification.order_number)
                order = await self._get_order_for_update(order.id)

                if notification.reference and target != OrderStatus.CANCELLED.value:
                    order.payment_reference = notification.reference
                    order.payment_type = notification.payment_type
                    order.payment_info = notification.info

                if target is None:
                    if notification.fraud_status == "challenge":
                        logger.warning(
                            f"Payment for {order.order_number} captured but held for fraud review"
                        )
                elif order.status == target:
                    logger.info(f"Order {order.order_number} already {target}, notification ignored")
                elif not order_state_machine.can_transition(order.status, target):
                    logger.warning(
                        f"Order {order.order_number} is {order.status}; "
                        f"ignoring payment status '{notification.status}'"
                    )
                else:
                    previous = await self._apply_transition(
                        order, target, actor, notes=f"Payment {notification.status}"
                    )
                await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        if previous is None:
            return order, False
        await self._after_transition(order, previous)
        return order, True

    async def sync_payment_status(self, order_number: str, gateway: PaymentGateway) -> Tuple[Order, GatewayNotification, bool]:
        """
        Pull the transaction status from the gateway and apply it.

        Used when a notification was lost. The gateway is queried before any
        database work so no transaction is held open across the call.
        """
        status = await gateway.get_transaction_status(order_number)
        notification = decode_notification({"order_id": order_number, **status})
        order, changed = await self.apply_payment_notification(notification.normalize())
        return order, notification, changed
