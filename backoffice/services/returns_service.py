"""
Return requests: eligibility, creation, staff decisions, receipt, cancellation.

Inspection lives in quality_check_service and refunds in refund_service; all
three move the request only through return_state_machine.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Callable, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from backoffice.config import settings
from backoffice.core.enum_utils import get_enum_value
from backoffice.core.exceptions import (
    DuplicateActiveReturnError,
    NotFoundError,
    PermissionDeniedError,
    ReturnNotEligibleError,
    ValidationFailedError,
)
from backoffice.core.permissions import Actor, can_view, require_staff
from backoffice.database import apply_lock_timeout, lock_wait_guard
from backoffice.db_types import utcnow
from backoffice.models.order import Order, OrderItem, OrderStatus
from backoffice.models.quality_check import QCStatus, QualityCheck
from backoffice.models.return_policy import ReturnPolicy
from backoffice.models.return_request import ReturnRequest, ReturnStatus
from backoffice.schemas.return_request import ReturnRequestCreate
from backoffice.services import return_state_machine
from backoffice.services.catalog_service import CatalogProvider, SqlCatalogProvider
from backoffice.services.document_numbers import (
    QUALITY_CHECK_PREFIX,
    RETURN_PREFIX,
    generate_document_number,
)
from backoffice.services.notification_service import NotificationService, NotificationType
from backoffice.services.return_policy_service import ReturnPolicyService


logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


class IneligibilityReason(str, Enum):
    ORDER_NOT_DELIVERED = "ORDER_NOT_DELIVERED"
    ORDER_NOT_RETURNABLE = "ORDER_NOT_RETURNABLE"
    WINDOW_EXPIRED = "WINDOW_EXPIRED"
    PRODUCT_NOT_RETURNABLE = "PRODUCT_NOT_RETURNABLE"
    REASON_NOT_ALLOWED = "REASON_NOT_ALLOWED"
    ACTIVE_RETURN_EXISTS = "ACTIVE_RETURN_EXISTS"


REASON_MESSAGES = {
    IneligibilityReason.ORDER_NOT_DELIVERED: "Order has not been delivered",
    IneligibilityReason.ORDER_NOT_RETURNABLE: "Order is not returnable",
    IneligibilityReason.WINDOW_EXPIRED: "Return window expired",
    IneligibilityReason.PRODUCT_NOT_RETURNABLE: "Product is not returnable",
    IneligibilityReason.REASON_NOT_ALLOWED: "Return reason is not accepted for this product",
    IneligibilityReason.ACTIVE_RETURN_EXISTS: "An active return already exists for this item",
}

RETURN_NOTIFICATIONS = {
    ReturnStatus.PENDING.value: NotificationType.RETURN_REQUESTED,
    ReturnStatus.APPROVED.value: NotificationType.RETURN_APPROVED,
    ReturnStatus.REJECTED.value: NotificationType.RETURN_REJECTED,
    ReturnStatus.ITEM_RECEIVED.value: NotificationType.RETURN_ITEM_RECEIVED,
    ReturnStatus.QUALITY_CHECK.value: NotificationType.RETURN_INSPECTED,
    ReturnStatus.PROCESSING.value: NotificationType.RETURN_REFUND_PROCESSING,
    ReturnStatus.COMPLETED.value: NotificationType.RETURN_REFUNDED,
    ReturnStatus.CANCELLED.value: NotificationType.RETURN_CANCELLED,
}


@dataclass
class Eligibility:
    """Outcome of the eligibility gate for one order line."""
    order: Order
    item: OrderItem
    policy: Optional[ReturnPolicy]
    reason: Optional[IneligibilityReason] = None

    @property
    def eligible(self) -> bool:
        return self.reason is None

    @property
    def message(self) -> str:
        if self.reason is None:
            return "Item is eligible for return"
        return REASON_MESSAGES[self.reason]

    @property
    def requested_amount(self) -> Decimal:
        return self.item.total_amount

    @property
    def restocking_fee(self) -> Decimal:
        if self.policy is None:
            return Decimal("0.00")
        return restocking_fee_for(self.item.total_amount, self.policy.restocking_fee_percentage)


def restocking_fee_for(amount: Decimal, percentage: Decimal) -> Decimal:
    return (Decimal(amount) * Decimal(percentage) / Decimal(100)).quantize(CENTS)


class ReturnsService:
    """Customer and staff operations on return requests."""

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
        self.policies = ReturnPolicyService(db)

    # ==================== QUERIES ====================

    async def get_return(self, return_id: uuid.UUID, actor: Optional[Actor] = None) -> ReturnRequest:
        return_request = await self.db.get(ReturnRequest, return_id)
        if return_request is None or (actor is not None and not can_view(actor, return_request.user_id)):
            raise NotFoundError("Return request not found", details={"return_id": str(return_id)})
        return return_request

    async def get_return_for_update(self, return_id: uuid.UUID) -> ReturnRequest:
        result = await self.db.execute(
            select(ReturnRequest)
            .where(ReturnRequest.id == return_id)
            .with_for_update(of=ReturnRequest)
            .execution_options(populate_existing=True)
        )
        return_request = result.scalar_one_or_none()
        if return_request is None:
            raise NotFoundError("Return request not found", details={"return_id": str(return_id)})
        return return_request

    async def list_returns(
        self,
        actor: Actor,
        status: Optional[str] = None,
        order_id: Optional[uuid.UUID] = None,
        page: int = 1,
        size: int = 20,
        user_id: Optional[uuid.UUID] = None,
    ) -> Tuple[List[ReturnRequest], int]:
        """Customers only ever see their own returns."""
        query = select(ReturnRequest)
        if not actor.is_back_office:
            user_id = actor.id
        if user_id is not None:
            query = query.where(ReturnRequest.user_id == user_id)
        if status:
            query = query.where(ReturnRequest.status == get_enum_value(status))
        if order_id:
            query = query.where(ReturnRequest.order_id == order_id)

        total = (await self.db.execute(select(func.count()).select_from(query.subquery()))).scalar() or 0
        result = await self.db.execute(
            query.order_by(ReturnRequest.created_at.desc()).offset((page - 1) * size).limit(size)
        )
        return list(result.scalars().all()), total

    async def count_active_returns(self, order_id: uuid.UUID) -> int:
        result = await self.db.execute(
            select(func.count(ReturnRequest.id)).where(
                ReturnRequest.order_id == order_id,
                ReturnRequest.status.in_(return_state_machine.ACTIVE_RETURN_STATUSES),
            )
        )
        return result.scalar() or 0

    async def lock_order(self, order_id: uuid.UUID) -> Order:
        result = await self.db.execute(
            select(Order)
            .where(Order.id == order_id)
            .with_for_update(of=Order)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def refresh_active_returns_flag(self, order_id: uuid.UUID) -> None:
        """
        Recompute Order.has_active_returns after a request left the active set.

        The order row is locked before counting so a request being created on a
        sibling line is either counted or waits for this transaction.
        """
        await self.db.flush()
        order = await self.lock_order(order_id)
        order.has_active_returns = await self.count_active_returns(order_id) > 0

    # ==================== ELIGIBILITY ====================

    async def _load_order_item(
        self,
        order_id: uuid.UUID,
        item_id: uuid.UUID,
        actor: Actor,
        for_update: bool = False,
    ) -> Tuple[Order, OrderItem]:
        query = select(Order).where(Order.id == order_id)
        if for_update:
            query = query.with_for_update(of=Order).execution_options(populate_existing=True)
        order = (await self.db.execute(query)).scalar_one_or_none()
        if order is None or not can_view(actor, order.customer_id):
            raise NotFoundError("Order not found", details={"order_id": str(order_id)})

        item = next((line for line in order.items if line.id == item_id), None)
        if item is None:
            raise NotFoundError(
                "Order item not found",
                details={"order_id": str(order_id), "order_item_id": str(item_id)},
            )
        return order, item

    async def _resolve_policy(self, item: OrderItem) -> Optional[ReturnPolicy]:
        sku = await self.catalog.get_sku(item.product_id, item.variation_id)
        category_id = sku.category_id if sku is not None else item.category_id
        resolution = await self.policies.resolve(item.product_id, category_id)
        return resolution.policy

    async def _evaluate(
        self,
        order: Order,
        item: OrderItem,
        reason_code: Optional[str],
    ) -> Eligibility:
        now = self.clock()

        if order.status != OrderStatus.DELIVERED.value:
            return Eligibility(order, item, None, IneligibilityReason.ORDER_NOT_DELIVERED)
        if not order.is_returnable:
            return Eligibility(order, item, None, IneligibilityReason.ORDER_NOT_RETURNABLE)

        expires = item.return_window_expires
        if expires is None:
            return Eligibility(order, item, None, IneligibilityReason.PRODUCT_NOT_RETURNABLE)
        if now > expires:
            return Eligibility(order, item, None, IneligibilityReason.WINDOW_EXPIRED)

        policy = await self._resolve_policy(item)
        if policy is None or not policy.is_returnable:
            return Eligibility(order, item, policy, IneligibilityReason.PRODUCT_NOT_RETURNABLE)

        if reason_code is not None and not policy.allows_reason(reason_code):
            return Eligibility(order, item, policy, IneligibilityReason.REASON_NOT_ALLOWED)

        active = await self.db.execute(
            select(func.count(ReturnRequest.id)).where(
                ReturnRequest.order_item_id == item.id,
                ReturnRequest.status.in_(return_state_machine.ACTIVE_RETURN_STATUSES),
            )
        )
        if (active.scalar() or 0) > 0:
            return Eligibility(order, item, policy, IneligibilityReason.ACTIVE_RETURN_EXISTS)

        return Eligibility(order, item, policy)

    async def check_eligibility(
        self,
        order_id: uuid.UUID,
        item_id: uuid.UUID,
        actor: Actor,
        reason_code: Optional[str] = None,
    ) -> Eligibility:
        """Evaluate the gate without creating anything."""
        order, item = await self._load_order_item(order_id, item_id, actor)
        return await self._evaluate(order, item, get_enum_value(reason_code))

    # ==================== CREATION ====================

    async def create_return_request(
        self,
        order_id: uuid.UUID,
        item_id: uuid.UUID,
        actor: Actor,
        data: ReturnRequestCreate,
    ) -> ReturnRequest:
        """
        Open a return for one order line.

        Raises:
            ReturnNotEligibleError: the gate failed (``reason`` says why)
            DuplicateActiveReturnError: another active return exists for the line
        """
        reason_code = get_enum_value(data.reason_code)
        refund_method = get_enum_value(data.refund_method)

        try:
            async with lock_wait_guard(self.db, "return request"):
                await apply_lock_timeout(self.db)
                order, item = await self._load_order_item(order_id, item_id, actor, for_update=True)
                if actor.is_system:
                    raise PermissionDeniedError("System actor cannot request returns")

                eligibility = await self._evaluate(order, item, reason_code)
                if eligibility.reason == IneligibilityReason.ACTIVE_RETURN_EXISTS:
                    raise DuplicateActiveReturnError(
                        eligibility.message, details={"order_item_id": str(item.id)}
                    )
                if not eligibility.eligible:
                    raise ReturnNotEligibleError(
                        eligibility.message,
                        reason=eligibility.reason.value,
                        details={"order_item_id": str(item.id)},
                    )

                policy = eligibility.policy
                if not policy.allows_refund_method(refund_method):
                    raise ValidationFailedError(
                        "Refund method not accepted by the return policy",
                        details={"refund_method": refund_method, "accepted": policy.refund_methods},
                    )

                return_request = self._build_request(order, item, policy, data, actor)
                self.db.add(return_request)
                order.has_active_returns = True
                await self.db.flush()
                await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            if "uq_return_requests_active_item" in str(e.orig) or "return_requests.order_item_id" in str(e.orig):
                raise DuplicateActiveReturnError(
                    REASON_MESSAGES[IneligibilityReason.ACTIVE_RETURN_EXISTS],
                    details={"order_item_id": str(item_id)},
                ) from e
            raise
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            f"Return {return_request.return_number} created for order {order.order_number} "
            f"line {item.product_sku}: status={return_request.status}, "
            f"requested={return_request.requested_amount}, fee={return_request.restocking_fee}"
        )
        await self._notify(return_request, NotificationType.RETURN_REQUESTED, product_name=item.product_name)
        if return_request.status == ReturnStatus.APPROVED.value:
            await self._notify(return_request, NotificationType.RETURN_APPROVED, product_name=item.product_name)
        return return_request

    def _build_request(
        self,
        order: Order,
        item: OrderItem,
        policy: ReturnPolicy,
        data: ReturnRequestCreate,
        actor: Actor,
    ) -> ReturnRequest:
        now = self.clock()
        requested = item.total_amount
        return_request = ReturnRequest(
            id=uuid.uuid4(),
            return_number=generate_document_number(RETURN_PREFIX, now),
            order_id=order.id,
            order_item_id=item.id,
            order_item=item,
            quality_check=None,
            user_id=order.customer_id,
            policy_id=policy.id,
            reason_code=get_enum_value(data.reason_code),
            reason_description=data.reason_description,
            return_type=get_enum_value(data.return_type),
            refund_method=get_enum_value(data.refund_method),
            photos=list(data.photos),
            customer_notes=data.customer_notes,
            requested_amount=requested,
            restocking_fee=restocking_fee_for(requested, policy.restocking_fee_percentage),
            return_deadline=now + timedelta(days=settings.RETURN_SHIPMENT_DEADLINE_DAYS),
            status=ReturnStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )

        if not policy.requires_approval:
            # Auto-approval behaves exactly like a staff approval
            self._approve(return_request, policy, processor=None, approved_amount=None, now=now)
            logger.info(f"Return {return_request.return_number} auto-approved by policy {policy.id}")
        return return_request

    def _approve(
        self,
        return_request: ReturnRequest,
        policy: Optional[ReturnPolicy],
        processor: Optional[uuid.UUID],
        approved_amount: Optional[Decimal],
        now: datetime,
    ) -> None:
        return_state_machine.validate_transition(return_request.status, ReturnStatus.APPROVED.value)
        return_request.status = ReturnStatus.APPROVED.value
        return_request.approved_at = now
        return_request.approved_amount = (
            approved_amount if approved_amount is not None else return_request.requested_amount
        )
        return_request.processed_by = processor
        return_request.processed_at = now

        if policy is not None and policy.quality_check_required and return_request.quality_check is None:
            self.db.add(self.new_quality_check(return_request, now))

    @staticmethod
    def new_quality_check(return_request: ReturnRequest, now: datetime) -> QualityCheck:
        item = return_request.order_item
        return QualityCheck(
            id=uuid.uuid4(),
            qc_number=generate_document_number(QUALITY_CHECK_PREFIX, now),
            return_request_id=return_request.id,
            return_request=return_request,
            product_id=item.product_id,
            variation_id=item.variation_id,
            status=QCStatus.PENDING.value,
            quantity_expected=item.quantity,
            quantity_received=0,
            damaged_items=[],
            created_at=now,
            updated_at=now,
        )

    # ==================== STAFF DECISIONS ====================

    async def process_return(
        self,
        return_id: uuid.UUID,
        approve: bool,
        actor: Actor,
        admin_notes: Optional[str] = None,
        approved_amount: Optional[Decimal] = None,
    ) -> ReturnRequest:
        """Approve or reject a PENDING request (staff only)."""
        require_staff(actor, "approve or reject returns")
        target = ReturnStatus.APPROVED.value if approve else ReturnStatus.REJECTED.value

        try:
            async with lock_wait_guard(self.db, "return decision"):
                await apply_lock_timeout(self.db)
                return_request = await self.get_return_for_update(return_id)
                return_state_machine.validate_transition(return_request.status, target)
                now = self.clock()

                if approved_amount is not None and approved_amount > return_request.requested_amount:
                    raise ValidationFailedError(
                        "Approved amount cannot exceed the requested amount",
                        details={
                            "approved_amount": str(approved_amount),
                            "requested_amount": str(return_request.requested_amount),
                        },
                    )

                if approve:
                    policy = await self.policy_for(return_request)
                    self._approve(return_request, policy, actor.id, approved_amount, now)
                else:
                    return_request.status = ReturnStatus.REJECTED.value
                    return_request.rejected_at = now
                    return_request.processed_by = actor.id
                    return_request.processed_at = now
                    await self.refresh_active_returns_flag(return_request.order_id)

                return_request.admin_notes = admin_notes or return_request.admin_notes
                return_request.updated_at = now
                await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Return {return_request.return_number} {target} by {actor.id}")
        await self._notify(return_request, RETURN_NOTIFICATIONS[target])
        return return_request

    async def policy_for(self, return_request: ReturnRequest) -> Optional[ReturnPolicy]:
        """Policy captured at creation, or a fresh resolution if it was deleted."""
        if return_request.policy_id is not None:
            policy = await self.db.get(ReturnPolicy, return_request.policy_id)
            if policy is not None:
                return policy
        return await self._resolve_policy(return_request.order_item)

    async def mark_item_received(
        self,
        return_id: uuid.UUID,
        actor: Actor,
        tracking_number: Optional[str] = None,
        courier: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> ReturnRequest:
        """Record physical receipt of an APPROVED return (staff only)."""
        require_staff(actor, "receive returned items")

        try:
            async with lock_wait_guard(self.db, "return receipt"):
                await apply_lock_timeout(self.db)
                return_request = await self.get_return_for_update(return_id)
                return_state_machine.validate_transition(
                    return_request.status, ReturnStatus.ITEM_RECEIVED.value
                )
                now = self.clock()
                return_request.status = ReturnStatus.ITEM_RECEIVED.value
                return_request.received_date = now
                return_request.received_by = actor.id
                return_request.tracking_number = tracking_number or return_request.tracking_number
                return_request.courier = courier or return_request.courier
                if notes:
                    return_request.admin_notes = notes
                return_request.updated_at = now
                await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Return {return_request.return_number} item received by {actor.id}")
        await self._notify(return_request, NotificationType.RETURN_ITEM_RECEIVED)
        return return_request

    # ==================== CANCELLATION ====================

    async def cancel_return(self, return_id: uuid.UUID, actor: Actor) -> ReturnRequest:
        """Customer cancels their own PENDING or APPROVED return."""
        try:
            async with lock_wait_guard(self.db, "return cancellation"):
                await apply_lock_timeout(self.db)
                return_request = await self.get_return_for_update(return_id)
                if not can_view(actor, return_request.user_id):
                    raise NotFoundError("Return request not found", details={"return_id": str(return_id)})
                if not actor.owns(return_request.user_id):
                    raise PermissionDeniedError("Only the customer who requested the return can cancel it")

                return_state_machine.validate_transition(return_request.status, ReturnStatus.CANCELLED.value)
                now = self.clock()
                return_request.status = ReturnStatus.CANCELLED.value
                return_request.cancelled_at = now
                return_request.updated_at = now
                await self.refresh_active_returns_flag(return_request.order_id)
                await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Return {return_request.return_number} cancelled by customer {actor.id}")
        await self._notify(return_request, NotificationType.RETURN_CANCELLED)
        return return_request

    # ==================== NOTIFICATIONS ====================

    async def _notify(self, return_request: ReturnRequest, template: NotificationType, **extra) -> None:
        context = {
            "return_number": return_request.return_number,
            "status": return_request.status,
            "return_deadline": return_request.return_deadline,
            "admin_notes": return_request.admin_notes or "",
            "refund_amount": return_request.refund_amount,
            "refund_reference": return_request.refund_reference,
            **extra,
        }
        await self.notifier.notify(return_request.user_id, template, context)
