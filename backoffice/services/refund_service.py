"""
Refund settlement for inspected returns.

The gateway call is slow and can fail, so settlement is split around it:

1. lock the return, fix the amount and refund key, mark it PROCESSING, commit
2. call the gateway with no database transaction open
3. lock the return again and record COMPLETED or FAILED

A failed or interrupted refund leaves the return in PROCESSING; calling
settle_refund again reuses the same refund key, so the gateway applies the
refund at most once.
"""
import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from backoffice.core.enum_utils import get_enum_value
from backoffice.core.exceptions import ConflictError, PaymentGatewayError, ValidationFailedError
from backoffice.core.permissions import Actor, require_staff
from backoffice.database import apply_lock_timeout, lock_wait_guard
from backoffice.db_types import utcnow
from backoffice.models.order import Order
from backoffice.models.return_request import RefundMethod, RefundStatus, ReturnRequest, ReturnStatus
from backoffice.services import return_state_machine
from backoffice.services.document_numbers import refund_key_for
from backoffice.services.notification_service import NotificationService, NotificationType
from backoffice.services.payment_gateway import MidtransGateway, PaymentGateway, RefundResult
from backoffice.services.returns_service import ReturnsService


logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")

# refund_status values from which a PROCESSING return may be retried
RETRYABLE_REFUND_STATUSES = {RefundStatus.PROCESSING.value, RefundStatus.FAILED.value}


def net_refund_amount(approved: Decimal, restocking_fee: Decimal) -> Decimal:
    """Approved amount less the restocking fee, never negative."""
    return max(Decimal(approved) - Decimal(restocking_fee or 0), Decimal("0")).quantize(CENTS)


class RefundService:
    """Settle refunds through the payment gateway or locally."""

    def __init__(
        self,
        db: AsyncSession,
        gateway: Optional[PaymentGateway] = None,
        notifier: Optional[NotificationService] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.gateway = gateway or MidtransGateway()
        self.notifier = notifier or NotificationService()
        self.clock = clock
        self.returns = ReturnsService(db, notifier=self.notifier, clock=clock)

    async def settle_refund(
        self,
        return_id: uuid.UUID,
        actor: Actor,
        amount: Optional[Decimal] = None,
        refund_method: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> ReturnRequest:
        """
        Refund an inspected return.

        A COMPLETED return is returned unchanged. A return whose earlier
        attempt failed is retried with the amount and key fixed by that attempt.

        Raises:
            InvalidTransitionError: the return has not passed inspection
            ValidationFailedError: bad amount or method, or no payment to refund
            PaymentGatewayError: the gateway refused; the return stays retryable
        """
        require_staff(actor, "settle refunds")

        return_request, payment_reference, started = await self._begin(
            return_id, amount, get_enum_value(refund_method), notes
        )
        if not started:
            return return_request

        result = await self._execute(return_request, payment_reference)
        return await self._finish(return_request.id, result)

    # ==================== PHASE 1 ====================

    async def _begin(self, return_id, amount, refund_method, notes):
        try:
            async with lock_wait_guard(self.db, "refund start"):
                await apply_lock_timeout(self.db)
                return_request = await self.returns.get_return_for_update(return_id)

                if return_request.status == ReturnStatus.COMPLETED.value:
                    logger.info(f"Return {return_request.return_number} already refunded")
                    await self.db.commit()
                    return return_request, None, False

                retry = (
                    return_request.status == ReturnStatus.PROCESSING.value
                    and return_request.refund_status in RETRYABLE_REFUND_STATUSES
                )
                return_state_machine.validate_transition(
                    return_request.status, ReturnStatus.PROCESSING.value
                )
                if retry:
                    self._check_retry_terms(return_request, amount, refund_method)
                else:
                    await self._fix_terms(return_request, amount, refund_method)

                order = await self.db.get(Order, return_request.order_id)
                if (
                    return_request.refund_method == RefundMethod.ORIGINAL_PAYMENT.value
                    and return_request.refund_amount > 0
                    and not order.payment_reference
                ):
                    raise ValidationFailedError(
                        "Order has no payment to refund to",
                        details={"order_number": order.order_number},
                    )

                now = self.clock()
                return_request.status = ReturnStatus.PROCESSING.value
                return_request.refund_status = RefundStatus.PROCESSING.value
                return_request.refund_attempts = (return_request.refund_attempts or 0) + 1
                if notes:
                    return_request.refund_notes = notes
                return_request.updated_at = now
                await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            f"Refund attempt {return_request.refund_attempts} for return {return_request.return_number}: "
            f"{return_request.refund_amount} via {return_request.refund_method} "
            f"(key={return_request.refund_key})"
        )
        if return_request.refund_attempts == 1:
            await self._notify(return_request, NotificationType.RETURN_REFUND_PROCESSING)
        return return_request, order.payment_reference, True

    async def _fix_terms(self, return_request: ReturnRequest, amount: Optional[Decimal], refund_method: Optional[str]) -> None:
        """Decide the amount, method and key on the first attempt."""
        method = refund_method or return_request.refund_method or RefundMethod.ORIGINAL_PAYMENT.value
        policy = await self.returns.policy_for(return_request)
        if policy is not None and not policy.allows_refund_method(method):
            raise ValidationFailedError(
                "Refund method not accepted by the return policy",
                details={"refund_method": method, "accepted": policy.refund_methods},
            )

        approved = amount
        if approved is None:
            approved = return_request.approved_amount
        if approved is None:
            approved = return_request.requested_amount
        if approved > return_request.requested_amount:
            raise ValidationFailedError(
                "Refund amount cannot exceed the requested amount",
                details={
                    "amount": str(approved),
                    "requested_amount": str(return_request.requested_amount),
                },
            )

        return_request.refund_method = method
        return_request.approved_amount = Decimal(approved).quantize(CENTS)
        return_request.refund_amount = net_refund_amount(approved, return_request.restocking_fee)
        return_request.refund_key = refund_key_for(return_request.return_number)

    @staticmethod
    def _check_retry_terms(return_request: ReturnRequest, amount: Optional[Decimal], refund_method: Optional[str]) -> None:
        if amount is not None and Decimal(amount).quantize(CENTS) != return_request.approved_amount:
            raise ConflictError(
                "Refund amount is fixed once settlement has started",
                details={"approved_amount": str(return_request.approved_amount)},
            )
        if refund_method is not None and refund_method != return_request.refund_method:
            raise ConflictError(
                "Refund method is fixed once settlement has started",
                details={"refund_method": return_request.refund_method},
            )

    # ==================== PHASE 2 ====================

    async def _execute(self, return_request: ReturnRequest, payment_reference: Optional[str]) -> RefundResult:
        """Issue the refund. Runs with no database transaction open."""
        if (
            return_request.refund_method != RefundMethod.ORIGINAL_PAYMENT.value
            or return_request.refund_amount <= 0
        ):
            # Store credit, bank transfer and manual refunds are settled by the back office
            return RefundResult(
                success=True,
                refund_id=f"{return_request.refund_method}-{return_request.return_number}",
            )

        try:
            return await self.gateway.refund(
                payment_reference,
                return_request.refund_amount,
                return_request.refund_key,
                reason=return_request.reason_code,
            )
        except PaymentGatewayError as e:
            return RefundResult(success=False, error=e.message)

    # ==================== PHASE 3 ====================

    async def _finish(self, return_id: uuid.UUID, result: RefundResult) -> ReturnRequest:
        try:
            async with lock_wait_guard(self.db, "refund completion"):
                await apply_lock_timeout(self.db)
                return_request = await self.returns.get_return_for_update(return_id)
                now = self.clock()

                if result.success:
                    return_state_machine.validate_transition(
                        return_request.status, ReturnStatus.COMPLETED.value
                    )
                    return_request.status = ReturnStatus.COMPLETED.value
                    return_request.refund_status = RefundStatus.COMPLETED.value
                    return_request.refund_reference = result.refund_id
                    return_request.completed_at = now

                    order = await self.returns.lock_order(return_request.order_id)
                    order.total_returned_amount = (
                        Decimal(order.total_returned_amount or 0) + return_request.refund_amount
                    ).quantize(CENTS)
                    await self.returns.refresh_active_returns_flag(order.id)
                else:
                    return_request.refund_status = RefundStatus.FAILED.value
                    return_request.refund_notes = result.error
                return_request.updated_at = now
                await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        if not result.success:
            logger.error(
                f"Refund failed for return {return_request.return_number} "
                f"(attempt {return_request.refund_attempts}): {result.error}"
            )
            await self._notify(return_request, NotificationType.RETURN_REFUND_FAILED)
            raise PaymentGatewayError(
                f"Refund failed: {result.error}",
                details={
                    "return_number": return_request.return_number,
                    "refund_key": return_request.refund_key,
                    "retryable": True,
                },
            )

        logger.info(
            f"Return {return_request.return_number} refunded {return_request.refund_amount} "
            f"(reference={return_request.refund_reference}"
            f"{', already applied at gateway' if result.already_applied else ''})"
        )
        await self._notify(return_request, NotificationType.RETURN_REFUNDED)
        return return_request

    async def _notify(self, return_request: ReturnRequest, template: NotificationType) -> None:
        await self.notifier.notify(
            return_request.user_id,
            template,
            {
                "return_number": return_request.return_number,
                "status": return_request.status,
                "refund_amount": return_request.refund_amount,
                "refund_reference": return_request.refund_reference,
                "refund_notes": return_request.refund_notes or "",
            },
        )
