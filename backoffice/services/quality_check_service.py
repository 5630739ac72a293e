"""
Inspection of received returns.

Completing a quality check is a one-shot write: quantities and condition are
recorded, damaged units become a DamagedInventory record, sellable units are
optionally put back on the shelf, and the return moves to QUALITY_CHECK, all
in one transaction. A completed check is never rewritten.
"""
import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from backoffice.core.enum_utils import get_enum_value
from backoffice.core.exceptions import QualityCheckClosedError, ValidationFailedError
from backoffice.core.permissions import Actor, require_staff
from backoffice.database import apply_lock_timeout, lock_wait_guard
from backoffice.db_types import utcnow
from backoffice.models.quality_check import (
    DamageDisposition,
    DamagedInventory,
    DamagedInventoryStatus,
    DamageSeverity,
    DamageType,
    OverallCondition,
    QCDisposition,
    QCStatus,
    QualityCheck,
)
from backoffice.models.return_request import ReturnRequest, ReturnStatus
from backoffice.schemas.return_request import QualityCheckComplete
from backoffice.services import return_state_machine
from backoffice.services.document_numbers import DAMAGE_PREFIX, generate_document_number
from backoffice.services.inventory_service import InventoryService
from backoffice.services.notification_service import NotificationService, NotificationType
from backoffice.services.returns_service import ReturnsService


logger = logging.getLogger(__name__)

# QC dispositions that carry over to the damaged-stock record unchanged
DAMAGE_DISPOSITION_FROM_QC = {
    QCDisposition.REPAIR.value: DamageDisposition.REPAIR.value,
    QCDisposition.SALVAGE.value: DamageDisposition.SALVAGE.value,
    QCDisposition.DISPOSE.value: DamageDisposition.DISPOSE.value,
    QCDisposition.RETURN_TO_SUPPLIER.value: DamageDisposition.RETURN_TO_SUPPLIER.value,
}

SEVERE_CONDITIONS = {OverallCondition.DAMAGED.value, OverallCondition.UNSELLABLE.value}


def validate_quantities(qc: QualityCheck, data: QualityCheckComplete) -> None:
    accounted = data.sellable_quantity + data.damaged_quantity + data.missing_quantity
    if accounted > qc.quantity_expected:
        raise ValidationFailedError(
            "Inspected quantities exceed the quantity expected",
            details={
                "quantity_expected": qc.quantity_expected,
                "sellable_quantity": data.sellable_quantity,
                "damaged_quantity": data.damaged_quantity,
                "missing_quantity": data.missing_quantity,
            },
        )


def resolve_damage_disposition(data: QualityCheckComplete) -> str:
    """Explicit damage disposition, else the one implied by the QC disposition."""
    if data.damage_disposition is not None:
        return get_enum_value(data.damage_disposition)
    disposition = DAMAGE_DISPOSITION_FROM_QC.get(get_enum_value(data.disposition))
    if disposition is None:
        raise ValidationFailedError(
            "damage_disposition is required for damaged units under this disposition",
            details={"disposition": get_enum_value(data.disposition)},
        )
    return disposition


def resolve_damage_severity(data: QualityCheckComplete) -> str:
    if data.damage_severity is not None:
        return get_enum_value(data.damage_severity)
    if get_enum_value(data.overall_condition) in SEVERE_CONDITIONS:
        return DamageSeverity.MAJOR.value
    return DamageSeverity.MODERATE.value


class QualityCheckService:
    """Complete inspections for received returns."""

    def __init__(
        self,
        db: AsyncSession,
        notifier: Optional[NotificationService] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.notifier = notifier or NotificationService()
        self.clock = clock
        self.returns = ReturnsService(db, notifier=self.notifier, clock=clock)
        self.inventory = InventoryService(db)

    async def complete_quality_check(
        self,
        return_id: uuid.UUID,
        data: QualityCheckComplete,
        actor: Actor,
    ) -> ReturnRequest:
        """
        Record the inspection of a received return.

        Raises:
            QualityCheckClosedError: the check was already completed
            InvalidTransitionError: the item has not been received
            ValidationFailedError: quantities exceed what was expected
        """
        require_staff(actor, "complete quality checks")

        try:
            async with lock_wait_guard(self.db, "quality check"):
                await apply_lock_timeout(self.db)
                return_request = await self.returns.get_return_for_update(return_id)
                qc = return_request.quality_check
                if qc is not None and qc.is_completed:
                    raise QualityCheckClosedError(
                        "Quality check already completed",
                        details={"qc_number": qc.qc_number, "return_number": return_request.return_number},
                    )
                return_state_machine.validate_transition(
                    return_request.status, ReturnStatus.QUALITY_CHECK.value
                )

                now = self.clock()
                if qc is None:
                    qc = self.returns.new_quality_check(return_request, now)
                    self.db.add(qc)

                validate_quantities(qc, data)
                self._record_inspection(qc, data, actor, now)

                if data.damaged_quantity > 0:
                    self.db.add(self._damaged_inventory(return_request, qc, data, actor, now))

                await self._restock(return_request, qc, data)

                return_request.status = ReturnStatus.QUALITY_CHECK.value
                return_request.quality_checked_at = now
                return_request.updated_at = now
                await self.db.flush()
                await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            f"QC {qc.qc_number} completed for return {return_request.return_number}: "
            f"sellable={qc.sellable_quantity}, damaged={qc.damaged_quantity}, "
            f"missing={qc.missing_quantity}, restocked={qc.restocked_quantity}"
        )
        await self.notifier.notify(
            return_request.user_id,
            NotificationType.RETURN_INSPECTED,
            {"return_number": return_request.return_number, "status": return_request.status},
        )
        return return_request

    @staticmethod
    def _record_inspection(qc: QualityCheck, data: QualityCheckComplete, actor: Actor, now: datetime) -> None:
        qc.sellable_quantity = data.sellable_quantity
        qc.damaged_quantity = data.damaged_quantity
        qc.missing_quantity = data.missing_quantity
        qc.quantity_received = data.sellable_quantity + data.damaged_quantity
        qc.overall_condition = get_enum_value(data.overall_condition)
        qc.disposition = get_enum_value(data.disposition)
        qc.estimated_repair_cost = data.estimated_repair_cost
        qc.inspection_notes = data.notes
        qc.photos = list(data.photos)
        qc.inspector_id = actor.id
        qc.status = QCStatus.COMPLETED.value
        qc.completed_at = now
        qc.updated_at = now

    @staticmethod
    def _damaged_inventory(
        return_request: ReturnRequest,
        qc: QualityCheck,
        data: QualityCheckComplete,
        actor: Actor,
        now: datetime,
    ) -> DamagedInventory:
        unit_price = return_request.order_item.unit_price
        return DamagedInventory(
            damage_number=generate_document_number(DAMAGE_PREFIX, now),
            quality_check=qc,
            return_request_id=return_request.id,
            product_id=qc.product_id,
            variation_id=qc.variation_id,
            quantity=data.damaged_quantity,
            damage_type=get_enum_value(data.damage_type) or DamageType.PHYSICAL_DAMAGE.value,
            damage_severity=resolve_damage_severity(data),
            damage_description=data.damage_description,
            status=DamagedInventoryStatus.PENDING_ASSESSMENT.value,
            disposition=resolve_damage_disposition(data),
            estimated_value=(Decimal(unit_price) * data.damaged_quantity).quantize(Decimal("0.01")),
            salvage_value=data.salvage_value,
            repair_cost=data.repair_cost,
            reported_by=actor.id,
            created_at=now,
            updated_at=now,
        )

    async def _restock(self, return_request: ReturnRequest, qc: QualityCheck, data: QualityCheckComplete) -> None:
        """Put sellable units back when the policy and the disposition both say so."""
        if data.sellable_quantity <= 0 or get_enum_value(data.disposition) != QCDisposition.RESTOCK.value:
            return
        policy = await self.returns.policy_for(return_request)
        if policy is None or not policy.restock_sellable_items:
            return

        movements = await self.inventory.release({(qc.product_id, qc.variation_id): data.sellable_quantity})
        qc.restocked_quantity = data.sellable_quantity
        for movement in movements:
            logger.info(
                f"Restocked {movement.quantity} x {movement.unit.sku} from return "
                f"{return_request.return_number} ({movement.before} -> {movement.after})"
            )
