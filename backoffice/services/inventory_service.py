"""
Inventory ledger.

Reserve and release stock on InventoryUnit rows under SELECT ... FOR UPDATE.
Rows are always locked in a stable order (by product id, then variation id) so
two multi-item orders touching the same SKUs cannot deadlock.

The service never commits: it runs inside the caller's transaction so stock
and order state change together or not at all.
"""
import logging
import uuid
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backoffice.core.exceptions import InsufficientStockError, SkuUnavailableError
from backoffice.models.inventory import InventoryUnit


logger = logging.getLogger(__name__)

SkuKey = Tuple[uuid.UUID, Optional[uuid.UUID]]


def sku_sort_key(key: SkuKey) -> Tuple[str, str]:
    product_id, variation_id = key
    return (str(product_id), str(variation_id) if variation_id else "")


def describe_sku(key: SkuKey) -> Dict:
    product_id, variation_id = key
    return {
        "product_id": str(product_id),
        "variation_id": str(variation_id) if variation_id else None,
    }


@dataclass
class StockMovement:
    """Quantity change applied to one unit."""
    unit: InventoryUnit
    quantity: int
    before: int
    after: int


class InventoryService:
    """Row-locked stock reservation and restoration."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _lock_unit(self, key: SkuKey) -> Optional[InventoryUnit]:
        product_id, variation_id = key
        stmt = select(InventoryUnit).where(InventoryUnit.product_id == product_id)
        if variation_id is None:
            stmt = stmt.where(InventoryUnit.variation_id.is_(None))
        else:
            stmt = stmt.where(InventoryUnit.variation_id == variation_id)

        # populate_existing so a unit already in the identity map is re-read
        # after the lock is granted rather than served stale
        result = await self.db.execute(
            stmt.with_for_update().execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def lock_units(self, keys: Iterable[SkuKey]) -> Dict[SkuKey, Optional[InventoryUnit]]:
        """Lock the units for the given SKUs, one at a time in stable order."""
        locked: Dict[SkuKey, Optional[InventoryUnit]] = {}
        for key in sorted(set(keys), key=sku_sort_key):
            locked[key] = await self._lock_unit(key)
        return locked

    async def reserve(self, requirements: Dict[SkuKey, int]) -> List[StockMovement]:
        """
        Decrement stock for every SKU, or for none.

        All units are locked and checked before any is decremented. The first
        failing SKU raises and the caller rolls the transaction back.

        Raises:
            SkuUnavailableError: no inventory record, or the unit is inactive
            InsufficientStockError: available quantity below the requirement
        """
        units = await self.lock_units(requirements.keys())

        for key, unit in units.items():
            requested = requirements[key]
            if unit is None or not unit.is_active:
                logger.warning(f"Reservation failed, SKU unavailable: {describe_sku(key)}")
                raise SkuUnavailableError(
                    "Product is not available for sale",
                    details={**describe_sku(key), "requested": requested},
                )
            if unit.available_quantity < requested:
                logger.warning(
                    f"Reservation failed, insufficient stock for {unit.sku}: "
                    f"requested={requested} available={unit.available_quantity}"
                )
                raise InsufficientStockError(
                    f"Insufficient stock for {unit.sku}",
                    details={
                        **describe_sku(key),
                        "sku": unit.sku,
                        "requested": requested,
                        "available": unit.available_quantity,
                    },
                )

        movements = []
        for key, unit in units.items():
            before = unit.available_quantity
            unit.available_quantity = before - requirements[key]
            movements.append(StockMovement(unit, -requirements[key], before, unit.available_quantity))

        await self.db.flush()
        return movements

    async def release(self, quantities: Dict[SkuKey, int]) -> List[StockMovement]:
        """
        Add stock back (order cancellation, restock after inspection).

        A missing unit aborts the whole release so the caller's transaction
        rolls back instead of restoring only part of the stock.
        """
        units = await self.lock_units(quantities.keys())

        movements = []
        for key, unit in units.items():
            if unit is None:
                raise SkuUnavailableError(
                    "Cannot restore stock, inventory record not found",
                    details={**describe_sku(key), "quantity": quantities[key]},
                )
            before = unit.available_quantity
            unit.available_quantity = before + quantities[key]
            movements.append(StockMovement(unit, quantities[key], before, unit.available_quantity))

        await self.db.flush()
        return movements
