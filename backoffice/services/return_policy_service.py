"""
Return policy resolution and administration.

Resolution order for a (product, category) pair:
    1. active product policy, highest priority
    2. active category policy, highest priority
    3. active global policy (no product, no category), highest priority

No policy, or a resolved policy with ``is_returnable = False``, means the item
cannot be returned.
"""
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from backoffice.core.enum_utils import get_enum_value
from backoffice.core.exceptions import NotFoundError, ValidationFailedError
from backoffice.models.return_policy import PolicyScope, ReturnPolicy


logger = logging.getLogger(__name__)

SCOPE_RANK = {
    PolicyScope.PRODUCT: 0,
    PolicyScope.CATEGORY: 1,
    PolicyScope.GLOBAL: 2,
}


@dataclass(frozen=True)
class PolicyResolution:
    """Outcome of policy resolution for one SKU."""
    policy: Optional[ReturnPolicy]

    @property
    def returnable(self) -> bool:
        return self.policy is not None and self.policy.is_returnable

    @property
    def window_days(self) -> Optional[int]:
        return self.policy.return_window_days if self.returnable else None


def select_policy(
    policies: Iterable[ReturnPolicy],
    product_id: Optional[uuid.UUID],
    category_id: Optional[uuid.UUID],
) -> Optional[ReturnPolicy]:
    """
    Pick the applicable policy from a list of candidates.

    Policies that do not match the product/category, and inactive ones, are
    ignored. Among the rest the narrowest scope wins, then the highest
    priority; remaining ties go to the oldest policy.
    """
    candidates = []
    for policy in policies:
        if not policy.is_active:
            continue
        scope = policy.scope
        if scope == PolicyScope.PRODUCT and policy.product_id != product_id:
            continue
        if scope == PolicyScope.CATEGORY and (category_id is None or policy.category_id != category_id):
            continue
        candidates.append(policy)

    if not candidates:
        return None

    def rank(policy: ReturnPolicy) -> Tuple:
        created = policy.created_at.timestamp() if policy.created_at else 0.0
        return (SCOPE_RANK[policy.scope], -policy.priority, created)

    return min(candidates, key=rank)


class ReturnPolicyService:
    """Loads candidate policies and resolves the applicable one."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def resolve(
        self,
        product_id: Optional[uuid.UUID],
        category_id: Optional[uuid.UUID],
    ) -> PolicyResolution:
        conditions = [and_(ReturnPolicy.product_id.is_(None), ReturnPolicy.category_id.is_(None))]
        if product_id is not None:
            conditions.append(ReturnPolicy.product_id == product_id)
        if category_id is not None:
            conditions.append(
                and_(ReturnPolicy.product_id.is_(None), ReturnPolicy.category_id == category_id)
            )

        result = await self.db.execute(
            select(ReturnPolicy).where(ReturnPolicy.is_active.is_(True), or_(*conditions))
        )
        policy = select_policy(result.scalars().all(), product_id, category_id)
        return PolicyResolution(policy=policy)

    # ==================== ADMINISTRATION ====================

    async def get_policy(self, policy_id: uuid.UUID) -> ReturnPolicy:
        policy = await self.db.get(ReturnPolicy, policy_id)
        if policy is None:
            raise NotFoundError("Return policy not found", details={"policy_id": str(policy_id)})
        return policy

    async def list_policies(
        self,
        is_active: Optional[bool] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[List[ReturnPolicy], int]:
        query = select(ReturnPolicy)
        if is_active is not None:
            query = query.where(ReturnPolicy.is_active.is_(is_active))

        total = (await self.db.execute(select(func.count()).select_from(query.subquery()))).scalar() or 0
        result = await self.db.execute(
            query.order_by(ReturnPolicy.priority.desc(), ReturnPolicy.created_at).offset(skip).limit(limit)
        )
        return list(result.scalars().all()), total

    async def create_policy(self, data: dict) -> ReturnPolicy:
        data = self._to_column_values(data)
        self._validate(data)
        policy = ReturnPolicy(**data)
        self.db.add(policy)
        await self.db.commit()
        await self.db.refresh(policy)
        logger.info(f"Created return policy {policy.id} ({policy.scope.value}) '{policy.name}'")
        return policy

    async def update_policy(self, policy_id: uuid.UUID, data: dict) -> ReturnPolicy:
        policy = await self.get_policy(policy_id)
        data = self._to_column_values(data)
        merged = {
            "product_id": policy.product_id,
            "category_id": policy.category_id,
            "allowed_return_reasons": policy.allowed_return_reasons,
            "excluded_return_reasons": policy.excluded_return_reasons,
            **data,
        }
        self._validate(merged)
        for key, value in data.items():
            setattr(policy, key, value)
        await self.db.commit()
        await self.db.refresh(policy)
        logger.info(f"Updated return policy {policy.id}: {sorted(data.keys())}")
        return policy

    @staticmethod
    def _to_column_values(data: dict) -> dict:
        """Enum members to their stored string values."""
        values = {}
        for key, value in data.items():
            if isinstance(value, list):
                values[key] = [get_enum_value(item) for item in value]
            elif isinstance(value, Enum):
                values[key] = value.value
            else:
                values[key] = value
        return values

    @staticmethod
    def _validate(data: dict) -> None:
        if data.get("product_id") is not None and data.get("category_id") is not None:
            raise ValidationFailedError(
                "A policy applies to a product or a category, not both"
            )
        allowed = set(data.get("allowed_return_reasons") or [])
        excluded = set(data.get("excluded_return_reasons") or [])
        overlap = allowed & excluded
        if overlap:
            raise ValidationFailedError(
                "Reasons cannot be both allowed and excluded",
                details={"reasons": sorted(overlap)},
            )
