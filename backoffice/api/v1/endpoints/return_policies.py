"""
Return Policy API Endpoints

Staff administration of product, category and global return policies.
"""
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Query, status

from backoffice.api.deps import DB, StaffActor
from backoffice.schemas.base import page_count
from backoffice.schemas.return_policy import (
    ReturnPolicyCreate,
    ReturnPolicyListResponse,
    ReturnPolicyResponse,
    ReturnPolicyUpdate,
)
from backoffice.services.return_policy_service import ReturnPolicyService


logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("", response_model=ReturnPolicyListResponse, summary="List return policies")
async def list_policies(
    db: DB,
    actor: StaffActor,
    is_active: Optional[bool] = Query(None),
    page: int = Query(1, ge=1),
    size: int = Query(50, ge=1, le=100),
):
    items, total = await ReturnPolicyService(db).list_policies(is_active, (page - 1) * size, size)
    return ReturnPolicyListResponse(
        items=[ReturnPolicyResponse.model_validate(policy) for policy in items],
        total=total,
        page=page,
        size=size,
        pages=page_count(total, size),
    )


@router.post(
    "",
    response_model=ReturnPolicyResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create return policy",
)
async def create_policy(data: ReturnPolicyCreate, db: DB, actor: StaffActor):
    """
    Create a policy. Set ``product_id`` or ``category_id`` to scope it;
    leave both empty for the global default.
    """
    return await ReturnPolicyService(db).create_policy(data.model_dump())


@router.get("/{policy_id}", response_model=ReturnPolicyResponse, summary="Get return policy")
async def get_policy(policy_id: uuid.UUID, db: DB, actor: StaffActor):
    return await ReturnPolicyService(db).get_policy(policy_id)


@router.put("/{policy_id}", response_model=ReturnPolicyResponse, summary="Update return policy")
async def update_policy(policy_id: uuid.UUID, data: ReturnPolicyUpdate, db: DB, actor: StaffActor):
    """Changes apply to orders placed afterwards; existing lines keep their snapshot."""
    return await ReturnPolicyService(db).update_policy(policy_id, data.model_dump(exclude_unset=True))
