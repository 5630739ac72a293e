"""
Base Schema Classes for Pydantic Models

RULE: All response schemas that read from ORM models inherit from
BaseResponseSchema; all request bodies inherit from BaseCreateSchema or
BaseUpdateSchema.
"""

import math

from pydantic import BaseModel, ConfigDict


class BaseResponseSchema(BaseModel):
    """
    Base class for all response schemas that read from ORM models.

    Usage:
        class ReturnPolicyResponse(BaseResponseSchema):
            id: UUID
            name: str
            category_id: Optional[UUID] = None
    """
    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
    )


class BaseCreateSchema(BaseModel):
    """
    Base class for create/input schemas.

    Extra fields are ignored for forward compatibility.
    """
    model_config = ConfigDict(
        extra='ignore',
    )


class BaseUpdateSchema(BaseModel):
    """
    Base class for update/patch schemas.

    All fields are optional; use ``model_dump(exclude_unset=True)``.
    """
    model_config = ConfigDict(
        extra='ignore',
    )


class PaginatedResponse(BaseModel):
    """Pagination envelope shared by list endpoints."""
    total: int
    page: int
    size: int
    pages: int



def page_count(total: int, size: int) -> int:
    return math.ceil(total / size) if size else 0
