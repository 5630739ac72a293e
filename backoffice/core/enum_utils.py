"""
Enum Utilities for VARCHAR-based Status Fields

• Database: VARCHAR(30) - NOT native database ENUM
• SQLAlchemy: String(30) with Mapped[str]
• Pydantic: Python Enum for API validation
• Case: All enum values stored in UPPERCASE

INPUT (API Request):
    Pydantic Enum → .value → String → Database
    Example: ReturnStatus.PENDING → "PENDING" → VARCHAR

OUTPUT (API Response):
    Database → String → Return directly
"""

from enum import Enum
from typing import Any, Optional


def get_enum_value(value: Any) -> Optional[str]:
    """
    Safely get string value from an enum or string.

    Examples:
        >>> get_enum_value(OrderStatus.PENDING)
        'PENDING'
        >>> get_enum_value("PENDING")
        'PENDING'
        >>> get_enum_value(None)
        None
    """
    if value is None:
        return None
    if isinstance(value, Enum):
        return value.value
    return str(value)


def normalize_to_uppercase(value: Any) -> Any:
    """Uppercase string input so 'delivered' and 'DELIVERED' are equivalent."""
    if isinstance(value, str):
        return value.strip().upper()
    if isinstance(value, list):
        return [normalize_to_uppercase(item) for item in value]
    return value


def create_uppercase_validator(*field_names: str) -> classmethod:
    """
    Create a Pydantic field_validator that normalizes values to UPPERCASE.

    Usage:
        class ReturnRequestCreate(BaseModel):
            reason_code: ReturnReason

            _normalize_reason = create_uppercase_validator('reason_code')
    """
    from pydantic import field_validator

    @field_validator(*field_names, mode='before')
    @classmethod
    def validate(cls, v):
        return normalize_to_uppercase(v)

    return validate
