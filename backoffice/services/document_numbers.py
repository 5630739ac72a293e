"""
Human-readable document numbers.

Format: {PREFIX}-{YYYYMMDD}-{8 hex chars}, e.g. ORD-20260115-1A2B3C4D.
The random suffix keeps numbers unique under concurrent creation without a
shared counter row.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

ORDER_PREFIX = "ORD"
RETURN_PREFIX = "RET"
QUALITY_CHECK_PREFIX = "QC"
DAMAGE_PREFIX = "DMG"


def generate_document_number(prefix: str, at: Optional[datetime] = None) -> str:
    at = at or datetime.now(timezone.utc)
    return f"{prefix}-{at.strftime('%Y%m%d')}-{uuid.uuid4().hex[:8].upper()}"


def refund_key_for(return_number: str) -> str:
    """Deterministic gateway idempotency key for a return's refund."""
    return f"refund-{return_number}"
