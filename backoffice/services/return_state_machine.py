"""
Return Request State Machine

Single source of truth for return request transitions.

    PENDING ──► APPROVED ──► ITEM_RECEIVED ──► QUALITY_CHECK ──► PROCESSING ──► COMPLETED
       │           │                                              ▲     │
       │           └──► CANCELLED                                 └─────┘ (refund retry)
       ├──► CANCELLED
       └──► REJECTED

A request never revisits a state it has left; PROCESSING is the one state
that may be re-entered, after a failed refund attempt.
"""

from typing import Dict, List

from backoffice.core.exceptions import InvalidTransitionError
from backoffice.models.return_request import ReturnStatus, TERMINAL_RETURN_STATUSES


RETURN_TRANSITIONS: Dict[str, List[str]] = {
    ReturnStatus.PENDING.value: [
        ReturnStatus.APPROVED.value,
        ReturnStatus.REJECTED.value,
        ReturnStatus.CANCELLED.value,
    ],
    ReturnStatus.APPROVED.value: [
        ReturnStatus.ITEM_RECEIVED.value,
        ReturnStatus.CANCELLED.value,
    ],
    ReturnStatus.ITEM_RECEIVED.value: [
        ReturnStatus.QUALITY_CHECK.value,
    ],
    ReturnStatus.QUALITY_CHECK.value: [
        ReturnStatus.PROCESSING.value,
    ],
    ReturnStatus.PROCESSING.value: [
        ReturnStatus.PROCESSING.value,  # Retry after a failed refund
        ReturnStatus.COMPLETED.value,
    ],
    ReturnStatus.COMPLETED.value: [],
    ReturnStatus.REJECTED.value: [],
    ReturnStatus.CANCELLED.value: [],
}

# Statuses that count as "active" for the one-open-return-per-line rule
ACTIVE_RETURN_STATUSES = [
    status for status in RETURN_TRANSITIONS if status not in TERMINAL_RETURN_STATUSES
]


def can_transition(current_status: str, new_status: str) -> bool:
    return new_status in RETURN_TRANSITIONS.get(current_status, [])


def get_allowed_transitions(current_status: str) -> List[str]:
    return RETURN_TRANSITIONS.get(current_status, [])


def validate_transition(current_status: str, new_status: str) -> None:
    """Raise InvalidTransitionError unless current -> new is in the table."""
    if can_transition(current_status, new_status):
        return

    allowed = get_allowed_transitions(current_status)
    if not allowed:
        raise InvalidTransitionError(
            f"Return in '{current_status}' status cannot be changed. This is a terminal state.",
            details={"current_status": current_status, "requested_status": new_status},
        )
    raise InvalidTransitionError(
        f"Cannot change return from '{current_status}' to '{new_status}'. "
        f"Allowed transitions: {', '.join(allowed)}",
        details={
            "current_status": current_status,
            "requested_status": new_status,
            "allowed": allowed,
        },
    )
