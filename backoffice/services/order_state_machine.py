"""
Order State Machine

This module is the single source of truth for order status transitions.
OrderService applies side effects (stock restoration, delivery stamping);
this module only decides what is allowed and by whom.

    PENDING ──► PAID ──► PROCESSING ──► SHIPPED ──► DELIVERED
       │          │           │
       └──────────┴───────────┴──► CANCELLED
"""

from typing import Dict, List

from backoffice.core.exceptions import InvalidTransitionError, PermissionDeniedError
from backoffice.core.permissions import Actor, ActorRole
from backoffice.models.order import OrderStatus


# =============================================================================
# TRANSITION RULES
# =============================================================================

# Format: current_status -> [list of allowed next statuses]
ORDER_TRANSITIONS: Dict[str, List[str]] = {
    OrderStatus.PENDING.value: [
        OrderStatus.PAID.value,        # Payment confirmed
        OrderStatus.CANCELLED.value,   # Customer cancel / payment expired or denied
    ],
    OrderStatus.PAID.value: [
        OrderStatus.PROCESSING.value,  # Start fulfilment
        OrderStatus.CANCELLED.value,
    ],
    OrderStatus.PROCESSING.value: [
        OrderStatus.SHIPPED.value,     # Handed to courier
        OrderStatus.CANCELLED.value,
    ],
    OrderStatus.SHIPPED.value: [
        OrderStatus.DELIVERED.value,
    ],
    OrderStatus.DELIVERED.value: [],   # Terminal for the order; returns take over
    OrderStatus.CANCELLED.value: [],   # Terminal state
}

TRANSITION_ACTIONS: Dict[tuple, str] = {
    (OrderStatus.PENDING.value, OrderStatus.PAID.value): "Confirm Payment",
    (OrderStatus.PENDING.value, OrderStatus.CANCELLED.value): "Cancel",
    (OrderStatus.PAID.value, OrderStatus.PROCESSING.value): "Start Processing",
    (OrderStatus.PAID.value, OrderStatus.CANCELLED.value): "Cancel",
    (OrderStatus.PROCESSING.value, OrderStatus.SHIPPED.value): "Ship",
    (OrderStatus.PROCESSING.value, OrderStatus.CANCELLED.value): "Cancel",
    (OrderStatus.SHIPPED.value, OrderStatus.DELIVERED.value): "Mark Delivered",
}

# Transitions a customer may trigger on their own order
CUSTOMER_TRANSITIONS = {OrderStatus.CANCELLED.value}

# Transitions driven by payment gateway notifications
SYSTEM_TRANSITIONS = {OrderStatus.PAID.value, OrderStatus.CANCELLED.value}


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def can_transition(current_status: str, new_status: str) -> bool:
    """Check if a transition is allowed."""
    return new_status in ORDER_TRANSITIONS.get(current_status, [])


def get_allowed_transitions(current_status: str) -> List[str]:
    """Statuses reachable from the current status."""
    return ORDER_TRANSITIONS.get(current_status, [])


def get_transition_action(current_status: str, new_status: str) -> str:
    """Human-readable action name for a transition."""
    return TRANSITION_ACTIONS.get((current_status, new_status), f"{current_status} -> {new_status}")


def is_terminal(status: str) -> bool:
    return not ORDER_TRANSITIONS.get(status)


def validate_transition(current_status: str, new_status: str) -> None:
    """Raise InvalidTransitionError unless current -> new is in the table."""
    if can_transition(current_status, new_status):
        return

    allowed = get_allowed_transitions(current_status)
    if not allowed:
        raise InvalidTransitionError(
            f"Order in '{current_status}' status cannot be changed. This is a terminal state.",
            details={"current_status": current_status, "requested_status": new_status},
        )
    raise InvalidTransitionError(
        f"Cannot change order from '{current_status}' to '{new_status}'. "
        f"Allowed transitions: {', '.join(allowed)}",
        details={
            "current_status": current_status,
            "requested_status": new_status,
            "allowed": allowed,
        },
    )


def validate_actor(actor: Actor, customer_id, new_status: str) -> None:
    """
    Role check for an order transition.

    Staff may perform any transition, the system actor only payment-driven
    ones, and a customer may only cancel an order they own.
    """
    if actor.role == ActorRole.STAFF:
        return

    if actor.role == ActorRole.SYSTEM:
        if new_status in SYSTEM_TRANSITIONS:
            return
        raise PermissionDeniedError(
            f"System actor cannot move an order to '{new_status}'",
            details={"requested_status": new_status},
        )

    if not actor.owns(customer_id):
        raise PermissionDeniedError("You can only change your own orders")
    if new_status not in CUSTOMER_TRANSITIONS:
        raise PermissionDeniedError(
            "Customers can only cancel orders",
            details={"requested_status": new_status},
        )
