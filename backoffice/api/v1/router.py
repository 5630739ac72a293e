from fastapi import APIRouter

from backoffice.api.v1.endpoints import (
    # Orders & Payments
    orders,
    payments,
    # Returns
    returns,
    return_policies,
)


# Create main API router
api_router = APIRouter(prefix="/api/v1")

# ==================== Orders ====================
api_router.include_router(
    orders.router,
    prefix="/orders",
    tags=["Orders"]
)

# ==================== Payments (Midtrans) ====================
api_router.include_router(
    payments.router,
    prefix="/payments",
    tags=["Payments"]
)

# ==================== Returns ====================
api_router.include_router(
    returns.router,
    prefix="/returns",
    tags=["Returns"]
)

api_router.include_router(
    return_policies.router,
    prefix="/return-policies",
    tags=["Return Policies"]
)
