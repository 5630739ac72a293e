from typing import Annotated
import uuid
import logging

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from backoffice.database import get_db
from backoffice.core.permissions import Actor, ActorRole
from backoffice.core.security import verify_access_token
from backoffice.services.notification_service import NotificationService
from backoffice.services.payment_gateway import PaymentGateway


logger = logging.getLogger(__name__)

# HTTP Bearer security scheme
security = HTTPBearer()

# Roles a bearer token may carry; SYSTEM is reserved for gateway callbacks
TOKEN_ROLES = {ActorRole.CUSTOMER.value, ActorRole.STAFF.value}


async def get_current_actor(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> Actor:
    """
    Dependency to get the authenticated caller.
    Identity comes entirely from the JWT (sub + role) issued by the identity service.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = verify_access_token(credentials.credentials)
    if payload is None:
        logger.warning("Token verification failed - invalid or expired token")
        raise credentials_exception

    try:
        actor_id = uuid.UUID(payload["sub"])
    except ValueError:
        logger.warning(f"Invalid subject in token: {payload['sub']}")
        raise credentials_exception

    role = str(payload["role"]).upper()
    if role not in TOKEN_ROLES:
        logger.warning(f"Token for {actor_id} carries unsupported role {role}")
        raise credentials_exception

    return Actor(id=actor_id, role=ActorRole(role))


async def get_staff_actor(actor: Annotated[Actor, Depends(get_current_actor)]) -> Actor:
    if not actor.is_staff:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Staff access required",
        )
    return actor


def get_payment_gateway(request: Request) -> PaymentGateway:
    return request.app.state.payment_gateway


def get_notifier(request: Request) -> NotificationService:
    return request.app.state.notifier


CurrentActor = Annotated[Actor, Depends(get_current_actor)]
StaffActor = Annotated[Actor, Depends(get_staff_actor)]
DB = Annotated[AsyncSession, Depends(get_db)]
Gateway = Annotated[PaymentGateway, Depends(get_payment_gateway)]
Notifier = Annotated[NotificationService, Depends(get_notifier)]
