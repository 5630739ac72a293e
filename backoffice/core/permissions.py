from dataclasses import dataclass
from enum import Enum
import uuid

from backoffice.core.exceptions import PermissionDeniedError


class ActorRole(str, Enum):
    """Role of the identity acting on the engine."""
    CUSTOMER = "CUSTOMER"
    STAFF = "STAFF"
    SYSTEM = "SYSTEM"  # Payment gateway callbacks and other internal jobs


# Well-known identity used for gateway-driven transitions
SYSTEM_ACTOR_ID = uuid.UUID(int=0)


@dataclass(frozen=True)
class Actor:
    """The authenticated caller, as supplied by the identity service."""

    id: uuid.UUID
    role: ActorRole

    @classmethod
    def system(cls) -> "Actor":
        return cls(id=SYSTEM_ACTOR_ID, role=ActorRole.SYSTEM)

    @property
    def is_staff(self) -> bool:
        return self.role == ActorRole.STAFF

    @property
    def is_system(self) -> bool:
        return self.role == ActorRole.SYSTEM

    @property
    def is_back_office(self) -> bool:
        """Staff and internal system actors."""
        return self.role in (ActorRole.STAFF, ActorRole.SYSTEM)

    def owns(self, user_id: uuid.UUID) -> bool:
        return self.id == user_id


def require_staff(actor: Actor, action: str) -> None:
    """Raise PermissionDeniedError unless the actor is staff."""
    if not actor.is_staff:
        raise PermissionDeniedError(
            f"Only staff can {action}",
            details={"actor_role": actor.role.value},
        )


def can_view(actor: Actor, owner_id: uuid.UUID) -> bool:
    """Customers see only their own records; back-office sees everything."""
    return actor.is_back_office or actor.owns(owner_id)
