"""
FastAPI dependencies for actor identity and service wiring.

Identity is issued elsewhere: requests carry a bearer JWT whose sub claim is
the user id and whose role claim is one of customer, courier, kitchen or
system. Long-lived collaborators (event bus, blob store, publisher registry,
routing client) live on app.state and are created in the application
lifespan.
"""

from dataclasses import dataclass
from typing import Annotated, Optional
from uuid import UUID

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from delivery.core.config import get_settings
from delivery.core.logging import get_logger, set_actor
from delivery.database.connection import get_db
from delivery.services.notifications.service import FeedNotificationSink, NotificationEmitter
from delivery.services.orders.enums import ActorRole
from delivery.services.orders.service import DeliveryService

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Actor:
    """Authenticated party making a request."""

    id: UUID
    role: ActorRole


class InvalidToken(Exception):
    """Raised when a bearer token cannot identify an actor."""


def decode_actor_token(token: str) -> Actor:
    """
    Resolve an actor from a JWT.

    Raises:
        InvalidToken: If the token is invalid or lacks sub/role claims
    """
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError as e:
        logger.warning(
            "Authentication failed: JWT validation error",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise InvalidToken(str(e)) from e

    try:
        actor = Actor(id=UUID(payload["sub"]), role=ActorRole(payload["role"]))
    except (KeyError, TypeError, ValueError) as e:
        logger.warning("Authentication failed: invalid claims", error=str(e))
        raise InvalidToken("Token must carry sub and role claims") from e

    set_actor(str(actor.id), actor.role.value)
    return actor


def create_access_token(actor_id: UUID, role: ActorRole, **claims) -> str:
    """Sign a token for an actor, used by tooling and tests."""
    settings = get_settings()
    payload = {"sub": str(actor_id), "role": role.value, **claims}
    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


async def get_current_actor(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> Actor:
    """
    Validate the bearer token and return the actor.

    Raises:
        HTTPException: 401 if the token is missing or invalid
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if credentials is None:
        logger.warning("Authentication failed: No credentials provided")
        raise credentials_exception

    try:
        return decode_actor_token(credentials.credentials)
    except InvalidToken:
        raise credentials_exception


def require_role(*allowed_roles: ActorRole):
    """
    Dependency factory restricting an endpoint to some roles.

    Example:
        @router.post("/{order_id}/claim")
        async def claim(actor: Annotated[Actor, Depends(require_role(ActorRole.COURIER))]):
            ...
    """

    async def role_checker(
        actor: Annotated[Actor, Depends(get_current_actor)],
    ) -> Actor:
        if actor.role not in allowed_roles:
            logger.warning(
                "Authorization failed: role not allowed",
                actor_id=str(actor.id),
                role=actor.role.value,
                allowed_roles=[role.value for role in allowed_roles],
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="You are not allowed to perform this action",
            )
        return actor

    return role_checker


def get_delivery_service(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> DeliveryService:
    """Delivery service bound to the request's session."""
    state = request.app.state
    return DeliveryService(
        db,
        event_bus=state.event_bus,
        notifier=NotificationEmitter(FeedNotificationSink(state.event_bus)),
        blob_store=state.blob_store,
        publishers=state.publishers,
    )


CurrentActor = Annotated[Actor, Depends(get_current_actor)]
CurrentCustomer = Annotated[Actor, Depends(require_role(ActorRole.CUSTOMER))]
CurrentCourier = Annotated[Actor, Depends(require_role(ActorRole.COURIER))]
CurrentKitchen = Annotated[Actor, Depends(require_role(ActorRole.KITCHEN, ActorRole.SYSTEM))]
DatabaseSession = Annotated[AsyncSession, Depends(get_db)]
Service = Annotated[DeliveryService, Depends(get_delivery_service)]
