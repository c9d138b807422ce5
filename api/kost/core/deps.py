import uuid

from fastapi import Depends, Request

from kost.core.database import get_sessionmaker
from kost.core.errors import AuthError, NotFoundError
from kost.core.gateway import Entity, Gateway, SqlGateway
from kost.core.redis import RedisChangeFeed, get_redis
from kost.core.scope import Session
from kost.schemas.rental import PropertyRead

# Shared gateway (one engine, one Redis connection pool per process)
_gateway: SqlGateway | None = None


def get_gateway() -> Gateway:
    global _gateway
    if _gateway is None:
        _gateway = SqlGateway(get_sessionmaker(), RedisChangeFeed(get_redis()))
    return _gateway


async def close_gateway() -> None:
    global _gateway
    if _gateway is not None:
        await _gateway.aclose()
        _gateway = None


def token_from(headers, cookies) -> str | None:
    auth = headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip() or None
    return cookies.get("access_token")


async def authenticate(token: str | None, gateway: Gateway) -> Session:
    """Decode a session token issued elsewhere and check the user is still active."""
    if not token:
        raise AuthError("Not authenticated")
    session = Session.from_token(token)
    rows = await gateway.select(Entity.USERS, {"id": session.user_id})
    if not rows or not rows[0].get("is_active", True):
        raise AuthError("User not found or inactive")
    return session


async def get_current_user(request: Request, gateway: Gateway = Depends(get_gateway)) -> Session:
    return await authenticate(token_from(request.headers, request.cookies), gateway)


async def get_property(
    property_id: uuid.UUID,
    session: Session = Depends(get_current_user),
    gateway: Gateway = Depends(get_gateway),
) -> PropertyRead:
    rows = await gateway.select(Entity.PROPERTIES, {"id": property_id, "owner_id": session.user_id})
    if not rows:
        raise NotFoundError(Entity.PROPERTIES.value, property_id)
    return PropertyRead.model_validate(rows[0])
