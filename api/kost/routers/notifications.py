"""
Live notification feed over a websocket.

Each connection owns one NotificationHub. The client picks the active property
and mutates its notifications with small JSON commands; after every cache
change the hub pushes a full ``NotificationFeed`` snapshot.

  {"action": "select_property", "property_id": "<uuid>" | null}
  {"action": "mark_as_read", "id": "<uuid>"}
  {"action": "mark_all_as_read"}
  {"action": "delete", "id": "<uuid>"}
  {"action": "create", "title": ..., "message": ..., "type": ..., ...}
"""
import logging
import uuid

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status

from kost.core.deps import authenticate, get_gateway, token_from
from kost.core.errors import AuthError, KostError, NotFoundError, ValidationError
from kost.core.gateway import Entity, Gateway
from kost.schemas.notification import NotificationFeed
from kost.services.notifications import NotificationHub

logger = logging.getLogger(__name__)

router = APIRouter(tags=["notifications"])


def _uuid(value, field: str = "id") -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise ValidationError(field, "must be a UUID")


async def _owned_property(hub: NotificationHub, gateway: Gateway, raw, field: str) -> uuid.UUID | None:
    property_id = _uuid(raw, field) if raw else None
    if property_id is not None:
        owned = await gateway.select(Entity.PROPERTIES, {"id": property_id, "owner_id": hub.viewer_id})
        if not owned:
            raise NotFoundError(Entity.PROPERTIES.value, property_id)
    return property_id


async def _create(hub: NotificationHub, gateway: Gateway, command: dict) -> None:
    """Viewers may only address themselves or properties they own."""
    target_user_id = _uuid(command["target_user_id"], "target_user_id") if command.get("target_user_id") else None
    if target_user_id is not None and target_user_id != hub.viewer_id:
        raise NotFoundError(Entity.USERS.value, target_user_id)
    target_property_id = await _owned_property(hub, gateway, command.get("target_property_id"), "target_property_id")
    await hub.create(
        command.get("title", ""),
        command.get("message", ""),
        command.get("type", "system"),
        target_user_id=target_user_id,
        target_property_id=target_property_id,
    )


async def _dispatch(hub: NotificationHub, gateway: Gateway, command) -> None:
    if not isinstance(command, dict):
        raise ValidationError("command", "must be a JSON object")
    action = command.get("action")
    if action == "select_property":
        await hub.switch_scope(await _owned_property(hub, gateway, command.get("property_id"), "property_id"))
    elif action == "mark_as_read":
        await hub.mark_as_read(_uuid(command.get("id")))
    elif action == "mark_all_as_read":
        await hub.mark_all_as_read()
    elif action == "delete":
        await hub.delete(_uuid(command.get("id")))
    elif action == "create":
        await _create(hub, gateway, command)
    elif action == "reload":
        await hub.reload()
    else:
        raise ValidationError("action", f"unknown action {action!r}")


@router.websocket("/ws/notifications")
async def notification_feed(websocket: WebSocket, gateway: Gateway = Depends(get_gateway)):
    token = websocket.query_params.get("token") or token_from(websocket.headers, websocket.cookies)
    try:
        session = await authenticate(token, gateway)
    except AuthError:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    hub = NotificationHub(gateway)

    async def push(feed: NotificationFeed) -> None:
        await websocket.send_json({"type": "feed", **feed.model_dump(mode="json")})

    remove_listener = hub.add_listener(push)
    try:
        await hub.sign_in(session.user_id)
        while True:
            command = await websocket.receive_json()
            try:
                await _dispatch(hub, gateway, command)
            except KostError as exc:
                await websocket.send_json({"type": "error", "status": exc.status_code, **exc.to_dict()})
    except WebSocketDisconnect:
        logger.debug("Notification socket closed for user %s", session.user_id)
    finally:
        remove_listener()
        await hub.sign_out()
