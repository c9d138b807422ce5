"""
Notification hub: live notification cache for one viewer.

States:
  Unauthenticated                  no subscription, empty cache
  Authenticated(viewer, scope)     exactly one change-feed subscription,
                                   filtered to the scope plus global entries

Transitions are serialized by a lock and always tear the old feed down before
opening a new one. Any change event on the live feed triggers a full reload;
events and reloads belonging to an earlier generation are dropped.

Mutations are optimistic: the cache changes first, the remote write follows,
and the cache is put back if the write fails.
"""
import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

from kost.core.errors import AuthError, NotFoundError, parse_input
from kost.core.gateway import ChangeEvent, Entity, Filters, Gateway, Subscription, record_matches
from kost.core.scope import AuthEvent, ScopeContext, ScopeGuard, ScopeToken, Session
from kost.models.enums import NotificationStatus, NotificationType
from kost.schemas.notification import NotificationCreate, NotificationFeed, NotificationRead

logger = logging.getLogger(__name__)

HubListener = Callable[[NotificationFeed], Awaitable[None]]

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _newest_first(notification: NotificationRead):
    return (notification.created_at or _EPOCH, str(notification.id))


class NotificationHub:
    def __init__(self, gateway: Gateway):
        self._gateway = gateway
        self._lock = asyncio.Lock()
        self._guard = ScopeGuard()
        self._subscription: Subscription | None = None
        self._listeners: list[HubListener] = []
        self.viewer_id: uuid.UUID | None = None
        self.notifications: dict[uuid.UUID, NotificationRead] = {}

    # ── State ───────────────────────────────────────────────────────────────

    @property
    def is_authenticated(self) -> bool:
        return self.viewer_id is not None

    @property
    def scope_id(self) -> uuid.UUID | None:
        return self._guard.scope_id

    @property
    def subscription(self) -> Subscription | None:
        return self._subscription

    @property
    def unread_count(self) -> int:
        return sum(1 for n in self.notifications.values() if n.status == NotificationStatus.UNREAD)

    def feed(self) -> NotificationFeed:
        return NotificationFeed(
            notifications=sorted(self.notifications.values(), key=_newest_first, reverse=True),
            unread_count=self.unread_count,
        )

    def add_listener(self, callback: HubListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    def bind(self, context: ScopeContext) -> Callable[[], None]:
        async def _on_auth(event: AuthEvent, session: Session | None) -> None:
            if event is AuthEvent.SIGNED_IN and session is not None:
                await self.sign_in(session.user_id, context.current_scope())
            else:
                await self.sign_out()

        remove_auth = context.on_auth_state_change(_on_auth)
        remove_scope = context.on_scope_change(self.switch_scope)

        def unbind() -> None:
            remove_auth()
            remove_scope()

        return unbind

    # ── Transitions ─────────────────────────────────────────────────────────

    async def sign_in(self, viewer_id: uuid.UUID, scope_id: uuid.UUID | None = None) -> None:
        async with self._lock:
            await self._teardown()
            self.viewer_id = viewer_id
            self._guard.switch(scope_id)
            self.notifications = {}
            await self._open()
        await self.reload()

    async def switch_scope(self, scope_id: uuid.UUID | None) -> None:
        async with self._lock:
            if scope_id == self._guard.scope_id and (self._subscription or not self.is_authenticated):
                return
            await self._teardown()
            self._guard.switch(scope_id)
            self.notifications = {}
            if not self.is_authenticated:
                return
            await self._open()
        await self.reload()

    async def sign_out(self) -> None:
        async with self._lock:
            await self._teardown()
            self._guard.switch(None)
            self.viewer_id = None
            self.notifications = {}
        await self._changed()

    async def reload(self) -> bool:
        if not self.is_authenticated:
            return False
        token = self._guard.capture(self._guard.scope_id)
        rows = await self._gateway.select(Entity.NOTIFICATIONS, self._filters(), order="-created_at")
        if not self._guard.is_current(token):
            logger.debug("Discarding stale notification reload for scope %s", token[0])
            return False
        notifications = [NotificationRead.model_validate(row) for row in rows]
        self.notifications = {n.id: n for n in notifications}
        await self._changed()
        return True

    # ── Mutations ───────────────────────────────────────────────────────────

    async def mark_as_read(self, notification_id: uuid.UUID) -> NotificationRead:
        self._require_viewer()
        token = self._guard.capture(self._guard.scope_id)
        before = self._get(notification_id)
        if before.status == NotificationStatus.READ:
            return before

        self.notifications[before.id] = before.model_copy(update={"status": NotificationStatus.READ})
        await self._changed()
        try:
            row = await self._gateway.update(
                Entity.NOTIFICATIONS, before.id, {"status": NotificationStatus.READ.value}
            )
        except Exception:
            await self._rollback(token, [before])
            raise
        return NotificationRead.model_validate(row)

    async def mark_all_as_read(self) -> int:
        """Mark every cached unread entry read. Only the entries whose write failed are put back."""
        self._require_viewer()
        token = self._guard.capture(self._guard.scope_id)
        unread = [n for n in self.notifications.values() if n.status == NotificationStatus.UNREAD]
        if not unread:
            return 0

        for notification in unread:
            self.notifications[notification.id] = notification.model_copy(
                update={"status": NotificationStatus.READ}
            )
        await self._changed()
        results = await asyncio.gather(
            *(
                self._gateway.update(Entity.NOTIFICATIONS, n.id, {"status": NotificationStatus.READ.value})
                for n in unread
            ),
            return_exceptions=True,
        )
        failed = [(n, r) for n, r in zip(unread, results) if isinstance(r, BaseException)]
        if failed:
            logger.warning("%d of %d notifications could not be marked read", len(failed), len(unread))
            await self._rollback(token, [n for n, _ in failed])
            raise failed[0][1]
        return len(unread)

    async def delete(self, notification_id: uuid.UUID) -> None:
        self._require_viewer()
        token = self._guard.capture(self._guard.scope_id)
        before = self._get(notification_id)

        self.notifications.pop(before.id, None)
        await self._changed()
        try:
            await self._gateway.delete(Entity.NOTIFICATIONS, before.id)
        except Exception:
            await self._rollback(token, [before])
            raise

    async def create(
        self,
        title: str,
        message: str,
        type: NotificationType | str = NotificationType.SYSTEM,
        target_user_id: uuid.UUID | None = None,
        target_property_id: uuid.UUID | None = None,
    ) -> NotificationRead:
        self._require_viewer()
        payload = parse_input(
            NotificationCreate,
            {
                "title": title,
                "message": message,
                "type": type,
                "target_user_id": target_user_id,
                "target_property_id": target_property_id,
            },
        )
        token = self._guard.capture(self._guard.scope_id)
        provisional = NotificationRead(
            id=uuid.uuid4(),
            status=NotificationStatus.UNREAD,
            created_at=datetime.now(timezone.utc),
            **payload.model_dump(),
        )
        visible = record_matches(provisional.model_dump(), self._filters())
        if visible:
            self.notifications[provisional.id] = provisional
            await self._changed()

        try:
            row = await self._gateway.insert(
                Entity.NOTIFICATIONS, {**payload.model_dump(), "status": NotificationStatus.UNREAD.value}
            )
        except Exception:
            if visible and self._guard.is_current(token):
                self.notifications.pop(provisional.id, None)
                await self._changed()
            raise

        created = NotificationRead.model_validate(row)
        if visible and self._guard.is_current(token):
            self.notifications.pop(provisional.id, None)
            self.notifications[created.id] = created
            await self._changed()
        return created

    # ── Internals ───────────────────────────────────────────────────────────

    def _filters(self) -> Filters:
        return {
            "target_property_id": [self._guard.scope_id, None] if self._guard.scope_id else [None],
            "target_user_id": [self.viewer_id, None],
        }

    def _require_viewer(self) -> uuid.UUID:
        if self.viewer_id is None:
            raise AuthError("Sign in to manage notifications")
        return self.viewer_id

    def _get(self, notification_id: uuid.UUID) -> NotificationRead:
        notification = self.notifications.get(notification_id)
        if notification is None:
            raise NotFoundError(Entity.NOTIFICATIONS.value, notification_id)
        return notification

    async def _open(self) -> None:
        token = self._guard.capture(self._guard.scope_id)

        async def _on_change(event: ChangeEvent) -> None:
            if not self._guard.is_current(token):
                logger.debug("Ignoring %s event from a closed notification feed", event.event_type.value)
                return
            await self.reload()

        self._subscription = await self._gateway.subscribe(Entity.NOTIFICATIONS, self._filters(), _on_change)
        logger.info("Notification feed opened for user %s (scope %s)", self.viewer_id, self._guard.scope_id)

    async def _teardown(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await self._gateway.unsubscribe(subscription)
            logger.info("Notification feed closed for user %s", self.viewer_id)

    async def _rollback(self, token: ScopeToken, originals: list[NotificationRead]) -> None:
        if not self._guard.is_current(token):
            return
        for original in originals:
            self.notifications[original.id] = original
        await self._changed()

    async def _changed(self) -> None:
        if not self._listeners:
            return
        snapshot = self.feed()
        results = await asyncio.gather(
            *(listener(snapshot) for listener in list(self._listeners)), return_exceptions=True
        )
        for result in results:
            if isinstance(result, BaseException):
                logger.error("Notification listener failed: %s", result)
