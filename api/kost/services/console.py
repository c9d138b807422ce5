"""One operator's console: a scope context fanned out to the three managers."""
import logging
import uuid

from kost.core.gateway import Gateway
from kost.core.scope import ScopeContext, Session
from kost.services.ledger import PaymentLedger
from kost.services.notifications import NotificationHub
from kost.services.occupancy import OccupancyManager

logger = logging.getLogger(__name__)


class ConsoleSession:
    def __init__(self, gateway: Gateway, context: ScopeContext | None = None):
        self.context = context or ScopeContext()
        self.occupancy = OccupancyManager(gateway)
        self.ledger = PaymentLedger(gateway)
        self.notifications = NotificationHub(gateway)
        self._unbind = [
            self.occupancy.bind(self.context),
            self.ledger.bind(self.context),
            self.notifications.bind(self.context),
        ]

    async def sign_in(self, token: str) -> Session:
        session = Session.from_token(token)
        await self.context.sign_in(session)
        return session

    async def select_property(self, property_id: uuid.UUID | None) -> None:
        await self.context.select_scope(property_id)

    async def close(self) -> None:
        """Sign out (closing the notification feed) and detach every manager."""
        try:
            await self.context.sign_out()
        finally:
            for unbind in self._unbind:
                unbind()
            self._unbind = []
