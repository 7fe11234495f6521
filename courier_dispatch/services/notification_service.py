import asyncio
import logging
from enum import Enum as PyEnum

logger = logging.getLogger(__name__)


class NotificationType(PyEnum):
    OFFER_OPENED = "offer_opened"
    OFFER_CANCELLED = "offer_cancelled"
    OFFER_EXPIRED = "offer_expired"
    COURIER_WON = "courier_won"
    NO_COURIERS_AVAILABLE = "no_couriers_available"


class NotificationService:
    """Best-effort event fan-out to the push transport.

    ``publish`` schedules delivery and returns immediately; a failing
    subscriber is logged and never reaches the dispatch state machine.
    """

    def __init__(self):
        self.subscribers = []
        self._pending = set()

    def subscribe(self, callback):
        """Register an ``async def callback(notification_type, payload)``."""
        self.subscribers.append(callback)
        return callback

    def publish(self, notification_type: NotificationType, **payload) -> None:
        logger.info(f"Event {notification_type.value}: {payload}")
        for callback in self.subscribers:
            task = asyncio.create_task(self._deliver(callback, notification_type, payload))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _deliver(self, callback, notification_type: NotificationType, payload: dict) -> None:
        try:
            await callback(notification_type, payload)
        except Exception as e:
            logger.error(f"Delivery of {notification_type.value} to {getattr(callback, '__name__', callback)} failed: {str(e)}", exc_info=True)

    async def drain(self) -> None:
        """Wait for in-flight deliveries; used on shutdown."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
