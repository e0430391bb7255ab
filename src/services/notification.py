import asyncio
import logging
from typing import Any

from src.models.session import ParkingSession
from src.schemas.notification import Notification
from src.utils.constants import NotificationType
from src.utils.timeutils import utcnow

logger = logging.getLogger(__name__)


class NotificationSender:
    async def send_reservation_confirmed(self, notification: Notification) -> None:
        raise NotImplementedError

    async def send_reservation_cancelled(self, notification: Notification) -> None:
        raise NotImplementedError

    async def send_extension_confirmed(self, notification: Notification) -> None:
        raise NotImplementedError

    async def send_late_pickup_notice(self, notification: Notification) -> None:
        raise NotImplementedError

    async def send_parking_code_recovery(self, notification: Notification) -> None:
        raise NotImplementedError

    async def deliver(self, notification: Notification) -> None:
        handlers = {
            NotificationType.RESERVATION_CONFIRMED: self.send_reservation_confirmed,
            NotificationType.RESERVATION_CANCELLED: self.send_reservation_cancelled,
            NotificationType.EXTENSION_CONFIRMED: self.send_extension_confirmed,
            NotificationType.LATE_PICKUP: self.send_late_pickup_notice,
            NotificationType.PARKING_CODE_RECOVERY: self.send_parking_code_recovery,
        }
        await handlers[notification.type](notification)


class LoggingNotificationSender(NotificationSender):
    def _log(self, subject: str, notification: Notification) -> None:
        logger.info(
            f"{subject} -> {notification.recipient_name} <{notification.recipient_email}> "
            f"(session {notification.session_id}): {notification.details}"
        )

    async def send_reservation_confirmed(self, notification: Notification) -> None:
        self._log("Reservation confirmed", notification)

    async def send_reservation_cancelled(self, notification: Notification) -> None:
        self._log("Reservation cancelled", notification)

    async def send_extension_confirmed(self, notification: Notification) -> None:
        self._log("Extension confirmed", notification)

    async def send_late_pickup_notice(self, notification: Notification) -> None:
        self._log("Late pickup notice", notification)

    async def send_parking_code_recovery(self, notification: Notification) -> None:
        self._log("Parking code recovery", notification)


def build_notification(
    kind: NotificationType, session: ParkingSession, **details: Any
) -> Notification:
    """Build a notification for ``session``; its ``user`` relationship must be loaded."""
    user = session.user
    return Notification(
        type=kind,
        user_id=session.user_id,
        session_id=session.id,
        recipient_name=user.full_name if user else None,
        recipient_email=user.email if user else None,
        details={"spot_id": session.spot_id, **details},
        created_at=utcnow(),
    )


class NotificationOutbox:
    def __init__(self, sender: NotificationSender):
        self.sender = sender
        self._queue: asyncio.Queue[Notification] = asyncio.Queue()
        self._task: asyncio.Task | None = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def publish(self, notification: Notification) -> None:
        self._queue.put_nowait(notification)
        logger.debug(f"Queued {notification.type.value} for session {notification.session_id}")

    async def _deliver(self, notification: Notification) -> bool:
        try:
            await self.sender.deliver(notification)
        except Exception:
            logger.exception(
                f"Failed to deliver {notification.type.value} for session "
                f"{notification.session_id}"
            )
            return False
        return True

    async def dispatch_pending(self) -> int:
        """Deliver everything currently queued. Returns the number delivered successfully."""
        delivered = 0
        while not self._queue.empty():
            notification = self._queue.get_nowait()
            if await self._deliver(notification):
                delivered += 1
            self._queue.task_done()
        return delivered

    async def run(self) -> None:
        while True:
            notification = await self._queue.get()
            await self._deliver(notification)
            self._queue.task_done()

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            logger.info("Notification dispatcher is already running")
            return
        self._task = asyncio.create_task(self.run(), name="notification-dispatcher")
        logger.info("Notification dispatcher started")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        # Flush what is left before shutting down
        await self.dispatch_pending()
        logger.info("Notification dispatcher stopped")
