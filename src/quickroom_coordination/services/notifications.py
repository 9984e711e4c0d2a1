"""Best-effort notification dispatch."""

from typing import Optional
from uuid import UUID

import structlog

from ..config import Settings, get_settings
from ..domain.models import AppointmentStatus
from ..metrics import NOTIFICATIONS_FAILED
from ..repositories.base import NOTIFICATIONS, StoreClient

logger = structlog.get_logger()


class NotificationDispatcher:
    """Creates notification records as a side effect of other operations.

    A dropped notification is an acceptable degraded outcome, so ``notify``
    never raises: every failure is logged and reported as ``False``.
    """

    def __init__(self, store: StoreClient, settings: Optional[Settings] = None) -> None:
        self.store = store
        self.settings = settings or get_settings()

    async def notify(
        self,
        user_id: UUID,
        title: str,
        body: str,
        category: str,
        link: Optional[str] = None,
    ) -> bool:
        """Insert a notification for ``user_id``; single attempt, no read-back."""
        try:
            row = await self.store.insert(
                NOTIFICATIONS,
                {
                    "user_id": user_id,
                    "title": title,
                    "content": body,
                    "type": category,
                    "link": link,
                    "is_read": False,
                },
            )
        except Exception as e:
            NOTIFICATIONS_FAILED.inc()
            logger.warning(
                "notification_failed",
                user_id=str(user_id),
                category=category,
                error=str(e),
            )
            return False

        if row is None:
            NOTIFICATIONS_FAILED.inc()
            logger.warning("notification_not_written", user_id=str(user_id), category=category)
            return False

        logger.debug("notification_created", user_id=str(user_id), category=category)
        return True

    async def notify_conversation_started(self, recipient_id: UUID) -> bool:
        return await self.notify(
            recipient_id,
            "New Message",
            "Someone is interested in your listing",
            "message",
            self.settings.messages_link,
        )

    async def notify_new_message(self, recipient_id: UUID) -> bool:
        return await self.notify(
            recipient_id,
            "New Message",
            "You have a new message",
            "message",
            self.settings.messages_link,
        )

    async def notify_new_booking(self, owner_id: UUID) -> bool:
        return await self.notify(
            owner_id,
            "New Viewing Request",
            "Someone requested a viewing for your listing",
            "appointment",
            self.settings.appointments_link,
        )

    async def notify_appointment_status(self, recipient_id: UUID, status: AppointmentStatus) -> bool:
        return await self.notify(
            recipient_id,
            f"Viewing {status.value.capitalize()}",
            f"A viewing appointment was {status.value}",
            "appointment",
            self.settings.appointments_link,
        )
