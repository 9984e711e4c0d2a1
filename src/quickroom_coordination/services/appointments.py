"""Viewing appointment lifecycle.

    pending   -> confirmed  (owner)
    pending   -> cancelled  (owner or requester)
    confirmed -> completed  (owner)
    confirmed -> cancelled  (requester)

``cancelled`` and ``completed`` are terminal. Every write is filtered by the
column of the role that authorized it and by the status the transition
started from, then read back; a write that cannot be confirmed surfaces as
``PersistenceVerificationError`` rather than success.
"""

import asyncio
from datetime import datetime, timezone
from typing import Callable, Dict, FrozenSet, List, Optional
from uuid import UUID

import structlog

from ..domain.errors import (
    ForbiddenTransitionError,
    InvalidAppointmentError,
    PersistenceVerificationError,
    SelfReferenceError,
)
from ..domain.models import Appointment, AppointmentOverview, AppointmentStatus, utcnow
from ..logging_config import log_security_event
from ..metrics import APPOINTMENT_TRANSITIONS
from ..repositories.base import APPOINTMENTS, Filter, StoreClient
from .notifications import NotificationDispatcher
from .security import AppointmentAccess, read_back, resolve_appointment_access

logger = structlog.get_logger()

Transitions = Dict[AppointmentStatus, FrozenSet[AppointmentStatus]]

OWNER_TRANSITIONS: Transitions = {
    AppointmentStatus.PENDING: frozenset({AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED}),
    AppointmentStatus.CONFIRMED: frozenset({AppointmentStatus.COMPLETED}),
}

REQUESTER_TRANSITIONS: Transitions = {
    AppointmentStatus.PENDING: frozenset({AppointmentStatus.CANCELLED}),
    AppointmentStatus.CONFIRMED: frozenset({AppointmentStatus.CANCELLED}),
}


def allowed_transitions(appointment: Appointment, user_id: UUID) -> List[AppointmentStatus]:
    """Statuses ``user_id`` may move the appointment to, in lifecycle order."""
    allowed = set()
    if appointment.owner_id == user_id:
        allowed |= OWNER_TRANSITIONS.get(appointment.status, frozenset())
    if appointment.requester_id == user_id:
        allowed |= REQUESTER_TRANSITIONS.get(appointment.status, frozenset())
    return [status for status in AppointmentStatus if status in allowed]


class AppointmentStateMachine:
    """Creates appointments and applies role-scoped status changes."""

    def __init__(
        self,
        store: StoreClient,
        notifications: NotificationDispatcher,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.notifications = notifications
        self._clock = clock

    async def request(
        self,
        requester_id: UUID,
        listing_id: UUID,
        owner_id: UUID,
        when_utc: datetime,
        notes: Optional[str] = None,
    ) -> Appointment:
        """Book a viewing; the time must be strictly in the future."""
        if requester_id == owner_id:
            logger.info("appointment_self_request", user_id=str(requester_id))
            raise SelfReferenceError()

        if when_utc.tzinfo is None:
            when_utc = when_utc.replace(tzinfo=timezone.utc)
        if when_utc <= self._clock():
            logger.warning(
                "appointment_date_in_past",
                requester_id=str(requester_id),
                appointment_date=when_utc.isoformat(),
            )
            raise InvalidAppointmentError()

        row = await self.store.insert(
            APPOINTMENTS,
            {
                "listing_id": listing_id,
                "owner_id": owner_id,
                "requester_id": requester_id,
                "appointment_date": when_utc,
                "notes": (notes or "").strip() or None,
                "status": AppointmentStatus.PENDING.value,
            },
        )
        confirmed = await read_back(self.store, APPOINTMENTS, row)
        if confirmed is None:
            logger.error("appointment_insert_unconfirmed", listing_id=str(listing_id))
            raise PersistenceVerificationError()

        appointment = Appointment.from_row(confirmed)
        logger.info(
            "appointment_requested",
            appointment_id=str(appointment.id),
            listing_id=str(listing_id),
        )
        await self.notifications.notify_new_booking(owner_id)
        return appointment

    async def transition(
        self,
        acting_user_id: UUID,
        appointment_id: UUID,
        target_status: AppointmentStatus,
    ) -> Appointment:
        """Move an appointment to ``target_status`` on behalf of ``acting_user_id``.

        Runs to completion even if the caller stops waiting.
        """
        return await asyncio.shield(self._transition(acting_user_id, appointment_id, target_status))

    async def _transition(
        self,
        acting_user_id: UUID,
        appointment_id: UUID,
        target_status: AppointmentStatus,
    ) -> Appointment:
        target_status = AppointmentStatus(target_status)
        access = await resolve_appointment_access(
            self.store, acting_user_id, appointment_id, attempted_status=target_status.value
        )

        if access.requester_only and target_status != AppointmentStatus.CANCELLED:
            log_security_event(
                "appointment_transition_forbidden",
                acting_user_id,
                appointment_id=appointment_id,
                attempted_status=target_status.value,
                role="requester",
            )
            raise ForbiddenTransitionError()

        role_column = self._authorizing_column(access, target_status)
        if role_column is None:
            log_security_event(
                "appointment_transition_invalid",
                acting_user_id,
                appointment_id=appointment_id,
                current_status=access.appointment.status.value,
                attempted_status=target_status.value,
            )
            raise ForbiddenTransitionError()

        now = self._clock()
        await self.store.update(
            APPOINTMENTS,
            {"status": target_status.value, "updated_at": now},
            Filter.eq(id=appointment_id, status=access.raw_status, **{role_column: acting_user_id}),
        )

        confirmed = await self.store.select_one(APPOINTMENTS, Filter.eq(id=appointment_id))
        if confirmed is None or AppointmentStatus.parse(confirmed.get("status")) != target_status:
            logger.error(
                "appointment_transition_unconfirmed",
                appointment_id=str(appointment_id),
                target_status=target_status.value,
                stored_status=confirmed.get("status") if confirmed else None,
            )
            raise PersistenceVerificationError()

        appointment = Appointment.from_row(confirmed)
        APPOINTMENT_TRANSITIONS.labels(status=target_status.value).inc()
        logger.info(
            "appointment_transitioned",
            appointment_id=str(appointment_id),
            from_status=access.appointment.status.value,
            to_status=target_status.value,
        )

        recipient = appointment.requester_id if role_column == "owner_id" else appointment.owner_id
        if recipient != acting_user_id:
            await self.notifications.notify_appointment_status(recipient, target_status)
        return appointment

    @staticmethod
    def _authorizing_column(access: AppointmentAccess, target: AppointmentStatus) -> Optional[str]:
        current = access.appointment.status
        if access.is_owner and target in OWNER_TRANSITIONS.get(current, frozenset()):
            return "owner_id"
        if access.is_requester and target in REQUESTER_TRANSITIONS.get(current, frozenset()):
            return "requester_id"
        return None

    async def list_for_user(self, user_id: UUID) -> AppointmentOverview:
        """Appointments the user receives as owner and those they requested."""
        received = await self.store.select(
            APPOINTMENTS, Filter.eq(owner_id=user_id), order_by="appointment_date"
        )
        requested = await self.store.select(
            APPOINTMENTS, Filter.eq(requester_id=user_id), order_by="appointment_date"
        )
        return AppointmentOverview(
            received=[Appointment.from_row(row) for row in received],
            requested=[Appointment.from_row(row) for row in requested],
        )
