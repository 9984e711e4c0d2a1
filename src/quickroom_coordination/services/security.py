"""Authorization guards and write verification shared by the coordinators."""

from dataclasses import dataclass
from typing import Any, Dict, Optional
from uuid import UUID

import structlog

from ..domain.errors import AppointmentNotFoundError, NotParticipantError, UnauthorizedError
from ..domain.models import Appointment
from ..logging_config import log_security_event
from ..repositories.base import APPOINTMENTS, PARTICIPANTS, Filter, StoreClient

logger = structlog.get_logger()


@dataclass(frozen=True)
class AppointmentAccess:
    """Roles the acting user holds on an appointment."""

    appointment: Appointment
    raw_status: Optional[str]
    is_owner: bool
    is_requester: bool

    @property
    def requester_only(self) -> bool:
        return self.is_requester and not self.is_owner


async def resolve_appointment_access(
    store: StoreClient,
    user_id: UUID,
    appointment_id: UUID,
    attempted_status: Optional[str] = None,
) -> AppointmentAccess:
    """Fetch an appointment and determine the actor's roles on it.

    Raises AppointmentNotFoundError when the row is missing and
    UnauthorizedError when the actor is neither owner nor requester.
    """
    row = await store.select_one(APPOINTMENTS, Filter.eq(id=appointment_id))
    if row is None:
        logger.warning("appointment_not_found", appointment_id=str(appointment_id))
        raise AppointmentNotFoundError()

    appointment = Appointment.from_row(row)
    is_owner = appointment.owner_id == user_id
    is_requester = appointment.requester_id == user_id

    if not is_owner and not is_requester:
        log_security_event(
            "appointment_access_denied",
            user_id,
            appointment_id=appointment_id,
            attempted_status=attempted_status,
        )
        raise UnauthorizedError()

    return AppointmentAccess(
        appointment=appointment,
        raw_status=row.get("status"),
        is_owner=is_owner,
        is_requester=is_requester,
    )


async def require_conversation_participant(
    store: StoreClient, user_id: UUID, conversation_id: UUID, event: str
) -> Dict[str, Any]:
    """Return the actor's participant row or raise NotParticipantError."""
    row = await store.select_one(
        PARTICIPANTS, Filter.eq(conversation_id=conversation_id, user_id=user_id)
    )
    if row is None:
        log_security_event(event, user_id, conversation_id=conversation_id)
        raise NotParticipantError()
    return row


async def read_back(store: StoreClient, collection: str, row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Re-query a just-written row by id.

    A write reported as successful may still have been discarded by a
    row-level policy, so only a row that can be read again counts as
    persisted.
    """
    if not row or row.get("id") is None:
        return None
    return await store.select_one(collection, Filter.eq(id=row["id"]))
