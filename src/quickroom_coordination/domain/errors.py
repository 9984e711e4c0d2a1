"""Error taxonomy for the coordination layer.

Every error carries a ``user_message`` that is safe to show to end users and an
``outcome`` telling the caller which of the three UX outcomes applies. Backend
error text never ends up in ``user_message``; it is logged where the error is
raised.
"""

from enum import Enum
from typing import Optional


class Outcome(str, Enum):
    """How a failure should be presented to the user."""

    NOOP = "noop"
    MESSAGE = "message"
    REFRESH = "refresh"


class CoordinationError(Exception):
    """Base class for all coordination failures."""

    outcome = Outcome.MESSAGE
    user_message = "Something went wrong. Please try again."

    def __init__(self, message: Optional[str] = None, user_message: Optional[str] = None):
        if user_message is not None:
            self.user_message = user_message
        super().__init__(message or self.user_message)


class SelfReferenceError(CoordinationError):
    """Raised when a user tries to open a conversation with themselves."""

    outcome = Outcome.NOOP
    user_message = "This is your own listing."


class ConversationSetupError(CoordinationError):
    """Raised when a conversation could not be fully established."""

    user_message = "Failed to start conversation. Please try again."


class UnauthorizedError(CoordinationError):
    """Raised when the actor holds no role on the target record."""

    user_message = "You are not authorized to perform this action."


class ForbiddenTransitionError(CoordinationError):
    """Raised when the actor's role does not permit the requested transition."""

    user_message = "You do not have permission to make this change."


class NotParticipantError(UnauthorizedError):
    """Raised when the actor is not a participant of the conversation."""

    user_message = "You are not a participant in this conversation."


class AppointmentNotFoundError(CoordinationError):
    """Raised when the appointment does not exist or is not visible."""

    user_message = "The requested appointment was not found."


class InvalidAppointmentError(CoordinationError):
    """Raised when an appointment request fails validation."""

    user_message = "Please choose a date and time in the future."


class InvalidMessageError(CoordinationError):
    """Raised when a message has no content to send."""

    user_message = "Message cannot be empty."


class PersistenceVerificationError(CoordinationError):
    """Raised when a write was accepted but could not be confirmed."""

    outcome = Outcome.REFRESH
    user_message = "We could not confirm your change. Please refresh and check again."
