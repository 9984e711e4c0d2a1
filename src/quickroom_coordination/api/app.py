"""
FastAPI Application Module

Thin HTTP surface used by the marketplace UI event handlers to reach the
coordination layer: conversation setup, chat messages, typing presence and
viewing appointments.

Every coordination failure is resolved to one of three outcomes before it
reaches the client:
- noop: a short notice, nothing happened (200)
- message: a short actionable message (400/403/404/503)
- refresh: the change may or may not have applied, reload (409)

Backend error text is logged, never returned.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import generate_latest
from pydantic import BaseModel
from structlog import get_logger

from ..channels.memory import InMemoryChannelBus
from ..config import get_settings
from ..domain.errors import (
    AppointmentNotFoundError,
    ConversationSetupError,
    CoordinationError,
    ForbiddenTransitionError,
    InvalidAppointmentError,
    InvalidMessageError,
    Outcome,
    UnauthorizedError,
)
from ..domain.models import (
    Appointment,
    AppointmentOverview,
    AppointmentStatus,
    ConversationSummary,
    Message,
    MessageType,
)
from ..logging_config import configure_logging
from ..metrics import CUSTOM_REGISTRY, ERRORS, REQUESTS
from ..repositories.base import StoreClient, StoreError
from ..repositories.memory import InMemoryStore
from ..services.appointments import AppointmentStateMachine
from ..services.conversations import ConversationCoordinator
from ..services.notifications import NotificationDispatcher
from ..services.presence import PresenceTracker
from ..services.security import require_conversation_participant

logger = get_logger()

STATUS_CODES = {
    UnauthorizedError: 403,
    ForbiddenTransitionError: 403,
    AppointmentNotFoundError: 404,
    InvalidAppointmentError: 400,
    InvalidMessageError: 400,
    ConversationSetupError: 503,
}


class ConversationCreate(BaseModel):
    """Request to open a conversation with a listing owner"""
    counterparty_id: UUID
    listing_id: Optional[UUID] = None


class MessageCreate(BaseModel):
    """Defines the structure for message creation requests"""
    content: Optional[str] = None
    message_type: MessageType = MessageType.TEXT
    file_url: Optional[str] = None


class TypingUpdate(BaseModel):
    typing: bool


class AppointmentCreate(BaseModel):
    """Viewing request for a listing"""
    listing_id: UUID
    owner_id: UUID
    appointment_date: datetime
    notes: Optional[str] = None


class StatusUpdate(BaseModel):
    status: AppointmentStatus


# Core service instances
settings = get_settings()
store = InMemoryStore()
bus = InMemoryChannelBus()
store.add_insert_listener(bus.deliver_insert)
notifications = NotificationDispatcher(store, settings)
presence = PresenceTracker(bus, typing_timeout=settings.typing_timeout)
coordinator = ConversationCoordinator(store, bus, notifications, presence)
appointments = AppointmentStateMachine(store, notifications)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handles app startup/shutdown and resource management"""
    configure_logging(settings)
    logger.info("application_startup_complete", environment=settings.environment)

    yield

    await presence.close()
    logger.info("application_shutdown_complete")


def get_current_user(x_user_id: UUID = Header(...)) -> UUID:
    """Acting user, as established by the upstream auth layer"""
    return x_user_id


def get_coordinator() -> ConversationCoordinator:
    return coordinator


def get_appointments() -> AppointmentStateMachine:
    return appointments


def get_store() -> StoreClient:
    return store


def get_presence() -> PresenceTracker:
    return presence


app = FastAPI(
    title="QuickRoom Coordination API",
    description="Conversation setup, typing presence and viewing appointments",
    version="0.1.0",
    lifespan=lifespan,
)

# Enable cross-origin requests
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Set up request tracing
FastAPIInstrumentor.instrument_app(app)


@app.middleware("http")
async def logging_middleware(request: Request, call_next):
    """Tracks requests"""
    REQUESTS.labels(path=request.url.path).inc()
    logger.info("request_started", method=request.method, path=request.url.path)
    return await call_next(request)


@app.exception_handler(CoordinationError)
async def coordination_error_handler(request: Request, exc: CoordinationError) -> JSONResponse:
    """Maps coordination failures to user-safe responses"""
    ERRORS.labels(outcome=exc.outcome.value).inc()
    logger.info(
        "request_resolved_with_error",
        path=request.url.path,
        error_type=type(exc).__name__,
        outcome=exc.outcome.value,
    )
    if exc.outcome == Outcome.NOOP:
        return JSONResponse(status_code=200, content={"status": "noop", "notice": exc.user_message})
    if exc.outcome == Outcome.REFRESH:
        return JSONResponse(status_code=409, content={"detail": exc.user_message, "outcome": "refresh"})

    status_code = next(
        (code for cls, code in STATUS_CODES.items() if isinstance(exc, cls)),
        400,
    )
    return JSONResponse(status_code=status_code, content={"detail": exc.user_message, "outcome": "message"})


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    """Backend unavailable; the cause stays in the logs"""
    ERRORS.labels(outcome="message").inc()
    logger.error("store_error", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=503,
        content={"detail": "Service temporarily unavailable. Please try again.", "outcome": "message"},
    )


@app.post("/conversations")
async def open_conversation(
    body: ConversationCreate,
    user_id: UUID = Depends(get_current_user),
    coordinator: ConversationCoordinator = Depends(get_coordinator),
) -> dict:
    """Opens (or reopens) the conversation with a listing owner"""
    conversation_id = await coordinator.find_or_create(user_id, body.counterparty_id, body.listing_id)
    return {"status": "ok", "conversation_id": str(conversation_id)}


@app.get("/conversations", response_model=List[ConversationSummary])
async def list_conversations(
    user_id: UUID = Depends(get_current_user),
    coordinator: ConversationCoordinator = Depends(get_coordinator),
) -> List[ConversationSummary]:
    """Gets the user's inbox"""
    return await coordinator.list_conversations(user_id)


@app.get("/conversations/{conversation_id}/messages", response_model=List[Message])
async def get_messages(
    conversation_id: UUID,
    user_id: UUID = Depends(get_current_user),
    coordinator: ConversationCoordinator = Depends(get_coordinator),
) -> List[Message]:
    """Gets message history for a conversation"""
    return await coordinator.get_messages(user_id, conversation_id)


@app.post("/conversations/{conversation_id}/messages", response_model=Message)
async def send_message(
    conversation_id: UUID,
    message: MessageCreate,
    user_id: UUID = Depends(get_current_user),
    coordinator: ConversationCoordinator = Depends(get_coordinator),
) -> Message:
    """Sends a message once its persistence is confirmed"""
    return await coordinator.send_message(
        user_id, conversation_id, message.content, message.message_type, message.file_url
    )


@app.post("/conversations/{conversation_id}/read")
async def mark_read(
    conversation_id: UUID,
    user_id: UUID = Depends(get_current_user),
    coordinator: ConversationCoordinator = Depends(get_coordinator),
) -> dict:
    marked = await coordinator.mark_read(user_id, conversation_id)
    return {"status": "ok", "marked": marked}


@app.post("/conversations/{conversation_id}/typing")
async def update_typing(
    conversation_id: UUID,
    body: TypingUpdate,
    user_id: UUID = Depends(get_current_user),
    presence: PresenceTracker = Depends(get_presence),
    store_client: StoreClient = Depends(get_store),
) -> dict:
    """Broadcasts the user's typing state on the conversation channel"""
    await require_conversation_participant(store_client, user_id, conversation_id, "typing_unauthorized")
    await presence.set_typing(conversation_id, user_id, body.typing)
    return {"status": "ok", "typing": body.typing}


@app.post("/appointments", response_model=Appointment)
async def request_appointment(
    body: AppointmentCreate,
    user_id: UUID = Depends(get_current_user),
    appointments: AppointmentStateMachine = Depends(get_appointments),
) -> Appointment:
    """Books a viewing for the acting user"""
    return await appointments.request(
        user_id, body.listing_id, body.owner_id, body.appointment_date, body.notes
    )


@app.get("/appointments", response_model=AppointmentOverview)
async def list_appointments(
    user_id: UUID = Depends(get_current_user),
    appointments: AppointmentStateMachine = Depends(get_appointments),
) -> AppointmentOverview:
    """Gets received and requested appointments, freshly read from the store"""
    return await appointments.list_for_user(user_id)


@app.post("/appointments/{appointment_id}/status", response_model=Appointment)
async def update_appointment_status(
    appointment_id: UUID,
    body: StatusUpdate,
    user_id: UUID = Depends(get_current_user),
    appointments: AppointmentStateMachine = Depends(get_appointments),
) -> Appointment:
    """Applies a status transition and returns the verified record"""
    return await appointments.transition(user_id, appointment_id, body.status)


@app.get("/metrics")
async def metrics():
    """Provides Prometheus metrics for system monitoring"""
    return Response(generate_latest(CUSTOM_REGISTRY), media_type="text/plain")
