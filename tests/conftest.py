"""Shared fixtures wiring in-memory collaborators to the coordinators."""

from uuid import uuid4

import pytest

from quickroom_coordination.channels.memory import InMemoryChannelBus
from quickroom_coordination.config import Settings
from quickroom_coordination.repositories.memory import InMemoryStore
from quickroom_coordination.services.appointments import AppointmentStateMachine
from quickroom_coordination.services.conversations import ConversationCoordinator
from quickroom_coordination.services.notifications import NotificationDispatcher
from quickroom_coordination.services.presence import PresenceTracker


@pytest.fixture
def settings():
    return Settings(typing_timeout=0.1)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def bus(store):
    bus = InMemoryChannelBus()
    store.add_insert_listener(bus.deliver_insert)
    return bus


@pytest.fixture
def notifications(store, settings):
    return NotificationDispatcher(store, settings)


@pytest.fixture
def presence(bus, settings):
    return PresenceTracker(bus, typing_timeout=settings.typing_timeout)


@pytest.fixture
def coordinator(store, bus, notifications, presence):
    return ConversationCoordinator(store, bus, notifications, presence)


@pytest.fixture
def appointments(store, notifications):
    return AppointmentStateMachine(store, notifications)


@pytest.fixture
def owner():
    return uuid4()


@pytest.fixture
def requester():
    return uuid4()


@pytest.fixture
def listing():
    return uuid4()
