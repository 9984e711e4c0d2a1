"""Test suite for best-effort notifications."""

from uuid import uuid4

import pytest

from quickroom_coordination.domain.models import AppointmentStatus
from quickroom_coordination.repositories.base import NOTIFICATIONS, Filter, StoreError


@pytest.mark.asyncio
async def test_notify_inserts_record(notifications, store):
    user = uuid4()

    assert await notifications.notify(user, "Hello", "Body", "message", "/messages")

    rows = await store.select(NOTIFICATIONS, Filter.eq(user_id=user))
    assert len(rows) == 1
    assert rows[0]["content"] == "Body"
    assert rows[0]["is_read"] is False


@pytest.mark.asyncio
async def test_notify_never_raises_on_store_error(notifications, store):
    store.fail_next(NOTIFICATIONS, "insert", StoreError("connection reset"))

    assert await notifications.notify(uuid4(), "Hello", "Body", "message") is False


@pytest.mark.asyncio
async def test_notify_never_raises_on_unexpected_error(notifications, store):
    store.fail_next(NOTIFICATIONS, "insert", RuntimeError("boom"))

    assert await notifications.notify(uuid4(), "Hello", "Body", "message") is False


@pytest.mark.asyncio
async def test_notify_reports_filtered_write(notifications, store):
    store.add_write_policy(NOTIFICATIONS, lambda op, row: True)

    assert await notifications.notify(uuid4(), "Hello", "Body", "message") is False


@pytest.mark.asyncio
async def test_notify_does_not_retry(notifications, store):
    user = uuid4()
    store.fail_next(NOTIFICATIONS, "insert")

    await notifications.notify(user, "Hello", "Body", "message")

    assert await store.select(NOTIFICATIONS, Filter.eq(user_id=user)) == []


@pytest.mark.asyncio
async def test_status_notification_uses_configured_link(notifications, store, settings):
    user = uuid4()

    await notifications.notify_appointment_status(user, AppointmentStatus.CONFIRMED)

    row = await store.select_one(NOTIFICATIONS, Filter.eq(user_id=user))
    assert row["title"] == "Viewing Confirmed"
    assert row["type"] == "appointment"
    assert row["link"] == settings.appointments_link
