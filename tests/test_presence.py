"""Test suite for typing presence."""

import asyncio
from uuid import uuid4

import pytest

from quickroom_coordination.channels.base import conversation_topic
from quickroom_coordination.channels.memory import InMemoryChannelBus
from quickroom_coordination.services.presence import PresenceTracker, others_typing


class LaggingBus(InMemoryChannelBus):
    """Channel bus whose "stopped typing" writes arrive late."""

    async def track_presence(self, topic, key, state):
        if not state["typing"]:
            await asyncio.sleep(0.05)
        await super().track_presence(topic, key, state)


@pytest.fixture
def conversation():
    return uuid4()


async def record_syncs(bus, conversation_id):
    snapshots = []
    await bus.on_presence_sync(conversation_topic(conversation_id), snapshots.append)
    return snapshots


@pytest.mark.asyncio
async def test_set_typing_publishes_immediately(presence, bus, conversation, requester):
    snapshots = await record_syncs(bus, conversation)

    await presence.set_typing(conversation, requester, True)

    assert snapshots[-1] == {str(requester): {"user_id": str(requester), "typing": True}}
    assert await presence.is_typing(conversation, requester)
    await presence.close()


@pytest.mark.asyncio
async def test_typing_expires_without_further_calls(presence, bus, conversation, requester):
    snapshots = await record_syncs(bus, conversation)

    await presence.set_typing(conversation, requester, True)
    await asyncio.sleep(presence.typing_timeout * 3)

    assert not await presence.is_typing(conversation, requester)
    assert [s[str(requester)]["typing"] for s in snapshots] == [True, False]


@pytest.mark.asyncio
async def test_new_typing_call_restarts_timer(presence, conversation, requester):
    await presence.set_typing(conversation, requester, True)
    await asyncio.sleep(presence.typing_timeout * 0.6)
    await presence.set_typing(conversation, requester, True)
    await asyncio.sleep(presence.typing_timeout * 0.6)

    assert await presence.is_typing(conversation, requester)

    await asyncio.sleep(presence.typing_timeout * 2)
    assert not await presence.is_typing(conversation, requester)


@pytest.mark.asyncio
async def test_explicit_stop_cancels_expiry(presence, bus, conversation, requester):
    snapshots = await record_syncs(bus, conversation)

    await presence.set_typing(conversation, requester, True)
    await presence.set_typing(conversation, requester, False)
    await asyncio.sleep(presence.typing_timeout * 2)

    assert [s[str(requester)]["typing"] for s in snapshots] == [True, False]


@pytest.mark.asyncio
async def test_join_reports_only_other_users(presence, conversation, owner, requester):
    seen_by_owner = []
    await presence.join(conversation, owner, seen_by_owner.append)

    await presence.set_typing(conversation, owner, True)
    assert seen_by_owner[-1] is False

    await presence.set_typing(conversation, requester, True)
    assert seen_by_owner[-1] is True

    await presence.set_typing(conversation, requester, False)
    assert seen_by_owner[-1] is False
    await presence.close()


@pytest.mark.asyncio
async def test_leave_untracks_user(presence, bus, conversation, owner, requester):
    seen_by_owner = []
    await presence.join(conversation, owner, seen_by_owner.append)
    await presence.join(conversation, requester, lambda typing: None)
    await presence.set_typing(conversation, requester, True)
    assert seen_by_owner[-1] is True

    await presence.leave(conversation, requester)

    assert seen_by_owner[-1] is False
    assert str(requester) not in await bus.presence_state(conversation_topic(conversation))


@pytest.mark.asyncio
async def test_presence_is_scoped_per_conversation(presence, owner, requester):
    first, second = uuid4(), uuid4()
    seen = []
    await presence.join(second, owner, seen.append)

    await presence.set_typing(first, requester, True)

    assert seen == [False]
    assert not await presence.is_typing(second, requester)
    await presence.close()


@pytest.mark.asyncio
async def test_close_cancels_pending_timers(presence, conversation, requester):
    await presence.set_typing(conversation, requester, True)

    await presence.close()
    await asyncio.sleep(presence.typing_timeout * 2)

    # Closed before expiry: no automatic stop was broadcast
    assert await presence.is_typing(conversation, requester)


def test_others_typing():
    me, other = uuid4(), uuid4()
    state = {
        str(me): {"user_id": str(me), "typing": True},
        str(other): {"user_id": str(other), "typing": False},
    }
    assert not others_typing(state, me)
    state[str(other)]["typing"] = True
    assert others_typing(state, me)
    assert not others_typing({}, me)


@pytest.mark.asyncio
async def test_late_expiry_write_does_not_clobber_renewed_typing(conversation, requester):
    tracker = PresenceTracker(LaggingBus(), typing_timeout=0.1)

    await tracker.set_typing(conversation, requester, True)
    # The expiry fires at 0.1s and its broadcast is still in flight at 0.12s.
    await asyncio.sleep(0.12)
    await tracker.set_typing(conversation, requester, True)
    await asyncio.sleep(0.05)

    assert await tracker.is_typing(conversation, requester)
    await tracker.close()
