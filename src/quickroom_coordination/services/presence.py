"""Ephemeral typing indicators on conversation channels."""

import asyncio
from typing import Any, Callable, Dict, Tuple
from uuid import UUID

import structlog

from ..channels.base import ChannelBus, Subscription, conversation_topic, invoke_callback
from ..domain.models import PresenceState

logger = structlog.get_logger()

TypingKey = Tuple[UUID, UUID]


def others_typing(state: Dict[str, Dict[str, Any]], user_id: UUID) -> bool:
    """Whether anyone other than ``user_id`` is typing in a presence snapshot."""
    me = str(user_id)
    return any(
        entry.get("typing") and entry.get("user_id") != me
        for entry in state.values()
    )


class PresenceTracker:
    """Publishes per-user typing state and expires it automatically.

    State is held only in the channel bus presence layer. Every
    ``set_typing(..., True)`` restarts an expiry timer; when it fires the
    tracker broadcasts ``typing=False`` on the user's behalf.
    """

    def __init__(self, bus: ChannelBus, typing_timeout: float = 3.0) -> None:
        self.bus = bus
        self.typing_timeout = typing_timeout
        self._timers: Dict[TypingKey, asyncio.Task] = {}
        self._subscriptions: Dict[TypingKey, Subscription] = {}

    async def set_typing(self, conversation_id: UUID, user_id: UUID, typing: bool) -> None:
        """Broadcast the user's typing state now."""
        key = (conversation_id, user_id)
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

        await self._broadcast(conversation_id, user_id, typing)

        if typing:
            self._timers[key] = asyncio.create_task(self._expire(conversation_id, user_id))

    async def _broadcast(self, conversation_id: UUID, user_id: UUID, typing: bool) -> None:
        state = PresenceState(user_id=user_id, typing=typing)
        await self.bus.track_presence(
            conversation_topic(conversation_id), str(user_id), state.model_dump(mode="json")
        )

    async def _expire(self, conversation_id: UUID, user_id: UUID) -> None:
        await asyncio.sleep(self.typing_timeout)
        key = (conversation_id, user_id)
        logger.debug("typing_expired", conversation_id=str(conversation_id), user_id=str(user_id))
        # Stays registered while broadcasting so a newer set_typing cancels this write.
        try:
            await self._broadcast(conversation_id, user_id, False)
        except Exception as e:
            logger.error(
                "typing_expiry_failed",
                conversation_id=str(conversation_id),
                user_id=str(user_id),
                error=str(e),
            )
        finally:
            if self._timers.get(key) is asyncio.current_task():
                del self._timers[key]

    async def join(
        self,
        conversation_id: UUID,
        user_id: UUID,
        on_change: Callable[[bool], Any],
    ) -> Subscription:
        """Watch a conversation for other users typing.

        ``on_change`` receives the derived boolean after every presence sync.
        The user is tracked as not typing once the listener is in place.
        """
        topic = conversation_topic(conversation_id)

        async def handle_sync(state: Dict[str, Dict[str, Any]]) -> None:
            await invoke_callback(on_change, others_typing(state, user_id))

        subscription = await self.bus.on_presence_sync(topic, handle_sync)
        self._subscriptions[(conversation_id, user_id)] = subscription
        await self.bus.track_presence(
            topic, str(user_id), PresenceState(user_id=user_id).model_dump(mode="json")
        )
        logger.info("presence_joined", conversation_id=str(conversation_id), user_id=str(user_id))
        return subscription

    async def leave(self, conversation_id: UUID, user_id: UUID) -> None:
        """Stop tracking the user on a conversation channel."""
        key = (conversation_id, user_id)
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        subscription = self._subscriptions.pop(key, None)
        if subscription is not None:
            await self.bus.unsubscribe(subscription)
        await self.bus.untrack_presence(conversation_topic(conversation_id), str(user_id))
        logger.info("presence_left", conversation_id=str(conversation_id), user_id=str(user_id))

    async def is_typing(self, conversation_id: UUID, user_id: UUID) -> bool:
        state = await self.bus.presence_state(conversation_topic(conversation_id))
        return bool(state.get(str(user_id), {}).get("typing"))

    async def close(self) -> None:
        """Cancel every pending expiry timer."""
        timers = list(self._timers.values())
        self._timers.clear()
        for timer in timers:
            if not timer.done():
                timer.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)
        logger.info("presence_tracker_closed", cancelled=len(timers))
