"""In-process channel bus implementation."""

from collections import defaultdict
from typing import Any, Callable, Dict, List, Tuple

import structlog

from ..repositories.base import Filter
from .base import (
    ChannelBus,
    EventCallback,
    PresenceCallback,
    Subscription,
    invoke_callback,
)

logger = structlog.get_logger()


class InMemoryChannelBus(ChannelBus):
    """Single-process bus; presence lives only as long as the bus does."""

    def __init__(self) -> None:
        self._presence: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)
        self._listeners: Dict[str, Dict[Subscription, Callable[..., Any]]] = defaultdict(dict)
        self._insert_filters: Dict[Subscription, Filter] = {}

    async def _dispatch(self, targets: List[Tuple[Subscription, Callable[..., Any]]], payload: Any) -> None:
        for subscription, callback in targets:
            try:
                await invoke_callback(callback, payload)
            except Exception as e:
                logger.error(
                    "channel_callback_error",
                    topic=subscription.topic,
                    kind=subscription.kind,
                    error=str(e),
                )

    def _targets(self, topic: str, kind: str) -> List[Tuple[Subscription, Callable[..., Any]]]:
        return [
            (subscription, callback)
            for subscription, callback in self._listeners[topic].items()
            if subscription.kind == kind
        ]

    async def subscribe(self, topic: str, callback: EventCallback) -> Subscription:
        subscription = Subscription(topic=topic, kind="broadcast")
        self._listeners[topic][subscription] = callback
        logger.debug("channel_subscribed", topic=topic)
        return subscription

    async def publish(self, topic: str, event: Dict[str, Any]) -> None:
        await self._dispatch(self._targets(topic, "broadcast"), dict(event))

    async def track_presence(self, topic: str, key: str, state: Dict[str, Any]) -> None:
        self._presence[topic][key] = dict(state)
        await self._sync(topic)

    async def untrack_presence(self, topic: str, key: str) -> None:
        if self._presence[topic].pop(key, None) is not None:
            await self._sync(topic)

    async def presence_state(self, topic: str) -> Dict[str, Dict[str, Any]]:
        return {key: dict(state) for key, state in self._presence[topic].items()}

    async def _sync(self, topic: str) -> None:
        snapshot = await self.presence_state(topic)
        await self._dispatch(self._targets(topic, "presence"), snapshot)

    async def on_presence_sync(self, topic: str, callback: PresenceCallback) -> Subscription:
        subscription = Subscription(topic=topic, kind="presence")
        self._listeners[topic][subscription] = callback
        return subscription

    async def on_insert_event(
        self, topic: str, table: str, where: Filter, callback: EventCallback
    ) -> Subscription:
        subscription = Subscription(topic=topic, kind="insert", table=table)
        self._listeners[topic][subscription] = callback
        self._insert_filters[subscription] = where
        logger.debug("insert_listener_registered", topic=topic, table=table)
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        self._listeners[subscription.topic].pop(subscription, None)
        self._insert_filters.pop(subscription, None)

    async def deliver_insert(self, table: str, row: Dict[str, Any]) -> None:
        """Fan an inserted row out to matching insert listeners on every topic."""
        targets = [
            (subscription, callback)
            for listeners in self._listeners.values()
            for subscription, callback in listeners.items()
            if subscription.kind == "insert"
            and subscription.table == table
            and self._insert_filters[subscription].matches(row)
        ]
        await self._dispatch(targets, dict(row))
