"""Base real-time channel interface."""

import inspect
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional
from uuid import UUID, uuid4

from ..repositories.base import Filter

EventCallback = Callable[[Dict[str, Any]], Any]
PresenceCallback = Callable[[Dict[str, Dict[str, Any]]], Any]


def conversation_topic(conversation_id: UUID) -> str:
    """Channel topic carrying a conversation's messages and presence."""
    return f"messages:{conversation_id}"


async def invoke_callback(callback: Callable[..., Any], *args: Any) -> None:
    """Call a sync or async callback."""
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


@dataclass(frozen=True)
class Subscription:
    """Handle for a registered channel listener."""

    topic: str
    kind: str
    id: UUID = field(default_factory=uuid4)
    table: Optional[str] = None


class ChannelBus(ABC):
    """Abstract publish/subscribe bus with an ephemeral presence layer."""

    @abstractmethod
    async def subscribe(self, topic: str, callback: EventCallback) -> Subscription:
        """Receive events published on ``topic``."""
        pass

    @abstractmethod
    async def publish(self, topic: str, event: Dict[str, Any]) -> None:
        """Broadcast an event to the topic's subscribers."""
        pass

    @abstractmethod
    async def track_presence(self, topic: str, key: str, state: Dict[str, Any]) -> None:
        """Set the presence state held under ``key`` on ``topic``."""
        pass

    @abstractmethod
    async def untrack_presence(self, topic: str, key: str) -> None:
        """Remove the presence state held under ``key``."""
        pass

    @abstractmethod
    async def presence_state(self, topic: str) -> Dict[str, Dict[str, Any]]:
        """Current presence states on ``topic`` keyed by presence key."""
        pass

    @abstractmethod
    async def on_presence_sync(self, topic: str, callback: PresenceCallback) -> Subscription:
        """Receive the full presence state whenever it changes."""
        pass

    @abstractmethod
    async def on_insert_event(
        self, topic: str, table: str, where: Filter, callback: EventCallback
    ) -> Subscription:
        """Receive rows inserted into ``table`` that match ``where``."""
        pass

    @abstractmethod
    async def unsubscribe(self, subscription: Subscription) -> None:
        """Stop delivering to a listener."""
        pass
