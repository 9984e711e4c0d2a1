"""Base store interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

CONVERSATIONS = "conversations"
PARTICIPANTS = "conversation_participants"
MESSAGES = "messages"
APPOINTMENTS = "viewing_appointments"
NOTIFICATIONS = "notifications"


class StoreError(Exception):
    """Transport or backend failure reported by the store."""
    pass


@dataclass(frozen=True)
class Filter:
    """Conjunction of column equality predicates."""

    equals: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def eq(cls, **equals: Any) -> "Filter":
        return cls(equals=dict(equals))

    def matches(self, row: Dict[str, Any]) -> bool:
        return all(row.get(column) == value for column, value in self.equals.items())


class StoreClient(ABC):
    """Abstract base class for the remote row store.

    Writes may be accepted by the backend and still affect zero rows when a
    row-level policy filters them; implementations report that as an empty
    result rather than an error.
    """

    @abstractmethod
    async def insert(self, collection: str, values: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Insert a row and return it as persisted, or None if nothing was written."""
        pass

    @abstractmethod
    async def select(
        self,
        collection: str,
        where: Optional[Filter] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Return rows matching the filter."""
        pass

    @abstractmethod
    async def update(
        self, collection: str, values: Dict[str, Any], where: Filter
    ) -> List[Dict[str, Any]]:
        """Update matching rows and return them as persisted."""
        pass

    @abstractmethod
    async def delete(self, collection: str, where: Filter) -> int:
        """Delete matching rows and return how many were removed."""
        pass

    async def select_one(self, collection: str, where: Filter) -> Optional[Dict[str, Any]]:
        """Return the first matching row, if any."""
        rows = await self.select(collection, where, limit=1)
        return rows[0] if rows else None
