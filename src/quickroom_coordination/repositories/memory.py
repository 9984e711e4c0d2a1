"""In-memory store implementation."""

import asyncio
import inspect
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import UUID, uuid4

import structlog

from ..domain.models import utcnow
from .base import (
    APPOINTMENTS,
    CONVERSATIONS,
    MESSAGES,
    NOTIFICATIONS,
    PARTICIPANTS,
    Filter,
    StoreClient,
    StoreError,
)

logger = structlog.get_logger()

# Write policy: (operation, candidate row) -> True when the write must be dropped
WritePolicy = Callable[[str, Dict[str, Any]], bool]
InsertListener = Callable[[str, Dict[str, Any]], Any]

# Column defaults applied on insert, mirroring the backing tables
COLUMN_DEFAULTS: Dict[str, Tuple[str, ...]] = {
    CONVERSATIONS: ("created_at", "updated_at"),
    PARTICIPANTS: ("joined_at",),
    MESSAGES: ("created_at",),
    APPOINTMENTS: ("created_at", "updated_at"),
    NOTIFICATIONS: ("created_at",),
}


class InMemoryStore(StoreClient):
    """Async-safe in-memory store with row-policy and failure injection hooks.

    Every operation yields to the event loop once before touching the tables,
    so concurrent callers interleave the way they would against a remote store.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._tables: Dict[str, Dict[UUID, Dict[str, Any]]] = defaultdict(dict)
        self._write_policies: Dict[str, List[WritePolicy]] = defaultdict(list)
        self._failures: Dict[Tuple[str, str], List[Exception]] = defaultdict(list)
        self._insert_listeners: List[InsertListener] = []
        self._lock = asyncio.Lock()
        logger.info("store_initialized", backend="memory")

    def add_write_policy(self, collection: str, policy: WritePolicy) -> None:
        """Silently drop writes to ``collection`` for which ``policy`` returns True."""
        self._write_policies[collection].append(policy)

    def clear_write_policies(self) -> None:
        self._write_policies.clear()

    def fail_next(self, collection: str, operation: str, error: Optional[Exception] = None) -> None:
        """Make the next ``operation`` on ``collection`` raise."""
        self._failures[(collection, operation)].append(
            error or StoreError(f"{operation} on {collection} failed")
        )

    def add_insert_listener(self, listener: InsertListener) -> None:
        """Register a callback invoked with (collection, row) after each insert."""
        self._insert_listeners.append(listener)

    def _raise_injected(self, collection: str, operation: str) -> None:
        pending = self._failures.get((collection, operation))
        if pending:
            error = pending.pop(0)
            logger.warning("store_failure_injected", collection=collection, operation=operation)
            raise error

    def _dropped(self, collection: str, operation: str, row: Dict[str, Any]) -> bool:
        return any(policy(operation, row) for policy in self._write_policies.get(collection, []))

    async def insert(self, collection: str, values: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Insert a row and return it as persisted, or None if nothing was written."""
        await asyncio.sleep(0)
        async with self._lock:
            self._raise_injected(collection, "insert")
            now = self._clock()
            row = dict(values)
            row.setdefault("id", uuid4())
            for column in COLUMN_DEFAULTS.get(collection, ()):
                row.setdefault(column, now)

            if self._dropped(collection, "insert", row):
                logger.debug("store_write_filtered", collection=collection, operation="insert")
                return None

            self._tables[collection][row["id"]] = row
            logger.debug("row_inserted", collection=collection, row_id=str(row["id"]))
            persisted = dict(row)

        for listener in self._insert_listeners:
            result = listener(collection, dict(persisted))
            if inspect.isawaitable(result):
                await result
        return persisted

    async def select(
        self,
        collection: str,
        where: Optional[Filter] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Return rows matching the filter."""
        await asyncio.sleep(0)
        async with self._lock:
            self._raise_injected(collection, "select")
            rows = [
                dict(row)
                for row in self._tables[collection].values()
                if where is None or where.matches(row)
            ]

        if order_by is not None:
            rows.sort(
                key=lambda r: (r.get(order_by) is not None, r.get(order_by)),
                reverse=descending,
            )
        if limit is not None:
            rows = rows[:limit]
        return rows

    async def update(
        self, collection: str, values: Dict[str, Any], where: Filter
    ) -> List[Dict[str, Any]]:
        """Update matching rows and return them as persisted."""
        await asyncio.sleep(0)
        async with self._lock:
            self._raise_injected(collection, "update")
            updated = []
            for row_id, row in list(self._tables[collection].items()):
                if not where.matches(row):
                    continue
                candidate = {**row, **values}
                if self._dropped(collection, "update", candidate):
                    logger.debug("store_write_filtered", collection=collection, operation="update")
                    continue
                self._tables[collection][row_id] = candidate
                updated.append(dict(candidate))
            return updated

    async def delete(self, collection: str, where: Filter) -> int:
        """Delete matching rows and return how many were removed."""
        await asyncio.sleep(0)
        async with self._lock:
            self._raise_injected(collection, "delete")
            doomed = [
                row_id
                for row_id, row in self._tables[collection].items()
                if where.matches(row) and not self._dropped(collection, "delete", row)
            ]
            for row_id in doomed:
                del self._tables[collection][row_id]
            logger.debug("rows_deleted", collection=collection, count=len(doomed))
            return len(doomed)
