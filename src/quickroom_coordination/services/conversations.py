"""Conversation establishment and chat-surface support.

``ConversationCoordinator.find_or_create`` opens a two-party conversation at
most once per (user, counterparty, listing) triple. The store only guarantees
single-row atomicity, so a new conversation is built with ordered inserts:

    conversation -> own participant row -> counterparty participant row

and every insert is read back before the next step. If a participant insert
fails or cannot be confirmed, the rows already written are deleted again
(participants first, then the conversation) before ``ConversationSetupError``
reaches the caller. Rollback failures are logged and swallowed so the primary
error is always the one reported.

Setup runs shielded from caller cancellation: a user navigating away must not
leave a half-built conversation behind.
"""

import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

import structlog

from ..channels.base import ChannelBus, Subscription, conversation_topic, invoke_callback
from ..domain.errors import (
    ConversationSetupError,
    InvalidMessageError,
    PersistenceVerificationError,
    SelfReferenceError,
)
from ..domain.models import ConversationSummary, Message, MessageType, utcnow
from ..metrics import CONVERSATION_ROLLBACKS, CONVERSATIONS_CREATED
from ..repositories.base import (
    CONVERSATIONS,
    MESSAGES,
    PARTICIPANTS,
    Filter,
    StoreClient,
    StoreError,
)
from .notifications import NotificationDispatcher
from .presence import PresenceTracker
from .security import read_back, require_conversation_participant

logger = structlog.get_logger()


class ConversationCoordinator:
    """Finds or creates conversations and guards the chat operations on them."""

    def __init__(
        self,
        store: StoreClient,
        bus: ChannelBus,
        notifications: NotificationDispatcher,
        presence: Optional[PresenceTracker] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.bus = bus
        self.notifications = notifications
        self.presence = presence
        self._clock = clock

    async def find_or_create(
        self,
        current_user_id: UUID,
        counterparty_id: UUID,
        listing_id: Optional[UUID],
    ) -> UUID:
        """Return the conversation for this pair and listing, creating it if needed."""
        if current_user_id == counterparty_id:
            logger.info("conversation_self_reference", user_id=str(current_user_id))
            raise SelfReferenceError()

        logger.debug(
            "conversation_lookup_started",
            user_id=str(current_user_id),
            counterparty_id=str(counterparty_id),
            listing_id=str(listing_id) if listing_id else None,
        )
        existing_id = await self._find_existing(current_user_id, counterparty_id, listing_id)
        if existing_id is not None:
            logger.info("conversation_found", conversation_id=str(existing_id))

        return await asyncio.shield(
            self._establish(current_user_id, counterparty_id, listing_id, existing_id)
        )

    async def _establish(
        self,
        current_user_id: UUID,
        counterparty_id: UUID,
        listing_id: Optional[UUID],
        existing_id: Optional[UUID],
    ) -> UUID:
        # Runs under asyncio.shield, the counterparty notice included.
        conversation_id = existing_id
        if conversation_id is None:
            conversation_id = await self._create(current_user_id, counterparty_id, listing_id)
        await self.notifications.notify_conversation_started(counterparty_id)
        return conversation_id

    async def _find_existing(
        self,
        current_user_id: UUID,
        counterparty_id: UUID,
        listing_id: Optional[UUID],
    ) -> Optional[UUID]:
        # Any qualifying match is acceptable; duplicates are not defended against.
        try:
            memberships = await self.store.select(PARTICIPANTS, Filter.eq(user_id=current_user_id))
            for membership in memberships:
                candidate_id = membership["conversation_id"]
                participants = await self.store.select(
                    PARTICIPANTS, Filter.eq(conversation_id=candidate_id)
                )
                conversation = await self.store.select_one(CONVERSATIONS, Filter.eq(id=candidate_id))
                if conversation is None:
                    continue
                if (
                    any(p["user_id"] == counterparty_id for p in participants)
                    and conversation.get("listing_id") == listing_id
                ):
                    return candidate_id
        except StoreError as e:
            logger.error("conversation_lookup_failed", user_id=str(current_user_id), error=str(e))
            raise ConversationSetupError() from e
        return None

    async def _insert_confirmed(self, collection: str, values: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        row = await self.store.insert(collection, values)
        return await read_back(self.store, collection, row)

    async def _add_participant(self, conversation_id: UUID, user_id: UUID) -> Optional[Dict[str, Any]]:
        try:
            row = await self._insert_confirmed(
                PARTICIPANTS, {"conversation_id": conversation_id, "user_id": user_id}
            )
        except StoreError as e:
            logger.error(
                "participant_insert_failed",
                conversation_id=str(conversation_id),
                user_id=str(user_id),
                error=str(e),
            )
            return None
        if row is None:
            logger.error(
                "participant_insert_unconfirmed",
                conversation_id=str(conversation_id),
                user_id=str(user_id),
            )
        return row

    async def _create(
        self,
        current_user_id: UUID,
        counterparty_id: UUID,
        listing_id: Optional[UUID],
    ) -> UUID:
        try:
            conversation = await self._insert_confirmed(CONVERSATIONS, {"listing_id": listing_id})
        except StoreError as e:
            logger.error("conversation_insert_failed", error=str(e))
            raise ConversationSetupError() from e
        if conversation is None:
            logger.error("conversation_insert_unconfirmed", listing_id=str(listing_id) if listing_id else None)
            raise ConversationSetupError()

        conversation_id = conversation["id"]
        logger.debug("conversation_row_created", conversation_id=str(conversation_id))

        if await self._add_participant(conversation_id, current_user_id) is None:
            await self._rollback(conversation_id)
            raise ConversationSetupError()

        if await self._add_participant(conversation_id, counterparty_id) is None:
            await self._rollback(conversation_id)
            raise ConversationSetupError()

        CONVERSATIONS_CREATED.inc()
        logger.info(
            "conversation_created",
            conversation_id=str(conversation_id),
            listing_id=str(listing_id) if listing_id else None,
        )
        return conversation_id

    async def _rollback(self, conversation_id: UUID) -> None:
        """Delete participant rows, then the conversation; never raises."""
        CONVERSATION_ROLLBACKS.inc()
        steps = (
            (PARTICIPANTS, Filter.eq(conversation_id=conversation_id)),
            (CONVERSATIONS, Filter.eq(id=conversation_id)),
        )
        for collection, where in steps:
            try:
                await self.store.delete(collection, where)
            except Exception as e:
                logger.error(
                    "conversation_rollback_failed",
                    conversation_id=str(conversation_id),
                    collection=collection,
                    error=str(e),
                )

        leftovers = 0
        for collection, where in steps:
            try:
                leftovers += len(await self.store.select(collection, where))
            except Exception as e:
                logger.error("conversation_rollback_check_failed", collection=collection, error=str(e))
        if leftovers:
            logger.error(
                "conversation_rollback_incomplete",
                conversation_id=str(conversation_id),
                remaining_rows=leftovers,
            )
        else:
            logger.warning("conversation_rolled_back", conversation_id=str(conversation_id))

    async def send_message(
        self,
        sender_id: UUID,
        conversation_id: UUID,
        content: Optional[str],
        message_type: MessageType = MessageType.TEXT,
        file_url: Optional[str] = None,
    ) -> Message:
        """Persist a message from a participant and confirm it was stored."""
        await require_conversation_participant(
            self.store, sender_id, conversation_id, "message_send_unauthorized"
        )

        text = content.strip() if content else None
        if message_type == MessageType.TEXT and not text:
            raise InvalidMessageError()
        if message_type != MessageType.TEXT and not file_url:
            raise InvalidMessageError(user_message="Please attach a file to send.")

        row = await self._insert_confirmed(
            MESSAGES,
            {
                "conversation_id": conversation_id,
                "sender_id": sender_id,
                "content": text,
                "message_type": message_type.value,
                "file_url": file_url,
                "is_read": False,
            },
        )
        if row is None:
            logger.error("message_insert_unconfirmed", conversation_id=str(conversation_id))
            raise PersistenceVerificationError()

        message = Message(**row)
        logger.info("message_saved", conversation_id=str(conversation_id), message_id=str(message.id))

        try:
            await self.store.update(
                CONVERSATIONS, {"updated_at": self._clock()}, Filter.eq(id=conversation_id)
            )
        except StoreError as e:
            logger.warning("conversation_touch_failed", conversation_id=str(conversation_id), error=str(e))

        for recipient_id in await self._other_participants(conversation_id, sender_id):
            await self.notifications.notify_new_message(recipient_id)

        if self.presence is not None:
            try:
                await self.presence.set_typing(conversation_id, sender_id, False)
            except Exception as e:
                logger.warning("typing_reset_failed", conversation_id=str(conversation_id), error=str(e))

        return message

    async def _other_participants(self, conversation_id: UUID, user_id: UUID) -> List[UUID]:
        rows = await self.store.select(PARTICIPANTS, Filter.eq(conversation_id=conversation_id))
        return [row["user_id"] for row in rows if row["user_id"] != user_id]

    async def list_conversations(self, user_id: UUID) -> List[ConversationSummary]:
        """Conversations the user takes part in, most recently active first."""
        memberships = await self.store.select(PARTICIPANTS, Filter.eq(user_id=user_id))
        summaries = []
        for membership in memberships:
            conversation_id = membership["conversation_id"]
            conversation = await self.store.select_one(CONVERSATIONS, Filter.eq(id=conversation_id))
            if conversation is None:
                continue
            others = await self._other_participants(conversation_id, user_id)
            last = await self.store.select(
                MESSAGES,
                Filter.eq(conversation_id=conversation_id),
                order_by="created_at",
                descending=True,
                limit=1,
            )
            summaries.append(
                ConversationSummary(
                    conversation_id=conversation_id,
                    listing_id=conversation.get("listing_id"),
                    other_user_id=others[0] if others else None,
                    last_message=last[0].get("content") if last else None,
                    updated_at=conversation["updated_at"],
                )
            )
        summaries.sort(key=lambda s: s.updated_at, reverse=True)
        return summaries

    async def get_messages(self, user_id: UUID, conversation_id: UUID) -> List[Message]:
        await require_conversation_participant(
            self.store, user_id, conversation_id, "message_read_unauthorized"
        )
        rows = await self.store.select(
            MESSAGES, Filter.eq(conversation_id=conversation_id), order_by="created_at"
        )
        return [Message(**row) for row in rows]

    async def mark_read(self, user_id: UUID, conversation_id: UUID) -> int:
        """Mark the other party's messages read; returns how many changed."""
        participant = await require_conversation_participant(
            self.store, user_id, conversation_id, "message_read_unauthorized"
        )
        now = self._clock()
        await self.store.update(
            PARTICIPANTS, {"last_read_at": now}, Filter.eq(id=participant["id"])
        )
        confirmed = await read_back(self.store, PARTICIPANTS, participant)
        if confirmed is None or confirmed.get("last_read_at") != now:
            logger.error("last_read_unconfirmed", conversation_id=str(conversation_id))
            raise PersistenceVerificationError()

        changed = 0
        for other_id in await self._other_participants(conversation_id, user_id):
            rows = await self.store.update(
                MESSAGES,
                {"is_read": True},
                Filter.eq(conversation_id=conversation_id, sender_id=other_id, is_read=False),
            )
            changed += len(rows)
        logger.debug("messages_marked_read", conversation_id=str(conversation_id), count=changed)
        return changed

    async def watch_messages(
        self,
        user_id: UUID,
        conversation_id: UUID,
        callback: Callable[[Message], Any],
    ) -> Subscription:
        """Deliver messages inserted into the conversation to ``callback``."""
        await require_conversation_participant(
            self.store, user_id, conversation_id, "message_watch_unauthorized"
        )

        async def handle_insert(row: Dict[str, Any]) -> None:
            await invoke_callback(callback, Message(**row))

        return await self.bus.on_insert_event(
            conversation_topic(conversation_id),
            MESSAGES,
            Filter.eq(conversation_id=conversation_id),
            handle_insert,
        )
