"""
Message service: send, edit, delete, react, delivery/read transitions and
reply threading. Notifies the realtime gateway after every committed change.
"""

import logging
from contextlib import contextmanager
from datetime import timedelta
from typing import Callable, Iterable, Optional, Tuple

from chatcore.config import settings
from chatcore.conversation_service import ConversationService
from chatcore.errors import (
    AdminRequiredError,
    ChatError,
    EditWindowExpiredError,
    EmptyContentError,
    InvalidReplyError,
    MessageDeletedError,
    MessageNotFoundError,
    MutedSelfSendError,
    NotAuthorError,
    NotParticipantError,
    UnsupportedContentTypeError,
    ValidationError,
)
from chatcore.media import MediaStore
from chatcore.metrics import record_message_operation
from chatcore.models import (
    MEDIA_CONTENT_TYPES,
    ContentType,
    Conversation,
    Deleted,
    Message,
    MessageEdit,
    MessageReaction,
    Priority,
)
from chatcore.realtime import (
    MESSAGE_DELETED,
    MESSAGE_REACTION,
    MESSAGE_UPDATED,
    RECEIVE_MESSAGE,
    RealtimeGateway,
)
from chatcore.repositories import MessageStore
from chatcore.schemas import MessageContent, MessageResponse
from chatcore.utils import extract_mentions, utcnow

logger = logging.getLogger(__name__)


@contextmanager
def tracked(operation: str):
    """Count the outcome of a message operation."""
    try:
        yield
    except ChatError as e:
        record_message_operation(operation, type(e).__name__)
        raise
    record_message_operation(operation, "ok")


class MessageService:
    def __init__(
        self,
        store: MessageStore,
        conversations: ConversationService,
        gateway: Optional[RealtimeGateway] = None,
        media: Optional[MediaStore] = None,
        edit_window: Optional[timedelta] = None,
        clock: Callable = utcnow,
    ):
        self.store = store
        self.conversations = conversations
        self.gateway = gateway
        self.media = media or MediaStore()
        self.edit_window = edit_window or timedelta(minutes=settings.EDIT_WINDOW_MINUTES)
        self.clock = clock

    # =========================================================================
    # Lookup
    # =========================================================================

    def _get(self, message_id: str) -> Message:
        message = self.store.get(message_id)
        if message is None:
            raise MessageNotFoundError()
        return message

    def _get_active(self, message_id: str) -> Message:
        message = self._get(message_id)
        if isinstance(message.lifecycle, Deleted):
            raise MessageDeletedError()
        return message

    def _require_participant(self, message: Message, user_id: str) -> Conversation:
        conversation = self.conversations.get(message.conversation_id)
        if not conversation.is_participant(user_id):
            raise NotParticipantError("Not authorized to access this message")
        return conversation

    def get(self, message_id: str, requester_id: str) -> Message:
        """Direct lookup. Soft-deleted messages are still returned."""
        message = self._get(message_id)
        self._require_participant(message, requester_id)
        return message

    def list_by_conversation(
        self,
        conversation_id: str,
        requester_id: str,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> Tuple[list[Message], int]:
        """
        Page a conversation's history.

        Pages are cut newest-first and returned oldest-first for display.
        Soft-deleted messages are excluded. Returned messages the requester
        did not author are marked delivered.

        Returns:
            Tuple of (messages in chronological order, total non-deleted count)
        """
        self.conversations.get_for_participant(conversation_id, requester_id)
        limit = limit or settings.DEFAULT_PAGE_SIZE
        offset = (page - 1) * limit

        messages, total = self.store.page_for_conversation(conversation_id, limit=limit, offset=offset)

        undelivered = [m.id for m in messages if m.sender_id != requester_id and not m.is_delivered]
        if undelivered:
            changed = self.store.mark_delivered(undelivered, self.clock())
            logger.debug(f"Marked {changed} messages delivered to {requester_id}")

        messages.reverse()
        return messages, total

    def list_thread(self, message_id: str, requester_id: str) -> Tuple[Message, list[Message]]:
        """Return the thread root and its replies in chronological order."""
        message = self.get(message_id, requester_id)
        root = self._get(message.thread_id) if message.thread_id else message
        return root, self.store.thread(root.id)

    # =========================================================================
    # Send
    # =========================================================================

    def _resolve_mentions(self, conversation: Conversation, sender_id: str, text: Optional[str]) -> list[str]:
        handles = extract_mentions(text or "")
        if not handles:
            return []
        ids = self.conversations.directory.ids_for_usernames(handles)
        members = set(conversation.participant_ids)
        return [ids[h] for h in handles if h in ids and ids[h] in members and ids[h] != sender_id]

    def _build_message(
        self,
        conversation: Conversation,
        sender_id: str,
        content: MessageContent,
        priority: Priority,
    ) -> Message:
        message = Message(
            conversation_id=conversation.id,
            sender_id=sender_id,
            content_type=content.type.value,
            text=content.text.strip() if content.text else content.text,
            priority=priority.value,
            mentions=self._resolve_mentions(conversation, sender_id, content.text),
            created_at=self.clock(),
        )
        if not conversation.is_group:
            others = conversation.other_participant_ids(sender_id)
            message.recipient_id = others[0] if others else None
        if content.media is not None:
            media = content.media
            message.media_key = media.key
            message.media_url = media.url or self.media.resolve_url(media.key)
            message.media_thumbnail = media.thumbnail
            message.media_filename = media.filename
            message.media_size = media.size
            message.media_duration = media.duration
            message.media_mime_type = media.mime_type
        if content.location is not None:
            message.location_name = content.location.name
            message.location_longitude = content.location.longitude
            message.location_latitude = content.location.latitude
        if content.contact is not None:
            message.contact_name = content.contact.name
            message.contact_phone = content.contact.phone
            message.contact_email = content.contact.email
        return message

    async def send(
        self,
        conversation_id: str,
        sender_id: str,
        content: MessageContent,
        reply_to: Optional[str] = None,
        priority: Priority = Priority.NORMAL,
        forwarded_from: Optional[Message] = None,
    ) -> Message:
        """
        Validate and persist a message, update the conversation aggregate and
        announce it to the other participants.

        Every check runs before anything is written.
        """
        with tracked("forward" if forwarded_from is not None else "send"):
            conversation = self.conversations.get_active(conversation_id)
            participant = conversation.participant(sender_id)
            if participant is None:
                raise NotParticipantError("Not authorized to send messages in this conversation")
            if participant.is_muted:
                raise MutedSelfSendError()
            if conversation.is_group and conversation.only_admins_can_send and not participant.is_admin:
                raise AdminRequiredError("Only admins can send messages in this group")
            if content.type == ContentType.TEXT and not (content.text or "").strip() and content.media is None:
                raise EmptyContentError()

            parent = None
            if reply_to:
                parent = self.store.get(reply_to)
                if parent is None or parent.conversation_id != conversation.id:
                    raise InvalidReplyError()

            message = self._build_message(conversation, sender_id, content, priority)
            if parent is not None:
                message.reply_to_id = parent.id
                message.thread_id = parent.thread_id or parent.id
            if forwarded_from is not None:
                message.forwarded_from_id = forwarded_from.id
                message.forwarded_from_user_id = forwarded_from.sender_id

            recipients = conversation.other_participant_ids(sender_id)
            muted = {p.user_id for p in conversation.participants if p.is_muted}

            self.store.add(message)
            self.conversations.update_last_message(
                conversation.id, message.id, is_media=ContentType(message.content_type) in MEDIA_CONTENT_TYPES
            )
            for user_id in recipients:
                self.conversations.increment_unread(conversation.id, user_id, sender_id)
            self.conversations.restore_for_participants(conversation)

            logger.info(f"Message {message.id} sent to {conversation.id} by {sender_id}")

            payload = MessageResponse.from_message(message).model_dump(mode="json")
            for user_id in recipients:
                await self._emit(
                    [user_id],
                    RECEIVE_MESSAGE,
                    {
                        **payload,
                        "muted": user_id in muted,
                        "mentioned": user_id in message.mentions,
                    },
                )
            return message

    async def forward(self, message_id: str, user_id: str, target_conversation_id: str) -> Message:
        source = self._get_active(message_id)
        self._require_participant(source, user_id)
        content = MessageContent.from_message(source)
        return await self.send(target_conversation_id, user_id, content, forwarded_from=source)

    # =========================================================================
    # Status transitions
    # =========================================================================

    def mark_delivered(self, message_id: str) -> Message:
        """sent -> delivered. Idempotent."""
        message = self._get(message_id)
        if not message.is_delivered:
            message.is_delivered = True
            message.delivered_at = self.clock()
            self.store.save(message)
        return message

    def mark_read(self, message_id: str, reader_id: Optional[str] = None) -> Message:
        """
        -> read (implies delivered). Idempotent.

        When a reader is given they must be a participant; a sender reading
        their own message changes nothing.
        """
        message = self._get(message_id)
        if reader_id is not None:
            self._require_participant(message, reader_id)
            if reader_id == message.sender_id:
                return message
        if not message.is_read:
            now = self.clock()
            if not message.is_delivered:
                message.is_delivered = True
                message.delivered_at = now
            message.is_read = True
            message.read_at = now
            self.store.save(message)
        return message

    # =========================================================================
    # Edit / delete
    # =========================================================================

    async def edit(self, message_id: str, editor_id: str, new_text: str) -> Message:
        with tracked("edit"):
            message = self._get_active(message_id)
            if message.sender_id != editor_id:
                raise NotAuthorError("Not authorized to edit this message")
            now = self.clock()
            if now - message.created_at > self.edit_window:
                raise EditWindowExpiredError()
            if message.content_type != ContentType.TEXT.value:
                raise UnsupportedContentTypeError()
            new_text = (new_text or "").strip()
            if not new_text:
                raise ValidationError("Message text is required")
            if len(new_text) > settings.MAX_TEXT_LENGTH:
                raise ValidationError(f"Message text must be at most {settings.MAX_TEXT_LENGTH} characters")

            conversation = self.conversations.get(message.conversation_id)
            message.edit_history.append(MessageEdit(text=message.text, edited_at=now))
            message.text = new_text
            message.is_edited = True
            message.edited_at = now
            message.mentions = self._resolve_mentions(conversation, editor_id, new_text)
            self.store.save(message)
            logger.info(f"Message {message.id} edited by {editor_id}")

            await self._emit(
                conversation.other_participant_ids(editor_id),
                MESSAGE_UPDATED,
                MessageResponse.from_message(message).model_dump(mode="json"),
            )
            return message

    async def soft_delete(self, message_id: str, requester_id: str) -> Message:
        """Terminal: the row stays for audit but leaves default listings."""
        with tracked("delete"):
            message = self._get_active(message_id)
            if message.sender_id != requester_id:
                raise NotAuthorError("Not authorized to delete this message")
            message.is_deleted = True
            message.deleted_at = self.clock()
            message.deleted_by = requester_id
            self.store.save(message)
            logger.info(f"Message {message.id} deleted by {requester_id}")

            conversation = self.conversations.get(message.conversation_id)
            await self._emit(
                conversation.other_participant_ids(requester_id),
                MESSAGE_DELETED,
                {"id": message.id, "conversation_id": message.conversation_id},
            )
            return message

    # =========================================================================
    # Reactions
    # =========================================================================

    async def react(self, message_id: str, user_id: str, emoji: str) -> Message:
        """Set the user's reaction, replacing any previous one."""
        with tracked("react"):
            message = self._get_active(message_id)
            conversation = self._require_participant(message, user_id)
            existing = message.reaction_from(user_id)
            if existing is not None:
                existing.emoji = emoji
                existing.created_at = self.clock()
            else:
                message.reactions.append(
                    MessageReaction(user_id=user_id, emoji=emoji, created_at=self.clock())
                )
            self.store.save(message)

            await self._emit(
                conversation.other_participant_ids(user_id),
                MESSAGE_REACTION,
                {"message_id": message.id, "conversation_id": message.conversation_id,
                 "user_id": user_id, "emoji": emoji},
            )
            return message

    async def unreact(self, message_id: str, user_id: str) -> Message:
        """Remove the user's reaction. No-op if there is none."""
        with tracked("unreact"):
            message = self._get_active(message_id)
            conversation = self._require_participant(message, user_id)
            existing = message.reaction_from(user_id)
            if existing is None:
                return message
            message.reactions.remove(existing)
            self.store.save(message)

            await self._emit(
                conversation.other_participant_ids(user_id),
                MESSAGE_REACTION,
                {"message_id": message.id, "conversation_id": message.conversation_id,
                 "user_id": user_id, "emoji": None},
            )
            return message

    # =========================================================================
    # Realtime
    # =========================================================================

    async def _emit(self, user_ids: Iterable[str], event: str, payload: dict) -> None:
        """Fire-and-forget: a failed push never fails the calling operation."""
        if self.gateway is None:
            return
        try:
            await self.gateway.notify_many(user_ids, event, payload)
        except Exception:
            logger.exception(f"Realtime notification {event} failed")
