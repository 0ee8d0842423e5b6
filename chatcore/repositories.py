"""
Conversation and message stores.

Thin repository layer over the SQLAlchemy session. Stores commit their own
mutations; services decide what to mutate and in which order.
"""

import logging
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from chatcore.models import Conversation, ConversationParticipant, Message

logger = logging.getLogger(__name__)


class ConversationStore:
    def __init__(self, db: Session):
        self.db = db

    def get(self, conversation_id: str) -> Optional[Conversation]:
        return self.db.get(Conversation, conversation_id)

    def find_direct(self, direct_key: str) -> Optional[Conversation]:
        """Return the live direct conversation for a participant pair, if any."""
        return (
            self.db.query(Conversation)
            .filter(
                Conversation.direct_key == direct_key,
                Conversation.is_group.is_(False),
                Conversation.is_deleted.is_(False),
            )
            .first()
        )

    def add(self, conversation: Conversation) -> Conversation:
        logger.info(f"Creating conversation: group={conversation.is_group}")
        try:
            self.db.add(conversation)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(conversation)
        logger.info(f"Conversation created successfully: {conversation.id}")
        return conversation

    def save(self, conversation: Conversation) -> Conversation:
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(conversation)
        return conversation

    def list_for_user(
        self,
        user_id: str,
        limit: int,
        offset: int = 0,
        archived: bool = False,
    ) -> Tuple[list, int]:
        """
        Page a user's conversations, most recently active first.

        Returns:
            Tuple of (list of (Conversation, ConversationParticipant), total)
        """
        query = (
            self.db.query(Conversation, ConversationParticipant)
            .join(ConversationParticipant, ConversationParticipant.conversation_id == Conversation.id)
            .filter(
                ConversationParticipant.user_id == user_id,
                ConversationParticipant.deleted_at.is_(None),
                ConversationParticipant.is_archived.is_(archived),
                Conversation.is_deleted.is_(False),
            )
        )
        total = query.count()
        rows = (
            query.order_by(
                ConversationParticipant.is_pinned.desc(),
                Conversation.last_message_at.desc(),
                Conversation.id.asc(),
            )
            .offset(offset)
            .limit(limit)
            .all()
        )
        logger.debug(f"Listed {len(rows)} of {total} conversations for {user_id}")
        return rows, total

    def set_last_message(self, conversation_id: str, message_id: str, at: datetime, is_media: bool) -> bool:
        """Point the conversation at its newest message. False if it no longer exists."""
        values = {
            "last_message_id": message_id,
            "last_message_at": at,
            "total_messages": Conversation.total_messages + 1,
            "updated_at": at,
        }
        if is_media:
            values["total_media"] = Conversation.total_media + 1
        result = self.db.execute(
            update(Conversation).where(Conversation.id == conversation_id).values(**values)
        )
        self.db.commit()
        return result.rowcount > 0

    def increment_unread(self, conversation_id: str, user_id: str) -> bool:
        """Atomic counter bump, no read-modify-write."""
        result = self.db.execute(
            update(ConversationParticipant)
            .where(
                ConversationParticipant.conversation_id == conversation_id,
                ConversationParticipant.user_id == user_id,
            )
            .values(unread_count=ConversationParticipant.unread_count + 1)
        )
        self.db.commit()
        return result.rowcount > 0

    def reset_unread(self, conversation_id: str, user_id: str, at: datetime) -> bool:
        result = self.db.execute(
            update(ConversationParticipant)
            .where(
                ConversationParticipant.conversation_id == conversation_id,
                ConversationParticipant.user_id == user_id,
            )
            .values(unread_count=0, last_read_at=at)
        )
        self.db.commit()
        return result.rowcount > 0

    def restore_for_participants(self, conversation_id: str) -> None:
        """Bring a conversation back into the inbox of members who deleted it."""
        self.db.execute(
            update(ConversationParticipant)
            .where(
                ConversationParticipant.conversation_id == conversation_id,
                ConversationParticipant.deleted_at.is_not(None),
            )
            .values(deleted_at=None)
        )
        self.db.commit()

    def refresh(self, conversation: Conversation) -> Conversation:
        self.db.refresh(conversation)
        for participant in conversation.participants:
            self.db.refresh(participant)
        return conversation

    def total_unread(self, user_id: str) -> int:
        total = (
            self.db.query(func.coalesce(func.sum(ConversationParticipant.unread_count), 0))
            .join(Conversation, Conversation.id == ConversationParticipant.conversation_id)
            .filter(
                ConversationParticipant.user_id == user_id,
                ConversationParticipant.deleted_at.is_(None),
                Conversation.is_deleted.is_(False),
            )
            .scalar()
        )
        return int(total or 0)


class MessageStore:
    def __init__(self, db: Session):
        self.db = db

    def get(self, message_id: str) -> Optional[Message]:
        return self.db.get(Message, message_id)

    def add(self, message: Message) -> Message:
        logger.info(f"Creating message in conversation {message.conversation_id} from {message.sender_id}")
        try:
            self.db.add(message)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(message)
        logger.info(f"Message created successfully: {message.id}")
        return message

    def save(self, message: Message) -> Message:
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(message)
        return message

    def page_for_conversation(
        self,
        conversation_id: str,
        limit: int,
        offset: int = 0,
    ) -> Tuple[list[Message], int]:
        """
        Page non-deleted messages, newest first.

        Returns:
            Tuple of (messages list, total count of non-deleted messages)
        """
        query = self.db.query(Message).filter(
            Message.conversation_id == conversation_id,
            Message.is_deleted.is_(False),
        )
        total = query.count()
        messages = (
            query.order_by(Message.created_at.desc(), Message.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        logger.debug(f"Retrieved {len(messages)} of {total} messages for {conversation_id}")
        return messages, total

    def thread(self, root_id: str) -> list[Message]:
        return (
            self.db.query(Message)
            .filter(Message.thread_id == root_id, Message.is_deleted.is_(False))
            .order_by(Message.created_at.asc(), Message.id.asc())
            .all()
        )

    def mark_delivered(self, message_ids: list[str], at: datetime) -> int:
        """Flip undelivered messages to delivered. Returns how many changed."""
        if not message_ids:
            return 0
        result = self.db.execute(
            update(Message)
            .where(Message.id.in_(message_ids), Message.is_delivered.is_(False))
            .values(is_delivered=True, delivered_at=at)
            .execution_options(synchronize_session="fetch")
        )
        self.db.commit()
        return result.rowcount
