"""
SQLAlchemy ORM models for conversations and messages.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.

Per-user state that a document store would keep as keyed arrays lives in its
own rows here, with unique constraints doing the "one entry per user" work:

- conversation_participants: one row per (conversation, user) carrying the
  unread counter and that user's settings
- message_reactions: one row per (message, user)
"""

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from chatcore.storage import Base
from chatcore.utils import new_id, utcnow


class ContentType(str, enum.Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    FILE = "file"
    LOCATION = "location"
    CONTACT = "contact"


MEDIA_CONTENT_TYPES = {ContentType.IMAGE, ContentType.VIDEO, ContentType.AUDIO, ContentType.FILE}


class Priority(str, enum.Enum):
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class CreatedFrom(str, enum.Enum):
    DIRECT = "direct"
    POST_COMMENT = "post_comment"
    STORY_REPLY = "story_reply"
    PROFILE = "profile"


@dataclass(frozen=True)
class Active:
    """Lifecycle state of a message that has not been deleted."""


@dataclass(frozen=True)
class Deleted:
    """Terminal lifecycle state of a soft-deleted message."""
    at: datetime
    by: Optional[str]


Lifecycle = Union[Active, Deleted]


class Conversation(Base):
    """
    A direct (two users) or group conversation.

    Table: conversations
    direct_key is set only for live direct conversations, so the unique index
    guarantees at most one per pair of users.
    """
    __tablename__ = "conversations"

    id = Column(String(32), primary_key=True, default=new_id)
    is_group = Column(Boolean, nullable=False, default=False)
    direct_key = Column(String(255), nullable=True, unique=True)

    # Group info
    group_name = Column(String(50), nullable=True)
    group_description = Column(String(200), nullable=True)
    group_avatar = Column(String, nullable=True)
    created_by = Column(String, nullable=True)

    # Group settings
    only_admins_can_send = Column(Boolean, nullable=False, default=False)
    only_admins_can_edit_info = Column(Boolean, nullable=False, default=False)
    only_admins_can_add_participants = Column(Boolean, nullable=False, default=False)
    allow_participants_to_leave = Column(Boolean, nullable=False, default=True)

    last_message_id = Column(String(32), nullable=True)
    last_message_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    total_messages = Column(Integer, nullable=False, default=0)
    total_media = Column(Integer, nullable=False, default=0)
    created_from = Column(String(16), nullable=False, default=CreatedFrom.DIRECT.value)

    is_deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    participants = relationship(
        "ConversationParticipant",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="ConversationParticipant.id",
    )

    def participant(self, user_id: str) -> Optional["ConversationParticipant"]:
        for p in self.participants:
            if p.user_id == user_id:
                return p
        return None

    def is_participant(self, user_id: str) -> bool:
        return self.participant(user_id) is not None

    @property
    def participant_ids(self) -> list[str]:
        return [p.user_id for p in self.participants]

    @property
    def admin_ids(self) -> list[str]:
        return [p.user_id for p in self.participants if p.is_admin]

    @property
    def deleted_by(self) -> list[str]:
        return [p.user_id for p in self.participants if p.deleted_at is not None]

    def is_admin(self, user_id: str) -> bool:
        if not self.is_group:
            return False
        p = self.participant(user_id)
        return bool(p and p.is_admin)

    def other_participant_ids(self, user_id: str) -> list[str]:
        return [uid for uid in self.participant_ids if uid != user_id]

    def __repr__(self):
        return f"<Conversation {self.id} - {'Group' if self.is_group else 'Direct'}>"


class ConversationParticipant(Base):
    """
    Membership row: unread counter plus the member's own settings.

    Table: conversation_participants
    """
    __tablename__ = "conversation_participants"
    __table_args__ = (
        UniqueConstraint("conversation_id", "user_id", name="uq_conversation_participant"),
        Index("ix_conversation_participants_user", "user_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(
        String(32), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(String, nullable=False)
    is_admin = Column(Boolean, nullable=False, default=False)

    unread_count = Column(Integer, nullable=False, default=0)
    last_read_at = Column(DateTime, nullable=False, default=utcnow)

    is_muted = Column(Boolean, nullable=False, default=False)
    is_pinned = Column(Boolean, nullable=False, default=False)
    is_archived = Column(Boolean, nullable=False, default=False)
    archived_at = Column(DateTime, nullable=True)
    notify_sound = Column(Boolean, nullable=False, default=True)
    notify_vibration = Column(Boolean, nullable=False, default=True)
    notify_show_preview = Column(Boolean, nullable=False, default=True)

    # Set when this member deleted the conversation from their inbox
    deleted_at = Column(DateTime, nullable=True)
    joined_at = Column(DateTime, nullable=False, default=utcnow)

    conversation = relationship("Conversation", back_populates="participants")


class Message(Base):
    """
    A single message. Exactly one payload group is populated per content_type;
    text messages may also carry a media attachment.

    Table: messages
    """
    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_conversation_created", "conversation_id", "created_at"),
        Index("ix_messages_sender_created", "sender_id", "created_at"),
    )

    id = Column(String(32), primary_key=True, default=new_id)
    conversation_id = Column(
        String(32), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    sender_id = Column(String, nullable=False)
    # Direct messages only; group messages address every other participant
    recipient_id = Column(String, nullable=True, index=True)

    content_type = Column(String(16), nullable=False, default=ContentType.TEXT.value)
    text = Column(Text, nullable=True)
    media_key = Column(String, nullable=True)
    media_url = Column(String, nullable=True)
    media_thumbnail = Column(String, nullable=True)
    media_filename = Column(String, nullable=True)
    media_size = Column(Integer, nullable=True)
    media_duration = Column(Float, nullable=True)
    media_mime_type = Column(String, nullable=True)
    location_name = Column(String, nullable=True)
    location_longitude = Column(Float, nullable=True)
    location_latitude = Column(Float, nullable=True)
    contact_name = Column(String, nullable=True)
    contact_phone = Column(String, nullable=True)
    contact_email = Column(String, nullable=True)
    mentions = Column(JSON, nullable=False, default=list)

    is_read = Column(Boolean, nullable=False, default=False, index=True)
    read_at = Column(DateTime, nullable=True)
    is_delivered = Column(Boolean, nullable=False, default=False)
    delivered_at = Column(DateTime, nullable=True)

    reply_to_id = Column(String(32), ForeignKey("messages.id"), nullable=True)
    thread_id = Column(String(32), ForeignKey("messages.id"), nullable=True, index=True)
    forwarded_from_id = Column(String(32), nullable=True)
    forwarded_from_user_id = Column(String, nullable=True)
    priority = Column(String(8), nullable=False, default=Priority.NORMAL.value)

    is_edited = Column(Boolean, nullable=False, default=False)
    edited_at = Column(DateTime, nullable=True)

    is_deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime, nullable=True)
    deleted_by = Column(String, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    reactions = relationship(
        "MessageReaction",
        back_populates="message",
        cascade="all, delete-orphan",
        order_by="MessageReaction.created_at",
    )
    edit_history = relationship(
        "MessageEdit",
        back_populates="message",
        cascade="all, delete-orphan",
        order_by="MessageEdit.id",
    )
    reply_to = relationship("Message", foreign_keys=[reply_to_id], remote_side=[id])
    thread_messages = relationship(
        "Message",
        foreign_keys=[thread_id],
        order_by="Message.created_at",
    )

    @property
    def lifecycle(self) -> Lifecycle:
        if self.is_deleted:
            return Deleted(at=self.deleted_at, by=self.deleted_by)
        return Active()

    @property
    def status(self) -> str:
        """sent -> delivered -> read"""
        if self.is_read:
            return "read"
        if self.is_delivered:
            return "delivered"
        return "sent"

    def reaction_from(self, user_id: str) -> Optional["MessageReaction"]:
        for reaction in self.reactions:
            if reaction.user_id == user_id:
                return reaction
        return None

    def __repr__(self):
        return f"<Message {self.id} in {self.conversation_id} ({self.content_type})>"


class MessageReaction(Base):
    """
    Table: message_reactions
    At most one reaction per user per message.
    """
    __tablename__ = "message_reactions"
    __table_args__ = (
        UniqueConstraint("message_id", "user_id", name="uq_message_reaction_user"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(String(32), ForeignKey("messages.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String, nullable=False)
    emoji = Column(String(32), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    message = relationship("Message", back_populates="reactions")


class MessageEdit(Base):
    """
    Table: message_edits
    Text a message carried before each edit.
    """
    __tablename__ = "message_edits"

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(String(32), ForeignKey("messages.id", ondelete="CASCADE"), nullable=False)
    text = Column(Text, nullable=True)
    edited_at = Column(DateTime, nullable=False, default=utcnow)

    message = relationship("Message", back_populates="edit_history")
