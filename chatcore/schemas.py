"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses
- WebSocket envelope models
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from chatcore.config import settings
from chatcore.models import (
    MEDIA_CONTENT_TYPES,
    ContentType,
    Conversation,
    ConversationParticipant,
    CreatedFrom,
    Message,
    Priority,
)


# =============================================================================
# Message Content
# =============================================================================

class MediaPayload(BaseModel):
    """Attachment metadata. The file itself lives in the media store."""
    key: Optional[str] = Field(None, description="Media store key returned by the upload service")
    url: Optional[str] = Field(None, description="Resolved URL (filled by the server from key)")
    thumbnail: Optional[str] = None
    filename: Optional[str] = None
    size: Optional[int] = Field(None, ge=0)
    duration: Optional[float] = Field(None, ge=0, description="Seconds, for audio/video")
    mime_type: Optional[str] = None

    @model_validator(mode="after")
    def require_source(self):
        if not self.key and not self.url:
            raise ValueError("media requires either key or url")
        return self


class LocationPayload(BaseModel):
    name: Optional[str] = None
    longitude: float = Field(..., ge=-180, le=180)
    latitude: float = Field(..., ge=-90, le=90)


class ContactPayload(BaseModel):
    name: str = Field(..., min_length=1)
    phone: Optional[str] = None
    email: Optional[str] = None


def content_type_for_mime(mime_type: Optional[str]) -> ContentType:
    mime_type = mime_type or ""
    if mime_type.startswith("image/"):
        return ContentType.IMAGE
    if mime_type.startswith("video/"):
        return ContentType.VIDEO
    if mime_type.startswith("audio/"):
        return ContentType.AUDIO
    return ContentType.FILE


def check_text_length(v: Optional[str]) -> Optional[str]:
    if v is not None and len(v.strip()) > settings.MAX_TEXT_LENGTH:
        raise ValueError(f"text must be at most {settings.MAX_TEXT_LENGTH} characters")
    return v


class MessageContent(BaseModel):
    """
    Tagged message content: `type` selects which payload must be present.

    - text: `text` (up to MAX_TEXT_LENGTH characters), media optional
    - image/video/audio/file: `media`, `text` is an optional caption
    - location: `location`
    - contact: `contact`
    """
    type: ContentType = ContentType.TEXT
    text: Optional[str] = None
    media: Optional[MediaPayload] = None
    location: Optional[LocationPayload] = None
    contact: Optional[ContactPayload] = None

    @field_validator("text")
    @classmethod
    def validate_text_length(cls, v: Optional[str]) -> Optional[str]:
        return check_text_length(v)

    @model_validator(mode="after")
    def validate_payload_matches_type(self):
        if self.type in MEDIA_CONTENT_TYPES and self.media is None:
            raise ValueError(f"{self.type.value} messages require media")
        if self.type == ContentType.LOCATION and self.location is None:
            raise ValueError("location messages require location")
        if self.type == ContentType.CONTACT and self.contact is None:
            raise ValueError("contact messages require contact")
        if self.type != ContentType.LOCATION and self.location is not None:
            raise ValueError(f"location is not allowed on {self.type.value} messages")
        if self.type != ContentType.CONTACT and self.contact is not None:
            raise ValueError(f"contact is not allowed on {self.type.value} messages")
        if self.type in (ContentType.LOCATION, ContentType.CONTACT) and self.media is not None:
            raise ValueError(f"media is not allowed on {self.type.value} messages")
        return self

    @classmethod
    def from_message(cls, message: Message) -> "MessageContent":
        media = None
        if message.media_url or message.media_key:
            media = MediaPayload(
                key=message.media_key,
                url=message.media_url,
                thumbnail=message.media_thumbnail,
                filename=message.media_filename,
                size=message.media_size,
                duration=message.media_duration,
                mime_type=message.media_mime_type,
            )
        location = None
        if message.content_type == ContentType.LOCATION.value:
            location = LocationPayload(
                name=message.location_name,
                longitude=message.location_longitude,
                latitude=message.location_latitude,
            )
        contact = None
        if message.content_type == ContentType.CONTACT.value:
            contact = ContactPayload(
                name=message.contact_name,
                phone=message.contact_phone,
                email=message.contact_email,
            )
        return cls.model_construct(
            type=ContentType(message.content_type),
            text=message.text,
            media=media,
            location=location,
            contact=contact,
        )


# =============================================================================
# Pydantic Request Models
# =============================================================================

class GroupInfoRequest(BaseModel):
    name: Optional[str] = Field(None, max_length=50)
    description: Optional[str] = Field(None, max_length=200)
    avatar: Optional[str] = None
    participants: list[str] = Field(default_factory=list, description="User ids to add besides the creator")
    only_admins_can_send: bool = False
    only_admins_can_edit_info: bool = False
    only_admins_can_add_participants: bool = False
    allow_participants_to_leave: bool = True


class CreateConversationRequest(BaseModel):
    """
    Either a direct conversation (`recipient_id`) or a group
    (`is_group` with `group_info`).
    """
    recipient_id: Optional[str] = None
    is_group: bool = False
    group_info: Optional[GroupInfoRequest] = None
    created_from: CreatedFrom = CreatedFrom.DIRECT

    @model_validator(mode="after")
    def validate_target(self):
        if not self.is_group and not self.recipient_id:
            raise ValueError("recipient_id is required for direct conversations")
        return self


class SendMessageRequest(BaseModel):
    """
    Either a full `content` object, or the shorthand `text` plus optional
    `media`, in which case the content type is derived from the media's
    MIME type.
    """
    content: Optional[MessageContent] = None
    text: Optional[str] = None
    media: Optional[MediaPayload] = None
    reply_to: Optional[str] = None
    priority: Priority = Priority.NORMAL

    @field_validator("text")
    @classmethod
    def validate_text_length(cls, v: Optional[str]) -> Optional[str]:
        return check_text_length(v)

    @model_validator(mode="after")
    def build_content(self):
        if self.content is None:
            content_type = ContentType.TEXT
            if self.media is not None:
                content_type = content_type_for_mime(self.media.mime_type)
            self.content = MessageContent(type=content_type, text=self.text, media=self.media)
        return self

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"text": "hi"},
                {"content": {"type": "location", "location": {"longitude": 2.35, "latitude": 48.85}}},
            ]
        }
    }


class EditMessageRequest(BaseModel):
    text: str = Field(..., description="Replacement text")


class ReactionRequest(BaseModel):
    emoji: str = Field(..., min_length=1, max_length=32)

    @field_validator("emoji")
    @classmethod
    def validate_emoji(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("emoji is required")
        return v.strip()


class ForwardMessageRequest(BaseModel):
    conversation_id: str = Field(..., min_length=1)


class AddParticipantRequest(BaseModel):
    user_id: str = Field(..., min_length=1)


class UpdateGroupRequest(BaseModel):
    name: Optional[str] = Field(None, max_length=50)
    description: Optional[str] = Field(None, max_length=200)
    avatar: Optional[str] = None
    only_admins_can_send: Optional[bool] = None
    only_admins_can_edit_info: Optional[bool] = None
    only_admins_can_add_participants: Optional[bool] = None
    allow_participants_to_leave: Optional[bool] = None


class NotificationSettingsRequest(BaseModel):
    sound: Optional[bool] = None
    vibration: Optional[bool] = None
    show_preview: Optional[bool] = None


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Every failure carries a human-readable message."""
    message: str = Field(..., description="Error description")


class ActionResponse(BaseModel):
    message: str


class ReactionResponse(BaseModel):
    user_id: str
    emoji: str
    created_at: datetime


class EditHistoryEntry(BaseModel):
    text: Optional[str] = None
    edited_at: datetime


class MessageResponse(BaseModel):
    id: str
    conversation_id: str
    sender_id: str
    recipient_id: Optional[str] = None
    content: MessageContent
    status: str = Field(..., description="sent, delivered or read")
    is_read: bool
    read_at: Optional[datetime] = None
    is_delivered: bool
    delivered_at: Optional[datetime] = None
    reactions: list[ReactionResponse] = Field(default_factory=list)
    reply_to_id: Optional[str] = None
    thread_id: Optional[str] = None
    thread_message_count: int = 0
    forwarded_from_id: Optional[str] = None
    priority: Priority = Priority.NORMAL
    mentions: list[str] = Field(default_factory=list)
    is_edited: bool = False
    edited_at: Optional[datetime] = None
    edit_history: list[EditHistoryEntry] = Field(default_factory=list)
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_message(cls, message: Message) -> "MessageResponse":
        return cls(
            id=message.id,
            conversation_id=message.conversation_id,
            sender_id=message.sender_id,
            recipient_id=message.recipient_id,
            content=MessageContent.from_message(message),
            status=message.status,
            is_read=message.is_read,
            read_at=message.read_at,
            is_delivered=message.is_delivered,
            delivered_at=message.delivered_at,
            reactions=[
                ReactionResponse(user_id=r.user_id, emoji=r.emoji, created_at=r.created_at)
                for r in message.reactions
            ],
            reply_to_id=message.reply_to_id,
            thread_id=message.thread_id,
            thread_message_count=len(message.thread_messages),
            forwarded_from_id=message.forwarded_from_id,
            priority=Priority(message.priority),
            mentions=list(message.mentions or []),
            is_edited=message.is_edited,
            edited_at=message.edited_at,
            edit_history=[EditHistoryEntry(text=e.text, edited_at=e.edited_at) for e in message.edit_history],
            is_deleted=message.is_deleted,
            deleted_at=message.deleted_at,
            deleted_by=message.deleted_by,
            created_at=message.created_at,
        )


class NotificationSettings(BaseModel):
    sound: bool = True
    vibration: bool = True
    show_preview: bool = True


class GroupInfoResponse(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    avatar: Optional[str] = None
    created_by: Optional[str] = None
    admins: list[str] = Field(default_factory=list)
    max_participants: int
    only_admins_can_send: bool
    only_admins_can_edit_info: bool
    only_admins_can_add_participants: bool
    allow_participants_to_leave: bool


class ConversationResponse(BaseModel):
    """
    A conversation as seen by one participant: shared fields plus that
    participant's own counter and settings.
    """
    id: str
    is_group: bool
    participants: list[str]
    group_info: Optional[GroupInfoResponse] = None
    last_message_id: Optional[str] = None
    last_message_at: datetime
    total_messages: int = 0
    total_media: int = 0
    created_from: str
    unread_count: int = 0
    last_read_at: Optional[datetime] = None
    is_muted: bool = False
    is_pinned: bool = False
    is_archived: bool = False
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    is_deleted: bool = False
    created_at: datetime

    @classmethod
    def for_viewer(
        cls,
        conversation: Conversation,
        viewer_id: str,
        participant: Optional[ConversationParticipant] = None,
    ) -> "ConversationResponse":
        participant = participant or conversation.participant(viewer_id)
        group_info = None
        if conversation.is_group:
            group_info = GroupInfoResponse(
                name=conversation.group_name,
                description=conversation.group_description,
                avatar=conversation.group_avatar,
                created_by=conversation.created_by,
                admins=conversation.admin_ids,
                max_participants=settings.MAX_GROUP_PARTICIPANTS,
                only_admins_can_send=conversation.only_admins_can_send,
                only_admins_can_edit_info=conversation.only_admins_can_edit_info,
                only_admins_can_add_participants=conversation.only_admins_can_add_participants,
                allow_participants_to_leave=conversation.allow_participants_to_leave,
            )
        response = cls(
            id=conversation.id,
            is_group=conversation.is_group,
            participants=conversation.participant_ids,
            group_info=group_info,
            last_message_id=conversation.last_message_id,
            last_message_at=conversation.last_message_at,
            total_messages=conversation.total_messages,
            total_media=conversation.total_media,
            created_from=conversation.created_from,
            is_deleted=conversation.is_deleted,
            created_at=conversation.created_at,
        )
        if participant is not None:
            response.unread_count = participant.unread_count
            response.last_read_at = participant.last_read_at
            response.is_muted = participant.is_muted
            response.is_pinned = participant.is_pinned
            response.is_archived = participant.is_archived
            response.notifications = NotificationSettings(
                sound=participant.notify_sound,
                vibration=participant.notify_vibration,
                show_preview=participant.notify_show_preview,
            )
        return response


class PaginationInfo(BaseModel):
    current: int = Field(..., ge=1, description="Current page (1-based)")
    total: int = Field(..., ge=0, description="Total number of pages")
    total_items: int = Field(..., ge=0)
    has_more: bool


class ConversationCreatedResponse(BaseModel):
    message: str
    created: bool
    conversation: ConversationResponse


class ConversationsListResponse(BaseModel):
    conversations: list[ConversationResponse] = Field(default_factory=list)
    pagination: PaginationInfo
    total_unread: int = 0


class MessageActionResponse(BaseModel):
    message: str
    data: MessageResponse


class MessagesListResponse(BaseModel):
    """Messages in chronological order (oldest first) for the requested page."""
    messages: list[MessageResponse] = Field(default_factory=list)
    pagination: PaginationInfo


class ThreadResponse(BaseModel):
    root: MessageResponse
    messages: list[MessageResponse] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


# =============================================================================
# WebSocket Envelopes
# =============================================================================

class WsInbound(BaseModel):
    """Client -> server."""
    # join_conversation | leave_conversation | send_message | typing_start | typing_stop | ping
    type: str
    data: dict[str, Any] = Field(default_factory=dict)


class WsOutbound(BaseModel):
    """Server -> client."""
    # receive_message | message_updated | message_deleted | message_reaction | typing_*
    # joined | left | message_sent | pong | error
    type: str
    data: dict[str, Any] = Field(default_factory=dict)
