"""
Conversation service: direct and group conversations, membership,
per-participant settings and unread counters.
"""

import logging
from typing import Callable, Iterable, Optional, Tuple

from sqlalchemy.exc import IntegrityError

from chatcore.config import settings
from chatcore.directory import MessagingPolicy, UserDirectory
from chatcore.errors import (
    AdminRequiredError,
    AuthorizationError,
    BlockedError,
    ConflictError,
    ConversationNotFoundError,
    NotParticipantError,
    PrivacyDeniedError,
    SelfConversationError,
    TooManyParticipantsError,
    UserNotFoundError,
    ValidationError,
)
from chatcore.models import Conversation, ConversationParticipant, CreatedFrom
from chatcore.repositories import ConversationStore
from chatcore.schemas import GroupInfoRequest, UpdateGroupRequest
from chatcore.utils import direct_key, utcnow

logger = logging.getLogger(__name__)


class ConversationService:
    def __init__(
        self,
        store: ConversationStore,
        directory: UserDirectory,
        max_participants: Optional[int] = None,
        clock: Callable = utcnow,
    ):
        self.store = store
        self.directory = directory
        self.max_participants = max_participants or settings.MAX_GROUP_PARTICIPANTS
        self.clock = clock

    # =========================================================================
    # Lookup
    # =========================================================================

    def get(self, conversation_id: str) -> Conversation:
        conversation = self.store.get(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError()
        return conversation

    def get_active(self, conversation_id: str) -> Conversation:
        """Like get, but a conversation every participant deleted is gone."""
        conversation = self.get(conversation_id)
        if conversation.is_deleted:
            raise ConversationNotFoundError()
        return conversation

    def get_for_participant(self, conversation_id: str, user_id: str) -> Conversation:
        conversation = self.get_active(conversation_id)
        if not conversation.is_participant(user_id):
            raise NotParticipantError("Not authorized to access this conversation")
        return conversation

    def _participant(self, conversation_id: str, user_id: str) -> Tuple[Conversation, ConversationParticipant]:
        conversation = self.get_for_participant(conversation_id, user_id)
        return conversation, conversation.participant(user_id)

    def open(self, conversation_id: str, user_id: str) -> Conversation:
        """Fetch a conversation for display and mark it read for the viewer."""
        conversation = self.get_for_participant(conversation_id, user_id)
        self.store.reset_unread(conversation.id, user_id, self.clock())
        return self.store.refresh(conversation)

    def list_for_user(
        self,
        user_id: str,
        page: int = 1,
        limit: Optional[int] = None,
        archived: bool = False,
    ) -> Tuple[list, int]:
        """
        Page the user's inbox: pinned first, then most recently active.

        Returns:
            Tuple of (list of (Conversation, ConversationParticipant), total)
        """
        limit = limit or settings.CONVERSATIONS_PAGE_SIZE
        offset = (page - 1) * limit
        return self.store.list_for_user(user_id, limit=limit, offset=offset, archived=archived)

    def total_unread(self, user_id: str) -> int:
        return self.store.total_unread(user_id)

    # =========================================================================
    # Creation
    # =========================================================================

    def check_can_message(self, sender_id: str, recipient_id: str) -> None:
        """Raise unless sender may open a direct conversation with recipient."""
        if sender_id == recipient_id:
            raise SelfConversationError()
        if not self.directory.user_exists(recipient_id):
            raise UserNotFoundError("Recipient not found")
        if self.directory.is_blocked_between(sender_id, recipient_id):
            raise BlockedError()
        if self.directory.messaging_policy(recipient_id) == MessagingPolicy.FOLLOWERS:
            if not self.directory.is_following(sender_id, recipient_id):
                raise PrivacyDeniedError()

    def find_or_create_direct(
        self,
        user_a: str,
        user_b: str,
        created_from: CreatedFrom = CreatedFrom.DIRECT,
    ) -> Tuple[Conversation, bool]:
        """
        Return the live direct conversation between two users, creating it if
        needed.

        Returns:
            Tuple of (conversation, created)
        """
        self.check_can_message(user_a, user_b)

        key = direct_key(user_a, user_b)
        existing = self.store.find_direct(key)
        if existing is not None:
            logger.info(f"Found direct conversation {existing.id} for {key}")
            participant = existing.participant(user_a)
            if participant is not None and participant.deleted_at is not None:
                participant.deleted_at = None
                self.store.save(existing)
            return existing, False

        now = self.clock()
        conversation = Conversation(
            is_group=False,
            direct_key=key,
            created_by=user_a,
            created_from=created_from.value,
            last_message_at=now,
            created_at=now,
            participants=[
                ConversationParticipant(user_id=user_a, last_read_at=now, joined_at=now),
                ConversationParticipant(user_id=user_b, last_read_at=now, joined_at=now),
            ],
        )
        try:
            return self.store.add(conversation), True
        except IntegrityError:
            # Lost a race with a concurrent create for the same pair
            existing = self.store.find_direct(key)
            if existing is None:
                raise
            logger.info(f"Concurrent create for {key}, using {existing.id}")
            return existing, False

    def create_group(
        self,
        creator_id: str,
        participant_ids: Iterable[str],
        group_info: GroupInfoRequest,
    ) -> Conversation:
        name = (group_info.name or "").strip()
        if not name:
            raise ValidationError("Group name is required")

        members = []
        for user_id in participant_ids:
            if user_id != creator_id and user_id not in members:
                members.append(user_id)
        if len(members) + 1 > self.max_participants:
            raise TooManyParticipantsError(
                f"Groups are limited to {self.max_participants} participants"
            )
        for user_id in [creator_id] + members:
            if not self.directory.user_exists(user_id):
                raise UserNotFoundError(f"User {user_id} not found")

        now = self.clock()
        conversation = Conversation(
            is_group=True,
            group_name=name,
            group_description=group_info.description,
            group_avatar=group_info.avatar,
            created_by=creator_id,
            only_admins_can_send=group_info.only_admins_can_send,
            only_admins_can_edit_info=group_info.only_admins_can_edit_info,
            only_admins_can_add_participants=group_info.only_admins_can_add_participants,
            allow_participants_to_leave=group_info.allow_participants_to_leave,
            last_message_at=now,
            created_at=now,
            participants=[
                ConversationParticipant(user_id=creator_id, is_admin=True, last_read_at=now, joined_at=now)
            ] + [
                ConversationParticipant(user_id=user_id, last_read_at=now, joined_at=now)
                for user_id in members
            ],
        )
        return self.store.add(conversation)

    # =========================================================================
    # Membership
    # =========================================================================

    def _get_group_for_participant(self, conversation_id: str, actor_id: str) -> Conversation:
        conversation = self.get_for_participant(conversation_id, actor_id)
        if not conversation.is_group:
            raise ValidationError("Only group conversations can change participants")
        return conversation

    def add_participant(self, conversation_id: str, actor_id: str, user_id: str) -> Conversation:
        conversation = self._get_group_for_participant(conversation_id, actor_id)
        if conversation.only_admins_can_add_participants and not conversation.is_admin(actor_id):
            raise AdminRequiredError("Only admins can add participants")
        if conversation.is_participant(user_id):
            raise ConflictError("User is already a participant")
        if len(conversation.participants) + 1 > self.max_participants:
            raise TooManyParticipantsError(
                f"Groups are limited to {self.max_participants} participants"
            )
        if not self.directory.user_exists(user_id):
            raise UserNotFoundError()

        now = self.clock()
        conversation.participants.append(
            ConversationParticipant(user_id=user_id, last_read_at=now, joined_at=now)
        )
        logger.info(f"{actor_id} added {user_id} to {conversation.id}")
        return self.store.save(conversation)

    def remove_participant(self, conversation_id: str, actor_id: str, user_id: str) -> Conversation:
        """Remove a member. Removing yourself is leaving the group."""
        conversation = self._get_group_for_participant(conversation_id, actor_id)
        participant = conversation.participant(user_id)
        if participant is None:
            raise NotParticipantError("User is not a participant")

        if actor_id != user_id:
            if not conversation.is_admin(actor_id):
                raise AdminRequiredError("Only admins can remove participants")
        elif not conversation.allow_participants_to_leave and not participant.is_admin:
            raise AuthorizationError("Participants cannot leave this group")

        conversation.participants.remove(participant)
        if conversation.participants and not any(p.is_admin for p in conversation.participants):
            successor = min(conversation.participants, key=lambda p: (p.joined_at, p.id))
            successor.is_admin = True
            logger.info(f"Promoted {successor.user_id} to admin of {conversation.id}")
        logger.info(f"{actor_id} removed {user_id} from {conversation.id}")
        return self.store.save(conversation)

    def add_admin(self, conversation_id: str, actor_id: str, user_id: str) -> Conversation:
        conversation = self._get_group_for_participant(conversation_id, actor_id)
        if not conversation.is_admin(actor_id):
            raise AdminRequiredError()
        participant = conversation.participant(user_id)
        if participant is None:
            raise NotParticipantError("User is not a participant")
        participant.is_admin = True
        return self.store.save(conversation)

    def remove_admin(self, conversation_id: str, actor_id: str, user_id: str) -> Conversation:
        conversation = self._get_group_for_participant(conversation_id, actor_id)
        if not conversation.is_admin(actor_id):
            raise AdminRequiredError()
        participant = conversation.participant(user_id)
        if participant is None:
            raise NotParticipantError("User is not a participant")
        if participant.is_admin and len(conversation.admin_ids) == 1:
            raise ValidationError("A group needs at least one admin")
        participant.is_admin = False
        return self.store.save(conversation)

    def update_group_info(self, conversation_id: str, actor_id: str, changes: UpdateGroupRequest) -> Conversation:
        conversation = self._get_group_for_participant(conversation_id, actor_id)
        is_admin = conversation.is_admin(actor_id)
        if conversation.only_admins_can_edit_info and not is_admin:
            raise AdminRequiredError("Only admins can edit group info")

        updates = changes.model_dump(exclude_unset=True)
        group_settings = {
            "only_admins_can_send",
            "only_admins_can_edit_info",
            "only_admins_can_add_participants",
            "allow_participants_to_leave",
        }
        if group_settings & updates.keys() and not is_admin:
            raise AdminRequiredError("Only admins can change group settings")

        if "name" in updates:
            name = (updates.pop("name") or "").strip()
            if not name:
                raise ValidationError("Group name is required")
            conversation.group_name = name
        if "description" in updates:
            conversation.group_description = updates.pop("description")
        if "avatar" in updates:
            conversation.group_avatar = updates.pop("avatar")
        for field, value in updates.items():
            if value is not None:
                setattr(conversation, field, value)
        return self.store.save(conversation)

    # =========================================================================
    # Counters
    # =========================================================================

    def update_last_message(self, conversation_id: str, message_id: str, is_media: bool = False) -> bool:
        """Point the conversation at a new message. A vanished conversation is tolerated."""
        updated = self.store.set_last_message(conversation_id, message_id, self.clock(), is_media)
        if not updated:
            logger.warning(f"Conversation {conversation_id} gone before last message {message_id} was recorded")
        return updated

    def increment_unread(self, conversation_id: str, participant_id: str, author_id: str) -> bool:
        if participant_id == author_id:
            return False
        return self.store.increment_unread(conversation_id, participant_id)

    def mark_read(self, conversation_id: str, participant_id: str) -> Conversation:
        conversation = self.get_for_participant(conversation_id, participant_id)
        self.store.reset_unread(conversation.id, participant_id, self.clock())
        logger.info(f"{participant_id} marked {conversation.id} as read")
        return self.store.refresh(conversation)

    def restore_for_participants(self, conversation: Conversation) -> None:
        if conversation.deleted_by:
            self.store.restore_for_participants(conversation.id)

    # =========================================================================
    # Per-participant settings
    # =========================================================================

    def set_muted(self, conversation_id: str, user_id: str, value: bool) -> Conversation:
        conversation, participant = self._participant(conversation_id, user_id)
        participant.is_muted = value
        logger.info(f"{user_id} {'muted' if value else 'unmuted'} {conversation.id}")
        return self.store.save(conversation)

    def set_pinned(self, conversation_id: str, user_id: str, value: bool) -> Conversation:
        conversation, participant = self._participant(conversation_id, user_id)
        participant.is_pinned = value
        return self.store.save(conversation)

    def set_archived(self, conversation_id: str, user_id: str, value: bool) -> Conversation:
        conversation, participant = self._participant(conversation_id, user_id)
        if participant.is_archived != value:
            participant.is_archived = value
            participant.archived_at = self.clock() if value else None
        return self.store.save(conversation)

    def update_notification_settings(
        self,
        conversation_id: str,
        user_id: str,
        sound: Optional[bool] = None,
        vibration: Optional[bool] = None,
        show_preview: Optional[bool] = None,
    ) -> Conversation:
        conversation, participant = self._participant(conversation_id, user_id)
        if sound is not None:
            participant.notify_sound = sound
        if vibration is not None:
            participant.notify_vibration = vibration
        if show_preview is not None:
            participant.notify_show_preview = show_preview
        return self.store.save(conversation)

    def delete_for_user(self, conversation_id: str, user_id: str) -> Conversation:
        """
        Remove the conversation from one user's inbox. Once every participant
        has done so the conversation itself is marked deleted.
        """
        conversation, participant = self._participant(conversation_id, user_id)
        now = self.clock()
        if participant.deleted_at is None:
            participant.deleted_at = now
        if all(p.deleted_at is not None for p in conversation.participants):
            conversation.is_deleted = True
            conversation.deleted_at = now
            # Frees the pair so a later find-or-create starts fresh
            conversation.direct_key = None
        logger.info(f"{user_id} deleted {conversation.id} (fully deleted: {conversation.is_deleted})")
        return self.store.save(conversation)
