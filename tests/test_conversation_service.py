"""
Tests for ConversationService.

Tests cover:
- Direct conversation find-or-create, including permission checks
- Group creation and membership rules
- Per-participant settings, unread counters and inbox listing
- Per-user deletion and restore
"""

from datetime import datetime, timedelta

import pytest

from chatcore.directory import MessagingPolicy, SqlUserDirectory
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
from chatcore.conversation_service import ConversationService
from chatcore.repositories import ConversationStore
from chatcore.schemas import GroupInfoRequest, UpdateGroupRequest
from tests.helpers import FakeClock, seed_block, seed_follow, seed_users


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 15, 10, 0, 0))


@pytest.fixture
def service(db, clock):
    seed_users("alice", "bob", "carol", "dave")
    return ConversationService(ConversationStore(db), SqlUserDirectory(db), max_participants=4, clock=clock)


def make_group(service, creator="alice", members=("bob", "carol"), **settings):
    return service.create_group(creator, list(members), GroupInfoRequest(name="Team", **settings))


class TestDirectConversations:
    """Tests for find_or_create_direct."""

    def test_creates_conversation_with_both_participants(self, service):
        conversation, created = service.find_or_create_direct("alice", "bob")

        assert created is True
        assert conversation.is_group is False
        assert sorted(conversation.participant_ids) == ["alice", "bob"]
        assert conversation.direct_key == "alice:bob"

    def test_second_call_returns_same_conversation(self, service):
        """Find-or-create is idempotent regardless of who asks."""
        first, _ = service.find_or_create_direct("alice", "bob")
        second, created = service.find_or_create_direct("bob", "alice")

        assert created is False
        assert second.id == first.id

    def test_self_conversation_rejected(self, service):
        with pytest.raises(SelfConversationError):
            service.find_or_create_direct("alice", "alice")

    def test_unknown_recipient(self, service):
        with pytest.raises(UserNotFoundError):
            service.find_or_create_direct("alice", "nobody")

    def test_blocked_either_direction(self, service):
        seed_block("bob", "alice")

        with pytest.raises(BlockedError):
            service.find_or_create_direct("alice", "bob")
        with pytest.raises(BlockedError):
            service.find_or_create_direct("bob", "alice")

    def test_followers_only_policy(self, service):
        seed_users("erin", policy=MessagingPolicy.FOLLOWERS)

        with pytest.raises(PrivacyDeniedError):
            service.find_or_create_direct("alice", "erin")

        seed_follow("alice", "erin")
        conversation, created = service.find_or_create_direct("alice", "erin")
        assert created is True

    def test_refinding_restores_callers_deleted_flag(self, service):
        conversation, _ = service.find_or_create_direct("alice", "bob")
        service.delete_for_user(conversation.id, "alice")

        found, created = service.find_or_create_direct("alice", "bob")

        assert created is False
        assert found.participant("alice").deleted_at is None


class TestGroups:
    """Tests for group creation and membership."""

    def test_creator_is_admin(self, service):
        group = make_group(service)

        assert group.is_group is True
        assert group.group_name == "Team"
        assert group.admin_ids == ["alice"]
        assert sorted(group.participant_ids) == ["alice", "bob", "carol"]

    def test_name_required(self, service):
        with pytest.raises(ValidationError):
            service.create_group("alice", ["bob"], GroupInfoRequest(name="   "))

    def test_participant_limit(self, service):
        seed_users("erin")
        with pytest.raises(TooManyParticipantsError):
            make_group(service, members=("bob", "carol", "dave", "erin"))

    def test_duplicate_members_collapse(self, service):
        group = make_group(service, members=("bob", "bob", "alice"))
        assert sorted(group.participant_ids) == ["alice", "bob"]

    def test_unknown_member_rejected(self, service):
        with pytest.raises(UserNotFoundError):
            make_group(service, members=("bob", "ghost"))

    def test_add_participant(self, service):
        group = make_group(service)
        group = service.add_participant(group.id, "bob", "dave")
        assert "dave" in group.participant_ids

    def test_add_participant_admins_only(self, service):
        group = make_group(service, only_admins_can_add_participants=True)

        with pytest.raises(AdminRequiredError):
            service.add_participant(group.id, "bob", "dave")

    def test_add_existing_participant_conflicts(self, service):
        group = make_group(service)
        with pytest.raises(ConflictError):
            service.add_participant(group.id, "alice", "bob")

    def test_add_participant_over_limit(self, service):
        group = make_group(service, members=("bob", "carol", "dave"))
        seed_users("erin")
        with pytest.raises(TooManyParticipantsError):
            service.add_participant(group.id, "alice", "erin")

    def test_direct_conversation_has_no_membership_changes(self, service):
        conversation, _ = service.find_or_create_direct("alice", "bob")
        with pytest.raises(ValidationError):
            service.add_participant(conversation.id, "alice", "carol")

    def test_only_admin_removes_others(self, service):
        group = make_group(service)

        with pytest.raises(AdminRequiredError):
            service.remove_participant(group.id, "bob", "carol")

        group = service.remove_participant(group.id, "alice", "carol")
        assert "carol" not in group.participant_ids

    def test_leave_disallowed(self, service):
        group = make_group(service, allow_participants_to_leave=False)
        with pytest.raises(AuthorizationError):
            service.remove_participant(group.id, "bob", "bob")

    def test_last_admin_leaving_promotes_earliest_member(self, service, clock):
        group = make_group(service, members=("bob",))
        clock.advance(timedelta(minutes=5))
        service.add_participant(group.id, "alice", "carol")

        group = service.remove_participant(group.id, "alice", "alice")

        assert group.admin_ids == ["bob"]

    def test_admin_management(self, service):
        group = make_group(service)

        group = service.add_admin(group.id, "alice", "bob")
        assert sorted(group.admin_ids) == ["alice", "bob"]

        group = service.remove_admin(group.id, "bob", "alice")
        assert group.admin_ids == ["bob"]

        with pytest.raises(ValidationError):
            service.remove_admin(group.id, "bob", "bob")

    def test_update_group_info(self, service):
        group = make_group(service)

        group = service.update_group_info(group.id, "bob", UpdateGroupRequest(description="Weekly sync"))
        assert group.group_description == "Weekly sync"

        with pytest.raises(AdminRequiredError):
            service.update_group_info(group.id, "bob", UpdateGroupRequest(only_admins_can_send=True))

        group = service.update_group_info(group.id, "alice", UpdateGroupRequest(only_admins_can_edit_info=True))
        with pytest.raises(AdminRequiredError):
            service.update_group_info(group.id, "bob", UpdateGroupRequest(name="Renamed"))


class TestAccessAndSettings:
    """Tests for lookups, counters and per-participant settings."""

    def test_unknown_conversation(self, service):
        with pytest.raises(ConversationNotFoundError):
            service.get("missing")

    def test_outsider_cannot_access(self, service):
        conversation, _ = service.find_or_create_direct("alice", "bob")
        with pytest.raises(NotParticipantError):
            service.get_for_participant(conversation.id, "carol")

    def test_unread_counter_skips_author(self, service):
        conversation, _ = service.find_or_create_direct("alice", "bob")

        assert service.increment_unread(conversation.id, "alice", "alice") is False
        service.increment_unread(conversation.id, "bob", "alice")
        service.increment_unread(conversation.id, "bob", "alice")

        assert service.total_unread("bob") == 2
        assert service.total_unread("alice") == 0

    def test_open_resets_unread(self, service, clock):
        conversation, _ = service.find_or_create_direct("alice", "bob")
        service.increment_unread(conversation.id, "bob", "alice")
        clock.advance(timedelta(minutes=1))

        conversation = service.open(conversation.id, "bob")

        assert conversation.participant("bob").unread_count == 0
        assert conversation.participant("bob").last_read_at == clock.now

    def test_listing_orders_pinned_first(self, service, clock):
        first, _ = service.find_or_create_direct("alice", "bob")
        clock.advance(timedelta(minutes=1))
        second, _ = service.find_or_create_direct("alice", "carol")
        service.update_last_message(second.id, "m1")

        rows, total = service.list_for_user("alice")
        assert total == 2
        assert [c.id for c, _ in rows] == [second.id, first.id]

        service.set_pinned(first.id, "alice", True)
        rows, _ = service.list_for_user("alice")
        assert [c.id for c, _ in rows] == [first.id, second.id]

    def test_archived_conversations_listed_separately(self, service):
        conversation, _ = service.find_or_create_direct("alice", "bob")
        conversation = service.set_archived(conversation.id, "alice", True)

        assert conversation.participant("alice").archived_at is not None
        assert service.list_for_user("alice")[1] == 0
        assert service.list_for_user("alice", archived=True)[1] == 1

    def test_mute_and_notification_settings(self, service):
        conversation, _ = service.find_or_create_direct("alice", "bob")

        conversation = service.set_muted(conversation.id, "alice", True)
        conversation = service.update_notification_settings(conversation.id, "alice", sound=False)

        participant = conversation.participant("alice")
        assert participant.is_muted is True
        assert participant.notify_sound is False
        assert participant.notify_vibration is True

    def test_update_last_message_on_missing_conversation(self, service):
        assert service.update_last_message("missing", "m1") is False


class TestDeletion:
    """Tests for per-user soft deletion."""

    def test_delete_hides_for_one_user(self, service):
        conversation, _ = service.find_or_create_direct("alice", "bob")

        conversation = service.delete_for_user(conversation.id, "alice")

        assert conversation.is_deleted is False
        assert service.list_for_user("alice")[1] == 0
        assert service.list_for_user("bob")[1] == 1

    def test_deleted_by_everyone_frees_the_pair(self, service):
        conversation, _ = service.find_or_create_direct("alice", "bob")
        service.delete_for_user(conversation.id, "alice")
        conversation = service.delete_for_user(conversation.id, "bob")

        assert conversation.is_deleted is True
        assert conversation.direct_key is None

        fresh, created = service.find_or_create_direct("alice", "bob")
        assert created is True
        assert fresh.id != conversation.id

    def test_fully_deleted_conversation_is_gone(self, service):
        conversation, _ = service.find_or_create_direct("alice", "bob")
        service.delete_for_user(conversation.id, "alice")
        service.delete_for_user(conversation.id, "bob")

        with pytest.raises(ConversationNotFoundError):
            service.get_for_participant(conversation.id, "alice")

    def test_restore_for_participants(self, service):
        conversation, _ = service.find_or_create_direct("alice", "bob")
        conversation = service.delete_for_user(conversation.id, "alice")

        service.restore_for_participants(conversation)

        assert service.list_for_user("alice")[1] == 1
