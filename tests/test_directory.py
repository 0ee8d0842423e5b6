"""
Tests for the user directory.

Tests cover:
- The UserDirectory interface cannot be used half-implemented
- SqlUserDirectory lookups against the projection tables
"""

import pytest

from chatcore.directory import MessagingPolicy, SqlUserDirectory, UserDirectory
from tests.helpers import seed_block, seed_follow, seed_users


class TestInterface:
    def test_interface_is_abstract(self):
        with pytest.raises(TypeError):
            UserDirectory()

    def test_partial_implementation_is_rejected(self):
        class ExistenceOnly(UserDirectory):
            def user_exists(self, user_id):
                return True

        with pytest.raises(TypeError):
            ExistenceOnly()


class TestSqlUserDirectory:
    @pytest.fixture
    def directory(self, db):
        seed_users("alice", "bob")
        seed_users("carol", policy=MessagingPolicy.FOLLOWERS)
        return SqlUserDirectory(db)

    def test_user_exists(self, directory):
        assert directory.user_exists("alice") is True
        assert directory.user_exists("mallory") is False

    def test_block_is_symmetric(self, directory):
        seed_block("bob", "alice")

        assert directory.is_blocked_between("alice", "bob") is True
        assert directory.is_blocked_between("bob", "alice") is True
        assert directory.is_blocked_between("alice", "carol") is False

    def test_following_is_directional(self, directory):
        seed_follow("alice", "bob")

        assert directory.is_following("alice", "bob") is True
        assert directory.is_following("bob", "alice") is False

    def test_messaging_policy(self, directory):
        assert directory.messaging_policy("carol") == MessagingPolicy.FOLLOWERS
        assert directory.messaging_policy("mallory") == MessagingPolicy.EVERYONE

    def test_ids_for_usernames(self, directory):
        assert directory.ids_for_usernames(["alice", "ghost"]) == {"alice": "alice"}
        assert directory.ids_for_usernames([]) == {}
