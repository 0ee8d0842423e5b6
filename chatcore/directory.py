"""
User directory: existence, follow, block and messaging-privacy lookups.

Accounts are owned by the identity service; the messaging core only reads a
replicated projection of them. UserDirectory is the interface the services
depend on, SqlUserDirectory reads the projection tables below.
"""

import enum
import logging
from abc import ABC, abstractmethod
from typing import Iterable

from sqlalchemy import Column, DateTime, String, and_, or_
from sqlalchemy.orm import Session

from chatcore.storage import Base
from chatcore.utils import utcnow

logger = logging.getLogger(__name__)


class MessagingPolicy(str, enum.Enum):
    EVERYONE = "everyone"
    FOLLOWERS = "followers"


class DirectoryUser(Base):
    """
    Table: directory_users
    """
    __tablename__ = "directory_users"

    id = Column(String, primary_key=True)
    username = Column(String, nullable=False, unique=True, index=True)
    allow_messages_from = Column(String(16), nullable=False, default=MessagingPolicy.EVERYONE.value)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class UserFollow(Base):
    """
    Table: user_follows
    follower_id follows followee_id.
    """
    __tablename__ = "user_follows"

    follower_id = Column(String, primary_key=True)
    followee_id = Column(String, primary_key=True)


class UserBlock(Base):
    """
    Table: user_blocks
    blocker_id has blocked blocked_id.
    """
    __tablename__ = "user_blocks"

    blocker_id = Column(String, primary_key=True)
    blocked_id = Column(String, primary_key=True)


class UserDirectory(ABC):
    """Lookups the messaging services need from the user system."""

    @abstractmethod
    def user_exists(self, user_id: str) -> bool:
        ...

    @abstractmethod
    def is_blocked_between(self, user_a: str, user_b: str) -> bool:
        """True if either user has blocked the other."""
        ...

    @abstractmethod
    def is_following(self, follower_id: str, followee_id: str) -> bool:
        ...

    @abstractmethod
    def messaging_policy(self, user_id: str) -> MessagingPolicy:
        ...

    @abstractmethod
    def ids_for_usernames(self, usernames: Iterable[str]) -> dict[str, str]:
        ...


class SqlUserDirectory(UserDirectory):
    """UserDirectory backed by the directory projection tables."""

    def __init__(self, db: Session):
        self.db = db

    def user_exists(self, user_id: str) -> bool:
        return self.db.get(DirectoryUser, user_id) is not None

    def is_blocked_between(self, user_a: str, user_b: str) -> bool:
        block = self.db.query(UserBlock).filter(
            or_(
                and_(UserBlock.blocker_id == user_a, UserBlock.blocked_id == user_b),
                and_(UserBlock.blocker_id == user_b, UserBlock.blocked_id == user_a),
            )
        ).first()
        if block is not None:
            logger.debug(f"Block found between {user_a} and {user_b}")
        return block is not None

    def is_following(self, follower_id: str, followee_id: str) -> bool:
        return self.db.get(UserFollow, (follower_id, followee_id)) is not None

    def messaging_policy(self, user_id: str) -> MessagingPolicy:
        user = self.db.get(DirectoryUser, user_id)
        if user is None:
            return MessagingPolicy.EVERYONE
        return MessagingPolicy(user.allow_messages_from)

    def ids_for_usernames(self, usernames: Iterable[str]) -> dict[str, str]:
        usernames = list(usernames)
        if not usernames:
            return {}
        rows = self.db.query(DirectoryUser).filter(DirectoryUser.username.in_(usernames)).all()
        return {row.username: row.id for row in rows}
