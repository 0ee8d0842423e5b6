"""Test doubles and seeding helpers shared by the test modules."""

from chatcore.directory import DirectoryUser, MessagingPolicy, UserBlock, UserFollow
from chatcore.storage import SessionLocal


class FakeClock:
    """Deterministic replacement for utcnow."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, delta):
        self.now = self.now + delta


class FakeConnection:
    """Stands in for a WebSocket: records every frame pushed to it."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.frames = []

    async def send_json(self, data):
        if self.fail:
            raise ConnectionError("socket closed")
        self.frames.append(data)

    def events(self):
        return [frame["type"] for frame in self.frames]


def seed_users(*user_ids, policy: MessagingPolicy = MessagingPolicy.EVERYONE):
    """Add users to the directory projection. The username equals the id."""
    with SessionLocal() as db:
        for user_id in user_ids:
            db.add(DirectoryUser(id=user_id, username=user_id, allow_messages_from=policy.value))
        db.commit()


def seed_block(blocker_id: str, blocked_id: str):
    with SessionLocal() as db:
        db.add(UserBlock(blocker_id=blocker_id, blocked_id=blocked_id))
        db.commit()


def seed_follow(follower_id: str, followee_id: str):
    with SessionLocal() as db:
        db.add(UserFollow(follower_id=follower_id, followee_id=followee_id))
        db.commit()
