"""
Utility functions for the messaging core.
"""

import logging
import re
import uuid
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

MENTION_PATTERN = re.compile(r"(?<![\w@])@([A-Za-z0-9_.]{1,30})")


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what the DateTime columns store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    """Opaque identifier for conversations and messages."""
    return uuid.uuid4().hex


def extract_mentions(text: str) -> list[str]:
    """
    Extract @mentions from message text.

    Args:
        text: Message body (may be empty)

    Returns:
        Unique mentioned handles in order of first appearance, without the @
    """
    if not text:
        return []

    seen = []
    for handle in MENTION_PATTERN.findall(text):
        handle = handle.rstrip(".")
        if handle and handle not in seen:
            seen.append(handle)
    logger.debug(f"Extracted {len(seen)} mentions")
    return seen


def direct_key(user_a: str, user_b: str) -> str:
    """Order-independent key identifying the direct conversation of a pair."""
    first, second = sorted((user_a, user_b))
    return f"{first}:{second}"
