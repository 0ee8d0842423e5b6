"""
FastAPI dependencies: caller identity, service wiring, rate limiting.
"""

from typing import Annotated, Optional, Tuple

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from chatcore.conversation_service import ConversationService
from chatcore.directory import SqlUserDirectory
from chatcore.media import MediaStore
from chatcore.message_service import MessageService
from chatcore.ratelimit import TokenBucketLimiter
from chatcore.realtime import RealtimeGateway
from chatcore.repositories import ConversationStore, MessageStore
from chatcore.storage import get_db


def get_current_user_id(
    x_user_id: Annotated[Optional[str], Header(alias="X-User-ID")] = None,
) -> str:
    """Identity is established upstream and forwarded in X-User-ID."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="No user identity, authorization denied",
        )
    return x_user_id.strip()


def build_services(
    db: Session,
    gateway: Optional[RealtimeGateway] = None,
    media: Optional[MediaStore] = None,
) -> Tuple[ConversationService, MessageService]:
    conversations = ConversationService(ConversationStore(db), SqlUserDirectory(db))
    messages = MessageService(MessageStore(db), conversations, gateway=gateway, media=media)
    return conversations, messages


def get_conversation_service(db: Session = Depends(get_db)) -> ConversationService:
    conversations, _ = build_services(db)
    return conversations


def get_message_service(
    request: Request,
    db: Session = Depends(get_db),
) -> MessageService:
    _, messages = build_services(db, request.app.state.gateway, request.app.state.media)
    return messages


def enforce_send_rate_limit(
    request: Request,
    user_id: str = Depends(get_current_user_id),
) -> None:
    limiter: TokenBucketLimiter = request.app.state.rate_limiter
    limiter.check(user_id)
