import json
import logging
import math
from contextlib import asynccontextmanager
from typing import Annotated, Optional

from fastapi import (
    Depends,
    FastAPI,
    Query,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from chatcore.config import settings
from chatcore.conversation_service import ConversationService
from chatcore.dependencies import (
    build_services,
    enforce_send_rate_limit,
    get_conversation_service,
    get_current_user_id,
    get_message_service,
)
from chatcore.errors import ChatError, ServerError, ValidationError
from chatcore.logging_utils import (
    RequestLoggingMiddleware,
    connection_context,
    log_messaging_data,
    setup_logging,
)
from chatcore.media import MediaStore
from chatcore.message_service import MessageService
from chatcore.metrics import get_metrics, get_metrics_content_type
from chatcore.ratelimit import TokenBucketLimiter
from chatcore.realtime import RealtimeGateway
from chatcore.schemas import (
    ActionResponse,
    AddParticipantRequest,
    ConversationCreatedResponse,
    ConversationResponse,
    ConversationsListResponse,
    CreateConversationRequest,
    EditMessageRequest,
    ErrorResponse,
    ForwardMessageRequest,
    HealthResponse,
    MessageActionResponse,
    MessageResponse,
    MessagesListResponse,
    NotificationSettingsRequest,
    PaginationInfo,
    ReactionRequest,
    SendMessageRequest,
    ThreadResponse,
    UpdateGroupRequest,
    WsInbound,
    WsOutbound,
)
from chatcore.storage import SessionLocal, check_db_health, init_db


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables, build the realtime gateway and rate limiter
    - Shutdown: drop live connections and limiter state
    """
    init_db()
    app.state.gateway = RealtimeGateway()
    app.state.rate_limiter = TokenBucketLimiter(
        capacity=settings.RATE_LIMIT_MAX_REQUESTS,
        window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
    )
    app.state.media = MediaStore()
    yield
    app.state.gateway.close()
    app.state.rate_limiter.reset()


app = FastAPI(
    title="chatcore",
    description="Direct-messaging core: conversations, messages and realtime fan-out",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)

CurrentUser = Annotated[str, Depends(get_current_user_id)]
Conversations = Annotated[ConversationService, Depends(get_conversation_service)]
Messages = Annotated[MessageService, Depends(get_message_service)]

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid request"},
    401: {"model": ErrorResponse, "description": "Missing identity"},
    403: {"model": ErrorResponse, "description": "Not authorized"},
    404: {"model": ErrorResponse, "description": "Not found"},
}


# =============================================================================
# Error Handlers
# =============================================================================

@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    logger.warning(f"{type(exc).__name__}: {exc.message}")
    log_messaging_data(request, result=type(exc).__name__)
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
    summary = "; ".join(f"{'.'.join(e['loc'])}: {e['msg']}" for e in errors)
    logger.warning(f"Validation error: {summary}")
    log_messaging_data(request, result="validation_error")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"message": summary or "Invalid request", "errors": errors},
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"message": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    error = ServerError()
    return JSONResponse(status_code=error.status_code, content={"message": error.message})


def paginate(page: int, limit: int, total: int, returned: int) -> PaginationInfo:
    return PaginationInfo(
        current=page,
        total=math.ceil(total / limit) if limit else 0,
        total_items=total,
        has_more=(page - 1) * limit + returned < total,
    )


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and the
    messaging schema is applied, 503 otherwise.
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Conversation Routes
# =============================================================================

@app.get("/conversations", response_model=ConversationsListResponse, responses=ERROR_RESPONSES)
async def list_conversations(
    user_id: CurrentUser,
    conversations: Conversations,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = settings.CONVERSATIONS_PAGE_SIZE,
    archived: Annotated[bool, Query(description="List archived conversations instead")] = False,
) -> ConversationsListResponse:
    """
    List the caller's conversations: pinned first, then by latest activity.
    Conversations the caller deleted are never listed; archived ones only
    with archived=true.
    """
    rows, total = conversations.list_for_user(user_id, page=page, limit=limit, archived=archived)
    logger.info(f"GET /conversations: returned {len(rows)} of {total} for {user_id}")
    return ConversationsListResponse(
        conversations=[
            ConversationResponse.for_viewer(conversation, user_id, participant)
            for conversation, participant in rows
        ],
        pagination=paginate(page, limit, total, len(rows)),
        total_unread=conversations.total_unread(user_id),
    )


@app.post(
    "/conversations",
    response_model=ConversationCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    responses={**ERROR_RESPONSES, 200: {"model": ConversationCreatedResponse, "description": "Existing conversation"}},
)
async def create_conversation(
    request: Request,
    response: Response,
    payload: CreateConversationRequest,
    user_id: CurrentUser,
    conversations: Conversations,
) -> ConversationCreatedResponse:
    """
    Create a group, or find-or-create the direct conversation with
    recipient_id (200 when it already existed, 201 when created).
    """
    if payload.is_group:
        if payload.group_info is None:
            raise ValidationError("Group name is required")
        conversation = conversations.create_group(user_id, payload.group_info.participants, payload.group_info)
        log_messaging_data(request, conversation_id=conversation.id, result="created")
        return ConversationCreatedResponse(
            message="Group conversation created successfully",
            created=True,
            conversation=ConversationResponse.for_viewer(conversation, user_id),
        )

    conversation, created = conversations.find_or_create_direct(
        user_id, payload.recipient_id, created_from=payload.created_from
    )
    if not created:
        response.status_code = status.HTTP_200_OK
    log_messaging_data(request, conversation_id=conversation.id, result="created" if created else "found")
    return ConversationCreatedResponse(
        message="Conversation found/created successfully",
        created=created,
        conversation=ConversationResponse.for_viewer(conversation, user_id),
    )


@app.get("/conversations/{conversation_id}", response_model=ConversationResponse, responses=ERROR_RESPONSES)
async def get_conversation(
    conversation_id: str,
    user_id: CurrentUser,
    conversations: Conversations,
) -> ConversationResponse:
    """Conversation details. Opening a conversation marks it read."""
    conversation = conversations.open(conversation_id, user_id)
    return ConversationResponse.for_viewer(conversation, user_id)


@app.delete("/conversations/{conversation_id}", response_model=ActionResponse, responses=ERROR_RESPONSES)
async def delete_conversation(
    conversation_id: str,
    user_id: CurrentUser,
    conversations: Conversations,
) -> ActionResponse:
    """Remove the conversation from the caller's inbox."""
    conversations.delete_for_user(conversation_id, user_id)
    return ActionResponse(message="Conversation deleted successfully")


@app.post("/conversations/{conversation_id}/read", response_model=ConversationResponse, responses=ERROR_RESPONSES)
async def mark_conversation_read(
    conversation_id: str,
    user_id: CurrentUser,
    conversations: Conversations,
) -> ConversationResponse:
    conversation = conversations.mark_read(conversation_id, user_id)
    return ConversationResponse.for_viewer(conversation, user_id)


@app.get(
    "/conversations/{conversation_id}/messages",
    response_model=MessagesListResponse,
    responses=ERROR_RESPONSES,
)
async def list_messages(
    conversation_id: str,
    user_id: CurrentUser,
    messages: Messages,
    page: Annotated[int, Query(ge=1, description="Page number, 1 is the newest page")] = 1,
    limit: Annotated[int, Query(ge=1, le=100, description="Messages per page")] = settings.DEFAULT_PAGE_SIZE,
) -> MessagesListResponse:
    """
    Page through a conversation's history. Each page is in chronological
    order; page 1 holds the most recent messages. Deleted messages are
    skipped, and returned messages addressed to the caller become delivered.
    """
    items, total = messages.list_by_conversation(conversation_id, user_id, page=page, limit=limit)
    logger.info(f"GET /conversations/{conversation_id}/messages: returned {len(items)} of {total}")
    return MessagesListResponse(
        messages=[MessageResponse.from_message(m) for m in items],
        pagination=paginate(page, limit, total, len(items)),
    )


@app.post(
    "/conversations/{conversation_id}/messages",
    response_model=MessageActionResponse,
    status_code=status.HTTP_201_CREATED,
    responses={**ERROR_RESPONSES, 429: {"model": ErrorResponse, "description": "Rate limited"}},
    dependencies=[Depends(enforce_send_rate_limit)],
)
async def send_message(
    request: Request,
    conversation_id: str,
    payload: SendMessageRequest,
    user_id: CurrentUser,
    messages: Messages,
) -> MessageActionResponse:
    message = await messages.send(
        conversation_id,
        user_id,
        payload.content,
        reply_to=payload.reply_to,
        priority=payload.priority,
    )
    log_messaging_data(request, conversation_id=conversation_id, message_id=message.id, result="sent")
    return MessageActionResponse(
        message="Message sent successfully",
        data=MessageResponse.from_message(message),
    )


# =============================================================================
# Per-participant Settings Routes
# =============================================================================

@app.post("/conversations/{conversation_id}/mute", response_model=ActionResponse, responses=ERROR_RESPONSES)
async def mute_conversation(conversation_id: str, user_id: CurrentUser, conversations: Conversations) -> ActionResponse:
    conversations.set_muted(conversation_id, user_id, True)
    return ActionResponse(message="Conversation muted successfully")


@app.delete("/conversations/{conversation_id}/mute", response_model=ActionResponse, responses=ERROR_RESPONSES)
async def unmute_conversation(conversation_id: str, user_id: CurrentUser, conversations: Conversations) -> ActionResponse:
    conversations.set_muted(conversation_id, user_id, False)
    return ActionResponse(message="Conversation unmuted successfully")


@app.post("/conversations/{conversation_id}/pin", response_model=ActionResponse, responses=ERROR_RESPONSES)
async def pin_conversation(conversation_id: str, user_id: CurrentUser, conversations: Conversations) -> ActionResponse:
    conversations.set_pinned(conversation_id, user_id, True)
    return ActionResponse(message="Conversation pinned successfully")


@app.delete("/conversations/{conversation_id}/pin", response_model=ActionResponse, responses=ERROR_RESPONSES)
async def unpin_conversation(conversation_id: str, user_id: CurrentUser, conversations: Conversations) -> ActionResponse:
    conversations.set_pinned(conversation_id, user_id, False)
    return ActionResponse(message="Conversation unpinned successfully")


@app.post("/conversations/{conversation_id}/archive", response_model=ActionResponse, responses=ERROR_RESPONSES)
async def archive_conversation(conversation_id: str, user_id: CurrentUser, conversations: Conversations) -> ActionResponse:
    conversations.set_archived(conversation_id, user_id, True)
    return ActionResponse(message="Conversation archived successfully")


@app.delete("/conversations/{conversation_id}/archive", response_model=ActionResponse, responses=ERROR_RESPONSES)
async def unarchive_conversation(conversation_id: str, user_id: CurrentUser, conversations: Conversations) -> ActionResponse:
    conversations.set_archived(conversation_id, user_id, False)
    return ActionResponse(message="Conversation unarchived successfully")


@app.patch(
    "/conversations/{conversation_id}/notifications",
    response_model=ConversationResponse,
    responses=ERROR_RESPONSES,
)
async def update_notification_settings(
    conversation_id: str,
    payload: NotificationSettingsRequest,
    user_id: CurrentUser,
    conversations: Conversations,
) -> ConversationResponse:
    conversation = conversations.update_notification_settings(
        conversation_id,
        user_id,
        sound=payload.sound,
        vibration=payload.vibration,
        show_preview=payload.show_preview,
    )
    return ConversationResponse.for_viewer(conversation, user_id)


# =============================================================================
# Group Routes
# =============================================================================

@app.patch("/conversations/{conversation_id}/group", response_model=ConversationResponse, responses=ERROR_RESPONSES)
async def update_group(
    conversation_id: str,
    payload: UpdateGroupRequest,
    user_id: CurrentUser,
    conversations: Conversations,
) -> ConversationResponse:
    conversation = conversations.update_group_info(conversation_id, user_id, payload)
    return ConversationResponse.for_viewer(conversation, user_id)


@app.post(
    "/conversations/{conversation_id}/participants",
    response_model=ConversationResponse,
    responses=ERROR_RESPONSES,
)
async def add_participant(
    conversation_id: str,
    payload: AddParticipantRequest,
    user_id: CurrentUser,
    conversations: Conversations,
) -> ConversationResponse:
    conversation = conversations.add_participant(conversation_id, user_id, payload.user_id)
    return ConversationResponse.for_viewer(conversation, user_id)


@app.delete(
    "/conversations/{conversation_id}/participants/{participant_id}",
    response_model=ActionResponse,
    responses=ERROR_RESPONSES,
)
async def remove_participant(
    conversation_id: str,
    participant_id: str,
    user_id: CurrentUser,
    conversations: Conversations,
) -> ActionResponse:
    """Remove a member (admins), or leave the group (participant_id is the caller)."""
    conversations.remove_participant(conversation_id, user_id, participant_id)
    if participant_id == user_id:
        return ActionResponse(message="Left conversation successfully")
    return ActionResponse(message="Participant removed successfully")


@app.post(
    "/conversations/{conversation_id}/admins/{participant_id}",
    response_model=ConversationResponse,
    responses=ERROR_RESPONSES,
)
async def add_admin(
    conversation_id: str,
    participant_id: str,
    user_id: CurrentUser,
    conversations: Conversations,
) -> ConversationResponse:
    conversation = conversations.add_admin(conversation_id, user_id, participant_id)
    return ConversationResponse.for_viewer(conversation, user_id)


@app.delete(
    "/conversations/{conversation_id}/admins/{participant_id}",
    response_model=ConversationResponse,
    responses=ERROR_RESPONSES,
)
async def remove_admin(
    conversation_id: str,
    participant_id: str,
    user_id: CurrentUser,
    conversations: Conversations,
) -> ConversationResponse:
    conversation = conversations.remove_admin(conversation_id, user_id, participant_id)
    return ConversationResponse.for_viewer(conversation, user_id)


# =============================================================================
# Message Routes
# =============================================================================

@app.get("/messages/{message_id}", response_model=MessageResponse, responses=ERROR_RESPONSES)
async def get_message(message_id: str, user_id: CurrentUser, messages: Messages) -> MessageResponse:
    """Direct lookup; also resolves deleted messages."""
    return MessageResponse.from_message(messages.get(message_id, user_id))


@app.get("/messages/{message_id}/thread", response_model=ThreadResponse, responses=ERROR_RESPONSES)
async def get_thread(message_id: str, user_id: CurrentUser, messages: Messages) -> ThreadResponse:
    root, replies = messages.list_thread(message_id, user_id)
    return ThreadResponse(
        root=MessageResponse.from_message(root),
        messages=[MessageResponse.from_message(m) for m in replies],
    )


@app.put("/messages/{message_id}", response_model=MessageActionResponse, responses=ERROR_RESPONSES)
async def edit_message(
    request: Request,
    message_id: str,
    payload: EditMessageRequest,
    user_id: CurrentUser,
    messages: Messages,
) -> MessageActionResponse:
    message = await messages.edit(message_id, user_id, payload.text)
    log_messaging_data(request, conversation_id=message.conversation_id, message_id=message.id, result="edited")
    return MessageActionResponse(
        message="Message edited successfully",
        data=MessageResponse.from_message(message),
    )


@app.delete("/messages/{message_id}", response_model=ActionResponse, responses=ERROR_RESPONSES)
async def delete_message(
    request: Request,
    message_id: str,
    user_id: CurrentUser,
    messages: Messages,
) -> ActionResponse:
    message = await messages.soft_delete(message_id, user_id)
    log_messaging_data(request, conversation_id=message.conversation_id, message_id=message.id, result="deleted")
    return ActionResponse(message="Message deleted successfully")


@app.post("/messages/{message_id}/read", response_model=MessageResponse, responses=ERROR_RESPONSES)
async def mark_message_read(message_id: str, user_id: CurrentUser, messages: Messages) -> MessageResponse:
    return MessageResponse.from_message(messages.mark_read(message_id, reader_id=user_id))


@app.post(
    "/messages/{message_id}/forward",
    response_model=MessageActionResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
    dependencies=[Depends(enforce_send_rate_limit)],
)
async def forward_message(
    request: Request,
    message_id: str,
    payload: ForwardMessageRequest,
    user_id: CurrentUser,
    messages: Messages,
) -> MessageActionResponse:
    message = await messages.forward(message_id, user_id, payload.conversation_id)
    log_messaging_data(request, conversation_id=message.conversation_id, message_id=message.id, result="forwarded")
    return MessageActionResponse(
        message="Message forwarded successfully",
        data=MessageResponse.from_message(message),
    )


@app.post("/messages/{message_id}/reactions", response_model=ActionResponse, responses=ERROR_RESPONSES)
async def add_reaction(
    message_id: str,
    payload: ReactionRequest,
    user_id: CurrentUser,
    messages: Messages,
) -> ActionResponse:
    await messages.react(message_id, user_id, payload.emoji)
    return ActionResponse(message="Reaction added successfully")


@app.delete("/messages/{message_id}/reactions", response_model=ActionResponse, responses=ERROR_RESPONSES)
async def remove_reaction(message_id: str, user_id: CurrentUser, messages: Messages) -> ActionResponse:
    await messages.unreact(message_id, user_id)
    return ActionResponse(message="Reaction removed successfully")


# =============================================================================
# Realtime Route
# =============================================================================

async def send_frame(websocket: WebSocket, event: str, data: dict) -> None:
    await websocket.send_json(WsOutbound(type=event, data=data).model_dump(mode="json"))


async def handle_realtime_event(websocket: WebSocket, user_id: str, inbound: WsInbound) -> None:
    """
    Dispatch one client event. Typed errors propagate to the caller, which
    answers them with an error frame.
    """
    gateway: RealtimeGateway = websocket.app.state.gateway

    if inbound.type == "ping":
        await send_frame(websocket, "pong", {})
        return

    conversation_id = inbound.data.get("conversation_id")
    if not isinstance(conversation_id, str) or not conversation_id:
        raise ValidationError("conversation_id must be a non-empty string")

    if inbound.type == "leave_conversation":
        gateway.leave_conversation(conversation_id, websocket)
        await send_frame(websocket, "left", {"conversation_id": conversation_id})
        return

    with SessionLocal() as db:
        conversations, messages = build_services(db, gateway, websocket.app.state.media)

        if inbound.type == "join_conversation":
            conversations.get_for_participant(conversation_id, user_id)
            gateway.join_conversation(conversation_id, websocket)
            await send_frame(websocket, "joined", {"conversation_id": conversation_id})

        elif inbound.type in ("typing_start", "typing_stop"):
            conversation = conversations.get_for_participant(conversation_id, user_id)
            await gateway.broadcast_typing(
                conversation_id,
                user_id,
                conversation.participant_ids,
                is_typing=inbound.type == "typing_start",
            )

        elif inbound.type == "send_message":
            websocket.app.state.rate_limiter.check(user_id)
            fields = {k: v for k, v in inbound.data.items() if k != "conversation_id"}
            payload = SendMessageRequest.model_validate(fields)
            message = await messages.send(
                conversation_id,
                user_id,
                payload.content,
                reply_to=payload.reply_to,
                priority=payload.priority,
            )
            await send_frame(websocket, "message_sent", MessageResponse.from_message(message).model_dump(mode="json"))

        else:
            raise ValidationError(f"Unknown event type: {inbound.type}")


@app.websocket("/ws")
async def realtime(websocket: WebSocket, user_id: Optional[str] = None):
    """
    Realtime channel. Identity comes from the user_id query parameter or the
    X-User-ID header. Client frames are {"type", "data"} envelopes.
    """
    user_id = user_id or websocket.headers.get("X-User-ID")
    if not user_id:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    gateway: RealtimeGateway = websocket.app.state.gateway

    with connection_context(user_id):
        gateway.register(user_id, websocket)
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    inbound = WsInbound.model_validate(json.loads(raw))
                    await handle_realtime_event(websocket, user_id, inbound)
                except ChatError as e:
                    logger.warning(f"Realtime {type(e).__name__}: {e.message}")
                    await send_frame(websocket, "error", {"message": e.message, "status": e.status_code})
                except (json.JSONDecodeError, PydanticValidationError) as e:
                    await send_frame(websocket, "error", {"message": f"Invalid frame: {e}", "status": 400})
                except WebSocketDisconnect:
                    raise
                except Exception as e:
                    logger.exception(f"Unhandled realtime error for {user_id}: {e}")
                    error = ServerError()
                    await send_frame(websocket, "error", {"message": error.message, "status": error.status_code})
        except WebSocketDisconnect:
            logger.info(f"Realtime connection closed for {user_id}")
        finally:
            gateway.unregister(user_id, websocket)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
