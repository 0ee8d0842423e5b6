import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Iterator, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from chatcore.metrics import record_http_request


# Correlation fields for the current request or realtime connection
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
user_id_ctx: ContextVar[Optional[str]] = ContextVar("user_id", default=None)


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding an ISO-8601 timestamp plus the caller's request_id and user_id."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        if not log_record.get('ts'):
            log_record['ts'] = datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname

        for key, ctx in (('request_id', request_id_ctx), ('user_id', user_id_ctx)):
            if key not in log_record:
                value = ctx.get()
                if value:
                    log_record[key] = value


def setup_logging(log_level: str = "INFO"):
    """
    Route the root logger and uvicorn's loggers through one JSON handler.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logger = logging.getLogger()
    logger.setLevel(log_level.upper())
    logger.handlers = []

    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(CustomJsonFormatter('%(ts)s %(level)s %(name)s %(message)s'))
    logger.addHandler(json_handler)

    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers = []
        uvicorn_logger.addHandler(json_handler)
        uvicorn_logger.propagate = False

    # Requests are logged by RequestLoggingMiddleware instead
    logging.getLogger("uvicorn.access").disabled = True

    return logger


@contextmanager
def connection_context(user_id: str) -> Iterator[str]:
    """
    Bind a connection id and the user to every log line emitted while a
    realtime connection is open.

    Yields:
        The connection id
    """
    connection_id = str(uuid.uuid4())
    request_token = request_id_ctx.set(connection_id)
    user_token = user_id_ctx.set(user_id)
    try:
        yield connection_id
    finally:
        user_id_ctx.reset(user_token)
        request_id_ctx.reset(request_token)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs every HTTP request as one structured JSON line and records HTTP
    metrics.

    Log keys:
    - ts, level, request_id
    - method, path, status, latency_ms
    - user_id: caller identity from X-User-ID (when present)

    Messaging routes may add, through log_messaging_data:
    - conversation_id, message_id
    - result: operation outcome (created, found, sent, edited, deleted, ...)
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        user_id = request.headers.get("X-User-ID")

        request_token = request_id_ctx.set(request_id)
        user_token = user_id_ctx.set(user_id)
        start_time = time.time()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            latency_seconds = time.time() - start_time

            # Route templates keep metric labels low-cardinality
            route = request.scope.get("route")
            path = getattr(route, "path", request.url.path)
            if path != "/metrics":
                record_http_request(
                    method=request.method,
                    path=path,
                    status=response.status_code,
                    latency_seconds=latency_seconds
                )

            log_data = {
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(latency_seconds * 1000, 2),
            }
            log_data.update(getattr(request.state, "messaging_log_data", {}))

            logger = logging.getLogger("chatcore.requests")
            if response.status_code >= 500:
                logger.error("Request completed", extra=log_data)
            elif response.status_code >= 400:
                logger.warning("Request completed", extra=log_data)
            else:
                logger.info("Request completed", extra=log_data)

            return response
        finally:
            user_id_ctx.reset(user_token)
            request_id_ctx.reset(request_token)


def log_messaging_data(
    request: Request,
    conversation_id: str = None,
    message_id: str = None,
    result: str = None,
):
    """
    Attach messaging fields to the request state.
    This data will be included in the request log by the middleware.

    Args:
        request: FastAPI request object
        conversation_id: Conversation the request touched
        message_id: Message the request touched
        result: Operation outcome
    """
    data = getattr(request.state, "messaging_log_data", {})

    if conversation_id is not None:
        data["conversation_id"] = conversation_id
    if message_id is not None:
        data["message_id"] = message_id
    if result is not None:
        data["result"] = result

    request.state.messaging_log_data = data
