"""
Typed errors raised by the messaging services.

Every error carries the HTTP status the API boundary answers with, so routes
never have to translate service failures by hand:

- ValidationError: malformed or missing input (400)
- AuthorizationError: not a participant, not the author, blocked (403)
- NotFoundError: unknown conversation, message or user (404)
- ConflictError: state conflicts such as duplicate membership (400)
- RateLimitedError: token bucket exhausted (429)
- ServerError: anything unexpected (500)
"""

from typing import Optional


class ChatError(Exception):
    """Base class for all messaging errors."""

    status_code = 500
    default_message = "Server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(ChatError):
    status_code = 400
    default_message = "Invalid request"


class AuthorizationError(ChatError):
    status_code = 403
    default_message = "Not authorized"


class NotFoundError(ChatError):
    status_code = 404
    default_message = "Not found"


class ConflictError(ChatError):
    status_code = 400
    default_message = "Conflict"


class RateLimitedError(ChatError):
    status_code = 429
    default_message = "Too many requests, please try again later"


class ServerError(ChatError):
    status_code = 500
    default_message = "Server error"


# =============================================================================
# Conversation errors
# =============================================================================

class SelfConversationError(ValidationError):
    default_message = "Cannot message yourself"


class BlockedError(AuthorizationError):
    default_message = "Cannot send message to this user"


class PrivacyDeniedError(AuthorizationError):
    default_message = "This user only accepts messages from followers"


class TooManyParticipantsError(ValidationError):
    default_message = "Too many participants"


class NotParticipantError(AuthorizationError):
    default_message = "Not a participant of this conversation"


class AdminRequiredError(AuthorizationError):
    default_message = "Only group admins can do this"


class ConversationNotFoundError(NotFoundError):
    default_message = "Conversation not found"


class UserNotFoundError(NotFoundError):
    default_message = "User not found"


# =============================================================================
# Message errors
# =============================================================================

class MutedSelfSendError(AuthorizationError):
    default_message = "Cannot send messages in muted conversation"


class EmptyContentError(ValidationError):
    default_message = "Message content is required"


class NotAuthorError(AuthorizationError):
    default_message = "Only the sender can modify this message"


class EditWindowExpiredError(ValidationError):
    default_message = "Message is too old to edit"


class UnsupportedContentTypeError(ValidationError):
    default_message = "Only text messages can be edited"


class InvalidReplyError(ValidationError):
    default_message = "Replies must reference a message in the same conversation"


class MessageNotFoundError(NotFoundError):
    default_message = "Message not found"


class MessageDeletedError(MessageNotFoundError):
    default_message = "Message has been deleted"
