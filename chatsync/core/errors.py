"""
Domain exceptions shared by services and API routes.
"""


class ChatError(Exception):
    """Base class for errors surfaced to the caller of a chat operation."""

    code = "CHAT_ERROR"
    http_status = 400

    def __init__(self, message: str, **extra):
        self.message = message
        self.extra = extra
        super().__init__(message)


class AuthenticationError(ChatError):
    code = "UNAUTHENTICATED"
    http_status = 401


class IdentityMismatchError(ChatError):
    """Sender does not match the authenticated identity."""

    code = "IDENTITY_MISMATCH"
    http_status = 403


class EmptyMessageError(ChatError):
    code = "EMPTY_MESSAGE"
    http_status = 422


class InvalidConversationError(ChatError):
    code = "INVALID_CONVERSATION"
    http_status = 422


class DuplicateNameError(ChatError):
    code = "DUPLICATE_NAME"
    http_status = 409


class MessageNotFoundError(ChatError):
    code = "MESSAGE_NOT_FOUND"
    http_status = 404


class StoreUnavailableError(ChatError):
    """The message store could not be read or written."""

    code = "STORE_UNAVAILABLE"
    http_status = 503


class UploadError(ChatError):
    code = "UPLOAD_FAILED"
    http_status = 502


class ForbiddenConversationError(ChatError):
    """Caller is not allowed to act on this conversation or message."""

    code = "FORBIDDEN_CONVERSATION"
    http_status = 403
