"""Error taxonomy for the completion pipeline.

Each error carries the HTTP status the server maps it to when it escapes
before the event stream has started.
"""


class ChatStreamError(Exception):
    """Base class for pipeline errors."""

    http_status: int = 500

    def __init__(self, message: str, **extra):
        self.message = message
        self.extra = extra
        super().__init__(message)


class ConfigurationError(ChatStreamError):
    """Token budget constants are inconsistent, or the prompt cannot fit at all."""


class BadRequestError(ChatStreamError):
    """Missing or unknown conversation id."""

    http_status = 404


class FramingError(ChatStreamError):
    """A provider stream line could not be decoded. Skipped, never fatal."""


class TransportError(ChatStreamError):
    """The model provider or the message store failed mid-request."""

    http_status = 502


class ConversationNotFound(BadRequestError, LookupError):
    """The conversation does not exist for this owner."""
