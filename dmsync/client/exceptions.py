"""Errors raised by the message service client.

Everything the client raises derives from ChatApiError so session code can
catch one type and degrade to the last consistent state.
"""


class ChatApiError(Exception):
    """Base client error.

    Attributes:
        code: machine-readable code, e.g. "SEND_FAILED".
        message: human-readable description.
        http_status: status returned by the service, 0 when no response arrived.
    """

    def __init__(self, code: str, message: str, http_status: int = 0, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class NetworkError(ChatApiError):
    """Connection failure, timeout or other transport error."""


class ApiError(ChatApiError):
    """The service answered with a non-2xx status."""
