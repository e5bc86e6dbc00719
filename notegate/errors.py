"""Error taxonomy for the generation gateway.

None of these carry request text, placeholder tables, or provider response
bodies: messages are fixed strings plus, at most, an HTTP status code.
"""


class NoteGateError(Exception):
    """Base class for gateway errors."""

    message = "generation failed, please retry"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)


class MalformedInput(NoteGateError):
    message = "text must be a string"


class ExternalServiceError(NoteGateError):
    """The language-model service could not produce a usable result."""

    def __init__(self, message: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ExternalServiceRateLimited(ExternalServiceError):
    message = "language model rate limit exceeded, please retry later"


class ExternalServiceAuthError(ExternalServiceError):
    message = "language model credentials rejected or not configured"


class ExternalServiceUnavailable(ExternalServiceError):
    message = "language model service unavailable"
