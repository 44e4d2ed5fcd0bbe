class ChatError(Exception):
    """Base for failures that end a request with a JSON ``{"error": ...}`` body."""

    status_code: int = 500

    def __init__(self, message: str, *, status_code: int | None = None, details: str | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details


class MalformedRequest(ChatError):
    status_code = 400


class AdmissionDenied(ChatError):
    status_code = 429

    def __init__(self, identity: str):
        super().__init__(
            "Too many requests. Please wait a few minutes before trying again."
        )
        self.identity = identity


class PersistenceFailure(ChatError):
    status_code = 500


class GenerationFailure(Exception):
    """Raw upstream failure: message and status code exactly as the backend reported them."""

    def __init__(self, message: str, code: int | None = None):
        super().__init__(message)
        self.message = message
        self.code = code


class UpstreamError(ChatError):
    """A GenerationFailure after classification; only the safe message is exposed."""

    def __init__(self, message: str, *, status_code: int, kind: str, details: str | None = None):
        super().__init__(message, status_code=status_code, details=details)
        self.kind = kind
