"""
Error taxonomy shared by the socket handlers, the turn pipeline and the HTTP routes.
"""


class VoicebotError(Exception):
    """Base class for errors surfaced to clients."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str = "Something went wrong"):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"success": False, "code": self.code, "message": self.message}


class NotFoundError(VoicebotError):
    code = "NOT_FOUND"
    status_code = 404


class SessionNotFound(NotFoundError):
    code = "SESSION_NOT_FOUND"

    def __init__(self, message: str = "Session not found"):
        super().__init__(message)


class AgentMissing(NotFoundError):
    code = "AGENT_NOT_FOUND"

    def __init__(self, message: str = "Session agent not found"):
        super().__init__(message)


class InvalidStateError(VoicebotError):
    code = "INVALID_STATE"
    status_code = 400


class SessionAlreadyEnded(InvalidStateError):
    code = "SESSION_ENDED"

    def __init__(self, message: str = "Session is already ended"):
        super().__init__(message)


class ConnectionNotRecording(InvalidStateError):
    code = "NOT_RECORDING"

    def __init__(self, message: str = "Connection is not recording"):
        super().__init__(message)


class UpstreamFailure(VoicebotError):
    """An external model service (STT, LLM, TTS, embeddings) failed."""

    code = "UPSTREAM_FAILURE"
    status_code = 502


class ResourceExhausted(UpstreamFailure):
    """Upstream rate limit hit. Callers treat it like any other upstream failure."""

    code = "RESOURCE_EXHAUSTED"
    status_code = 429


class ValidationFailure(VoicebotError):
    code = "VALIDATION_FAILURE"
    status_code = 422
