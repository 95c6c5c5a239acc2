from typing import Any


class QuizDeskError(RuntimeError):
    """Base error rendered to clients as ``{"error": {"code", "message", "details"}}``."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, *, details: Any = None, code: str | None = None):
        super().__init__(message)
        self.message = message
        self.details = details
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationFailure(QuizDeskError):
    status_code = 422
    code = "validation_error"


class AuthenticationFailure(QuizDeskError):
    status_code = 401
    code = "unauthenticated"


class AuthorizationFailure(QuizDeskError):
    # Carries no resource detail so callers cannot discover foreign sessions.
    status_code = 403
    code = "forbidden"


class NotFoundFailure(QuizDeskError):
    status_code = 404
    code = "not_found"


class StateFailure(QuizDeskError):
    status_code = 409
    code = "invalid_state"


class StructuralFailure(QuizDeskError):
    status_code = 400
    code = "structural_error"


class RateLimitFailure(QuizDeskError):
    status_code = 429
    code = "rate_limited"


class UpstreamFailure(QuizDeskError):
    status_code = 502
    code = "upstream_error"


class GenerationError(RuntimeError):
    pass
