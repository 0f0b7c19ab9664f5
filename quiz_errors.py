# quiz_errors.py
# -----------------------------------------------------------------------------
# Error kinds raised by the quiz loader, store and attempt lifecycle.
# Each kind carries its HTTP status and a stable machine code; the quiz
# blueprint turns them into {"ok": false, "error", "code", ...} responses.
# -----------------------------------------------------------------------------

from typing import Any, Dict, Optional


class QuizError(Exception):
    status = 400
    code = "quiz_error"
    default_message = "Quiz request failed."

    def __init__(self, message: Optional[str] = None, **extra: Any):
        self.message = message or self.default_message
        self.extra: Dict[str, Any] = dict(extra)
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body = {"ok": False, "error": self.message, "code": self.code}
        body.update(self.extra)
        return body


class BadRequest(QuizError):
    status = 400
    code = "bad_request"
    default_message = "Bad request."


class Unauthenticated(QuizError):
    status = 401
    code = "unauthenticated"
    default_message = "Unauthorized"


class Forbidden(QuizError):
    status = 403
    code = "forbidden"
    default_message = "Access denied"


class NotFound(QuizError):
    status = 404
    code = "not_found"
    default_message = "Not found"


class AttemptLimitReached(QuizError):
    status = 409
    code = "attempt_limit_reached"
    default_message = "Maximum attempts reached"


class InvalidState(QuizError):
    """Mutation of an attempt that is no longer in progress."""
    status = 409
    code = "invalid_state"
    default_message = "Cannot update submitted attempt"


class AlreadySubmitted(InvalidState):
    code = "already_submitted"
    default_message = "Attempt already submitted"


class TimeLimitExceeded(InvalidState):
    code = "time_limit_exceeded"
    default_message = "Time limit exceeded"


class InvalidAnswers(QuizError):
    status = 400
    code = "invalid_answers"
    default_message = "Answers do not match the quiz."


class MalformedDefinition(QuizError):
    status = 422
    code = "malformed_definition"
    default_message = "Quiz definition is malformed."


class StoreUnavailable(QuizError):
    """Transient infrastructure failure; safe to retry after re-reading state."""
    status = 503
    code = "store_unavailable"
    default_message = "Storage is temporarily unavailable."


class DuplicateAttempt(Exception):
    """Store-level signal: an insert collided with a unique attempt index."""


__all__ = [
    "QuizError", "BadRequest", "Unauthenticated", "Forbidden", "NotFound",
    "AttemptLimitReached", "InvalidState", "AlreadySubmitted", "TimeLimitExceeded",
    "InvalidAnswers", "MalformedDefinition", "StoreUnavailable", "DuplicateAttempt",
]
