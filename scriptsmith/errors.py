"""Error taxonomy for Scriptsmith.

Boundary errors (validation, authentication, authorization, missing entities,
insufficient research, rate limits) are raised synchronously and mapped to
HTTP responses by the API layer. Upstream generation errors are routed
through the retry policy. Persistence errors are logged and re-raised.
"""

from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from .models import AdequacyResult, Recommendation


class ScriptEngineError(Exception):
    """Base class for all Scriptsmith errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(ScriptEngineError):
    """Invalid input, such as a duration outside the accepted range."""


class InvalidTransitionError(ValidationError):
    """A state transition was requested from a state that does not allow it."""

    def __init__(self, entity: str, current_status: str, requested: str):
        super().__init__(
            f"Cannot move {entity} from '{current_status}' to '{requested}'",
            details={"current_status": current_status, "requested": requested},
        )
        self.current_status = current_status
        self.requested = requested


class AuthenticationError(ScriptEngineError):
    """No principal, or invalid credentials for a protected operation."""


class AuthorizationError(ScriptEngineError):
    """The principal does not own the entity it is trying to access."""


class NotFoundError(ScriptEngineError):
    """A referenced entity does not exist."""


class InsufficientResearchError(ValidationError):
    """The research gate rejected an outline request."""

    def __init__(self, adequacy: "AdequacyResult"):
        super().__init__(
            "Insufficient research for script duration",
            details={"gaps": [gap.model_dump() for gap in adequacy.gaps]},
        )
        self.adequacy = adequacy

    @property
    def recommendations(self) -> List["Recommendation"]:
        return self.adequacy.recommendations


class RateLimitExceededError(ScriptEngineError):
    """The principal exceeded its submission rate."""

    def __init__(self, message: str, retry_after: int, limit: int):
        super().__init__(message, details={"retry_after": retry_after, "limit": limit})
        self.retry_after = retry_after
        self.limit = limit


class UpstreamGenerationError(ScriptEngineError):
    """The text-generation service failed."""


class RetryableGenerationError(UpstreamGenerationError):
    """Transient upstream failure: timeouts, rate limits, server errors."""


class GenerationTimeoutError(RetryableGenerationError):
    """The processing budget ran out before generation finished."""


class FatalGenerationError(UpstreamGenerationError):
    """Upstream failure that will not succeed on retry, such as a bad request."""


class PlanValidationError(ScriptEngineError):
    """A proposed content plan does not cover the content points exactly once."""


class PersistenceError(ScriptEngineError):
    """A read or write against the job store or entity store failed."""
