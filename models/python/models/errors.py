"""Failure taxonomy of the auction & negotiation engine.

Request-path operations raise these; the HTTP layer maps ``code`` to a status.
Sweeps never raise them for a single item, they collect them per entity.
"""

from typing import Any, Dict, Optional


class EngineError(Exception):
    code = "engine_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFound(EngineError):
    code = "not_found"


class Unauthorized(EngineError):
    code = "unauthorized"


class InvalidState(EngineError):
    code = "invalid_state"


class ValidationError(EngineError):
    code = "validation_error"


class Conflict(EngineError):
    """A concurrent writer won the race; the caller should retry."""
    code = "conflict"


class DependencyFailure(EngineError):
    """A collaborator failed after the state transition was committed."""
    code = "dependency_failure"


class NotActive(InvalidState):
    code = "not_active"


class SelfBid(Unauthorized):
    code = "self_bid"


class BidTooLow(ValidationError):
    code = "bid_too_low"
