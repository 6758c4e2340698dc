"""
Error taxonomy for the matching engine.

Every error that can reach a caller carries a stable machine-readable ``kind``
and a human-readable message. ``retryable`` tells the API layer whether the
client should try again later.

    NotFound            unknown campaign / influencer, never retried
    ConfigurationError  invalid weights, raised at startup only
    EmptyCandidatePool  nothing survived prefiltering (becomes an empty result)
    Timeout             provider or request budget exceeded, retryable
    Overloaded          concurrency ceiling exhausted, retryable
    CacheUnavailable    cache backend failure, recovered internally
    ProviderUnavailable transient provider failure, retried once
    InvalidRequest      bad request parameters (e.g. K out of range)
    InvalidProfile      profile payload rejected at the engine boundary
"""

from typing import Optional


class MatchingError(Exception):
    """Base class for all engine errors"""

    kind: str = "matching_error"
    retryable: bool = False

    def __init__(self, message: str, *, kind: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind

    def to_dict(self) -> dict:
        return {
            'error': self.kind,
            'message': self.message,
            'retryable': self.retryable,
        }


class NotFound(MatchingError):
    kind = "not_found"


class ConfigurationError(MatchingError):
    kind = "configuration_error"


class EmptyCandidatePool(MatchingError):
    """Raised by the candidate generator when no profile survives prefiltering"""

    kind = "empty_candidate_pool"


class Timeout(MatchingError):
    kind = "timeout"
    retryable = True


class Overloaded(MatchingError):
    kind = "overloaded"
    retryable = True

    def __init__(self, message: str, retry_after_seconds: float = 1.0):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class CacheUnavailable(MatchingError):
    kind = "cache_unavailable"
    retryable = True


class ProviderUnavailable(MatchingError):
    kind = "provider_unavailable"
    retryable = True


class InvalidRequest(MatchingError):
    kind = "invalid_request"


class InvalidProfile(MatchingError):
    kind = "invalid_profile"
