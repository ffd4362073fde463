from __future__ import annotations


class QuizLiveError(Exception):
    """Base class for errors surfaced by the live session control plane."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(QuizLiveError):
    """A required credential or secret is missing."""

    status_code = 500


class ValidationError(QuizLiveError):
    status_code = 422


class TransportError(QuizLiveError):
    """Publish, subscribe or presence operation failed or timed out."""

    status_code = 503


class PermissionDenied(TransportError):
    status_code = 403


class RateLimitExceeded(QuizLiveError):
    status_code = 429

    def __init__(self, retry_after_ms: int, message: str = "Too many requests, try again shortly"):
        super().__init__(message)
        self.retry_after_ms = max(0, int(retry_after_ms))


class QuotaExceeded(QuizLiveError):
    status_code = 429


class SessionNotFound(QuizLiveError):
    status_code = 404
