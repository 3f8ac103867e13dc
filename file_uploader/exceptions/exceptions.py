from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from file_uploader.domain.upload import UploadError


class DomainError(Exception):
    """Base exception for all domain errors.
    Operational upload failures travel as ``Err`` results; these exceptions are
    raised for contract violations and at the HTTP boundary.
    """
    def __init__(self, message: str | None = None):
        """Initialize domain error with message.
        Args:
            message: Error message describing what went wrong.
        """
        super().__init__(message or "Domain error")


class ValidationError(DomainError):
    """Exception raised when a value violates a domain contract."""
    pass


class ExternalServiceError(DomainError):
    """Exception raised when an external dependency fails."""
    pass


class UploadFailedError(DomainError):
    """Carries a structured ``UploadError`` out to the HTTP layer."""
    def __init__(self, error: "UploadError", attempts: int | None = None):
        super().__init__(error.message)
        self.error = error
        self.attempts = attempts
