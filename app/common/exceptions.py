"""
Common exceptions for the subscription and refill core.

Every error carries a code and a sanitized message safe to return to API
callers. Billing-provider payloads (which may include card details) are never
attached to these errors.
"""
from typing import Optional


class ClinicCoreError(Exception):
    """Base exception for lifecycle, refill and billing errors."""

    code = "CLINIC_CORE_ERROR"
    status_code = 500

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[dict] = None):
        self.message = message
        if code:
            self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details
        }


class ValidationError(ClinicCoreError):
    """A precondition was violated. Nothing was mutated."""

    code = "VALIDATION_ERROR"
    status_code = 400


class NotFoundError(ClinicCoreError):
    code = "NOT_FOUND"
    status_code = 404


class RemoteGatewayError(ClinicCoreError):
    """
    A call to an external partner (billing provider, pharmacy) failed.

    `provider_code` keeps the provider's short error code for logs and
    reconciliation, never the raw response.
    """

    code = "REMOTE_GATEWAY_ERROR"
    status_code = 502

    def __init__(self, message: str, provider_code: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message, details=details)
        self.provider_code = provider_code


class PersistenceError(ClinicCoreError):
    """A local database write failed or timed out. Always surfaced to the caller."""

    code = "PERSISTENCE_ERROR"
    status_code = 500
