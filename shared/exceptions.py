"""
shared/exceptions.py
Typed domain errors raised by the engine and services.

Handlers in main.py translate them into the
`{"success": false, "error": ..., "code": ..., "details": ...}` envelope.
"""

from typing import Any, Dict, Optional

from fastapi import status


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": False, "error": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationException(DomainException):
    """Raised when input passes schema validation but is still unacceptable."""

    status_code = status.HTTP_400_BAD_REQUEST


class PreconditionFailed(DomainException):
    """Raised when the session is not in a state that allows the action."""

    status_code = status.HTTP_400_BAD_REQUEST


class ForbiddenException(DomainException):
    """Raised when the actor lacks the role or is not a participant."""

    status_code = status.HTTP_403_FORBIDDEN


class NotFoundException(DomainException):
    status_code = status.HTTP_404_NOT_FOUND


class ConflictException(DomainException):
    """Raised on ambiguous context or a lost concurrent update."""

    status_code = status.HTTP_409_CONFLICT


class SubscriptionPolicyError(DomainException):
    """
    Raised when a plan does not permit an action.
    `details` carries the upgrade payload shown to the client.
    """

    status_code = status.HTTP_403_FORBIDDEN

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        status_code: int = status.HTTP_403_FORBIDDEN,
    ) -> None:
        super().__init__(message, code="SUBSCRIPTION_LIMIT", details=details)
        self.status_code = status_code
