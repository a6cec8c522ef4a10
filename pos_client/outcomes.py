"""
Classified results of remote API calls.

Every call issued by the request layer resolves to exactly one
``RequestOutcome``; transport exceptions never cross that boundary.

Variants:
    - SUCCESS: 2xx, ``payload`` holds the unwrapped body
    - NETWORK_ERROR: connection failure, timeout or 5xx (retryable)
    - AUTH_ERROR: 401/403
    - NOT_FOUND: 404, a stable business fact
    - INACTIVE: the resource exists but is deactivated
    - VALIDATION_ERROR: 400/422, ``details`` holds the structured body
    - SERVER_ERROR: any other non-2xx status
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Optional


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    NETWORK_ERROR = "network_error"
    AUTH_ERROR = "auth_error"
    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    VALIDATION_ERROR = "validation_error"
    SERVER_ERROR = "server_error"


@dataclass(frozen=True)
class RequestOutcome:
    kind: OutcomeKind
    payload: Any = None
    status: Optional[int] = None
    message: str = ""
    code: Optional[str] = None
    details: Any = None
    attempts_used: int = 1

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS

    @property
    def is_retryable(self) -> bool:
        """Only transport-level failures are retried by the request layer."""
        return self.kind is OutcomeKind.NETWORK_ERROR

    @property
    def is_transient(self) -> bool:
        """Failures worth another attempt at the resource level."""
        return self.kind in (OutcomeKind.NETWORK_ERROR, OutcomeKind.SERVER_ERROR)

    def with_attempts(self, attempts_used: int) -> "RequestOutcome":
        return replace(self, attempts_used=attempts_used)

    @classmethod
    def success(cls, payload: Any = None, status: int = 200) -> "RequestOutcome":
        return cls(OutcomeKind.SUCCESS, payload=payload, status=status)

    @classmethod
    def network_error(cls, message: str = "Network error occurred", status: Optional[int] = None) -> "RequestOutcome":
        return cls(OutcomeKind.NETWORK_ERROR, status=status, message=message, code="NETWORK_ERROR")

    @classmethod
    def auth_error(cls, status: int = 401, message: str = "Authentication required", code: Optional[str] = None) -> "RequestOutcome":
        return cls(OutcomeKind.AUTH_ERROR, status=status, message=message, code=code or "UNAUTHORIZED")

    @classmethod
    def not_found(cls, message: str = "Resource not found", code: Optional[str] = None) -> "RequestOutcome":
        return cls(OutcomeKind.NOT_FOUND, status=404, message=message, code=code or "RESOURCE_NOT_FOUND")

    @classmethod
    def inactive(cls, payload: Any = None, message: str = "Resource is inactive") -> "RequestOutcome":
        return cls(OutcomeKind.INACTIVE, payload=payload, message=message, code="INACTIVE")

    @classmethod
    def validation_error(cls, details: Any = None, status: int = 400, message: str = "Validation failed") -> "RequestOutcome":
        return cls(OutcomeKind.VALIDATION_ERROR, status=status, message=message, code="VALIDATION_ERROR", details=details)

    @classmethod
    def server_error(cls, status: int, message: str = "An error occurred", code: Optional[str] = None) -> "RequestOutcome":
        return cls(OutcomeKind.SERVER_ERROR, status=status, message=message, code=code or "API_ERROR")


_USER_MESSAGES = {
    OutcomeKind.NETWORK_ERROR: "Network error: unable to reach the server. Please check your connection and try again.",
    OutcomeKind.AUTH_ERROR: "Your session has expired. Please log in again.",
    OutcomeKind.NOT_FOUND: "The requested resource could not be found. It may have been removed or the ID is incorrect.",
    OutcomeKind.INACTIVE: "This resource is currently offline. Please contact your administrator.",
    OutcomeKind.SERVER_ERROR: "The server could not complete the request.",
}


def user_message(outcome: RequestOutcome) -> str:
    """Short message meant for display next to a retry action."""
    if outcome.kind is OutcomeKind.SUCCESS:
        return ""
    if outcome.kind is OutcomeKind.AUTH_ERROR and outcome.status == 403:
        return "You do not have permission to perform this action."
    if outcome.kind is OutcomeKind.VALIDATION_ERROR:
        return outcome.message or "Validation failed"
    return _USER_MESSAGES[outcome.kind]


def retry_message(outcome: RequestOutcome, attempt: int, max_attempts: int = 3) -> str:
    if outcome.kind is OutcomeKind.NETWORK_ERROR:
        return f"Connection failed. Retrying... ({attempt}/{max_attempts})"
    if outcome.kind is OutcomeKind.INACTIVE:
        return "Terminal is inactive. Please contact your administrator."
    if outcome.kind is OutcomeKind.NOT_FOUND:
        return "Terminal not found. Please check the terminal ID."
    return f"Request failed. Retrying... ({attempt}/{max_attempts})"
