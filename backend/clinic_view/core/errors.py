from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    TRANSPORT = "transport"


# Missing capability, freshly invalidated session, or an appointment
# without an examination yet. Never reported to the user.
EXPECTED_KINDS = frozenset({ErrorKind.UNAUTHORIZED, ErrorKind.FORBIDDEN, ErrorKind.NOT_FOUND})


class ClinicApiError(Exception):
    """A failed call against the clinic backend, classified by kind."""

    def __init__(self, kind: ErrorKind, message: str = "", status_code: Optional[int] = None):
        super().__init__(message or kind.value)
        self.kind = kind
        self.status_code = status_code
        self.message = message or kind.value

    @property
    def expected(self) -> bool:
        return self.kind in EXPECTED_KINDS

    @property
    def retryable(self) -> bool:
        if self.kind in (ErrorKind.TIMEOUT, ErrorKind.TRANSPORT):
            # 4xx other than 408/429 means the request itself is wrong
            if self.status_code is not None and 400 <= self.status_code < 500:
                return self.status_code in (408, 429)
            return True
        return False

    @classmethod
    def from_status(cls, status_code: int, message: str = "") -> "ClinicApiError":
        if status_code == 401:
            kind = ErrorKind.UNAUTHORIZED
        elif status_code == 403:
            kind = ErrorKind.FORBIDDEN
        elif status_code == 404:
            kind = ErrorKind.NOT_FOUND
        elif status_code == 408:
            kind = ErrorKind.TIMEOUT
        else:
            kind = ErrorKind.TRANSPORT
        return cls(kind, message or f"HTTP {status_code}", status_code=status_code)


class WriteFailedError(Exception):
    """A user-initiated write failed; the message is shown to the user."""

    def __init__(self, user_message: str, cause: Optional[ClinicApiError] = None):
        super().__init__(user_message)
        self.user_message = user_message
        self.cause = cause


class CapabilityDeniedError(Exception):
    def __init__(self, capability: str):
        super().__init__(f"missing capability {capability}")
        self.capability = capability


class SessionClosingError(Exception):
    """Raised when a write is attempted while the session is logging out."""
