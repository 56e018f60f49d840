"""Error taxonomy for calls to the Capacities API.

Everything that can go wrong between the user's token and a parsed payload
is reduced to one ``ErrorKind`` so the dashboard can show kind-specific
remediation text without parsing messages.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    TRANSPORT_FAILURE = "transport_failure"
    PROXY_PAYLOAD = "proxy_payload"
    MALFORMED_JSON = "malformed_json"
    AUTHENTICATION = "authentication"
    SESSION_EXPIRED = "session_expired"


REMEDIATION: dict[ErrorKind, str] = {
    ErrorKind.TRANSPORT_FAILURE: (
        "None of the CORS proxy services could be reached. "
        "Check your internet connection, wait a moment and retry."
    ),
    ErrorKind.PROXY_PAYLOAD: (
        "A proxy service returned an error page instead of API data. "
        "This is a relay problem, not a token problem: wait a moment and retry."
    ),
    ErrorKind.MALFORMED_JSON: (
        "The API returned data in an unexpected format. If retrying does not "
        "help, your token may be stale or invalid; generate a new one in "
        "Capacities under Settings > API & Integrations."
    ),
    ErrorKind.AUTHENTICATION: (
        "Your API token was rejected. Generate a new token in Capacities "
        "under Settings > API & Integrations and connect again."
    ),
    ErrorKind.SESSION_EXPIRED: (
        "Your session has ended (tokens expire after 1 hour). "
        "Enter a new API token to continue."
    ),
}


class TokenFormatError(ValueError):
    """The token string cannot possibly be a Capacities API token."""


class CapacitiesAPIError(Exception):
    """A classified failure raised below the client boundary."""

    def __init__(self, kind: ErrorKind, message: str, detail: str = "") -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.detail = detail

    def classify(self) -> ClassifiedError:
        return ClassifiedError(kind=self.kind, message=self.message, detail=self.detail)


@dataclass(frozen=True)
class ClassifiedError:
    """The single error value handed to the presentation layer."""

    kind: ErrorKind
    message: str
    detail: str = ""

    @property
    def remediation(self) -> str:
        return REMEDIATION[self.kind]

    @property
    def requires_reauth(self) -> bool:
        return self.kind in (ErrorKind.AUTHENTICATION, ErrorKind.SESSION_EXPIRED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "detail": self.detail,
            "remediation": self.remediation,
            "requiresReauth": self.requires_reauth,
        }
