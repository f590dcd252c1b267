"""
Error definitions for the forms daemon.

Every failure on the request path is a FormsError tagged with an
ErrorKind. Routes render it as a diagnostic page; nothing is swallowed.
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """
    FormsError kinds.

    CONFIGURATION: unknown addon, missing environment field (not retried)
    CODEC: message has no form type declaration
    TRANSPORT_TIMEOUT / TRANSPORT_REFUSED: delivery endpoint unreachable
    HOST_REJECTED: the host explicitly reported failure
    NOT_FOUND: unknown or discarded session id
    """
    CONFIGURATION = "CONFIGURATION"
    CODEC = "CODEC"
    TRANSPORT_TIMEOUT = "TRANSPORT_TIMEOUT"
    TRANSPORT_REFUSED = "TRANSPORT_REFUSED"
    HOST_REJECTED = "HOST_REJECTED"
    NOT_FOUND = "NOT_FOUND"


class FormsError(Exception):
    """
    A failure the operator should see.

    Usage:
        raise FormsError(ErrorKind.CODEC, "no form type", form_id="3")
    """

    def __init__(self, kind: ErrorKind, message: str, **context: Any) -> None:
        self.kind = kind
        self.message = message
        self.context = context
        super().__init__(message)

    def __str__(self) -> str:
        return self.message

    @property
    def retryable(self) -> bool:
        """Transport failures may be retried by the caller."""
        return self.kind in (ErrorKind.TRANSPORT_TIMEOUT, ErrorKind.TRANSPORT_REFUSED)

    def to_dict(self) -> dict[str, Any]:
        """For logs and JSON."""
        return {
            "kind": self.kind.value,
            "message": self.message,
            **self.context,
        }
