"""Domain layer: constants, errors and schemas."""

from .errors import ErrorKind, FormsError
from .schemas import (
    DaemonPaths,
    FormSession,
    HostResponse,
    ParsedMessage,
    Submission,
)

__all__ = [
    "ErrorKind",
    "FormsError",
    "DaemonPaths",
    "FormSession",
    "HostResponse",
    "ParsedMessage",
    "Submission",
]
