"""
Error taxonomy for the audit listener.

Every failure met while handling a record is reduced to an ErrorKind, which
decides what the pipeline does next:

    TRANSIENT       retry with fixed back-off, then dead-letter
    SCHEMA          dead-letter immediately
    CLASSIFICATION  dead-letter immediately
    DUPLICATE_KEY   success (record already persisted), commit offset
    PERMANENT       dead-letter immediately (store rejected the record)
    FATAL           abort the worker, surface to the supervisor
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    SCHEMA = "schema"
    CLASSIFICATION = "classification"
    DUPLICATE_KEY = "duplicate_key"
    PERMANENT = "permanent"
    FATAL = "fatal"


class ListenerError(Exception):
    """
    Base exception for all listener errors.

    Attributes:
        message: Human-readable error description
        kind: Error classification for routing decisions
        cause: Original exception if wrapping
        context: Additional context dict for debugging
    """

    kind: ErrorKind = ErrorKind.PERMANENT

    def __init__(
        self,
        message: str,
        cause: Optional[Exception] = None,
        context: Optional[dict] = None,
    ):
        self.message = message
        self.cause = cause
        self.context = context or {}
        super().__init__(message)

    def __str__(self) -> str:
        parts = [self.message]
        if self.cause:
            parts.append(f"Caused by: {self.cause}")
        return " | ".join(parts)


class TransientError(ListenerError):
    """Store unavailable, broker timeout, aborted transaction."""

    kind = ErrorKind.TRANSIENT


class PermanentError(ListenerError):
    """The store rejected this record for a reason retrying cannot fix."""

    kind = ErrorKind.PERMANENT


class FatalError(ListenerError):
    """Mis-configuration, authentication failure, fenced producer."""

    kind = ErrorKind.FATAL


class SchemaError(ListenerError):
    """
    Payload does not match the schema of its classified variant.

    Attributes:
        payload: The original record value as text
        reason: Why it was rejected (named fields where possible)
    """

    kind = ErrorKind.SCHEMA

    def __init__(self, payload: str, reason: str, cause: Optional[Exception] = None):
        self.payload = payload
        self.reason = reason
        super().__init__(reason, cause=cause)

    def __str__(self) -> str:
        return self.reason


class ClassificationError(SchemaError):
    """Neither discriminator field set matched."""

    kind = ErrorKind.CLASSIFICATION


class DuplicateKeyError(ListenerError):
    """
    Unique constraint / version conflict on insert.

    Another attempt persisted the record between the pre-check and the
    insert; the pipeline acknowledges the record without routing it.
    """

    kind = ErrorKind.DUPLICATE_KEY


def classify_exception(exc: BaseException) -> ErrorKind:
    """
    Classify an exception into an ErrorKind.

    Listener errors carry their own kind. Anything else raised while a
    record is in flight is treated as PERMANENT for that record so that a
    single poison message cannot stall its partition.
    """
    if isinstance(exc, ListenerError):
        return exc.kind

    if isinstance(exc, (ConnectionError, TimeoutError)):
        return ErrorKind.TRANSIENT

    exc_type = type(exc).__name__.lower()
    exc_str = str(exc).lower()

    if "timeout" in exc_type or "timed out" in exc_str:
        return ErrorKind.TRANSIENT

    connection_markers = (
        "connection refused",
        "connection reset",
        "connection aborted",
        "broken pipe",
    )
    if any(m in exc_str for m in connection_markers):
        return ErrorKind.TRANSIENT

    return ErrorKind.PERMANENT
