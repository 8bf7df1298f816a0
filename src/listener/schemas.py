"""
Audit event message schemas.

Pydantic models for the two event variants consumed from the audit topics.
Field names on the wire are camelCase; attributes are snake_case. Only the
wire names are accepted, so a snake_case key is an unknown field. Unknown
fields are forbidden: strictness is relaxed, when configured, by the
deserializer dropping unknown keys before validation.

TIMESTAMPS:
Producers send local date-times without an offset, e.g.
    2024-01-01T00:00:00
    2024-01-01T00:00:00.123456789
A missing timestamp becomes the ingestion time. A timestamp matching
neither grammar also becomes the ingestion time, with a warning; the record
is never rejected for it.
"""

import logging
import re
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

SECONDS_FORMAT = "%Y-%m-%dT%H:%M:%S"
FRACTION_FORMAT = "%Y-%m-%dT%H:%M:%S.%f"

# Local date-time: yyyy-MM-ddTHH:mm, optionally :ss, optionally .fraction
# (1-9 digits). Every component is zero-padded.
LOCAL_TIMESTAMP_PATTERN = re.compile(
    r"(?P<minutes>\d{4}-\d{2}-\d{2}T\d{2}:\d{2})(?::(?P<seconds>\d{2})(?:\.(?P<fraction>\d{1,9}))?)?"
)


def parse_local_timestamp(value: Any) -> datetime:
    """
    Parse a local date-time, falling back to the current time.

    Args:
        value: Raw timestamp value from the payload

    Returns:
        Naive local datetime
    """
    if value is None:
        logger.debug("Timestamp absent, using ingestion time")
        return datetime.now()

    if isinstance(value, datetime):
        return value

    match = LOCAL_TIMESTAMP_PATTERN.fullmatch(value.strip()) if isinstance(value, str) else None
    if match:
        text = match.group("minutes") + ":" + (match.group("seconds") or "00")
        # Python keeps microseconds, so nanosecond fractions are truncated.
        fraction = (match.group("fraction") or "")[:6]
        if fraction:
            text = f"{text}.{fraction}"
        try:
            return datetime.strptime(text, FRACTION_FORMAT if fraction else SECONDS_FORMAT)
        except ValueError:
            pass

    logger.warning(
        "Error parsing timestamp, using current time",
        extra={"timestamp_value": repr(value)},
    )
    return datetime.now()


class AuditEvent(BaseModel):
    """Fields shared by every audit event."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    message_id: str = Field(..., alias="messageId", min_length=1)
    timestamp: datetime = Field(default_factory=datetime.now)

    @field_validator("timestamp", mode="before")
    @classmethod
    def _parse_timestamp(cls, value: Any) -> datetime:
        return parse_local_timestamp(value)


class MethodAuditEvent(AuditEvent):
    """
    Audit of a single method invocation.

    Attributes:
        message_id: Producer-assigned idempotence key
        event_id: Correlation id of the invocation (UUID-shaped)
        event_type: START, END or ERROR (any string is accepted)
        method_name: ClassName.methodName
        args: Invocation arguments (START events)
        result: Return value (END events)
        error: Error text (ERROR events)
        log_level: INFO, DEBUG, ...
        timestamp: When the event happened (local time)
    """

    event_id: str = Field(..., alias="id")
    event_type: str = Field(..., alias="type")
    method_name: str = Field(..., alias="methodName")
    args: Optional[List[Any]] = None
    result: Optional[str] = None
    error: Optional[str] = None
    log_level: str = Field(..., alias="logLevel")


class HttpAuditEvent(AuditEvent):
    """
    Audit of one HTTP exchange.

    Attributes:
        message_id: Producer-assigned idempotence key
        timestamp: When the request happened (local time)
        direction: Incoming or Outgoing
        method: HTTP method
        status_code: HTTP status code
        url: Request URL including query
        request_body: Request body, if captured
        response_body: Response body, if captured
    """

    direction: str
    method: str
    status_code: int = Field(..., alias="statusCode")
    url: str
    request_body: Optional[str] = Field(default=None, alias="requestBody")
    response_body: Optional[str] = Field(default=None, alias="responseBody")
