"""
Message classification.

Assigns a parsed payload to one of the audit event variants by the presence
of discriminator fields only. Rules are evaluated in order; the first match
wins, so a payload carrying both method and HTTP discriminators is a method
audit.
"""

from enum import Enum
from typing import Any, Tuple


class EventVariant(str, Enum):
    METHOD_AUDIT = "method_audit"
    HTTP_AUDIT = "http_audit"
    UNCLASSIFIED = "unclassified"


CLASSIFICATION_RULES: Tuple[Tuple[EventVariant, Tuple[str, ...]], ...] = (
    (EventVariant.METHOD_AUDIT, ("id", "methodName", "logLevel")),
    (EventVariant.HTTP_AUDIT, ("direction", "method", "statusCode")),
)


def classify(tree: Any) -> EventVariant:
    """
    Classify a parsed JSON tree.

    Args:
        tree: Result of json.loads on the record value

    Returns:
        The matching EventVariant, or UNCLASSIFIED
    """
    if not isinstance(tree, dict):
        return EventVariant.UNCLASSIFIED

    for variant, fields in CLASSIFICATION_RULES:
        if all(field in tree for field in fields):
            return variant

    return EventVariant.UNCLASSIFIED
