"""
Audit record deserializer.

Turns a RawRecord into a MessageEnvelope:
1. Decode the value (UTF-8 JSON)
2. Classify it by discriminator fields
3. Validate it against the variant's schema

Any failure raises SchemaError (or ClassificationError) carrying the
original payload and a human-readable reason. The deserializer holds no
global state: each worker builds its own, with strictness fixed at
construction.
"""

import json
import logging
import uuid
from typing import Any, Dict, List, Tuple, Type

from pydantic import ValidationError

from src.listener.classifier import CLASSIFICATION_RULES, EventVariant, classify
from src.listener.errors import ClassificationError, SchemaError
from src.listener.records import MessageEnvelope, RawRecord
from src.listener.schemas import AuditEvent, HttpAuditEvent, MethodAuditEvent

logger = logging.getLogger(__name__)

VARIANT_MODELS: Dict[EventVariant, Type[AuditEvent]] = {
    EventVariant.METHOD_AUDIT: MethodAuditEvent,
    EventVariant.HTTP_AUDIT: HttpAuditEvent,
}


class AuditDeserializer:
    """
    Schema-typed deserializer for audit records.

    Args:
        strict: Reject unknown fields (otherwise they are dropped)
        require_uuid_event_id: Reject method audits whose id is not a UUID
            (the document store keeps the event id as a UUID)
    """

    def __init__(self, strict: bool = True, require_uuid_event_id: bool = False):
        self.strict = strict
        self.require_uuid_event_id = require_uuid_event_id

    def deserialize(self, record: RawRecord) -> MessageEnvelope:
        tree, variant = self.classify_record(record)
        return self.build(record, tree, variant)

    def classify_record(self, record: RawRecord) -> Tuple[Any, EventVariant]:
        """
        Parse the record value and classify it.

        Raises:
            SchemaError: Value is not UTF-8 JSON
            ClassificationError: No discriminator set matched
        """
        payload = record.text

        try:
            tree = json.loads(record.value.decode("utf-8"))
        except UnicodeDecodeError as e:
            raise SchemaError(payload, f"Payload is not valid UTF-8: {e}", cause=e)
        except json.JSONDecodeError as e:
            raise SchemaError(payload, f"Malformed JSON: {e.msg} at position {e.pos}", cause=e)

        variant = classify(tree)
        if variant is EventVariant.UNCLASSIFIED:
            raise ClassificationError(payload, self._classification_reason(tree))
        return tree, variant

    def build(self, record: RawRecord, tree: Any, variant: EventVariant) -> MessageEnvelope:
        """
        Validate a classified tree against its variant's schema.

        Raises:
            SchemaError: Unknown field (strict mode), missing required field,
                wrong type, or non-UUID event id when UUIDs are required
        """
        payload = record.text
        model = VARIANT_MODELS[variant]
        if not self.strict:
            tree = self._drop_unknown_fields(tree, model)

        try:
            event = model.model_validate(tree)
        except ValidationError as e:
            raise SchemaError(payload, self._validation_reason(variant, e), cause=e)

        if self.require_uuid_event_id and isinstance(event, MethodAuditEvent):
            try:
                uuid.UUID(event.event_id)
            except ValueError as e:
                raise SchemaError(payload, f"Field 'id' is not a valid UUID: {event.event_id!r}", cause=e)

        logger.debug(
            "Record deserialized",
            extra={"variant": variant.value, "message_id": event.message_id},
        )
        return MessageEnvelope(raw=record, variant=variant, parsed=event)

    @staticmethod
    def _classification_reason(tree: Any) -> str:
        if not isinstance(tree, dict):
            return f"Cannot determine log type: expected a JSON object, got {type(tree).__name__}"

        missing = []
        for variant, fields in CLASSIFICATION_RULES:
            absent = [f for f in fields if f not in tree]
            missing.append(f"{variant.value} missing {', '.join(absent)}")
        return f"Cannot determine log type from message ({'; '.join(missing)})"

    @staticmethod
    def _drop_unknown_fields(tree: Dict[str, Any], model: Type[AuditEvent]) -> Dict[str, Any]:
        known = {field.alias or name for name, field in model.model_fields.items()}
        return {k: v for k, v in tree.items() if k in known}

    @staticmethod
    def _validation_reason(variant: EventVariant, error: ValidationError) -> str:
        missing: List[str] = []
        unknown: List[str] = []
        invalid: List[str] = []

        for item in error.errors():
            field = ".".join(str(part) for part in item["loc"])
            if item["type"] == "missing":
                missing.append(field)
            elif item["type"] == "extra_forbidden":
                unknown.append(field)
            else:
                invalid.append(f"{field} ({item['msg']})")

        parts = []
        if missing:
            parts.append(f"missing required field(s): {', '.join(missing)}")
        if unknown:
            parts.append(f"unknown field(s): {', '.join(unknown)}")
        if invalid:
            parts.append(f"invalid field(s): {', '.join(invalid)}")
        return f"Schema violation for {variant.value}: {'; '.join(parts)}"
