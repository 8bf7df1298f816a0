"""
Dead-letter routing.

Records that cannot be ingested are published to the dead-letter topic
inside the coordinator's open transaction. The caller then commits the
record's offset in that same transaction, so the DLQ entry and the offset
advance become visible together or not at all.
"""

import logging
import uuid

from src.listener.coordinator import TransactionCoordinator
from src.listener.records import RawRecord

DLQ_PAYLOAD_PREFIX = "Parsing or validation error"


def build_dlq_payload(original: str, reason: str) -> str:
    return f"{DLQ_PAYLOAD_PREFIX}: {original}, {reason}"


class ErrorRouter:
    """Publishes failure records to the dead-letter topic."""

    def __init__(self, coordinator: TransactionCoordinator, dlq_topic: str = "audit.errors"):
        self.coordinator = coordinator
        self.dlq_topic = dlq_topic
        self.logger = logging.getLogger(__name__)

    def route(self, record: RawRecord, reason: str) -> str:
        """
        Send the record to the DLQ within the active transaction.

        Args:
            record: The record that could not be ingested
            reason: Human-readable failure reason

        Returns:
            The key the DLQ message was published under
        """
        key = str(uuid.uuid4())
        self.coordinator.send_in_transaction(self.dlq_topic, key, build_dlq_payload(record.text, reason))

        self.logger.warning(
            "Record routed to dead-letter topic",
            extra={
                "dlq_topic": self.dlq_topic,
                "dlq_key": key,
                "reason": reason,
                "kafka_topic": record.topic,
                "kafka_partition": record.partition,
                "kafka_offset": record.offset,
            },
        )
        return key
