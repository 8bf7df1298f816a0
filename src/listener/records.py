"""
Record types passed between the coordinator and the pipeline.

RawRecord is what came off the broker; MessageEnvelope is a RawRecord after
classification and deserialization.
"""

from dataclasses import dataclass
from typing import Optional, Union

from confluent_kafka import Message

from src.listener.classifier import EventVariant
from src.listener.schemas import HttpAuditEvent, MethodAuditEvent

TypedEvent = Union[MethodAuditEvent, HttpAuditEvent]


@dataclass(frozen=True)
class RawRecord:
    """
    An immutable Kafka record.

    Attributes:
        topic: Source topic
        partition: Source partition
        offset: Offset within the partition
        key: Record key decoded as UTF-8, if any
        value: Raw record value
        timestamp: Broker/producer timestamp in epoch milliseconds (-1 if unknown)
    """

    topic: str
    partition: int
    offset: int
    key: Optional[str]
    value: bytes
    timestamp: int

    @classmethod
    def from_message(cls, msg: Message) -> "RawRecord":
        key = msg.key()
        if isinstance(key, bytes):
            key = key.decode("utf-8", errors="replace")
        _, timestamp = msg.timestamp()
        return cls(
            topic=msg.topic(),
            partition=msg.partition(),
            offset=msg.offset(),
            key=key,
            value=msg.value() or b"",
            timestamp=timestamp,
        )

    @property
    def text(self) -> str:
        """Record value as text, with undecodable bytes replaced."""
        return self.value.decode("utf-8", errors="replace")

    @property
    def position(self) -> str:
        return f"{self.topic}-{self.partition}@{self.offset}"


@dataclass(frozen=True)
class MessageEnvelope:
    raw: RawRecord
    variant: EventVariant
    parsed: TypedEvent

    @property
    def message_id(self) -> str:
        return self.parsed.message_id
