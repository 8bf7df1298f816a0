"""
SQLAlchemy ORM Models for Audit Log Storage

Relational persistence of audit events consumed from Kafka.

TABLES:
- audit_logs: method invocation audits
- http_logs: HTTP exchange audits

Both tables carry provenance columns (kafka_topic, kafka_partition,
kafka_offset) for forensic replay. message_id is unique: it is the
idempotence key, so a second insert of the same message fails with a
unique violation instead of creating a duplicate row.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    TIMESTAMP,
    BigInteger,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only auto-increments INTEGER PRIMARY KEY columns (used in unit tests)
SurrogateId = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class ProvenanceMixin:
    """Kafka coordinates of the record a row was built from."""

    kafka_topic: Mapped[str] = mapped_column(String(255), nullable=False)
    kafka_partition: Mapped[int] = mapped_column(Integer, nullable=False)
    kafka_offset: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Database write time, for consumer lag queries
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class AuditLog(ProvenanceMixin, Base):
    """
    Method audit row.

    Attributes:
        id: Surrogate key
        message_id: Idempotence key (unique)
        event_id: Correlation id of the invocation, stored as text
        event_type: START / END / ERROR
        method_name: ClassName.methodName
        args: Arguments rendered as "[a, b, c]"
        result: Return value
        error: Error text
        log_level: Log level of the event
        timestamp: Event time (local wall clock)
    """

    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(SurrogateId, primary_key=True, autoincrement=True)
    message_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    event_id: Mapped[str] = mapped_column("audit_id", String(255), nullable=False)
    event_type: Mapped[str] = mapped_column("type", String(50), nullable=False)
    method_name: Mapped[str] = mapped_column(String(500), nullable=False)
    args: Mapped[Optional[str]] = mapped_column(Text)
    result: Mapped[Optional[str]] = mapped_column(Text)
    error: Mapped[Optional[str]] = mapped_column(Text)
    log_level: Mapped[Optional[str]] = mapped_column(String(20))
    timestamp: Mapped[datetime] = mapped_column(TIMESTAMP, nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint(
            "kafka_topic", "kafka_partition", "kafka_offset", name="uq_audit_logs_kafka_position"
        ),
        {"comment": "Method audit events consumed from Kafka"},
    )

    def __repr__(self) -> str:
        return (
            f"<AuditLog(message_id={self.message_id}, "
            f"event_type={self.event_type}, "
            f"method_name={self.method_name})>"
        )


class HttpLog(ProvenanceMixin, Base):
    """HTTP audit row."""

    __tablename__ = "http_logs"

    id: Mapped[int] = mapped_column(SurrogateId, primary_key=True, autoincrement=True)
    message_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    timestamp: Mapped[datetime] = mapped_column(TIMESTAMP, nullable=False, index=True)
    direction: Mapped[str] = mapped_column(String(50), nullable=False)
    method: Mapped[str] = mapped_column(String(10), nullable=False)
    status_code: Mapped[int] = mapped_column(Integer, nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    request_body: Mapped[Optional[str]] = mapped_column(Text)
    response_body: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        UniqueConstraint(
            "kafka_topic", "kafka_partition", "kafka_offset", name="uq_http_logs_kafka_position"
        ),
        {"comment": "HTTP audit events consumed from Kafka"},
    )

    def __repr__(self) -> str:
        return (
            f"<HttpLog(message_id={self.message_id}, "
            f"method={self.method}, url={self.url}, status_code={self.status_code})>"
        )
