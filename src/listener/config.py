"""
Listener Configuration Module

Settings for the audit log listener: Kafka consumer, transactional producer,
retry policy and the persistence backend. Loaded from environment variables
(and an optional .env file) with Pydantic validation.

PROPERTY NAMES:
The listener historically used dotted property names. Each maps to one
environment variable:
    bootstrap.servers                   -> KAFKA_BOOTSTRAP_SERVERS
    audit.kafka.topic.methodsTopic      -> AUDIT_METHODS_TOPIC
    audit.kafka.topic.requestsTopic     -> AUDIT_REQUESTS_TOPIC
    dlq.topic                           -> DLQ_TOPIC
    retry.attempts                      -> RETRY_ATTEMPTS
    retry.backoff.ms                    -> RETRY_BACKOFF_MS
    consumer.group.id                   -> CONSUMER_GROUP_ID
    producer.transactional.id.prefix    -> PRODUCER_TRANSACTIONAL_ID_PREFIX
"""

import socket
from typing import List, Literal

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env file if present (local development)
load_dotenv()


class ListenerConfig(BaseSettings):
    """
    Audit listener configuration with validation.

    Includes Kafka consumer/producer settings, retry policy, and the settings
    of both persistence backends (PostgreSQL and Elasticsearch).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # === KAFKA SETTINGS ===
    kafka_bootstrap_servers: str = Field(
        ...,
        min_length=1,
        description="Kafka broker addresses (bootstrap.servers)",
    )

    audit_methods_topic: str = Field(
        default="audit.methods",
        description="Topic carrying method audit events",
    )

    audit_requests_topic: str = Field(
        default="audit.requests",
        description="Topic carrying HTTP audit events",
    )

    dlq_topic: str = Field(
        default="audit.errors",
        description="Dead-letter topic for records that cannot be ingested",
    )

    consumer_group_id: str = Field(
        default="audit-log-group",
        description="Consumer group ID",
    )

    consumer_client_id: str = Field(
        default="audit-listener",
        description="Client identifier reported to the broker",
    )

    consumer_auto_offset_reset: Literal["earliest", "latest"] = Field(
        default="earliest",
        description="Where to start consuming when the group has no offset",
    )

    producer_transactional_id_prefix: str = Field(
        ...,
        min_length=1,
        description="Transactional id prefix; the worker id is appended",
    )

    worker_id: str = Field(
        default_factory=socket.gethostname,
        min_length=1,
        description="Stable suffix of the transactional id (survives restarts)",
    )

    # === LIVENESS ===
    poll_timeout_s: float = Field(default=3.0, gt=0, le=60)
    session_timeout_ms: int = Field(default=30000, ge=1000)
    max_poll_interval_ms: int = Field(default=300000, ge=1000)
    idle_event_interval_s: float = Field(default=60.0, gt=0)
    transaction_timeout_s: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for init/commit/abort transaction calls",
    )

    # === RETRY POLICY ===
    retry_attempts: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Retries after the first attempt for transient failures",
    )

    retry_backoff_ms: int = Field(
        default=1000,
        ge=0,
        le=60000,
        description="Fixed back-off between retries in milliseconds",
    )

    # === DESERIALIZATION ===
    strict_deserialization: bool = Field(
        default=True,
        description="Reject payloads carrying unknown fields",
    )

    # === PERSISTENCE ===
    store_backend: Literal["postgres", "elasticsearch"] = Field(
        default="postgres",
        description="Relational row store or full-text document store",
    )

    postgres_host: str = Field(default="localhost")
    postgres_port: int = Field(default=5432)
    postgres_db: str = Field(default="audit_logs")
    postgres_user: str = Field(default="postgres")
    postgres_password: str = Field(default="postgres")

    db_pool_size: int = Field(
        default=5,
        ge=1,
        le=20,
        description="SQLAlchemy connection pool size",
    )

    db_create_tables: bool = Field(
        default=True,
        description="Create audit_logs/http_logs on startup when missing",
    )

    elasticsearch_url: str = Field(default="http://localhost:9200")
    elasticsearch_methods_index: str = Field(default="audit-methods")
    elasticsearch_requests_index: str = Field(default="audit-requests")

    # === LOGGING ===
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Log output format (json or text)")

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        value = value.upper()
        if value not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {value}")
        return value

    def get_topics(self) -> List[str]:
        """Topics the listener subscribes to."""
        return [self.audit_methods_topic, self.audit_requests_topic]

    def get_transactional_id(self) -> str:
        """Transactional id: prefix plus the stable worker id."""
        return f"{self.producer_transactional_id_prefix}-{self.worker_id}"

    def get_consumer_config(self) -> dict:
        """
        Get Kafka consumer configuration dictionary.

        Offsets are never auto-committed: they are sent through the producer
        transaction. read_committed hides aborted DLQ sends from downstream
        consumers.
        """
        return {
            "bootstrap.servers": self.kafka_bootstrap_servers,
            "group.id": self.consumer_group_id,
            "client.id": self.consumer_client_id,
            "auto.offset.reset": self.consumer_auto_offset_reset,
            "enable.auto.commit": False,
            "enable.auto.offset.store": False,
            "isolation.level": "read_committed",
            "session.timeout.ms": self.session_timeout_ms,
            "max.poll.interval.ms": self.max_poll_interval_ms,
            "enable.partition.eof": False,
        }

    def get_producer_config(self) -> dict:
        """Get transactional Kafka producer configuration dictionary."""
        return {
            "bootstrap.servers": self.kafka_bootstrap_servers,
            "client.id": f"{self.consumer_client_id}-producer",
            "transactional.id": self.get_transactional_id(),
            "enable.idempotence": True,
            "acks": "all",
            "retries": 2147483647,
            "max.in.flight.requests.per.connection": 5,
        }

    def get_database_url(self) -> str:
        """Get SQLAlchemy database URL."""
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )


def load_config() -> ListenerConfig:
    """Load and validate listener configuration."""
    return ListenerConfig()
