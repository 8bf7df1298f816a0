"""
Persistence writers.

One writer per backend, both with the same contract:

    write_method_audit(event, record) -> WriteOutcome
    write_http_audit(event, record)   -> WriteOutcome

A writer returns ALREADY_PRESENT instead of writing when the pre-check finds
the message_id (see guard.py). A duplicate detected by the store on insert
is raised as DuplicateKeyError. Store-unavailable errors are raised as
TransientError, any other store failure as PermanentError.

BACKENDS:
- SqlAuditWriter: PostgreSQL via SQLAlchemy (tables audit_logs, http_logs,
  with Kafka provenance columns)
- DocumentAuditWriter: Elasticsearch (indices audit-methods, audit-requests)
"""

import json
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Callable, List, Optional

from elasticsearch import ApiError, Elasticsearch
from elasticsearch import ConnectionError as ESConnectionError
from elasticsearch import ConnectionTimeout as ESConnectionTimeout
from sqlalchemy.exc import (
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from src.listener.config import ListenerConfig
from src.listener.database import DatabaseManager, init_database
from src.listener.errors import DuplicateKeyError, PermanentError, TransientError
from src.listener.guard import (
    DocumentIdempotenceGuard,
    GuardDecision,
    SqlIdempotenceGuard,
    document_id,
    is_duplicate_error,
)
from src.listener.models import AuditLog, Base, HttpLog
from src.listener.records import RawRecord
from src.listener.schemas import HttpAuditEvent, MethodAuditEvent

TRANSIENT_SQL_ERRORS = (OperationalError, InterfaceError, DisconnectionError, PoolTimeoutError)
TRANSIENT_HTTP_STATUSES = {429, 502, 503, 504}


class WriteOutcome(str, Enum):
    WRITTEN = "written"
    ALREADY_PRESENT = "already_present"


# ==============================================================================
# RENDERING
# ==============================================================================


def _render_arg(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    return str(value)


def render_args(args: Optional[List[Any]]) -> Optional[str]:
    """
    Collapse invocation arguments to printable form.

    >>> render_args(["a", 1, None])
    '[a, 1, null]'
    """
    if args is None:
        return None
    return "[" + ", ".join(_render_arg(a) for a in args) + "]"


def to_epoch_millis(timestamp: datetime) -> int:
    """Interpret a naive local datetime in the system zone as an epoch instant."""
    return int(timestamp.astimezone().timestamp() * 1000)


# ==============================================================================
# WRITER CONTRACT
# ==============================================================================


class AuditWriter(ABC):
    """Base class for audit persistence backends."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    @abstractmethod
    def write_method_audit(self, event: MethodAuditEvent, record: RawRecord) -> WriteOutcome:
        ...

    @abstractmethod
    def write_http_audit(self, event: HttpAuditEvent, record: RawRecord) -> WriteOutcome:
        ...

    @abstractmethod
    def check_health(self) -> bool:
        ...

    @abstractmethod
    def close(self) -> None:
        ...

    def _already_present(self, message_id: str, record: RawRecord, stage: str) -> WriteOutcome:
        self.logger.warning(
            "Audit message already processed",
            extra={
                "correlation_id": message_id,
                "stage": stage,
                "kafka_topic": record.topic,
                "kafka_partition": record.partition,
                "kafka_offset": record.offset,
            },
        )
        return WriteOutcome.ALREADY_PRESENT


# ==============================================================================
# RELATIONAL STORE
# ==============================================================================


class SqlAuditWriter(AuditWriter):
    """
    Writes audit rows to PostgreSQL.

    Each write is one local transaction: pre-check on message_id, insert,
    commit. A unique violation on commit (message_id or Kafka position)
    means another attempt got there first.
    """

    def __init__(self, db_manager: DatabaseManager, guard: Optional[SqlIdempotenceGuard] = None):
        super().__init__()
        self.db_manager = db_manager
        self.guard = guard or SqlIdempotenceGuard()

    def write_method_audit(self, event: MethodAuditEvent, record: RawRecord) -> WriteOutcome:
        row = AuditLog(
            message_id=event.message_id,
            event_id=event.event_id,
            event_type=event.event_type,
            method_name=event.method_name,
            args=render_args(event.args),
            result=event.result,
            error=event.error,
            log_level=event.log_level,
            timestamp=event.timestamp,
            kafka_topic=record.topic,
            kafka_partition=record.partition,
            kafka_offset=record.offset,
        )
        outcome = self._insert(AuditLog, row, event.message_id, record)
        if outcome is WriteOutcome.WRITTEN:
            self.logger.info(
                "Audit log saved successfully",
                extra={"correlation_id": event.message_id, "event_id": event.event_id},
            )
        return outcome

    def write_http_audit(self, event: HttpAuditEvent, record: RawRecord) -> WriteOutcome:
        row = HttpLog(
            message_id=event.message_id,
            timestamp=event.timestamp,
            direction=event.direction,
            method=event.method,
            status_code=event.status_code,
            url=event.url,
            request_body=event.request_body,
            response_body=event.response_body,
            kafka_topic=record.topic,
            kafka_partition=record.partition,
            kafka_offset=record.offset,
        )
        outcome = self._insert(HttpLog, row, event.message_id, record)
        if outcome is WriteOutcome.WRITTEN:
            self.logger.info(
                "HTTP log saved successfully",
                extra={"correlation_id": event.message_id, "method": event.method, "url": event.url},
            )
        return outcome

    def _insert(self, model: type, row: Base, message_id: str, record: RawRecord) -> WriteOutcome:
        try:
            with self.db_manager.get_session() as session:
                if self.guard.should_persist(session, model, message_id) is GuardDecision.ALREADY_PRESENT:
                    return self._already_present(message_id, record, "pre-check")
                session.add(row)
        except IntegrityError as e:
            if is_duplicate_error(e):
                self.logger.debug(
                    "Duplicate key on save (race condition)",
                    extra={"correlation_id": message_id, "kafka_offset": record.offset},
                )
                raise DuplicateKeyError(
                    f"{model.__tablename__} already holds {message_id}",
                    cause=e,
                    context={"message_id": message_id, "stage": "unique-constraint"},
                )
            raise PermanentError(f"{model.__tablename__} insert rejected", cause=e)
        except TRANSIENT_SQL_ERRORS as e:
            raise TransientError("Relational store unavailable", cause=e)
        except SQLAlchemyError as e:
            raise PermanentError(f"{model.__tablename__} insert failed", cause=e)

        return WriteOutcome.WRITTEN

    def check_health(self) -> bool:
        return self.db_manager.check_health()

    def close(self) -> None:
        self.db_manager.close()


# ==============================================================================
# DOCUMENT STORE
# ==============================================================================

METHODS_INDEX_MAPPINGS = {
    "properties": {
        "message_id": {"type": "keyword"},
        "audit_id": {"type": "keyword"},
        "event_type": {"type": "keyword"},
        "method": {"type": "keyword"},
        "args": {"type": "text"},
        "result": {"type": "text"},
        "error": {"type": "text"},
        "level": {"type": "keyword"},
        "timestamp": {"type": "date", "format": "epoch_millis"},
    }
}

REQUESTS_INDEX_MAPPINGS = {
    "properties": {
        "message_id": {"type": "keyword"},
        "timestamp": {"type": "date", "format": "epoch_millis"},
        "direction": {"type": "keyword"},
        "method": {"type": "keyword"},
        "status_code": {"type": "integer"},
        "url": {"type": "text", "fields": {"raw": {"type": "keyword", "ignore_above": 2048}}},
        "request_body": {"type": "text"},
        "response_body": {"type": "text"},
    }
}


class DocumentAuditWriter(AuditWriter):
    """
    Writes audit documents to Elasticsearch.

    Documents are created with op_type=create under an id derived from the
    message_id, so the store itself rejects a second copy with 409.
    """

    def __init__(
        self,
        client: Elasticsearch,
        methods_index: str = "audit-methods",
        requests_index: str = "audit-requests",
        guard: Optional[DocumentIdempotenceGuard] = None,
    ):
        super().__init__()
        self.client = client
        self.methods_index = methods_index
        self.requests_index = requests_index
        self.guard = guard or DocumentIdempotenceGuard(client)

    def ensure_indices(self) -> None:
        """Create both indices with their mappings if missing."""
        for index, mappings in (
            (self.methods_index, METHODS_INDEX_MAPPINGS),
            (self.requests_index, REQUESTS_INDEX_MAPPINGS),
        ):
            if not self.client.indices.exists(index=index):
                self.client.indices.create(index=index, mappings=mappings)
                self.logger.info("Created index", extra={"index": index})

    def write_method_audit(self, event: MethodAuditEvent, record: RawRecord) -> WriteOutcome:
        document = {
            "message_id": event.message_id,
            "audit_id": str(uuid.UUID(event.event_id)),
            "event_type": event.event_type,
            "method": event.method_name,
            "args": render_args(event.args),
            "result": event.result,
            "error": event.error,
            "level": event.log_level,
            "timestamp": to_epoch_millis(event.timestamp),
        }
        outcome = self._create(self.methods_index, document, event.message_id, record)
        if outcome is WriteOutcome.WRITTEN:
            self.logger.info(
                "Audit log saved successfully",
                extra={"correlation_id": event.message_id, "event_id": event.event_id},
            )
        return outcome

    def write_http_audit(self, event: HttpAuditEvent, record: RawRecord) -> WriteOutcome:
        document = {
            "message_id": event.message_id,
            "timestamp": to_epoch_millis(event.timestamp),
            "direction": event.direction,
            "method": event.method,
            "status_code": event.status_code,
            "url": event.url,
            "request_body": event.request_body,
            "response_body": event.response_body,
        }
        outcome = self._create(self.requests_index, document, event.message_id, record)
        if outcome is WriteOutcome.WRITTEN:
            self.logger.info(
                "HTTP log saved successfully",
                extra={"correlation_id": event.message_id, "method": event.method, "url": event.url},
            )
        return outcome

    def _create(self, index: str, document: dict, message_id: str, record: RawRecord) -> WriteOutcome:
        try:
            if self.guard.should_persist(index, message_id) is GuardDecision.ALREADY_PRESENT:
                return self._already_present(message_id, record, "pre-check")

            self.client.index(
                index=index,
                id=document_id(message_id),
                document=document,
                op_type="create",
                refresh="wait_for",
            )
        except (ESConnectionError, ESConnectionTimeout) as e:
            raise TransientError("Document store unavailable", cause=e)
        except ApiError as e:
            if is_duplicate_error(e):
                raise DuplicateKeyError(
                    f"{index} already holds {message_id}",
                    cause=e,
                    context={"message_id": message_id, "stage": "version-conflict"},
                )
            if e.meta.status in TRANSIENT_HTTP_STATUSES:
                raise TransientError(f"Document store returned {e.meta.status}", cause=e)
            raise PermanentError(f"Indexing into {index} failed", cause=e)

        return WriteOutcome.WRITTEN

    def check_health(self) -> bool:
        try:
            return bool(self.client.ping())
        except (ESConnectionError, ESConnectionTimeout):
            return False

    def close(self) -> None:
        self.logger.info("Closing document store client")
        self.client.close()


# ==============================================================================
# FACTORY
# ==============================================================================


def build_writer(
    config: ListenerConfig,
    es_factory: Callable[[str], Elasticsearch] = Elasticsearch,
) -> AuditWriter:
    """
    Build the writer for the configured backend.

    Raises:
        RuntimeError: If the store cannot be reached
    """
    if config.store_backend == "elasticsearch":
        client = es_factory(config.elasticsearch_url)
        writer = DocumentAuditWriter(
            client,
            methods_index=config.elasticsearch_methods_index,
            requests_index=config.elasticsearch_requests_index,
        )
        if not writer.check_health():
            writer.close()
            raise RuntimeError(f"Failed to connect to Elasticsearch at {config.elasticsearch_url}")
        writer.ensure_indices()
        return writer

    return SqlAuditWriter(init_database(config))
