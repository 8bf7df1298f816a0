"""
Audit Ingestion Pipeline

Top-level state machine of the listener: poll → classify → deserialize →
guarded write → commit, with dead-letter routing and retry/back-off.

PER-RECORD STATE MACHINE:
┌─────────────────────────────────────────────────────────────────────────┐
│  IDLE → POLLED → CLASSIFIED → DESERIALIZED → GUARDED → WRITTEN          │
│                                                   → COMMITTED → IDLE    │
│                                                                         │
│  classify / deserialize / permanent store failure:                      │
│      abort txn → DLQ_SEND → COMMITTED                                   │
│                                                                         │
│  transient failure (store down, broker timeout, aborted txn):           │
│      abort txn → RETRY(k) → back-off → rewind → same offset re-polled   │
│      after retry_attempts retries → DLQ_SEND → COMMITTED                │
│                                                                         │
│  duplicate message id: no write, COMMITTED (success)                    │
│  duplicate key on insert: abort txn → offset-only txn → COMMITTED       │
│  FatalError: abort txn, stop the worker                                 │
└─────────────────────────────────────────────────────────────────────────┘

EXACTLY-ONCE EFFECTS:
Each record is handled in one producer transaction carrying its DLQ sends
(if any) and its offset commit. The store write happens in its own local
transaction before that; if the Kafka commit then fails, the record is
redelivered and the idempotence guard turns the second write into a no-op.
"""

import logging
import threading
import time
from enum import Enum
from typing import Callable, Dict, Optional, Tuple, TypeVar

from src.listener.classifier import EventVariant
from src.listener.config import ListenerConfig
from src.listener.coordinator import TransactionCoordinator
from src.listener.deserializer import AuditDeserializer
from src.listener.errors import ErrorKind, FatalError, TransientError, classify_exception
from src.listener.records import MessageEnvelope, RawRecord
from src.listener.router import ErrorRouter
from src.listener.writers import AuditWriter, WriteOutcome
from src.shared.logger import CorrelationAdapter

T = TypeVar("T")


class RecordState(str, Enum):
    IDLE = "idle"
    POLLED = "polled"
    CLASSIFIED = "classified"
    DESERIALIZED = "deserialized"
    GUARDED = "guarded"
    WRITTEN = "written"
    DLQ_SEND = "dlq_send"
    RETRY = "retry"
    COMMITTED = "committed"


class RecordOutcome(str, Enum):
    PERSISTED = "persisted"
    ALREADY_PRESENT = "already_present"
    DEAD_LETTERED = "dead_lettered"
    RETRY = "retry"


class AuditPipeline:
    """
    Consume-process-commit loop for audit records.

    Attributes:
        config: Listener configuration
        coordinator: Kafka consumer + transactional producer
        deserializer: Classifier/deserializer for record values
        writer: Persistence backend
        router: Dead-letter router
        running: Flag for graceful shutdown
        state: Current RecordState
        messages_processed: Records persisted
        messages_skipped: Duplicates (already persisted)
        messages_dead_lettered: Records routed to the DLQ
        messages_retried: Retry attempts scheduled
    """

    def __init__(
        self,
        config: ListenerConfig,
        coordinator: TransactionCoordinator,
        deserializer: AuditDeserializer,
        writer: AuditWriter,
        router: Optional[ErrorRouter] = None,
    ):
        self.config = config
        self.coordinator = coordinator
        self.deserializer = deserializer
        self.writer = writer
        self.router = router or ErrorRouter(coordinator, config.dlq_topic)
        self.logger = logging.getLogger(__name__)

        self.running = False
        self.state = RecordState.IDLE

        self.messages_processed = 0
        self.messages_skipped = 0
        self.messages_dead_lettered = 0
        self.messages_retried = 0

        self._attempts: Dict[Tuple[str, int, int], int] = {}
        self._stop_event = threading.Event()
        self._started = False
        self._closed = False
        self._last_activity = time.monotonic()

    def __enter__(self) -> "AuditPipeline":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ==========================================================================
    # LOOP
    # ==========================================================================

    def open(self) -> None:
        """Initialize transactions and subscribe (once)."""
        if not self._started:
            self.coordinator.start()
            self._started = True
            self._last_activity = time.monotonic()

    def start(self) -> None:
        """
        Consume until stop() is called.

        Raises:
            FatalError: Unrecoverable broker/config error; resources are
                released before it propagates
        """
        self.logger.info("Starting audit pipeline loop...")
        self.running = True

        try:
            self.open()
            while self.running:
                record = self.coordinator.poll(self.config.poll_timeout_s)
                if record is None:
                    self._check_idle()
                    continue
                self.process_record(record)

        except KeyboardInterrupt:
            self.logger.info("Received keyboard interrupt, shutting down...")
        except FatalError as e:
            self.logger.error("Fatal error in pipeline loop", exc_info=True, extra={"error": str(e)})
            raise
        finally:
            self.close()

    def process_messages(self, max_messages: int, timeout: float) -> int:
        """
        Handle up to max_messages records, or until timeout seconds pass.

        Retried attempts do not count; a record counts once it is committed.

        Returns:
            Number of records committed
        """
        self.open()
        deadline = time.monotonic() + timeout
        handled = 0

        while handled < max_messages and not self._stop_event.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            record = self.coordinator.poll(min(self.config.poll_timeout_s, remaining))
            if record is None:
                continue
            if self.process_record(record) is not RecordOutcome.RETRY:
                handled += 1

        return handled

    def stop(self) -> None:
        """
        Signal the loop to stop.

        The current record is finished (or its transaction aborted); a
        back-off sleep in progress is cut short.
        """
        self.logger.info("Stopping audit pipeline...")
        self.running = False
        self._stop_event.set()

    def _check_idle(self) -> None:
        idle_for = time.monotonic() - self._last_activity
        if idle_for >= self.config.idle_event_interval_s:
            self.logger.info("Consumer idle", extra={"idle_seconds": round(idle_for, 1)})
            self._last_activity = time.monotonic()

    # ==========================================================================
    # PER-RECORD PROCESSING
    # ==========================================================================

    def process_record(self, record: RawRecord) -> RecordOutcome:
        """
        Drive one record through the state machine.

        Raises:
            FatalError: The worker must stop
        """
        self._last_activity = time.monotonic()
        record_logger = CorrelationAdapter(self.logger, {"correlation_id": record.position})
        self._transition(RecordState.POLLED, record_logger)
        start_time = time.time()

        try:
            outcome = self._in_transaction(record, lambda: self._ingest(record, record_logger))

        except FatalError:
            self._abort_quietly()
            raise

        except Exception as e:
            self._abort_quietly()
            kind = classify_exception(e)

            if kind is ErrorKind.DUPLICATE_KEY:
                outcome = self._acknowledge_duplicate(record, e, record_logger)
            else:
                if kind is ErrorKind.TRANSIENT:
                    attempt = self._attempts.get(self._key(record), 0) + 1
                    if attempt <= self.config.retry_attempts:
                        return self._schedule_retry(record, e, attempt, record_logger)
                    reason = f"Retries exhausted after {attempt} attempts: {e}"
                else:
                    if kind is ErrorKind.PERMANENT:
                        record_logger.warning("Record rejected", exc_info=True, extra={"error_kind": kind.value})
                    reason = str(e)
                outcome = self._dead_letter(record, reason, record_logger)

            if outcome is RecordOutcome.RETRY:
                return outcome

        self._attempts.pop(self._key(record), None)
        self._count(outcome)
        self.state = RecordState.COMMITTED
        record_logger.info(
            "Record committed",
            extra={
                "outcome": outcome.value,
                "kafka_offset": record.offset,
                "processing_time_ms": round((time.time() - start_time) * 1000, 2),
            },
        )
        self.state = RecordState.IDLE
        return outcome

    def _ingest(self, record: RawRecord, record_logger: CorrelationAdapter) -> RecordOutcome:
        tree, variant = self.deserializer.classify_record(record)
        self._transition(RecordState.CLASSIFIED, record_logger, variant=variant.value)

        envelope = self.deserializer.build(record, tree, variant)
        record_logger.extra = {**record_logger.extra, "correlation_id": envelope.message_id}
        self._transition(RecordState.DESERIALIZED, record_logger)

        self._transition(RecordState.GUARDED, record_logger)
        result = self._write(envelope)
        self._transition(RecordState.WRITTEN, record_logger, write_outcome=result.value)

        if result is WriteOutcome.ALREADY_PRESENT:
            return RecordOutcome.ALREADY_PRESENT
        return RecordOutcome.PERSISTED

    def _write(self, envelope: MessageEnvelope) -> WriteOutcome:
        if envelope.variant is EventVariant.METHOD_AUDIT:
            return self.writer.write_method_audit(envelope.parsed, envelope.raw)
        if envelope.variant is EventVariant.HTTP_AUDIT:
            return self.writer.write_http_audit(envelope.parsed, envelope.raw)
        raise ValueError(f"No writer for variant {envelope.variant}")

    def _dead_letter(self, record: RawRecord, reason: str, record_logger: CorrelationAdapter) -> RecordOutcome:
        self._transition(RecordState.DLQ_SEND, record_logger)
        return self._commit_alone(
            record,
            lambda: self.router.route(record, reason),
            RecordOutcome.DEAD_LETTERED,
            record_logger,
            "Failed to publish to dead-letter topic, record will be re-polled",
        )

    def _acknowledge_duplicate(
        self, record: RawRecord, error: Exception, record_logger: CorrelationAdapter
    ) -> RecordOutcome:
        """The store already holds the message id: commit the offset, route nothing."""
        record_logger.warning(
            "Audit message already processed",
            extra={
                "stage": getattr(error, "context", {}).get("stage", "insert"),
                "kafka_offset": record.offset,
                "error": str(error),
            },
        )
        return self._commit_alone(
            record,
            lambda: None,
            RecordOutcome.ALREADY_PRESENT,
            record_logger,
            "Failed to commit already processed record, record will be re-polled",
        )

    def _commit_alone(
        self,
        record: RawRecord,
        work: Callable[[], object],
        outcome: RecordOutcome,
        record_logger: CorrelationAdapter,
        failure_message: str,
    ) -> RecordOutcome:
        """Commit the record's offset, with whatever work sends, in a fresh transaction."""
        try:
            self._in_transaction(record, work)
        except TransientError as e:
            # Broker unavailable: nothing was committed, try the record again
            self._abort_quietly()
            record_logger.error(failure_message, extra={"error": str(e)})
            self._backoff()
            self._rewind(record)
            return RecordOutcome.RETRY
        return outcome

    def _schedule_retry(
        self, record: RawRecord, error: Exception, attempt: int, record_logger: CorrelationAdapter
    ) -> RecordOutcome:
        self._attempts[self._key(record)] = attempt
        self.messages_retried += 1
        self._transition(RecordState.RETRY, record_logger)
        record_logger.warning(
            f"Transient error, retrying in {self.config.retry_backoff_ms / 1000}s",
            extra={
                "attempt": attempt,
                "max_retries": self.config.retry_attempts,
                "error": str(error),
            },
        )
        self._backoff()
        self._rewind(record)
        return RecordOutcome.RETRY

    def _rewind(self, record: RawRecord) -> None:
        if not self.coordinator.rewind(record):
            # Partition revoked: this worker will not see the record again
            self._attempts.pop(self._key(record), None)

    def _in_transaction(self, record: RawRecord, work: Callable[[], T]) -> T:
        """Run work inside a producer transaction that also commits the record's offset."""
        self.coordinator.begin_transaction()
        result = work()
        self.coordinator.commit_offsets(record)
        self.coordinator.commit_transaction()
        return result

    def _abort_quietly(self) -> None:
        if not self.coordinator.in_transaction:
            return
        try:
            self.coordinator.abort_transaction()
        except FatalError:
            raise
        except Exception:
            self.logger.error("Failed to abort transaction", exc_info=True)

    def _backoff(self) -> None:
        self._stop_event.wait(self.config.retry_backoff_ms / 1000)

    def _transition(self, state: RecordState, record_logger: CorrelationAdapter, **fields) -> None:
        self.state = state
        record_logger.debug(f"Record state {state.value}", extra=fields)

    def _count(self, outcome: RecordOutcome) -> None:
        if outcome is RecordOutcome.PERSISTED:
            self.messages_processed += 1
        elif outcome is RecordOutcome.ALREADY_PRESENT:
            self.messages_skipped += 1
        elif outcome is RecordOutcome.DEAD_LETTERED:
            self.messages_dead_lettered += 1

    @staticmethod
    def _key(record: RawRecord) -> Tuple[str, int, int]:
        return (record.topic, record.partition, record.offset)

    # ==========================================================================
    # SHUTDOWN
    # ==========================================================================

    def close(self) -> None:
        """
        Release the worker's resources.

        SHUTDOWN SEQUENCE:
        1. Abort the in-flight transaction (offset stays uncommitted)
        2. Close the producer and consumer
        3. Close the store
        """
        if self._closed:
            return
        self._closed = True
        self.running = False

        self.logger.info(
            "Audit pipeline shutting down",
            extra={
                "messages_processed": self.messages_processed,
                "messages_skipped": self.messages_skipped,
                "messages_dead_lettered": self.messages_dead_lettered,
                "messages_retried": self.messages_retried,
            },
        )

        try:
            self.coordinator.close()
        except Exception:
            self.logger.error("Error closing Kafka clients", exc_info=True)

        try:
            self.writer.close()
        except Exception:
            self.logger.error("Error closing audit store", exc_info=True)

        self.logger.info("Audit pipeline shutdown complete")
