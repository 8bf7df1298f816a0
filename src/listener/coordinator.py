"""
Kafka Offset/Transaction Coordinator

Owns the contract with the broker: polling one record at a time under
read_committed isolation, and a transactional producer whose transaction
brackets any dead-letter sends plus the consumed record's offset commit.

EXACTLY-ONCE UNIT (one record, one transaction):
┌────────────────────────────────────────────────────────────────────────┐
│  1. poll()                    → one RawRecord                          │
│  2. begin_transaction()                                                │
│  3. send_in_transaction(...)  → zero or more DLQ sends                 │
│  4. commit_offsets(record)    → offset+1 sent through the producer     │
│  5. commit_transaction()      → DLQ sends and offset become visible    │
│                                 atomically to read_committed readers   │
│  On failure: abort_transaction() + rewind(record) → record re-polled   │
└────────────────────────────────────────────────────────────────────────┘

ZOMBIE FENCING:
The transactional.id is stable per logical worker. init_transactions()
bumps its epoch, so a previous generation of the same worker still holding
an open transaction is fenced and its transaction aborted.
"""

import logging
from typing import Optional

from confluent_kafka import Consumer, KafkaError, KafkaException, Producer, TopicPartition

from src.listener.config import ListenerConfig
from src.listener.errors import FatalError, TransientError
from src.listener.records import RawRecord

# Broker errors the worker cannot recover from
FATAL_POLL_ERRORS = {
    KafkaError._ALL_BROKERS_DOWN,
    KafkaError._AUTHENTICATION,
    KafkaError.TOPIC_AUTHORIZATION_FAILED,
    KafkaError.GROUP_AUTHORIZATION_FAILED,
}

COMMIT_RETRIES = 3


class TransactionCoordinator:
    """
    Consumer + transactional producer pair.

    One coordinator per worker: offset commits go through this producer's
    transaction, so a consumer instance must never share its producer.

    Attributes:
        config: Listener configuration
        consumer: confluent_kafka Consumer
        producer: confluent_kafka Producer (transactional)
    """

    def __init__(
        self,
        config: ListenerConfig,
        consumer: Optional[Consumer] = None,
        producer: Optional[Producer] = None,
    ):
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.consumer = consumer or Consumer(config.get_consumer_config())
        self.producer = producer or Producer(config.get_producer_config())
        self._in_transaction = False
        self._closed = False

    # ==========================================================================
    # LIFECYCLE
    # ==========================================================================

    def start(self) -> None:
        """
        Register the transactional id with the coordinator and subscribe.

        Raises:
            FatalError: If transactions cannot be initialized (broker down,
                not authorized, transactional id fenced)
        """
        try:
            self.producer.init_transactions(self.config.transaction_timeout_s)
        except KafkaException as e:
            raise FatalError("Failed to initialize producer transactions", cause=e)

        topics = self.config.get_topics()
        self.consumer.subscribe(topics)

        self.logger.info(
            "Transaction coordinator started",
            extra={
                "topics": topics,
                "group_id": self.config.consumer_group_id,
                "transactional_id": self.config.get_transactional_id(),
            },
        )

    def close(self) -> None:
        """Abort any open transaction, flush the producer and close the consumer."""
        if self._closed:
            return
        self._closed = True

        if self._in_transaction:
            try:
                self.abort_transaction()
            except KafkaException:
                self.logger.error("Failed to abort transaction on close", exc_info=True)

        try:
            self.producer.flush(self.config.transaction_timeout_s)
            self.logger.info("Kafka producer flushed")
        except KafkaException:
            self.logger.error("Error flushing Kafka producer", exc_info=True)

        try:
            self.consumer.close()
            self.logger.info("Kafka consumer closed")
        except KafkaException:
            self.logger.error("Error closing Kafka consumer", exc_info=True)

    # ==========================================================================
    # CONSUMING
    # ==========================================================================

    def poll(self, timeout: float) -> Optional[RawRecord]:
        """
        Poll for at most one record.

        Returns:
            The next record, or None on timeout / non-fatal broker error

        Raises:
            FatalError: On errors the worker cannot recover from
        """
        msg = self.consumer.poll(timeout=timeout)

        if msg is None:
            return None

        error = msg.error()
        if error is not None:
            self._handle_kafka_error(error)
            return None

        return RawRecord.from_message(msg)

    def rewind(self, record: RawRecord) -> bool:
        """
        Seek back to the record so the next poll delivers it again.

        Returns:
            False if the partition is no longer assigned to this consumer
        """
        try:
            self.consumer.seek(TopicPartition(record.topic, record.partition, record.offset))
        except KafkaException:
            # Partition revoked meanwhile: its next owner resumes from the
            # last committed offset, which is this record.
            self.logger.warning(
                "Could not rewind consumer, partition no longer assigned",
                extra={"position": record.position},
            )
            return False
        self.logger.debug("Consumer rewound", extra={"position": record.position})
        return True

    def _handle_kafka_error(self, error: KafkaError) -> None:
        if error.code() == KafkaError._PARTITION_EOF:
            self.logger.debug("Reached end of partition")
            return

        if error.fatal() or error.code() in FATAL_POLL_ERRORS:
            raise FatalError(
                f"Kafka error: {error.str()}",
                context={"error_code": error.code(), "error_name": error.name()},
            )

        self.logger.error(
            f"Kafka error: {error.str()}",
            extra={"error_code": error.code(), "error_name": error.name()},
        )

    # ==========================================================================
    # TRANSACTIONS
    # ==========================================================================

    @property
    def in_transaction(self) -> bool:
        return self._in_transaction

    def begin_transaction(self) -> None:
        try:
            self.producer.begin_transaction()
        except KafkaException as e:
            raise self._translate(e, "begin transaction")
        self._in_transaction = True

    def send_in_transaction(self, topic: str, key: str, value: str) -> None:
        """Produce a message as part of the open transaction."""
        if not self._in_transaction:
            raise RuntimeError("send_in_transaction called outside a transaction")
        try:
            self.producer.produce(topic, key=key.encode("utf-8"), value=value.encode("utf-8"))
        except BufferError as e:
            raise TransientError("Producer queue is full", cause=e)
        except KafkaException as e:
            raise self._translate(e, "produce")
        self.producer.poll(0)

    def commit_offsets(self, record: RawRecord) -> None:
        """Attach record.offset + 1 to the open transaction."""
        offsets = [TopicPartition(record.topic, record.partition, record.offset + 1)]
        try:
            self.producer.send_offsets_to_transaction(
                offsets,
                self.consumer.consumer_group_metadata(),
                self.config.transaction_timeout_s,
            )
        except KafkaException as e:
            raise self._translate(e, "send offsets")

    def commit_transaction(self) -> None:
        """
        Commit the open transaction.

        Retriable commit errors are retried; errors requiring an abort abort
        the transaction and surface as TransientError so the record is
        re-polled.
        """
        for attempt in range(1, COMMIT_RETRIES + 1):
            try:
                self.producer.commit_transaction(self.config.transaction_timeout_s)
                self._in_transaction = False
                return
            except KafkaException as e:
                error = e.args[0]
                if error.retriable() and attempt < COMMIT_RETRIES:
                    self.logger.warning(
                        "Retriable error committing transaction, retrying",
                        extra={"attempt": attempt, "error": error.str()},
                    )
                    continue
                raise self._translate(e, "commit transaction")

    def abort_transaction(self) -> None:
        try:
            self.producer.abort_transaction(self.config.transaction_timeout_s)
        except KafkaException as e:
            error = e.args[0]
            if error.fatal():
                raise FatalError("Failed to abort transaction", cause=e)
            raise
        finally:
            self._in_transaction = False
        self.logger.debug("Transaction aborted")

    def _translate(self, exc: KafkaException, operation: str) -> Exception:
        """Map a KafkaException from a transactional call onto the error taxonomy."""
        error = exc.args[0]

        if error.fatal():
            return FatalError(f"Fatal Kafka error during {operation}: {error.str()}", cause=exc)

        if error.txn_requires_abort():
            try:
                self.abort_transaction()
            except KafkaException:
                self.logger.error("Failed to abort transaction", exc_info=True)
            return TransientError(f"Transaction aborted during {operation}: {error.str()}", cause=exc)

        return TransientError(f"Kafka error during {operation}: {error.str()}", cause=exc)
