"""
Unit Tests for TransactionCoordinator

The confluent_kafka Consumer and Producer are mocked; these tests check the
calls made on them and how broker errors map onto the error taxonomy.
"""

import logging
from unittest.mock import MagicMock

import pytest
from confluent_kafka import KafkaError, KafkaException

from src.listener.coordinator import COMMIT_RETRIES, TransactionCoordinator
from src.listener.errors import FatalError, TransientError
from src.listener.records import RawRecord


def kafka_exception(code=KafkaError._TRANSPORT, **flags) -> KafkaException:
    return KafkaException(KafkaError(code, "broker says no", **flags))


def message(value=b'{"a":1}', error=None, topic="audit.methods", partition=0, offset=5):
    msg = MagicMock()
    msg.error.return_value = error
    msg.topic.return_value = topic
    msg.partition.return_value = partition
    msg.offset.return_value = offset
    msg.key.return_value = b"k1"
    msg.value.return_value = value
    msg.timestamp.return_value = (1, 1704067200000)
    return msg


@pytest.fixture
def consumer():
    return MagicMock()


@pytest.fixture
def producer():
    return MagicMock()


@pytest.fixture
def coordinator(listener_config, consumer, producer):
    return TransactionCoordinator(listener_config, consumer=consumer, producer=producer)


@pytest.fixture
def record():
    return RawRecord("audit.methods", 2, 41, None, b"{}", 0)


# ==============================================================================
# LIFECYCLE
# ==============================================================================


@pytest.mark.unit
def test_start_initializes_transactions_and_subscribes(coordinator, consumer, producer, listener_config):
    coordinator.start()

    producer.init_transactions.assert_called_once_with(listener_config.transaction_timeout_s)
    consumer.subscribe.assert_called_once_with(["audit.methods", "audit.requests"])


@pytest.mark.unit
def test_start_failure_is_fatal(coordinator, consumer, producer):
    producer.init_transactions.side_effect = kafka_exception(KafkaError._TIMED_OUT)

    with pytest.raises(FatalError):
        coordinator.start()

    consumer.subscribe.assert_not_called()


@pytest.mark.unit
def test_close_aborts_open_transaction(coordinator, consumer, producer):
    coordinator.begin_transaction()

    coordinator.close()
    coordinator.close()

    producer.abort_transaction.assert_called_once()
    producer.flush.assert_called_once()
    consumer.close.assert_called_once()
    assert coordinator.in_transaction is False


# ==============================================================================
# POLLING
# ==============================================================================


@pytest.mark.unit
def test_poll_returns_raw_record(coordinator, consumer):
    consumer.poll.return_value = message()

    record = coordinator.poll(1.0)

    assert record == RawRecord("audit.methods", 0, 5, "k1", b'{"a":1}', 1704067200000)
    assert record.position == "audit.methods-0@5"


@pytest.mark.unit
def test_poll_timeout_returns_none(coordinator, consumer):
    consumer.poll.return_value = None

    assert coordinator.poll(1.0) is None


@pytest.mark.unit
def test_poll_partition_eof_returns_none(coordinator, consumer):
    consumer.poll.return_value = message(error=KafkaError(KafkaError._PARTITION_EOF))

    assert coordinator.poll(1.0) is None


@pytest.mark.unit
def test_poll_transient_error_returns_none(coordinator, consumer):
    consumer.poll.return_value = message(error=KafkaError(KafkaError._TRANSPORT))

    assert coordinator.poll(1.0) is None


@pytest.mark.unit
@pytest.mark.parametrize(
    "error",
    [
        KafkaError(KafkaError._ALL_BROKERS_DOWN),
        KafkaError(KafkaError.TOPIC_AUTHORIZATION_FAILED),
        KafkaError(KafkaError._FATAL, fatal=True),
    ],
)
def test_poll_fatal_error_raises(coordinator, consumer, error):
    consumer.poll.return_value = message(error=error)

    with pytest.raises(FatalError):
        coordinator.poll(1.0)


@pytest.mark.unit
def test_rewind_seeks_to_record(coordinator, consumer, record):
    assert coordinator.rewind(record) is True

    (partition,), _ = consumer.seek.call_args
    assert (partition.topic, partition.partition, partition.offset) == ("audit.methods", 2, 41)


@pytest.mark.unit
def test_rewind_after_revocation_reports_failure(coordinator, consumer, record, caplog):
    consumer.seek.side_effect = kafka_exception(KafkaError._STATE)

    with caplog.at_level(logging.WARNING):
        assert coordinator.rewind(record) is False

    assert "partition no longer assigned" in caplog.text


# ==============================================================================
# TRANSACTIONS
# ==============================================================================


@pytest.mark.unit
def test_transaction_happy_path(coordinator, consumer, producer, record):
    coordinator.begin_transaction()
    assert coordinator.in_transaction

    coordinator.send_in_transaction("audit.errors", "key-1", "payload")
    coordinator.commit_offsets(record)
    coordinator.commit_transaction()

    producer.produce.assert_called_once_with("audit.errors", key=b"key-1", value=b"payload")
    offsets, metadata, _ = producer.send_offsets_to_transaction.call_args.args
    assert [(tp.topic, tp.partition, tp.offset) for tp in offsets] == [("audit.methods", 2, 42)]
    assert metadata is consumer.consumer_group_metadata.return_value
    producer.commit_transaction.assert_called_once()
    assert coordinator.in_transaction is False


@pytest.mark.unit
def test_send_outside_transaction_rejected(coordinator):
    with pytest.raises(RuntimeError):
        coordinator.send_in_transaction("audit.errors", "k", "v")


@pytest.mark.unit
def test_full_producer_queue_is_transient(coordinator, producer):
    producer.produce.side_effect = BufferError("queue full")
    coordinator.begin_transaction()

    with pytest.raises(TransientError):
        coordinator.send_in_transaction("audit.errors", "k", "v")


@pytest.mark.unit
def test_commit_retries_retriable_errors(coordinator, producer):
    producer.commit_transaction.side_effect = [kafka_exception(retriable=True), None]
    coordinator.begin_transaction()

    coordinator.commit_transaction()

    assert producer.commit_transaction.call_count == 2
    assert coordinator.in_transaction is False


@pytest.mark.unit
def test_commit_gives_up_after_retries(coordinator, producer):
    producer.commit_transaction.side_effect = kafka_exception(retriable=True)
    coordinator.begin_transaction()

    with pytest.raises(TransientError):
        coordinator.commit_transaction()

    assert producer.commit_transaction.call_count == COMMIT_RETRIES


@pytest.mark.unit
def test_commit_requiring_abort_aborts(coordinator, producer):
    producer.commit_transaction.side_effect = kafka_exception(txn_requires_abort=True)
    coordinator.begin_transaction()

    with pytest.raises(TransientError):
        coordinator.commit_transaction()

    producer.abort_transaction.assert_called_once()
    assert coordinator.in_transaction is False


@pytest.mark.unit
def test_fenced_producer_is_fatal(coordinator, producer, record):
    producer.send_offsets_to_transaction.side_effect = kafka_exception(KafkaError._FATAL, fatal=True)
    coordinator.begin_transaction()

    with pytest.raises(FatalError):
        coordinator.commit_offsets(record)


@pytest.mark.unit
def test_abort_clears_transaction_state(coordinator, producer):
    coordinator.begin_transaction()

    coordinator.abort_transaction()

    producer.abort_transaction.assert_called_once()
    assert coordinator.in_transaction is False
