"""
Pytest Configuration and Shared Fixtures

Unit tests run against an in-memory SQLite database and an in-memory Kafka
coordinator (FakeCoordinator). Integration tests use testcontainers to run
real Kafka and PostgreSQL instances.

FIXTURE SCOPES:
- session: containers (started once, shared)
- function: databases, configs, sample payloads (isolated per test)
"""

import json
import os
import uuid
from collections import deque
from typing import Callable, Dict, Generator, List, Tuple

import pytest
from testcontainers.kafka import KafkaContainer
from testcontainers.postgres import PostgresContainer

from src.listener.config import ListenerConfig
from src.listener.database import DatabaseManager
from src.listener.errors import TransientError
from src.listener.models import Base
from src.listener.records import RawRecord

# ==============================================================================
# IN-MEMORY KAFKA
# ==============================================================================


class FakeCoordinator:
    """
    In-memory stand-in for TransactionCoordinator.

    Sends and offsets are staged while a transaction is open and only become
    visible in `sent` / `committed_offsets` on commit, like a read_committed
    consumer would see them.
    """

    def __init__(self):
        self.pending: deque = deque()
        self.started = False
        self.closed = False
        self.in_transaction = False
        self.sent: List[Tuple[str, str, str]] = []
        self.committed_offsets: Dict[Tuple[str, int], int] = {}
        self.aborts = 0
        self.rewinds: List[int] = []
        self.fail_commits = 0
        self.fail_rewinds = 0
        self._staged_sends: List[Tuple[str, str, str]] = []
        self._staged_offsets: Dict[Tuple[str, int], int] = {}

    def publish(self, record: RawRecord) -> None:
        self.pending.append(record)

    def start(self) -> None:
        self.started = True

    def poll(self, timeout: float):
        return self.pending.popleft() if self.pending else None

    def rewind(self, record: RawRecord) -> bool:
        if self.fail_rewinds:
            # partition revoked, the record goes to another worker
            self.fail_rewinds -= 1
            return False
        self.rewinds.append(record.offset)
        self.pending.appendleft(record)
        return True

    def begin_transaction(self) -> None:
        assert not self.in_transaction, "transaction already open"
        self.in_transaction = True

    def send_in_transaction(self, topic: str, key: str, value: str) -> None:
        assert self.in_transaction, "send outside a transaction"
        self._staged_sends.append((topic, key, value))

    def commit_offsets(self, record: RawRecord) -> None:
        assert self.in_transaction, "offsets outside a transaction"
        self._staged_offsets[(record.topic, record.partition)] = record.offset + 1

    def commit_transaction(self) -> None:
        if self.fail_commits:
            self.fail_commits -= 1
            raise TransientError("Transaction aborted during commit transaction")
        self.sent.extend(self._staged_sends)
        self.committed_offsets.update(self._staged_offsets)
        self._reset()

    def abort_transaction(self) -> None:
        self.aborts += 1
        self._reset()

    def close(self) -> None:
        if self.in_transaction:
            self.abort_transaction()
        self.closed = True

    def _reset(self) -> None:
        self._staged_sends = []
        self._staged_offsets = {}
        self.in_transaction = False


@pytest.fixture
def fake_coordinator() -> FakeCoordinator:
    return FakeCoordinator()


@pytest.fixture
def make_record() -> Callable[..., RawRecord]:
    """Factory for RawRecords; dict values are JSON-encoded."""

    counter = {"offset": 0}

    def _make(value, topic: str = "audit.methods", partition: int = 0, offset: int = None) -> RawRecord:
        if isinstance(value, dict):
            value = json.dumps(value)
        if isinstance(value, str):
            value = value.encode("utf-8")
        if offset is None:
            offset = counter["offset"]
            counter["offset"] += 1
        return RawRecord(
            topic=topic,
            partition=partition,
            offset=offset,
            key=None,
            value=value,
            timestamp=1704067200000,
        )

    return _make


# ==============================================================================
# CONFIG / DATABASE FIXTURES
# ==============================================================================


@pytest.fixture
def listener_config() -> ListenerConfig:
    """Config for unit tests: no back-off, short polls."""
    return ListenerConfig(
        kafka_bootstrap_servers="localhost:9092",
        producer_transactional_id_prefix="audit-listener-tx",
        worker_id="test-worker",
        retry_backoff_ms=0,
        poll_timeout_s=0.01,
    )


@pytest.fixture
def sqlite_db() -> Generator[DatabaseManager, None, None]:
    """Fresh in-memory database with audit_logs and http_logs."""
    db_manager = DatabaseManager("sqlite://")
    db_manager.create_tables()
    try:
        yield db_manager
    finally:
        db_manager.close()


# ==============================================================================
# SAMPLE PAYLOADS
# ==============================================================================


@pytest.fixture
def sample_method_audit() -> dict:
    return {
        "messageId": "m1",
        "id": "11111111-1111-1111-1111-111111111111",
        "type": "START",
        "methodName": "S.m",
        "logLevel": "INFO",
        "timestamp": "2024-01-01T00:00:00",
    }


@pytest.fixture
def sample_http_audit() -> dict:
    return {
        "messageId": "h1",
        "timestamp": "2024-01-01T00:00:00",
        "direction": "Incoming",
        "method": "POST",
        "statusCode": 201,
        "url": "/api/users",
        "requestBody": '{"n":1}',
        "responseBody": '{"id":1}',
    }


# ==============================================================================
# CONTAINERS (integration)
# ==============================================================================


@pytest.fixture(scope="session")
def postgres_container() -> Generator[PostgresContainer, None, None]:
    with PostgresContainer("postgres:15") as postgres:
        postgres.get_connection_url()
        yield postgres


@pytest.fixture(scope="session")
def kafka_container() -> Generator[KafkaContainer, None, None]:
    with KafkaContainer() as kafka:
        kafka.get_bootstrap_server()
        yield kafka


@pytest.fixture(scope="function")
def integration_config(postgres_container, kafka_container) -> ListenerConfig:
    """
    ListenerConfig pointing at the containers.

    Topics, group and worker id are unique per test so that offsets and
    transactional ids never leak between tests.
    """
    suffix = uuid.uuid4().hex[:8]
    return ListenerConfig(
        kafka_bootstrap_servers=kafka_container.get_bootstrap_server(),
        producer_transactional_id_prefix="audit-listener-it",
        worker_id=f"worker-{suffix}",
        audit_methods_topic=f"audit.methods.{suffix}",
        audit_requests_topic=f"audit.requests.{suffix}",
        dlq_topic=f"audit.errors.{suffix}",
        consumer_group_id=f"audit-log-group-{suffix}",
        retry_backoff_ms=100,
        poll_timeout_s=1.0,
        postgres_host=postgres_container.get_container_host_ip(),
        postgres_port=int(postgres_container.get_exposed_port(5432)),
        postgres_user=postgres_container.username,
        postgres_password=postgres_container.password,
        postgres_db=postgres_container.dbname,
    )


@pytest.fixture(scope="function")
def postgres_db(integration_config) -> Generator[DatabaseManager, None, None]:
    """Clean audit tables in the PostgreSQL container for each test."""
    db_manager = DatabaseManager(integration_config.get_database_url())
    Base.metadata.drop_all(db_manager.engine)
    db_manager.create_tables()
    try:
        yield db_manager
    finally:
        db_manager.close()


def pytest_configure(config):
    """Set test environment variables and register markers."""
    os.environ["ENVIRONMENT"] = "test"
    os.environ["LOG_LEVEL"] = "DEBUG"

    config.addinivalue_line(
        "markers", "integration: mark test as integration test (requires containers)"
    )
    config.addinivalue_line("markers", "slow: mark test as slow (takes more than 5 seconds)")
    config.addinivalue_line("markers", "unit: mark test as unit test (no external dependencies)")
