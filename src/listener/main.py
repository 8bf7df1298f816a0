"""
Audit Log Listener - Main Entry Point

Command-line interface and composition root of the audit listener.

USAGE:
    python -m src.listener.main [options]

STARTUP SEQUENCE (dependency order):
1. Load configuration
2. Set up structured logging
3. Persistence store + writer (PostgreSQL or Elasticsearch)
4. Kafka consumer + transactional producer (init_transactions)
5. Deserializer, error router, pipeline
6. Signal handlers, consume until SIGINT/SIGTERM

EXIT CODES:
    0   graceful shutdown
    1   configuration, store or broker failure at startup, or a fatal
        broker error while running
"""

import argparse
import logging
import signal
import sys
from typing import Optional

from pydantic import ValidationError

from src.listener import __version__
from src.listener.config import ListenerConfig, load_config
from src.listener.coordinator import TransactionCoordinator
from src.listener.deserializer import AuditDeserializer
from src.listener.errors import FatalError
from src.listener.pipeline import AuditPipeline
from src.listener.router import ErrorRouter
from src.listener.writers import AuditWriter, build_writer
from src.shared.logger import setup_logger

# Pipeline instance for signal handlers
pipeline_instance: Optional[AuditPipeline] = None


def signal_handler(signum: int, frame) -> None:
    """Handle SIGINT/SIGTERM: finish or abort the current record, then exit."""
    signal_name = signal.Signals(signum).name
    logging.getLogger(__name__).info(f"Received {signal_name}, initiating graceful shutdown...")

    if pipeline_instance:
        pipeline_instance.stop()


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Audit log listener: exactly-once ingestion of audit events from Kafka",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Start with settings from the environment / .env
  python -m src.listener.main

  # Debug logging in plain text
  python -m src.listener.main --log-level DEBUG --log-format text

Environment Variables:
  KAFKA_BOOTSTRAP_SERVERS            Kafka broker addresses (required)
  PRODUCER_TRANSACTIONAL_ID_PREFIX   Transactional id prefix (required)
  WORKER_ID                          Stable transactional id suffix (default: host name)
  AUDIT_METHODS_TOPIC                Method audit topic (default: audit.methods)
  AUDIT_REQUESTS_TOPIC               HTTP audit topic (default: audit.requests)
  DLQ_TOPIC                          Dead-letter topic (default: audit.errors)
  CONSUMER_GROUP_ID                  Consumer group (default: audit-log-group)
  RETRY_ATTEMPTS                     Retries on transient errors (default: 3)
  RETRY_BACKOFF_MS                   Fixed back-off (default: 1000)
  STORE_BACKEND                      postgres or elasticsearch (default: postgres)
  LOG_LEVEL / LOG_FORMAT             Logging (default: INFO / json)
        """,
    )

    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (overrides LOG_LEVEL env var)",
    )

    parser.add_argument(
        "--log-format",
        type=str,
        choices=["json", "text"],
        help="Log output format (overrides LOG_FORMAT env var)",
    )

    parser.add_argument(
        "--store-backend",
        type=str,
        choices=["postgres", "elasticsearch"],
        help="Persistence backend (overrides STORE_BACKEND env var)",
    )

    return parser.parse_args(argv)


def build_pipeline(
    config: ListenerConfig,
    writer: Optional[AuditWriter] = None,
    coordinator: Optional[TransactionCoordinator] = None,
) -> AuditPipeline:
    """
    Wire the pipeline's collaborators in dependency order.

    The writer is built first so a store failure does not leave Kafka
    clients behind; if the coordinator cannot be built the writer is closed.
    """
    writer = writer or build_writer(config)

    try:
        coordinator = coordinator or TransactionCoordinator(config)
    except Exception:
        writer.close()
        raise

    deserializer = AuditDeserializer(
        strict=config.strict_deserialization,
        require_uuid_event_id=config.store_backend == "elasticsearch",
    )
    router = ErrorRouter(coordinator, config.dlq_topic)

    return AuditPipeline(config, coordinator, deserializer, writer, router)


def main(argv=None) -> int:
    """
    Main entry point for the audit listener.

    Returns:
        Exit code (0 = success, 1 = error)
    """
    global pipeline_instance

    args = parse_args(argv)

    try:
        config = load_config()
    except ValidationError as e:
        print(f"ERROR: Failed to load configuration: {e}", file=sys.stderr)
        return 1

    if args.log_level:
        config.log_level = args.log_level
    if args.log_format:
        config.log_format = args.log_format
    if args.store_backend:
        config.store_backend = args.store_backend

    logger = setup_logger(
        name="src",
        service_name="audit-listener",
        log_level=config.log_level,
        log_format=config.log_format,
    )

    logger.info(
        "Starting Audit Log Listener",
        extra={
            "version": __version__,
            "kafka_bootstrap_servers": config.kafka_bootstrap_servers,
            "topics": config.get_topics(),
            "dlq_topic": config.dlq_topic,
            "consumer_group": config.consumer_group_id,
            "transactional_id": config.get_transactional_id(),
            "store_backend": config.store_backend,
        },
    )

    try:
        pipeline_instance = build_pipeline(config)
    except Exception:
        logger.error("Failed to initialize audit listener", exc_info=True)
        return 1

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        pipeline_instance.start()
        logger.info("Audit listener stopped")
        return 0
    except FatalError:
        # Already logged by the pipeline; resources are released
        return 1
    except Exception:
        logger.error("Fatal error in audit listener", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
