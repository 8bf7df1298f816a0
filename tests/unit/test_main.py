"""
Unit Tests for the Listener Entry Point
"""

from unittest.mock import MagicMock

import pytest

from src.listener import main as listener_main
from src.listener.pipeline import AuditPipeline
from src.listener.writers import AuditWriter


@pytest.mark.unit
def test_parse_args_overrides():
    args = listener_main.parse_args(["--log-level", "DEBUG", "--log-format", "text", "--store-backend", "elasticsearch"])

    assert args.log_level == "DEBUG"
    assert args.log_format == "text"
    assert args.store_backend == "elasticsearch"


@pytest.mark.unit
def test_parse_args_defaults():
    args = listener_main.parse_args([])

    assert args.log_level is None
    assert args.store_backend is None


@pytest.mark.unit
def test_build_pipeline_wires_collaborators(listener_config, fake_coordinator):
    writer = MagicMock(spec=AuditWriter)

    pipeline = listener_main.build_pipeline(listener_config, writer=writer, coordinator=fake_coordinator)

    assert isinstance(pipeline, AuditPipeline)
    assert pipeline.writer is writer
    assert pipeline.coordinator is fake_coordinator
    assert pipeline.router.dlq_topic == "audit.errors"
    assert pipeline.deserializer.strict is True
    assert pipeline.deserializer.require_uuid_event_id is False


@pytest.mark.unit
def test_build_pipeline_requires_uuid_ids_for_document_store(listener_config, fake_coordinator):
    config = listener_config.model_copy(update={"store_backend": "elasticsearch"})

    pipeline = listener_main.build_pipeline(config, writer=MagicMock(spec=AuditWriter), coordinator=fake_coordinator)

    assert pipeline.deserializer.require_uuid_event_id is True


@pytest.mark.unit
def test_build_pipeline_closes_writer_when_kafka_fails(listener_config, monkeypatch):
    writer = MagicMock(spec=AuditWriter)

    def unreachable(config):
        raise RuntimeError("broker unreachable")

    monkeypatch.setattr(listener_main, "TransactionCoordinator", unreachable)

    with pytest.raises(RuntimeError):
        listener_main.build_pipeline(listener_config, writer=writer)

    writer.close.assert_called_once()


@pytest.mark.unit
def test_main_exits_on_invalid_config(monkeypatch, capsys):
    monkeypatch.delenv("KAFKA_BOOTSTRAP_SERVERS", raising=False)
    monkeypatch.delenv("PRODUCER_TRANSACTIONAL_ID_PREFIX", raising=False)

    assert listener_main.main([]) == 1
    assert "Failed to load configuration" in capsys.readouterr().err


@pytest.mark.unit
def test_signal_handler_stops_pipeline(monkeypatch):
    pipeline = MagicMock()
    monkeypatch.setattr(listener_main, "pipeline_instance", pipeline)

    listener_main.signal_handler(15, None)

    pipeline.stop.assert_called_once()
