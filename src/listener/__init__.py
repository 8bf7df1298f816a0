"""
Audit Log Listener Package

Kafka worker that ingests audit events with exactly-once effects:
1. Subscribes to the audit topics (audit.methods, audit.requests)
2. Classifies each record (method audit / HTTP audit)
3. Deserializes it strictly into a typed event
4. Persists it once per message id (PostgreSQL or Elasticsearch)
5. Routes records it cannot ingest to the dead-letter topic (audit.errors)
6. Commits the offset inside the same Kafka transaction as any DLQ send

ARCHITECTURE:
┌───────────────┐    ┌───────────────────────────┐    ┌──────────────────┐
│    Kafka      │───▶│       AuditPipeline       │───▶│ PostgreSQL or    │
│ audit.methods │    │ classify → deserialize →  │    │ Elasticsearch    │
│ audit.requests│    │ guarded write → commit    │    └──────────────────┘
└───────────────┘    └─────────────┬─────────────┘
                                   │ (same transaction as offset commit)
                                   ▼
                           ┌───────────────┐
                           │ audit.errors  │
                           └───────────────┘

Package components:
- config.py: Configuration from environment variables
- coordinator.py: Consumer + transactional producer
- classifier.py / schemas.py / deserializer.py: Record typing
- guard.py / writers.py / models.py / database.py: Idempotent persistence
- router.py: Dead-letter routing
- pipeline.py: Per-record state machine, retry/back-off
- main.py: Entry point with CLI and shutdown handling
"""

__version__ = "1.0.0"

from src.listener.config import ListenerConfig, load_config

__all__ = [
    "ListenerConfig",
    "load_config",
]
