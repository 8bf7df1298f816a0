"""
Idempotence guard.

Two-level defense against persisting the same message twice:
1. Pre-check: point query on message_id before inserting (cheap, avoids
   wasted writes on redelivery)
2. Post-check: a unique violation / version conflict raised by the insert is
   recognised by is_duplicate_error and surfaced as DuplicateKeyError
   (authoritative when two workers race or a transaction is retried)
"""

import uuid
from enum import Enum
from typing import Type

from elasticsearch import ConflictError, Elasticsearch
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.listener.models import Base

# PostgreSQL SQLSTATE for unique_violation
UNIQUE_VIOLATION = "23505"

# Namespace for document ids derived from message ids
DOCUMENT_ID_NAMESPACE = uuid.UUID("6f1c2a8e-3b4d-4e5f-9a7b-2c8d1e0f4a6b")


def document_id(message_id: str) -> str:
    """Deterministic document id, so a racing second insert conflicts."""
    return str(uuid.uuid5(DOCUMENT_ID_NAMESPACE, message_id))


class GuardDecision(str, Enum):
    PERSIST = "persist"
    ALREADY_PRESENT = "already_present"


def is_duplicate_error(exc: BaseException) -> bool:
    """True if a store error means the record is already persisted."""
    if isinstance(exc, ConflictError):
        return True

    if isinstance(exc, IntegrityError):
        orig = exc.orig
        code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
        if code:
            return code == UNIQUE_VIOLATION
        # SQLite: "UNIQUE constraint failed: audit_logs.message_id"
        return "unique constraint" in str(orig).lower()

    return False


class SqlIdempotenceGuard:
    """Pre-check against the relational store."""

    def should_persist(self, session: Session, model: Type[Base], message_id: str) -> GuardDecision:
        stmt = select(model.id).where(model.message_id == message_id).limit(1)
        if session.execute(stmt).first() is not None:
            return GuardDecision.ALREADY_PRESENT
        return GuardDecision.PERSIST


class DocumentIdempotenceGuard:
    """
    Pre-check against the document store.

    Looks the document up by its id, which is a real-time get: a copy
    indexed moments ago is found before the next index refresh.
    """

    def __init__(self, client: Elasticsearch):
        self.client = client

    def should_persist(self, index: str, message_id: str) -> GuardDecision:
        # exists() is False for a missing index as well
        if self.client.exists(index=index, id=document_id(message_id)):
            return GuardDecision.ALREADY_PRESENT
        return GuardDecision.PERSIST
