"""Interfaces consumed by the agents, plus an in-memory store."""
from __future__ import annotations

import threading
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Protocol, Sequence


class EntityKind(str, Enum):
    PATIENTS = "patients"
    PROVIDERS = "providers"
    OPERATORIES = "operatories"
    APPOINTMENTS = "appointments"


class PersistenceGateway(Protocol):
    """Local storage for mirrored entities.

    Implementations must make concurrent ``upsert`` calls for different entity
    kinds safe; the synchronizer relies on it without enforcing it.
    """

    def upsert(self, entity_kind: EntityKind, records: Sequence[Any]) -> int:
        """Insert or update ``records`` keyed by ``remote_id``; return how many were written."""

    def find_existing(self, entity_kind: EntityKind, criteria: Mapping[str, Any]) -> Optional[Any]:
        """Return the first stored record whose attributes match ``criteria``."""


class InMemoryPersistence:
    """Dictionary-backed ``PersistenceGateway`` keyed by remote identifier."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: Dict[EntityKind, Dict[int, Any]] = {}

    def upsert(self, entity_kind: EntityKind, records: Sequence[Any]) -> int:
        written = 0
        with self._lock:
            table = self._records.setdefault(EntityKind(entity_kind), {})
            for record in records:
                remote_id = getattr(record, "remote_id", None)
                if remote_id is None:
                    raise ValueError(f"cannot upsert {entity_kind.value} record without remote_id")
                table[remote_id] = record
                written += 1
        return written

    def find_existing(self, entity_kind: EntityKind, criteria: Mapping[str, Any]) -> Optional[Any]:
        with self._lock:
            table = dict(self._records.get(EntityKind(entity_kind), {}))
        for record in table.values():
            if all(getattr(record, key, None) == value for key, value in criteria.items()):
                return record
        return None

    def count(self, entity_kind: EntityKind) -> int:
        with self._lock:
            return len(self._records.get(EntityKind(entity_kind), {}))

    def get(self, entity_kind: EntityKind, remote_id: int) -> Optional[Any]:
        with self._lock:
            return self._records.get(EntityKind(entity_kind), {}).get(remote_id)


__all__ = ["EntityKind", "InMemoryPersistence", "PersistenceGateway"]
