"""File-backed persistence and practice configuration."""
from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from datetime import tzinfo
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from od_agents.persistence import EntityKind
from od_connector import adapter
from od_connector.config import PracticeConfig

logger = logging.getLogger(__name__)

Codec = Tuple[Callable[[Any], Dict[str, Any]], Callable[[Mapping[str, Any]], Any]]


def atomic_write_json(path: Path, payload: Any) -> None:
    """Write ``payload`` next to ``path`` and swap it in with ``os.replace``."""

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=path.name, suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, sort_keys=True)
            handle.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def read_json_file(path: Path, expected: type, description: str) -> Any:
    if not path.exists():
        return expected()
    raw_content = path.read_text(encoding="utf-8").strip()
    if not raw_content:
        return expected()
    try:
        data = json.loads(raw_content)
    except json.JSONDecodeError as exc:
        raise ValueError(f"{description} {path} is corrupted and cannot be parsed: {exc.msg}") from exc
    if not isinstance(data, expected):
        raise ValueError(f"{description} {path} must contain a JSON {expected.__name__}.")
    return data


class JsonFilePersistence:
    """Stores mirrored records as Open Dental payloads, one JSON file per kind.

    Records are keyed by remote id so repeated syncs overwrite in place.
    Appointment times are written as wall-clock time in ``tz`` and read back
    as aware datetimes in the same zone.
    """

    def __init__(self, directory: Path, tz: Optional[tzinfo] = None) -> None:
        self._directory = Path(directory)
        self._lock = threading.Lock()
        self._codecs: Dict[EntityKind, Codec] = {
            EntityKind.PATIENTS: (adapter.patient_to_remote, adapter.patient_to_domain),
            EntityKind.PROVIDERS: (adapter.provider_to_remote, adapter.provider_to_domain),
            EntityKind.OPERATORIES: (adapter.operatory_to_remote, adapter.operatory_to_domain),
            EntityKind.APPOINTMENTS: (
                lambda record: adapter.appointment_to_remote(record, tz),
                lambda payload: adapter.appointment_to_domain(payload, tz),
            ),
        }

    def path_for(self, entity_kind: EntityKind) -> Path:
        return self._directory / f"{EntityKind(entity_kind).value}.json"

    def upsert(self, entity_kind: EntityKind, records: Sequence[Any]) -> int:
        kind = EntityKind(entity_kind)
        encode, _ = self._codecs[kind]
        encoded: List[Tuple[int, Dict[str, Any]]] = []
        for record in records:
            remote_id = getattr(record, "remote_id", None)
            if remote_id is None:
                raise ValueError(f"cannot upsert {kind.value} record without remote_id")
            encoded.append((remote_id, encode(record)))
        if not encoded:
            return 0

        path = self.path_for(kind)
        with self._lock:
            table = read_json_file(path, dict, "Store")
            for remote_id, payload in encoded:
                table[str(remote_id)] = payload
            atomic_write_json(path, table)
        logger.debug("Stored %d %s record(s) in %s", len(encoded), kind.value, path)
        return len(encoded)

    def load(self, entity_kind: EntityKind) -> List[Any]:
        kind = EntityKind(entity_kind)
        _, decode = self._codecs[kind]
        with self._lock:
            table = read_json_file(self.path_for(kind), dict, "Store")
        return [decode(payload) for payload in table.values()]

    def find_existing(self, entity_kind: EntityKind, criteria: Mapping[str, Any]) -> Optional[Any]:
        for record in self.load(entity_kind):
            if all(getattr(record, key, None) == value for key, value in criteria.items()):
                return record
        return None

    def count(self, entity_kind: EntityKind) -> int:
        with self._lock:
            return len(read_json_file(self.path_for(EntityKind(entity_kind)), dict, "Store"))


class JsonPracticeDirectory:
    """Practice settings from a JSON object keyed by practice id.

    The file may also wrap that object in a top-level ``"practices"`` key.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        self._cache: Optional[Dict[str, PracticeConfig]] = None

    def _load(self) -> Dict[str, PracticeConfig]:
        with self._lock:
            if self._cache is None:
                data = read_json_file(self._path, dict, "Practice file")
                entries = data.get("practices", data)
                if not isinstance(entries, dict):
                    raise ValueError(f"Practice file {self._path} must map practice ids to settings.")
                self._cache = {
                    str(practice_id): PracticeConfig.from_mapping(str(practice_id), settings or {})
                    for practice_id, settings in entries.items()
                }
                logger.info("Loaded %d practice(s) from %s", len(self._cache), self._path)
            return self._cache

    def get(self, practice_id: str) -> PracticeConfig:
        practices = self._load()
        try:
            return practices[practice_id]
        except KeyError:
            raise KeyError(f"unknown practice {practice_id!r}") from None

    def practice_ids(self) -> List[str]:
        return sorted(self._load())


__all__ = ["JsonFilePersistence", "JsonPracticeDirectory", "atomic_write_json", "read_json_file"]
