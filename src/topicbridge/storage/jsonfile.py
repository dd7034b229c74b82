from __future__ import annotations

import copy
import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List

from ..util.fs import atomic_write_json
from .base import PersistenceStore, key_field

logger = logging.getLogger("topicbridge.storage")


class JsonFileStore(PersistenceStore):
    """Single JSON document on disk, rewritten atomically on every change.

    Layout: {"chat": {<threadId>: {...}}, "user": {<participantId>: {...}}, "filter": {...}}
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._doc: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._opened = False

    def open(self) -> None:
        with self._lock:
            self._doc = self._read()
            self._opened = True

    def _read(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            # A corrupt store must not silently reset every mapping.
            raise RuntimeError(f"cannot read store {self.path}: {e}") from e
        doc: Dict[str, Dict[str, Dict[str, Any]]] = {}
        if not isinstance(raw, dict):
            return doc
        for record_type, records in raw.items():
            if isinstance(records, dict):
                doc[str(record_type)] = {str(k): v for k, v in records.items() if isinstance(v, dict)}
        return doc

    def _save(self) -> None:
        atomic_write_json(self.path, self._doc)

    def _ensure_open(self) -> None:
        if not self._opened:
            self.open()

    def upsert(self, record_type: str, key: str, data: Dict[str, Any]) -> None:
        field = key_field(record_type)
        self._ensure_open()
        with self._lock:
            bucket = self._doc.setdefault(record_type, {})
            merged = dict(bucket.get(str(key)) or {})
            merged.update(data)
            merged[field] = str(key)
            bucket[str(key)] = merged
            self._save()

    def find_all(self, record_type: str) -> List[Dict[str, Any]]:
        key_field(record_type)
        self._ensure_open()
        with self._lock:
            return [copy.deepcopy(v) for v in (self._doc.get(record_type) or {}).values()]

    def delete(self, record_type: str, key: str) -> bool:
        key_field(record_type)
        self._ensure_open()
        with self._lock:
            bucket = self._doc.get(record_type) or {}
            if str(key) not in bucket:
                return False
            del bucket[str(key)]
            self._save()
            return True

    def flush(self) -> None:
        if not self._opened:
            return
        with self._lock:
            self._save()

    def close(self) -> None:
        self.flush()
        with self._lock:
            self._opened = False
