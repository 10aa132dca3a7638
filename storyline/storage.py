"""Keyed state stores.

Story progress is kept in one JSON map per data directory:

    {base}/
      story-state.json    ← {chat_id: persisted story state record}

Reads and writes go through plain helper methods that load and dump JSON.
`MemoryStateStore` keeps the same map in a dict for tests and ephemeral
sessions.
"""

from __future__ import annotations

import copy
import json
from pathlib import Path
from typing import Any, Protocol

STATE_FILE = "story-state.json"


class StateStore(Protocol):
    def load(self, chat_id: str) -> dict[str, Any] | None: ...

    def save(self, chat_id: str, record: dict[str, Any]) -> None: ...

    def delete(self, chat_id: str) -> None: ...


class JsonStateStore:
    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._base.mkdir(parents=True, exist_ok=True)
        self._path = base_path / STATE_FILE

    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _read_all(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        data = json.loads(self._path.read_text())
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict[str, Any]) -> None:
        self._path.write_text(json.dumps(data, indent=2))

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def load(self, chat_id: str) -> dict[str, Any] | None:
        record = self._read_all().get(chat_id)
        return record if isinstance(record, dict) else None

    def save(self, chat_id: str, record: dict[str, Any]) -> None:
        data = self._read_all()
        data[chat_id] = record
        self._write_all(data)

    def delete(self, chat_id: str) -> None:
        data = self._read_all()
        if data.pop(chat_id, None) is not None:
            self._write_all(data)

    def chat_ids(self) -> list[str]:
        return sorted(self._read_all())


class MemoryStateStore:
    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}

    def load(self, chat_id: str) -> dict[str, Any] | None:
        record = self._records.get(chat_id)
        return copy.deepcopy(record) if record is not None else None

    def save(self, chat_id: str, record: dict[str, Any]) -> None:
        self._records[chat_id] = copy.deepcopy(record)

    def delete(self, chat_id: str) -> None:
        self._records.pop(chat_id, None)

    def chat_ids(self) -> list[str]:
        return sorted(self._records)
