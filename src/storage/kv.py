# src/storage/kv.py
from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Optional, Protocol

import structlog

log = structlog.get_logger("storage")


class KeyValueStorage(Protocol):
    """
    String key/value persistence (the local-storage seam).
    Values are opaque strings; callers serialize JSON themselves.
    """
    async def get(self, key: str) -> Optional[str]: ...
    async def set(self, key: str, value: str) -> None: ...
    async def delete(self, key: str) -> None: ...


class MemoryStorage:
    """Process-local dict storage. Default for tests and ephemeral runs."""
    def __init__(self, initial: Optional[dict[str, str]] = None):
        self._data: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStorage:
    """
    Single JSON object on disk holding every key.
    Whole-file rewrite on each set; last writer wins across processes.
    """
    def __init__(self, path: Path | str):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _read_all(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            log.warning("storage_file_unreadable", path=str(self.path), err=str(e))
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): v for k, v in data.items() if isinstance(v, str)}

    def _write_all(self, data: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
        tmp.replace(self.path)

    async def get(self, key: str) -> Optional[str]:
        return self._read_all().get(key)

    async def set(self, key: str, value: str) -> None:
        async with self._lock:
            data = self._read_all()
            data[key] = value
            self._write_all(data)

    async def delete(self, key: str) -> None:
        async with self._lock:
            data = self._read_all()
            if data.pop(key, None) is not None:
                self._write_all(data)
