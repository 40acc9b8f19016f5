from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, Optional

from storage.kv import JsonFileStorage, KeyValueStorage, MemoryStorage
from storage.redis_kv import RedisStorage
from subtrack.alerts.orchestrator import OrchestratorConfig, orchestrator_config_from_env

StorageBackend = Literal["memory", "file", "redis"]


@dataclass(slots=True)
class AppConfig:
    user_id: Optional[str] = None
    storage_backend: StorageBackend = "file"
    data_file: Path = Path("data/subtrack.json")
    redis_url: str = "redis://localhost:6379/0"
    seed_sample: bool = False
    log_level: str = "INFO"
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)


def _flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


def config_from_env() -> AppConfig:
    backend = os.getenv("SUBTRACK_STORAGE", "file").strip().lower()
    if backend not in ("memory", "file", "redis"):
        raise ValueError(f"SUBTRACK_STORAGE must be memory|file|redis, got {backend!r}")
    return AppConfig(
        user_id=os.getenv("SUBTRACK_USER") or None,
        storage_backend=backend,
        data_file=Path(os.getenv("SUBTRACK_DATA_FILE", "data/subtrack.json")),
        redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
        seed_sample=_flag("SEED_SAMPLE"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        orchestrator=orchestrator_config_from_env(),
    )


def build_storage(cfg: AppConfig) -> KeyValueStorage:
    if cfg.storage_backend == "redis":
        return RedisStorage(cfg.redis_url)
    if cfg.storage_backend == "file":
        return JsonFileStorage(cfg.data_file)
    return MemoryStorage()
