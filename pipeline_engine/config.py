"""Engine configuration.

Centralises reading of ~/.pipeline_engine/configuration.json so the CLI,
the engine facade and host applications share one set of defaults.

    {
        "engine": {
            "max_concurrency": 8,
            "per_task_timeout": 300,
            "checkpoint_dir": "~/.pipeline_engine/checkpoints"
        }
    }

Environment variables win over the file.
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

from pipeline_engine.runtime.cache import InMemoryResultCache
from pipeline_engine.runtime.event_bus import OverflowPolicy, ProgressEmitter
from pipeline_engine.runtime.retry import RetryPolicy
from pipeline_engine.storage.checkpoint_store import (
    CheckpointStore,
    FileCheckpointStore,
    InMemoryCheckpointStore,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

DEFAULT_CONFIG_FILE = Path.home() / ".pipeline_engine" / "configuration.json"

ENV_CONFIG_FILE = "PIPELINE_ENGINE_CONFIG"
ENV_OVERRIDES = {
    "max_concurrency": "PIPELINE_ENGINE_MAX_CONCURRENCY",
    "per_task_timeout": "PIPELINE_ENGINE_TASK_TIMEOUT",
    "checkpoint_dir": "PIPELINE_ENGINE_CHECKPOINT_DIR",
}


def get_config_path() -> Path:
    override = os.environ.get(ENV_CONFIG_FILE)
    return Path(override).expanduser() if override else DEFAULT_CONFIG_FILE


def get_engine_config() -> dict[str, Any]:
    """Load the "engine" section of the configuration file."""
    path = get_config_path()
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Ignoring unreadable config {path}: {e}")
        return {}
    section = data.get("engine", {}) if isinstance(data, dict) else {}
    return section if isinstance(section, dict) else {}


def _optional_float(value: Any) -> float | None:
    if value is None or (isinstance(value, str) and value.strip().lower() in ("", "none")):
        return None
    return float(value)


def _optional_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


_CASTS = {
    "max_concurrency": int,
    "per_task_timeout": _optional_float,
    "max_retries": int,
    "retry_base_delay": float,
    "retry_max_delay": float,
    "retry_jitter": float,
    "cache_enabled": _bool,
    "cache_ttl": _optional_float,
    "cache_max_entries": int,
    "event_queue_size": int,
    "event_overflow": str,
    "checkpoint_dir": _optional_str,
    "strict_orphans": _bool,
}


def _setting(key: str, default: Any) -> Any:
    """Resolve one setting: environment, then config file, then default."""
    cast = _CASTS[key]
    env_var = ENV_OVERRIDES.get(key)
    if env_var and env_var in os.environ:
        return cast(os.environ[env_var])
    value = get_engine_config().get(key, default)
    return cast(value) if value is not None else default


# ---------------------------------------------------------------------------
# EngineConfig
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Engine settings loaded from the configuration file and environment."""

    max_concurrency: int = field(default_factory=lambda: _setting("max_concurrency", 4))
    per_task_timeout: float | None = field(
        default_factory=lambda: _setting("per_task_timeout", None)
    )
    max_retries: int = field(default_factory=lambda: _setting("max_retries", 3))
    retry_base_delay: float = field(default_factory=lambda: _setting("retry_base_delay", 1.0))
    retry_max_delay: float = field(default_factory=lambda: _setting("retry_max_delay", 60.0))
    retry_jitter: float = field(default_factory=lambda: _setting("retry_jitter", 0.1))
    cache_enabled: bool = field(default_factory=lambda: _setting("cache_enabled", True))
    cache_ttl: float | None = field(default_factory=lambda: _setting("cache_ttl", None))
    cache_max_entries: int = field(default_factory=lambda: _setting("cache_max_entries", 1024))
    event_queue_size: int = field(default_factory=lambda: _setting("event_queue_size", 1000))
    event_overflow: str = field(
        default_factory=lambda: _setting("event_overflow", OverflowPolicy.DROP_OLDEST.value)
    )
    checkpoint_dir: str | None = field(default_factory=lambda: _setting("checkpoint_dir", None))
    strict_orphans: bool = field(default_factory=lambda: _setting("strict_orphans", False))

    def __post_init__(self):
        if self.max_concurrency < 1:
            raise ValueError(f"max_concurrency must be at least 1, got {self.max_concurrency}")
        if self.max_retries < 1:
            raise ValueError(f"max_retries must be at least 1, got {self.max_retries}")
        if self.event_overflow not in {p.value for p in OverflowPolicy}:
            raise ValueError(f"Unknown event_overflow policy '{self.event_overflow}'")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EngineConfig":
        """Build a config from explicit values; unspecified fields use the usual lookup."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown engine settings: {sorted(unknown)}")
        return cls(**{key: _CASTS[key](value) for key, value in data.items()})

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def build_retry_policy(config: EngineConfig) -> RetryPolicy:
    return RetryPolicy(
        base_delay=config.retry_base_delay,
        max_delay=config.retry_max_delay,
        jitter=config.retry_jitter,
    )


def build_cache(config: EngineConfig) -> InMemoryResultCache | None:
    if not config.cache_enabled:
        return None
    return InMemoryResultCache(default_ttl=config.cache_ttl, max_entries=config.cache_max_entries)


def build_emitter(config: EngineConfig) -> ProgressEmitter:
    return ProgressEmitter(queue_size=config.event_queue_size, overflow=config.event_overflow)


def build_checkpoint_store(config: EngineConfig) -> CheckpointStore:
    if config.checkpoint_dir:
        return FileCheckpointStore(Path(config.checkpoint_dir).expanduser())
    return InMemoryCheckpointStore()
