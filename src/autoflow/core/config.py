"""Configuration loading and validation."""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings

from ..safeguards.rate_limiter import RateLimit
from ..safeguards.retry_handler import BackoffStrategy, RetryPolicy
from ..workflow.definition import WorkflowDefinition, parse_workflow

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("autoflow.yaml")


class StoreConfig(BaseModel):
    """Embedded SQLite store."""
    path: Path = Path("autoflow.db")
    busy_timeout_ms: int = 5000


class QueueConfig(BaseModel):
    """Job queue behaviour."""
    max_attempts: int = 3
    stale_lock_timeout: float = 300.0  # seconds without a heartbeat before a lock is reclaimed
    sweep_interval: float = 30.0
    # Backoff between whole-job retries (error_handling: retry)
    retry: RetryPolicy = Field(default_factory=lambda: RetryPolicy(
        max_attempts=3,
        strategy=BackoffStrategy.EXPONENTIAL,
        base_delay_ms=5_000,
        max_delay_ms=300_000,
        jitter=True,
    ))

    @field_validator("max_attempts")
    @classmethod
    def validate_max_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"max_attempts must be >= 1, got {v}")
        return v


class WorkerConfig(BaseModel):
    """Worker pool sizing."""
    min_workers: int = 1
    max_workers: int = 4
    idle_timeout: float = 60.0
    poll_interval: float = 0.5
    heartbeat_interval: float = 10.0

    @model_validator(mode="after")
    def validate_bounds(self) -> "WorkerConfig":
        if self.min_workers < 0:
            raise ValueError(f"min_workers must be >= 0, got {self.min_workers}")
        if self.max_workers < max(1, self.min_workers):
            raise ValueError(
                f"max_workers ({self.max_workers}) must be >= max(1, min_workers={self.min_workers})"
            )
        return self


class TriggersConfig(BaseModel):
    """Trigger manager settings."""
    dedup_window_seconds: float = 60.0
    error_threshold: int = 5
    debounce_ms: int = 500
    file_poll_interval: float = 1.0
    schedule_tick: float = 1.0


class ActionsConfig(BaseModel):
    """Action execution defaults."""
    default_timeout_ms: int = 30_000
    max_parallel_nodes: int = 4
    rate_limit_wait_ms: int = 30_000
    rate_limits: Dict[str, RateLimit] = Field(default_factory=dict)
    # Root directory file.read is confined to; None allows any path
    file_root: Optional[Path] = None
    shell_enabled: bool = True


class CircuitBreakerConfig(BaseModel):
    failure_threshold: int = 5
    window_seconds: float = 60.0
    reset_timeout_seconds: float = 30.0


class ConditionsConfig(BaseModel):
    evaluation_timeout_ms: int = 1000


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: Optional[Path] = None
    json_format: bool = False

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        if v.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level '{v}'")
        return v.upper()


class EngineConfig(BaseSettings):
    """Main engine configuration."""
    store: StoreConfig = Field(default_factory=StoreConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    workers: WorkerConfig = Field(default_factory=WorkerConfig)
    triggers: TriggersConfig = Field(default_factory=TriggersConfig)
    actions: ActionsConfig = Field(default_factory=ActionsConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    conditions: ConditionsConfig = Field(default_factory=ConditionsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    # Read-only secrets exposed to actions and `secret` value refs.
    # Use ${ENV_VAR} references rather than literal values.
    secrets: Dict[str, str] = Field(default_factory=dict)
    workflows_dir: Optional[Path] = None

    class Config:
        env_prefix = "AUTOFLOW_"
        env_file = ".env"
        env_nested_delimiter = "__"
        extra = "ignore"


# Module-level mtime-based config cache: path -> (parsed_config, file_mtime)
_config_cache: Dict[str, tuple] = {}


def _get_cached_or_load(resolved_path: Path, loader):
    """Return cached result if file mtime unchanged, else reload."""
    key = str(resolved_path)
    try:
        current_mtime = resolved_path.stat().st_mtime
    except FileNotFoundError:
        _config_cache.pop(key, None)
        return None

    cached = _config_cache.get(key)
    if cached is not None:
        cached_result, cached_mtime = cached
        if cached_mtime == current_mtime:
            return cached_result

    result = loader(resolved_path)
    _config_cache[key] = (result, current_mtime)
    return result


def _load_config_from_file(config_path: Path) -> EngineConfig:
    """Internal loader for engine config (no caching)."""
    with open(config_path) as f:
        data = yaml.safe_load(f) or {}

    data = _expand_env_vars(data)
    config = EngineConfig(**data)

    # Relative store/log paths are relative to the config file, not the cwd
    base = config_path.parent
    if not config.store.path.is_absolute():
        config.store.path = base / config.store.path
    if config.logging.file is not None and not config.logging.file.is_absolute():
        config.logging.file = base / config.logging.file
    if config.workflows_dir is not None and not config.workflows_dir.is_absolute():
        config.workflows_dir = base / config.workflows_dir
    return config


def load_config(config_path: Path = DEFAULT_CONFIG_PATH) -> EngineConfig:
    """Load engine configuration from YAML file.

    Uses mtime-based caching: returns the cached config if the file has not changed.
    """
    if not config_path.exists():
        logger.warning(
            f"Config file not found: {config_path}. Using default configuration. "
            "Run 'autoflow init' to create one."
        )
        return EngineConfig()

    resolved = config_path.resolve()
    result = _get_cached_or_load(resolved, _load_config_from_file)
    return result if result is not None else EngineConfig()


def clear_config_cache() -> None:
    """Clear the module-level config cache. Useful for tests."""
    _config_cache.clear()


def _load_workflow_from_file(path: Path) -> WorkflowDefinition:
    text = path.read_text()
    if path.suffix == ".json":
        data = json.loads(text)
    else:
        data = yaml.safe_load(text) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Workflow file {path} must contain a mapping, got {type(data).__name__}")
    return parse_workflow(_expand_env_vars(data))


def load_workflow_file(path: Path) -> WorkflowDefinition:
    """Load a workflow definition from a YAML or JSON file (mtime-cached)."""
    if not path.exists():
        raise FileNotFoundError(f"Workflow file not found: {path}")
    return _get_cached_or_load(path.resolve(), _load_workflow_from_file)


def _expand_env_vars(data: Any, _path: str = "") -> Any:
    """Recursively expand ${VAR} environment references in config data.

    Args:
        data: Config data to process
        _path: Internal tracking for error messages (e.g., "secrets.api_token")
    """
    if isinstance(data, dict):
        return {k: _expand_env_vars(v, f"{_path}.{k}" if _path else k) for k, v in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item, f"{_path}[{i}]") for i, item in enumerate(data)]
    elif isinstance(data, str) and data.startswith("${") and data.endswith("}"):
        env_var = data[2:-1]
        value = os.environ.get(env_var)
        if value is None:
            logger.warning(
                f"Environment variable '{env_var}' not set (referenced at config path: {_path or 'root'}). "
                f"The literal string '{data}' will be used, which may cause errors."
            )
            return data
        return value
    return data
