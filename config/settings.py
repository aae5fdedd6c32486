"""
Configuration loader for the reply worker.
Reads settings from YAML file with environment variable substitution,
then applies the process-level environment overrides.
"""
from __future__ import annotations

import os
import re
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class RetryConfig:
    retries: int = 3
    base_delay_ms: int = 300
    max_delay_ms: int = 3000


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./reply_worker.db"           # postgresql:// | sqlite://
    pool_size: int = 10
    max_overflow: int = 20
    pool_timeout: int = 5
    pool_recycle: int = 1800
    create_schema: bool = False                        # create tables at startup


@dataclass
class WorkerConfig:
    worker_id: str = ""
    poll_interval_ms: int = 1000
    stale_lock_seconds: int = 120
    model_timeout_ms: int = 35000
    loop_error_cooldown_ms: int = 2000
    last_error_chars: int = 2000

    def __post_init__(self):
        if not self.worker_id:
            self.worker_id = f"reply-worker-{uuid.uuid4()}"


@dataclass
class BackoffConfig:
    base: float = 5
    growth: float = 3
    cap_seconds: int = 300


@dataclass
class GenerationConfig:
    provider: str = "openai"                            # "openai" | "anthropic"
    api_key: str = ""
    base_url: str = ""
    primary_model: str = "gpt-5"
    fallback_model: str = "gpt-5-mini"
    max_reply_chars: int = 1200
    max_output_tokens: int = 1024
    request_timeout_s: float = 60.0
    system_prompt: str = ""
    no_reply_sentinel: str = "[NO_REPLY]"
    primary_retry: RetryConfig = field(
        default_factory=lambda: RetryConfig(retries=4, base_delay_ms=350, max_delay_ms=3500)
    )
    fallback_retry: RetryConfig = field(
        default_factory=lambda: RetryConfig(retries=2, base_delay_ms=400, max_delay_ms=2500)
    )


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json: bool = True


@dataclass
class Settings:
    app_name: str = "ReplyWorker"
    debug: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    backoff: BackoffConfig = field(default_factory=BackoffConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


_settings: Optional[Settings] = None

# env var → (section, attribute, cast)
_ENV_OVERRIDES: dict[str, tuple[str, str, Any]] = {
    "DATABASE_URL": ("database", "url", str),
    "WORKER_ID": ("worker", "worker_id", str),
    "REPLY_WORKER_POLL_MS": ("worker", "poll_interval_ms", int),
    "REPLY_JOB_STALE_LOCK_SECONDS": ("worker", "stale_lock_seconds", int),
    "MODEL_TIMEOUT_MS": ("worker", "model_timeout_ms", int),
    "OPENAI_API_KEY": ("generation", "api_key", str),
    "OPENAI_MODEL": ("generation", "primary_model", str),
    "MAX_REPLY_CHARS": ("generation", "max_reply_chars", int),
    "LOG_LEVEL": ("logging", "level", str),
}


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _retry_config(raw: dict[str, Any], default: RetryConfig) -> RetryConfig:
    return RetryConfig(
        retries=raw.get("retries", default.retries),
        base_delay_ms=raw.get("base_delay_ms", default.base_delay_ms),
        max_delay_ms=raw.get("max_delay_ms", default.max_delay_ms),
    )


def _apply_env_overrides(settings: Settings) -> None:
    for env_name, (section, attr, cast) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if not value:
            continue
        try:
            setattr(getattr(settings, section), attr, cast(value))
        except ValueError:
            raise ValueError(f"Invalid value for {env_name}: {value!r}")


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file, then apply environment overrides."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "REPLY_WORKER_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "database" in raw:
            db = raw["database"]
            settings.database = DatabaseConfig(
                url=db.get("url", settings.database.url),
                pool_size=db.get("pool_size", settings.database.pool_size),
                max_overflow=db.get("max_overflow", settings.database.max_overflow),
                pool_timeout=db.get("pool_timeout", settings.database.pool_timeout),
                pool_recycle=db.get("pool_recycle", settings.database.pool_recycle),
                create_schema=db.get("create_schema", settings.database.create_schema),
            )

        if "worker" in raw:
            w = raw["worker"]
            settings.worker = WorkerConfig(
                worker_id=w.get("worker_id", ""),
                poll_interval_ms=w.get("poll_interval_ms", 1000),
                stale_lock_seconds=w.get("stale_lock_seconds", 120),
                model_timeout_ms=w.get("model_timeout_ms", 35000),
                loop_error_cooldown_ms=w.get("loop_error_cooldown_ms", 2000),
                last_error_chars=w.get("last_error_chars", 2000),
            )

        if "backoff" in raw:
            b = raw["backoff"]
            settings.backoff = BackoffConfig(
                base=b.get("base", 5),
                growth=b.get("growth", 3),
                cap_seconds=b.get("cap_seconds", 300),
            )

        if "generation" in raw:
            g = raw["generation"]
            defaults = GenerationConfig()
            settings.generation = GenerationConfig(
                provider=g.get("provider", defaults.provider),
                api_key=g.get("api_key", ""),
                base_url=g.get("base_url", ""),
                primary_model=g.get("primary_model", defaults.primary_model),
                fallback_model=g.get("fallback_model", defaults.fallback_model),
                max_reply_chars=g.get("max_reply_chars", defaults.max_reply_chars),
                max_output_tokens=g.get("max_output_tokens", defaults.max_output_tokens),
                request_timeout_s=g.get("request_timeout_s", defaults.request_timeout_s),
                system_prompt=g.get("system_prompt", ""),
                no_reply_sentinel=g.get("no_reply_sentinel", defaults.no_reply_sentinel),
                primary_retry=_retry_config(g.get("primary_retry", {}), defaults.primary_retry),
                fallback_retry=_retry_config(g.get("fallback_retry", {}), defaults.fallback_retry),
            )

        if "logging" in raw:
            lg = raw["logging"]
            settings.logging = LoggingConfig(
                level=lg.get("level", "INFO"),
                json=lg.get("json", True),
            )

    _apply_env_overrides(settings)

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
