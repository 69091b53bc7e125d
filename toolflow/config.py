from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from toolflow.logging import get_logger

logger = get_logger(__name__)

# Hard ceiling for a single tool invocation, whatever a tool spec asks for.
MAX_TOOL_TIMEOUT_SECONDS = 60


class ModelBackend(str, Enum):
    """Model gateway implementations the runtime can build."""

    OPENAI = "openai"
    STUB = "stub"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the workflow engine and its HTTP surface."""

    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviors for CI: stub gateway and in-memory store fallback.",
    )

    model_backend: ModelBackend = env_field(ModelBackend.OPENAI, "MODEL_BACKEND")
    model_api_key: str | None = env_field(None, "OPENAI_API_KEY")
    model_base_url: str | None = env_field(None, "OPENAI_BASE_URL")
    default_model: str = env_field("gpt-4o-mini", "DEFAULT_MODEL")
    model_max_tokens: int = env_field(4000, "MODEL_MAX_TOKENS")
    model_temperature: float = env_field(0.7, "MODEL_TEMPERATURE")
    model_timeout_seconds: float = env_field(
        120.0, "MODEL_TIMEOUT_SECONDS", description="Per model call timeout"
    )

    default_max_iterations: int = env_field(10, "DEFAULT_MAX_ITERATIONS")
    max_iterations_hard_cap: int = env_field(50, "MAX_ITERATIONS_HARD_CAP")

    tool_timeout_seconds: float = env_field(
        15.0,
        "TOOL_TIMEOUT_SECONDS",
        description=f"Default per tool call timeout, capped at {MAX_TOOL_TIMEOUT_SECONDS}s",
    )
    tool_workers: int = env_field(8, "TOOL_WORKERS")
    tool_handler_allowlist: list[str] = env_field(
        [],
        "TOOL_HANDLER_ALLOWLIST",
        description="Module prefixes that inline toolSpec handler paths may resolve from",
    )

    idempotency_ttl_seconds: int = env_field(60 * 60 * 24, "IDEMPOTENCY_TTL_SECONDS")
    idempotency_claim_ttl_seconds: int = env_field(
        60 * 5,
        "IDEMPOTENCY_CLAIM_TTL_SECONDS",
        description="Lifetime of an in-progress write claim before another writer may take over",
    )
    idempotency_wait_seconds: float = env_field(
        10.0,
        "IDEMPOTENCY_WAIT_SECONDS",
        description="How long a conflicting writer waits for the first write to finish",
    )

    registry_grace_seconds: float = env_field(
        300.0,
        "REGISTRY_GRACE_SECONDS",
        description="How long terminal executions stay queryable",
    )

    model_config = ConfigDict(extra="ignore", protected_namespaces=())

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("model_backend", mode="before")
    @classmethod
    def _validate_backend(cls, value: Any) -> ModelBackend:
        if isinstance(value, str):
            value = value.strip().lower()
        return ModelBackend(value)

    @field_validator("tool_handler_allowlist", mode="before")
    @classmethod
    def _split_allowlist(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return list(value)

    @field_validator("redis_url", "model_api_key", "model_base_url", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator(
        "default_max_iterations",
        "max_iterations_hard_cap",
        "model_max_tokens",
        "tool_workers",
        "idempotency_ttl_seconds",
        "idempotency_claim_ttl_seconds",
    )
    @classmethod
    def _positive_int(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be >= 1")
        return value

    @field_validator(
        "model_timeout_seconds",
        "idempotency_wait_seconds",
        "registry_grace_seconds",
    )
    @classmethod
    def _non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("must be >= 0")
        return value

    @field_validator("tool_timeout_seconds")
    @classmethod
    def _cap_tool_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be > 0")
        if value > MAX_TOOL_TIMEOUT_SECONDS:
            logger.warning(
                "tool_timeout_capped",
                requested=value,
                cap=MAX_TOOL_TIMEOUT_SECONDS,
            )
            return float(MAX_TOOL_TIMEOUT_SECONDS)
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
