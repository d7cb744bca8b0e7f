from __future__ import annotations

import json
import os
from typing import Any, Dict

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from stageflow.logging import get_logger

logger = get_logger(__name__)

# Hard ceiling for retries against the stage endpoint
MAX_STAGE_RETRIES = 5


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the stage orchestration and usage services."""

    # Storage
    database_url: str = env_field(
        "postgresql://localhost:5432/stageflow", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(True, "USE_MEMORY_STORE")
    redis_url: str | None = env_field(None, "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(False, "TEST_MODE")
    build_sha: str | None = env_field(None, "BUILD_SHA")
    cors_allow_origins: list[str] = env_field(
        ["http://localhost:3000"], "CORS_ALLOW_ORIGINS"
    )

    # External stage endpoint
    stage_api_base_url: str = env_field(
        "http://localhost/v1", "STAGE_API_BASE_URL",
        description="Base URL for short chat-style stage calls",
    )
    stage_workflow_base_url: str | None = env_field(
        None, "STAGE_WORKFLOW_BASE_URL",
        description="Base URL for long-running workflow calls (defaults to STAGE_API_BASE_URL)",
    )
    stage_api_key: str | None = env_field(None, "STAGE_API_KEY")
    stage_api_keys: Dict[str, str] = env_field(
        {}, "STAGE_API_KEYS",
        description="JSON object mapping node id to a dedicated application key",
    )
    stage_user: str = env_field("stageflow-user", "STAGE_USER")
    chat_timeout_seconds: float = env_field(30.0, "CHAT_TIMEOUT_SECONDS")
    workflow_timeout_seconds: float = env_field(60.0, "WORKFLOW_TIMEOUT_SECONDS")
    connect_timeout_seconds: float = env_field(10.0, "CONNECT_TIMEOUT_SECONDS")
    stage_max_retries: int = env_field(2, "STAGE_MAX_RETRIES", ge=0)
    stage_retry_delay_ms: int = env_field(500, "STAGE_RETRY_DELAY_MS", ge=0)
    retry_domain_errors: bool = env_field(
        False, "RETRY_DOMAIN_ERRORS",
        description="Retry non-transport failures as well (legacy blanket retry)",
    )
    inflight_ttl_seconds: int = env_field(300, "INFLIGHT_TTL_SECONDS", ge=1)

    # Workflow graph and context
    workflow_graph_path: str | None = env_field(None, "WORKFLOW_GRAPH_PATH")
    keep_output_history: bool = env_field(False, "KEEP_OUTPUT_HISTORY")

    # Recommendation weights
    confidence_base: float = env_field(0.7, "CONFIDENCE_BASE")
    confidence_success_bonus: float = env_field(0.2, "CONFIDENCE_SUCCESS_BONUS")
    confidence_low_threshold: float = env_field(0.5, "CONFIDENCE_LOW_THRESHOLD")
    confidence_high_threshold: float = env_field(0.8, "CONFIDENCE_HIGH_THRESHOLD")

    # Usage aggregation
    response_sample_capacity: int = env_field(1000, "RESPONSE_SAMPLE_CAPACITY", ge=1)
    default_stats_window_days: int = env_field(7, "DEFAULT_STATS_WINDOW_DAYS", ge=1)

    model_config = ConfigDict(extra="ignore")

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

    @field_validator("redis_url", "stage_api_key", "stage_workflow_base_url", "workflow_graph_path", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("stage_api_keys", mode="before")
    @classmethod
    def _parse_api_keys(cls, value: Any) -> Any:
        if value is None or value == "":
            return {}
        if isinstance(value, str):
            try:
                parsed = json.loads(value)
            except json.JSONDecodeError as exc:
                raise ValueError("STAGE_API_KEYS must be a JSON object") from exc
            if not isinstance(parsed, dict):
                raise ValueError("STAGE_API_KEYS must be a JSON object")
            return parsed
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("stage_max_retries")
    @classmethod
    def _cap_retries(cls, value: int) -> int:
        if value > MAX_STAGE_RETRIES:
            logger.warning(
                "stage_max_retries_capped", requested=value, cap=MAX_STAGE_RETRIES
            )
            return MAX_STAGE_RETRIES
        return value

    @field_validator(
        "confidence_base",
        "confidence_success_bonus",
        "confidence_low_threshold",
        "confidence_high_threshold",
    )
    @classmethod
    def _unit_interval(cls, value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise ValueError("confidence weights must be within [0, 1]")
        return value

    @model_validator(mode="after")
    def _check_thresholds(self) -> "Settings":
        if self.confidence_low_threshold > self.confidence_high_threshold:
            raise ValueError("CONFIDENCE_LOW_THRESHOLD must not exceed CONFIDENCE_HIGH_THRESHOLD")
        return self

    @property
    def workflow_base_url(self) -> str:
        return self.stage_workflow_base_url or self.stage_api_base_url

    def api_key_for(self, node_id: str) -> str | None:
        """Per-node application key, falling back to the shared key."""
        return self.stage_api_keys.get(node_id) or self.stage_api_key


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
