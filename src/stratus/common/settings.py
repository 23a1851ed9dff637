"""Application configuration models shared by services."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Literal, Optional

from pydantic import Field, HttpUrl, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


def _split_csv(value):
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


class OrchestratorSettings(BaseSettings):
    """Process-wide settings for the orchestration core."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    database_url: str = env_field(..., "STRATUS_DATABASE_URL")
    log_level: str = env_field("INFO", "STRATUS_LOG_LEVEL")
    log_json: bool = env_field(True, "STRATUS_LOG_JSON")
    otel_exporter_endpoint: Optional[str] = env_field(None, "STRATUS_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "STRATUS_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "STRATUS_OTEL_SAMPLER_RATIO")
    policy_path: Optional[Path] = env_field(None, "STRATUS_POLICY_PATH")
    notification_webhook_url: Optional[HttpUrl] = env_field(None, "STRATUS_NOTIFICATION_WEBHOOK_URL")
    notification_min_severity: Literal["info", "warning", "critical"] = env_field(
        "warning", "STRATUS_NOTIFICATION_MIN_SEVERITY"
    )


class SchedulerSettings(BaseSettings):
    """Runtime settings for the pipeline scheduler."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    agent_acquire_timeout_seconds: float = env_field(600.0, "STRATUS_AGENT_ACQUIRE_TIMEOUT")
    global_max_running: int = env_field(64, "STRATUS_GLOBAL_MAX_RUNNING")
    default_job_timeout_seconds: float = env_field(3600.0, "STRATUS_DEFAULT_JOB_TIMEOUT")
    infra_retry_attempts: int = env_field(3, "STRATUS_INFRA_RETRY_ATTEMPTS")
    infra_retry_base_seconds: float = env_field(1.0, "STRATUS_INFRA_RETRY_BASE")
    infra_retry_max_seconds: float = env_field(30.0, "STRATUS_INFRA_RETRY_MAX")


class AgentPoolSettings(BaseSettings):
    """Runtime settings for the agent pool manager."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    provisioning_timeout_seconds: float = env_field(300.0, "STRATUS_PROVISIONING_TIMEOUT")
    scale_up_debounce_seconds: float = env_field(120.0, "STRATUS_SCALE_UP_DEBOUNCE")
    scale_down_cooldown_seconds: float = env_field(300.0, "STRATUS_SCALE_DOWN_COOLDOWN")
    heartbeat_liveness_seconds: float = env_field(90.0, "STRATUS_HEARTBEAT_LIVENESS")
    maintenance_interval_seconds: float = env_field(15.0, "STRATUS_POOL_MAINTENANCE_INTERVAL")


class CacheSettings(BaseSettings):
    """Runtime settings for the cache store."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    storage_path: Optional[Path] = env_field(None, "STRATUS_CACHE_STORAGE_PATH")
    namespace_budget_bytes: int = env_field(10 * 1024 * 1024 * 1024, "STRATUS_CACHE_NAMESPACE_BUDGET_BYTES")


class CredentialSettings(BaseSettings):
    """Runtime settings for the credential broker."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    signing_secret: SecretStr = env_field(..., "STRATUS_CREDENTIAL_SIGNING_SECRET")
    signing_secret_fallbacks: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        validation_alias="STRATUS_CREDENTIAL_SIGNING_SECRET_FALLBACKS",
    )
    issuer: str = env_field("stratus", "STRATUS_CREDENTIAL_ISSUER")
    default_ttl_seconds: int = env_field(900, "STRATUS_CREDENTIAL_DEFAULT_TTL")
    max_ttl_seconds: int = env_field(3600, "STRATUS_CREDENTIAL_MAX_TTL")

    @field_validator("signing_secret_fallbacks", mode="before")
    @classmethod
    def _split_fallbacks(cls, value):
        return _split_csv(value)


class DeploymentSettings(BaseSettings):
    """Runtime settings for the deployment state machine."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    smoke_test_timeout_seconds: float = env_field(300.0, "STRATUS_SMOKE_TEST_TIMEOUT")
    approval_timeout_seconds: Optional[float] = env_field(None, "STRATUS_APPROVAL_TIMEOUT")
    approval_check_interval_seconds: float = env_field(30.0, "STRATUS_APPROVAL_CHECK_INTERVAL")
