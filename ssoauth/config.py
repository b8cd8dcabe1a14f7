from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


class JwtAlgorithm(str, Enum):
    """HMAC signing algorithms accepted for access tokens."""

    HS256 = "HS256"
    HS384 = "HS384"
    HS512 = "HS512"


class AuditFailurePolicy(str, Enum):
    """What to do when the audit store rejects a write.

    - FAIL_CLOSED: the audited operation fails with the storage error
    - FAIL_OPEN: the failure is logged at error level and the operation proceeds
    """

    FAIL_CLOSED = "fail_closed"
    FAIL_OPEN = "fail_open"


class ProbeRetryPolicy(str, Enum):
    """Probe scheduling for services that are currently unhealthy."""

    CONSTANT = "constant"
    EXPONENTIAL = "exponential"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-level settings; runtime tunables can be overridden via system config."""

    database_url: str = env_field("postgresql://localhost:5432/ssoauth", "DATABASE_URL")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/ssoauth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (in-process fallbacks, runtime reset)",
    )

    # Token signing; a missing key is fatal at startup
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_algorithm: JwtAlgorithm = env_field(JwtAlgorithm.HS256, "JWT_ALGORITHM")
    jwt_issuer: str = env_field("ssoauth", "JWT_ISSUER")
    jwt_audience: str = env_field("sso-services", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        15,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Access token lifetime (overridable via jwt.access_token_expires)",
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Refresh token lifetime (overridable via jwt.refresh_token_expires)",
    )

    # Brute-force lockout
    lockout_threshold: int = env_field(
        5,
        "LOCKOUT_THRESHOLD",
        description="Failures within the window before locking (overridable via auth.max_login_attempts)",
    )
    lockout_duration_minutes: int = env_field(
        15,
        "LOCKOUT_DURATION_MINUTES",
        description="Lock length once the threshold is reached (overridable via auth.lockout_duration)",
    )
    lockout_window_minutes: int = env_field(
        15,
        "LOCKOUT_WINDOW_MINUTES",
        description="Counting window anchored at the first failure (overridable via auth.lockout_window)",
    )
    lockout_key_includes_ip: bool = env_field(
        False,
        "LOCKOUT_KEY_INCLUDES_IP",
        description="Key lockout records by client IP and identity instead of identity only",
    )
    require_verified_email: bool = env_field(False, "REQUIRE_VERIFIED_EMAIL")

    # Per-client request budget on the login and refresh endpoints; 0 disables
    auth_rate_limit: int = env_field(
        50,
        "AUTH_RATE_LIMIT",
        description="Requests per client IP per window on /v1/auth/login and /v1/auth/refresh",
    )
    auth_rate_limit_window_seconds: int = env_field(15 * 60, "AUTH_RATE_LIMIT_WINDOW_SECONDS")

    # Background sweep of lapsed lockout records, idle rate buckets and dead lineages
    maintenance_enabled: bool = env_field(True, "MAINTENANCE_ENABLED")
    maintenance_interval_seconds: int = env_field(300, "MAINTENANCE_INTERVAL_SECONDS")

    # Password hashing (argon2id)
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_cost: int = env_field(65536, "PASSWORD_HASH_MEMORY_COST")
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM")

    # Service registry health probing
    prober_enabled: bool = env_field(True, "HEALTH_PROBER_ENABLED")
    health_probe_interval_seconds: int = env_field(
        30,
        "HEALTH_PROBE_INTERVAL_SECONDS",
        description="Seconds between probe ticks (overridable via registry.probe_interval)",
    )
    health_probe_timeout_seconds: float = env_field(5.0, "HEALTH_PROBE_TIMEOUT_SECONDS")
    health_probe_retry_policy: ProbeRetryPolicy = env_field(
        ProbeRetryPolicy.CONSTANT, "HEALTH_PROBE_RETRY_POLICY"
    )
    health_probe_max_backoff_seconds: int = env_field(300, "HEALTH_PROBE_MAX_BACKOFF_SECONDS")

    audit_failure_policy: AuditFailurePolicy = env_field(
        AuditFailurePolicy.FAIL_CLOSED,
        "AUDIT_FAILURE_POLICY",
        description="fail_closed or fail_open (overridable via audit.failure_policy)",
    )

    # Cache staleness bounds
    system_config_ttl_seconds: int = env_field(30, "SYSTEM_CONFIG_TTL_SECONDS")
    rbac_cache_ttl_seconds: int = env_field(30, "RBAC_CACHE_TTL_SECONDS")

    cors_allow_origins: str = env_field("", "CORS_ALLOW_ORIGINS")

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

    @field_validator("auth_rate_limit")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_is_none(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value

    @field_validator("jwt_algorithm")
    @classmethod
    def _validate_algorithm(cls, value: JwtAlgorithm) -> JwtAlgorithm:
        return JwtAlgorithm(value)

    @field_validator("audit_failure_policy")
    @classmethod
    def _validate_audit_policy(cls, value: AuditFailurePolicy) -> AuditFailurePolicy:
        return AuditFailurePolicy(value)

    @field_validator("health_probe_retry_policy")
    @classmethod
    def _validate_retry_policy(cls, value: ProbeRetryPolicy) -> ProbeRetryPolicy:
        return ProbeRetryPolicy(value)

    @field_validator(
        "lockout_threshold",
        "lockout_duration_minutes",
        "lockout_window_minutes",
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "health_probe_interval_seconds",
        "auth_rate_limit_window_seconds",
        "maintenance_interval_seconds",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]


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
