from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, FrozenSet, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class User:
    id: str
    email: str
    username: Optional[str] = None
    is_active: bool = True
    is_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    meta: Dict | None = None


@dataclass
class PasswordRecord:
    user_id: str
    password_hash: str
    password_algo: str = "argon2id"
    created_at: datetime = field(default_factory=utcnow)
    last_updated_at: Optional[datetime] = None


@dataclass
class Role:
    name: str
    permissions: FrozenSet[str] = frozenset()
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None


class RevocationReason(str, Enum):
    ROTATED = "rotated"
    LOGOUT = "logout"
    LOGOUT_ALL = "logout_all"
    REUSE_DETECTED = "reuse_detected"
    PRINCIPAL_INACTIVE = "principal_inactive"
    PASSWORD_CHANGED = "password_changed"
    AUDIT_FAILED = "audit_failed"


@dataclass
class RefreshToken:
    """One link of a rotation chain; only its hash is ever persisted."""

    id: str
    user_id: str
    lineage_id: str
    token_hash: str
    issued_at: datetime
    expires_at: datetime
    parent_id: Optional[str] = None
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        lineage_id: str,
        token_hash: str,
        now: datetime,
        ttl: timedelta,
        *,
        parent_id: str | None = None,
        user_agent: str | None = None,
        ip_addr: str | None = None,
    ) -> "RefreshToken":
        return cls(
            id=new_id(),
            user_id=user_id,
            lineage_id=lineage_id,
            token_hash=token_hash,
            issued_at=now,
            expires_at=now + ttl,
            parent_id=parent_id,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class TokenLineage:
    """Rotation chain: append-only tokens plus a single mutable tip pointer."""

    id: str
    user_id: str
    tip_id: str
    created_at: datetime
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None


@dataclass
class LockoutRecord:
    key: str
    failures: int
    window_start: datetime
    locked_until: Optional[datetime] = None


class Liveness(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


@dataclass
class Microservice:
    name: str
    url: str
    health_check_url: Optional[str] = None
    description: Optional[str] = None
    allowed_roles: FrozenSet[str] = frozenset()
    liveness: Liveness = Liveness.UNKNOWN
    last_probe_at: Optional[datetime] = None
    consecutive_failures: int = 0
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @property
    def probe_url(self) -> str:
        return self.health_check_url or self.url


@dataclass(frozen=True)
class AuditEntry:
    id: str
    timestamp: datetime
    actor: str
    action: str
    target: Optional[str]
    outcome: str
    severity: str = "info"
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    meta: Dict | None = None


class ConfigDataType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DURATION = "duration"


@dataclass
class SystemConfigEntry:
    key: str
    value: str
    data_type: ConfigDataType = ConfigDataType.STRING
    description: Optional[str] = None
    updated_at: datetime = field(default_factory=utcnow)
