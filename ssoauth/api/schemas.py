from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = {
    "validation_error",
    "unauthorized",
    "invalid_credentials",
    "invalid_token",
    "token_expired",
    "token_revoked",
    "token_reused",
    "forbidden",
    "not_found",
    "conflict",
    "rate_limited",
    "server_error",
    "service_unavailable",
}


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class LoginRequest(BaseModel):
    identity: str = Field(..., min_length=1, max_length=320, description="Email or username")
    password: str = Field(..., min_length=1, max_length=1024)


class TokenResponse(BaseModel):
    user_id: str
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_expires_at: datetime
    roles: List[str] = Field(default_factory=list)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class LogoutRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class ClaimsResponse(BaseModel):
    user_id: str
    roles: List[str]
    permissions: List[str]
    expires_at: int
    jti: str


class AuthzCheckRequest(BaseModel):
    permission: str = Field(..., min_length=1, max_length=256)


class AuthzCheckResponse(BaseModel):
    allowed: bool
    permission: str


class ServiceRegistrationRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    url: str = Field(..., max_length=2048)
    health_check_url: Optional[str] = Field(default=None, max_length=2048)
    description: Optional[str] = Field(default=None, max_length=1024)
    allowed_roles: List[str] = Field(default_factory=list, max_length=100)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name must not be blank")
        return value


class ServiceResponse(BaseModel):
    name: str
    url: str
    health_check_url: Optional[str] = None
    description: Optional[str] = None
    allowed_roles: List[str]
    liveness: str
    last_probe_at: Optional[datetime] = None
    consecutive_failures: int = 0


class ServiceAccessResponse(BaseModel):
    service: str
    allowed: bool


class AuditEntryResponse(BaseModel):
    id: str
    timestamp: datetime
    actor: str
    action: str
    target: Optional[str] = None
    outcome: str
    severity: str
    ip_addr: Optional[str] = None
    meta: Optional[Dict[str, Any]] = None


class UserCreateRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)
    password: str = Field(..., min_length=1, max_length=1024)
    username: Optional[str] = Field(default=None, min_length=1, max_length=64)
    roles: List[str] = Field(default_factory=lambda: ["user"], max_length=20)
    is_verified: bool = False


class UserResponse(BaseModel):
    id: str
    email: str
    username: Optional[str] = None
    is_active: bool
    is_verified: bool
    roles: List[str] = Field(default_factory=list)
    created_at: datetime
    last_login_at: Optional[datetime] = None


class PasswordSetRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=1024)


class RoleAssignRequest(BaseModel):
    role: str = Field(..., min_length=1, max_length=64)


class RoleUpsertRequest(BaseModel):
    permissions: List[str] = Field(default_factory=list, max_length=500)
    description: Optional[str] = Field(default=None, max_length=1024)


class RoleResponse(BaseModel):
    name: str
    permissions: List[str]
    description: Optional[str] = None


class ConfigSetRequest(BaseModel):
    value: str = Field(..., max_length=4096)
    data_type: str = Field("string", pattern="^(string|number|boolean|duration)$")
    description: Optional[str] = Field(default=None, max_length=1024)


class ConfigEntryResponse(BaseModel):
    key: str
    value: str
    data_type: str
    description: Optional[str] = None
    updated_at: datetime
