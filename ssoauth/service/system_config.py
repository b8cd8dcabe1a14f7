from __future__ import annotations

import math
import re
import threading
from datetime import datetime, timedelta
from typing import Dict, Optional, Protocol

from ssoauth.config import AuditFailurePolicy, Settings
from ssoauth.logging import get_logger
from ssoauth.service.clock import Clock, SystemClock
from ssoauth.service.errors import ValidationError
from ssoauth.storage.errors import StoreUnavailable
from ssoauth.storage.models import ConfigDataType, SystemConfigEntry

logger = get_logger(__name__)

MAX_LOGIN_ATTEMPTS = "auth.max_login_attempts"
LOCKOUT_DURATION = "auth.lockout_duration"
LOCKOUT_WINDOW = "auth.lockout_window"
ACCESS_TOKEN_EXPIRES = "jwt.access_token_expires"
REFRESH_TOKEN_EXPIRES = "jwt.refresh_token_expires"
PROBE_INTERVAL = "registry.probe_interval"
AUDIT_FAILURE_POLICY = "audit.failure_policy"

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhd]?)\s*$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def parse_duration(raw: str, *, default_unit: str = "m") -> timedelta:
    """Parse ``"30s"``, ``"15m"``, ``"1h"``, ``"7d"``; a bare number uses ``default_unit``."""
    match = _DURATION_RE.match(str(raw))
    if not match:
        raise ValueError(f"invalid duration: {raw!r}")
    amount = float(match.group(1))
    unit = match.group(2) or default_unit
    if amount <= 0:
        raise ValueError(f"duration must be positive: {raw!r}")
    try:
        return timedelta(seconds=amount * _UNIT_SECONDS[unit])
    except OverflowError as exc:
        raise ValueError(f"duration out of range: {raw!r}") from exc


def _coerce(value: str, data_type: ConfigDataType):
    if data_type == ConfigDataType.NUMBER:
        number = float(value)
        if not math.isfinite(number):
            raise ValueError(f"number must be finite: {value!r}")
        return int(number) if number.is_integer() else number
    if data_type == ConfigDataType.BOOLEAN:
        lowered = value.strip().lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        raise ValueError(f"invalid boolean: {value!r}")
    if data_type == ConfigDataType.DURATION:
        return parse_duration(value)
    return value


class ConfigStore(Protocol):
    def list_config_entries(self) -> Dict[str, SystemConfigEntry]: ...

    def set_config_entry(self, entry: SystemConfigEntry) -> SystemConfigEntry: ...


class SystemConfigService:
    """Runtime tunables stored in the database, layered over ``Settings``.

    Entries are read through a snapshot refreshed at most every
    ``settings.system_config_ttl_seconds``; writes through :meth:`set`
    invalidate it immediately on this node.
    """

    def __init__(
        self,
        store: ConfigStore,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock or SystemClock()
        self.ttl = timedelta(seconds=settings.system_config_ttl_seconds)
        self._lock = threading.Lock()
        self._snapshot: Optional[Dict[str, SystemConfigEntry]] = None
        self._loaded_at: Optional[datetime] = None

    def invalidate(self) -> None:
        with self._lock:
            self._snapshot = None
            self._loaded_at = None

    def _entries(self) -> Dict[str, SystemConfigEntry]:
        now = self.clock.now()
        with self._lock:
            fresh = (
                self._snapshot is not None
                and self._loaded_at is not None
                and now - self._loaded_at < self.ttl
            )
            if fresh:
                return self._snapshot
            try:
                self._snapshot = self.store.list_config_entries()
                self._loaded_at = now
            except StoreUnavailable as exc:
                logger.warning("system_config_reload_failed", error=exc.message)
                if self._snapshot is None:
                    return {}
            return self._snapshot

    def get_raw(self, key: str) -> Optional[str]:
        entry = self._entries().get(key)
        return entry.value if entry else None

    def list_entries(self) -> Dict[str, SystemConfigEntry]:
        return dict(self._entries())

    def _duration(self, key: str, default: timedelta, *, default_unit: str) -> timedelta:
        raw = self.get_raw(key)
        if raw is None:
            return default
        try:
            return parse_duration(raw, default_unit=default_unit)
        except ValueError:
            logger.warning("system_config_invalid", key=key, value=raw)
            return default

    def max_login_attempts(self) -> int:
        raw = self.get_raw(MAX_LOGIN_ATTEMPTS)
        if raw is None:
            return self.settings.lockout_threshold
        try:
            value = int(float(raw))
        except (ValueError, OverflowError):
            value = 0
        if value <= 0:
            logger.warning("system_config_invalid", key=MAX_LOGIN_ATTEMPTS, value=raw)
            return self.settings.lockout_threshold
        return value

    def lockout_duration(self) -> timedelta:
        return self._duration(
            LOCKOUT_DURATION,
            timedelta(minutes=self.settings.lockout_duration_minutes),
            default_unit="m",
        )

    def lockout_window(self) -> timedelta:
        return self._duration(
            LOCKOUT_WINDOW,
            timedelta(minutes=self.settings.lockout_window_minutes),
            default_unit="m",
        )

    def access_token_ttl(self) -> timedelta:
        return self._duration(
            ACCESS_TOKEN_EXPIRES,
            timedelta(minutes=self.settings.access_token_ttl_minutes),
            default_unit="m",
        )

    def refresh_token_ttl(self) -> timedelta:
        return self._duration(
            REFRESH_TOKEN_EXPIRES,
            timedelta(minutes=self.settings.refresh_token_ttl_minutes),
            default_unit="m",
        )

    def probe_interval(self) -> timedelta:
        return self._duration(
            PROBE_INTERVAL,
            timedelta(seconds=self.settings.health_probe_interval_seconds),
            default_unit="s",
        )

    def audit_failure_policy(self) -> AuditFailurePolicy:
        raw = self.get_raw(AUDIT_FAILURE_POLICY)
        if raw is None:
            return self.settings.audit_failure_policy
        try:
            return AuditFailurePolicy(raw.strip().lower())
        except ValueError:
            logger.warning("system_config_invalid", key=AUDIT_FAILURE_POLICY, value=raw)
            return self.settings.audit_failure_policy

    def set(
        self,
        key: str,
        value: str,
        data_type: ConfigDataType | str = ConfigDataType.STRING,
        *,
        description: Optional[str] = None,
    ) -> SystemConfigEntry:
        """Validate and persist one entry, then drop the local snapshot."""
        if not key or not key.strip():
            raise ValidationError("config key required")
        try:
            data_type = ConfigDataType(data_type)
            _coerce(str(value), data_type)
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"key": key}) from exc
        entry = SystemConfigEntry(
            key=key.strip(),
            value=str(value),
            data_type=data_type,
            description=description,
            updated_at=self.clock.now(),
        )
        stored = self.store.set_config_entry(entry)
        self.invalidate()
        logger.info("system_config_updated", key=stored.key, data_type=stored.data_type.value)
        return stored
