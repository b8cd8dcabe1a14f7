from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from ssoauth.logging import get_logger
from ssoauth.storage.common import check_identity_shape, normalize_identity, normalize_permissions
from ssoauth.storage.errors import ConstraintViolation
from ssoauth.storage.models import (
    AuditEntry,
    ConfigDataType,
    Liveness,
    Microservice,
    PasswordRecord,
    RefreshToken,
    Role,
    SystemConfigEntry,
    TokenLineage,
    User,
    utcnow,
)


class MemoryStore:
    """Thread-safe in-process store used for tests and single-node development.

    When ``fs_root`` is given the whole state is snapshotted to
    ``<fs_root>/state/memory_store.json`` after every write and reloaded on start.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, PasswordRecord] = {}
        self.roles: Dict[str, Role] = {}
        self.user_roles: Dict[str, List[str]] = {}
        self.lineages: Dict[str, TokenLineage] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self._token_hash_index: Dict[str, str] = {}
        self.services: Dict[str, Microservice] = {}
        self.audit_entries: List[AuditEntry] = []
        self.system_config: Dict[str, SystemConfigEntry] = {}
        # RLock so helpers can be called while the lock is already held
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # -- principals -------------------------------------------------------

    def create_user(
        self,
        email: str,
        username: Optional[str] = None,
        *,
        is_active: bool = True,
        is_verified: bool = False,
        meta: Optional[Dict] = None,
    ) -> User:
        normalized_email = normalize_identity(email)
        normalized_username = normalize_identity(username) or None
        check_identity_shape(normalized_email, normalized_username)
        with self._data_lock:
            for existing in self.users.values():
                if normalized_email in (existing.email, existing.username):
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if normalized_username and normalized_username in (existing.username, existing.email):
                    raise ConstraintViolation("username already exists", {"field": "username"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized_email,
                username=normalized_username,
                is_active=is_active,
                is_verified=is_verified,
                meta=dict(meta) if meta else {},
            )
            self.users[user.id] = user
            self.user_roles[user.id] = []
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_identity(self, identity: str) -> Optional[User]:
        """Look a principal up by email or username (case-insensitive)."""
        key = normalize_identity(identity)
        if not key:
            return None
        with self._data_lock:
            for user in self.users.values():
                if user.email == key or (user.username and user.username == key):
                    return replace(user)
        return None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return [replace(u) for u in ordered[:limit]]

    def update_user(
        self,
        user_id: str,
        *,
        is_active: Optional[bool] = None,
        is_verified: Optional[bool] = None,
        last_login_at: Optional[datetime] = None,
        meta: Optional[Dict] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if is_active is not None:
                user.is_active = is_active
            if is_verified is not None:
                user.is_verified = is_verified
            if last_login_at is not None:
                user.last_login_at = last_login_at
            if meta is not None:
                user.meta = {**(user.meta or {}), **meta}
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for credentials", {"user_id": user_id})
            existing = self.credentials.get(user_id)
            self.credentials[user_id] = PasswordRecord(
                user_id=user_id,
                password_hash=password_hash,
                password_algo=password_algo,
                created_at=existing.created_at if existing else utcnow(),
                last_updated_at=utcnow() if existing else None,
            )
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[PasswordRecord]:
        with self._data_lock:
            record = self.credentials.get(user_id)
            return replace(record) if record else None

    # -- roles ------------------------------------------------------------

    def upsert_role(
        self, name: str, permissions, description: Optional[str] = None
    ) -> Role:
        with self._data_lock:
            existing = self.roles.get(name)
            role = Role(
                name=name,
                permissions=normalize_permissions(permissions),
                description=description if description is not None else (existing.description if existing else None),
                created_at=existing.created_at if existing else utcnow(),
                updated_at=utcnow() if existing else None,
            )
            self.roles[name] = role
            self._persist_state()
            return replace(role)

    def get_role(self, name: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(name)
            return replace(role) if role else None

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            return [replace(r) for r in sorted(self.roles.values(), key=lambda r: r.name)]

    def get_roles(self, user_id: str) -> List[str]:
        with self._data_lock:
            return list(self.user_roles.get(user_id, []))

    def assign_role(self, user_id: str, role_name: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if role_name not in self.roles:
                raise ConstraintViolation("role does not exist", {"role": role_name})
            assigned = self.user_roles.setdefault(user_id, [])
            if role_name not in assigned:
                assigned.append(role_name)
                self._persist_state()

    def remove_role(self, user_id: str, role_name: str) -> bool:
        with self._data_lock:
            assigned = self.user_roles.get(user_id, [])
            if role_name not in assigned:
                return False
            assigned.remove(role_name)
            self._persist_state()
            return True

    # -- refresh token lineages ------------------------------------------

    def create_lineage(self, token: RefreshToken) -> TokenLineage:
        with self._data_lock:
            if token.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": token.user_id})
            if token.token_hash in self._token_hash_index:
                raise ConstraintViolation("refresh token collision", {"field": "token_hash"})
            lineage = TokenLineage(
                id=token.lineage_id,
                user_id=token.user_id,
                tip_id=token.id,
                created_at=token.issued_at,
            )
            self.lineages[lineage.id] = lineage
            self.refresh_tokens[token.id] = replace(token)
            self._token_hash_index[token.token_hash] = token.id
            self._persist_state()
            return replace(lineage)

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token_id = self._token_hash_index.get(token_hash)
            token = self.refresh_tokens.get(token_id) if token_id else None
            return replace(token) if token else None

    def get_lineage(self, lineage_id: str) -> Optional[TokenLineage]:
        with self._data_lock:
            lineage = self.lineages.get(lineage_id)
            return replace(lineage) if lineage else None

    def advance_lineage_tip(
        self,
        lineage_id: str,
        expected_tip_id: str,
        successor: RefreshToken,
        now: datetime,
    ) -> bool:
        """Compare-and-swap the lineage tip; False when another rotation won."""
        with self._data_lock:
            lineage = self.lineages.get(lineage_id)
            if not lineage or lineage.is_revoked or lineage.tip_id != expected_tip_id:
                return False
            previous = self.refresh_tokens.get(expected_tip_id)
            if previous is not None and previous.revoked_at is None:
                previous.revoked_at = now
                previous.revoked_reason = "rotated"
            self.refresh_tokens[successor.id] = replace(successor)
            self._token_hash_index[successor.token_hash] = successor.id
            lineage.tip_id = successor.id
            self._persist_state()
            return True

    def revoke_lineage(self, lineage_id: str, reason: str, now: datetime) -> bool:
        """Revoke a lineage and its tip. Returns False if it was already revoked."""
        with self._data_lock:
            lineage = self.lineages.get(lineage_id)
            if not lineage or lineage.is_revoked:
                return False
            lineage.revoked_at = now
            lineage.revoked_reason = reason
            tip = self.refresh_tokens.get(lineage.tip_id)
            if tip is not None and tip.revoked_at is None:
                tip.revoked_at = now
                tip.revoked_reason = reason
            self._persist_state()
            return True

    def list_user_lineages(self, user_id: str, *, active_only: bool = True) -> List[TokenLineage]:
        with self._data_lock:
            return [
                replace(lineage)
                for lineage in self.lineages.values()
                if lineage.user_id == user_id and not (active_only and lineage.is_revoked)
            ]

    def list_lineage_tokens(self, lineage_id: str) -> List[RefreshToken]:
        with self._data_lock:
            tokens = [t for t in self.refresh_tokens.values() if t.lineage_id == lineage_id]
            return [replace(t) for t in sorted(tokens, key=lambda t: t.issued_at)]

    def prune_lineages(self, now: datetime, *, revoked_before: Optional[datetime] = None) -> int:
        """Drop lineages whose tip expired by ``now`` or that were revoked by ``revoked_before``.

        ``revoked_before`` defaults to ``now``.
        """
        cutoff = revoked_before or now
        with self._data_lock:
            stale = []
            for lineage in self.lineages.values():
                tip = self.refresh_tokens.get(lineage.tip_id)
                if (
                    tip is None
                    or tip.is_expired(now)
                    or (lineage.revoked_at is not None and lineage.revoked_at <= cutoff)
                ):
                    stale.append(lineage.id)
            for lineage_id in stale:
                self.lineages.pop(lineage_id, None)
                for token_id in [t.id for t in self.refresh_tokens.values() if t.lineage_id == lineage_id]:
                    token = self.refresh_tokens.pop(token_id)
                    self._token_hash_index.pop(token.token_hash, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- service registry -------------------------------------------------

    def upsert_service(self, service: Microservice) -> Microservice:
        """Insert or update by name; liveness fields of an existing row are kept."""
        with self._data_lock:
            existing = self.services.get(service.name)
            stored = replace(service, allowed_roles=frozenset(service.allowed_roles))
            if existing:
                stored.liveness = existing.liveness
                stored.last_probe_at = existing.last_probe_at
                stored.consecutive_failures = existing.consecutive_failures
                stored.last_error = existing.last_error
                stored.created_at = existing.created_at
                stored.updated_at = utcnow()
            self.services[service.name] = stored
            self._persist_state()
            return replace(stored)

    def get_service(self, name: str) -> Optional[Microservice]:
        with self._data_lock:
            service = self.services.get(name)
            return replace(service) if service else None

    def list_services(self) -> List[Microservice]:
        with self._data_lock:
            return [replace(s) for s in sorted(self.services.values(), key=lambda s: s.name)]

    def delete_service(self, name: str) -> bool:
        with self._data_lock:
            removed = self.services.pop(name, None)
            if removed:
                self._persist_state()
            return removed is not None

    def record_probe_result(
        self,
        name: str,
        liveness: Liveness,
        probed_at: datetime,
        error: Optional[str] = None,
    ) -> Optional[Liveness]:
        """Store a probe outcome and return the liveness it replaced."""
        with self._data_lock:
            service = self.services.get(name)
            if not service:
                return None
            previous = service.liveness
            service.liveness = liveness
            service.last_probe_at = probed_at
            service.last_error = error
            if liveness == Liveness.HEALTHY:
                service.consecutive_failures = 0
            else:
                service.consecutive_failures += 1
            self._persist_state()
            return previous

    # -- audit ------------------------------------------------------------

    def append_audit(self, entry: AuditEntry) -> None:
        with self._data_lock:
            self.audit_entries.append(entry)
            self._persist_state()

    def list_audit(
        self,
        limit: int = 100,
        *,
        actor: Optional[str] = None,
        action: Optional[str] = None,
    ) -> List[AuditEntry]:
        with self._data_lock:
            matches = [
                e
                for e in self.audit_entries
                if (actor is None or e.actor == actor) and (action is None or e.action == action)
            ]
            return list(reversed(matches))[:limit]

    # -- system config ----------------------------------------------------

    def list_config_entries(self) -> Dict[str, SystemConfigEntry]:
        with self._data_lock:
            return {key: replace(entry) for key, entry in self.system_config.items()}

    def set_config_entry(self, entry: SystemConfigEntry) -> SystemConfigEntry:
        with self._data_lock:
            self.system_config[entry.key] = replace(entry)
            self._persist_state()
            return replace(entry)

    # -- persistence ------------------------------------------------------

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [self._serialize_credential(c) for c in self.credentials.values()],
            "roles": [self._serialize_role(r) for r in self.roles.values()],
            "user_roles": self.user_roles,
            "lineages": [self._serialize_lineage(lin) for lin in self.lineages.values()],
            "refresh_tokens": [self._serialize_token(t) for t in self.refresh_tokens.values()],
            "services": [self._serialize_service(s) for s in self.services.values()],
            "audit": [self._serialize_audit(e) for e in self.audit_entries],
            "system_config": [self._serialize_config(c) for c in self.system_config.values()],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(state))
        tmp_path.replace(path)

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.error("memory_store_state_corrupt", path=str(path), error=str(exc))
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            c["user_id"]: self._deserialize_credential(c) for c in data.get("credentials", [])
        }
        self.roles = {r["name"]: self._deserialize_role(r) for r in data.get("roles", [])}
        self.user_roles = {uid: list(names) for uid, names in data.get("user_roles", {}).items()}
        self.lineages = {
            lin["id"]: self._deserialize_lineage(lin) for lin in data.get("lineages", [])
        }
        self.refresh_tokens = {
            t["id"]: self._deserialize_token(t) for t in data.get("refresh_tokens", [])
        }
        self._token_hash_index = {t.token_hash: t.id for t in self.refresh_tokens.values()}
        self.services = {s["name"]: self._deserialize_service(s) for s in data.get("services", [])}
        self.audit_entries = [self._deserialize_audit(e) for e in data.get("audit", [])]
        self.system_config = {
            c["key"]: self._deserialize_config(c) for c in data.get("system_config", [])
        }
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "username": user.username,
            "is_active": user.is_active,
            "is_verified": user.is_verified,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
            "last_login_at": self._serialize_datetime(user.last_login_at),
            "meta": user.meta,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            username=data.get("username"),
            is_active=data.get("is_active", True),
            is_verified=data.get("is_verified", False),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at")),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            meta=data.get("meta"),
        )

    def _serialize_credential(self, record: PasswordRecord) -> dict:
        return {
            "user_id": record.user_id,
            "password_hash": record.password_hash,
            "password_algo": record.password_algo,
            "created_at": self._serialize_datetime(record.created_at),
            "last_updated_at": self._serialize_datetime(record.last_updated_at),
        }

    def _deserialize_credential(self, data: dict) -> PasswordRecord:
        return PasswordRecord(
            user_id=data["user_id"],
            password_hash=data["password_hash"],
            password_algo=data.get("password_algo", "argon2id"),
            created_at=self._deserialize_datetime(data["created_at"]),
            last_updated_at=self._deserialize_datetime(data.get("last_updated_at")),
        )

    def _serialize_role(self, role: Role) -> dict:
        return {
            "name": role.name,
            "permissions": sorted(role.permissions),
            "description": role.description,
            "created_at": self._serialize_datetime(role.created_at),
            "updated_at": self._serialize_datetime(role.updated_at),
        }

    def _deserialize_role(self, data: dict) -> Role:
        return Role(
            name=data["name"],
            permissions=frozenset(data.get("permissions", [])),
            description=data.get("description"),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at")),
        )

    def _serialize_lineage(self, lineage: TokenLineage) -> dict:
        return {
            "id": lineage.id,
            "user_id": lineage.user_id,
            "tip_id": lineage.tip_id,
            "created_at": self._serialize_datetime(lineage.created_at),
            "revoked_at": self._serialize_datetime(lineage.revoked_at),
            "revoked_reason": lineage.revoked_reason,
        }

    def _deserialize_lineage(self, data: dict) -> TokenLineage:
        return TokenLineage(
            id=data["id"],
            user_id=data["user_id"],
            tip_id=data["tip_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            revoked_reason=data.get("revoked_reason"),
        )

    def _serialize_token(self, token: RefreshToken) -> dict:
        return {
            "id": token.id,
            "user_id": token.user_id,
            "lineage_id": token.lineage_id,
            "token_hash": token.token_hash,
            "issued_at": self._serialize_datetime(token.issued_at),
            "expires_at": self._serialize_datetime(token.expires_at),
            "parent_id": token.parent_id,
            "revoked_at": self._serialize_datetime(token.revoked_at),
            "revoked_reason": token.revoked_reason,
            "user_agent": token.user_agent,
            "ip_addr": token.ip_addr,
        }

    def _deserialize_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            id=data["id"],
            user_id=data["user_id"],
            lineage_id=data["lineage_id"],
            token_hash=data["token_hash"],
            issued_at=self._deserialize_datetime(data["issued_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            parent_id=data.get("parent_id"),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            revoked_reason=data.get("revoked_reason"),
            user_agent=data.get("user_agent"),
            ip_addr=data.get("ip_addr"),
        )

    def _serialize_service(self, service: Microservice) -> dict:
        return {
            "name": service.name,
            "url": service.url,
            "health_check_url": service.health_check_url,
            "description": service.description,
            "allowed_roles": sorted(service.allowed_roles),
            "liveness": service.liveness.value,
            "last_probe_at": self._serialize_datetime(service.last_probe_at),
            "consecutive_failures": service.consecutive_failures,
            "last_error": service.last_error,
            "created_at": self._serialize_datetime(service.created_at),
            "updated_at": self._serialize_datetime(service.updated_at),
        }

    def _deserialize_service(self, data: dict) -> Microservice:
        return Microservice(
            name=data["name"],
            url=data["url"],
            health_check_url=data.get("health_check_url"),
            description=data.get("description"),
            allowed_roles=frozenset(data.get("allowed_roles", [])),
            liveness=Liveness(data.get("liveness", Liveness.UNKNOWN.value)),
            last_probe_at=self._deserialize_datetime(data.get("last_probe_at")),
            consecutive_failures=data.get("consecutive_failures", 0),
            last_error=data.get("last_error"),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at")),
        )

    def _serialize_audit(self, entry: AuditEntry) -> dict:
        return {
            "id": entry.id,
            "timestamp": self._serialize_datetime(entry.timestamp),
            "actor": entry.actor,
            "action": entry.action,
            "target": entry.target,
            "outcome": entry.outcome,
            "severity": entry.severity,
            "ip_addr": entry.ip_addr,
            "user_agent": entry.user_agent,
            "meta": entry.meta,
        }

    def _deserialize_audit(self, data: dict) -> AuditEntry:
        return AuditEntry(
            id=data["id"],
            timestamp=self._deserialize_datetime(data["timestamp"]),
            actor=data["actor"],
            action=data["action"],
            target=data.get("target"),
            outcome=data["outcome"],
            severity=data.get("severity", "info"),
            ip_addr=data.get("ip_addr"),
            user_agent=data.get("user_agent"),
            meta=data.get("meta"),
        )

    def _serialize_config(self, entry: SystemConfigEntry) -> dict:
        return {
            "key": entry.key,
            "value": entry.value,
            "data_type": entry.data_type.value,
            "description": entry.description,
            "updated_at": self._serialize_datetime(entry.updated_at),
        }

    def _deserialize_config(self, data: dict) -> SystemConfigEntry:
        return SystemConfigEntry(
            key=data["key"],
            value=data["value"],
            data_type=ConfigDataType(data.get("data_type", ConfigDataType.STRING.value)),
            description=data.get("description"),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )
