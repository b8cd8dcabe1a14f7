from __future__ import annotations

import contextlib
import json
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from ssoauth.logging import get_logger
from ssoauth.storage.common import check_identity_shape, normalize_identity, normalize_permissions
from ssoauth.storage.errors import ConstraintViolation, StoreUnavailable
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
)

REQUIRED_TABLES = (
    "app_user",
    "user_credential",
    "role",
    "user_role",
    "token_lineage",
    "refresh_token",
    "microservice",
    "audit_entry",
    "system_config",
)


class PostgresStore:
    """Postgres-backed store; the schema lives in ``scripts/schema.sql``."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    @contextlib.contextmanager
    def _connect(self):
        """Yield a pooled connection; the transaction commits when the block exits cleanly."""
        try:
            with self.pool.connection() as conn:
                yield conn
        except (errors.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("database unavailable", {"error": str(exc)}) from exc

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

    def close(self) -> None:
        self.pool.close()

    # -- row mappers ------------------------------------------------------

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        meta = row.get("meta")
        if isinstance(meta, str):
            meta = json.loads(meta)
        return User(
            id=str(row["id"]),
            email=row["email"],
            username=row.get("username"),
            is_active=row.get("is_active", True),
            is_verified=row.get("is_verified", False),
            created_at=row["created_at"],
            updated_at=row.get("updated_at"),
            last_login_at=row.get("last_login_at"),
            meta=meta,
        )

    @staticmethod
    def _role_from_row(row: Dict[str, Any]) -> Role:
        return Role(
            name=row["name"],
            permissions=frozenset(row.get("permissions") or []),
            description=row.get("description"),
            created_at=row["created_at"],
            updated_at=row.get("updated_at"),
        )

    @staticmethod
    def _token_from_row(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            lineage_id=str(row["lineage_id"]),
            token_hash=row["token_hash"],
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            parent_id=str(row["parent_id"]) if row.get("parent_id") else None,
            revoked_at=row.get("revoked_at"),
            revoked_reason=row.get("revoked_reason"),
            user_agent=row.get("user_agent"),
            ip_addr=row.get("ip_addr"),
        )

    @staticmethod
    def _lineage_from_row(row: Dict[str, Any]) -> TokenLineage:
        return TokenLineage(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            tip_id=str(row["tip_id"]),
            created_at=row["created_at"],
            revoked_at=row.get("revoked_at"),
            revoked_reason=row.get("revoked_reason"),
        )

    @staticmethod
    def _service_from_row(row: Dict[str, Any]) -> Microservice:
        return Microservice(
            name=row["name"],
            url=row["url"],
            health_check_url=row.get("health_check_url"),
            description=row.get("description"),
            allowed_roles=frozenset(row.get("allowed_roles") or []),
            liveness=Liveness(row.get("liveness") or Liveness.UNKNOWN.value),
            last_probe_at=row.get("last_probe_at"),
            consecutive_failures=row.get("consecutive_failures") or 0,
            last_error=row.get("last_error"),
            created_at=row["created_at"],
            updated_at=row.get("updated_at"),
        )

    @staticmethod
    def _audit_from_row(row: Dict[str, Any]) -> AuditEntry:
        meta = row.get("meta")
        if isinstance(meta, str):
            meta = json.loads(meta)
        return AuditEntry(
            id=str(row["id"]),
            timestamp=row["occurred_at"],
            actor=row["actor"],
            action=row["action"],
            target=row.get("target"),
            outcome=row["outcome"],
            severity=row.get("severity") or "info",
            ip_addr=row.get("ip_addr"),
            user_agent=row.get("user_agent"),
            meta=meta,
        )

    @staticmethod
    def _config_from_row(row: Dict[str, Any]) -> SystemConfigEntry:
        return SystemConfigEntry(
            key=row["key"],
            value=row["value"],
            data_type=ConfigDataType(row.get("data_type") or ConfigDataType.STRING.value),
            description=row.get("description"),
            updated_at=row["updated_at"],
        )

    # -- principals -------------------------------------------------------

    def create_user(
        self,
        email: str,
        username: Optional[str] = None,
        *,
        is_active: bool = True,
        is_verified: bool = False,
        meta: Optional[dict] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        normalized_email = normalize_identity(email)
        normalized_username = normalize_identity(username) or None
        check_identity_shape(normalized_email, normalized_username)
        try:
            with self._connect() as conn:
                clash = conn.execute(
                    "SELECT 1 FROM app_user WHERE email = %s OR username = %s OR email = %s LIMIT 1",
                    (normalized_email, normalized_email, normalized_username),
                ).fetchone()
                if clash:
                    raise ConstraintViolation("email or username already exists", {"field": "email"})
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, username, is_active, is_verified, meta)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        normalized_email,
                        normalized_username,
                        is_active,
                        is_verified,
                        json.dumps(meta or {}),
                    ),
                ).fetchone()
        except (errors.UniqueViolation, errors.CheckViolation):
            raise ConstraintViolation("email or username already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_identity(self, identity: str) -> Optional[User]:
        key = normalize_identity(identity)
        if not key:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s OR username = %s LIMIT 1",
                (key, key),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._user_from_row(r) for r in rows]

    def update_user(
        self,
        user_id: str,
        *,
        is_active: Optional[bool] = None,
        is_verified: Optional[bool] = None,
        last_login_at: Optional[datetime] = None,
        meta: Optional[dict] = None,
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                   SET is_active = COALESCE(%s, is_active),
                       is_verified = COALESCE(%s, is_verified),
                       last_login_at = COALESCE(%s, last_login_at),
                       meta = COALESCE(meta, '{}'::jsonb) || COALESCE(%s::jsonb, '{}'::jsonb),
                       updated_at = now()
                 WHERE id = %s
                RETURNING *
                """,
                (
                    is_active,
                    is_verified,
                    last_login_at,
                    json.dumps(meta) if meta is not None else None,
                    user_id,
                ),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                       SET password_hash = EXCLUDED.password_hash,
                           password_algo = EXCLUDED.password_algo,
                           last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[PasswordRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_credential WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return PasswordRecord(
            user_id=str(row["user_id"]),
            password_hash=row["password_hash"],
            password_algo=row.get("password_algo") or "argon2id",
            created_at=row["created_at"],
            last_updated_at=row.get("last_updated_at"),
        )

    # -- roles ------------------------------------------------------------

    def upsert_role(
        self, name: str, permissions: Iterable[str], description: Optional[str] = None
    ) -> Role:
        perms = sorted(normalize_permissions(permissions))
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO role (name, permissions, description)
                VALUES (%s, %s, %s)
                ON CONFLICT (name) DO UPDATE
                   SET permissions = EXCLUDED.permissions,
                       description = COALESCE(EXCLUDED.description, role.description),
                       updated_at = now()
                RETURNING *
                """,
                (name, perms, description),
            ).fetchone()
        return self._role_from_row(row)

    def get_role(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE name = %s", (name,)).fetchone()
        return self._role_from_row(row) if row else None

    def list_roles(self) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM role ORDER BY name").fetchall()
        return [self._role_from_row(r) for r in rows]

    def get_roles(self, user_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT role_name FROM user_role WHERE user_id = %s ORDER BY assigned_at",
                (user_id,),
            ).fetchall()
        return [r["role_name"] for r in rows]

    def assign_role(self, user_id: str, role_name: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_role (user_id, role_name) VALUES (%s, %s)
                    ON CONFLICT (user_id, role_name) DO NOTHING
                    """,
                    (user_id, role_name),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user or role does not exist", {"user_id": user_id, "role": role_name}
            )

    def remove_role(self, user_id: str, role_name: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM user_role WHERE user_id = %s AND role_name = %s",
                (user_id, role_name),
            )
            return cur.rowcount > 0

    # -- refresh token lineages ------------------------------------------

    def _insert_token(self, conn, token: RefreshToken) -> None:
        conn.execute(
            """
            INSERT INTO refresh_token (
                id, user_id, lineage_id, token_hash, parent_id,
                issued_at, expires_at, user_agent, ip_addr
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                token.id,
                token.user_id,
                token.lineage_id,
                token.token_hash,
                token.parent_id,
                token.issued_at,
                token.expires_at,
                token.user_agent,
                token.ip_addr,
            ),
        )

    def create_lineage(self, token: RefreshToken) -> TokenLineage:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO token_lineage (id, user_id, tip_id, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (token.lineage_id, token.user_id, token.id, token.issued_at),
                )
                self._insert_token(conn, token)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": token.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token collision", {"field": "token_hash"})
        return TokenLineage(
            id=token.lineage_id,
            user_id=token.user_id,
            tip_id=token.id,
            created_at=token.issued_at,
        )

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._token_from_row(row) if row else None

    def get_lineage(self, lineage_id: str) -> Optional[TokenLineage]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM token_lineage WHERE id = %s", (lineage_id,)
            ).fetchone()
        return self._lineage_from_row(row) if row else None

    def advance_lineage_tip(
        self,
        lineage_id: str,
        expected_tip_id: str,
        successor: RefreshToken,
        now: datetime,
    ) -> bool:
        """Compare-and-swap the lineage tip inside one transaction.

        The conditional UPDATE takes the row lock, so of two concurrent callers
        presenting the same tip exactly one sees ``rowcount == 1``.
        """
        with self._connect() as conn:
            self._insert_token(conn, successor)
            cur = conn.execute(
                """
                UPDATE token_lineage
                   SET tip_id = %s
                 WHERE id = %s AND tip_id = %s AND revoked_at IS NULL
                """,
                (successor.id, lineage_id, expected_tip_id),
            )
            if cur.rowcount != 1:
                conn.rollback()
                return False
            conn.execute(
                """
                UPDATE refresh_token
                   SET revoked_at = %s, revoked_reason = 'rotated'
                 WHERE id = %s AND revoked_at IS NULL
                """,
                (now, expected_tip_id),
            )
            return True

    def revoke_lineage(self, lineage_id: str, reason: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE token_lineage
                   SET revoked_at = %s, revoked_reason = %s
                 WHERE id = %s AND revoked_at IS NULL
                RETURNING tip_id
                """,
                (now, reason, lineage_id),
            ).fetchone()
            if not row:
                return False
            conn.execute(
                """
                UPDATE refresh_token
                   SET revoked_at = %s, revoked_reason = %s
                 WHERE id = %s AND revoked_at IS NULL
                """,
                (now, reason, row["tip_id"]),
            )
            return True

    def list_user_lineages(self, user_id: str, *, active_only: bool = True) -> List[TokenLineage]:
        query = "SELECT * FROM token_lineage WHERE user_id = %s"
        if active_only:
            query += " AND revoked_at IS NULL"
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY created_at", (user_id,)).fetchall()
        return [self._lineage_from_row(r) for r in rows]

    def list_lineage_tokens(self, lineage_id: str) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_token WHERE lineage_id = %s ORDER BY issued_at",
                (lineage_id,),
            ).fetchall()
        return [self._token_from_row(r) for r in rows]

    def prune_lineages(self, now: datetime, *, revoked_before: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM token_lineage l
                 USING refresh_token t
                 WHERE t.id = l.tip_id
                   AND (l.revoked_at <= %s OR t.expires_at <= %s)
                """,
                (revoked_before or now, now),
            )
            return cur.rowcount

    # -- service registry -------------------------------------------------

    def upsert_service(self, service: Microservice) -> Microservice:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO microservice (name, url, health_check_url, description, allowed_roles)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (name) DO UPDATE
                   SET url = EXCLUDED.url,
                       health_check_url = EXCLUDED.health_check_url,
                       description = EXCLUDED.description,
                       allowed_roles = EXCLUDED.allowed_roles,
                       updated_at = now()
                RETURNING *
                """,
                (
                    service.name,
                    service.url,
                    service.health_check_url,
                    service.description,
                    sorted(service.allowed_roles),
                ),
            ).fetchone()
        return self._service_from_row(row)

    def get_service(self, name: str) -> Optional[Microservice]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM microservice WHERE name = %s", (name,)).fetchone()
        return self._service_from_row(row) if row else None

    def list_services(self) -> List[Microservice]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM microservice ORDER BY name").fetchall()
        return [self._service_from_row(r) for r in rows]

    def delete_service(self, name: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM microservice WHERE name = %s", (name,))
            return cur.rowcount > 0

    def record_probe_result(
        self,
        name: str,
        liveness: Liveness,
        probed_at: datetime,
        error: Optional[str] = None,
    ) -> Optional[Liveness]:
        with self._connect() as conn:
            prev = conn.execute(
                "SELECT liveness FROM microservice WHERE name = %s FOR UPDATE", (name,)
            ).fetchone()
            if not prev:
                return None
            conn.execute(
                """
                UPDATE microservice
                   SET liveness = %s,
                       last_probe_at = %s,
                       last_error = %s,
                       consecutive_failures = CASE WHEN %s THEN 0 ELSE consecutive_failures + 1 END
                 WHERE name = %s
                """,
                (liveness.value, probed_at, error, liveness == Liveness.HEALTHY, name),
            )
        return Liveness(prev["liveness"])

    # -- audit ------------------------------------------------------------

    def append_audit(self, entry: AuditEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_entry (
                    id, occurred_at, actor, action, target, outcome,
                    severity, ip_addr, user_agent, meta
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.timestamp,
                    entry.actor,
                    entry.action,
                    entry.target,
                    entry.outcome,
                    entry.severity,
                    entry.ip_addr,
                    entry.user_agent,
                    json.dumps(entry.meta) if entry.meta else None,
                ),
            )

    def list_audit(
        self,
        limit: int = 100,
        *,
        actor: Optional[str] = None,
        action: Optional[str] = None,
    ) -> List[AuditEntry]:
        clauses: list[str] = []
        params: list[Any] = []
        if actor is not None:
            clauses.append("actor = %s")
            params.append(actor)
        if action is not None:
            clauses.append("action = %s")
            params.append(action)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_entry {where} ORDER BY occurred_at DESC LIMIT %s",
                tuple(params),
            ).fetchall()
        return [self._audit_from_row(r) for r in rows]

    # -- system config ----------------------------------------------------

    def list_config_entries(self) -> Dict[str, SystemConfigEntry]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM system_config").fetchall()
        return {r["key"]: self._config_from_row(r) for r in rows}

    def set_config_entry(self, entry: SystemConfigEntry) -> SystemConfigEntry:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO system_config (key, value, data_type, description, updated_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (key) DO UPDATE
                   SET value = EXCLUDED.value,
                       data_type = EXCLUDED.data_type,
                       description = COALESCE(EXCLUDED.description, system_config.description),
                       updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                (
                    entry.key,
                    entry.value,
                    entry.data_type.value,
                    entry.description,
                    entry.updated_at,
                ),
            ).fetchone()
        return self._config_from_row(row)
