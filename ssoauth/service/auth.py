from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Protocol, Sequence, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from ssoauth.config import Settings
from ssoauth.logging import get_logger
from ssoauth.service.audit import SYSTEM_ACTOR, AuditLog
from ssoauth.service.errors import (
    AccountInactive,
    AccountLocked,
    ConflictError,
    InvalidCredentials,
    NotFoundError,
    Unauthorized,
    ValidationError,
)
from ssoauth.service.lockout import LockoutTracker
from ssoauth.service.rbac import RBACResolver
from ssoauth.service.tokens import AccessClaims, TokenEngine, TokenPair
from ssoauth.storage.errors import ConstraintViolation, StoreUnavailable
from ssoauth.storage.models import PasswordRecord, RevocationReason, User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
MIN_PASSWORD_LENGTH = 8
ANONYMOUS_ACTOR = "anonymous"


class CredentialStore(Protocol):
    def create_user(
        self,
        email: str,
        username: Optional[str] = None,
        *,
        is_active: bool = True,
        is_verified: bool = False,
        meta: Optional[dict] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_identity(self, identity: str) -> Optional[User]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def update_user(
        self,
        user_id: str,
        *,
        is_active: Optional[bool] = None,
        is_verified: Optional[bool] = None,
        last_login_at: Optional[datetime] = None,
        meta: Optional[dict] = None,
    ) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[PasswordRecord]: ...

    def get_roles(self, user_id: str) -> List[str]: ...

    def assign_role(self, user_id: str, role_name: str) -> None: ...

    def remove_role(self, user_id: str, role_name: str) -> bool: ...


@dataclass
class LoginResult:
    user: User
    roles: Tuple[str, ...]
    tokens: TokenPair


class Authenticator:
    """Password login guarded by the lockout tracker.

    Each attempt runs: lockout check, credential check, then either
    ``record_failure`` plus a failure audit or ``record_success``, token
    issuance and a success audit. Locked identities are rejected before the
    credential store is consulted; a throwaway hash verification keeps the
    response time in the same class as a real check.
    """

    def __init__(
        self,
        store: CredentialStore,
        lockout: LockoutTracker,
        tokens: TokenEngine,
        rbac: RBACResolver,
        audit: AuditLog,
        settings: Settings,
    ) -> None:
        self.store = store
        self.lockout = lockout
        self.tokens = tokens
        self.rbac = rbac
        self.audit = audit
        self.settings = settings
        self.clock = tokens.clock
        self._pwd_hasher = PasswordHasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            parallelism=settings.password_hash_parallelism,
            type=Type.ID,
        )
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))

    # -- passwords --------------------------------------------------------

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def _burn_verify(self, password: str) -> None:
        """Spend one verification on a throwaway hash."""
        try:
            self._pwd_hasher.verify(self._dummy_hash, password or "")
        except (InvalidHash, VerificationError):
            pass

    def _verify_password(self, user: User, password: str) -> bool:
        record = self.store.get_password_record(user.id)
        if not record:
            logger.warning("password_record_missing", user_id=user.id)
            self._burn_verify(password)
            return False
        if record.password_algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user.id, algo=record.password_algo)
            self._burn_verify(password)
            return False
        try:
            self._pwd_hasher.verify(record.password_hash, password)
        except (InvalidHash, VerificationError):
            return False
        if self._pwd_hasher.check_needs_rehash(record.password_hash):
            self.store.save_password(user.id, *self._hash_password(password))
            logger.info("password_rehashed", user_id=user.id)
        return True

    @staticmethod
    def _validate_password(password: str) -> None:
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )

    # -- login ------------------------------------------------------------

    async def login(
        self,
        identity: str,
        password: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        status = await self.lockout.check_allowed(identity, ip_addr)
        if not status.allowed:
            self._burn_verify(password)
            logger.info("login_rejected_locked", identity=identity)
            self.audit.record(
                "auth.login",
                actor=ANONYMOUS_ACTOR,
                target=identity,
                outcome="failure",
                severity="warning",
                ip_addr=ip_addr,
                user_agent=user_agent,
                meta={"reason": "account_locked"},
            )
            raise AccountLocked(status.locked_until)

        user = self.store.get_user_by_identity(identity)
        if user is None:
            self._burn_verify(password)
            await self._record_failure(identity, None, "unknown_identity", ip_addr, user_agent)
            raise InvalidCredentials()

        if not user.is_active or (self.settings.require_verified_email and not user.is_verified):
            self._burn_verify(password)
            reason = "inactive" if not user.is_active else "unverified"
            logger.info("login_rejected_inactive", user_id=user.id, reason=reason)
            self.audit.record(
                "auth.login",
                actor=user.id,
                target=user.id,
                outcome="failure",
                ip_addr=ip_addr,
                user_agent=user_agent,
                meta={"reason": f"account_{reason}"},
            )
            raise AccountInactive()

        if not self._verify_password(user, password):
            await self._record_failure(identity, user, "bad_password", ip_addr, user_agent)
            raise InvalidCredentials()

        await self.lockout.record_success(identity, ip_addr)
        roles = tuple(self.store.get_roles(user.id))
        pair = self.tokens.issue(user, roles, user_agent=user_agent, ip_addr=ip_addr)
        try:
            self.audit.record(
                "auth.login",
                actor=user.id,
                target=user.id,
                outcome="success",
                ip_addr=ip_addr,
                user_agent=user_agent,
                meta={"lineage_id": pair.lineage_id},
            )
        except StoreUnavailable:
            # revoke the unaudited lineage before propagating
            self.tokens.revoke_lineage(pair.lineage_id, reason=RevocationReason.AUDIT_FAILED)
            raise
        self.store.update_user(user.id, last_login_at=self.clock.now())
        logger.info("login_succeeded", user_id=user.id, lineage_id=pair.lineage_id)
        return LoginResult(user=user, roles=roles, tokens=pair)

    async def _record_failure(
        self,
        identity: str,
        user: Optional[User],
        reason: str,
        ip_addr: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        failures = await self.lockout.record_failure(identity, ip_addr)
        actor = user.id if user else ANONYMOUS_ACTOR
        logger.info("login_failed", reason=reason, failures=failures, user_id=user.id if user else None)
        self.audit.record(
            "auth.login",
            actor=actor,
            target=user.id if user else identity,
            outcome="failure",
            ip_addr=ip_addr,
            user_agent=user_agent,
            meta={"reason": reason, "failures": failures},
        )
        if failures == self.lockout.system_config.max_login_attempts():
            self.audit.record(
                "auth.account_locked",
                actor=SYSTEM_ACTOR,
                target=user.id if user else identity,
                outcome="success",
                severity="warning",
                ip_addr=ip_addr,
                user_agent=user_agent,
                meta={"failures": failures},
            )

    # -- session lifecycle ------------------------------------------------

    def refresh(
        self,
        refresh_token: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        return self.tokens.rotate(refresh_token, ip_addr=ip_addr, user_agent=user_agent)

    def logout(self, refresh_token: str, *, ip_addr: Optional[str] = None) -> bool:
        owner = self.tokens.owner_of(refresh_token) if refresh_token else None
        revoked = self.tokens.revoke(refresh_token, reason=RevocationReason.LOGOUT)
        if revoked:
            self.audit.record("auth.logout", actor=owner or ANONYMOUS_ACTOR, target=owner, ip_addr=ip_addr)
        return revoked

    def logout_all(self, user_id: str, *, actor: Optional[str] = None) -> int:
        count = self.tokens.revoke_all(user_id, reason=RevocationReason.LOGOUT_ALL)
        self.audit.record(
            "auth.logout_all",
            actor=actor or user_id,
            target=user_id,
            meta={"lineages_revoked": count},
        )
        return count

    def authorize_request(
        self,
        access_token: str,
        required: str,
        *,
        ip_addr: Optional[str] = None,
    ) -> AccessClaims:
        """Verify ``access_token`` and require ``required`` in its permission snapshot."""
        claims = self.tokens.verify_access(access_token)
        if not self.check_permission(claims, required, ip_addr=ip_addr):
            raise Unauthorized(required)
        return claims

    def check_permission(
        self,
        claims: AccessClaims,
        required: str,
        *,
        ip_addr: Optional[str] = None,
    ) -> bool:
        """Decide ``required`` against the claims' snapshot; denials are audited."""
        if self.rbac.authorize(claims.permissions, required):
            return True
        logger.info("authorization_denied", user_id=claims.sub, required=required)
        self.audit.record(
            "authz.denied",
            actor=claims.sub,
            target=required,
            outcome="failure",
            severity="warning",
            ip_addr=ip_addr,
        )
        return False

    # -- principal administration -----------------------------------------

    def register(
        self,
        email: str,
        password: str,
        *,
        username: Optional[str] = None,
        roles: Sequence[str] = ("user",),
        is_verified: bool = False,
        actor: str = SYSTEM_ACTOR,
    ) -> User:
        if not email or "@" not in email:
            raise ValidationError("valid email required", detail={"field": "email"})
        if username is not None and (not username.strip() or "@" in username):
            raise ValidationError("username must be non-blank without '@'", detail={"field": "username"})
        self._validate_password(password)
        known = self.rbac.known_roles()
        unknown = [r for r in roles if r not in known]
        if unknown:
            raise ValidationError("unknown roles", detail={"roles": unknown})
        try:
            user = self.store.create_user(email, username, is_verified=is_verified)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        self.store.save_password(user.id, *self._hash_password(password))
        for role in roles:
            self.store.assign_role(user.id, role)
        self.audit.record("user.created", actor=actor, target=user.id, meta={"roles": list(roles)})
        logger.info("user_registered", user_id=user.id)
        return user

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    def get_user(self, user_id: str) -> User:
        return self._require_user(user_id)

    def list_users(self, limit: int = 100) -> List[User]:
        """Newest principals first."""
        return self.store.list_users(limit)

    def set_password(self, user_id: str, password: str, *, actor: Optional[str] = None) -> int:
        """Replace the password and revoke every refresh lineage of the principal."""
        self._require_user(user_id)
        self._validate_password(password)
        self.store.save_password(user_id, *self._hash_password(password))
        revoked = self.tokens.revoke_all(user_id, reason=RevocationReason.PASSWORD_CHANGED)
        self.audit.record(
            "user.password_changed",
            actor=actor or user_id,
            target=user_id,
            meta={"lineages_revoked": revoked},
        )
        return revoked

    def deactivate(self, user_id: str, *, actor: str = SYSTEM_ACTOR) -> User:
        self._require_user(user_id)
        user = self.store.update_user(user_id, is_active=False)
        revoked = self.tokens.revoke_all(user_id, reason=RevocationReason.PRINCIPAL_INACTIVE)
        self.audit.record(
            "user.deactivated",
            actor=actor,
            target=user_id,
            severity="warning",
            meta={"lineages_revoked": revoked},
        )
        return user

    def reactivate(self, user_id: str, *, actor: str = SYSTEM_ACTOR) -> User:
        self._require_user(user_id)
        user = self.store.update_user(user_id, is_active=True)
        self.audit.record("user.reactivated", actor=actor, target=user_id)
        return user

    def assign_role(self, user_id: str, role: str, *, actor: str = SYSTEM_ACTOR) -> List[str]:
        self._require_user(user_id)
        if self.rbac.get_role(role) is None:
            raise NotFoundError("role not found", detail={"role": role})
        self.store.assign_role(user_id, role)
        self.audit.record("user.role_assigned", actor=actor, target=user_id, meta={"role": role})
        return self.store.get_roles(user_id)

    def remove_role(self, user_id: str, role: str, *, actor: str = SYSTEM_ACTOR) -> List[str]:
        self._require_user(user_id)
        if self.store.remove_role(user_id, role):
            self.audit.record("user.role_removed", actor=actor, target=user_id, meta={"role": role})
        return self.store.get_roles(user_id)

    def roles_of(self, user_id: str) -> List[str]:
        return self.store.get_roles(user_id)

    def permissions_of(self, roles: Iterable[str]) -> frozenset[str]:
        return self.rbac.resolve(roles)
