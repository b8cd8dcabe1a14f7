from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, List, Optional, Protocol

from ssoauth.config import JwtAlgorithm
from ssoauth.logging import get_logger
from ssoauth.service.audit import AuditLog
from ssoauth.service.clock import Clock, SystemClock
from ssoauth.service.errors import (
    InvalidSignature,
    MalformedToken,
    SigningKeyError,
    TokenExpired,
    TokenReused,
    TokenRevoked,
)
from ssoauth.service.rbac import RBACResolver
from ssoauth.storage.common import hash_refresh_token
from ssoauth.storage.models import RefreshToken, RevocationReason, TokenLineage, User

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 32

_DIGESTS = {
    JwtAlgorithm.HS256: hashlib.sha256,
    JwtAlgorithm.HS384: hashlib.sha384,
    JwtAlgorithm.HS512: hashlib.sha512,
}


class TokenStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_roles(self, user_id: str) -> List[str]: ...

    def create_lineage(self, token: RefreshToken) -> TokenLineage: ...

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]: ...

    def get_lineage(self, lineage_id: str) -> Optional[TokenLineage]: ...

    def advance_lineage_tip(
        self,
        lineage_id: str,
        expected_tip_id: str,
        successor: RefreshToken,
        now: datetime,
    ) -> bool: ...

    def revoke_lineage(self, lineage_id: str, reason: str, now: datetime) -> bool: ...

    def list_user_lineages(self, user_id: str, *, active_only: bool = True) -> List[TokenLineage]: ...


@dataclass(frozen=True)
class AccessClaims:
    sub: str
    roles: tuple[str, ...]
    permissions: frozenset[str]
    jti: str
    iat: int
    exp: int
    iss: str
    aud: str
    token_type: str = "access"

    def to_payload(self) -> dict[str, Any]:
        return {
            "sub": self.sub,
            "roles": list(self.roles),
            "permissions": sorted(self.permissions),
            "jti": self.jti,
            "iat": self.iat,
            "exp": self.exp,
            "iss": self.iss,
            "aud": self.aud,
            "token_type": self.token_type,
        }


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_at: datetime
    lineage_id: str
    claims: AccessClaims
    token_type: str = "bearer"


class TokenSigner:
    """HMAC JWS signer/verifier for access tokens.

    Key material is required up front; a missing or short secret raises
    :class:`SigningKeyError` so the process refuses to start.
    """

    def __init__(
        self,
        secret: Optional[str],
        algorithm: JwtAlgorithm | str = JwtAlgorithm.HS256,
        *,
        issuer: str,
        audience: str,
    ) -> None:
        if not secret or len(secret) < MIN_SECRET_LENGTH:
            raise SigningKeyError(
                f"JWT_SECRET must be set and at least {MIN_SECRET_LENGTH} characters"
            )
        try:
            self.algorithm = JwtAlgorithm(algorithm)
        except ValueError as exc:
            raise SigningKeyError(f"unsupported JWT algorithm: {algorithm}") from exc
        self._key = secret.encode()
        self._digest = _DIGESTS[self.algorithm]
        self.issuer = issuer
        self.audience = audience

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._key, signing_input.encode(), self._digest).digest()
        )

    def sign(self, payload: dict[str, Any]) -> str:
        header = {"alg": self.algorithm.value, "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def decode(self, token: str) -> dict[str, Any]:
        """Check structure and signature and return the raw payload."""
        if not token or not isinstance(token, str):
            raise MalformedToken("token missing")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise MalformedToken("token must have three segments")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            raise MalformedToken("token header is not valid JSON")
        if not isinstance(header, dict):
            raise MalformedToken("token header is not an object")
        # reject "none" and any algorithm other than the configured one
        if header.get("alg") != self.algorithm.value:
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise InvalidSignature("unexpected signing algorithm")

        expected_sig = self._signature(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidSignature("signature mismatch")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise MalformedToken("token payload is not valid JSON")
        if not isinstance(payload, dict):
            raise MalformedToken("token payload is not an object")
        return payload


def _epoch(moment: datetime) -> int:
    return int(moment.timestamp())


class TokenEngine:
    """Issue, verify, rotate and revoke access/refresh token pairs.

    Refresh tokens are opaque random strings; the store keeps only their
    SHA-256 digest. Each login starts a lineage whose tip is the only refresh
    token that may be rotated. Presenting any earlier token of the lineage is
    treated as theft and revokes the whole lineage.
    """

    def __init__(
        self,
        store: TokenStore,
        rbac: RBACResolver,
        audit: AuditLog,
        signer: TokenSigner,
        *,
        access_ttl: Optional[Callable[[], timedelta]] = None,
        refresh_ttl: Optional[Callable[[], timedelta]] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.rbac = rbac
        self.audit = audit
        self.signer = signer
        self.clock = clock or SystemClock()
        # callables so system config overrides apply without a restart
        self._access_ttl = access_ttl or (lambda: timedelta(minutes=15))
        self._refresh_ttl = refresh_ttl or (lambda: timedelta(days=7))

    # -- access tokens ----------------------------------------------------

    def _build_claims(self, user_id: str, roles: Iterable[str], now: datetime) -> AccessClaims:
        role_tuple = tuple(dict.fromkeys(roles))
        iat = _epoch(now)
        ttl_seconds = max(1, int(self._access_ttl().total_seconds()))
        return AccessClaims(
            sub=user_id,
            roles=role_tuple,
            permissions=self.rbac.resolve(role_tuple),
            jti=str(uuid.uuid4()),
            iat=iat,
            exp=iat + ttl_seconds,
            iss=self.signer.issuer,
            aud=self.signer.audience,
        )

    def verify_access(self, token: str) -> AccessClaims:
        """Validate an access token using only key material and the clock."""
        payload = self.signer.decode(token)
        if payload.get("token_type") != "access":
            raise MalformedToken("not an access token")
        if payload.get("iss") != self.signer.issuer:
            raise MalformedToken("unexpected issuer")
        aud = payload.get("aud")
        valid_aud = aud == self.signer.audience or (
            isinstance(aud, list) and self.signer.audience in aud
        )
        if not valid_aud:
            raise MalformedToken("unexpected audience")
        try:
            exp = int(payload["exp"])
            iat = int(payload["iat"])
            sub = str(payload["sub"])
            jti = str(payload["jti"])
            roles = tuple(str(r) for r in payload.get("roles") or [])
            permissions = frozenset(str(p) for p in payload.get("permissions") or [])
        except (KeyError, TypeError, ValueError):
            raise MalformedToken("token claims incomplete")
        # no leeway: a token is dead at exactly exp
        if self.clock.now().timestamp() >= exp:
            raise TokenExpired("access token expired")
        return AccessClaims(
            sub=sub,
            roles=roles,
            permissions=permissions,
            jti=jti,
            iat=iat,
            exp=exp,
            iss=payload["iss"],
            aud=self.signer.audience,
        )

    # -- refresh tokens ---------------------------------------------------

    @staticmethod
    def _new_refresh_value() -> str:
        return secrets.token_urlsafe(32)

    def _pair(self, claims: AccessClaims, raw_refresh: str, token: RefreshToken) -> TokenPair:
        return TokenPair(
            access_token=self.signer.sign(claims.to_payload()),
            refresh_token=raw_refresh,
            expires_in=claims.exp - claims.iat,
            refresh_expires_at=token.expires_at,
            lineage_id=token.lineage_id,
            claims=claims,
        )

    def issue(
        self,
        user: User,
        roles: Optional[Iterable[str]] = None,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> TokenPair:
        """Start a new lineage for ``user`` and return its first token pair."""
        now = self.clock.now()
        role_names = list(roles) if roles is not None else self.store.get_roles(user.id)
        claims = self._build_claims(user.id, role_names, now)
        raw_refresh = self._new_refresh_value()
        token = RefreshToken.new(
            user.id,
            str(uuid.uuid4()),
            hash_refresh_token(raw_refresh),
            now,
            self._refresh_ttl(),
            user_agent=user_agent,
            ip_addr=ip_addr,
        )
        self.store.create_lineage(token)
        logger.info("token_pair_issued", user_id=user.id, lineage_id=token.lineage_id)
        return self._pair(claims, raw_refresh, token)

    def _revoke_for_reuse(self, presented: RefreshToken, now: datetime) -> None:
        self.store.revoke_lineage(presented.lineage_id, RevocationReason.REUSE_DETECTED.value, now)
        logger.warning(
            "refresh_token_reuse_detected",
            user_id=presented.user_id,
            lineage_id=presented.lineage_id,
            token_id=presented.id,
        )
        self.audit.record(
            "token.reuse_detected",
            actor=presented.user_id,
            target=presented.lineage_id,
            outcome="failure",
            severity="high",
            meta={"token_id": presented.id},
        )

    def rotate(
        self,
        refresh_token: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> TokenPair:
        """Exchange the lineage tip for a fresh pair; replays revoke the lineage."""
        if not refresh_token:
            raise MalformedToken("refresh token missing")
        now = self.clock.now()
        presented = self.store.get_refresh_token_by_hash(hash_refresh_token(refresh_token))
        if presented is None:
            raise MalformedToken("unknown refresh token")
        lineage = self.store.get_lineage(presented.lineage_id)
        if lineage is None:
            raise MalformedToken("unknown refresh token")

        if lineage.tip_id != presented.id:
            if not lineage.is_revoked:
                self._revoke_for_reuse(presented, now)
            raise TokenReused("refresh token already used")
        if lineage.is_revoked:
            raise TokenRevoked("refresh token revoked")
        if presented.is_expired(now):
            raise TokenExpired("refresh token expired")

        user = self.store.get_user(presented.user_id)
        if user is None or not user.is_active:
            self.store.revoke_lineage(
                lineage.id, RevocationReason.PRINCIPAL_INACTIVE.value, now
            )
            raise TokenRevoked("principal inactive")

        role_names = self.store.get_roles(user.id)
        claims = self._build_claims(user.id, role_names, now)
        raw_refresh = self._new_refresh_value()
        successor = RefreshToken.new(
            user.id,
            lineage.id,
            hash_refresh_token(raw_refresh),
            now,
            self._refresh_ttl(),
            parent_id=presented.id,
            user_agent=user_agent or presented.user_agent,
            ip_addr=ip_addr or presented.ip_addr,
        )
        if not self.store.advance_lineage_tip(lineage.id, presented.id, successor, now):
            # a concurrent rotation of the same tip won; the loser is a replay
            current = self.store.get_lineage(lineage.id)
            if current is not None and current.is_revoked:
                if current.revoked_reason != RevocationReason.REUSE_DETECTED.value:
                    raise TokenRevoked("refresh token revoked")
            else:
                self._revoke_for_reuse(presented, now)
            raise TokenReused("refresh token already used")
        logger.info("refresh_token_rotated", user_id=user.id, lineage_id=lineage.id)
        return self._pair(claims, raw_refresh, successor)

    def revoke(self, refresh_token: str, *, reason: RevocationReason = RevocationReason.LOGOUT) -> bool:
        """Revoke the lineage of ``refresh_token``; unknown or revoked tokens are a no-op."""
        if not refresh_token:
            return False
        presented = self.store.get_refresh_token_by_hash(hash_refresh_token(refresh_token))
        if presented is None:
            return False
        revoked = self.store.revoke_lineage(presented.lineage_id, reason.value, self.clock.now())
        if revoked:
            logger.info(
                "refresh_lineage_revoked",
                user_id=presented.user_id,
                lineage_id=presented.lineage_id,
                reason=reason.value,
            )
        return revoked

    def revoke_lineage(self, lineage_id: str, *, reason: RevocationReason) -> bool:
        return self.store.revoke_lineage(lineage_id, reason.value, self.clock.now())

    def revoke_all(
        self, user_id: str, *, reason: RevocationReason = RevocationReason.LOGOUT_ALL
    ) -> int:
        """Revoke every active lineage of a principal; returns how many were revoked."""
        now = self.clock.now()
        revoked = 0
        for lineage in self.store.list_user_lineages(user_id, active_only=True):
            if self.store.revoke_lineage(lineage.id, reason.value, now):
                revoked += 1
        if revoked:
            logger.info("refresh_lineages_revoked", user_id=user_id, count=revoked, reason=reason.value)
        return revoked

    def owner_of(self, refresh_token: str) -> Optional[str]:
        presented = self.store.get_refresh_token_by_hash(hash_refresh_token(refresh_token))
        return presented.user_id if presented else None
