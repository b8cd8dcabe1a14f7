"""Helpers shared between the memory and postgres store implementations."""

from __future__ import annotations

import hashlib
from typing import Iterable, Optional

from ssoauth.storage.errors import ConstraintViolation


def normalize_identity(identity: Optional[str]) -> str:
    """Canonical form used for identity lookups and lockout keys."""
    return (identity or "").strip().lower()


def check_identity_shape(email: str, username: Optional[str]) -> None:
    """Keep the email and username namespaces disjoint.

    Emails carry an ``@`` and usernames never do, so one login identity can
    only ever name one principal.
    """
    if "@" not in email:
        raise ConstraintViolation("email must contain '@'", {"field": "email"})
    if username and "@" in username:
        raise ConstraintViolation("username must not contain '@'", {"field": "username"})


def hash_refresh_token(raw_token: str) -> str:
    """Digest stored in place of the opaque refresh token value."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def normalize_permissions(permissions: Iterable[str]) -> frozenset[str]:
    return frozenset(p.strip() for p in permissions if p and p.strip())
