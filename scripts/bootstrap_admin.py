#!/usr/bin/env python3
"""Seed default roles and config, then create or promote an administrator.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123!

    # Also register the sample microservices:
    python scripts/bootstrap_admin.py --email admin@example.com --password ... --demo-services

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_USERNAME: Username for the admin user (default: admin)
    ADMIN_PASSWORD: Password for the admin user (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

DEFAULT_ROLES = {
    "super_admin": (
        "Full system administrator",
        [
            "users.create", "users.read", "users.update", "users.delete",
            "roles.create", "roles.read", "roles.update", "roles.delete",
            "microservices.create", "microservices.read", "microservices.update", "microservices.delete",
            "system.config", "system.logs", "system.health",
            "dashboard.view", "dashboard.analytics",
        ],
    ),
    "admin": (
        "Administrator with management permissions",
        [
            "users.create", "users.read", "users.update",
            "roles.read",
            "microservices.read", "microservices.update",
            "dashboard.view",
        ],
    ),
    "user": (
        "Basic system user",
        ["profile.read", "profile.update", "dashboard.view"],
    ),
}

DEFAULT_CONFIG = [
    ("system.name", "Centralized Authentication System", "string", "System display name"),
    ("auth.max_login_attempts", "5", "number", "Failed logins before lockout"),
    ("auth.lockout_duration", "15", "number", "Lockout duration in minutes"),
    ("auth.lockout_window", "15", "number", "Failure counting window in minutes"),
    ("jwt.access_token_expires", "15m", "duration", "Access token lifetime"),
    ("jwt.refresh_token_expires", "7d", "duration", "Refresh token lifetime"),
    ("registry.probe_interval", "30s", "duration", "Health probe interval"),
    ("audit.failure_policy", "fail_closed", "string", "Behaviour when an audit write fails"),
    ("system.maintenance_mode", "false", "boolean", "Maintenance mode flag"),
]

DEMO_SERVICES = [
    (
        "main-app",
        "Main application of the ecosystem",
        "http://localhost:8000",
        "http://localhost:8000/health",
        ["super_admin", "admin", "user"],
    ),
    (
        "products-api",
        "Product management microservice",
        "http://localhost:8001",
        "http://localhost:8001/api/health",
        ["super_admin", "admin"],
    ),
    (
        "reports-service",
        "Reporting and analytics",
        "http://localhost:8002",
        "http://localhost:8002/health",
        ["super_admin", "admin"],
    ),
]


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def seed_defaults(runtime, *, demo_services: bool = False) -> dict:
    """Upsert the default roles and insert config entries that are not set yet."""
    for name, (description, permissions) in DEFAULT_ROLES.items():
        runtime.rbac.upsert_role(name, permissions, description)

    existing = runtime.system_config.list_entries()
    created_config = 0
    for key, value, data_type, description in DEFAULT_CONFIG:
        if key in existing:
            continue
        runtime.system_config.set(key, value, data_type, description=description)
        created_config += 1

    created_services = 0
    if demo_services:
        for name, description, url, health_url, roles in DEMO_SERVICES:
            if runtime.store.get_service(name) is not None:
                continue
            runtime.registry.register(
                name,
                url,
                health_check_url=health_url,
                description=description,
                allowed_roles=roles,
            )
            created_services += 1
    return {"roles": len(DEFAULT_ROLES), "config": created_config, "services": created_services}


def bootstrap_admin(
    email: str,
    password: str,
    *,
    username: str = "admin",
    demo_services: bool = False,
    dry_run: bool = False,
) -> dict:
    """Create or promote the super_admin principal.

    Returns:
        dict with user_id, email, and status ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from ssoauth.service.runtime import get_runtime

    runtime = get_runtime()
    existing_user = runtime.store.get_user_by_identity(email)

    if dry_run:
        action = "promote" if existing_user else "create"
        print(f"[DRY RUN] Would seed defaults and {action} super_admin {email}")
        return {"user_id": existing_user.id if existing_user else None, "email": email, "status": "dry_run"}

    seeded = seed_defaults(runtime, demo_services=demo_services)
    print(
        f"Seeded {seeded['roles']} roles, {seeded['config']} config entries, "
        f"{seeded['services']} services"
    )

    if existing_user:
        if "super_admin" in runtime.auth.roles_of(existing_user.id):
            print(f"User {email} already exists as super_admin (id: {existing_user.id})")
            return {"user_id": existing_user.id, "email": email, "status": "already_admin"}
        runtime.auth.assign_role(existing_user.id, "super_admin")
        print(f"Promoted existing user {email} to super_admin (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": email, "status": "promoted"}

    user = runtime.auth.register(
        email,
        password,
        username=username,
        roles=("super_admin",),
        is_verified=True,
    )
    print(f"Created admin user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap roles, config and an admin user for the SSO authority",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME", "admin"),
        help="Admin username (or set ADMIN_USERNAME env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--demo-services",
        action="store_true",
        help="Also register the sample microservices",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        print("Error: JWT_SECRET must be set; tokens signed by the server use the same key")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/ssoauth-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(
            args.email,
            args.password,
            username=args.username,
            demo_services=args.demo_services,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to super_admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already a super_admin.")


if __name__ == "__main__":
    main()
