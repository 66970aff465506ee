"""Contracts and helpers shared by the durable and ephemeral store backends.

The auth services depend only on the two protocols below; ``MemoryStore`` /
``PostgresStore`` satisfy ``CredentialStore`` and ``MemoryCache`` /
``RedisCache`` / ``SyncRedisCache`` satisfy ``EphemeralStore``.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from ipaddress import ip_address
from typing import Any, Dict, List, Optional, Protocol

from hrms.storage.models import (
    AccountStatus,
    ActivityEvent,
    Identity,
    LoginMethod,
    RefreshToken,
    Role,
    Session,
)


class CredentialStore(Protocol):
    def find_identity_by_email(self, email: str) -> Optional[Identity]: ...

    def find_identity_by_id(self, identity_id: str) -> Optional[Identity]: ...

    def create_identity(self, identity: Identity) -> Identity: ...

    def update_identity(self, identity_id: str, **changes: Any) -> Optional[Identity]: ...

    def create_session(self, session: Session) -> Session: ...

    def update_session(self, session_id: str, **changes: Any) -> Optional[Session]: ...

    def create_refresh_token(self, record: RefreshToken) -> RefreshToken: ...

    def update_refresh_token(self, token: str, **changes: Any) -> Optional[RefreshToken]: ...

    def find_refresh_token_by_value(
        self, token: str
    ) -> Optional[tuple[RefreshToken, Optional[Identity]]]: ...

    def rotate_refresh_token(self, presented: str, replacement: RefreshToken) -> bool: ...

    def find_global_allowed_ip(self, ip: str) -> bool: ...

    def record_activity(self, event: ActivityEvent) -> None: ...


class EphemeralStore(Protocol):
    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def delete(self, key: str) -> int: ...

    async def delete_pattern(self, prefix: str) -> int: ...

    async def pop(self, key: str) -> Optional[str]: ...

    async def delete_if_equals(self, key: str, expected: str) -> bool: ...

    async def set_json(self, key: str, value: Any, ttl_seconds: int) -> None: ...

    async def get_json(self, key: str) -> Optional[Any]: ...


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def normalize_ip(raw_ip: Optional[str]) -> str:
    """Canonical text form of an IP; IPv4-mapped IPv6 collapses to IPv4."""
    if not raw_ip:
        return ""
    candidate = raw_ip.strip()
    try:
        parsed = ip_address(candidate)
    except ValueError:
        return candidate
    mapped = getattr(parsed, "ipv4_mapped", None)
    return str(mapped or parsed)


def remaining_ttl_seconds(expires_at: datetime) -> int:
    """TTL for an ephemeral mirror of a record expiring at ``expires_at``.

    Clamped to at least 1 second so Redis never rejects the write.
    """
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))


def dump_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), default=str)


def load_json(raw: Optional[str]) -> Optional[Any]:
    if raw is None:
        return None
    if isinstance(raw, bytes):
        raw = raw.decode()
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        # Corrupted cache entry - treat as a miss
        return None


def identity_from_row(row: Dict[str, Any]) -> Identity:
    raw_ips = row.get("allowed_ips") or []
    if isinstance(raw_ips, str):
        raw_ips = load_json(raw_ips) or []
    raw_permissions = row.get("permissions") or {}
    if isinstance(raw_permissions, str):
        raw_permissions = load_json(raw_permissions) or {}
    return Identity(
        id=str(row["id"]),
        email=row["email"],
        password_hash=row.get("password_hash") or "",
        role=Role(row.get("role") or Role.EMPLOYEE.value),
        status=AccountStatus(row.get("status") or AccountStatus.ACTIVE.value),
        login_method=LoginMethod(row.get("login_method") or LoginMethod.GENERAL.value),
        allowed_ips=list(raw_ips),
        team_name=row.get("team_name"),
        team_no=row.get("team_no"),
        first_name=row.get("first_name"),
        last_name=row.get("last_name"),
        phone=row.get("phone"),
        address=row.get("address"),
        city=row.get("city"),
        postcode=row.get("postcode"),
        country=row.get("country"),
        avatar=row.get("avatar"),
        is_email_verified=bool(row.get("is_email_verified")),
        role_id=row.get("role_id"),
        role_name=row.get("role_name"),
        permissions=dict(raw_permissions),
        last_login_at=row.get("last_login_at"),
        last_login_ip=row.get("last_login_ip"),
        password_changed_at=row.get("password_changed_at"),
        created_at=row.get("created_at") or datetime.now(timezone.utc),
        deleted_at=row.get("deleted_at"),
    )


IDENTITY_MUTABLE_FIELDS: frozenset[str] = frozenset(
    {
        "password_hash",
        "role",
        "status",
        "login_method",
        "allowed_ips",
        "team_name",
        "first_name",
        "last_name",
        "phone",
        "address",
        "city",
        "postcode",
        "country",
        "avatar",
        "is_email_verified",
        "permissions",
        "last_login_at",
        "last_login_ip",
        "password_changed_at",
        "deleted_at",
    }
)


def check_identity_changes(changes: Dict[str, Any]) -> None:
    unknown = set(changes) - IDENTITY_MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown identity fields: {sorted(unknown)}")


def ip_list(values: Optional[List[str]]) -> List[str]:
    return [normalize_ip(v) if v != "*" else v for v in (values or []) if v]
