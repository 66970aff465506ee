from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from hrms.logging import get_logger
from hrms.storage.common import (
    check_identity_changes,
    identity_from_row,
    ip_list,
    normalize_email,
    normalize_ip,
)
from hrms.storage.errors import ConstraintViolation
from hrms.storage.models import (
    ActivityEvent,
    ActivityType,
    Identity,
    RefreshToken,
    Session,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS hr_identity (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL DEFAULT '',
        role TEXT NOT NULL DEFAULT 'EMPLOYEE',
        status TEXT NOT NULL DEFAULT 'Active',
        login_method TEXT NOT NULL DEFAULT 'General',
        allowed_ips JSONB NOT NULL DEFAULT '[]'::jsonb,
        team_name TEXT,
        team_no TEXT,
        first_name TEXT,
        last_name TEXT,
        phone TEXT,
        address TEXT,
        city TEXT,
        postcode TEXT,
        country TEXT,
        avatar TEXT,
        is_email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        role_id TEXT,
        role_name TEXT,
        permissions JSONB NOT NULL DEFAULT '{}'::jsonb,
        last_login_at TIMESTAMPTZ,
        last_login_ip TEXT,
        password_changed_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        deleted_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        identity_id UUID NOT NULL REFERENCES hr_identity(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        ip_address TEXT,
        user_agent TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        token TEXT PRIMARY KEY,
        identity_id UUID NOT NULL REFERENCES hr_identity(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        ip_address TEXT,
        user_agent TEXT,
        is_revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        replaces TEXT,
        replaced_by TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS global_allowed_ip (
        ip_address TEXT PRIMARY KEY,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS activity_log (
        id BIGSERIAL PRIMARY KEY,
        identity_id UUID NOT NULL,
        action TEXT NOT NULL,
        description TEXT NOT NULL,
        ip_address TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)

_JSON_COLUMNS = frozenset({"allowed_ips", "permissions"})
_SESSION_COLUMNS = frozenset({"expires_at", "ip_address", "user_agent", "is_active"})
_REFRESH_COLUMNS = frozenset(
    {"expires_at", "is_revoked", "revoked_at", "replaces", "replaced_by"}
)


def _column_value(name: str, value: Any) -> Any:
    if name in _JSON_COLUMNS:
        return json.dumps(value)
    if hasattr(value, "value"):
        # str enums are stored by value
        return value.value
    return value


def _session_from_row(row: Dict[str, Any]) -> Session:
    return Session(
        id=str(row["id"]),
        identity_id=str(row["identity_id"]),
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        ip_address=row.get("ip_address"),
        user_agent=row.get("user_agent"),
        is_active=bool(row.get("is_active", True)),
    )


def _refresh_from_row(row: Dict[str, Any]) -> RefreshToken:
    return RefreshToken(
        token=row["token"],
        identity_id=str(row["identity_id"]),
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        ip_address=row.get("ip_address"),
        user_agent=row.get("user_agent"),
        is_revoked=bool(row.get("is_revoked")),
        revoked_at=row.get("revoked_at"),
        replaces=row.get("replaces"),
        replaced_by=row.get("replaced_by"),
    )


class PostgresStore:
    """Postgres-backed durable store for identities, sessions and refresh records."""

    def __init__(self, dsn: str, *, ensure_schema: bool = True) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if ensure_schema:
            self.ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # identities
    def find_identity_by_email(self, email: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM hr_identity WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return identity_from_row(row) if row else None

    def find_identity_by_id(self, identity_id: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM hr_identity WHERE id = %s", (identity_id,)
            ).fetchone()
        return identity_from_row(row) if row else None

    def create_identity(self, identity: Identity) -> Identity:
        identity.email = normalize_email(identity.email)
        identity.allowed_ips = ip_list(identity.allowed_ips)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO hr_identity (
                        id, email, password_hash, role, status, login_method, allowed_ips,
                        team_name, team_no, first_name, last_name, phone, address, city,
                        postcode, country, avatar, is_email_verified, role_id, role_name,
                        permissions, password_changed_at, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s,
                            %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        identity.id,
                        identity.email,
                        identity.password_hash,
                        identity.role.value,
                        identity.status.value,
                        identity.login_method.value,
                        json.dumps(identity.allowed_ips),
                        identity.team_name,
                        identity.team_no,
                        identity.first_name,
                        identity.last_name,
                        identity.phone,
                        identity.address,
                        identity.city,
                        identity.postcode,
                        identity.country,
                        identity.avatar,
                        identity.is_email_verified,
                        identity.role_id,
                        identity.role_name,
                        json.dumps(identity.permissions),
                        identity.password_changed_at,
                        identity.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return identity

    def update_identity(self, identity_id: str, **changes: Any) -> Optional[Identity]:
        check_identity_changes(changes)
        if not changes:
            return self.find_identity_by_id(identity_id)
        if "allowed_ips" in changes:
            changes["allowed_ips"] = ip_list(changes["allowed_ips"])
        # Column names come from the fixed allow-list above
        assignments = ", ".join(f"{name} = %s" for name in changes)
        params = [_column_value(name, value) for name, value in changes.items()]
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE hr_identity SET {assignments} WHERE id = %s RETURNING *",
                (*params, identity_id),
            ).fetchone()
        return identity_from_row(row) if row else None

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, identity_id, created_at, expires_at, ip_address, user_agent, is_active)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.identity_id,
                        session.created_at,
                        session.expires_at,
                        session.ip_address,
                        session.user_agent,
                        session.is_active,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "session identity missing", {"identity_id": session.identity_id}
            )
        except errors.UniqueViolation:
            raise ConstraintViolation("session already exists", {"field": "id"})
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return _session_from_row(row) if row else None

    def update_session(self, session_id: str, **changes: Any) -> Optional[Session]:
        unknown = set(changes) - _SESSION_COLUMNS
        if unknown:
            raise ValueError(f"Unknown session fields: {sorted(unknown)}")
        if not changes:
            return self.get_session(session_id)
        assignments = ", ".join(f"{name} = %s" for name in changes)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE auth_session SET {assignments} WHERE id = %s RETURNING *",
                (*changes.values(), session_id),
            ).fetchone()
        return _session_from_row(row) if row else None

    # refresh tokens
    def create_refresh_token(self, record: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                self._insert_refresh_token(conn, record)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "refresh token identity missing", {"identity_id": record.identity_id}
            )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        return record

    @staticmethod
    def _insert_refresh_token(conn, record: RefreshToken) -> None:
        conn.execute(
            """
            INSERT INTO refresh_token (token, identity_id, created_at, expires_at, ip_address, user_agent, is_revoked, replaces)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                record.token,
                record.identity_id,
                record.created_at,
                record.expires_at,
                record.ip_address,
                record.user_agent,
                record.is_revoked,
                record.replaces,
            ),
        )

    def update_refresh_token(self, token: str, **changes: Any) -> Optional[RefreshToken]:
        unknown = set(changes) - _REFRESH_COLUMNS
        if unknown:
            raise ValueError(f"Unknown refresh token fields: {sorted(unknown)}")
        if not changes:
            return None
        assignments = ", ".join(f"{name} = %s" for name in changes)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE refresh_token SET {assignments} WHERE token = %s RETURNING *",
                (*changes.values(), token),
            ).fetchone()
        return _refresh_from_row(row) if row else None

    def find_refresh_token_by_value(
        self, token: str
    ) -> Optional[tuple[RefreshToken, Optional[Identity]]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
            if not row:
                return None
            owner = conn.execute(
                "SELECT * FROM hr_identity WHERE id = %s", (row["identity_id"],)
            ).fetchone()
        return _refresh_from_row(row), identity_from_row(owner) if owner else None

    def rotate_refresh_token(self, presented: str, replacement: RefreshToken) -> bool:
        """Revoke ``presented`` and insert ``replacement`` in one transaction.

        The revoke is conditional on the row still being unrevoked, so two
        concurrent rotations of the same token cannot both succeed.
        """
        try:
            with self._connect() as conn, conn.transaction():
                revoked = conn.execute(
                    """
                    UPDATE refresh_token
                    SET is_revoked = TRUE, revoked_at = %s, replaced_by = %s
                    WHERE token = %s AND is_revoked = FALSE
                    RETURNING token
                    """,
                    (utcnow(), replacement.token, presented),
                ).fetchone()
                if not revoked:
                    return False
                self._insert_refresh_token(conn, replacement)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        return True

    # network allow-list
    def add_global_allowed_ip(self, ip: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO global_allowed_ip (ip_address) VALUES (%s) ON CONFLICT (ip_address) DO NOTHING",
                (normalize_ip(ip),),
            )

    def find_global_allowed_ip(self, ip: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM global_allowed_ip WHERE ip_address = %s", (normalize_ip(ip),)
            ).fetchone()
        return row is not None

    # audit
    def record_activity(self, event: ActivityEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO activity_log (identity_id, action, description, ip_address, created_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (
                    event.identity_id,
                    event.action.value,
                    event.description,
                    event.ip_address,
                    event.created_at,
                ),
            )

    def list_activity(self, identity_id: Optional[str] = None) -> List[ActivityEvent]:
        with self._connect() as conn:
            if identity_id:
                rows = conn.execute(
                    "SELECT * FROM activity_log WHERE identity_id = %s ORDER BY id",
                    (identity_id,),
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM activity_log ORDER BY id").fetchall()
        return [
            ActivityEvent(
                identity_id=str(row["identity_id"]),
                action=ActivityType(row["action"]),
                description=row["description"],
                ip_address=row.get("ip_address"),
                created_at=row["created_at"],
            )
            for row in rows
        ]
