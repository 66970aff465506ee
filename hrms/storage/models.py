from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    EMPLOYEE = "EMPLOYEE"
    MANAGER = "MANAGER"
    HR = "HR"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


class AccountStatus(str, Enum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"
    SUSPENDED = "Suspended"


class LoginMethod(str, Enum):
    """How an identity is allowed to sign in."""

    GENERAL = "General"
    OTP = "Otp"
    IP_ADDRESS = "Ip_address"
    IP_OTP = "Ip_Otp"


class OtpChannel(str, Enum):
    EMAIL = "EMAIL"
    SMS = "SMS"


class ActivityType(str, Enum):
    CREATE = "CREATE"
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    UPDATE = "UPDATE"
    PASSWORD_CHANGE = "PASSWORD_CHANGE"
    STATUS_CHANGE = "STATUS_CHANGE"
    HARD_DELETE = "HARD_DELETE"


# Permission object given to self-registered employees. Its keys are opaque to
# this package; they are forwarded to callers as-is.
DEFAULT_EMPLOYEE_PERMISSIONS: Dict[str, Any] = {
    "dashboard": {"view": True},
    "profile": {"view": True, "edit": True},
    "tasks": {"view": True},
    "notifications": {"view": True},
}


@dataclass
class Identity:
    id: str
    email: str
    password_hash: str
    role: Role = Role.EMPLOYEE
    status: AccountStatus = AccountStatus.ACTIVE
    login_method: LoginMethod = LoginMethod.GENERAL
    allowed_ips: List[str] = field(default_factory=list)
    team_name: Optional[str] = None
    team_no: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    postcode: Optional[str] = None
    country: Optional[str] = None
    avatar: Optional[str] = None
    is_email_verified: bool = False
    role_id: Optional[str] = None
    role_name: Optional[str] = None
    permissions: Dict[str, Any] = field(default_factory=dict)
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    password_changed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE and not self.is_deleted

    def snapshot(self) -> Dict[str, str]:
        """Minimal view mirrored next to a session in the ephemeral store."""
        return {"identity_id": self.id, "email": self.email, "role": self.role.value}


@dataclass
class Session:
    id: str
    identity_id: str
    created_at: datetime
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    is_active: bool = True

    @classmethod
    def new(
        cls,
        identity_id: str,
        ttl_seconds: int,
        ip_address: str | None = None,
        user_agent: str | None = None,
        *,
        session_id: str | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=session_id or str(uuid.uuid4()),
            identity_id=identity_id,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            ip_address=ip_address,
            user_agent=user_agent,
        )


@dataclass
class RefreshToken:
    token: str
    identity_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    is_revoked: bool = False
    revoked_at: Optional[datetime] = None
    # Rotation chain: the predecessor this token replaces, and its successor
    replaces: Optional[str] = None
    replaced_by: Optional[str] = None

    @classmethod
    def new(
        cls,
        token: str,
        identity_id: str,
        ttl_seconds: int,
        ip_address: str | None = None,
        user_agent: str | None = None,
        *,
        replaces: str | None = None,
    ) -> "RefreshToken":
        now = utcnow()
        return cls(
            token=token,
            identity_id=identity_id,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            ip_address=ip_address,
            user_agent=user_agent,
            replaces=replaces,
        )

    def is_usable(self, now: datetime | None = None) -> bool:
        return not self.is_revoked and self.expires_at > (now or utcnow())


@dataclass
class PendingRegistration:
    """Registration payload parked in the ephemeral store until OTP confirmation."""

    email: str
    password_hash: str
    first_name: str
    last_name: str
    ip_address: Optional[str] = None
    phone_number: Optional[str] = None
    otp_channel: OtpChannel = OtpChannel.EMAIL

    def to_payload(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["otp_channel"] = self.otp_channel.value
        return payload

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "PendingRegistration":
        return cls(
            email=payload["email"],
            password_hash=payload["password_hash"],
            first_name=payload.get("first_name") or "",
            last_name=payload.get("last_name") or "",
            ip_address=payload.get("ip_address"),
            phone_number=payload.get("phone_number"),
            otp_channel=OtpChannel(payload.get("otp_channel") or OtpChannel.EMAIL.value),
        )


@dataclass
class ActivityEvent:
    identity_id: str
    action: ActivityType
    description: str
    ip_address: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
