from __future__ import annotations

import secrets
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from hrms.config import Settings
from hrms.logging import bind_identity, get_logger, hash_email
from hrms.service.activity import ActivityRecorder
from hrms.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    DeliveryError,
    NotFoundError,
)
from hrms.service.notifications import NotificationGateway
from hrms.service.otp import OtpChallenge, OtpPurpose
from hrms.service.passwords import CredentialVerifier
from hrms.service.policy import LoginPolicyEngine
from hrms.service.refresh import RefreshTokenRotator
from hrms.service.schemas import (
    EmailRequest,
    InvitationPassword,
    NewPassword,
    ProfileUpdate,
    RegisterRequest,
    parse_request,
)
from hrms.service.sessions import SessionManager
from hrms.service.tokens import TokenIssuer
from hrms.storage.common import CredentialStore, EphemeralStore, load_json, normalize_email
from hrms.storage.errors import ConstraintViolation
from hrms.storage.models import (
    DEFAULT_EMPLOYEE_PERMISSIONS,
    AccountStatus,
    ActivityType,
    Identity,
    LoginMethod,
    OtpChannel,
    PendingRegistration,
    Role,
    utcnow,
)

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid credentials"
INVALID_OTP = "Invalid or expired OTP"
INACTIVE_ACCOUNT = "Account is not active"
REGISTRATION_EXPIRED = "Registration session expired. Please register again."
FORGOT_PASSWORD_MESSAGE = "If email exists, OTP has been sent"


def pending_registration_key(email: str) -> str:
    return f"pending_registration:{normalize_email(email)}"


def invitation_key(token: str) -> str:
    return f"invitation:{token}"


@dataclass
class AuthContext:
    identity_id: str
    email: str
    role: Role
    session_id: Optional[str] = None


class AuthService:
    """Registration, login, token refresh and password flows.

    Durable records live in ``store``; pending registrations, OTPs and the
    session/refresh mirrors live in ``cache``. Every component is built
    from ``settings`` unless passed in explicitly.
    """

    def __init__(
        self,
        store: CredentialStore,
        cache: EphemeralStore,
        settings: Settings,
        *,
        notifications: NotificationGateway,
        activity: Optional[ActivityRecorder] = None,
        verifier: Optional[CredentialVerifier] = None,
        otp: Optional[OtpChallenge] = None,
        policy: Optional[LoginPolicyEngine] = None,
        issuer: Optional[TokenIssuer] = None,
        sessions: Optional[SessionManager] = None,
        rotator: Optional[RefreshTokenRotator] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.notifications = notifications
        self.activity = activity
        self.verifier = verifier or CredentialVerifier(
            settings.password_hash_cost, memory_kib=settings.password_hash_memory_kib
        )
        self.otp = otp or OtpChallenge(cache, length=settings.otp_length)
        self.policy = policy or LoginPolicyEngine(store.find_global_allowed_ip)
        self.issuer = issuer or TokenIssuer(
            settings.jwt_access_secret,
            settings.jwt_refresh_secret,
            access_ttl_seconds=settings.jwt_access_ttl_seconds,
            refresh_ttl_seconds=settings.jwt_refresh_ttl_seconds,
        )
        self.sessions = sessions or SessionManager(
            store, cache, ttl_seconds=settings.session_ttl_seconds
        )
        self.rotator = rotator or RefreshTokenRotator(
            store, cache, self.issuer, ttl_seconds=settings.refresh_token_ttl_seconds
        )
        self.logger = logger

    # registration
    async def register(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        *,
        ip_address: Optional[str] = None,
        phone_number: Optional[str] = None,
        otp_channel: OtpChannel = OtpChannel.EMAIL,
    ) -> Dict[str, Any]:
        req = parse_request(
            RegisterRequest,
            email=email,
            password=password,
            first_name=first_name,
            last_name=last_name,
            phone_number=phone_number,
            otp_channel=otp_channel,
        )
        if req.otp_channel == OtpChannel.SMS and not req.phone_number:
            raise BadRequestError("A phone number is required for SMS verification")
        if self.store.find_identity_by_email(req.email):
            raise ConflictError("Email already registered")

        pending = PendingRegistration(
            email=req.email,
            password_hash=self.verifier.hash(req.password),
            first_name=req.first_name,
            last_name=req.last_name,
            ip_address=ip_address,
            phone_number=req.phone_number,
            otp_channel=req.otp_channel,
        )
        ttl = self.settings.otp_ttl_seconds
        await self.cache.set_json(pending_registration_key(req.email), pending.to_payload(), ttl)
        await self._send_registration_otp(pending)
        self.logger.info("registration_pending", email_hash=hash_email(req.email))
        return {
            "message": f"OTP sent to {self._channel_label(pending.otp_channel)}. "
            "Please verify to complete registration.",
            "email": req.email,
            "channel": pending.otp_channel.value,
        }

    async def resend_registration_otp(self, email: str) -> Dict[str, Any]:
        req = parse_request(EmailRequest, email=email)
        key = pending_registration_key(req.email)
        payload = await self.cache.get_json(key)
        if not payload:
            raise BadRequestError(REGISTRATION_EXPIRED)
        pending = PendingRegistration.from_payload(payload)
        # Keep the pending payload alive for as long as the new code
        await self.cache.set_json(key, payload, self.settings.otp_ttl_seconds)
        await self._send_registration_otp(pending)
        return {
            "message": f"OTP resent to {self._channel_label(pending.otp_channel)}.",
            "email": pending.email,
            "channel": pending.otp_channel.value,
        }

    async def confirm_registration(
        self, email: str, otp: str, *, ip_address: Optional[str] = None
    ) -> Dict[str, Any]:
        req = parse_request(EmailRequest, email=email)
        if not await self.otp.verify(OtpPurpose.REGISTRATION, req.email, otp):
            raise BadRequestError(INVALID_OTP)
        payload = await self.cache.pop(pending_registration_key(req.email))
        pending_data = self._load_pending(payload)
        if pending_data is None:
            self.logger.info("registration_pending_missing", email_hash=hash_email(req.email))
            raise BadRequestError(REGISTRATION_EXPIRED)
        pending = PendingRegistration.from_payload(pending_data)

        registration_ip = ip_address or pending.ip_address
        identity = Identity(
            id=str(uuid.uuid4()),
            email=pending.email,
            password_hash=pending.password_hash,
            role=Role.EMPLOYEE,
            status=AccountStatus.ACTIVE,
            login_method=LoginMethod.GENERAL,
            allowed_ips=[registration_ip] if registration_ip else [],
            team_name=f"{pending.first_name} {pending.last_name}".strip(),
            team_no=f"TM-{int(time.time() * 1000)}",
            first_name=pending.first_name,
            last_name=pending.last_name,
            phone=pending.phone_number,
            is_email_verified=True,
            permissions=dict(DEFAULT_EMPLOYEE_PERMISSIONS),
        )
        try:
            identity = self.store.create_identity(identity)
        except ConstraintViolation as exc:
            raise ConflictError("Email already registered") from exc

        self._log_activity(identity.id, ActivityType.CREATE, "Team registered and verified", ip_address)
        self.logger.info("registration_confirmed", identity_id=identity.id)
        return {
            "message": "Account created and verified successfully. You can now login.",
            "identity_id": identity.id,
        }

    # login
    async def login(
        self,
        email: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Dict[str, Any]:
        identity = self.store.find_identity_by_email(email)
        if not identity or identity.is_deleted:
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not self.verifier.verify(password or "", identity.password_hash):
            self.logger.info("login_password_mismatch", identity_id=identity.id)
            raise AuthenticationError(INVALID_CREDENTIALS)
        if identity.status != AccountStatus.ACTIVE:
            raise AuthenticationError(INACTIVE_ACCOUNT)
        if self.verifier.needs_rehash(identity.password_hash):
            self._write_password(identity.id, password, changed=False)

        decision = self.policy.evaluate(identity, ip_address)
        if not decision.allowed:
            self.logger.warning(
                "login_ip_blocked",
                identity_id=identity.id,
                ip_address=ip_address,
                login_method=identity.login_method.value,
            )
            raise AuthenticationError(f"Access denied. Unrecognized IP address ({ip_address}).")

        method = identity.login_method.value
        if not decision.otp_required:
            reason = decision.describe_bypass(identity.login_method)
            self.logger.info(
                "login_otp_bypassed",
                identity_id=identity.id,
                reason=decision.bypass_reason.value if decision.bypass_reason else None,
            )
            completed = await self._complete_login(
                identity,
                ip_address,
                user_agent,
                description=f"Account logged in (Mode: {method}, OTP bypassed: {reason})",
            )
            return {
                "message": f"Login successful ({reason})",
                "email": identity.email,
                "otp_skipped": True,
                **completed,
            }

        code = await self.otp.issue(
            OtpPurpose.LOGIN, identity.email, self.settings.login_otp_ttl_seconds
        )
        await self.notifications.send_otp(identity.email, code, OtpChannel.EMAIL)
        return {
            "message": f"Credentials verified. OTP has been sent via email (Method: {method}).",
            "email": identity.email,
            "otp_skipped": False,
        }

    async def verify_login(
        self,
        email: str,
        otp: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Dict[str, Any]:
        identity = self.store.find_identity_by_email(email)
        if not identity or identity.is_deleted:
            raise AuthenticationError(INVALID_OTP)
        if identity.status != AccountStatus.ACTIVE:
            raise AuthenticationError(INACTIVE_ACCOUNT)

        # Policy is re-evaluated here; nothing from the first call is trusted
        decision = self.policy.evaluate(identity, ip_address)
        if not decision.allowed:
            self.logger.warning("verify_login_ip_blocked", identity_id=identity.id, ip_address=ip_address)
            raise AuthenticationError(f"Access denied. Unrecognized IP address ({ip_address}).")
        if not decision.otp_required:
            # Bypass identities get tokens from login() after a password check
            raise AuthenticationError("OTP login is not enabled for this account")
        if not await self.otp.verify(OtpPurpose.LOGIN, identity.email, otp):
            raise AuthenticationError(INVALID_OTP)

        return await self._complete_login(
            identity,
            ip_address,
            user_agent,
            description=f"Account logged in via {identity.login_method.value}",
        )

    async def _complete_login(
        self,
        identity: Identity,
        ip_address: Optional[str],
        user_agent: Optional[str],
        *,
        description: str,
    ) -> Dict[str, Any]:
        session_id = self.sessions.new_id()
        tokens = self.issuer.issue(identity.id, identity.email, identity.role.value, session_id)
        session = await self.sessions.open(
            identity, ip_address, user_agent, session_id=session_id
        )
        try:
            await self.rotator.issue(tokens.refresh_token, identity.id, ip_address, user_agent)
        except Exception:
            await self.sessions.close(session.id)
            raise
        try:
            updated = self.store.update_identity(
                identity.id, last_login_at=utcnow(), last_login_ip=ip_address
            )
        except Exception as exc:
            self.logger.error(
                "login_last_seen_write_failed", identity_id=identity.id, error=str(exc)
            )
            await self.sessions.close(session.id)
            await self.rotator.revoke(tokens.refresh_token)
            raise
        self._log_activity(identity.id, ActivityType.LOGIN, description, ip_address)
        return {
            "access_token": tokens.access_token,
            "refresh_token": tokens.refresh_token,
            "session_id": session.id,
            "user": self.project_identity(updated or identity),
        }

    # tokens and sessions
    async def refresh(
        self,
        refresh_token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Dict[str, str]:
        rotation = await self.rotator.rotate(refresh_token, ip_address, user_agent)
        return {
            "access_token": rotation.tokens.access_token,
            "refresh_token": rotation.tokens.refresh_token,
        }

    async def logout(
        self, identity_id: str, session_id: str, *, ip_address: Optional[str] = None
    ) -> Dict[str, str]:
        await self.sessions.close(session_id)
        self._log_activity(identity_id, ActivityType.LOGOUT, "User logged out", ip_address)
        return {"message": "Logged out successfully"}

    async def authenticate(self, access_token: Optional[str]) -> AuthContext:
        payload = self.issuer.decode_access(access_token or "")
        if not payload:
            raise AuthenticationError("Invalid or expired token")
        session_id = payload.get("sid")
        if session_id:
            snapshot = await self.sessions.validate(session_id)
            if not snapshot or snapshot.get("identity_id") != payload.get("sub"):
                raise AuthenticationError("Session expired or revoked")
        identity = self.store.find_identity_by_id(payload["sub"])
        if not identity or not identity.is_active:
            raise AuthenticationError(INACTIVE_ACCOUNT)
        bind_identity(identity.id)
        return AuthContext(
            identity_id=identity.id,
            email=identity.email,
            role=identity.role,
            session_id=session_id,
        )

    # passwords
    async def change_password(
        self,
        identity_id: str,
        old_password: str,
        new_password: str,
        *,
        ip_address: Optional[str] = None,
    ) -> Dict[str, str]:
        parse_request(NewPassword, password=new_password)
        identity = self.store.find_identity_by_id(identity_id)
        if not identity or identity.is_deleted:
            raise NotFoundError("Account not found")
        if not self.verifier.verify(old_password or "", identity.password_hash):
            raise BadRequestError("Old password is incorrect")
        self._write_password(identity.id, new_password)
        self._log_activity(identity.id, ActivityType.PASSWORD_CHANGE, "Password changed", ip_address)
        return {"message": "Password changed successfully"}

    async def forgot_password(
        self, email: str, *, ip_address: Optional[str] = None
    ) -> Dict[str, str]:
        identity = self.store.find_identity_by_email(email)
        if not identity or identity.is_deleted:
            self.logger.info("password_reset_unknown_email", email_hash=hash_email(email or ""))
            return {"message": FORGOT_PASSWORD_MESSAGE}
        code = await self.otp.issue(
            OtpPurpose.PASSWORD_RESET, identity.email, self.settings.otp_ttl_seconds
        )
        try:
            await self.notifications.send_otp(identity.email, code, OtpChannel.EMAIL)
        except DeliveryError as exc:
            # Same response either way so the endpoint cannot probe for accounts
            self.logger.warning(
                "password_reset_delivery_failed", identity_id=identity.id, error=exc.message
            )
        self.logger.info("password_reset_requested", identity_id=identity.id)
        return {"message": FORGOT_PASSWORD_MESSAGE}

    async def reset_password(
        self,
        email: str,
        otp: str,
        new_password: str,
        *,
        ip_address: Optional[str] = None,
    ) -> Dict[str, str]:
        parse_request(NewPassword, password=new_password)
        normalized = normalize_email(email)
        if not await self.otp.verify(OtpPurpose.PASSWORD_RESET, normalized, otp):
            raise BadRequestError(INVALID_OTP)
        identity = self.store.find_identity_by_email(normalized)
        if not identity or identity.is_deleted:
            raise BadRequestError(INVALID_OTP)
        self._write_password(identity.id, new_password)
        self._log_activity(identity.id, ActivityType.PASSWORD_CHANGE, "Password reset", ip_address)
        return {"message": "Password reset successfully"}

    async def create_invitation(self, email: str) -> str:
        """Park an invitation token for ``email``; delivery is up to the caller."""
        req = parse_request(EmailRequest, email=email)
        identity = self.store.find_identity_by_email(req.email)
        if not identity or identity.is_deleted:
            raise NotFoundError("Account not found")
        token = secrets.token_urlsafe(32)
        await self.cache.set(
            invitation_key(token), identity.email, self.settings.invitation_ttl_seconds
        )
        self.logger.info("invitation_created", identity_id=identity.id)
        return token

    async def set_password(
        self,
        email: str,
        token: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
    ) -> Dict[str, str]:
        req = parse_request(EmailRequest, email=email)
        parse_request(InvitationPassword, password=password)
        if not token or not await self.cache.delete_if_equals(invitation_key(token), req.email):
            raise BadRequestError("Invalid or expired invitation token")
        identity = self.store.find_identity_by_email(req.email)
        if not identity or identity.is_deleted:
            raise BadRequestError("Invalid or expired invitation token")
        self.store.update_identity(
            identity.id,
            password_hash=self.verifier.hash(password),
            password_changed_at=utcnow(),
            is_email_verified=True,
            status=AccountStatus.ACTIVE,
        )
        self._log_activity(
            identity.id,
            ActivityType.PASSWORD_CHANGE,
            "Team password set via invitation",
            ip_address,
        )
        return {"message": "Password set successfully. You can now login."}

    # profile
    async def get_profile(self, identity_id: str) -> Dict[str, Any]:
        identity = self.store.find_identity_by_id(identity_id)
        if not identity or identity.is_deleted:
            raise NotFoundError("Account not found")
        return self.project_identity(identity)

    async def update_profile(
        self,
        identity_id: str,
        changes: Mapping[str, Any],
        *,
        ip_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        update = parse_request(ProfileUpdate, **dict(changes))
        identity = self.store.find_identity_by_id(identity_id)
        if not identity or identity.is_deleted:
            raise NotFoundError("Account not found")
        fields = update.model_dump(exclude_unset=True, exclude_none=True)
        avatar = fields.get("avatar")
        if avatar and not avatar.startswith(("http://", "https://")):
            raise BadRequestError("Avatar must be an http(s) URL")
        if fields:
            identity = self.store.update_identity(identity.id, **fields) or identity
        self._log_activity(identity.id, ActivityType.UPDATE, "Profile updated", ip_address)
        return {
            "message": "Profile updated successfully",
            "user": {
                "id": identity.id,
                "email": identity.email,
                "first_name": identity.first_name,
                "last_name": identity.last_name,
                "avatar": identity.avatar,
                "phone": identity.phone,
                "address": identity.address,
                "city": identity.city,
                "postcode": identity.postcode,
                "country": identity.country,
            },
        }

    @staticmethod
    def project_identity(identity: Identity) -> Dict[str, Any]:
        """Identity plus effective permissions, as returned to clients."""
        permissions = dict(identity.permissions or {})
        if identity.role == Role.SUPER_ADMIN:
            permissions["isSuperAdmin"] = True
        return {
            "id": identity.id,
            "email": identity.email,
            "first_name": identity.first_name,
            "last_name": identity.last_name,
            "role": identity.role.value,
            "role_id": identity.role_id,
            "role_name": identity.role_name or identity.role.value,
            "permissions": permissions,
            "avatar": identity.avatar,
            "phone": identity.phone,
            "address": identity.address,
            "city": identity.city,
            "postcode": identity.postcode,
            "country": identity.country,
            "team_name": identity.team_name,
        }

    # helpers
    async def _send_registration_otp(self, pending: PendingRegistration) -> None:
        code = await self.otp.issue(
            OtpPurpose.REGISTRATION, pending.email, self.settings.otp_ttl_seconds
        )
        recipient = (
            pending.phone_number
            if pending.otp_channel == OtpChannel.SMS and pending.phone_number
            else pending.email
        )
        await self.notifications.send_otp(recipient, code, pending.otp_channel)

    def _write_password(self, identity_id: str, password: str, *, changed: bool = True) -> None:
        changes: Dict[str, Any] = {"password_hash": self.verifier.hash(password)}
        if changed:
            changes["password_changed_at"] = utcnow()
        else:
            # Same secret under the current hashing parameters
            self.logger.info("password_rehashed", identity_id=identity_id)
        self.store.update_identity(identity_id, **changes)

    @staticmethod
    def _channel_label(channel: OtpChannel) -> str:
        return "phone" if channel == OtpChannel.SMS else "email"

    @staticmethod
    def _load_pending(raw: Optional[str]) -> Optional[Dict[str, Any]]:
        data = load_json(raw)
        return data if isinstance(data, dict) else None

    def _log_activity(
        self,
        identity_id: str,
        action: ActivityType,
        description: str,
        ip_address: Optional[str],
    ) -> None:
        if self.activity is None:
            return
        try:
            self.activity.record(identity_id, action, description, ip_address)
        except Exception as exc:
            self.logger.warning(
                "activity_record_failed",
                identity_id=identity_id,
                action=action.value,
                error=str(exc),
            )
