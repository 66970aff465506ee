"""End-to-end flows through AuthService with in-memory backends.

Covers:
- Registration with OTP confirmation (email and SMS)
- Login under each login method, including OTP bypasses
- Refresh rotation, logout and bearer authentication
- Forgot/reset/change password and invitation passwords
- Profile reads and updates
"""

import time
import uuid

import pytest

from hrms.service.auth import (
    FORGOT_PASSWORD_MESSAGE,
    INACTIVE_ACCOUNT,
    INVALID_CREDENTIALS,
    INVALID_OTP,
    REGISTRATION_EXPIRED,
    AuthService,
    pending_registration_key,
)
from hrms.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    NotFoundError,
)
from hrms.service.notifications import NotificationGateway
from hrms.service.otp import OtpPurpose, otp_key
from hrms.service.passwords import CredentialVerifier
from hrms.service.refresh import refresh_key
from hrms.service.sessions import session_key
from hrms.storage.models import (
    AccountStatus,
    ActivityType,
    Identity,
    LoginMethod,
    OtpChannel,
    Role,
)

PASSWORD = "Secret123!"


@pytest.fixture
def make_identity(store, auth_service):
    def _make(
        email="worker@example.com",
        *,
        role=Role.EMPLOYEE,
        login_method=LoginMethod.GENERAL,
        allowed_ips=None,
        status=AccountStatus.ACTIVE,
        password=PASSWORD,
    ) -> Identity:
        return store.create_identity(
            Identity(
                id=str(uuid.uuid4()),
                email=email,
                password_hash=auth_service.verifier.hash(password),
                role=role,
                status=status,
                login_method=login_method,
                allowed_ips=list(allowed_ips or []),
                first_name="Test",
                last_name="Worker",
            )
        )

    return _make


class TestRegistration:
    async def test_round_trip_creates_verified_identity(
        self, auth_service, store, cache, email_sender
    ):
        result = await auth_service.register(
            "New.Hire@Example.com", "pass1234", "New", "Hire", ip_address="10.0.0.1"
        )
        assert result["email"] == "new.hire@example.com"
        assert result["channel"] == "EMAIL"
        assert store.find_identity_by_email("new.hire@example.com") is None

        code = email_sender.last_code("new.hire@example.com")
        confirmed = await auth_service.confirm_registration(
            "new.hire@example.com", code, ip_address="10.0.0.1"
        )

        identity = store.find_identity_by_id(confirmed["identity_id"])
        assert identity.is_email_verified
        assert identity.status == AccountStatus.ACTIVE
        assert identity.role == Role.EMPLOYEE
        assert identity.login_method == LoginMethod.GENERAL
        assert identity.allowed_ips == ["10.0.0.1"]
        assert identity.team_no.startswith("TM-")
        assert identity.permissions
        assert await cache.get(pending_registration_key("new.hire@example.com")) is None
        assert await cache.get(otp_key(OtpPurpose.REGISTRATION, "new.hire@example.com")) is None
        actions = [e.action for e in store.list_activity(identity.id)]
        assert actions == [ActivityType.CREATE]

    async def test_duplicate_email_conflicts(self, auth_service, make_identity):
        make_identity("taken@example.com")
        with pytest.raises(ConflictError):
            await auth_service.register("Taken@example.com", "pass1234", "A", "B")

    async def test_sms_channel_delivers_to_phone(self, auth_service, sms_sender, email_sender):
        result = await auth_service.register(
            "sms@example.com",
            "pass1234",
            "Sam",
            "Ess",
            phone_number="5551234567",
            otp_channel=OtpChannel.SMS,
        )
        assert result["channel"] == "SMS"
        assert sms_sender.sent[0][0] == "5551234567"
        assert email_sender.sent == []

    async def test_sms_channel_requires_phone(self, auth_service):
        with pytest.raises(BadRequestError):
            await auth_service.register(
                "sms@example.com", "pass1234", "Sam", "Ess", otp_channel=OtpChannel.SMS
            )

    @pytest.mark.parametrize(
        "email,password,phone",
        [
            ("not-an-email", "pass1234", None),
            ("ok@example.com", "abc", None),
            ("ok@example.com", "pass1234", "123"),
        ],
    )
    async def test_invalid_input_is_rejected(self, auth_service, email, password, phone):
        with pytest.raises(BadRequestError):
            await auth_service.register(email, password, "A", "B", phone_number=phone)

    async def test_wrong_code_keeps_pending_registration(
        self, auth_service, store, email_sender
    ):
        await auth_service.register("wrong@example.com", "pass1234", "W", "R")
        code = email_sender.last_code()
        wrong = "000000" if code != "000000" else "111111"
        with pytest.raises(BadRequestError) as exc:
            await auth_service.confirm_registration("wrong@example.com", wrong)
        assert exc.value.message == INVALID_OTP
        await auth_service.confirm_registration("wrong@example.com", code)
        assert store.find_identity_by_email("wrong@example.com") is not None

    async def test_expired_pending_payload(self, auth_service, cache, email_sender):
        await auth_service.register("gone@example.com", "pass1234", "G", "O")
        await cache.delete(pending_registration_key("gone@example.com"))
        with pytest.raises(BadRequestError) as exc:
            await auth_service.confirm_registration("gone@example.com", email_sender.last_code())
        assert exc.value.message == REGISTRATION_EXPIRED

    async def test_resend_replaces_code(self, auth_service, email_sender):
        await auth_service.register("again@example.com", "pass1234", "A", "G")
        first = email_sender.last_code()
        await auth_service.resend_registration_otp("again@example.com")
        second = email_sender.last_code()
        assert len(email_sender.sent) == 2
        if first != second:
            with pytest.raises(BadRequestError):
                await auth_service.confirm_registration("again@example.com", first)
        await auth_service.confirm_registration("again@example.com", second)

    async def test_resend_without_pending_registration(self, auth_service):
        with pytest.raises(BadRequestError):
            await auth_service.resend_registration_otp("nobody@example.com")


class TestLogin:
    async def test_general_login_returns_tokens_immediately(
        self, auth_service, store, make_identity
    ):
        identity = make_identity()
        result = await auth_service.login(
            "worker@example.com", PASSWORD, ip_address="10.0.0.1", user_agent="pytest"
        )
        assert result["otp_skipped"] is True
        assert result["message"] == "Login successful (Login Method: General)"
        assert result["access_token"] and result["refresh_token"]
        assert result["user"]["id"] == identity.id
        assert store.find_identity_by_id(identity.id).last_login_ip == "10.0.0.1"
        assert len(store.sessions) == 1
        assert len(store.refresh_tokens) == 1

    async def test_otp_login_requires_second_step(
        self, auth_service, store, email_sender, make_identity
    ):
        make_identity(login_method=LoginMethod.OTP)
        first = await auth_service.login("worker@example.com", PASSWORD, ip_address="10.0.0.1")
        assert first["otp_skipped"] is False
        assert "access_token" not in first
        assert store.sessions == {}

        code = email_sender.last_code("worker@example.com")
        result = await auth_service.verify_login(
            "worker@example.com", code, ip_address="10.0.0.1", user_agent="pytest"
        )
        assert result["access_token"] and result["refresh_token"]
        assert len(store.sessions) == 1
        assert len(store.refresh_tokens) == 1

        with pytest.raises(AuthenticationError):
            await auth_service.verify_login("worker@example.com", code, ip_address="10.0.0.1")

    async def test_unrecognized_ip_is_rejected_before_otp(
        self, auth_service, store, cache, email_sender, make_identity
    ):
        make_identity(login_method=LoginMethod.IP_ADDRESS, allowed_ips=["10.0.0.5"])
        with pytest.raises(AuthenticationError) as exc:
            await auth_service.login("worker@example.com", PASSWORD, ip_address="10.0.0.9")
        assert "10.0.0.9" in exc.value.message
        assert email_sender.sent == []
        assert store.sessions == {}
        assert await cache.get(otp_key(OtpPurpose.LOGIN, "worker@example.com")) is None

    async def test_admin_role_bypasses_otp(self, auth_service, make_identity):
        make_identity("boss@example.com", role=Role.ADMIN, login_method=LoginMethod.IP_OTP,
                      allowed_ips=["10.0.0.5"])
        result = await auth_service.login("boss@example.com", PASSWORD, ip_address="10.0.0.5")
        assert result["otp_skipped"] is True
        assert result["message"] == "Login successful (Admin role bypass)"

    async def test_admin_with_general_method_reports_role_bypass(
        self, auth_service, store, make_identity
    ):
        identity = make_identity("chief@example.com", role=Role.ADMIN)
        result = await auth_service.login("chief@example.com", PASSWORD, ip_address="10.0.0.1")
        assert result["otp_skipped"] is True
        assert result["message"] == "Login successful (Admin role bypass)"
        login_event = [
            e for e in store.list_activity(identity.id) if e.action == ActivityType.LOGIN
        ][-1]
        assert "OTP bypassed: Admin role bypass" in login_event.description

    async def test_super_admin_skips_ip_check(self, auth_service, make_identity):
        make_identity("root@example.com", role=Role.SUPER_ADMIN,
                      login_method=LoginMethod.IP_ADDRESS, allowed_ips=[])
        result = await auth_service.login("root@example.com", PASSWORD, ip_address="192.0.2.1")
        assert result["otp_skipped"] is True
        assert result["user"]["permissions"]["isSuperAdmin"] is True

    async def test_wrong_password_and_unknown_email_look_the_same(
        self, auth_service, make_identity
    ):
        make_identity()
        with pytest.raises(AuthenticationError) as wrong:
            await auth_service.login("worker@example.com", "nope-nope")
        with pytest.raises(AuthenticationError) as unknown:
            await auth_service.login("ghost@example.com", PASSWORD)
        assert wrong.value.message == unknown.value.message == INVALID_CREDENTIALS

    async def test_login_upgrades_outdated_hash(self, auth_service, store, make_identity):
        identity = make_identity()
        legacy = CredentialVerifier(2, memory_kib=1024).hash(PASSWORD)
        store.update_identity(identity.id, password_hash=legacy)
        await auth_service.login("worker@example.com", PASSWORD)
        upgraded = store.find_identity_by_id(identity.id).password_hash
        assert upgraded != legacy
        assert not auth_service.verifier.needs_rehash(upgraded)
        assert store.find_identity_by_id(identity.id).password_changed_at is None

    async def test_inactive_account_is_rejected(self, auth_service, make_identity):
        make_identity(status=AccountStatus.SUSPENDED)
        with pytest.raises(AuthenticationError) as exc:
            await auth_service.login("worker@example.com", PASSWORD)
        assert exc.value.message == INACTIVE_ACCOUNT

    async def test_verify_login_rejects_bypass_identity(self, auth_service, make_identity):
        make_identity()
        with pytest.raises(AuthenticationError):
            await auth_service.verify_login("worker@example.com", "123456")

    async def test_verify_login_rechecks_ip(self, auth_service, email_sender, make_identity):
        make_identity(login_method=LoginMethod.IP_OTP, allowed_ips=["10.0.0.5"])
        await auth_service.login("worker@example.com", PASSWORD, ip_address="10.0.0.5")
        code = email_sender.last_code()
        with pytest.raises(AuthenticationError):
            await auth_service.verify_login("worker@example.com", code, ip_address="10.0.0.9")
        result = await auth_service.verify_login("worker@example.com", code, ip_address="10.0.0.5")
        assert result["session_id"]

    async def test_audit_failure_does_not_fail_login(self, store, cache, settings, make_identity):
        class BrokenRecorder:
            def record(self, *args, **kwargs):
                raise RuntimeError("audit store down")

        service = AuthService(
            store, cache, settings, notifications=NotificationGateway({}), activity=BrokenRecorder()
        )
        make_identity()
        result = await service.login("worker@example.com", PASSWORD)
        assert result["access_token"]

    async def test_last_login_write_failure_undoes_session(
        self, auth_service, store, cache, make_identity
    ):
        make_identity()
        original_update = store.update_identity

        def failing_update(identity_id, **fields):
            if "last_login_at" in fields:
                raise RuntimeError("database unavailable")
            return original_update(identity_id, **fields)

        store.update_identity = failing_update
        with pytest.raises(RuntimeError):
            await auth_service.login("worker@example.com", PASSWORD)

        (session,) = store.sessions.values()
        assert session.is_active is False
        assert await cache.get(session_key(session.id)) is None
        (record,) = store.refresh_tokens.values()
        assert record.is_revoked
        assert await cache.get(refresh_key(record.token)) is None


class TestTokensAndSessions:
    async def test_authenticate_and_logout(self, auth_service, store, cache, make_identity):
        identity = make_identity()
        login = await auth_service.login("worker@example.com", PASSWORD, ip_address="10.0.0.1")

        context = await auth_service.authenticate(login["access_token"])
        assert context.identity_id == identity.id
        assert context.session_id == login["session_id"]

        result = await auth_service.logout(identity.id, login["session_id"], ip_address="10.0.0.1")
        assert result == {"message": "Logged out successfully"}
        assert await cache.get(session_key(login["session_id"])) is None
        assert store.get_session(login["session_id"]).is_active is False
        with pytest.raises(AuthenticationError):
            await auth_service.authenticate(login["access_token"])

    async def test_authenticate_rejects_garbage(self, auth_service):
        with pytest.raises(AuthenticationError):
            await auth_service.authenticate("not.a.token")
        with pytest.raises(AuthenticationError):
            await auth_service.authenticate(None)

    async def test_authenticate_rejects_deactivated_identity(
        self, auth_service, store, make_identity
    ):
        identity = make_identity()
        login = await auth_service.login("worker@example.com", PASSWORD)
        store.update_identity(identity.id, status=AccountStatus.INACTIVE)
        with pytest.raises(AuthenticationError):
            await auth_service.authenticate(login["access_token"])

    async def test_refresh_rotates_and_blocks_replay(self, auth_service, cache, make_identity):
        make_identity()
        login = await auth_service.login("worker@example.com", PASSWORD)
        rotated = await auth_service.refresh(login["refresh_token"], ip_address="10.0.0.1")
        assert rotated["refresh_token"] != login["refresh_token"]
        assert await cache.get(refresh_key(rotated["refresh_token"])) is not None
        with pytest.raises(AuthenticationError):
            await auth_service.refresh(login["refresh_token"])
        again = await auth_service.refresh(rotated["refresh_token"])
        assert again["access_token"]

    async def test_refresh_rejected_once_jwt_expires(
        self, auth_service, settings, monkeypatch, make_identity
    ):
        make_identity()
        login = await auth_service.login("worker@example.com", PASSWORD)
        later = time.time() + settings.jwt_refresh_ttl_seconds + 60
        monkeypatch.setattr(time, "time", lambda: later)
        # The durable record outlives the JWT exp, but the JWT decides
        with pytest.raises(AuthenticationError):
            await auth_service.refresh(login["refresh_token"])

    async def test_logout_keeps_refresh_tokens(self, auth_service, make_identity):
        identity = make_identity()
        login = await auth_service.login("worker@example.com", PASSWORD)
        await auth_service.logout(identity.id, login["session_id"])
        rotated = await auth_service.refresh(login["refresh_token"])
        assert rotated["access_token"]


class TestPasswords:
    async def test_forgot_password_is_uniform(self, auth_service, email_sender, make_identity):
        make_identity()
        known = await auth_service.forgot_password("worker@example.com")
        unknown = await auth_service.forgot_password("ghost@example.com")
        assert known == unknown == {"message": FORGOT_PASSWORD_MESSAGE}
        assert [to for to, _ in email_sender.sent] == ["worker@example.com"]

    async def test_forgot_password_hides_delivery_failure(
        self, auth_service, email_sender, make_identity
    ):
        make_identity()
        email_sender.succeed = False
        result = await auth_service.forgot_password("worker@example.com")
        assert result == {"message": FORGOT_PASSWORD_MESSAGE}

    async def test_reset_password_with_code(self, auth_service, email_sender, make_identity):
        make_identity()
        await auth_service.forgot_password("worker@example.com")
        code = email_sender.last_code()
        await auth_service.reset_password("worker@example.com", code, "brand-new-pass")

        with pytest.raises(AuthenticationError):
            await auth_service.login("worker@example.com", PASSWORD)
        assert (await auth_service.login("worker@example.com", "brand-new-pass"))["access_token"]
        with pytest.raises(BadRequestError):
            await auth_service.reset_password("worker@example.com", code, "another-pass")

    async def test_reset_password_rejects_bad_code(self, auth_service, make_identity):
        make_identity()
        with pytest.raises(BadRequestError) as exc:
            await auth_service.reset_password("worker@example.com", "123456", "brand-new-pass")
        assert exc.value.message == INVALID_OTP

    async def test_change_password(self, auth_service, store, make_identity):
        identity = make_identity()
        with pytest.raises(BadRequestError):
            await auth_service.change_password(identity.id, "wrong-old", "next-pass")
        await auth_service.change_password(identity.id, PASSWORD, "next-pass")
        assert store.find_identity_by_id(identity.id).password_changed_at is not None
        assert (await auth_service.login("worker@example.com", "next-pass"))["access_token"]

    async def test_change_password_for_missing_identity(self, auth_service):
        with pytest.raises(NotFoundError):
            await auth_service.change_password("missing", PASSWORD, "next-pass")

    async def test_invitation_sets_password_once(self, auth_service, store, make_identity):
        identity = make_identity(status=AccountStatus.INACTIVE)
        token = await auth_service.create_invitation("worker@example.com")

        with pytest.raises(BadRequestError):
            await auth_service.set_password("worker@example.com", token, "short")
        await auth_service.set_password("worker@example.com", token, "invited-pass")

        updated = store.find_identity_by_id(identity.id)
        assert updated.status == AccountStatus.ACTIVE
        assert updated.is_email_verified
        with pytest.raises(BadRequestError):
            await auth_service.set_password("worker@example.com", token, "invited-pass")

    async def test_invitation_token_is_bound_to_email(self, auth_service, make_identity):
        make_identity()
        make_identity("other@example.com")
        token = await auth_service.create_invitation("worker@example.com")
        with pytest.raises(BadRequestError):
            await auth_service.set_password("other@example.com", token, "invited-pass")

    async def test_invitation_for_unknown_email(self, auth_service):
        with pytest.raises(NotFoundError):
            await auth_service.create_invitation("ghost@example.com")


class TestProfile:
    async def test_get_profile_projects_permissions(self, auth_service, make_identity):
        identity = make_identity()
        profile = await auth_service.get_profile(identity.id)
        assert profile["email"] == "worker@example.com"
        assert profile["role_name"] == "EMPLOYEE"
        assert "isSuperAdmin" not in profile["permissions"]

    async def test_update_profile(self, auth_service, store, make_identity):
        identity = make_identity()
        result = await auth_service.update_profile(
            identity.id,
            {"city": "Leeds", "phone": "0123456789", "avatar": "https://cdn.example.com/a.png"},
        )
        assert result["user"]["city"] == "Leeds"
        assert store.find_identity_by_id(identity.id).avatar == "https://cdn.example.com/a.png"
        actions = [e.action for e in store.list_activity(identity.id)]
        assert ActivityType.UPDATE in actions

    @pytest.mark.parametrize(
        "changes",
        [{"avatar": "file:///etc/passwd"}, {"phone": "12"}, {"role": "SUPER_ADMIN"}],
    )
    async def test_update_profile_rejects_bad_fields(self, auth_service, make_identity, changes):
        identity = make_identity()
        with pytest.raises(BadRequestError):
            await auth_service.update_profile(identity.id, changes)

    async def test_profile_of_missing_identity(self, auth_service):
        with pytest.raises(NotFoundError):
            await auth_service.get_profile("missing")
