"""Per-attempt login policy: IP allow-listing and OTP requirement.

The decision is a pure function of the identity's login method, its role
and whether the request IP is allowed:

* IP check applies for ``Ip_address`` / ``Ip_Otp`` unless the role is
  SUPER_ADMIN. It passes when the IP is on the identity's list, the list
  holds ``*``, or the global allow-list knows the IP.
* OTP is required for ``Otp`` / ``Ip_Otp`` unless the role is ADMIN or
  SUPER_ADMIN. Everything else bypasses; for those two roles the recorded
  reason is always the role, whatever the method.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from hrms.storage.common import normalize_ip
from hrms.storage.models import Identity, LoginMethod, Role

IP_CHECKED_METHODS = frozenset({LoginMethod.IP_ADDRESS, LoginMethod.IP_OTP})
OTP_METHODS = frozenset({LoginMethod.OTP, LoginMethod.IP_OTP})
IP_EXEMPT_ROLES = frozenset({Role.SUPER_ADMIN})
OTP_EXEMPT_ROLES = frozenset({Role.ADMIN, Role.SUPER_ADMIN})

WILDCARD_IP = "*"


class BypassReason(str, Enum):
    ROLE = "role"
    METHOD = "method"


@dataclass(frozen=True)
class LoginDecision:
    ip_check_required: bool
    ip_check_passed: bool
    otp_required: bool
    bypass_reason: Optional[BypassReason] = None

    @property
    def allowed(self) -> bool:
        return not self.ip_check_required or self.ip_check_passed

    def describe_bypass(self, login_method: LoginMethod) -> Optional[str]:
        if self.bypass_reason is BypassReason.ROLE:
            return "Admin role bypass"
        if self.bypass_reason is BypassReason.METHOD:
            return f"Login Method: {login_method.value}"
        return None


def decide(
    login_method: LoginMethod, role: Role, ip_allowed: bool
) -> LoginDecision:
    """Truth-table form of the policy, independent of any lookup."""
    ip_check_required = login_method in IP_CHECKED_METHODS and role not in IP_EXEMPT_ROLES
    otp_method = login_method in OTP_METHODS
    otp_required = otp_method and role not in OTP_EXEMPT_ROLES
    bypass: Optional[BypassReason] = None
    if not otp_required:
        bypass = BypassReason.ROLE if role in OTP_EXEMPT_ROLES else BypassReason.METHOD
    return LoginDecision(
        ip_check_required=ip_check_required,
        ip_check_passed=ip_allowed if ip_check_required else True,
        otp_required=otp_required,
        bypass_reason=bypass,
    )


class LoginPolicyEngine:
    def __init__(self, global_ip_lookup: Callable[[str], bool]) -> None:
        self._global_ip_lookup = global_ip_lookup

    def ip_allowed(self, identity: Identity, request_ip: Optional[str]) -> bool:
        ip = normalize_ip(request_ip)
        allowed = {normalize_ip(v) if v != WILDCARD_IP else v for v in identity.allowed_ips}
        if WILDCARD_IP in allowed:
            return True
        if ip and ip in allowed:
            return True
        return bool(ip) and self._global_ip_lookup(ip)

    def evaluate(self, identity: Identity, request_ip: Optional[str]) -> LoginDecision:
        needs_ip_check = (
            identity.login_method in IP_CHECKED_METHODS
            and identity.role not in IP_EXEMPT_ROLES
        )
        # Only consult allow-lists when the check applies
        ip_allowed = self.ip_allowed(identity, request_ip) if needs_ip_check else True
        return decide(identity.login_method, identity.role, ip_allowed)
