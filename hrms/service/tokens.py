from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from hrms.logging import get_logger

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: int
    refresh_expires_at: int


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenIssuer:
    """HS256 bearer credentials: short-lived access, long-lived refresh.

    Each kind is signed with its own secret, so a refresh token never
    verifies as an access token and vice versa.
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        *,
        access_ttl_seconds: int,
        refresh_ttl_seconds: int,
        leeway_seconds: int = 0,
    ) -> None:
        if not access_secret or not refresh_secret:
            raise ValueError("signing secrets are required")
        if access_secret == refresh_secret:
            raise ValueError("access and refresh secrets must differ")
        self._secrets = {ACCESS: access_secret.encode(), REFRESH: refresh_secret.encode()}
        self._ttls = {ACCESS: access_ttl_seconds, REFRESH: refresh_ttl_seconds}
        self.leeway_seconds = leeway_seconds

    def issue(
        self,
        identity_id: str,
        email: str,
        role: str,
        session_id: Optional[str] = None,
    ) -> TokenPair:
        now = int(time.time())
        claims: dict[str, Any] = {"sub": identity_id, "email": email, "role": role}
        if session_id:
            claims["sid"] = session_id
        access_exp = now + self._ttls[ACCESS]
        refresh_exp = now + self._ttls[REFRESH]
        # jti keeps two tokens minted in the same second distinct
        access = self._encode(
            ACCESS, {**claims, "iat": now, "exp": access_exp, "jti": uuid.uuid4().hex}
        )
        refresh = self._encode(
            REFRESH, {**claims, "iat": now, "exp": refresh_exp, "jti": uuid.uuid4().hex}
        )
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    def decode_access(self, token: str) -> Optional[dict[str, Any]]:
        return self._decode(ACCESS, token)

    def decode_refresh(self, token: str) -> Optional[dict[str, Any]]:
        return self._decode(REFRESH, token)

    def _sign(self, kind: str, signing_input: str) -> str:
        digest = hmac.new(self._secrets[kind], signing_input.encode(), hashlib.sha256).digest()
        return _encode_segment(digest)

    def _encode(self, kind: str, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(kind, signing_input)}"

    def _decode(self, kind: str, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = (token or "").split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to avoid algorithm confusion
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed", kind=kind)
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", kind=kind)
            return None

        expected_sig = self._sign(kind, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", kind=kind, error=str(exc))
            return None
        if not isinstance(payload, dict) or not payload.get("sub"):
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self.leeway_seconds:
            return None
        return payload
