from __future__ import annotations

import secrets
from enum import Enum

from hrms.logging import get_logger, hash_email
from hrms.storage.common import EphemeralStore, normalize_email

logger = get_logger(__name__)


class OtpPurpose(str, Enum):
    REGISTRATION = "registration"
    LOGIN = "login"
    PASSWORD_RESET = "password_reset"


def otp_key(purpose: OtpPurpose, email: str) -> str:
    return f"otp:{OtpPurpose(purpose).value}:{normalize_email(email)}"


class OtpChallenge:
    """Numeric one-time codes keyed by (purpose, email).

    A new ``issue`` overwrites any outstanding code for the same key.
    ``verify`` consumes through the store's compare-and-delete, so a code is
    accepted at most once even when verify calls race.
    """

    def __init__(self, cache: EphemeralStore, *, length: int = 6) -> None:
        if length < 1:
            raise ValueError("length must be >= 1")
        self.cache = cache
        self.length = length

    def generate(self) -> str:
        return str(secrets.randbelow(10**self.length)).zfill(self.length)

    async def issue(self, purpose: OtpPurpose, email: str, ttl_seconds: int) -> str:
        code = self.generate()
        await self.cache.set(otp_key(purpose, email), code, ttl_seconds)
        logger.info(
            "otp_issued",
            purpose=OtpPurpose(purpose).value,
            email_hash=hash_email(email),
            ttl_seconds=ttl_seconds,
        )
        return code

    async def verify(self, purpose: OtpPurpose, email: str, candidate: str) -> bool:
        candidate = (candidate or "").strip()
        if len(candidate) != self.length or not candidate.isdigit():
            return False
        consumed = await self.cache.delete_if_equals(otp_key(purpose, email), candidate)
        if not consumed:
            logger.info(
                "otp_rejected",
                purpose=OtpPurpose(purpose).value,
                email_hash=hash_email(email),
            )
        return consumed
