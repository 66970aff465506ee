from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Optional

from hrms.logging import get_logger
from hrms.service.errors import AuthenticationError, ServerError
from hrms.service.tokens import TokenIssuer, TokenPair
from hrms.storage.common import CredentialStore, EphemeralStore, remaining_ttl_seconds
from hrms.storage.models import Identity, RefreshToken, utcnow

logger = get_logger(__name__)

INVALID_REFRESH = "Invalid or expired refresh token"


def refresh_key(token: str) -> str:
    # Token values are long signed strings; the mirror is keyed by their digest
    return "refresh:" + hashlib.sha256(token.encode()).hexdigest()


@dataclass(frozen=True)
class Rotation:
    identity: Identity
    tokens: TokenPair
    record: RefreshToken


class RefreshTokenRotator:
    """Refresh records with replay-safe rotation.

    ``rotate`` only accepts a refresh JWT that still verifies, so the
    earlier of the JWT exp and the durable record expiry wins. It then
    claims the presented token's mirror with an atomic pop, so of two
    concurrent callers only one proceeds. The durable revoke of the old
    token and the insert of its successor happen in one store transaction
    that refuses an already revoked token.
    """

    def __init__(
        self,
        store: CredentialStore,
        cache: EphemeralStore,
        issuer: TokenIssuer,
        *,
        ttl_seconds: int,
    ) -> None:
        self.store = store
        self.cache = cache
        self.issuer = issuer
        self.ttl_seconds = ttl_seconds

    async def issue(
        self,
        token: str,
        identity_id: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> RefreshToken:
        """Persist and mirror a freshly minted refresh JWT."""
        record = RefreshToken.new(token, identity_id, self.ttl_seconds, ip_address, user_agent)
        self.store.create_refresh_token(record)
        try:
            await self._mirror(record)
        except Exception as exc:
            self.store.update_refresh_token(record.token, is_revoked=True, revoked_at=utcnow())
            logger.error("refresh_mirror_write_failed", identity_id=identity_id, error=str(exc))
            raise ServerError("Could not issue refresh token") from exc
        return record

    async def rotate(
        self,
        presented: str,
        ip_address: Optional[str],
        user_agent: Optional[str] = None,
    ) -> Rotation:
        # Signature and exp first; a bad token never touches the mirror
        claims = self.issuer.decode_refresh(presented) if presented else None
        if claims is None:
            raise AuthenticationError(INVALID_REFRESH)
        key = refresh_key(presented)
        owner_id = await self.cache.pop(key)
        if owner_id is None:
            logger.warning("refresh_token_not_mirrored")
            raise AuthenticationError(INVALID_REFRESH)
        if claims["sub"] != owner_id:
            logger.warning("refresh_token_subject_mismatch", identity_id=owner_id)
            raise AuthenticationError(INVALID_REFRESH)

        found = self.store.find_refresh_token_by_value(presented)
        if not found:
            raise AuthenticationError(INVALID_REFRESH)
        current, identity = found
        if not current.is_usable() or identity is None or current.identity_id != owner_id:
            logger.warning(
                "refresh_token_rejected",
                identity_id=current.identity_id,
                revoked=current.is_revoked,
            )
            raise AuthenticationError(INVALID_REFRESH)
        if not identity.is_active:
            raise AuthenticationError(INVALID_REFRESH)

        tokens = self.issuer.issue(identity.id, identity.email, identity.role.value)
        replacement = RefreshToken.new(
            tokens.refresh_token,
            identity.id,
            self.ttl_seconds,
            ip_address,
            user_agent,
            replaces=current.token,
        )
        try:
            rotated = self.store.rotate_refresh_token(current.token, replacement)
        except Exception:
            # Durable state untouched; give the presented token its mirror back
            await self.cache.set(key, owner_id, remaining_ttl_seconds(current.expires_at))
            raise
        if not rotated:
            logger.warning("refresh_token_replayed", identity_id=identity.id)
            raise AuthenticationError(INVALID_REFRESH)

        try:
            await self._mirror(replacement)
        except Exception as exc:
            self.store.update_refresh_token(
                replacement.token, is_revoked=True, revoked_at=utcnow()
            )
            logger.error("refresh_mirror_write_failed", identity_id=identity.id, error=str(exc))
            raise ServerError("Could not issue refresh token") from exc
        logger.info("refresh_token_rotated", identity_id=identity.id)
        return Rotation(identity=identity, tokens=tokens, record=replacement)

    async def revoke(self, token: str) -> None:
        if not token:
            return
        found = self.store.find_refresh_token_by_value(token)
        if found and not found[0].is_revoked:
            self.store.update_refresh_token(token, is_revoked=True, revoked_at=utcnow())
        await self.cache.delete(refresh_key(token))

    async def _mirror(self, record: RefreshToken) -> None:
        await self.cache.set(
            refresh_key(record.token),
            record.identity_id,
            remaining_ttl_seconds(record.expires_at),
        )
