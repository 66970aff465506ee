from __future__ import annotations

import uuid
from typing import Any, Dict, Optional

from hrms.logging import get_logger
from hrms.service.errors import ServerError
from hrms.storage.common import CredentialStore, EphemeralStore, dump_json, load_json
from hrms.storage.models import Identity, Session

logger = get_logger(__name__)


def session_key(session_id: str) -> str:
    return f"session:{session_id}"


class SessionManager:
    """Durable session rows with a TTL'd mirror in the ephemeral store.

    The durable row is kept for audit and listing; the mirror answers
    ``validate`` on the hot path and is what logout removes.
    """

    def __init__(
        self, store: CredentialStore, cache: EphemeralStore, *, ttl_seconds: int
    ) -> None:
        self.store = store
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def new_id() -> str:
        return str(uuid.uuid4())

    async def open(
        self,
        identity: Identity,
        ip_address: Optional[str],
        user_agent: Optional[str],
        *,
        session_id: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
    ) -> Session:
        ttl = ttl_seconds or self.ttl_seconds
        session = Session.new(
            identity.id,
            ttl,
            ip_address,
            user_agent,
            session_id=session_id or self.new_id(),
        )
        self.store.create_session(session)
        try:
            await self.cache.set(session_key(session.id), dump_json(identity.snapshot()), ttl)
        except Exception as exc:
            # No mirror means no valid session: retire the durable row too
            self.store.update_session(session.id, is_active=False)
            logger.error(
                "session_mirror_write_failed",
                session_id=session.id,
                identity_id=identity.id,
                error=str(exc),
            )
            raise ServerError("Could not establish session") from exc
        logger.info("session_opened", session_id=session.id, identity_id=identity.id)
        return session

    async def validate(self, session_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not session_id:
            return None
        snapshot = load_json(await self.cache.get(session_key(session_id)))
        return snapshot if isinstance(snapshot, dict) else None

    async def close(self, session_id: Optional[str]) -> None:
        if not session_id:
            return
        self.store.update_session(session_id, is_active=False)
        await self.cache.delete(session_key(session_id))
        logger.info("session_closed", session_id=session_id)
