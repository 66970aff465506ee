from __future__ import annotations

import threading
from dataclasses import replace
from typing import Any, Dict, List, Optional, Set

from hrms.logging import get_logger
from hrms.storage.common import check_identity_changes, ip_list, normalize_email, normalize_ip
from hrms.storage.errors import ConstraintViolation
from hrms.storage.models import (
    ActivityEvent,
    Identity,
    RefreshToken,
    Session,
    utcnow,
)


class MemoryStore:
    """In-memory durable store used by tests and local development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.identities: Dict[str, Identity] = {}
        self.sessions: Dict[str, Session] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.global_allowed_ips: Set[str] = set()
        self.activity: List[ActivityEvent] = []
        # RLock so compound operations can call the single-record helpers
        self._data_lock = threading.RLock()

    # identities
    def find_identity_by_email(self, email: str) -> Optional[Identity]:
        normalized = normalize_email(email)
        with self._data_lock:
            return next(
                (i for i in self.identities.values() if i.email == normalized), None
            )

    def find_identity_by_id(self, identity_id: str) -> Optional[Identity]:
        with self._data_lock:
            return self.identities.get(identity_id)

    def create_identity(self, identity: Identity) -> Identity:
        identity = replace(
            identity,
            email=normalize_email(identity.email),
            allowed_ips=ip_list(identity.allowed_ips),
        )
        with self._data_lock:
            if identity.id in self.identities:
                raise ConstraintViolation("identity already exists", {"field": "id"})
            if any(existing.email == identity.email for existing in self.identities.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            self.identities[identity.id] = identity
            return identity

    def update_identity(self, identity_id: str, **changes: Any) -> Optional[Identity]:
        check_identity_changes(changes)
        if "allowed_ips" in changes:
            changes["allowed_ips"] = ip_list(changes["allowed_ips"])
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity:
                return None
            for name, value in changes.items():
                setattr(identity, name, value)
            return identity

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.identity_id not in self.identities:
                raise ConstraintViolation(
                    "identity does not exist", {"identity_id": session.identity_id}
                )
            if session.id in self.sessions:
                raise ConstraintViolation("session already exists", {"field": "id"})
            self.sessions[session.id] = session
            return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def update_session(self, session_id: str, **changes: Any) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return None
            for name, value in changes.items():
                if not hasattr(sess, name):
                    raise ValueError(f"Unknown session field: {name}")
                setattr(sess, name, value)
            return sess

    # refresh tokens
    def create_refresh_token(self, record: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if record.identity_id not in self.identities:
                raise ConstraintViolation(
                    "identity does not exist", {"identity_id": record.identity_id}
                )
            if record.token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            self.refresh_tokens[record.token] = record
            return record

    def update_refresh_token(self, token: str, **changes: Any) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            if not record:
                return None
            for name, value in changes.items():
                if not hasattr(record, name):
                    raise ValueError(f"Unknown refresh token field: {name}")
                setattr(record, name, value)
            return record

    def find_refresh_token_by_value(
        self, token: str
    ) -> Optional[tuple[RefreshToken, Optional[Identity]]]:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            if not record:
                return None
            return record, self.identities.get(record.identity_id)

    def rotate_refresh_token(self, presented: str, replacement: RefreshToken) -> bool:
        """Revoke ``presented`` and insert ``replacement`` as one unit.

        Returns False without writing anything when ``presented`` is missing
        or already revoked.
        """
        with self._data_lock:
            current = self.refresh_tokens.get(presented)
            if current is None or current.is_revoked:
                return False
            if replacement.token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            current.is_revoked = True
            current.revoked_at = utcnow()
            current.replaced_by = replacement.token
            self.refresh_tokens[replacement.token] = replacement
            return True

    # network allow-list
    def add_global_allowed_ip(self, ip: str) -> None:
        with self._data_lock:
            self.global_allowed_ips.add(normalize_ip(ip))

    def find_global_allowed_ip(self, ip: str) -> bool:
        with self._data_lock:
            return normalize_ip(ip) in self.global_allowed_ips

    # audit
    def record_activity(self, event: ActivityEvent) -> None:
        with self._data_lock:
            self.activity.append(event)

    def list_activity(self, identity_id: Optional[str] = None) -> List[ActivityEvent]:
        with self._data_lock:
            return [
                e for e in self.activity if identity_id is None or e.identity_id == identity_id
            ]
