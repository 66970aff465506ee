from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a durable-store uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class CacheUnavailable(Exception):
    """Raised when the ephemeral store cannot complete a write or read."""


__all__ = ["ConstraintViolation", "CacheUnavailable"]
