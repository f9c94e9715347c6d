from __future__ import annotations

from typing import Any, Dict, Optional


class PersistenceError(Exception):
    """Raised when the conversation store cannot complete a read or write.

    ``message`` is safe to surface; engine detail belongs in ``detail`` and
    is only logged server-side.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreTimeoutError(PersistenceError):
    """Raised when a store call exceeds its bounded timeout."""


__all__ = ["PersistenceError", "StoreTimeoutError"]
