from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Raised when the key-value store cannot complete an operation."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class WrongTypeError(StoreError):
    """Raised when an operation targets a key holding another value type."""


__all__ = ["StoreError", "WrongTypeError"]
