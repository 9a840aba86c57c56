from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or integrity constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class InsufficientBalance(ConstraintViolation):
    """A debit would leave the account balance negative."""


class StaleStatus(ConstraintViolation):
    """A payment was no longer in an expected status when the write landed."""


__all__ = ["ConstraintViolation", "InsufficientBalance", "StaleStatus"]
