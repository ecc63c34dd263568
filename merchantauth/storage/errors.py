from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a uniqueness constraint on an account column is violated.

    ``field`` names the offending column (``email``, ``mobile``,
    ``merchant_id``) so callers can tell a duplicate address from a public ID
    collision.
    """

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        field: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.field = field
        self.detail = detail or ({"field": field} if field else {})


__all__ = ["ConstraintViolation"]
