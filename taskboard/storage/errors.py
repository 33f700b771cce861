from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A write broke a store invariant: unique email, known owner or field set.

    ``field`` names the offending wire field when there is exactly one, so
    the API can report it in the ``errors`` list.
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
        self.detail = detail or {}
        self.field = field or self.detail.get("field")


__all__ = ["ConstraintViolation"]
