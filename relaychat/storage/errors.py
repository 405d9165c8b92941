from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A record store write would break uniqueness or a membership rule.

    ``field`` names the offending attribute and is echoed in ``detail`` so the
    API can return it without knowing which collection raised.
    """

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.field = field
        self.detail = dict(detail or {})
        if field:
            self.detail.setdefault("field", field)


__all__ = ["ConstraintViolation"]
