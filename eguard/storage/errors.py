from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @classmethod
    def duplicate(cls, entity: str, field: str) -> "ConstraintViolation":
        return cls(f"{entity} {field} already exists", {"entity": entity, "field": field})

    @classmethod
    def missing_parent(cls, entity: str, field: str, value: Any) -> "ConstraintViolation":
        return cls(
            f"{entity} references unknown {field}",
            {"entity": entity, "field": field, "value": value},
        )


__all__ = ["ConstraintViolation"]
