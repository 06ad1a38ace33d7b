from __future__ import annotations

from typing import Any, Dict, Optional

from authkernel.service.errors import InfrastructureError


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StorageUnavailable(InfrastructureError):
    """Backend unreachable or a conditional write could not be applied."""


__all__ = ["ConstraintViolation", "StorageUnavailable"]
