"""
Shared application exceptions mapped to HTTP responses in ``create_app``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class AppError(Exception):
    message: str = "Application error"
    details: Optional[dict[str, Any]] = None

    def __str__(self) -> str:
        return self.message


class NotFoundError(AppError):
    pass


class ValidationError(AppError):
    pass


class ConflictError(AppError):
    pass


class QuotaExceeded(AppError):
    """Caller has no remaining call allowance; rejected at enqueue."""

    def __init__(self, message: str = "Call limit exceeded", details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message=message, details=details)
