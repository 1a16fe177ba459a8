"""Error taxonomy surfaced by services and rendered by the HTTP layer."""
from __future__ import annotations

from typing import Any, Dict, Optional


class StorefrontError(Exception):
    """Base class for errors that map onto a structured HTTP response."""

    status_code: int = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(StorefrontError):
    status_code = 400


class InvalidPaymentInfoError(ValidationError):
    pass


class AuthorizationError(StorefrontError):
    status_code = 401


class ForbiddenError(StorefrontError):
    status_code = 403


class NotFoundError(StorefrontError):
    status_code = 404


class ConflictError(StorefrontError):
    status_code = 409


class InvalidTransitionError(ConflictError):
    pass


class InsufficientStockError(StorefrontError):
    status_code = 409

    def __init__(self, inventory_id: int, available: int, requested: int) -> None:
        super().__init__(
            f"Not enough stock for inventory {inventory_id}. Only {available} remaining.",
            details={
                "inventory_id": inventory_id,
                "available": available,
                "requested": requested,
            },
        )
        self.inventory_id = inventory_id
        self.available = available
        self.requested = requested


class PaymentProcessingError(StorefrontError):
    status_code = 502


__all__ = [
    "StorefrontError",
    "ValidationError",
    "InvalidPaymentInfoError",
    "AuthorizationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "InvalidTransitionError",
    "InsufficientStockError",
    "PaymentProcessingError",
]
