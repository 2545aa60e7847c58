"""
Error taxonomy for the inventory reservation engine.

Business outcomes (ConflictError, ExpiredError) are returned to callers for
normal handling. Busy is retryable. LedgerCorruption signals an invariant
violation in a single counter row and is never retried.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any


class InventoryErrorType(Enum):
    """Categorized error types for inventory operations."""

    VALIDATION = "validation_error"
    NOT_FOUND = "not_found"
    CONFLICT = "capacity_conflict"
    BUSY = "busy"
    EXPIRED = "expired"
    FORBIDDEN = "forbidden"
    TENANT_NOT_FOUND = "tenant_not_found"
    LEDGER_CORRUPTION = "ledger_corruption"
    INVALID_TRANSITION = "invalid_transition"


class InventoryError(Exception):
    """Base exception for all inventory engine errors."""

    error_type: InventoryErrorType = InventoryErrorType.VALIDATION
    http_status: int = 400
    retryable: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.timestamp = datetime.now(UTC)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for API responses and logging."""
        payload: dict[str, Any] = {
            "error": self.message,
            "error_type": self.error_type.value,
            "retryable": self.retryable,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(InventoryError):
    """Raised for malformed input."""

    error_type = InventoryErrorType.VALIDATION
    http_status = 400


class NotFoundError(InventoryError):
    """Raised when an episode, campaign, reservation or alert does not exist in the tenant."""

    error_type = InventoryErrorType.NOT_FOUND
    http_status = 404


class ConflictError(InventoryError):
    """Raised when capacity is exhausted. Expected outcome, never retried."""

    error_type = InventoryErrorType.CONFLICT
    http_status = 409

    def __init__(self, message: str, remaining: int, details: dict[str, Any] | None = None):
        super().__init__(message, details)
        self.remaining = remaining

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["remaining"] = self.remaining
        return payload


class Busy(InventoryError):
    """Raised when a counter row is locked by a concurrent transaction past the lock timeout."""

    error_type = InventoryErrorType.BUSY
    http_status = 503
    retryable = True


class ExpiredError(InventoryError):
    """Raised for operations on a lapsed or no longer held reservation."""

    error_type = InventoryErrorType.EXPIRED
    http_status = 410


class ForbiddenError(InventoryError):
    """Raised on tenant or role violations."""

    error_type = InventoryErrorType.FORBIDDEN
    http_status = 403


class TenantNotFound(ForbiddenError):
    """Raised when a principal has no bound tenant partition."""

    error_type = InventoryErrorType.TENANT_NOT_FOUND


class LedgerCorruption(InventoryError):
    """Raised when a counter would go negative or exceed its total."""

    error_type = InventoryErrorType.LEDGER_CORRUPTION
    http_status = 500


class InvalidTransition(InventoryError):
    """Raised for disallowed alert lifecycle transitions."""

    error_type = InventoryErrorType.INVALID_TRANSITION
    http_status = 409
