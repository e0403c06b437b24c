"""
Custom Exceptions for MagnetHub Billing

Hierarchical exception classes for proper error handling across layers.
"""

from datetime import datetime
from typing import Optional, Dict, Any


class MagnetHubError(Exception):
    """Base exception for all MagnetHub billing errors."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.original_error = original_error

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details
        }


class ValidationError(MagnetHubError):
    """Raised when input validation fails."""
    pass


class ConflictError(MagnetHubError):
    """Raised when a request conflicts with the current subscription state."""
    pass


class QuotaExceededError(MagnetHubError):
    """Raised when a tenant has no quota left for a gated action."""

    def __init__(
        self,
        message: str,
        plan: str,
        cap: int,
        used: int,
        resets_at: Optional[datetime] = None,
    ):
        details: Dict[str, Any] = {"plan": plan, "cap": cap, "used": used}
        if resets_at:
            details["resets_at"] = resets_at.isoformat()
        super().__init__(message, details)
        self.plan = plan
        self.cap = cap
        self.used = used
        self.resets_at = resets_at


class ExternalGatewayError(MagnetHubError):
    """Raised when a payment gateway call fails or times out."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        super().__init__(message, details, original_error)
        self.operation = operation


class ReconciliationAnomaly(MagnetHubError):
    """
    Raised inside the reconciler for events that cannot be applied
    (unknown subscription, stale update). Logged and acknowledged,
    never surfaced to the webhook transport.
    """

    def __init__(
        self,
        message: str,
        gateway_subscription_id: Optional[str] = None,
        event_type: Optional[str] = None,
    ):
        details = {}
        if gateway_subscription_id:
            details["gateway_subscription_id"] = gateway_subscription_id
        if event_type:
            details["event_type"] = event_type
        super().__init__(message, details)


class DatabaseError(MagnetHubError):
    """Raised when database operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if table:
            details["table"] = table
        super().__init__(message, details, original_error)


class NotFoundError(DatabaseError):
    """Raised when a requested resource is not found."""
    pass


class StaleRecordError(DatabaseError):
    """Raised when an optimistic write loses against a newer record version."""
    pass


class ConfigurationError(MagnetHubError):
    """Raised when configuration is missing or invalid."""

    def __init__(
        self,
        message: str,
        missing_keys: Optional[list] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if missing_keys:
            details["missing_keys"] = missing_keys
        super().__init__(message, details, original_error)
        self.missing_keys = missing_keys or []
