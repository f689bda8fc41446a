"""
Custom Exceptions for the Billing Engine

Hierarchical exception classes for proper error handling across layers.
"""

from typing import Optional, Dict, Any


class BillingEngineError(Exception):
    """Base exception for all billing engine errors."""

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


class ValidationError(BillingEngineError):
    """Raised when input validation fails."""
    pass


class DatabaseError(BillingEngineError):
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


# =============================================================================
# Lookups
# =============================================================================

class NotFoundError(BillingEngineError):
    """Raised when a requested resource is not found."""

    resource = "resource"

    def __init__(self, resource_id: str, message: Optional[str] = None):
        super().__init__(
            message or f"{self.resource.capitalize()} {resource_id} not found",
            {f"{self.resource}_id": resource_id},
        )
        self.resource_id = resource_id


class UserNotFoundError(NotFoundError):
    resource = "user"


class PlanNotFoundError(NotFoundError):
    resource = "plan"


class SubscriptionNotFoundError(NotFoundError):
    resource = "subscription"


class TransactionNotFoundError(NotFoundError):
    resource = "transaction"


# =============================================================================
# Lifecycle
# =============================================================================

class InvalidStateError(BillingEngineError):
    """Raised when an operation is not allowed in the subscription's current state."""

    def __init__(
        self,
        message: str,
        subscription_id: Optional[str] = None,
        status: Optional[str] = None,
        operation: Optional[str] = None,
    ):
        details = {}
        if subscription_id:
            details["subscription_id"] = subscription_id
        if status:
            details["status"] = status
        if operation:
            details["operation"] = operation
        super().__init__(message, details)


class ConcurrentModificationError(InvalidStateError):
    """Raised when a conditional update lost a race with another writer."""
    pass


class DuplicateActiveSubscriptionError(BillingEngineError):
    """Raised when a user already holds a pending, active or grace subscription."""

    def __init__(self, user_id: str, original_error: Optional[Exception] = None):
        super().__init__(
            f"User {user_id} already has an open subscription",
            {"user_id": user_id},
            original_error,
        )
        self.user_id = user_id


# =============================================================================
# Payments
# =============================================================================

class PaymentError(BillingEngineError):
    """Base class for payment failures."""

    def __init__(
        self,
        message: str,
        gateway: Optional[str] = None,
        reference: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if gateway:
            details["gateway"] = gateway
        if reference:
            details["reference"] = reference
        super().__init__(message, details, original_error)


class PaymentGatewayError(PaymentError):
    """Raised when the gateway is unreachable, times out or rejects the request."""

    retryable = True


class PaymentDeclinedError(PaymentError):
    """Raised when the gateway reports the charge as failed."""

    retryable = False


class WebhookVerificationError(PaymentError):
    """Raised when a webhook signature or payload cannot be verified."""
    pass


class ConfigurationError(BillingEngineError):
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
