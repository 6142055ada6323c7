"""
Fulfillment Exception Hierarchy

All exceptions include code, message, and details for audit trail and
debugging. `http_status` is used by the API error handler.

Exception Hierarchy:
    FulfillmentError
    ├── ValidationError
    ├── NotFoundError
    ├── ConflictError
    │   ├── InsufficientStockError
    │   ├── CouponExhaustedError
    │   ├── DuplicateShipmentError
    │   ├── DuplicatePickupError
    │   └── InvalidTransitionError
    └── CarrierError
        ├── AuthError
        ├── RateLimitError
        └── CarrierTimeoutError
"""
import logging
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)


class FulfillmentError(Exception):
    """
    Base exception for all fulfillment errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging/audit
        severity: P0-P3 severity level
    """

    default_code: str = "FULFILLMENT_ERROR"
    default_severity: str = "P2"
    http_status: int = 500

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.severity = severity or self.default_severity
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


# =============================================================================
# INPUT / STATE ERRORS
# =============================================================================

class ValidationError(FulfillmentError):
    """Correctable input problem."""
    default_code = "VALIDATION_ERROR"
    default_severity = "P3"
    http_status = 400


class NotFoundError(FulfillmentError):
    """Missing order, coupon, or product."""
    default_code = "NOT_FOUND"
    default_severity = "P3"
    http_status = 404


class ConflictError(FulfillmentError):
    """Request conflicts with current state."""
    default_code = "CONFLICT"
    default_severity = "P3"
    http_status = 409


class InsufficientStockError(ConflictError):
    default_code = "INSUFFICIENT_STOCK"

    def __init__(
        self,
        message: str,
        product_id: Optional[int] = None,
        requested: Optional[int] = None,
        available: Optional[int] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "product_id": product_id,
            "requested": requested,
            "available": available,
        })
        super().__init__(message, details=details, **kwargs)


class CouponExhaustedError(ConflictError):
    default_code = "COUPON_EXHAUSTED"


class DuplicateShipmentError(ConflictError):
    default_code = "DUPLICATE_SHIPMENT"


class DuplicatePickupError(ConflictError):
    default_code = "DUPLICATE_PICKUP"


class InvalidTransitionError(ConflictError):
    default_code = "INVALID_STATUS_TRANSITION"

    def __init__(self, current: str, requested: str, **kwargs):
        details = kwargs.pop("details", {})
        details.update({"current": current, "requested": requested})
        super().__init__(
            f"Cannot move order from {current} to {requested}",
            details=details,
            **kwargs
        )


# =============================================================================
# CARRIER ERRORS
# =============================================================================

class CarrierError(FulfillmentError):
    """Non-2xx or unusable response from the carrier API. Not retried."""
    default_code = "CARRIER_ERROR"
    default_severity = "P1"
    http_status = 502
    retryable = False

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        body: Any = None,
        **kwargs
    ):
        self.status = status
        self.body = body
        details = kwargs.pop("details", {})
        details.update({"status": status, "body": body})
        super().__init__(message, details=details, **kwargs)


class AuthError(CarrierError):
    """Carrier credentials rejected or token exchange failed."""
    default_code = "CARRIER_AUTH_FAILED"
    default_severity = "P0"


class RateLimitError(CarrierError):
    """Carrier kept returning 429 after capped backoff."""
    default_code = "CARRIER_RATE_LIMITED"
    http_status = 503
    retryable = True


class CarrierTimeoutError(CarrierError):
    """Carrier call exceeded its own deadline."""
    default_code = "CARRIER_TIMEOUT"
    http_status = 504
    retryable = True
