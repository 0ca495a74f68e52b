"""Error taxonomy for the billing engine.

Every business failure raised by a service is a BillingError subclass. The
API layer renders them uniformly (see server.billing_error_handler):

    {"detail": {"error_code": ..., "message": ..., "retryable": ..., **details}}

Retryable errors (concurrency conflicts, gateway outages) tell the caller the
same request may succeed later; everything else needs a different request.
"""
from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base class for all billing-engine failures."""
    http_status = 400
    default_code = "BILLING_ERROR"
    retryable = False

    def __init__(self, message: str, error_code: Optional[str] = None, **details: Any):
        self.message = message
        self.error_code = error_code or self.default_code
        self.details = details
        super().__init__(message)

    def to_detail(self) -> Dict[str, Any]:
        detail = {
            "error_code": self.error_code,
            "message": self.message,
            "retryable": self.retryable,
        }
        detail.update(self.details)
        return detail


class ValidationError(BillingError):
    """Malformed or semantically invalid input."""
    http_status = 400
    default_code = "VALIDATION_ERROR"


class NotFoundError(BillingError):
    http_status = 404
    default_code = "NOT_FOUND"


class LimitExceededError(BillingError):
    """A finite plan limit has been reached for a resource."""
    http_status = 403
    default_code = "LIMIT_EXCEEDED"

    def __init__(self, resource: str, current: int, limit: int, plan_type: Optional[str] = None):
        self.resource = resource
        self.current = current
        self.limit = limit
        super().__init__(
            f"Plan limit reached for {resource}: {current}/{limit}",
            resource=resource,
            current=current,
            limit=limit,
            plan_type=plan_type,
            upgrade_required=True,
        )


class FeatureNotAvailableError(BillingError):
    http_status = 403
    default_code = "FEATURE_NOT_AVAILABLE"

    def __init__(self, feature: str, current_plan: Optional[str], required_plan: Optional[str], message: str):
        self.feature = feature
        super().__init__(
            message,
            feature=feature,
            current_plan=current_plan,
            required_plan=required_plan,
            upgrade_required=True,
        )


class CouponRejectedError(BillingError):
    """Coupon exists in the request but cannot be applied; `reason` says why."""
    http_status = 400
    default_code = "COUPON_REJECTED"

    def __init__(self, reason: str, message: str):
        self.reason = reason
        super().__init__(message, reason=reason)


class InvalidStateError(BillingError):
    """Operation not allowed from the entity's current state."""
    http_status = 409
    default_code = "INVALID_STATE"


class ConcurrencyConflictError(BillingError):
    http_status = 409
    default_code = "CONCURRENCY_CONFLICT"
    retryable = True


class ExternalDependencyError(BillingError):
    """Payment gateway (or another upstream) unavailable or refused the call."""
    http_status = 502
    default_code = "EXTERNAL_DEPENDENCY_ERROR"
    retryable = True


class ExpiredError(BillingError):
    """The payment window elapsed; the caller must start a new payment."""
    http_status = 410
    default_code = "PAYMENT_EXPIRED"
