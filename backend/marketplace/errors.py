from typing import Optional


class MarketplaceError(ValueError):
    """Base class for user-visible marketplace errors.

    Every subclass carries an HTTP-equivalent ``status_code`` and a
    machine-stable ``reason`` string that callers can branch on.
    """

    status_code = 400
    default_reason = "bad_request"

    def __init__(self, message: str, *, reason: Optional[str] = None, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.reason = reason or self.default_reason
        if status_code is not None:
            self.status_code = status_code


class MarketplaceValidationError(MarketplaceError):
    default_reason = "invalid_input"


class MarketplaceConflictError(MarketplaceError):
    default_reason = "state_conflict"


class VendorNotEligibleError(MarketplaceConflictError):
    status_code = 403
    default_reason = "vendor_not_eligible"


class MarketplaceAuthError(MarketplaceError):
    status_code = 401
    default_reason = "unauthorized"


class MarketplacePermissionError(MarketplaceError):
    status_code = 403
    default_reason = "forbidden"


class MarketplaceNotFoundError(MarketplaceError):
    status_code = 404
    default_reason = "not_found"


class PaymentUpstreamError(MarketplaceError):
    status_code = 502
    default_reason = "payment_processor_error"

    def __init__(self, message: str, *, retryable: bool = False, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retryable = retryable
