"""Error taxonomy shared by billing services and the HTTP boundary."""
from __future__ import annotations

from typing import Any, Dict, Optional


class BillingError(RuntimeError):
    """Base class for billing failures carrying a stable error code."""

    status_code = 400
    default_code = "billing_error"

    def __init__(self, message: str, *, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def as_payload(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class BillingValidationError(BillingError):
    """Malformed or disallowed input, rejected before any provider call."""

    status_code = 400
    default_code = "validation_error"


class BillingConflictError(BillingError):
    """Request collides with existing state; nothing was changed."""

    status_code = 409
    default_code = "conflict"


class BillingNotFoundError(BillingError):
    status_code = 404
    default_code = "not_found"


class ProviderIntegrationError(BillingError):
    """Provider call failed or returned data the billing core cannot use."""

    status_code = 502
    default_code = "provider_error"

    def __init__(self, message: str, *, retryable: bool = False, **kwargs):
        super().__init__(message, **kwargs)
        self.retryable = retryable


class WebhookSignatureError(BillingError):
    """Webhook payload failed signature verification."""

    status_code = 400
    default_code = "invalid_signature"


__all__ = [
    "BillingConflictError",
    "BillingError",
    "BillingNotFoundError",
    "BillingValidationError",
    "ProviderIntegrationError",
    "WebhookSignatureError",
]
