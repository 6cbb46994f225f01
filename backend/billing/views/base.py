"""Shared plumbing for billing API views: account resolution, error bodies, metrics."""
from __future__ import annotations

import logging
import time
from typing import Optional

from rest_framework.exceptions import ValidationError
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from accounts.directory import AccountNotFound, AccountRef, resolve_account
from billing.exceptions import BillingError
from billing.observability.logging import log_billing_event
from billing.observability.metrics import BILLING_REQUEST_COUNT, BILLING_REQUEST_LATENCY

logger = logging.getLogger(__name__)


class BillingMetricsMixin:
    endpoint_label: str = "billing"

    def _record_request(self, method: str, status: int, started: Optional[float] = None) -> None:
        BILLING_REQUEST_COUNT.labels(
            endpoint=self.endpoint_label,
            method=method,
            status=str(status),
        ).inc()
        if started is not None:
            BILLING_REQUEST_LATENCY.labels(endpoint=self.endpoint_label, method=method).observe(
                time.monotonic() - started
            )

    def _error_response(
        self,
        *,
        status: int,
        code: str,
        message: str,
        details: dict | None = None,
        account: AccountRef | None = None,
        request_id: str | None = None,
    ):
        log_billing_event(
            message=message,
            account=account,
            request_id=request_id,
            extra={"code": code, "details": details or {}, "endpoint": self.endpoint_label},
            level=logging.WARNING if status < 500 else logging.ERROR,
        )
        payload = {"code": code, "message": message, "details": details or {}}
        return Response(payload, status=status)


class BillingAPIView(BillingMetricsMixin, APIView):
    """Authenticated endpoint acting on the caller's clinic or therapist account."""

    permission_classes = [IsAuthenticated]

    def initial(self, request, *args, **kwargs):
        self._started = time.monotonic()
        super().initial(request, *args, **kwargs)

    def finalize_response(self, request, response, *args, **kwargs):
        response = super().finalize_response(request, response, *args, **kwargs)
        self._record_request(request.method, response.status_code, getattr(self, "_started", None))
        return response

    def handle_exception(self, exc):
        if isinstance(exc, BillingError):
            return self._error_response(
                status=exc.status_code,
                code=exc.code,
                message=exc.message,
                details=exc.details,
                account=getattr(self, "_account", None),
                request_id=self.get_request_id(),
            )
        if isinstance(exc, ValidationError):
            return self._error_response(
                status=400,
                code="validation_error",
                message="Request payload is invalid.",
                details=exc.detail,
                request_id=self.get_request_id(),
            )
        if isinstance(exc, AccountNotFound):
            return self._error_response(
                status=404,
                code="account_not_found",
                message="No clinic or therapist account is linked to this user.",
                request_id=self.get_request_id(),
            )
        return super().handle_exception(exc)

    def get_account(self) -> AccountRef:
        account = getattr(self, "_account", None)
        if account is None:
            account = resolve_account(self.request.user)
            self._account = account
        return account

    def get_request_id(self) -> Optional[str]:
        request = getattr(self, "request", None)
        if request is None:
            return None
        return request.headers.get("X-Request-ID") or None

    def get_actor(self) -> str:
        user = getattr(self.request, "user", None)
        if user is None or not user.is_authenticated:
            return ""
        return f"user:{user.pk}"

    def audit_kwargs(self) -> dict:
        return {"actor": self.get_actor(), "request_id": self.get_request_id()}


__all__ = ["BillingAPIView", "BillingMetricsMixin"]
