"""Provider webhook endpoint."""
from __future__ import annotations

import logging

from django.conf import settings
from django.utils.decorators import method_decorator
from django.views.decorators.csrf import csrf_exempt
from rest_framework import status
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView

from billing.exceptions import ProviderIntegrationError, WebhookSignatureError
from billing.services.webhook_reconciler import HandlerResult, handle_event
from billing.tasks import process_provider_event_async
from billing.views.base import BillingMetricsMixin

logger = logging.getLogger(__name__)


@method_decorator(csrf_exempt, name="dispatch")
class ProviderWebhookView(BillingMetricsMixin, APIView):
    """Receive provider webhook events, verified against the raw request body."""

    endpoint_label = "webhook"
    authentication_classes = []
    permission_classes = [AllowAny]
    http_method_names = ["post"]

    def post(self, request, *args, **kwargs):
        signature = request.META.get("HTTP_STRIPE_SIGNATURE")
        defer = process_provider_event_async.delay if getattr(settings, "BILLING_WEBHOOK_ASYNC", False) else None

        try:
            result = handle_event(signature, request.body, defer=defer)
        except WebhookSignatureError as exc:
            self._record_request("POST", status.HTTP_400_BAD_REQUEST)
            return self._error_response(status=status.HTTP_400_BAD_REQUEST, code=exc.code, message=exc.message)
        except ProviderIntegrationError as exc:
            # Only transient failures ask the provider to redeliver.
            code = status.HTTP_503_SERVICE_UNAVAILABLE if exc.retryable else status.HTTP_400_BAD_REQUEST
            logger.error("Provider webhook could not be processed (retryable=%s): %s", exc.retryable, exc)
            self._record_request("POST", code)
            return self._error_response(
                status=code,
                code=exc.code,
                message=exc.message,
                details=exc.details,
            )

        code = status.HTTP_202_ACCEPTED if result.status == HandlerResult.QUEUED else status.HTTP_200_OK
        self._record_request("POST", code)
        return Response({"status": result.status, "detail": result.detail, "event_id": result.event_id}, status=code)
