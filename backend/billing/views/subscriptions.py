"""Subscription lifecycle endpoints for the caller's account."""
from __future__ import annotations

import logging

from rest_framework import status
from rest_framework.response import Response

from billing.filters import SubscriptionFilter
from billing.pagination import BoundedPageNumberPagination
from billing.serializers import (
    CancelSerializer,
    PaymentSerializer,
    PlanChangeSerializer,
    PreviewQuerySerializer,
    ProrationPreviewSerializer,
    PurchaseSerializer,
    SubscriptionPlanSerializer,
    SubscriptionSerializer,
    SubscriptionStatusSerializer,
)
from billing.services import subscription_lifecycle
from billing.views.base import BillingAPIView

logger = logging.getLogger(__name__)


class SubscriptionListView(BillingAPIView):
    endpoint_label = "subscriptions"

    def get(self, request):
        queryset = subscription_lifecycle.list_subscriptions(
            self.get_account(),
            status=request.query_params.get("status") or None,
        )
        queryset = SubscriptionFilter(request.query_params, queryset=queryset, request=request).qs
        paginator = BoundedPageNumberPagination()
        page = paginator.paginate_queryset(queryset, request, view=self)
        return paginator.get_paginated_response(SubscriptionSerializer(page, many=True).data)


class CurrentSubscriptionView(BillingAPIView):
    endpoint_label = "subscription_current"

    def get(self, request):
        subscription = subscription_lifecycle.require_current_subscription(self.get_account())
        return Response(SubscriptionSerializer(subscription).data)


class SubscriptionStatusView(BillingAPIView):
    endpoint_label = "subscription_status"

    def get(self, request):
        summary = subscription_lifecycle.get_status(self.get_account())
        return Response(SubscriptionStatusSerializer(summary).data)


class PurchaseSubscriptionView(BillingAPIView):
    endpoint_label = "subscription_purchase"

    def post(self, request):
        serializer = PurchaseSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = subscription_lifecycle.purchase(
            self.get_account(),
            serializer.validated_data["plan_id"],
            serializer.validated_data.get("payment_method_id"),
            **self.audit_kwargs(),
        )
        return Response(
            {
                "message": "Subscription created.",
                "subscription": SubscriptionSerializer(result.subscription).data,
                "payment": PaymentSerializer(result.payment).data if result.payment else None,
            },
            status=status.HTTP_201_CREATED,
        )


class PreviewUpgradeView(BillingAPIView):
    endpoint_label = "subscription_preview_upgrade"

    def get(self, request):
        serializer = PreviewQuerySerializer(data=request.query_params)
        serializer.is_valid(raise_exception=True)
        preview = subscription_lifecycle.preview_upgrade(self.get_account(), serializer.validated_data["plan_id"])
        return Response(ProrationPreviewSerializer(preview).data)


class UpgradeSubscriptionView(BillingAPIView):
    endpoint_label = "subscription_upgrade"

    def post(self, request):
        serializer = PlanChangeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        result = subscription_lifecycle.upgrade(
            self.get_account(),
            data["new_plan_id"],
            data.get("payment_method_id"),
            proration_behavior=data.get("proration_behavior"),
            **self.audit_kwargs(),
        )
        return Response(
            {
                "message": result.message,
                "subscription": SubscriptionSerializer(result.subscription).data,
                "previous_plan": SubscriptionPlanSerializer(result.previous_plan).data,
                "proration": ProrationPreviewSerializer(result.preview).data,
                "payment": PaymentSerializer(result.payment).data if result.payment else None,
            }
        )


class CancelSubscriptionView(BillingAPIView):
    endpoint_label = "subscription_cancel"

    def post(self, request):
        serializer = CancelSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        immediate = serializer.validated_data["immediate"]
        subscription = subscription_lifecycle.cancel(
            self.get_account(),
            immediate=immediate,
            **self.audit_kwargs(),
        )
        if immediate:
            message = "Subscription canceled."
        else:
            message = f"Subscription will be canceled at the end of the current period ({subscription.current_period_end:%Y-%m-%d})."
        return Response({"message": message, "subscription": SubscriptionSerializer(subscription).data})


class ReactivateSubscriptionView(BillingAPIView):
    endpoint_label = "subscription_reactivate"

    def post(self, request):
        subscription = subscription_lifecycle.reactivate(self.get_account(), **self.audit_kwargs())
        return Response({"message": "Subscription reactivated.", "subscription": SubscriptionSerializer(subscription).data})
