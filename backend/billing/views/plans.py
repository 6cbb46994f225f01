"""Plan catalog endpoints: public listing plus staff management."""
from __future__ import annotations

from rest_framework import status
from rest_framework.permissions import AllowAny, IsAdminUser
from rest_framework.response import Response

from billing.serializers import PlanCreateSerializer, PlanUpdateSerializer, SubscriptionPlanSerializer
from billing.services import plan_catalog
from billing.views.base import BillingAPIView


class PlanListView(BillingAPIView):
    endpoint_label = "plans"
    permission_classes = [AllowAny]

    def get(self, request):
        plans = plan_catalog.list_plans(request.query_params.get("audience") or None)
        return Response(SubscriptionPlanSerializer(plans, many=True).data)


class PlanDetailView(BillingAPIView):
    endpoint_label = "plan_detail"
    permission_classes = [AllowAny]

    def get(self, request, plan_id):
        plan = plan_catalog.get_plan(plan_id)
        return Response(SubscriptionPlanSerializer(plan).data)


class AdminPlanListView(BillingAPIView):
    endpoint_label = "admin_plans"
    permission_classes = [IsAdminUser]

    def get(self, request):
        include_retired = request.query_params.get("include_retired", "").lower() in ("1", "true", "yes")
        plans = plan_catalog.list_plans(
            request.query_params.get("audience") or None,
            include_retired=include_retired,
        )
        return Response(SubscriptionPlanSerializer(plans, many=True).data)

    def post(self, request):
        serializer = PlanCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        plan = plan_catalog.create_plan(**serializer.validated_data, **self.audit_kwargs())
        return Response(SubscriptionPlanSerializer(plan).data, status=status.HTTP_201_CREATED)


class AdminPlanDetailView(BillingAPIView):
    endpoint_label = "admin_plan_detail"
    permission_classes = [IsAdminUser]

    def patch(self, request, plan_id):
        serializer = PlanUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = plan_catalog.update_plan(plan_id, **serializer.validated_data, **self.audit_kwargs())
        payload = {
            "plan": SubscriptionPlanSerializer(result.plan).data,
            "price_changed": result.price_changed,
            "versioned": result.versioned,
        }
        if result.previous_plan is not None:
            payload["previous_plan_id"] = str(result.previous_plan.pk)
        if result.note:
            payload["note"] = result.note
        return Response(payload)

    def delete(self, request, plan_id):
        plan = plan_catalog.retire_plan(plan_id, **self.audit_kwargs())
        return Response(
            {"message": "Plan retired.", "plan": SubscriptionPlanSerializer(plan).data},
            status=status.HTTP_200_OK,
        )


class AdminPlanRestoreView(BillingAPIView):
    endpoint_label = "admin_plan_restore"
    permission_classes = [IsAdminUser]

    def post(self, request, plan_id):
        plan = plan_catalog.restore_plan(plan_id, **self.audit_kwargs())
        return Response({"message": "Plan restored.", "plan": SubscriptionPlanSerializer(plan).data})
