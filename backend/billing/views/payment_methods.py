"""Stored payment method endpoints for the caller's account."""
from __future__ import annotations

from rest_framework import status
from rest_framework.response import Response

from billing.serializers import (
    PaymentMethodCreateSerializer,
    PaymentMethodSerializer,
    PaymentMethodUpdateSerializer,
)
from billing.services import payment_methods
from billing.views.base import BillingAPIView


class PaymentMethodListView(BillingAPIView):
    endpoint_label = "payment_methods"

    def get(self, request):
        methods = payment_methods.list_payment_methods(self.get_account())
        return Response(PaymentMethodSerializer(methods, many=True).data)

    def post(self, request):
        serializer = PaymentMethodCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        method = payment_methods.add_payment_method(self.get_account(), **serializer.validated_data)
        return Response(PaymentMethodSerializer(method).data, status=status.HTTP_201_CREATED)


class DefaultPaymentMethodView(BillingAPIView):
    endpoint_label = "payment_method_default"

    def get(self, request):
        method = payment_methods.get_default_payment_method(self.get_account())
        return Response(PaymentMethodSerializer(method).data)


class PaymentMethodDetailView(BillingAPIView):
    endpoint_label = "payment_method_detail"

    def get(self, request, payment_method_id):
        method = payment_methods.get_payment_method(self.get_account(), payment_method_id)
        return Response(PaymentMethodSerializer(method).data)

    def patch(self, request, payment_method_id):
        serializer = PaymentMethodUpdateSerializer(data=request.data, partial=True)
        serializer.is_valid(raise_exception=True)
        method = payment_methods.update_payment_method(
            self.get_account(),
            payment_method_id,
            **serializer.validated_data,
        )
        return Response(PaymentMethodSerializer(method).data)

    def delete(self, request, payment_method_id):
        promoted = payment_methods.delete_payment_method(self.get_account(), payment_method_id)
        return Response(
            {
                "message": "Payment method deleted.",
                "new_default": PaymentMethodSerializer(promoted).data if promoted else None,
            },
            status=status.HTTP_200_OK,
        )


class SetDefaultPaymentMethodView(BillingAPIView):
    endpoint_label = "payment_method_set_default"

    def post(self, request, payment_method_id):
        method = payment_methods.set_default_payment_method(self.get_account(), payment_method_id)
        return Response(PaymentMethodSerializer(method).data)
