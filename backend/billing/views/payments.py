"""Payment history endpoints."""
from __future__ import annotations

from rest_framework.response import Response

from billing.serializers import PaymentSerializer
from billing.services import payment_ledger
from billing.views.base import BillingAPIView


class PaymentListView(BillingAPIView):
    endpoint_label = "payments"

    def get(self, request):
        result = payment_ledger.list_payments(
            self.get_account(),
            page=request.query_params.get("page") or 1,
            limit=request.query_params.get("limit") or payment_ledger.DEFAULT_PAGE_SIZE,
        )
        return Response(
            {
                "payments": PaymentSerializer(result["items"], many=True).data,
                "pagination": {
                    "total": result["total"],
                    "page": result["page"],
                    "limit": result["limit"],
                    "total_pages": result["total_pages"],
                },
            }
        )


class PaymentDetailView(BillingAPIView):
    endpoint_label = "payment_detail"

    def get(self, request, payment_id):
        payment = payment_ledger.get_payment(self.get_account(), payment_id)
        return Response(PaymentSerializer(payment).data)
