"""DRF serializers for billing flows (plans, payment methods, subscriptions, payments)."""
from __future__ import annotations

from typing import Any, Dict, Optional

from django.utils.translation import gettext_lazy as _
from rest_framework import serializers

from billing.models import Payment, PaymentMethod, Subscription, SubscriptionPlan
from billing.services.gateway import PRORATION_BEHAVIORS
from billing.services.payment_methods import BILLING_FIELDS


class SubscriptionPlanSerializer(serializers.ModelSerializer):
    is_active = serializers.BooleanField(read_only=True)
    superseded_by = serializers.UUIDField(source="superseded_by_id", read_only=True, allow_null=True)

    class Meta:
        model = SubscriptionPlan
        fields = (
            "id",
            "name",
            "features",
            "price",
            "currency",
            "duration_days",
            "interval",
            "interval_count",
            "audience",
            "stripe_product_id",
            "stripe_price_id",
            "is_active",
            "superseded_by",
            "expired_at",
            "created_at",
            "updated_at",
        )
        read_only_fields = fields


class PlanSummarySerializer(serializers.ModelSerializer):
    class Meta:
        model = SubscriptionPlan
        fields = ("id", "name", "price", "currency", "duration_days", "audience")
        read_only_fields = fields


class PlanCreateSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=100)
    features = serializers.CharField(required=False, allow_blank=True, default="")
    price = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=0)
    duration_days = serializers.IntegerField(min_value=1)
    audience = serializers.ChoiceField(choices=SubscriptionPlan.Audience.choices)
    currency = serializers.CharField(max_length=3, required=False, allow_blank=True)


class PlanUpdateSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=100, required=False)
    features = serializers.CharField(required=False, allow_blank=True)
    price = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=0, required=False)
    duration_days = serializers.IntegerField(min_value=1, required=False)
    audience = serializers.ChoiceField(choices=SubscriptionPlan.Audience.choices, required=False)

    def validate(self, attrs: Dict[str, Any]) -> Dict[str, Any]:
        if not attrs:
            raise serializers.ValidationError({"non_field_errors": [_("No changes supplied.")]})
        return attrs


class PaymentMethodSerializer(serializers.ModelSerializer):
    class Meta:
        model = PaymentMethod
        fields = (
            "id",
            "stripe_payment_method_id",
            "card_holder_name",
            "card_last4",
            "card_brand",
            "expiry_month",
            "expiry_year",
            "billing_address_line1",
            "billing_address_line2",
            "billing_city",
            "billing_state",
            "billing_postal_code",
            "billing_country",
            "is_default",
            "created_at",
            "updated_at",
        )
        read_only_fields = fields


class PaymentMethodCreateSerializer(serializers.Serializer):
    stripe_payment_method_id = serializers.CharField(max_length=255)
    card_holder_name = serializers.CharField(max_length=255, required=False, allow_blank=True)
    card_last4 = serializers.RegexField(r"^\d{4}$", required=False, allow_blank=True)
    card_brand = serializers.CharField(max_length=32, required=False, allow_blank=True)
    expiry_month = serializers.IntegerField(min_value=1, max_value=12, required=False, allow_null=True)
    expiry_year = serializers.IntegerField(min_value=2000, max_value=2999, required=False, allow_null=True)
    billing_address_line1 = serializers.CharField(max_length=255, required=False, allow_blank=True)
    billing_address_line2 = serializers.CharField(max_length=255, required=False, allow_blank=True)
    billing_city = serializers.CharField(max_length=100, required=False, allow_blank=True)
    billing_state = serializers.CharField(max_length=100, required=False, allow_blank=True)
    billing_postal_code = serializers.CharField(max_length=20, required=False, allow_blank=True)
    billing_country = serializers.CharField(max_length=2, required=False, allow_blank=True)


class PaymentMethodUpdateSerializer(serializers.Serializer):
    card_holder_name = serializers.CharField(max_length=255, required=False, allow_blank=True)
    expiry_month = serializers.IntegerField(min_value=1, max_value=12, required=False, allow_null=True)
    expiry_year = serializers.IntegerField(min_value=2000, max_value=2999, required=False, allow_null=True)
    billing_address_line1 = serializers.CharField(max_length=255, required=False, allow_blank=True)
    billing_address_line2 = serializers.CharField(max_length=255, required=False, allow_blank=True)
    billing_city = serializers.CharField(max_length=100, required=False, allow_blank=True)
    billing_state = serializers.CharField(max_length=100, required=False, allow_blank=True)
    billing_postal_code = serializers.CharField(max_length=20, required=False, allow_blank=True)
    billing_country = serializers.CharField(max_length=2, required=False, allow_blank=True)

    def to_internal_value(self, data):
        if hasattr(data, "keys"):
            rejected = set(data.keys()) - set(BILLING_FIELDS)
            if rejected:
                raise serializers.ValidationError(
                    {field: [_("This field cannot be updated.")] for field in sorted(rejected)}
                )
        return super().to_internal_value(data)


class SubscriptionSerializer(serializers.ModelSerializer):
    plan = PlanSummarySerializer(read_only=True)
    is_live = serializers.BooleanField(read_only=True)

    class Meta:
        model = Subscription
        fields = (
            "id",
            "stripe_subscription_id",
            "plan",
            "status",
            "is_live",
            "current_period_start",
            "current_period_end",
            "cancel_at_period_end",
            "canceled_at",
            "created_at",
            "updated_at",
        )
        read_only_fields = fields


class PaymentSerializer(serializers.ModelSerializer):
    subscription_id = serializers.UUIDField(read_only=True, allow_null=True)
    plan_name = serializers.SerializerMethodField()

    class Meta:
        model = Payment
        fields = (
            "id",
            "subscription_id",
            "plan_name",
            "stripe_payment_intent_id",
            "stripe_charge_id",
            "amount",
            "currency",
            "status",
            "description",
            "payment_method_last4",
            "payment_method_brand",
            "payment_type",
            "paid_at",
            "created_at",
        )
        read_only_fields = fields

    def get_plan_name(self, obj: Payment) -> Optional[str]:
        if obj.subscription_id and obj.subscription is not None:
            return obj.subscription.plan.name
        return None


class PurchaseSerializer(serializers.Serializer):
    plan_id = serializers.UUIDField()
    payment_method_id = serializers.UUIDField(required=False, allow_null=True)


class PlanChangeSerializer(serializers.Serializer):
    new_plan_id = serializers.UUIDField()
    payment_method_id = serializers.UUIDField(required=False, allow_null=True)
    proration_behavior = serializers.ChoiceField(choices=PRORATION_BEHAVIORS, required=False)


class PreviewQuerySerializer(serializers.Serializer):
    plan_id = serializers.UUIDField()


class CancelSerializer(serializers.Serializer):
    immediate = serializers.BooleanField(required=False, default=False)


class ProrationPreviewSerializer(serializers.Serializer):
    current_plan = PlanSummarySerializer()
    new_plan = PlanSummarySerializer()
    percent_remaining = serializers.DecimalField(max_digits=6, decimal_places=4)
    proration_amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    immediate_charge = serializers.DecimalField(max_digits=12, decimal_places=2)
    credit_amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    days_remaining = serializers.IntegerField()
    next_billing_date = serializers.DateTimeField()
    currency = serializers.CharField()
    is_upgrade = serializers.BooleanField()
    is_downgrade = serializers.BooleanField()
    is_estimate = serializers.BooleanField()
    message = serializers.CharField()


class SubscriptionStatusSerializer(serializers.Serializer):
    subscription = SubscriptionSerializer(allow_null=True)
    problem_subscription = SubscriptionSerializer(allow_null=True)
    has_active_subscription = serializers.SerializerMethodField()
    days_until_renewal = serializers.IntegerField(allow_null=True)
    payment_methods = serializers.DictField(child=serializers.IntegerField())
    capabilities = serializers.DictField(child=serializers.BooleanField())
    warnings = serializers.ListField(child=serializers.DictField())

    def get_has_active_subscription(self, obj) -> bool:
        return obj.subscription is not None


__all__ = [
    "CancelSerializer",
    "PaymentMethodCreateSerializer",
    "PaymentMethodSerializer",
    "PaymentMethodUpdateSerializer",
    "PaymentSerializer",
    "PlanChangeSerializer",
    "PlanCreateSerializer",
    "PlanSummarySerializer",
    "PlanUpdateSerializer",
    "PreviewQuerySerializer",
    "ProrationPreviewSerializer",
    "PurchaseSerializer",
    "SubscriptionPlanSerializer",
    "SubscriptionSerializer",
    "SubscriptionStatusSerializer",
]
