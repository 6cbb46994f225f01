"""FilterSet definitions for billing endpoints."""
from __future__ import annotations

import django_filters

from billing.models import Subscription


class SubscriptionFilter(django_filters.FilterSet):
    plan_id = django_filters.UUIDFilter(field_name="plan_id")
    created_after = django_filters.DateTimeFilter(field_name="created_at", lookup_expr="gte")
    created_before = django_filters.DateTimeFilter(field_name="created_at", lookup_expr="lte")
    cancel_at_period_end = django_filters.BooleanFilter(field_name="cancel_at_period_end")

    class Meta:
        model = Subscription
        fields = ["plan_id", "cancel_at_period_end"]
