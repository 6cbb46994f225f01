from django.contrib import admin

from .models import (
    BillingAuditLog,
    Payment,
    PaymentMethod,
    Subscription,
    SubscriptionPlan,
    WebhookEventLog,
)


class AccountOwnerMixin:
    @admin.display(description="Account")
    def owner_display(self, obj):
        if obj.clinic_id:
            return f"Clinic: {obj.clinic.full_name or obj.clinic.email}"
        if obj.therapist_id:
            return f"Therapist: {obj.therapist.full_name or obj.therapist.email}"
        return "-"


@admin.register(SubscriptionPlan)
class SubscriptionPlanAdmin(admin.ModelAdmin):
    """Plans are created through the catalog API so provider prices stay in sync."""

    list_display = (
        "name",
        "audience",
        "price",
        "currency",
        "duration_days",
        "stripe_price_id",
        "is_active_display",
        "superseded_by",
    )
    search_fields = ("name", "stripe_product_id", "stripe_price_id")
    list_filter = ("audience", "interval", "expired_at")
    readonly_fields = tuple(
        field.name for field in SubscriptionPlan._meta.fields  # type: ignore[attr-defined]
    )
    ordering = ("audience", "price")

    fieldsets = (
        ("Plan", {"fields": ("id", "name", "features", "audience")}),
        ("Pricing", {"fields": ("price", "currency", "duration_days", "interval", "interval_count")}),
        ("Provider", {"fields": ("stripe_product_id", "stripe_price_id")}),
        ("Lifecycle", {"fields": ("superseded_by", "expired_at", "created_at", "updated_at")}),
    )

    @admin.display(boolean=True, description="Active")
    def is_active_display(self, obj):
        return obj.is_active

    def has_add_permission(self, request):
        return False


@admin.register(PaymentMethod)
class PaymentMethodAdmin(AccountOwnerMixin, admin.ModelAdmin):
    list_display = (
        "id",
        "owner_display",
        "card_brand",
        "card_last4",
        "expiry_month",
        "expiry_year",
        "is_default",
        "created_at",
    )
    search_fields = (
        "stripe_payment_method_id",
        "stripe_customer_id",
        "clinic__email",
        "therapist__email",
    )
    list_filter = ("is_default", "card_brand")
    readonly_fields = ("stripe_payment_method_id", "stripe_customer_id", "is_default", "created_at", "updated_at")
    list_select_related = ("clinic", "therapist")
    raw_id_fields = ("clinic", "therapist")
    ordering = ("-created_at",)


@admin.register(Subscription)
class SubscriptionAdmin(AccountOwnerMixin, admin.ModelAdmin):
    """Subscriptions are written only by the billing services; the admin is read-only."""

    list_display = (
        "stripe_subscription_id",
        "owner_display",
        "plan",
        "status",
        "current_period_end",
        "cancel_at_period_end",
        "provider_synced_at",
    )
    search_fields = (
        "stripe_subscription_id",
        "stripe_customer_id",
        "clinic__email",
        "therapist__email",
    )
    list_filter = ("status", "cancel_at_period_end", "plan")
    readonly_fields = tuple(
        field.name for field in Subscription._meta.fields  # type: ignore[attr-defined]
    )
    ordering = ("-created_at",)
    list_select_related = ("plan", "clinic", "therapist")

    fieldsets = (
        ("Account", {"fields": ("clinic", "therapist", "plan")}),
        ("Provider", {"fields": ("stripe_subscription_id", "stripe_customer_id", "provider_synced_at")}),
        ("Status", {"fields": ("status", "cancel_at_period_end", "canceled_at")}),
        ("Timing", {"fields": ("current_period_start", "current_period_end", "created_at", "updated_at")}),
    )

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(Payment)
class PaymentAdmin(AccountOwnerMixin, admin.ModelAdmin):
    list_display = (
        "stripe_payment_intent_id",
        "owner_display",
        "status",
        "amount",
        "currency",
        "paid_at",
        "created_at",
    )
    search_fields = (
        "stripe_payment_intent_id",
        "stripe_charge_id",
        "stripe_subscription_id",
    )
    list_filter = ("status", "currency", "payment_type")
    readonly_fields = tuple(
        field.name for field in Payment._meta.fields  # type: ignore[attr-defined]
    )
    ordering = ("-created_at",)
    list_select_related = ("clinic", "therapist", "subscription")

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(WebhookEventLog)
class WebhookEventLogAdmin(admin.ModelAdmin):
    """Monitor webhook processing progress and failures."""

    list_display = (
        "event_id",
        "event_type",
        "status",
        "handled",
        "received_at",
        "processed_at",
        "last_error_short",
    )
    search_fields = ("event_id", "event_type")
    list_filter = ("status", "handled", "received_at", "processed_at")
    readonly_fields = (
        "event_id",
        "event_type",
        "status",
        "handled",
        "payload_hash",
        "received_at",
        "processed_at",
        "last_error",
    )
    ordering = ("-received_at",)

    fieldsets = (
        ("Event", {"fields": ("event_id", "event_type", "status", "handled", "payload_hash")}),
        ("Processing", {"fields": ("last_error", "received_at", "processed_at")}),
    )

    @admin.display(description="Last Error")
    def last_error_short(self, obj):
        if not obj.last_error:
            return "-"
        snippet = obj.last_error.strip().splitlines()[0]
        if len(snippet) > 120:
            snippet = f"{snippet[:117]}..."
        return snippet


@admin.register(BillingAuditLog)
class BillingAuditLogAdmin(admin.ModelAdmin):
    """Audit log explorer for billing lifecycle events."""

    list_display = (
        "event_type",
        "account_kind",
        "account_id",
        "stripe_id",
        "actor",
        "created_at",
    )
    search_fields = ("event_type", "stripe_id", "actor", "request_id", "account_id")
    list_filter = ("event_type", "account_kind", "created_at")
    readonly_fields = (
        "account_kind",
        "account_id",
        "event_type",
        "stripe_id",
        "actor",
        "request_id",
        "details",
        "created_at",
    )
    ordering = ("-created_at",)
