"""Billing models for plans, payment methods, subscriptions, payments and webhook logging."""
import uuid

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import Q

from accounts.models import PrivateClinic, Therapist


def _default_currency() -> str:
    """Resolve default billing currency from settings."""
    return getattr(settings, "STRIPE_CURRENCY", "usd").lower()


def _owner_xor(prefix: str) -> models.CheckConstraint:
    return models.CheckConstraint(
        condition=Q(clinic__isnull=False, therapist__isnull=True)
        | Q(clinic__isnull=True, therapist__isnull=False),
        name=f"{prefix}_owner_xor",
    )


class AccountOwnedModel(models.Model):
    """Rows owned by exactly one billable account (clinic or therapist)."""

    clinic = models.ForeignKey(
        PrivateClinic,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="+",
        help_text="Owning clinic when the row belongs to a practice",
    )
    therapist = models.ForeignKey(
        Therapist,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="+",
        help_text="Owning therapist when the row belongs to an individual",
    )

    class Meta:
        abstract = True

    def clean(self):
        super().clean()
        if (self.clinic_id is None) == (self.therapist_id is None):
            raise ValidationError(f"{type(self).__name__} must be linked to exactly one owner (clinic or therapist).")

    @property
    def owner_id(self):
        return self.clinic_id or self.therapist_id


class SubscriptionPlan(models.Model):
    """Published plan definition bound to an external recurring price."""

    class Interval(models.TextChoices):
        DAY = "day", "Day"
        WEEK = "week", "Week"
        MONTH = "month", "Month"
        YEAR = "year", "Year"

    class Audience(models.TextChoices):
        CLINIC = "CLINIC", "Clinic"
        INDIVIDUAL_THERAPIST = "INDIVIDUAL_THERAPIST", "Individual therapist"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=100)
    features = models.TextField(blank=True, help_text="Feature descriptor shown to buyers")
    price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        validators=[MinValueValidator(0)],
        help_text="Price per billing period in major currency units",
    )
    currency = models.CharField(max_length=3, default=_default_currency)
    duration_days = models.PositiveIntegerField(help_text="Billing period length in days")
    interval = models.CharField(max_length=10, choices=Interval.choices)
    interval_count = models.PositiveIntegerField(default=1)
    audience = models.CharField(max_length=32, choices=Audience.choices)
    stripe_product_id = models.CharField(max_length=255, blank=True)
    stripe_price_id = models.CharField(
        max_length=255,
        unique=True,
        null=True,
        blank=True,
        help_text="Active external recurring price for new purchases",
    )
    superseded_by = models.ForeignKey(
        "self",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="previous_versions",
        help_text="Newer plan version that replaced this one",
    )
    expired_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Soft delete marker; retired plans cannot be purchased",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "billing_subscription_plan"
        verbose_name = "Subscription plan"
        verbose_name_plural = "Subscription plans"
        ordering = ["price", "name"]
        indexes = [
            models.Index(fields=["audience", "expired_at"], name="billing_plan_audience_idx"),
        ]

    @property
    def is_active(self) -> bool:
        return self.expired_at is None

    def __str__(self):
        return f"SubscriptionPlan<{self.name}:{self.audience}>"


class PaymentMethod(AccountOwnedModel):
    """Stored card instrument referenced by its provider identifier."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    stripe_payment_method_id = models.CharField(max_length=255, unique=True)
    stripe_customer_id = models.CharField(max_length=255, blank=True)
    card_holder_name = models.CharField(max_length=255, blank=True)
    card_last4 = models.CharField(max_length=4, blank=True)
    card_brand = models.CharField(max_length=32, blank=True)
    expiry_month = models.PositiveSmallIntegerField(null=True, blank=True)
    expiry_year = models.PositiveSmallIntegerField(null=True, blank=True)
    billing_address_line1 = models.CharField(max_length=255, blank=True)
    billing_address_line2 = models.CharField(max_length=255, blank=True)
    billing_city = models.CharField(max_length=100, blank=True)
    billing_state = models.CharField(max_length=100, blank=True)
    billing_postal_code = models.CharField(max_length=20, blank=True)
    billing_country = models.CharField(max_length=2, blank=True)
    is_default = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "billing_payment_method"
        verbose_name = "Payment method"
        verbose_name_plural = "Payment methods"
        ordering = ["-is_default", "-created_at"]
        constraints = [
            _owner_xor("payment_method"),
            models.UniqueConstraint(
                fields=["clinic"],
                condition=Q(is_default=True, clinic__isnull=False),
                name="payment_method_one_default_per_clinic",
            ),
            models.UniqueConstraint(
                fields=["therapist"],
                condition=Q(is_default=True, therapist__isnull=False),
                name="payment_method_one_default_per_therapist",
            ),
        ]

    def __str__(self):
        return f"PaymentMethod<{self.card_brand} {self.card_last4}>"


class Subscription(AccountOwnedModel):
    """Local mirror of the provider subscription for one account."""

    class Status(models.TextChoices):
        INCOMPLETE = "incomplete", "Incomplete"
        INCOMPLETE_EXPIRED = "incomplete_expired", "Incomplete expired"
        TRIALING = "trialing", "Trialing"
        ACTIVE = "active", "Active"
        PAST_DUE = "past_due", "Past due"
        UNPAID = "unpaid", "Unpaid"
        CANCELED = "canceled", "Canceled"

    LIVE_STATUSES = (Status.ACTIVE, Status.TRIALING)

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    stripe_subscription_id = models.CharField(max_length=255, unique=True)
    stripe_customer_id = models.CharField(max_length=255, blank=True)
    plan = models.ForeignKey(
        SubscriptionPlan,
        on_delete=models.PROTECT,
        related_name="subscriptions",
    )
    status = models.CharField(
        max_length=32,
        choices=Status.choices,
        default=Status.INCOMPLETE,
    )
    current_period_start = models.DateTimeField()
    current_period_end = models.DateTimeField()
    cancel_at_period_end = models.BooleanField(default=False)
    canceled_at = models.DateTimeField(null=True, blank=True)
    provider_synced_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Provider timestamp of the newest state applied to this row",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "billing_subscription"
        verbose_name = "Subscription"
        verbose_name_plural = "Subscriptions"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status"], name="billing_sub_status_idx"),
        ]
        constraints = [
            _owner_xor("subscription"),
            models.UniqueConstraint(
                fields=["clinic"],
                condition=Q(status__in=["active", "trialing"], clinic__isnull=False),
                name="subscription_one_live_per_clinic",
            ),
            models.UniqueConstraint(
                fields=["therapist"],
                condition=Q(status__in=["active", "trialing"], therapist__isnull=False),
                name="subscription_one_live_per_therapist",
            ),
        ]

    @property
    def is_live(self) -> bool:
        return self.status in self.LIVE_STATUSES

    def delete(self, *args, **kwargs):
        raise ValidationError("Subscription records are kept as history and cannot be deleted.")

    def __str__(self):
        return f"Subscription<{self.stripe_subscription_id}:{self.status}>"


class Payment(AccountOwnedModel):
    """Immutable ledger entry for a provider payment intent."""

    class Status(models.TextChoices):
        SUCCEEDED = "succeeded", "Succeeded"
        PENDING = "pending", "Pending"
        FAILED = "failed", "Failed"
        CANCELED = "canceled", "Canceled"
        REFUNDED = "refunded", "Refunded"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="payments",
    )
    stripe_subscription_id = models.CharField(max_length=255, blank=True)
    stripe_payment_intent_id = models.CharField(max_length=255, unique=True)
    stripe_charge_id = models.CharField(max_length=255, blank=True)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=3, default=_default_currency)
    status = models.CharField(max_length=20, choices=Status.choices)
    description = models.CharField(max_length=255, blank=True)
    payment_method_last4 = models.CharField(max_length=4, blank=True)
    payment_method_brand = models.CharField(max_length=32, blank=True)
    payment_type = models.CharField(max_length=32, default="subscription")
    paid_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "billing_payment"
        verbose_name = "Payment"
        verbose_name_plural = "Payments"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["clinic", "created_at"], name="billing_payment_clinic_idx"),
            models.Index(fields=["therapist", "created_at"], name="billing_payment_therapist_idx"),
        ]
        constraints = [
            _owner_xor("payment"),
        ]

    def clean(self):
        super().clean()
        if self.currency:
            self.currency = self.currency.lower()

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValidationError("Payment records are immutable and cannot be updated.")
        self.full_clean(validate_unique=False)
        return super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError("Payment records are immutable and cannot be deleted.")

    def __str__(self):
        return f"Payment<{self.stripe_payment_intent_id}:{self.status}>"


class WebhookEventLog(models.Model):
    """Keeps track of received webhook events to short-circuit redeliveries."""

    class Status(models.TextChoices):
        RECEIVED = "received", "Received"
        PROCESSED = "processed", "Processed"
        IGNORED = "ignored", "Ignored"
        FAILED = "failed", "Failed"

    id = models.BigAutoField(primary_key=True)
    event_id = models.CharField(max_length=255, unique=True)
    event_type = models.CharField(max_length=255, blank=True)
    payload_hash = models.CharField(
        max_length=64,
        blank=True,
        help_text="SHA256 of the raw payload for drift detection.",
    )
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.RECEIVED,
    )
    handled = models.BooleanField(
        default=False,
        help_text="True once the event has been fully processed.",
    )
    last_error = models.TextField(blank=True)
    received_at = models.DateTimeField(auto_now_add=True)
    processed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "billing_webhook_event_log"
        verbose_name = "Webhook event log"
        verbose_name_plural = "Webhook event logs"
        ordering = ["-received_at"]
        indexes = [
            models.Index(fields=["status"], name="webhook_event_status_idx"),
            models.Index(fields=["event_type"], name="webhook_event_type_idx"),
        ]

    def __str__(self):
        return f"WebhookEventLog<{self.event_id}:{self.status}>"


class BillingAuditLog(models.Model):
    """Structured audit log for subscription transitions and catalog changes."""

    id = models.BigAutoField(primary_key=True)
    account_kind = models.CharField(max_length=20, blank=True)
    account_id = models.UUIDField(null=True, blank=True)
    event_type = models.CharField(max_length=100, help_text="Classification of the billing event.")
    stripe_id = models.CharField(
        max_length=255,
        blank=True,
        help_text="Provider object identifier tied to the event.",
    )
    actor = models.CharField(
        max_length=255,
        blank=True,
        help_text="Auth user or system actor responsible.",
    )
    request_id = models.CharField(
        max_length=255,
        blank=True,
        help_text="Correlation or request identifier for tracing.",
    )
    details = models.JSONField(
        blank=True,
        null=True,
        help_text="Structured data describing the event.",
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "billing_audit_log"
        verbose_name = "Billing audit log"
        verbose_name_plural = "Billing audit logs"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["account_kind", "account_id"], name="billing_audit_account_idx"),
            models.Index(fields=["stripe_id"], name="billing_audit_stripe_idx"),
        ]

    def __str__(self):
        return f"BillingAuditLog<{self.account_kind}:{self.account_id}:{self.event_type}>"


__all__ = [
    "BillingAuditLog",
    "Payment",
    "PaymentMethod",
    "Subscription",
    "SubscriptionPlan",
    "WebhookEventLog",
]
