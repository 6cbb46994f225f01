"""Subscription lifecycle orchestration: purchase, plan changes, cancellation and status."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import QuerySet
from django.utils import timezone

from accounts.directory import AccountKind, AccountNotFound, AccountRef, lock_account, set_selected_plan
from billing.exceptions import (
    BillingConflictError,
    BillingNotFoundError,
    BillingValidationError,
    ProviderIntegrationError,
)
from billing.models import Payment, Subscription, SubscriptionPlan
from billing.observability.logging import log_billing_event
from billing.observability.metrics import SUBSCRIPTION_TRANSITION_COUNT
from billing.services.audit import record_audit_event
from billing.services.gateway import PRORATION_BEHAVIORS, StripeGateway, get_gateway
from billing.services.payment_ledger import record_payment
from billing.services.payment_methods import count_payment_methods, get_payment_method, resolve_payment_method
from billing.services.plan_catalog import get_purchasable_plan
from billing.services.subscription_state import (
    ApplyResult,
    apply_local_transition,
    apply_provider_state,
    sync_watermark,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

_AUDIENCE_FOR_KIND = {
    AccountKind.CLINIC: SubscriptionPlan.Audience.CLINIC,
    AccountKind.THERAPIST: SubscriptionPlan.Audience.INDIVIDUAL_THERAPIST,
}


@dataclass(frozen=True)
class ProrationPreview:
    """Local linear proration estimate; the provider's invoice is authoritative."""

    current_plan: SubscriptionPlan
    new_plan: SubscriptionPlan
    percent_remaining: Decimal
    proration_amount: Decimal
    immediate_charge: Decimal
    credit_amount: Decimal
    days_remaining: int
    next_billing_date: datetime
    currency: str
    is_upgrade: bool
    is_downgrade: bool
    message: str
    is_estimate: bool = True


@dataclass(frozen=True)
class PurchaseResult:
    subscription: Subscription
    payment: Optional[Payment] = None


@dataclass(frozen=True)
class PlanChangeResult:
    subscription: Subscription
    previous_plan: SubscriptionPlan
    preview: ProrationPreview
    payment: Optional[Payment] = None
    message: str = ""


@dataclass(frozen=True)
class SubscriptionStatus:
    subscription: Optional[Subscription]
    problem_subscription: Optional[Subscription]
    days_until_renewal: Optional[int]
    payment_methods: Dict[str, int]
    capabilities: Dict[str, bool]
    warnings: List[Dict[str, str]] = field(default_factory=list)


def _live_subscriptions(account: AccountRef) -> QuerySet[Subscription]:
    return (
        Subscription.objects.select_related("plan")
        .filter(status__in=Subscription.LIVE_STATUSES, **account.owner_filter())
        .order_by("-created_at")
    )


def get_current_subscription(account: AccountRef) -> Optional[Subscription]:
    return _live_subscriptions(account).first()


def require_current_subscription(account: AccountRef) -> Subscription:
    subscription = get_current_subscription(account)
    if subscription is None:
        raise BillingNotFoundError("No active subscription found.", code="no_active_subscription")
    return subscription


def list_subscriptions(account: AccountRef, status: Optional[str] = None) -> QuerySet[Subscription]:
    queryset = Subscription.objects.select_related("plan").filter(**account.owner_filter())
    if status:
        if status not in Subscription.Status.values:
            raise BillingValidationError(
                f"Unknown subscription status: {status}",
                code="invalid_status",
                details={"allowed": list(Subscription.Status.values)},
            )
        queryset = queryset.filter(status=status)
    return queryset.order_by("-created_at")


def _check_audience(account: AccountRef, plan: SubscriptionPlan) -> None:
    if plan.audience != _AUDIENCE_FOR_KIND[account.kind]:
        raise BillingValidationError(
            "Subscription plan is not available for this account type.",
            code="plan_audience_mismatch",
            details={"plan_audience": plan.audience, "account_kind": account.kind},
        )


def _resolve_target_plan(plan_id) -> SubscriptionPlan:
    return get_purchasable_plan(plan_id)


def _record_resolved_payment(subscription: Subscription, provider, *, source: str) -> Optional[Payment]:
    payment = provider.latest_payment
    if payment is None or payment.status != "succeeded":
        return None
    row, _ = record_payment(
        subscription,
        payment,
        source=source,
        description=f"{subscription.plan.name} - {timezone.now():%B %Y}",
    )
    return row


def _idempotency_key(subscription: Subscription, target_plan: SubscriptionPlan) -> str:
    marker = int((subscription.provider_synced_at or subscription.updated_at).timestamp())
    return f"subscription:{subscription.pk}:change:{subscription.plan_id}:{target_plan.pk}:{marker}"


def purchase(
    account: AccountRef,
    plan_id,
    payment_method_id=None,
    *,
    actor: str = "",
    request_id: Optional[str] = None,
    gateway: Optional[StripeGateway] = None,
) -> PurchaseResult:
    """Create a provider subscription for an account that has no live one."""

    gateway = gateway or get_gateway()

    with transaction.atomic():
        try:
            owner = lock_account(account)
        except AccountNotFound as exc:
            raise BillingNotFoundError("Account not found.", code="account_not_found") from exc

        if _live_subscriptions(account).exists():
            raise BillingConflictError("Account already has an active subscription.", code="already_subscribed")
        if not owner.stripe_customer_id:
            raise BillingValidationError(
                "Account does not have a payment provider customer.",
                code="missing_customer",
            )

        plan = _resolve_target_plan(plan_id)
        _check_audience(account, plan)
        payment_method = resolve_payment_method(account, payment_method_id)

        provider = gateway.create_subscription(
            owner.stripe_customer_id,
            plan.stripe_price_id,
            payment_method.stripe_payment_method_id,
            metadata={"account_kind": account.kind, "account_id": account.id, "plan_id": plan.pk},
        )

        try:
            with transaction.atomic():
                subscription = Subscription.objects.create(
                    stripe_subscription_id=provider.id,
                    stripe_customer_id=provider.customer_id or owner.stripe_customer_id,
                    plan=plan,
                    status=provider.status if provider.status in Subscription.Status.values else Subscription.Status.INCOMPLETE,
                    current_period_start=provider.current_period_start,
                    current_period_end=provider.current_period_end,
                    cancel_at_period_end=provider.cancel_at_period_end,
                    canceled_at=provider.canceled_at,
                    provider_synced_at=sync_watermark(),
                    **account.owner_kwargs(),
                )
        except IntegrityError as exc:
            logger.error(
                "Provider subscription %s created for %s but could not be stored: %s",
                provider.id,
                account,
                exc,
            )
            raise BillingConflictError(
                "Account already has an active subscription.",
                code="already_subscribed",
                details={"provider_subscription_id": provider.id},
            ) from exc

        payment = _record_resolved_payment(subscription, provider, source="purchase")
        set_selected_plan(account, plan)
        record_audit_event(
            event_type="billing.subscription.purchased",
            account=account,
            stripe_id=provider.id,
            actor=actor,
            request_id=request_id,
            details={"plan_id": str(plan.pk), "status": subscription.status},
        )

    SUBSCRIPTION_TRANSITION_COUNT.labels(kind="purchase").inc()
    log_billing_event(
        message="Subscription purchased",
        account=account,
        actor=actor,
        request_id=request_id,
        extra={"subscription_id": str(subscription.pk), "plan_id": str(plan.pk), "status": subscription.status},
    )
    return PurchaseResult(subscription=subscription, payment=payment)


def compute_proration(
    current_plan: SubscriptionPlan,
    new_plan: SubscriptionPlan,
    period_start: datetime,
    period_end: datetime,
    now: datetime,
) -> ProrationPreview:
    """Linear time proration between two plan prices over the current period."""

    total_seconds = Decimal(str((period_end - period_start).total_seconds()))
    remaining_seconds = Decimal(str((period_end - now).total_seconds()))
    if total_seconds <= 0:
        percent = Decimal("0")
    else:
        percent = min(max(remaining_seconds / total_seconds, Decimal("0")), Decimal("1"))

    unused_amount = Decimal(str(current_plan.price)) * percent
    new_amount = Decimal(str(new_plan.price)) * percent
    amount = (new_amount - unused_amount).quantize(CENT, rounding=ROUND_HALF_UP)
    if amount == 0:
        amount = Decimal("0.00")

    is_upgrade = new_plan.price > current_plan.price
    is_downgrade = new_plan.price < current_plan.price
    immediate_charge = max(amount, Decimal("0.00"))
    credit_amount = max(-amount, Decimal("0.00"))
    if is_upgrade:
        message = f"You will be charged {immediate_charge} {new_plan.currency.upper()} immediately for the upgrade."
    elif is_downgrade:
        message = f"A credit of {credit_amount} {new_plan.currency.upper()} will be applied to your next invoice."
    else:
        message = "No change in pricing."

    return ProrationPreview(
        current_plan=current_plan,
        new_plan=new_plan,
        percent_remaining=percent.quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP),
        proration_amount=amount,
        immediate_charge=immediate_charge,
        credit_amount=credit_amount,
        days_remaining=max(math.ceil(remaining_seconds / Decimal("86400")), 0),
        next_billing_date=period_end,
        currency=new_plan.currency,
        is_upgrade=is_upgrade,
        is_downgrade=is_downgrade,
        message=message,
    )


def _prepare_plan_change(account: AccountRef, new_plan_id) -> tuple[Subscription, SubscriptionPlan]:
    new_plan = _resolve_target_plan(new_plan_id)
    subscription = require_current_subscription(account)
    if subscription.plan_id == new_plan.pk:
        raise BillingValidationError("Already subscribed to this plan.", code="same_plan")
    _check_audience(account, new_plan)
    return subscription, new_plan


def preview_upgrade(account: AccountRef, new_plan_id, *, now: Optional[datetime] = None) -> ProrationPreview:
    """Estimate the proration for switching plans without touching any state."""

    subscription, new_plan = _prepare_plan_change(account, new_plan_id)
    return compute_proration(
        subscription.plan,
        new_plan,
        subscription.current_period_start,
        subscription.current_period_end,
        now or timezone.now(),
    )


def _change_message(old_price: Decimal, new_price: Decimal) -> str:
    if new_price > old_price:
        return "Subscription upgraded successfully. Prorated charges have been applied."
    if new_price < old_price:
        return "Subscription downgraded successfully. Credit will be applied to your next invoice."
    return "Subscription plan changed successfully."


def upgrade(
    account: AccountRef,
    new_plan_id,
    payment_method_id=None,
    *,
    proration_behavior: Optional[str] = None,
    now: Optional[datetime] = None,
    actor: str = "",
    request_id: Optional[str] = None,
    gateway: Optional[StripeGateway] = None,
) -> PlanChangeResult:
    """Move the live subscription to another plan (upgrade or downgrade)."""

    gateway = gateway or get_gateway()
    behavior = proration_behavior or getattr(settings, "BILLING_DEFAULT_PRORATION_BEHAVIOR", "create_prorations")
    if behavior not in PRORATION_BEHAVIORS:
        raise BillingValidationError(
            f"Unsupported proration behaviour: {behavior}",
            code="invalid_proration_behavior",
            details={"allowed": list(PRORATION_BEHAVIORS)},
        )

    subscription, new_plan = _prepare_plan_change(account, new_plan_id)
    if subscription.cancel_at_period_end:
        raise BillingValidationError(
            "Subscription is scheduled for cancellation. Reactivate it before changing plans.",
            code="cancellation_pending",
        )
    payment_method_ref = None
    if payment_method_id:
        payment_method_ref = get_payment_method(account, payment_method_id).stripe_payment_method_id

    clock = now or timezone.now()
    preview = compute_proration(
        subscription.plan,
        new_plan,
        subscription.current_period_start,
        subscription.current_period_end,
        clock,
    )
    previous_plan = subscription.plan

    current = gateway.retrieve_subscription(subscription.stripe_subscription_id)
    if not current.item_id:
        raise ProviderIntegrationError(
            "Provider subscription has no line items to update.",
            code="missing_subscription_item",
        )
    provider = gateway.update_subscription_items(
        subscription.stripe_subscription_id,
        current.item_id,
        new_plan.stripe_price_id,
        behavior,
        payment_method_ref=payment_method_ref,
        metadata={
            "account_kind": account.kind,
            "account_id": account.id,
            "plan_id": new_plan.pk,
            "previous_plan_id": previous_plan.pk,
        },
        idempotency_key=_idempotency_key(subscription, new_plan),
    )

    result = apply_provider_state(
        subscription,
        provider,
        observed_at=sync_watermark(),
        plan=new_plan,
        kind="plan_change",
    )
    updated = result.subscription
    if not result.applied and updated.plan_id != new_plan.pk:
        logger.error(
            "Plan change for subscription %s accepted by provider but not applied locally (%s)",
            updated.pk,
            result.reason,
        )
        raise ProviderIntegrationError(
            "Plan change could not be applied locally.",
            code="plan_change_not_applied",
            details={"reason": result.reason},
        )

    payment = _record_resolved_payment(updated, provider, source="plan_change")
    set_selected_plan(account, new_plan)
    event_type = "billing.subscription.upgrade" if preview.is_upgrade else "billing.subscription.plan_change"
    record_audit_event(
        event_type=event_type,
        account=account,
        stripe_id=updated.stripe_subscription_id,
        actor=actor,
        request_id=request_id,
        details={
            "from_plan": str(previous_plan.pk),
            "to_plan": str(new_plan.pk),
            "proration_behavior": behavior,
            "estimated_proration": str(preview.proration_amount),
        },
    )
    SUBSCRIPTION_TRANSITION_COUNT.labels(kind="upgrade" if preview.is_upgrade else "downgrade").inc()
    log_billing_event(
        message="Subscription plan changed",
        account=account,
        actor=actor,
        request_id=request_id,
        extra={"subscription_id": str(updated.pk), "from_plan": str(previous_plan.pk), "to_plan": str(new_plan.pk)},
    )
    return PlanChangeResult(
        subscription=updated,
        previous_plan=previous_plan,
        preview=preview,
        payment=payment,
        message=_change_message(previous_plan.price, new_plan.price),
    )


def cancel(
    account: AccountRef,
    *,
    immediate: bool = False,
    actor: str = "",
    request_id: Optional[str] = None,
    gateway: Optional[StripeGateway] = None,
) -> Subscription:
    """Cancel now, or schedule cancellation at the end of the current period."""

    gateway = gateway or get_gateway()
    subscription = require_current_subscription(account)

    if immediate:
        gateway.cancel(subscription.stripe_subscription_id, at_period_end=False)
        now = timezone.now()
        result = apply_local_transition(
            subscription,
            observed_at=now,
            kind="cancel_immediately",
            status=Subscription.Status.CANCELED,
            canceled_at=now,
            cancel_at_period_end=False,
        )
    else:
        if subscription.cancel_at_period_end:
            raise BillingValidationError(
                "Subscription is already scheduled for cancellation.",
                code="already_scheduled",
            )
        provider = gateway.cancel(subscription.stripe_subscription_id, at_period_end=True)
        result = apply_provider_state(subscription, provider, observed_at=sync_watermark(), kind="cancel_at_period_end")

    updated = result.subscription
    record_audit_event(
        event_type="billing.subscription.canceled" if immediate else "billing.subscription.cancel_scheduled",
        account=account,
        stripe_id=updated.stripe_subscription_id,
        actor=actor,
        request_id=request_id,
        details={"immediate": immediate, "status": updated.status, "applied": result.applied},
    )
    log_billing_event(
        message="Subscription cancellation requested",
        account=account,
        actor=actor,
        request_id=request_id,
        extra={"subscription_id": str(updated.pk), "immediate": immediate, "status": updated.status},
    )
    return updated


def reactivate(
    account: AccountRef,
    *,
    actor: str = "",
    request_id: Optional[str] = None,
    gateway: Optional[StripeGateway] = None,
) -> Subscription:
    """Undo a scheduled cancellation while the subscription is still live."""

    gateway = gateway or get_gateway()
    subscription = require_current_subscription(account)
    if not subscription.cancel_at_period_end:
        raise BillingValidationError(
            "Subscription is not scheduled for cancellation.",
            code="not_scheduled_for_cancellation",
        )

    provider = gateway.resume(subscription.stripe_subscription_id)
    result = apply_provider_state(subscription, provider, observed_at=sync_watermark(), kind="reactivate")
    updated = result.subscription
    record_audit_event(
        event_type="billing.subscription.reactivated",
        account=account,
        stripe_id=updated.stripe_subscription_id,
        actor=actor,
        request_id=request_id,
        details={"status": updated.status},
    )
    SUBSCRIPTION_TRANSITION_COUNT.labels(kind="reactivate").inc()
    return updated


def _days_until(moment: datetime, now: datetime) -> int:
    return max(math.ceil((moment - now).total_seconds() / 86400), 0)


def get_status(account: AccountRef, *, now: Optional[datetime] = None) -> SubscriptionStatus:
    """Summarise the account's subscription, payment methods, capabilities and warnings."""

    now = now or timezone.now()
    subscription = get_current_subscription(account)
    problem = None
    if subscription is None:
        problem = (
            Subscription.objects.select_related("plan")
            .filter(
                status__in=[Subscription.Status.PAST_DUE, Subscription.Status.UNPAID],
                **account.owner_filter(),
            )
            .order_by("-created_at")
            .first()
        )
    methods = count_payment_methods(account)
    has_methods = methods["total"] > 0
    scheduled = bool(subscription and subscription.cancel_at_period_end)

    capabilities = {
        "can_purchase": subscription is None and has_methods,
        "can_upgrade": subscription is not None and not scheduled,
        "can_downgrade": subscription is not None and not scheduled,
        "can_reactivate": scheduled,
        "can_cancel": subscription is not None and not scheduled,
        "needs_payment_method": not has_methods,
    }

    warnings: List[Dict[str, str]] = []
    if subscription is None:
        warnings.append({
            "code": "no_subscription",
            "message": "No active subscription. Please subscribe to a plan.",
        })
    if not has_methods:
        warnings.append({
            "code": "no_payment_method",
            "message": "No payment method on file. Add a payment method to continue.",
        })
    if scheduled:
        warnings.append({
            "code": "cancellation_scheduled",
            "message": (
                f"Subscription will be canceled in {_days_until(subscription.current_period_end, now)} days. "
                "Reactivate to continue service."
            ),
        })
    flagged = subscription or problem
    if flagged is not None and flagged.status == Subscription.Status.PAST_DUE:
        warnings.append({
            "code": "past_due",
            "message": "Payment failed. Please update your payment method to avoid service interruption.",
        })
    if flagged is not None and flagged.status == Subscription.Status.UNPAID:
        warnings.append({
            "code": "unpaid",
            "message": "Subscription is unpaid. Service may be interrupted.",
        })
    if has_methods and not methods["default"]:
        warnings.append({
            "code": "no_default_payment_method",
            "message": "No default payment method set. Please set a default payment method.",
        })

    return SubscriptionStatus(
        subscription=subscription,
        problem_subscription=problem,
        days_until_renewal=_days_until(subscription.current_period_end, now) if subscription else None,
        payment_methods=methods,
        capabilities=capabilities,
        warnings=warnings,
    )


def sync_from_provider(subscription: Subscription, *, gateway: Optional[StripeGateway] = None) -> ApplyResult:
    """Re-read the provider subscription and apply it as authoritative."""

    gateway = gateway or get_gateway()
    provider = gateway.retrieve_subscription(subscription.stripe_subscription_id)
    plan = None
    if provider.price_id and provider.price_id != subscription.plan.stripe_price_id:
        plan = SubscriptionPlan.objects.filter(stripe_price_id=provider.price_id).first()
    return apply_provider_state(
        subscription,
        provider,
        observed_at=sync_watermark(),
        plan=plan,
        kind="provider_sync",
    )


def sync_live_subscriptions(
    account: Optional[AccountRef] = None,
    *,
    limit: Optional[int] = None,
    gateway: Optional[StripeGateway] = None,
) -> Dict[str, int]:
    """Re-sync live and past-due subscriptions; one failure does not stop the batch."""

    gateway = gateway or get_gateway()
    queryset = (
        Subscription.objects.select_related("plan")
        .filter(status__in=[*Subscription.LIVE_STATUSES, Subscription.Status.PAST_DUE])
        .order_by("provider_synced_at", "created_at")
    )
    if account is not None:
        queryset = queryset.filter(**account.owner_filter())
    if limit:
        queryset = queryset[:limit]

    summary = {"checked": 0, "updated": 0, "failed": 0}
    for subscription in queryset:
        summary["checked"] += 1
        try:
            result = sync_from_provider(subscription, gateway=gateway)
        except ProviderIntegrationError as exc:
            summary["failed"] += 1
            logger.warning("Provider sync failed for subscription %s: %s", subscription.pk, exc)
            continue
        if result.applied:
            summary["updated"] += 1

    logger.info(
        "Provider sync checked=%s updated=%s failed=%s",
        summary["checked"],
        summary["updated"],
        summary["failed"],
    )
    return summary


__all__ = [
    "PlanChangeResult",
    "ProrationPreview",
    "PurchaseResult",
    "SubscriptionStatus",
    "cancel",
    "compute_proration",
    "get_current_subscription",
    "get_status",
    "list_subscriptions",
    "preview_upgrade",
    "purchase",
    "reactivate",
    "require_current_subscription",
    "sync_from_provider",
    "sync_live_subscriptions",
    "upgrade",
]
