"""Plan catalog: published plans and their external product/price bindings."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Iterable, Optional, Tuple

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction
from django.db.models import QuerySet
from django.utils import timezone

from billing.exceptions import BillingConflictError, BillingNotFoundError, BillingValidationError
from billing.models import Subscription, SubscriptionPlan
from billing.observability.logging import log_billing_event
from billing.services.audit import record_audit_event
from billing.services.gateway import StripeGateway, get_gateway

logger = logging.getLogger(__name__)

PRICE_CHANGE_NOTE = (
    "New price will apply to new subscriptions. Existing subscriptions will continue "
    "at their current price until renewal."
)


@dataclass(frozen=True)
class PlanUpdateResult:
    plan: SubscriptionPlan
    previous_plan: Optional[SubscriptionPlan] = None
    price_changed: bool = False
    versioned: bool = False
    note: Optional[str] = None


def derive_interval(duration_days: int) -> Tuple[str, int]:
    """Map a period length in days onto the provider's recurring interval."""

    if duration_days is None or int(duration_days) <= 0:
        raise BillingValidationError("Plan duration must be a positive number of days.", code="invalid_duration")
    duration_days = int(duration_days)
    if duration_days == 365:
        return SubscriptionPlan.Interval.YEAR, 1
    if duration_days == 30:
        return SubscriptionPlan.Interval.MONTH, 1
    if duration_days == 7:
        return SubscriptionPlan.Interval.WEEK, 1
    return SubscriptionPlan.Interval.DAY, duration_days


def _normalise_price(price) -> Decimal:
    try:
        value = Decimal(str(price)).quantize(Decimal("0.01"))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise BillingValidationError("Plan price must be a decimal amount.", code="invalid_price") from exc
    if value < 0:
        raise BillingValidationError("Plan price cannot be negative.", code="invalid_price")
    return value


def _normalise_audience(audience: str) -> str:
    if audience not in SubscriptionPlan.Audience.values:
        raise BillingValidationError(
            f"Unknown plan audience: {audience}",
            code="invalid_audience",
            details={"allowed": list(SubscriptionPlan.Audience.values)},
        )
    return audience


def _ensure_name_available(name: str, audience: str, *, exclude_ids: Iterable = ()) -> None:
    clash = SubscriptionPlan.objects.filter(name=name, audience=audience, expired_at__isnull=True).exclude(
        pk__in=list(exclude_ids)
    )
    if clash.exists():
        raise BillingConflictError(
            f"A plan named '{name}' already exists for {audience}.",
            code="duplicate_plan",
            details={"name": name, "audience": audience},
        )


def _price_metadata(plan_id, duration_days: int, audience: str) -> dict:
    return {"plan_id": plan_id, "duration": duration_days, "audience": audience}


def _product_ref(plan: SubscriptionPlan, gateway: StripeGateway) -> str:
    if plan.stripe_product_id:
        return plan.stripe_product_id
    if not plan.stripe_price_id:
        return ""
    price = gateway.retrieve_price(plan.stripe_price_id)
    product = price.get("product")
    return product if isinstance(product, str) else str((product or {}).get("id") or "")


def list_plans(audience: Optional[str] = None, *, include_retired: bool = False) -> QuerySet[SubscriptionPlan]:
    queryset = SubscriptionPlan.objects.all()
    if not include_retired:
        queryset = queryset.filter(expired_at__isnull=True)
    if audience:
        queryset = queryset.filter(audience=_normalise_audience(audience))
    return queryset.order_by("price", "name")


def get_plan(plan_id) -> SubscriptionPlan:
    try:
        return SubscriptionPlan.objects.get(pk=plan_id)
    except (SubscriptionPlan.DoesNotExist, DjangoValidationError, ValueError) as exc:
        raise BillingNotFoundError("Subscription plan not found.", code="plan_not_found") from exc


def get_purchasable_plan(plan_id) -> SubscriptionPlan:
    plan = get_plan(plan_id)
    if plan.expired_at is not None:
        raise BillingValidationError(
            "Subscription plan is no longer available.",
            code="plan_retired",
            details={"plan_id": str(plan.pk), "superseded_by": str(plan.superseded_by_id or "")},
        )
    if not plan.stripe_price_id:
        raise BillingValidationError(
            "Subscription plan does not have a provider price.",
            code="plan_not_purchasable",
            details={"plan_id": str(plan.pk)},
        )
    return plan


def create_plan(
    *,
    name: str,
    price,
    duration_days: int,
    audience: str,
    features: str = "",
    currency: Optional[str] = None,
    actor: str = "",
    request_id: Optional[str] = None,
    gateway: Optional[StripeGateway] = None,
) -> SubscriptionPlan:
    gateway = gateway or get_gateway()
    name = (name or "").strip()
    if not name:
        raise BillingValidationError("Plan name is required.", code="invalid_name")
    audience = _normalise_audience(audience)
    price = _normalise_price(price)
    interval, interval_count = derive_interval(duration_days)
    currency = (currency or gateway.currency).lower()

    _ensure_name_available(name, audience)

    plan = SubscriptionPlan(
        name=name,
        features=features or "",
        price=price,
        currency=currency,
        duration_days=int(duration_days),
        interval=interval,
        interval_count=interval_count,
        audience=audience,
    )
    metadata = _price_metadata(plan.pk, plan.duration_days, audience)
    plan.stripe_product_id = gateway.create_product(name, features or "", metadata=metadata)
    plan.stripe_price_id = gateway.create_price(
        plan.stripe_product_id,
        price,
        currency,
        interval,
        interval_count,
        metadata=metadata,
    )

    with transaction.atomic():
        plan.save()
        record_audit_event(
            event_type="billing.plan.created",
            stripe_id=plan.stripe_price_id,
            actor=actor,
            request_id=request_id,
            details={"plan_id": str(plan.pk), "name": name, "price": str(price), "audience": audience},
        )

    logger.info("Created subscription plan %s (%s) bound to price %s", plan.pk, name, plan.stripe_price_id)
    return plan


def update_plan(
    plan_id,
    *,
    name: Optional[str] = None,
    features: Optional[str] = None,
    audience: Optional[str] = None,
    price=None,
    duration_days: Optional[int] = None,
    actor: str = "",
    request_id: Optional[str] = None,
    gateway: Optional[StripeGateway] = None,
) -> PlanUpdateResult:
    """Apply catalog edits; a price or duration change mints a new provider price.

    Plans that any subscription references are never repriced in place: a new
    plan version is created, the old row is retired and linked to it through
    ``superseded_by``. Existing subscriptions keep their bound price until the
    provider renews them.
    """

    gateway = gateway or get_gateway()
    plan = get_plan(plan_id)
    if plan.expired_at is not None:
        raise BillingValidationError("Cannot update a retired plan.", code="plan_retired")

    new_name = name.strip() if name is not None else plan.name
    if not new_name:
        raise BillingValidationError("Plan name is required.", code="invalid_name")
    new_audience = _normalise_audience(audience) if audience is not None else plan.audience
    new_features = features if features is not None else plan.features
    new_price = _normalise_price(price) if price is not None else plan.price
    new_duration = int(duration_days) if duration_days is not None else plan.duration_days
    interval, interval_count = derive_interval(new_duration)

    if new_name != plan.name or new_audience != plan.audience:
        _ensure_name_available(new_name, new_audience, exclude_ids=[plan.pk])

    price_changed = new_price != plan.price or new_duration != plan.duration_days
    descriptive_changed = (
        new_name != plan.name or new_features != plan.features or new_audience != plan.audience
    )
    referenced = Subscription.objects.filter(plan=plan).exists()

    product_ref = _product_ref(plan, gateway)
    if product_ref and (descriptive_changed or price_changed):
        gateway.update_product(
            product_ref,
            name=new_name if new_name != plan.name else None,
            description=new_features if new_features != plan.features else None,
            metadata={"duration": new_duration, "audience": new_audience},
        )

    new_price_ref = None
    if price_changed:
        if not product_ref:
            product_ref = gateway.create_product(new_name, new_features, metadata={"audience": new_audience})
        new_price_ref = gateway.create_price(
            product_ref,
            new_price,
            plan.currency,
            interval,
            interval_count,
            metadata=_price_metadata(plan.pk, new_duration, new_audience),
        )
        if plan.stripe_price_id:
            gateway.set_price_active(plan.stripe_price_id, False)

    with transaction.atomic():
        locked = SubscriptionPlan.objects.select_for_update().get(pk=plan.pk)
        if price_changed and referenced:
            successor = SubscriptionPlan.objects.create(
                name=new_name,
                features=new_features,
                price=new_price,
                currency=locked.currency,
                duration_days=new_duration,
                interval=interval,
                interval_count=interval_count,
                audience=new_audience,
                stripe_product_id=product_ref,
                stripe_price_id=new_price_ref,
            )
            locked.superseded_by = successor
            locked.expired_at = timezone.now()
            locked.save(update_fields=["superseded_by", "expired_at", "updated_at"])
            result = PlanUpdateResult(
                plan=successor,
                previous_plan=locked,
                price_changed=True,
                versioned=True,
                note=PRICE_CHANGE_NOTE,
            )
        else:
            locked.name = new_name
            locked.features = new_features
            locked.audience = new_audience
            locked.stripe_product_id = product_ref or locked.stripe_product_id
            if price_changed:
                locked.price = new_price
                locked.duration_days = new_duration
                locked.interval = interval
                locked.interval_count = interval_count
                locked.stripe_price_id = new_price_ref
            locked.save()
            result = PlanUpdateResult(
                plan=locked,
                price_changed=price_changed,
                note=PRICE_CHANGE_NOTE if price_changed else None,
            )

        record_audit_event(
            event_type="billing.plan.versioned" if result.versioned else "billing.plan.updated",
            stripe_id=result.plan.stripe_price_id or "",
            actor=actor,
            request_id=request_id,
            details={
                "plan_id": str(result.plan.pk),
                "previous_plan_id": str(result.previous_plan.pk) if result.previous_plan else None,
                "price": str(result.plan.price),
                "duration_days": result.plan.duration_days,
                "price_changed": price_changed,
            },
        )

    log_billing_event(
        message="Subscription plan updated",
        actor=actor,
        request_id=request_id,
        extra={"plan_id": str(result.plan.pk), "versioned": result.versioned, "price_changed": price_changed},
    )
    return result


def retire_plan(
    plan_id,
    *,
    actor: str = "",
    request_id: Optional[str] = None,
    gateway: Optional[StripeGateway] = None,
) -> SubscriptionPlan:
    gateway = gateway or get_gateway()
    plan = get_plan(plan_id)
    if plan.expired_at is not None:
        raise BillingValidationError("Plan is already retired.", code="plan_retired")

    blocking = Subscription.objects.filter(plan=plan, status__in=Subscription.LIVE_STATUSES).count()
    if blocking:
        raise BillingConflictError(
            f"Cannot retire plan with {blocking} active subscription(s).",
            code="plan_in_use",
            details={"active_subscriptions": blocking},
        )

    if plan.stripe_price_id:
        gateway.set_price_active(plan.stripe_price_id, False)
        product_ref = _product_ref(plan, gateway)
        if product_ref:
            gateway.set_product_active(product_ref, False)

    with transaction.atomic():
        locked = SubscriptionPlan.objects.select_for_update().get(pk=plan.pk)
        locked.expired_at = timezone.now()
        locked.save(update_fields=["expired_at", "updated_at"])
        record_audit_event(
            event_type="billing.plan.retired",
            stripe_id=locked.stripe_price_id or "",
            actor=actor,
            request_id=request_id,
            details={"plan_id": str(locked.pk), "name": locked.name},
        )

    logger.info("Retired subscription plan %s", plan.pk)
    return locked


def restore_plan(
    plan_id,
    *,
    actor: str = "",
    request_id: Optional[str] = None,
    gateway: Optional[StripeGateway] = None,
) -> SubscriptionPlan:
    gateway = gateway or get_gateway()
    plan = get_plan(plan_id)
    if plan.expired_at is None:
        raise BillingValidationError("Plan is not retired.", code="plan_not_retired")
    if plan.superseded_by_id:
        raise BillingConflictError(
            "Plan was replaced by a newer version and cannot be restored.",
            code="plan_superseded",
            details={"superseded_by": str(plan.superseded_by_id)},
        )
    _ensure_name_available(plan.name, plan.audience, exclude_ids=[plan.pk])

    if plan.stripe_price_id:
        gateway.set_price_active(plan.stripe_price_id, True)
        product_ref = _product_ref(plan, gateway)
        if product_ref:
            gateway.set_product_active(product_ref, True)

    with transaction.atomic():
        locked = SubscriptionPlan.objects.select_for_update().get(pk=plan.pk)
        locked.expired_at = None
        locked.save(update_fields=["expired_at", "updated_at"])
        record_audit_event(
            event_type="billing.plan.restored",
            stripe_id=locked.stripe_price_id or "",
            actor=actor,
            request_id=request_id,
            details={"plan_id": str(locked.pk), "name": locked.name},
        )

    logger.info("Restored subscription plan %s", plan.pk)
    return locked


__all__ = [
    "PRICE_CHANGE_NOTE",
    "PlanUpdateResult",
    "create_plan",
    "derive_interval",
    "get_plan",
    "get_purchasable_plan",
    "list_plans",
    "restore_plan",
    "retire_plan",
    "update_plan",
]
