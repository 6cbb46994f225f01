"""Single write path for Subscription rows.

Both the account-initiated flows and webhook ingestion mutate subscriptions
through these functions. Each call locks the row, compares the incoming
provider timestamp against ``provider_synced_at`` and only then writes, so a
late webhook cannot roll back a newer synchronous update. ``canceled`` is
terminal.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from django.db import transaction
from django.utils import timezone

from billing.models import Subscription, SubscriptionPlan
from billing.observability.metrics import SUBSCRIPTION_TRANSITION_COUNT
from billing.services.gateway import ProviderSubscription

logger = logging.getLogger(__name__)

_KNOWN_STATUSES = set(Subscription.Status.values)


@dataclass(frozen=True)
class ApplyResult:
    subscription: Subscription
    applied: bool
    reason: str = ""


def sync_watermark(value: Optional[datetime] = None) -> datetime:
    """Ordering timestamp at the provider's whole-second resolution."""

    return (value or timezone.now()).replace(microsecond=0)


def _is_stale(subscription: Subscription, observed_at: Optional[datetime]) -> bool:
    # Events from the same second as the stored state are not older.
    return bool(
        observed_at is not None
        and subscription.provider_synced_at is not None
        and sync_watermark(observed_at) < sync_watermark(subscription.provider_synced_at)
    )


def _write(subscription: Subscription, changes: Dict[str, Any], observed_at: Optional[datetime]) -> list[str]:
    updated: list[str] = []
    for field, value in changes.items():
        if getattr(subscription, field) != value:
            setattr(subscription, field, value)
            updated.append(field)
    if observed_at is not None and (
        subscription.provider_synced_at is None or observed_at > subscription.provider_synced_at
    ):
        subscription.provider_synced_at = observed_at
        updated.append("provider_synced_at")
    if updated:
        subscription.save(update_fields=[*updated, "updated_at"])
    return updated


def _other_live_exists(subscription: Subscription) -> bool:
    owner = {"clinic_id": subscription.clinic_id} if subscription.clinic_id else {"therapist_id": subscription.therapist_id}
    return (
        Subscription.objects.filter(status__in=Subscription.LIVE_STATUSES, **owner)
        .exclude(pk=subscription.pk)
        .exists()
    )


def _apply(subscription_id, changes: Dict[str, Any], *, observed_at: Optional[datetime], kind: str) -> ApplyResult:
    if observed_at is not None:
        observed_at = sync_watermark(observed_at)
    with transaction.atomic():
        subscription = (
            Subscription.objects.select_for_update()
            .select_related("plan")
            .get(pk=subscription_id)
        )

        if subscription.status == Subscription.Status.CANCELED:
            if changes.get("status", Subscription.Status.CANCELED) != Subscription.Status.CANCELED:
                logger.info("Ignoring %s for canceled subscription %s", kind, subscription.pk)
                return ApplyResult(subscription, False, "terminal")
            # A canceled row only ever gains a missing cancellation timestamp.
            if changes.get("canceled_at") and not subscription.canceled_at:
                changes = {"canceled_at": changes["canceled_at"]}
            else:
                changes = {}

        if (
            changes.get("status") in Subscription.LIVE_STATUSES
            and subscription.status not in Subscription.LIVE_STATUSES
            and _other_live_exists(subscription)
        ):
            logger.error(
                "Refusing %s on subscription %s: account already has a live subscription",
                kind,
                subscription.pk,
            )
            return ApplyResult(subscription, False, "conflict")

        if _is_stale(subscription, observed_at):
            logger.info(
                "Skipping stale %s for subscription %s (observed %s < synced %s)",
                kind,
                subscription.pk,
                observed_at,
                subscription.provider_synced_at,
            )
            return ApplyResult(subscription, False, "stale")

        previous_status = subscription.status
        updated = _write(subscription, changes, observed_at)

    if not updated:
        return ApplyResult(subscription, False, "unchanged")
    if subscription.status != previous_status:
        SUBSCRIPTION_TRANSITION_COUNT.labels(kind=f"{previous_status}->{subscription.status}").inc()
    logger.info("Applied %s to subscription %s: %s", kind, subscription.pk, ", ".join(updated))
    return ApplyResult(subscription, True, "applied")


def provider_changes(provider: ProviderSubscription) -> Dict[str, Any]:
    """Fields the provider is authoritative for."""

    changes: Dict[str, Any] = {
        "current_period_start": provider.current_period_start,
        "current_period_end": provider.current_period_end,
        "cancel_at_period_end": provider.cancel_at_period_end,
    }
    if provider.status in _KNOWN_STATUSES:
        changes["status"] = provider.status
    else:
        logger.warning("Provider reported unknown subscription status %r for %s", provider.status, provider.id)
    if provider.canceled_at is not None:
        changes["canceled_at"] = provider.canceled_at
    if provider.customer_id:
        changes["stripe_customer_id"] = provider.customer_id
    return changes


def apply_provider_state(
    subscription: Subscription,
    provider: ProviderSubscription,
    *,
    observed_at: Optional[datetime] = None,
    plan: Optional[SubscriptionPlan] = None,
    kind: str = "provider_state",
) -> ApplyResult:
    """Overwrite local state with the provider's view of the subscription."""

    changes = provider_changes(provider)
    if plan is not None:
        changes["plan"] = plan
    if changes.get("status") == Subscription.Status.CANCELED and "canceled_at" not in changes:
        changes["canceled_at"] = observed_at or timezone.now()
    return _apply(subscription.pk, changes, observed_at=observed_at, kind=kind)


def apply_local_transition(
    subscription: Subscription,
    *,
    observed_at: Optional[datetime] = None,
    kind: str = "local_transition",
    **changes: Any,
) -> ApplyResult:
    """Apply a specific set of field changes through the same guarded path."""

    unknown = set(changes) - {
        "status",
        "plan",
        "current_period_start",
        "current_period_end",
        "cancel_at_period_end",
        "canceled_at",
    }
    if unknown:
        raise ValueError(f"Unsupported subscription fields: {sorted(unknown)}")
    return _apply(subscription.pk, changes, observed_at=observed_at, kind=kind)


__all__ = [
    "ApplyResult",
    "apply_local_transition",
    "apply_provider_state",
    "provider_changes",
    "sync_watermark",
]
