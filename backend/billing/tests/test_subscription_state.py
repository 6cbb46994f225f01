from dataclasses import replace
from datetime import timedelta

import pytest
from django.core.exceptions import ValidationError
from django.utils import timezone

from billing.models import Subscription
from billing.services.subscription_lifecycle import sync_live_subscriptions
from billing.services.subscription_state import apply_local_transition, apply_provider_state


@pytest.mark.django_db
def test_older_observation_is_skipped_as_stale(clinic_ref, make_plan, make_subscription):
    synced = timezone.now()
    subscription = make_subscription(clinic_ref, make_plan(), provider_synced_at=synced)

    result = apply_local_transition(
        subscription,
        observed_at=synced - timedelta(minutes=5),
        status=Subscription.Status.PAST_DUE,
    )

    assert result.applied is False
    assert result.reason == "stale"
    subscription.refresh_from_db()
    assert subscription.status == Subscription.Status.ACTIVE
    assert subscription.provider_synced_at == synced


@pytest.mark.django_db
def test_newer_observation_applies_and_advances_watermark(clinic_ref, make_plan, make_subscription):
    synced = timezone.now() - timedelta(hours=1)
    subscription = make_subscription(clinic_ref, make_plan(), provider_synced_at=synced)
    observed = synced + timedelta(minutes=30)

    result = apply_local_transition(subscription, observed_at=observed, status=Subscription.Status.PAST_DUE)

    assert result.applied is True
    assert result.reason == "applied"
    subscription.refresh_from_db()
    assert subscription.status == Subscription.Status.PAST_DUE
    assert subscription.provider_synced_at == observed.replace(microsecond=0)


@pytest.mark.django_db
def test_observation_from_same_second_is_not_stale(clinic_ref, make_plan, make_subscription):
    synced = timezone.now().replace(microsecond=750000)
    subscription = make_subscription(clinic_ref, make_plan(), provider_synced_at=synced)

    result = apply_local_transition(
        subscription,
        observed_at=synced.replace(microsecond=0),
        status=Subscription.Status.PAST_DUE,
    )

    assert result.applied is True
    subscription.refresh_from_db()
    assert subscription.status == Subscription.Status.PAST_DUE


@pytest.mark.django_db
def test_repeated_state_reports_unchanged(clinic_ref, make_plan, make_subscription):
    subscription = make_subscription(clinic_ref, make_plan())

    result = apply_local_transition(subscription, status=Subscription.Status.ACTIVE)

    assert result.applied is False
    assert result.reason == "unchanged"


@pytest.mark.django_db
def test_canceled_subscription_is_terminal(clinic_ref, make_plan, make_subscription, gateway):
    subscription = make_subscription(
        clinic_ref,
        make_plan(),
        status=Subscription.Status.CANCELED,
        canceled_at=timezone.now(),
    )
    provider = replace(gateway.subscriptions[subscription.stripe_subscription_id], status="active")

    result = apply_provider_state(subscription, provider, observed_at=timezone.now())

    assert result.applied is False
    assert result.reason == "terminal"
    subscription.refresh_from_db()
    assert subscription.status == Subscription.Status.CANCELED


@pytest.mark.django_db
def test_reviving_second_live_subscription_is_refused(clinic_ref, make_plan, make_subscription):
    plan = make_plan()
    make_subscription(clinic_ref, plan)
    lapsed = make_subscription(clinic_ref, plan, status=Subscription.Status.PAST_DUE)

    result = apply_local_transition(lapsed, status=Subscription.Status.ACTIVE)

    assert result.applied is False
    assert result.reason == "conflict"
    lapsed.refresh_from_db()
    assert lapsed.status == Subscription.Status.PAST_DUE


@pytest.mark.django_db
def test_local_transition_rejects_unknown_fields(clinic_ref, make_plan, make_subscription):
    subscription = make_subscription(clinic_ref, make_plan())

    with pytest.raises(ValueError):
        apply_local_transition(subscription, stripe_customer_id="cus_other")


@pytest.mark.django_db
def test_subscriptions_cannot_be_deleted(clinic_ref, make_plan, make_subscription):
    subscription = make_subscription(clinic_ref, make_plan())

    with pytest.raises(ValidationError):
        subscription.delete()


@pytest.mark.django_db
def test_sync_live_subscriptions_applies_provider_state(clinic_ref, therapist_ref, make_plan, make_subscription, gateway):
    plan = make_plan()
    scheduled = make_subscription(clinic_ref, plan)
    gateway.subscriptions[scheduled.stripe_subscription_id] = replace(
        gateway.subscriptions[scheduled.stripe_subscription_id],
        cancel_at_period_end=True,
    )
    solo_plan = make_plan(name="Solo", audience="INDIVIDUAL_THERAPIST")
    missing = make_subscription(therapist_ref, solo_plan)
    del gateway.subscriptions[missing.stripe_subscription_id]
    make_subscription(clinic_ref, plan, status=Subscription.Status.CANCELED)

    summary = sync_live_subscriptions()

    assert summary == {"checked": 2, "updated": 1, "failed": 1}
    scheduled.refresh_from_db()
    assert scheduled.cancel_at_period_end is True
    assert scheduled.provider_synced_at is not None
