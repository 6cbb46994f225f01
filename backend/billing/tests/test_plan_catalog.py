from decimal import Decimal

import pytest

from billing.exceptions import BillingConflictError, BillingNotFoundError, BillingValidationError
from billing.models import BillingAuditLog, SubscriptionPlan
from billing.services import plan_catalog


@pytest.mark.django_db
def test_create_plan_binds_provider_product_and_price(gateway):
    plan = plan_catalog.create_plan(
        name="Clinic Monthly",
        price="99.00",
        duration_days=30,
        audience=SubscriptionPlan.Audience.CLINIC,
        features="Unlimited therapists",
        actor="user:1",
    )

    assert plan.price == Decimal("99.00")
    assert plan.interval == SubscriptionPlan.Interval.MONTH
    assert plan.interval_count == 1
    assert plan.currency == "usd"
    assert plan.stripe_product_id in gateway.products
    assert gateway.prices[plan.stripe_price_id]["amount"] == Decimal("99.00")
    assert BillingAuditLog.objects.filter(event_type="billing.plan.created", actor="user:1").exists()


@pytest.mark.parametrize(
    "duration_days,expected",
    [
        (7, ("week", 1)),
        (30, ("month", 1)),
        (365, ("year", 1)),
        (90, ("day", 90)),
    ],
)
def test_derive_interval_maps_common_durations(duration_days, expected):
    assert plan_catalog.derive_interval(duration_days) == expected


@pytest.mark.django_db
def test_create_plan_rejects_invalid_input(gateway):
    with pytest.raises(BillingValidationError) as exc:
        plan_catalog.create_plan(name="Broken", price="-1", duration_days=30, audience="CLINIC")
    assert exc.value.code == "invalid_price"

    with pytest.raises(BillingValidationError) as exc:
        plan_catalog.create_plan(name="Broken", price="10", duration_days=0, audience="CLINIC")
    assert exc.value.code == "invalid_duration"

    with pytest.raises(BillingValidationError) as exc:
        plan_catalog.create_plan(name="Broken", price="10", duration_days=30, audience="HOSPITAL")
    assert exc.value.code == "invalid_audience"

    assert gateway.call_names() == []


@pytest.mark.django_db
def test_create_plan_rejects_duplicate_name_within_audience(make_plan):
    make_plan(name="Starter")

    with pytest.raises(BillingConflictError) as exc:
        plan_catalog.create_plan(name="Starter", price="10", duration_days=30, audience="CLINIC")
    assert exc.value.code == "duplicate_plan"

    other = plan_catalog.create_plan(
        name="Starter",
        price="10",
        duration_days=30,
        audience=SubscriptionPlan.Audience.INDIVIDUAL_THERAPIST,
    )
    assert other.audience == SubscriptionPlan.Audience.INDIVIDUAL_THERAPIST


@pytest.mark.django_db
def test_list_plans_hides_retired_and_filters_by_audience(make_plan):
    basic = make_plan(name="Basic", price="10.00")
    retired = make_plan(name="Legacy", price="5.00")
    retired.expired_at = retired.created_at
    retired.save(update_fields=["expired_at"])
    solo = make_plan(name="Solo", price="15.00", audience=SubscriptionPlan.Audience.INDIVIDUAL_THERAPIST)

    assert list(plan_catalog.list_plans()) == [basic, solo]
    assert list(plan_catalog.list_plans("INDIVIDUAL_THERAPIST")) == [solo]
    assert retired in plan_catalog.list_plans(include_retired=True)


@pytest.mark.django_db
def test_get_plan_raises_not_found_for_unknown_or_malformed_id():
    with pytest.raises(BillingNotFoundError) as exc:
        plan_catalog.get_plan("not-a-uuid")
    assert exc.value.code == "plan_not_found"


@pytest.mark.django_db
def test_update_plan_edits_unreferenced_plan_in_place(make_plan, gateway):
    plan = make_plan(name="Basic", price="10.00")
    old_price_id = plan.stripe_price_id

    result = plan_catalog.update_plan(plan.pk, price="12.50", features="Now with reports")

    assert result.versioned is False
    assert result.price_changed is True
    assert result.plan.pk == plan.pk
    assert result.plan.price == Decimal("12.50")
    assert result.plan.stripe_price_id != old_price_id
    assert gateway.prices[old_price_id]["active"] is False
    assert result.note == plan_catalog.PRICE_CHANGE_NOTE


@pytest.mark.django_db
def test_update_plan_versions_referenced_plan_on_price_change(make_plan, make_subscription, clinic_ref):
    plan = make_plan(name="Basic", price="10.00")
    subscription = make_subscription(clinic_ref, plan)

    result = plan_catalog.update_plan(plan.pk, price="20.00")

    plan.refresh_from_db()
    subscription.refresh_from_db()
    assert result.versioned is True
    assert result.previous_plan.pk == plan.pk
    assert result.plan.pk != plan.pk
    assert result.plan.price == Decimal("20.00")
    assert plan.expired_at is not None
    assert plan.superseded_by_id == result.plan.pk
    assert subscription.plan_id == plan.pk
    assert list(plan_catalog.list_plans()) == [result.plan]


@pytest.mark.django_db
def test_update_plan_rename_keeps_referenced_plan(make_plan, make_subscription, clinic_ref):
    plan = make_plan(name="Basic", price="10.00")
    make_subscription(clinic_ref, plan)

    result = plan_catalog.update_plan(plan.pk, name="Basic Plus")

    assert result.versioned is False
    assert result.price_changed is False
    assert result.plan.pk == plan.pk
    assert result.plan.name == "Basic Plus"


@pytest.mark.django_db
def test_retire_plan_refuses_when_live_subscriptions_exist(make_plan, make_subscription, clinic_ref):
    plan = make_plan()
    make_subscription(clinic_ref, plan)

    with pytest.raises(BillingConflictError) as exc:
        plan_catalog.retire_plan(plan.pk)

    assert exc.value.code == "plan_in_use"
    assert exc.value.details == {"active_subscriptions": 1}
    plan.refresh_from_db()
    assert plan.expired_at is None


@pytest.mark.django_db
def test_retire_and_restore_plan_toggle_provider_price(make_plan, gateway):
    plan = make_plan()

    retired = plan_catalog.retire_plan(plan.pk)
    assert retired.expired_at is not None
    assert gateway.prices[plan.stripe_price_id]["active"] is False

    with pytest.raises(BillingValidationError) as exc:
        plan_catalog.get_purchasable_plan(plan.pk)
    assert exc.value.code == "plan_retired"

    restored = plan_catalog.restore_plan(plan.pk)
    assert restored.expired_at is None
    assert gateway.prices[plan.stripe_price_id]["active"] is True


@pytest.mark.django_db
def test_restore_plan_refuses_superseded_version(make_plan, make_subscription, clinic_ref):
    plan = make_plan(price="10.00")
    make_subscription(clinic_ref, plan)
    plan_catalog.update_plan(plan.pk, price="11.00")

    with pytest.raises(BillingConflictError) as exc:
        plan_catalog.restore_plan(plan.pk)
    assert exc.value.code == "plan_superseded"
