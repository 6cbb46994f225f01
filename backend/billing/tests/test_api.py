import uuid

import pytest
from django.contrib.auth import get_user_model

from billing.models import Payment, Subscription, SubscriptionPlan

API = "/api/billing"


@pytest.fixture
def clinic_client(api_client, clinic_user, clinic):
    api_client.force_authenticate(user=clinic_user)
    return api_client


@pytest.fixture
def staff_client(api_client, make_user):
    staff = make_user(get_user_model().Role.ADMIN, is_staff=True)
    api_client.force_authenticate(user=staff)
    return api_client


@pytest.mark.django_db
def test_plan_listing_is_public_and_hides_retired(api_client, make_plan):
    active = make_plan(name="Clinic Monthly")
    retired = make_plan(name="Legacy")
    retired.expired_at = retired.created_at
    retired.save(update_fields=["expired_at"])
    make_plan(name="Solo", audience=SubscriptionPlan.Audience.INDIVIDUAL_THERAPIST)

    response = api_client.get(f"{API}/plans/", {"audience": "CLINIC"})

    assert response.status_code == 200
    assert [plan["id"] for plan in response.json()] == [str(active.pk)]
    assert response.json()[0]["is_active"] is True


@pytest.mark.django_db
def test_unknown_plan_uses_error_body(api_client):
    response = api_client.get(f"{API}/plans/{uuid.uuid4()}/")

    assert response.status_code == 404
    body = response.json()
    assert body["code"] == "plan_not_found"
    assert set(body) == {"code", "message", "details"}


@pytest.mark.django_db
def test_plan_management_requires_staff(clinic_client):
    response = clinic_client.post(
        f"{API}/admin/plans/",
        {"name": "Team", "price": "49.00", "duration_days": 30, "audience": "CLINIC"},
        format="json",
    )

    assert response.status_code == 403
    assert not SubscriptionPlan.objects.exists()


@pytest.mark.django_db
def test_staff_can_create_update_and_retire_plans(staff_client, gateway):
    created = staff_client.post(
        f"{API}/admin/plans/",
        {"name": "Team", "price": "49.00", "duration_days": 30, "audience": "CLINIC"},
        format="json",
    )
    assert created.status_code == 201
    plan_id = created.json()["id"]
    assert created.json()["interval"] == "month"
    assert "create_price" in gateway.call_names()

    updated = staff_client.patch(f"{API}/admin/plans/{plan_id}/", {"price": "59.00"}, format="json")
    assert updated.status_code == 200
    assert updated.json()["price_changed"] is True
    assert updated.json()["versioned"] is False
    assert updated.json()["plan"]["price"] == "59.00"

    retired = staff_client.delete(f"{API}/admin/plans/{plan_id}/")
    assert retired.status_code == 200
    assert retired.json()["plan"]["is_active"] is False

    listing = staff_client.get(f"{API}/admin/plans/", {"include_retired": "true"})
    assert [plan["id"] for plan in listing.json()] == [plan_id]


@pytest.mark.django_db
def test_invalid_plan_payload_is_validation_error(staff_client):
    response = staff_client.post(f"{API}/admin/plans/", {"name": "Team"}, format="json")

    assert response.status_code == 400
    assert response.json()["code"] == "validation_error"
    assert "price" in response.json()["details"]


@pytest.mark.django_db
def test_retiring_plan_in_use_is_conflict(staff_client, clinic_ref, make_plan, make_subscription):
    plan = make_plan()
    make_subscription(clinic_ref, plan)

    response = staff_client.delete(f"{API}/admin/plans/{plan.pk}/")

    assert response.status_code == 409
    assert response.json()["code"] == "plan_in_use"
    assert response.json()["details"] == {"active_subscriptions": 1}


@pytest.mark.django_db
def test_billing_endpoints_require_authentication(api_client):
    response = api_client.get(f"{API}/subscriptions/status/")

    assert response.status_code == 401


@pytest.mark.django_db
def test_user_without_account_gets_not_found(api_client, make_user):
    api_client.force_authenticate(user=make_user(get_user_model().Role.CLINIC))

    response = api_client.get(f"{API}/payment-methods/")

    assert response.status_code == 404
    assert response.json()["code"] == "account_not_found"


@pytest.mark.django_db
def test_payment_method_endpoints(clinic_client):
    first = clinic_client.post(
        f"{API}/payment-methods/",
        {"stripe_payment_method_id": "pm_first", "card_last4": "4242", "card_brand": "visa"},
        format="json",
    )
    second = clinic_client.post(
        f"{API}/payment-methods/",
        {"stripe_payment_method_id": "pm_second", "card_last4": "1881", "card_brand": "mastercard"},
        format="json",
    )
    assert first.status_code == 201
    assert first.json()["is_default"] is True
    assert second.json()["is_default"] is False

    rejected = clinic_client.patch(
        f"{API}/payment-methods/{first.json()['id']}/",
        {"card_last4": "0000"},
        format="json",
    )
    assert rejected.status_code == 400

    deleted = clinic_client.delete(f"{API}/payment-methods/{first.json()['id']}/")
    assert deleted.status_code == 200
    assert deleted.json()["new_default"]["id"] == second.json()["id"]

    default = clinic_client.get(f"{API}/payment-methods/default/")
    assert default.json()["stripe_payment_method_id"] == "pm_second"


@pytest.mark.django_db
def test_purchase_without_payment_method_is_rejected(clinic_client, make_plan):
    plan = make_plan()

    response = clinic_client.post(f"{API}/subscriptions/purchase/", {"plan_id": str(plan.pk)}, format="json")

    assert response.status_code == 400
    assert response.json()["code"] == "needs_payment_method"
    assert not Subscription.objects.exists()


@pytest.mark.django_db
def test_subscription_flow_over_http(clinic_client, clinic_ref, make_plan, make_payment_method):
    basic = make_plan(name="Basic", price="30.00")
    pro = make_plan(name="Pro", price="90.00")
    make_payment_method(clinic_ref)

    purchased = clinic_client.post(f"{API}/subscriptions/purchase/", {"plan_id": str(basic.pk)}, format="json")
    assert purchased.status_code == 201
    assert purchased.json()["subscription"]["plan"]["id"] == str(basic.pk)
    assert purchased.json()["payment"]["amount"] == "30.00"

    again = clinic_client.post(f"{API}/subscriptions/purchase/", {"plan_id": str(basic.pk)}, format="json")
    assert again.status_code == 409
    assert again.json()["code"] == "already_subscribed"

    preview = clinic_client.get(f"{API}/subscriptions/preview-upgrade/", {"plan_id": str(pro.pk)})
    assert preview.status_code == 200
    assert preview.json()["is_upgrade"] is True
    assert preview.json()["is_estimate"] is True

    upgraded = clinic_client.post(f"{API}/subscriptions/upgrade/", {"new_plan_id": str(pro.pk)}, format="json")
    assert upgraded.status_code == 200
    assert upgraded.json()["subscription"]["plan"]["id"] == str(pro.pk)
    assert upgraded.json()["previous_plan"]["id"] == str(basic.pk)

    canceled = clinic_client.post(f"{API}/subscriptions/cancel/", {}, format="json")
    assert canceled.status_code == 200
    assert canceled.json()["subscription"]["cancel_at_period_end"] is True

    status = clinic_client.get(f"{API}/subscriptions/status/")
    assert status.json()["has_active_subscription"] is True
    assert status.json()["capabilities"]["can_reactivate"] is True

    reactivated = clinic_client.post(f"{API}/subscriptions/reactivate/", {}, format="json")
    assert reactivated.json()["subscription"]["cancel_at_period_end"] is False

    current = clinic_client.get(f"{API}/subscriptions/current/")
    assert current.json()["status"] == Subscription.Status.ACTIVE


@pytest.mark.django_db
def test_subscription_list_is_paginated_and_filterable(clinic_client, clinic_ref, make_plan, make_subscription):
    plan = make_plan()
    for _ in range(3):
        make_subscription(clinic_ref, plan, status=Subscription.Status.CANCELED)
    make_subscription(clinic_ref, plan)

    response = clinic_client.get(f"{API}/subscriptions/", {"limit": 2})
    assert response.status_code == 200
    assert response.json()["count"] == 4
    assert len(response.json()["results"]) == 2

    live = clinic_client.get(f"{API}/subscriptions/", {"status": "active"})
    assert live.json()["count"] == 1

    bad = clinic_client.get(f"{API}/subscriptions/", {"status": "bogus"})
    assert bad.status_code == 400
    assert bad.json()["code"] == "invalid_status"


@pytest.mark.django_db
def test_payment_history_is_paginated_and_scoped(clinic_client, clinic_ref, make_plan, make_payment_method):
    plan = make_plan()
    make_payment_method(clinic_ref)
    clinic_client.post(f"{API}/subscriptions/purchase/", {"plan_id": str(plan.pk)}, format="json")
    payment = Payment.objects.get()

    listing = clinic_client.get(f"{API}/payments/", {"page": 1, "limit": 5})
    assert listing.status_code == 200
    assert listing.json()["pagination"] == {"total": 1, "page": 1, "limit": 5, "total_pages": 1}
    assert listing.json()["payments"][0]["plan_name"] == plan.name

    detail = clinic_client.get(f"{API}/payments/{payment.pk}/")
    assert detail.json()["stripe_payment_intent_id"] == payment.stripe_payment_intent_id

    missing = clinic_client.get(f"{API}/payments/{uuid.uuid4()}/")
    assert missing.status_code == 404
    assert missing.json()["code"] == "payment_not_found"
