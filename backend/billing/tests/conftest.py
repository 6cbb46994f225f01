import itertools
import json
from datetime import timedelta
from decimal import Decimal

import pytest
from django.contrib.auth import get_user_model
from django.utils import timezone
from rest_framework.test import APIClient

from accounts.directory import AccountRef, get_customer_reference
from accounts.models import PrivateClinic, Therapist
from billing.models import Subscription, SubscriptionPlan
from billing.services.gateway import ProviderSubscription, reset_gateway, set_gateway
from billing.services.payment_methods import add_payment_method
from billing.tests.factories import FakeGateway


@pytest.fixture(autouse=True)
def gateway():
    fake = FakeGateway()
    set_gateway(fake)
    yield fake
    reset_gateway()


@pytest.fixture
def api_client():
    return APIClient()


@pytest.fixture
def make_user(db):
    counter = itertools.count(1)

    def _make_user(role, **extra):
        index = next(counter)
        return get_user_model().objects.create_user(
            username=f"{role.lower()}{index}",
            email=f"{role.lower()}{index}@example.com",
            password="pass1234",
            role=role,
            **extra,
        )

    return _make_user


@pytest.fixture
def clinic_user(make_user):
    return make_user(get_user_model().Role.CLINIC)


@pytest.fixture
def clinic(clinic_user):
    return PrivateClinic.objects.create(
        owner=clinic_user,
        email="front-desk@clinic.example.com",
        full_name="Harbour Physio",
        stripe_customer_id="cus_clinic",
    )


@pytest.fixture
def therapist_user(make_user):
    return make_user(get_user_model().Role.THERAPIST)


@pytest.fixture
def therapist(therapist_user):
    return Therapist.objects.create(
        owner=therapist_user,
        email="sam@therapy.example.com",
        full_name="Sam Rivera",
        stripe_customer_id="cus_therapist",
    )


@pytest.fixture
def clinic_ref(clinic):
    return AccountRef.for_account(clinic)


@pytest.fixture
def therapist_ref(therapist):
    return AccountRef.for_account(therapist)


@pytest.fixture
def make_plan(db, gateway):
    def _make_plan(name="Clinic Monthly", price="30.00", duration_days=30,
                   audience=SubscriptionPlan.Audience.CLINIC, **extra):
        product_id = gateway.next_id("prod")
        interval = SubscriptionPlan.Interval.MONTH if duration_days == 30 else SubscriptionPlan.Interval.DAY
        interval_count = 1 if duration_days == 30 else duration_days
        fields = {
            "name": name,
            "price": Decimal(price),
            "currency": "usd",
            "duration_days": duration_days,
            "interval": interval,
            "interval_count": interval_count,
            "audience": audience,
            "stripe_product_id": product_id,
            "stripe_price_id": gateway.register_price(product_id, price, "usd", interval, interval_count),
        }
        fields.update(extra)
        return SubscriptionPlan.objects.create(**fields)

    return _make_plan


@pytest.fixture
def make_payment_method(gateway):
    def _make_payment_method(account, **fields):
        fields.setdefault("card_last4", "4242")
        fields.setdefault("card_brand", "visa")
        return add_payment_method(
            account,
            stripe_payment_method_id=fields.pop("stripe_payment_method_id", gateway.next_id("pm")),
            **fields,
        )

    return _make_payment_method


@pytest.fixture
def build_event():
    counter = itertools.count(1)

    def _build_event(event_type, data_object, *, created=None, event_id=None):
        body = {
            "id": event_id or f"evt_test_{next(counter)}",
            "object": "event",
            "type": event_type,
            "created": int((created or timezone.now()).timestamp()),
            "livemode": False,
            "data": {"object": data_object},
        }
        return json.dumps(body)

    return _build_event



@pytest.fixture
def make_subscription(gateway):
    """Insert a subscription row and mirror it in the fake provider."""

    def _make_subscription(account, plan, *, status=Subscription.Status.ACTIVE, period_start=None,
                           period_days=30, **extra):
        start = period_start or timezone.now() - timedelta(days=1)
        end = start + timedelta(days=period_days)
        customer_id = get_customer_reference(account) or ""
        subscription_id = gateway.next_id("sub")
        gateway.subscriptions[subscription_id] = ProviderSubscription(
            id=subscription_id,
            customer_id=customer_id,
            status=status,
            current_period_start=start,
            current_period_end=end,
            cancel_at_period_end=extra.get("cancel_at_period_end", False),
            item_id=gateway.next_id("si"),
            price_id=plan.stripe_price_id or "",
        )
        return Subscription.objects.create(
            stripe_subscription_id=subscription_id,
            stripe_customer_id=customer_id,
            plan=plan,
            status=status,
            current_period_start=start,
            current_period_end=end,
            **account.owner_kwargs(),
            **extra,
        )

    return _make_subscription
