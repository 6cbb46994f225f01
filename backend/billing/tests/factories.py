"""Test doubles and provider payload builders for billing tests."""
import hashlib
import hmac
import itertools
import time
from dataclasses import replace
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from django.utils import timezone

from billing.exceptions import ProviderIntegrationError
from billing.services.gateway import ProviderPayment, ProviderSubscription, StripeGateway

WEBHOOK_SECRET = "whsec_test_secret"


class FakeGateway(StripeGateway):
    """In-memory stand-in for the provider; signature checks use the real implementation."""

    def __init__(self):
        super().__init__(api_key="sk_test_fake", webhook_secret=WEBHOOK_SECRET, currency="usd")
        self._ids = itertools.count(1)
        self.calls = []
        self.products = {}
        self.prices = {}
        self.subscriptions = {}
        self.payment_status = "succeeded"
        self.subscription_status = "active"
        self.period_days = 30
        self.error: Optional[Exception] = None

    def next_id(self, prefix: str) -> str:
        return f"{prefix}_fake_{next(self._ids)}"

    def _record(self, call: str, /, **kwargs):
        self.calls.append((call, kwargs))
        if self.error is not None:
            error, self.error = self.error, None
            raise error

    def call_names(self):
        return [name for name, _ in self.calls]

    # Catalog

    def create_product(self, name, description="", metadata=None):
        self._record("create_product", name=name)
        product_id = self.next_id("prod")
        self.products[product_id] = {"name": name, "description": description, "active": True}
        return product_id

    def update_product(self, product_ref, *, name=None, description=None, metadata=None):
        self._record("update_product", product=product_ref, name=name, description=description)
        product = self.products.setdefault(product_ref, {"active": True})
        if name is not None:
            product["name"] = name
        if description is not None:
            product["description"] = description

    def set_product_active(self, product_ref, active):
        self._record("set_product_active", product=product_ref, active=active)
        self.products.setdefault(product_ref, {})["active"] = active

    def register_price(self, product_ref, amount, currency="usd", interval="month", interval_count=1):
        price_id = self.next_id("price")
        self.prices[price_id] = {
            "product": product_ref,
            "amount": Decimal(str(amount)),
            "currency": currency,
            "interval": interval,
            "interval_count": interval_count,
            "active": True,
        }
        return price_id

    def create_price(self, product_ref, amount, currency, interval, interval_count=1, metadata=None):
        self._record("create_price", product=product_ref, amount=Decimal(str(amount)), interval=interval)
        return self.register_price(product_ref, amount, currency, interval, interval_count)

    def set_price_active(self, price_ref, active):
        self._record("set_price_active", price=price_ref, active=active)
        self.prices.setdefault(price_ref, {})["active"] = active

    def retrieve_price(self, price_ref):
        self._record("retrieve_price", price=price_ref)
        return {"id": price_ref, "product": self.prices.get(price_ref, {}).get("product")}

    # Subscriptions

    def _payment_for(self, subscription_id: str, price_ref: str) -> ProviderPayment:
        price = self.prices.get(price_ref, {})
        return ProviderPayment(
            payment_intent_id=self.next_id("pi"),
            amount=price.get("amount", Decimal("0.00")),
            currency=price.get("currency", "usd"),
            status=self.payment_status,
            charge_id=self.next_id("ch"),
            card_last4="4242",
            card_brand="visa",
            paid_at=timezone.now(),
            subscription_id=subscription_id,
        )

    def create_subscription(self, customer_ref, price_ref, payment_method_ref, metadata=None):
        self._record(
            "create_subscription",
            customer=customer_ref,
            price=price_ref,
            payment_method=payment_method_ref,
        )
        now = timezone.now()
        subscription_id = self.next_id("sub")
        subscription = ProviderSubscription(
            id=subscription_id,
            customer_id=customer_ref,
            status=self.subscription_status,
            current_period_start=now,
            current_period_end=now + timedelta(days=self.period_days),
            item_id=self.next_id("si"),
            price_id=price_ref,
            latest_payment=self._payment_for(subscription_id, price_ref),
        )
        self.subscriptions[subscription_id] = subscription
        return subscription

    def retrieve_subscription(self, subscription_ref):
        self._record("retrieve_subscription", subscription=subscription_ref)
        if subscription_ref not in self.subscriptions:
            raise ProviderIntegrationError(f"No such subscription: {subscription_ref}", code="provider_error")
        return self.subscriptions[subscription_ref]

    def update_subscription_items(self, subscription_ref, item_ref, price_ref, proration_behavior="create_prorations",
                                  *, payment_method_ref=None, metadata=None, idempotency_key=None):
        self._record(
            "update_subscription_items",
            subscription=subscription_ref,
            item=item_ref,
            price=price_ref,
            proration_behavior=proration_behavior,
            idempotency_key=idempotency_key,
        )
        current = self.subscriptions[subscription_ref]
        latest_payment = current.latest_payment
        if proration_behavior == "always_invoice":
            latest_payment = self._payment_for(subscription_ref, price_ref)
        updated = replace(current, price_id=price_ref, latest_payment=latest_payment)
        self.subscriptions[subscription_ref] = updated
        return updated

    def cancel(self, subscription_ref, at_period_end):
        self._record("cancel", subscription=subscription_ref, at_period_end=at_period_end)
        current = self.subscriptions[subscription_ref]
        if at_period_end:
            updated = replace(current, cancel_at_period_end=True)
        else:
            updated = replace(current, status="canceled", canceled_at=timezone.now(), cancel_at_period_end=False)
        self.subscriptions[subscription_ref] = updated
        return updated

    def resume(self, subscription_ref):
        self._record("resume", subscription=subscription_ref)
        updated = replace(self.subscriptions[subscription_ref], cancel_at_period_end=False)
        self.subscriptions[subscription_ref] = updated
        return updated


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def subscription_payload(subscription, **overrides):
    """Provider-shaped subscription object for the local ``subscription`` row."""

    payload = {
        "id": subscription.stripe_subscription_id,
        "object": "subscription",
        "customer": subscription.stripe_customer_id,
        "status": subscription.status,
        "current_period_start": int(subscription.current_period_start.timestamp()),
        "current_period_end": int(subscription.current_period_end.timestamp()),
        "cancel_at_period_end": subscription.cancel_at_period_end,
        "canceled_at": int(subscription.canceled_at.timestamp()) if subscription.canceled_at else None,
        "items": {
            "data": [
                {"id": "si_test", "price": {"id": subscription.plan.stripe_price_id}},
            ]
        },
    }
    payload.update(overrides)
    return payload


def invoice_payload(subscription, *, intent_id="pi_webhook_1", amount_paid=3000, status="paid"):
    return {
        "id": f"in_{intent_id}",
        "object": "invoice",
        "subscription": subscription.stripe_subscription_id,
        "customer": subscription.stripe_customer_id,
        "currency": "usd",
        "amount_paid": amount_paid,
        "paid": status == "paid",
        "status": status,
        "payment_intent": intent_id,
        "status_transitions": {"paid_at": int(timezone.now().timestamp())},
    }
