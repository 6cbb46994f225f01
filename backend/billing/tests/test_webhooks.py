import json
from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest
from django.utils import timezone

from billing.exceptions import ProviderIntegrationError
from billing.models import Payment, Subscription, WebhookEventLog
from billing.services import subscription_lifecycle
from billing.services.webhook_reconciler import HandlerResult, event_from_payload, prune_event_logs
from billing.tasks import process_provider_event_async
from billing.tests.factories import invoice_payload, sign_payload, subscription_payload

WEBHOOK_URL = "/webhooks/provider/"


@pytest.fixture
def post_event(api_client):
    def _post_event(body, signature=None):
        headers = {}
        if signature is not False:
            headers["HTTP_STRIPE_SIGNATURE"] = signature or sign_payload(body)
        return api_client.post(WEBHOOK_URL, data=body, content_type="application/json", **headers)

    return _post_event


@pytest.fixture
def subscription(clinic_ref, make_plan, make_subscription):
    return make_subscription(clinic_ref, make_plan(price="30.00"))


@pytest.mark.django_db
def test_missing_signature_is_rejected_without_side_effects(post_event, build_event, subscription):
    body = build_event("invoice.paid", invoice_payload(subscription))

    response = post_event(body, signature=False)

    assert response.status_code == 400
    assert response.json()["code"] == "missing_signature"
    assert not WebhookEventLog.objects.exists()


@pytest.mark.django_db
def test_bad_signature_is_rejected_without_side_effects(post_event, build_event, subscription):
    body = build_event("invoice.paid", invoice_payload(subscription))

    response = post_event(body, signature=sign_payload(body, secret="whsec_wrong"))

    assert response.status_code == 400
    assert response.json()["code"] == "invalid_signature"
    assert not WebhookEventLog.objects.exists()
    assert not Payment.objects.exists()


@pytest.mark.django_db
def test_invoice_paid_records_payment_once(post_event, build_event, subscription):
    body = build_event("invoice.paid", invoice_payload(subscription, intent_id="pi_hook"), event_id="evt_paid")

    first = post_event(body)
    second = post_event(body)

    assert first.status_code == 200
    assert first.json()["status"] == HandlerResult.PROCESSED
    assert second.status_code == 200
    assert second.json()["status"] == HandlerResult.ALREADY_PROCESSED

    payment = Payment.objects.get()
    assert payment.stripe_payment_intent_id == "pi_hook"
    assert payment.amount == Decimal("30.00")
    assert payment.subscription_id == subscription.pk

    log_entry = WebhookEventLog.objects.get(event_id="evt_paid")
    assert log_entry.handled is True
    assert log_entry.status == WebhookEventLog.Status.PROCESSED
    assert log_entry.payload_hash


@pytest.mark.django_db
def test_distinct_events_for_same_intent_share_one_ledger_row(post_event, build_event, subscription):
    invoice = invoice_payload(subscription, intent_id="pi_shared")

    post_event(build_event("invoice.paid", invoice))
    response = post_event(build_event("invoice.payment_succeeded", invoice))

    assert response.json()["status"] == HandlerResult.PROCESSED
    assert Payment.objects.filter(stripe_payment_intent_id="pi_shared").count() == 1


@pytest.mark.django_db
def test_invoice_for_unknown_subscription_is_ignored(post_event, build_event, subscription):
    invoice = invoice_payload(subscription)
    invoice["subscription"] = "sub_elsewhere"

    response = post_event(build_event("invoice.paid", invoice, event_id="evt_unknown"))

    assert response.status_code == 200
    assert response.json()["status"] == HandlerResult.IGNORED
    assert not Payment.objects.exists()
    assert WebhookEventLog.objects.get(event_id="evt_unknown").status == WebhookEventLog.Status.IGNORED


@pytest.mark.django_db
def test_payment_failed_marks_subscription_past_due(post_event, build_event, subscription):
    response = post_event(build_event("invoice.payment_failed", invoice_payload(subscription, status="open")))

    assert response.json()["status"] == HandlerResult.PROCESSED
    subscription.refresh_from_db()
    assert subscription.status == Subscription.Status.PAST_DUE


@pytest.mark.django_db
def test_subscription_updated_applies_provider_state(post_event, build_event, subscription, make_plan):
    pro = make_plan(name="Pro", price="90.00")
    payload = subscription_payload(subscription, cancel_at_period_end=True)
    payload["items"]["data"][0]["price"]["id"] = pro.stripe_price_id

    response = post_event(build_event("customer.subscription.updated", payload))

    assert response.json()["status"] == HandlerResult.PROCESSED
    subscription.refresh_from_db()
    assert subscription.cancel_at_period_end is True
    assert subscription.plan_id == pro.pk
    assert subscription.provider_synced_at is not None


@pytest.mark.django_db
def test_out_of_order_subscription_update_is_ignored(post_event, build_event, subscription):
    now = timezone.now()
    newer = subscription_payload(subscription, status="past_due")
    older = subscription_payload(subscription, status="active", cancel_at_period_end=True)

    post_event(build_event("customer.subscription.updated", newer, created=now))
    response = post_event(build_event("customer.subscription.updated", older, created=now - timedelta(minutes=10)))

    assert response.status_code == 200
    assert response.json()["status"] == HandlerResult.IGNORED
    assert response.json()["detail"] == "Subscription stale"
    subscription.refresh_from_db()
    assert subscription.status == Subscription.Status.PAST_DUE
    assert subscription.cancel_at_period_end is False


@pytest.mark.django_db
def test_subscription_deleted_cancels_and_stays_canceled(post_event, build_event, subscription):
    deleted = subscription_payload(subscription, status="canceled", canceled_at=int(timezone.now().timestamp()))

    response = post_event(build_event("customer.subscription.deleted", deleted))
    assert response.json()["status"] == HandlerResult.PROCESSED

    revived = subscription_payload(subscription, status="active")
    later = post_event(build_event("customer.subscription.updated", revived, created=timezone.now() + timedelta(minutes=1)))

    assert later.json()["status"] == HandlerResult.IGNORED
    subscription.refresh_from_db()
    assert subscription.status == Subscription.Status.CANCELED
    assert subscription.canceled_at is not None
    assert subscription.cancel_at_period_end is False


@pytest.mark.django_db
def test_unsupported_event_type_is_acknowledged(post_event, build_event):
    response = post_event(build_event("customer.created", {"id": "cus_new"}, event_id="evt_customer"))

    assert response.status_code == 200
    assert response.json()["status"] == HandlerResult.IGNORED
    assert WebhookEventLog.objects.get(event_id="evt_customer").handled is True


@pytest.mark.django_db
def test_payload_without_period_is_rejected_without_redelivery(post_event, build_event, subscription):
    payload = subscription_payload(subscription, current_period_start=None, current_period_end=None)

    response = post_event(build_event("customer.subscription.updated", payload, event_id="evt_broken"))

    assert response.status_code == 400
    assert response.json()["code"] == "missing_billing_period"
    log_entry = WebhookEventLog.objects.get(event_id="evt_broken")
    assert log_entry.status == WebhookEventLog.Status.FAILED
    assert log_entry.handled is False
    assert "billing period" in log_entry.last_error


@pytest.mark.django_db
def test_failed_event_is_reprocessed_on_redelivery(post_event, build_event, subscription):
    broken = subscription_payload(subscription, current_period_start=None, current_period_end=None)
    post_event(build_event("customer.subscription.updated", broken, event_id="evt_retry"))

    fixed = subscription_payload(subscription, cancel_at_period_end=True)
    response = post_event(build_event("customer.subscription.updated", fixed, event_id="evt_retry"))

    assert response.json()["status"] == HandlerResult.PROCESSED
    assert WebhookEventLog.objects.get(event_id="evt_retry").status == WebhookEventLog.Status.PROCESSED


@pytest.mark.django_db
def test_async_mode_queues_event(post_event, build_event, subscription, settings, monkeypatch):
    settings.BILLING_WEBHOOK_ASYNC = True
    queued = []
    monkeypatch.setattr(
        "billing.views.webhooks.process_provider_event_async",
        SimpleNamespace(delay=queued.append),
    )

    body = build_event("invoice.paid", invoice_payload(subscription, intent_id="pi_async"), event_id="evt_async")
    response = post_event(body)

    assert response.status_code == 202
    assert response.json()["status"] == HandlerResult.QUEUED
    assert [item["id"] for item in queued] == ["evt_async"]
    assert not Payment.objects.exists()
    assert WebhookEventLog.objects.get(event_id="evt_async").status == WebhookEventLog.Status.RECEIVED

    outcome = process_provider_event_async(queued[0])

    assert outcome["status"] == HandlerResult.PROCESSED
    assert Payment.objects.filter(stripe_payment_intent_id="pi_async").exists()
    assert event_from_payload(queued[0]).id == "evt_async"


@pytest.mark.django_db
def test_prune_event_logs_keeps_recent_and_unhandled_rows():
    old = timezone.now() - timedelta(days=10)
    WebhookEventLog.objects.create(event_id="evt_old", event_type="invoice.paid", handled=True, processed_at=old)
    WebhookEventLog.objects.create(event_id="evt_recent", event_type="invoice.paid", handled=True, processed_at=timezone.now())
    WebhookEventLog.objects.create(event_id="evt_failed", event_type="invoice.paid", handled=False)

    assert prune_event_logs(days=7) == 1
    assert set(WebhookEventLog.objects.values_list("event_id", flat=True)) == {"evt_recent", "evt_failed"}


@pytest.mark.django_db
def test_transient_provider_error_asks_for_redelivery(post_event, build_event, subscription, monkeypatch):
    def unavailable(*args, **kwargs):
        raise ProviderIntegrationError("Provider timed out.", code="provider_error", retryable=True)

    monkeypatch.setattr("billing.views.webhooks.handle_event", unavailable)

    response = post_event(build_event("invoice.paid", invoice_payload(subscription)))

    assert response.status_code == 503
    assert response.json()["code"] == "provider_error"


@pytest.mark.django_db
def test_malformed_body_is_rejected_without_redelivery(post_event):
    response = post_event(json.dumps({"object": "event"}))

    assert response.status_code == 400
    assert response.json()["code"] == "malformed_event"
    assert not WebhookEventLog.objects.exists()


@pytest.mark.django_db
def test_body_that_is_not_utf8_is_rejected(api_client):
    body = b'{"id": "evt_bytes", "type": "invoice.paid", "bad": "\xff"}'

    response = api_client.post(
        WEBHOOK_URL,
        data=body,
        content_type="application/json",
        HTTP_STRIPE_SIGNATURE="t=1,v1=deadbeef",
    )

    assert response.status_code == 400
    assert response.json()["code"] == "malformed_event"
    assert not WebhookEventLog.objects.exists()


@pytest.mark.django_db
def test_update_from_same_second_as_purchase_is_applied(
    post_event, build_event, clinic_ref, make_plan, make_payment_method, gateway
):
    gateway.subscription_status = "incomplete"
    make_payment_method(clinic_ref)
    purchased = subscription_lifecycle.purchase(clinic_ref, make_plan().pk).subscription
    assert purchased.status == Subscription.Status.INCOMPLETE

    activated = subscription_payload(purchased, status="active")
    response = post_event(
        build_event("customer.subscription.updated", activated, created=purchased.provider_synced_at)
    )

    assert response.status_code == 200
    assert response.json()["status"] == HandlerResult.PROCESSED
    purchased.refresh_from_db()
    assert purchased.status == Subscription.Status.ACTIVE
