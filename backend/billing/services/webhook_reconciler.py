"""Provider webhook ingestion.

Events are verified against the raw body, logged in ``WebhookEventLog`` so a
redelivery of a handled event short-circuits, and then routed to a handler.
Every subscription write goes through :mod:`billing.services.subscription_state`
using the event creation time as the ordering timestamp.
"""
from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, Optional, Tuple

from django.db import transaction
from django.utils import timezone

from billing.exceptions import ProviderIntegrationError
from billing.models import Subscription, SubscriptionPlan, WebhookEventLog
from billing.observability.metrics import WEBHOOK_EVENT_COUNT
from billing.services.gateway import (
    ProviderEvent,
    StripeGateway,
    coerce_timestamp,
    get_gateway,
    invoice_subscription_id,
    parse_invoice_payment,
    parse_subscription,
)
from billing.services.payment_ledger import record_payment
from billing.services.subscription_state import apply_local_transition, apply_provider_state

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HandlerResult:
    """Outcome of a webhook handler invocation."""

    status: str
    detail: str = ""
    event_id: str = ""

    PROCESSED = "processed"
    IGNORED = "ignored"
    ALREADY_PROCESSED = "already_processed"
    QUEUED = "queued"


def hash_payload(raw_body: bytes | str) -> str:
    if isinstance(raw_body, str):
        raw_body = raw_body.encode("utf-8")
    return hashlib.sha256(raw_body or b"").hexdigest()


def event_to_payload(event: ProviderEvent) -> Dict[str, Any]:
    """Serialise a verified event for the Celery queue."""
    return {
        "id": event.id,
        "type": event.type,
        "created": int(event.created.timestamp()) if event.created else None,
        "livemode": event.livemode,
        "data": {"object": event.data_object},
    }


def event_from_payload(payload: Dict[str, Any]) -> ProviderEvent:
    return ProviderEvent(
        id=str(payload.get("id") or ""),
        type=str(payload.get("type") or ""),
        created=coerce_timestamp(payload.get("created")),
        data_object=((payload.get("data") or {}).get("object")) or {},
        livemode=bool(payload.get("livemode")),
    )


def record_receipt(event: ProviderEvent, payload_hash: str = "") -> Tuple[WebhookEventLog, bool]:
    """Create or refresh the log row for ``event``.

    Returns ``(log_entry, already_handled)``.
    """

    with transaction.atomic():
        log_entry = WebhookEventLog.objects.select_for_update().filter(event_id=event.id).first()
        if log_entry is None:
            log_entry = WebhookEventLog.objects.create(
                event_id=event.id,
                event_type=event.type,
                status=WebhookEventLog.Status.RECEIVED,
                payload_hash=payload_hash,
            )
            return log_entry, False

        if log_entry.handled:
            return log_entry, True

        log_entry.event_type = event.type or log_entry.event_type
        log_entry.status = WebhookEventLog.Status.RECEIVED
        log_entry.last_error = ""
        log_entry.processed_at = None
        if payload_hash:
            log_entry.payload_hash = payload_hash
        log_entry.save(update_fields=["event_type", "status", "last_error", "processed_at", "payload_hash"])
        return log_entry, False


def _mark_event_completed(log_entry: WebhookEventLog, status: str) -> None:
    log_entry.status = status
    log_entry.processed_at = timezone.now()
    log_entry.last_error = ""
    log_entry.handled = True
    log_entry.save(update_fields=["status", "processed_at", "last_error", "handled"])


def _mark_event_failed(log_entry: WebhookEventLog, error: str) -> None:
    log_entry.status = WebhookEventLog.Status.FAILED
    log_entry.last_error = error
    log_entry.processed_at = None
    log_entry.handled = False
    log_entry.save(update_fields=["status", "last_error", "processed_at", "handled"])


def _locate_subscription(stripe_subscription_id: str) -> Optional[Subscription]:
    if not stripe_subscription_id:
        return None
    return (
        Subscription.objects.select_related("plan")
        .filter(stripe_subscription_id=stripe_subscription_id)
        .first()
    )


def _handle_invoice_paid(event: ProviderEvent) -> HandlerResult:
    invoice = event.data_object
    payment = parse_invoice_payment(invoice)
    if payment is None:
        return HandlerResult(status=HandlerResult.IGNORED, detail="Invoice has no payment intent")

    subscription = _locate_subscription(payment.subscription_id)
    if subscription is None:
        logger.warning(
            "Invoice %s references unknown subscription %r; ignoring.",
            invoice.get("id"),
            payment.subscription_id,
        )
        return HandlerResult(status=HandlerResult.IGNORED, detail="Unknown subscription")

    row, created = record_payment(subscription, payment, source="webhook")
    return HandlerResult(
        status=HandlerResult.PROCESSED,
        detail=f"Payment {row.stripe_payment_intent_id} {'recorded' if created else 'already recorded'}",
    )


def _handle_invoice_payment_failed(event: ProviderEvent) -> HandlerResult:
    subscription = _locate_subscription(invoice_subscription_id(event.data_object))
    if subscription is None:
        return HandlerResult(status=HandlerResult.IGNORED, detail="Unknown subscription")

    result = apply_local_transition(
        subscription,
        observed_at=event.created,
        kind=event.type,
        status=Subscription.Status.PAST_DUE,
    )
    if not result.applied:
        return HandlerResult(status=HandlerResult.IGNORED, detail=f"Subscription {result.reason}")
    return HandlerResult(status=HandlerResult.PROCESSED, detail="Subscription marked past_due")


def _handle_subscription_updated(event: ProviderEvent) -> HandlerResult:
    provider = parse_subscription(event.data_object)
    subscription = _locate_subscription(provider.id)
    if subscription is None:
        # Rows are only created by the purchase flow.
        logger.info("Provider subscription %s is not tracked locally; ignoring %s.", provider.id, event.type)
        return HandlerResult(status=HandlerResult.IGNORED, detail="Unknown subscription")

    plan = None
    if provider.price_id and provider.price_id != subscription.plan.stripe_price_id:
        plan = SubscriptionPlan.objects.filter(stripe_price_id=provider.price_id).first()
        if plan is None:
            logger.warning(
                "Provider subscription %s moved to unknown price %s; keeping plan %s.",
                provider.id,
                provider.price_id,
                subscription.plan_id,
            )

    result = apply_provider_state(subscription, provider, observed_at=event.created, plan=plan, kind=event.type)
    if not result.applied:
        return HandlerResult(status=HandlerResult.IGNORED, detail=f"Subscription {result.reason}")
    return HandlerResult(status=HandlerResult.PROCESSED, detail=f"Subscription {result.subscription.status}")


def _handle_subscription_deleted(event: ProviderEvent) -> HandlerResult:
    data = event.data_object
    subscription = _locate_subscription(str(data.get("id") or ""))
    if subscription is None:
        return HandlerResult(status=HandlerResult.IGNORED, detail="Unknown subscription")

    canceled_at = (
        coerce_timestamp(data.get("canceled_at"))
        or coerce_timestamp(data.get("ended_at"))
        or timezone.now()
    )
    # Deletion is final at the provider and is never stale.
    result = apply_local_transition(
        subscription,
        observed_at=None,
        kind=event.type,
        status=Subscription.Status.CANCELED,
        canceled_at=canceled_at,
        cancel_at_period_end=False,
    )
    if not result.applied:
        return HandlerResult(status=HandlerResult.IGNORED, detail="Subscription already canceled")
    return HandlerResult(status=HandlerResult.PROCESSED, detail="Subscription canceled")


_HANDLERS: Dict[str, Callable[[ProviderEvent], HandlerResult]] = {
    "invoice.paid": _handle_invoice_paid,
    "invoice.payment_succeeded": _handle_invoice_paid,
    "invoice.payment_failed": _handle_invoice_payment_failed,
    "customer.subscription.created": _handle_subscription_updated,
    "customer.subscription.updated": _handle_subscription_updated,
    "customer.subscription.deleted": _handle_subscription_deleted,
}


def dispatch_event(event: ProviderEvent) -> HandlerResult:
    """Route a provider event to its dedicated handler."""

    handler = _HANDLERS.get(event.type)
    if handler is None:
        logger.info("Ignoring unsupported provider event type '%s'.", event.type)
        return HandlerResult(status=HandlerResult.IGNORED, detail="Unsupported event type")
    return handler(event)


def process_event(event: ProviderEvent, *, payload_hash: str = "") -> HandlerResult:
    """Process a verified event exactly once.

    Failures mark the log row failed and propagate; the caller decides whether
    the provider should redeliver.
    """

    log_entry, already_handled = record_receipt(event, payload_hash)
    if already_handled:
        logger.info("Provider event %s (%s) already handled with status=%s.", event.id, event.type, log_entry.status)
        WEBHOOK_EVENT_COUNT.labels(event_type=event.type, outcome=HandlerResult.ALREADY_PROCESSED).inc()
        return HandlerResult(status=HandlerResult.ALREADY_PROCESSED, detail=log_entry.status, event_id=event.id)

    try:
        with transaction.atomic():
            result = dispatch_event(event)
    except ProviderIntegrationError as exc:
        logger.warning("Provider integration error while processing event %s: %s", event.id, exc)
        _mark_event_failed(log_entry, str(exc))
        WEBHOOK_EVENT_COUNT.labels(event_type=event.type, outcome="failed").inc()
        raise
    except Exception as exc:
        logger.exception("Unexpected error processing provider event %s", event.id)
        _mark_event_failed(log_entry, str(exc))
        WEBHOOK_EVENT_COUNT.labels(event_type=event.type, outcome="failed").inc()
        raise

    status = (
        WebhookEventLog.Status.PROCESSED
        if result.status == HandlerResult.PROCESSED
        else WebhookEventLog.Status.IGNORED
    )
    _mark_event_completed(log_entry, status)
    WEBHOOK_EVENT_COUNT.labels(event_type=event.type, outcome=result.status).inc()
    logger.info("Processed provider event %s (%s): %s", event.id, event.type, result.detail or result.status)
    return HandlerResult(status=result.status, detail=result.detail, event_id=event.id)


def handle_event(
    signature: Optional[str],
    raw_body: bytes | str,
    *,
    gateway: Optional[StripeGateway] = None,
    defer: Optional[Callable[[Dict[str, Any]], Any]] = None,
) -> HandlerResult:
    """Verify a webhook delivery and process it, or hand it to ``defer`` for async processing.

    Raises ``WebhookSignatureError`` before anything is written when the
    signature does not match.
    """

    gateway = gateway or get_gateway()
    event = gateway.verify_and_parse_event(signature, raw_body)
    payload_hash = hash_payload(raw_body)

    if defer is None:
        return process_event(event, payload_hash=payload_hash)

    log_entry, already_handled = record_receipt(event, payload_hash)
    if already_handled:
        return HandlerResult(status=HandlerResult.ALREADY_PROCESSED, detail=log_entry.status, event_id=event.id)
    defer(event_to_payload(event))
    logger.info("Queued provider event %s (%s) for processing.", event.id, event.type)
    return HandlerResult(status=HandlerResult.QUEUED, event_id=event.id)


def prune_event_logs(days: int = 7) -> int:
    """Remove handled webhook log rows older than ``days`` days."""

    cutoff = timezone.now() - timedelta(days=days)
    deleted, _ = WebhookEventLog.objects.filter(
        handled=True,
        processed_at__lt=cutoff,
    ).delete()
    logger.info("Cleaned up %s handled webhook events older than %s days.", deleted, days)
    return deleted


__all__ = [
    "HandlerResult",
    "dispatch_event",
    "event_from_payload",
    "event_to_payload",
    "handle_event",
    "hash_payload",
    "process_event",
    "prune_event_logs",
    "record_receipt",
]
