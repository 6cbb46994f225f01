"""Append-only payment ledger keyed by provider payment intent."""
from __future__ import annotations

import logging
from typing import Optional, Tuple

from django.core.exceptions import ValidationError as DjangoValidationError
from django.core.paginator import EmptyPage, Paginator
from django.db import IntegrityError, transaction

from accounts.directory import AccountRef
from billing.exceptions import BillingNotFoundError, BillingValidationError
from billing.models import Payment, Subscription
from billing.observability.metrics import PAYMENT_DUPLICATE_COUNT, PAYMENT_RECORDED_COUNT
from billing.services.gateway import ProviderPayment

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100

_STATUS_MAP = {
    "succeeded": Payment.Status.SUCCEEDED,
    "paid": Payment.Status.SUCCEEDED,
    "processing": Payment.Status.PENDING,
    "requires_action": Payment.Status.PENDING,
    "requires_confirmation": Payment.Status.PENDING,
    "requires_capture": Payment.Status.PENDING,
    "pending": Payment.Status.PENDING,
    "requires_payment_method": Payment.Status.FAILED,
    "failed": Payment.Status.FAILED,
    "canceled": Payment.Status.CANCELED,
    "refunded": Payment.Status.REFUNDED,
}


def _ledger_status(value: str) -> str:
    return _STATUS_MAP.get((value or "").lower(), Payment.Status.PENDING)


def record_payment(
    subscription: Subscription,
    payment: ProviderPayment,
    *,
    source: str = "api",
    description: Optional[str] = None,
) -> Tuple[Payment, bool]:
    """Insert the payment unless its payment intent is already in the ledger.

    Returns ``(payment, created)``. Both the synchronous purchase/upgrade flow
    and webhook ingestion call this for the same intent; the second caller
    gets the existing row back untouched.
    """

    if not payment.payment_intent_id:
        raise BillingValidationError("Payment intent reference is required.", code="missing_payment_intent")

    existing = Payment.objects.filter(stripe_payment_intent_id=payment.payment_intent_id).first()
    if existing is not None:
        PAYMENT_DUPLICATE_COUNT.labels(source=source).inc()
        logger.info("Payment already recorded: %s", payment.payment_intent_id)
        return existing, False

    owner = {"clinic_id": subscription.clinic_id} if subscription.clinic_id else {"therapist_id": subscription.therapist_id}
    row = Payment(
        subscription=subscription,
        stripe_subscription_id=subscription.stripe_subscription_id,
        stripe_payment_intent_id=payment.payment_intent_id,
        stripe_charge_id=payment.charge_id or "",
        amount=payment.amount,
        currency=(payment.currency or subscription.plan.currency).lower(),
        status=_ledger_status(payment.status),
        description=(description or payment.description or f"{subscription.plan.name} - Payment")[:255],
        payment_method_last4=payment.card_last4 or "",
        payment_method_brand=payment.card_brand or "",
        payment_type="subscription",
        paid_at=payment.paid_at,
        **owner,
    )

    try:
        with transaction.atomic():
            row.save()
    except IntegrityError:
        # A concurrent writer inserted the same intent first; its row wins.
        winner = Payment.objects.filter(stripe_payment_intent_id=payment.payment_intent_id).first()
        if winner is None:
            raise
        PAYMENT_DUPLICATE_COUNT.labels(source=source).inc()
        logger.info("Payment %s inserted concurrently; returning existing row", payment.payment_intent_id)
        return winner, False

    PAYMENT_RECORDED_COUNT.labels(status=row.status, source=source).inc()
    logger.info(
        "Recorded payment %s for subscription %s (%s %s)",
        row.stripe_payment_intent_id,
        subscription.stripe_subscription_id,
        row.amount,
        row.currency,
    )
    return row, True


def list_payments(account: AccountRef, page: int = 1, limit: int = DEFAULT_PAGE_SIZE) -> dict:
    try:
        page = max(int(page or 1), 1)
        limit = min(max(int(limit or DEFAULT_PAGE_SIZE), 1), MAX_PAGE_SIZE)
    except (TypeError, ValueError) as exc:
        raise BillingValidationError("page and limit must be integers.", code="invalid_pagination") from exc

    queryset = (
        Payment.objects.filter(**account.owner_filter())
        .select_related("subscription", "subscription__plan")
        .order_by("-created_at")
    )
    paginator = Paginator(queryset, limit)
    try:
        items = list(paginator.page(page).object_list)
    except EmptyPage:
        items = []
    return {
        "items": items,
        "total": paginator.count,
        "page": page,
        "limit": limit,
        "total_pages": paginator.num_pages if paginator.count else 0,
    }


def get_payment(account: AccountRef, payment_id) -> Payment:
    try:
        return (
            Payment.objects.select_related("subscription", "subscription__plan")
            .filter(**account.owner_filter())
            .get(pk=payment_id)
        )
    except (Payment.DoesNotExist, DjangoValidationError, ValueError) as exc:
        raise BillingNotFoundError("Payment not found.", code="payment_not_found") from exc


__all__ = [
    "get_payment",
    "list_payments",
    "record_payment",
]
