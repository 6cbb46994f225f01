"""Per-account stored payment instruments with a single default."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import IntegrityError, transaction
from django.db.models import QuerySet

from accounts.directory import AccountNotFound, AccountRef, lock_account
from billing.exceptions import BillingConflictError, BillingNotFoundError, BillingValidationError
from billing.models import PaymentMethod

logger = logging.getLogger(__name__)

CARD_FIELDS = (
    "card_holder_name",
    "card_last4",
    "card_brand",
    "expiry_month",
    "expiry_year",
)

BILLING_FIELDS = (
    "card_holder_name",
    "expiry_month",
    "expiry_year",
    "billing_address_line1",
    "billing_address_line2",
    "billing_city",
    "billing_state",
    "billing_postal_code",
    "billing_country",
)


def _methods_for(account: AccountRef) -> QuerySet[PaymentMethod]:
    return PaymentMethod.objects.filter(**account.owner_filter())


def _lock_account(account: AccountRef):
    try:
        return lock_account(account)
    except AccountNotFound as exc:
        raise BillingNotFoundError("Account not found.", code="account_not_found") from exc


def list_payment_methods(account: AccountRef) -> QuerySet[PaymentMethod]:
    return _methods_for(account).order_by("-is_default", "-created_at")


def count_payment_methods(account: AccountRef) -> Dict[str, int]:
    methods = _methods_for(account)
    return {"total": methods.count(), "default": methods.filter(is_default=True).count()}


def get_payment_method(account: AccountRef, payment_method_id) -> PaymentMethod:
    """Fetch a method owned by ``account``; other accounts' methods look missing."""
    try:
        return _methods_for(account).get(pk=payment_method_id)
    except (PaymentMethod.DoesNotExist, DjangoValidationError, ValueError) as exc:
        raise BillingNotFoundError("Payment method not found.", code="payment_method_not_found") from exc


def get_default_payment_method(account: AccountRef) -> PaymentMethod:
    method = _methods_for(account).filter(is_default=True).first()
    if method is None:
        raise BillingNotFoundError("No default payment method found.", code="no_default_payment_method")
    return method


def add_payment_method(account: AccountRef, *, stripe_payment_method_id: str, **fields: Any) -> PaymentMethod:
    """Store a provider payment method; the first one an account adds becomes its default."""

    stripe_payment_method_id = (stripe_payment_method_id or "").strip()
    if not stripe_payment_method_id:
        raise BillingValidationError("stripe_payment_method_id is required.", code="invalid_payment_method")
    unknown = set(fields) - set(CARD_FIELDS) - set(BILLING_FIELDS)
    if unknown:
        raise BillingValidationError(
            "Unsupported payment method fields.",
            code="invalid_payment_method",
            details={"fields": sorted(unknown)},
        )

    if PaymentMethod.objects.filter(stripe_payment_method_id=stripe_payment_method_id).exists():
        raise BillingConflictError(
            "This payment method has already been added.",
            code="duplicate_payment_method",
        )

    try:
        with transaction.atomic():
            owner = _lock_account(account)
            if not owner.stripe_customer_id:
                raise BillingValidationError(
                    "Account does not have a payment provider customer.",
                    code="missing_customer",
                )
            has_default = _methods_for(account).select_for_update().filter(is_default=True).exists()
            method = PaymentMethod.objects.create(
                stripe_payment_method_id=stripe_payment_method_id,
                stripe_customer_id=owner.stripe_customer_id,
                is_default=not has_default,
                **account.owner_kwargs(),
                **{key: value for key, value in fields.items() if value is not None},
            )
    except IntegrityError as exc:
        # Lost a race against another insert of the same provider reference.
        raise BillingConflictError(
            "This payment method has already been added.",
            code="duplicate_payment_method",
        ) from exc

    logger.info("Added payment method %s for %s (default=%s)", method.pk, account, method.is_default)
    return method


def update_payment_method(account: AccountRef, payment_method_id, **fields: Any) -> PaymentMethod:
    """Update billing details only; card identity and default flag are not editable here."""

    rejected = set(fields) - set(BILLING_FIELDS)
    if rejected:
        raise BillingValidationError(
            "Only billing details can be updated.",
            code="invalid_payment_method_update",
            details={"fields": sorted(rejected)},
        )
    method = get_payment_method(account, payment_method_id)
    if not fields:
        return method
    for key, value in fields.items():
        setattr(method, key, "" if value is None and key not in ("expiry_month", "expiry_year") else value)
    method.save(update_fields=[*fields.keys(), "updated_at"])
    return method


def set_default_payment_method(account: AccountRef, payment_method_id) -> PaymentMethod:
    with transaction.atomic():
        _lock_account(account)
        methods: List[PaymentMethod] = list(_methods_for(account).select_for_update())
        target = next((method for method in methods if str(method.pk) == str(payment_method_id)), None)
        if target is None:
            raise BillingNotFoundError("Payment method not found.", code="payment_method_not_found")
        if target.is_default:
            return target
        _methods_for(account).filter(is_default=True).exclude(pk=target.pk).update(is_default=False)
        target.is_default = True
        target.save(update_fields=["is_default", "updated_at"])

    logger.info("Payment method %s is now the default for %s", target.pk, account)
    return target


def delete_payment_method(account: AccountRef, payment_method_id) -> Optional[PaymentMethod]:
    """Delete a method and, when it was the default, promote the oldest remaining one.

    Returns the promoted method, if any.
    """

    with transaction.atomic():
        _lock_account(account)
        methods: List[PaymentMethod] = list(_methods_for(account).select_for_update().order_by("created_at"))
        target = next((method for method in methods if str(method.pk) == str(payment_method_id)), None)
        if target is None:
            raise BillingNotFoundError("Payment method not found.", code="payment_method_not_found")

        was_default = target.is_default
        target.delete()

        promoted = None
        if was_default:
            remaining = [method for method in methods if method.pk != target.pk]
            if remaining:
                promoted = remaining[0]
                promoted.is_default = True
                promoted.save(update_fields=["is_default", "updated_at"])

    logger.info(
        "Deleted payment method %s for %s; promoted=%s",
        payment_method_id,
        account,
        promoted.pk if promoted else None,
    )
    return promoted


def resolve_payment_method(account: AccountRef, payment_method_id=None) -> PaymentMethod:
    """Explicit method when given, otherwise the account default."""

    if payment_method_id:
        return get_payment_method(account, payment_method_id)
    try:
        return get_default_payment_method(account)
    except BillingNotFoundError as exc:
        raise BillingValidationError(
            "A payment method is required before subscribing.",
            code="needs_payment_method",
        ) from exc


__all__ = [
    "BILLING_FIELDS",
    "CARD_FIELDS",
    "add_payment_method",
    "count_payment_methods",
    "delete_payment_method",
    "get_default_payment_method",
    "get_payment_method",
    "list_payment_methods",
    "resolve_payment_method",
    "set_default_payment_method",
    "update_payment_method",
]
