"""Stripe gateway: the only module that talks to the payment provider.

Every service that needs the provider receives a ``StripeGateway`` (``gateway=``
keyword, defaulting to the process-wide instance from ``get_gateway()``).
Responses are converted to plain dataclasses so the rest of the billing core
never handles SDK objects.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone as dt_timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Iterable, Optional

import stripe
from django.conf import settings

from billing.exceptions import ProviderIntegrationError, WebhookSignatureError

logger = logging.getLogger(__name__)

ZERO_DECIMAL_CURRENCIES: set[str] = {
    "bif",
    "clp",
    "djf",
    "gnf",
    "jpy",
    "kmf",
    "krw",
    "mga",
    "pyg",
    "rwf",
    "ugx",
    "vnd",
    "vuv",
    "xaf",
    "xof",
    "xpf",
}

PRORATION_BEHAVIORS = ("create_prorations", "none", "always_invoice")

_INTERVAL_FOR_STRIPE = {"day", "week", "month", "year"}


@dataclass(frozen=True)
class ProviderPayment:
    payment_intent_id: str
    amount: Decimal
    currency: str
    status: str
    charge_id: str = ""
    card_last4: str = ""
    card_brand: str = ""
    paid_at: Optional[datetime] = None
    description: str = ""
    subscription_id: str = ""


@dataclass(frozen=True)
class ProviderSubscription:
    id: str
    customer_id: str
    status: str
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    item_id: str = ""
    price_id: str = ""
    latest_payment: Optional[ProviderPayment] = None


@dataclass(frozen=True)
class ProviderEvent:
    id: str
    type: str
    created: Optional[datetime]
    data_object: Dict[str, Any] = field(default_factory=dict)
    livemode: bool = False


def coerce_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, "", 0):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=dt_timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def _convert_minor_amount(value: Any, currency: str) -> Decimal:
    if value in (None, "", [], {}):
        return Decimal("0.00")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return Decimal("0.00")
    divisor = Decimal("1") if currency and currency.lower() in ZERO_DECIMAL_CURRENCIES else Decimal("100")
    return (amount / divisor).quantize(Decimal("0.01"))


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Convert a major-unit decimal price to the integer amount Stripe expects."""
    multiplier = Decimal("1") if currency and currency.lower() in ZERO_DECIMAL_CURRENCIES else Decimal("100")
    return int((Decimal(amount) * multiplier).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _to_dict(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict) and not hasattr(obj, "to_dict"):
        return obj
    for attr in ("to_dict_recursive", "to_dict"):
        converter = getattr(obj, attr, None)
        if callable(converter):
            try:
                return converter()
            except TypeError:
                continue
    return dict(obj)


def _ref_id(value: Any) -> str:
    """Return an object id whether Stripe sent the id string or the expanded object."""
    if not value:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return str(value.get("id") or "")
    return str(getattr(value, "id", "") or "")


def _period_bounds(data: Dict[str, Any]) -> tuple[Optional[datetime], Optional[datetime]]:
    start = coerce_timestamp(data.get("current_period_start"))
    end = coerce_timestamp(data.get("current_period_end"))
    if start and end:
        return start, end
    # Newer API versions only report the billing period on subscription items.
    items = (data.get("items") or {}).get("data") or []
    if items and isinstance(items[0], dict):
        start = start or coerce_timestamp(items[0].get("current_period_start"))
        end = end or coerce_timestamp(items[0].get("current_period_end"))
    return start, end


def _card_details(charge: Dict[str, Any]) -> tuple[str, str]:
    card = ((charge.get("payment_method_details") or {}).get("card")) or {}
    return str(card.get("last4") or ""), str(card.get("brand") or "")


def invoice_subscription_id(invoice: Dict[str, Any]) -> str:
    subscription_id = _ref_id(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    parent = invoice.get("parent") or {}
    subscription_id = _ref_id((parent.get("subscription_details") or {}).get("subscription"))
    if subscription_id:
        return subscription_id
    for line in (invoice.get("lines") or {}).get("data") or []:
        if isinstance(line, dict) and line.get("subscription"):
            return _ref_id(line.get("subscription"))
    return ""


def _invoice_payment_intent(invoice: Dict[str, Any]) -> Any:
    intent = invoice.get("payment_intent")
    if intent:
        return intent
    payments = (invoice.get("payments") or {}).get("data") or []
    for entry in payments:
        if isinstance(entry, dict):
            intent = (entry.get("payment") or {}).get("payment_intent")
            if intent:
                return intent
    return None


def parse_invoice_payment(invoice: Dict[str, Any]) -> Optional[ProviderPayment]:
    """Extract the payment an invoice settled, or ``None`` when it has no payment intent."""

    intent = _invoice_payment_intent(invoice)
    intent_id = _ref_id(intent)
    if not intent_id:
        return None
    intent_data = intent if isinstance(intent, dict) else {}
    charge = invoice.get("charge")
    if not isinstance(charge, dict):
        charge = intent_data.get("latest_charge") if isinstance(intent_data.get("latest_charge"), dict) else {}
    last4, brand = _card_details(charge or {})
    currency = str(invoice.get("currency") or intent_data.get("currency") or "").lower()
    amount_minor = invoice.get("amount_paid")
    if amount_minor in (None, "") or (amount_minor == 0 and intent_data.get("amount")):
        amount_minor = intent_data.get("amount_received") or intent_data.get("amount")
    paid_at = (
        coerce_timestamp((invoice.get("status_transitions") or {}).get("paid_at"))
        or coerce_timestamp(intent_data.get("created"))
    )
    status = str(intent_data.get("status") or ("succeeded" if invoice.get("paid") or invoice.get("status") == "paid" else "pending"))
    return ProviderPayment(
        payment_intent_id=intent_id,
        amount=_convert_minor_amount(amount_minor, currency),
        currency=currency,
        status=status,
        charge_id=_ref_id(charge) or _ref_id(invoice.get("charge")),
        card_last4=last4,
        card_brand=brand,
        paid_at=paid_at,
        description=str(invoice.get("description") or ""),
        subscription_id=invoice_subscription_id(invoice),
    )


def parse_subscription(data: Dict[str, Any]) -> ProviderSubscription:
    """Build a ``ProviderSubscription`` from a subscription payload.

    Period boundaries are mandatory: without them no proration can be computed,
    so a payload lacking them is a non-retryable integration error.
    """

    subscription_id = _ref_id(data.get("id"))
    if not subscription_id:
        raise ProviderIntegrationError("Provider subscription payload has no id.", code="malformed_subscription")

    start, end = _period_bounds(data)
    if start is None or end is None:
        logger.error("Provider subscription %s is missing billing period boundaries.", subscription_id)
        raise ProviderIntegrationError(
            "Provider did not return valid billing period timestamps.",
            code="missing_billing_period",
            details={"subscription_id": subscription_id},
        )

    items = (data.get("items") or {}).get("data") or []
    first_item = items[0] if items and isinstance(items[0], dict) else {}
    latest_invoice = data.get("latest_invoice")
    latest_payment = parse_invoice_payment(latest_invoice) if isinstance(latest_invoice, dict) else None

    return ProviderSubscription(
        id=subscription_id,
        customer_id=_ref_id(data.get("customer")),
        status=str(data.get("status") or ""),
        current_period_start=start,
        current_period_end=end,
        cancel_at_period_end=bool(data.get("cancel_at_period_end")),
        canceled_at=coerce_timestamp(data.get("canceled_at")),
        item_id=_ref_id(first_item.get("id")),
        price_id=_ref_id(first_item.get("price")),
        latest_payment=latest_payment,
    )


class StripeGateway:
    """Thin synchronous wrapper around the Stripe SDK."""

    subscription_expand = ("latest_invoice.payment_intent",)

    def __init__(self, *, api_key: str = "", webhook_secret: str = "", api_version: str = "",
                 currency: str = "usd", webhook_tolerance: int = 300):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.api_version = api_version
        self.currency = (currency or "usd").lower()
        self.webhook_tolerance = webhook_tolerance

    @classmethod
    def from_settings(cls) -> "StripeGateway":
        return cls(
            api_key=getattr(settings, "STRIPE_SECRET_KEY", ""),
            webhook_secret=getattr(settings, "STRIPE_WEBHOOK_SECRET", ""),
            api_version=getattr(settings, "STRIPE_API_VERSION", ""),
            currency=getattr(settings, "STRIPE_CURRENCY", "usd"),
        )

    def _request_options(self, idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        if not self.api_key:
            raise ProviderIntegrationError("STRIPE_SECRET_KEY is not configured.", code="provider_not_configured")
        options: Dict[str, Any] = {"api_key": self.api_key}
        if self.api_version:
            options["stripe_version"] = self.api_version
        if idempotency_key:
            options["idempotency_key"] = idempotency_key
        return options

    def _call(self, description: str, func, *args, idempotency_key: Optional[str] = None, **params) -> Dict[str, Any]:
        options = self._request_options(idempotency_key)
        try:
            result = func(*args, **params, **options)
        except stripe.StripeError as exc:
            retryable = isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError)) or (
                getattr(exc, "http_status", None) or 0
            ) >= 500
            logger.warning("Stripe call failed during %s: %s", description, exc)
            raise ProviderIntegrationError(
                f"Payment provider error during {description}: {getattr(exc, 'user_message', None) or exc}",
                code="provider_error",
                retryable=retryable,
                details={"provider_code": getattr(exc, "code", None) or ""},
            ) from exc
        return _to_dict(result)

    # Subscriptions

    def create_subscription(self, customer_ref: str, price_ref: str, payment_method_ref: str,
                            metadata: Optional[Dict[str, Any]] = None) -> ProviderSubscription:
        data = self._call(
            "subscription creation",
            stripe.Subscription.create,
            customer=customer_ref,
            items=[{"price": price_ref}],
            default_payment_method=payment_method_ref,
            expand=list(self.subscription_expand),
            metadata=_stringify_metadata(metadata or {}),
        )
        subscription = parse_subscription(data)
        return self._with_charge_details(subscription)

    def retrieve_subscription(self, subscription_ref: str) -> ProviderSubscription:
        data = self._call(
            "subscription retrieval",
            stripe.Subscription.retrieve,
            subscription_ref,
            expand=list(self.subscription_expand),
        )
        return parse_subscription(data)

    def update_subscription_items(self, subscription_ref: str, item_ref: str, price_ref: str,
                                  proration_behavior: str = "create_prorations", *,
                                  payment_method_ref: Optional[str] = None,
                                  metadata: Optional[Dict[str, Any]] = None,
                                  idempotency_key: Optional[str] = None) -> ProviderSubscription:
        if proration_behavior not in PRORATION_BEHAVIORS:
            raise ValueError(f"Unsupported proration behaviour: {proration_behavior}")
        params: Dict[str, Any] = {
            "items": [{"id": item_ref, "price": price_ref}],
            "proration_behavior": proration_behavior,
            "expand": list(self.subscription_expand),
        }
        if payment_method_ref:
            params["default_payment_method"] = payment_method_ref
        if metadata:
            params["metadata"] = _stringify_metadata(metadata)
        data = self._call(
            "subscription update",
            stripe.Subscription.modify,
            subscription_ref,
            idempotency_key=idempotency_key,
            **params,
        )
        subscription = parse_subscription(data)
        return self._with_charge_details(subscription)

    def cancel(self, subscription_ref: str, at_period_end: bool) -> ProviderSubscription:
        if at_period_end:
            data = self._call(
                "scheduling cancellation",
                stripe.Subscription.modify,
                subscription_ref,
                cancel_at_period_end=True,
            )
        else:
            data = self._call("subscription cancellation", stripe.Subscription.cancel, subscription_ref)
        return parse_subscription(data)

    def resume(self, subscription_ref: str) -> ProviderSubscription:
        data = self._call(
            "subscription reactivation",
            stripe.Subscription.modify,
            subscription_ref,
            cancel_at_period_end=False,
        )
        return parse_subscription(data)

    def _with_charge_details(self, subscription: ProviderSubscription) -> ProviderSubscription:
        payment = subscription.latest_payment
        if payment is None or payment.status != "succeeded" or payment.charge_id:
            return subscription
        try:
            charges = self._call(
                "charge lookup",
                stripe.Charge.list,
                payment_intent=payment.payment_intent_id,
                limit=1,
            )
        except ProviderIntegrationError as exc:
            logger.warning("Unable to load charge for payment intent %s: %s", payment.payment_intent_id, exc)
            return subscription
        charge = (charges.get("data") or [{}])[0] or {}
        last4, brand = _card_details(charge)
        enriched = ProviderPayment(
            payment_intent_id=payment.payment_intent_id,
            amount=payment.amount,
            currency=payment.currency,
            status=payment.status,
            charge_id=_ref_id(charge.get("id")),
            card_last4=last4 or payment.card_last4,
            card_brand=brand or payment.card_brand,
            paid_at=payment.paid_at,
            description=payment.description,
            subscription_id=payment.subscription_id or subscription.id,
        )
        return ProviderSubscription(
            id=subscription.id,
            customer_id=subscription.customer_id,
            status=subscription.status,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            cancel_at_period_end=subscription.cancel_at_period_end,
            canceled_at=subscription.canceled_at,
            item_id=subscription.item_id,
            price_id=subscription.price_id,
            latest_payment=enriched,
        )

    # Catalog

    def create_product(self, name: str, description: str = "", metadata: Optional[Dict[str, Any]] = None) -> str:
        params: Dict[str, Any] = {"name": name, "metadata": _stringify_metadata(metadata or {})}
        if description:
            params["description"] = description
        data = self._call("product creation", stripe.Product.create, **params)
        return str(data.get("id"))

    def update_product(self, product_ref: str, *, name: Optional[str] = None, description: Optional[str] = None,
                       metadata: Optional[Dict[str, Any]] = None) -> None:
        params: Dict[str, Any] = {}
        if name is not None:
            params["name"] = name
        if description is not None:
            params["description"] = description
        if metadata:
            params["metadata"] = _stringify_metadata(metadata)
        if params:
            self._call("product update", stripe.Product.modify, product_ref, **params)

    def set_product_active(self, product_ref: str, active: bool) -> None:
        self._call("product activation", stripe.Product.modify, product_ref, active=active)

    def create_price(self, product_ref: str, amount: Decimal, currency: str, interval: str,
                     interval_count: int = 1, metadata: Optional[Dict[str, Any]] = None) -> str:
        if interval not in _INTERVAL_FOR_STRIPE:
            raise ValueError(f"Unsupported billing interval: {interval}")
        currency = (currency or self.currency).lower()
        data = self._call(
            "price creation",
            stripe.Price.create,
            product=product_ref,
            unit_amount=to_minor_units(amount, currency),
            currency=currency,
            recurring={"interval": interval, "interval_count": interval_count},
            metadata=_stringify_metadata(metadata or {}),
        )
        return str(data.get("id"))

    def set_price_active(self, price_ref: str, active: bool) -> None:
        self._call("price activation", stripe.Price.modify, price_ref, active=active)

    def retrieve_price(self, price_ref: str) -> Dict[str, Any]:
        return self._call("price retrieval", stripe.Price.retrieve, price_ref)

    # Webhooks

    def verify_and_parse_event(self, signature: Optional[str], raw_body: bytes | str) -> ProviderEvent:
        if not signature:
            raise WebhookSignatureError("Stripe-Signature header is missing.", code="missing_signature")
        if not self.webhook_secret:
            raise ProviderIntegrationError(
                "STRIPE_WEBHOOK_SECRET is not configured.",
                code="provider_not_configured",
                retryable=True,
            )

        payload = raw_body
        if isinstance(raw_body, (bytes, bytearray)):
            try:
                payload = raw_body.decode("utf-8")
            except UnicodeDecodeError as exc:
                logger.error("Unable to decode Stripe webhook payload: %s", exc)
                raise ProviderIntegrationError("Stripe webhook payload is not valid UTF-8.", code="malformed_event") from exc
        try:
            stripe.WebhookSignature.verify_header(payload, signature, self.webhook_secret, self.webhook_tolerance)
        except stripe.SignatureVerificationError as exc:
            logger.warning("Stripe webhook signature verification failed: %s", exc)
            raise WebhookSignatureError("Stripe webhook signature verification failed.") from exc

        try:
            body = json.loads(payload)
        except ValueError as exc:
            logger.error("Received malformed Stripe webhook payload: %s", exc)
            raise ProviderIntegrationError("Malformed Stripe webhook payload.", code="malformed_event") from exc

        if not isinstance(body, dict) or not body.get("id") or not body.get("type"):
            raise ProviderIntegrationError("Stripe webhook payload is missing id or type.", code="malformed_event")

        return ProviderEvent(
            id=str(body["id"]),
            type=str(body["type"]),
            created=coerce_timestamp(body.get("created")),
            data_object=((body.get("data") or {}).get("object")) or {},
            livemode=bool(body.get("livemode")),
        )


def _stringify_metadata(values: Dict[str, Any]) -> Dict[str, str]:
    return {key: "" if value is None else str(value) for key, value in values.items()}


_gateway: Optional[StripeGateway] = None


def get_gateway() -> StripeGateway:
    """Return the process-wide gateway, building it from settings on first use."""
    global _gateway
    if _gateway is None:
        _gateway = StripeGateway.from_settings()
    return _gateway


def set_gateway(gateway: Optional[StripeGateway]) -> None:
    global _gateway
    _gateway = gateway


def reset_gateway() -> None:
    set_gateway(None)


__all__ = [
    "PRORATION_BEHAVIORS",
    "ProviderEvent",
    "ProviderPayment",
    "ProviderSubscription",
    "StripeGateway",
    "coerce_timestamp",
    "get_gateway",
    "invoice_subscription_id",
    "parse_invoice_payment",
    "parse_subscription",
    "reset_gateway",
    "set_gateway",
    "to_minor_units",
]
