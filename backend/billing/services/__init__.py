"""Expose commonly used billing services."""

from .gateway import ProviderEvent, ProviderPayment, ProviderSubscription, StripeGateway, get_gateway
from .subscription_lifecycle import (
    PlanChangeResult,
    ProrationPreview,
    PurchaseResult,
    SubscriptionStatus,
)
from .subscription_state import ApplyResult
from .webhook_reconciler import HandlerResult
