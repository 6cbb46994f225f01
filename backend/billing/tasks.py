"""Celery tasks for provider event processing and billing maintenance."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from celery import shared_task
from django.conf import settings
from django.db import IntegrityError

from accounts.directory import AccountKind, AccountRef
from billing.exceptions import ProviderIntegrationError
from billing.services.subscription_lifecycle import sync_live_subscriptions
from billing.services.webhook_reconciler import event_from_payload, process_event, prune_event_logs

logger = logging.getLogger(__name__)


@shared_task(bind=True, queue="billing", autoretry_for=(IntegrityError,), retry_backoff=True, max_retries=5)
def process_provider_event_async(self, event_data: Dict[str, Any]) -> Dict[str, Any]:
    """Process a verified provider event queued by the webhook endpoint."""

    event = event_from_payload(event_data)
    try:
        result = process_event(event)
    except ProviderIntegrationError as exc:
        if exc.retryable:
            logger.warning("Transient provider error for event %s; retrying: %s", event.id, exc)
            raise self.retry(exc=exc)
        logger.error("Provider event %s failed permanently: %s", event.id, exc)
        return {"status": "failed", "detail": str(exc)}

    return {"status": result.status, "detail": result.detail}


@shared_task(queue="billing")
def sync_provider_subscriptions(
    account_kind: Optional[str] = None,
    account_id: Optional[str] = None,
    limit: Optional[int] = None,
) -> Dict[str, int]:
    """Re-read live subscriptions from the provider and apply them locally."""

    account = None
    if account_kind and account_id:
        account = AccountRef(AccountKind(account_kind), account_id)
    return sync_live_subscriptions(
        account,
        limit=limit or getattr(settings, "BILLING_SYNC_BATCH_SIZE", None),
    )


@shared_task(queue="maintenance")
def cleanup_webhook_event_logs(days: Optional[int] = None) -> int:
    """Remove handled webhook events older than ``days`` days."""

    if days is None:
        days = getattr(settings, "BILLING_WEBHOOK_LOG_RETENTION_DAYS", 7)
    return prune_event_logs(days)
