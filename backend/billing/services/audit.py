"""Audit trail helper shared by the catalog and subscription services."""
from __future__ import annotations

from typing import Any, Dict, Optional

from accounts.directory import AccountRef
from billing.models import BillingAuditLog


def record_audit_event(
    *,
    event_type: str,
    account: Optional[AccountRef] = None,
    stripe_id: str = "",
    actor: str = "",
    request_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> BillingAuditLog:
    return BillingAuditLog.objects.create(
        account_kind=account.kind if account else "",
        account_id=account.id if account else None,
        event_type=event_type,
        stripe_id=stripe_id or "",
        actor=actor or "system",
        request_id=request_id or "",
        details=details or {},
    )
