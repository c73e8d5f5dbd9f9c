from __future__ import annotations

from typing import Optional

from .models import SubscriptionStatus

_UNLIMITED = {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING}


def can_create_invoice(subscription_status: Optional[SubscriptionStatus], invoice_count: int, *, free_limit: int) -> bool:
    """Free (and lapsed) plans are capped at free_limit invoices; paid plans are unlimited."""
    if subscription_status in _UNLIMITED:
        return True
    return int(invoice_count) < int(free_limit)
