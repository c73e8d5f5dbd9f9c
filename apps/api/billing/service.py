from __future__ import annotations

import time
from typing import Dict, List, Optional

from .models import (
    BillingSummaryResponse,
    InvoiceRecord,
    InvoiceStatus,
    OfferRecord,
    OfferStatus,
    OwnerProfile,
    PublicDocumentView,
    PublicLineItem,
)
from .money import PricingConfig, compute_amount, line_total
from .state import INVOICE_OPEN, invoice_display_status, offer_display_status


def _now() -> float:
    return float(time.time())


def _add(bucket: Dict[str, int], currency: str, amount: int) -> None:
    bucket[currency] = bucket.get(currency, 0) + int(amount)


def compute_summary(
    *,
    invoices: List[InvoiceRecord],
    offers: List[OfferRecord] | None = None,
    now: float | None = None,
) -> BillingSummaryResponse:
    now = float(_now() if now is None else now)
    outstanding: Dict[str, int] = {}
    overdue: Dict[str, int] = {}
    paid_30d: Dict[str, int] = {}

    open_invoice_count = 0
    overdue_invoice_count = 0

    for inv in invoices:
        amount = int(inv.amount_minor_units or 0)

        if inv.status == InvoiceStatus.PAID:
            if inv.paid_at and float(inv.paid_at) >= now - 30.0 * 86400.0:
                _add(paid_30d, inv.currency, amount)
            continue
        if inv.status not in INVOICE_OPEN:
            # Drafts are not billed yet; void is cancelled.
            continue

        open_invoice_count += 1
        _add(outstanding, inv.currency, amount)

        if invoice_display_status(inv, now) == InvoiceStatus.OVERDUE:
            overdue_invoice_count += 1
            _add(overdue, inv.currency, amount)

    open_offer_count = sum(
        1 for o in (offers or []) if offer_display_status(o, now) in {OfferStatus.SENT, OfferStatus.VIEWED}
    )

    return BillingSummaryResponse(
        outstanding_minor_units=outstanding,
        overdue_minor_units=overdue,
        paid_minor_units_30d=paid_30d,
        open_invoice_count=int(open_invoice_count),
        overdue_invoice_count=int(overdue_invoice_count),
        open_offer_count=int(open_offer_count),
    )


def build_public_view(
    record: InvoiceRecord | OfferRecord,
    *,
    profile: OwnerProfile,
    share_url: str,
    config: PricingConfig | None = None,
    invoice_public_id: Optional[str] = None,
    now: float | None = None,
) -> PublicDocumentView:
    """Client-facing projection. The charged amount is the stored one; the breakdown is for display."""
    now = float(_now() if now is None else now)
    if isinstance(record, InvoiceRecord):
        kind = "invoice"
        status = invoice_display_status(record, now).value
    else:
        kind = "offer"
        status = offer_display_status(record, now).value

    items = sorted(record.line_items, key=lambda li: li.sort_order)
    breakdown = compute_amount(
        items,
        currency=record.currency,
        discount_type=record.discount_type,
        discount_value=record.discount_value,
        vat_included=record.vat_included,
        fee_included=record.payment_processing_fee_included,
        config=config,
        enforce_minimum=False,
    )

    return PublicDocumentView(
        kind=kind,
        number=record.number,
        public_id=record.public_id,
        status=status,
        share_url=share_url,
        business_name=profile.business_name,
        client_name=record.client_name,
        currency=record.currency,
        amount_minor_units=int(record.amount_minor_units),
        line_items=[
            PublicLineItem(
                description=li.description,
                amount_minor_units=li.amount_minor_units,
                discount_percent=li.discount_percent,
                line_total_minor_units=line_total(li.amount_minor_units, li.discount_percent),
            )
            for li in items
        ],
        subtotal_minor_units=breakdown.subtotal,
        discount_minor_units=breakdown.discount,
        vat_minor_units=breakdown.vat,
        vat_included=record.vat_included,
        payment_processing_fee_minor_units=record.payment_processing_fee_minor_units,
        due_date=record.due_date,
        sent_at=record.sent_at,
        notes=record.notes,
        invoice_public_id=invoice_public_id,
    )
