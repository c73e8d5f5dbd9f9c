from __future__ import annotations

from typing import Dict, Optional, Set

from ..settings import settings
from ..utils import local_midnight_after_days
from .errors import InvalidTransitionError
from .models import InvoiceRecord, InvoiceStatus, OfferRecord, OfferStatus


_INVOICE_TRANSITIONS: Dict[InvoiceStatus, Set[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: {InvoiceStatus.SENT, InvoiceStatus.VIEWED, InvoiceStatus.PAID, InvoiceStatus.VOID},
    InvoiceStatus.SENT: {InvoiceStatus.VIEWED, InvoiceStatus.PAID, InvoiceStatus.VOID},
    InvoiceStatus.VIEWED: {InvoiceStatus.PAID, InvoiceStatus.VOID},
    InvoiceStatus.PAID: set(),
    InvoiceStatus.VOID: set(),
}

_OFFER_TRANSITIONS: Dict[OfferStatus, Set[OfferStatus]] = {
    OfferStatus.DRAFT: {OfferStatus.SENT, OfferStatus.VIEWED},
    OfferStatus.SENT: {OfferStatus.VIEWED, OfferStatus.ACCEPTED, OfferStatus.DECLINED},
    OfferStatus.VIEWED: {OfferStatus.ACCEPTED, OfferStatus.DECLINED},
    OfferStatus.ACCEPTED: set(),
    OfferStatus.DECLINED: set(),
}

INVOICE_TERMINAL = {InvoiceStatus.PAID, InvoiceStatus.VOID}
OFFER_TERMINAL = {OfferStatus.ACCEPTED, OfferStatus.DECLINED}

# Content (line items, discount, VAT, fee) may change only in these states.
INVOICE_EDITABLE = {InvoiceStatus.DRAFT, InvoiceStatus.SENT, InvoiceStatus.VIEWED}
OFFER_EDITABLE = {OfferStatus.DRAFT, OfferStatus.SENT, OfferStatus.VIEWED}

# Stored states the schedulers act on ("overdue" is sent/viewed past due).
INVOICE_OPEN = {InvoiceStatus.SENT, InvoiceStatus.VIEWED}


def can_transition_invoice(current: InvoiceStatus, new: InvoiceStatus) -> bool:
    return new in _INVOICE_TRANSITIONS.get(current, set())


def can_transition_offer(current: OfferStatus, new: OfferStatus) -> bool:
    return new in _OFFER_TRANSITIONS.get(current, set())


def assert_invoice_transition(current: InvoiceStatus, new: InvoiceStatus) -> None:
    if current == new:
        raise InvalidTransitionError(current.value, new.value, already_in_state=True)
    if not can_transition_invoice(current, new):
        raise InvalidTransitionError(current.value, new.value)


def assert_offer_transition(current: OfferStatus, new: OfferStatus) -> None:
    if current == new:
        raise InvalidTransitionError(current.value, new.value, already_in_state=True)
    if not can_transition_offer(current, new):
        raise InvalidTransitionError(current.value, new.value)


def due_day_passed(due_date: Optional[float], now: float, tz_name: Optional[str] = None) -> bool:
    """True once the whole local calendar day of due_date is over."""
    if due_date is None:
        return False
    return now >= local_midnight_after_days(float(due_date), 1, tz_name or settings.BUSINESS_TIMEZONE)


def invoice_display_status(inv: InvoiceRecord, now: float, tz_name: Optional[str] = None) -> InvoiceStatus:
    if inv.status in INVOICE_OPEN and due_day_passed(inv.due_date, now, tz_name):
        return InvoiceStatus.OVERDUE
    return inv.status


def offer_display_status(offer: OfferRecord, now: float, tz_name: Optional[str] = None) -> OfferStatus:
    if offer.status in {OfferStatus.SENT, OfferStatus.VIEWED} and due_day_passed(offer.due_date, now, tz_name):
        return OfferStatus.EXPIRED
    return offer.status


def with_display_status(record, now: float):
    """Return a copy of an invoice/offer record with display_status filled in."""
    if isinstance(record, InvoiceRecord):
        status: Optional[str] = invoice_display_status(record, now).value
    else:
        status = offer_display_status(record, now).value
    return record.model_copy(update={"display_status": status})
