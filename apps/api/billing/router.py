from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from ..auth import get_current_user, require_cron
from ..settings import settings

from . import offers, repo, reminders, recurring, settlement
from .emailer import EmailSender, document_params, get_email_sender
from .errors import (
    BillingError,
    DeliveryError,
    DerivationFailure,
    InvalidTransitionError,
    NotFoundError,
)
from .models import (
    ActivityListResponse,
    BillingSummaryResponse,
    DocumentUpdateRequest,
    InvoiceActionResponse,
    InvoiceCreateRequest,
    InvoiceListResponse,
    InvoiceRecord,
    OfferAcceptResponse,
    OfferActionResponse,
    OfferCreateRequest,
    OfferDeclineRequest,
    OfferListResponse,
    OfferRecord,
    PublicDocumentView,
    RecurringRunResponse,
    RecurringSettingsRequest,
    ReminderActionResponse,
    ReminderRunResponse,
    ReminderSettingsRequest,
)
from .service import build_public_view, compute_summary

logger = logging.getLogger(__name__)

router = APIRouter(prefix="", tags=["Billing"])


def _http_error(e: BillingError) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, InvalidTransitionError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, DerivationFailure):
        return HTTPException(status_code=500, detail=str(e))
    if isinstance(e, DeliveryError):
        return HTTPException(status_code=502, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


def _uid(user: Dict[str, Any]) -> str:
    return str(user.get("uid") or "")


def _deliver(record, *, kind: str, template: str, sender: EmailSender) -> Optional[str]:
    """Email a document to its client. Returns the delivery error, if any."""
    if not record.client_email:
        return "No client email on file"
    profile = repo.get_profile(record.owner_uid)
    params = document_params(record, business_name=profile.business_name, public_url=repo.share_url(kind, record.public_id))
    result = sender.send(record.client_email, template, params)
    if not result.ok:
        logger.warning("%s email failed %s=%s: %s", kind, kind, record.number, result.error)
    return None if result.ok else result.error


def _sent_message(label: str, error: Optional[str]) -> str:
    return f"{label} sent" if not error else f"{label} marked sent; email failed: {error}"


# ---------------------------------------------------------------------------
# Invoices (owner)
# ---------------------------------------------------------------------------


@router.post("/invoices", response_model=InvoiceRecord)
async def invoices_create(
    req: InvoiceCreateRequest,
    user: Dict[str, Any] = Depends(get_current_user),
    sender: EmailSender = Depends(get_email_sender),
):
    try:
        inv = repo.create_invoice(request=req, owner_uid=_uid(user))
    except BillingError as e:
        raise _http_error(e)
    if req.mark_sent:
        _deliver(inv, kind="invoice", template="invoice", sender=sender)
    return inv


@router.get("/invoices", response_model=InvoiceListResponse)
async def invoices_list(limit: int = 200, user: Dict[str, Any] = Depends(get_current_user)):
    items = repo.list_invoices(owner_uid=_uid(user), limit=limit)
    return InvoiceListResponse(invoices=items, total=len(items))


@router.get("/invoices/{invoice_id}", response_model=InvoiceRecord)
async def invoices_get(invoice_id: str, user: Dict[str, Any] = Depends(get_current_user)):
    try:
        return repo.get_invoice(invoice_id=invoice_id, owner_uid=_uid(user))
    except BillingError as e:
        raise _http_error(e)


@router.patch("/invoices/{invoice_id}", response_model=InvoiceRecord)
async def invoices_update(invoice_id: str, req: DocumentUpdateRequest, user: Dict[str, Any] = Depends(get_current_user)):
    try:
        return repo.update_invoice(invoice_id=invoice_id, owner_uid=_uid(user), request=req)
    except BillingError as e:
        raise _http_error(e)


@router.post("/invoices/{invoice_id}/send", response_model=InvoiceActionResponse)
async def invoices_send(
    invoice_id: str,
    user: Dict[str, Any] = Depends(get_current_user),
    sender: EmailSender = Depends(get_email_sender),
):
    try:
        inv = repo.mark_invoice_sent(invoice_id=invoice_id, owner_uid=_uid(user))
    except BillingError as e:
        raise _http_error(e)
    error = _deliver(inv, kind="invoice", template="invoice", sender=sender)
    return InvoiceActionResponse(invoice_id=inv.invoice_id, status=inv.status, message=_sent_message("Invoice", error))


@router.post("/invoices/{invoice_id}/void", response_model=InvoiceActionResponse)
async def invoices_void(invoice_id: str, user: Dict[str, Any] = Depends(get_current_user)):
    try:
        inv = repo.void_invoice(invoice_id=invoice_id, owner_uid=_uid(user))
        return InvoiceActionResponse(invoice_id=inv.invoice_id, status=inv.status, message="Invoice voided")
    except BillingError as e:
        raise _http_error(e)


@router.post("/invoices/{invoice_id}/mark-paid", response_model=InvoiceActionResponse)
async def invoices_mark_paid(invoice_id: str, user: Dict[str, Any] = Depends(get_current_user)):
    try:
        inv = repo.mark_invoice_paid(invoice_id=invoice_id, owner_uid=_uid(user))
        return InvoiceActionResponse(invoice_id=inv.invoice_id, status=inv.status, message="Invoice marked paid")
    except BillingError as e:
        raise _http_error(e)


@router.post("/invoices/{invoice_id}/remind", response_model=ReminderActionResponse)
async def invoices_remind(
    invoice_id: str,
    user: Dict[str, Any] = Depends(get_current_user),
    sender: EmailSender = Depends(get_email_sender),
):
    try:
        return reminders.send_manual_reminder(invoice_id=invoice_id, owner_uid=_uid(user), sender=sender)
    except BillingError as e:
        raise _http_error(e)


@router.post("/invoices/{invoice_id}/recurring", response_model=InvoiceRecord)
async def invoices_recurring(invoice_id: str, req: RecurringSettingsRequest, user: Dict[str, Any] = Depends(get_current_user)):
    try:
        return repo.configure_recurring(invoice_id=invoice_id, owner_uid=_uid(user), request=req)
    except BillingError as e:
        raise _http_error(e)


@router.post("/invoices/{invoice_id}/reminders", response_model=InvoiceRecord)
async def invoices_reminders(invoice_id: str, req: ReminderSettingsRequest, user: Dict[str, Any] = Depends(get_current_user)):
    try:
        return repo.configure_reminders(invoice_id=invoice_id, owner_uid=_uid(user), request=req)
    except BillingError as e:
        raise _http_error(e)


# ---------------------------------------------------------------------------
# Offers (owner)
# ---------------------------------------------------------------------------


@router.post("/offers", response_model=OfferRecord)
async def offers_create(
    req: OfferCreateRequest,
    user: Dict[str, Any] = Depends(get_current_user),
    sender: EmailSender = Depends(get_email_sender),
):
    try:
        offer = offers.create_offer(request=req, owner_uid=_uid(user))
    except BillingError as e:
        raise _http_error(e)
    if req.mark_sent:
        _deliver(offer, kind="offer", template="offer", sender=sender)
    return offer


@router.get("/offers", response_model=OfferListResponse)
async def offers_list(limit: int = 200, user: Dict[str, Any] = Depends(get_current_user)):
    items = offers.list_offers(owner_uid=_uid(user), limit=limit)
    return OfferListResponse(offers=items, total=len(items))


@router.get("/offers/{offer_id}", response_model=OfferRecord)
async def offers_get(offer_id: str, user: Dict[str, Any] = Depends(get_current_user)):
    try:
        return offers.get_offer(offer_id=offer_id, owner_uid=_uid(user))
    except BillingError as e:
        raise _http_error(e)


@router.patch("/offers/{offer_id}", response_model=OfferRecord)
async def offers_update(offer_id: str, req: DocumentUpdateRequest, user: Dict[str, Any] = Depends(get_current_user)):
    try:
        return offers.update_offer(offer_id=offer_id, owner_uid=_uid(user), request=req)
    except BillingError as e:
        raise _http_error(e)


@router.post("/offers/{offer_id}/send", response_model=OfferActionResponse)
async def offers_send(
    offer_id: str,
    user: Dict[str, Any] = Depends(get_current_user),
    sender: EmailSender = Depends(get_email_sender),
):
    try:
        offer = offers.mark_offer_sent(offer_id=offer_id, owner_uid=_uid(user))
    except BillingError as e:
        raise _http_error(e)
    error = _deliver(offer, kind="offer", template="offer", sender=sender)
    return OfferActionResponse(offer_id=offer.offer_id, status=offer.status, message=_sent_message("Offer", error))


# ---------------------------------------------------------------------------
# Public share links (no auth; the public id is the capability)
# ---------------------------------------------------------------------------


@router.get("/public/invoices/{public_id}", response_model=PublicDocumentView)
async def public_invoice(public_id: str):
    try:
        inv = repo.record_invoice_view(public_id=public_id)
    except BillingError as e:
        raise _http_error(e)
    return build_public_view(
        inv,
        profile=repo.get_profile(inv.owner_uid),
        share_url=repo.share_url("invoice", inv.public_id),
        config=repo.pricing_config(),
    )


@router.get("/public/offers/{public_id}", response_model=PublicDocumentView)
async def public_offer(public_id: str):
    try:
        offer = offers.record_offer_view(public_id=public_id)
        invoice_public_id = None
        if offer.invoice_id:
            invoice_public_id = repo.get_invoice(invoice_id=offer.invoice_id).public_id
    except BillingError as e:
        raise _http_error(e)
    return build_public_view(
        offer,
        profile=repo.get_profile(offer.owner_uid),
        share_url=repo.share_url("offer", offer.public_id),
        config=repo.pricing_config(),
        invoice_public_id=invoice_public_id,
    )


@router.post("/public/offers/{public_id}/accept", response_model=OfferAcceptResponse)
async def public_offer_accept(public_id: str):
    try:
        return offers.accept_offer(public_id=public_id)
    except BillingError as e:
        raise _http_error(e)


@router.post("/public/offers/{public_id}/decline", response_model=OfferActionResponse)
async def public_offer_decline(public_id: str, req: Optional[OfferDeclineRequest] = None):
    reason = req.reason if req else None
    try:
        offer = offers.decline_offer(public_id=public_id, reason=reason)
        return OfferActionResponse(offer_id=offer.offer_id, status=offer.status, message="Offer declined")
    except BillingError as e:
        raise _http_error(e)


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


@router.get("/activity", response_model=ActivityListResponse)
async def activity_list(
    limit: int = 50,
    entity_id: Optional[str] = None,
    user: Dict[str, Any] = Depends(get_current_user),
):
    entries = repo.list_activity(owner_uid=_uid(user), limit=limit, entity_id=entity_id)
    return ActivityListResponse(entries=entries, total=len(entries))


@router.get("/billing/summary", response_model=BillingSummaryResponse)
async def billing_summary(user: Dict[str, Any] = Depends(get_current_user)):
    uid = _uid(user)
    return compute_summary(
        invoices=repo.list_invoices(owner_uid=uid, limit=500),
        offers=offers.list_offers(owner_uid=uid, limit=500),
    )


# ---------------------------------------------------------------------------
# Scheduler triggers and processor webhooks
# ---------------------------------------------------------------------------


@router.get("/cron/recurring", response_model=RecurringRunResponse)
async def cron_recurring(_: None = Depends(require_cron), sender: EmailSender = Depends(get_email_sender)):
    return recurring.run_recurring_invoices(sender=sender)


@router.get("/cron/reminders", response_model=ReminderRunResponse)
async def cron_reminders(_: None = Depends(require_cron), sender: EmailSender = Depends(get_email_sender)):
    return reminders.run_auto_reminders(sender=sender)


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
):
    payload = await request.body()
    try:
        settlement.verify_signature(
            payload,
            stripe_signature,
            secret=settings.STRIPE_WEBHOOK_SECRET,
            tolerance=settings.WEBHOOK_TOLERANCE_SECONDS,
        )
    except BillingError as e:
        logger.warning("Stripe webhook rejected: %s", e)
        raise HTTPException(status_code=400, detail=str(e))

    try:
        event = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise HTTPException(status_code=400, detail="Invalid payload")
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")

    try:
        record = settlement.apply_settlement_event(event, provider="stripe")
    except BillingError as e:
        raise _http_error(e)
    return {"received": True, "duplicate": record.duplicate}
