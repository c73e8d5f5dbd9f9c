from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Dict, List, Optional

from . import audit, repo
from .errors import BillingError, DerivationFailure, InvalidTransitionError, NotFoundError
from .models import (
    DocumentUpdateRequest,
    InvoiceRecord,
    InvoiceStatus,
    OfferAcceptResponse,
    OfferCreateRequest,
    OfferRecord,
    OfferStatus,
)
from .money import PricingConfig
from .state import OFFER_EDITABLE, assert_offer_transition, with_display_status

logger = logging.getLogger(__name__)


def _now() -> float:
    return float(time.time())


def offer_from_dict(offer_id: str, d: Dict[str, Any]) -> OfferRecord:
    d = dict(d)
    d.setdefault("offer_id", offer_id)
    d.pop("display_status", None)
    return OfferRecord(**d)


def get_offer(*, offer_id: str, owner_uid: Optional[str] = None, now: float | None = None) -> OfferRecord:
    snap = repo.offer_ref(offer_id).get()
    if not snap.exists:
        raise NotFoundError("Offer not found")
    d = snap.to_dict() or {}
    if owner_uid is not None and d.get("owner_uid") != owner_uid:
        raise NotFoundError("Offer not found")
    return with_display_status(offer_from_dict(snap.id, d), _now() if now is None else float(now))


def list_offers(*, owner_uid: str, limit: int = 200, now: float | None = None) -> List[OfferRecord]:
    now = _now() if now is None else float(now)
    snaps = repo.db.collection(repo.OFFERS).where("owner_uid", "==", owner_uid).stream()
    out = [with_display_status(offer_from_dict(s.id, s.to_dict() or {}), now) for s in snaps]
    out.sort(key=lambda r: float(r.created_at or 0), reverse=True)
    return out[: int(limit)]


def create_offer(
    *,
    request: OfferCreateRequest,
    owner_uid: str,
    now: float | None = None,
    config: PricingConfig | None = None,
) -> OfferRecord:
    now = _now() if now is None else float(now)
    config = config or repo.pricing_config()

    profile = repo.get_profile(owner_uid)
    content = repo.prepare_content(
        owner_uid=owner_uid, request=request, default_currency=profile.default_currency, config=config
    )

    offer_id = str(uuid.uuid4())
    counter = repo.counter_ref(owner_uid, "offer")
    status = OfferStatus.SENT if request.mark_sent else OfferStatus.DRAFT

    def txn_create(txn) -> OfferRecord:
        seq = repo.read_sequence(txn, counter)
        record = OfferRecord(
            offer_id=offer_id,
            owner_uid=owner_uid,
            number=repo.format_number("offer", seq + 1),
            public_id=repo.new_public_id(),
            status=status,
            created_at=now,
            updated_at=now,
            sent_at=(now if status == OfferStatus.SENT else None),
            **content,
        )
        repo.write_sequence(txn, counter, seq + 1, now)
        txn.set(repo.offer_ref(offer_id), repo.to_doc(record))
        repo.record_activity(
            txn,
            owner_uid=owner_uid,
            entity_type="offer",
            entity_id=offer_id,
            action=audit.CREATED,
            now=now,
            meta={"number": record.number, "status": status.value, "amount_minor_units": record.amount_minor_units},
        )
        return record

    record = repo.run_transaction(txn_create)
    logger.info("Offer created owner=%s offer=%s number=%s", owner_uid, offer_id, record.number)
    return record


def update_offer(
    *,
    offer_id: str,
    owner_uid: str,
    request: DocumentUpdateRequest,
    now: float | None = None,
    config: PricingConfig | None = None,
) -> OfferRecord:
    now = _now() if now is None else float(now)
    config = config or repo.pricing_config()
    ref = repo.offer_ref(offer_id)

    def txn_update(txn) -> OfferRecord:
        current = repo.read_owned(txn, ref, owner_uid, "Offer")
        status = OfferStatus(str(current.get("status") or OfferStatus.DRAFT.value))
        if status not in OFFER_EDITABLE:
            raise InvalidTransitionError(status.value, "edit", message=f"Offer is {status.value} and can no longer be edited")

        content = repo.prepare_content(
            owner_uid=owner_uid,
            request=repo.merge_update(current, request),
            default_currency=str(current.get("currency") or "USD"),
            config=config,
        )
        patch = repo.content_patch(content)
        patch["updated_at"] = now
        txn.set(ref, patch, merge=True)

        before = int(current.get("amount_minor_units") or 0)
        if before != patch["amount_minor_units"]:
            repo.record_activity(
                txn,
                owner_uid=owner_uid,
                entity_type="offer",
                entity_id=offer_id,
                action=audit.UPDATED,
                now=now,
                meta={"from": before, "to": patch["amount_minor_units"]},
            )
        updated = dict(current)
        updated.update(patch)
        return offer_from_dict(offer_id, updated)

    return repo.run_transaction(txn_update)


def _transition_offer(
    *,
    offer_id: str,
    owner_uid: Optional[str],
    new_status: OfferStatus,
    now: float,
    extra: Dict[str, Any] | None = None,
    action: str = audit.STATUS_CHANGE,
    meta: Dict[str, Any] | None = None,
) -> OfferRecord:
    ref = repo.offer_ref(offer_id)

    def txn_update(txn) -> OfferRecord:
        current = repo.read_owned(txn, ref, owner_uid, "Offer")
        cur_status = OfferStatus(str(current.get("status") or OfferStatus.DRAFT.value))
        assert_offer_transition(cur_status, new_status)

        patch: Dict[str, Any] = {"status": new_status.value, "updated_at": now}
        if extra:
            patch.update(extra)
        txn.set(ref, patch, merge=True)
        repo.record_activity(
            txn,
            owner_uid=str(current.get("owner_uid")),
            entity_type="offer",
            entity_id=offer_id,
            action=action,
            now=now,
            meta={"from": cur_status.value, "to": new_status.value, **(meta or {})},
        )
        updated = dict(current)
        updated.update(patch)
        return offer_from_dict(offer_id, updated)

    record = repo.run_transaction(txn_update)
    logger.info("Offer %s -> %s offer=%s", action, new_status.value, offer_id)
    return record


def mark_offer_sent(*, offer_id: str, owner_uid: str, now: float | None = None) -> OfferRecord:
    now = _now() if now is None else float(now)
    return _transition_offer(
        offer_id=offer_id, owner_uid=owner_uid, new_status=OfferStatus.SENT, now=now, extra={"sent_at": now}
    )


def _offer_id_for_public(public_id: str) -> str:
    offer_id = repo.find_offer_id_by_public_id(public_id)
    if not offer_id:
        raise NotFoundError("Offer not found")
    return offer_id


def record_offer_view(*, public_id: str, now: float | None = None) -> OfferRecord:
    """First client-facing read moves draft/sent to viewed. Later reads change nothing."""
    now = _now() if now is None else float(now)
    offer_id = _offer_id_for_public(public_id)
    ref = repo.offer_ref(offer_id)

    def txn_view(txn) -> OfferRecord:
        current = repo.read_owned(txn, ref, None, "Offer")
        status = OfferStatus(str(current.get("status") or OfferStatus.DRAFT.value))
        if status not in {OfferStatus.DRAFT, OfferStatus.SENT} or current.get("viewed_at"):
            return offer_from_dict(offer_id, current)

        patch = {"status": OfferStatus.VIEWED.value, "viewed_at": now, "updated_at": now}
        txn.set(ref, patch, merge=True)
        repo.record_activity(
            txn,
            owner_uid=str(current.get("owner_uid")),
            entity_type="offer",
            entity_id=offer_id,
            action=audit.VIEWED,
            now=now,
            meta={"from": status.value},
        )
        updated = dict(current)
        updated.update(patch)
        return offer_from_dict(offer_id, updated)

    return with_display_status(repo.run_transaction(txn_view), now)


def decline_offer(*, public_id: str, reason: Optional[str] = None, now: float | None = None) -> OfferRecord:
    now = _now() if now is None else float(now)
    offer_id = _offer_id_for_public(public_id)
    return _transition_offer(
        offer_id=offer_id,
        owner_uid=None,
        new_status=OfferStatus.DECLINED,
        now=now,
        extra={"declined_at": now, "decline_reason": reason},
        action=audit.DECLINED,
        meta={"reason": reason},
    )


def accept_offer(*, public_id: str, now: float | None = None) -> OfferAcceptResponse:
    """Accept an offer and derive its invoice in one transaction.

    The invoice copies the offer's client, currency, discount, VAT/fee flags,
    line items and stored amount verbatim (no recomputation) and starts in
    "sent". Either the offer is accepted *and* the invoice exists, or nothing
    was written.
    """
    now = _now() if now is None else float(now)
    offer_id = _offer_id_for_public(public_id)
    ref = repo.offer_ref(offer_id)
    invoice_id = str(uuid.uuid4())

    def txn_accept(txn) -> InvoiceRecord:
        current = repo.read_owned(txn, ref, None, "Offer")
        offer = offer_from_dict(offer_id, current)
        assert_offer_transition(offer.status, OfferStatus.ACCEPTED)

        counter = repo.counter_ref(offer.owner_uid, "invoice")
        seq = repo.read_sequence(txn, counter)

        invoice = InvoiceRecord(
            invoice_id=invoice_id,
            owner_uid=offer.owner_uid,
            number=repo.format_number("invoice", seq + 1),
            public_id=repo.new_public_id(),
            status=InvoiceStatus.SENT,
            currency=offer.currency,
            amount_minor_units=offer.amount_minor_units,
            client_id=offer.client_id,
            client_name=offer.client_name,
            client_email=offer.client_email,
            discount_type=offer.discount_type,
            discount_value=offer.discount_value,
            vat_included=offer.vat_included,
            payment_processing_fee_included=offer.payment_processing_fee_included,
            payment_processing_fee_minor_units=offer.payment_processing_fee_minor_units,
            due_date=offer.due_date,
            notes=offer.notes,
            line_items=[li.model_copy() for li in offer.line_items],
            created_at=now,
            updated_at=now,
            sent_at=now,
            offer_id=offer_id,
        )

        repo.write_sequence(txn, counter, seq + 1, now)
        txn.set(repo.invoice_ref(invoice_id), repo.to_doc(invoice))
        txn.set(
            ref,
            {"status": OfferStatus.ACCEPTED.value, "accepted_at": now, "invoice_id": invoice_id, "updated_at": now},
            merge=True,
        )
        repo.record_activity(
            txn,
            owner_uid=offer.owner_uid,
            entity_type="offer",
            entity_id=offer_id,
            action=audit.ACCEPTED,
            now=now,
            meta={"offer_id": offer_id, "invoice_id": invoice_id, "from": offer.status.value},
        )
        return invoice

    try:
        invoice = repo.run_transaction(txn_accept)
    except BillingError:
        raise
    except Exception as e:
        logger.exception("Offer acceptance failed offer=%s", offer_id)
        raise DerivationFailure(f"Could not create invoice from offer: {e}") from e

    logger.info("Offer accepted offer=%s invoice=%s number=%s", offer_id, invoice.invoice_id, invoice.number)
    return OfferAcceptResponse(
        offer_id=offer_id,
        invoice_id=invoice.invoice_id,
        invoice_public_id=invoice.public_id,
        invoice_url=repo.share_url("invoice", invoice.public_id),
    )
