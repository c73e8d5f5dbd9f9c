from __future__ import annotations

import hashlib
import hmac
import logging
import time
from typing import Any, Dict, Optional

from . import audit, repo
from .errors import ValidationError
from .models import InvoiceStatus, PaymentRecord, SettlementEventRecord
from .state import can_transition_invoice

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"


def _now() -> float:
    return float(time.time())


def _signature(secret: str, timestamp: str, payload: bytes) -> str:
    signed = timestamp.encode("utf-8") + b"." + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def sign_payload(payload: bytes, *, secret: str, timestamp: int) -> str:
    """Build a signature header value for payload (used by tests and local tooling)."""
    return f"t={int(timestamp)},v1={_signature(secret, str(int(timestamp)), payload)}"


def verify_signature(payload: bytes, header: Optional[str], *, secret: str, tolerance: int, now: float | None = None) -> None:
    """Check a `t=<ts>,v1=<hex>` signature header. Raises ValidationError when it does not match."""
    if not secret:
        raise ValidationError("Webhook secret is not configured")
    if not header:
        raise ValidationError("Missing signature")

    timestamp = None
    candidates = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            timestamp = value
        elif key == "v1":
            candidates.append(value)
    if not timestamp or not candidates:
        raise ValidationError("Malformed signature header")

    try:
        ts = int(timestamp)
    except ValueError:
        raise ValidationError("Malformed signature timestamp")
    now = _now() if now is None else float(now)
    if tolerance and abs(now - ts) > tolerance:
        raise ValidationError("Signature timestamp outside tolerance")

    expected = _signature(secret, timestamp, payload)
    if not any(hmac.compare_digest(expected, c) for c in candidates):
        raise ValidationError("Invalid signature")


def _resolve_invoice_id(session: Dict[str, Any]) -> Optional[str]:
    metadata = session.get("metadata") or {}
    invoice_id = metadata.get("invoice_id") or session.get("client_reference_id")
    if invoice_id:
        return str(invoice_id)
    return repo.find_invoice_id_by_checkout_session(str(session.get("id") or ""))


def apply_settlement_event(event: Dict[str, Any], *, provider: str = "stripe", now: float | None = None) -> SettlementEventRecord:
    """Apply a processor event. Each event id takes effect at most once; repeats report duplicate=True."""
    now = _now() if now is None else float(now)
    event_id = str(event.get("id") or "").strip()
    if not event_id:
        raise ValidationError("Event id is required")
    event_type = str(event.get("type") or "").strip() or "unknown"

    session: Dict[str, Any] = {}
    invoice_id: Optional[str] = None
    if event_type == CHECKOUT_COMPLETED:
        session = ((event.get("data") or {}).get("object")) or {}
        invoice_id = _resolve_invoice_id(session)
    session_id = session.get("id")

    event_ref = repo.settlement_event_ref(provider, event_id)

    def txn_process(txn) -> SettlementEventRecord:
        snap = event_ref.get(transaction=txn)
        if snap.exists:
            existing = snap.to_dict() or {}
            if existing.get("processed_at"):
                return SettlementEventRecord(**{**existing, "duplicate": True})

        current: Optional[Dict[str, Any]] = None
        if invoice_id:
            inv_snap = repo.invoice_ref(invoice_id).get(transaction=txn)
            current = (inv_snap.to_dict() or {}) if inv_snap.exists else None

        record = SettlementEventRecord(
            provider=provider,
            event_id=event_id,
            event_type=event_type,
            received_at=now,
            processed_at=now,
            invoice_id=invoice_id,
            checkout_session_id=session_id,
            payload=event,
        )

        if event_type == CHECKOUT_COMPLETED:
            if current is None:
                record.processing_error = "Invoice not found for checkout session"
            else:
                status = InvoiceStatus(str(current.get("status") or InvoiceStatus.DRAFT.value))
                if status == InvoiceStatus.PAID:
                    record.processing_error = "Invoice already paid"
                elif not can_transition_invoice(status, InvoiceStatus.PAID):
                    record.processing_error = f"Invoice is {status.value}"
                else:
                    _mark_paid(txn, invoice_id, current, session=session, event_key=f"{provider}:{event_id}", now=now)

        txn.set(event_ref, record.model_dump(mode="json"))
        return record

    record = repo.run_transaction(txn_process)
    if record.duplicate:
        logger.info("Duplicate settlement event ignored provider=%s event=%s", provider, event_id)
    elif record.processing_error:
        logger.warning("Settlement event not applied event=%s invoice=%s: %s", event_id, invoice_id, record.processing_error)
    else:
        logger.info("Settlement event processed event=%s type=%s invoice=%s", event_id, event_type, invoice_id)
    return record


def _mark_paid(txn, invoice_id: str, current: Dict[str, Any], *, session: Dict[str, Any], event_key: str, now: float) -> None:
    amount = session.get("amount_total")
    payment = PaymentRecord(
        payment_id=event_key,
        invoice_id=invoice_id,
        amount_minor_units=int(amount if amount is not None else current.get("amount_minor_units") or 0),
        currency=str(session.get("currency") or current.get("currency") or "USD").upper(),
        settlement_event_id=event_key,
        paid_at=now,
    )
    patch = {
        "status": InvoiceStatus.PAID.value,
        "paid_at": now,
        "updated_at": now,
        "settlement_event_id": event_key,
    }
    if session.get("id"):
        patch["checkout_session_id"] = session["id"]

    txn.set(repo.invoice_ref(invoice_id), patch, merge=True)
    txn.set(repo.payment_ref(payment.payment_id), payment.model_dump(mode="json"))
    repo.record_activity(
        txn,
        owner_uid=str(current.get("owner_uid")),
        entity_type="invoice",
        entity_id=invoice_id,
        action=audit.PAID,
        now=now,
        meta={"from": current.get("status"), "source": "settlement", "event_id": event_key, "amount_minor_units": payment.amount_minor_units},
    )
