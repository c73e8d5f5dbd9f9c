from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional, Tuple

from .. import notify
from ..settings import settings
from ..utils import local_midnight_after_days
from . import audit, repo
from .emailer import EmailSender, document_params, get_email_sender
from .errors import DeliveryError, InvalidTransitionError, SchedulerItemError, ValidationError
from .models import InvoiceRecord, InvoiceStatus, OwnerProfile, ReminderActionResponse, ReminderRunResponse
from .state import INVOICE_OPEN

logger = logging.getLogger(__name__)

# Offsets with a durable per-offset flag; the rest are tracked in reminder_offsets_sent_at.
FLAG_FIELDS: Dict[int, str] = {
    1: "reminder_1d_sent_at",
    3: "reminder_3d_sent_at",
    7: "reminder_7d_sent_at",
}
OFFSETS_FIELD = "reminder_offsets_sent_at"


def _now() -> float:
    return float(time.time())


def reminder_due_at(sent_at: float, offset_days: int, tz_name: Optional[str] = None) -> float:
    return local_midnight_after_days(sent_at, offset_days, tz_name)


def fired_at(doc: Dict[str, Any], offset: int) -> Optional[float]:
    """When an offset last fired, read from a stored invoice document."""
    field = FLAG_FIELDS.get(offset)
    if field is not None:
        return doc.get(field)
    return (doc.get(OFFSETS_FIELD) or {}).get(str(offset))


def is_candidate(inv: InvoiceRecord) -> bool:
    return (
        bool(inv.auto_remind_enabled)
        and bool(inv.client_email)
        and inv.sent_at is not None
        and inv.status in INVOICE_OPEN
        and bool(inv.auto_remind_days)
    )


def due_offsets(inv: InvoiceRecord, now: float, tz_name: Optional[str] = None) -> List[int]:
    """Configured offsets that are due and not yet fired, ascending."""
    if not is_candidate(inv):
        return []
    doc = inv.model_dump()
    return [
        offset
        for offset in sorted(set(inv.auto_remind_days))
        if now >= reminder_due_at(inv.sent_at, offset, tz_name) and fired_at(doc, offset) is None
    ]


def _fired_patch(current: Dict[str, Any], offset: int, value: Optional[float]) -> Dict[str, Any]:
    field = FLAG_FIELDS.get(offset)
    if field is not None:
        return {field: value}
    # Whole map is rewritten; merge=True is shallow for nested maps in the local fallback.
    offsets = dict(current.get(OFFSETS_FIELD) or {})
    if value is None:
        offsets.pop(str(offset), None)
    else:
        offsets[str(offset)] = value
    return {OFFSETS_FIELD: offsets}


def _claim(invoice_id: str, offset: int, *, now: float) -> Tuple[bool, Optional[float]]:
    """Conditionally mark one offset fired. Returns (claimed, previous last_reminder_at)."""
    ref = repo.invoice_ref(invoice_id)

    def txn_claim(txn) -> Tuple[bool, Optional[float]]:
        current = repo.read_owned(txn, ref, None, "Invoice")
        status = InvoiceStatus(str(current.get("status") or InvoiceStatus.DRAFT.value))
        if status not in INVOICE_OPEN or not current.get("auto_remind_enabled"):
            return False, None
        if fired_at(current, offset) is not None:
            return False, None
        patch = _fired_patch(current, offset, now)
        patch["last_reminder_at"] = now
        txn.set(ref, patch, merge=True)
        return True, current.get("last_reminder_at")

    return repo.run_transaction(txn_claim)


def _release(invoice_id: str, offset: int, *, claimed_at: float, previous: Optional[float]) -> None:
    """Undo a claim whose send failed, unless something else has written since."""
    ref = repo.invoice_ref(invoice_id)

    def txn_release(txn) -> None:
        current = repo.read_owned(txn, ref, None, "Invoice")
        patch: Dict[str, Any] = {}
        if fired_at(current, offset) == claimed_at:
            patch.update(_fired_patch(current, offset, None))
        if current.get("last_reminder_at") == claimed_at:
            patch["last_reminder_at"] = previous
        if patch:
            txn.set(ref, patch, merge=True)

    repo.run_transaction(txn_release)


def _record_sent(inv: InvoiceRecord, *, now: float, meta: Dict) -> None:
    def txn_audit(txn) -> None:
        repo.record_activity(
            txn,
            owner_uid=inv.owner_uid,
            entity_type="invoice",
            entity_id=inv.invoice_id,
            action=audit.REMINDER_SENT,
            now=now,
            meta=meta,
        )

    repo.run_transaction(txn_audit)


def _send(inv: InvoiceRecord, sender: EmailSender, profile: OwnerProfile):
    params = document_params(inv, business_name=profile.business_name, public_url=repo.share_url("invoice", inv.public_id))
    return sender.send(inv.client_email, "reminder", params)


def remind_invoice(
    inv: InvoiceRecord,
    offset: int,
    *,
    now: float,
    sender: EmailSender,
    profile: OwnerProfile,
    tz_name: Optional[str] = None,
) -> bool:
    """Fire one offset for one invoice. False when it is not due yet or another run already fired it."""
    if inv.sent_at is None or now < reminder_due_at(inv.sent_at, offset, tz_name):
        return False
    claimed, previous = _claim(inv.invoice_id, offset, now=now)
    if not claimed:
        logger.info("Reminder already fired invoice=%s offset=%sd", inv.invoice_id, offset)
        return False

    result = _send(inv, sender, profile)
    if not result.ok:
        _release(inv.invoice_id, offset, claimed_at=now, previous=previous)
        raise SchedulerItemError(f"Reminder {offset}d for {inv.number} failed: {result.error}")

    _record_sent(inv, now=now, meta={"offset_days": offset, "source": "auto"})
    logger.info("Reminder sent invoice=%s offset=%sd", inv.invoice_id, offset)
    return True


def run_auto_reminders(
    *,
    now: float | None = None,
    sender: EmailSender | None = None,
    tz_name: str | None = None,
) -> ReminderRunResponse:
    now = _now() if now is None else float(now)
    sender = sender or get_email_sender()
    tz_name = tz_name or settings.BUSINESS_TIMEZONE

    sent = 0
    errors = 0
    profiles: Dict[str, OwnerProfile] = {}

    for snap in repo.db.collection(repo.INVOICES).where("auto_remind_enabled", "==", True).stream():
        try:
            inv = repo.invoice_from_dict(snap.id, snap.to_dict() or {})
            offsets = due_offsets(inv, now, tz_name)
            if not offsets:
                continue
            if inv.owner_uid not in profiles:
                profiles[inv.owner_uid] = repo.get_profile(inv.owner_uid)
        except Exception:
            errors += 1
            logger.exception("Reminder candidate could not be loaded invoice=%s", snap.id)
            continue

        for offset in offsets:
            try:
                if remind_invoice(inv, offset, now=now, sender=sender, profile=profiles[inv.owner_uid], tz_name=tz_name):
                    sent += 1
            except Exception:
                errors += 1
                logger.exception("Reminder failed invoice=%s offset=%sd", snap.id, offset)

    if errors:
        notify.send_webhook(
            settings.ALERT_WEBHOOK_URL,
            {"job": "auto_reminders", "sent": sent, "errors": errors, "at": now},
        )
    logger.info("Reminder run finished sent=%s errors=%s", sent, errors)
    return ReminderRunResponse(sent=sent, errors=errors)


def send_manual_reminder(
    *,
    invoice_id: str,
    owner_uid: str,
    now: float | None = None,
    sender: EmailSender | None = None,
) -> ReminderActionResponse:
    """Owner-triggered reminder, at most one per MANUAL_REMINDER_INTERVAL_HOURS."""
    now = _now() if now is None else float(now)
    sender = sender or get_email_sender()
    window = float(settings.MANUAL_REMINDER_INTERVAL_HOURS) * 3600.0
    ref = repo.invoice_ref(invoice_id)

    def txn_claim(txn) -> Tuple[InvoiceRecord, Optional[float]]:
        current = repo.read_owned(txn, ref, owner_uid, "Invoice")
        inv = repo.invoice_from_dict(invoice_id, current)
        if inv.status not in INVOICE_OPEN:
            raise InvalidTransitionError(inv.status.value, "remind", message=f"Cannot send a reminder for a {inv.status.value} invoice")
        if not inv.client_email:
            raise ValidationError("Invoice has no client email")
        previous = inv.last_reminder_at
        if previous is not None and now - float(previous) < window:
            raise ValidationError(
                f"A reminder was already sent in the last {settings.MANUAL_REMINDER_INTERVAL_HOURS} hours"
            )
        txn.set(ref, {"last_reminder_at": now}, merge=True)
        return inv, previous

    inv, previous = repo.run_transaction(txn_claim)

    result = _send(inv, sender, repo.get_profile(owner_uid))
    if not result.ok:
        _release(invoice_id, 0, claimed_at=now, previous=previous)
        raise DeliveryError(f"Reminder could not be sent: {result.error}")

    _record_sent(inv, now=now, meta={"source": "manual"})
    logger.info("Manual reminder sent owner=%s invoice=%s", owner_uid, invoice_id)
    return ReminderActionResponse(invoice_id=invoice_id, last_reminder_at=now)
