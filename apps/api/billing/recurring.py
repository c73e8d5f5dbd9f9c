from __future__ import annotations

import logging
import time
import uuid
from typing import Dict, Optional

from .. import notify
from ..settings import settings
from ..utils import local_midnight_after_days
from . import audit, repo
from .emailer import EmailSender, document_params, get_email_sender
from .errors import SchedulerItemError
from .models import InvoiceRecord, InvoiceStatus, OwnerProfile, RecurringRunResponse, RecurringUnit
from .money import PricingConfig, compute_amount
from .state import INVOICE_OPEN

logger = logging.getLogger(__name__)

_DAY = 86400.0


def _now() -> float:
    return float(time.time())


def anchor_of(template: InvoiceRecord) -> Optional[float]:
    if template.last_recurred_at is not None:
        return float(template.last_recurred_at)
    if template.sent_at is not None:
        return float(template.sent_at)
    return None


def next_due_at(anchor: float, unit: RecurringUnit, value: int, tz_name: Optional[str] = None) -> float:
    """Minutes are exact; days fall due at local midnight of the target day."""
    if RecurringUnit(unit) == RecurringUnit.MINUTES:
        return float(anchor) + int(value) * 60
    return local_midnight_after_days(anchor, int(value), tz_name)


def is_template(inv: InvoiceRecord) -> bool:
    return (
        bool(inv.recurring)
        and inv.recurring_parent_id is None
        and inv.status in INVOICE_OPEN
        and bool(inv.client_email)
        and inv.sent_at is not None
        and inv.recurring_interval_unit is not None
        and bool(inv.recurring_interval_value)
    )


def is_due(inv: InvoiceRecord, now: float, tz_name: Optional[str] = None) -> bool:
    if not is_template(inv):
        return False
    anchor = anchor_of(inv)
    return now >= next_due_at(anchor, inv.recurring_interval_unit, inv.recurring_interval_value, tz_name)


def child_due_date(template: InvoiceRecord, now: float, tz_name: Optional[str] = None) -> float:
    """Payment terms of the template, re-applied from the generation time.

    Templates without terms get RECURRING_DEFAULT_DUE_DAYS (at least one day).
    """
    if template.due_date is not None and template.sent_at is not None and template.due_date > template.sent_at:
        days = max(1, int(round((float(template.due_date) - float(template.sent_at)) / _DAY)))
    else:
        days = max(1, int(settings.RECURRING_DEFAULT_DUE_DAYS))
    return local_midnight_after_days(now, days, tz_name)


def _generate(template_id: str, anchor: float, *, now: float, config: PricingConfig, tz_name: Optional[str]) -> Optional[InvoiceRecord]:
    """Claim the cycle and write the child invoice. None when another run owns it or the template moved on."""
    ref = repo.invoice_ref(template_id)
    ttl = float(settings.RECURRING_CLAIM_TTL_SECONDS)

    def txn_generate(txn) -> Optional[InvoiceRecord]:
        current = repo.read_owned(txn, ref, None, "Invoice")
        template = repo.invoice_from_dict(template_id, current)
        if not is_template(template) or anchor_of(template) != anchor:
            return None
        if (
            template.recurring_claim_anchor == anchor
            and template.recurring_claimed_at is not None
            and now - float(template.recurring_claimed_at) < ttl
        ):
            return None

        counter = repo.counter_ref(template.owner_uid, "invoice")
        seq = repo.read_sequence(txn, counter)

        breakdown = compute_amount(
            template.line_items,
            currency=template.currency,
            discount_type=template.discount_type,
            discount_value=template.discount_value,
            vat_included=template.vat_included,
            fee_included=template.payment_processing_fee_included,
            config=config,
        )

        child_id = str(uuid.uuid4())
        child = InvoiceRecord(
            invoice_id=child_id,
            owner_uid=template.owner_uid,
            number=repo.format_number("invoice", seq + 1),
            public_id=repo.new_public_id(),
            status=InvoiceStatus.SENT,
            currency=template.currency,
            amount_minor_units=breakdown.total,
            client_id=template.client_id,
            client_name=template.client_name,
            client_email=template.client_email,
            discount_type=template.discount_type,
            discount_value=template.discount_value,
            vat_included=template.vat_included,
            payment_processing_fee_included=template.payment_processing_fee_included,
            payment_processing_fee_minor_units=breakdown.fee,
            due_date=child_due_date(template, now, tz_name),
            notes=template.notes,
            line_items=[li.model_copy() for li in template.line_items],
            created_at=now,
            updated_at=now,
            sent_at=now,
            auto_remind_enabled=template.auto_remind_enabled,
            auto_remind_days=list(template.auto_remind_days),
            recurring=False,
            recurring_parent_id=template_id,
        )

        repo.write_sequence(txn, counter, seq + 1, now)
        txn.set(repo.invoice_ref(child_id), repo.to_doc(child))
        txn.set(ref, {"recurring_claim_anchor": anchor, "recurring_claimed_at": now}, merge=True)
        repo.record_activity(
            txn,
            owner_uid=template.owner_uid,
            entity_type="invoice",
            entity_id=child_id,
            action=audit.RECURRING_GENERATED,
            now=now,
            meta={"parent_id": template_id, "number": child.number, "amount_minor_units": child.amount_minor_units},
        )
        return child

    return repo.run_transaction(txn_generate)


def _advance(template_id: str, anchor: float, now: float) -> bool:
    ref = repo.invoice_ref(template_id)

    def txn_advance(txn) -> bool:
        current = repo.read_owned(txn, ref, None, "Invoice")
        if anchor_of(repo.invoice_from_dict(template_id, current)) != anchor:
            return False
        txn.set(
            ref,
            {"last_recurred_at": now, "recurring_claim_anchor": None, "recurring_claimed_at": None, "updated_at": now},
            merge=True,
        )
        return True

    return repo.run_transaction(txn_advance)


def _release_claim(template_id: str, anchor: float) -> None:
    ref = repo.invoice_ref(template_id)

    def txn_release(txn) -> None:
        current = repo.read_owned(txn, ref, None, "Invoice")
        if current.get("recurring_claim_anchor") == anchor:
            txn.set(ref, {"recurring_claim_anchor": None, "recurring_claimed_at": None}, merge=True)

    repo.run_transaction(txn_release)


def process_template(
    template: InvoiceRecord,
    *,
    now: float,
    sender: EmailSender,
    config: PricingConfig,
    tz_name: Optional[str],
    profile: OwnerProfile,
) -> bool:
    """Generate and send one cycle. True when an invoice was sent; raises SchedulerItemError on send failure."""
    anchor = anchor_of(template)
    child = _generate(template.invoice_id, anchor, now=now, config=config, tz_name=tz_name)
    if child is None:
        logger.info("Recurring cycle skipped (claimed or changed) template=%s", template.invoice_id)
        return False

    params = document_params(
        child, business_name=profile.business_name, public_url=repo.share_url("invoice", child.public_id)
    )
    result = sender.send(child.client_email, "invoice", params)
    if not result.ok:
        # The child stays; the cycle is retried on the next run.
        _release_claim(template.invoice_id, anchor)
        raise SchedulerItemError(f"Recurring invoice {child.number} send failed: {result.error}")

    if not _advance(template.invoice_id, anchor, now):
        logger.info("Recurring anchor moved during send template=%s", template.invoice_id)
    logger.info("Recurring invoice sent template=%s invoice=%s number=%s", template.invoice_id, child.invoice_id, child.number)
    return True


def run_recurring_invoices(
    *,
    now: float | None = None,
    sender: EmailSender | None = None,
    config: PricingConfig | None = None,
    tz_name: str | None = None,
) -> RecurringRunResponse:
    now = _now() if now is None else float(now)
    sender = sender or get_email_sender()
    config = config or repo.pricing_config()
    tz_name = tz_name or settings.BUSINESS_TIMEZONE

    generated = 0
    errors = 0
    profiles: Dict[str, OwnerProfile] = {}

    for snap in repo.db.collection(repo.INVOICES).where("recurring", "==", True).stream():
        try:
            template = repo.invoice_from_dict(snap.id, snap.to_dict() or {})
            if not is_due(template, now, tz_name):
                continue
            if template.owner_uid not in profiles:
                profiles[template.owner_uid] = repo.get_profile(template.owner_uid)
            if process_template(
                template,
                now=now,
                sender=sender,
                config=config,
                tz_name=tz_name,
                profile=profiles[template.owner_uid],
            ):
                generated += 1
        except Exception:
            errors += 1
            logger.exception("Recurring generation failed template=%s", snap.id)

    if errors:
        notify.send_webhook(
            settings.ALERT_WEBHOOK_URL,
            {"job": "recurring_invoices", "generated": generated, "errors": errors, "at": now},
        )
    logger.info("Recurring run finished generated=%s errors=%s", generated, errors)
    return RecurringRunResponse(generated=generated, errors=errors)
