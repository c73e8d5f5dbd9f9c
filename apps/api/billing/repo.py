from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from firebase_admin import firestore

from ..database import db
from ..settings import settings
from . import audit
from .errors import InvalidTransitionError, NotFoundError, ValidationError
from .models import (
    REMINDER_OFFSET_DAYS,
    AuditEntry,
    ClientRecord,
    DiscountType,
    DocumentContent,
    DocumentUpdateRequest,
    InvoiceCreateRequest,
    InvoiceRecord,
    InvoiceStatus,
    LineItem,
    OwnerProfile,
    RecurringSettingsRequest,
    ReminderSettingsRequest,
)
from .money import PricingConfig, compute_amount
from .plans import can_create_invoice
from .state import (
    INVOICE_EDITABLE,
    INVOICE_OPEN,
    INVOICE_TERMINAL,
    assert_invoice_transition,
    with_display_status,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

INVOICES = "invoices"
OFFERS = "offers"
COUNTERS = "counters"
CLIENTS = "clients"
PROFILES = "profiles"
SETTLEMENT_EVENTS = "settlement_events"
PAYMENTS = "payments"

_NUMBER_PREFIX = {"invoice": "INV", "offer": "OFF"}
_SHARE_PATH = {"invoice": "i", "offer": "o"}


def _now() -> float:
    return float(time.time())


def pricing_config() -> PricingConfig:
    return PricingConfig.from_settings(settings)


def new_public_id() -> str:
    return str(uuid.uuid4())


def share_url(kind: str, public_id: str) -> str:
    return f"{settings.PUBLIC_BASE_URL.rstrip('/')}/{_SHARE_PATH[kind]}/{public_id}"


# ---------------------------------------------------------------------------
# Refs and transactions
# ---------------------------------------------------------------------------


def invoice_ref(invoice_id: str):
    return db.collection(INVOICES).document(invoice_id)


def offer_ref(offer_id: str):
    return db.collection(OFFERS).document(offer_id)


def counter_ref(owner_uid: str, kind: str):
    return db.collection(COUNTERS).document(f"{owner_uid}:{kind}")


def settlement_event_ref(provider: str, event_id: str):
    return db.collection(SETTLEMENT_EVENTS).document(f"{provider}:{event_id}")


def payment_ref(payment_id: str):
    return db.collection(PAYMENTS).document(payment_id)


class _LocalTransaction:
    """Write buffer for clients without transactions: nothing lands unless the callback returns."""

    def __init__(self):
        self._writes: List[Tuple[Any, Dict[str, Any], bool]] = []

    def set(self, ref, data: Dict[str, Any], merge: bool = False) -> None:
        self._writes.append((ref, dict(data), merge))

    def commit(self) -> None:
        for ref, data, merge in self._writes:
            ref.set(data, merge=merge)


def run_transaction(fn: Callable[[Any], T]) -> T:
    """Run fn(txn) atomically. fn must do all its reads before its writes."""
    if hasattr(db, "transaction"):
        txn = db.transaction()
        return firestore.transactional(fn)(txn)

    local = _LocalTransaction()
    result = fn(local)
    local.commit()
    return result


def record_activity(txn, **kwargs) -> AuditEntry:
    return audit.record_activity(txn, db, **kwargs)


def list_activity(*, owner_uid: str, limit: int = 50, entity_id: Optional[str] = None) -> List[AuditEntry]:
    return audit.list_activity(db, owner_uid=owner_uid, limit=limit, entity_id=entity_id)


def read_owned(txn, ref, owner_uid: Optional[str], label: str) -> Dict[str, Any]:
    """Read a document inside txn; owner mismatch is reported as not found."""
    snap = ref.get(transaction=txn)
    if not snap.exists:
        raise NotFoundError(f"{label} not found")
    d = snap.to_dict() or {}
    if owner_uid is not None and d.get("owner_uid") != owner_uid:
        raise NotFoundError(f"{label} not found")
    return d


def read_sequence(txn, ref) -> int:
    snap = ref.get(transaction=txn)
    if not snap.exists:
        return 0
    d = snap.to_dict() or {}
    try:
        return int(d.get("value") or 0)
    except (TypeError, ValueError):
        return 0


def write_sequence(txn, ref, value: int, now: float) -> None:
    txn.set(ref, {"value": int(value), "updated_at": now}, merge=True)


def format_number(kind: str, seq: int) -> str:
    return f"{_NUMBER_PREFIX[kind]}-{int(seq):04d}"


def to_doc(record) -> Dict[str, Any]:
    return record.model_dump(mode="json", exclude={"display_status"})


def invoice_from_dict(invoice_id: str, d: Dict[str, Any]) -> InvoiceRecord:
    d = dict(d)
    d.setdefault("invoice_id", invoice_id)
    d.pop("display_status", None)
    return InvoiceRecord(**d)


# ---------------------------------------------------------------------------
# Client / profile snapshots (read-only)
# ---------------------------------------------------------------------------


def get_profile(owner_uid: str) -> OwnerProfile:
    snap = db.collection(PROFILES).document(owner_uid).get()
    d = (snap.to_dict() or {}) if snap.exists else {}
    d["uid"] = owner_uid
    if not d.get("default_currency"):
        d.pop("default_currency", None)
    return OwnerProfile(**d)


def get_client(*, owner_uid: str, client_id: str) -> ClientRecord:
    snap = db.collection(CLIENTS).document(client_id).get()
    if not snap.exists:
        raise NotFoundError("Client not found")
    d = snap.to_dict() or {}
    if d.get("owner_uid") != owner_uid:
        raise NotFoundError("Client not found")
    d.setdefault("client_id", snap.id)
    return ClientRecord(**d)


# ---------------------------------------------------------------------------
# Content preparation (shared by invoices and offers)
# ---------------------------------------------------------------------------


def prepare_content(
    *,
    owner_uid: str,
    request: DocumentContent,
    default_currency: str,
    config: PricingConfig,
) -> Dict[str, Any]:
    """Validate editable content and materialize its amount. Returns stored fields."""
    if not request.line_items:
        raise ValidationError("Add at least one line item with description and amount")

    client_id = request.client_id or None
    client_name = (request.client_name or "").strip()
    client_email = request.client_email
    if client_id:
        client = get_client(owner_uid=owner_uid, client_id=client_id)
        client_name = client_name or client.name
        client_email = client_email or client.email
    if not client_name:
        raise ValidationError("Client name is required")

    discount_type = DiscountType(request.discount_type or DiscountType.NONE)
    discount_value: Optional[float] = None
    if discount_type == DiscountType.PERCENT:
        discount_value = float(request.discount_value or 0)
        if discount_value > 100:
            raise ValidationError("Discount percent must be between 0 and 100")
    elif discount_type == DiscountType.FIXED:
        discount_value = int(request.discount_value or 0)

    currency = request.currency or default_currency
    breakdown = compute_amount(
        request.line_items,
        currency=currency,
        discount_type=discount_type,
        discount_value=discount_value,
        vat_included=request.vat_included,
        fee_included=request.payment_processing_fee_included,
        config=config,
    )

    line_items = [
        LineItem(
            description=li.description,
            amount_minor_units=li.amount_minor_units,
            discount_percent=li.discount_percent,
            sort_order=idx,
        )
        for idx, li in enumerate(request.line_items)
    ]

    return {
        "client_id": client_id,
        "client_name": client_name,
        "client_email": client_email,
        "currency": currency,
        "due_date": request.due_date,
        "notes": (request.notes or "").strip() or None,
        "vat_included": bool(request.vat_included),
        "payment_processing_fee_included": bool(request.payment_processing_fee_included),
        "payment_processing_fee_minor_units": breakdown.fee,
        "discount_type": discount_type,
        "discount_value": (None if discount_type == DiscountType.NONE else discount_value),
        "amount_minor_units": breakdown.total,
        "line_items": line_items,
    }


def content_patch(content: Dict[str, Any]) -> Dict[str, Any]:
    patch = dict(content)
    patch["discount_type"] = DiscountType(patch["discount_type"]).value
    patch["line_items"] = [li.model_dump(mode="json") for li in patch["line_items"]]
    return patch


def merge_update(current: Dict[str, Any], request: DocumentContent) -> DocumentContent:
    """Partial edit: fields the caller did not send keep their stored values."""
    data = request.model_dump(exclude_unset=True)
    keep = set(DocumentContent.model_fields) - set(data)
    # A different client re-snapshots name and email from the client record.
    if data.get("client_id") and data["client_id"] != current.get("client_id"):
        keep -= {"client_name", "client_email"}

    for field in keep:
        if field not in current:
            continue
        if field == "line_items":
            stored = sorted(current.get("line_items") or [], key=lambda li: int(li.get("sort_order") or 0))
            data[field] = [
                {
                    "description": li.get("description"),
                    "amount_minor_units": li.get("amount_minor_units"),
                    "discount_percent": li.get("discount_percent") or 0.0,
                }
                for li in stored
            ]
        else:
            data[field] = current[field]
    return DocumentContent.model_validate(data)


def validate_reminder_days(days: List[int]) -> List[int]:
    out = sorted({int(d) for d in days or []})
    bad = [d for d in out if d not in REMINDER_OFFSET_DAYS]
    if bad:
        raise ValidationError(f"Unsupported reminder days: {bad} (allowed: {list(REMINDER_OFFSET_DAYS)})")
    return out


# ---------------------------------------------------------------------------
# Invoice reads
# ---------------------------------------------------------------------------


def get_invoice(*, invoice_id: str, owner_uid: Optional[str] = None, now: float | None = None) -> InvoiceRecord:
    snap = invoice_ref(invoice_id).get()
    if not snap.exists:
        raise NotFoundError("Invoice not found")
    d = snap.to_dict() or {}
    if owner_uid is not None and d.get("owner_uid") != owner_uid:
        raise NotFoundError("Invoice not found")
    return with_display_status(invoice_from_dict(snap.id, d), _now() if now is None else float(now))


def list_invoices(*, owner_uid: str, limit: int = 200, now: float | None = None) -> List[InvoiceRecord]:
    now = _now() if now is None else float(now)
    snaps = db.collection(INVOICES).where("owner_uid", "==", owner_uid).stream()
    out = [with_display_status(invoice_from_dict(s.id, s.to_dict() or {}), now) for s in snaps]
    out.sort(key=lambda r: float(r.created_at or 0), reverse=True)
    return out[: int(limit)]


def _find_one(collection: str, field: str, value: str) -> Optional[str]:
    if not value:
        return None
    snaps = list(db.collection(collection).where(field, "==", value).limit(1).stream())
    return snaps[0].id if snaps else None


def find_invoice_id_by_public_id(public_id: str) -> Optional[str]:
    return _find_one(INVOICES, "public_id", public_id)


def find_offer_id_by_public_id(public_id: str) -> Optional[str]:
    return _find_one(OFFERS, "public_id", public_id)


def find_invoice_id_by_checkout_session(session_id: str) -> Optional[str]:
    return _find_one(INVOICES, "checkout_session_id", session_id)


# ---------------------------------------------------------------------------
# Invoice lifecycle
# ---------------------------------------------------------------------------


def create_invoice(
    *,
    request: InvoiceCreateRequest,
    owner_uid: str,
    now: float | None = None,
    config: PricingConfig | None = None,
) -> InvoiceRecord:
    now = _now() if now is None else float(now)
    config = config or pricing_config()

    profile = get_profile(owner_uid)
    content = prepare_content(owner_uid=owner_uid, request=request, default_currency=profile.default_currency, config=config)
    remind_days = validate_reminder_days(request.auto_remind_days) if request.auto_remind_enabled else []
    if request.auto_remind_enabled and not remind_days:
        raise ValidationError("Pick at least one reminder day")

    invoice_id = str(uuid.uuid4())
    counter = counter_ref(owner_uid, "invoice")
    status = InvoiceStatus.SENT if request.mark_sent else InvoiceStatus.DRAFT

    def txn_create(txn) -> InvoiceRecord:
        seq = read_sequence(txn, counter)
        if not can_create_invoice(profile.subscription_status, seq, free_limit=settings.FREE_INVOICE_LIMIT):
            raise ValidationError(f"Free plan limit reached ({settings.FREE_INVOICE_LIMIT} invoices). Upgrade to create more.")

        record = InvoiceRecord(
            invoice_id=invoice_id,
            owner_uid=owner_uid,
            number=format_number("invoice", seq + 1),
            public_id=new_public_id(),
            status=status,
            created_at=now,
            updated_at=now,
            sent_at=(now if status == InvoiceStatus.SENT else None),
            auto_remind_enabled=bool(request.auto_remind_enabled),
            auto_remind_days=remind_days,
            **content,
        )
        write_sequence(txn, counter, seq + 1, now)
        txn.set(invoice_ref(invoice_id), to_doc(record))
        record_activity(
            txn,
            owner_uid=owner_uid,
            entity_type="invoice",
            entity_id=invoice_id,
            action=audit.CREATED,
            now=now,
            meta={"number": record.number, "status": status.value, "amount_minor_units": record.amount_minor_units},
        )
        return record

    record = run_transaction(txn_create)
    logger.info("Invoice created owner=%s invoice=%s number=%s status=%s", owner_uid, invoice_id, record.number, status.value)
    return record


def update_invoice(
    *,
    invoice_id: str,
    owner_uid: str,
    request: DocumentUpdateRequest,
    now: float | None = None,
    config: PricingConfig | None = None,
) -> InvoiceRecord:
    now = _now() if now is None else float(now)
    config = config or pricing_config()
    ref = invoice_ref(invoice_id)

    def txn_update(txn) -> InvoiceRecord:
        current = read_owned(txn, ref, owner_uid, "Invoice")
        status = InvoiceStatus(current.get("status") or InvoiceStatus.DRAFT.value)
        if status not in INVOICE_EDITABLE:
            raise InvalidTransitionError(status.value, "edit", message=f"Invoice is {status.value} and can no longer be edited")

        content = prepare_content(
            owner_uid=owner_uid,
            request=merge_update(current, request),
            default_currency=str(current.get("currency") or "USD"),
            config=config,
        )
        patch = content_patch(content)
        patch["updated_at"] = now
        txn.set(ref, patch, merge=True)

        before = int(current.get("amount_minor_units") or 0)
        if before != patch["amount_minor_units"]:
            record_activity(
                txn,
                owner_uid=owner_uid,
                entity_type="invoice",
                entity_id=invoice_id,
                action=audit.UPDATED,
                now=now,
                meta={"from": before, "to": patch["amount_minor_units"]},
            )

        updated = dict(current)
        updated.update(patch)
        return invoice_from_dict(invoice_id, updated)

    record = run_transaction(txn_update)
    logger.info("Invoice updated owner=%s invoice=%s amount=%s", owner_uid, invoice_id, record.amount_minor_units)
    return record


def _transition_invoice(
    *,
    invoice_id: str,
    owner_uid: Optional[str],
    new_status: InvoiceStatus,
    now: float,
    extra: Dict[str, Any] | None = None,
    action: str = audit.STATUS_CHANGE,
    meta: Dict[str, Any] | None = None,
) -> InvoiceRecord:
    ref = invoice_ref(invoice_id)

    def txn_update(txn) -> InvoiceRecord:
        current = read_owned(txn, ref, owner_uid, "Invoice")
        cur_status = InvoiceStatus(str(current.get("status") or InvoiceStatus.DRAFT.value))
        assert_invoice_transition(cur_status, new_status)

        patch: Dict[str, Any] = {"status": new_status.value, "updated_at": now}
        if new_status == InvoiceStatus.SENT:
            patch["sent_at"] = now
        if new_status == InvoiceStatus.PAID:
            patch["paid_at"] = now
        if new_status == InvoiceStatus.VOID:
            patch["voided_at"] = now
        if extra:
            patch.update(extra)

        txn.set(ref, patch, merge=True)
        record_activity(
            txn,
            owner_uid=str(current.get("owner_uid")),
            entity_type="invoice",
            entity_id=invoice_id,
            action=action,
            now=now,
            meta={"from": cur_status.value, "to": new_status.value, **(meta or {})},
        )
        updated = dict(current)
        updated.update(patch)
        return invoice_from_dict(invoice_id, updated)

    record = run_transaction(txn_update)
    logger.info("Invoice %s -> %s invoice=%s", action, new_status.value, invoice_id)
    return record


def mark_invoice_sent(*, invoice_id: str, owner_uid: str, now: float | None = None) -> InvoiceRecord:
    return _transition_invoice(
        invoice_id=invoice_id,
        owner_uid=owner_uid,
        new_status=InvoiceStatus.SENT,
        now=_now() if now is None else float(now),
    )


def void_invoice(*, invoice_id: str, owner_uid: str, now: float | None = None) -> InvoiceRecord:
    return _transition_invoice(
        invoice_id=invoice_id,
        owner_uid=owner_uid,
        new_status=InvoiceStatus.VOID,
        now=_now() if now is None else float(now),
        extra={"recurring": False, "recurring_claim_anchor": None, "recurring_claimed_at": None},
    )


def mark_invoice_paid(*, invoice_id: str, owner_uid: str, now: float | None = None) -> InvoiceRecord:
    """Manual "mark as paid" by the owner."""
    return _transition_invoice(
        invoice_id=invoice_id,
        owner_uid=owner_uid,
        new_status=InvoiceStatus.PAID,
        now=_now() if now is None else float(now),
        action=audit.PAID,
        meta={"source": "manual"},
    )


def record_invoice_view(*, public_id: str, now: float | None = None) -> InvoiceRecord:
    """First client-facing read moves draft/sent to viewed. Later reads change nothing."""
    now = _now() if now is None else float(now)
    invoice_id = find_invoice_id_by_public_id(public_id)
    if not invoice_id:
        raise NotFoundError("Invoice not found")
    ref = invoice_ref(invoice_id)

    def txn_view(txn) -> InvoiceRecord:
        current = read_owned(txn, ref, None, "Invoice")
        status = InvoiceStatus(str(current.get("status") or InvoiceStatus.DRAFT.value))
        if status not in {InvoiceStatus.DRAFT, InvoiceStatus.SENT} or current.get("viewed_at"):
            return invoice_from_dict(invoice_id, current)

        patch = {"status": InvoiceStatus.VIEWED.value, "viewed_at": now, "updated_at": now}
        txn.set(ref, patch, merge=True)
        record_activity(
            txn,
            owner_uid=str(current.get("owner_uid")),
            entity_type="invoice",
            entity_id=invoice_id,
            action=audit.VIEWED,
            now=now,
            meta={"from": status.value},
        )
        updated = dict(current)
        updated.update(patch)
        return invoice_from_dict(invoice_id, updated)

    return with_display_status(run_transaction(txn_view), now)


def configure_recurring(
    *,
    invoice_id: str,
    owner_uid: str,
    request: RecurringSettingsRequest,
    now: float | None = None,
) -> InvoiceRecord:
    now = _now() if now is None else float(now)
    if request.enabled:
        if request.interval_unit is None or request.interval_value is None:
            raise ValidationError("Recurring invoices need an interval unit and value")
        if int(request.interval_value) < 1:
            raise ValidationError("Recurring interval must be at least 1")
    ref = invoice_ref(invoice_id)

    def txn_configure(txn) -> InvoiceRecord:
        current = read_owned(txn, ref, owner_uid, "Invoice")
        status = InvoiceStatus(str(current.get("status") or InvoiceStatus.DRAFT.value))

        if request.enabled:
            if current.get("recurring_parent_id"):
                raise ValidationError("Generated invoices cannot be recurring templates")
            if status not in INVOICE_OPEN or not current.get("sent_at"):
                raise InvalidTransitionError(
                    status.value, "recurring", message="Recurring can only be enabled on a sent, unpaid invoice"
                )
            patch: Dict[str, Any] = {
                "recurring": True,
                "recurring_interval_unit": request.interval_unit.value,
                "recurring_interval_value": int(request.interval_value),
            }
        else:
            patch = {"recurring": False, "recurring_claim_anchor": None, "recurring_claimed_at": None}
        patch["updated_at"] = now

        txn.set(ref, patch, merge=True)
        record_activity(
            txn,
            owner_uid=owner_uid,
            entity_type="invoice",
            entity_id=invoice_id,
            action=audit.SETTINGS_CHANGED,
            now=now,
            meta={"recurring": bool(request.enabled), "unit": patch.get("recurring_interval_unit"), "value": patch.get("recurring_interval_value")},
        )
        updated = dict(current)
        updated.update(patch)
        return invoice_from_dict(invoice_id, updated)

    return run_transaction(txn_configure)


def configure_reminders(
    *,
    invoice_id: str,
    owner_uid: str,
    request: ReminderSettingsRequest,
    now: float | None = None,
) -> InvoiceRecord:
    now = _now() if now is None else float(now)
    days = validate_reminder_days(request.days)
    if request.enabled and not days:
        raise ValidationError("Pick at least one reminder day")
    ref = invoice_ref(invoice_id)

    def txn_configure(txn) -> InvoiceRecord:
        current = read_owned(txn, ref, owner_uid, "Invoice")
        status = InvoiceStatus(str(current.get("status") or InvoiceStatus.DRAFT.value))
        if status in INVOICE_TERMINAL:
            raise InvalidTransitionError(status.value, "reminders", message=f"Invoice is {status.value}; reminders cannot be changed")

        patch = {"auto_remind_enabled": bool(request.enabled), "auto_remind_days": days, "updated_at": now}
        txn.set(ref, patch, merge=True)
        record_activity(
            txn,
            owner_uid=owner_uid,
            entity_type="invoice",
            entity_id=invoice_id,
            action=audit.SETTINGS_CHANGED,
            now=now,
            meta={"auto_remind_enabled": bool(request.enabled), "days": days},
        )
        updated = dict(current)
        updated.update(patch)
        return invoice_from_dict(invoice_id, updated)

    return run_transaction(txn_configure)
