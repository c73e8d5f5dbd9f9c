from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, field_validator

from ..utils import to_timestamp


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    VIEWED = "viewed"
    PAID = "paid"
    VOID = "void"
    # Display only, derived from due_date; never stored.
    OVERDUE = "overdue"


class OfferStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    VIEWED = "viewed"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    # Display only, derived from due_date; never stored.
    EXPIRED = "expired"


class DiscountType(str, Enum):
    NONE = "none"
    PERCENT = "percent"
    FIXED = "fixed"


class RecurringUnit(str, Enum):
    MINUTES = "minutes"
    DAYS = "days"


class SubscriptionStatus(str, Enum):
    FREE = "free"
    ACTIVE = "active"
    CANCELED = "canceled"
    PAST_DUE = "past_due"
    TRIALING = "trialing"


REMINDER_OFFSET_DAYS = (1, 2, 3, 5, 7, 10, 14)
DEFAULT_REMINDER_DAYS = [1, 3, 7]


class LineItemInput(BaseModel):
    description: str
    amount_minor_units: int = Field(ge=0)
    discount_percent: float = 0.0

    @field_validator("description")
    @classmethod
    def _description_required(cls, value: str) -> str:
        text = (value or "").strip()
        if not text:
            raise ValueError("description is required")
        return text

    @field_validator("discount_percent", mode="before")
    @classmethod
    def _clamp_discount(cls, value: Any) -> float:
        if value is None or value == "":
            return 0.0
        return min(100.0, max(0.0, float(value)))


class LineItem(BaseModel):
    description: str
    amount_minor_units: int
    discount_percent: float = 0.0
    sort_order: int = 0


class DocumentContent(BaseModel):
    """Editable content shared by invoices and offers (create and full edit)."""

    client_id: Optional[str] = None
    client_name: Optional[str] = None
    client_email: Optional[str] = None
    currency: Optional[str] = None

    due_date: Optional[float] = None
    notes: Optional[str] = None

    vat_included: bool = False
    payment_processing_fee_included: bool = False

    discount_type: DiscountType = DiscountType.NONE
    # Percent (0-100) for PERCENT, minor units for FIXED.
    discount_value: Optional[float] = None

    line_items: List[LineItemInput] = Field(default_factory=list)

    @field_validator("currency")
    @classmethod
    def _currency_code(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        code = value.strip().upper()
        if len(code) != 3 or not code.isalpha():
            raise ValueError("currency must be a 3-letter code")
        return code

    @field_validator("client_email")
    @classmethod
    def _blank_email_is_none(cls, value: Optional[str]) -> Optional[str]:
        text = (value or "").strip()
        return text or None

    @field_validator("due_date", mode="before")
    @classmethod
    def _parse_due_date(cls, value: Any) -> Optional[float]:
        if value is None or value == "":
            return None
        ts = to_timestamp(value)
        if ts is None:
            raise ValueError("due_date is not a valid date")
        return ts

    @field_validator("discount_value")
    @classmethod
    def _non_negative_discount(cls, value: Optional[float]) -> Optional[float]:
        if value is not None and value < 0:
            raise ValueError("discount_value must not be negative")
        return value


class InvoiceCreateRequest(DocumentContent):
    mark_sent: bool = False
    auto_remind_enabled: bool = False
    auto_remind_days: List[int] = Field(default_factory=lambda: list(DEFAULT_REMINDER_DAYS))


class OfferCreateRequest(DocumentContent):
    mark_sent: bool = False


class DocumentUpdateRequest(DocumentContent):
    pass


class RecurringSettingsRequest(BaseModel):
    enabled: bool
    interval_unit: Optional[RecurringUnit] = None
    interval_value: Optional[int] = None


class ReminderSettingsRequest(BaseModel):
    enabled: bool
    days: List[int] = Field(default_factory=lambda: list(DEFAULT_REMINDER_DAYS))


class OfferDeclineRequest(BaseModel):
    reason: Optional[str] = None


class DocumentRecord(BaseModel):
    owner_uid: str
    number: str
    public_id: str

    currency: str = "USD"
    # Materialized once at create/edit time; never re-derived on read.
    amount_minor_units: int

    client_id: Optional[str] = None
    client_name: str
    client_email: Optional[str] = None

    discount_type: DiscountType = DiscountType.NONE
    discount_value: Optional[float] = None
    vat_included: bool = False
    payment_processing_fee_included: bool = False
    payment_processing_fee_minor_units: Optional[int] = None

    due_date: Optional[float] = None
    notes: Optional[str] = None

    line_items: List[LineItem] = Field(default_factory=list)

    created_at: float
    updated_at: float
    sent_at: Optional[float] = None
    viewed_at: Optional[float] = None

    # Filled on read (overdue/expired projection); not persisted.
    display_status: Optional[str] = None


class InvoiceRecord(DocumentRecord):
    invoice_id: str
    status: InvoiceStatus

    paid_at: Optional[float] = None
    voided_at: Optional[float] = None

    # Set when derived from an accepted offer.
    offer_id: Optional[str] = None

    checkout_session_id: Optional[str] = None
    settlement_event_id: Optional[str] = None

    auto_remind_enabled: bool = False
    auto_remind_days: List[int] = Field(default_factory=list)
    reminder_1d_sent_at: Optional[float] = None
    reminder_3d_sent_at: Optional[float] = None
    reminder_7d_sent_at: Optional[float] = None
    # Fired offsets without a dedicated flag, keyed by offset days ("2", "14", ...).
    reminder_offsets_sent_at: Dict[str, float] = Field(default_factory=dict)
    last_reminder_at: Optional[float] = None

    recurring: bool = False
    recurring_interval_unit: Optional[RecurringUnit] = None
    recurring_interval_value: Optional[int] = None
    last_recurred_at: Optional[float] = None
    recurring_parent_id: Optional[str] = None
    # In-flight generation marker for the current cycle.
    recurring_claim_anchor: Optional[float] = None
    recurring_claimed_at: Optional[float] = None


class OfferRecord(DocumentRecord):
    offer_id: str
    status: OfferStatus

    accepted_at: Optional[float] = None
    declined_at: Optional[float] = None
    decline_reason: Optional[str] = None

    # Written exactly once, on acceptance.
    invoice_id: Optional[str] = None


class InvoiceListResponse(BaseModel):
    invoices: List[InvoiceRecord]
    total: int


class OfferListResponse(BaseModel):
    offers: List[OfferRecord]
    total: int


class InvoiceActionResponse(BaseModel):
    ok: bool = True
    invoice_id: str
    status: InvoiceStatus
    message: str


class OfferActionResponse(BaseModel):
    ok: bool = True
    offer_id: str
    status: OfferStatus
    message: str


class OfferAcceptResponse(BaseModel):
    ok: bool = True
    offer_id: str
    invoice_id: str
    invoice_public_id: str
    invoice_url: str


class OwnerProfile(BaseModel):
    uid: str
    business_name: Optional[str] = None
    default_currency: str = "USD"
    subscription_status: Optional[SubscriptionStatus] = None


class ClientRecord(BaseModel):
    client_id: str
    owner_uid: str
    name: str
    email: Optional[str] = None


class PublicLineItem(BaseModel):
    description: str
    amount_minor_units: int
    discount_percent: float = 0.0
    line_total_minor_units: int


class PublicDocumentView(BaseModel):
    kind: str  # "invoice" | "offer"
    number: str
    public_id: str
    status: str
    share_url: str

    business_name: Optional[str] = None
    client_name: str

    currency: str
    amount_minor_units: int
    line_items: List[PublicLineItem]
    subtotal_minor_units: int
    discount_minor_units: int
    vat_minor_units: int
    vat_included: bool
    payment_processing_fee_minor_units: Optional[int] = None

    due_date: Optional[float] = None
    sent_at: Optional[float] = None
    notes: Optional[str] = None

    # Accepted offers point at their invoice share link.
    invoice_public_id: Optional[str] = None


class AuditEntry(BaseModel):
    entry_id: str
    owner_uid: str
    entity_type: str  # "invoice" | "offer"
    entity_id: str
    action: str
    meta: Dict[str, Any] = Field(default_factory=dict)
    created_at: float


class ActivityListResponse(BaseModel):
    entries: List[AuditEntry]
    total: int


class SettlementEventRecord(BaseModel):
    provider: str
    event_id: str
    event_type: str
    received_at: float

    processed_at: Optional[float] = None
    processing_error: Optional[str] = None

    invoice_id: Optional[str] = None
    checkout_session_id: Optional[str] = None

    # True when the event id had already been processed.
    duplicate: bool = False

    payload: Dict[str, Any] = Field(default_factory=dict)


class PaymentRecord(BaseModel):
    payment_id: str
    invoice_id: str
    amount_minor_units: int
    currency: str
    settlement_event_id: str
    paid_at: float


class RecurringRunResponse(BaseModel):
    ok: bool = True
    generated: int
    errors: int


class ReminderRunResponse(BaseModel):
    ok: bool = True
    sent: int
    errors: int


class ReminderActionResponse(BaseModel):
    ok: bool = True
    invoice_id: str
    last_reminder_at: float


class BillingSummaryResponse(BaseModel):
    outstanding_minor_units: Dict[str, int] = Field(default_factory=dict)
    overdue_minor_units: Dict[str, int] = Field(default_factory=dict)
    paid_minor_units_30d: Dict[str, int] = Field(default_factory=dict)

    open_invoice_count: int
    overdue_invoice_count: int
    open_offer_count: int
