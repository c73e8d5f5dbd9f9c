import pytest

from apps.api.billing.errors import InvalidTransitionError
from apps.api.billing.models import InvoiceRecord, InvoiceStatus, OfferRecord, OfferStatus
from apps.api.billing.state import (
    due_day_passed,
    assert_invoice_transition,
    assert_offer_transition,
    can_transition_invoice,
    can_transition_offer,
    invoice_display_status,
    offer_display_status,
    with_display_status,
)

NOW = 1_700_000_000.0  # 2023-11-14T22:13:20Z
DAY = 86400.0


def _invoice(status: InvoiceStatus, due_date=None) -> InvoiceRecord:
    return InvoiceRecord(
        invoice_id="i1",
        owner_uid="owner1",
        number="INV-0001",
        public_id="pub-i1",
        status=status,
        amount_minor_units=1000,
        client_name="Jane",
        due_date=due_date,
        created_at=NOW - 10,
        updated_at=NOW - 10,
    )


def _offer(status: OfferStatus, due_date=None) -> OfferRecord:
    return OfferRecord(
        offer_id="o1",
        owner_uid="owner1",
        number="OFF-0001",
        public_id="pub-o1",
        status=status,
        amount_minor_units=1000,
        client_name="Jane",
        due_date=due_date,
        created_at=NOW - 10,
        updated_at=NOW - 10,
    )


def test_invoice_happy_path():
    assert_invoice_transition(InvoiceStatus.DRAFT, InvoiceStatus.SENT)
    assert_invoice_transition(InvoiceStatus.SENT, InvoiceStatus.VIEWED)
    assert_invoice_transition(InvoiceStatus.VIEWED, InvoiceStatus.PAID)


def test_invoice_void_allowed_until_paid():
    for status in (InvoiceStatus.DRAFT, InvoiceStatus.SENT, InvoiceStatus.VIEWED):
        assert can_transition_invoice(status, InvoiceStatus.VOID)
    with pytest.raises(InvalidTransitionError) as exc:
        assert_invoice_transition(InvoiceStatus.PAID, InvoiceStatus.VOID)
    assert exc.value.already_in_state is False


def test_invoice_terminal_states_reject_everything():
    for target in InvoiceStatus:
        assert not can_transition_invoice(InvoiceStatus.PAID, target)
        assert not can_transition_invoice(InvoiceStatus.VOID, target)


def test_viewed_never_regresses_to_sent():
    assert not can_transition_invoice(InvoiceStatus.VIEWED, InvoiceStatus.SENT)
    assert not can_transition_offer(OfferStatus.VIEWED, OfferStatus.SENT)


def test_repeat_transition_is_reported_as_already_in_state():
    with pytest.raises(InvalidTransitionError) as exc:
        assert_invoice_transition(InvoiceStatus.VOID, InvoiceStatus.VOID)
    assert exc.value.already_in_state is True
    assert "already void" in str(exc.value)


def test_overdue_is_never_a_stored_transition_target():
    for status in InvoiceStatus:
        assert not can_transition_invoice(status, InvoiceStatus.OVERDUE)


def test_offer_accept_and_decline_only_after_sending():
    with pytest.raises(InvalidTransitionError):
        assert_offer_transition(OfferStatus.DRAFT, OfferStatus.ACCEPTED)
    with pytest.raises(InvalidTransitionError):
        assert_offer_transition(OfferStatus.DRAFT, OfferStatus.DECLINED)
    assert_offer_transition(OfferStatus.SENT, OfferStatus.ACCEPTED)
    assert_offer_transition(OfferStatus.VIEWED, OfferStatus.DECLINED)

    with pytest.raises(InvalidTransitionError) as exc:
        assert_offer_transition(OfferStatus.ACCEPTED, OfferStatus.ACCEPTED)
    assert exc.value.already_in_state is True
    with pytest.raises(InvalidTransitionError):
        assert_offer_transition(OfferStatus.DECLINED, OfferStatus.ACCEPTED)


def test_invoice_display_status_projects_overdue():
    assert invoice_display_status(_invoice(InvoiceStatus.SENT, due_date=NOW - DAY), NOW) == InvoiceStatus.OVERDUE
    assert invoice_display_status(_invoice(InvoiceStatus.VIEWED, due_date=NOW - DAY), NOW) == InvoiceStatus.OVERDUE
    assert invoice_display_status(_invoice(InvoiceStatus.SENT, due_date=NOW + 1), NOW) == InvoiceStatus.SENT
    assert invoice_display_status(_invoice(InvoiceStatus.PAID, due_date=NOW - DAY), NOW) == InvoiceStatus.PAID
    assert invoice_display_status(_invoice(InvoiceStatus.DRAFT, due_date=NOW - DAY), NOW) == InvoiceStatus.DRAFT
    assert invoice_display_status(_invoice(InvoiceStatus.SENT), NOW) == InvoiceStatus.SENT


def test_offer_display_status_projects_expired():
    assert offer_display_status(_offer(OfferStatus.SENT, due_date=NOW - DAY), NOW) == OfferStatus.EXPIRED
    assert offer_display_status(_offer(OfferStatus.ACCEPTED, due_date=NOW - DAY), NOW) == OfferStatus.ACCEPTED


def test_with_display_status_leaves_stored_status_alone():
    inv = with_display_status(_invoice(InvoiceStatus.SENT, due_date=NOW - DAY), NOW)
    assert inv.status == InvoiceStatus.SENT
    assert inv.display_status == "overdue"


def test_due_date_is_not_overdue_during_its_own_day():
    due = 1_896_048_000.0  # 2030-01-31T00:00:00Z
    noon = due + 12 * 3600

    assert invoice_display_status(_invoice(InvoiceStatus.SENT, due_date=due), noon, "UTC") == InvoiceStatus.SENT
    assert offer_display_status(_offer(OfferStatus.SENT, due_date=due), noon, "UTC") == OfferStatus.SENT
    assert invoice_display_status(_invoice(InvoiceStatus.SENT, due_date=due), due + DAY, "UTC") == InvoiceStatus.OVERDUE
    assert offer_display_status(_offer(OfferStatus.VIEWED, due_date=due), due + DAY, "UTC") == OfferStatus.EXPIRED


def test_due_day_follows_business_timezone():
    due = 1_896_048_000.0  # 2030-01-31T00:00:00Z, still Jan 30 in New York
    assert due_day_passed(due, due + 6 * 3600, "America/New_York") is True
    assert due_day_passed(due, due + 6 * 3600, "UTC") is False
    assert due_day_passed(None, due, "UTC") is False
