from __future__ import annotations

from decimal import Decimal

from apps.api.billing import audit, recurring, repo
from apps.api.billing.models import RecurringSettingsRequest
from apps.api.billing.money import PricingConfig
from apps.api.utils import local_midnight_after_days

T0 = 1_700_000_000.0  # 2023-11-14T22:13:20Z
DAY = 86400.0


def _template(invoice_request, *, unit="days", value=7, **overrides):
    inv = repo.create_invoice(request=invoice_request(mark_sent=True, **overrides), owner_uid="owner1", now=T0)
    return repo.configure_recurring(
        invoice_id=inv.invoice_id,
        owner_uid="owner1",
        request=RecurringSettingsRequest(enabled=True, interval_unit=unit, interval_value=value),
        now=T0,
    )


def _children(fake_db, parent_id):
    return [d for d in fake_db.docs(repo.INVOICES).values() if d.get("recurring_parent_id") == parent_id]


def _run(sender, now, **kwargs):
    return recurring.run_recurring_invoices(now=now, sender=sender, tz_name="UTC", **kwargs)


def test_weekly_cycle_is_due_at_local_midnight(fake_db, invoice_request, sender):
    tpl = _template(invoice_request)

    early = _run(sender, T0 + 6 * DAY)
    assert (early.generated, early.errors) == (0, 0)
    assert _children(fake_db, tpl.invoice_id) == []

    res = _run(sender, T0 + 7 * DAY)
    assert (res.generated, res.errors) == (1, 0)

    [child] = _children(fake_db, tpl.invoice_id)
    assert child["status"] == "sent"
    assert child["sent_at"] == T0 + 7 * DAY
    assert child["recurring"] is False
    assert child["number"] == "INV-0002"
    assert child["line_items"] == fake_db.docs(repo.INVOICES)[tpl.invoice_id]["line_items"]

    stored_tpl = fake_db.docs(repo.INVOICES)[tpl.invoice_id]
    assert stored_tpl["last_recurred_at"] == T0 + 7 * DAY
    assert stored_tpl["recurring_claim_anchor"] is None

    assert len(sender.sent) == 1
    to, template, params = sender.sent[0]
    assert (to, template) == ("jane@example.com", "invoice")
    assert params["number"] == "INV-0002"

    actions = [e["action"] for e in fake_db.docs(audit.AUDIT_COLLECTION).values()]
    assert actions.count(audit.RECURRING_GENERATED) == 1


def test_second_run_in_same_interval_generates_nothing(fake_db, invoice_request, sender):
    tpl = _template(invoice_request)

    assert _run(sender, T0 + 7 * DAY).generated == 1
    assert _run(sender, T0 + 7 * DAY).generated == 0
    assert _run(sender, T0 + 8 * DAY).generated == 0
    assert len(_children(fake_db, tpl.invoice_id)) == 1

    # Next cycle anchors on the previous generation time.
    assert _run(sender, T0 + 14 * DAY).generated == 1
    assert len(_children(fake_db, tpl.invoice_id)) == 2


def test_minutes_interval_is_exact(fake_db, invoice_request, sender):
    tpl = _template(invoice_request, unit="minutes", value=30)

    assert _run(sender, T0 + 29 * 60).generated == 0
    assert _run(sender, T0 + 30 * 60).generated == 1
    assert len(_children(fake_db, tpl.invoice_id)) == 1


def test_generated_amount_is_recomputed(fake_db, invoice_request, sender):
    tpl = _template(invoice_request)
    assert tpl.amount_minor_units == 17400

    _run(sender, T0 + 7 * DAY, config=PricingConfig(vat_rate=Decimal("0.10")))
    [child] = _children(fake_db, tpl.invoice_id)
    assert child["amount_minor_units"] == 15950


def test_send_failure_keeps_invoice_but_not_the_cycle(fake_db, invoice_request, sender):
    tpl = _template(invoice_request)
    sender.fail = True

    res = _run(sender, T0 + 7 * DAY)
    assert (res.generated, res.errors) == (0, 1)
    assert len(_children(fake_db, tpl.invoice_id)) == 1
    stored_tpl = fake_db.docs(repo.INVOICES)[tpl.invoice_id]
    assert stored_tpl.get("last_recurred_at") is None
    assert stored_tpl["recurring_claim_anchor"] is None

    sender.fail = False
    retry = _run(sender, T0 + 7 * DAY + 3600)
    assert (retry.generated, retry.errors) == (1, 0)
    assert len(_children(fake_db, tpl.invoice_id)) == 2
    assert fake_db.docs(repo.INVOICES)[tpl.invoice_id]["last_recurred_at"] == T0 + 7 * DAY + 3600


def test_one_broken_template_does_not_stop_the_run(fake_db, invoice_request, sender):
    good = _template(invoice_request)
    bad = _template(invoice_request)
    # Leaves nothing to bill, so the recomputed amount is under the minimum.
    fake_db.collection(repo.INVOICES).document(bad.invoice_id).set({"line_items": []}, merge=True)

    res = _run(sender, T0 + 7 * DAY)
    assert (res.generated, res.errors) == (1, 1)
    assert len(_children(fake_db, good.invoice_id)) == 1
    assert _children(fake_db, bad.invoice_id) == []


def test_fresh_claim_blocks_concurrent_generation(fake_db, invoice_request, sender):
    tpl = _template(invoice_request)
    now = T0 + 7 * DAY
    fake_db.collection(repo.INVOICES).document(tpl.invoice_id).set(
        {"recurring_claim_anchor": T0, "recurring_claimed_at": now - 10}, merge=True
    )

    assert _run(sender, now).generated == 0
    assert _children(fake_db, tpl.invoice_id) == []

    # An abandoned claim past its TTL is taken over.
    assert _run(sender, now + 3600).generated == 1


def test_child_due_date_keeps_payment_terms(fake_db, invoice_request, sender):
    tpl = _template(invoice_request, due_date=T0 + 14 * DAY)
    now = T0 + 7 * DAY

    _run(sender, now)
    [child] = _children(fake_db, tpl.invoice_id)
    assert child["due_date"] == local_midnight_after_days(now, 14, "UTC")


def test_templates_need_client_email_and_open_status(fake_db, invoice_request, sender):
    no_email = _template(invoice_request, client_email=None)
    paid = _template(invoice_request)
    fake_db.collection(repo.INVOICES).document(paid.invoice_id).set({"status": "paid"}, merge=True)

    res = _run(sender, T0 + 30 * DAY)
    assert (res.generated, res.errors) == (0, 0)
    assert _children(fake_db, no_email.invoice_id) == []
    assert _children(fake_db, paid.invoice_id) == []


def test_generated_invoice_is_never_a_template(fake_db, invoice_request, sender):
    tpl = _template(invoice_request)
    _run(sender, T0 + 7 * DAY)
    [child] = _children(fake_db, tpl.invoice_id)

    assert recurring.is_template(repo.invoice_from_dict(child["invoice_id"], child)) is False


def test_child_without_template_terms_gets_default_due_date(fake_db, invoice_request, sender, monkeypatch):
    monkeypatch.setattr(recurring.settings, "RECURRING_DEFAULT_DUE_DAYS", 14)
    tpl = _template(invoice_request)
    assert tpl.due_date is None
    now = T0 + 7 * DAY

    _run(sender, now)
    [child] = _children(fake_db, tpl.invoice_id)
    assert child["due_date"] == local_midnight_after_days(now, 14, "UTC")

    monkeypatch.setattr(recurring.settings, "RECURRING_DEFAULT_DUE_DAYS", 0)
    _run(sender, now + 7 * DAY)
    later = [c for c in _children(fake_db, tpl.invoice_id) if c["invoice_id"] != child["invoice_id"]]
    assert later[0]["due_date"] == local_midnight_after_days(now + 7 * DAY, 1, "UTC")
