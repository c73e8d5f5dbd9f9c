from __future__ import annotations

import pytest

from apps.api.billing import audit, reminders, repo
from apps.api.billing.errors import DeliveryError, InvalidTransitionError, ValidationError

T0 = 1_700_000_000.0  # 2023-11-14T22:13:20Z
DAY = 86400.0
HOUR = 3600.0


def _invoice(invoice_request, days=(1, 3, 7), **overrides):
    data = {"mark_sent": True, "auto_remind_enabled": True, "auto_remind_days": list(days)}
    data.update(overrides)
    return repo.create_invoice(request=invoice_request(**data), owner_uid="owner1", now=T0)


def _run(sender, now):
    return reminders.run_auto_reminders(now=now, sender=sender, tz_name="UTC")


def _stored(fake_db, inv):
    return fake_db.docs(repo.INVOICES)[inv.invoice_id]


def test_first_reminder_is_due_at_next_local_midnight(fake_db, invoice_request, sender):
    inv = _invoice(invoice_request)

    assert _run(sender, T0 + HOUR).sent == 0

    res = _run(sender, T0 + 2 * HOUR)
    assert (res.sent, res.errors) == (1, 0)
    assert _stored(fake_db, inv)["reminder_1d_sent_at"] == T0 + 2 * HOUR
    assert _stored(fake_db, inv)["reminder_3d_sent_at"] is None

    to, template, params = sender.sent[0]
    assert (to, template) == ("jane@example.com", "reminder")
    assert params["number"] == inv.number
    assert params["business_name"] == "Acme Studio"


def test_fired_offsets_do_not_fire_again(fake_db, invoice_request, sender):
    _invoice(invoice_request)

    assert _run(sender, T0 + 2 * HOUR).sent == 1
    assert _run(sender, T0 + 3 * HOUR).sent == 0
    assert _run(sender, T0 + 3 * DAY).sent == 1
    assert _run(sender, T0 + 3 * DAY + HOUR).sent == 0
    assert len(sender.sent) == 2


def test_missed_runs_catch_up_every_flagged_offset(fake_db, invoice_request, sender):
    inv = _invoice(invoice_request)

    res = _run(sender, T0 + 8 * DAY)
    assert res.sent == 3
    stored = _stored(fake_db, inv)
    assert stored["reminder_1d_sent_at"] and stored["reminder_3d_sent_at"] and stored["reminder_7d_sent_at"]

    entries = [e for e in fake_db.docs(audit.AUDIT_COLLECTION).values() if e["action"] == audit.REMINDER_SENT]
    assert sorted(e["meta"]["offset_days"] for e in entries) == [1, 3, 7]


def test_failed_send_leaves_offset_unfired(fake_db, invoice_request, sender):
    inv = _invoice(invoice_request, days=[1])
    sender.fail = True

    res = _run(sender, T0 + DAY)
    assert (res.sent, res.errors) == (0, 1)
    assert _stored(fake_db, inv)["reminder_1d_sent_at"] is None
    assert _stored(fake_db, inv)["last_reminder_at"] is None

    sender.fail = False
    assert _run(sender, T0 + DAY + HOUR).sent == 1


def test_paid_and_disabled_invoices_are_skipped(fake_db, invoice_request, sender):
    paid = _invoice(invoice_request)
    repo.mark_invoice_paid(invoice_id=paid.invoice_id, owner_uid="owner1", now=T0 + HOUR)
    _invoice(invoice_request, auto_remind_enabled=False)
    _invoice(invoice_request, client_email=None)
    draft = repo.create_invoice(
        request=invoice_request(auto_remind_enabled=True), owner_uid="owner1", now=T0
    )

    res = _run(sender, T0 + 10 * DAY)
    assert (res.sent, res.errors) == (0, 0)
    assert draft.status.value == "draft"


def test_generic_offset_fires_once(fake_db, invoice_request, sender):
    inv = _invoice(invoice_request, days=[2])

    assert _run(sender, T0 + DAY).sent == 0
    assert _run(sender, T0 + 1.5 * DAY).sent == 1
    assert _stored(fake_db, inv)["last_reminder_at"] == T0 + 1.5 * DAY
    assert _stored(fake_db, inv)["reminder_offsets_sent_at"] == {"2": T0 + 1.5 * DAY}
    assert _run(sender, T0 + 1.6 * DAY).sent == 0


def test_claim_is_conditional_on_flag_still_unset(fake_db, invoice_request, sender):
    inv = _invoice(invoice_request, days=[1])
    stale = repo.get_invoice(invoice_id=inv.invoice_id)
    profile = repo.get_profile("owner1")

    # Another run fired the offset after our snapshot was taken.
    fake_db.collection(repo.INVOICES).document(inv.invoice_id).set({"reminder_1d_sent_at": T0 + DAY}, merge=True)

    fired = reminders.remind_invoice(stale, 1, now=T0 + DAY + 1, sender=sender, profile=profile, tz_name="UTC")
    assert fired is False
    assert sender.sent == []


def test_manual_reminder_rate_limited(fake_db, invoice_request, sender):
    inv = _invoice(invoice_request, auto_remind_enabled=False)

    res = reminders.send_manual_reminder(invoice_id=inv.invoice_id, owner_uid="owner1", now=T0 + HOUR, sender=sender)
    assert res.last_reminder_at == T0 + HOUR

    with pytest.raises(ValidationError, match="already sent"):
        reminders.send_manual_reminder(invoice_id=inv.invoice_id, owner_uid="owner1", now=T0 + 23 * HOUR, sender=sender)

    again = reminders.send_manual_reminder(invoice_id=inv.invoice_id, owner_uid="owner1", now=T0 + 25 * HOUR, sender=sender)
    assert again.last_reminder_at == T0 + 25 * HOUR
    assert len(sender.sent) == 2


def test_manual_reminder_ignores_auto_flags(fake_db, invoice_request, sender):
    inv = _invoice(invoice_request, days=[1])
    fake_db.collection(repo.INVOICES).document(inv.invoice_id).set({"reminder_1d_sent_at": T0 + HOUR}, merge=True)

    res = reminders.send_manual_reminder(invoice_id=inv.invoice_id, owner_uid="owner1", now=T0 + 2 * HOUR, sender=sender)
    assert res.last_reminder_at == T0 + 2 * HOUR


def test_manual_reminder_requires_open_invoice(fake_db, invoice_request, sender):
    draft = repo.create_invoice(request=invoice_request(), owner_uid="owner1", now=T0)
    with pytest.raises(InvalidTransitionError):
        reminders.send_manual_reminder(invoice_id=draft.invoice_id, owner_uid="owner1", now=T0 + 1, sender=sender)
    assert sender.sent == []


def test_manual_reminder_failure_restores_window(fake_db, invoice_request, sender):
    inv = _invoice(invoice_request, auto_remind_enabled=False)
    sender.fail = True

    with pytest.raises(DeliveryError):
        reminders.send_manual_reminder(invoice_id=inv.invoice_id, owner_uid="owner1", now=T0 + HOUR, sender=sender)
    assert _stored(fake_db, inv)["last_reminder_at"] is None

    sender.fail = False
    res = reminders.send_manual_reminder(invoice_id=inv.invoice_id, owner_uid="owner1", now=T0 + 2 * HOUR, sender=sender)
    assert res.last_reminder_at == T0 + 2 * HOUR


def test_flagged_and_generic_offsets_due_in_one_run_both_fire(fake_db, invoice_request, sender):
    inv = _invoice(invoice_request, days=[1, 2])

    res = _run(sender, T0 + 2 * DAY)
    assert (res.sent, res.errors) == (2, 0)
    stored = _stored(fake_db, inv)
    assert stored["reminder_1d_sent_at"] == T0 + 2 * DAY
    assert stored["reminder_offsets_sent_at"] == {"2": T0 + 2 * DAY}

    assert _run(sender, T0 + 3 * DAY).sent == 0
    assert len(sender.sent) == 2


def test_failed_generic_offset_is_retried(fake_db, invoice_request, sender):
    inv = _invoice(invoice_request, days=[2, 5])
    _run(sender, T0 + 2 * DAY)

    sender.fail = True
    assert _run(sender, T0 + 5 * DAY).errors == 1
    assert _stored(fake_db, inv)["reminder_offsets_sent_at"] == {"2": T0 + 2 * DAY}
    assert _stored(fake_db, inv)["last_reminder_at"] == T0 + 2 * DAY

    sender.fail = False
    assert _run(sender, T0 + 5 * DAY + HOUR).sent == 1
    assert set(_stored(fake_db, inv)["reminder_offsets_sent_at"]) == {"2", "5"}
