from datetime import date

from app.models import Bono, Invoice, InvoiceStatus, SessionStatus, TherapySession
from app.scripts.fix_paid_inconsistencies import fix_paid_flags
from app.scripts.invoice_links_backfill import backfill_links


def test_fix_paid_flags_dry_run_then_apply(db, patient, make_session):
    ok = make_session(patient, status=SessionStatus.completed, paid=True)
    broken = make_session(patient, status=SessionStatus.scheduled, paid=True)
    cancelled = make_session(patient, status=SessionStatus.cancelled, paid=True)

    assert fix_paid_flags(db, apply=False) == [broken.id, cancelled.id]
    db.rollback()
    db.expire_all()
    assert db.get(TherapySession, broken.id).paid is True

    assert fix_paid_flags(db, apply=True) == [broken.id, cancelled.id]
    db.commit()
    db.expire_all()
    assert db.get(TherapySession, broken.id).paid is False
    assert db.get(TherapySession, ok.id).paid is True
    assert fix_paid_flags(db, apply=False) == []


def _issued(db, psychologist, patient, number, *, session_ids=(), bono_ids=(), **fields):
    invoice = Invoice(
        psychologist_user_id=psychologist.id,
        patient_user_id=patient.id,
        invoice_number=number,
        invoice_date=date(2026, 3, 5),
        status=fields.pop("status", InvoiceStatus.pending),
        session_ids=list(session_ids),
        bono_ids=list(bono_ids),
        amount=100,
        total=121,
        **fields,
    )
    db.add(invoice)
    db.commit()
    return invoice


def test_backfill_restamps_lost_links(db, psychologist, patient, make_session, make_bono):
    session = make_session(patient)
    bono = make_bono(patient)
    invoice = _issued(db, psychologist, patient, "F2026-00001", session_ids=[session.id], bono_ids=[bono.id])

    preview = backfill_links(db, apply=False)
    assert (preview.invoices, preview.missing_sessions, preview.missing_bonos) == (1, 1, 1)
    db.expire_all()
    assert db.get(TherapySession, session.id).invoice_id is None

    applied = backfill_links(db, apply=True)
    assert (applied.stamped_sessions, applied.stamped_bonos) == (1, 1)
    db.expire_all()
    assert db.get(TherapySession, session.id).invoice_id == invoice.id
    assert db.get(Bono, bono.id).invoice_id == invoice.id
    assert backfill_links(db, apply=False).invoices == 0


def test_backfill_reports_conflicts_without_overwriting(db, psychologist, patient, make_session):
    first = _issued(db, psychologist, patient, "F2026-00001")
    session = make_session(patient, invoice_id=first.id)
    second = _issued(db, psychologist, patient, "F2026-00002", session_ids=[session.id])

    summary = backfill_links(db, apply=True)
    assert summary.conflicts == {second.id: [f"session:{session.id}"]}
    db.expire_all()
    assert db.get(TherapySession, session.id).invoice_id == first.id


def test_backfill_reclaims_links_left_by_cancelled_invoices(db, psychologist, patient, make_session):
    cancelled = _issued(db, psychologist, patient, "F2026-00001", status=InvoiceStatus.cancelled)
    session = make_session(patient, invoice_id=cancelled.id)
    rebilled = _issued(db, psychologist, patient, "F2026-00002", session_ids=[session.id])

    summary = backfill_links(db, apply=True)
    assert summary.conflicts == {}
    assert summary.stamped_sessions == 1
    db.expire_all()
    assert db.get(TherapySession, session.id).invoice_id == rebilled.id


def test_backfill_skips_drafts_and_credit_notes(db, psychologist, patient, make_session):
    session = make_session(patient)
    _issued(db, psychologist, patient, "F2026-00001", session_ids=[session.id], status=InvoiceStatus.draft)
    _issued(
        db,
        psychologist,
        patient,
        "R2026-00001",
        session_ids=[session.id],
        status=InvoiceStatus.paid,
        is_rectificativa=True,
    )
    assert backfill_links(db, apply=True).invoices == 0
