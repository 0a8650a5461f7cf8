import pytest
from sqlalchemy.exc import IntegrityError

from app.models import Invoice, InvoiceStatus, InvoiceType
from app.services import invoices as invoice_service
from app.services.errors import Conflict, ValidationError


def _stored(db, psychologist, number):
    db.add(
        Invoice(
            psychologist_user_id=psychologist.id,
            invoice_number=number,
            status=InvoiceStatus.paid,
        )
    )
    db.commit()


def test_next_number_uses_numeric_maximum(db, psychologist, other_psychologist):
    for number in ("R2026-00002", "R2026-00010", "R2026-00009", "R2025-00044", "F2026-00099"):
        _stored(db, psychologist, number)
    _stored(db, other_psychologist, "R2026-00500")

    number = invoice_service.next_invoice_number(
        db, psychologist_id=psychologist.id, prefix="R", year=2026
    )
    assert number == "R2026-00011"


def test_first_number_of_the_year(db, psychologist):
    assert (
        invoice_service.next_invoice_number(db, psychologist_id=psychologist.id, prefix="F", year=2027)
        == "F2027-00001"
    )


def test_unparseable_numbers_are_ignored(db, psychologist):
    _stored(db, psychologist, "F2026-manual")
    _stored(db, psychologist, "F2026-00003")
    number = invoice_service.next_invoice_number(
        db, psychologist_id=psychologist.id, prefix="F", year=2026
    )
    assert number == "F2026-00004"


def test_generated_number_retries_then_gives_up(db, monkeypatch):
    monkeypatch.setattr(invoice_service.settings, "invoice_number_retries", 3)
    calls = []

    def _collide():
        calls.append(1)
        raise IntegrityError("INSERT", {}, Exception("duplicate"))

    with pytest.raises(Conflict):
        invoice_service._with_number_retry(db, _collide, generated=True)
    assert len(calls) == 3


def test_retry_returns_first_success(db):
    attempts = iter([IntegrityError("INSERT", {}, Exception("duplicate")), None])

    def _flaky():
        outcome = next(attempts)
        if outcome:
            raise outcome
        return "R2026-00002"

    assert invoice_service._with_number_retry(db, _flaky, generated=True) == "R2026-00002"


def test_explicit_number_is_not_retried(db):
    calls = []

    def _collide():
        calls.append(1)
        raise IntegrityError("INSERT", {}, Exception("duplicate"))

    with pytest.raises(Conflict):
        invoice_service._with_number_retry(db, _collide, generated=False)
    assert len(calls) == 1


@pytest.mark.parametrize(
    "kwargs,expected",
    [
        ({"amount": 100}, (21.0, 0.0, 121.0)),
        ({"amount": 100, "tax_rate": 10}, (10.0, 0.0, 110.0)),
        ({"amount": 100, "tax": 0}, (0.0, 0.0, 100.0)),
        ({"amount": 1000, "tax_rate": 0, "irpf_percent": 15, "invoice_type": InvoiceType.center}, (0.0, 150.0, 850.0)),
        ({"amount": 1000, "tax_rate": 0, "irpf_percent": 15}, (0.0, 0.0, 1000.0)),
        ({"amount": 33.33}, (7.0, 0.0, 40.33)),
    ],
)
def test_compute_totals(kwargs, expected):
    params = {"tax": None, "tax_rate": None, "total": None, "irpf_percent": None, "invoice_type": InvoiceType.patient}
    params.update(kwargs)
    totals = invoice_service.compute_totals(**params)
    assert (totals.tax, totals.irpf_amount, totals.total) == expected


def test_compute_totals_rejects_mismatched_total():
    with pytest.raises(ValidationError):
        invoice_service.compute_totals(
            amount=100, tax=21, tax_rate=None, total=120, invoice_type=InvoiceType.patient, irpf_percent=None
        )


@pytest.mark.parametrize(
    "value,expected",
    [(None, InvoiceStatus.draft), ("bogus", InvoiceStatus.draft), ("paid", InvoiceStatus.paid), ("overdue", InvoiceStatus.overdue)],
)
def test_normalize_status(value, expected):
    assert invoice_service.normalize_status(value) == expected


def test_money_never_returns_negative_zero():
    assert str(invoice_service.money(-0.001)) == "0.0"
    assert invoice_service.money(-12.5) == -12.5
