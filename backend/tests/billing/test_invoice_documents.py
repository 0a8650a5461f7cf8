from datetime import date

from app.models import Invoice, InvoiceStatus, InvoiceType
from app.services.invoice_render import format_eur, render_invoice_html
from app.services.pdf import build_invoice_pdf


def _invoice(**overrides) -> Invoice:
    fields = dict(
        psychologist_user_id=1,
        patient_user_id=2,
        invoice_type=InvoiceType.patient,
        invoice_number="F2026-00007",
        invoice_date=date(2026, 3, 5),
        due_date=date(2026, 4, 4),
        status=InvoiceStatus.pending,
        description=None,
        items=[{"description": "Sesión individual", "quantity": 2, "unit_price": 60}],
        session_ids=[],
        bono_ids=[],
        amount=120.0,
        tax=25.2,
        tax_rate=21.0,
        irpf_percent=None,
        irpf_amount=0.0,
        total=145.2,
        billing_client_name="Marta López",
        billing_client_address="Calle Luna 3, 28004, Madrid",
        billing_client_tax_id="87654321X",
        billing_psychologist_name="Ana Ruiz",
        billing_psychologist_address="Calle Mayor 1, 28013, Madrid, España",
        billing_psychologist_tax_id="12345678Z",
        is_rectificativa=False,
        rectification_reason=None,
    )
    fields.update(overrides)
    return Invoice(**fields)


def test_format_eur():
    assert format_eur(1234.5) == "1,234.50 €"
    assert format_eur(None) == "0.00 €"


def test_html_renders_the_billing_snapshot():
    html = render_invoice_html(_invoice())
    assert "Invoice F2026-00007" in html
    assert "Marta López" in html
    assert "NIF: 12345678Z" in html
    assert "145.20 €" in html
    assert "VAT (21%)" in html
    assert "IRPF" not in html
    assert "Pending" in html


def test_html_escapes_free_text():
    html = render_invoice_html(
        _invoice(items=[{"description": "<script>alert(1)</script>", "quantity": 1, "unit_price": 1}])
    )
    assert "<script>" not in html
    assert "&lt;script&gt;" in html


def test_html_without_items_falls_back_to_description():
    html = render_invoice_html(_invoice(items=[], description="Acompañamiento terapéutico"))
    assert "Acompañamiento terapéutico" in html


def test_rectification_document_references_original():
    credit = _invoice(
        invoice_number="R2026-00001",
        status=InvoiceStatus.paid,
        is_rectificativa=True,
        rectification_reason="Duplicated",
        amount=-120.0,
        tax=-25.2,
        total=-145.2,
    )
    html = render_invoice_html(credit, rectified_number="F2026-00007")
    assert "Rectifying invoice R2026-00001" in html
    assert "Rectifies: F2026-00007" in html
    assert "-145.20 €" in html


def test_center_invoice_shows_withholding():
    html = render_invoice_html(
        _invoice(
            invoice_type=InvoiceType.center,
            irpf_percent=15.0,
            irpf_amount=18.0,
            total=127.2,
        )
    )
    assert "IRPF withholding (15%)" in html
    assert "-18.00 €" in html


def test_cancelled_badge():
    html = render_invoice_html(_invoice(status=InvoiceStatus.cancelled))
    assert 'class="badge cancelled"' in html


def test_pdf_bytes():
    for invoice in (
        _invoice(),
        _invoice(status=InvoiceStatus.cancelled),
        _invoice(is_rectificativa=True, amount=-120.0, tax=-25.2, total=-145.2),
    ):
        pdf = build_invoice_pdf(invoice, rectified_number="F2026-00001")
        assert pdf.startswith(b"%PDF")
        assert len(pdf) > 500
