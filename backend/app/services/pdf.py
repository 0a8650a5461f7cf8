from __future__ import annotations

from io import BytesIO

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas
from reportlab.platypus import Table, TableStyle

from app.models.invoice import Invoice, InvoiceStatus
from app.services.invoice_render import STATUS_LABELS, format_eur


def _draw_party(
    pdf: canvas.Canvas, x: float, y: float, title: str, lines: list[str | None]
) -> None:
    pdf.setFont("Helvetica-Bold", 11)
    pdf.drawString(x, y, title)
    pdf.setFont("Helvetica", 10)
    for line in lines:
        if not line:
            continue
        y -= 5 * mm
        pdf.drawString(x, y, line)


def _draw_header(pdf: canvas.Canvas, invoice: Invoice, rectified_number: str | None) -> None:
    title = "Rectifying invoice" if invoice.is_rectificativa else "Invoice"
    pdf.setFont("Helvetica-Bold", 16)
    pdf.drawString(20 * mm, 280 * mm, invoice.billing_psychologist_name or "")
    pdf.setFont("Helvetica", 10)
    y = 274 * mm
    for line in [
        invoice.billing_psychologist_address,
        f"NIF: {invoice.billing_psychologist_tax_id}" if invoice.billing_psychologist_tax_id else None,
    ]:
        if line:
            pdf.drawString(20 * mm, y, line)
            y -= 4 * mm
    pdf.setFont("Helvetica-Bold", 14)
    pdf.drawRightString(190 * mm, 280 * mm, f"{title} {invoice.invoice_number}")
    pdf.setFont("Helvetica", 10)
    invoice_date = invoice.invoice_date.isoformat() if invoice.invoice_date else "-"
    pdf.drawRightString(190 * mm, 274 * mm, f"Date: {invoice_date}")
    if invoice.due_date:
        pdf.drawRightString(190 * mm, 270 * mm, f"Due: {invoice.due_date.isoformat()}")
    if rectified_number:
        pdf.drawRightString(190 * mm, 266 * mm, f"Rectifies: {rectified_number}")
    pdf.drawRightString(
        190 * mm, 262 * mm, f"Status: {STATUS_LABELS.get(invoice.status, invoice.status.value)}"
    )
    pdf.setStrokeColor(colors.lightgrey)
    pdf.line(20 * mm, 258 * mm, 190 * mm, 258 * mm)


def _draw_items_table(pdf: canvas.Canvas, invoice: Invoice) -> None:
    data = [["Description", "Qty", "Unit", "Amount"]]
    for item in invoice.items or []:
        quantity = item.get("quantity", 1) or 0
        unit_price = item.get("unit_price", 0) or 0
        data.append(
            [
                item.get("description", ""),
                f"{quantity:g}",
                format_eur(unit_price),
                format_eur(quantity * unit_price),
            ]
        )
    if len(data) == 1:
        data.append(
            [
                invoice.description or "Professional services",
                "1",
                format_eur(invoice.amount),
                format_eur(invoice.amount),
            ]
        )
    table = Table(data, colWidths=[95 * mm, 15 * mm, 25 * mm, 25 * mm])
    table.setStyle(
        TableStyle(
            [
                ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#f0f0f0")),
                ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                ("GRID", (0, 0), (-1, -1), 0.25, colors.lightgrey),
                ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
                ("ALIGN", (1, 1), (-1, -1), "RIGHT"),
            ]
        )
    )
    _width, height = table.wrapOn(pdf, 170 * mm, 120 * mm)
    table.drawOn(pdf, 20 * mm, 200 * mm - height)


def _draw_totals(pdf: canvas.Canvas, invoice: Invoice, y: float) -> None:
    rows = [("Subtotal", invoice.amount), (f"VAT {invoice.tax_rate:g}%", invoice.tax)]
    if invoice.irpf_percent:
        rows.append((f"IRPF {invoice.irpf_percent:g}%", -invoice.irpf_amount))
    pdf.setFont("Helvetica", 10)
    for label, value in rows:
        pdf.drawRightString(160 * mm, y, label)
        pdf.drawRightString(190 * mm, y, format_eur(value))
        y -= 12
    pdf.setFont("Helvetica-Bold", 11)
    pdf.drawRightString(160 * mm, y - 4, "Total")
    pdf.drawRightString(190 * mm, y - 4, format_eur(invoice.total))


def _draw_cancelled_watermark(pdf: canvas.Canvas) -> None:
    pdf.saveState()
    pdf.setFont("Helvetica-Bold", 60)
    pdf.setFillColor(colors.lightgrey)
    pdf.translate(105 * mm, 150 * mm)
    pdf.rotate(45)
    pdf.drawCentredString(0, 0, "CANCELLED")
    pdf.restoreState()


def build_invoice_pdf(invoice: Invoice, *, rectified_number: str | None = None) -> bytes:
    buffer = BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=A4)
    pdf.setTitle(f"Invoice {invoice.invoice_number}")
    _draw_header(pdf, invoice, rectified_number)
    _draw_party(
        pdf,
        20 * mm,
        245 * mm,
        "Billed to",
        [
            invoice.billing_client_name,
            invoice.billing_client_address,
            f"NIF: {invoice.billing_client_tax_id}" if invoice.billing_client_tax_id else None,
        ],
    )
    _draw_items_table(pdf, invoice)
    _draw_totals(pdf, invoice, 80 * mm)
    if invoice.status == InvoiceStatus.cancelled:
        _draw_cancelled_watermark(pdf)
    pdf.showPage()
    pdf.save()
    return buffer.getvalue()
