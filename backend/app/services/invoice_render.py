from __future__ import annotations

from html import escape

from app.models.invoice import Invoice, InvoiceStatus

STATUS_LABELS = {
    InvoiceStatus.draft: "Draft",
    InvoiceStatus.pending: "Pending",
    InvoiceStatus.paid: "Paid",
    InvoiceStatus.overdue: "Overdue",
    InvoiceStatus.cancelled: "Cancelled",
}

STYLE = """
body { font-family: Helvetica, Arial, sans-serif; color: #1e293b; margin: 40px; }
header { display: flex; justify-content: space-between; border-bottom: 1px solid #cbd5e1; }
table { width: 100%; border-collapse: collapse; margin-top: 24px; }
th, td { padding: 6px 8px; border-bottom: 1px solid #e2e8f0; text-align: left; }
td.num, th.num { text-align: right; }
.totals td { border: none; }
.badge { display: inline-block; padding: 2px 8px; border-radius: 4px; background: #f1f5f9; }
.cancelled { color: #b91c1c; }
"""


def format_eur(value: float | None) -> str:
    return f"{(value or 0):,.2f} €"


def _text(value) -> str:
    return escape(str(value)) if value not in (None, "") else ""


def _party_block(title: str, name: str | None, address: str | None, tax_id: str | None) -> str:
    lines = [f"<strong>{_text(title)}</strong>", _text(name)]
    if address:
        lines.append(_text(address))
    if tax_id:
        lines.append(f"NIF: {_text(tax_id)}")
    return "<div>" + "<br>".join(line for line in lines if line) + "</div>"


def _items_rows(invoice: Invoice) -> str:
    rows = []
    for item in invoice.items or []:
        quantity = item.get("quantity", 1) or 0
        unit_price = item.get("unit_price", 0) or 0
        rows.append(
            "<tr>"
            f"<td>{_text(item.get('description'))}</td>"
            f"<td class=\"num\">{quantity:g}</td>"
            f"<td class=\"num\">{format_eur(unit_price)}</td>"
            f"<td class=\"num\">{format_eur(quantity * unit_price)}</td>"
            "</tr>"
        )
    if not rows:
        rows.append(
            "<tr>"
            f"<td>{_text(invoice.description) or 'Professional services'}</td>"
            "<td class=\"num\">1</td>"
            f"<td class=\"num\">{format_eur(invoice.amount)}</td>"
            f"<td class=\"num\">{format_eur(invoice.amount)}</td>"
            "</tr>"
        )
    return "\n".join(rows)


def _totals_rows(invoice: Invoice) -> str:
    rows = [
        ("Subtotal", invoice.amount),
        (f"VAT ({invoice.tax_rate:g}%)", invoice.tax),
    ]
    if invoice.irpf_percent:
        rows.append((f"IRPF withholding ({invoice.irpf_percent:g}%)", -invoice.irpf_amount))
    rows.append(("Total", invoice.total))
    return "\n".join(
        f"<tr><td></td><td></td><td class=\"num\">{_text(label)}</td>"
        f"<td class=\"num\">{format_eur(value)}</td></tr>"
        for label, value in rows
    )


def render_invoice_html(invoice: Invoice, *, rectified_number: str | None = None) -> str:
    title = "Rectifying invoice" if invoice.is_rectificativa else "Invoice"
    status_label = STATUS_LABELS.get(invoice.status, invoice.status.value)
    status_class = "badge cancelled" if invoice.status == InvoiceStatus.cancelled else "badge"
    meta = [
        f"<strong>{_text(title)} {_text(invoice.invoice_number)}</strong>",
        f"Date: {_text(invoice.invoice_date.isoformat() if invoice.invoice_date else '')}",
    ]
    if invoice.due_date:
        meta.append(f"Due: {_text(invoice.due_date.isoformat())}")
    if rectified_number:
        meta.append(f"Rectifies: {_text(rectified_number)}")
    if invoice.rectification_reason:
        meta.append(f"Reason: {_text(invoice.rectification_reason)}")
    meta.append(f"<span class=\"{status_class}\">{_text(status_label)}</span>")
    issuer = _party_block(
        "Issued by",
        invoice.billing_psychologist_name,
        invoice.billing_psychologist_address,
        invoice.billing_psychologist_tax_id,
    )
    client = _party_block(
        "Billed to",
        invoice.billing_client_name,
        invoice.billing_client_address,
        invoice.billing_client_tax_id,
    )
    meta_html = "<br>".join(meta)

    return f"""<!DOCTYPE html>
<html lang="es">
<head>
<meta charset="utf-8">
<title>{_text(title)} {_text(invoice.invoice_number)}</title>
<style>{STYLE}</style>
</head>
<body>
<header>
{issuer}
<div>{meta_html}</div>
</header>
<section>
{client}
</section>
<table>
<thead><tr><th>Description</th><th class="num">Qty</th><th class="num">Unit price</th><th class="num">Amount</th></tr></thead>
<tbody>
{_items_rows(invoice)}
</tbody>
<tfoot class="totals">
{_totals_rows(invoice)}
</tfoot>
</table>
</body>
</html>
"""
