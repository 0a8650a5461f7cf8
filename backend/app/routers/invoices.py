from datetime import date

from fastapi import APIRouter, Depends, Query, Response
from fastapi.responses import HTMLResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.deps import (
    client_context,
    get_current_user,
    require_psychologist,
    resolve_psychologist_id,
)
from app.models.invoice import Invoice, InvoiceStatus
from app.models.user import Role, User
from app.schemas.audit_log import AuditLogOut
from app.schemas.invoice import (
    InvoiceCreate,
    InvoiceOut,
    InvoiceUpdate,
    RectificationOut,
    RectifyRequest,
)
from app.services import invoices as invoice_service
from app.services.audit import entity_history
from app.services.errors import NotFound
from app.services.invoice_render import render_invoice_html
from app.services.pdf import build_invoice_pdf

router = APIRouter(prefix="/invoices", tags=["invoices"])


def get_visible_invoice(db: Session, invoice_id: int, user: User) -> Invoice:
    invoice = db.get(Invoice, invoice_id)
    if invoice:
        if user.role == Role.psychologist and invoice.psychologist_user_id == user.id:
            return invoice
        if (
            user.role == Role.patient
            and invoice.patient_user_id == user.id
            and invoice.status != InvoiceStatus.draft
        ):
            return invoice
    raise NotFound("Invoice not found", ids=[invoice_id])


def get_owned_invoice(db: Session, invoice_id: int, user: User) -> Invoice:
    invoice = db.get(Invoice, invoice_id)
    if not invoice or invoice.psychologist_user_id != user.id:
        raise NotFound("Invoice not found", ids=[invoice_id])
    return invoice


def _rectified_number(db: Session, invoice: Invoice) -> str | None:
    if not invoice.rectifies_invoice_id:
        return None
    return db.scalar(
        select(Invoice.invoice_number).where(Invoice.id == invoice.rectifies_invoice_id)
    )


@router.get("", response_model=list[InvoiceOut])
def list_invoices(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    psychologist_user_id: int | None = Query(default=None),
    patient_user_id: int | None = Query(default=None),
    center_id: int | None = Query(default=None),
    status: InvoiceStatus | None = Query(default=None),
    start: date | None = Query(default=None),
    end: date | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
):
    stmt = select(Invoice)
    if user.role == Role.psychologist:
        stmt = stmt.where(Invoice.psychologist_user_id == user.id)
        if patient_user_id is not None:
            stmt = stmt.where(Invoice.patient_user_id == patient_user_id)
    else:
        stmt = stmt.where(
            Invoice.patient_user_id == user.id, Invoice.status != InvoiceStatus.draft
        )
        if psychologist_user_id is not None:
            stmt = stmt.where(Invoice.psychologist_user_id == psychologist_user_id)
    if center_id is not None:
        stmt = stmt.where(Invoice.center_id == center_id)
    if status is not None:
        stmt = stmt.where(Invoice.status == status)
    if start is not None:
        stmt = stmt.where(Invoice.invoice_date >= start)
    if end is not None:
        stmt = stmt.where(Invoice.invoice_date <= end)
    stmt = (
        stmt.order_by(Invoice.invoice_date.desc(), Invoice.id.desc()).limit(limit).offset(offset)
    )
    return list(db.scalars(stmt))


@router.post("", response_model=InvoiceOut, status_code=201)
def create_invoice(
    payload: InvoiceCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_psychologist),
    context: dict = Depends(client_context),
):
    psychologist_id = resolve_psychologist_id(payload.psychologist_user_id, user)
    return invoice_service.create_invoice(
        db, payload, psychologist_id=psychologist_id, actor=user, **context
    )


@router.get("/{invoice_id}", response_model=InvoiceOut)
def get_invoice(
    invoice_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return get_visible_invoice(db, invoice_id, user)


@router.patch("/{invoice_id}", response_model=InvoiceOut)
def update_invoice(
    invoice_id: int,
    payload: InvoiceUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_psychologist),
    context: dict = Depends(client_context),
):
    get_owned_invoice(db, invoice_id, user)
    return invoice_service.update_invoice(db, invoice_id, payload, actor=user, **context)


@router.post("/{invoice_id}/cancel", response_model=InvoiceOut)
def cancel_invoice(
    invoice_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_psychologist),
    context: dict = Depends(client_context),
):
    get_owned_invoice(db, invoice_id, user)
    return invoice_service.cancel_invoice(db, invoice_id, actor=user, **context)


@router.post("/{invoice_id}/rectify", response_model=RectificationOut)
def rectify_invoice(
    invoice_id: int,
    payload: RectifyRequest | None = None,
    db: Session = Depends(get_db),
    user: User = Depends(require_psychologist),
    context: dict = Depends(client_context),
):
    get_owned_invoice(db, invoice_id, user)
    original, rectificativa = invoice_service.rectify_invoice(
        db,
        invoice_id,
        actor=user,
        reason=payload.reason if payload else None,
        **context,
    )
    return RectificationOut(
        original=InvoiceOut.model_validate(original),
        rectificativa=InvoiceOut.model_validate(rectificativa),
    )


@router.delete("/{invoice_id}")
def delete_invoice(
    invoice_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_psychologist),
    context: dict = Depends(client_context),
) -> dict[str, object]:
    get_owned_invoice(db, invoice_id, user)
    invoice_service.delete_invoice(db, invoice_id, actor=user, **context)
    return {"id": invoice_id, "deleted": True}


@router.get("/{invoice_id}/pdf", response_class=HTMLResponse)
def get_invoice_document(
    invoice_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    invoice = get_visible_invoice(db, invoice_id, user)
    return HTMLResponse(render_invoice_html(invoice, rectified_number=_rectified_number(db, invoice)))


@router.get("/{invoice_id}/invoice.pdf")
def get_invoice_pdf(
    invoice_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    invoice = get_visible_invoice(db, invoice_id, user)
    pdf_bytes = build_invoice_pdf(invoice, rectified_number=_rectified_number(db, invoice))
    filename = f"invoice-{invoice.invoice_number}.pdf"
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    return Response(content=pdf_bytes, media_type="application/pdf", headers=headers)


@router.get("/{invoice_id}/history", response_model=list[AuditLogOut])
def get_invoice_history(
    invoice_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_psychologist),
):
    get_owned_invoice(db, invoice_id, user)
    return entity_history(db, entity_type="invoice", entity_id=invoice_id)
