"""Invoice lifecycle: creation, edits, cancellation, rectification, deletion.

An invoice is committed first; stamping its id onto the sessions and bonos it
covers is a separate, best-effort write. Every claim on a session or bono is a
conditional UPDATE so a concurrent request can never overwrite another
invoice's link or invoice a session already covered by a bono.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Callable, Iterable, TypeVar

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.settings import settings
from app.models.bono import Bono
from app.models.center import Center
from app.models.invoice import ISSUED_STATUSES, Invoice, InvoiceStatus, InvoiceType
from app.models.therapy_session import TherapySession
from app.models.user import User
from app.schemas.invoice import InvoiceCreate, InvoiceUpdate
from app.services.audit import log_event, snapshot_model
from app.services.errors import Conflict, Forbidden, NotFound, ValidationError

logger = logging.getLogger("dygo.billing")

INVOICE_PREFIX = "F"
RECTIFICATION_PREFIX = "R"
TOTAL_TOLERANCE = 0.01

T = TypeVar("T")


@dataclass(frozen=True)
class InvoiceTotals:
    amount: float
    tax: float
    tax_rate: float
    irpf_percent: float | None
    irpf_amount: float
    total: float


@dataclass
class LinkReport:
    invoice_id: int
    stamped_sessions: int = 0
    stamped_bonos: int = 0
    skipped_session_ids: list[int] = field(default_factory=list)
    skipped_bono_ids: list[int] = field(default_factory=list)
    failed: bool = False

    @property
    def complete(self) -> bool:
        return not self.failed and not self.skipped_session_ids and not self.skipped_bono_ids


def money(value: float) -> float:
    rounded = round(float(value), 2)
    return rounded + 0.0 if rounded else 0.0


def _negate(value: float | None) -> float:
    return money(-(value or 0))


def _unique_ids(ids: Iterable[int]) -> list[int]:
    seen: dict[int, None] = {}
    for value in ids:
        seen.setdefault(int(value), None)
    return list(seen)


def normalize_status(value: str | InvoiceStatus | None) -> InvoiceStatus:
    if value is None:
        return InvoiceStatus.draft
    try:
        return InvoiceStatus(value)
    except ValueError:
        return InvoiceStatus.draft


def compute_totals(
    *,
    amount: float,
    tax: float | None,
    tax_rate: float | None,
    total: float | None,
    invoice_type: InvoiceType,
    irpf_percent: float | None,
) -> InvoiceTotals:
    rate = settings.default_tax_rate if tax_rate is None else tax_rate
    amount = money(amount)
    tax_value = money(amount * rate / 100) if tax is None else money(tax)
    irpf = irpf_percent if invoice_type == InvoiceType.center else None
    irpf_amount = money(amount * irpf / 100) if irpf else 0.0
    expected = money(amount + tax_value - irpf_amount)
    if total is not None and abs(money(total) - expected) > TOTAL_TOLERANCE:
        raise ValidationError(
            f"total {money(total):.2f} does not match amount + tax - irpf ({expected:.2f})"
        )
    return InvoiceTotals(
        amount=amount,
        tax=tax_value,
        tax_rate=rate,
        irpf_percent=irpf,
        irpf_amount=irpf_amount,
        total=money(total) if total is not None else expected,
    )


def _apply_totals(invoice: Invoice, totals: InvoiceTotals) -> None:
    invoice.amount = totals.amount
    invoice.tax = totals.tax
    invoice.tax_rate = totals.tax_rate
    invoice.irpf_percent = totals.irpf_percent
    invoice.irpf_amount = totals.irpf_amount
    invoice.total = totals.total


def _number_suffix(number: str, prefix: str) -> int | None:
    suffix = number[len(prefix):].lstrip("-")
    return int(suffix) if suffix.isdigit() else None


def next_invoice_number(db: Session, *, psychologist_id: int, prefix: str, year: int) -> str:
    series = f"{prefix}{year}"
    stmt = select(Invoice.invoice_number).where(
        Invoice.psychologist_user_id == psychologist_id,
        Invoice.invoice_number.like(f"{series}%"),
    )
    suffixes = [
        suffix
        for suffix in (_number_suffix(number, series) for number in db.scalars(stmt))
        if suffix is not None
    ]
    return f"{series}-{max(suffixes, default=0) + 1:05d}"


def _with_number_retry(db: Session, operation: Callable[[], T], *, generated: bool) -> T:
    attempts = settings.invoice_number_retries if generated else 1
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except IntegrityError:
            db.rollback()
            if not generated:
                raise Conflict("Invoice number already in use")
            logger.warning("Invoice number collision (attempt %s/%s)", attempt, attempts)
    raise Conflict("Could not allocate a unique invoice number")


def get_invoice_or_404(db: Session, invoice_id: int) -> Invoice:
    invoice = db.get(Invoice, invoice_id)
    if not invoice:
        raise NotFound("Invoice not found", ids=[invoice_id])
    return invoice


def billing_snapshot(
    db: Session,
    *,
    psychologist_id: int,
    invoice_type: InvoiceType,
    patient_user_id: int | None,
    center_id: int | None,
) -> dict[str, str | None]:
    psychologist = db.get(User, psychologist_id)
    if not psychologist:
        raise NotFound("Psychologist not found", ids=[psychologist_id])
    snapshot: dict[str, str | None] = {
        "billing_psychologist_name": psychologist.display_name,
        "billing_psychologist_address": psychologist.postal_address or None,
        "billing_psychologist_tax_id": psychologist.dni,
    }
    if invoice_type == InvoiceType.center:
        center = db.get(Center, center_id) if center_id is not None else None
        if not center or center.psychologist_user_id != psychologist_id:
            raise NotFound("Center not found", ids=[center_id] if center_id else None)
        snapshot.update(
            billing_client_name=center.center_name,
            billing_client_address=center.postal_address or None,
            billing_client_tax_id=center.cif,
        )
    else:
        patient = db.get(User, patient_user_id) if patient_user_id is not None else None
        if not patient:
            raise NotFound("Patient not found", ids=[patient_user_id] if patient_user_id else None)
        snapshot.update(
            billing_client_name=patient.display_name,
            billing_client_address=patient.postal_address or None,
            billing_client_tax_id=patient.dni,
        )
    return snapshot


def free_invoice_link(column, invoice_id: int | None = None):
    """SQL condition for an ``invoice_id`` column that does not block billing.

    Empty links and links to cancelled invoices are free; so is a link to
    ``invoice_id`` itself when it is given.
    """
    cancelled = select(Invoice.id).where(Invoice.status == InvoiceStatus.cancelled)
    clauses = [column.is_(None), column.in_(cancelled)]
    if invoice_id is not None:
        clauses.append(column == invoice_id)
    return or_(*clauses)


def live_invoice_ids(db: Session, invoice_ids: Iterable[int | None]) -> set[int]:
    ids = {value for value in invoice_ids if value is not None}
    if not ids:
        return set()
    stmt = select(Invoice.id).where(
        Invoice.id.in_(ids), Invoice.status != InvoiceStatus.cancelled
    )
    return set(db.scalars(stmt))


def listed_elsewhere(
    db: Session,
    *,
    psychologist_id: int,
    session_ids: list[int],
    bono_ids: list[int],
    exclude_invoice_id: int | None,
) -> tuple[set[int], set[int]]:
    stmt = select(Invoice).where(
        Invoice.psychologist_user_id == psychologist_id,
        Invoice.status != InvoiceStatus.cancelled,
    )
    if exclude_invoice_id is not None:
        stmt = stmt.where(Invoice.id != exclude_invoice_id)
    wanted_sessions = set(session_ids)
    wanted_bonos = set(bono_ids)
    sessions: set[int] = set()
    bonos: set[int] = set()
    for other in db.scalars(stmt):
        sessions |= wanted_sessions & set(other.session_ids or [])
        bonos |= wanted_bonos & set(other.bono_ids or [])
    return sessions, bonos


def validate_billable_items(
    db: Session,
    *,
    psychologist_id: int,
    session_ids: list[int],
    bono_ids: list[int],
    invoice_id: int | None = None,
) -> None:
    if session_ids:
        sessions = list(
            db.scalars(select(TherapySession).where(TherapySession.id.in_(session_ids)))
        )
        found = {session.id for session in sessions}
        missing = set(session_ids) - found
        foreign = {s.id for s in sessions if s.psychologist_user_id != psychologist_id}
        if missing or foreign:
            raise NotFound("Sessions not found", ids=missing | foreign)
        on_bono = {s.id for s in sessions if s.bonus_id is not None}
        if on_bono:
            raise Conflict("Sessions are already covered by a bono", ids=on_bono)
        live = live_invoice_ids(db, (s.invoice_id for s in sessions))
        invoiced = {s.id for s in sessions if s.invoice_id in live and s.invoice_id != invoice_id}
        if invoiced:
            raise Conflict("Sessions are already invoiced", ids=invoiced)

    if bono_ids:
        bonos = list(db.scalars(select(Bono).where(Bono.id.in_(bono_ids))))
        found = {bono.id for bono in bonos}
        missing = set(bono_ids) - found
        foreign = {b.id for b in bonos if b.psychologist_user_id != psychologist_id}
        if missing or foreign:
            raise NotFound("Bonos not found", ids=missing | foreign)
        live = live_invoice_ids(db, (b.invoice_id for b in bonos))
        invoiced = {b.id for b in bonos if b.invoice_id in live and b.invoice_id != invoice_id}
        if invoiced:
            raise Conflict("Bonos are already invoiced", ids=invoiced)

    listed_sessions, listed_bonos = listed_elsewhere(
        db,
        psychologist_id=psychologist_id,
        session_ids=session_ids,
        bono_ids=bono_ids,
        exclude_invoice_id=invoice_id,
    )
    if listed_sessions:
        raise Conflict("Sessions are listed on another invoice", ids=listed_sessions)
    if listed_bonos:
        raise Conflict("Bonos are listed on another invoice", ids=listed_bonos)


def propagate_invoice_links(db: Session, invoice: Invoice) -> LinkReport:
    """Stamp an issued invoice's id onto its sessions and bonos.

    Runs after the invoice itself is committed. Failures are logged and
    reported, never raised.
    """
    invoice_id = invoice.id
    session_ids = list(invoice.session_ids or [])
    bono_ids = list(invoice.bono_ids or [])
    report = LinkReport(invoice_id=invoice_id)
    if not session_ids and not bono_ids:
        return report
    try:
        if session_ids:
            report.stamped_sessions = db.execute(
                update(TherapySession)
                .where(
                    TherapySession.id.in_(session_ids),
                    TherapySession.bonus_id.is_(None),
                    free_invoice_link(TherapySession.invoice_id, invoice_id),
                )
                .values(invoice_id=invoice_id)
                .execution_options(synchronize_session=False)
            ).rowcount
        if bono_ids:
            report.stamped_bonos = db.execute(
                update(Bono)
                .where(
                    Bono.id.in_(bono_ids),
                    free_invoice_link(Bono.invoice_id, invoice_id),
                )
                .values(invoice_id=invoice_id)
                .execution_options(synchronize_session=False)
            ).rowcount
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.warning(
            "Invoice %s committed but linking failed (sessions=%s bonos=%s)",
            invoice_id,
            session_ids,
            bono_ids,
            exc_info=True,
        )
        report.failed = True
        return report

    if report.stamped_sessions < len(session_ids):
        report.skipped_session_ids = sorted(
            db.scalars(
                select(TherapySession.id).where(
                    TherapySession.id.in_(session_ids),
                    or_(
                        TherapySession.invoice_id.is_(None),
                        TherapySession.invoice_id != invoice_id,
                    ),
                )
            )
        )
    if report.stamped_bonos < len(bono_ids):
        report.skipped_bono_ids = sorted(
            db.scalars(
                select(Bono.id).where(
                    Bono.id.in_(bono_ids),
                    or_(Bono.invoice_id.is_(None), Bono.invoice_id != invoice_id),
                )
            )
        )
    if report.skipped_session_ids or report.skipped_bono_ids:
        logger.warning(
            "Invoice %s could not claim sessions=%s bonos=%s",
            invoice_id,
            report.skipped_session_ids,
            report.skipped_bono_ids,
        )
    return report


def _release_links(db: Session, invoice_id: int) -> tuple[int, int]:
    sessions = db.execute(
        update(TherapySession)
        .where(TherapySession.invoice_id == invoice_id)
        .values(invoice_id=None)
        .execution_options(synchronize_session=False)
    ).rowcount
    bonos = db.execute(
        update(Bono)
        .where(Bono.invoice_id == invoice_id)
        .values(invoice_id=None)
        .execution_options(synchronize_session=False)
    ).rowcount
    return sessions, bonos


def create_invoice(
    db: Session,
    payload: InvoiceCreate,
    *,
    psychologist_id: int,
    actor: User | None = None,
    request_id: str | None = None,
    ip_address: str | None = None,
) -> Invoice:
    invoice_type = payload.invoice_type
    if invoice_type == InvoiceType.center:
        if payload.center_id is None:
            raise ValidationError("center_id is required for center invoices")
    elif payload.patient_user_id is None:
        raise ValidationError("patient_user_id is required")

    status = normalize_status(payload.status)
    session_ids = _unique_ids(payload.session_ids)
    bono_ids = _unique_ids(payload.bono_ids)
    validate_billable_items(
        db, psychologist_id=psychologist_id, session_ids=session_ids, bono_ids=bono_ids
    )
    totals = compute_totals(
        amount=payload.amount,
        tax=payload.tax,
        tax_rate=payload.tax_rate,
        total=payload.total,
        invoice_type=invoice_type,
        irpf_percent=payload.irpf_percent,
    )
    snapshot = billing_snapshot(
        db,
        psychologist_id=psychologist_id,
        invoice_type=invoice_type,
        patient_user_id=payload.patient_user_id,
        center_id=payload.center_id,
    )
    invoice_date = payload.invoice_date or date.today()

    def _create() -> Invoice:
        invoice_number = payload.invoice_number or next_invoice_number(
            db, psychologist_id=psychologist_id, prefix=INVOICE_PREFIX, year=invoice_date.year
        )
        invoice = Invoice(
            psychologist_user_id=psychologist_id,
            patient_user_id=payload.patient_user_id,
            center_id=payload.center_id if invoice_type == InvoiceType.center else None,
            invoice_type=invoice_type,
            invoice_number=invoice_number,
            invoice_date=invoice_date,
            due_date=payload.due_date,
            status=status,
            description=payload.description,
            items=[item.model_dump() for item in payload.items],
            session_ids=session_ids,
            bono_ids=bono_ids,
            cancelled_at=datetime.now(timezone.utc) if status == InvoiceStatus.cancelled else None,
            **snapshot,
        )
        _apply_totals(invoice, totals)
        db.add(invoice)
        db.flush()
        log_event(
            db,
            actor=actor,
            action="invoice.created",
            entity_type="invoice",
            entity_id=str(invoice.id),
            after_obj=invoice,
            request_id=request_id,
            ip_address=ip_address,
        )
        db.commit()
        return invoice

    invoice = _with_number_retry(db, _create, generated=payload.invoice_number is None)
    logger.info("Invoice %s created as %s", invoice.invoice_number, status.value)
    if status in ISSUED_STATUSES:
        propagate_invoice_links(db, invoice)
    db.refresh(invoice)
    return invoice


def update_invoice(
    db: Session,
    invoice_id: int,
    payload: InvoiceUpdate,
    *,
    actor: User | None = None,
    request_id: str | None = None,
    ip_address: str | None = None,
) -> Invoice:
    invoice = get_invoice_or_404(db, invoice_id)
    transition = payload.status_transition()
    if invoice.status != InvoiceStatus.draft:
        if transition is None:
            raise Forbidden("Only draft invoices can be edited", ids=[invoice.id])
        if invoice.status == InvoiceStatus.cancelled or invoice.is_rectificativa:
            raise Forbidden("Cancelled and rectifying invoices are final", ids=[invoice.id])

    before = snapshot_model(invoice)
    previous_status = invoice.status
    data = payload.model_dump(exclude_unset=True)

    if invoice.status == InvoiceStatus.draft:
        if data.get("session_ids") is not None or data.get("bono_ids") is not None:
            session_ids = _unique_ids(
                data["session_ids"]
                if data.get("session_ids") is not None
                else invoice.session_ids or []
            )
            bono_ids = _unique_ids(
                data["bono_ids"] if data.get("bono_ids") is not None else invoice.bono_ids or []
            )
            validate_billable_items(
                db,
                psychologist_id=invoice.psychologist_user_id,
                session_ids=session_ids,
                bono_ids=bono_ids,
                invoice_id=invoice.id,
            )
            invoice.session_ids = session_ids
            invoice.bono_ids = bono_ids

        money_fields = {"amount", "tax", "tax_rate", "irpf_percent", "total"}
        if money_fields & data.keys():
            recompute_tax = "tax" not in data and bool({"amount", "tax_rate"} & data.keys())
            tax = data.get("tax", None if recompute_tax else invoice.tax)
            totals = compute_totals(
                amount=data["amount"] if data.get("amount") is not None else invoice.amount,
                tax=tax,
                tax_rate=data["tax_rate"] if data.get("tax_rate") is not None else invoice.tax_rate,
                total=data.get("total"),
                invoice_type=invoice.invoice_type,
                irpf_percent=data.get("irpf_percent", invoice.irpf_percent),
            )
            _apply_totals(invoice, totals)

        if "items" in data and data["items"] is not None:
            invoice.items = data["items"]
        for key in ("invoice_number", "invoice_date"):
            if data.get(key) is not None:
                setattr(invoice, key, data[key])
        for key in ("due_date", "description"):
            if key in data:
                setattr(invoice, key, data[key])

    if "status" in data and data["status"] is not None:
        invoice.status = InvoiceStatus(data["status"])
        if invoice.status == InvoiceStatus.cancelled and invoice.cancelled_at is None:
            invoice.cancelled_at = datetime.now(timezone.utc)

    issued_now = previous_status == InvoiceStatus.draft and invoice.status in ISSUED_STATUSES
    if issued_now:
        # Items may have been deleted, billed or put on a bono since drafting.
        validate_billable_items(
            db,
            psychologist_id=invoice.psychologist_user_id,
            session_ids=list(invoice.session_ids or []),
            bono_ids=list(invoice.bono_ids or []),
            invoice_id=invoice.id,
        )
        if invoice.invoice_date is None:
            invoice.invoice_date = date.today()

    log_event(
        db,
        actor=actor,
        action="invoice.updated",
        entity_type="invoice",
        entity_id=str(invoice.id),
        before_data=before,
        after_obj=invoice,
        request_id=request_id,
        ip_address=ip_address,
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict("Invoice number already in use", ids=[invoice_id])

    if issued_now:
        logger.info("Invoice %s issued as %s", invoice.invoice_number, invoice.status.value)
        propagate_invoice_links(db, invoice)
    db.refresh(invoice)
    return invoice


def cancel_invoice(
    db: Session,
    invoice_id: int,
    *,
    actor: User | None = None,
    request_id: str | None = None,
    ip_address: str | None = None,
) -> Invoice:
    # Links to sessions and bonos are kept for the record; rectify() is what
    # clears them. A link to a cancelled invoice no longer blocks billing.
    invoice = get_invoice_or_404(db, invoice_id)
    if invoice.status == InvoiceStatus.cancelled:
        raise Forbidden("Invoice is already cancelled", ids=[invoice.id])
    if invoice.is_rectificativa:
        raise Forbidden("Rectifying invoices cannot be cancelled", ids=[invoice.id])

    before = snapshot_model(invoice)
    invoice.status = InvoiceStatus.cancelled
    invoice.cancelled_at = datetime.now(timezone.utc)
    log_event(
        db,
        actor=actor,
        action="invoice.cancelled",
        entity_type="invoice",
        entity_id=str(invoice.id),
        before_data=before,
        after_obj=invoice,
        request_id=request_id,
        ip_address=ip_address,
    )
    db.commit()
    db.refresh(invoice)
    return invoice


def _negated_items(items: list[dict] | None) -> list[dict]:
    negated = []
    for item in items or []:
        quantity = item.get("quantity", 1) or 0
        negated.append({**item, "quantity": -quantity if quantity else 0})
    return negated


def rectify_invoice(
    db: Session,
    invoice_id: int,
    *,
    actor: User | None = None,
    reason: str | None = None,
    request_id: str | None = None,
    ip_address: str | None = None,
) -> tuple[Invoice, Invoice]:
    """Cancel an issued invoice by emitting its negative counterpart.

    Numbering, unlinking, cancellation of the original and the new invoice
    commit together; a numbering collision rolls everything back and retries.
    """

    def _rectify() -> tuple[Invoice, Invoice]:
        original = db.scalar(select(Invoice).where(Invoice.id == invoice_id).with_for_update())
        if not original:
            raise NotFound("Invoice not found", ids=[invoice_id])
        if original.status == InvoiceStatus.draft:
            raise Forbidden("Draft invoices cannot be rectified", ids=[original.id])
        if original.status == InvoiceStatus.cancelled:
            raise Forbidden("Invoice is already cancelled", ids=[original.id])
        if original.is_rectificativa:
            raise Forbidden("Rectifying invoices cannot be rectified", ids=[original.id])

        before = snapshot_model(original)
        today = date.today()
        rectificativa = Invoice(
            psychologist_user_id=original.psychologist_user_id,
            patient_user_id=original.patient_user_id,
            center_id=original.center_id,
            invoice_type=original.invoice_type,
            invoice_number=next_invoice_number(
                db,
                psychologist_id=original.psychologist_user_id,
                prefix=RECTIFICATION_PREFIX,
                year=today.year,
            ),
            invoice_date=today,
            due_date=today,
            status=InvoiceStatus.paid,
            description=f"Rectifies invoice {original.invoice_number}",
            items=_negated_items(original.items),
            session_ids=[],
            bono_ids=[],
            amount=_negate(original.amount),
            tax=_negate(original.tax),
            tax_rate=original.tax_rate,
            irpf_percent=original.irpf_percent,
            irpf_amount=_negate(original.irpf_amount),
            total=_negate(original.total),
            billing_client_name=original.billing_client_name,
            billing_client_address=original.billing_client_address,
            billing_client_tax_id=original.billing_client_tax_id,
            billing_psychologist_name=original.billing_psychologist_name,
            billing_psychologist_address=original.billing_psychologist_address,
            billing_psychologist_tax_id=original.billing_psychologist_tax_id,
            is_rectificativa=True,
            rectifies_invoice_id=original.id,
            rectification_reason=reason,
        )
        db.add(rectificativa)
        db.flush()

        released_sessions, released_bonos = _release_links(db, original.id)
        original.status = InvoiceStatus.cancelled
        original.cancelled_at = datetime.now(timezone.utc)
        original.rectified_by_invoice_id = rectificativa.id

        log_event(
            db,
            actor=actor,
            action="invoice.created",
            entity_type="invoice",
            entity_id=str(rectificativa.id),
            after_obj=rectificativa,
            request_id=request_id,
            ip_address=ip_address,
        )
        log_event(
            db,
            actor=actor,
            action="invoice.rectified",
            entity_type="invoice",
            entity_id=str(original.id),
            before_data=before,
            after_obj=original,
            request_id=request_id,
            ip_address=ip_address,
        )
        db.commit()
        logger.info(
            "Invoice %s rectified by %s (released %s sessions, %s bonos)",
            original.invoice_number,
            rectificativa.invoice_number,
            released_sessions,
            released_bonos,
        )
        return original, rectificativa

    original, rectificativa = _with_number_retry(db, _rectify, generated=True)
    db.refresh(original)
    db.refresh(rectificativa)
    return original, rectificativa


def delete_invoice(
    db: Session,
    invoice_id: int,
    *,
    actor: User | None = None,
    request_id: str | None = None,
    ip_address: str | None = None,
) -> None:
    invoice = get_invoice_or_404(db, invoice_id)
    if invoice.status != InvoiceStatus.draft:
        raise Forbidden("Only draft invoices can be deleted", ids=[invoice.id])

    _release_links(db, invoice.id)
    log_event(
        db,
        actor=actor,
        action="invoice.deleted",
        entity_type="invoice",
        entity_id=str(invoice.id),
        before_obj=invoice,
        after_obj=None,
        request_id=request_id,
        ip_address=ip_address,
    )
    db.delete(invoice)
    db.commit()
