from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.bono import Bono
from app.models.care_relationship import CareRelationship
from app.models.center import Center
from app.models.therapy_session import SessionStatus, TherapySession
from app.services.errors import NotFound
from app.services.invoices import free_invoice_link


@dataclass
class UnbilledItems:
    sessions: list[TherapySession] = field(default_factory=list)
    bonos: list[Bono] = field(default_factory=list)


def active_patient_ids(
    db: Session, *, psychologist_id: int, center_id: int | None = None
) -> list[int]:
    stmt = select(CareRelationship.patient_user_id).where(
        CareRelationship.psychologist_user_id == psychologist_id,
        CareRelationship.active.is_(True),
    )
    if center_id is not None:
        stmt = stmt.where(CareRelationship.center_id == center_id)
    return sorted(set(db.scalars(stmt)))


def unbilled_for_patients(
    db: Session, *, psychologist_id: int, patient_ids: list[int]
) -> UnbilledItems:
    if not patient_ids:
        return UnbilledItems()
    sessions_stmt = (
        select(TherapySession)
        .where(
            TherapySession.psychologist_user_id == psychologist_id,
            TherapySession.patient_user_id.in_(patient_ids),
            TherapySession.status == SessionStatus.completed,
            free_invoice_link(TherapySession.invoice_id),
            TherapySession.bonus_id.is_(None),
        )
        .order_by(TherapySession.starts_on.desc(), TherapySession.id.desc())
    )
    bonos_stmt = (
        select(Bono)
        .where(
            Bono.psychologist_user_id == psychologist_id,
            Bono.patient_user_id.in_(patient_ids),
            free_invoice_link(Bono.invoice_id),
        )
        .order_by(Bono.created_at.desc(), Bono.id.desc())
    )
    return UnbilledItems(
        sessions=list(db.scalars(sessions_stmt)),
        bonos=list(db.scalars(bonos_stmt)),
    )


def unbilled_for_patient(db: Session, *, psychologist_id: int, patient_id: int) -> UnbilledItems:
    return unbilled_for_patients(db, psychologist_id=psychologist_id, patient_ids=[patient_id])


def unbilled_for_center(db: Session, *, psychologist_id: int, center_id: int) -> UnbilledItems:
    center = db.get(Center, center_id)
    if not center or center.psychologist_user_id != psychologist_id:
        raise NotFound("Center not found", ids=[center_id])
    patient_ids = active_patient_ids(db, psychologist_id=psychologist_id, center_id=center_id)
    return unbilled_for_patients(db, psychologist_id=psychologist_id, patient_ids=patient_ids)
