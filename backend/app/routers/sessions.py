import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.deps import (
    client_context,
    get_current_user,
    require_psychologist,
    resolve_psychologist_id,
)
from app.models.care_relationship import CareRelationship
from app.models.therapy_session import SessionStatus, TherapySession
from app.models.user import Role, User
from app.schemas.session import (
    AssignBonoRequest,
    BonoAssignmentOut,
    SessionCreate,
    SessionOut,
    SessionUpdate,
)
from app.services import bonos as bono_service
from app.services.errors import Conflict, NotFound, ValidationError

router = APIRouter(prefix="/sessions", tags=["sessions"])
logger = logging.getLogger("dygo.sessions")


def ensure_paid_consistency(status: SessionStatus, paid: bool, *, session_id: int | None = None):
    if paid and status != SessionStatus.completed:
        ids = [session_id] if session_id is not None else []
        raise ValidationError("Only completed sessions can be marked as paid", ids=ids)


def get_visible_session(db: Session, session_id: int, user: User) -> TherapySession:
    session = db.get(TherapySession, session_id)
    if session:
        if user.role == Role.psychologist and session.psychologist_user_id == user.id:
            return session
        if user.role == Role.patient and session.patient_user_id == user.id:
            return session
    raise NotFound("Session not found", ids=[session_id])


def _care_relationship(
    db: Session, psychologist_id: int, patient_id: int
) -> CareRelationship | None:
    return db.scalar(
        select(CareRelationship).where(
            CareRelationship.psychologist_user_id == psychologist_id,
            CareRelationship.patient_user_id == patient_id,
        )
    )


@router.get("", response_model=list[SessionOut])
def list_sessions(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    patient_user_id: int | None = Query(default=None),
    status: SessionStatus | None = Query(default=None),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
):
    stmt = select(TherapySession)
    if user.role == Role.psychologist:
        stmt = stmt.where(TherapySession.psychologist_user_id == user.id)
        if patient_user_id is not None:
            stmt = stmt.where(TherapySession.patient_user_id == patient_user_id)
    else:
        stmt = stmt.where(TherapySession.patient_user_id == user.id)
    if status is not None:
        stmt = stmt.where(TherapySession.status == status)
    if start is not None:
        stmt = stmt.where(TherapySession.starts_on >= start)
    if end is not None:
        stmt = stmt.where(TherapySession.starts_on <= end)
    stmt = stmt.order_by(TherapySession.starts_on.desc(), TherapySession.id.desc())
    return list(db.scalars(stmt))


@router.get("/{session_id}", response_model=SessionOut)
def get_session(
    session_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return get_visible_session(db, session_id, user)


@router.post("", response_model=SessionOut, status_code=201)
def create_session(
    payload: SessionCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_psychologist),
):
    psychologist_id = resolve_psychologist_id(payload.psychologist_user_id, user)
    if payload.patient_user_id is None and payload.status != SessionStatus.available:
        raise ValidationError("patient_user_id is required unless the slot is available")
    ensure_paid_consistency(payload.status, payload.paid)

    price = payload.price
    percent = payload.percent_psych
    if payload.patient_user_id is not None:
        relationship = _care_relationship(db, psychologist_id, payload.patient_user_id)
        if not relationship:
            raise ValidationError(
                "Patient is not under care of this psychologist",
                ids=[payload.patient_user_id],
            )
        if price is None:
            price = relationship.default_session_price
        if percent is None:
            percent = relationship.default_percent_psych

    session = TherapySession(
        psychologist_user_id=psychologist_id,
        patient_user_id=payload.patient_user_id,
        starts_on=payload.starts_on,
        ends_on=payload.ends_on,
        price=price or 0,
        percent_psych=percent or 0,
        status=payload.status,
        paid=payload.paid,
        notes=payload.notes,
    )
    db.add(session)
    db.commit()
    db.refresh(session)
    return session


@router.patch("/{session_id}", response_model=SessionOut)
def update_session(
    session_id: int,
    payload: SessionUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_psychologist),
):
    session = get_visible_session(db, session_id, user)
    data = payload.model_dump(exclude_unset=True)

    new_patient = data.get("patient_user_id", session.patient_user_id)
    if new_patient != session.patient_user_id:
        if session.invoice_id is not None or session.bonus_id is not None:
            raise Conflict(
                "Cannot move a billed or bono-covered session to another patient",
                ids=[session.id],
            )
        if new_patient is not None and not _care_relationship(
            db, session.psychologist_user_id, new_patient
        ):
            raise ValidationError(
                "Patient is not under care of this psychologist", ids=[new_patient]
            )

    status = data.get("status") or session.status
    if new_patient is None and status != SessionStatus.available:
        raise ValidationError(
            "patient_user_id is required unless the slot is available", ids=[session.id]
        )
    paid = data["paid"] if data.get("paid") is not None else session.paid
    ensure_paid_consistency(status, paid, session_id=session.id)

    for field, value in data.items():
        if value is None and field not in {"patient_user_id", "starts_on", "ends_on", "notes"}:
            continue
        setattr(session, field, value)
    db.commit()
    db.refresh(session)
    return session


@router.delete("/{session_id}")
def delete_session(
    session_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_psychologist),
) -> dict[str, object]:
    session = get_visible_session(db, session_id, user)
    if session.invoice_id is not None:
        raise Conflict("Session is linked to an invoice", ids=[session.id])
    db.delete(session)
    db.commit()
    logger.info("session deleted", extra={"session_id": session_id})
    return {"id": session_id, "deleted": True}


@router.post("/{session_id}/assign-bonus", response_model=BonoAssignmentOut)
def assign_session_bono(
    session_id: int,
    payload: AssignBonoRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_psychologist),
    context: dict = Depends(client_context),
):
    get_visible_session(db, session_id, user)
    session, remaining = bono_service.assign_bono(
        db, session_id=session_id, bono_id=payload.bonus_id, actor=user, **context
    )
    return BonoAssignmentOut(
        session=SessionOut.model_validate(session), sessions_remaining=remaining
    )


@router.delete("/{session_id}/assign-bonus", response_model=SessionOut)
def unassign_session_bono(
    session_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_psychologist),
    context: dict = Depends(client_context),
):
    get_visible_session(db, session_id, user)
    return bono_service.unassign_bono(db, session_id=session_id, actor=user, **context)
