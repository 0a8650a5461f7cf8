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
from app.models.bono import Bono
from app.models.care_relationship import CareRelationship
from app.models.user import Role, User
from app.schemas.bono import BonoCreate, BonoOut, BonoUpdate
from app.services import bonos as bono_service
from app.services.audit import log_event, snapshot_model
from app.services.errors import Conflict, NotFound, ValidationError
from app.services.invoices import live_invoice_ids

router = APIRouter(prefix="/bonos", tags=["bonos"])


def bono_out(bono: Bono, used: int) -> BonoOut:
    balance = bono_service.BonoBalance(total=bono.total_sessions_amount, used=used)
    return BonoOut.model_validate(bono).model_copy(
        update={"sessions_used": balance.used, "sessions_remaining": balance.remaining}
    )


def bonos_out(db: Session, bonos: list[Bono]) -> list[BonoOut]:
    used = bono_service.usage_by_bono(db, [bono.id for bono in bonos])
    return [bono_out(bono, used.get(bono.id, 0)) for bono in bonos]


def get_visible_bono(db: Session, bono_id: int, user: User) -> Bono:
    bono = db.get(Bono, bono_id)
    if bono:
        if user.role == Role.psychologist and bono.psychologist_user_id == user.id:
            return bono
        if user.role == Role.patient and bono.patient_user_id == user.id:
            return bono
    raise NotFound("Bono not found", ids=[bono_id])


def _scoped_bonos(
    user: User, psychologist_user_id: int | None, patient_user_id: int | None
):
    stmt = select(Bono)
    if user.role == Role.psychologist:
        stmt = stmt.where(Bono.psychologist_user_id == user.id)
        if patient_user_id is not None:
            stmt = stmt.where(Bono.patient_user_id == patient_user_id)
    else:
        stmt = stmt.where(Bono.patient_user_id == user.id)
        if psychologist_user_id is not None:
            stmt = stmt.where(Bono.psychologist_user_id == psychologist_user_id)
    return stmt.order_by(Bono.created_at.desc(), Bono.id.desc())


@router.get("", response_model=list[BonoOut])
def list_bonos(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    psychologist_user_id: int | None = Query(default=None),
    patient_user_id: int | None = Query(default=None),
):
    bonos = list(db.scalars(_scoped_bonos(user, psychologist_user_id, patient_user_id)))
    return bonos_out(db, bonos)


@router.get("/available", response_model=list[BonoOut])
def list_available_bonos(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    psychologist_user_id: int | None = Query(default=None),
    patient_user_id: int | None = Query(default=None),
):
    bonos = list(db.scalars(_scoped_bonos(user, psychologist_user_id, patient_user_id)))
    return [out for out in bonos_out(db, bonos) if out.sessions_remaining > 0]


@router.get("/{bono_id}", response_model=BonoOut)
def get_bono(
    bono_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    bono = get_visible_bono(db, bono_id, user)
    return bono_out(bono, bono_service.sessions_used(db, bono.id))


@router.post("", response_model=BonoOut, status_code=201)
def create_bono(
    payload: BonoCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_psychologist),
    context: dict = Depends(client_context),
):
    psychologist_id = resolve_psychologist_id(payload.psychologist_user_id, user)
    relationship = db.scalar(
        select(CareRelationship).where(
            CareRelationship.psychologist_user_id == psychologist_id,
            CareRelationship.patient_user_id == payload.patient_user_id,
            CareRelationship.active.is_(True),
        )
    )
    if not relationship:
        raise ValidationError(
            "Patient has no active care relationship with this psychologist",
            ids=[payload.patient_user_id],
        )
    bono = Bono(
        psychologist_user_id=psychologist_id,
        patient_user_id=payload.patient_user_id,
        total_sessions_amount=payload.total_sessions_amount,
        total_price_bono_amount=payload.total_price_bono_amount,
        paid=payload.paid,
    )
    db.add(bono)
    db.flush()
    log_event(
        db,
        actor=user,
        action="bono.created",
        entity_type="bono",
        entity_id=str(bono.id),
        after_obj=bono,
        **context,
    )
    db.commit()
    db.refresh(bono)
    return bono_out(bono, 0)


@router.put("/{bono_id}", response_model=BonoOut)
def update_bono(
    bono_id: int,
    payload: BonoUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_psychologist),
    context: dict = Depends(client_context),
):
    bono = get_visible_bono(db, bono_id, user)
    before = snapshot_model(bono)
    data = payload.model_dump(exclude_unset=True)
    # Only the paid flag may change once the bono is on an issued invoice.
    changed = [
        key
        for key in ("total_sessions_amount", "total_price_bono_amount")
        if data.get(key) is not None and data[key] != getattr(bono, key)
    ]
    if changed and live_invoice_ids(db, [bono.invoice_id]):
        raise Conflict("Bono is already invoiced", ids=[bono.id])
    if data.get("total_sessions_amount") is not None:
        bono_service.ensure_capacity(db, bono, data["total_sessions_amount"])
        bono.total_sessions_amount = data["total_sessions_amount"]
    if data.get("total_price_bono_amount") is not None:
        bono.total_price_bono_amount = data["total_price_bono_amount"]
    if data.get("paid") is not None:
        bono.paid = data["paid"]
    log_event(
        db,
        actor=user,
        action="bono.updated",
        entity_type="bono",
        entity_id=str(bono.id),
        before_data=before,
        after_obj=bono,
        **context,
    )
    db.commit()
    db.refresh(bono)
    return bono_out(bono, bono_service.sessions_used(db, bono.id))


@router.delete("/{bono_id}")
def delete_bono(
    bono_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_psychologist),
    context: dict = Depends(client_context),
) -> dict[str, object]:
    get_visible_bono(db, bono_id, user)
    bono_service.delete_bono(db, bono_id=bono_id, actor=user, **context)
    return {"id": bono_id, "deleted": True}
