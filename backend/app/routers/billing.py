from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.deps import require_psychologist, resolve_psychologist_id
from app.models.care_relationship import CareRelationship
from app.models.user import User
from app.routers.bonos import bonos_out
from app.schemas.billing import CarePatientOut, PatientStatsOut, UnbilledOut
from app.schemas.session import SessionOut
from app.services.errors import ValidationError
from app.services.patient_stats import compute_patient_stats
from app.services.unbilled import UnbilledItems, unbilled_for_center, unbilled_for_patient

router = APIRouter(tags=["billing"])


def unbilled_out(db: Session, items: UnbilledItems) -> UnbilledOut:
    return UnbilledOut(
        sessions=[SessionOut.model_validate(session) for session in items.sessions],
        bonos=bonos_out(db, items.bonos),
    )


@router.get("/patient/{patient_id}/unbilled", response_model=UnbilledOut)
def patient_unbilled(
    patient_id: int,
    psychologist_user_id: int | None = Query(default=None),
    db: Session = Depends(get_db),
    user: User = Depends(require_psychologist),
):
    psychologist_id = resolve_psychologist_id(psychologist_user_id, user)
    items = unbilled_for_patient(db, psychologist_id=psychologist_id, patient_id=patient_id)
    return unbilled_out(db, items)


@router.get("/center/{center_id}/unbilled", response_model=UnbilledOut)
def center_unbilled(
    center_id: int,
    psychologist_user_id: int | None = Query(default=None),
    db: Session = Depends(get_db),
    user: User = Depends(require_psychologist),
):
    psychologist_id = resolve_psychologist_id(psychologist_user_id, user)
    items = unbilled_for_center(db, psychologist_id=psychologist_id, center_id=center_id)
    return unbilled_out(db, items)


@router.get("/patient-stats/{patient_id}", response_model=PatientStatsOut)
def patient_stats(
    patient_id: int,
    psychologist_user_id: int | None = Query(default=None),
    start: date | None = Query(default=None),
    end: date | None = Query(default=None),
    db: Session = Depends(get_db),
    user: User = Depends(require_psychologist),
):
    if start and end and end < start:
        raise ValidationError("end must be on or after start")
    psychologist_id = resolve_psychologist_id(psychologist_user_id, user)
    stats = compute_patient_stats(
        db,
        psychologist_id=psychologist_id,
        patient_id=patient_id,
        start=start,
        end=end,
    )
    return PatientStatsOut.model_validate(stats)


@router.get("/psychologist/{psychologist_id}/patients", response_model=list[CarePatientOut])
def psychologist_patients(
    psychologist_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_psychologist),
):
    psychologist_id = resolve_psychologist_id(psychologist_id, user)
    relationships = db.scalars(
        select(CareRelationship).where(
            CareRelationship.psychologist_user_id == psychologist_id,
            CareRelationship.active.is_(True),
        )
    ).unique()
    patients = [
        CarePatientOut(
            id=rel.patient.id,
            email=rel.patient.email,
            name=rel.patient.display_name,
            center_id=rel.center_id,
            center_name=rel.center.center_name if rel.center else None,
        )
        for rel in relationships
    ]
    return sorted(patients, key=lambda patient: patient.name.lower())
