from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.models.bono import Bono
from app.models.therapy_session import TherapySession
from app.models.user import User
from app.services.audit import log_event, snapshot_model
from app.services.errors import Conflict, Exhausted, NotFound, ValidationError
from app.services.invoices import free_invoice_link, listed_elsewhere, live_invoice_ids

logger = logging.getLogger("dygo.bonos")


@dataclass(frozen=True)
class BonoBalance:
    total: int
    used: int

    @property
    def remaining(self) -> int:
        return max(self.total - self.used, 0)

    @property
    def is_available(self) -> bool:
        return self.remaining > 0


def sessions_used(db: Session, bono_id: int) -> int:
    # Every linked session counts, cancelled ones included.
    stmt = select(func.count(TherapySession.id)).where(TherapySession.bonus_id == bono_id)
    return int(db.scalar(stmt) or 0)


def bono_balance(db: Session, bono: Bono) -> BonoBalance:
    return BonoBalance(total=bono.total_sessions_amount, used=sessions_used(db, bono.id))


def usage_by_bono(db: Session, bono_ids: Iterable[int]) -> dict[int, int]:
    ids = list(bono_ids)
    if not ids:
        return {}
    stmt = (
        select(TherapySession.bonus_id, func.count(TherapySession.id))
        .where(TherapySession.bonus_id.in_(ids))
        .group_by(TherapySession.bonus_id)
    )
    return {int(bono_id): int(count) for bono_id, count in db.execute(stmt).all()}


def _get_session_or_404(db: Session, session_id: int) -> TherapySession:
    session = db.get(TherapySession, session_id)
    if not session:
        raise NotFound("Session not found", ids=[session_id])
    return session


def assign_bono(
    db: Session,
    *,
    session_id: int,
    bono_id: int,
    actor: User | None = None,
    request_id: str | None = None,
    ip_address: str | None = None,
) -> tuple[TherapySession, int]:
    """Link a session to a bono and return the slots left afterwards."""
    session = _get_session_or_404(db, session_id)
    bono = db.scalar(select(Bono).where(Bono.id == bono_id).with_for_update())
    if (
        not bono
        or bono.patient_user_id != session.patient_user_id
        or bono.psychologist_user_id != session.psychologist_user_id
    ):
        raise NotFound("Bono not found for this patient", ids=[bono_id])
    if live_invoice_ids(db, [session.invoice_id]):
        raise Conflict(
            "Cannot attach a bono to an already-invoiced session", ids=[session.id]
        )
    listed, _ = listed_elsewhere(
        db,
        psychologist_id=session.psychologist_user_id,
        session_ids=[session.id],
        bono_ids=[],
        exclude_invoice_id=None,
    )
    if listed:
        raise Conflict("Session is listed on an invoice", ids=sorted(listed))
    if session.bonus_id == bono.id:
        return session, bono_balance(db, bono).remaining
    if session.bonus_id is not None:
        raise Conflict("Session is already covered by another bono", ids=[session.id])

    balance = bono_balance(db, bono)
    if not balance.is_available:
        raise Exhausted("Bono has no remaining sessions", ids=[bono.id])

    before = snapshot_model(session)
    result = db.execute(
        update(TherapySession)
        .where(
            TherapySession.id == session.id,
            free_invoice_link(TherapySession.invoice_id),
            TherapySession.bonus_id.is_(None),
        )
        .values(bonus_id=bono.id)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise Conflict("Session was invoiced or assigned concurrently", ids=[session.id])

    db.refresh(session)
    log_event(
        db,
        actor=actor,
        action="session.bono_assigned",
        entity_type="session",
        entity_id=str(session.id),
        before_data=before,
        after_obj=session,
        request_id=request_id,
        ip_address=ip_address,
    )
    db.commit()
    db.refresh(session)
    return session, balance.remaining - 1


def unassign_bono(
    db: Session,
    *,
    session_id: int,
    actor: User | None = None,
    request_id: str | None = None,
    ip_address: str | None = None,
) -> TherapySession:
    session = _get_session_or_404(db, session_id)
    if session.bonus_id is None:
        return session
    before = snapshot_model(session)
    session.bonus_id = None
    log_event(
        db,
        actor=actor,
        action="session.bono_unassigned",
        entity_type="session",
        entity_id=str(session.id),
        before_data=before,
        after_obj=session,
        request_id=request_id,
        ip_address=ip_address,
    )
    db.commit()
    db.refresh(session)
    return session


def ensure_capacity(db: Session, bono: Bono, total_sessions_amount: int) -> None:
    used = sessions_used(db, bono.id)
    if total_sessions_amount < used:
        raise ValidationError(
            f"Bono already has {used} sessions assigned; total cannot be {total_sessions_amount}",
            ids=[bono.id],
        )


def delete_bono(
    db: Session,
    *,
    bono_id: int,
    actor: User | None = None,
    request_id: str | None = None,
    ip_address: str | None = None,
) -> None:
    bono = db.get(Bono, bono_id)
    if not bono:
        raise NotFound("Bono not found", ids=[bono_id])
    if bono.invoice_id is not None:
        billed = list(
            db.scalars(
                select(TherapySession.id).where(TherapySession.invoice_id == bono.invoice_id)
            )
        )
        if billed:
            raise Conflict(
                "Bono is linked to an invoice that still covers sessions", ids=billed
            )

    released = db.execute(
        update(TherapySession)
        .where(TherapySession.bonus_id == bono.id)
        .values(bonus_id=None)
        .execution_options(synchronize_session=False)
    ).rowcount
    log_event(
        db,
        actor=actor,
        action="bono.deleted",
        entity_type="bono",
        entity_id=str(bono.id),
        before_obj=bono,
        after_obj=None,
        request_id=request_id,
        ip_address=ip_address,
    )
    db.delete(bono)
    db.commit()
    if released:
        logger.info("Bono %s deleted; released %s sessions", bono_id, released)
