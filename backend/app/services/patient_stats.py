"""Dashboard totals for one patient of one psychologist.

"Paid" on a session is the patient's payment flag; "invoiced" comes from
invoice rows. The two axes are reported separately and never inferred from
each other.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.settings import settings
from app.models.bono import Bono
from app.models.invoice import ISSUED_STATUSES, Invoice, InvoiceStatus
from app.models.therapy_session import SessionStatus, TherapySession
from app.services.bonos import usage_by_bono
from app.services.invoices import money
from app.services.session_values import duration_hours, psychologist_earnings, total_price

SCHEDULED_STATUSES = frozenset({SessionStatus.scheduled, SessionStatus.confirmed})


@dataclass
class MonthlyPoint:
    month: str
    sessions: int = 0
    revenue: float = 0.0


@dataclass
class PatientStats:
    patient_user_id: int
    psychologist_user_id: int
    total_sessions: int = 0
    completed_sessions: int = 0
    scheduled_sessions: int = 0
    cancelled_sessions: int = 0
    total_hours: float = 0.0
    total_revenue: float = 0.0
    psychologist_earnings: float = 0.0
    paid_sessions: int = 0
    unpaid_sessions: int = 0
    paid_amount: float = 0.0
    unpaid_amount: float = 0.0
    total_invoiced: float = 0.0
    total_collected: float = 0.0
    total_pending: float = 0.0
    active_bonos: int = 0
    bono_sessions_remaining: int = 0
    monthly: list[MonthlyPoint] = field(default_factory=list)


def trailing_months(today: date, count: int) -> list[tuple[int, int]]:
    months: list[tuple[int, int]] = []
    year, month = today.year, today.month
    for _ in range(count):
        months.append((year, month))
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return list(reversed(months))


def compute_patient_stats(
    db: Session,
    *,
    psychologist_id: int,
    patient_id: int,
    start: date | None = None,
    end: date | None = None,
    today: date | None = None,
) -> PatientStats:
    today = today or date.today()
    stats = PatientStats(patient_user_id=patient_id, psychologist_user_id=psychologist_id)

    sessions_stmt = select(TherapySession).where(
        TherapySession.psychologist_user_id == psychologist_id,
        TherapySession.patient_user_id == patient_id,
    )
    invoices_stmt = select(Invoice).where(
        Invoice.psychologist_user_id == psychologist_id,
        Invoice.patient_user_id == patient_id,
    )
    if start is not None:
        start_dt = datetime.combine(start, time.min, tzinfo=timezone.utc)
        sessions_stmt = sessions_stmt.where(TherapySession.starts_on >= start_dt)
        invoices_stmt = invoices_stmt.where(Invoice.invoice_date >= start)
    if end is not None:
        end_dt = datetime.combine(end, time.max, tzinfo=timezone.utc)
        sessions_stmt = sessions_stmt.where(TherapySession.starts_on <= end_dt)
        invoices_stmt = invoices_stmt.where(Invoice.invoice_date <= end)

    sessions = list(db.scalars(sessions_stmt))
    buckets = {
        (year, month): MonthlyPoint(month=f"{year}-{month:02d}")
        for year, month in trailing_months(today, settings.stats_months)
    }

    for session in sessions:
        if session.status == SessionStatus.available:
            continue
        stats.total_sessions += 1
        value = total_price(session)
        if session.status == SessionStatus.completed:
            stats.completed_sessions += 1
            stats.total_hours += duration_hours(session)
            stats.total_revenue += value
            stats.psychologist_earnings += psychologist_earnings(session)
            if session.paid:
                stats.paid_sessions += 1
                stats.paid_amount += value
            else:
                stats.unpaid_sessions += 1
                stats.unpaid_amount += value
        elif session.status in SCHEDULED_STATUSES:
            stats.scheduled_sessions += 1
        elif session.status == SessionStatus.cancelled:
            stats.cancelled_sessions += 1

        if session.status != SessionStatus.cancelled and session.starts_on is not None:
            bucket = buckets.get((session.starts_on.year, session.starts_on.month))
            if bucket is not None:
                bucket.sessions += 1
                bucket.revenue += value

    for invoice in db.scalars(invoices_stmt):
        if invoice.is_rectificativa:
            # the rectified original is already excluded as cancelled
            continue
        if invoice.status in ISSUED_STATUSES:
            stats.total_invoiced += invoice.total
        if invoice.status == InvoiceStatus.paid:
            stats.total_collected += invoice.total
        elif invoice.status == InvoiceStatus.pending:
            stats.total_pending += invoice.total

    bonos = list(
        db.scalars(
            select(Bono).where(
                Bono.psychologist_user_id == psychologist_id,
                Bono.patient_user_id == patient_id,
            )
        )
    )
    used = usage_by_bono(db, [bono.id for bono in bonos])
    for bono in bonos:
        remaining = max(bono.total_sessions_amount - used.get(bono.id, 0), 0)
        if remaining > 0:
            stats.active_bonos += 1
            stats.bono_sessions_remaining += remaining

    for name in (
        "total_hours",
        "total_revenue",
        "psychologist_earnings",
        "paid_amount",
        "unpaid_amount",
        "total_invoiced",
        "total_collected",
        "total_pending",
    ):
        setattr(stats, name, money(getattr(stats, name)))
    stats.monthly = list(buckets.values())
    for point in stats.monthly:
        point.revenue = money(point.revenue)
    return stats
