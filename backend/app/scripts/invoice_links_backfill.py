from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass, field

from sqlalchemy import select

from app.db.session import session_scope
from app.models.bono import Bono
from app.models.invoice import ISSUED_STATUSES, Invoice
from app.models.therapy_session import TherapySession
from app.services.invoices import live_invoice_ids, propagate_invoice_links

logger = logging.getLogger(__name__)


@dataclass
class BackfillSummary:
    invoices: int = 0
    missing_sessions: int = 0
    missing_bonos: int = 0
    stamped_sessions: int = 0
    stamped_bonos: int = 0
    conflicts: dict[int, list[str]] = field(default_factory=dict)


def _unlinked(session, model, ids: list[int], invoice_id: int) -> tuple[list[int], list[int]]:
    """Split listed ids into (missing the link, claimed by another invoice)."""
    missing: list[int] = []
    claimed: list[int] = []
    if not ids:
        return missing, claimed
    rows = session.execute(select(model.id, model.invoice_id).where(model.id.in_(ids))).all()
    live = live_invoice_ids(session, (linked_to for _, linked_to in rows))
    for row_id, linked_to in rows:
        if linked_to not in live:
            missing.append(row_id)
        elif linked_to != invoice_id:
            claimed.append(row_id)
    return sorted(missing), sorted(claimed)


def backfill_links(session, apply: bool) -> BackfillSummary:
    summary = BackfillSummary()
    stmt = (
        select(Invoice)
        .where(
            Invoice.status.in_(list(ISSUED_STATUSES)),
            Invoice.is_rectificativa.is_(False),
        )
        .order_by(Invoice.id)
    )
    for invoice in list(session.scalars(stmt)):
        session_ids = list(invoice.session_ids or [])
        bono_ids = list(invoice.bono_ids or [])
        missing_sessions, claimed_sessions = _unlinked(
            session, TherapySession, session_ids, invoice.id
        )
        missing_bonos, claimed_bonos = _unlinked(session, Bono, bono_ids, invoice.id)
        conflicts = [f"session:{i}" for i in claimed_sessions] + [
            f"bono:{i}" for i in claimed_bonos
        ]
        if conflicts:
            summary.conflicts[invoice.id] = conflicts
            logger.warning("Invoice %s lists rows linked elsewhere: %s", invoice.id, conflicts)
        if not missing_sessions and not missing_bonos:
            continue
        summary.invoices += 1
        summary.missing_sessions += len(missing_sessions)
        summary.missing_bonos += len(missing_bonos)
        if apply:
            report = propagate_invoice_links(session, invoice)
            summary.stamped_sessions += report.stamped_sessions
            summary.stamped_bonos += report.stamped_bonos
    return summary


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Re-stamp invoice ids onto sessions and bonos listed by issued invoices."
    )
    parser.add_argument("--apply", action="store_true", help="Write changes to the database.")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Preview changes without writing (default).",
    )
    args = parser.parse_args()
    apply = args.apply and not args.dry_run

    with session_scope() as session:
        summary = backfill_links(session, apply)
        print("Invoice link backfill")
        print(
            f"Invoices: {summary.invoices} "
            f"missing_sessions={summary.missing_sessions} missing_bonos={summary.missing_bonos}"
        )
        if apply:
            print(
                f"Stamped: sessions={summary.stamped_sessions} bonos={summary.stamped_bonos}"
            )
        for invoice_id, conflicts in summary.conflicts.items():
            print(f"  invoice {invoice_id} conflicts: {', '.join(conflicts)}")
        if not apply:
            print("Dry run only. Use --apply to persist changes.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
