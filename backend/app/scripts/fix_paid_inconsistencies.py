from __future__ import annotations

import argparse
import logging

from sqlalchemy import select

from app.db.session import session_scope
from app.models.therapy_session import SessionStatus, TherapySession

logger = logging.getLogger(__name__)


def find_inconsistent_sessions(session) -> list[TherapySession]:
    stmt = (
        select(TherapySession)
        .where(
            TherapySession.paid.is_(True),
            TherapySession.status != SessionStatus.completed,
        )
        .order_by(TherapySession.id)
    )
    return list(session.scalars(stmt))


def fix_paid_flags(session, apply: bool) -> list[int]:
    fixed: list[int] = []
    for therapy_session in find_inconsistent_sessions(session):
        fixed.append(therapy_session.id)
        if apply:
            therapy_session.paid = False
    if apply and fixed:
        logger.info("Reset paid flag on %s sessions", len(fixed))
    return fixed


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Clear the paid flag on sessions that are not completed."
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
        fixed = fix_paid_flags(session, apply)
        if apply:
            session.commit()
        print("Paid flag repair")
        print(f"Sessions: inconsistent={len(fixed)}")
        for session_id in fixed:
            print(f"  session {session_id}")
        if not apply:
            print("Dry run only. Use --apply to persist changes.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
