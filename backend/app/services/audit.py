"""Audit trail for invoice, bono and session-link changes.

Entries are added to the caller's transaction and commit or roll back with
the change they describe.
"""

from __future__ import annotations

import enum
from datetime import date, datetime
from typing import Any

from sqlalchemy import inspect, select
from sqlalchemy.orm import Session

from app.models.audit_log import AuditLog
from app.models.user import User

# bookkeeping columns that change on every write
IGNORED_FIELDS = frozenset({"created_at", "updated_at"})


def _json_value(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def snapshot_model(obj: Any | None) -> dict | None:
    if obj is None:
        return None
    mapper = inspect(obj).mapper
    return {column.key: _json_value(getattr(obj, column.key)) for column in mapper.columns}


def changed_fields(before: dict | None, after: dict | None) -> list[str]:
    before = before or {}
    after = after or {}
    keys = (before.keys() | after.keys()) - IGNORED_FIELDS
    return sorted(key for key in keys if before.get(key) != after.get(key))


def log_event(
    db: Session,
    *,
    actor: User | None,
    action: str,
    entity_type: str,
    entity_id: str,
    before_obj: Any | None = None,
    after_obj: Any | None = None,
    before_data: dict | None = None,
    after_data: dict | None = None,
    request_id: str | None = None,
    ip_address: str | None = None,
) -> AuditLog:
    before = before_data if before_data is not None else snapshot_model(before_obj)
    after = after_data if after_data is not None else snapshot_model(after_obj)
    owner = (after or before or {}).get("psychologist_user_id")
    entry = AuditLog(
        psychologist_user_id=owner,
        actor_user_id=actor.id if actor else None,
        actor_email=actor.email if actor else None,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        changed_fields=changed_fields(before, after),
        request_id=request_id,
        ip_address=ip_address,
        before_json=before,
        after_json=after,
    )
    db.add(entry)
    return entry


def entity_history(db: Session, *, entity_type: str, entity_id: int | str) -> list[AuditLog]:
    stmt = (
        select(AuditLog)
        .where(AuditLog.entity_type == entity_type, AuditLog.entity_id == str(entity_id))
        .order_by(AuditLog.created_at.asc(), AuditLog.id.asc())
    )
    return list(db.scalars(stmt))
