from app.models.base import Base
from app.models.user import Role, User
from app.models.audit_log import AuditLog
from app.models.center import Center
from app.models.care_relationship import CareRelationship
from app.models.invoice import Invoice, InvoiceStatus, InvoiceType
from app.models.bono import Bono
from app.models.therapy_session import SessionStatus, TherapySession

__all__ = [
    "Base",
    "Role",
    "User",
    "AuditLog",
    "Center",
    "CareRelationship",
    "Invoice",
    "InvoiceStatus",
    "InvoiceType",
    "Bono",
    "SessionStatus",
    "TherapySession",
]
