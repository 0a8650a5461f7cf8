from __future__ import annotations

from sqlalchemy import Boolean, Float, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, TimestampMixin


class CareRelationship(Base, TimestampMixin):
    __tablename__ = "care_relationships"
    __table_args__ = (
        UniqueConstraint("psychologist_user_id", "patient_user_id", name="uq_care_relationship_pair"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    psychologist_user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id"), nullable=False, index=True
    )
    patient_user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    center_id: Mapped[int | None] = mapped_column(
        ForeignKey("centers.id"), nullable=True, index=True
    )
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    default_session_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    default_percent_psych: Mapped[float | None] = mapped_column(Float, nullable=True)

    patient = relationship("User", foreign_keys=[patient_user_id], lazy="joined")
    center = relationship("Center", lazy="joined")
