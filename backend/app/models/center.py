from __future__ import annotations

from sqlalchemy import ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, TimestampMixin


class Center(Base, TimestampMixin):
    __tablename__ = "centers"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    psychologist_user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id"), nullable=False, index=True
    )
    center_name: Mapped[str] = mapped_column(String(200), nullable=False)
    cif: Mapped[str | None] = mapped_column(String(32), nullable=True)
    address: Mapped[str | None] = mapped_column(String(255), nullable=True)
    city: Mapped[str | None] = mapped_column(String(120), nullable=True)
    postal_code: Mapped[str | None] = mapped_column(String(20), nullable=True)

    @property
    def postal_address(self) -> str:
        parts = [self.address, self.postal_code, self.city]
        return ", ".join(part for part in parts if part)
