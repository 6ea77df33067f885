from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.trialdocs.models import Base

if TYPE_CHECKING:
    from app.trialdocs.modules.protocol_versions.models import ProtocolVersion


class Delegation(Base):
    __tablename__ = "delegations"
    __table_args__ = (
        Index("idx_delegations_user_status", "delegated_user_id", "status"),
        Index("idx_delegations_version", "protocol_version_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    protocol_version_id: Mapped[int] = mapped_column(ForeignKey("protocol_versions.id", ondelete="RESTRICT"), nullable=False)
    delegated_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    delegated_by_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)

    delegated_job_title: Mapped[str] = mapped_column(String(255), nullable=False)
    trial_role: Mapped[str | None] = mapped_column(String(128), nullable=True)
    task_description: Mapped[str | None] = mapped_column(Text, nullable=True)

    delegation_date: Mapped[date] = mapped_column(Date, nullable=False)
    effective_start_date: Mapped[date] = mapped_column(Date, nullable=False)
    effective_end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    training_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Pending -> Accepted -> Revoked, or Pending -> Declined
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="Pending")

    signed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)  # printed name
    signed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    revoked_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    revocation_reason: Mapped[str | None] = mapped_column(String(512), nullable=True)

    # Set in the same transaction as the insert, once the id is known.
    record_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    previous_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    lock_version: Mapped[int] = mapped_column(Integer, nullable=False)

    protocol_version: Mapped["ProtocolVersion"] = relationship("ProtocolVersion", lazy="selectin")

    __mapper_args__ = {"version_id_col": lock_version}
