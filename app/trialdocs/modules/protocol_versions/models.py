from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.trialdocs.models import Base
from app.trialdocs.utils import utcnow


class DocumentMaster(Base):
    __tablename__ = "document_masters"
    __table_args__ = (
        UniqueConstraint("trial_id", "site_id", "display_name", name="uq_document_master_name"),
        Index("idx_document_masters_trial", "trial_id"),
        Index("idx_document_masters_site", "site_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    trial_id: Mapped[int] = mapped_column(Integer, nullable=False)
    site_id: Mapped[int | None] = mapped_column(Integer, nullable=True)  # None = trial-wide document
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    document_type: Mapped[str] = mapped_column(String(64), nullable=False, default="Protocol")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    # Touched on every change to the version set; serializes promotions.
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    lock_version: Mapped[int] = mapped_column(Integer, nullable=False)

    versions: Mapped[list["ProtocolVersion"]] = relationship(
        "ProtocolVersion",
        back_populates="document_master",
        order_by="ProtocolVersion.id",
        lazy="select",
    )

    __mapper_args__ = {"version_id_col": lock_version}


class ProtocolVersion(Base):
    __tablename__ = "protocol_versions"
    __table_args__ = (
        UniqueConstraint("document_master_id", "version_number", name="uq_protocol_version_number"),
        Index("idx_protocol_versions_master_status", "document_master_id", "status"),
        # Storage-level backstop for the single-Current rule.
        Index(
            "uq_protocol_versions_one_current",
            "document_master_id",
            unique=True,
            sqlite_where=text("status = 'Current'"),
            postgresql_where=text("status = 'Current'"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    document_master_id: Mapped[int] = mapped_column(ForeignKey("document_masters.id", ondelete="RESTRICT"), nullable=False)
    version_number: Mapped[str] = mapped_column(String(64), nullable=False)  # caller-supplied, e.g. "2.1", "Amendment 3"

    # Uploaded -> Current -> Superseded
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="Uploaded")

    uploaded_by: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    file_reference: Mapped[str] = mapped_column(String(1024), nullable=False)  # opaque blob pointer
    original_filename: Mapped[str | None] = mapped_column(String(255), nullable=True)

    promoted_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=True)
    promoted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    superseded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    # Set in the same transaction as the insert, once the id is known.
    record_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    previous_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    lock_version: Mapped[int] = mapped_column(Integer, nullable=False)

    document_master: Mapped[DocumentMaster] = relationship(
        "DocumentMaster",
        back_populates="versions",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": lock_version}
