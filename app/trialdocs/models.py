from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from app.trialdocs.utils import utcnow


class Base(DeclarativeBase):
    pass


class UserRole(Base):
    __tablename__ = "user_roles"
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    role_id: Mapped[int] = mapped_column(ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True)


class RolePermission(Base):
    __tablename__ = "role_permissions"
    role_id: Mapped[int] = mapped_column(ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True)
    permission_id: Mapped[int] = mapped_column(ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True)


class User(Base):
    """
    Identity as handed to us by the identity provider. No credentials are
    stored here; authentication happens upstream.
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    # Global roles apply to every trial.
    roles: Mapped[list["Role"]] = relationship(
        secondary="user_roles",
        back_populates="users",
        lazy="selectin",
    )
    trial_roles: Mapped[list["TrialRoleAssignment"]] = relationship(
        "TrialRoleAssignment",
        back_populates="user",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class Role(Base):
    __tablename__ = "roles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)  # e.g. "trial_admin"
    name: Mapped[str] = mapped_column(String(128), nullable=False)  # display name
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    users: Mapped[list[User]] = relationship(secondary="user_roles", back_populates="roles", lazy="selectin")
    permissions: Mapped[list["Permission"]] = relationship(
        secondary="role_permissions",
        back_populates="roles",
        lazy="selectin",
    )


class Permission(Base):
    __tablename__ = "permissions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    key: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)  # e.g. "delegations.revoke"
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    roles: Mapped[list[Role]] = relationship(secondary="role_permissions", back_populates="permissions", lazy="selectin")


class TrialRoleAssignment(Base):
    """A role held by a user within one trial only (site/trial administrator, trial lead)."""

    __tablename__ = "trial_role_assignments"
    __table_args__ = (
        UniqueConstraint("user_id", "role_id", "trial_id", name="uq_trial_role_assignment"),
        Index("idx_trial_role_assignments_trial", "trial_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    role_id: Mapped[int] = mapped_column(ForeignKey("roles.id", ondelete="CASCADE"), nullable=False)
    trial_id: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    user: Mapped[User] = relationship("User", back_populates="trial_roles", lazy="selectin")
    role: Mapped[Role] = relationship("Role", lazy="selectin")


class AuditRecord(Base):
    """
    Append-only, hash-chained record of one state transition.

    record_hash/previous_hash chain the audit records of a single entity
    (first record links to the genesis sentinel). entity_record_hash and
    entity_previous_hash copy the entity row's own chain link at the time
    of the transition.
    """

    __tablename__ = "audit_records"
    __table_args__ = (
        Index("idx_audit_records_entity", "entity_type", "entity_id", "id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    entity_type: Mapped[str] = mapped_column(String(64), nullable=False)  # "ProtocolVersion" | "Delegation"
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)  # string for flexibility
    from_status: Mapped[str | None] = mapped_column(String(16), nullable=True)  # None on creation
    to_status: Mapped[str] = mapped_column(String(16), nullable=False)
    actor_id: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)

    entity_record_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_previous_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    record_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    previous_hash: Mapped[str] = mapped_column(String(64), nullable=False)


# Ensure module models are imported so Base.metadata includes their tables.
# (Kept at bottom to avoid circular imports.)
from app.trialdocs.modules.protocol_versions.models import DocumentMaster, ProtocolVersion  # noqa: E402,F401
from app.trialdocs.modules.delegations.models import Delegation  # noqa: E402,F401
