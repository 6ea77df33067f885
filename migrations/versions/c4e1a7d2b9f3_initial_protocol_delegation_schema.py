"""Initial schema: identities/RBAC, protocol versions, delegations, audit records.

Revision ID: c4e1a7d2b9f3
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "c4e1a7d2b9f3"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("display_name", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("email"),
    )
    op.create_table(
        "roles",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("key", sa.String(64), nullable=False),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("key"),
    )
    op.create_table(
        "permissions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("key", sa.String(128), nullable=False),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("key"),
    )
    op.create_table(
        "user_roles",
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("role_id", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("user_id", "role_id"),
    )
    op.create_table(
        "role_permissions",
        sa.Column("role_id", sa.Integer(), nullable=False),
        sa.Column("permission_id", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["permission_id"], ["permissions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("role_id", "permission_id"),
    )
    op.create_table(
        "trial_role_assignments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("role_id", sa.Integer(), nullable=False),
        sa.Column("trial_id", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("user_id", "role_id", "trial_id", name="uq_trial_role_assignment"),
    )
    op.create_index("idx_trial_role_assignments_trial", "trial_role_assignments", ["trial_id"])

    op.create_table(
        "document_masters",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("trial_id", sa.Integer(), nullable=False),
        sa.Column("site_id", sa.Integer(), nullable=True),
        sa.Column("display_name", sa.String(255), nullable=False),
        sa.Column("document_type", sa.String(64), nullable=False, server_default="Protocol"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("created_by_user_id", sa.Integer(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("lock_version", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("trial_id", "site_id", "display_name", name="uq_document_master_name"),
    )
    op.create_index("idx_document_masters_trial", "document_masters", ["trial_id"])
    op.create_index("idx_document_masters_site", "document_masters", ["site_id"])

    op.create_table(
        "protocol_versions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("document_master_id", sa.Integer(), nullable=False),
        sa.Column("version_number", sa.String(64), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="Uploaded"),
        sa.Column("uploaded_by", sa.Integer(), nullable=False),
        sa.Column("uploaded_at", sa.DateTime(), nullable=False),
        sa.Column("file_reference", sa.String(1024), nullable=False),
        sa.Column("original_filename", sa.String(255), nullable=True),
        sa.Column("promoted_by", sa.Integer(), nullable=True),
        sa.Column("promoted_at", sa.DateTime(), nullable=True),
        sa.Column("superseded_at", sa.DateTime(), nullable=True),
        sa.Column("record_hash", sa.String(64), nullable=True),
        sa.Column("previous_hash", sa.String(64), nullable=True),
        sa.Column("lock_version", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["document_master_id"], ["document_masters.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["uploaded_by"], ["users.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["promoted_by"], ["users.id"], ondelete="RESTRICT"),
        sa.UniqueConstraint("document_master_id", "version_number", name="uq_protocol_version_number"),
    )
    op.create_index("idx_protocol_versions_master_status", "protocol_versions", ["document_master_id", "status"])
    op.create_index(
        "uq_protocol_versions_one_current",
        "protocol_versions",
        ["document_master_id"],
        unique=True,
        sqlite_where=sa.text("status = 'Current'"),
        postgresql_where=sa.text("status = 'Current'"),
    )

    op.create_table(
        "delegations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("protocol_version_id", sa.Integer(), nullable=False),
        sa.Column("delegated_user_id", sa.Integer(), nullable=False),
        sa.Column("delegated_by_user_id", sa.Integer(), nullable=False),
        sa.Column("delegated_job_title", sa.String(255), nullable=False),
        sa.Column("trial_role", sa.String(128), nullable=True),
        sa.Column("task_description", sa.Text(), nullable=True),
        sa.Column("delegation_date", sa.Date(), nullable=False),
        sa.Column("effective_start_date", sa.Date(), nullable=False),
        sa.Column("effective_end_date", sa.Date(), nullable=True),
        sa.Column("training_required", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("status", sa.String(16), nullable=False, server_default="Pending"),
        sa.Column("signed_by", sa.String(255), nullable=True),
        sa.Column("signed_at", sa.DateTime(), nullable=True),
        sa.Column("revoked_by_user_id", sa.Integer(), nullable=True),
        sa.Column("revoked_at", sa.DateTime(), nullable=True),
        sa.Column("revocation_reason", sa.String(512), nullable=True),
        sa.Column("record_hash", sa.String(64), nullable=True),
        sa.Column("previous_hash", sa.String(64), nullable=True),
        sa.Column("lock_version", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["protocol_version_id"], ["protocol_versions.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["delegated_user_id"], ["users.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["delegated_by_user_id"], ["users.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["revoked_by_user_id"], ["users.id"], ondelete="RESTRICT"),
    )
    op.create_index("idx_delegations_user_status", "delegations", ["delegated_user_id", "status"])
    op.create_index("idx_delegations_version", "delegations", ["protocol_version_id"])

    op.create_table(
        "audit_records",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("entity_type", sa.String(64), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("from_status", sa.String(16), nullable=True),
        sa.Column("to_status", sa.String(16), nullable=False),
        sa.Column("actor_id", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("entity_record_hash", sa.String(64), nullable=False),
        sa.Column("entity_previous_hash", sa.String(64), nullable=False),
        sa.Column("record_hash", sa.String(64), nullable=False),
        sa.Column("previous_hash", sa.String(64), nullable=False),
        sa.UniqueConstraint("record_hash"),
    )
    op.create_index("idx_audit_records_entity", "audit_records", ["entity_type", "entity_id", "id"])


def downgrade() -> None:
    op.drop_index("idx_audit_records_entity", table_name="audit_records")
    op.drop_table("audit_records")
    op.drop_index("idx_delegations_version", table_name="delegations")
    op.drop_index("idx_delegations_user_status", table_name="delegations")
    op.drop_table("delegations")
    op.drop_index("uq_protocol_versions_one_current", table_name="protocol_versions")
    op.drop_index("idx_protocol_versions_master_status", table_name="protocol_versions")
    op.drop_table("protocol_versions")
    op.drop_index("idx_document_masters_site", table_name="document_masters")
    op.drop_index("idx_document_masters_trial", table_name="document_masters")
    op.drop_table("document_masters")
    op.drop_index("idx_trial_role_assignments_trial", table_name="trial_role_assignments")
    op.drop_table("trial_role_assignments")
    op.drop_table("role_permissions")
    op.drop_table("user_roles")
    op.drop_table("permissions")
    op.drop_table("roles")
    op.drop_table("users")
