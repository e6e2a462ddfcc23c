"""add artifact releases, assignments and download audit

Revision ID: 0003_artifacts
Revises: 0002_vms_licenses_leases
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0003_artifacts"
down_revision = "0002_vms_licenses_leases"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "artifact_releases",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("module", sa.String(length=200), nullable=False),
        sa.Column("platform", sa.String(length=100), nullable=False),
        sa.Column("channel", sa.String(length=100), nullable=False),
        sa.Column("version", sa.String(length=100), nullable=False),
        sa.Column("object_key", sa.String(length=1024), nullable=False),
        sa.Column("sha256", sa.String(length=64), nullable=False),
        sa.Column("size_bytes", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("updated_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "status IN ('draft', 'active', 'disabled', 'archived')",
            name="ck_artifact_releases_status",
        ),
        sa.CheckConstraint("size_bytes > 0", name="ck_artifact_releases_size_positive"),
    )
    op.create_index("ix_artifact_releases_tenant_id", "artifact_releases", ["tenant_id"], unique=False)
    op.create_index(
        "ix_artifact_releases_scope",
        "artifact_releases",
        ["tenant_id", "module", "platform", "channel"],
        unique=False,
    )

    # One row per scope and user is kept by delete-then-insert in a single transaction.
    op.create_table(
        "artifact_assignments",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("module", sa.String(length=200), nullable=False),
        sa.Column("platform", sa.String(length=100), nullable=False),
        sa.Column("channel", sa.String(length=100), nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("release_id", sa.BigInteger(), sa.ForeignKey("artifact_releases.id"), nullable=False),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("updated_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_artifact_assignments_tenant_id", "artifact_assignments", ["tenant_id"], unique=False)
    op.create_index(
        "ix_artifact_assignments_scope",
        "artifact_assignments",
        ["tenant_id", "module", "platform", "channel", "user_id"],
        unique=False,
    )

    op.create_table(
        "artifact_download_audit",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("lease_id", sa.String(), nullable=True),
        sa.Column("lease_jti", sa.String(), nullable=True),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("vm_uuid", sa.String(length=128), nullable=True),
        sa.Column("module", sa.String(length=200), nullable=False),
        sa.Column("platform", sa.String(length=100), nullable=False),
        sa.Column("channel", sa.String(length=100), nullable=False),
        sa.Column("release_id", sa.BigInteger(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("result", sa.String(), nullable=False),
        sa.Column("reason", sa.String(length=120), nullable=True),
        sa.Column("request_ip", sa.String(length=120), nullable=True),
        sa.Column("url_expires_at_ms", sa.BigInteger(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_artifact_download_audit_tenant_created",
        "artifact_download_audit",
        ["tenant_id", sa.text("created_at DESC")],
        unique=False,
    )
    op.create_index(
        "ix_artifact_download_audit_lease",
        "artifact_download_audit",
        ["tenant_id", "lease_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_artifact_download_audit_lease", table_name="artifact_download_audit")
    op.drop_index("ix_artifact_download_audit_tenant_created", table_name="artifact_download_audit")
    op.drop_table("artifact_download_audit")
    op.drop_index("ix_artifact_assignments_scope", table_name="artifact_assignments")
    op.drop_index("ix_artifact_assignments_tenant_id", table_name="artifact_assignments")
    op.drop_table("artifact_assignments")
    op.drop_index("ix_artifact_releases_scope", table_name="artifact_releases")
    op.drop_index("ix_artifact_releases_tenant_id", table_name="artifact_releases")
    op.drop_table("artifact_releases")
