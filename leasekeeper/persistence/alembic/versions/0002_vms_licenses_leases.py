"""add vm registrations, licenses, entitlements and execution leases

Revision ID: 0002_vms_licenses_leases
Revises: 0001_auth_audit
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0002_vms_licenses_leases"
down_revision = "0001_auth_audit"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "vm_registrations",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("vm_uuid", sa.String(length=128), nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("vm_name", sa.String(), nullable=True),
        sa.Column("project_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "vm_uuid", name="uq_vm_registrations_tenant_uuid"),
    )
    op.create_index("ix_vm_registrations_tenant_id", "vm_registrations", ["tenant_id"], unique=False)
    op.create_index(
        "ix_vm_registrations_tenant_user",
        "vm_registrations",
        ["tenant_id", "user_id"],
        unique=False,
    )

    op.create_table(
        "licenses",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("expires_at_ms", sa.BigInteger(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_licenses_tenant_id", "licenses", ["tenant_id"], unique=False)

    op.create_table(
        "entitlements",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("modules_json", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "user_id", name="uq_entitlements_tenant_user"),
    )
    op.create_index("ix_entitlements_tenant_id", "entitlements", ["tenant_id"], unique=False)

    # Leases are never deleted; expiry is derived from expires_at_ms at read time.
    op.create_table(
        "execution_leases",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("token", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("created_at_ms", sa.BigInteger(), nullable=False),
        sa.Column("updated_at_ms", sa.BigInteger(), nullable=False),
        sa.Column("expires_at_ms", sa.BigInteger(), nullable=False),
        sa.Column("last_heartbeat_at_ms", sa.BigInteger(), nullable=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("vm_uuid", sa.String(length=128), nullable=False),
        sa.Column("vm_name", sa.String(), nullable=True),
        sa.Column("module", sa.String(), nullable=False),
        sa.Column("version", sa.String(), nullable=True),
        sa.Column("agent_id", sa.String(), nullable=False),
        sa.Column("runner_id", sa.String(), nullable=False),
        sa.Column("license_id", sa.String(), nullable=True),
        sa.Column("revoked_at_ms", sa.BigInteger(), nullable=True),
        sa.Column("revoked_by", sa.String(), nullable=True),
        sa.Column("revoke_reason", sa.String(), nullable=True),
    )
    op.create_index("ix_execution_leases_tenant_id", "execution_leases", ["tenant_id"], unique=False)
    op.create_index(
        "ix_execution_leases_tenant_user",
        "execution_leases",
        ["tenant_id", "user_id"],
        unique=False,
    )
    op.create_index(
        "ix_execution_leases_tenant_vm",
        "execution_leases",
        ["tenant_id", "vm_uuid"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_execution_leases_tenant_vm", table_name="execution_leases")
    op.drop_index("ix_execution_leases_tenant_user", table_name="execution_leases")
    op.drop_index("ix_execution_leases_tenant_id", table_name="execution_leases")
    op.drop_table("execution_leases")
    op.drop_index("ix_entitlements_tenant_id", table_name="entitlements")
    op.drop_table("entitlements")
    op.drop_index("ix_licenses_tenant_id", table_name="licenses")
    op.drop_table("licenses")
    op.drop_index("ix_vm_registrations_tenant_user", table_name="vm_registrations")
    op.drop_index("ix_vm_registrations_tenant_id", table_name="vm_registrations")
    op.drop_table("vm_registrations")
