from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on PostgreSQL; plain JSON elsewhere so the schema also builds on SQLite.
JsonColumn = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER PRIMARY KEY columns.
BigIdColumn = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    # Persist RBAC role as a simple string for fast lookup and migration safety.
    role: Mapped[str] = mapped_column(String)
    # Gate access for disabled users without deleting historical keys.
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ApiKey(Base):
    __tablename__ = "api_keys"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    # Keep a short prefix for operator display without exposing the secret.
    key_prefix: Mapped[str] = mapped_column(String)
    # Store only the hashed key to avoid plaintext credentials at rest.
    key_hash: Mapped[str] = mapped_column(String, unique=True, index=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(BigIdColumn, primary_key=True, autoincrement=True)
    # Store the event timestamp separately from creation to preserve source clocks.
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    # Allow null tenant_id for pre-auth or system events.
    tenant_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_role: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonColumn, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class VmRegistration(Base):
    __tablename__ = "vm_registrations"
    __table_args__ = (
        UniqueConstraint("tenant_id", "vm_uuid", name="uq_vm_registrations_tenant_uuid"),
        Index("ix_vm_registrations_tenant_user", "tenant_id", "user_id"),
    )

    id: Mapped[int] = mapped_column(BigIdColumn, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    # Always stored lower-cased; see vm_registry.normalize_vm_uuid.
    vm_uuid: Mapped[str] = mapped_column(String(128))
    # Empty or null owner marks an unassigned registration.
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    vm_name: Mapped[str | None] = mapped_column(String, nullable=True)
    project_id: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="active", nullable=False)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonColumn, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class License(Base):
    __tablename__ = "licenses"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    # Null owner makes the license tenant-wide.
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # subscription | perpetual | alltime | trial ...
    type: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="active", nullable=False)
    expires_at_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Entitlement(Base):
    __tablename__ = "entitlements"
    __table_args__ = (
        UniqueConstraint("tenant_id", "user_id", name="uq_entitlements_tenant_user"),
    )

    id: Mapped[int] = mapped_column(BigIdColumn, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str] = mapped_column(String)
    # Either ["mod-a", "mod-b"] or {"mod-a": true, "*": true}.
    modules_json: Mapped[Any] = mapped_column(JsonColumn, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ExecutionLease(Base):
    __tablename__ = "execution_leases"
    __table_args__ = (
        Index("ix_execution_leases_tenant_user", "tenant_id", "user_id"),
        Index("ix_execution_leases_tenant_vm", "tenant_id", "vm_uuid"),
    )

    # Lease id doubles as the token jti.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    # Exact signed token handed out at issuance; resolution compares against it.
    token: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="active", nullable=False)
    created_at_ms: Mapped[int] = mapped_column(BigInteger)
    updated_at_ms: Mapped[int] = mapped_column(BigInteger)
    # Fixed at issuance; heartbeats never move it.
    expires_at_ms: Mapped[int] = mapped_column(BigInteger)
    last_heartbeat_at_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    user_id: Mapped[str] = mapped_column(String)
    vm_uuid: Mapped[str] = mapped_column(String(128))
    vm_name: Mapped[str | None] = mapped_column(String, nullable=True)
    module: Mapped[str] = mapped_column(String)
    version: Mapped[str | None] = mapped_column(String, nullable=True)
    agent_id: Mapped[str] = mapped_column(String)
    runner_id: Mapped[str] = mapped_column(String)
    license_id: Mapped[str | None] = mapped_column(String, nullable=True)
    revoked_at_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    revoked_by: Mapped[str | None] = mapped_column(String, nullable=True)
    revoke_reason: Mapped[str | None] = mapped_column(String, nullable=True)


class ArtifactRelease(Base):
    __tablename__ = "artifact_releases"
    __table_args__ = (
        Index(
            "ix_artifact_releases_scope",
            "tenant_id",
            "module",
            "platform",
            "channel",
        ),
    )

    id: Mapped[int] = mapped_column(BigIdColumn, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    module: Mapped[str] = mapped_column(String(200))
    platform: Mapped[str] = mapped_column(String(100))
    channel: Mapped[str] = mapped_column(String(100))
    version: Mapped[str] = mapped_column(String(100))
    object_key: Mapped[str] = mapped_column(String(1024))
    sha256: Mapped[str] = mapped_column(String(64))
    size_bytes: Mapped[int] = mapped_column(BigInteger)
    # draft | active | disabled | archived; only active releases resolve.
    status: Mapped[str] = mapped_column(String(20), default="active", nullable=False)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ArtifactAssignment(Base):
    __tablename__ = "artifact_assignments"
    __table_args__ = (
        Index(
            "ix_artifact_assignments_scope",
            "tenant_id",
            "module",
            "platform",
            "channel",
            "user_id",
        ),
    )

    id: Mapped[int] = mapped_column(BigIdColumn, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    module: Mapped[str] = mapped_column(String(200))
    platform: Mapped[str] = mapped_column(String(100))
    channel: Mapped[str] = mapped_column(String(100))
    # Null user_id marks the tenant default for the scope.
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    release_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("artifact_releases.id"))
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ArtifactDownloadAudit(Base):
    __tablename__ = "artifact_download_audit"
    __table_args__ = (
        Index("ix_artifact_download_audit_tenant_created", "tenant_id", "created_at"),
        Index("ix_artifact_download_audit_lease", "tenant_id", "lease_id"),
    )

    id: Mapped[int] = mapped_column(BigIdColumn, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String)
    lease_id: Mapped[str | None] = mapped_column(String, nullable=True)
    lease_jti: Mapped[str | None] = mapped_column(String, nullable=True)
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    vm_uuid: Mapped[str | None] = mapped_column(String(128), nullable=True)
    module: Mapped[str] = mapped_column(String(200))
    platform: Mapped[str] = mapped_column(String(100))
    channel: Mapped[str] = mapped_column(String(100))
    release_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    # resolve_success | resolve_denied
    event_type: Mapped[str] = mapped_column(String)
    # allowed | denied | error
    result: Mapped[str] = mapped_column(String)
    reason: Mapped[str | None] = mapped_column(String(120), nullable=True)
    request_ip: Mapped[str | None] = mapped_column(String(120), nullable=True)
    url_expires_at_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonColumn, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
