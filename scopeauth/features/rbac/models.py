"""
Persistent models for role assignments, the audit trail and the scope
instance hierarchy.

Role and scope validity is enforced by the registry, not by the schema, so
none of these tables carry foreign keys to a catalog.
"""
from typing import Any, Dict, Optional
from sqlalchemy import JSON, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from scopeauth.core.database.base import Base, CreatedAtMixin
from scopeauth.utils import generate_ulid


WILDCARD_SCOPE_ID = "*"


# ============================================================================
# Role Assignments
# ============================================================================

class RoleAssignment(Base, CreatedAtMixin):
    """
    A user holds a role at one instance of a scope.

    The composite primary key is the uniqueness guarantee: at most one row per
    (user, role, scope, scope_id). A scope_id of "*" covers every instance of
    the scope.
    """
    __tablename__ = "role_assignments"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    role: Mapped[str] = mapped_column(String(100), primary_key=True)
    scope: Mapped[str] = mapped_column(String(100), primary_key=True)
    scope_id: Mapped[str] = mapped_column(String(255), primary_key=True)

    # Who granted it ("system" for bootstrap assignments)
    granted_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        Index("idx_role_assignments_user", "user_id"),
        Index("idx_role_assignments_scope", "scope", "scope_id"),
    )

    @property
    def is_wildcard(self) -> bool:
        return self.scope_id == WILDCARD_SCOPE_ID

    def __repr__(self) -> str:
        return (
            f"<RoleAssignment(user_id={self.user_id}, role={self.role!r}, "
            f"scope={self.scope}, scope_id={self.scope_id})>"
        )


# ============================================================================
# Audit Trail
# ============================================================================

class RoleAuditLog(Base, CreatedAtMixin):
    """
    Append-only record of assignment changes.

    A revocation appends a "revoked" entry; earlier entries are never touched.
    """
    __tablename__ = "role_audit_log"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)  # assigned, revoked

    target_user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(100), nullable=False)
    scope: Mapped[str] = mapped_column(String(100), nullable=False)
    scope_id: Mapped[str] = mapped_column(String(255), nullable=False)

    # Request metadata
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    request_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    details: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        Index("idx_role_audit_log_actor", "actor_id"),
        Index("idx_role_audit_log_target", "target_user_id"),
        Index("idx_role_audit_log_scope", "scope", "scope_id"),
        Index("idx_role_audit_log_created", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<RoleAuditLog(id={self.id}, action={self.action}, actor={self.actor_id}, "
            f"target={self.target_user_id}, role={self.role!r})>"
        )


# ============================================================================
# Scope Instance Hierarchy
# ============================================================================

class ScopeHierarchy(Base, CreatedAtMixin):
    """Links a concrete scope instance to the instance it belongs to (project p1 -> organization o1)."""
    __tablename__ = "scope_hierarchy"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    scope: Mapped[str] = mapped_column(String(100), nullable=False)
    scope_id: Mapped[str] = mapped_column(String(255), nullable=False)
    parent_scope: Mapped[str] = mapped_column(String(100), nullable=False)
    parent_scope_id: Mapped[str] = mapped_column(String(255), nullable=False)

    __table_args__ = (
        UniqueConstraint("scope", "scope_id", name="uq_scope_hierarchy_child"),
        Index("idx_scope_hierarchy_parent", "parent_scope", "parent_scope_id"),
    )

    def __repr__(self) -> str:
        return f"<ScopeHierarchy({self.scope}:{self.scope_id} -> {self.parent_scope}:{self.parent_scope_id})>"


# ============================================================================
# Migration Tracking
# ============================================================================

class SchemaMigration(Base, CreatedAtMixin):
    __tablename__ = "scopeauth_migrations"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    description: Mapped[str] = mapped_column(String(255), nullable=False)

    def __repr__(self) -> str:
        return f"<SchemaMigration(id={self.id})>"
