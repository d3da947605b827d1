"""
Pydantic schemas for role assignments, permission checks and service status.

Request and response models for the HTTP layer, plus the value types the
store and service return to library callers.
"""
from datetime import datetime
from typing import Iterator, List, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field, field_validator

from scopeauth.features.rbac.models import WILDCARD_SCOPE_ID


def _check_name(v: str) -> str:
    if not v.replace('_', '').replace('-', '').isalnum():
        raise ValueError('must contain only alphanumeric characters, underscores, and hyphens')
    return v


# ============================================================================
# Assignment Schemas
# ============================================================================

class AssignmentRequest(BaseModel):
    """One (user, role, scope, scope instance) tuple."""
    user_id: str = Field(..., min_length=1, max_length=255, description="Target user")
    role: str = Field(..., min_length=1, max_length=100, description="Role name")
    scope: str = Field(..., min_length=1, max_length=100, description="Scope name (e.g., 'organization')")
    scope_id: str = Field(..., min_length=1, max_length=255, description="Scope instance, or '*' for all")

    model_config = ConfigDict(frozen=True)

    @field_validator('role', 'scope')
    @classmethod
    def name_format(cls, v: str) -> str:
        return _check_name(v)


class AssignmentResponse(BaseModel):
    user_id: str
    role: str
    scope: str
    scope_id: str
    granted_by: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class BulkAssignmentRequest(BaseModel):
    items: List[AssignmentRequest] = Field(..., min_length=1, max_length=1000)


class BulkResult(BaseModel):
    """committed stays 0 when the batch ran inside a caller's transaction."""
    total: int
    applied: int
    committed: int


class MessageResponse(BaseModel):
    message: str


# ============================================================================
# Role Lookup Schemas
# ============================================================================

class UserRoleEntry(BaseModel):
    role: str
    scope: str
    scope_id: str

    model_config = ConfigDict(frozen=True, from_attributes=True)


class UserRoles(BaseModel):
    """
    Ordered set of a user's active assignments.

    Membership checks treat an assignment at scope_id "*" as covering every
    instance of that scope.
    """
    user_id: str
    assignments: List[UserRoleEntry] = Field(default_factory=list)

    def __iter__(self) -> Iterator[UserRoleEntry]:  # type: ignore[override]
        return iter(self.assignments)

    def __len__(self) -> int:
        return len(self.assignments)

    def __contains__(self, item: Tuple[str, str, str]) -> bool:
        return self.has_role(*item)

    def roles_in(self, scope: str, scope_id: str) -> List[str]:
        roles = []
        for entry in self.assignments:
            if entry.scope == scope and entry.scope_id in (scope_id, WILDCARD_SCOPE_ID):
                if entry.role not in roles:
                    roles.append(entry.role)
        return roles

    def has_role(self, role: str, scope: str, scope_id: str) -> bool:
        return role in self.roles_in(scope, scope_id)

    def has_any_role(self, roles: List[str], scope: str, scope_id: str) -> bool:
        held = self.roles_in(scope, scope_id)
        return any(role in held for role in roles)

    def scope_ids(self, scope: str) -> List[str]:
        ids = []
        for entry in self.assignments:
            if entry.scope == scope and entry.scope_id not in ids:
                ids.append(entry.scope_id)
        return ids


class ScopeMember(BaseModel):
    user_id: str
    role: str

    model_config = ConfigDict(from_attributes=True)


class RoleCountResponse(BaseModel):
    scope: Optional[str] = None
    scope_id: Optional[str] = None
    role_pattern: str = "*"
    count: int


class AssignableRole(BaseModel):
    scope: str
    role: str


# ============================================================================
# Permission Check Schemas
# ============================================================================

class PermissionCheckRequest(BaseModel):
    user_id: Optional[str] = Field(None, description="User to check; defaults to the caller")
    permission: str = Field(..., min_length=1, max_length=255)
    scope: str = Field(..., min_length=1, max_length=100)
    scope_id: str = Field(..., min_length=1, max_length=255)


class PermissionCheckResponse(BaseModel):
    user_id: str
    permission: str
    scope: str
    scope_id: str
    allowed: bool


class EffectivePermissions(BaseModel):
    """Permission patterns that apply to a user at a scope instance, inherited ones included."""
    user_id: str
    scope: str
    scope_id: str
    permissions: List[str]


class UserChildScopes(BaseModel):
    user_id: str
    scope: str
    parent_scope: str
    parent_scope_id: str
    role: Optional[str] = None
    scope_ids: List[str]


# ============================================================================
# Scope Hierarchy Schemas
# ============================================================================

class ScopeParentRequest(BaseModel):
    scope: str = Field(..., min_length=1, max_length=100)
    scope_id: str = Field(..., min_length=1, max_length=255)
    parent_scope: str = Field(..., min_length=1, max_length=100)
    parent_scope_id: str = Field(..., min_length=1, max_length=255)

    @field_validator('scope_id', 'parent_scope_id')
    @classmethod
    def concrete_instance(cls, v: str) -> str:
        if v == WILDCARD_SCOPE_ID:
            raise ValueError('hierarchy edges link concrete instances, not "*"')
        return v


# ============================================================================
# Audit Log Schemas
# ============================================================================

class AuditLogFilter(BaseModel):
    actor_id: Optional[str] = None
    target_user_id: Optional[str] = None
    role: Optional[str] = None
    scope: Optional[str] = None
    scope_id: Optional[str] = None
    action: Optional[str] = Field(None, pattern="^(assigned|revoked)$")
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: int = Field(100, ge=1, le=1000)
    offset: int = Field(0, ge=0)


class AuditLogResponse(BaseModel):
    id: str
    actor_id: str
    action: str
    target_user_id: str
    role: str
    scope: str
    scope_id: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    request_id: Optional[str] = None
    details: Optional[dict] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuditLogListResponse(BaseModel):
    items: List[AuditLogResponse]
    limit: int
    offset: int


# ============================================================================
# Service Status Schemas
# ============================================================================

class TransactionMetrics(BaseModel):
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    average_duration: float = 0.0
    max_duration: float = 0.0
    min_duration: float = 0.0
    last_reset: datetime


class MigrationStatus(BaseModel):
    total: int
    applied: int
    pending: int
    applied_ids: List[str] = Field(default_factory=list)
    pending_ids: List[str] = Field(default_factory=list)


class HealthResponse(BaseModel):
    status: str
    database: bool
    transactions: bool


# ============================================================================
# Registry File Schemas
# ============================================================================

class RoleSpec(BaseModel):
    name: str
    permissions: List[str] = Field(default_factory=list)
    can_assign: List[str] = Field(default_factory=list)


class ScopeSpec(BaseModel):
    name: str
    parent: Optional[str] = None
    roles: List[RoleSpec] = Field(default_factory=list)


class RegistrySpec(BaseModel):
    """Shape of the JSON file named by RBAC_REGISTRY_PATH."""
    scopes: List[ScopeSpec]
