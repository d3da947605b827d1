"""
Scope and role registry.

The registry is described once at startup through a fluent builder and then
frozen. Reads need no locking.

Usage:
    registry = (
        RegistryBuilder()
        .define_scope("organization")
            .role("owner").permissions("*").can_assign("*")
            .role("viewer").permissions("project.read")
        .define_scope("project", parent="organization")
            .role("editor").permissions("project.*", "task.*")
        .build()
    )

can_assign entries name roles defined at the role's own scope or below. An
entry may be qualified as "scope:role" when the same role name exists in
several descendant scopes; "*" means any role at this scope or below.
"""
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from scopeauth.features.rbac.errors import (
    InvalidPermission,
    RegistryConfigurationError,
    UnknownRole,
    UnknownScope,
)
from scopeauth.features.rbac.matcher import WILDCARD, validate_permission


_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")
QUALIFIER = ":"


# ============================================================================
# Frozen definitions
# ============================================================================

@dataclass(frozen=True)
class RoleDefinition:
    name: str
    scope: str
    permissions: Tuple[str, ...] = ()
    can_assign: Tuple[str, ...] = ()

    @property
    def can_assign_any(self) -> bool:
        return WILDCARD in self.can_assign


@dataclass(frozen=True)
class ScopeDefinition:
    name: str
    parent: Optional[str] = None
    roles: Mapping[str, RoleDefinition] = field(default_factory=lambda: MappingProxyType({}))

    def role_names(self) -> List[str]:
        return list(self.roles)


class Registry:
    """Read-only catalog of scopes and the roles defined in them."""

    def __init__(self, scopes: Dict[str, ScopeDefinition]):
        self._scopes = MappingProxyType(dict(scopes))

    def __repr__(self) -> str:
        return f"<Registry(scopes={list(self._scopes)})>"

    def scopes(self) -> List[str]:
        return list(self._scopes)

    def get_scope(self, scope: str) -> Optional[ScopeDefinition]:
        return self._scopes.get(scope)

    def get_role(self, role: str, scope: str) -> Optional[RoleDefinition]:
        definition = self._scopes.get(scope)
        if definition is None:
            return None
        return definition.roles.get(role)

    def has_scope(self, scope: str) -> bool:
        return scope in self._scopes

    def resolve(self, role: str, scope: str) -> RoleDefinition:
        """
        Look up a role definition.

        Raises:
            UnknownScope: the scope is not defined
            UnknownRole: the scope has no such role
        """
        definition = self._scopes.get(scope)
        if definition is None:
            raise UnknownScope(f"scope {scope!r} is not defined", scope=scope, role=role)
        role_definition = definition.roles.get(role)
        if role_definition is None:
            raise UnknownRole(f"role {role!r} is not defined in scope {scope!r}", scope=scope, role=role)
        return role_definition

    def validate_scope(self, scope: str) -> ScopeDefinition:
        definition = self._scopes.get(scope)
        if definition is None:
            raise UnknownScope(f"scope {scope!r} is not defined", scope=scope)
        return definition

    def permissions_for(self, role: str, scope: str) -> Tuple[str, ...]:
        definition = self.get_role(role, scope)
        return definition.permissions if definition else ()

    # ------------------------------------------------------------------
    # Scope tree
    # ------------------------------------------------------------------

    def parent_of(self, scope: str) -> Optional[str]:
        definition = self._scopes.get(scope)
        return definition.parent if definition else None

    def ancestors(self, scope: str) -> List[str]:
        """Parent, grandparent, ... up to the root. Nearest first."""
        chain = []
        current = self.parent_of(scope)
        while current is not None:
            chain.append(current)
            current = self.parent_of(current)
        return chain

    def children_of(self, scope: str) -> List[str]:
        return [name for name, definition in self._scopes.items() if definition.parent == scope]

    def is_within(self, scope: str, ancestor: str) -> bool:
        """True when scope is ancestor itself or lies beneath it."""
        return scope == ancestor or ancestor in self.ancestors(scope)

    # ------------------------------------------------------------------
    # Delegation
    # ------------------------------------------------------------------

    def can_role_assign(self, holder_role: str, holder_scope: str, target_role: str, target_scope: str) -> bool:
        """Whether holding holder_role at holder_scope allows granting target_role at target_scope."""
        holder = self.get_role(holder_role, holder_scope)
        if holder is None or self.get_role(target_role, target_scope) is None:
            return False
        if not self.is_within(target_scope, holder_scope):
            return False
        if holder.can_assign_any:
            return True
        for entry in holder.can_assign:
            scope_name, role_name = _split_entry(entry)
            if role_name != target_role:
                continue
            if scope_name is None or scope_name == target_scope:
                return True
        return False

    def assignable_roles(self, role: str, scope: str) -> List[Tuple[str, str]]:
        """All (scope, role) pairs a holder of role at scope may grant."""
        result = []
        for scope_name, definition in self._scopes.items():
            for role_name in definition.roles:
                if self.can_role_assign(role, scope, role_name, scope_name):
                    result.append((scope_name, role_name))
        return result


def _split_entry(entry: str) -> Tuple[Optional[str], str]:
    if QUALIFIER in entry:
        scope_name, role_name = entry.split(QUALIFIER, 1)
        return scope_name, role_name
    return None, entry


# ============================================================================
# Builder
# ============================================================================

class RoleBuilder:
    """Collects the permissions and delegation set of one role."""

    def __init__(self, scope: "ScopeBuilder", name: str):
        self._scope = scope
        self.name = name
        self.permission_patterns: List[str] = []
        self.assignable: List[str] = []

    def permissions(self, *patterns: str) -> "RoleBuilder":
        for pattern in patterns:
            if pattern not in self.permission_patterns:
                self.permission_patterns.append(pattern)
        return self

    def can_assign(self, *roles: str) -> "RoleBuilder":
        for role in roles:
            if role not in self.assignable:
                self.assignable.append(role)
        return self

    def role(self, name: str) -> "RoleBuilder":
        return self._scope.role(name)

    def define_scope(self, name: str, parent: Optional[str] = None) -> "ScopeBuilder":
        return self._scope.define_scope(name, parent)

    def build(self) -> Registry:
        return self._scope.build()


class ScopeBuilder:
    def __init__(self, registry: "RegistryBuilder", name: str, parent: Optional[str] = None):
        self._registry = registry
        self.name = name
        self.parent = parent
        self.roles: Dict[str, RoleBuilder] = {}

    def parent_scope(self, name: str) -> "ScopeBuilder":
        self._registry._set_parent(self, name)
        return self

    def role(self, name: str) -> RoleBuilder:
        if name not in self.roles:
            self.roles[name] = RoleBuilder(self, name)
        return self.roles[name]

    def define_scope(self, name: str, parent: Optional[str] = None) -> "ScopeBuilder":
        return self._registry.define_scope(name, parent)

    def build(self) -> Registry:
        return self._registry.build()


class RegistryBuilder:
    def __init__(self):
        self._scopes: Dict[str, ScopeBuilder] = {}
        self._errors: List[str] = []

    def define_scope(self, name: str, parent: Optional[str] = None) -> ScopeBuilder:
        """Create or return the builder for a scope. Idempotent for the same name."""
        scope = self._scopes.get(name)
        if scope is None:
            scope = ScopeBuilder(self, name, parent)
            self._scopes[name] = scope
        elif parent is not None:
            self._set_parent(scope, parent)
        return scope

    def _set_parent(self, scope: ScopeBuilder, parent: str) -> None:
        if scope.parent is not None and scope.parent != parent:
            self._errors.append(
                f"scope {scope.name!r} redefined with parent {parent!r} (was {scope.parent!r})"
            )
            return
        scope.parent = parent

    def build(self) -> Registry:
        """
        Validate the whole catalog and freeze it.

        Raises:
            RegistryConfigurationError: listing every problem found
        """
        errors = list(self._errors)
        errors.extend(self._validate_scopes())
        if not errors:
            errors.extend(self._validate_roles())
        if errors:
            raise RegistryConfigurationError("invalid registry: " + "; ".join(errors))

        scopes = {}
        for name, scope in self._scopes.items():
            roles = {
                role.name: RoleDefinition(
                    name=role.name,
                    scope=name,
                    permissions=tuple(role.permission_patterns),
                    can_assign=tuple(role.assignable),
                )
                for role in scope.roles.values()
            }
            scopes[name] = ScopeDefinition(name=name, parent=scope.parent, roles=MappingProxyType(roles))
        return Registry(scopes)

    def _validate_scopes(self) -> Iterable[str]:
        errors = []
        for name, scope in self._scopes.items():
            if not _NAME_RE.match(name):
                errors.append(f"invalid scope name {name!r}")
            if scope.parent is not None and scope.parent not in self._scopes:
                errors.append(f"scope {name!r} references unknown parent scope {scope.parent!r}")

        for name in self._scopes:
            seen = {name}
            current = self._scopes[name].parent
            while current is not None and current in self._scopes:
                if current in seen:
                    errors.append(f"scope hierarchy cycle through {name!r}")
                    break
                seen.add(current)
                current = self._scopes[current].parent
        return errors

    def _subtree(self, scope: str) -> List[str]:
        result = [scope]
        for name, builder in self._scopes.items():
            if builder.parent == scope:
                result.extend(self._subtree(name))
        return result

    def _validate_roles(self) -> Iterable[str]:
        errors = []
        for scope_name, scope in self._scopes.items():
            subtree = self._subtree(scope_name)
            for role in scope.roles.values():
                where = f"{scope_name}.{role.name}"
                if not _NAME_RE.match(role.name):
                    errors.append(f"invalid role name {where!r}")
                for pattern in role.permission_patterns:
                    try:
                        validate_permission(pattern)
                    except InvalidPermission as exc:
                        errors.append(f"role {where!r}: {exc.message}")
                for entry in role.assignable:
                    if entry == WILDCARD:
                        continue
                    target_scope, target_role = _split_entry(entry)
                    candidates = [target_scope] if target_scope else subtree
                    if target_scope and target_scope not in subtree:
                        errors.append(
                            f"role {where!r} cannot assign {entry!r}: scope is not {scope_name!r} or beneath it"
                        )
                        continue
                    if not any(
                        c in self._scopes and target_role in self._scopes[c].roles for c in candidates
                    ):
                        errors.append(
                            f"role {where!r} cannot assign {entry!r}: no such role at {scope_name!r} or beneath it"
                        )
        return errors
