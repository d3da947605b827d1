"""
Scope instance hierarchy resolvers.

The registry knows that projects live under organizations; a resolver knows
that project p1 lives under organization o1. Permission checks and delegation
checks ask the resolver for the ancestor instances of the instance they are
evaluating, so a role granted at o1 applies inside p1.

Resolvers are injected into the assignment store:
- TableScopeHierarchy (default) reads edges from the scope_hierarchy table
- StaticScopeHierarchy holds edges in memory
- NoScopeHierarchy disables inheritance entirely
"""
from typing import Dict, List, NamedTuple, Optional, Protocol, Tuple

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from scopeauth.features.rbac.errors import RBACError, UnknownScope
from scopeauth.features.rbac.models import ScopeHierarchy, WILDCARD_SCOPE_ID
from scopeauth.features.rbac.registry import Registry
from scopeauth.utils import get_logger


log = get_logger(__name__)

# Guards against cycles introduced directly in the table
MAX_DEPTH = 32


class ScopeRef(NamedTuple):
    scope: str
    scope_id: str

    def __str__(self) -> str:
        return f"{self.scope}:{self.scope_id}"


class ScopeHierarchyResolver(Protocol):
    async def ancestors(self, session: AsyncSession, scope: str, scope_id: str) -> List[ScopeRef]:
        """Parent instance, grandparent instance, ... Nearest first."""
        ...

    async def children(self, session: AsyncSession, scope: str, scope_id: str) -> List[ScopeRef]:
        ...

    async def set_parent(
        self,
        session: AsyncSession,
        registry: Registry,
        child: ScopeRef,
        parent: ScopeRef,
    ) -> None:
        ...


def check_edge(registry: Registry, child: ScopeRef, parent: ScopeRef) -> None:
    """An instance edge must follow the registry's scope tree."""
    registry.validate_scope(child.scope)
    registry.validate_scope(parent.scope)
    if WILDCARD_SCOPE_ID in (child.scope_id, parent.scope_id):
        raise RBACError("hierarchy edges link concrete instances", scope=child.scope, scope_id=child.scope_id)
    expected = registry.parent_of(child.scope)
    if expected != parent.scope:
        raise UnknownScope(
            f"scope {child.scope!r} has parent {expected!r}, not {parent.scope!r}",
            scope=child.scope,
            scope_id=child.scope_id,
        )


class NoScopeHierarchy:
    async def ancestors(self, session: AsyncSession, scope: str, scope_id: str) -> List[ScopeRef]:
        return []

    async def children(self, session: AsyncSession, scope: str, scope_id: str) -> List[ScopeRef]:
        return []

    async def set_parent(self, session, registry, child, parent) -> None:
        raise RBACError("scope hierarchy is disabled", scope=child.scope, scope_id=child.scope_id)


class StaticScopeHierarchy:
    """
    In-memory instance edges.

    Usage:
        StaticScopeHierarchy({("project", "p1"): ("organization", "o1")})
    """

    def __init__(self, edges: Optional[Dict[Tuple[str, str], Tuple[str, str]]] = None):
        self._parents: Dict[ScopeRef, ScopeRef] = {
            ScopeRef(*child): ScopeRef(*parent) for child, parent in (edges or {}).items()
        }

    async def ancestors(self, session: AsyncSession, scope: str, scope_id: str) -> List[ScopeRef]:
        chain: List[ScopeRef] = []
        current = self._parents.get(ScopeRef(scope, scope_id))
        while current is not None and current not in chain and len(chain) < MAX_DEPTH:
            chain.append(current)
            current = self._parents.get(current)
        return chain

    async def children(self, session: AsyncSession, scope: str, scope_id: str) -> List[ScopeRef]:
        parent = ScopeRef(scope, scope_id)
        return [child for child, p in self._parents.items() if p == parent]

    async def set_parent(self, session, registry: Registry, child: ScopeRef, parent: ScopeRef) -> None:
        check_edge(registry, child, parent)
        self._parents[child] = parent


class TableScopeHierarchy:
    """Instance edges stored in the scope_hierarchy table."""

    async def _parent(self, session: AsyncSession, ref: ScopeRef) -> Optional[ScopeRef]:
        result = await session.execute(
            select(ScopeHierarchy.parent_scope, ScopeHierarchy.parent_scope_id).where(
                ScopeHierarchy.scope == ref.scope,
                ScopeHierarchy.scope_id == ref.scope_id,
            )
        )
        row = result.first()
        return ScopeRef(row[0], row[1]) if row else None

    async def ancestors(self, session: AsyncSession, scope: str, scope_id: str) -> List[ScopeRef]:
        chain: List[ScopeRef] = []
        if scope_id == WILDCARD_SCOPE_ID:
            return chain
        current = await self._parent(session, ScopeRef(scope, scope_id))
        while current is not None:
            if current in chain or len(chain) >= MAX_DEPTH:
                log.warning(f"Scope hierarchy cycle or excessive depth at {current}")
                break
            chain.append(current)
            current = await self._parent(session, current)
        return chain

    async def children(self, session: AsyncSession, scope: str, scope_id: str) -> List[ScopeRef]:
        result = await session.execute(
            select(ScopeHierarchy.scope, ScopeHierarchy.scope_id)
            .where(
                ScopeHierarchy.parent_scope == scope,
                ScopeHierarchy.parent_scope_id == scope_id,
            )
            .order_by(ScopeHierarchy.scope, ScopeHierarchy.scope_id)
        )
        return [ScopeRef(row[0], row[1]) for row in result.all()]

    async def set_parent(self, session: AsyncSession, registry: Registry, child: ScopeRef, parent: ScopeRef) -> None:
        """Record (or move) the parent of a concrete instance."""
        check_edge(registry, child, parent)
        await session.execute(
            delete(ScopeHierarchy).where(
                ScopeHierarchy.scope == child.scope,
                ScopeHierarchy.scope_id == child.scope_id,
            )
        )
        session.add(
            ScopeHierarchy(
                scope=child.scope,
                scope_id=child.scope_id,
                parent_scope=parent.scope,
                parent_scope_id=parent.scope_id,
            )
        )
        await session.flush()
        log.info(f"Scope {child} now belongs to {parent}")
