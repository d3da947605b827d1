"""
Role catalogs: the built-in one and those loaded from JSON files.
"""
import json
from pathlib import Path
from typing import Any, Mapping, Optional

from pydantic import ValidationError

from scopeauth.features.rbac.errors import RegistryConfigurationError
from scopeauth.features.rbac.registry import Registry, RegistryBuilder
from scopeauth.features.rbac.schemas import RegistrySpec
from scopeauth.utils import get_logger


log = get_logger(__name__)


def default_registry() -> Registry:
    """Organization > project > team catalog used when no file is configured."""
    return (
        RegistryBuilder()
        .define_scope("organization")
            .role("super_admin").permissions("*").can_assign("*")
            .role("admin").permissions("organization.*", "project.*", "team.*", "task.*", "members.*")
                .can_assign("admin", "member", "viewer", "project:admin", "project:editor", "project:viewer")
            .role("member").permissions("organization.read", "project.read", "project.create", "team.read", "task.*")
            .role("viewer").permissions("project.read", "team.read", "task.read")
        .define_scope("project", parent="organization")
            .role("admin").permissions("project.*", "team.*", "task.*").can_assign("*")
            .role("editor").permissions("project.read", "project.update", "task.*").can_assign("viewer")
            .role("viewer").permissions("project.read", "task.read")
        .define_scope("team", parent="project")
            .role("lead").permissions("team.*", "task.*").can_assign("member")
            .role("member").permissions("team.read", "task.read", "task.update")
        .build()
    )


def load_registry(data: Mapping[str, Any]) -> Registry:
    """
    Build a registry from a mapping shaped like RegistrySpec.

    Raises:
        RegistryConfigurationError: the mapping is malformed or the catalog is inconsistent
    """
    try:
        spec = RegistrySpec.model_validate(data)
    except ValidationError as exc:
        raise RegistryConfigurationError(f"invalid registry document: {exc}") from exc

    builder = RegistryBuilder()
    for scope in spec.scopes:
        scope_builder = builder.define_scope(scope.name, scope.parent)
        for role in scope.roles:
            scope_builder.role(role.name).permissions(*role.permissions).can_assign(*role.can_assign)
    return builder.build()


def load_registry_file(path: Optional[str]) -> Registry:
    if not path:
        log.info("Using built-in role catalog")
        return default_registry()
    try:
        data = json.loads(Path(path).read_text())
    except (OSError, json.JSONDecodeError) as exc:
        raise RegistryConfigurationError(f"cannot read registry file {path}: {exc}") from exc
    log.info("Loaded role catalog from %s", path)
    return load_registry(data)
