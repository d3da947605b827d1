"""
Permission pattern matching.

Supported patterns:
- "*" matches every permission
- "project.*" matches everything under project ("project.create", "project.task.create")
- "*.read" matches read on any single resource ("files.read", "members.read")
- "project.task.create" matches exactly

Matching is directional: the granted pattern is always the first argument.
"""
import re
from typing import Iterable, List

from scopeauth.features.rbac.errors import InvalidPermission


WILDCARD = "*"
SEPARATOR = "."

_SEGMENT_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def matches(granted: str, requested: str) -> bool:
    """
    Check whether a granted permission pattern covers a requested permission.

    Examples:
        matches("*", "files.read")              # True
        matches("files.*", "files.read")        # True
        matches("files.*", "files.a.b")         # True, trailing wildcard covers any suffix
        matches("*.read", "files.read")         # True
        matches("*.read", "files.write")        # False
        matches("files.read", "files.read.x")   # False, lengths differ
    """
    if not granted or not requested:
        return False
    if granted == WILDCARD:
        return True

    granted_parts = granted.split(SEPARATOR)
    requested_parts = requested.split(SEPARATOR)
    if "" in granted_parts or "" in requested_parts:
        return False

    last = len(granted_parts) - 1
    for i, part in enumerate(granted_parts):
        if i >= len(requested_parts):
            return False
        if part == WILDCARD:
            if i == last:
                return True
            continue
        if part != requested_parts[i]:
            return False

    return len(granted_parts) == len(requested_parts)


def matches_any(patterns: Iterable[str], requested: str) -> bool:
    return any(matches(pattern, requested) for pattern in patterns)


def expand(patterns: Iterable[str], known: Iterable[str]) -> List[str]:
    """Return the known permissions that the given patterns grant, in the order of known."""
    patterns = list(patterns)
    return [permission for permission in known if matches_any(patterns, permission)]


def validate_permission(permission: str, allow_wildcard: bool = True) -> str:
    """
    Validate a permission string and return it unchanged.

    Raises:
        InvalidPermission: empty string, empty segment, bad character, or a
            wildcard where none is allowed
    """
    if not permission:
        raise InvalidPermission("permission cannot be empty")
    if permission == WILDCARD:
        if not allow_wildcard:
            raise InvalidPermission("wildcard not allowed here")
        return permission

    for part in permission.split(SEPARATOR):
        if not part:
            raise InvalidPermission(f"permission {permission!r} has an empty segment")
        if part == WILDCARD:
            if not allow_wildcard:
                raise InvalidPermission(f"wildcard not allowed in {permission!r}")
            continue
        if not _SEGMENT_RE.match(part):
            raise InvalidPermission(f"permission {permission!r} contains an invalid character")
    return permission


def is_valid_permission(permission: str, allow_wildcard: bool = True) -> bool:
    try:
        validate_permission(permission, allow_wildcard)
    except InvalidPermission:
        return False
    return True
