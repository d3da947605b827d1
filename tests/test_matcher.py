import pytest

from scopeauth.features.rbac.errors import InvalidPermission
from scopeauth.features.rbac.matcher import expand, is_valid_permission, matches, matches_any, validate_permission


@pytest.mark.parametrize(
    "granted,requested,expected",
    [
        ("files.read", "files.read", True),
        ("files.read", "files.write", False),
        ("*", "files.read", True),
        ("*", "organization.users.create", True),
        ("*", "anything", True),
        ("files.*", "files.read", True),
        ("files.*", "users.read", False),
        ("project.*", "project.task.create", True),
        ("*.read", "files.read", True),
        ("*.read", "files.write", False),
        ("*.users.*", "admin.users.create", True),
        ("files.*.private", "files.read.private", True),
        ("files.*.private", "files.read.public", False),
        ("files.read", "files.read.write", False),
        ("files.read.write", "files.read", False),
        ("files", "files.read", False),
        ("files.*", "files", False),
    ],
)
def test_matches(granted, requested, expected):
    assert matches(granted, requested) is expected


def test_matches_rejects_empty_and_malformed():
    assert not matches("", "files.read")
    assert not matches("files.read", "")
    assert not matches("*", "")
    assert not matches("files..read", "files..read")
    assert not matches("files.*", "files.")


def test_matches_is_directional():
    assert matches("project.*", "project.create")
    assert not matches("project.create", "project.*")


def test_matches_any():
    patterns = ["project.read", "task.*"]
    assert matches_any(patterns, "task.delete")
    assert not matches_any(patterns, "project.delete")
    assert not matches_any([], "project.read")


def test_expand_keeps_known_order():
    known = ["task.read", "project.read", "task.write", "team.read"]
    assert expand(["task.*", "team.read"], known) == ["task.read", "task.write", "team.read"]
    assert expand(["*"], known) == known


def test_validate_permission():
    assert validate_permission("project.read") == "project.read"
    assert validate_permission("project-x.read_all") == "project-x.read_all"
    assert validate_permission("*") == "*"
    assert validate_permission("project.*") == "project.*"

    for bad in ["", "project..read", ".read", "project.re ad", "project.re$d", "proj*.read"]:
        with pytest.raises(InvalidPermission):
            validate_permission(bad)

    with pytest.raises(InvalidPermission):
        validate_permission("*", allow_wildcard=False)
    with pytest.raises(InvalidPermission):
        validate_permission("project.*", allow_wildcard=False)


def test_is_valid_permission():
    assert is_valid_permission("task.read")
    assert not is_valid_permission("task.*", allow_wildcard=False)
    assert not is_valid_permission("")
