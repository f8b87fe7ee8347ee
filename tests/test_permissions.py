"""Unit tests for auth/permissions.py and Principal.can()."""

import pytest

from auth.models import Permission, Principal
from auth.permissions import (
    default_permissions,
    grants_all,
    has_permission,
    matches_resource,
    validate_permission,
)


@pytest.mark.parametrize(
    "pattern,resource,expected",
    [
        ("*", "server:u1:abc", True),
        ("server:u1:*", "server:u1:abc", True),
        ("server:u1:*", "server:u2:abc", False),
        ("user:u1", "user:u1", True),
        ("user:u1", "user:u10", False),
        ("tool:u1.x", "tool:u1ax", False),  # '.' is literal, not a regex wildcard
        ("Server:u1", "server:u1", False),
    ],
)
def test_matches_resource(pattern, resource, expected):
    assert matches_resource(pattern, resource) is expected


def test_union_semantics_across_permissions():
    perms = [
        Permission("server:u1:*", ("read",)),
        Permission("server:u1:prod", ("write",)),
    ]
    assert has_permission(perms, "server:u1:prod", "read")
    assert has_permission(perms, "server:u1:prod", "write")
    assert not has_permission(perms, "server:u1:dev", "write")


def test_wildcard_action_grants_everything():
    assert has_permission([Permission("*", ("*",))], "anything:at:all", "delete")


def test_empty_permission_list_grants_nothing():
    assert not has_permission([], "user:u1", "read")


def test_default_permissions_are_scoped_to_owner():
    perms = default_permissions("u1")
    assert has_permission(perms, "user:u1", "write")
    assert has_permission(perms, "server:u1:s", "manage")
    assert has_permission(perms, "tool:u1:t", "execute")
    assert not has_permission(perms, "user:u2", "read")
    assert not has_permission(perms, "server:u2:s", "read")
    assert all(validate_permission(p) for p in perms)


@pytest.mark.parametrize(
    "perm",
    [Permission("", ("read",)), Permission("user:u1", ()), Permission("user:u1", ("  ",))],
)
def test_validate_permission_rejects_malformed(perm):
    assert validate_permission(perm) is False


def test_grants_all_requires_every_pair():
    granted = [Permission("server:u1:*", ("read", "write")), Permission("user:u1", ("read",))]
    assert grants_all(granted, [Permission("server:u1:prod", ("read",)), Permission("user:u1", ("read",))])
    assert grants_all(granted, [Permission("server:u1:*", ("write",))])
    assert not grants_all(granted, [Permission("user:u1", ("read", "write"))])
    assert not grants_all(granted, [Permission("server:u2:prod", ("read",))])


@pytest.mark.parametrize(
    "requested",
    [Permission("*", ("read",)), Permission("user:u1", ("*",)), Permission("user:*", ("read",))],
)
def test_grants_all_does_not_widen_to_wildcards(requested):
    assert not grants_all([Permission("user:u1", ("read", "write"))], [requested])


def test_session_principal_has_owner_rights():
    assert Principal(user_id="u1").can("server:u1:s", "delete")


def test_key_principal_limited_to_its_permissions():
    p = Principal(user_id="u1", permissions=(Permission("user:u1", ("read",)),), key_id="k1")
    assert p.can("user:u1", "read")
    assert not p.can("user:u1", "write")


def test_key_principal_can_only_grant_what_it_holds():
    p = Principal(user_id="u1", permissions=(Permission("user:u1", ("write",)),), key_id="k1")
    assert p.can_grant([Permission("user:u1", ("write",))])
    assert not p.can_grant([Permission("*", ("*",))])
    assert not p.can_grant([Permission("user:u1", ("read",))])


def test_session_principal_can_grant_anything():
    assert Principal(user_id="u1").can_grant([Permission("*", ("*",))])
