"""
auth/permissions.py -- Permission matching for API key principals.

A key carries a list of Permission(resource, actions). A capability is granted
if ANY permission matches both the resource and the action (union semantics).

Resource matching:
  "*"               matches every resource
  "server:u1:*"     '*' inside a pattern matches any run of characters
  "user:u1"         otherwise an exact, case-sensitive comparison

Action matching: the action must be listed, or the list must contain "*".

Patterns are translated with re.escape() so characters like '.' in resource
names are never interpreted as regex syntax.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from enum import Enum
from functools import lru_cache

from auth.models import Permission


class ResourceType(str, Enum):
    SERVER = "server"
    GROUP = "group"
    TOOL = "tool"
    ENDPOINT = "endpoint"
    USER = "user"


class Action(str, Enum):
    READ = "read"
    WRITE = "write"
    DELETE = "delete"
    EXECUTE = "execute"
    MANAGE = "manage"
    ALL = "*"


@lru_cache(maxsize=1024)
def _compile(pattern: str) -> re.Pattern:
    parts = (re.escape(p) for p in pattern.split("*"))
    return re.compile("^" + ".*".join(parts) + "$")


def matches_resource(pattern: str, resource: str) -> bool:
    if pattern == resource or pattern == "*":
        return True
    if "*" in pattern:
        return _compile(pattern).match(resource) is not None
    return False


def matches_action(actions: Iterable[str], action: str) -> bool:
    allowed = set(actions)
    return action in allowed or Action.ALL.value in allowed


def has_permission(permissions: Iterable[Permission], resource: str, action: str) -> bool:
    """Return True if any permission grants `action` on `resource`."""
    return any(matches_resource(p.resource, resource) and matches_action(p.actions, action) for p in permissions)


def grants_all(granted: Iterable[Permission], requested: Iterable[Permission]) -> bool:
    """Return True if every resource/action pair in `requested` is already granted.

    Requested resource patterns and actions are matched as literal names, so a
    requested "*" passes only where `granted` already holds a covering "*".
    """
    granted = list(granted)
    return all(has_permission(granted, p.resource, a) for p in requested for a in p.actions)


def validate_permission(permission: Permission) -> bool:
    """A permission needs a non-empty resource and at least one non-blank action."""
    if not isinstance(permission.resource, str) or not permission.resource.strip():
        return False
    if not permission.actions:
        return False
    return all(isinstance(a, str) and a.strip() for a in permission.actions)


def default_permissions(user_id: str) -> list[Permission]:
    """Permissions granted to a new key when the caller asks for none.

    Scoped to the owner's own resources only.
    """
    return [
        Permission(f"{ResourceType.USER.value}:{user_id}", (Action.READ.value, Action.WRITE.value)),
        Permission(
            f"{ResourceType.SERVER.value}:{user_id}:*",
            (Action.READ.value, Action.WRITE.value, Action.DELETE.value, Action.MANAGE.value),
        ),
        Permission(
            f"{ResourceType.GROUP.value}:{user_id}:*",
            (Action.READ.value, Action.WRITE.value, Action.DELETE.value, Action.MANAGE.value),
        ),
        Permission(f"{ResourceType.TOOL.value}:{user_id}:*", (Action.EXECUTE.value,)),
        Permission(f"{ResourceType.ENDPOINT.value}:{user_id}:*", (Action.READ.value, Action.EXECUTE.value)),
    ]

