"""
TripleSearch Authorization — Group Codec
========================================

Authorization groups partition the search indexes. A group is a JSON object
as handed out by the authorization layer in front of the triplestore:

    {"name": "department", "variables": ["legal", "europe"]}

A group serializes to its name followed by its variables
("departmentlegaleurope"); a set of groups serializes to the sorted
serialized groups joined by "#". The variables of a group keep their
original order, only the groups themselves are sorted.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple


AuthorizationGroup = Dict[str, Any]


def serialize_authorization_group(group: AuthorizationGroup) -> str:
    """Return the string form of a single authorization group."""
    return group["name"] + "".join(group.get("variables") or [])


def serialize_authorization_groups(groups: Iterable[AuthorizationGroup]) -> str:
    """
    Return the string form of a set of authorization groups.

    Example:
        [{"name": "public", "variables": []},
         {"name": "department", "variables": ["legal", "europe"]}]
        serializes to "departmentlegaleurope#public"
    """
    return "#".join(sorted(serialize_authorization_group(g) for g in groups))


def sort_authorization_groups(groups: Iterable[AuthorizationGroup]) -> List[AuthorizationGroup]:
    """Sort groups by their serialized form. Variables are left untouched."""
    return sorted(groups, key=serialize_authorization_group)


def canonical_group_json(group: AuthorizationGroup) -> str:
    """JSON form of a group with sorted keys, used in names and storage."""
    return json.dumps(group, sort_keys=True, separators=(",", ":"))


def parse_authorization_groups(header: Optional[str]) -> Optional[List[AuthorizationGroup]]:
    """
    Parse a mu-auth-allowed-groups style header value.

    Returns None when the header is absent or empty, the sorted list of
    groups otherwise.
    """
    if header is None or not header.strip():
        return None
    groups = json.loads(header)
    if not isinstance(groups, list):
        raise ValueError(f"Expected a JSON array of authorization groups, got {header!r}")
    return sort_authorization_groups(groups)


@dataclass(frozen=True)
class AuthorizationContext:
    """
    Request-scoped authorization passed along with every triplestore call.

    A sudo context bypasses authorization and is reserved for administrative
    bookkeeping (index metadata, delta root discovery).
    """

    allowed_groups: Tuple[str, ...] = field(default=())
    used_groups: Tuple[str, ...] = field(default=())
    sudo: bool = False

    @classmethod
    def for_groups(
        cls,
        allowed_groups: Iterable[AuthorizationGroup],
        used_groups: Optional[Iterable[AuthorizationGroup]] = None
    ) -> "AuthorizationContext":
        # groups are kept as canonical JSON so the context stays hashable
        return cls(
            allowed_groups=tuple(canonical_group_json(g) for g in sort_authorization_groups(allowed_groups)),
            used_groups=tuple(canonical_group_json(g) for g in sort_authorization_groups(used_groups or []))
        )

    @classmethod
    def sudo_context(cls) -> "AuthorizationContext":
        return cls(sudo=True)

    def headers(self) -> Dict[str, str]:
        """HTTP headers understood by the authorization layer."""
        if self.sudo:
            return {"mu-auth-sudo": "true"}
        headers = {"mu-auth-allowed-groups": "[" + ",".join(self.allowed_groups) + "]"}
        if self.used_groups:
            headers["mu-auth-used-groups"] = "[" + ",".join(self.used_groups) + "]"
        return headers
