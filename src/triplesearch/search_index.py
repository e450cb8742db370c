"""
TripleSearch Search Index
=========================

In-memory record of one authorization-partitioned index.

The physical index name is content addressed: it is the md5 of the type name
and the canonical JSON of the sorted allowed groups, so equivalent group sets
always resolve to the same index.
"""

import enum
import hashlib
import threading
import time
from typing import Iterable, List, Optional, Sequence

from .authorization import (
    AuthorizationContext,
    AuthorizationGroup,
    canonical_group_json,
    serialize_authorization_groups,
    sort_authorization_groups,
)


class IndexStatus(enum.Enum):
    VALID = "valid"
    INVALID = "invalid"
    UPDATING = "updating"
    DELETED = "deleted"


def index_name(
    type_name: str,
    allowed_groups: Iterable[AuthorizationGroup],
    used_groups: Optional[Iterable[AuthorizationGroup]] = None
) -> str:
    """
    Deterministic physical index name.

    Used groups only contribute to the name when there are any.
    """
    groups = "-".join(canonical_group_json(g) for g in sort_authorization_groups(allowed_groups))
    key = f"{type_name}-{groups}"
    used = sort_authorization_groups(used_groups or [])
    if used:
        key += "|" + "-".join(canonical_group_json(g) for g in used)
    return hashlib.md5(key.encode("utf-8")).hexdigest()


def registry_key(
    type_name: str,
    allowed_groups: Iterable[AuthorizationGroup],
    used_groups: Optional[Iterable[AuthorizationGroup]] = None
) -> tuple:
    return (
        type_name,
        serialize_authorization_groups(allowed_groups),
        serialize_authorization_groups(used_groups or [])
    )


class SearchIndex:
    """
    One partitioned index.

    ``lock`` serializes changes to the index content. Status changes are
    broadcast through ``status_changed`` so readers can block until a
    rebuild finishes instead of polling.
    """

    def __init__(
        self,
        uri: str,
        name: str,
        type_name: str,
        allowed_groups: Sequence[AuthorizationGroup],
        used_groups: Sequence[AuthorizationGroup] = (),
        status: IndexStatus = IndexStatus.VALID
    ):
        self.uri = uri
        self.name = name
        self.type_name = type_name
        self.allowed_groups: List[AuthorizationGroup] = sort_authorization_groups(allowed_groups)
        self.used_groups: List[AuthorizationGroup] = sort_authorization_groups(used_groups)
        self.lock = threading.Lock()
        self.status_changed = threading.Condition()
        self._status = status

    @property
    def status(self) -> IndexStatus:
        return self._status

    @status.setter
    def status(self, status: IndexStatus) -> None:
        with self.status_changed:
            self._status = status
            self.status_changed.notify_all()

    @property
    def key(self) -> tuple:
        return registry_key(self.type_name, self.allowed_groups, self.used_groups)

    @property
    def context(self) -> AuthorizationContext:
        """Authorization context the index content is fetched with."""
        return AuthorizationContext.for_groups(self.allowed_groups, self.used_groups)

    def wait_until_settled(self, timeout: Optional[float] = None) -> bool:
        """
        Block while the index is being updated.

        Returns:
            False if the index was still updating when the timeout expired
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self.status_changed:
            while self._status is IndexStatus.UPDATING:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self.status_changed.wait(remaining)
        return True

    def __repr__(self):
        return f"SearchIndex(name={self.name!r}, type={self.type_name!r}, status={self._status.value})"
