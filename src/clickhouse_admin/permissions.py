"""Permissions, caller context and the shared visibility predicate.

Both the live-query listing and the historical query log scope their rows
with the same rule: a caller holding an elevated permission sees everything;
everyone else sees only rows whose resolved owner is provably themselves.
"""
import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .db import get_connection

logger = logging.getLogger(__name__)

SUPER_ADMIN_ROLE = "super_admin"

QUERY_EXECUTE = "query:execute"
QUERY_HISTORY_VIEW = "query:history:view"
QUERY_HISTORY_VIEW_ALL = "query:history:view:all"
LIVE_QUERIES_VIEW = "live_queries:view"
LIVE_QUERIES_VIEW_ALL = "live_queries:view_all"
LIVE_QUERIES_KILL = "live_queries:kill"
LIVE_QUERIES_KILL_ALL = "live_queries:kill_all"
CONNECTIONS_ADMIN = "connections:admin"


@dataclass(frozen=True)
class CallerContext:
    """The authenticated application user behind a request.

    ``permissions`` is resolved once per request (token claims plus the
    permission store); ``is_admin`` is the coarse fast path that grants
    everything without a lookup.
    """
    user_id: str
    permissions: frozenset[str] = field(default_factory=frozenset)
    is_admin: bool = False
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def can(self, permission: str) -> bool:
        return self.is_admin or permission in self.permissions

    def can_any(self, permissions: Iterable[str]) -> bool:
        return any(self.can(p) for p in permissions)


@dataclass(frozen=True)
class VisibilityPolicy:
    """Own-only visibility unless the caller holds one elevated permission."""
    elevated: frozenset[str]

    def is_privileged(self, caller: CallerContext) -> bool:
        return caller.can_any(self.elevated)

    def allows(self, caller: CallerContext, owner_id: Optional[str]) -> bool:
        """Whether ``caller`` may see a row owned by ``owner_id``.

        Unknown owners are only visible to privileged callers.
        """
        if self.is_privileged(caller):
            return True
        return owner_id is not None and owner_id == caller.user_id


LIVE_VISIBILITY = VisibilityPolicy(frozenset({LIVE_QUERIES_VIEW_ALL, LIVE_QUERIES_KILL_ALL}))
HISTORY_VISIBILITY = VisibilityPolicy(frozenset({QUERY_HISTORY_VIEW_ALL}))
KILL_AUTHORITY = VisibilityPolicy(frozenset({LIVE_QUERIES_KILL_ALL}))


def may_terminate(caller: CallerContext, owner_id: Optional[str]) -> bool:
    """Termination rule: baseline kill permission plus ownership or kill-all."""
    return caller.can(LIVE_QUERIES_KILL) and KILL_AUTHORITY.allows(caller, owner_id)


class PermissionStore:
    """Role-based permission lookups against the metadata store."""

    def get_user_permissions(self, user_id: str) -> set[str]:
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT DISTINCT p.name
                    FROM rbac_user_roles ur
                    JOIN rbac_role_permissions rp ON rp.role_id = ur.role_id
                    JOIN rbac_permissions p ON p.id = rp.permission_id
                    WHERE ur.user_id = %s
                    """,
                    (user_id,)
                )
                return {row[0] for row in cur.fetchall()}

    def get_user_roles(self, user_id: str) -> set[str]:
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT r.name
                    FROM rbac_user_roles ur
                    JOIN rbac_roles r ON r.id = ur.role_id
                    WHERE ur.user_id = %s
                    """,
                    (user_id,)
                )
                return {row[0] for row in cur.fetchall()}

    def check_permission(self, user_id: str, permission: str) -> bool:
        return permission in self.get_user_permissions(user_id)
