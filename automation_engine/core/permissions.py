"""Tenant permission capability passed explicitly through request context."""

from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol, Set

from .exceptions import ForbiddenError
from .logging import get_logger

logger = get_logger(__name__)


class PermissionChecker(Protocol):
    """Decides whether the caller may act within an organization."""

    def require_permission(self, organization_id: str, user_id: Optional[str] = None) -> str:
        """Return the caller's role, or raise ForbiddenError."""
        ...


class AllowAllPermissionChecker:
    """Grants every caller the admin role. Used when no checker is wired."""

    role = "admin"

    def require_permission(self, organization_id: str, user_id: Optional[str] = None) -> str:
        if not organization_id:
            raise ForbiddenError("An organization is required")
        return self.role


class StaticPermissionChecker:
    """Role table keyed by (organization, user); `None` user matches anyone."""

    def __init__(self, grants: Optional[Dict[str, Dict[Optional[str], str]]] = None):
        self._grants = grants or {}

    def grant(self, organization_id: str, role: str, user_id: Optional[str] = None):
        self._grants.setdefault(organization_id, {})[user_id] = role

    def require_permission(self, organization_id: str, user_id: Optional[str] = None) -> str:
        roles = self._grants.get(organization_id, {})
        role = roles.get(user_id) or roles.get(None)
        if role is None:
            logger.warning(f"Denied user {user_id!r} access to organization {organization_id!r}")
            raise ForbiddenError(
                f"No permission for organization '{organization_id}'",
                organization_id=organization_id
            )
        return role


@dataclass
class RequestContext:
    """Caller identity plus the capability that authorizes it."""
    organization_id: str
    user_id: Optional[str] = None
    permission_checker: PermissionChecker = field(default_factory=AllowAllPermissionChecker)
    role: Optional[str] = None
    granted: Set[str] = field(default_factory=set)

    def require(self, organization_id: Optional[str] = None) -> str:
        """
        Check permission for an organization, the caller's own by default.

        Raises:
            ForbiddenError: If the checker denies access
        """
        organization_id = organization_id or self.organization_id
        if organization_id in self.granted and self.role:
            return self.role
        self.role = self.permission_checker.require_permission(organization_id, self.user_id)
        self.granted.add(organization_id)
        return self.role


def system_context(organization_id: str) -> RequestContext:
    """Context for engine-initiated work such as event dispatch and scheduling."""
    return RequestContext(organization_id=organization_id, user_id="system")
