"""
Access Gate — resolves a caller to a workspace owner scope and capabilities.

Role variants form a closed set with an explicit capability table; access is
resolved once per request (see intake/middleware/workspace_access.py) and
handlers only read the resulting AccessContext.

    variant         view  answer  admin
    OWNER            ✓      ✓       ✗
    COLLABORATOR     ✓      ✓       ✗
    COMPANY_ADMIN    ✓      ✓       ✓     (owner must be in the admin's company)
    SUPER_ADMIN      ✓      ✓       ✓
    VIEWER           ✓      ✗       ✗     (owner must be in the viewer's company)

Resolution order is linear: workspace lookup → caller lookup → variant.
An unknown workspace is NotFoundError; everything else that is not granted
is AccessDeniedError.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

from intake.core.exceptions import AccessDeniedError, NotFoundError
from intake.models import db
from intake.models.workspace import User, Workspace

logger = logging.getLogger(__name__)


class Capability(str, enum.Enum):
    VIEW = "view"
    ANSWER = "answer"
    ADMIN = "admin"


class RoleVariant(str, enum.Enum):
    OWNER = "owner"
    COLLABORATOR = "collaborator"
    COMPANY_ADMIN = "company_admin"
    SUPER_ADMIN = "super_admin"
    VIEWER = "viewer"


CAPABILITIES: dict[RoleVariant, frozenset[Capability]] = {
    RoleVariant.OWNER: frozenset({Capability.VIEW, Capability.ANSWER}),
    RoleVariant.COLLABORATOR: frozenset({Capability.VIEW, Capability.ANSWER}),
    RoleVariant.COMPANY_ADMIN: frozenset({Capability.VIEW, Capability.ANSWER, Capability.ADMIN}),
    RoleVariant.SUPER_ADMIN: frozenset({Capability.VIEW, Capability.ANSWER, Capability.ADMIN}),
    RoleVariant.VIEWER: frozenset({Capability.VIEW}),
}


@dataclass(frozen=True)
class AccessContext:
    """Typed result of a successful access resolution."""

    user_id: int
    owner_id: int
    scope_id: int
    variant: RoleVariant
    workspace: Workspace

    @property
    def capabilities(self) -> frozenset[Capability]:
        return CAPABILITIES[self.variant]

    def can(self, capability: Capability | str) -> bool:
        return Capability(capability) in self.capabilities

    def require(self, capability: Capability | str) -> None:
        if not self.can(capability):
            raise AccessDeniedError(
                f"'{Capability(capability).value}' access required for this workspace",
                user_id=self.user_id,
                scope_id=self.scope_id,
            )

    @property
    def is_owner(self) -> bool:
        return self.variant is RoleVariant.OWNER

    def require_purge(self) -> None:
        """Wiping a workspace's history takes ownership or admin."""
        if not (self.is_owner or self.can(Capability.ADMIN)):
            raise AccessDeniedError(
                "Only the workspace owner or an admin can delete conversations",
                user_id=self.user_id,
                scope_id=self.scope_id,
            )

    def to_dict(self) -> dict:
        return {
            "role": self.variant.value,
            "capabilities": sorted(c.value for c in self.capabilities),
            "is_owner": self.is_owner,
        }


def _same_company(user: User, owner: User | None) -> bool:
    return (
        user.company_id is not None
        and owner is not None
        and owner.company_id == user.company_id
    )


def _variant_for(user: User, workspace: Workspace) -> RoleVariant | None:
    if workspace.owner_id == user.id:
        return RoleVariant.OWNER
    if workspace.has_collaborator(user.id):
        return RoleVariant.COLLABORATOR
    if user.role_name == "super_admin":
        return RoleVariant.SUPER_ADMIN
    if user.role_name == "company_admin":
        return RoleVariant.COMPANY_ADMIN if _same_company(user, workspace.owner) else None
    if user.role_name == "viewer":
        return RoleVariant.VIEWER if _same_company(user, workspace.owner) else None
    return None


def resolve_access(user_id: int, workspace_id: int, session=None) -> AccessContext:
    """Resolve the caller's access to a workspace.

    Raises:
        NotFoundError: the workspace does not exist.
        AccessDeniedError: unknown/inactive caller or no matching variant.
    """
    session = session or db.session

    workspace = session.get(Workspace, workspace_id)
    if workspace is None:
        raise NotFoundError(resource="Workspace", resource_id=workspace_id)

    user = session.get(User, user_id) if user_id is not None else None
    if user is None or not user.is_active:
        raise AccessDeniedError("User not found or inactive", user_id=user_id, scope_id=workspace_id)

    variant = _variant_for(user, workspace)
    if variant is None:
        logger.warning(
            "User %s denied access to workspace %s",
            user_id, workspace_id,
            extra={"scope_id": workspace_id, "event_type": "access_denied"},
        )
        raise AccessDeniedError(
            "Not allowed to access conversations for this workspace",
            user_id=user_id,
            scope_id=workspace_id,
        )

    return AccessContext(
        user_id=user.id,
        owner_id=workspace.owner_id,
        scope_id=workspace.id,
        variant=variant,
        workspace=workspace,
    )
