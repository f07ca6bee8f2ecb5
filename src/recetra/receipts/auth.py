"""
Role capability lookup.

The lifecycle engine never authenticates anyone; it trusts the user handed
to it by the surrounding application and checks the role before running an
operation.
"""

from enum import Enum
from typing import Protocol

from pydantic import BaseModel, ConfigDict

from recetra.logging import log_audit_event
from recetra.receipts.exceptions import PermissionDeniedError


class UserRole(str, Enum):
    """Roles of RECETRA users."""

    ADMIN = "Admin"
    ENCODER = "Encoder"
    VIEWER = "Viewer"


ISSUER_ROLES = (UserRole.ADMIN, UserRole.ENCODER)


class CurrentUser(BaseModel):
    """The signed-in user as reported by the auth collaborator."""

    model_config = ConfigDict(frozen=True)

    id: str
    full_name: str
    role: UserRole
    organization: str | None = None


class AuthContext(Protocol):
    def current_user(self) -> CurrentUser: ...  # pragma: no cover - protocol definition


class StaticAuthContext:
    """Auth context returning a fixed user (CLI sessions and tests)."""

    def __init__(self, user: CurrentUser) -> None:
        self.user = user

    def current_user(self) -> CurrentUser:
        return self.user


def require_role(user: CurrentUser, *roles: UserRole, operation: str = "operation") -> None:
    """Raise PermissionDeniedError unless ``user`` holds one of ``roles``."""
    if user.role in roles:
        return

    required = [role.value for role in roles]
    log_audit_event(
        "permission.denied",
        user_id=user.id,
        organization=user.organization,
        operation=operation,
        role=user.role.value,
    )
    raise PermissionDeniedError(
        f"Role {user.role.value} may not perform {operation}",
        role=user.role.value,
        required_roles=required,
    )
