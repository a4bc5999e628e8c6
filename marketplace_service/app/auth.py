from dataclasses import dataclass

from sqlalchemy import select

from .errors import AuthenticationError, AuthorizationError
from .models import User, UserRole, is_storable_id


@dataclass(frozen=True)
class Caller:
    """The authenticated user on whose behalf an operation runs."""

    user_id: int
    role: UserRole

    @property
    def is_admin(self):
        return self.role is UserRole.ADMIN

    @property
    def is_seller(self):
        return self.role is UserRole.SELLER

    @property
    def is_customer(self):
        return self.role is UserRole.CUSTOMER


def resolve_caller(session, user_id):
    """Looks up the user's role in the user store."""
    if not is_storable_id(user_id):
        raise AuthenticationError("Invalid user.")
    role = session.execute(select(User.role).where(User.id == user_id)).scalar_one_or_none()
    if role is None:
        raise AuthenticationError("Invalid user.")
    return Caller(user_id=user_id, role=role)


def require_role(caller, *roles, message=None):
    if caller.role not in roles:
        allowed = " or ".join(r.value for r in roles)
        raise AuthorizationError(message or f"Access denied. {allowed.capitalize()} role required.")
