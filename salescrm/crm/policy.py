from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from sqlalchemy import select
from sqlalchemy.orm import Session

from salescrm.crm.errors import AuthorizationError
from salescrm.crm.models import User


class Role(StrEnum):
    ADMIN = "A"
    MANAGER = "B"
    REP = "C"


class Permission(StrEnum):
    READ = "read"
    WRITE = "write"
    DELETE = "delete"
    MANAGE = "manage"


_ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = {
    Role.ADMIN: frozenset(Permission),
    Role.MANAGER: frozenset({Permission.READ, Permission.WRITE, Permission.DELETE}),
    Role.REP: frozenset({Permission.READ, Permission.WRITE}),
}


@dataclass
class ActorUser:
    user_id: int
    role: Role
    workspace_id: int | None = None
    team_id: int | None = None
    correlation_id: str | None = None

    @classmethod
    def from_user(cls, user: User, correlation_id: str | None = None) -> ActorUser:
        return cls(
            user_id=user.id,
            role=Role(user.role),
            workspace_id=user.workspace_id,
            team_id=user.team_id,
            correlation_id=correlation_id,
        )


class AccessPolicy:
    """Role hierarchy checks for one actor, bound to the request's session.

    A sees the whole workspace, B sees self plus direct reports, C sees self.
    """

    def __init__(self, session: Session, actor: ActorUser) -> None:
        self.session = session
        self.actor = actor
        self._subordinate_ids: list[int] | None = None

    def has_permission(self, permission: Permission) -> bool:
        return permission in _ROLE_PERMISSIONS.get(self.actor.role, frozenset())

    def require(self, permission: Permission) -> None:
        if not self.has_permission(permission):
            raise AuthorizationError(f"missing permission: {permission}")

    def subordinate_ids(self) -> list[int]:
        if self._subordinate_ids is None:
            self._subordinate_ids = list(
                self.session.scalars(select(User.id).where(User.manager_id == self.actor.user_id)).all()
            )
        return self._subordinate_ids

    def visible_owner_ids(self) -> list[int] | None:
        """Owner ids whose records the actor may see; None means unrestricted."""
        if self.actor.role == Role.ADMIN:
            return None
        if self.actor.role == Role.MANAGER:
            return [self.actor.user_id, *self.subordinate_ids()]
        return [self.actor.user_id]

    def can_see_owner(self, owner_id: int) -> bool:
        visible = self.visible_owner_ids()
        return visible is None or owner_id in visible

    def ensure_owner_visible(self, owner_id: int) -> None:
        if not self.can_see_owner(owner_id):
            raise AuthorizationError("record is not visible to the current user")

    def can_assign_owner(self, owner_id: int) -> bool:
        if owner_id == self.actor.user_id:
            return True
        if self.actor.role == Role.ADMIN:
            return self._in_workspace(owner_id)
        if self.actor.role == Role.MANAGER:
            if owner_id not in self.subordinate_ids():
                return False
            owner = self.session.get(User, owner_id)
            return owner is not None and owner.role == Role.REP
        return False

    def ensure_can_assign(self, owner_id: int) -> None:
        if not self.can_assign_owner(owner_id):
            raise AuthorizationError("owner cannot be assigned by the current user")

    def assignable_users(self) -> list[User]:
        stmt = select(User).order_by(User.name.asc(), User.id.asc())
        if self.actor.role == Role.ADMIN:
            if self.actor.workspace_id is not None:
                stmt = stmt.where(User.workspace_id == self.actor.workspace_id)
        elif self.actor.role == Role.MANAGER:
            stmt = stmt.where(User.id.in_([self.actor.user_id, *self.subordinate_ids()]))
        else:
            stmt = stmt.where(User.id == self.actor.user_id)
        return list(self.session.scalars(stmt).all())

    def assignable_user_ids(self) -> set[int]:
        return {user.id for user in self.assignable_users()}

    def _in_workspace(self, user_id: int) -> bool:
        user = self.session.get(User, user_id)
        if user is None:
            return False
        return self.actor.workspace_id is None or user.workspace_id == self.actor.workspace_id
