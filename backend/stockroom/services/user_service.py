"""User Service - account administration."""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import or_

from stockroom.core.permissions import Permission, UserRole
from stockroom.core.security import get_password_hash
from stockroom.models.user import User
from stockroom.services.base import InventoryService
from stockroom.services.errors import BusinessRuleError, NotFoundError

logger = logging.getLogger(__name__)


class UserService(InventoryService):
    """Create, re-role and deactivate user accounts."""

    def get(self, user_id: int) -> User:
        user = self.db.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found.")
        return user

    def view(self, user_id: int) -> User:
        self.require(Permission.USERS_VIEW_LIST, "You do not have permission to view users.")
        return self.get(user_id)

    def list(self, search: Optional[str] = None, role: Optional[str] = None, skip: int = 0, limit: int = 50):
        self.require(Permission.USERS_VIEW_LIST, "You do not have permission to view users.")
        query = self.db.query(User)
        if search:
            pattern = f"%{search.strip()}%"
            query = query.filter(or_(User.email.ilike(pattern), User.name.ilike(pattern)))
        if role:
            query = query.filter(User.role == role)
        total = query.count()
        users = query.order_by(User.email.asc()).offset(skip).limit(limit).all()
        return users, total

    def _assert_can_assign(self, role: str) -> str:
        try:
            role = UserRole(role).value
        except ValueError:
            raise BusinessRuleError("Invalid role.")
        if role == UserRole.SUPER_ADMIN.value:
            self.require(Permission.USERS_ASSIGN_SUPER_ADMIN, "You do not have permission to assign the super admin role.")
        elif role == UserRole.ADMIN.value:
            self.require(Permission.USERS_ASSIGN_ADMIN, "You do not have permission to assign the admin role.")
        return role

    def create(self, email: str, password: str, role: str = UserRole.STAFF.value, name: Optional[str] = None) -> User:
        self.require(Permission.USERS_INVITE_CREATE, "You do not have permission to create users.")
        role = self._assert_can_assign(role)
        email = email.strip().lower()
        if self.db.query(User.id).filter(User.email == email).first():
            raise BusinessRuleError("A user with this email already exists.")

        with self.atomic():
            user = User(email=email, password_hash=get_password_hash(password), role=role, name=name, is_active=True)
            self.db.add(user)
            self.db.flush()
            self.log("USER_CREATED", "User", user.id, {"after": {"email": email, "role": role}})
        logger.info(f"User {email} created with role {role}")
        return user

    def update(self, user_id: int, data: Dict[str, Any]) -> User:
        """Change name, role or active flag of an account."""
        self.require(Permission.USERS_INVITE_CREATE, "You do not have permission to update users.")
        user = self.get(user_id)
        if "role" in data and data["role"] != user.role:
            data = {**data, "role": self._assert_can_assign(data["role"])}
            if user.role == UserRole.SUPER_ADMIN.value:
                self.require(
                    Permission.USERS_ASSIGN_SUPER_ADMIN, "You do not have permission to change a super admin's role."
                )
        if data.get("is_active") is False and user.is_active:
            self._assert_can_deactivate(user)

        before = {field: getattr(user, field) for field in data}
        with self.atomic():
            for field, value in data.items():
                setattr(user, field, value)
            self.db.flush()
            self.log("USER_UPDATED", "User", user.id, {"before": before, "after": data})
        return user

    def _assert_can_deactivate(self, user: User) -> None:
        self.require(Permission.USERS_DEACTIVATE, "You do not have permission to deactivate users.")
        if user.id == self.actor.id:
            raise BusinessRuleError("You cannot deactivate your own account.")

    def deactivate(self, user_id: int) -> User:
        user = self.get(user_id)
        self._assert_can_deactivate(user)
        with self.atomic():
            user.is_active = False
            self.db.flush()
            self.log("USER_DEACTIVATED", "User", user.id, {"email": user.email})
        logger.info(f"User {user.email} deactivated")
        return user
