"""User registration and role rules."""
import logging

from sqlmodel import Session, func, select

from config import BOOTSTRAP_ADMINS
from models import User, UserRole, utcnow

logger = logging.getLogger(__name__)

WRITE_ROLES = {UserRole.ADMIN, UserRole.PROJECT_LEADER, UserRole.USER}
PROJECT_ROLES = {UserRole.ADMIN, UserRole.PROJECT_LEADER}


class LastAdminError(Exception):
    """The operation would leave the site without an administrator."""


def can_write(role: UserRole | None) -> bool:
    return role in WRITE_ROLES


def is_admin(role: UserRole | None) -> bool:
    return role == UserRole.ADMIN


def can_manage_projects(role: UserRole | None) -> bool:
    return role in PROJECT_ROLES


def admin_count(session: Session) -> int:
    return session.exec(select(func.count()).select_from(User).where(User.role == UserRole.ADMIN)).one()


def ensure_user(session: Session, user_id: str, email: str | None = None) -> User:
    """Load the user behind a verified identity, registering it on first sight."""
    user = session.get(User, user_id)
    if user is None:
        role = UserRole.ADMIN if user_id in BOOTSTRAP_ADMINS else UserRole.USER
        user = User(id=user_id, email=email, role=role)
        logger.info(f"Registering user {user_id} with role {role.value}")
    elif email and user.email != email:
        user.email = email
    user.last_login = utcnow()
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def change_role(session: Session, user: User, new_role: UserRole) -> User:
    if user.role == UserRole.ADMIN and new_role != UserRole.ADMIN and admin_count(session) <= 1:
        raise LastAdminError("Cannot change role of the last admin")
    user.role = new_role
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def delete_user(session: Session, user: User) -> None:
    if user.role == UserRole.ADMIN and admin_count(session) <= 1:
        raise LastAdminError("Cannot delete the last admin")
    session.delete(user)
    session.commit()
