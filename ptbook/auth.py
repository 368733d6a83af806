from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Set

from fastapi import Depends, Request
from passlib.context import CryptContext
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from ptbook.db import get_session
from ptbook.errors import AccessDenied, NotFound, Unauthenticated, ValidationError
from ptbook.models import TrainerType, User, UserRole
from ptbook.settings import settings

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

SESSION_USER_KEY = "user_id"


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def check_password_policy(password: str) -> None:
    if len(password) < settings.min_password_length:
        raise ValidationError(
            f"Password must be more than {settings.min_password_length - 1} characters"
        )


def authenticate_user(session: Session, email: str, password: str) -> Optional[User]:
    user = session.exec(select(User).where(User.email == email.strip().lower())).first()
    if not user:
        return None
    if not user.is_active:
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


def signup_member(
    session: Session,
    name: str,
    email: str,
    phone: str,
    password: str,
    assigned_trainer_id: Optional[int],
) -> User:
    name, email, phone = name.strip(), email.strip().lower(), phone.strip()
    if not name or not email or not phone or not password or not assigned_trainer_id:
        raise ValidationError("All fields including trainer selection are required")
    check_password_policy(password)

    if session.exec(select(User.id).where(User.email == email)).first() is not None:
        raise ValidationError("User with this email already exists")

    trainer = session.get(User, assigned_trainer_id)
    if not trainer or trainer.role != UserRole.trainer or not trainer.is_active:
        raise ValidationError("Invalid trainer selection")

    member = User(
        name=name,
        email=email,
        phone=phone,
        password_hash=hash_password(password),
        role=UserRole.member,
        assigned_trainer_id=trainer.id,
    )
    session.add(member)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise ValidationError("User with this email already exists")
    session.refresh(member)
    logger.info("Member %s signed up with trainer %s", member.id, trainer.id)
    return member


def change_password(session: Session, user: User, current: str, new: str) -> None:
    if not verify_password(current, user.password_hash):
        raise ValidationError("Current password is incorrect")
    check_password_policy(new)
    user.password_hash = hash_password(new)
    session.add(user)
    session.commit()
    logger.info("User %s changed password", user.id)


def ensure_bootstrap_admin(session: Session, email: str, password: str) -> None:
    existing = session.exec(
        select(User).where(User.email == email).where(User.role == UserRole.admin)
    ).first()
    if existing:
        return
    admin = User(
        name="Administrator",
        email=email,
        password_hash=hash_password(password),
        role=UserRole.admin,
    )
    session.add(admin)
    session.commit()
    logger.info("Bootstrap admin %s created", email)


def get_current_user(
    request: Request,
    session: Session = Depends(get_session),
) -> User:
    user_id = request.session.get(SESSION_USER_KEY)
    if not user_id:
        raise Unauthenticated("Authentication required")
    user = session.get(User, int(user_id))
    if not user or not user.is_active:
        raise Unauthenticated("Authentication required")
    return user


def require_roles(roles: Iterable[UserRole]):
    role_set: Set[UserRole] = set(roles)

    def dependency(user: User = Depends(get_current_user)) -> User:
        if user.role not in role_set:
            raise AccessDenied("Access denied")
        return user

    return dependency


def create_user(
    session: Session,
    name: str,
    email: str,
    password: str,
    role: UserRole,
    phone: str = "",
    trainer_type: Optional[TrainerType] = None,
    assigned_trainer_id: Optional[int] = None,
) -> User:
    """Administrative account creation for any role."""
    name, email = name.strip(), email.strip().lower()
    if not name or not email:
        raise ValidationError("Name and email are required")
    check_password_policy(password)
    if role == UserRole.trainer and trainer_type is None:
        trainer_type = TrainerType.standard
    if role == UserRole.member:
        trainer = session.get(User, assigned_trainer_id) if assigned_trainer_id else None
        if not trainer or trainer.role != UserRole.trainer or not trainer.is_active:
            raise ValidationError("Invalid trainer selection")
    user = User(
        name=name,
        email=email,
        phone=phone.strip(),
        password_hash=hash_password(password),
        role=role,
        trainer_type=trainer_type if role == UserRole.trainer else None,
        assigned_trainer_id=assigned_trainer_id if role == UserRole.member else None,
    )
    session.add(user)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise ValidationError("User with this email already exists")
    session.refresh(user)
    logger.info("User %s created with role %s", user.id, role.value)
    return user


def toggle_active(session: Session, user_id: int) -> User:
    target = session.get(User, user_id)
    if not target:
        raise NotFound("User not found")
    target.is_active = not target.is_active
    session.add(target)
    session.commit()
    session.refresh(target)
    return target


def list_users(session: Session, include_inactive: bool = False) -> List[User]:
    stmt = select(User)
    if not include_inactive:
        stmt = stmt.where(User.is_active == True)  # noqa: E712
    return list(session.exec(stmt.order_by(User.created_at.desc(), User.id.desc())).all())


def update_user(
    session: Session,
    actor: User,
    user_id: int,
    name: Optional[str] = None,
    phone: Optional[str] = None,
    memo: Optional[str] = None,
    is_active: Optional[bool] = None,
    assigned_trainer_id: Optional[int] = None,
) -> User:
    """Admin edit of profile fields; only the given fields change."""
    target = session.get(User, user_id)
    if not target:
        raise NotFound("User not found")
    if name is not None:
        if not name.strip():
            raise ValidationError("Name cannot be empty")
        target.name = name.strip()
    if phone is not None:
        target.phone = phone.strip()
    if memo is not None:
        target.memo = memo.strip() or None
    if is_active is not None:
        if not is_active and target.id == actor.id:
            raise ValidationError("You cannot deactivate yourself")
        target.is_active = is_active
    if assigned_trainer_id is not None:
        if target.role != UserRole.member:
            raise ValidationError("Only members have an assigned trainer")
        trainer = session.get(User, assigned_trainer_id)
        if not trainer or trainer.role != UserRole.trainer or not trainer.is_active:
            raise ValidationError("Invalid trainer selection")
        target.assigned_trainer_id = trainer.id
    session.add(target)
    session.commit()
    session.refresh(target)
    logger.info("User %s updated by admin %s", target.id, actor.id)
    return target


def deactivate_account(session: Session, user: User) -> None:
    user.is_active = False
    session.add(user)
    session.commit()
    logger.info("User %s deactivated their account", user.id)
