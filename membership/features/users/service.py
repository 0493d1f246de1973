"""
membership/features/users/service.py

User registration. Every user gets exactly one subscription row, starting
at status none on the free tier.
"""

from typing import Optional
import logging
from sqlalchemy import select, insert
from sqlalchemy.exc import IntegrityError

from membership.core.database import get_db_session, users, subscriptions, as_utc, utc_now
from membership.core.errors import ConflictError, NotFoundError
from membership.models.subscription import SubscriptionStatus
from membership.models.tier import Tier
from membership.models.user import User


logger = logging.getLogger(__name__)


def create_user(user_id: str, email: Optional[str] = None, display_name: Optional[str] = None) -> User:
    """
    Register a user with a none/free subscription.

    Raises:
        ConflictError: user_id already registered
    """
    now = utc_now()
    try:
        with get_db_session() as session:
            session.execute(
                insert(users).values(
                    user_id=user_id,
                    email=email,
                    display_name=display_name,
                    created_at=now,
                )
            )
            session.execute(
                insert(subscriptions).values(
                    user_id=user_id,
                    tier=Tier.FREE.value,
                    status=SubscriptionStatus.NONE.value,
                    cancel_requested=False,
                    admin_marker=False,
                    version=0,
                    created_at=now,
                    updated_at=now,
                )
            )
    except IntegrityError:
        raise ConflictError(f"User {user_id} already exists", code="user_exists")

    logger.info("[users] created", extra={"user_id": user_id})
    return User(user_id=user_id, created_at=now, email=email, display_name=display_name)


def get_user(user_id: str) -> User:
    with get_db_session() as session:
        row = session.execute(select(users).where(users.c.user_id == user_id)).first()
    if not row:
        raise NotFoundError(f"User {user_id} not found", code="user_not_found")
    return User(
        user_id=row.user_id,
        created_at=as_utc(row.created_at),
        email=row.email,
        display_name=row.display_name,
    )

