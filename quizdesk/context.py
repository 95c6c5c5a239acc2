import logging
from dataclasses import dataclass

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from quizdesk.config import Settings, get_settings
from quizdesk.database import get_db
from quizdesk.errors import AuthenticationFailure, AuthorizationFailure
from quizdesk.models import ROLE_ADMIN, ROLE_USER, User
from quizdesk.repository import Repository

logger = logging.getLogger(__name__)

VALID_ROLES = (ROLE_ADMIN, ROLE_USER)


@dataclass(frozen=True)
class Identity:
    user_id: str
    role: str = ROLE_USER
    email: str = ""

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


@dataclass
class RequestContext:
    """Per-request handle: who is calling and the store they are calling through."""

    identity: Identity
    repo: Repository
    settings: Settings

    def require_admin(self):
        if not self.identity.is_admin:
            raise AuthorizationFailure("Admin access required")


def resolve_identity(repo: Repository, user_id: str, role_claim: str | None, email: str | None) -> Identity:
    # The role claim only seeds a first-seen user; afterwards the users table is
    # authoritative so admin role changes take effect.
    role = (role_claim or ROLE_USER).strip().lower()
    if role not in VALID_ROLES:
        raise AuthenticationFailure("Unrecognised role claim")

    user = repo.get(User, user_id)
    if user is None:
        user = User(id=user_id, email=email or "", display_name=(email or "").split("@")[0], role=role)
        repo.insert(user)
        repo.commit()
        logger.info("Registered user %s with role %s", user_id, role)
    if user.is_suspended:
        raise AuthorizationFailure("Account is suspended")
    return Identity(user_id=user.id, role=user.role, email=user.email)


def get_request_context(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
    x_user_email: str | None = Header(default=None),
) -> RequestContext:
    if not x_user_id or not x_user_id.strip():
        raise AuthenticationFailure("Authentication required")
    repo = Repository(db)
    identity = resolve_identity(repo, x_user_id.strip(), x_user_role, x_user_email)
    return RequestContext(identity=identity, repo=repo, settings=settings)
