import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from accounts.core.deps import get_db
from accounts.core.errors import Forbidden, NotFound, TokenError, Unauthenticated
from accounts.core.security import TokenClaims, validate_access_token
from accounts.models.user import User

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


@dataclass
class Identity:
    user_id: int
    email: str
    claims: TokenClaims


def authenticate(authorization: Optional[str]) -> Identity:
    """Resolve an Authorization header to the identity of a valid token. Raises Unauthenticated."""
    if not authorization:
        raise Unauthenticated()
    if not authorization.startswith(BEARER_PREFIX):
        raise Unauthenticated("Authorization header must be: Bearer {token}")
    token = authorization[len(BEARER_PREFIX):].strip()
    if not token:
        raise Unauthenticated("Authorization header must be: Bearer {token}")
    try:
        claims = validate_access_token(token)
    except TokenError as e:
        logger.info("Rejected bearer token: %s", e.code)
        raise Unauthenticated(e.message) from e
    return Identity(user_id=claims.uid, email=claims.email, claims=claims)


def authorize(identity: Identity, owner_id: int) -> None:
    """Users may only read or change their own account."""
    if identity.user_id != owner_id:
        logger.warning("User %s denied access to user %s", identity.user_id, owner_id)
        raise Forbidden()


def get_current_identity(authorization: Optional[str] = Header(None)) -> Identity:
    return authenticate(authorization)


def get_current_user(
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> User:
    user = db.query(User).filter(User.id == identity.user_id).first()
    if not user:
        raise NotFound()
    return user
