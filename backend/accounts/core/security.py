import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
from jose import JWTError, jwt
from jose.exceptions import JWTClaimsError
from pydantic import BaseModel, ValidationError

from accounts.core.config import settings
from accounts.core.errors import TokenBadSignature, TokenExpired, TokenMalformed

logger = logging.getLogger(__name__)

# Bcrypt limit is 72 bytes; truncate to avoid errors
BCRYPT_MAX_PASSWORD_BYTES = 72


def verify_password(plain_password: str, hashed_password: str) -> bool:
    pwd_bytes = plain_password.encode("utf-8")[:BCRYPT_MAX_PASSWORD_BYTES]
    return bcrypt.checkpw(pwd_bytes, hashed_password.encode("utf-8"))


def get_password_hash(password: str) -> str:
    pwd_bytes = password.encode("utf-8")[:BCRYPT_MAX_PASSWORD_BYTES]
    salt = bcrypt.gensalt()
    return bcrypt.hashpw(pwd_bytes, salt).decode("utf-8")


class TokenClaims(BaseModel):
    iss: str
    aud: str
    iat: int
    exp: int
    sub: str
    uid: int
    email: str


def issue_access_token(
    user_id: int,
    email: str,
    expires_delta: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> str:
    """Sign a session token for user_id; valid for ACCESS_TOKEN_EXPIRE_SECONDS unless expires_delta is given."""
    if expires_delta is None:
        expires_delta = timedelta(seconds=settings.ACCESS_TOKEN_EXPIRE_SECONDS)
    issued_at = int((now or datetime.now(timezone.utc)).timestamp())
    to_encode = {
        "iss": settings.JWT_ISSUER,
        "aud": settings.JWT_AUDIENCE,
        "iat": issued_at,
        "exp": issued_at + int(expires_delta.total_seconds()),
        "sub": str(user_id),
        "uid": user_id,
        "email": email,
    }
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def validate_access_token(token: str, now: Optional[datetime] = None) -> TokenClaims:
    """
    Verify signature, issuer, audience and expiry.
    Raises TokenMalformed, TokenBadSignature or TokenExpired.
    """
    try:
        jwt.get_unverified_header(token)
        jwt.get_unverified_claims(token)
    except JWTError as e:
        raise TokenMalformed() from e

    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            issuer=settings.JWT_ISSUER,
            # expiry is checked below against the caller's clock
            options={"verify_exp": False},
        )
    except JWTClaimsError as e:
        raise TokenMalformed(f"Token claims are invalid: {e}") from e
    except JWTError as e:
        raise TokenBadSignature() from e

    try:
        claims = TokenClaims(**payload)
    except ValidationError as e:
        raise TokenMalformed("Token is missing required claims") from e

    now_ts = (now or datetime.now(timezone.utc)).timestamp()
    if now_ts > claims.exp:
        raise TokenExpired()
    return claims


def refresh_access_token(claims: TokenClaims, now: Optional[datetime] = None) -> str:
    """Re-issue a token for the identity in claims, which must come from validate_access_token."""
    logger.info("Refreshing access token for user %s", claims.uid)
    return issue_access_token(claims.uid, claims.email, now=now)
