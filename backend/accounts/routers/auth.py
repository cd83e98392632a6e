import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from accounts.core.auth import Identity, get_current_identity, get_current_user
from accounts.core.config import settings
from accounts.core.deps import get_db
from accounts.core.errors import (
    CodeNotFound,
    EmailAlreadyRegistered,
    InvalidCredentials,
    NotFound,
    ValidationFailed,
)
from accounts.core.security import (
    get_password_hash,
    issue_access_token,
    refresh_access_token,
    verify_password,
)
from accounts.core.verification import VerificationCodeStore
from accounts.models.user import User
from accounts.models.verification_code import CodePurpose
from accounts.routers.verification import client_ip
from accounts.schemas.user import (
    ChangePasswordRequest,
    LoginRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokenResponse,
    UserEnvelope,
    UserResponse,
)
from accounts.schemas.verification import MessageResponse

logger = logging.getLogger(__name__)

router = APIRouter()


def check_password_length(password: str, label: str = "Password") -> None:
    if len(password) < settings.PASSWORD_MIN_LENGTH:
        raise ValidationFailed(f"{label} must be at least {settings.PASSWORD_MIN_LENGTH} characters")
    if len(password) > settings.PASSWORD_MAX_LENGTH:
        raise ValidationFailed(f"{label} must be at most {settings.PASSWORD_MAX_LENGTH} characters")


@router.post("/user/register", response_model=UserEnvelope)
def register(body: RegisterRequest, request: Request, db: Session = Depends(get_db)):
    """Create an account; consumes the registration code sent to the email."""
    check_password_length(body.password)
    # Checked before the code so a taken email doesn't burn it
    if db.query(User).filter(User.email == body.email).first():
        raise EmailAlreadyRegistered()

    store = VerificationCodeStore(db, CodePurpose.register)
    code = body.code.strip()
    store.verify(body.email, code, ip_address=client_ip(request), consume=False)

    nickname = (body.nickname or "").strip() or body.email
    user = User(
        email=body.email,
        hashed_password=get_password_hash(body.password),
        nickname=nickname[: settings.NICKNAME_MAX_LENGTH],
    )
    db.add(user)
    # The code is consumed in the same transaction as the insert
    if not store.mark_used(body.email, code, commit=False):
        db.rollback()
        raise CodeNotFound()
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise EmailAlreadyRegistered()
    db.refresh(user)
    logger.info("Registered user %s (%s)", user.id, user.email)
    return UserEnvelope(message="Registration successful", user=UserResponse.model_validate(user))


@router.post("/login", response_model=TokenResponse)
def login(body: LoginRequest, db: Session = Depends(get_db)):
    """Login with email and password; returns a signed access token."""
    user = db.query(User).filter(User.email == body.email).first()
    if not user or not verify_password(body.password, user.hashed_password):
        logger.info("Failed login for %s", body.email)
        raise InvalidCredentials()
    token = issue_access_token(user.id, user.email)
    logger.info("User %s logged in", user.id)
    return TokenResponse(message="Login successful", access_token=token, user=UserResponse.model_validate(user))


@router.post("/user/reset-password", response_model=MessageResponse)
def reset_password(body: ResetPasswordRequest, request: Request, db: Session = Depends(get_db)):
    """Public: set a new password with a password reset code. The code is only consumed once the password is saved."""
    check_password_length(body.new_password, "New password")
    store = VerificationCodeStore(db, CodePurpose.reset_password)
    code = body.code.strip()
    store.verify(body.email, code, ip_address=client_ip(request), consume=False)

    user = db.query(User).filter(User.email == body.email).first()
    if not user:
        raise NotFound()
    user.hashed_password = get_password_hash(body.new_password)
    # Another request may have spent the code since verify(); only one wins
    if not store.mark_used(body.email, code, commit=False):
        db.rollback()
        raise CodeNotFound()
    db.commit()
    logger.info("Password reset for user %s", user.id)
    return MessageResponse(message="Password reset successful")


@router.put("/user/change-password", response_model=MessageResponse)
def change_password(
    body: ChangePasswordRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Change the current user's password (requires valid Bearer token)."""
    check_password_length(body.new_password, "New password")
    if not verify_password(body.old_password, user.hashed_password):
        raise ValidationFailed("Old password is incorrect")
    if body.old_password == body.new_password:
        raise ValidationFailed("New password must differ from the old password")
    user.hashed_password = get_password_hash(body.new_password)
    db.commit()
    logger.info("Password changed for user %s", user.id)
    return MessageResponse(message="Password changed")


@router.post("/refresh-token", response_model=TokenResponse)
def refresh_token(
    identity: Identity = Depends(get_current_identity),
    user: User = Depends(get_current_user),
):
    """Re-issue a token with a fresh expiry for the holder of a currently valid token."""
    token = refresh_access_token(identity.claims)
    return TokenResponse(message="Token refreshed", access_token=token, user=UserResponse.model_validate(user))
