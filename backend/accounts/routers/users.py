import logging
import uuid
from pathlib import Path

from fastapi import APIRouter, Depends, File, UploadFile
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from accounts.core.auth import Identity, authorize, get_current_identity
from accounts.core.config import settings
from accounts.core.deps import get_db
from accounts.core.errors import NotFound, ValidationFailed
from accounts.models.user import User
from accounts.schemas.user import ProfileUpdate, UserEnvelope, UserResponse

logger = logging.getLogger(__name__)

router = APIRouter()

# Allowed avatar content types -> file extension
AVATAR_TYPES = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
}
AVATAR_URL_PREFIX = "/uploads/avatars/"


def _ensure_avatar_dir() -> Path:
    d = Path(settings.UPLOAD_DIR) / "avatars"
    d.mkdir(parents=True, exist_ok=True)
    return d


def _delete_avatar_file(avatar_url: str) -> None:
    """Remove avatar file from disk. avatar_url is like /uploads/avatars/xxx.png."""
    if not avatar_url or not avatar_url.startswith(AVATAR_URL_PREFIX):
        return
    name = avatar_url[len(AVATAR_URL_PREFIX):]
    if not name or ".." in name or "/" in name:
        return
    path = _ensure_avatar_dir() / name
    if path.exists():
        try:
            path.unlink()
        except OSError as e:
            logger.warning("Could not delete old avatar %s: %s", path, e)


def _get_owned_user(user_id: int, identity: Identity, db: Session) -> User:
    authorize(identity, user_id)
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise NotFound()
    return user


@router.get("/{user_id}", response_model=UserEnvelope)
def get_user(
    user_id: int,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    """Return the caller's own account. 403 for any other user id."""
    user = _get_owned_user(user_id, identity, db)
    return UserEnvelope(user=UserResponse.model_validate(user))


@router.put("/{user_id}/profile", response_model=UserEnvelope)
def update_profile(
    user_id: int,
    body: ProfileUpdate,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    """Update nickname and/or bio."""
    user = _get_owned_user(user_id, identity, db)
    if body.nickname is None and body.bio is None:
        raise ValidationFailed("Nothing to update")
    if body.nickname is not None:
        nickname = body.nickname.strip()
        if len(nickname) < settings.NICKNAME_MIN_LENGTH:
            raise ValidationFailed(f"Nickname must be at least {settings.NICKNAME_MIN_LENGTH} characters")
        if len(nickname) > settings.NICKNAME_MAX_LENGTH:
            raise ValidationFailed(f"Nickname must be at most {settings.NICKNAME_MAX_LENGTH} characters")
        user.nickname = nickname
    if body.bio is not None:
        if len(body.bio) > settings.BIO_MAX_LENGTH:
            raise ValidationFailed(f"Bio must be at most {settings.BIO_MAX_LENGTH} characters")
        user.bio = body.bio
    db.commit()
    db.refresh(user)
    return UserEnvelope(message="Profile updated", user=UserResponse.model_validate(user))


@router.post("/{user_id}/avatar", response_model=UserEnvelope)
def upload_avatar(
    user_id: int,
    avatar: UploadFile = File(...),
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    """Upload or replace the avatar (JPG, PNG or GIF). Replaces any existing avatar file."""
    user = _get_owned_user(user_id, identity, db)
    ext = AVATAR_TYPES.get(avatar.content_type or "")
    if not ext:
        raise ValidationFailed("Avatar must be a JPG, PNG or GIF image")
    content = avatar.file.read()
    if not content:
        raise ValidationFailed("No file provided")
    if len(content) > settings.AVATAR_MAX_SIZE_BYTES:
        raise ValidationFailed(f"Avatar must be under {settings.AVATAR_MAX_SIZE_BYTES // (1024 * 1024)}MB")

    filename = f"{uuid.uuid4().hex}{ext}"
    avatar_path = _ensure_avatar_dir() / filename
    with open(avatar_path, "wb") as f:
        f.write(content)

    old_avatar = user.avatar
    user.avatar = f"{AVATAR_URL_PREFIX}{filename}"
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        avatar_path.unlink(missing_ok=True)
        raise
    _delete_avatar_file(old_avatar or "")
    db.refresh(user)
    logger.info("Avatar updated for user %s", user.id)
    return UserEnvelope(message="Avatar uploaded", user=UserResponse.model_validate(user))
