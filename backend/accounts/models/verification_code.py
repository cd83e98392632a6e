import enum

from sqlalchemy import Column, String, DateTime, Integer, Index, text
from sqlalchemy.orm import declared_attr
from sqlalchemy.sql import func

from accounts.core.database import Base


class CodeStatus(str, enum.Enum):
    pending = "pending"
    used = "used"
    expired = "expired"


class CodePurpose(str, enum.Enum):
    register = "register"
    reset_password = "reset_password"


class VerificationCodeMixin:
    """Columns shared by the per-purpose code tables."""

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), nullable=False, index=True)
    code = Column(String(10), nullable=False)
    status = Column(String(20), nullable=False, default=CodeStatus.pending.value, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(512), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    sent_at = Column(DateTime(timezone=True), nullable=True)
    used_at = Column(DateTime(timezone=True), nullable=True)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)

    @declared_attr
    def __table_args__(cls):
        # At most one pending code per email in each table
        pending = text("status = 'pending'")
        return (
            Index(
                f"uq_{cls.__tablename__}_pending_email",
                "email",
                unique=True,
                postgresql_where=pending,
                sqlite_where=pending,
            ),
        )


class RegisterVerificationCode(VerificationCodeMixin, Base):
    __tablename__ = "register_verification_codes"


class PasswordResetCode(VerificationCodeMixin, Base):
    __tablename__ = "password_reset_codes"


CODE_MODELS = {
    CodePurpose.register: RegisterVerificationCode,
    CodePurpose.reset_password: PasswordResetCode,
}
