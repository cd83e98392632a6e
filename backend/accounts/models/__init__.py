from accounts.core.database import Base
from accounts.models.user import User
from accounts.models.verification_code import (
    CodePurpose,
    CodeStatus,
    PasswordResetCode,
    RegisterVerificationCode,
)

__all__ = [
    "Base",
    "User",
    "CodePurpose",
    "CodeStatus",
    "RegisterVerificationCode",
    "PasswordResetCode",
]
