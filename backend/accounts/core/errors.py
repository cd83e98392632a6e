"""Account error classes.

Services and the core raise these; the app renders them with one exception
handler (see accounts.main), so routers never build error responses by hand.
"""

from typing import Optional


class AccountError(Exception):
    """Base class for account errors.

    Attributes:
        code: Machine-readable error code (e.g. "CODE_MISMATCH").
        message: Human-readable message.
        status_code: HTTP status the router layer responds with.
    """

    code = "ACCOUNT_ERROR"
    status_code = 500
    default_message = "Account operation failed"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


# Verification codes

class CodeAlreadyActive(AccountError):
    code = "CODE_ALREADY_ACTIVE"
    status_code = 409
    default_message = "A valid code has already been sent. Please try again later."


class CodeNotFound(AccountError):
    code = "CODE_NOT_FOUND"
    status_code = 400
    default_message = "Code does not exist or is no longer valid"


class CodeMismatch(AccountError):
    code = "CODE_MISMATCH"
    status_code = 400
    default_message = "Incorrect verification code"


class CodeExhausted(AccountError):
    code = "CODE_EXHAUSTED"
    status_code = 429
    default_message = "Too many attempts. Please request a new code once this one expires."


# Tokens

class TokenError(AccountError):
    code = "TOKEN_INVALID"
    status_code = 401
    default_message = "Token verification failed"


class TokenExpired(TokenError):
    code = "TOKEN_EXPIRED"
    default_message = "Token has expired"


class TokenBadSignature(TokenError):
    code = "TOKEN_BAD_SIGNATURE"
    default_message = "Token signature is invalid"


class TokenMalformed(TokenError):
    code = "TOKEN_MALFORMED"
    default_message = "Token is malformed"


# Auth gate

class Unauthenticated(AccountError):
    code = "UNAUTHENTICATED"
    status_code = 401
    default_message = "Not logged in or token invalid"


class Forbidden(AccountError):
    code = "FORBIDDEN"
    status_code = 403
    default_message = "Not allowed to access another user's data"


# Account flows

class ValidationFailed(AccountError):
    code = "VALIDATION_ERROR"
    status_code = 400
    default_message = "Invalid request data"


class NotFound(AccountError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "User not found"


class InvalidCredentials(AccountError):
    code = "INVALID_CREDENTIALS"
    status_code = 401
    default_message = "Invalid email or password"


class EmailAlreadyRegistered(AccountError):
    code = "EMAIL_ALREADY_REGISTERED"
    status_code = 400
    default_message = "This email is already registered"


class EmailDeliveryError(AccountError):
    code = "EMAIL_DELIVERY_FAILED"
    status_code = 502
    default_message = "Failed to send verification code, please try again later"


class StoreFailure(AccountError):
    """Wraps any persistence-layer error."""

    code = "STORE_FAILURE"
    status_code = 500
    default_message = "Database operation failed"
