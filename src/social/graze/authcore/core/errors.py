"""
Authentication error taxonomy.

`AuthErrorKind` names every failure a caller can see. `ERROR_MESSAGES` maps each kind to the user-facing copy, a
retryable flag and a severity. Messages never reveal whether an email address is registered; the precise cause of a
failure goes to the audit log instead.

`AuthError` is raised inside the subsystems and converted to a failed `AuthResult` by the orchestrator.
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional


class AuthErrorKind(str, Enum):
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    RATE_LIMITED = "RATE_LIMITED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    EMAIL_ALREADY_EXISTS = "EMAIL_ALREADY_EXISTS"
    WEAK_PASSWORD = "WEAK_PASSWORD"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    PASSWORD_REUSE = "PASSWORD_REUSE"
    PASSWORD_EXPIRED = "PASSWORD_EXPIRED"
    INVALID_TOKEN = "INVALID_TOKEN"
    EXPIRED_TOKEN = "EXPIRED_TOKEN"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    UNAUTHORIZED = "UNAUTHORIZED"
    EMAIL_SEND_FAILED = "EMAIL_SEND_FAILED"
    SERVER_ERROR = "SERVER_ERROR"


@dataclass(frozen=True)
class ErrorMessage:
    code: str
    title: str
    message: str
    action: str
    retryable: bool
    severity: str


ERROR_MESSAGES: Dict[AuthErrorKind, ErrorMessage] = {
    AuthErrorKind.INVALID_CREDENTIALS: ErrorMessage(
        "error-authcore-1000",
        "Invalid Credentials",
        "The email or password you entered is incorrect.",
        "Please check your credentials and try again.",
        True,
        "low",
    ),
    AuthErrorKind.RATE_LIMITED: ErrorMessage(
        "error-authcore-1001",
        "Too Many Attempts",
        "You've made too many attempts in a short period.",
        "Please wait a few minutes before trying again.",
        True,
        "medium",
    ),
    AuthErrorKind.ACCOUNT_LOCKED: ErrorMessage(
        "error-authcore-1002",
        "Account Temporarily Locked",
        "Your account has been temporarily locked due to multiple failed attempts.",
        "Please try again later or reset your password.",
        True,
        "high",
    ),
    AuthErrorKind.EMAIL_ALREADY_EXISTS: ErrorMessage(
        "error-authcore-1003",
        "Email Already Registered",
        "An account with this email address already exists.",
        "Please sign in instead or use a different email address.",
        False,
        "low",
    ),
    AuthErrorKind.WEAK_PASSWORD: ErrorMessage(
        "error-authcore-1004",
        "Weak Password",
        "Your password doesn't meet the security requirements.",
        "Please choose a stronger password that satisfies every listed requirement.",
        True,
        "medium",
    ),
    AuthErrorKind.VALIDATION_ERROR: ErrorMessage(
        "error-authcore-1005",
        "Invalid Input",
        "Please check your input and try again.",
        "Make sure all required fields are filled correctly.",
        True,
        "low",
    ),
    AuthErrorKind.PASSWORD_REUSE: ErrorMessage(
        "error-authcore-1006",
        "Password Previously Used",
        "You cannot reuse a recent password.",
        "Please choose a different password that you haven't used before.",
        True,
        "medium",
    ),
    AuthErrorKind.PASSWORD_EXPIRED: ErrorMessage(
        "error-authcore-1007",
        "Password Expired",
        "Your password has expired.",
        "Please reset your password to continue.",
        False,
        "medium",
    ),
    AuthErrorKind.INVALID_TOKEN: ErrorMessage(
        "error-authcore-1008",
        "Invalid Link",
        "This link is invalid or has been used already.",
        "Please request a new verification or reset link.",
        False,
        "low",
    ),
    AuthErrorKind.EXPIRED_TOKEN: ErrorMessage(
        "error-authcore-1009",
        "Link Expired",
        "This link has expired and is no longer valid.",
        "Please request a new verification or reset link.",
        False,
        "low",
    ),
    AuthErrorKind.SESSION_EXPIRED: ErrorMessage(
        "error-authcore-1010",
        "Session Expired",
        "Your session has expired for security reasons.",
        "Please sign in again to continue.",
        False,
        "low",
    ),
    AuthErrorKind.UNAUTHORIZED: ErrorMessage(
        "error-authcore-1011",
        "Not Authorized",
        "You need to be signed in to do that.",
        "Please sign in and try again.",
        False,
        "low",
    ),
    AuthErrorKind.EMAIL_SEND_FAILED: ErrorMessage(
        "error-authcore-1012",
        "Email Delivery Failed",
        "We couldn't send the email to your address.",
        "Please check your email address and try again.",
        True,
        "medium",
    ),
    AuthErrorKind.SERVER_ERROR: ErrorMessage(
        "error-authcore-1013",
        "Server Error",
        "Something went wrong on our end.",
        "Please try again in a few moments.",
        True,
        "high",
    ),
}


class AuthError(Exception):
    """
    Exception carrying an `AuthErrorKind`.

    The static constructors build the specific failures used by the orchestrator so that every raise site produces
    the same kind, detail and extra fields.
    """

    def __init__(
        self,
        kind: AuthErrorKind,
        detail: Optional[str] = None,
        violations: Optional[List[str]] = None,
        lockout_ends_at: Optional[datetime] = None,
        retry_after_seconds: Optional[int] = None,
    ):
        self.kind = kind
        self.detail = detail
        self.violations = list(violations or [])
        self.lockout_ends_at = lockout_ends_at
        self.retry_after_seconds = retry_after_seconds
        super().__init__(f"{ERROR_MESSAGES[kind].code} {detail or kind.value}")

    @property
    def user_message(self) -> str:
        return ERROR_MESSAGES[self.kind].message

    @property
    def retryable(self) -> bool:
        return ERROR_MESSAGES[self.kind].retryable

    @staticmethod
    def invalid_credentials() -> "AuthError":
        return AuthError(AuthErrorKind.INVALID_CREDENTIALS)

    @staticmethod
    def rate_limited(retry_after_seconds: Optional[int] = None) -> "AuthError":
        return AuthError(
            AuthErrorKind.RATE_LIMITED, retry_after_seconds=retry_after_seconds
        )

    @staticmethod
    def account_locked(
        lockout_ends_at: Optional[datetime], retry_after_seconds: Optional[int] = None
    ) -> "AuthError":
        return AuthError(
            AuthErrorKind.ACCOUNT_LOCKED,
            lockout_ends_at=lockout_ends_at,
            retry_after_seconds=retry_after_seconds,
        )

    @staticmethod
    def email_already_exists() -> "AuthError":
        return AuthError(AuthErrorKind.EMAIL_ALREADY_EXISTS)

    @staticmethod
    def weak_password(violations: List[str]) -> "AuthError":
        return AuthError(
            AuthErrorKind.WEAK_PASSWORD, "password policy violated", violations
        )

    @staticmethod
    def validation_error(detail: str) -> "AuthError":
        return AuthError(AuthErrorKind.VALIDATION_ERROR, detail)

    @staticmethod
    def password_reuse() -> "AuthError":
        return AuthError(AuthErrorKind.PASSWORD_REUSE)

    @staticmethod
    def password_expired() -> "AuthError":
        return AuthError(AuthErrorKind.PASSWORD_EXPIRED)

    @staticmethod
    def invalid_token() -> "AuthError":
        return AuthError(AuthErrorKind.INVALID_TOKEN)

    @staticmethod
    def expired_token() -> "AuthError":
        return AuthError(AuthErrorKind.EXPIRED_TOKEN)

    @staticmethod
    def session_expired() -> "AuthError":
        return AuthError(AuthErrorKind.SESSION_EXPIRED)

    @staticmethod
    def unauthorized() -> "AuthError":
        return AuthError(AuthErrorKind.UNAUTHORIZED)

    @staticmethod
    def email_send_failed(detail: Optional[str] = None) -> "AuthError":
        return AuthError(AuthErrorKind.EMAIL_SEND_FAILED, detail)

    @staticmethod
    def server_error(detail: Optional[str] = None) -> "AuthError":
        return AuthError(AuthErrorKind.SERVER_ERROR, detail)
