"""
Credential primitives: password hashing, session tokens, secure randoms.

Security Requirements:
- Passwords hashed with bcrypt (cost 12), never stored or logged in plaintext
- Session tokens are HS256 JWTs signed with JWT_SECRET, 7 day lifetime
- Token verification never raises: tampered, expired and malformed tokens
  all read as "no session"
- A missing or short signing secret fails loudly at construction in
  production; elsewhere an ephemeral random secret is generated
"""

import hashlib
import hmac
import logging
import os
import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import bcrypt
import jwt
from pydantic import BaseModel

from giftguard.platform.errors import ConfigurationError

logger = logging.getLogger(__name__)


BCRYPT_ROUNDS = 12
BCRYPT_MAX_BYTES = 72

PASSWORD_MIN_LENGTH = 8
PASSWORD_SPECIAL_CHARACTERS = "@$!%*?&"

MIN_SECRET_LENGTH = 32
DEFAULT_SESSION_TTL = timedelta(days=7)

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_UNSAFE_MARKUP = (
    re.compile(r"[<>]"),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"on\w+=", re.IGNORECASE),
)
_EMAIL_MAX_LENGTH = 254

SECURITY_CONFIG = {
    "MAX_LOGIN_ATTEMPTS": 5,
    "LOCKOUT_DURATION": timedelta(minutes=15),
    "PASSWORD_MIN_LENGTH": PASSWORD_MIN_LENGTH,
    "SESSION_DURATION": DEFAULT_SESSION_TTL,
    "VERIFICATION_TOKEN_EXPIRY": timedelta(hours=24),
    "RESET_TOKEN_EXPIRY": timedelta(hours=1),
}


@dataclass
class PasswordValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)


class VaultConfig(BaseModel):
    """Configuration for session token signing and password hashing."""
    jwt_secret: str
    algorithm: str = "HS256"
    session_ttl_seconds: int = int(DEFAULT_SESSION_TTL.total_seconds())
    bcrypt_rounds: int = BCRYPT_ROUNDS


def _resolve_secret(secret: Optional[str], env_var: str) -> str:
    production = os.getenv("APP_ENV", "development").lower() == "production"
    if secret is None:
        secret = os.getenv(env_var)

    if not secret:
        if production:
            raise ConfigurationError(f"{env_var} is not configured")
        logger.warning(
            "Signing secret not configured; using an ephemeral secret for this process",
            extra={"env_var": env_var},
        )
        return secrets.token_hex(32)

    if len(secret) < MIN_SECRET_LENGTH:
        if production:
            raise ConfigurationError(
                f"{env_var} must be at least {MIN_SECRET_LENGTH} characters",
            )
        logger.warning("Signing secret is shorter than recommended", extra={"env_var": env_var})

    return secret


class CredentialVault:
    """
    Password, session-token and random-token operations.

    Stateless apart from its configuration; safe to share across threads.
    """

    def __init__(self, config: Optional[VaultConfig] = None):
        if config:
            self.config = config
        else:
            self.config = VaultConfig(jwt_secret=_resolve_secret(None, "JWT_SECRET"))

    @classmethod
    def from_secret(cls, jwt_secret: Optional[str], **overrides: Any) -> "CredentialVault":
        """Build a vault from an explicit secret (validated like the env var)."""
        return cls(VaultConfig(jwt_secret=_resolve_secret(jwt_secret, "JWT_SECRET"), **overrides))

    # Passwords

    @staticmethod
    def _password_bytes(plaintext: str) -> bytes:
        # bcrypt only uses the first 72 bytes; newer releases reject longer input.
        return plaintext.encode("utf-8")[:BCRYPT_MAX_BYTES]

    def hash_password(self, plaintext: str) -> str:
        """
        Hash a password with bcrypt.

        Raises:
            ValueError: If plaintext is empty
        """
        if not plaintext:
            raise ValueError("password must be a non-empty string")
        salt = bcrypt.gensalt(rounds=self.config.bcrypt_rounds)
        return bcrypt.hashpw(self._password_bytes(plaintext), salt).decode("utf-8")

    def verify_password(self, plaintext: str, hashed: str) -> bool:
        """Constant-time check of a password against a bcrypt hash. Never raises."""
        if not plaintext or not hashed:
            return False
        try:
            return bcrypt.checkpw(self._password_bytes(plaintext), hashed.encode("utf-8"))
        except (ValueError, TypeError):
            return False

    @staticmethod
    def validate_password_strength(plaintext: str) -> PasswordValidationResult:
        """Report every unmet password rule, not just the first."""
        plaintext = plaintext or ""
        errors = []

        if len(plaintext) < PASSWORD_MIN_LENGTH:
            errors.append(f"Password must be at least {PASSWORD_MIN_LENGTH} characters long")
        if not re.search(r"[a-z]", plaintext):
            errors.append("Password must contain at least one lowercase letter")
        if not re.search(r"[A-Z]", plaintext):
            errors.append("Password must contain at least one uppercase letter")
        if not re.search(r"\d", plaintext):
            errors.append("Password must contain at least one number")
        if not any(ch in PASSWORD_SPECIAL_CHARACTERS for ch in plaintext):
            errors.append(
                f"Password must contain at least one special character ({PASSWORD_SPECIAL_CHARACTERS})"
            )

        return PasswordValidationResult(valid=not errors, errors=errors)

    # Session tokens

    def issue_session_token(self, payload: dict[str, Any], ttl: Optional[timedelta] = None) -> str:
        """
        Sign a session payload.

        Args:
            payload: Claims; must include user_id and email
            ttl: Lifetime (default 7 days)

        Raises:
            ValueError: If user_id or email is missing
        """
        if not payload.get("user_id") or not payload.get("email"):
            raise ValueError("session payload requires user_id and email")

        lifetime = ttl if ttl is not None else timedelta(seconds=self.config.session_ttl_seconds)
        now = datetime.now(timezone.utc)
        claims = dict(payload)
        claims["iat"] = int(now.timestamp())
        claims["exp"] = int((now + lifetime).timestamp())

        return jwt.encode(claims, self.config.jwt_secret, algorithm=self.config.algorithm)

    def verify_session_token(self, token: Optional[str]) -> Optional[dict[str, Any]]:
        """Return the verified claims, or None for any invalid token."""
        if not token:
            return None
        try:
            claims = jwt.decode(
                token,
                self.config.jwt_secret,
                algorithms=[self.config.algorithm],
                options={"require": ["exp"]},
            )
        except jwt.ExpiredSignatureError:
            logger.debug("Session token expired")
            return None
        except jwt.PyJWTError as e:
            logger.debug("Session token rejected", extra={"error_type": type(e).__name__})
            return None

        if not claims.get("user_id"):
            return None
        return claims

    # CSRF

    def generate_csrf_token(self, session_token: str) -> str:
        return hmac.new(
            self.config.jwt_secret.encode("utf-8"),
            session_token.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def validate_csrf_token(self, token: Optional[str], session_token: Optional[str]) -> bool:
        if not token or not session_token:
            return False
        expected = self.generate_csrf_token(session_token)
        return hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8"))


# Random tokens and digests

def generate_secure_token(byte_length: int = 32) -> str:
    """Hex token for email verification and password reset links."""
    return secrets.token_hex(byte_length)


def generate_numeric_code() -> str:
    """Six-digit code, uniform over [100000, 999999]."""
    return str(100000 + secrets.randbelow(900000))


def sha256(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def hash_token(token: str) -> str:
    """Digest stored server-side in place of a raw reset/verification token."""
    return sha256(token)


# Time helpers

def is_expired(expires_at: datetime, now: Optional[datetime] = None) -> bool:
    now = now or datetime.now(timezone.utc)
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return now > expires_at


def expiry_date(milliseconds: int, now: Optional[datetime] = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    return now + timedelta(milliseconds=milliseconds)


# Email helpers

def sanitize_email(email: str) -> str:
    return email.strip().lower()


def validate_email(email: str) -> bool:
    if not email or len(email) > _EMAIL_MAX_LENGTH:
        return False
    return bool(_EMAIL_PATTERN.match(email))


def sanitize_input(value: str) -> str:
    """
    Strip angle brackets, ``javascript:`` and inline ``on*=`` handlers, then trim.

    A coarse filter for free-text fields; output encoding is still required.
    """
    for pattern in _UNSAFE_MARKUP:
        value = pattern.sub("", value)
    return value.strip()
