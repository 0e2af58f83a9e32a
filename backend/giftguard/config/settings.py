"""
Security configuration loaded from the environment.

Required in every environment:
- JWT_SECRET: session token signing secret (>= 32 chars)
- ENCRYPTION_KEY: SymmetricCipher key-derivation secret (>= 32 chars)
- DATABASE_URL

Recommended (warning only when missing):
- SMTP_HOST / SMTP_USER / SMTP_PASSWORD, SITE_URL, ALLOWED_ORIGINS

Missing required values raise ConfigurationError only when APP_ENV is
"production". Elsewhere they are reported as warnings so local setups can
boot with ephemeral secrets.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

from pydantic import BaseModel, Field

from giftguard.platform.errors import ConfigurationError

logger = logging.getLogger(__name__)

MIN_SECRET_LENGTH = 32

REQUIRED_ENV_VARS = ("JWT_SECRET", "ENCRYPTION_KEY", "DATABASE_URL")
RECOMMENDED_ENV_VARS = ("SMTP_HOST", "SMTP_USER", "SMTP_PASSWORD", "SITE_URL", "ALLOWED_ORIGINS")
SECRET_ENV_VARS = ("JWT_SECRET", "ENCRYPTION_KEY")


def get_env_int(name: str, default: int) -> int:
    """Read an integer env var, falling back to default on absence or garbage."""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid integer environment value, using default", extra={"env_var": name, "default": default})
        return default


def get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class SecuritySettings(BaseModel):
    """Typed view over the security-relevant environment."""

    app_env: str = "development"
    jwt_secret: Optional[str] = None
    encryption_key: Optional[str] = None
    database_url: Optional[str] = None
    cron_secret: Optional[str] = None
    redis_url: Optional[str] = None
    allowed_origins: List[str] = Field(default_factory=list)
    site_url: Optional[str] = None

    rate_limit_enabled: bool = True
    session_ttl_days: int = 7
    max_login_attempts: int = 5
    lockout_minutes: int = 15
    bcrypt_rounds: int = 12

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"

    @classmethod
    def from_env(cls) -> "SecuritySettings":
        origins = os.getenv("ALLOWED_ORIGINS", "")
        site_url = os.getenv("SITE_URL") or None
        allowed = [o.strip() for o in origins.split(",") if o.strip()]
        if not allowed and site_url:
            allowed = [site_url]
        return cls(
            app_env=os.getenv("APP_ENV", "development"),
            jwt_secret=os.getenv("JWT_SECRET") or None,
            encryption_key=os.getenv("ENCRYPTION_KEY") or None,
            database_url=os.getenv("DATABASE_URL") or None,
            cron_secret=os.getenv("CRON_SECRET") or None,
            redis_url=os.getenv("REDIS_URL") or None,
            allowed_origins=allowed,
            site_url=site_url,
            rate_limit_enabled=get_env_bool("RATE_LIMIT_ENABLED", True),
            session_ttl_days=get_env_int("SESSION_TTL_DAYS", 7),
            max_login_attempts=get_env_int("MAX_LOGIN_ATTEMPTS", 5),
            lockout_minutes=get_env_int("LOCKOUT_MINUTES", 15),
            bcrypt_rounds=get_env_int("BCRYPT_ROUNDS", 12),
        )


@dataclass
class EnvValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def validate_environment(environ: Optional[dict] = None) -> EnvValidationResult:
    """
    Check required and recommended environment variables.

    Never raises; see assert_valid_environment() for the startup gate.
    """
    env = os.environ if environ is None else environ
    errors: List[str] = []
    warnings: List[str] = []

    for name in REQUIRED_ENV_VARS:
        if not env.get(name):
            errors.append(f"Missing required environment variable: {name}")

    for name in SECRET_ENV_VARS:
        value = env.get(name)
        if value and len(value) < MIN_SECRET_LENGTH:
            errors.append(f"{name} must be at least {MIN_SECRET_LENGTH} characters")

    for name in RECOMMENDED_ENV_VARS:
        if not env.get(name):
            warnings.append(f"Missing recommended environment variable: {name}")

    return EnvValidationResult(valid=not errors, errors=errors, warnings=warnings)


def assert_valid_environment(environ: Optional[dict] = None) -> EnvValidationResult:
    """
    Startup gate. Raises ConfigurationError in production when invalid,
    otherwise logs the problems and returns the result.
    """
    env = os.environ if environ is None else environ
    result = validate_environment(env)

    for warning in result.warnings:
        logger.warning("Environment warning", extra={"detail": warning})

    if result.valid:
        return result

    production = env.get("APP_ENV", "development").lower() == "production"
    if production:
        logger.error("Environment validation failed", extra={"error_count": len(result.errors)})
        raise ConfigurationError(
            "Invalid environment configuration",
            details={"errors": result.errors},
        )

    for error in result.errors:
        logger.warning("Environment error (non-production)", extra={"detail": error})
    return result
