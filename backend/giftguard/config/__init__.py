"""Configuration module for the guard."""

from giftguard.config.settings import (
    EnvValidationResult,
    SecuritySettings,
    assert_valid_environment,
    get_env_bool,
    get_env_int,
    validate_environment,
)

__all__ = [
    "EnvValidationResult",
    "SecuritySettings",
    "assert_valid_environment",
    "get_env_bool",
    "get_env_int",
    "validate_environment",
]
