"""Credential handling: password hashing, session tokens, lockout, sessions."""

from giftguard.credentials.vault import (
    SECURITY_CONFIG,
    CredentialVault,
    PasswordValidationResult,
    VaultConfig,
    generate_numeric_code,
    generate_secure_token,
    hash_token,
    sha256,
)

__all__ = [
    "SECURITY_CONFIG",
    "CredentialVault",
    "PasswordValidationResult",
    "VaultConfig",
    "generate_numeric_code",
    "generate_secure_token",
    "hash_token",
    "sha256",
]
