"""
Symmetric encryption for sensitive values stored at rest.

Implements AES-256-GCM with a key derived from a server secret.

SECURITY:
- Uses AES-256-GCM for authenticated encryption
- Each encryption uses a fresh random 16-byte IV
- Key is derived once per cipher with PBKDF2-HMAC-SHA256 (100,000 iterations)
- The KDF salt is fixed and non-secret; it provides domain separation only,
  so every value encrypted by one deployment shares one derived key
- Decryption fails closed: any malformed, truncated or tampered payload
  raises DecryptionError, never partial plaintext

Wire format:
    hex(iv):hex(auth_tag):hex(ciphertext)

Usage:
    from giftguard.utils.encryption import SymmetricCipher

    cipher = SymmetricCipher(secret=os.environ["ENCRYPTION_KEY"])
    payload = cipher.encrypt("4111 1111 1111 1111")
    plaintext = cipher.decrypt(payload)
"""

import binascii
import logging
import os
import secrets
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from giftguard.platform.errors import ConfigurationError

logger = logging.getLogger(__name__)


# AES-GCM constants
IV_SIZE = 16     # 128 bits
TAG_SIZE = 16    # 128 bits, standard for AES-GCM
KEY_SIZE = 32    # 256 bits for AES-256

KDF_ITERATIONS = 100000
DEFAULT_SALT = b"eternal-salt"
MIN_KDF_ITERATIONS = 100000

PAYLOAD_SEPARATOR = ":"


class CipherError(Exception):
    """Base class for opaque cipher failures."""


class EncryptionError(CipherError):
    """Raised when encryption fails."""

    def __init__(self):
        super().__init__("Encryption failed")


class DecryptionError(CipherError):
    """Raised when decryption fails for any reason (format, key, tampering)."""

    def __init__(self):
        super().__init__("Decryption failed")


def derive_key(secret: str, salt: bytes = DEFAULT_SALT, iterations: int = KDF_ITERATIONS) -> bytes:
    """
    Derive a 32-byte key from a secret using PBKDF2-HMAC-SHA256.

    Deterministic for a given (secret, salt, iterations).
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(secret.encode("utf-8"))


class SymmetricCipher:
    """
    AES-256-GCM cipher producing colon-delimited hex payloads.

    Instances are immutable after construction and safe to share across
    threads.
    """

    def __init__(
        self,
        secret: Optional[str] = None,
        salt: bytes = DEFAULT_SALT,
        iterations: int = KDF_ITERATIONS,
    ):
        """
        Args:
            secret: Key-derivation secret (defaults to ENCRYPTION_KEY)
            salt: Fixed, non-secret KDF salt
            iterations: PBKDF2 iteration count (>= 100,000)

        Raises:
            ConfigurationError: If no secret is available or iterations too low
        """
        secret = secret if secret is not None else os.environ.get("ENCRYPTION_KEY")
        if not secret:
            raise ConfigurationError("ENCRYPTION_KEY is not configured")
        if iterations < MIN_KDF_ITERATIONS:
            raise ConfigurationError(
                "KDF iteration count too low",
                details={"minimum": MIN_KDF_ITERATIONS},
            )

        self._aesgcm = AESGCM(derive_key(secret, salt, iterations))

    @staticmethod
    def generate_iv() -> bytes:
        return secrets.token_bytes(IV_SIZE)

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a string.

        Returns:
            "hex(iv):hex(tag):hex(ciphertext)"

        Raises:
            ValueError: If plaintext is empty
            EncryptionError: If the underlying cipher fails
        """
        if not plaintext:
            raise ValueError("plaintext must be a non-empty string")

        try:
            iv = self.generate_iv()
            # AESGCM.encrypt returns ciphertext + tag concatenated
            ciphertext_with_tag = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
            ciphertext = ciphertext_with_tag[:-TAG_SIZE]
            auth_tag = ciphertext_with_tag[-TAG_SIZE:]
        except Exception as e:
            logger.error("Encryption failed", extra={"error_type": type(e).__name__})
            raise EncryptionError() from None

        return PAYLOAD_SEPARATOR.join((iv.hex(), auth_tag.hex(), ciphertext.hex()))

    def decrypt(self, payload: str) -> str:
        """
        Decrypt a payload produced by encrypt().

        Raises:
            DecryptionError: On wrong part count, empty or non-hex parts,
                wrong IV/tag lengths, or authentication tag mismatch
        """
        try:
            iv, auth_tag, ciphertext = self._parse_payload(payload)
            plaintext = self._aesgcm.decrypt(iv, ciphertext + auth_tag, None)
            return plaintext.decode("utf-8")
        except InvalidTag:
            logger.warning("Decryption failed", extra={"error_type": "InvalidTag"})
            raise DecryptionError() from None
        except DecryptionError:
            raise
        except Exception as e:
            logger.warning("Decryption failed", extra={"error_type": type(e).__name__})
            raise DecryptionError() from None

    @staticmethod
    def _parse_payload(payload: str) -> tuple[bytes, bytes, bytes]:
        if not isinstance(payload, str):
            logger.warning("Decryption failed", extra={"error_type": "InvalidPayloadType"})
            raise DecryptionError()

        parts = payload.split(PAYLOAD_SEPARATOR)
        if len(parts) != 3 or not all(parts):
            logger.warning("Decryption failed", extra={"error_type": "InvalidPayloadFormat"})
            raise DecryptionError()

        try:
            iv, auth_tag, ciphertext = (binascii.unhexlify(p) for p in parts)
        except (binascii.Error, ValueError):
            logger.warning("Decryption failed", extra={"error_type": "InvalidHex"})
            raise DecryptionError() from None

        if len(iv) != IV_SIZE or len(auth_tag) != TAG_SIZE:
            logger.warning("Decryption failed", extra={"error_type": "InvalidComponentLength"})
            raise DecryptionError()

        return iv, auth_tag, ciphertext
