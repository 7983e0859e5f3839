"""
Owner-bound credential encryption.

AES-256-GCM with a key derived from the owner identity by PBKDF2-HMAC-SHA256.
Each call to encrypt() draws a fresh 16-byte salt and a fresh 12-byte nonce;
the nonce is prepended to the ciphertext so the stored value is self-contained.
"""

import base64
import binascii
import logging
import re
import secrets
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import DecryptionError, MalformedInputError
from ..storage.models import ProtectedCredential

logger = logging.getLogger(__name__)

KDF_ITERATIONS = 100_000
KEY_LENGTH = 32  # AES-256
SALT_LENGTH = 16
NONCE_LENGTH = 12
TAG_LENGTH = 16

_DECRYPTION_FAILED = "Failed to decrypt credential"

_CREDENTIAL_PATTERNS = (
    re.compile(r"^sk-[A-Za-z0-9_-]+$"),
    re.compile(r"^[A-Za-z0-9_-]{20,}$"),
)


def derive_key(owner_identity: str, salt: bytes) -> bytes:
    """Derive a 256-bit key from the owner identity and salt."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(owner_identity.encode("utf-8"))


def encrypt(secret: str, owner_identity: str) -> ProtectedCredential:
    """Encrypt a credential so only ``owner_identity`` can recover it.

    Args:
        secret: Plaintext credential
        owner_identity: Stable owner string (wallet address)

    Returns:
        ProtectedCredential with base64 ciphertext and salt

    Raises:
        ValueError: If secret or owner_identity is empty
    """
    if not secret:
        raise ValueError("secret is required and cannot be empty")
    if not owner_identity:
        raise ValueError("owner_identity is required and cannot be empty")

    salt = secrets.token_bytes(SALT_LENGTH)
    nonce = secrets.token_bytes(NONCE_LENGTH)
    key = derive_key(owner_identity, salt)
    sealed = AESGCM(key).encrypt(nonce, secret.encode("utf-8"), None)

    return ProtectedCredential(
        ciphertext=base64.b64encode(nonce + sealed).decode("ascii"),
        salt=base64.b64encode(salt).decode("ascii"),
        owner_identity=owner_identity,
    )


def decrypt(ciphertext: str, salt: str, owner_identity: str) -> str:
    """Recover a credential encrypted for ``owner_identity``.

    Raises:
        MalformedInputError: If ciphertext or salt is not base64, or is truncated
        DecryptionError: If authentication fails for any reason
    """
    data = _b64decode(ciphertext, "ciphertext")
    salt_bytes = _b64decode(salt, "salt")

    if len(data) < NONCE_LENGTH + TAG_LENGTH:
        raise MalformedInputError("ciphertext is truncated")
    if len(salt_bytes) != SALT_LENGTH:
        raise MalformedInputError(f"salt must be {SALT_LENGTH} bytes, got {len(salt_bytes)}")

    key = derive_key(owner_identity, salt_bytes)
    try:
        plaintext = AESGCM(key).decrypt(data[:NONCE_LENGTH], data[NONCE_LENGTH:], None)
    except InvalidTag:
        raise DecryptionError(_DECRYPTION_FAILED) from None

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError:
        raise DecryptionError(_DECRYPTION_FAILED) from None


def verify_round_trip(secret: str, ciphertext: str, salt: str, owner_identity: str) -> bool:
    """Diagnostic check that a stored credential decrypts back to ``secret``."""
    try:
        return decrypt(ciphertext, salt, owner_identity) == secret
    except (DecryptionError, MalformedInputError):
        return False


def key_preview(secret: Optional[str]) -> str:
    """Masked form of a credential safe for logs and display."""
    if not secret or len(secret) < 8:
        return "••••••••"
    return f"{secret[:4]}••••••••{secret[-4:]}"


@dataclass(frozen=True)
class CredentialCheck:
    """Result of a credential format check."""
    valid: bool
    error: Optional[str] = None
    warning: Optional[str] = None


def validate_credential_format(secret) -> CredentialCheck:
    """Basic sanity check on a gateway credential before it is protected."""
    if not secret or not isinstance(secret, str):
        return CredentialCheck(valid=False, error="API key must be a non-empty string")
    if len(secret) < 16:
        return CredentialCheck(valid=False, error="API key appears too short")
    if len(secret) > 256:
        return CredentialCheck(valid=False, error="API key appears too long")

    if not any(pattern.match(secret) for pattern in _CREDENTIAL_PATTERNS):
        return CredentialCheck(
            valid=True,
            warning="API key format may be unusual - please verify it is correct"
        )
    return CredentialCheck(valid=True)


def _b64decode(value: str, name: str) -> bytes:
    if not isinstance(value, str) or not value:
        raise MalformedInputError(f"{name} must be a non-empty base64 string")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        raise MalformedInputError(f"{name} is not valid base64") from None
