"""
Signature-gated credential decryption.

The stored ciphertext may be fetched eagerly, but plaintext is only computed
after the owner signs a fresh challenge bound to the vault.
"""

import logging
import secrets
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Set

from . import cipher
from .errors import SignatureDeclinedError

logger = logging.getLogger(__name__)

SignFn = Callable[[str], Any]
VerifyFn = Callable[[str, Any], bool]


def build_challenge(vault_id: int, issued_at: Optional[datetime] = None, nonce: Optional[str] = None) -> str:
    """Build the message an owner signs to release a vault's credential."""
    issued_at = issued_at or datetime.now(timezone.utc)
    nonce = nonce or secrets.token_hex(16)
    return f"Decrypt API key for vault {vault_id} at {issued_at.isoformat()} (nonce {nonce})"


class SignatureGatedDecryptor:
    """Releases decrypted credentials only against a fresh owner signature.

    Each challenge carries a random nonce, and every signature is accepted at
    most once per decryptor instance.
    """

    def __init__(self, verify_signature: Optional[VerifyFn] = None):
        """Initialize the gate.

        Args:
            verify_signature: Optional check of (message, signature); a False
                result is treated as a declined signature
        """
        self.verify_signature = verify_signature
        self._used_signatures: Set[str] = set()
        self._lock = threading.Lock()

    def decrypt_with_proof(
        self,
        ciphertext: str,
        salt: str,
        owner_identity: str,
        vault_id: int,
        sign_fn: SignFn,
    ) -> str:
        """Obtain a signature over a vault-bound challenge, then decrypt.

        Raises:
            SignatureDeclinedError: If signing fails, is refused, or is replayed
            DecryptionError: If the credential does not belong to the owner
            MalformedInputError: If the stored values are malformed
        """
        message = build_challenge(vault_id)
        try:
            signature = sign_fn(message)
        except Exception as e:
            logger.warning("Signature request for vault %s failed: %s", vault_id, e)
            raise SignatureDeclinedError(
                f"Wallet signature required to decrypt API key for vault {vault_id}"
            ) from e

        if not signature:
            raise SignatureDeclinedError(
                f"Wallet signature required to decrypt API key for vault {vault_id}"
            )

        if self.verify_signature is not None and not self.verify_signature(message, signature):
            raise SignatureDeclinedError(f"Signature rejected for vault {vault_id}")

        fingerprint = signature.hex() if isinstance(signature, (bytes, bytearray)) else str(signature)
        with self._lock:
            if fingerprint in self._used_signatures:
                raise SignatureDeclinedError(f"Signature already used for vault {vault_id}")
            self._used_signatures.add(fingerprint)

        return cipher.decrypt(ciphertext, salt, owner_identity)


_default_gate = SignatureGatedDecryptor()


def decrypt_with_proof(
    ciphertext: str,
    salt: str,
    owner_identity: str,
    vault_id: int,
    sign_fn: SignFn,
) -> str:
    """Module-level shortcut using a shared gate without signature verification."""
    return _default_gate.decrypt_with_proof(ciphertext, salt, owner_identity, vault_id, sign_fn)


class CredentialSession:
    """Scoped holder for revealed credentials.

    Everything revealed through the session is discarded when the ``with``
    block ends or close() is called. There is no persistence.
    """

    def __init__(self, owner_identity: str, sign_fn: SignFn,
                 gate: Optional[SignatureGatedDecryptor] = None):
        self.owner_identity = owner_identity
        self.sign_fn = sign_fn
        self.gate = gate or SignatureGatedDecryptor()
        self._revealed: Dict[int, str] = {}
        self._closed = False

    def reveal(self, vault_id: int, ciphertext: str, salt: str) -> str:
        """Return the plaintext for a vault, signing once per vault per session."""
        if self._closed:
            raise RuntimeError("credential session is closed")
        if vault_id not in self._revealed:
            self._revealed[vault_id] = self.gate.decrypt_with_proof(
                ciphertext, salt, self.owner_identity, vault_id, self.sign_fn
            )
        return self._revealed[vault_id]

    def is_revealed(self, vault_id: int) -> bool:
        return vault_id in self._revealed

    def close(self) -> None:
        self._revealed.clear()
        self._closed = True

    def __enter__(self) -> "CredentialSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
