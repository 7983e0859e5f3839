"""
Unit tests for signature-gated decryption.
"""

from unittest.mock import Mock, patch

import pytest

from usage_vault.core.cipher import encrypt
from usage_vault.core.errors import DecryptionError, SignatureDeclinedError
from usage_vault.core.signature_gate import (
    CredentialSession,
    SignatureGatedDecryptor,
    build_challenge,
    decrypt_with_proof,
)

OWNER = "0x1234567890abcdef"
SECRET = "sk-test-abcdefghijklmnop"


class _Signer:
    """Returns a distinct signature per call and records messages."""

    def __init__(self):
        self.messages = []

    def __call__(self, message):
        self.messages.append(message)
        return f"sig-{len(self.messages)}"


class TestSignatureGate:
    """Test the signature gate."""

    def setup_method(self):
        self.protected = encrypt(SECRET, OWNER)

    def test_decrypts_after_signature(self):
        signer = _Signer()
        gate = SignatureGatedDecryptor()
        plaintext = gate.decrypt_with_proof(
            self.protected.ciphertext, self.protected.salt, OWNER, 42, signer
        )
        assert plaintext == SECRET
        assert len(signer.messages) == 1
        assert "vault 42" in signer.messages[0]

    def test_declined_signature_never_decrypts(self):
        sign_fn = Mock(side_effect=RuntimeError("User rejected the request"))
        gate = SignatureGatedDecryptor()
        with patch("usage_vault.core.cipher.decrypt") as mock_decrypt:
            with pytest.raises(SignatureDeclinedError):
                gate.decrypt_with_proof(
                    self.protected.ciphertext, self.protected.salt, OWNER, 1, sign_fn
                )
        mock_decrypt.assert_not_called()

    def test_empty_signature_is_declined(self):
        gate = SignatureGatedDecryptor()
        with patch("usage_vault.core.cipher.decrypt") as mock_decrypt:
            with pytest.raises(SignatureDeclinedError):
                gate.decrypt_with_proof(
                    self.protected.ciphertext, self.protected.salt, OWNER, 1, lambda m: ""
                )
        mock_decrypt.assert_not_called()

    def test_failed_verification_is_declined(self):
        gate = SignatureGatedDecryptor(verify_signature=lambda message, sig: False)
        with patch("usage_vault.core.cipher.decrypt") as mock_decrypt:
            with pytest.raises(SignatureDeclinedError):
                gate.decrypt_with_proof(
                    self.protected.ciphertext, self.protected.salt, OWNER, 1, _Signer()
                )
        mock_decrypt.assert_not_called()

    def test_replayed_signature_rejected(self):
        gate = SignatureGatedDecryptor()
        replay = lambda message: "same-signature"
        gate.decrypt_with_proof(self.protected.ciphertext, self.protected.salt, OWNER, 1, replay)
        with pytest.raises(SignatureDeclinedError):
            gate.decrypt_with_proof(
                self.protected.ciphertext, self.protected.salt, OWNER, 1, replay
            )

    def test_challenges_are_unique(self):
        signer = _Signer()
        gate = SignatureGatedDecryptor()
        for _ in range(2):
            gate.decrypt_with_proof(
                self.protected.ciphertext, self.protected.salt, OWNER, 7, signer
            )
        assert signer.messages[0] != signer.messages[1]

    def test_wrong_owner_still_fails_after_signature(self):
        with pytest.raises(DecryptionError):
            decrypt_with_proof(
                self.protected.ciphertext, self.protected.salt, "0xother", 3, _Signer()
            )

    def test_build_challenge_format(self):
        from datetime import datetime, timezone
        issued = datetime(2024, 1, 1, tzinfo=timezone.utc)
        message = build_challenge(5, issued_at=issued, nonce="abc")
        assert message == "Decrypt API key for vault 5 at 2024-01-01T00:00:00+00:00 (nonce abc)"


class TestCredentialSession:
    """Test scoped reveal state."""

    def setup_method(self):
        self.protected = encrypt(SECRET, OWNER)

    def test_reveal_signs_once_per_vault(self):
        signer = _Signer()
        with CredentialSession(OWNER, signer) as session:
            assert session.reveal(1, self.protected.ciphertext, self.protected.salt) == SECRET
            assert session.reveal(1, self.protected.ciphertext, self.protected.salt) == SECRET
            assert session.is_revealed(1)
        assert len(signer.messages) == 1

    def test_reveals_cleared_on_exit(self):
        with CredentialSession(OWNER, _Signer()) as session:
            session.reveal(1, self.protected.ciphertext, self.protected.salt)
        assert not session.is_revealed(1)
        with pytest.raises(RuntimeError):
            session.reveal(1, self.protected.ciphertext, self.protected.salt)

    def test_declined_reveal_leaves_nothing(self):
        session = CredentialSession(OWNER, Mock(side_effect=RuntimeError("rejected")))
        with pytest.raises(SignatureDeclinedError):
            session.reveal(1, self.protected.ciphertext, self.protected.salt)
        assert not session.is_revealed(1)
