"""
Error taxonomy for credential protection and usage billing.

Every failure that can affect whether funds moved, whether a credential
exists, or whether a user must sign again has its own type, so callers can
present a specific message instead of a generic failure.
"""

from typing import Any, Optional


class VaultBillingError(Exception):
    """Base class for all usage_vault errors."""


class MalformedInputError(VaultBillingError, ValueError):
    """Raised when stored ciphertext or salt is not valid base64 or is truncated."""


class DecryptionError(VaultBillingError):
    """Raised when authenticated decryption fails.

    Wrong owner, corrupted ciphertext and wrong salt all produce this same
    error with the same message.
    """


class SignatureDeclinedError(VaultBillingError):
    """Raised when the owner declines, or fails, to sign a decryption challenge."""


class TransactionFailed(VaultBillingError):
    """Raised when the ledger reports a transaction as failed."""
    def __init__(self, message: str, tx_id: Optional[str] = None):
        super().__init__(message)
        self.tx_id = tx_id


class LedgerUnavailable(VaultBillingError):
    """Raised when the ledger endpoint cannot be reached or answers malformed data."""


class FinalityTimeoutError(VaultBillingError, TimeoutError):
    """Raised when a transaction is not final before the caller's timeout.

    The ledger operation is not cancelled and may still finalize later.
    """
    def __init__(self, message: str, tx_id: Optional[str] = None):
        super().__init__(message)
        self.tx_id = tx_id


class WaitCancelled(VaultBillingError):
    """Raised when the caller detaches a waiter before the transaction is final."""
    def __init__(self, message: str, tx_id: Optional[str] = None):
        super().__init__(message)
        self.tx_id = tx_id


class IdentifierExtractionFailed(VaultBillingError):
    """Raised when no known identifier pattern matches a transaction's log lines."""


class PartialSuccess(VaultBillingError):
    """Vault was created but its credential was not stored."""
    def __init__(self, message: str, result: Any):
        super().__init__(message)
        self.result = result


class GatewayUnavailable(VaultBillingError):
    """Raised when the gateway cannot be reached or returns an unrecognized shape."""


class AttestationWriteError(VaultBillingError):
    """Raised when an accepted attestation could not be persisted."""


class AttestationOutOfOrder(UserWarning):
    """Warning category for attestations that would move confirmed usage backward."""
