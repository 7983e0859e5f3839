"""
Ledger transaction orchestration.

Submits vault operations to the ledger, follows each transaction through

    SUBMITTED -> [INCLUDED] -> FINALIZED
    SUBMITTED / INCLUDED -> FAILED

and reads newly minted vault ids back out of the execution log, which is the
only channel the ledger offers for them.
"""

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_DOWN
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional, Pattern, Protocol, Sequence, Tuple

from . import cipher
from .errors import (
    FinalityTimeoutError,
    IdentifierExtractionFailed,
    LedgerUnavailable,
    PartialSuccess,
    TransactionFailed,
    VaultBillingError,
    WaitCancelled,
)
from .ledger_scripts import LedgerOperation, render
from ..storage.models import EntitlementKind, ProtectedCredential, VaultRecord

logger = logging.getLogger(__name__)


class TxState(Enum):
    """Lifecycle of a ledger transaction as observed locally."""
    SUBMITTED = "submitted"
    INCLUDED = "included"
    FINALIZED = "finalized"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TxState.FINALIZED, TxState.FAILED)


_TRANSITIONS = {
    TxState.SUBMITTED: {TxState.INCLUDED, TxState.FINALIZED, TxState.FAILED},
    TxState.INCLUDED: {TxState.FINALIZED, TxState.FAILED},
    TxState.FINALIZED: set(),
    TxState.FAILED: set(),
}

# Flow access node codes: 0 unknown, 1 pending, 2 finalized, 3 executed, 4 sealed, 5 expired
_STATUS_CODES = {
    0: TxState.SUBMITTED,
    1: TxState.SUBMITTED,
    2: TxState.INCLUDED,
    3: TxState.INCLUDED,
    4: TxState.FINALIZED,
    5: TxState.FAILED,
}

_STATUS_NAMES = {
    "unknown": TxState.SUBMITTED,
    "pending": TxState.SUBMITTED,
    "submitted": TxState.SUBMITTED,
    "finalized": TxState.INCLUDED,
    "executed": TxState.INCLUDED,
    "included": TxState.INCLUDED,
    "sealed": TxState.FINALIZED,
    "expired": TxState.FAILED,
    "failed": TxState.FAILED,
    "error": TxState.FAILED,
}


def map_status(status_code: Any, error_message: Optional[str] = None) -> TxState:
    """Map a ledger status code (int or name) onto TxState.

    Any non-empty error message means the transaction failed.

    Raises:
        LedgerUnavailable: If the status code is not recognized
    """
    if error_message:
        return TxState.FAILED
    if isinstance(status_code, int) and not isinstance(status_code, bool):
        if status_code in _STATUS_CODES:
            return _STATUS_CODES[status_code]
    elif isinstance(status_code, str):
        name = status_code.strip().lower()
        if name.isdigit() and int(name) in _STATUS_CODES:
            return _STATUS_CODES[int(name)]
        if name in _STATUS_NAMES:
            return _STATUS_NAMES[name]
    raise LedgerUnavailable(f"Unrecognized ledger status code: {status_code!r}")


@dataclass(frozen=True)
class LedgerArgument:
    """Typed argument for a ledger transaction."""
    value: Any
    type: str

    def to_json(self) -> Dict[str, Any]:
        return {"value": self.value, "type": self.type}


class LedgerClient(Protocol):
    """Boundary contract for the external ledger."""

    def submit_transaction(self, script: str, args: Sequence[LedgerArgument]) -> str:
        ...

    def get_transaction_status(self, tx_id: str) -> Dict[str, Any]:
        ...


@dataclass(frozen=True)
class TransactionRecord:
    """Snapshot of a transaction's observed ledger state."""
    id: str
    state: TxState
    block_id: Optional[str] = None
    log_lines: Tuple[str, ...] = ()
    error_message: Optional[str] = None


@dataclass
class TransactionHandle:
    """Local handle on a submitted transaction."""
    tx_id: str
    operation: LedgerOperation
    idempotency_key: Optional[str] = None
    state: TxState = TxState.SUBMITTED
    submitted_at: datetime = field(default_factory=datetime.now)

    def advance(self, new_state: TxState) -> None:
        """Move to ``new_state`` if the state machine allows it.

        Observations that would go backward (e.g. SUBMITTED after INCLUDED)
        are ignored; leaving a terminal state is an error.
        """
        if new_state == self.state:
            return
        if self.state.is_terminal:
            raise VaultBillingError(
                f"Transaction {self.tx_id} is already {self.state.value}, "
                f"cannot move to {new_state.value}"
            )
        if new_state in _TRANSITIONS[self.state]:
            self.state = new_state


# Ordered; the first line matching any pattern wins
IDENTIFIER_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(r"vault\s*id\s*[:=]\s*#?(\d+)", re.IGNORECASE),
    re.compile(r"identifier\s*[:=]\s*(\d+)", re.IGNORECASE),
    re.compile(r"(?:entity|vault)\s*#(\d+)", re.IGNORECASE),
    re.compile(r"(?:identifier|vault)_(\d+)", re.IGNORECASE),
)


def extract_identifier(
    record: TransactionRecord,
    patterns: Optional[Iterable[Pattern[str]]] = None,
) -> int:
    """Return the first id found in the record's log lines.

    Raises:
        IdentifierExtractionFailed: If no line matches any pattern
    """
    patterns = tuple(patterns) if patterns is not None else IDENTIFIER_PATTERNS
    for line in record.log_lines:
        for pattern in patterns:
            match = pattern.search(line)
            if match:
                return int(match.group(1))
    raise IdentifierExtractionFailed(
        f"No identifier found in {len(record.log_lines)} log line(s) of transaction {record.id}"
    )


def format_ufix64(amount) -> str:
    """Ledger fixed-point amount with exactly 8 decimal places."""
    value = Decimal(str(amount))
    if value < 0:
        raise ValueError("amount cannot be negative")
    return str(value.quantize(Decimal("0.00000001"), rounding=ROUND_DOWN))


@dataclass(frozen=True)
class CreateAndProtectResult:
    """Outcome of vault creation followed by credential protection."""
    vault_id: int
    vault_created: bool
    credential_stored: bool
    create_tx_id: str
    store_tx_id: Optional[str] = None
    credential: Optional[ProtectedCredential] = None
    error: Optional[str] = None

    @property
    def is_partial(self) -> bool:
        return self.vault_created and not self.credential_stored

    def raise_for_partial(self) -> None:
        """Raise PartialSuccess if the credential was not stored."""
        if self.is_partial:
            raise PartialSuccess(
                f"Vault {self.vault_id} was created and funded, but its API key was not "
                f"stored ({self.error}). Add your key to the vault later.",
                self,
            )


CredentialIssuer = Callable[[int, str, str], str]


class TransactionOrchestrator:
    """Submits vault transactions and tracks them to finality.

    Submissions keyed by an idempotency token are sent once; repeated calls
    with the same key return the existing handle unless it failed.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        contract_address: str,
        issue_credential: Optional[CredentialIssuer] = None,
        repository=None,
        poll_interval: float = 1.0,
    ):
        """Initialize the orchestrator.

        Args:
            ledger: Ledger boundary client
            contract_address: Address filled into transaction templates
            issue_credential: Callable (vault_id, owner, provider) -> new credential
            repository: Optional VaultRepository for local bookkeeping
            poll_interval: Seconds between status polls
        """
        if not contract_address:
            raise ValueError("contract_address is required and cannot be empty")
        if poll_interval <= 0:
            raise ValueError("poll_interval must be > 0")

        self.ledger = ledger
        self.contract_address = contract_address
        self.issue_credential = issue_credential
        self.repository = repository
        self.poll_interval = poll_interval

        self._lock = threading.Lock()
        self._handles_by_key: Dict[str, TransactionHandle] = {}
        self._intent_locks: Dict[str, threading.Lock] = {}
        self._intent_results: Dict[str, CreateAndProtectResult] = {}

    def submit(
        self,
        operation: LedgerOperation,
        params: Sequence[LedgerArgument],
        idempotency_key: Optional[str] = None,
    ) -> TransactionHandle:
        """Send an operation to the ledger and return immediately."""
        script = render(operation, self.contract_address)
        if idempotency_key is None:
            return self._send(operation, script, params, None)

        with self._key_lock(f"submit:{idempotency_key}"):
            existing = self._handles_by_key.get(idempotency_key)
            if existing is not None and existing.state != TxState.FAILED:
                logger.info(
                    "Reusing transaction %s for idempotency key %s",
                    existing.tx_id, idempotency_key
                )
                return existing
            handle = self._send(operation, script, params, idempotency_key)
            self._handles_by_key[idempotency_key] = handle
            return handle

    def _send(
        self,
        operation: LedgerOperation,
        script: str,
        params: Sequence[LedgerArgument],
        idempotency_key: Optional[str],
    ) -> TransactionHandle:
        tx_id = self.ledger.submit_transaction(script, list(params))
        logger.info("Submitted %s transaction %s", operation.value, tx_id)
        return TransactionHandle(tx_id=tx_id, operation=operation, idempotency_key=idempotency_key)

    def _key_lock(self, key: str) -> threading.Lock:
        with self._lock:
            return self._intent_locks.setdefault(key, threading.Lock())

    def poll(self, handle: TransactionHandle) -> TransactionRecord:
        """Fetch the current ledger state once and advance the handle."""
        status = self.ledger.get_transaction_status(handle.tx_id)
        error_message = status.get("error_message") or None
        state = map_status(status.get("status_code"), error_message)
        handle.advance(state)
        return TransactionRecord(
            id=handle.tx_id,
            state=handle.state,
            block_id=status.get("block_id"),
            log_lines=tuple(status.get("logs") or ()),
            error_message=error_message,
        )

    def await_finalized(
        self,
        handle: TransactionHandle,
        timeout: float,
        cancel_event: Optional[threading.Event] = None,
    ) -> TransactionRecord:
        """Block until the transaction is FINALIZED or FAILED.

        INCLUDED is reported by some ledgers and is never treated as final.
        Timing out or cancelling only detaches this waiter; the ledger
        operation carries on and can be polled again with the same handle.

        Raises:
            FinalityTimeoutError: If no terminal state is seen within ``timeout``
            WaitCancelled: If ``cancel_event`` is set while waiting
        """
        waiter = cancel_event or threading.Event()
        deadline = time.monotonic() + timeout
        last_error: Optional[Exception] = None

        while True:
            try:
                record = self.poll(handle)
                if record.state.is_terminal:
                    logger.info("Transaction %s %s", handle.tx_id, record.state.value)
                    return record
            except LedgerUnavailable as e:
                last_error = e
                logger.warning("Status check for %s failed: %s", handle.tx_id, e)

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                detail = f" (last error: {last_error})" if last_error else ""
                raise FinalityTimeoutError(
                    f"Transaction {handle.tx_id} not final after {timeout}s, "
                    f"last state {handle.state.value}{detail}. It may still complete.",
                    tx_id=handle.tx_id,
                )
            if waiter.wait(min(self.poll_interval, remaining)):
                raise WaitCancelled(
                    f"Stopped waiting for transaction {handle.tx_id}", tx_id=handle.tx_id
                )

    def top_up(
        self,
        vault_id: int,
        amount,
        idempotency_key: str,
        timeout: float = 60.0,
    ) -> TransactionRecord:
        """Add funds to a vault. Safe to retry with the same idempotency key.

        Raises:
            TransactionFailed: If the ledger rejects the top-up
        """
        if not idempotency_key:
            raise ValueError("idempotency_key is required and cannot be empty")
        handle = self.submit(
            LedgerOperation.TOP_UP,
            [
                LedgerArgument(str(vault_id), "UInt64"),
                LedgerArgument(format_ufix64(amount), "UFix64"),
                LedgerArgument(idempotency_key, "String"),
            ],
            idempotency_key=f"top_up:{idempotency_key}",
        )
        record = self.await_finalized(handle, timeout)
        if record.state == TxState.FAILED:
            raise TransactionFailed(
                f"Top-up of vault {vault_id} failed: {record.error_message}", tx_id=record.id
            )
        return record

    def store_credential(
        self,
        vault_id: int,
        credential: ProtectedCredential,
        idempotency_key: str,
        timeout: float = 60.0,
    ) -> TransactionRecord:
        """Write an encrypted credential to a vault. Safe to retry.

        Raises:
            TransactionFailed: If the ledger rejects the write
        """
        if not idempotency_key:
            raise ValueError("idempotency_key is required and cannot be empty")
        handle = self.submit(
            LedgerOperation.STORE_CREDENTIAL,
            [
                LedgerArgument(str(vault_id), "UInt64"),
                LedgerArgument(credential.ciphertext, "String"),
                LedgerArgument(credential.salt, "String"),
                LedgerArgument(idempotency_key, "String"),
            ],
            idempotency_key=f"store_credential:{idempotency_key}",
        )
        record = self.await_finalized(handle, timeout)
        if record.state == TxState.FAILED:
            raise TransactionFailed(
                f"Storing the credential for vault {vault_id} failed: {record.error_message}",
                tx_id=record.id,
            )
        if self.repository is not None:
            self.repository.mark_credential_stored(vault_id, credential)
        return record

    def create_and_protect(
        self,
        owner: str,
        provider: str,
        initial_deposit,
        idempotency_key: str,
        entitlement_kind: EntitlementKind = EntitlementKind.FIXED,
        withdraw_limit=Decimal("0"),
        valid_for: timedelta = timedelta(days=30),
        selected_models: Sequence[str] = (),
        timeout: float = 60.0,
    ) -> CreateAndProtectResult:
        """Create a vault, then issue, encrypt and store its gateway credential.

        The two ledger transactions run in order. Concurrent calls with the
        same idempotency key are serialized and share one result.

        Raises:
            TransactionFailed: If vault creation fails (no funds moved)
            FinalityTimeoutError: If vault creation is not final in time
            IdentifierExtractionFailed: If the new vault id cannot be read
        """
        if not owner:
            raise ValueError("owner is required and cannot be empty")
        if not idempotency_key:
            raise ValueError("idempotency_key is required and cannot be empty")
        if self.issue_credential is None:
            raise ValueError("issue_credential is required for create_and_protect")

        with self._key_lock(f"intent:{idempotency_key}"):
            cached = self._intent_results.get(idempotency_key)
            if cached is not None:
                return cached

            create_handle = self.submit(
                LedgerOperation.CREATE_VAULT,
                [
                    LedgerArgument(provider, "Address"),
                    LedgerArgument(format_ufix64(initial_deposit), "UFix64"),
                    LedgerArgument(entitlement_kind.value, "String"),
                    LedgerArgument(format_ufix64(withdraw_limit), "UFix64"),
                    LedgerArgument(format_ufix64(valid_for.total_seconds()), "UFix64"),
                    LedgerArgument(
                        [{"value": m, "type": "String"} for m in selected_models], "Array"
                    ),
                ],
                idempotency_key=f"create_vault:{idempotency_key}",
            )
            record = self.await_finalized(create_handle, timeout)
            if record.state == TxState.FAILED:
                raise TransactionFailed(
                    f"Vault creation failed: {record.error_message}", tx_id=record.id
                )

            vault_id = extract_identifier(record)
            logger.info("Vault %s created by transaction %s", vault_id, record.id)
            if self.repository is not None:
                self.repository.save_vault(VaultRecord(
                    vault_id=vault_id,
                    owner=owner,
                    provider=provider,
                    created_at=datetime.now(),
                ))

            result = self._protect(vault_id, owner, provider, record.id, idempotency_key, timeout)
            self._intent_results[idempotency_key] = result
            return result

    def retry_credential_store(
        self,
        vault_id: int,
        owner: str,
        provider: str,
        timeout: float = 60.0,
    ) -> CreateAndProtectResult:
        """Finish protecting a vault left in partial success.

        Reuses the encrypted credential recorded locally if there is one,
        otherwise issues a new credential.
        """
        credential = None
        if self.repository is None and self.issue_credential is None:
            raise ValueError("issue_credential or repository is required to retry")
        if self.repository is not None:
            stored = self.repository.get_vault(vault_id)
            if stored is not None and stored.credential_stored:
                return CreateAndProtectResult(
                    vault_id=vault_id, vault_created=True, credential_stored=True,
                    create_tx_id="",
                    credential=ProtectedCredential(stored.ciphertext, stored.salt, stored.owner),
                )
            if stored is not None and stored.ciphertext and stored.salt:
                credential = ProtectedCredential(stored.ciphertext, stored.salt, stored.owner)

        return self._protect(
            vault_id, owner, provider, "", f"retry:{vault_id}", timeout, credential=credential
        )

    def _protect(
        self,
        vault_id: int,
        owner: str,
        provider: str,
        create_tx_id: str,
        idempotency_key: str,
        timeout: float,
        credential: Optional[ProtectedCredential] = None,
    ) -> CreateAndProtectResult:
        """Issue, encrypt and store a credential; failures become partial success."""
        if credential is None:
            if self.issue_credential is None:
                raise ValueError(f"No stored credential for vault {vault_id} and no issuer")
            try:
                secret = self.issue_credential(vault_id, owner, provider)
            except VaultBillingError as e:
                logger.error("Could not issue a credential for vault %s: %s", vault_id, e)
                return CreateAndProtectResult(
                    vault_id=vault_id, vault_created=True, credential_stored=False,
                    create_tx_id=create_tx_id, error=f"credential issuance failed: {e}",
                )
            credential = cipher.encrypt(secret, owner)
            logger.info("Issued credential %s for vault %s", cipher.key_preview(secret), vault_id)
            if self.repository is not None:
                self.repository.save_credential(vault_id, credential)

        try:
            store_record = self.store_credential(
                vault_id, credential, idempotency_key, timeout=timeout
            )
        except (TransactionFailed, FinalityTimeoutError, LedgerUnavailable) as e:
            logger.error("Vault %s created but credential not stored: %s", vault_id, e)
            return CreateAndProtectResult(
                vault_id=vault_id, vault_created=True, credential_stored=False,
                create_tx_id=create_tx_id, store_tx_id=getattr(e, "tx_id", None),
                credential=credential, error=str(e),
            )

        return CreateAndProtectResult(
            vault_id=vault_id, vault_created=True, credential_stored=True,
            create_tx_id=create_tx_id, store_tx_id=store_record.id, credential=credential,
        )
