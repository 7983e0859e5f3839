"""
Usage reconciliation.

Merges two usage signals for a vault:

- pending: read from the gateway on a short cadence, not yet attested
- confirmed: attested by the oracle on a fixed cadence, already billed

Both are cumulative counts for the same credential, so usage awaiting
billing is their non-negative difference. Nothing is ever counted as both
billed and pending.
"""

import logging
import sqlite3
import threading
import time
import warnings
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol

from .cipher import key_preview
from .errors import AttestationOutOfOrder, AttestationWriteError, GatewayUnavailable
from .pricing import DEFAULT_MARKUP_PCT, DEFAULT_PRICING_TABLE, PricingTable, calculate_cost
from ..sdk.gateway_client import UsageRecord, UsageSummary
from ..storage.models import EMPTY_SNAPSHOT, UsageConfirmedSnapshot, UsagePendingSample

logger = logging.getLogger(__name__)

DEFAULT_ATTESTATION_INTERVAL = timedelta(minutes=5)


class UsageSource(Protocol):
    """Anything that can report raw usage records for a credential."""

    def get_usage(self, credential_id: str, since: Optional[datetime] = None) -> List[UsageRecord]:
        ...


@dataclass(frozen=True)
class PendingUsage:
    """Usage observed at the gateway beyond the confirmed snapshot."""
    tokens: int
    requests: int
    cost: Decimal


@dataclass(frozen=True)
class HybridTotals:
    """Totals across pending and confirmed usage."""
    tokens: int
    requests: int
    estimated_cost: Decimal
    billable_cost: Decimal
    pending_bill: Decimal


@dataclass(frozen=True)
class HybridUsage:
    """Single billing view for a vault and its credential."""
    vault_id: int
    credential_id: str
    pending: PendingUsage
    confirmed: UsageConfirmedSnapshot
    total: HybridTotals
    pending_observed_at: datetime
    next_attestation_at: datetime
    stale: bool = False
    data_unavailable: bool = False


def next_attestation_time(now: datetime, interval: timedelta = DEFAULT_ATTESTATION_INTERVAL) -> datetime:
    """Next wall-clock multiple of ``interval`` after ``now``."""
    seconds = interval.total_seconds()
    if seconds <= 0:
        raise ValueError("interval must be positive")
    ts = now.timestamp()
    next_ts = (int(ts // seconds) + 1) * seconds
    return datetime.fromtimestamp(next_ts, tz=now.tzinfo or timezone.utc)


def format_age(observed_at: Optional[datetime], now: datetime) -> str:
    """Human-readable age of a data point."""
    if observed_at is None:
        return "Never"
    seconds = max(0, int((now - observed_at).total_seconds()))
    if seconds < 60:
        return f"{seconds}s ago"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    return f"{seconds // 3600}h ago"


def snapshot_from_event(event: Mapping[str, Any]) -> UsageConfirmedSnapshot:
    """Build a confirmed snapshot from an attestation feed event.

    Raises:
        ValueError: If required fields are missing or invalid
    """
    missing = [k for k in ("tokens", "requests", "cost") if k not in event]
    if missing:
        raise ValueError(f"Attestation event missing fields: {missing}")
    try:
        tokens = int(event["tokens"])
        requests = int(event["requests"])
        cost = Decimal(str(event["cost"]))
    except (TypeError, ValueError, InvalidOperation):
        raise ValueError("Attestation event has invalid numbers") from None

    attested_at = event.get("attestedAt")
    if isinstance(attested_at, str):
        attested_at = datetime.fromisoformat(attested_at.replace("Z", "+00:00"))
    round_id = event.get("attestationRound")

    return UsageConfirmedSnapshot(
        tokens=tokens,
        requests=requests,
        cost=cost,
        attested_at=attested_at,
        attestation_round=str(round_id) if round_id is not None else None,
    )


class UsageReconciler:
    """Keeps per-vault confirmed snapshots and per-credential pending samples.

    Caches are guarded per key, so different vaults never contend and
    record_attestation's monotonicity check is atomic with its write.
    """

    def __init__(
        self,
        gateway: UsageSource,
        repository=None,
        pricing_table: PricingTable = DEFAULT_PRICING_TABLE,
        markup_pct=DEFAULT_MARKUP_PCT,
        attestation_interval: timedelta = DEFAULT_ATTESTATION_INTERVAL,
        write_retries: int = 3,
        retry_delay: float = 0.1,
        now_fn: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize the reconciler.

        Args:
            gateway: Source of pending usage records
            repository: Optional VaultRepository that persists attestations
            pricing_table: Used to price records the gateway reports without cost
            markup_pct: Markup applied when pricing such records
            attestation_interval: Expected oracle cadence
            write_retries: Attempts to persist an accepted attestation
            retry_delay: Seconds between persistence attempts
            now_fn: Clock, defaults to timezone-aware UTC now
        """
        if write_retries < 1:
            raise ValueError("write_retries must be >= 1")
        self.gateway = gateway
        self.repository = repository
        self.pricing_table = pricing_table
        self.markup_pct = markup_pct
        self.attestation_interval = attestation_interval
        self.write_retries = write_retries
        self.retry_delay = retry_delay
        self.now_fn = now_fn or (lambda: datetime.now(timezone.utc))

        self._lock = threading.Lock()
        self._vault_locks: Dict[int, threading.Lock] = {}
        self._credential_locks: Dict[str, threading.Lock] = {}
        self._confirmed: Dict[int, UsageConfirmedSnapshot] = {}
        self._pending: Dict[str, UsagePendingSample] = {}
        self._since: Dict[str, datetime] = {}

    def track_credential(self, credential_id: str, since: Optional[datetime]) -> None:
        """Set the start of a credential's usage window (its issue time)."""
        with self._lock:
            if since is None:
                self._since.pop(credential_id, None)
            else:
                self._since[credential_id] = since

    def get_pending_sample(self, credential_id: str) -> UsagePendingSample:
        """Fetch a fresh absolute usage sample for a credential.

        If the gateway cannot be read, the last cached sample is returned
        marked stale; with no cache, a zero sample marked data_unavailable.
        """
        with self._lock:
            since = self._since.get(credential_id)
        try:
            records = self.gateway.get_usage(credential_id, since)
        except GatewayUnavailable as e:
            return self._degraded_sample(credential_id, e)
        return self.ingest_pending_records(credential_id, records)

    def ingest_pending_records(self, credential_id: str, records: Iterable[UsageRecord]) -> UsagePendingSample:
        """Replace the cached sample for a credential with one built from ``records``."""
        return self._store_sample(credential_id, self._summarize(records))

    def ingest_pending_summary(self, credential_id: str, summary: UsageSummary) -> UsagePendingSample:
        """Replace the cached sample for a credential with pushed absolute totals."""
        sample = UsagePendingSample(
            tokens=summary.tokens,
            requests=summary.requests,
            cost=summary.cost,
            observed_at=self.now_fn(),
        )
        return self._store_sample(credential_id, sample)

    def _store_sample(self, credential_id: str, sample: UsagePendingSample) -> UsagePendingSample:
        with self._credential_lock(credential_id):
            cached = self._pending.get(credential_id)
            if cached is not None and not cached.stale and cached.observed_at > sample.observed_at:
                return cached
            self._pending[credential_id] = sample
        return sample

    def get_confirmed(self, vault_id: int) -> UsageConfirmedSnapshot:
        """Latest confirmed snapshot for a vault (zero usage if none)."""
        with self._vault_lock(vault_id):
            return self._load_confirmed(vault_id)

    def record_attestation(self, vault_id: int, snapshot: UsageConfirmedSnapshot) -> bool:
        """Accept a new attested snapshot if it does not move usage backward.

        Returns:
            True if the snapshot became the confirmed snapshot

        Raises:
            AttestationWriteError: If persisting an accepted snapshot fails
        """
        if snapshot.attested_at is None:
            snapshot = replace(snapshot, attested_at=self.now_fn())

        with self._vault_lock(vault_id):
            current = self._load_confirmed(vault_id)

            if snapshot.is_behind(current):
                message = (
                    f"Ignoring attestation for vault {vault_id}: "
                    f"tokens={snapshot.tokens} requests={snapshot.requests} cost={snapshot.cost} "
                    f"is behind confirmed tokens={current.tokens} requests={current.requests} "
                    f"cost={current.cost}"
                )
                logger.warning(message)
                warnings.warn(message, AttestationOutOfOrder, stacklevel=2)
                return False

            if snapshot.same_counts(current) and snapshot.attestation_round == current.attestation_round:
                logger.debug("Duplicate attestation for vault %s ignored", vault_id)
                return False

            self._persist(vault_id, snapshot)
            self._confirmed[vault_id] = snapshot

        logger.info(
            "Vault %s confirmed usage now %s tokens / %s requests / %s (round %s)",
            vault_id, snapshot.tokens, snapshot.requests, snapshot.cost, snapshot.attestation_round
        )
        return True

    def ingest_attestation_event(self, event: Mapping[str, Any]) -> bool:
        """Record an attestation feed event ``{vaultId, tokens, requests, cost, attestationRound}``."""
        if "vaultId" not in event:
            raise ValueError("Attestation event missing vaultId")
        return self.record_attestation(int(event["vaultId"]), snapshot_from_event(event))

    def get_hybrid_view(self, vault_id: int, credential_id: str) -> HybridUsage:
        """Merge the pending sample and confirmed snapshot into one view.

        pending = max(0, sample - confirmed) per counter; the clamp absorbs a
        sample observed before the latest attestation.
        """
        sample = self.get_pending_sample(credential_id)
        confirmed = self.get_confirmed(vault_id)

        pending = PendingUsage(
            tokens=max(0, sample.tokens - confirmed.tokens),
            requests=max(0, sample.requests - confirmed.requests),
            cost=max(Decimal("0"), sample.cost - confirmed.cost),
        )
        total = HybridTotals(
            tokens=sample.tokens,
            requests=sample.requests,
            estimated_cost=sample.cost,
            billable_cost=confirmed.cost,
            pending_bill=pending.cost,
        )
        return HybridUsage(
            vault_id=vault_id,
            credential_id=credential_id,
            pending=pending,
            confirmed=confirmed,
            total=total,
            pending_observed_at=sample.observed_at,
            next_attestation_at=next_attestation_time(self.now_fn(), self.attestation_interval),
            stale=sample.stale,
            data_unavailable=sample.data_unavailable,
        )

    def evict(self, vault_id: Optional[int] = None, credential_id: Optional[str] = None) -> None:
        """Drop cached state for a vault and/or credential no longer observed.

        Each cache is cleared under its own key lock. The lock objects are
        kept, so a caller already waiting on one stays serialized with every
        later caller.
        """
        if vault_id is not None:
            with self._vault_lock(vault_id):
                self._confirmed.pop(vault_id, None)
        if credential_id is not None:
            with self._credential_lock(credential_id):
                self._pending.pop(credential_id, None)
            with self._lock:
                self._since.pop(credential_id, None)

    def _vault_lock(self, vault_id: int) -> threading.Lock:
        with self._lock:
            return self._vault_locks.setdefault(vault_id, threading.Lock())

    def _credential_lock(self, credential_id: str) -> threading.Lock:
        with self._lock:
            return self._credential_locks.setdefault(credential_id, threading.Lock())

    def _load_confirmed(self, vault_id: int) -> UsageConfirmedSnapshot:
        # Caller holds the vault lock
        snapshot = self._confirmed.get(vault_id)
        if snapshot is None and self.repository is not None:
            snapshot = self.repository.latest_attestation(vault_id)
            if snapshot is not None:
                self._confirmed[vault_id] = snapshot
        return snapshot or EMPTY_SNAPSHOT

    def _persist(self, vault_id: int, snapshot: UsageConfirmedSnapshot) -> None:
        if self.repository is None:
            return
        last_error = None
        for attempt in range(1, self.write_retries + 1):
            try:
                self.repository.insert_attestation(vault_id, snapshot)
                return
            except sqlite3.Error as e:
                last_error = e
                logger.warning(
                    "Attempt %d/%d to persist attestation for vault %s failed: %s",
                    attempt, self.write_retries, vault_id, e
                )
                if attempt < self.write_retries:
                    time.sleep(self.retry_delay)
        raise AttestationWriteError(
            f"Attestation for vault {vault_id} could not be saved after "
            f"{self.write_retries} attempts: {last_error}"
        )

    def _summarize(self, records: Iterable[UsageRecord]) -> UsagePendingSample:
        tokens = 0
        requests = 0
        cost = Decimal("0")
        for record in records:
            if record.cost is not None:
                cost += record.cost
            else:
                cost += calculate_cost(
                    record.tokens, tokens, record.model, self.markup_pct, self.pricing_table
                )
            tokens += record.tokens
            requests += record.requests
        return UsagePendingSample(
            tokens=tokens, requests=requests, cost=cost, observed_at=self.now_fn()
        )

    def _degraded_sample(self, credential_id: str, error: Exception) -> UsagePendingSample:
        with self._credential_lock(credential_id):
            cached = self._pending.get(credential_id)
        if cached is not None:
            logger.warning("Gateway unavailable for %s, serving cached sample: %s",
                           key_preview(credential_id), error)
            return replace(cached, stale=True)
        logger.warning("Gateway unavailable for %s and nothing cached: %s",
                       key_preview(credential_id), error)
        return UsagePendingSample(
            tokens=0, requests=0, cost=Decimal("0"),
            observed_at=self.now_fn(), data_unavailable=True,
        )
