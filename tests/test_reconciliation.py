"""
Unit tests for usage reconciliation.

Tests the pending/confirmed split, attestation ordering, degraded gateway
reads and attestation persistence.
"""

import os
import sqlite3
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import Mock

import pytest

from usage_vault.core.errors import AttestationOutOfOrder, AttestationWriteError, GatewayUnavailable
from usage_vault.core.reconciliation import (
    UsageReconciler,
    format_age,
    next_attestation_time,
    snapshot_from_event,
)
from usage_vault.sdk.gateway_client import UsageRecord
from usage_vault.storage.models import UsageConfirmedSnapshot
from usage_vault.storage.repository import VaultRepository, initialize_schema

NOW = datetime(2024, 3, 1, 12, 3, 10, tzinfo=timezone.utc)
CREDENTIAL = "sk-credential-abcdefghijkl"


def _records(tokens, requests, cost):
    return [UsageRecord(tokens=tokens, requests=requests, cost=Decimal(cost))]


def _snapshot(tokens, requests, cost, round_id=None):
    return UsageConfirmedSnapshot(
        tokens=tokens, requests=requests, cost=Decimal(cost),
        attested_at=NOW, attestation_round=round_id,
    )


class TestHybridView:
    """Test merging pending and confirmed usage."""

    def setup_method(self):
        self.gateway = Mock()
        self.reconciler = UsageReconciler(self.gateway, now_fn=lambda: NOW)

    def test_pending_is_sample_minus_confirmed(self):
        self.gateway.get_usage.return_value = _records(1500, 15, "3.00")
        self.reconciler.record_attestation(1, _snapshot(1000, 10, "2.00", "r1"))

        view = self.reconciler.get_hybrid_view(1, CREDENTIAL)

        assert view.pending.tokens == 500
        assert view.pending.requests == 5
        assert view.pending.cost == Decimal("1.00")
        assert view.confirmed.tokens == 1000
        assert view.total.tokens == 1500
        assert view.total.billable_cost == Decimal("2.00")
        assert view.total.pending_bill == Decimal("1.00")
        assert view.total.estimated_cost == Decimal("3.00")
        assert not view.stale
        assert not view.data_unavailable

    def test_pending_never_negative(self):
        self.gateway.get_usage.return_value = _records(900, 9, "1.80")
        self.reconciler.record_attestation(1, _snapshot(1000, 10, "2.00"))

        view = self.reconciler.get_hybrid_view(1, CREDENTIAL)

        assert view.pending.tokens == 0
        assert view.pending.requests == 0
        assert view.pending.cost == Decimal("0")

    def test_no_attestation_yet(self):
        self.gateway.get_usage.return_value = _records(200, 2, "0.40")
        view = self.reconciler.get_hybrid_view(1, CREDENTIAL)
        assert view.pending.tokens == 200
        assert view.confirmed.tokens == 0
        assert view.total.billable_cost == Decimal("0")

    def test_next_attestation_in_view(self):
        self.gateway.get_usage.return_value = []
        view = self.reconciler.get_hybrid_view(1, CREDENTIAL)
        assert view.next_attestation_at == datetime(2024, 3, 1, 12, 5, tzinfo=timezone.utc)

    def test_records_without_cost_are_priced(self):
        self.gateway.get_usage.return_value = [
            UsageRecord(tokens=1500, requests=1, cost=None),
            UsageRecord(tokens=500, requests=1, cost=Decimal("0.01")),
        ]
        sample = self.reconciler.get_pending_sample(CREDENTIAL)
        # 1500 tokens at the Starter price of 0.04 / 1K
        assert sample.cost == Decimal("0.07000000")
        assert sample.tokens == 2000
        assert sample.requests == 2

    def test_tracked_credential_window(self):
        issued = NOW - timedelta(days=3)
        self.gateway.get_usage.return_value = []
        self.reconciler.track_credential(CREDENTIAL, issued)
        self.reconciler.get_pending_sample(CREDENTIAL)
        self.gateway.get_usage.assert_called_with(CREDENTIAL, issued)


class TestDegradedGateway:
    """Test behavior when the gateway cannot be read."""

    def setup_method(self):
        self.gateway = Mock()
        self.reconciler = UsageReconciler(self.gateway, now_fn=lambda: NOW)

    def test_cached_sample_marked_stale(self):
        self.gateway.get_usage.return_value = _records(700, 7, "1.40")
        self.reconciler.get_pending_sample(CREDENTIAL)

        self.gateway.get_usage.side_effect = GatewayUnavailable("timeout")
        sample = self.reconciler.get_pending_sample(CREDENTIAL)

        assert sample.stale
        assert sample.tokens == 700
        assert not sample.data_unavailable

    def test_no_cache_is_data_unavailable(self):
        self.gateway.get_usage.side_effect = GatewayUnavailable("timeout")
        view = self.reconciler.get_hybrid_view(1, CREDENTIAL)
        assert view.data_unavailable
        assert view.pending.tokens == 0

    def test_stale_sample_still_clamped(self):
        self.gateway.get_usage.return_value = _records(700, 7, "1.40")
        self.reconciler.get_pending_sample(CREDENTIAL)
        self.reconciler.record_attestation(1, _snapshot(1000, 10, "2.00"))

        self.gateway.get_usage.side_effect = GatewayUnavailable("timeout")
        view = self.reconciler.get_hybrid_view(1, CREDENTIAL)

        assert view.stale
        assert view.pending.tokens == 0

    def test_evict_drops_cache(self):
        self.gateway.get_usage.return_value = _records(700, 7, "1.40")
        self.reconciler.get_pending_sample(CREDENTIAL)
        self.reconciler.evict(credential_id=CREDENTIAL)

        self.gateway.get_usage.side_effect = GatewayUnavailable("timeout")
        assert self.reconciler.get_pending_sample(CREDENTIAL).data_unavailable


class TestAttestations:
    """Test confirmed snapshot ordering."""

    def setup_method(self):
        self.reconciler = UsageReconciler(Mock(), now_fn=lambda: NOW)

    def test_monotonic_advance(self):
        assert self.reconciler.record_attestation(1, _snapshot(1000, 10, "2.00", "r1"))
        assert self.reconciler.record_attestation(1, _snapshot(1200, 12, "2.40", "r2"))
        assert self.reconciler.get_confirmed(1).tokens == 1200

    def test_out_of_order_rejected_with_warning(self):
        self.reconciler.record_attestation(1, _snapshot(1000, 10, "2.00", "r2"))
        with pytest.warns(AttestationOutOfOrder):
            accepted = self.reconciler.record_attestation(1, _snapshot(800, 8, "1.60", "r1"))
        assert not accepted
        assert self.reconciler.get_confirmed(1).tokens == 1000

    def test_any_counter_going_back_is_rejected(self):
        self.reconciler.record_attestation(1, _snapshot(1000, 10, "2.00"))
        with pytest.warns(AttestationOutOfOrder):
            assert not self.reconciler.record_attestation(1, _snapshot(1100, 11, "1.99"))
        assert self.reconciler.get_confirmed(1).cost == Decimal("2.00")

    def test_duplicate_round_ignored(self):
        assert self.reconciler.record_attestation(1, _snapshot(1000, 10, "2.00", "r1"))
        assert not self.reconciler.record_attestation(1, _snapshot(1000, 10, "2.00", "r1"))

    def test_vaults_are_independent(self):
        self.reconciler.record_attestation(1, _snapshot(1000, 10, "2.00"))
        assert self.reconciler.record_attestation(2, _snapshot(5, 1, "0.01"))
        assert self.reconciler.get_confirmed(1).tokens == 1000
        assert self.reconciler.get_confirmed(2).tokens == 5

    def test_missing_timestamp_is_filled(self):
        self.reconciler.record_attestation(1, UsageConfirmedSnapshot(10, 1, Decimal("0.1")))
        assert self.reconciler.get_confirmed(1).attested_at == NOW

    @pytest.mark.filterwarnings("ignore::usage_vault.core.errors.AttestationOutOfOrder")
    def test_concurrent_attestations_end_at_maximum(self):
        snapshots = [_snapshot(i * 100, i, str(i)) for i in range(1, 21)]
        threads = [
            threading.Thread(target=self.reconciler.record_attestation, args=(1, s))
            for s in reversed(snapshots)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(5)
        confirmed = self.reconciler.get_confirmed(1)
        assert confirmed.tokens == 2000
        assert confirmed.cost == Decimal("20")

    def test_attestation_event(self):
        accepted = self.reconciler.ingest_attestation_event({
            "vaultId": "3",
            "tokens": 400,
            "requests": 4,
            "cost": "0.8",
            "attestationRound": 17,
            "attestedAt": "2024-03-01T12:00:00Z",
        })
        assert accepted
        confirmed = self.reconciler.get_confirmed(3)
        assert confirmed.attestation_round == "17"
        assert confirmed.attested_at == datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def test_attestation_event_missing_fields(self):
        with pytest.raises(ValueError):
            self.reconciler.ingest_attestation_event({"vaultId": 1, "tokens": 5})
        with pytest.raises(ValueError):
            snapshot_from_event({"tokens": "x", "requests": 1, "cost": 1})


class TestAttestationPersistence:
    """Test that accepted attestations survive a restart."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_confirmed_snapshot_reloaded(self):
        first = UsageReconciler(Mock(), repository=VaultRepository(self.db_path), now_fn=lambda: NOW)
        first.record_attestation(1, _snapshot(1000, 10, "2.00", "r1"))

        restarted = UsageReconciler(Mock(), repository=VaultRepository(self.db_path), now_fn=lambda: NOW)
        confirmed = restarted.get_confirmed(1)
        assert confirmed.tokens == 1000
        assert confirmed.cost == Decimal("2.00")
        with pytest.warns(AttestationOutOfOrder):
            assert not restarted.record_attestation(1, _snapshot(900, 9, "1.80"))

    def test_write_failure_after_retries(self):
        repository = Mock()
        repository.latest_attestation.return_value = None
        repository.insert_attestation.side_effect = sqlite3.OperationalError("database is locked")
        reconciler = UsageReconciler(Mock(), repository=repository, retry_delay=0, now_fn=lambda: NOW)

        with pytest.raises(AttestationWriteError):
            reconciler.record_attestation(1, _snapshot(1000, 10, "2.00"))

        assert repository.insert_attestation.call_count == 3
        assert reconciler.get_confirmed(1).tokens == 0

    def test_write_retry_succeeds(self):
        repository = Mock()
        repository.latest_attestation.return_value = None
        repository.insert_attestation.side_effect = [sqlite3.OperationalError("locked"), None]
        reconciler = UsageReconciler(Mock(), repository=repository, retry_delay=0, now_fn=lambda: NOW)

        assert reconciler.record_attestation(1, _snapshot(1000, 10, "2.00"))
        assert repository.insert_attestation.call_count == 2
        assert reconciler.get_confirmed(1).tokens == 1000


class TestEviction:
    """Test dropping cached state while other callers are active."""

    def test_evict_waits_for_attestation_in_progress(self):
        entered = threading.Event()
        release = threading.Event()

        def slow_insert(vault_id, snapshot):
            entered.set()
            release.wait(5)

        repository = Mock()
        repository.latest_attestation.return_value = None
        repository.insert_attestation.side_effect = slow_insert
        reconciler = UsageReconciler(Mock(), repository=repository, now_fn=lambda: NOW)

        writer = threading.Thread(
            target=reconciler.record_attestation, args=(1, _snapshot(1000, 10, "2.00"))
        )
        writer.start()
        assert entered.wait(2)

        evicter = threading.Thread(target=reconciler.evict, kwargs={"vault_id": 1})
        evicter.start()
        evicter.join(0.1)
        assert evicter.is_alive()

        release.set()
        writer.join(2)
        evicter.join(2)

        # Eviction ran after the write, so the confirmed value is reloaded
        assert reconciler.get_confirmed(1).tokens == 0
        repository.latest_attestation.assert_called_with(1)

    def test_evicted_vault_restarts_from_stored_state(self):
        reconciler = UsageReconciler(Mock(), now_fn=lambda: NOW)
        reconciler.record_attestation(1, _snapshot(1000, 10, "2.00"))
        reconciler.evict(vault_id=1)
        assert reconciler.record_attestation(1, _snapshot(500, 5, "1.00"))
        with pytest.warns(AttestationOutOfOrder):
            assert not reconciler.record_attestation(1, _snapshot(400, 4, "0.80"))


class TestTimeHelpers:
    """Test freshness helpers."""

    def test_next_attestation_time(self):
        at_boundary = datetime(2024, 3, 1, 12, 5, tzinfo=timezone.utc)
        assert next_attestation_time(NOW) == at_boundary
        assert next_attestation_time(at_boundary) == datetime(2024, 3, 1, 12, 10, tzinfo=timezone.utc)

    def test_next_attestation_time_rejects_zero_interval(self):
        with pytest.raises(ValueError):
            next_attestation_time(NOW, timedelta(0))

    def test_format_age(self):
        assert format_age(None, NOW) == "Never"
        assert format_age(NOW - timedelta(seconds=30), NOW) == "30s ago"
        assert format_age(NOW - timedelta(minutes=5), NOW) == "5m ago"
        assert format_age(NOW - timedelta(hours=2), NOW) == "2h ago"
