"""
Unit tests for the pending-usage monitor.
"""

import threading
from decimal import Decimal
from unittest.mock import Mock

import pytest

from usage_vault.core.errors import GatewayUnavailable
from usage_vault.core.monitor import DeliveryMode, UsageMonitor
from usage_vault.core.reconciliation import UsageReconciler
from usage_vault.sdk.gateway_client import UsageRecord

CREDENTIAL = "sk-credential-abcdefghijkl"


class TestPullMonitor:
    """Test polling delivery."""

    def test_polls_and_notifies(self):
        gateway = Mock()
        gateway.get_usage.return_value = [UsageRecord(tokens=100, requests=1, cost=Decimal("0.1"))]
        reconciler = UsageReconciler(gateway)
        updated = threading.Event()
        samples = []

        def on_update(sample):
            samples.append(sample)
            updated.set()

        monitor = UsageMonitor(reconciler, CREDENTIAL, interval=0.01, on_update=on_update)
        monitor.start()
        try:
            assert updated.wait(2)
        finally:
            monitor.stop()

        assert samples[0].tokens == 100
        assert not monitor.running

    def test_gateway_failure_keeps_polling(self):
        gateway = Mock()
        gateway.get_usage.side_effect = GatewayUnavailable("down")
        reconciler = UsageReconciler(gateway)
        seen = threading.Event()

        monitor = UsageMonitor(reconciler, CREDENTIAL, interval=0.01,
                               on_update=lambda sample: sample.data_unavailable and seen.set())
        with monitor:
            assert seen.wait(2)
            assert monitor.running

    def test_failing_callback_does_not_stop_polling(self):
        gateway = Mock()
        gateway.get_usage.return_value = []
        reconciler = UsageReconciler(gateway)
        calls = []
        done = threading.Event()

        def on_update(sample):
            calls.append(sample)
            if len(calls) >= 2:
                done.set()
            raise RuntimeError("render failed")

        with UsageMonitor(reconciler, CREDENTIAL, interval=0.01, on_update=on_update):
            assert done.wait(2)

    def test_stop_is_idempotent(self):
        gateway = Mock()
        gateway.get_usage.return_value = []
        monitor = UsageMonitor(UsageReconciler(gateway), CREDENTIAL, interval=0.01)
        monitor.stop()
        monitor.start()
        monitor.start()
        monitor.stop()
        monitor.stop()
        assert not monitor.running

    def test_invalid_arguments(self):
        reconciler = UsageReconciler(Mock())
        with pytest.raises(ValueError):
            UsageMonitor(reconciler, "")
        with pytest.raises(ValueError):
            UsageMonitor(reconciler, CREDENTIAL, interval=0)
        with pytest.raises(ValueError):
            UsageMonitor(reconciler, CREDENTIAL, mode=DeliveryMode.PUSH)


class TestPushMonitor:
    """Test event-source delivery."""

    def test_events_feed_reconciler(self):
        reconciler = UsageReconciler(Mock())
        events = [
            {"data": [{"total_tokens": 50, "spend": 0.05}]},
            {"unexpected": True},
            [{"total_tokens": 80, "spend": 0.08}, {"total_tokens": 20, "spend": 0.02}],
        ]
        samples = []
        finished = threading.Event()

        def on_update(sample):
            samples.append(sample)
            if len(samples) == 2:
                finished.set()

        monitor = UsageMonitor(
            reconciler, CREDENTIAL, mode=DeliveryMode.PUSH,
            event_source=lambda credential_id: iter(events), on_update=on_update,
        )
        with monitor:
            assert finished.wait(2)

        assert [s.tokens for s in samples] == [50, 100]
        assert isinstance(monitor.last_error, GatewayUnavailable)

    def test_summary_events_replace_pending_sample(self):
        reconciler = UsageReconciler(Mock())
        events = [
            {"tokens": 1500, "requests": 3, "cost": 0.03},
            {"tokens": 1800, "requests": 4, "cost": "0.036"},
        ]
        samples = []
        finished = threading.Event()

        def on_update(sample):
            samples.append(sample)
            if len(samples) == 2:
                finished.set()

        monitor = UsageMonitor(
            reconciler, CREDENTIAL, mode=DeliveryMode.PUSH,
            event_source=lambda credential_id: iter(events), on_update=on_update,
        )
        with monitor:
            assert finished.wait(2)

        assert samples[0].tokens == 1500
        assert samples[0].requests == 3
        assert samples[0].cost == Decimal("0.03")
        assert samples[1].tokens == 1800
        assert monitor.last_error is None

    def test_source_failure_is_recorded(self):
        def broken_source(credential_id):
            yield {"data": []}
            raise ConnectionError("socket closed")

        reconciler = UsageReconciler(Mock())
        monitor = UsageMonitor(reconciler, CREDENTIAL, mode=DeliveryMode.PUSH,
                               event_source=broken_source)
        monitor.start()
        monitor._thread.join(2)
        assert isinstance(monitor.last_error, ConnectionError)
        monitor.stop()


class TestMonitorRestart:
    """Test stopping a blocked worker and starting again."""

    def test_restart_after_blocked_source(self):
        reconciler = UsageReconciler(Mock())
        entered = threading.Event()
        release = threading.Event()
        fresh = threading.Event()
        calls = []
        samples = []

        def source(credential_id):
            calls.append(credential_id)
            if len(calls) == 1:
                entered.set()
                release.wait(5)
                yield {"tokens": 999, "requests": 9, "cost": 9}
            else:
                yield {"tokens": 10, "requests": 1, "cost": "0.01"}
                release.wait(5)

        def on_update(sample):
            samples.append(sample)
            if sample.tokens == 10:
                fresh.set()

        monitor = UsageMonitor(reconciler, CREDENTIAL, mode=DeliveryMode.PUSH,
                               event_source=source, on_update=on_update)
        monitor.start()
        assert entered.wait(2)
        detached = monitor._thread

        monitor.stop(timeout=0.1)
        assert detached.is_alive()
        monitor.start()
        assert fresh.wait(2)

        release.set()
        detached.join(2)
        monitor.stop()

        assert not detached.is_alive()
        assert not monitor.running
        assert [s.tokens for s in samples] == [10]
        reconciler.gateway.get_usage.side_effect = GatewayUnavailable("offline")
        assert reconciler.get_pending_sample(CREDENTIAL).tokens == 10
