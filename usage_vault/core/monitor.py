"""
Pending-usage monitor.

One background task per credential, started and stopped by the caller.
Delivery is either pulled (poll the gateway on an interval) or pushed (read
payloads from an event source); both feed the reconciler's pending cache.
"""

import logging
import threading
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from .cipher import key_preview
from .errors import GatewayUnavailable
from .reconciliation import UsageReconciler
from ..sdk.gateway_client import parse_usage_payload, parse_usage_summary
from ..storage.models import UsagePendingSample

logger = logging.getLogger(__name__)

UpdateCallback = Callable[[UsagePendingSample], None]
EventSource = Callable[[str], Iterable[Any]]


class DeliveryMode(Enum):
    PULL = "pull"
    PUSH = "push"


class UsageMonitor:
    """Keeps a credential's pending sample fresh until stopped."""

    def __init__(
        self,
        reconciler: UsageReconciler,
        credential_id: str,
        mode: DeliveryMode = DeliveryMode.PULL,
        interval: float = 5.0,
        event_source: Optional[EventSource] = None,
        on_update: Optional[UpdateCallback] = None,
    ):
        """Initialize the monitor.

        Args:
            reconciler: Sink for pending samples
            credential_id: Credential to follow
            mode: PULL polls every ``interval`` seconds; PUSH consumes ``event_source``
            interval: Poll interval in seconds (PULL only)
            event_source: Callable returning an iterable of raw gateway payloads (PUSH only)
            on_update: Called with every new sample
        """
        if not credential_id:
            raise ValueError("credential_id is required and cannot be empty")
        if mode == DeliveryMode.PULL and interval <= 0:
            raise ValueError("interval must be > 0")
        if mode == DeliveryMode.PUSH and event_source is None:
            raise ValueError("event_source is required for push delivery")

        self.reconciler = reconciler
        self.credential_id = credential_id
        self.mode = mode
        self.interval = interval
        self.event_source = event_source
        self.on_update = on_update
        self.last_error: Optional[Exception] = None

        # One stop event per run; a detached worker keeps its own, already set
        self._stop: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the background task. Starting a running monitor does nothing."""
        with self._lock:
            if self.running:
                return
            self._stop = threading.Event()
            target = self._run_pull if self.mode == DeliveryMode.PULL else self._run_push
            self._thread = threading.Thread(
                target=target,
                args=(self._stop,),
                name=f"usage-monitor-{self.mode.value}",
                daemon=True,
            )
            self._thread.start()
        logger.info("Started %s monitoring for %s", self.mode.value, key_preview(self.credential_id))

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Stop the task. Stopping a stopped monitor is a no-op.

        A worker blocked inside the event source is detached if it does not
        exit within ``timeout``; it delivers nothing further and ends when
        the source next yields.
        """
        with self._lock:
            thread = self._thread
            if thread is None:
                return
            self._stop.set()
            self._thread = None
        if thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("Monitor for %s detached a blocked worker",
                               key_preview(self.credential_id))
        logger.info("Stopped monitoring for %s", key_preview(self.credential_id))

    def __enter__(self) -> "UsageMonitor":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    def _run_pull(self, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                sample = self.reconciler.get_pending_sample(self.credential_id)
                if stop.is_set():
                    break
                self._deliver(sample)
            except Exception as e:
                self.last_error = e
                logger.exception("Polling error for %s", key_preview(self.credential_id))
            stop.wait(self.interval)

    def _run_push(self, stop: threading.Event) -> None:
        try:
            for payload in self.event_source(self.credential_id):
                if stop.is_set():
                    break
                try:
                    sample = self._ingest_event(payload)
                except GatewayUnavailable as e:
                    self.last_error = e
                    logger.warning("Dropping unrecognized usage event: %s", e)
                    continue
                self._deliver(sample)
        except Exception as e:
            self.last_error = e
            logger.exception("Usage event source failed for %s", key_preview(self.credential_id))

    def _ingest_event(self, payload: Any) -> UsagePendingSample:
        # Pushed events are either absolute totals or a batch of records
        summary = parse_usage_summary(payload)
        if summary is not None:
            return self.reconciler.ingest_pending_summary(self.credential_id, summary)
        records = parse_usage_payload(payload)
        return self.reconciler.ingest_pending_records(self.credential_id, records)

    def _deliver(self, sample: UsagePendingSample) -> None:
        logger.debug("Pending sample for %s: %s tokens", key_preview(self.credential_id), sample.tokens)
        if self.on_update is None:
            return
        try:
            self.on_update(sample)
        except Exception:
            logger.exception("on_update callback failed")
