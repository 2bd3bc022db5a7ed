"""
Uninstall controller — turns change feed events into teardown passes.

  watch events ──> enqueue("uninstall") ──> single worker ──> orchestrator.uninstall()
                                                  │
                     Done  ─────────> shutdown signal, run() returns
                     Wait  ─────────> forget, next event (or resync) triggers the next pass
                     Error ─────────> requeue with backoff, forever
                     PreconditionError ─> shutdown signal, run() raises
"""

import logging
import threading
import time
from typing import Optional

from uninstall_operator import events, metrics
from uninstall_operator.errors import PreconditionError, SyncError, UninstallError
from uninstall_operator.models import Outcome, PassResult, ResourceKind, StatusResponse
from uninstall_operator.services.change_feed import (
    CSI_DRIVER, DAEMON_SET, DEPLOYMENT, ChangeEvent, WatchSource,
)
from uninstall_operator.workqueue import RateLimitingQueue, default_rate_limiter

logger = logging.getLogger("uninstall-controller")

QUEUE_KEY = "uninstall"
POLL_INTERVAL = 0.5


class UninstallController:
    def __init__(
        self,
        orchestrator,
        store,
        feed,
        namespace: str,
        queue: Optional[RateLimitingQueue] = None,
        sync_timeout: float = 300.0,
        resync_interval: float = 30.0,
    ):
        self.orchestrator = orchestrator
        self.store = store
        self.feed = feed
        self.namespace = namespace
        self.queue = queue or RateLimitingQueue(default_rate_limiter(), name="longhorn-uninstall")
        self.sync_timeout = sync_timeout
        self.resync_interval = resync_interval

        self.shutdown = threading.Event()
        self.subscriptions = []
        self.fatal_error: Optional[BaseException] = None
        self.passes = 0
        self.failures = 0
        self.last_result: Optional[PassResult] = None
        self.last_error: Optional[str] = None

    # ------------------------------------------------------------------
    # Change feed wiring
    # ------------------------------------------------------------------

    def register_watches(self):
        """Watch every managed kind whose CRD exists, plus the driver and system workloads."""
        self.subscriptions.append(self.feed.subscribe(WatchSource(CSI_DRIVER), self._on_change))
        for resource in (DAEMON_SET, DEPLOYMENT):
            self.subscriptions.append(
                self.feed.subscribe(WatchSource(resource), self._on_namespaced_change)
            )
        for kind in ResourceKind:
            if not self.store.crd_exists(kind):
                logger.info(f"CRD for {kind.value} not found, not watching it")
                continue
            self.subscriptions.append(self.feed.subscribe(WatchSource(kind.value), self._on_change))

    def _on_change(self, event: ChangeEvent):
        self.enqueue()

    def _on_namespaced_change(self, event: ChangeEvent):
        if event.namespace == self.namespace:
            self.enqueue()

    def enqueue(self):
        self.queue.add(QUEUE_KEY)

    def wait_for_sync(self, stop: threading.Event):
        deadline = time.monotonic() + self.sync_timeout
        while not all(s.has_synced() for s in self.subscriptions):
            if stop.is_set():
                raise SyncError("stopped before the change feed synced")
            if time.monotonic() >= deadline:
                pending = [s.source.resource for s in self.subscriptions if not s.has_synced()]
                raise SyncError(f"failed to sync informers: {', '.join(pending)}")
            stop.wait(0.1)
        logger.info(f"Change feed synced ({len(self.subscriptions)} sources)")

    def _cancel_subscriptions(self):
        for subscription in self.subscriptions:
            subscription.cancel()

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    def run(self, stop: Optional[threading.Event] = None):
        """
        Block until the uninstall completes (returns) or fails fatally (raises).
        Setting `stop` ends the run after the pass in progress, if any.
        """
        stop = stop or threading.Event()
        worker = None
        start = time.monotonic()
        try:
            self.register_watches()
            self.wait_for_sync(stop)

            logger.info("Uninstalling...")
            events.publish("UNINSTALL_START", f"Uninstalling from namespace {self.namespace}")
            self.enqueue()

            worker = threading.Thread(target=self.worker, name="uninstall-worker", daemon=True)
            worker.start()

            next_resync = time.monotonic() + self.resync_interval
            while not (self.shutdown.is_set() or stop.is_set()):
                self.shutdown.wait(POLL_INTERVAL)
                if self.resync_interval > 0 and time.monotonic() >= next_resync:
                    self.enqueue()
                    next_resync = time.monotonic() + self.resync_interval
        finally:
            self.queue.shut_down()
            if worker is not None:
                worker.join()
            self._cancel_subscriptions()

        if self.fatal_error is not None:
            raise self.fatal_error
        if self.shutdown.is_set():
            logger.info(f"Uninstallation completed (runtime={time.monotonic() - start:.1f}s)")
        else:
            logger.info("Uninstall stopped before completion")

    def worker(self):
        while self.process_next_work_item():
            pass

    def process_next_work_item(self) -> bool:
        key, quit = self.queue.get()
        if quit:
            return False
        try:
            try:
                result = self.orchestrator.uninstall()
            except Exception as e:
                self.handle_err(e, key)
            else:
                self.handle_result(result, key)
        finally:
            self.queue.done(key)
        return True

    def handle_result(self, result: PassResult, key):
        self.queue.forget(key)
        self.passes += 1
        self.last_result = result
        self.last_error = None
        metrics.record_pass(result.outcome.value)

        if result.outcome == Outcome.DONE:
            events.publish("UNINSTALL_COMPLETE", result.message, result.phase)
            self.shutdown.set()
            return
        logger.info(f"Pass {self.passes}: {result.outcome.value} ({result.phase}: {result.message})")
        events.publish(f"PASS_{result.outcome.name}", result.message, result.phase)

    def handle_err(self, err: Exception, key):
        self.passes += 1
        self.failures += 1
        self.last_error = str(err)
        metrics.record_pass("Error")

        if isinstance(err, PreconditionError):
            logger.error(f"Precondition failed: {err}")
            events.publish("PRECONDITION_FAILED", str(err))
            self.fatal_error = err
            self.shutdown.set()
            return

        if isinstance(err, UninstallError):
            logger.warning(f"Failed to uninstall: {err}")
        else:
            logger.error(f"Unexpected error during uninstall: {err}", exc_info=True)
        events.publish("PASS_FAILED", str(err)[:200])
        self.queue.add_rate_limited(key)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> StatusResponse:
        last = self.last_result
        return StatusResponse(
            namespace=self.namespace,
            force=self.orchestrator.force,
            gracePeriodSeconds=self.orchestrator.grace.seconds,
            preconditionsMet=self.orchestrator.preconditions_met,
            passes=self.passes,
            failures=self.failures,
            lastOutcome=last.outcome.value if last else None,
            lastPhase=last.phase if last else None,
            lastError=self.last_error,
            done=bool(last and last.outcome == Outcome.DONE),
            events=events.recent(),
        )
