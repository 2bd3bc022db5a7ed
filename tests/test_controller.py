import threading

import pytest

from uninstall_operator import events
from uninstall_operator.controller import QUEUE_KEY, UninstallController
from uninstall_operator.errors import PreconditionError, SyncError, TransientStoreError
from uninstall_operator.grace import GracePeriodPolicy
from uninstall_operator.models import Outcome, PassResult, ResourceKind
from uninstall_operator.services.change_feed import ChangeEvent
from uninstall_operator.workqueue import ItemExponentialFailureRateLimiter, RateLimitingQueue

from conftest import NAMESPACE, FakeChangeFeed


class StubOrchestrator:
    """Replays a fixed list of pass results (or exceptions), then keeps waiting."""

    def __init__(self, results=None):
        self.results = list(results or [])
        self.force = False
        self.grace = GracePeriodPolicy(90)
        self.preconditions_met = True
        self.calls = 0

    def uninstall(self):
        self.calls += 1
        result = self.results.pop(0) if self.results else PassResult(outcome=Outcome.WAIT, phase="manager")
        if isinstance(result, Exception):
            raise result
        return result


def make_controller(orchestrator, store, feed=None, **kwargs):
    queue = RateLimitingQueue(ItemExponentialFailureRateLimiter(0.01, 0.05), name="test")
    return UninstallController(
        orchestrator, store, feed or FakeChangeFeed(), namespace=NAMESPACE, queue=queue, **kwargs
    )


@pytest.fixture(autouse=True)
def _fast_poll(monkeypatch):
    monkeypatch.setattr("uninstall_operator.controller.POLL_INTERVAL", 0.01)


@pytest.fixture
def stop():
    event = threading.Event()
    # never let a broken run hang the suite
    timer = threading.Timer(10, event.set)
    timer.start()
    yield event
    timer.cancel()


def test_watches_only_kinds_with_crds(store):
    store.crds = {ResourceKind.VOLUME, ResourceKind.ENGINE}
    feed = FakeChangeFeed()
    controller = make_controller(StubOrchestrator(), store, feed)

    controller.register_watches()

    assert feed.sources() == ["CSIDriver", "DaemonSet", "Deployment", "Volume", "Engine"]


def test_workload_events_outside_namespace_are_ignored(store):
    feed = FakeChangeFeed()
    controller = make_controller(StubOrchestrator(), store, feed)
    controller.register_watches()

    feed.emit(ChangeEvent("MODIFIED", "DaemonSet", "kube-proxy", "kube-system"))
    assert len(controller.queue) == 0

    feed.emit(ChangeEvent("MODIFIED", "DaemonSet", "longhorn-manager", NAMESPACE))
    feed.emit(ChangeEvent("DELETED", "Volume", "pvc-1", NAMESPACE))
    feed.emit(ChangeEvent("DELETED", "CSIDriver", "driver.longhorn.io"))
    assert len(controller.queue) == 1


def test_wait_result_forgets_backoff(store):
    controller = make_controller(StubOrchestrator(), store)
    controller.queue.rate_limiter.when(QUEUE_KEY)
    controller.enqueue()

    assert controller.process_next_work_item()

    assert controller.queue.num_requeues(QUEUE_KEY) == 0
    assert controller.passes == 1
    assert controller.last_result.outcome == Outcome.WAIT
    assert not controller.shutdown.is_set()
    assert len(controller.queue) == 0
    assert events.recent()[-1].event == "PASS_WAIT"


def test_store_error_is_requeued_with_backoff(store):
    orchestrator = StubOrchestrator([TransientStoreError("Volume", "list")])
    controller = make_controller(orchestrator, store)
    controller.enqueue()

    controller.process_next_work_item()

    assert controller.failures == 1
    assert "failed to list Volume" in controller.last_error
    assert controller.queue.num_requeues(QUEUE_KEY) == 1
    assert controller.queue.get(timeout=2) == (QUEUE_KEY, False)
    assert not controller.shutdown.is_set()


def test_unexpected_error_is_requeued(store):
    controller = make_controller(StubOrchestrator([KeyError("boom")]), store)
    controller.enqueue()

    controller.process_next_work_item()

    assert controller.fatal_error is None
    assert controller.queue.num_requeues(QUEUE_KEY) == 1


def test_precondition_error_is_fatal(store):
    controller = make_controller(StubOrchestrator([PreconditionError("not confirmed")]), store)
    controller.enqueue()

    controller.process_next_work_item()

    assert controller.shutdown.is_set()
    assert isinstance(controller.fatal_error, PreconditionError)
    assert controller.queue.num_requeues(QUEUE_KEY) == 0


def test_done_signals_shutdown(store):
    controller = make_controller(StubOrchestrator([PassResult(outcome=Outcome.DONE, phase="done")]), store)
    controller.enqueue()

    controller.process_next_work_item()

    assert controller.shutdown.is_set()
    status = controller.status()
    assert status.done
    assert status.lastOutcome == "Done"
    assert status.events[-1].event == "UNINSTALL_COMPLETE"


def test_run_drives_teardown_to_completion(store, orchestrator, stop):
    store.add(ResourceKind.VOLUME, "pvc-1", finalizers=[])
    store.install_cluster_config()
    feed = FakeChangeFeed()
    controller = make_controller(orchestrator, store, feed, resync_interval=0.02)

    controller.run(stop)

    assert controller.shutdown.is_set()
    assert controller.last_result.outcome == Outcome.DONE
    # volume, manager, everything else; a resync racing the shutdown may add one more
    assert controller.passes >= 3
    assert store.resources[ResourceKind.VOLUME] == {}
    assert store.secrets == set()
    assert all(s.cancelled for s in feed.subscriptions)
    assert controller.queue.shutting_down


def test_run_raises_on_precondition_failure(store, orchestrator, stop):
    store.settings["deleting-confirmation-flag"] = "false"
    feed = FakeChangeFeed()
    controller = make_controller(orchestrator, store, feed)

    with pytest.raises(PreconditionError):
        controller.run(stop)

    assert store.calls == []
    assert all(s.cancelled for s in feed.subscriptions)


def test_run_fails_when_feed_never_syncs(store, stop):
    orchestrator = StubOrchestrator()
    controller = make_controller(orchestrator, store, FakeChangeFeed(synced=False), sync_timeout=0.1)

    with pytest.raises(SyncError, match="failed to sync"):
        controller.run(stop)

    assert orchestrator.calls == 0


def test_stop_ends_run_without_completion(store, stop):
    orchestrator = StubOrchestrator()
    controller = make_controller(orchestrator, store, resync_interval=0.01)
    threading.Timer(0.2, stop.set).start()

    controller.run(stop)

    assert not controller.shutdown.is_set()
    assert controller.fatal_error is None
    assert orchestrator.calls >= 1
