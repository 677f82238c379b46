"""Unit tests for NodeSyncController start-up gate and shutdown."""

import threading
import time
from queue import Queue
from typing import Callable, Dict, List, Optional

import pytest

from node_sync.cli import (
    ControllerState,
    InitializationError,
    ItemExponentialFailureRateLimiter,
    NodeAdded,
    NodeAddress,
    NodeSnapshot,
    NodeSyncController,
    NodeUpdated,
    NodeWatchSource,
    RateLimitingQueue,
    SyncOutcome,
    wait_for_cache_sync,
)

# =============================================================================
# Mock Watch Source and Syncer
# =============================================================================


class FakeWatchSource(NodeWatchSource):
    """In-memory watch source publishing an initial listing."""

    def __init__(
        self, nodes: List[NodeSnapshot] | None = None, sync: bool = True, fail: bool = False
    ):
        self._index: Dict[str, NodeSnapshot] = {n.name: n for n in nodes or []}
        self._sync = sync
        self._fail = fail
        self._synced = threading.Event()
        self._failed = threading.Event()
        self._events: Optional[Queue] = None
        self.stopped = threading.Event()

    def run(self, events, stop_event) -> None:
        self._events = events
        if self._fail:
            self._failed.set()
            return
        for node in self._index.values():
            events.put(NodeAdded(node))
        if self._sync:
            self._synced.set()
        stop_event.wait()

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def has_failed(self) -> bool:
        return self._failed.is_set()

    def get(self, identity: str) -> Optional[NodeSnapshot]:
        return self._index.get(identity)

    def stop(self) -> None:
        self.stopped.set()

    def publish_update(self, new: NodeSnapshot) -> None:
        old = self._index[new.name]
        self._index[new.name] = new
        assert self._events is not None
        self._events.put(NodeUpdated(old, new))


class RecordingSyncer:
    def __init__(self):
        self.calls: List[str] = []
        self.addresses: List[tuple] = []
        self.lookup: Callable[[str], Optional[NodeSnapshot]] = lambda _: None

    def reconcile(self, identity: str) -> SyncOutcome:
        self.calls.append(identity)
        snapshot = self.lookup(identity)
        self.addresses.append(snapshot.addresses if snapshot else ())
        return SyncOutcome()


# =============================================================================
# Test Helpers
# =============================================================================


def make_node(name: str, revision: str = "1", internal_ip: str = "10.0.0.1") -> NodeSnapshot:
    return NodeSnapshot(
        name=name,
        resource_version=revision,
        addresses=(NodeAddress("InternalIP", internal_ip),),
    )


def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def start_controller(controller: NodeSyncController, stop_event: threading.Event):
    errors: List[BaseException] = []

    def target() -> None:
        try:
            controller.run(stop_event)
        except BaseException as e:  # surfaced to the test
            errors.append(e)

    thread = threading.Thread(target=target, daemon=True)
    thread.start()
    return thread, errors


def build(nodes=None, sync=True, fail=False, **kwargs):
    source = FakeWatchSource(nodes, sync=sync, fail=fail)
    syncer = RecordingSyncer()
    syncer.lookup = source.get
    controller = NodeSyncController(watch_source=source, syncer=syncer, **kwargs)  # type: ignore[arg-type]
    return controller, source, syncer


# =============================================================================
# Lifecycle
# =============================================================================


def test_controller_reconciles_initial_listing_and_stops() -> None:
    controller, source, syncer = build([make_node("n1"), make_node("n2")])
    stop_event = threading.Event()

    assert controller.state == ControllerState.INITIALIZING
    thread, errors = start_controller(controller, stop_event)

    assert wait_until(lambda: sorted(syncer.calls) == ["n1", "n2"])
    assert wait_until(lambda: controller.state == ControllerState.RUNNING)

    stop_event.set()
    thread.join(timeout=5.0)

    assert not thread.is_alive()
    assert errors == []
    assert controller.state == ControllerState.STOPPED
    assert controller.queue.shutting_down
    assert source.stopped.is_set()


def test_controller_reacts_to_address_change() -> None:
    controller, source, syncer = build([make_node("n1", "1", "10.0.0.1")])
    stop_event = threading.Event()
    thread, _ = start_controller(controller, stop_event)
    assert wait_until(lambda: syncer.calls == ["n1"])

    source.publish_update(make_node("n1", "2", "10.0.0.2"))

    assert wait_until(lambda: len(syncer.calls) == 2)
    assert syncer.addresses[-1] == (NodeAddress("InternalIP", "10.0.0.2"),)

    stop_event.set()
    thread.join(timeout=5.0)


def test_metadata_only_update_is_not_reconciled() -> None:
    controller, source, syncer = build([make_node("n1", "1", "10.0.0.1")])
    stop_event = threading.Event()
    thread, _ = start_controller(controller, stop_event)
    assert wait_until(lambda: syncer.calls == ["n1"])

    source.publish_update(make_node("n1", "2", "10.0.0.1"))
    time.sleep(0.3)

    assert syncer.calls == ["n1"]
    stop_event.set()
    thread.join(timeout=5.0)


def test_controller_runs_configured_number_of_workers() -> None:
    controller, _, syncer = build([make_node(f"n{i}") for i in range(4)], workers=3)
    stop_event = threading.Event()
    thread, _ = start_controller(controller, stop_event)

    assert wait_until(lambda: len(syncer.calls) == 4)
    assert len(controller._workers) == 3

    stop_event.set()
    thread.join(timeout=5.0)
    assert all(not w.is_alive() for w in controller._workers)


def test_cache_sync_timeout_aborts_start_up() -> None:
    controller, source, syncer = build([make_node("n1")], sync=False, cache_sync_timeout=0.2)

    with pytest.raises(InitializationError):
        controller.run(threading.Event())

    assert controller.state == ControllerState.STOPPED
    assert controller._workers == []
    assert syncer.calls == []
    assert controller.queue.shutting_down
    assert source.stopped.is_set()


def test_stop_before_cache_sync_aborts_start_up() -> None:
    controller, _, syncer = build([make_node("n1")], sync=False, cache_sync_timeout=None)
    stop_event = threading.Event()
    thread, errors = start_controller(controller, stop_event)
    time.sleep(0.2)

    stop_event.set()
    thread.join(timeout=5.0)

    assert len(errors) == 1
    assert isinstance(errors[0], InitializationError)
    assert syncer.calls == []


def test_controller_rejects_zero_workers() -> None:
    with pytest.raises(ValueError):
        build(workers=0)


def test_controller_keeps_injected_queue() -> None:
    """An empty queue passed in is used as is, with its own rate limiter."""
    queue = RateLimitingQueue(rate_limiter=ItemExponentialFailureRateLimiter(0.001, 0.01))
    assert len(queue) == 0

    controller, _, _ = build(queue=queue)

    assert controller.queue is queue


def test_failed_watch_aborts_start_up_without_waiting() -> None:
    """A watch source that gives up ends start-up even with no timeout."""
    controller, source, syncer = build([make_node("n1")], fail=True, cache_sync_timeout=None)
    stop_event = threading.Event()
    thread, errors = start_controller(controller, stop_event)

    thread.join(timeout=2.0)

    assert not thread.is_alive()
    assert len(errors) == 1
    assert isinstance(errors[0], InitializationError)
    assert "failed" in str(errors[0])
    assert controller.state == ControllerState.STOPPED
    assert syncer.calls == []
    assert source.stopped.is_set()
    stop_event.set()


# =============================================================================
# Cache Sync Gate
# =============================================================================


def test_wait_for_cache_sync_returns_true_once_synced() -> None:
    calls = iter([False, False, True])

    assert wait_for_cache_sync(threading.Event(), lambda: next(calls), poll_interval=0.01)


def test_wait_for_cache_sync_times_out() -> None:
    start = time.monotonic()

    assert not wait_for_cache_sync(threading.Event(), lambda: False, timeout=0.1, poll_interval=0.01)
    assert time.monotonic() - start >= 0.1


def test_wait_for_cache_sync_stops_on_stop_event() -> None:
    stop_event = threading.Event()
    stop_event.set()

    assert not wait_for_cache_sync(stop_event, lambda: False)


def test_wait_for_cache_sync_stops_on_failure() -> None:
    start = time.monotonic()

    assert not wait_for_cache_sync(
        threading.Event(), lambda: False, has_failed=lambda: True, timeout=None
    )
    assert time.monotonic() - start < 1.0
