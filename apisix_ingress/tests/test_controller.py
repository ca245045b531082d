from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from typing import Any
from unittest.mock import MagicMock

import pytest

from apisix_ingress.src.apisix import Cluster
from apisix_ingress.src.controller import (
    ResourceController,
    crd_class_matches,
    only_status_changed,
    strip_volatile,
)
from apisix_ingress.src.events import Event, EventAdd, EventDelete, EventSync, EventUpdate
from apisix_ingress.src.indexes import WatchingNamespaces
from apisix_ingress.src.informer import Obj, ObjectNotFound, WatchCache
from conftest import obj


class RecordingController(ResourceController):
    kind = "ApisixRoute"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.reconciled: list[tuple[Event, Obj]] = []
        self.error: Exception | None = None
        self.on_reconcile: Callable[[], None] | None = None

    def reconcile(self, event: Event, obj: Obj) -> None:
        self.reconciled.append((event, obj))
        if self.on_reconcile is not None:
            self.on_reconcile()
        if self.error is not None:
            raise self.error


@pytest.fixture
def routes(make_cache: Callable[..., WatchCache]) -> WatchCache:
    return make_cache("ApisixRoute", obj("r1"), obj("r2", namespace="other"))


@pytest.fixture
def controller(routes: WatchCache, cluster: Cluster) -> Iterator[RecordingController]:
    ctl = RecordingController(routes, cluster, WatchingNamespaces(["default"]), MagicMock())
    yield ctl
    ctl.queue.shutdown()


def drain(ctl: ResourceController) -> list[Event]:
    events = []
    while len(ctl.queue):
        event, _ = ctl.queue.get(timeout=0)
        ctl.queue.done(event)
        events.append(event)
    return events


def test_strip_volatile_and_status_only_changes() -> None:
    old = obj("r", rv="1", status={"conditions": []}, spec={"a": 1})
    old["metadata"]["managedFields"] = [{"manager": "kubectl"}]
    new = obj("r", rv="2", status={"conditions": [{"type": "x"}]}, spec={"a": 1})

    assert "status" not in strip_volatile(old)
    assert "resourceVersion" not in strip_volatile(old)["metadata"]
    assert "status" in old
    assert only_status_changed(old, new)
    assert not only_status_changed(old, obj("r", rv="3", spec={"a": 2}))


@pytest.mark.parametrize(
    ("class_name", "controller_class", "expected"),
    [("", "apisix", True), ("apisix", "apisix", True), ("other", "apisix", False), ("other", "*", True)],
)
def test_crd_class_matches(class_name: str, controller_class: str, expected: bool) -> None:
    assert crd_class_matches(obj("r", spec={"ingressClassName": class_name}), controller_class) is expected


class TestEventHandlers:
    def test_add_filters_unwatched_namespaces(self, controller: RecordingController) -> None:
        controller.on_add(obj("r1"))
        controller.on_add(obj("r2", namespace="other"))

        assert drain(controller) == [EventAdd("default/r1")]

    def test_update_drops_stale_and_status_only_changes(self, controller: RecordingController) -> None:
        old = obj("r1", rv="5", spec={"a": 1})

        controller.on_update(old, obj("r1", rv="5", spec={"a": 2}))
        controller.on_update(old, obj("r1", rv="4", spec={"a": 2}))
        controller.on_update(old, obj("r1", rv="6", spec={"a": 1}, status={"x": 1}))
        controller.on_update(old, obj("r1", rv="7", spec={"a": 2}))

        [event] = drain(controller)
        assert event == EventUpdate("default/r1")
        assert event.old is old

    def test_pending_updates_diff_against_first_old_state(
        self, controller: RecordingController
    ) -> None:
        first, second = obj("r1", rv="1"), obj("r1", rv="2", spec={"a": 1})
        controller.on_update(first, second)
        controller.on_update(second, obj("r1", rv="3", spec={"a": 2}))

        [event] = drain(controller)
        assert event.old is first

    def test_delete_carries_tombstone(self, controller: RecordingController) -> None:
        gone = obj("r9")
        controller.on_delete(gone)

        [event] = drain(controller)
        assert isinstance(event, EventDelete)
        assert event.tombstone is gone

    def test_resync_queues_watched_objects(self, controller: RecordingController) -> None:
        assert controller.resync() == 1
        assert drain(controller) == [EventSync("default/r1")]
        assert controller.resync("other") == 0


class TestSync:
    def test_reconciles_live_object(self, controller: RecordingController, routes: WatchCache) -> None:
        controller.sync(EventAdd("default/r1"))

        [(event, live)] = controller.reconciled
        assert event == EventAdd("default/r1")
        assert live is routes.get_by_key("default/r1")

    def test_stale_delete_is_discarded(self, controller: RecordingController) -> None:
        controller.sync(EventDelete("default/r1", tombstone=obj("r1")))
        assert controller.reconciled == []

    def test_delete_uses_tombstone(self, controller: RecordingController) -> None:
        tombstone = obj("gone")
        controller.sync(EventDelete("default/gone", tombstone=tombstone))
        assert controller.reconciled[0][1] is tombstone

    def test_object_deleted_before_delivery_is_dropped(self, controller: RecordingController) -> None:
        controller.sync(EventUpdate("default/gone", old=obj("gone")))
        assert controller.reconciled == []

    def test_invalid_key_is_dropped(self, controller: RecordingController) -> None:
        controller.sync(EventAdd("a/b/c"))
        assert controller.reconciled == []

    def test_event_for_namespace_no_longer_watched_is_dropped(
        self, routes: WatchCache, cluster: Cluster
    ) -> None:
        namespaces = WatchingNamespaces(selectors={"gateway": "apisix"})
        namespaces.add("other")
        ctl = RecordingController(routes, cluster, namespaces)
        namespaces.remove("other")

        ctl.sync(EventAdd("other/r2"))
        assert ctl.reconciled == []

        tombstone = obj("gone", namespace="other")
        ctl.sync(EventDelete("other/gone", tombstone=tombstone))
        assert ctl.reconciled == [(EventDelete("other/gone", tombstone=tombstone), tombstone)]
        ctl.queue.shutdown()


class TestHandleSyncErr:
    def test_success_records_status_and_forgets(self, controller: RecordingController, routes: WatchCache) -> None:
        event = EventAdd("default/r1")
        controller.queue.rate_limiter.when(event)

        controller.process(event)

        assert controller.queue.num_requeues(event) == 0
        controller.status.record.assert_called_once_with("ApisixRoute", routes.get_by_key("default/r1"), None)

    def test_failure_is_retried_and_reported(self, controller: RecordingController) -> None:
        controller.error = RuntimeError("gateway down")
        event = EventAdd("default/r1")

        controller.process(event)

        assert controller.queue.num_requeues(event) == 1
        kind, _, error = controller.status.record.call_args.args
        assert kind == "ApisixRoute"
        assert error is controller.error

    def test_retry_log_counts_attempts(
        self, controller: RecordingController, caplog: pytest.LogCaptureFixture
    ) -> None:
        controller.error = RuntimeError("gateway down")
        event = EventAdd("default/r1")

        with caplog.at_level(logging.WARNING):
            controller.process(event)
            controller.process(event)

        attempts = [r.getMessage() for r in caplog.records if "will retry" in r.getMessage()]
        assert "(attempt 1)" in attempts[0]
        assert "(attempt 2)" in attempts[1]

    def test_not_found_on_non_delete_is_not_retried(self, controller: RecordingController) -> None:
        controller.error = ObjectNotFound("Service default/httpbin not found")
        event = EventAdd("default/r1")

        controller.process(event)

        assert controller.queue.num_requeues(event) == 0
        controller.status.record.assert_not_called()

    def test_status_skipped_when_object_moved_on(self, controller: RecordingController, routes: WatchCache) -> None:
        controller.on_reconcile = lambda: routes.replace([obj("r1", rv="2")])

        controller.process(EventAdd("default/r1"))

        controller.status.record.assert_not_called()

    def test_status_never_recorded_for_deletes(self, controller: RecordingController) -> None:
        controller.process(EventDelete("default/gone", tombstone=obj("gone")))
        controller.status.record.assert_not_called()


def test_run_processes_queue_until_stopped(controller: RecordingController) -> None:
    reconciled = threading.Event()
    controller.on_reconcile = reconciled.set
    stop = threading.Event()
    runner = threading.Thread(target=controller.run, args=(stop,), daemon=True)
    runner.start()

    controller.on_add(obj("r1"))

    assert reconciled.wait(timeout=5)
    stop.set()
    runner.join(timeout=5)
    assert not runner.is_alive()
    assert controller.queue.shutting_down


def test_run_returns_when_stopped_before_sync(routes: WatchCache, cluster: Cluster) -> None:
    routes.synced.clear()
    ctl = RecordingController(routes, cluster, WatchingNamespaces())
    stop = threading.Event()
    stop.set()

    ctl.run(stop)

    assert ctl.queue.shutting_down
