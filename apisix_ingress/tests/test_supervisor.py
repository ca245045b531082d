from __future__ import annotations

import threading
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from apisix_ingress.src.apisix import ApisixError, ApisixRegistry
from apisix_ingress.src.config import ControllerConfig
from apisix_ingress.src.graph import ControllerGraph
from apisix_ingress.src.health import HealthState
from apisix_ingress.src.manifest import SyncError
from apisix_ingress.src.supervisor import CacheSyncError, Supervisor, SupervisorState


class FakeCache:
    def __init__(self, kind: str, syncs: bool = True) -> None:
        self.kind = kind
        self.syncs = syncs
        self.synced = threading.Event()
        self.stop_requested = False

    def has_synced(self) -> bool:
        return self.synced.is_set()

    def run_forever(self, stop: threading.Event) -> None:
        if not self.syncs:
            return
        self.synced.set()
        stop.wait()

    def list(self, namespace: str | None = None) -> list[dict[str, Any]]:
        return []

    def request_stop(self) -> None:
        self.stop_requested = True


class FakeController:
    def __init__(self, kind: str) -> None:
        self.kind = kind
        self.cache = FakeCache(kind)
        self.started = threading.Event()

    def run(self, stop: threading.Event) -> None:
        self.started.set()
        stop.wait()


def _config(**overrides: Any) -> ControllerConfig:
    values: dict[str, Any] = {"health_check_interval_seconds": 0, "retry_period_seconds": 1}
    values.update(overrides)
    return ControllerConfig(**values)


def _supervisor(
    elector: Any = None,
    graph: ControllerGraph | None = None,
    **overrides: Any,
) -> Supervisor:
    graph = graph or ControllerGraph()
    return Supervisor(
        _config(**overrides),
        clients=MagicMock(),
        registry=ApisixRegistry(),
        health=HealthState(),
        elector=elector,
        graph_factory=lambda *args: graph,
    )


def test_register_cluster_reuses_and_invalidates_existing_cluster() -> None:
    supervisor = _supervisor(admin_url="http://apisix:9180/apisix/admin", admin_key="k1")

    first = supervisor.register_cluster()
    first._synced = True
    second = supervisor.register_cluster()

    assert second is first
    assert not second.synced
    assert second.session.headers["X-API-KEY"] == "k1"
    assert supervisor.registry.cluster("default") is first


def test_wait_for_caches_returns_true_once_synced() -> None:
    cache = FakeCache("Service")
    cache.synced.set()
    graph = ControllerGraph(caches=[cache])

    assert Supervisor.wait_for_caches(graph, [MagicMock()], threading.Event()) is True


def test_wait_for_caches_raises_when_cache_thread_died_unsynced() -> None:
    cache = FakeCache("Secret", syncs=False)
    thread = threading.Thread(target=lambda: None)
    thread.start()
    thread.join()

    with pytest.raises(CacheSyncError, match="Secret cache stopped before syncing"):
        Supervisor.wait_for_caches(ControllerGraph(caches=[cache]), [thread], threading.Event())


def test_wait_for_caches_returns_false_when_epoch_ends() -> None:
    alive = MagicMock()
    alive.is_alive.return_value = True
    epoch = threading.Event()
    epoch.set()

    assert (
        Supervisor.wait_for_caches(ControllerGraph(caches=[FakeCache("Pod")]), [alive], epoch)
        is False
    )


def test_health_loop_clears_error_then_raises_on_failure() -> None:
    supervisor = _supervisor()
    supervisor.health.set_error("stale")
    cluster = MagicMock()
    seen: list[str | None] = []

    def check(epoch: threading.Event) -> None:
        seen.append(supervisor.health.error)
        if len(seen) == 2:
            raise ApisixError("cluster default is unhealthy")

    cluster.health_check.side_effect = check

    with pytest.raises(ApisixError, match="unhealthy"):
        supervisor.health_loop(cluster, threading.Event())

    assert seen == ["stale", None]


def test_health_loop_failure_after_epoch_end_is_not_an_error() -> None:
    supervisor = _supervisor()
    epoch = threading.Event()
    cluster = MagicMock()

    def check(stop: threading.Event) -> None:
        stop.set()
        raise ApisixError("probe interrupted")

    cluster.health_check.side_effect = check

    supervisor.health_loop(cluster, epoch)

    assert supervisor.health.error is None


def test_lead_failure_reports_health_and_resigns() -> None:
    elector = MagicMock()
    supervisor = _supervisor(elector=elector)
    supervisor.run_epoch = MagicMock(side_effect=RuntimeError("admin api refused"))  # type: ignore[method-assign]
    epoch = threading.Event()

    supervisor._lead(epoch)

    assert supervisor.health.error == "admin api refused"
    assert epoch.is_set()
    elector.resign.assert_called_once()


def test_lead_interrupted_by_epoch_end_does_not_resign() -> None:
    elector = MagicMock()
    supervisor = _supervisor(elector=elector)
    epoch = threading.Event()

    def interrupted(stop: threading.Event) -> None:
        stop.set()
        raise ApisixError("sync cancelled")

    supervisor.run_epoch = MagicMock(side_effect=interrupted)  # type: ignore[method-assign]

    supervisor._lead(epoch)

    assert supervisor.health.error is None
    elector.resign.assert_not_called()


def test_run_epoch_starts_caches_before_controllers_and_stops_them() -> None:
    caches = [FakeCache("Service"), FakeCache("ApisixRoute")]
    controllers = [FakeController("ApisixRoute"), FakeController("Ingress")]
    supervisor = _supervisor(graph=ControllerGraph(caches=caches, controllers=controllers))
    cluster = MagicMock()
    supervisor.register_cluster = MagicMock(return_value=cluster)  # type: ignore[method-assign]
    observed: dict[str, bool] = {}

    def check(epoch: threading.Event) -> None:
        observed["ready"] = supervisor.ready.is_set()
        observed["controllers"] = all(c.started.wait(timeout=2) for c in controllers)
        epoch.set()

    cluster.health_check.side_effect = check

    supervisor.run_epoch(threading.Event())

    cluster.has_synced.assert_called_once()
    assert observed == {"ready": True, "controllers": True}
    assert not supervisor.ready.is_set()
    assert all(cache.stop_requested for cache in caches)


def test_run_epoch_raises_when_cache_cannot_sync() -> None:
    controller = FakeController("Secret")
    graph = ControllerGraph(caches=[FakeCache("Secret", syncs=False)], controllers=[controller])
    supervisor = _supervisor(graph=graph)
    supervisor.register_cluster = MagicMock(return_value=MagicMock())  # type: ignore[method-assign]
    epoch = threading.Event()

    with pytest.raises(CacheSyncError):
        supervisor.run_epoch(epoch)

    assert epoch.is_set()
    assert not controller.started.is_set()


def test_run_epoch_fails_when_orphan_cleanup_fails_before_controllers_start() -> None:
    controller = FakeController("ApisixRoute")
    graph = ControllerGraph(caches=[FakeCache("ApisixRoute")], controllers=[controller])
    supervisor = _supervisor(graph=graph)
    cluster = MagicMock()
    supervisor.register_cluster = MagicMock(return_value=cluster)  # type: ignore[method-assign]
    epoch = threading.Event()
    started_at_cleanup: list[bool] = []

    def cleanup(*args: Any) -> None:
        started_at_cleanup.append(controller.started.is_set())
        raise SyncError("failed to sync 1 resource(s) to default", [ApisixError("gateway down")])

    with patch("apisix_ingress.src.supervisor.compare_resources", side_effect=cleanup) as compare:
        with pytest.raises(SyncError):
            supervisor.run_epoch(epoch)

    compare.assert_called_once_with(cluster, [controller])
    assert started_at_cleanup == [False]
    assert not controller.started.is_set()
    assert epoch.is_set()


def test_run_without_election_leads_until_stopped() -> None:
    supervisor = _supervisor()
    stop = threading.Event()
    observed: list[bool] = []

    def epoch_body(epoch: threading.Event) -> None:
        observed.append(supervisor.is_leader() and supervisor.leader.is_set())
        stop.set()
        epoch.wait(timeout=2)

    supervisor.run_epoch = MagicMock(side_effect=epoch_body)  # type: ignore[method-assign]

    supervisor.run(stop)

    assert observed == [True]
    assert supervisor.state is SupervisorState.TERMINATED
    assert not supervisor.leader.is_set()


def test_run_with_election_runs_one_epoch_per_term() -> None:
    elector = MagicMock()
    supervisor = _supervisor(elector=elector)
    epochs: list[threading.Event] = []
    entered = threading.Event()

    def epoch_body(epoch: threading.Event) -> None:
        epochs.append(epoch)
        entered.set()
        epoch.wait(timeout=5)

    supervisor.run_epoch = MagicMock(side_effect=epoch_body)  # type: ignore[method-assign]
    states: list[SupervisorState] = []

    def campaign(
        on_started_leading: Any, on_stopped_leading: Any, stop_event: threading.Event
    ) -> None:
        on_started_leading()
        entered.wait(timeout=2)
        states.append(supervisor.state)
        on_stopped_leading()
        states.append(supervisor.state)

    elector.run.side_effect = campaign

    supervisor.run(threading.Event())

    assert states == [SupervisorState.LEADER, SupervisorState.CANDIDATE]
    assert len(epochs) == 1
    assert epochs[0].is_set()
    assert supervisor.state is SupervisorState.TERMINATED
