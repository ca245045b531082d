from __future__ import annotations

import enum
import logging
import threading
from collections.abc import Callable

from apisix_ingress.src.apisix import (
    ApisixError,
    ApisixRegistry,
    Cluster,
    ClusterOptions,
    DuplicatedClusterError,
)
from apisix_ingress.src.compare import compare_resources
from apisix_ingress.src.config import ControllerConfig
from apisix_ingress.src.graph import ControllerGraph, build_graph
from apisix_ingress.src.health import HealthState
from apisix_ingress.src.indexes import WatchingNamespaces
from apisix_ingress.src.kube import KubeClients
from apisix_ingress.src.leader import LeaseLeaderElector
from apisix_ingress.src.namespace import prime_namespaces

LOGGER = logging.getLogger(__name__)

CACHE_SYNC_POLL_SECONDS = 0.5
THREAD_JOIN_TIMEOUT_SECONDS = 10.0
EPOCH_JOIN_TIMEOUT_SECONDS = 45.0

GraphFactory = Callable[..., ControllerGraph]


class SupervisorState(enum.Enum):
    CANDIDATE = "candidate"
    LEADER = "leader"
    TERMINATED = "terminated"


class CacheSyncError(RuntimeError):
    """A watch cache stopped before its initial list completed."""


class Supervisor:
    """Runs caches, controllers and the gateway health loop while leading.

    Every leadership term (an *epoch*) gets its own stop event.  Losing or
    resigning leadership sets it, which stops that epoch's caches,
    controllers and health loop while the process keeps campaigning.
    """

    def __init__(
        self,
        cfg: ControllerConfig,
        clients: KubeClients,
        registry: ApisixRegistry,
        health: HealthState,
        elector: LeaseLeaderElector | None = None,
        graph_factory: GraphFactory = build_graph,
    ) -> None:
        self.cfg = cfg
        self.clients = clients
        self.registry = registry
        self.health = health
        self.elector = elector
        self.graph_factory = graph_factory
        self.namespaces = WatchingNamespaces(cfg.watch_namespaces, cfg.selector_pairs())
        self.ready = threading.Event()
        self.leader = threading.Event()

        self._state = SupervisorState.CANDIDATE
        self._lock = threading.Lock()
        self._epoch_stop: threading.Event | None = None
        self._epoch_thread: threading.Thread | None = None

    @property
    def state(self) -> SupervisorState:
        with self._lock:
            return self._state

    def _set_state(self, state: SupervisorState) -> None:
        with self._lock:
            previous, self._state = self._state, state
        if previous is not state:
            LOGGER.info("Supervisor state %s -> %s", previous.value, state.value)

    def is_leader(self) -> bool:
        return self.state is SupervisorState.LEADER

    def run(self, stop: threading.Event) -> None:
        """Block until ``stop`` is set, leading whenever this replica may."""
        try:
            if self.elector is None:
                self._run_without_election(stop)
            else:
                self.elector.run(
                    on_started_leading=self._on_started_leading,
                    on_stopped_leading=self._on_stopped_leading,
                    stop_event=stop,
                )
        finally:
            self._stop_epoch()
            self.leader.clear()
            self._set_state(SupervisorState.TERMINATED)

    def _run_without_election(self, stop: threading.Event) -> None:
        while not stop.is_set():
            epoch = threading.Event()
            with self._lock:
                self._epoch_stop = epoch
            self._set_state(SupervisorState.LEADER)
            self.leader.set()
            watcher = threading.Thread(target=self._propagate_stop, args=(stop, epoch), daemon=True)
            watcher.start()
            self._lead(epoch)
            epoch.set()
            self.leader.clear()
            self._set_state(SupervisorState.CANDIDATE)
            if stop.wait(timeout=self.cfg.retry_period_seconds):
                return

    @staticmethod
    def _propagate_stop(stop: threading.Event, epoch: threading.Event) -> None:
        while not epoch.is_set():
            if stop.wait(timeout=CACHE_SYNC_POLL_SECONDS):
                epoch.set()

    def _on_started_leading(self) -> None:
        with self._lock:
            if self._epoch_thread is not None and self._epoch_thread.is_alive():
                LOGGER.error("Previous leader epoch is still running, not starting another")
                return
            epoch = threading.Event()
            self._epoch_stop = epoch
            self._epoch_thread = threading.Thread(
                target=self._lead, args=(epoch,), name="leader-epoch", daemon=True
            )
        self._set_state(SupervisorState.LEADER)
        self.leader.set()
        self._epoch_thread.start()

    def _on_stopped_leading(self) -> None:
        self.leader.clear()
        self._stop_epoch()
        self._set_state(SupervisorState.CANDIDATE)

    def _stop_epoch(self) -> None:
        with self._lock:
            epoch, thread = self._epoch_stop, self._epoch_thread
            self._epoch_thread = None
        if epoch is not None:
            epoch.set()
        if thread is None or thread is threading.current_thread():
            return
        thread.join(timeout=EPOCH_JOIN_TIMEOUT_SECONDS)
        if thread.is_alive():
            LOGGER.error("Leader epoch did not stop within %ss", EPOCH_JOIN_TIMEOUT_SECONDS)

    def _lead(self, epoch: threading.Event) -> None:
        try:
            self.run_epoch(epoch)
        except Exception as exc:
            if epoch.is_set():
                LOGGER.info("Leader epoch interrupted: %s", exc)
                return
            LOGGER.exception("Leader epoch failed, giving up leadership")
            self.health.set_error(exc)
            epoch.set()
            if self.elector is not None:
                self.elector.resign()

    def register_cluster(self) -> Cluster:
        options = ClusterOptions(
            name=self.cfg.cluster_name,
            base_url=self.cfg.admin_url,
            admin_key=self.cfg.admin_key,
            timeout_seconds=self.cfg.admin_timeout_seconds,
        )
        try:
            return self.registry.add_cluster(options)
        except DuplicatedClusterError:
            cluster = self.registry.update_cluster(options)
            cluster.invalidate()
            return cluster

    def run_epoch(self, epoch: threading.Event) -> None:
        """One leadership term: sync the gateway, start caches, then controllers.

        Gateway objects no cached resource accounts for are removed before
        the controllers start.  Returns when ``epoch`` is set; raises when
        the gateway cannot be synced, a cache cannot sync, the orphan
        cleanup fails, or the gateway health probe fails.
        """
        cluster = self.register_cluster()
        cluster.has_synced(epoch)
        watched = prime_namespaces(self.clients.core, self.namespaces)
        if self.namespaces.uses_selectors:
            LOGGER.info("Watching %d namespace(s) matching selectors", len(watched))

        graph = self.graph_factory(
            self.cfg, self.clients, cluster, self.registry, self.namespaces, self.is_leader
        )
        cache_threads = [
            threading.Thread(
                target=cache.run_forever, args=(epoch,), name=f"{cache.kind}-cache", daemon=True
            )
            for cache in graph.caches
        ]
        controller_threads: list[threading.Thread] = []
        try:
            for thread in cache_threads:
                thread.start()
            if not self.wait_for_caches(graph, cache_threads, epoch):
                return
            compare_resources(cluster, graph.controllers)
            controller_threads = [
                threading.Thread(
                    target=controller.run,
                    args=(epoch,),
                    name=f"{controller.kind}-controller",
                    daemon=True,
                )
                for controller in graph.controllers
            ]
            for thread in controller_threads:
                thread.start()
            self.ready.set()
            LOGGER.info("Leader epoch started %d controller(s)", len(controller_threads))
            self.health_loop(cluster, epoch)
        finally:
            self.ready.clear()
            epoch.set()
            for cache in graph.caches:
                cache.request_stop()
            for thread in controller_threads + cache_threads:
                thread.join(timeout=THREAD_JOIN_TIMEOUT_SECONDS)

    @staticmethod
    def wait_for_caches(
        graph: ControllerGraph, threads: list[threading.Thread], epoch: threading.Event
    ) -> bool:
        """Wait for every cache's initial list; ``False`` when the epoch ended first."""
        while not graph.caches_synced():
            for cache, thread in zip(graph.caches, threads):
                if not thread.is_alive() and not cache.has_synced():
                    raise CacheSyncError(f"{cache.kind} cache stopped before syncing")
            if epoch.wait(timeout=CACHE_SYNC_POLL_SECONDS):
                return False
        return True

    def health_loop(self, cluster: Cluster, epoch: threading.Event) -> None:
        while not epoch.wait(timeout=self.cfg.health_check_interval_seconds):
            try:
                cluster.health_check(epoch)
            except ApisixError:
                if epoch.is_set():
                    return
                raise
            self.health.clear_error()
