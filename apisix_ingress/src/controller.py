from __future__ import annotations

import copy
import logging
import threading
import time

from apisix_ingress.src.apisix import Cluster
from apisix_ingress.src.config import INGRESS_CLASS_ANY
from apisix_ingress.src.events import (
    Event,
    EventAdd,
    EventDelete,
    EventSync,
    EventUpdate,
    event_kind,
)
from apisix_ingress.src.indexes import WatchingNamespaces, split_meta_key
from apisix_ingress.src.informer import Obj, ObjectNotFound, WatchCache, meta_key, resource_version
from apisix_ingress.src.manifest import Manifest
from apisix_ingress.src.metrics import METRICS
from apisix_ingress.src.status import StatusRecorder
from apisix_ingress.src.workqueue import RateLimitingQueue

WORKER_JOIN_TIMEOUT_SECONDS = 10.0
CACHE_SYNC_POLL_SECONDS = 0.5


def strip_volatile(obj: Obj) -> Obj:
    """Copy of ``obj`` without status and the metadata the API server bumps on every write."""
    stripped = copy.deepcopy(obj)
    stripped.pop("status", None)
    metadata = stripped.get("metadata")
    if isinstance(metadata, dict):
        for key in ("resourceVersion", "managedFields"):
            metadata.pop(key, None)
    return stripped


def only_status_changed(old: Obj, new: Obj) -> bool:
    return strip_volatile(old) == strip_volatile(new)


def crd_class_matches(obj: Obj, ingress_class: str) -> bool:
    """An ApisixXxx object with no ``ingressClassName`` belongs to every controller."""
    wanted = (obj.get("spec") or {}).get("ingressClassName") or ""
    if not wanted or ingress_class == INGRESS_CLASS_ANY:
        return True
    return wanted == ingress_class


class ResourceController:
    """Queue-driven reconciler for one resource kind.

    Watch cache callbacks only filter and enqueue typed events; worker
    threads pull events, resolve the current object, and call
    :meth:`reconcile`.  Every outcome flows through :meth:`handle_sync_err`,
    which decides between forgetting the event and a rate-limited retry and
    records the outcome on the source object.

    Subclasses set ``kind`` and implement :meth:`reconcile`.
    """

    kind = ""
    records_status = True

    def __init__(
        self,
        cache: WatchCache,
        cluster: Cluster,
        namespaces: WatchingNamespaces,
        status: StatusRecorder | None = None,
        workers: int = 1,
        logger: logging.Logger | None = None,
    ) -> None:
        self.cache = cache
        self.cluster = cluster
        self.namespaces = namespaces
        self.status = status
        self.workers = max(1, workers)
        self.logger = logger or logging.getLogger(__name__)
        self.queue = RateLimitingQueue(self.kind)
        self._observed: dict[str, Obj] = {}
        self._observed_lock = threading.Lock()
        self._threads: list[threading.Thread] = []

    def register(self) -> None:
        """Subscribe to the controller's own watch cache."""
        self.cache.add_handler(self.on_add, self.on_update, self.on_delete)

    # -- event handlers (cache thread, enqueue only) -----------------------

    def key_for(self, obj: Obj) -> str:
        return meta_key(obj)

    def is_effective(self, obj: Obj) -> bool:
        return True

    def accepts(self, obj: Obj) -> bool:
        namespace = (obj.get("metadata") or {}).get("namespace") or ""
        return self.namespaces.is_watching(namespace) and self.is_effective(obj)

    def on_add(self, obj: Obj) -> None:
        if not self.accepts(obj):
            return
        self.queue.add(EventAdd(self.key_for(obj)))

    def on_update(self, old: Obj, new: Obj) -> None:
        if resource_version(old) >= resource_version(new):
            return
        if not self.accepts(new):
            return
        if only_status_changed(old, new):
            return
        self.queue.add(EventUpdate(self.key_for(new), old=old))

    def on_delete(self, obj: Obj) -> None:
        if not self.accepts(obj):
            return
        self.queue.add(EventDelete(self.key_for(obj), tombstone=obj))

    def enqueue_sync(self, key: str) -> None:
        self.queue.add(EventSync(key))

    def resync(self, namespace: str | None = None) -> int:
        """Queue a sync for every cached object (optionally in one namespace)."""
        count = 0
        for obj in self.cache.list(namespace):
            if self.accepts(obj):
                self.enqueue_sync(self.key_for(obj))
                count += 1
        return count

    # -- workers -----------------------------------------------------------

    def run(self, stop: threading.Event) -> None:
        """Block until the cache is synced, then drain the queue until ``stop`` is set."""
        while not self.cache.has_synced():
            if stop.wait(timeout=CACHE_SYNC_POLL_SECONDS):
                self.queue.shutdown()
                return
        self.logger.info("%s controller started with %d worker(s)", self.kind, self.workers)
        self._threads = [
            threading.Thread(
                target=self._run_worker, name=f"{self.kind}-worker-{index}", daemon=True
            )
            for index in range(self.workers)
        ]
        for thread in self._threads:
            thread.start()
        stop.wait()
        self.queue.shutdown()
        for thread in self._threads:
            thread.join(timeout=WORKER_JOIN_TIMEOUT_SECONDS)
        self.logger.info("%s controller stopped", self.kind)

    def _run_worker(self) -> None:
        while True:
            event, shutdown = self.queue.get()
            if shutdown:
                return
            if event is None:
                continue
            try:
                self.process(event)
            finally:
                self.queue.done(event)

    def process(self, event: Event) -> None:
        started = time.monotonic()
        error: Exception | None = None
        try:
            self.sync(event)
        except Exception as exc:
            error = exc
        METRICS.sync_latency_seconds.labels(kind=self.kind).observe(time.monotonic() - started)
        self.handle_sync_err(event, error)

    # -- reconciliation ----------------------------------------------------

    def get_object(self, key: str) -> Obj | None:
        try:
            return self.cache.get_by_key(key)
        except ObjectNotFound:
            return None

    def sync(self, event: Event) -> None:
        """Resolve the object behind ``event`` and reconcile it.

        A delete whose object is live again is stale and dropped.  A
        non-delete whose object is gone was deleted before delivery and is
        dropped too; the delete event that follows does the cleanup.
        Non-delete events for a namespace that stopped being watched while
        they waited are dropped as well.
        """
        try:
            split_meta_key(event.key)
        except ValueError:
            self.logger.error("Found %s with invalid meta key %r, dropping", self.kind, event.key)
            return
        if not isinstance(event, EventDelete) and not self.namespaces.is_watching_key(event.key):
            self.logger.info(
                "Skipping %s %s, its namespace is no longer watched", self.kind, event.key
            )
            return

        obj = self.get_object(event.key)
        if isinstance(event, EventDelete):
            if obj is not None:
                self.logger.warning(
                    "Discarding stale %s delete event since %s exists", self.kind, event.key
                )
                return
            obj = event.tombstone
        elif obj is None:
            self.logger.warning(
                "%s %s was deleted before it could be delivered", self.kind, event.key
            )
            return
        else:
            with self._observed_lock:
                self._observed[event.key] = obj
        self.reconcile(event, obj)

    def reconcile(self, event: Event, obj: Obj) -> None:
        raise NotImplementedError

    def owned(self, obj: Obj) -> Manifest | None:
        """Gateway objects ``obj`` accounts for, identity fields at least.

        ``None`` for kinds whose gateway objects are not subject to the
        startup cleanup of orphans.
        """
        return None

    def handle_sync_err(self, event: Event, error: BaseException | None) -> None:
        with self._observed_lock:
            observed = self._observed.pop(event.key, None)

        if error is None:
            self.queue.forget(event)
            METRICS.sync_operations_total.labels(kind=self.kind, result="success").inc()
            self.record_status(event, observed, None)
            return
        if isinstance(error, ObjectNotFound) and not isinstance(event, EventDelete):
            self.logger.info(
                "Sync %s %s (%s) but object not found, ignoring",
                self.kind,
                event.key,
                event_kind(event),
            )
            self.queue.forget(event)
            return
        self.logger.warning(
            "Sync %s %s (%s) failed (attempt %d), will retry: %s",
            self.kind,
            event.key,
            event_kind(event),
            self.queue.num_requeues(event) + 1,
            error,
        )
        self.queue.add_rate_limited(event)
        METRICS.sync_operations_total.labels(kind=self.kind, result="failure").inc()
        self.record_status(event, observed, error)

    def record_status(self, event: Event, observed: Obj | None, error: BaseException | None) -> None:
        """Report the outcome on the live object, unless it moved on since it was translated."""
        if not self.records_status or self.status is None or observed is None:
            return
        live = self.get_object(event.key)
        if live is None or resource_version(live) != resource_version(observed):
            return
        self.status.record(self.kind, live, error)