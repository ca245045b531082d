from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiClient, ApiException

from apisix_ingress.src.metrics import METRICS

Obj = dict[str, Any]

_SERIALIZER: ApiClient | None = None


class ObjectNotFound(LookupError):
    """The object is not present in the watch cache."""


def to_dict(obj: Any) -> Obj:
    """Normalise a typed Kubernetes model (or a raw dict) to its camelCase JSON dict."""
    global _SERIALIZER
    if isinstance(obj, dict):
        return obj
    if _SERIALIZER is None:
        _SERIALIZER = ApiClient()
    return _SERIALIZER.sanitize_for_serialization(obj)


def meta_key(obj: Obj) -> str:
    metadata = obj.get("metadata") or {}
    namespace = metadata.get("namespace") or ""
    name = metadata.get("name") or ""
    return f"{namespace}/{name}" if namespace else name


def resource_version(obj: Obj | None) -> int:
    """Return the resourceVersion as an int, ``0`` when missing or opaque."""
    if not obj:
        return 0
    raw = (obj.get("metadata") or {}).get("resourceVersion") or "0"
    try:
        return int(raw)
    except (TypeError, ValueError):
        return 0


@dataclass(frozen=True)
class ResourceHandler:
    on_add: Callable[[Obj], None] | None = None
    on_update: Callable[[Obj, Obj], None] | None = None
    on_delete: Callable[[Obj], None] | None = None


class WatchCache:
    """Local ``namespace/name`` indexed mirror of one Kubernetes resource type.

    The cache lists once, then streams watch events from the list's
    ``resourceVersion``.  Objects are stored as camelCase dicts exactly as
    the API server serialises them and must be treated as read-only by
    callers (copy before mutating).

    Notification handlers run on the cache thread.  They must only compute a
    key and enqueue; any I/O there would stall every other notification of
    this kind.
    """

    def __init__(
        self,
        kind: str,
        list_fn: Callable[..., Any],
        list_kwargs: dict[str, Any] | None = None,
        watch_timeout_seconds: int = 300,
        logger: logging.Logger | None = None,
    ) -> None:
        self.kind = kind
        self.list_fn = list_fn
        self.list_kwargs = dict(list_kwargs or {})
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self._store: dict[str, Obj] = {}
        self._store_lock = threading.RLock()
        self._handlers: list[ResourceHandler] = []
        self.synced = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def add_handler(
        self,
        on_add: Callable[[Obj], None] | None = None,
        on_update: Callable[[Obj, Obj], None] | None = None,
        on_delete: Callable[[Obj], None] | None = None,
    ) -> None:
        self._handlers.append(ResourceHandler(on_add, on_update, on_delete))

    def has_synced(self) -> bool:
        return self.synced.is_set()

    def get(self, namespace: str, name: str) -> Obj:
        key = f"{namespace}/{name}" if namespace else name
        return self.get_by_key(key)

    def get_by_key(self, key: str) -> Obj:
        with self._store_lock:
            obj = self._store.get(key)
        if obj is None:
            raise ObjectNotFound(f"{self.kind} {key} not found")
        return obj

    def list(self, namespace: str | None = None) -> list[Obj]:
        with self._store_lock:
            objects = list(self._store.values())
        if namespace is None:
            return objects
        return [obj for obj in objects if (obj.get("metadata") or {}).get("namespace") == namespace]

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _dispatch_add(self, obj: Obj) -> None:
        for handler in self._handlers:
            if handler.on_add is not None:
                self._invoke(handler.on_add, obj)

    def _dispatch_update(self, old: Obj, new: Obj) -> None:
        for handler in self._handlers:
            if handler.on_update is not None:
                self._invoke(handler.on_update, old, new)

    def _dispatch_delete(self, obj: Obj) -> None:
        for handler in self._handlers:
            if handler.on_delete is not None:
                self._invoke(handler.on_delete, obj)

    def _invoke(self, fn: Callable[..., None], *args: Obj) -> None:
        try:
            fn(*args)
        except Exception:
            self.logger.exception("%s event handler failed", self.kind)

    def _list(self) -> tuple[list[Obj], str | None]:
        result = to_dict(self.list_fn(**self.list_kwargs))
        items = [to_dict(item) for item in result.get("items") or []]
        version = (result.get("metadata") or {}).get("resourceVersion")
        METRICS.cache_sync_total.labels(kind=self.kind).inc()
        return items, version

    def replace(self, items: list[Obj]) -> None:
        """Swap the store for a fresh list and notify the differences.

        Objects that vanished between the old and new snapshot are delivered
        to ``on_delete`` with their last known state.
        """
        fresh = {meta_key(item): item for item in items}
        with self._store_lock:
            previous = self._store
            self._store = fresh
        for key, obj in fresh.items():
            old = previous.get(key)
            if old is None:
                self._dispatch_add(obj)
            elif old != obj:
                self._dispatch_update(old, obj)
        for key, obj in previous.items():
            if key not in fresh:
                self._dispatch_delete(obj)

    def handle_event(self, event_type: str, obj: Obj) -> None:
        key = meta_key(obj)
        if not key:
            return
        if event_type == "DELETED":
            with self._store_lock:
                self._store.pop(key, None)
            self._dispatch_delete(obj)
            return
        if event_type not in {"ADDED", "MODIFIED"}:
            return
        with self._store_lock:
            old = self._store.get(key)
            self._store[key] = obj
        if old is None:
            self._dispatch_add(obj)
        else:
            self._dispatch_update(old, obj)

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """List-then-watch until shutdown.

        1. Retries the initial list with jittered exponential backoff (capped
           at 30 s) so an API server restart does not crash-loop the cache.
        2. Opens a streaming watch from the list's ``resourceVersion``.
        3. On ``410 Gone`` re-lists and reconciles the store, emitting delete
           notifications for objects that disappeared in the gap.
        4. ``401`` / ``403`` are RBAC errors: the loop stops and the cache
           stays unsynced so the supervisor never starts on partial data.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                items, version = self._list()
                self.replace(items)
                self.synced.set()
                self.logger.info(
                    "%s cache synced with %d object(s), watching from resourceVersion %s",
                    self.kind,
                    len(items),
                    version,
                )
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied listing %s (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.kind,
                        exc.status,
                    )
                    self.synced.clear()
                    return
                self.logger.exception("Initial %s list failed", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        if self._should_stop(stop):
            self.synced.clear()
            return

        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(kind=self.kind).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.list_fn,
                    resource_version=version,
                    timeout_seconds=self.watch_timeout_seconds,
                    **self.list_kwargs,
                )
                for event in stream:
                    if self._should_stop(stop):
                        break
                    raw = event.get("raw_object") or event.get("object")
                    if raw is None:
                        continue
                    obj = to_dict(raw)
                    latest = (obj.get("metadata") or {}).get("resourceVersion")
                    if latest:
                        version = latest
                    self.handle_event(str(event.get("type", "")), obj)
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("%s watch resource version expired, re-listing", self.kind)
                    try:
                        items, version = self._list()
                        self.replace(items)
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self.logger.error(
                                "Kubernetes API access denied during %s re-list (status=%s).",
                                self.kind,
                                relist_exc.status,
                            )
                            self.synced.clear()
                            return
                        self.logger.exception("Failed to re-list %s after 410", self.kind)
                        METRICS.watch_errors_total.labels(kind=self.kind).inc()
                        version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch of %s denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.kind,
                        exc.status,
                    )
                    METRICS.watch_errors_total.labels(kind=self.kind).inc()
                    self.synced.clear()
                    return

                self.logger.exception("Kubernetes API %s watch error", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected %s watch error", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.synced.clear()