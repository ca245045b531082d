from __future__ import annotations

import logging
import socket
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar
from urllib.parse import urlsplit

import requests

from apisix_ingress.src.apisix_types import (
    SSL,
    Consumer,
    GatewayResource,
    GlobalRule,
    PluginConfig,
    PluginMetadata,
    Route,
    StreamRoute,
    Upstream,
    gen_id,
)
from apisix_ingress.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

HEALTH_PROBE_TIMEOUT_SECONDS = 3.0
HEALTH_PROBE_ATTEMPTS = 3
HEALTH_PROBE_INTERVAL_SECONDS = 5.0


class ApisixError(RuntimeError):
    """Base error for Admin API failures."""


class NotFoundError(ApisixError):
    """The requested object does not exist in the gateway."""


class StillInUseError(ApisixError):
    """The object is still referenced by another gateway object."""


class DuplicatedClusterError(ApisixError):
    """A cluster with the same name is already registered."""


class ClusterNotSyncedError(ApisixError):
    """The cluster cache could not be warmed from the Admin API."""


@dataclass(frozen=True)
class ClusterOptions:
    name: str
    base_url: str
    admin_key: str = ""
    timeout_seconds: float = 5.0


T = TypeVar("T", bound=GatewayResource)


class ResourceClient(Generic[T]):
    """CRUD for one Admin API resource collection, backed by the cluster cache.

    ``get`` is read-through: a cache miss falls back to the Admin API and a
    404 surfaces as :class:`NotFoundError`.  Writes go to the gateway first
    and are reflected into the cache only after the gateway accepted them.
    """

    def __init__(
        self,
        cluster: Cluster,
        resource_cls: type[T],
        path: str,
        id_for_name: Callable[[str], str] = gen_id,
        id_in_path: bool = True,
    ) -> None:
        self.cluster = cluster
        self.resource_cls = resource_cls
        self.path = path
        self.id_for_name = id_for_name
        self.id_in_path = id_in_path

    @property
    def kind(self) -> str:
        return self.resource_cls.kind

    def _url(self, object_id: str = "") -> str:
        base = f"{self.cluster.options.base_url}/{self.path}"
        return f"{base}/{object_id}" if object_id else base

    def get(self, name: str) -> T:
        object_id = self.id_for_name(name)
        cached = self.cluster.cache_get(self.kind, object_id)
        if cached is not None:
            return cached.clone()

        response = self.cluster.request("GET", self._url(object_id), resource=self.kind)
        if response.status_code == 404:
            raise NotFoundError(f"{self.kind} {name} not found")
        self.cluster.raise_for_status(response, self.kind)
        value = _extract_value(response.json())
        if not value:
            raise NotFoundError(f"{self.kind} {name} not found")
        obj = self.resource_cls.from_admin(value)
        self.cluster.cache_put(self.kind, object_id, obj)
        return obj.clone()

    def list(self) -> list[T]:
        response = self.cluster.request("GET", self._url(), resource=self.kind)
        if response.status_code == 404:
            return []
        self.cluster.raise_for_status(response, self.kind)
        return [self.resource_cls.from_admin(value) for value in _extract_list(response.json())]

    def create(self, obj: T) -> T:
        LOGGER.debug("Creating %s %s (id=%s)", self.kind, obj.name, obj.id)
        return self._put(obj)

    def update(self, obj: T) -> T:
        LOGGER.debug("Updating %s %s (id=%s)", self.kind, obj.name, obj.id)
        return self._put(obj)

    def _put(self, obj: T) -> T:
        url = self._url(obj.id) if self.id_in_path else self._url()
        response = self.cluster.request("PUT", url, body=obj.to_admin(), resource=self.kind)
        self.cluster.raise_for_status(response, self.kind)
        self.cluster.cache_put(self.kind, obj.id, obj.clone())
        return obj.clone()

    def delete(self, obj: T) -> None:
        LOGGER.debug("Deleting %s %s (id=%s)", self.kind, obj.name, obj.id)
        self.cluster.check_reference(obj)
        response = self.cluster.request("DELETE", self._url(obj.id), resource=self.kind)
        if response.status_code not in (200, 204, 404):
            message = response.text
            if "still using" in message:
                raise StillInUseError(f"{self.kind} {obj.id} is still in use: {message}")
            raise ApisixError(
                f"unexpected status code {response.status_code} deleting {self.kind} "
                f"{obj.id}: {message}"
            )
        self.cluster.cache_delete(self.kind, obj.id)


def _extract_value(payload: Any) -> dict[str, Any] | None:
    """Unwrap a single object from an Admin API v3 or v2 response."""
    if not isinstance(payload, dict):
        return None
    if isinstance(payload.get("value"), dict):
        return payload["value"]
    node = payload.get("node")
    if isinstance(node, dict) and isinstance(node.get("value"), dict):
        return node["value"]
    return None


def _extract_list(payload: Any) -> list[dict[str, Any]]:
    """Unwrap a collection from an Admin API v3 (``list``) or v2 (``node.nodes``) response."""
    if not isinstance(payload, dict):
        return []
    items = payload.get("list")
    if items is None:
        node = payload.get("node")
        items = node.get("nodes") if isinstance(node, dict) else None
    if not isinstance(items, list):
        return []
    values = []
    for item in items:
        value = item.get("value") if isinstance(item, dict) else None
        if isinstance(value, dict):
            values.append(value)
    return values


class Cluster:
    """One APISIX deployment reachable through its Admin API."""

    def __init__(self, options: ClusterOptions, session: requests.Session | None = None) -> None:
        self.options = options
        self.session = session or requests.Session()
        if options.admin_key:
            self.session.headers["X-API-KEY"] = options.admin_key
        self._cache: dict[str, dict[str, GatewayResource]] = {}
        self._cache_lock = threading.Lock()
        self._sync_lock = threading.Lock()
        self._synced = False

        self.route: ResourceClient[Route] = ResourceClient(self, Route, "routes")
        self.upstream: ResourceClient[Upstream] = ResourceClient(self, Upstream, "upstreams")
        self.stream_route: ResourceClient[StreamRoute] = ResourceClient(
            self, StreamRoute, "stream_routes"
        )
        self.ssl: ResourceClient[SSL] = ResourceClient(self, SSL, "ssls")
        self.plugin_config: ResourceClient[PluginConfig] = ResourceClient(
            self, PluginConfig, "plugin_configs"
        )
        self.global_rule: ResourceClient[GlobalRule] = ResourceClient(
            self, GlobalRule, "global_rules"
        )
        self.consumer: ResourceClient[Consumer] = ResourceClient(
            self, Consumer, "consumers", id_for_name=_identity, id_in_path=False
        )
        self.plugin_metadata: ResourceClient[PluginMetadata] = ResourceClient(
            self, PluginMetadata, "plugin_metadata", id_for_name=_identity
        )

    @property
    def name(self) -> str:
        return self.options.name

    def reconfigure(self, options: ClusterOptions) -> None:
        if options == self.options:
            return
        LOGGER.info("Cluster %s Admin API now at %s", options.name, options.base_url)
        self.options = options
        if options.admin_key:
            self.session.headers["X-API-KEY"] = options.admin_key
        else:
            self.session.headers.pop("X-API-KEY", None)

    def resource_clients(self) -> list[ResourceClient[Any]]:
        return [
            self.route,
            self.upstream,
            self.stream_route,
            self.ssl,
            self.plugin_config,
            self.global_rule,
            self.consumer,
        ]

    def request(
        self,
        method: str,
        url: str,
        body: dict[str, Any] | None = None,
        resource: str = "",
    ) -> requests.Response:
        started = time.monotonic()
        try:
            response = self.session.request(
                method, url, json=body, timeout=self.options.timeout_seconds
            )
        except requests.exceptions.RequestException as exc:
            METRICS.apisix_requests_total.labels(
                resource=resource, method=method, code="error"
            ).inc()
            raise ApisixError(f"{method} {url} failed: {exc}") from exc
        METRICS.apisix_request_latency_seconds.labels(method=method).observe(
            time.monotonic() - started
        )
        METRICS.apisix_requests_total.labels(
            resource=resource, method=method, code=str(response.status_code)
        ).inc()
        return response

    @staticmethod
    def raise_for_status(response: requests.Response, resource: str) -> None:
        if 200 <= response.status_code < 300:
            return
        raise ApisixError(
            f"unexpected status code {response.status_code} for {resource}: {response.text}"
        )

    def cache_get(self, kind: str, object_id: str) -> GatewayResource | None:
        with self._cache_lock:
            return self._cache.get(kind, {}).get(object_id)

    def cache_put(self, kind: str, object_id: str, obj: GatewayResource) -> None:
        with self._cache_lock:
            self._cache.setdefault(kind, {})[object_id] = obj

    def cache_delete(self, kind: str, object_id: str) -> None:
        with self._cache_lock:
            self._cache.get(kind, {}).pop(object_id, None)

    def cached(self, kind: str) -> list[GatewayResource]:
        """Snapshot of every cached object of ``kind``, cloned."""
        with self._cache_lock:
            return [obj.clone() for obj in self._cache.get(kind, {}).values()]

    def check_reference(self, obj: GatewayResource) -> None:
        """Raise :class:`StillInUseError` when a cached object still points at ``obj``."""
        if isinstance(obj, Upstream):
            attr, kinds = "upstream_id", (Route.kind, StreamRoute.kind)
        elif isinstance(obj, PluginConfig):
            attr, kinds = "plugin_config_id", (Route.kind,)
        else:
            return
        with self._cache_lock:
            for kind in kinds:
                for other in self._cache.get(kind, {}).values():
                    if getattr(other, attr, "") == obj.id:
                        raise StillInUseError(
                            f"{obj.kind} {obj.id} is still referenced by {kind} {other.id}"
                        )

    def has_synced(self, stop: threading.Event | None = None) -> None:
        """Warm the cache from every Admin API collection once.

        Raises :class:`ClusterNotSyncedError` when any collection cannot be
        listed or ``stop`` is set midway; a later call retries.
        """
        with self._sync_lock:
            if self._synced:
                return
            fresh: dict[str, dict[str, GatewayResource]] = {}
            for client in self.resource_clients():
                if stop is not None and stop.is_set():
                    raise ClusterNotSyncedError(f"sync of cluster {self.name} cancelled")
                try:
                    objects = client.list()
                except ApisixError as exc:
                    raise ClusterNotSyncedError(
                        f"failed to list {client.kind} from cluster {self.name}: {exc}"
                    ) from exc
                fresh[client.kind] = {obj.id: obj for obj in objects}
            with self._cache_lock:
                self._cache = fresh
            self._synced = True
            LOGGER.info(
                "Cluster %s cache synced (%s)",
                self.name,
                ", ".join(f"{kind}={len(objs)}" for kind, objs in fresh.items()),
            )

    def invalidate(self) -> None:
        """Forget the warmed cache so the next :meth:`has_synced` lists again."""
        with self._sync_lock:
            self._synced = False

    @property
    def synced(self) -> bool:
        return self._synced

    def _probe_address(self) -> tuple[str, int]:
        parts = urlsplit(self.options.base_url)
        host = parts.hostname or "127.0.0.1"
        port = parts.port or (443 if parts.scheme == "https" else 80)
        return host, port

    def health_check(self, stop: threading.Event | None = None) -> None:
        """TCP-probe the Admin API host, retrying a few times before giving up."""
        stop = stop or threading.Event()
        last_error: OSError | None = None
        for attempt in range(1, HEALTH_PROBE_ATTEMPTS + 1):
            try:
                with socket.create_connection(
                    self._probe_address(), timeout=HEALTH_PROBE_TIMEOUT_SECONDS
                ):
                    pass
                METRICS.check_cluster_health_total.labels(name=self.name, result="success").inc()
                return
            except OSError as exc:
                last_error = exc
                LOGGER.warning(
                    "Health check for cluster %s failed (attempt %d/%d): %s",
                    self.name,
                    attempt,
                    HEALTH_PROBE_ATTEMPTS,
                    exc,
                )
            if attempt < HEALTH_PROBE_ATTEMPTS and stop.wait(timeout=HEALTH_PROBE_INTERVAL_SECONDS):
                break
        METRICS.check_cluster_health_total.labels(name=self.name, result="failure").inc()
        raise ApisixError(f"cluster {self.name} is unhealthy: {last_error}")


def _identity(name: str) -> str:
    return name


class ApisixRegistry:
    """Named gateway clusters known to this process."""

    def __init__(self, session_factory: Callable[[], requests.Session] = requests.Session) -> None:
        self._clusters: dict[str, Cluster] = {}
        self._lock = threading.Lock()
        self._session_factory = session_factory

    def add_cluster(self, options: ClusterOptions) -> Cluster:
        with self._lock:
            if options.name in self._clusters:
                raise DuplicatedClusterError(f"cluster {options.name} already exists")
            cluster = Cluster(options, session=self._session_factory())
            self._clusters[options.name] = cluster
            return cluster

    def update_cluster(self, options: ClusterOptions) -> Cluster:
        """Re-point an existing cluster in place (or add it), keeping its cache.

        Controllers hold a reference to the :class:`Cluster`, so an Admin API
        address or key change must not swap the object out from under them.
        """
        with self._lock:
            existing = self._clusters.get(options.name)
            if existing is not None:
                existing.reconfigure(options)
                return existing
            cluster = Cluster(options, session=self._session_factory())
            self._clusters[options.name] = cluster
            return cluster

    def cluster(self, name: str) -> Cluster:
        with self._lock:
            try:
                return self._clusters[name]
            except KeyError:
                raise NotFoundError(f"cluster {name} is not registered") from None
