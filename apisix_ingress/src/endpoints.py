from __future__ import annotations

import logging

from apisix_ingress.src.apisix import Cluster
from apisix_ingress.src.apisix_types import Upstream, compose_upstream_name, upstream_name_pattern
from apisix_ingress.src.controller import ResourceController
from apisix_ingress.src.events import Event
from apisix_ingress.src.indexes import WatchingNamespaces, split_meta_key
from apisix_ingress.src.informer import Obj, WatchCache
from apisix_ingress.src.manifest import sync_upstream_nodes
from apisix_ingress.src.translation import (
    SERVICE_NAME_LABEL,
    ServiceNotFoundError,
    Translator,
    metadata,
    spec,
)


class EndpointsController(ResourceController):
    """Keeps upstream node lists in step with a Service's ready endpoints.

    Events only carry the ``namespace/service`` key: every sync recomputes
    the nodes from the current Service, endpoints and ApisixUpstream
    subsets, so a late or duplicated event converges to the same state.
    Only ``nodes`` is ever written; every other upstream field belongs to
    the route and ApisixUpstream controllers.
    """

    kind = "Endpoints"
    records_status = False

    def __init__(
        self,
        cache: WatchCache,
        cluster: Cluster,
        namespaces: WatchingNamespaces,
        translator: Translator,
        workers: int = 1,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(cache, cluster, namespaces, None, workers, logger)
        self.translator = translator

    def sync(self, event: Event) -> None:
        try:
            namespace, service = split_meta_key(event.key)
        except ValueError:
            self.logger.error("Found %s with invalid meta key %r, dropping", self.kind, event.key)
            return
        self.sync_service(namespace, service)

    def sync_service(self, namespace: str, service: str) -> None:
        try:
            svc = self.translator.get_service(namespace, service)
        except ServiceNotFoundError:
            self._clear_nodes(namespace, service)
            return

        subsets: list[tuple[str, dict[str, str] | None]] = [("", None)]
        au = self.translator.get_apisix_upstream(namespace, service)
        if au is not None:
            for subset in spec(au).get("subsets") or []:
                subsets.append((subset.get("name", ""), subset.get("labels") or {}))

        for svc_port in spec(svc).get("ports") or []:
            port = int(svc_port["port"])
            for subset, labels in subsets:
                nodes = self.translator.translate_endpoint_nodes(namespace, service, port, labels)
                name = compose_upstream_name(namespace, service, subset, port)
                sync_upstream_nodes(self.cluster, name, nodes)

    def _clear_nodes(self, namespace: str, service: str) -> None:
        """The Service is gone: empty every gateway upstream still built from it."""
        pattern = upstream_name_pattern(namespace, service)
        for ups in self.cluster.cached(Upstream.kind):
            if isinstance(ups, Upstream) and pattern.match(ups.name) and ups.nodes:
                sync_upstream_nodes(self.cluster, ups.name, [])


class EndpointSliceController(EndpointsController):
    """Same reconciliation, fed by EndpointSlices grouped under their Service."""

    kind = "EndpointSlice"

    def key_for(self, obj: Obj) -> str:
        meta = metadata(obj)
        service = (meta.get("labels") or {}).get(SERVICE_NAME_LABEL, "")
        return f"{meta.get('namespace', '')}/{service}"

    def accepts(self, obj: Obj) -> bool:
        labels = metadata(obj).get("labels") or {}
        return bool(labels.get(SERVICE_NAME_LABEL)) and super().accepts(obj)
