from __future__ import annotations

import logging

from apisix_ingress.src.apisix import Cluster, NotFoundError
from apisix_ingress.src.apisix_types import (
    Upstream,
    compose_external_upstream_name,
    gen_id,
    upstream_name_pattern,
)
from apisix_ingress.src.controller import ResourceController, crd_class_matches
from apisix_ingress.src.events import Event, EventDelete
from apisix_ingress.src.indexes import WatchingNamespaces
from apisix_ingress.src.informer import Obj, WatchCache
from apisix_ingress.src.manifest import Manifest, sync_manifests
from apisix_ingress.src.status import StatusRecorder
from apisix_ingress.src.translate_apisix import translate_apisix_upstream
from apisix_ingress.src.translation import Translator, metadata, spec


def is_external(au: Obj) -> bool:
    au_spec = spec(au)
    return bool(au_spec.get("externalNodes") or au_spec.get("discovery"))


class ApisixUpstreamController(ResourceController):
    """Applies ApisixUpstream settings to the gateway upstreams of a Service.

    Only configuration is written here.  The node list of a Service-backed
    upstream is owned by endpoint reconciliation, so it is carried over
    from the gateway's current object on every update.
    """

    kind = "ApisixUpstream"

    def __init__(
        self,
        cache: WatchCache,
        cluster: Cluster,
        namespaces: WatchingNamespaces,
        translator: Translator,
        ingress_class: str = "apisix",
        status: StatusRecorder | None = None,
        workers: int = 1,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(cache, cluster, namespaces, status, workers, logger)
        self.translator = translator
        self.ingress_class = ingress_class

    def is_effective(self, obj: Obj) -> bool:
        return crd_class_matches(obj, self.ingress_class)

    def reconcile(self, event: Event, obj: Obj) -> None:
        meta = metadata(obj)
        ns, name = meta.get("namespace", ""), meta.get("name", "")

        if is_external(obj):
            if isinstance(event, EventDelete):
                mark = Upstream(name=compose_external_upstream_name(ns, name))
                mark.id = gen_id(mark.name)
                sync_manifests(self.cluster, None, None, Manifest(upstreams=[mark]))
                return
            ctx = translate_apisix_upstream(self.translator, obj)
            sync_manifests(self.cluster, None, Manifest(upstreams=ctx.upstreams), None)
            return

        if isinstance(event, EventDelete):
            self._reset(ns, name)
            return

        updates: list[Upstream] = []
        for ups in translate_apisix_upstream(self.translator, obj).upstreams:
            try:
                current = self.cluster.upstream.get(ups.name)
            except NotFoundError:
                self.logger.debug("Upstream %s not created yet, skipping", ups.name)
                continue
            ups.nodes = current.nodes
            if ups != current:
                updates.append(ups)
        if updates:
            sync_manifests(self.cluster, None, Manifest(upstreams=updates), None)

    def _reset(self, ns: str, name: str) -> None:
        """Drop the ApisixUpstream settings, keeping identity and nodes."""
        pattern = upstream_name_pattern(ns, name, include_service_granularity=True)
        resets: list[Upstream] = []
        for current in self.cluster.cached(Upstream.kind):
            if not isinstance(current, Upstream) or not pattern.match(current.name):
                continue
            resets.append(
                Upstream(
                    id=current.id,
                    name=current.name,
                    labels=current.labels,
                    nodes=current.nodes,
                )
            )
        if resets:
            sync_manifests(self.cluster, None, Manifest(upstreams=resets), None)
