from __future__ import annotations

import logging

from apisix_ingress.src.apisix import Cluster, NotFoundError
from apisix_ingress.src.apisix_types import compose_plugin_config_name
from apisix_ingress.src.controller import ResourceController, crd_class_matches
from apisix_ingress.src.events import Event, EventDelete, EventUpdate
from apisix_ingress.src.indexes import ReferenceIndex, WatchingNamespaces
from apisix_ingress.src.informer import Obj, WatchCache, meta_key
from apisix_ingress.src.manifest import Manifest, sync_manifests
from apisix_ingress.src.status import StatusRecorder
from apisix_ingress.src.translate_apisix import ApisixRouteTranslator
from apisix_ingress.src.translation import TranslateError, metadata, spec


def route_references(ar: Obj, external_upstreams: bool = True) -> tuple[set[str], set[str]]:
    """Return the ``namespace/name`` keys an ApisixRoute depends on.

    The first set holds backend Services and ApisixUpstreams (both share the
    service's name), the second the ApisixPluginConfigs.
    """
    ns = metadata(ar).get("namespace", "")
    services: set[str] = set()
    plugin_configs: set[str] = set()
    for part in spec(ar).get("http") or []:
        for backend in part.get("backends") or []:
            if backend.get("serviceName"):
                services.add(f"{ns}/{backend['serviceName']}")
        if external_upstreams:
            for ref in part.get("upstreams") or []:
                if ref.get("name"):
                    services.add(f"{ns}/{ref['name']}")
        if part.get("plugin_config_name"):
            plugin_configs.add(f"{ns}/{part['plugin_config_name']}")
    for part in spec(ar).get("stream") or []:
        backend = part.get("backend") or {}
        if backend.get("serviceName"):
            services.add(f"{ns}/{backend['serviceName']}")
    return services, plugin_configs


class ApisixRouteController(ResourceController):
    """Reconciles ApisixRoute objects into routes, stream routes and upstreams.

    Besides its own cache it listens to Services, ApisixUpstreams and
    ApisixPluginConfigs, re-syncing every route that references the changed
    object so dependencies created out of order converge.
    """

    kind = "ApisixRoute"

    def __init__(
        self,
        cache: WatchCache,
        cluster: Cluster,
        namespaces: WatchingNamespaces,
        translator: ApisixRouteTranslator,
        ingress_class: str = "apisix",
        status: StatusRecorder | None = None,
        workers: int = 1,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(cache, cluster, namespaces, status, workers, logger)
        self.translator = translator
        self.ingress_class = ingress_class
        self.service_refs = ReferenceIndex()
        self.plugin_config_refs = ReferenceIndex()

    def is_effective(self, obj: Obj) -> bool:
        return crd_class_matches(obj, self.ingress_class)

    def watch_services(self, services: WatchCache) -> None:
        services.add_handler(on_add=lambda svc: self._requeue(self.service_refs, svc))

    def watch_apisix_upstreams(self, apisix_upstreams: WatchCache) -> None:
        apisix_upstreams.add_handler(
            on_add=lambda au: self._requeue(self.service_refs, au),
            on_update=lambda _old, au: self._requeue(self.service_refs, au),
            on_delete=lambda au: self._requeue(self.service_refs, au),
        )

    def watch_plugin_configs(self, plugin_configs: WatchCache) -> None:
        plugin_configs.add_handler(
            on_add=lambda apc: self._requeue(self.plugin_config_refs, apc),
            on_update=lambda _old, apc: self._requeue(self.plugin_config_refs, apc),
        )

    def _requeue(self, index: ReferenceIndex, obj: Obj) -> None:
        for key in index.lookup(meta_key(obj)):
            self.enqueue_sync(key)

    def check_plugin_configs(self, ar: Obj) -> None:
        """Every ``plugin_config_name`` must already exist on the gateway."""
        ns = metadata(ar).get("namespace", "")
        for part in spec(ar).get("http") or []:
            name = part.get("plugin_config_name")
            if not name:
                continue
            try:
                self.cluster.plugin_config.get(compose_plugin_config_name(ns, name))
            except NotFoundError:
                raise TranslateError(
                    "spec.http.plugin_config_name", f"ApisixPluginConfig {ns}/{name} not found"
                ) from None

    def reconcile(self, event: Event, obj: Obj) -> None:
        if isinstance(event, EventDelete):
            self.service_refs.remove(event.key)
            self.plugin_config_refs.remove(event.key)
            marks = self.translator.delete_marks(obj)
            sync_manifests(self.cluster, None, None, marks.to_manifest())
            return

        services, plugin_configs = route_references(
            obj, self.translator.supports_external_upstreams
        )
        self.service_refs.set(event.key, services)
        self.plugin_config_refs.set(event.key, plugin_configs)

        self.check_plugin_configs(obj)
        manifest = self.translator.translate(obj).to_manifest()
        if isinstance(event, EventUpdate):
            old = self.translator.translate_old(event.old).to_manifest()
            added, updated, deleted = manifest.diff(old)
        else:
            added, updated, deleted = manifest, None, None
        self.logger.debug("Syncing ApisixRoute %s (%s)", event.key, type(event).__name__)
        sync_manifests(self.cluster, added, updated, deleted)

    def owned(self, obj: Obj) -> Manifest:
        return self.translator.translate_old(obj).to_manifest()
