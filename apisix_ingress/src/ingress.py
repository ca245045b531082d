from __future__ import annotations

import logging

from apisix_ingress.src.apisix import Cluster
from apisix_ingress.src.controller import ResourceController
from apisix_ingress.src.events import Event, EventDelete, EventUpdate
from apisix_ingress.src.indexes import ReferenceIndex, WatchingNamespaces
from apisix_ingress.src.informer import Obj, WatchCache, meta_key
from apisix_ingress.src.manifest import Manifest, sync_manifests
from apisix_ingress.src.status import StatusRecorder
from apisix_ingress.src.translate_ingress import (
    IngressTranslator,
    ingress_class_matches,
    ingress_service_keys,
)


class IngressController(ResourceController):
    """Reconciles Ingress objects of the configured class.

    Routes whose backend Service appears later are picked up through the
    service index instead of waiting for the next Ingress change.
    """

    kind = "Ingress"

    def __init__(
        self,
        cache: WatchCache,
        cluster: Cluster,
        namespaces: WatchingNamespaces,
        translator: IngressTranslator,
        ingress_class: str = "apisix",
        status: StatusRecorder | None = None,
        workers: int = 1,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(cache, cluster, namespaces, status, workers, logger)
        self.translator = translator
        self.ingress_class = ingress_class
        self.service_refs = ReferenceIndex()

    def is_effective(self, obj: Obj) -> bool:
        return ingress_class_matches(obj, self.ingress_class)

    def watch_services(self, services: WatchCache) -> None:
        services.add_handler(on_add=self._on_service_add)

    def _on_service_add(self, svc: Obj) -> None:
        for key in self.service_refs.lookup(meta_key(svc)):
            self.enqueue_sync(key)

    def reconcile(self, event: Event, obj: Obj) -> None:
        if isinstance(event, EventDelete):
            self.service_refs.remove(event.key)
            marks = self.translator.translate(obj, skip_verify=True)
            sync_manifests(self.cluster, None, None, marks.to_manifest())
            return

        self.service_refs.set(event.key, ingress_service_keys(obj, type(self.translator)))
        manifest = self.translator.translate(obj).to_manifest()
        if isinstance(event, EventUpdate):
            old = self.translator.translate_old(event.old).to_manifest()
            added, updated, deleted = manifest.diff(old)
        else:
            added, updated, deleted = manifest, None, None
        sync_manifests(self.cluster, added, updated, deleted)

    def owned(self, obj: Obj) -> Manifest:
        return self.translator.translate_old(obj).to_manifest()
