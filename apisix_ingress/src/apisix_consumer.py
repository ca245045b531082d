from __future__ import annotations

import logging

from apisix_ingress.src.apisix import Cluster
from apisix_ingress.src.config import APISIX_V2
from apisix_ingress.src.controller import ResourceController, crd_class_matches
from apisix_ingress.src.events import Event, EventDelete
from apisix_ingress.src.indexes import WatchingNamespaces
from apisix_ingress.src.informer import Obj, WatchCache
from apisix_ingress.src.manifest import Manifest, sync_manifests
from apisix_ingress.src.status import StatusRecorder
from apisix_ingress.src.translate_apisix import consumer_delete_mark, translate_consumer
from apisix_ingress.src.translation import Translator


class ApisixConsumerController(ResourceController):
    kind = "ApisixConsumer"

    def __init__(
        self,
        cache: WatchCache,
        cluster: Cluster,
        namespaces: WatchingNamespaces,
        translator: Translator,
        apisix_version: str = APISIX_V2,
        ingress_class: str = "apisix",
        status: StatusRecorder | None = None,
        workers: int = 1,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(cache, cluster, namespaces, status, workers, logger)
        self.translator = translator
        self.apisix_version = apisix_version
        self.ingress_class = ingress_class

    def is_effective(self, obj: Obj) -> bool:
        return crd_class_matches(obj, self.ingress_class)

    def reconcile(self, event: Event, obj: Obj) -> None:
        if isinstance(event, EventDelete):
            mark = consumer_delete_mark(obj)
            sync_manifests(self.cluster, None, None, Manifest(consumers=[mark]))
            return
        consumer = translate_consumer(self.translator, obj, self.apisix_version)
        sync_manifests(self.cluster, None, Manifest(consumers=[consumer]), None)

    def owned(self, obj: Obj) -> Manifest:
        return Manifest(consumers=[consumer_delete_mark(obj)])
