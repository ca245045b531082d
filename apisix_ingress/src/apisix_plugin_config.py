from __future__ import annotations

import logging

from apisix_ingress.src.apisix import Cluster
from apisix_ingress.src.controller import ResourceController, crd_class_matches
from apisix_ingress.src.events import Event, EventDelete, EventUpdate
from apisix_ingress.src.indexes import WatchingNamespaces
from apisix_ingress.src.informer import Obj, WatchCache
from apisix_ingress.src.manifest import sync_manifests
from apisix_ingress.src.status import StatusRecorder
from apisix_ingress.src.translate_apisix import plugin_config_delete_mark, translate_plugin_config
from apisix_ingress.src.translation import TranslateContext, TranslateError, Translator


class ApisixPluginConfigController(ResourceController):
    """ApisixPluginConfig to gateway PluginConfig.

    Deleting a plugin config that a route still points at is refused by
    the gateway; the delete fails and is retried until no route uses it.
    """

    kind = "ApisixPluginConfig"

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

    def _translate_old(self, apc: Obj) -> TranslateContext:
        try:
            return translate_plugin_config(self.translator, apc)
        except TranslateError:
            return plugin_config_delete_mark(apc)

    def reconcile(self, event: Event, obj: Obj) -> None:
        if isinstance(event, EventDelete):
            sync_manifests(self.cluster, None, None, plugin_config_delete_mark(obj).to_manifest())
            return
        manifest = translate_plugin_config(self.translator, obj).to_manifest()
        if isinstance(event, EventUpdate):
            added, updated, deleted = manifest.diff(self._translate_old(event.old).to_manifest())
        else:
            added, updated, deleted = manifest, None, None
        sync_manifests(self.cluster, added, updated, deleted)
