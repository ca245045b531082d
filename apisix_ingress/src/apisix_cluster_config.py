from __future__ import annotations

import logging

from apisix_ingress.src.apisix import ApisixRegistry, Cluster, ClusterOptions
from apisix_ingress.src.controller import ResourceController
from apisix_ingress.src.events import Event, EventDelete, EventUpdate
from apisix_ingress.src.indexes import WatchingNamespaces
from apisix_ingress.src.informer import Obj, WatchCache
from apisix_ingress.src.manifest import Manifest, sync_manifests
from apisix_ingress.src.status import StatusRecorder
from apisix_ingress.src.translate_apisix import translate_cluster_config
from apisix_ingress.src.translation import metadata, spec


class ApisixClusterConfigController(ResourceController):
    """Applies the cluster-scoped ApisixClusterConfig named after the gateway cluster.

    ``spec.admin`` re-points the registered cluster at another Admin API;
    ``spec.monitoring`` becomes a GlobalRule.  Deleting the object leaves
    the gateway untouched.
    """

    kind = "ApisixClusterConfig"

    def __init__(
        self,
        cache: WatchCache,
        cluster: Cluster,
        namespaces: WatchingNamespaces,
        registry: ApisixRegistry,
        status: StatusRecorder | None = None,
        workers: int = 1,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(cache, cluster, namespaces, status, workers, logger)
        self.registry = registry

    def is_effective(self, obj: Obj) -> bool:
        return metadata(obj).get("name") == self.cluster.name

    def reconcile(self, event: Event, obj: Obj) -> None:
        if isinstance(event, EventDelete):
            self.logger.warning(
                "ApisixClusterConfig %s deleted, leaving gateway configuration in place",
                event.key,
            )
            return

        admin = spec(obj).get("admin") or {}
        if admin.get("baseURL"):
            self.registry.update_cluster(
                ClusterOptions(
                    name=self.cluster.name,
                    base_url=admin["baseURL"].rstrip("/"),
                    admin_key=admin.get("adminKey") or "",
                    timeout_seconds=self.cluster.options.timeout_seconds,
                )
            )

        manifest = Manifest(global_rules=[translate_cluster_config(obj)])
        if isinstance(event, EventUpdate):
            sync_manifests(self.cluster, None, manifest, None)
        else:
            sync_manifests(self.cluster, manifest, None, None)
