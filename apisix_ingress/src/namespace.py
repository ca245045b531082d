from __future__ import annotations

import logging
from collections.abc import Iterable

from kubernetes.client import CoreV1Api

from apisix_ingress.src.apisix import Cluster
from apisix_ingress.src.controller import ResourceController
from apisix_ingress.src.events import Event, EventDelete
from apisix_ingress.src.indexes import WatchingNamespaces
from apisix_ingress.src.informer import Obj, WatchCache, to_dict
from apisix_ingress.src.translation import metadata


def label_selector(selectors: dict[str, str]) -> str:
    return ",".join(f"{key}={value}" for key, value in sorted(selectors.items()))


def prime_namespaces(core_api: CoreV1Api, namespaces: WatchingNamespaces) -> frozenset[str]:
    """Fill the selector-driven namespace set before any other cache starts.

    Objects in a namespace missing from the set are dropped by every controller.
    """
    if not namespaces.uses_selectors:
        return namespaces.snapshot()
    listed = to_dict(core_api.list_namespace(label_selector=label_selector(namespaces.selectors)))
    names = [
        metadata(item).get("name", "")
        for item in listed.get("items") or []
        if namespaces.matches_labels(metadata(item).get("labels"))
    ]
    namespaces.replace(names)
    return namespaces.snapshot()


class NamespaceController(ResourceController):
    """Maintains the selector-driven set of watched namespaces.

    When a namespace starts matching, every dependent controller re-syncs
    the objects it already holds for that namespace.
    """

    kind = "Namespace"
    records_status = False

    def __init__(
        self,
        cache: WatchCache,
        cluster: Cluster,
        namespaces: WatchingNamespaces,
        dependents: Iterable[ResourceController] = (),
        workers: int = 1,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(cache, cluster, namespaces, None, workers, logger)
        self.dependents = list(dependents)

    def accepts(self, obj: Obj) -> bool:
        return self.namespaces.uses_selectors

    def reconcile(self, event: Event, obj: Obj) -> None:
        name = metadata(obj).get("name", "")
        if isinstance(event, EventDelete):
            self.namespaces.remove(name)
            self.logger.info("Namespace %s deleted, no longer watched", name)
            return
        if not self.namespaces.matches_labels(metadata(obj).get("labels")):
            if self.namespaces.is_watching(name):
                self.logger.info("Namespace %s no longer matches selectors", name)
            self.namespaces.remove(name)
            return
        if self.namespaces.is_watching(name):
            return
        self.namespaces.add(name)
        queued = sum(controller.resync(name) for controller in self.dependents)
        self.logger.info("Namespace %s now watched, queued %d object(s) for sync", name, queued)
