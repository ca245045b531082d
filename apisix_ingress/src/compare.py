from __future__ import annotations

import logging
from collections.abc import Iterable

from apisix_ingress.src.apisix import Cluster
from apisix_ingress.src.apisix_types import SSL, Consumer, Route, StreamRoute, Upstream
from apisix_ingress.src.controller import ResourceController
from apisix_ingress.src.manifest import Manifest, sync_manifests

LOGGER = logging.getLogger(__name__)

# Manifest field -> gateway kind; plugin configs and global rules are left alone.
COMPARED_KINDS = {
    "routes": Route.kind,
    "stream_routes": StreamRoute.kind,
    "upstreams": Upstream.kind,
    "ssls": SSL.kind,
    "consumers": Consumer.kind,
}


def wanted_ids(controllers: Iterable[ResourceController]) -> dict[str, set[str]]:
    """Ids of every gateway object some cached, watched resource translates to."""
    wanted: dict[str, set[str]] = {attr: set() for attr in COMPARED_KINDS}
    for controller in controllers:
        for obj in controller.cache.list():
            if not controller.accepts(obj):
                continue
            manifest = controller.owned(obj)
            if manifest is None:
                continue
            for attr, ids in wanted.items():
                ids.update(resource.id for resource in getattr(manifest, attr))
    return wanted


def compare_resources(cluster: Cluster, controllers: Iterable[ResourceController]) -> Manifest:
    """Delete gateway objects left behind by resources removed while no leader ran.

    Runs once the watch caches hold their initial lists and before any
    controller starts.  Returns what was found redundant; a failed delete
    surfaces as :class:`~apisix_ingress.src.manifest.SyncError`.
    """
    wanted = wanted_ids(controllers)
    redundant = Manifest(
        **{
            attr: [obj for obj in cluster.cached(kind) if obj.id not in wanted[attr]]
            for attr, kind in COMPARED_KINDS.items()
        }
    )
    if redundant.is_empty():
        LOGGER.info("Gateway cluster %s holds no orphaned objects", cluster.name)
        return redundant
    for attr in COMPARED_KINDS:
        for obj in getattr(redundant, attr):
            LOGGER.info("Removing orphaned %s %s (id=%s)", obj.kind, obj.name, obj.id)
    sync_manifests(cluster, None, None, redundant)
    return redundant
