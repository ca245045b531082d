from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from apisix_ingress.src.apisix import ApisixRegistry, Cluster
from apisix_ingress.src.apisix_cluster_config import ApisixClusterConfigController
from apisix_ingress.src.apisix_consumer import ApisixConsumerController
from apisix_ingress.src.apisix_plugin_config import ApisixPluginConfigController
from apisix_ingress.src.apisix_route import ApisixRouteController
from apisix_ingress.src.apisix_tls import ApisixTlsController
from apisix_ingress.src.apisix_upstream import ApisixUpstreamController
from apisix_ingress.src.config import INGRESS_V1BETA1, ControllerConfig
from apisix_ingress.src.controller import ResourceController
from apisix_ingress.src.endpoints import EndpointsController, EndpointSliceController
from apisix_ingress.src.gateway import GatewayController
from apisix_ingress.src.indexes import SecretReferenceIndex, WatchingNamespaces
from apisix_ingress.src.informer import WatchCache
from apisix_ingress.src.ingress import IngressController
from apisix_ingress.src.kube import (
    GATEWAY_RESOURCE,
    INGRESS_V1BETA1_RESOURCE,
    CustomResource,
    KubeClients,
    apisix_resources,
)
from apisix_ingress.src.namespace import NamespaceController, label_selector
from apisix_ingress.src.secret import SecretController
from apisix_ingress.src.status import StatusRecorder
from apisix_ingress.src.translate_apisix import route_translator_for
from apisix_ingress.src.translate_ingress import ingress_translator_for
from apisix_ingress.src.translation import EndpointSliceSource, EndpointsSource, Translator

LOGGER = logging.getLogger(__name__)


@dataclass
class ControllerGraph:
    """Everything one leader epoch runs: the caches first, then the controllers."""

    caches: list[WatchCache] = field(default_factory=list)
    controllers: list[ResourceController] = field(default_factory=list)

    def caches_synced(self) -> bool:
        return all(cache.has_synced() for cache in self.caches)


def _custom_cache(clients: KubeClients, kind: str, resource: CustomResource) -> WatchCache:
    return WatchCache(kind, clients.custom.list_cluster_custom_object, resource.list_kwargs())


def build_graph(
    cfg: ControllerConfig,
    clients: KubeClients,
    cluster: Cluster,
    registry: ApisixRegistry,
    namespaces: WatchingNamespaces,
    is_leader: Callable[[], bool] = lambda: True,
) -> ControllerGraph:
    """Build fresh caches and controllers for one leader epoch.

    Nothing here talks to the API server; the caches list and watch only
    once the supervisor runs them.
    """
    graph = ControllerGraph()
    resources = apisix_resources(cfg.apisix_version)
    workers = cfg.workers

    def cache(watch_cache: WatchCache) -> WatchCache:
        graph.caches.append(watch_cache)
        return watch_cache

    namespace_cache: WatchCache | None = None
    if namespaces.uses_selectors:
        namespace_cache = cache(
            WatchCache(
                "Namespace",
                clients.core.list_namespace,
                {"label_selector": label_selector(namespaces.selectors)},
            )
        )
    services = cache(WatchCache("Service", clients.core.list_service_for_all_namespaces))
    secrets = cache(WatchCache("Secret", clients.core.list_secret_for_all_namespaces))
    pods = cache(WatchCache("Pod", clients.core.list_pod_for_all_namespaces))
    if cfg.use_endpoint_slices:
        endpoints = cache(
            WatchCache(
                "EndpointSlice", clients.discovery.list_endpoint_slice_for_all_namespaces
            )
        )
        endpoint_source: EndpointsSource | EndpointSliceSource = EndpointSliceSource(endpoints)
    else:
        endpoints = cache(WatchCache("Endpoints", clients.core.list_endpoints_for_all_namespaces))
        endpoint_source = EndpointsSource(endpoints)

    routes = cache(_custom_cache(clients, "ApisixRoute", resources["ApisixRoute"]))
    upstreams = cache(_custom_cache(clients, "ApisixUpstream", resources["ApisixUpstream"]))
    tlses = cache(_custom_cache(clients, "ApisixTls", resources["ApisixTls"]))
    consumers = cache(_custom_cache(clients, "ApisixConsumer", resources["ApisixConsumer"]))
    plugin_configs = cache(
        _custom_cache(clients, "ApisixPluginConfig", resources["ApisixPluginConfig"])
    )
    cluster_configs = cache(
        _custom_cache(clients, "ApisixClusterConfig", resources["ApisixClusterConfig"])
    )
    if cfg.ingress_version == INGRESS_V1BETA1:
        ingresses = cache(_custom_cache(clients, "Ingress", INGRESS_V1BETA1_RESOURCE))
    else:
        ingresses = cache(
            WatchCache("Ingress", clients.networking.list_ingress_for_all_namespaces)
        )
    gateways: WatchCache | None = None
    if cfg.enable_gateway_api:
        gateways = cache(_custom_cache(clients, "Gateway", GATEWAY_RESOURCE))

    translator = Translator(
        services=services,
        endpoints=endpoint_source,
        secrets=secrets,
        apisix_upstreams=upstreams,
        pods=pods,
    )
    status = StatusRecorder(
        clients,
        resources,
        is_leader=is_leader,
        ingress_addresses=cfg.ingress_status_address,
        ingress_v1beta1=cfg.ingress_version == INGRESS_V1BETA1,
    )
    secret_refs = SecretReferenceIndex()
    ingress_class = cfg.ingress_class

    route_ctl = ApisixRouteController(
        routes,
        cluster,
        namespaces,
        route_translator_for(cfg.apisix_version, translator),
        ingress_class,
        status,
        workers,
    )
    route_ctl.watch_services(services)
    route_ctl.watch_apisix_upstreams(upstreams)
    route_ctl.watch_plugin_configs(plugin_configs)

    ingress_ctl = IngressController(
        ingresses,
        cluster,
        namespaces,
        ingress_translator_for(cfg.ingress_version, translator),
        ingress_class,
        status,
        workers,
    )
    ingress_ctl.watch_services(services)

    endpoints_cls = EndpointSliceController if cfg.use_endpoint_slices else EndpointsController
    controllers: list[ResourceController] = [
        route_ctl,
        ApisixUpstreamController(
            upstreams, cluster, namespaces, translator, ingress_class, status, workers
        ),
        ApisixTlsController(
            tlses, cluster, namespaces, translator, secret_refs, ingress_class, status, workers
        ),
        SecretController(
            secrets, cluster, namespaces, translator, secret_refs, tlses, status, workers
        ),
        ApisixConsumerController(
            consumers,
            cluster,
            namespaces,
            translator,
            cfg.apisix_version,
            ingress_class,
            status,
            workers,
        ),
        ApisixPluginConfigController(
            plugin_configs, cluster, namespaces, translator, ingress_class, status, workers
        ),
        ApisixClusterConfigController(
            cluster_configs, cluster, namespaces, registry, status, workers
        ),
        ingress_ctl,
        endpoints_cls(endpoints, cluster, namespaces, translator, workers),
    ]
    if gateways is not None:
        controllers.append(GatewayController(gateways, cluster, namespaces, status, workers))
    if namespace_cache is not None:
        controllers.append(
            NamespaceController(
                namespace_cache, cluster, namespaces, dependents=list(controllers), workers=workers
            )
        )

    for controller in controllers:
        controller.register()
    graph.controllers = controllers
    LOGGER.info(
        "Built %d watch cache(s) and %d controller(s)", len(graph.caches), len(controllers)
    )
    return graph
