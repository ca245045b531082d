from __future__ import annotations

from typing import Any
from unittest.mock import MagicMock

import pytest

from apisix_ingress.src.apisix import ApisixRegistry, ClusterOptions
from apisix_ingress.src.config import APISIX_V2BETA3, INGRESS_V1BETA1, ControllerConfig
from apisix_ingress.src.graph import ControllerGraph, build_graph
from apisix_ingress.src.indexes import WatchingNamespaces

BASE_CACHES = [
    "Service",
    "Secret",
    "Pod",
    "Endpoints",
    "ApisixRoute",
    "ApisixUpstream",
    "ApisixTls",
    "ApisixConsumer",
    "ApisixPluginConfig",
    "ApisixClusterConfig",
    "Ingress",
]
BASE_CONTROLLERS = [
    "ApisixRoute",
    "ApisixUpstream",
    "ApisixTls",
    "Secret",
    "ApisixConsumer",
    "ApisixPluginConfig",
    "ApisixClusterConfig",
    "Ingress",
    "Endpoints",
]


def _build(
    namespaces: WatchingNamespaces | None = None, **overrides: Any
) -> tuple[ControllerGraph, MagicMock]:
    clients = MagicMock()
    registry = ApisixRegistry(session_factory=MagicMock)
    cluster = registry.add_cluster(ClusterOptions(name="default", base_url="http://apisix"))
    graph = build_graph(
        ControllerConfig(**overrides),
        clients,
        cluster,
        registry,
        namespaces or WatchingNamespaces(),
    )
    return graph, clients


def _shutdown(graph: ControllerGraph) -> None:
    for controller in graph.controllers:
        controller.queue.shutdown()


def test_default_graph() -> None:
    graph, clients = _build()

    assert [cache.kind for cache in graph.caches] == BASE_CACHES
    assert [controller.kind for controller in graph.controllers] == BASE_CONTROLLERS
    ingress_cache = graph.caches[BASE_CACHES.index("Ingress")]
    assert ingress_cache.list_fn is clients.networking.list_ingress_for_all_namespaces
    route_cache = graph.caches[BASE_CACHES.index("ApisixRoute")]
    assert route_cache.list_fn is clients.custom.list_cluster_custom_object
    assert route_cache.list_kwargs == {
        "group": "apisix.apache.org",
        "version": "v2",
        "plural": "apisixroutes",
    }
    assert not graph.caches_synced()
    _shutdown(graph)


def test_namespace_selectors_add_namespace_cache_and_controller() -> None:
    graph, clients = _build(WatchingNamespaces(selectors={"team": "edge", "env": "prod"}))

    assert graph.caches[0].kind == "Namespace"
    assert graph.caches[0].list_fn is clients.core.list_namespace
    assert graph.caches[0].list_kwargs == {"label_selector": "env=prod,team=edge"}
    assert graph.controllers[-1].kind == "Namespace"
    assert len(graph.controllers) == len(BASE_CONTROLLERS) + 1
    _shutdown(graph)


def test_endpoint_slices_replace_endpoints() -> None:
    graph, clients = _build(use_endpoint_slices=True)

    kinds = [cache.kind for cache in graph.caches]
    assert "Endpoints" not in kinds
    slice_cache = graph.caches[kinds.index("EndpointSlice")]
    assert slice_cache.list_fn is clients.discovery.list_endpoint_slice_for_all_namespaces
    assert "EndpointSlice" in [controller.kind for controller in graph.controllers]
    _shutdown(graph)


@pytest.mark.parametrize(
    ("overrides", "kind", "expected"),
    [
        (
            {"enable_gateway_api": True},
            "Gateway",
            {"group": "gateway.networking.k8s.io", "version": "v1beta1", "plural": "gateways"},
        ),
        (
            {"ingress_version": INGRESS_V1BETA1},
            "Ingress",
            {"group": "networking.k8s.io", "version": "v1beta1", "plural": "ingresses"},
        ),
        (
            {"apisix_version": APISIX_V2BETA3},
            "ApisixTls",
            {"group": "apisix.apache.org", "version": "v2beta3", "plural": "apisixtlses"},
        ),
    ],
)
def test_custom_resource_variants(
    overrides: dict[str, Any], kind: str, expected: dict[str, str]
) -> None:
    graph, clients = _build(**overrides)

    cache = next(cache for cache in graph.caches if cache.kind == kind)
    assert cache.list_fn is clients.custom.list_cluster_custom_object
    assert cache.list_kwargs == expected
    _shutdown(graph)


def test_gateway_controller_only_with_gateway_api() -> None:
    graph, _ = _build(enable_gateway_api=True)
    assert graph.controllers[-1].kind == "Gateway"
    _shutdown(graph)
