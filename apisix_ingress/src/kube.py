from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from kubernetes import client, config
from kubernetes.client import (
    CoordinationV1Api,
    CoreV1Api,
    CustomObjectsApi,
    DiscoveryV1Api,
    NetworkingV1Api,
)
from kubernetes.config.config_exception import ConfigException

from apisix_ingress.src.config import APISIX_V2

LOGGER = logging.getLogger(__name__)

APISIX_GROUP = "apisix.apache.org"
GATEWAY_GROUP = "gateway.networking.k8s.io"
NETWORKING_GROUP = "networking.k8s.io"


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


@dataclass(frozen=True)
class KubeClients:
    core: CoreV1Api
    custom: CustomObjectsApi
    networking: NetworkingV1Api
    discovery: DiscoveryV1Api
    coordination: CoordinationV1Api


def build_clients() -> KubeClients:
    """Return the API clients the controller uses, bound to the active kube configuration."""
    return KubeClients(
        core=client.CoreV1Api(),
        custom=client.CustomObjectsApi(),
        networking=client.NetworkingV1Api(),
        discovery=client.DiscoveryV1Api(),
        coordination=client.CoordinationV1Api(),
    )


@dataclass(frozen=True)
class CustomResource:
    """Coordinates of a resource served through ``CustomObjectsApi``."""

    group: str
    version: str
    plural: str
    namespaced: bool = True

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}"

    def list_kwargs(self) -> dict[str, str]:
        return {"group": self.group, "version": self.version, "plural": self.plural}


def apisix_resources(apisix_version: str = APISIX_V2) -> dict[str, CustomResource]:
    """ApisixXxx kinds at the configured schema generation, keyed by kind."""
    version = apisix_version.rpartition("/")[2]
    return {
        "ApisixRoute": CustomResource(APISIX_GROUP, version, "apisixroutes"),
        "ApisixUpstream": CustomResource(APISIX_GROUP, version, "apisixupstreams"),
        "ApisixTls": CustomResource(APISIX_GROUP, version, "apisixtlses"),
        "ApisixConsumer": CustomResource(APISIX_GROUP, version, "apisixconsumers"),
        "ApisixPluginConfig": CustomResource(APISIX_GROUP, version, "apisixpluginconfigs"),
        "ApisixClusterConfig": CustomResource(
            APISIX_GROUP, version, "apisixclusterconfigs", namespaced=False
        ),
    }


GATEWAY_RESOURCE = CustomResource(GATEWAY_GROUP, "v1beta1", "gateways")
INGRESS_V1BETA1_RESOURCE = CustomResource(NETWORKING_GROUP, "v1beta1", "ingresses")


def patch_custom_status(
    custom_api: CustomObjectsApi,
    resource: CustomResource,
    namespace: str,
    name: str,
    status: dict[str, Any],
) -> None:
    """Merge-patch the ``status`` subresource of a custom object."""
    body = {"status": status}
    if resource.namespaced:
        custom_api.patch_namespaced_custom_object_status(
            group=resource.group,
            version=resource.version,
            namespace=namespace,
            plural=resource.plural,
            name=name,
            body=body,
        )
    else:
        custom_api.patch_cluster_custom_object_status(
            group=resource.group,
            version=resource.version,
            plural=resource.plural,
            name=name,
            body=body,
        )


def create_event(core_api: CoreV1Api, namespace: str, body: dict[str, Any]) -> None:
    core_api.create_namespaced_event(namespace=namespace, body=body)
