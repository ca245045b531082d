from __future__ import annotations

import ipaddress
import logging
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from typing import Any

from kubernetes.client import ApiException

from apisix_ingress.src.informer import Obj
from apisix_ingress.src.kube import (
    GATEWAY_RESOURCE,
    INGRESS_V1BETA1_RESOURCE,
    CustomResource,
    KubeClients,
    create_event,
    patch_custom_status,
)

LOGGER = logging.getLogger(__name__)

COMPONENT = "ApisixIngress"
EVENT_SOURCE = "apisix-ingress-controller"
CONDITION_TYPE = "ResourcesAvailable"
REASON_SYNCED = "ResourcesSynced"
REASON_SYNC_ABORTED = "ResourceSyncAborted"
SUCCESS_MESSAGE = "Sync Successfully"
EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def build_condition(
    error: BaseException | None,
    generation: int,
    previous: Mapping[str, Any] | None = None,
    condition_type: str = CONDITION_TYPE,
) -> dict[str, Any]:
    """Build a ``metav1.Condition`` dict for one reconcile outcome.

    ``lastTransitionTime`` is carried over from ``previous`` when the
    condition status did not flip.
    """
    status = "False" if error is not None else "True"
    condition = {
        "type": condition_type,
        "status": status,
        "reason": REASON_SYNC_ABORTED if error is not None else REASON_SYNCED,
        "message": str(error) if error is not None else SUCCESS_MESSAGE,
        "observedGeneration": generation,
        "lastTransitionTime": _now(),
    }
    if previous and previous.get("status") == status and previous.get("lastTransitionTime"):
        condition["lastTransitionTime"] = previous["lastTransitionTime"]
    return condition


def find_condition(obj: Obj, condition_type: str = CONDITION_TYPE) -> dict[str, Any] | None:
    for condition in (obj.get("status") or {}).get("conditions") or []:
        if condition.get("type") == condition_type:
            return condition
    return None


def _same_outcome(previous: Mapping[str, Any] | None, condition: Mapping[str, Any]) -> bool:
    if not previous:
        return False
    return all(
        previous.get(field) == condition[field]
        for field in ("status", "reason", "message", "observedGeneration")
    )


class StatusRecorder:
    """Writes reconcile outcomes back to the cluster.

    Each outcome patches a condition on the object's ``status`` and emits a
    Kubernetes Event.  Nothing is written unless ``is_leader()`` holds, so
    standby replicas never fight the leader over status.  API failures are
    logged and swallowed; a status write never fails a reconcile.
    """

    def __init__(
        self,
        clients: KubeClients,
        resources: Mapping[str, CustomResource],
        is_leader: Callable[[], bool] = lambda: True,
        ingress_addresses: tuple[str, ...] = (),
        ingress_v1beta1: bool = False,
    ) -> None:
        self.clients = clients
        self.resources = dict(resources)
        self.is_leader = is_leader
        self.ingress_addresses = ingress_addresses
        self.ingress_v1beta1 = ingress_v1beta1

    def record(self, kind: str, obj: Obj, error: BaseException | None = None) -> None:
        if not self.is_leader():
            return
        try:
            self.record_event(kind, obj, error)
            if kind == "Ingress":
                self._record_ingress(obj, error)
            elif kind == "Gateway":
                self._record_gateway(obj, error)
            elif kind in self.resources:
                self._record_condition(self.resources[kind], obj, error)
        except ApiException as exc:
            metadata = obj.get("metadata") or {}
            LOGGER.error(
                "Failed to record status for %s %s/%s: %s",
                kind,
                metadata.get("namespace", ""),
                metadata.get("name", ""),
                exc,
            )

    def record_event(self, kind: str, obj: Obj, error: BaseException | None) -> None:
        metadata = obj.get("metadata") or {}
        namespace = metadata.get("namespace") or "default"
        if error is None:
            event_type, reason = EVENT_NORMAL, REASON_SYNCED
            message = f"{COMPONENT} synced successfully"
        else:
            event_type, reason = EVENT_WARNING, REASON_SYNC_ABORTED
            message = f"{COMPONENT} synced failed, with error: {error}"
        now = _now()
        body = {
            "metadata": {"generateName": f"{metadata.get('name', 'unknown')}.", "namespace": namespace},
            "involvedObject": {
                "apiVersion": obj.get("apiVersion", ""),
                "kind": kind,
                "name": metadata.get("name", ""),
                "namespace": metadata.get("namespace", ""),
                "uid": metadata.get("uid", ""),
                "resourceVersion": metadata.get("resourceVersion", ""),
            },
            "reason": reason,
            "message": message,
            "type": event_type,
            "source": {"component": EVENT_SOURCE},
            "firstTimestamp": now,
            "lastTimestamp": now,
            "count": 1,
        }
        create_event(self.clients.core, namespace, body)

    def _record_condition(
        self, resource: CustomResource, obj: Obj, error: BaseException | None
    ) -> None:
        metadata = obj.get("metadata") or {}
        previous = find_condition(obj)
        condition = build_condition(error, int(metadata.get("generation") or 0), previous)
        if previous and int(previous.get("observedGeneration") or 0) > condition["observedGeneration"]:
            return
        if _same_outcome(previous, condition):
            return
        patch_custom_status(
            self.clients.custom,
            resource,
            metadata.get("namespace", ""),
            metadata.get("name", ""),
            {"conditions": [condition]},
        )

    def _record_gateway(self, obj: Obj, error: BaseException | None) -> None:
        metadata = obj.get("metadata") or {}
        generation = int(metadata.get("generation") or 0)
        conditions = []
        for condition_type in ("Accepted", "Ready"):
            condition = build_condition(
                error, generation, find_condition(obj, condition_type), condition_type
            )
            condition["reason"] = condition_type if error is None else REASON_SYNC_ABORTED
            conditions.append(condition)
        patch_custom_status(
            self.clients.custom,
            GATEWAY_RESOURCE,
            metadata.get("namespace", ""),
            metadata.get("name", ""),
            {"conditions": conditions},
        )

    def ingress_load_balancer(self) -> list[dict[str, str]]:
        entries = []
        for address in self.ingress_addresses:
            key = "ip" if _looks_like_ip(address) else "hostname"
            entries.append({key: address})
        return entries

    def _record_ingress(self, obj: Obj, error: BaseException | None) -> None:
        if error is not None or not self.ingress_addresses:
            return
        metadata = obj.get("metadata") or {}
        entries = self.ingress_load_balancer()
        current = ((obj.get("status") or {}).get("loadBalancer") or {}).get("ingress") or []
        if current == entries:
            return
        status = {"loadBalancer": {"ingress": entries}}
        namespace, name = metadata.get("namespace", ""), metadata.get("name", "")
        if self.ingress_v1beta1:
            patch_custom_status(self.clients.custom, INGRESS_V1BETA1_RESOURCE, namespace, name, status)
        else:
            self.clients.networking.patch_namespaced_ingress_status(
                name=name, namespace=namespace, body={"status": status}
            )


def _looks_like_ip(address: str) -> bool:
    try:
        ipaddress.ip_address(address)
    except ValueError:
        return False
    return True
