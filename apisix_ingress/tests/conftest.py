from __future__ import annotations

import base64
import copy
from collections.abc import Callable
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock

import pytest

from apisix_ingress.src.apisix import Cluster, ClusterOptions
from apisix_ingress.src.informer import WatchCache
from apisix_ingress.src.translation import EndpointsSource, Translator

ADMIN_URL = "http://apisix-admin:9180/apisix/admin"


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: str = "") -> None:
        self.status_code = status_code
        self._payload = payload if payload is not None else {}
        self.text = text

    def json(self) -> Any:
        return self._payload


class FakeAdminSession:
    """In-memory Admin API speaking the v3 response shapes."""

    def __init__(self, base_url: str = ADMIN_URL) -> None:
        self.base_url = base_url
        self.headers: dict[str, str] = {}
        self.store: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str, dict[str, Any] | None]] = []
        self.overrides: dict[tuple[str, str], FakeResponse] = {}

    def seed(self, path: str, value: dict[str, Any]) -> None:
        self.store[path] = copy.deepcopy(value)

    def writes(self) -> list[tuple[str, str]]:
        return [(method, path) for method, path, _ in self.calls if method != "GET"]

    def request(
        self,
        method: str,
        url: str,
        json: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> FakeResponse:
        path = url[len(self.base_url):]
        self.calls.append((method, path, copy.deepcopy(json)))
        if (method, path) in self.overrides:
            return self.overrides[(method, path)]
        if method == "PUT":
            if path == "/consumers":
                path = f"/consumers/{json['username']}"
            self.store[path] = copy.deepcopy(json)
            return FakeResponse(201, {"key": path, "value": json})
        if method == "DELETE":
            if self.store.pop(path, None) is None:
                return FakeResponse(404, {"error_msg": "not found"}, "not found")
            return FakeResponse(200, {"deleted": "1"})
        if path in self.store:
            return FakeResponse(200, {"key": path, "value": self.store[path]})
        if path.count("/") == 1:
            prefix = path + "/"
            items = [{"value": v} for k, v in self.store.items() if k.startswith(prefix)]
            return FakeResponse(200, {"total": len(items), "list": items})
        return FakeResponse(404, {"error_msg": "not found"}, "not found")


@pytest.fixture
def admin() -> FakeAdminSession:
    return FakeAdminSession()


@pytest.fixture
def cluster(admin: FakeAdminSession) -> Cluster:
    return Cluster(ClusterOptions(name="default", base_url=ADMIN_URL, admin_key="secret"), session=admin)


@pytest.fixture
def make_cache() -> Callable[..., WatchCache]:
    def _make(kind: str, *objects: dict[str, Any]) -> WatchCache:
        cache = WatchCache(kind, MagicMock())
        cache.replace(list(objects))
        cache.synced.set()
        return cache

    return _make


def b64(value: str) -> str:
    return base64.b64encode(value.encode()).decode()


def obj(
    name: str,
    namespace: str = "default",
    rv: str = "1",
    labels: dict[str, str] | None = None,
    **body: Any,
) -> dict[str, Any]:
    meta: dict[str, Any] = {"name": name, "resourceVersion": rv, "generation": 1}
    if namespace:
        meta["namespace"] = namespace
    if labels:
        meta["labels"] = labels
    return {"metadata": meta, **body}


def httpbin_service(name: str = "httpbin", namespace: str = "default") -> dict[str, Any]:
    return obj(
        name,
        namespace,
        spec={
            "clusterIP": "10.96.0.10",
            "ports": [
                {"name": "http", "port": 80, "targetPort": 8080},
                {"name": "metrics", "port": 9090, "targetPort": 9090},
            ],
        },
    )


def httpbin_endpoints(name: str = "httpbin", namespace: str = "default") -> dict[str, Any]:
    return obj(
        name,
        namespace,
        subsets=[
            {
                "addresses": [
                    {"ip": "10.1.0.1", "targetRef": {"kind": "Pod", "name": "httpbin-a"}},
                    {"ip": "10.1.0.2", "targetRef": {"kind": "Pod", "name": "httpbin-b"}},
                ],
                "ports": [
                    {"name": "http", "port": 8080},
                    {"name": "metrics", "port": 9090},
                ],
            }
        ],
    )


@pytest.fixture
def world(make_cache: Callable[..., WatchCache]) -> SimpleNamespace:
    """Cluster state with one ``httpbin`` Service, its endpoints, pods and TLS secrets."""
    services = make_cache("Service", httpbin_service())
    endpoints = make_cache("Endpoints", httpbin_endpoints())
    pods = make_cache(
        "Pod",
        obj("httpbin-a", labels={"version": "v1"}),
        obj("httpbin-b", labels={"version": "v2"}),
    )
    secrets = make_cache(
        "Secret",
        obj("tls-cert", data={"tls.crt": b64("CERT"), "tls.key": b64("KEY")}),
        obj("ca-cert", data={"ca.crt": b64("CA")}),
        obj("jack-auth", data={"key": b64("jack-key")}),
    )
    upstreams = make_cache("ApisixUpstream")
    translator = Translator(
        services=services,
        endpoints=EndpointsSource(endpoints),
        secrets=secrets,
        apisix_upstreams=upstreams,
        pods=pods,
    )
    return SimpleNamespace(
        services=services,
        endpoints=endpoints,
        pods=pods,
        secrets=secrets,
        upstreams=upstreams,
        translator=translator,
    )
