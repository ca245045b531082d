from __future__ import annotations

import base64
import copy
import ipaddress
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from apisix_ingress.src.apisix_types import (
    DEFAULT_UPSTREAM_TIMEOUT,
    DEFAULT_WEIGHT,
    HASH_ON_TYPES,
    HASH_ON_VARS,
    LB_CHASH,
    LB_ROUND_ROBIN,
    LB_TYPES,
    PASS_HOST_REWRITE,
    PASS_HOST_TYPES,
    RESOLVE_GRANULARITY_SERVICE,
    SCHEME_HTTP,
    SCHEMES,
    SSL,
    Consumer,
    GlobalRule,
    PluginConfig,
    PluginMetadata,
    Route,
    StreamRoute,
    Upstream,
    UpstreamNode,
    UpstreamTimeout,
    compose_external_upstream_name,
    compose_upstream_name,
    gen_id,
)
from apisix_ingress.src.informer import ObjectNotFound, Obj
from apisix_ingress.src.manifest import Manifest

LOGGER = logging.getLogger(__name__)

SERVICE_NAME_LABEL = "kubernetes.io/service-name"
MANAGED_BY_LABELS = {"managed-by": "apisix-ingress-controller"}


class TranslateError(Exception):
    """A source object cannot be translated into gateway resources."""

    def __init__(self, field: str, reason: str) -> None:
        super().__init__(f"translate error: field {field}: {reason}")
        self.field = field
        self.reason = reason


class ServiceNotFoundError(TranslateError):
    def __init__(self, namespace: str, name: str) -> None:
        super().__init__("service", f"service {namespace}/{name} not found")


class SecretNotFoundError(TranslateError):
    def __init__(self, namespace: str, name: str) -> None:
        super().__init__("secret", f"secret {namespace}/{name} not found")


class UnsupportedVersionError(TranslateError):
    def __init__(self, version: str) -> None:
        super().__init__("apiVersion", f"source group version not supported: {version}")


@dataclass
class TranslateContext:
    """Gateway resources produced by translating one source object."""

    routes: list[Route] = field(default_factory=list)
    stream_routes: list[StreamRoute] = field(default_factory=list)
    upstreams: list[Upstream] = field(default_factory=list)
    ssls: list[SSL] = field(default_factory=list)
    plugin_configs: list[PluginConfig] = field(default_factory=list)
    consumers: list[Consumer] = field(default_factory=list)
    global_rules: list[GlobalRule] = field(default_factory=list)
    plugin_metadatas: list[PluginMetadata] = field(default_factory=list)
    _upstream_names: set[str] = field(default_factory=set, repr=False)

    def add_route(self, route: Route) -> None:
        self.routes.append(route)

    def add_stream_route(self, stream_route: StreamRoute) -> None:
        self.stream_routes.append(stream_route)

    def add_upstream(self, upstream: Upstream) -> None:
        if self.check_upstream_exist(upstream.name):
            return
        self._upstream_names.add(upstream.name)
        self.upstreams.append(upstream)

    def check_upstream_exist(self, name: str) -> bool:
        return name in self._upstream_names

    def add_ssl(self, ssl: SSL) -> None:
        self.ssls.append(ssl)

    def add_plugin_config(self, plugin_config: PluginConfig) -> None:
        self.plugin_configs.append(plugin_config)

    def to_manifest(self) -> Manifest:
        return Manifest(
            routes=list(self.routes),
            upstreams=list(self.upstreams),
            stream_routes=list(self.stream_routes),
            ssls=list(self.ssls),
            plugin_configs=list(self.plugin_configs),
            consumers=list(self.consumers),
            global_rules=list(self.global_rules),
            plugin_metadatas=list(self.plugin_metadatas),
        )


class Lister(Protocol):
    def get(self, namespace: str, name: str) -> Obj: ...

    def list(self, namespace: str | None = None) -> list[Obj]: ...


def metadata(obj: Obj) -> dict[str, Any]:
    return obj.get("metadata") or {}


def spec(obj: Obj) -> dict[str, Any]:
    return obj.get("spec") or {}


def decode_secret_value(secret: Obj, key: str) -> str | None:
    raw = (secret.get("data") or {}).get(key)
    if raw is None:
        string_data = (secret.get("stringData") or {}).get(key)
        return None if string_data is None else str(string_data)
    return base64.b64decode(raw).decode("utf-8")


_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


def parse_duration_seconds(value: Any) -> int:
    """Parse Go-style durations (``5s``, ``1m30s``, ``500ms``) into whole seconds."""
    if value is None or value == "":
        return 0
    if isinstance(value, int | float):
        return int(value)
    text = str(value).strip()
    if text.isdigit():
        return int(text)
    matches = _DURATION_RE.findall(text)
    if not matches or "".join(num + unit for num, unit in matches) != text:
        raise TranslateError("timeout", f"invalid duration {value!r}")
    return int(sum(float(num) * _DURATION_UNITS[unit] for num, unit in matches))


def insert_key_in_map(key: str, value: Any, target: dict[str, Any]) -> None:
    """Insert ``value`` at a dotted ``key`` path, creating nested dicts as needed."""
    parts = key.split(".")
    current = target
    for part in parts[:-1]:
        nested = current.get(part)
        if not isinstance(nested, dict):
            nested = {}
            current[part] = nested
        current = nested
    current[parts[-1]] = value


def validate_remote_addrs(addrs: list[str] | None) -> None:
    for addr in addrs or []:
        try:
            if "/" in addr:
                ipaddress.ip_network(addr, strict=False)
            else:
                ipaddress.ip_address(addr)
        except ValueError as exc:
            raise TranslateError("remoteAddrs", f"invalid ip address {addr!r}") from exc


_SCOPE_SUBJECTS = {"Query": "arg_", "Cookie": "cookie_"}
_OPERATORS: dict[str, tuple[bool, str]] = {
    "Equal": (False, "=="),
    "NotEqual": (False, "~="),
    "GreaterThan": (False, ">"),
    "GreaterThanEqual": (False, ">="),
    "LessThan": (False, "<"),
    "LessThanEqual": (False, "<="),
    "In": (False, "in"),
    "NotIn": (True, "in"),
    "RegexMatch": (False, "~~"),
    "RegexNotMatch": (True, "~~"),
    "RegexMatchCaseInsensitive": (False, "~*"),
    "RegexNotMatchCaseInsensitive": (True, "~*"),
}


def translate_route_match_exprs(exprs: list[dict[str, Any]] | None) -> list[list[Any]]:
    """Translate ``nginxVars`` match expressions into gateway ``vars``.

    Each expression becomes ``[subject, ("!",) operator, value]`` where the
    subject is the nginx variable derived from the scope.
    """
    result: list[list[Any]] = []
    for expr in exprs or []:
        subject = expr.get("subject") or {}
        scope = subject.get("scope") or ""
        name = subject.get("name") or ""
        if not scope:
            raise TranslateError("nginxVars.subject", "empty nginxVar subject")
        if not name and scope != "Path":
            raise TranslateError("nginxVars.subject.name", "empty subject name")

        if scope == "Header":
            var = "http_" + name.lower().replace("-", "_")
        elif scope in _SCOPE_SUBJECTS:
            var = _SCOPE_SUBJECTS[scope] + name
        elif scope == "Path":
            var = "uri"
        elif scope == "Variable":
            var = name
        else:
            raise TranslateError("nginxVars.subject.scope", f"bad subject scope {scope!r}")

        op = expr.get("op") or ""
        if op not in _OPERATORS:
            raise TranslateError("nginxVars.op", f"unknown operator {op!r}")
        invert, operator = _OPERATORS[op]

        this: list[Any] = [var]
        if invert:
            this.append("!")
        this.append(operator)
        if op in {"In", "NotIn"}:
            if expr.get("set") is None:
                raise TranslateError("nginxVars.set", "empty set value")
            this.append(list(expr["set"]))
        elif expr.get("value") is not None:
            this.append(expr["value"])
        else:
            raise TranslateError("nginxVars.value", "neither set nor value is provided")
        result.append(this)
    return result


class EndpointSource(Protocol):
    """Addresses backing one service port, from Endpoints or EndpointSlices."""

    def addresses(self, namespace: str, service: str, port_name: str) -> list[tuple[str, int, str]]:
        """Return ``(ip, port, pod_name)`` triples for ready addresses."""
        ...


class EndpointsSource:
    def __init__(self, endpoints: Lister) -> None:
        self.endpoints = endpoints

    def addresses(self, namespace: str, service: str, port_name: str) -> list[tuple[str, int, str]]:
        try:
            ep = self.endpoints.get(namespace, service)
        except ObjectNotFound:
            return []
        result: list[tuple[str, int, str]] = []
        for subset in ep.get("subsets") or []:
            port = _match_port(subset.get("ports") or [], port_name)
            if port is None:
                continue
            for address in subset.get("addresses") or []:
                pod = (address.get("targetRef") or {}).get("name", "")
                result.append((address.get("ip", ""), port, pod))
        return result


class EndpointSliceSource:
    def __init__(self, slices: Lister) -> None:
        self.slices = slices

    def addresses(self, namespace: str, service: str, port_name: str) -> list[tuple[str, int, str]]:
        result: list[tuple[str, int, str]] = []
        for eps in self.slices.list(namespace):
            labels = metadata(eps).get("labels") or {}
            if labels.get(SERVICE_NAME_LABEL) != service:
                continue
            port = _match_port(eps.get("ports") or [], port_name)
            if port is None:
                continue
            for endpoint in eps.get("endpoints") or []:
                if (endpoint.get("conditions") or {}).get("ready") is False:
                    continue
                pod = (endpoint.get("targetRef") or {}).get("name", "")
                for ip in endpoint.get("addresses") or []:
                    result.append((ip, port, pod))
        return result


def _match_port(ports: list[dict[str, Any]], port_name: str) -> int | None:
    for port in ports:
        if (port.get("name") or "") == port_name:
            return int(port["port"])
    if len(ports) == 1 and not port_name:
        return int(ports[0]["port"])
    return None


class Translator:
    """Shared translation primitives over the watch caches.

    Never mutates objects returned by the caches; everything that is
    adjusted is deep-copied first.
    """

    def __init__(
        self,
        *,
        services: Lister,
        endpoints: EndpointSource,
        secrets: Lister,
        apisix_upstreams: Lister | None = None,
        pods: Lister | None = None,
    ) -> None:
        self.services = services
        self.endpoints = endpoints
        self.secrets = secrets
        self.apisix_upstreams = apisix_upstreams
        self.pods = pods

    def get_service(self, namespace: str, name: str) -> Obj:
        try:
            return self.services.get(namespace, name)
        except ObjectNotFound:
            raise ServiceNotFoundError(namespace, name) from None

    def get_secret(self, namespace: str, name: str) -> Obj:
        try:
            return self.secrets.get(namespace, name)
        except ObjectNotFound:
            raise SecretNotFoundError(namespace, name) from None

    def get_apisix_upstream(self, namespace: str, name: str) -> Obj | None:
        if self.apisix_upstreams is None:
            return None
        try:
            return self.apisix_upstreams.get(namespace, name)
        except ObjectNotFound:
            return None

    def service_cluster_ip_and_port(
        self,
        namespace: str,
        service: str,
        port: int | str,
        resolve_granularity: str = "",
    ) -> tuple[str, int]:
        """Resolve a backend port (number or name) against the Service spec."""
        svc = spec(self.get_service(namespace, service))
        cluster_ip = svc.get("clusterIP") or ""
        if resolve_granularity == RESOLVE_GRANULARITY_SERVICE and cluster_ip in ("", "None"):
            raise TranslateError(
                "resolveGranularity",
                f"conflict headless service {namespace}/{service} and backend resolve granularity",
            )
        for svc_port in svc.get("ports") or []:
            if isinstance(port, int) and svc_port.get("port") == port:
                return cluster_ip, port
            if isinstance(port, str) and svc_port.get("name") == port:
                return cluster_ip, int(svc_port["port"])
        raise TranslateError(
            "servicePort", f"service {namespace}/{service} has no port {port!r}"
        )

    def translate_endpoint_nodes(
        self,
        namespace: str,
        service: str,
        port: int,
        labels: Mapping[str, str] | None = None,
    ) -> list[UpstreamNode]:
        svc = self.get_service(namespace, service)
        port_name: str | None = None
        for svc_port in spec(svc).get("ports") or []:
            if svc_port.get("port") == port:
                port_name = svc_port.get("name") or ""
                break
        if port_name is None:
            raise TranslateError("service.spec.ports", "port not defined")

        nodes: list[UpstreamNode] = []
        for host, target_port, pod in self.endpoints.addresses(namespace, service, port_name):
            if labels and not self._pod_matches(namespace, pod, labels):
                continue
            nodes.append(UpstreamNode(host=host, port=target_port, weight=DEFAULT_WEIGHT))
        return nodes

    def _pod_matches(self, namespace: str, pod_name: str, labels: Mapping[str, str]) -> bool:
        if self.pods is None or not pod_name:
            return False
        try:
            pod = self.pods.get(namespace, pod_name)
        except ObjectNotFound:
            LOGGER.debug("Pod %s/%s not found, ignoring node", namespace, pod_name)
            return False
        pod_labels = metadata(pod).get("labels") or {}
        return all(pod_labels.get(key) == value for key, value in labels.items())

    def translate_upstream(
        self, namespace: str, service: str, subset: str, port: int
    ) -> Upstream:
        """Build the upstream for one service port: ApisixUpstream config plus endpoint nodes."""
        au = self.get_apisix_upstream(namespace, service)
        if au is None and subset:
            return Upstream(nodes=[])

        labels: dict[str, str] | None = None
        if subset and au is not None:
            for ss in spec(au).get("subsets") or []:
                if ss.get("name") == subset:
                    labels = ss.get("labels") or {}
                    break

        nodes = self.translate_endpoint_nodes(namespace, service, port, labels)
        if au is None:
            return Upstream(nodes=nodes)

        ups = self.translate_upstream_config(
            namespace, self.upstream_config_for_port(spec(au), port)
        )
        ups.nodes = nodes
        return ups

    @staticmethod
    def upstream_config_for_port(au_spec: dict[str, Any], port: int) -> dict[str, Any]:
        for pls in au_spec.get("portLevelSettings") or []:
            if pls.get("port") == port:
                return pls
        return au_spec

    def translate_service(
        self,
        namespace: str,
        service: str,
        subset: str,
        resolve_granularity: str,
        cluster_ip: str,
        port: int,
    ) -> Upstream:
        ups = self.translate_upstream(namespace, service, subset, port)
        if resolve_granularity == RESOLVE_GRANULARITY_SERVICE:
            ups.nodes = [UpstreamNode(host=cluster_ip, port=port, weight=DEFAULT_WEIGHT)]
        ups.name = compose_upstream_name(namespace, service, subset, port, resolve_granularity)
        ups.id = gen_id(ups.name)
        ups.labels = dict(MANAGED_BY_LABELS)
        return ups

    def translate_upstream_config(self, namespace: str, cfg: dict[str, Any]) -> Upstream:
        """Translate the shared ApisixUpstream configuration block."""
        ups = Upstream()

        scheme = cfg.get("scheme") or SCHEME_HTTP
        if scheme not in SCHEMES:
            raise TranslateError("scheme", f"invalid value {scheme!r}")
        ups.scheme = scheme

        lb = cfg.get("loadbalancer") or {}
        lb_type = lb.get("type") or LB_ROUND_ROBIN
        if lb_type not in LB_TYPES:
            raise TranslateError("loadbalancer.type", f"invalid value {lb_type!r}")
        ups.type = lb_type
        if lb_type == LB_CHASH:
            hash_on = lb.get("hashOn") or HASH_ON_VARS
            if hash_on not in HASH_ON_TYPES:
                raise TranslateError("loadbalancer.hashOn", f"invalid value {hash_on!r}")
            ups.hash_on = hash_on
            ups.key = lb.get("key") or ""

        retries = cfg.get("retries")
        if retries is not None:
            if int(retries) < 0:
                raise TranslateError("retries", "invalid value")
            ups.retries = int(retries)

        timeout = cfg.get("timeout")
        if timeout:
            ups.timeout = UpstreamTimeout(
                connect=parse_duration_seconds(timeout.get("connect")) or DEFAULT_UPSTREAM_TIMEOUT,
                send=parse_duration_seconds(timeout.get("send")) or DEFAULT_UPSTREAM_TIMEOUT,
                read=parse_duration_seconds(timeout.get("read")) or DEFAULT_UPSTREAM_TIMEOUT,
            )

        pass_host = cfg.get("passHost") or ""
        if pass_host:
            if pass_host not in PASS_HOST_TYPES:
                raise TranslateError("passHost", f"invalid value {pass_host!r}")
            ups.pass_host = pass_host
            if pass_host == PASS_HOST_REWRITE:
                if not cfg.get("upstreamHost"):
                    raise TranslateError("upstreamHost", "required when passHost is rewrite")
                ups.upstream_host = cfg["upstreamHost"]

        if cfg.get("healthCheck"):
            ups.checks = translate_health_check(cfg["healthCheck"])

        tls_secret = cfg.get("tlsSecret")
        if tls_secret:
            secret_ns = tls_secret.get("namespace") or namespace
            secret = self.get_secret(secret_ns, tls_secret.get("name", ""))
            cert = decode_secret_value(secret, "tls.crt")
            key = decode_secret_value(secret, "tls.key")
            if not cert or not key:
                raise TranslateError("tlsSecret", "secret is missing tls.crt or tls.key")
            ups.tls = {"client_cert": cert, "client_key": key}

        discovery = cfg.get("discovery")
        if discovery:
            ups.discovery_type = discovery.get("type") or ""
            ups.service_name = discovery.get("serviceName") or ""
            ups.discovery_args = copy.deepcopy(discovery.get("args") or {})
        return ups

    def translate_external_upstream(self, namespace: str, name: str) -> Upstream:
        """Translate an ApisixUpstream with ``externalNodes`` or ``discovery``."""
        au = self.get_apisix_upstream(namespace, name)
        if au is None:
            raise TranslateError("upstreams", f"ApisixUpstream {namespace}/{name} not found")
        au_spec = spec(au)
        if not au_spec.get("externalNodes") and not au_spec.get("discovery"):
            raise TranslateError(
                "upstreams", f"{namespace}/{name} has empty ExternalNodes or Discovery configuration"
            )
        ups = self.translate_upstream_config(namespace, au_spec)
        ups.name = compose_external_upstream_name(namespace, name)
        ups.id = gen_id(ups.name)
        ups.labels = dict(MANAGED_BY_LABELS)
        if au_spec.get("externalNodes"):
            ups.nodes = self.translate_external_nodes(namespace, au_spec)
        return ups

    def translate_external_nodes(self, namespace: str, au_spec: dict[str, Any]) -> list[UpstreamNode]:
        default_port = 443 if au_spec.get("scheme") in ("https", "grpcs") else 80
        nodes: list[UpstreamNode] = []
        for i, node in enumerate(au_spec.get("externalNodes") or []):
            weight = node.get("weight")
            weight = DEFAULT_WEIGHT if weight is None else int(weight)
            port = int(node["port"]) if node.get("port") is not None else default_port
            if node.get("type") == "Service":
                svc = spec(self.get_service(namespace, node.get("name", "")))
                if svc.get("type") != "ExternalName":
                    raise TranslateError(
                        f"externalNodes[{i}]",
                        f"must refer to an ExternalName service: {node.get('name')}",
                    )
                host = svc.get("externalName", "")
            else:
                host = node.get("name", "")
            nodes.append(UpstreamNode(host=host, port=port, weight=weight))
        return nodes


_HEALTH_CHECK_KEYS = {
    "httpPath": "http_path",
    "strictTLS": "https_verify_certificate",
    "requestHeaders": "req_headers",
    "httpCodes": "http_statuses",
    "httpFailures": "http_failures",
    "tcpFailures": "tcp_failures",
}
_HEALTH_CHECK_DURATIONS = {"interval", "timeout"}


def translate_health_check(hc: dict[str, Any]) -> dict[str, Any]:
    """Rename health check keys to the gateway schema and turn durations into seconds."""
    result: dict[str, Any] = {}
    for key, value in hc.items():
        target = _HEALTH_CHECK_KEYS.get(key, key)
        if isinstance(value, dict):
            result[target] = translate_health_check(value)
        elif key in _HEALTH_CHECK_DURATIONS:
            result[target] = parse_duration_seconds(value)
        else:
            result[target] = copy.deepcopy(value)
    if "active" in result and "passive" in result and not result["active"]:
        raise TranslateError("healthCheck.active", "active health check is required")
    return result
