from __future__ import annotations

import copy
import re
import zlib
from dataclasses import asdict, dataclass, field, fields
from typing import Any, ClassVar, TypeVar

DEFAULT_WEIGHT = 100
DEFAULT_UPSTREAM_TIMEOUT = 60

RESOLVE_GRANULARITY_ENDPOINT = "endpoint"
RESOLVE_GRANULARITY_SERVICE = "service"

SCHEME_HTTP = "http"
SCHEME_HTTPS = "https"
SCHEME_GRPC = "grpc"
SCHEME_GRPCS = "grpcs"
SCHEMES = frozenset({SCHEME_HTTP, SCHEME_HTTPS, SCHEME_GRPC, SCHEME_GRPCS})

LB_ROUND_ROBIN = "roundrobin"
LB_CHASH = "chash"
LB_EWMA = "ewma"
LB_LEAST_CONN = "least_conn"
LB_TYPES = frozenset({LB_ROUND_ROBIN, LB_CHASH, LB_EWMA, LB_LEAST_CONN})

HASH_ON_VARS = "vars"
HASH_ON_HEADER = "header"
HASH_ON_COOKIE = "cookie"
HASH_ON_CONSUMER = "consumer"
HASH_ON_VARS_COMBINATION = "vars_combinations"
HASH_ON_TYPES = frozenset(
    {HASH_ON_VARS, HASH_ON_HEADER, HASH_ON_COOKIE, HASH_ON_CONSUMER, HASH_ON_VARS_COMBINATION}
)

PASS_HOST_PASS = "pass"
PASS_HOST_NODE = "node"
PASS_HOST_REWRITE = "rewrite"
PASS_HOST_TYPES = frozenset({PASS_HOST_PASS, PASS_HOST_NODE, PASS_HOST_REWRITE})


def gen_id(name: str) -> str:
    """Return the stable gateway ID for a composed resource name.

    The ID is the unpadded lowercase hex CRC32 (IEEE) of the name so the
    same logical object always maps to the same gateway key across
    reconciliations and controller restarts.
    """
    if not name:
        return ""
    return format(zlib.crc32(name.encode("utf-8")), "x")


def compose_route_name(namespace: str, name: str, rule: str) -> str:
    return f"{namespace}_{name}_{rule}"


def compose_stream_route_name(namespace: str, name: str, rule: str) -> str:
    return f"{namespace}_{name}_{rule}_tcp"


def compose_upstream_name(
    namespace: str,
    service: str,
    subset: str,
    port: int,
    resolve_granularity: str = RESOLVE_GRANULARITY_ENDPOINT,
) -> str:
    """Compose ``ns_svc[_subset]_port[_service]``.

    The ``_service`` suffix keeps service-granularity upstreams (a single
    ClusterIP node) apart from endpoint-granularity ones for the same port.
    """
    parts = [namespace, service]
    if subset:
        parts.append(subset)
    parts.append(str(port))
    if resolve_granularity == RESOLVE_GRANULARITY_SERVICE:
        parts.append(RESOLVE_GRANULARITY_SERVICE)
    return "_".join(parts)


def upstream_name_pattern(
    namespace: str, service: str, include_service_granularity: bool = False
) -> re.Pattern[str]:
    """Match every upstream name ``compose_upstream_name`` produces for one Service."""
    suffix = f"(?:_{RESOLVE_GRANULARITY_SERVICE})?" if include_service_granularity else ""
    return re.compile(
        rf"^{re.escape(namespace)}_{re.escape(service)}_(?:[^_]+_)?\d+{suffix}$"
    )


def compose_external_upstream_name(namespace: str, name: str) -> str:
    return f"{namespace}_{name}_upstream"


def compose_plugin_config_name(namespace: str, name: str) -> str:
    return f"{namespace}_{name}"


def compose_consumer_name(namespace: str, name: str) -> str:
    # APISIX usernames only accept [a-zA-Z0-9_]
    return f"{namespace}_{name}".replace("-", "_")


def compose_ssl_name(namespace: str, name: str) -> str:
    return f"{namespace}_{name}"


def compose_global_rule_name(name: str) -> str:
    return name


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


T = TypeVar("T", bound="GatewayResource")


# Written by the gateway itself; never sent back.
_SERVER_MANAGED = frozenset({"create_time", "update_time"})


@dataclass
class GatewayResource:
    """Base for every object stored in the gateway configuration.

    Subclasses are plain dataclasses whose field names match the Admin API
    JSON keys, so ``to_admin`` is a compacted ``asdict`` and equality is a
    deep value comparison.  Keys the model does not know are carried in
    ``extra`` and written back untouched; they take no part in equality.
    """

    kind: ClassVar[str] = ""
    _admin_exclude: ClassVar[frozenset[str]] = frozenset()

    extra: dict[str, Any] = field(default_factory=dict, compare=False, repr=False, kw_only=True)

    def to_admin(self) -> dict[str, Any]:
        body = copy.deepcopy(self.extra)
        for key, value in asdict(self).items():
            if key == "extra" or key in self._admin_exclude or _is_empty(value):
                continue
            body[key] = value
        return body

    @classmethod
    def from_admin(cls: type[T], data: dict[str, Any]) -> T:
        known = {f.name for f in fields(cls) if f.init and f.name != "extra"}
        return cls(
            **{key: copy.deepcopy(value) for key, value in data.items() if key in known},
            extra={
                key: copy.deepcopy(value)
                for key, value in data.items()
                if key not in known and key not in _SERVER_MANAGED
            },
        )

    def clone(self: T) -> T:
        return copy.deepcopy(self)


@dataclass
class UpstreamTimeout:
    connect: int = DEFAULT_UPSTREAM_TIMEOUT
    send: int = DEFAULT_UPSTREAM_TIMEOUT
    read: int = DEFAULT_UPSTREAM_TIMEOUT


@dataclass
class UpstreamNode:
    host: str
    port: int
    weight: int = DEFAULT_WEIGHT


@dataclass
class Route(GatewayResource):
    kind: ClassVar[str] = "route"

    id: str = ""
    name: str = ""
    desc: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    host: str = ""
    hosts: list[str] = field(default_factory=list)
    uri: str = ""
    uris: list[str] = field(default_factory=list)
    priority: int = 0
    methods: list[str] = field(default_factory=list)
    vars: list[list[Any]] = field(default_factory=list)
    remote_addrs: list[str] = field(default_factory=list)
    filter_func: str = ""
    enable_websocket: bool = False
    timeout: UpstreamTimeout | None = None
    plugins: dict[str, Any] = field(default_factory=dict)
    upstream_id: str = ""
    plugin_config_id: str = ""

    @classmethod
    def from_admin(cls, data: dict[str, Any]) -> Route:
        route = super().from_admin(data)
        if isinstance(route.timeout, dict):
            route.timeout = UpstreamTimeout(**route.timeout)
        return route


@dataclass
class StreamRoute(GatewayResource):
    kind: ClassVar[str] = "stream_route"
    _admin_exclude: ClassVar[frozenset[str]] = frozenset({"name"})

    id: str = ""
    name: str = ""
    desc: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    server_port: int = 0
    sni: str = ""
    upstream_id: str = ""
    plugins: dict[str, Any] = field(default_factory=dict)


@dataclass
class Upstream(GatewayResource):
    kind: ClassVar[str] = "upstream"

    id: str = ""
    name: str = ""
    desc: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    type: str = LB_ROUND_ROBIN
    hash_on: str = ""
    key: str = ""
    checks: dict[str, Any] | None = None
    nodes: list[UpstreamNode] = field(default_factory=list)
    scheme: str = SCHEME_HTTP
    retries: int | None = None
    timeout: UpstreamTimeout | None = None
    pass_host: str = ""
    upstream_host: str = ""
    tls: dict[str, str] | None = None
    discovery_type: str = ""
    service_name: str = ""
    discovery_args: dict[str, Any] = field(default_factory=dict)

    def to_admin(self) -> dict[str, Any]:
        body = super().to_admin()
        # Nodes are required unless service discovery is configured.
        if not self.discovery_type:
            body["nodes"] = [asdict(node) for node in self.nodes]
        return body

    @classmethod
    def from_admin(cls, data: dict[str, Any]) -> Upstream:
        ups = super().from_admin(data)
        ups.nodes = _parse_nodes(data.get("nodes"))
        if isinstance(ups.timeout, dict):
            ups.timeout = UpstreamTimeout(**ups.timeout)
        return ups


def _parse_nodes(raw: Any) -> list[UpstreamNode]:
    """Accept both the list form and the legacy ``{"host:port": weight}`` form."""
    if not raw:
        return []
    nodes: list[UpstreamNode] = []
    if isinstance(raw, dict):
        for address, weight in raw.items():
            host, _, port = str(address).rpartition(":")
            nodes.append(UpstreamNode(host=host, port=int(port or 0), weight=int(weight)))
        return nodes
    for item in raw:
        nodes.append(
            UpstreamNode(
                host=str(item.get("host", "")),
                port=int(item.get("port", 0)),
                weight=int(item.get("weight", DEFAULT_WEIGHT)),
            )
        )
    return nodes


@dataclass
class SSL(GatewayResource):
    kind: ClassVar[str] = "ssl"
    _admin_exclude: ClassVar[frozenset[str]] = frozenset({"name"})

    id: str = ""
    name: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    snis: list[str] = field(default_factory=list)
    cert: str = ""
    key: str = ""
    client: dict[str, Any] | None = None


@dataclass
class PluginConfig(GatewayResource):
    kind: ClassVar[str] = "plugin_config"

    id: str = ""
    name: str = ""
    desc: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    plugins: dict[str, Any] = field(default_factory=dict)


@dataclass
class GlobalRule(GatewayResource):
    kind: ClassVar[str] = "global_rule"
    _admin_exclude: ClassVar[frozenset[str]] = frozenset({"name"})

    id: str = ""
    name: str = ""
    plugins: dict[str, Any] = field(default_factory=dict)


@dataclass
class Consumer(GatewayResource):
    kind: ClassVar[str] = "consumer"

    username: str = ""
    desc: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    plugins: dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return self.username

    @property
    def name(self) -> str:
        return self.username


@dataclass
class PluginMetadata(GatewayResource):
    """Per-plugin metadata, keyed by the plugin name rather than a hash."""

    kind: ClassVar[str] = "plugin_metadata"

    name: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return self.name

    def to_admin(self) -> dict[str, Any]:
        return copy.deepcopy(self.metadata)

    @classmethod
    def from_admin(cls, data: dict[str, Any]) -> PluginMetadata:
        body = copy.deepcopy(data)
        name = str(body.pop("id", body.pop("name", "")))
        return cls(name=name, metadata=body)
