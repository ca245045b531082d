from __future__ import annotations

import copy
import logging
from typing import Any

from apisix_ingress.src.apisix_types import (
    DEFAULT_UPSTREAM_TIMEOUT,
    DEFAULT_WEIGHT,
    SSL,
    Consumer,
    GlobalRule,
    PluginConfig,
    Route,
    StreamRoute,
    Upstream,
    UpstreamTimeout,
    compose_consumer_name,
    compose_external_upstream_name,
    compose_global_rule_name,
    compose_plugin_config_name,
    compose_route_name,
    compose_ssl_name,
    compose_stream_route_name,
    compose_upstream_name,
    gen_id,
)
from apisix_ingress.src.config import APISIX_V2, APISIX_V2BETA3
from apisix_ingress.src.informer import Obj
from apisix_ingress.src.translation import (
    MANAGED_BY_LABELS,
    SecretNotFoundError,
    TranslateContext,
    TranslateError,
    Translator,
    UnsupportedVersionError,
    decode_secret_value,
    insert_key_in_map,
    metadata,
    parse_duration_seconds,
    spec,
    translate_route_match_exprs,
    validate_remote_addrs,
)

LOGGER = logging.getLogger(__name__)

_ROUTE_AUTH_PLUGINS = {
    "keyAuth": ("key-auth", "keyAuth"),
    "basicAuth": ("basic-auth", None),
    "wolfRBAC": ("wolf-rbac", None),
    "jwtAuth": ("jwt-auth", "jwtAuth"),
    "hmacAuth": ("hmac-auth", None),
    "ldapAuth": ("ldap-auth", "ldapAuth"),
}


def translate_plugins(
    translator: Translator, namespace: str, plugins: list[dict[str, Any]] | None
) -> dict[str, Any]:
    """Build the plugin map, merging ``secretRef`` data over inline config.

    An unreadable ``secretRef`` is logged and stops the merge, matching the
    behaviour of configs whose secret is created after the route.
    """
    result: dict[str, Any] = {}
    for plugin in plugins or []:
        if not plugin.get("enable"):
            continue
        config = plugin.get("config")
        if config is None:
            result[plugin["name"]] = {}
            continue
        config = copy.deepcopy(config)
        secret_ref = plugin.get("secretRef")
        if secret_ref:
            try:
                secret = translator.get_secret(namespace, secret_ref)
            except SecretNotFoundError:
                LOGGER.error(
                    "Plugin %s secretRef %s/%s is invalid", plugin["name"], namespace, secret_ref
                )
                result[plugin["name"]] = config
                break
            for key in secret.get("data") or {}:
                insert_key_in_map(key, decode_secret_value(secret, key), config)
        result[plugin["name"]] = config
    return result


def _service_port(backend: dict[str, Any]) -> int | str:
    port = backend.get("servicePort")
    if isinstance(port, str) and port.isdigit():
        return int(port)
    return port if port is not None else 0


class ApisixRouteTranslator:
    """ApisixRoute ``apisix.apache.org/v2`` adapter.

    Subclasses describe older schema generations by switching off the
    features they lack; everything else is shared.
    """

    version = APISIX_V2
    supports_external_upstreams = True
    supports_stream_sni = True
    auth_types = frozenset(_ROUTE_AUTH_PLUGINS)

    def __init__(self, translator: Translator) -> None:
        self.translator = translator

    def _check_version(self, ar: Obj) -> None:
        api_version = ar.get("apiVersion") or self.version
        if api_version != self.version:
            raise UnsupportedVersionError(api_version)

    def translate(self, ar: Obj) -> TranslateContext:
        self._check_version(ar)
        ctx = TranslateContext()
        self._translate_http(ctx, ar)
        self._translate_stream(ctx, ar)
        return ctx

    def translate_old(self, ar: Obj) -> TranslateContext:
        """Translate the previous object of an update.

        Falls back to delete-marks when the old object no longer translates
        (typically a backend Service that has since gone away).
        """
        try:
            return self.translate(ar)
        except TranslateError as exc:
            LOGGER.debug("Old ApisixRoute no longer translates, using delete marks: %s", exc)
            return self.delete_marks(ar)

    def _route_plugins(self, ns: str, part: dict[str, Any], resolve_secrets: bool) -> dict[str, Any]:
        if resolve_secrets:
            plugins = translate_plugins(self.translator, ns, part.get("plugins"))
        else:
            plugins = {
                p["name"]: copy.deepcopy(p.get("config") or {})
                for p in part.get("plugins") or []
                if p.get("enable")
            }
        auth = part.get("authentication") or {}
        if auth.get("enable"):
            auth_type = auth.get("type") or ""
            if auth_type not in self.auth_types:
                auth_type = "basicAuth"
            plugin_name, config_key = _ROUTE_AUTH_PLUGINS[auth_type]
            plugins[plugin_name] = copy.deepcopy(auth.get(config_key) or {}) if config_key else {}
        return plugins

    def _translate_http(self, ctx: TranslateContext, ar: Obj) -> None:
        meta = metadata(ar)
        ns, name = meta.get("namespace", ""), meta.get("name", "")
        seen: set[str] = set()
        for part in spec(ar).get("http") or []:
            rule = part.get("name", "")
            if rule in seen:
                raise TranslateError("spec.http.name", "duplicated route rule name")
            seen.add(rule)

            match = part.get("match") or {}
            exprs = translate_route_match_exprs(match.get("exprs"))
            validate_remote_addrs(match.get("remoteAddrs"))

            route = Route(
                name=compose_route_name(ns, name, rule),
                priority=int(part.get("priority") or 0),
                remote_addrs=list(match.get("remoteAddrs") or []),
                vars=exprs,
                hosts=list(match.get("hosts") or []),
                uris=list(match.get("paths") or []),
                methods=list(match.get("methods") or []),
                enable_websocket=bool(part.get("websocket")),
                plugins=self._route_plugins(ns, part, resolve_secrets=True),
                timeout=_route_timeout(part.get("timeout")),
                filter_func=match.get("filter_func") or "",
                labels={**MANAGED_BY_LABELS, **(meta.get("labels") or {})},
            )
            route.id = gen_id(route.name)
            if part.get("plugin_config_name"):
                route.plugin_config_id = gen_id(
                    compose_plugin_config_name(ns, part["plugin_config_name"])
                )
            ctx.add_route(route)

            backends = list(part.get("backends") or [])
            if backends:
                self._translate_backends(ctx, ns, route, backends)
            if self.supports_external_upstreams and part.get("upstreams"):
                self._translate_external_upstreams(ctx, ns, route, part, bool(backends))

    def _translate_backends(
        self, ctx: TranslateContext, ns: str, route: Route, backends: list[dict[str, Any]]
    ) -> None:
        first, rest = backends[0], backends[1:]
        upstream = self._backend_upstream(ns, first)
        route.upstream_id = upstream.id
        if rest:
            weighted = []
            for backend in rest:
                ups = self._backend_upstream(ns, backend)
                ctx.add_upstream(ups)
                weighted.append({"upstream_id": ups.id, "weight": _weight(backend.get("weight"))})
            weighted.append({"weight": _weight(first.get("weight"))})
            route.plugins["traffic-split"] = {"rules": [{"weighted_upstreams": weighted}]}
        ctx.add_upstream(upstream)

    def _backend_upstream(self, ns: str, backend: dict[str, Any]) -> Upstream:
        service = backend.get("serviceName", "")
        granularity = backend.get("resolveGranularity") or ""
        cluster_ip, port = self.translator.service_cluster_ip_and_port(
            ns, service, _service_port(backend), granularity
        )
        return self.translator.translate_service(
            ns, service, backend.get("subset") or "", granularity, cluster_ip, port
        )

    def _translate_external_upstreams(
        self,
        ctx: TranslateContext,
        ns: str,
        route: Route,
        part: dict[str, Any],
        has_backends: bool,
    ) -> None:
        refs = part.get("upstreams") or []
        if not has_backends:
            route.upstream_id = gen_id(compose_external_upstream_name(ns, refs[0].get("name", "")))

        translated: list[tuple[Upstream, int]] = []
        for i, ref in enumerate(refs):
            try:
                ups = self.translator.translate_external_upstream(ns, ref.get("name", ""))
            except TranslateError as exc:
                LOGGER.error(
                    "Failed to translate ApisixUpstream %s/%s at upstreams[%d]: %s",
                    ns,
                    ref.get("name"),
                    i,
                    exc,
                )
                continue
            translated.append((ups, _weight(ref.get("weight"))))
        if not translated:
            return

        weighted: list[dict[str, Any]] = []
        if not has_backends:
            if len(translated) > 1:
                weighted.append({"weight": translated[0][1]})
                weighted.extend({"upstream_id": u.id, "weight": w} for u, w in translated[1:])
        else:
            existing = route.plugins.get("traffic-split")
            if existing:
                weighted = existing["rules"][0]["weighted_upstreams"]
            else:
                weighted = [{"weight": _weight((part.get("backends") or [{}])[0].get("weight"))}]
            weighted.extend({"upstream_id": u.id, "weight": w} for u, w in translated)
        if weighted:
            route.plugins["traffic-split"] = {"rules": [{"weighted_upstreams": weighted}]}
        for ups, _ in translated:
            ctx.add_upstream(ups)

    def _translate_stream(self, ctx: TranslateContext, ar: Obj) -> None:
        meta = metadata(ar)
        ns, name = meta.get("namespace", ""), meta.get("name", "")
        seen: set[str] = set()
        for part in spec(ar).get("stream") or []:
            rule = part.get("name", "")
            if rule in seen:
                raise TranslateError("spec.stream.name", "duplicated route rule name")
            seen.add(rule)

            match = part.get("match") or {}
            ups = self._backend_upstream(ns, part.get("backend") or {})
            sr = StreamRoute(
                name=compose_stream_route_name(ns, name, rule),
                server_port=int(match.get("ingressPort") or 0),
                sni=match.get("host", "") if self.supports_stream_sni else "",
                upstream_id=ups.id,
                plugins=translate_plugins(self.translator, ns, part.get("plugins")),
                labels=dict(MANAGED_BY_LABELS),
            )
            sr.id = gen_id(sr.name)
            ctx.add_stream_route(sr)
            ctx.add_upstream(ups)

    def delete_marks(self, ar: Obj) -> TranslateContext:
        """Identity-only resources for a deleted ApisixRoute.

        Nothing here reads Services, Secrets or ApisixUpstreams, which may
        already be gone by the time the delete is processed.
        """
        meta = metadata(ar)
        ns, name = meta.get("namespace", ""), meta.get("name", "")
        ctx = TranslateContext()
        for part in spec(ar).get("http") or []:
            route = Route(name=compose_route_name(ns, name, part.get("name", "")))
            route.id = gen_id(route.name)
            route.plugins = self._route_plugins(ns, part, resolve_secrets=False)
            if part.get("plugin_config_name"):
                route.plugin_config_id = gen_id(
                    compose_plugin_config_name(ns, part["plugin_config_name"])
                )
            ctx.add_route(route)

            backends = part.get("backends") or []
            if backends:
                mark = self._upstream_mark(ns, backends[0])
                if mark is not None:
                    route.upstream_id = mark.id
                    ctx.add_upstream(mark)
            if self.supports_external_upstreams:
                for ref in part.get("upstreams") or []:
                    ups = Upstream(name=compose_external_upstream_name(ns, ref.get("name", "")))
                    ups.id = gen_id(ups.name)
                    ctx.add_upstream(ups)

        for part in spec(ar).get("stream") or []:
            sr = StreamRoute(name=compose_stream_route_name(ns, name, part.get("name", "")))
            sr.id = gen_id(sr.name)
            mark = self._upstream_mark(ns, part.get("backend") or {})
            if mark is not None:
                sr.upstream_id = mark.id
                ctx.add_upstream(mark)
            ctx.add_stream_route(sr)
        return ctx

    def _upstream_mark(self, ns: str, backend: dict[str, Any]) -> Upstream | None:
        port = _service_port(backend)
        if not isinstance(port, int):
            LOGGER.debug(
                "Skipping upstream delete mark for named port %s of service %s/%s",
                port,
                ns,
                backend.get("serviceName"),
            )
            return None
        ups = Upstream(
            name=compose_upstream_name(
                ns,
                backend.get("serviceName", ""),
                backend.get("subset") or "",
                port,
                backend.get("resolveGranularity") or "",
            )
        )
        ups.id = gen_id(ups.name)
        return ups


class ApisixRouteV2beta3Translator(ApisixRouteTranslator):
    """ApisixRoute ``apisix.apache.org/v2beta3``: no external upstreams, no stream SNI, no LDAP auth."""

    version = APISIX_V2BETA3
    supports_external_upstreams = False
    supports_stream_sni = False
    auth_types = frozenset(_ROUTE_AUTH_PLUGINS) - {"ldapAuth"}


def route_translator_for(version: str, translator: Translator) -> ApisixRouteTranslator:
    if version == APISIX_V2:
        return ApisixRouteTranslator(translator)
    if version == APISIX_V2BETA3:
        return ApisixRouteV2beta3Translator(translator)
    raise UnsupportedVersionError(version)


def _weight(value: Any) -> int:
    return DEFAULT_WEIGHT if value is None else int(value)


def _route_timeout(timeout: dict[str, Any] | None) -> UpstreamTimeout | None:
    if not timeout:
        return None
    return UpstreamTimeout(
        connect=parse_duration_seconds(timeout.get("connect")) or DEFAULT_UPSTREAM_TIMEOUT,
        send=parse_duration_seconds(timeout.get("send")) or DEFAULT_UPSTREAM_TIMEOUT,
        read=parse_duration_seconds(timeout.get("read")) or DEFAULT_UPSTREAM_TIMEOUT,
    )


def tls_secret_keys(tls: Obj) -> list[tuple[str, str]]:
    """Return ``(namespace/secret, role)`` pairs referenced by an ApisixTls."""
    ns = metadata(tls).get("namespace", "")
    tls_spec = spec(tls)
    refs: list[tuple[str, str]] = []
    secret = tls_spec.get("secret") or {}
    if secret.get("name"):
        refs.append((f"{secret.get('namespace') or ns}/{secret['name']}", "cert"))
    ca = (tls_spec.get("client") or {}).get("caSecret") or {}
    if ca.get("name"):
        refs.append((f"{ca.get('namespace') or ns}/{ca['name']}", "ca"))
    return refs


def translate_ssl(translator: Translator, tls: Obj) -> SSL:
    meta = metadata(tls)
    ns, name = meta.get("namespace", ""), meta.get("name", "")
    tls_spec = spec(tls)

    secret_ref = tls_spec.get("secret") or {}
    secret = translator.get_secret(secret_ref.get("namespace") or ns, secret_ref.get("name", ""))
    cert = decode_secret_value(secret, "tls.crt") or decode_secret_value(secret, "cert")
    key = decode_secret_value(secret, "tls.key") or decode_secret_value(secret, "key")
    if not cert:
        raise TranslateError("spec.secret", "missing cert field")
    if not key:
        raise TranslateError("spec.secret", "missing key field")

    ssl = SSL(
        name=compose_ssl_name(ns, name),
        snis=list(tls_spec.get("hosts") or []),
        cert=cert,
        key=key,
        labels=dict(MANAGED_BY_LABELS),
    )
    ssl.id = gen_id(ssl.name)

    client = tls_spec.get("client")
    if client:
        ca_ref = client.get("caSecret") or {}
        ca_secret = translator.get_secret(ca_ref.get("namespace") or ns, ca_ref.get("name", ""))
        ca = decode_secret_value(ca_secret, "ca.crt")
        if not ca:
            raise TranslateError("spec.client.caSecret", "missing ca.crt field")
        ssl.client = {"ca": ca}
        if client.get("depth") is not None:
            ssl.client["depth"] = int(client["depth"])
        if client.get("skip_mtls_uri_regex"):
            ssl.client["skip_mtls_uri_regex"] = list(client["skip_mtls_uri_regex"])
    return ssl


def ssl_delete_mark(tls: Obj) -> SSL:
    meta = metadata(tls)
    ssl = SSL(name=compose_ssl_name(meta.get("namespace", ""), meta.get("name", "")))
    ssl.id = gen_id(ssl.name)
    return ssl


_INT_FIELDS = frozenset({"exp", "clock_skew", "max_req_body", "lifetime_grace_period"})
_BOOL_FIELDS = frozenset({"base64_secret", "keep_headers", "encode_uri_params", "validate_request_body"})
_LIST_FIELDS = frozenset({"signed_headers"})

# authParameter key => (plugin name, keys required in a referenced secret, optional keys)
_CONSUMER_AUTH: dict[str, tuple[str, tuple[str, ...], tuple[str, ...]]] = {
    "keyAuth": ("key-auth", ("key",), ()),
    "basicAuth": ("basic-auth", ("username", "password"), ()),
    "jwtAuth": (
        "jwt-auth",
        ("key",),
        ("secret", "public_key", "private_key", "algorithm", "exp", "base64_secret",
         "lifetime_grace_period"),
    ),
    "wolfRBAC": ("wolf-rbac", (), ("server", "appid", "header_prefix")),
    "hmacAuth": (
        "hmac-auth",
        ("access_key", "secret_key"),
        ("algorithm", "clock_skew", "signed_headers", "keep_headers", "encode_uri_params",
         "validate_request_body", "max_req_body"),
    ),
    "ldapAuth": ("ldap-auth", ("user_dn",), ()),
}


def _coerce_secret_field(key: str, raw: str) -> Any:
    if key in _INT_FIELDS:
        return int(raw)
    if key in _BOOL_FIELDS:
        return raw.strip().lower() in {"1", "true", "yes", "on"}
    if key in _LIST_FIELDS:
        return [item.strip() for item in raw.split(",") if item.strip()]
    return raw


def translate_consumer(translator: Translator, ac: Obj, version: str = APISIX_V2) -> Consumer:
    """Translate an ApisixConsumer; only the first configured auth method is used."""
    meta = metadata(ac)
    ns, name = meta.get("namespace", ""), meta.get("name", "")
    auth = spec(ac).get("authParameter") or {}

    plugins: dict[str, Any] = {}
    for field_name, (plugin, required, optional) in _CONSUMER_AUTH.items():
        cfg = auth.get(field_name)
        if cfg is None:
            continue
        if field_name == "ldapAuth" and version != APISIX_V2:
            raise UnsupportedVersionError(version)
        if cfg.get("value") is not None:
            plugins[plugin] = copy.deepcopy(cfg["value"])
            break
        ref = cfg.get("secretRef") or {}
        secret = translator.get_secret(ns, ref.get("name", ""))
        value: dict[str, Any] = {}
        for key in required:
            raw = decode_secret_value(secret, key)
            if raw is None:
                raise TranslateError(
                    f"spec.authParameter.{field_name}", f'key "{key}" not found or invalid in secret'
                )
            value[key] = _coerce_secret_field(key, raw)
        for key in optional:
            raw = decode_secret_value(secret, key)
            if raw:
                try:
                    value[key] = _coerce_secret_field(key, raw)
                except ValueError as exc:
                    raise TranslateError(
                        f"spec.authParameter.{field_name}", f"invalid {key}: {exc}"
                    ) from exc
        plugins[plugin] = value
        break

    return Consumer(
        username=compose_consumer_name(ns, name),
        plugins=plugins,
        labels=dict(MANAGED_BY_LABELS),
    )


def consumer_delete_mark(ac: Obj) -> Consumer:
    meta = metadata(ac)
    return Consumer(username=compose_consumer_name(meta.get("namespace", ""), meta.get("name", "")))


def translate_plugin_config(translator: Translator, apc: Obj) -> TranslateContext:
    meta = metadata(apc)
    ns, name = meta.get("namespace", ""), meta.get("name", "")
    pc = PluginConfig(
        name=compose_plugin_config_name(ns, name),
        plugins=translate_plugins(translator, ns, spec(apc).get("plugins")),
        labels=dict(MANAGED_BY_LABELS),
    )
    pc.id = gen_id(pc.name)
    ctx = TranslateContext()
    ctx.add_plugin_config(pc)
    return ctx


def plugin_config_delete_mark(apc: Obj) -> TranslateContext:
    meta = metadata(apc)
    pc = PluginConfig(name=compose_plugin_config_name(meta.get("namespace", ""), meta.get("name", "")))
    pc.id = gen_id(pc.name)
    ctx = TranslateContext()
    ctx.add_plugin_config(pc)
    return ctx


def translate_cluster_config(acc: Obj) -> GlobalRule:
    """ApisixClusterConfig monitoring switches become a cluster-wide GlobalRule."""
    name = metadata(acc).get("name", "")
    monitoring = spec(acc).get("monitoring") or {}
    plugins: dict[str, Any] = {}
    prometheus = monitoring.get("prometheus") or {}
    if prometheus.get("enable"):
        plugins["prometheus"] = {"prefer_name": bool(prometheus.get("preferName"))}
    skywalking = monitoring.get("skywalking") or {}
    if skywalking.get("enable"):
        ratio = skywalking.get("sampleRatio")
        plugins["skywalking"] = {"sample_ratio": float(ratio) if ratio is not None else 1.0}
    rule = GlobalRule(name=compose_global_rule_name(name), plugins=plugins)
    rule.id = gen_id(rule.name)
    return rule


def translate_apisix_upstream(translator: Translator, au: Obj) -> TranslateContext:
    """Re-translate every gateway upstream an ApisixUpstream configures.

    The nodes are left empty; callers carry the live node list over from the
    gateway so endpoint reconciliation stays the only writer of nodes.
    """
    meta = metadata(au)
    ns, name = meta.get("namespace", ""), meta.get("name", "")
    au_spec = spec(au)
    ctx = TranslateContext()

    if au_spec.get("externalNodes") or au_spec.get("discovery"):
        ctx.add_upstream(translator.translate_external_upstream(ns, name))
        return ctx

    svc = spec(translator.get_service(ns, name))
    subsets = [""] + [ss.get("name", "") for ss in au_spec.get("subsets") or []]
    for svc_port in svc.get("ports") or []:
        port = int(svc_port["port"])
        cfg = Translator.upstream_config_for_port(au_spec, port)
        for subset in subsets:
            ups = translator.translate_upstream_config(ns, cfg)
            ups.name = compose_upstream_name(ns, name, subset, port)
            ups.id = gen_id(ups.name)
            ups.labels = dict(MANAGED_BY_LABELS)
            ctx.add_upstream(ups)
    return ctx
