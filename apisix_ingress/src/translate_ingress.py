from __future__ import annotations

import copy
import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from apisix_ingress.src.apisix_types import (
    DEFAULT_UPSTREAM_TIMEOUT,
    SCHEMES,
    Route,
    Upstream,
    UpstreamTimeout,
    compose_plugin_config_name,
    compose_upstream_name,
    gen_id,
)
from apisix_ingress.src.config import INGRESS_CLASS_ANY, INGRESS_V1, INGRESS_V1BETA1
from apisix_ingress.src.informer import Obj
from apisix_ingress.src.translate_apisix import ssl_delete_mark, translate_ssl
from apisix_ingress.src.translation import (
    MANAGED_BY_LABELS,
    ServiceNotFoundError,
    TranslateContext,
    TranslateError,
    Translator,
    UnsupportedVersionError,
    metadata,
    spec,
    translate_route_match_exprs,
)

LOGGER = logging.getLogger(__name__)

ANNOTATIONS_PREFIX = "k8s.apisix.apache.org/"
INGRESS_CLASS_ANNOTATION = "kubernetes.io/ingress.class"

REGEX_PRIORITY = 100

_TRUE = "true"


@dataclass
class IngressAnnotations:
    """Settings parsed from ``k8s.apisix.apache.org/*`` annotations."""

    use_regex: bool = False
    enable_websocket: bool = False
    plugin_config_name: str = ""
    service_namespace: str = ""
    upstream_scheme: str = ""
    upstream_retries: int | None = None
    timeout_connect: int = 0
    timeout_read: int = 0
    timeout_send: int = 0
    plugins: dict[str, Any] = field(default_factory=dict)


def _annotation(annotations: dict[str, str], name: str) -> str:
    return (annotations.get(ANNOTATIONS_PREFIX + name) or "").strip()


def _timeout_annotation(annotations: dict[str, str], name: str) -> int:
    raw = _annotation(annotations, name)
    if not raw:
        return 0
    try:
        return int(raw.removesuffix("s"))
    except ValueError:
        LOGGER.warning("Ignoring invalid %s%s annotation %r", ANNOTATIONS_PREFIX, name, raw)
        return 0


def _split(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


def parse_annotations(annotations: dict[str, str] | None) -> IngressAnnotations:
    annotations = annotations or {}
    parsed = IngressAnnotations(
        use_regex=_annotation(annotations, "use-regex") == _TRUE,
        enable_websocket=_annotation(annotations, "enable-websocket") == _TRUE,
        plugin_config_name=_annotation(annotations, "plugin-config-name"),
        service_namespace=_annotation(annotations, "svc-namespace"),
        timeout_connect=_timeout_annotation(annotations, "upstream-connect-timeout"),
        timeout_read=_timeout_annotation(annotations, "upstream-read-timeout"),
        timeout_send=_timeout_annotation(annotations, "upstream-send-timeout"),
    )

    scheme = _annotation(annotations, "upstream-scheme").lower()
    if scheme:
        if scheme in SCHEMES:
            parsed.upstream_scheme = scheme
        else:
            LOGGER.warning("Ignoring unsupported upstream scheme annotation %r", scheme)

    retries = _annotation(annotations, "upstream-retries")
    if retries:
        try:
            parsed.upstream_retries = int(retries)
        except ValueError:
            LOGGER.warning("Ignoring invalid upstream-retries annotation %r", retries)

    plugins = parsed.plugins
    if _annotation(annotations, "enable-cors") == _TRUE:
        plugins["cors"] = {
            "allow_origins": _annotation(annotations, "cors-allow-origin") or "*",
            "allow_headers": _annotation(annotations, "cors-allow-headers") or "*",
            "allow_methods": _annotation(annotations, "cors-allow-methods") or "*",
        }
    if _annotation(annotations, "enable-csrf") == _TRUE and _annotation(annotations, "csrf-key"):
        plugins["csrf"] = {"key": _annotation(annotations, "csrf-key")}
    if _annotation(annotations, "http-to-https") == _TRUE:
        plugins["redirect"] = {"http_to_https": True}
    elif _annotation(annotations, "http-redirect"):
        code = _annotation(annotations, "http-redirect-code") or "301"
        plugins["redirect"] = {"uri": _annotation(annotations, "http-redirect"), "ret_code": int(code)}
    if _annotation(annotations, "rewrite-target"):
        plugins["proxy-rewrite"] = {"uri": _annotation(annotations, "rewrite-target")}
    elif _annotation(annotations, "rewrite-target-regex"):
        plugins["proxy-rewrite"] = {
            "regex_uri": [
                _annotation(annotations, "rewrite-target-regex"),
                _annotation(annotations, "rewrite-target-regex-template"),
            ]
        }
    allow = _split(_annotation(annotations, "allowlist-source-range"))
    block = _split(_annotation(annotations, "blocklist-source-range"))
    if allow or block:
        restriction: dict[str, Any] = {}
        if allow:
            restriction["whitelist"] = allow
        if block:
            restriction["blacklist"] = block
        plugins["ip-restriction"] = restriction
    return parsed


def ingress_class_matches(ing: Obj, ingress_class: str) -> bool:
    """Whether this controller owns the Ingress.

    The annotation wins over ``spec.ingressClassName``; an Ingress naming no
    class at all is only taken when the controller accepts every class.
    """
    if ingress_class == INGRESS_CLASS_ANY:
        return True
    annotated = (metadata(ing).get("annotations") or {}).get(INGRESS_CLASS_ANNOTATION)
    if annotated is not None:
        return annotated == ingress_class
    return spec(ing).get("ingressClassName") == ingress_class


def compose_ingress_route_name(namespace: str, name: str, host: str, path: str) -> str:
    return f"ing_{namespace}_{name}_{gen_id(host + path)}"


def compose_ingress_tls_name(name: str, secret_name: str, hosts: list[str]) -> str:
    # Unique per TLS entry so two entries of one Ingress never share an SSL ID.
    digest = hashlib.sha1(  # noqa: S324
        json.dumps({"secret": secret_name, "hosts": hosts}, sort_keys=True).encode("utf-8")
    ).hexdigest()
    return f"{name}-tls-{digest[:6]}"


class IngressTranslator:
    """Ingress ``networking/v1`` adapter; the v1beta1 subclass only reads backends differently."""

    version = INGRESS_V1

    def __init__(self, translator: Translator) -> None:
        self.translator = translator

    @staticmethod
    def backend_ref(backend: dict[str, Any]) -> tuple[str, int | str] | None:
        service = backend.get("service")
        if not service:
            return None
        port = service.get("port") or {}
        if port.get("name"):
            return service.get("name", ""), port["name"]
        return service.get("name", ""), int(port.get("number") or 0)

    def translate(self, ing: Obj, skip_verify: bool = False) -> TranslateContext:
        """Translate an Ingress.

        ``skip_verify`` builds identity-only upstreams and SSLs without
        reading endpoints or Secrets; it is used for deletes, where
        backends may be gone.
        """
        meta = metadata(ing)
        ns, name = meta.get("namespace", ""), meta.get("name", "")
        annotations = parse_annotations(meta.get("annotations"))
        ctx = TranslateContext()

        for tls in spec(ing).get("tls") or []:
            hosts = list(tls.get("hosts") or [])
            secret_name = tls.get("secretName") or ""
            apisix_tls = {
                "metadata": {
                    "namespace": ns,
                    "name": compose_ingress_tls_name(name, secret_name, hosts),
                },
                "spec": {"hosts": hosts, "secret": {"name": secret_name, "namespace": ns}},
            }
            if skip_verify:
                ctx.add_ssl(ssl_delete_mark(apisix_tls))
            else:
                ctx.add_ssl(translate_ssl(self.translator, apisix_tls))

        svc_ns = annotations.service_namespace or ns
        for rule in spec(ing).get("rules") or []:
            http = rule.get("http")
            if not http:
                continue
            host = rule.get("host") or ""
            for path_rule in http.get("paths") or []:
                ups = None
                ref = self.backend_ref(path_rule.get("backend") or {})
                if ref is not None:
                    ups = self._upstream(svc_ns, ref[0], ref[1], annotations, skip_verify)
                    ctx.add_upstream(ups)
                ctx.add_route(self._route(ns, name, host, path_rule, annotations, ups))
        return ctx

    def translate_old(self, ing: Obj) -> TranslateContext:
        try:
            return self.translate(ing)
        except TranslateError as exc:
            LOGGER.debug("Old Ingress no longer translates, using identity-only upstreams: %s", exc)
            return self.translate(ing, skip_verify=True)

    def _route(
        self,
        ns: str,
        name: str,
        host: str,
        path_rule: dict[str, Any],
        annotations: IngressAnnotations,
        ups: Upstream | None,
    ) -> Route:
        path = path_rule.get("path") or "/"
        path_type = path_rule.get("pathType") or ""
        uris = [path]
        exprs: list[dict[str, Any]] = []
        if path_type == "Prefix":
            # "/foo" must not match "/foobar", so the exact path and a
            # "/foo/*" prefix are both routed.
            uris.append(path + "*" if path.endswith("/") else path + "/*")
        elif path_type in ("ImplementationSpecific", "") and annotations.use_regex:
            exprs.append({"subject": {"scope": "Path"}, "op": "RegexMatch", "value": path})
            uris = ["/*"]

        route = Route(
            name=compose_ingress_route_name(ns, name, host, path),
            host=host,
            uris=uris,
            enable_websocket=annotations.enable_websocket,
            plugins=copy.deepcopy(annotations.plugins),
            labels=dict(MANAGED_BY_LABELS),
        )
        route.id = gen_id(route.name)
        if exprs:
            route.vars = translate_route_match_exprs(exprs)
            route.priority = REGEX_PRIORITY
        if annotations.plugin_config_name:
            route.plugin_config_id = gen_id(
                compose_plugin_config_name(ns, annotations.plugin_config_name)
            )
        if ups is not None:
            route.upstream_id = ups.id
        return route

    def _resolve_port(self, ns: str, service: str, port: int | str, skip_verify: bool) -> int:
        if isinstance(port, int):
            return port
        try:
            svc = self.translator.get_service(ns, service)
        except ServiceNotFoundError:
            if skip_verify:
                return 0
            raise
        for svc_port in spec(svc).get("ports") or []:
            if svc_port.get("name") == port:
                return int(svc_port["port"])
        if skip_verify:
            return 0
        raise TranslateError("service", "port not found")

    def _upstream(
        self,
        ns: str,
        service: str,
        port: int | str,
        annotations: IngressAnnotations,
        skip_verify: bool,
    ) -> Upstream:
        port_number = self._resolve_port(ns, service, port, skip_verify)
        if skip_verify:
            ups = Upstream()
        else:
            ups = self.translator.translate_upstream(ns, service, "", port_number)
            if annotations.upstream_scheme:
                ups.scheme = annotations.upstream_scheme
            if annotations.upstream_retries is not None:
                ups.retries = annotations.upstream_retries
            if annotations.timeout_connect or annotations.timeout_read or annotations.timeout_send:
                timeout = ups.timeout or UpstreamTimeout(
                    connect=DEFAULT_UPSTREAM_TIMEOUT,
                    send=DEFAULT_UPSTREAM_TIMEOUT,
                    read=DEFAULT_UPSTREAM_TIMEOUT,
                )
                if annotations.timeout_connect:
                    timeout.connect = annotations.timeout_connect
                if annotations.timeout_read:
                    timeout.read = annotations.timeout_read
                if annotations.timeout_send:
                    timeout.send = annotations.timeout_send
                ups.timeout = timeout
            ups.labels = dict(MANAGED_BY_LABELS)
        ups.name = compose_upstream_name(ns, service, "", port_number)
        ups.id = gen_id(ups.name)
        return ups


class IngressV1beta1Translator(IngressTranslator):
    version = INGRESS_V1BETA1

    @staticmethod
    def backend_ref(backend: dict[str, Any]) -> tuple[str, int | str] | None:
        service = backend.get("serviceName")
        if not service:
            return None
        port = backend.get("servicePort")
        if isinstance(port, str) and port.isdigit():
            port = int(port)
        return service, port if port is not None else 0


def ingress_translator_for(version: str, translator: Translator) -> IngressTranslator:
    if version == INGRESS_V1:
        return IngressTranslator(translator)
    if version == INGRESS_V1BETA1:
        return IngressV1beta1Translator(translator)
    raise UnsupportedVersionError(version)


def ingress_service_keys(ing: Obj, translator_cls: type[IngressTranslator]) -> list[str]:
    """``namespace/service`` keys of every backend an Ingress routes to."""
    meta = metadata(ing)
    ns = parse_annotations(meta.get("annotations")).service_namespace or meta.get("namespace", "")
    keys: list[str] = []
    for rule in spec(ing).get("rules") or []:
        for path_rule in (rule.get("http") or {}).get("paths") or []:
            ref = translator_cls.backend_ref(path_rule.get("backend") or {})
            if ref is not None and f"{ns}/{ref[0]}" not in keys:
                keys.append(f"{ns}/{ref[0]}")
    return keys
