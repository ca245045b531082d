from __future__ import annotations

from types import SimpleNamespace

import pytest

from apisix_ingress.src.apisix_types import Upstream, UpstreamNode, UpstreamTimeout, gen_id
from apisix_ingress.src.translation import (
    MANAGED_BY_LABELS,
    EndpointSliceSource,
    SecretNotFoundError,
    ServiceNotFoundError,
    TranslateContext,
    TranslateError,
    decode_secret_value,
    insert_key_in_map,
    parse_duration_seconds,
    translate_health_check,
    translate_route_match_exprs,
    validate_remote_addrs,
)
from conftest import b64, obj


@pytest.mark.parametrize(
    ("value", "expected"),
    [(None, 0), ("", 0), (5, 5), ("30", 30), ("5s", 5), ("1m30s", 90), ("1h", 3600), ("1500ms", 1)],
)
def test_parse_duration_seconds(value: object, expected: int) -> None:
    assert parse_duration_seconds(value) == expected


def test_parse_duration_rejects_garbage() -> None:
    with pytest.raises(TranslateError):
        parse_duration_seconds("five seconds")


def test_insert_key_in_map_creates_nested_dicts() -> None:
    target = {"a": {"keep": 1}}
    insert_key_in_map("a.b.c", 2, target)
    assert target == {"a": {"keep": 1, "b": {"c": 2}}}


def test_validate_remote_addrs() -> None:
    validate_remote_addrs(["10.0.0.1", "10.0.0.0/24", "::1"])
    with pytest.raises(TranslateError):
        validate_remote_addrs(["10.0.0.300"])


def test_decode_secret_value_prefers_data() -> None:
    secret = {"data": {"key": b64("encoded")}, "stringData": {"other": "plain"}}
    assert decode_secret_value(secret, "key") == "encoded"
    assert decode_secret_value(secret, "other") == "plain"
    assert decode_secret_value(secret, "missing") is None


def test_match_exprs_translate_scopes_and_operators() -> None:
    exprs = [
        {"subject": {"scope": "Header", "name": "X-Foo"}, "op": "Equal", "value": "bar"},
        {"subject": {"scope": "Query", "name": "id"}, "op": "NotIn", "set": ["1", "2"]},
        {"subject": {"scope": "Cookie", "name": "sid"}, "op": "RegexMatch", "value": "^a"},
        {"subject": {"scope": "Path"}, "op": "RegexNotMatchCaseInsensitive", "value": "/admin"},
        {"subject": {"scope": "Variable", "name": "remote_addr"}, "op": "In", "set": ["1.1.1.1"]},
    ]

    assert translate_route_match_exprs(exprs) == [
        ["http_x_foo", "==", "bar"],
        ["arg_id", "!", "in", ["1", "2"]],
        ["cookie_sid", "~~", "^a"],
        ["uri", "!", "~*", "/admin"],
        ["remote_addr", "in", ["1.1.1.1"]],
    ]


@pytest.mark.parametrize(
    "expr",
    [
        {"subject": {"name": "x"}, "op": "Equal", "value": "1"},
        {"subject": {"scope": "Header"}, "op": "Equal", "value": "1"},
        {"subject": {"scope": "Body", "name": "x"}, "op": "Equal", "value": "1"},
        {"subject": {"scope": "Header", "name": "x"}, "op": "Like", "value": "1"},
        {"subject": {"scope": "Header", "name": "x"}, "op": "In"},
        {"subject": {"scope": "Header", "name": "x"}, "op": "Equal"},
    ],
)
def test_match_exprs_reject_invalid(expr: dict) -> None:
    with pytest.raises(TranslateError):
        translate_route_match_exprs([expr])


def test_health_check_renames_keys_and_parses_durations() -> None:
    checks = translate_health_check(
        {
            "active": {
                "httpPath": "/healthz",
                "timeout": "3s",
                "healthy": {"interval": "10s", "httpCodes": [200]},
            }
        }
    )
    assert checks == {
        "active": {"http_path": "/healthz", "timeout": 3, "healthy": {"interval": 10, "http_statuses": [200]}}
    }


def test_context_deduplicates_upstreams_by_name() -> None:
    ctx = TranslateContext()
    ctx.add_upstream(Upstream(id="1", name="default_httpbin_80"))
    ctx.add_upstream(Upstream(id="1", name="default_httpbin_80"))

    assert ctx.check_upstream_exist("default_httpbin_80") is True
    assert len(ctx.to_manifest().upstreams) == 1


class TestTranslator:
    def test_missing_service_and_secret_raise_typed_errors(self, world: SimpleNamespace) -> None:
        with pytest.raises(ServiceNotFoundError):
            world.translator.get_service("default", "nope")
        with pytest.raises(SecretNotFoundError):
            world.translator.get_secret("default", "nope")

    def test_service_port_resolution(self, world: SimpleNamespace) -> None:
        t = world.translator
        assert t.service_cluster_ip_and_port("default", "httpbin", 80) == ("10.96.0.10", 80)
        assert t.service_cluster_ip_and_port("default", "httpbin", "metrics") == ("10.96.0.10", 9090)
        with pytest.raises(TranslateError):
            t.service_cluster_ip_and_port("default", "httpbin", 81)

    def test_endpoint_nodes_use_target_port(self, world: SimpleNamespace) -> None:
        nodes = world.translator.translate_endpoint_nodes("default", "httpbin", 80)
        assert nodes == [UpstreamNode("10.1.0.1", 8080), UpstreamNode("10.1.0.2", 8080)]

    def test_endpoint_nodes_filtered_by_subset_labels(self, world: SimpleNamespace) -> None:
        nodes = world.translator.translate_endpoint_nodes("default", "httpbin", 80, {"version": "v2"})
        assert nodes == [UpstreamNode("10.1.0.2", 8080)]

    def test_endpoint_nodes_empty_without_endpoints(self, world: SimpleNamespace) -> None:
        world.endpoints.replace([])
        assert world.translator.translate_endpoint_nodes("default", "httpbin", 80) == []

    def test_translate_service_without_apisix_upstream(self, world: SimpleNamespace) -> None:
        ups = world.translator.translate_service("default", "httpbin", "", "", "10.96.0.10", 80)

        assert ups.name == "default_httpbin_80"
        assert ups.id == gen_id("default_httpbin_80")
        assert ups.labels == MANAGED_BY_LABELS
        assert ups.type == "roundrobin"
        assert len(ups.nodes) == 2

    def test_service_granularity_uses_cluster_ip(self, world: SimpleNamespace) -> None:
        ups = world.translator.translate_service(
            "default", "httpbin", "", "service", "10.96.0.10", 80
        )
        assert ups.name == "default_httpbin_80_service"
        assert ups.nodes == [UpstreamNode("10.96.0.10", 80)]

    def test_apisix_upstream_port_level_settings_win(self, world: SimpleNamespace) -> None:
        world.upstreams.replace(
            [
                obj(
                    "httpbin",
                    spec={
                        "loadbalancer": {"type": "chash", "hashOn": "header", "key": "X-User"},
                        "retries": 2,
                        "timeout": {"connect": "5s"},
                        "portLevelSettings": [{"port": 9090, "scheme": "https"}],
                    },
                )
            ]
        )

        http = world.translator.translate_service("default", "httpbin", "", "", "", 80)
        metrics = world.translator.translate_service("default", "httpbin", "", "", "", 9090)

        assert (http.type, http.hash_on, http.key, http.retries) == ("chash", "header", "X-User", 2)
        assert http.timeout == UpstreamTimeout(connect=5, send=60, read=60)
        assert metrics.scheme == "https"
        assert metrics.type == "roundrobin"

    def test_unknown_subset_without_apisix_upstream_has_no_nodes(self, world: SimpleNamespace) -> None:
        ups = world.translator.translate_upstream("default", "httpbin", "canary", 80)
        assert ups.nodes == []

    @pytest.mark.parametrize(
        "cfg",
        [
            {"scheme": "ftp"},
            {"loadbalancer": {"type": "random"}},
            {"loadbalancer": {"type": "chash", "hashOn": "body"}},
            {"retries": -1},
            {"passHost": "other"},
            {"passHost": "rewrite"},
        ],
    )
    def test_invalid_upstream_config(self, world: SimpleNamespace, cfg: dict) -> None:
        with pytest.raises(TranslateError):
            world.translator.translate_upstream_config("default", cfg)

    def test_upstream_client_tls_from_secret(self, world: SimpleNamespace) -> None:
        ups = world.translator.translate_upstream_config(
            "default", {"scheme": "https", "tlsSecret": {"name": "tls-cert"}}
        )
        assert ups.tls == {"client_cert": "CERT", "client_key": "KEY"}

    def test_external_upstream_nodes(self, world: SimpleNamespace) -> None:
        world.services.replace(
            [
                world.services.get("default", "httpbin"),
                obj("ext", spec={"type": "ExternalName", "externalName": "httpbin.org"}),
            ]
        )
        world.upstreams.replace(
            [
                obj(
                    "external",
                    spec={
                        "scheme": "https",
                        "externalNodes": [
                            {"type": "Domain", "name": "a.example.com", "weight": 10},
                            {"type": "Service", "name": "ext", "port": 8443},
                        ],
                    },
                )
            ]
        )

        ups = world.translator.translate_external_upstream("default", "external")

        assert ups.name == "default_external_upstream"
        assert ups.nodes == [
            UpstreamNode("a.example.com", 443, 10),
            UpstreamNode("httpbin.org", 8443, 100),
        ]

    def test_external_node_must_be_external_name_service(self, world: SimpleNamespace) -> None:
        world.upstreams.replace(
            [obj("external", spec={"externalNodes": [{"type": "Service", "name": "httpbin"}]})]
        )
        with pytest.raises(TranslateError, match="ExternalName"):
            world.translator.translate_external_upstream("default", "external")

    def test_external_upstream_requires_nodes_or_discovery(self, world: SimpleNamespace) -> None:
        world.upstreams.replace([obj("plain", spec={"retries": 1})])
        with pytest.raises(TranslateError):
            world.translator.translate_external_upstream("default", "plain")

    def test_discovery_upstream(self, world: SimpleNamespace) -> None:
        world.upstreams.replace(
            [obj("disc", spec={"discovery": {"type": "dns", "serviceName": "httpbin.org"}})]
        )
        ups = world.translator.translate_external_upstream("default", "disc")
        assert (ups.discovery_type, ups.service_name) == ("dns", "httpbin.org")
        assert "nodes" not in ups.to_admin()


def test_endpoint_slice_source_groups_by_service_label(make_cache) -> None:
    slices = make_cache(
        "EndpointSlice",
        obj(
            "httpbin-abc",
            labels={"kubernetes.io/service-name": "httpbin"},
            ports=[{"name": "http", "port": 8080}],
            endpoints=[
                {"addresses": ["10.1.0.1"], "conditions": {"ready": True}, "targetRef": {"name": "a"}},
                {"addresses": ["10.1.0.2"], "conditions": {"ready": False}},
            ],
        ),
        obj("other-xyz", labels={"kubernetes.io/service-name": "other"}, ports=[{"name": "http", "port": 1}]),
    )

    assert EndpointSliceSource(slices).addresses("default", "httpbin", "http") == [("10.1.0.1", 8080, "a")]
