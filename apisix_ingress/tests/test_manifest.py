from __future__ import annotations

import pytest

from apisix_ingress.src.apisix import Cluster, StillInUseError
from apisix_ingress.src.apisix_types import (
    SSL,
    PluginConfig,
    Route,
    Upstream,
    UpstreamNode,
    UpstreamTimeout,
    gen_id,
)
from apisix_ingress.src.manifest import (
    Manifest,
    SyncError,
    diff_resources,
    sync_manifests,
    sync_upstream_nodes,
)
from conftest import FakeAdminSession, FakeResponse


def test_diff_partitions_by_id() -> None:
    olds = [Route(id="1"), Route(id="3", methods=["POST"])]
    news = [Route(id="2"), Route(id="3", methods=["POST", "PUT"])]

    added, updated, deleted = diff_resources(olds, news)

    assert added == [Route(id="2")]
    assert updated == [Route(id="3", methods=["POST", "PUT"])]
    assert deleted == [Route(id="1")]


def test_diff_without_prior_state_adds_everything() -> None:
    news = [Route(id="1"), Route(id="2")]
    assert diff_resources(None, news) == (news, [], [])


def test_diff_without_new_state_deletes_everything() -> None:
    olds = [Route(id="1")]
    assert diff_resources(olds, None) == ([], [], olds)


def test_diff_of_identical_lists_is_empty() -> None:
    routes = [Route(id="1", uri="/ip")]
    assert diff_resources(routes, [r.clone() for r in routes]) == ([], [], [])


def test_manifest_diff_returns_none_for_empty_buckets() -> None:
    old = Manifest(routes=[Route(id="1")], upstreams=[Upstream(id="u")])
    new = Manifest(routes=[Route(id="1")], upstreams=[Upstream(id="u")], ssls=[SSL(id="s")])

    added, updated, deleted = new.diff(old)

    assert added == Manifest(ssls=[SSL(id="s")])
    assert updated is None
    assert deleted is None


def test_manifest_diff_against_nothing_adds_all() -> None:
    new = Manifest(routes=[Route(id="1")])
    added, updated, deleted = new.diff(None)
    assert added == new
    assert updated is None and deleted is None


def test_manifest_is_empty() -> None:
    assert Manifest().is_empty() is True
    assert Manifest(plugin_configs=[PluginConfig(id="p")]).is_empty() is False


def test_sync_order_deletes_then_creates_then_updates(admin: FakeAdminSession, cluster: Cluster) -> None:
    admin.seed("/routes/old", {"id": "old"})
    admin.seed("/upstreams/stale", {"id": "stale", "nodes": []})
    admin.seed("/routes/keep", {"id": "keep"})

    sync_manifests(
        cluster,
        added=Manifest(routes=[Route(id="r", upstream_id="u")], upstreams=[Upstream(id="u")]),
        updated=Manifest(routes=[Route(id="keep", uri="/v2")]),
        deleted=Manifest(routes=[Route(id="old")], upstreams=[Upstream(id="stale")]),
    )

    assert admin.writes() == [
        ("DELETE", "/routes/old"),
        ("DELETE", "/upstreams/stale"),
        ("PUT", "/upstreams/u"),
        ("PUT", "/routes/r"),
        ("PUT", "/routes/keep"),
    ]


def test_still_in_use_upstream_delete_is_not_an_error(admin: FakeAdminSession, cluster: Cluster) -> None:
    cluster.cache_put("route", "other", Route(id="other", upstream_id="shared"))

    sync_manifests(cluster, None, None, Manifest(upstreams=[Upstream(id="shared")]))

    assert admin.writes() == []


def test_still_in_use_plugin_config_delete_is_an_error(admin: FakeAdminSession, cluster: Cluster) -> None:
    cluster.cache_put("route", "other", Route(id="other", plugin_config_id="pc"))

    with pytest.raises(SyncError) as excinfo:
        sync_manifests(cluster, None, None, Manifest(plugin_configs=[PluginConfig(id="pc")]))

    assert isinstance(excinfo.value.exceptions[0], StillInUseError)
    assert admin.writes() == []


def test_failures_are_collected_not_short_circuited(admin: FakeAdminSession, cluster: Cluster) -> None:
    admin.overrides[("PUT", "/routes/bad")] = FakeResponse(400, text="invalid route")

    with pytest.raises(SyncError) as excinfo:
        sync_manifests(
            cluster,
            Manifest(routes=[Route(id="bad"), Route(id="good")]),
            None,
            None,
        )

    assert len(excinfo.value.exceptions) == 1
    assert "invalid route" in str(excinfo.value.exceptions[0])
    assert ("PUT", "/routes/good") in admin.writes()


def test_sync_nothing_is_a_noop(admin: FakeAdminSession, cluster: Cluster) -> None:
    sync_manifests(cluster, None, None, None)
    assert admin.calls == []


def test_node_push_preserves_other_fields(admin: FakeAdminSession, cluster: Cluster) -> None:
    name = "default_httpbin_80"
    uid = gen_id(name)
    admin.seed(
        f"/upstreams/{uid}",
        {
            "id": uid,
            "name": name,
            "type": "chash",
            "hash_on": "header",
            "key": "X-User",
            "retries": 3,
            "timeout": {"connect": 1, "send": 2, "read": 3},
            "nodes": [{"host": "10.0.0.1", "port": 80, "weight": 100}],
        },
    )

    sync_upstream_nodes(cluster, name, [UpstreamNode("10.0.0.9", 8080)])

    body = admin.store[f"/upstreams/{uid}"]
    assert body["nodes"] == [{"host": "10.0.0.9", "port": 8080, "weight": 100}]
    assert body["type"] == "chash"
    assert body["key"] == "X-User"
    assert body["retries"] == 3
    assert body["timeout"] == {"connect": 1, "send": 2, "read": 3}
    cached = cluster.cache_get("upstream", uid)
    assert cached.timeout == UpstreamTimeout(1, 2, 3)


def test_node_push_keeps_fields_the_model_does_not_know(
    admin: FakeAdminSession, cluster: Cluster
) -> None:
    name = "default_httpbin_80"
    uid = gen_id(name)
    admin.seed(
        f"/upstreams/{uid}",
        {
            "id": uid,
            "name": name,
            "type": "roundrobin",
            "scheme": "http",
            "hash_on": "vars",
            "keepalive_pool": {"size": 320, "idle_timeout": 60, "requests": 1000},
            "plugins": {"limit-count": {"count": 2, "time_window": 60}},
            "create_time": 1700000000,
            "update_time": 1700000001,
            "nodes": [{"host": "10.0.0.1", "port": 80, "weight": 100}],
        },
    )

    sync_upstream_nodes(cluster, name, [UpstreamNode("10.0.0.9", 8080)])

    body = admin.store[f"/upstreams/{uid}"]
    assert body["nodes"] == [{"host": "10.0.0.9", "port": 8080, "weight": 100}]
    assert body["keepalive_pool"] == {"size": 320, "idle_timeout": 60, "requests": 1000}
    assert body["plugins"] == {"limit-count": {"count": 2, "time_window": 60}}
    assert body["hash_on"] == "vars"
    assert "create_time" not in body
    assert "update_time" not in body


def test_node_push_to_missing_upstream_is_skipped(admin: FakeAdminSession, cluster: Cluster) -> None:
    sync_upstream_nodes(cluster, "default_missing_80", [UpstreamNode("10.0.0.9", 80)])
    assert admin.writes() == []
