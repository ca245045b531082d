from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, fields
from typing import Any, NamedTuple, TypeVar

from apisix_ingress.src.apisix import Cluster, NotFoundError, ResourceClient, StillInUseError
from apisix_ingress.src.apisix_types import (
    SSL,
    Consumer,
    GatewayResource,
    GlobalRule,
    PluginConfig,
    PluginMetadata,
    Route,
    StreamRoute,
    Upstream,
    UpstreamNode,
)

LOGGER = logging.getLogger(__name__)

R = TypeVar("R", bound=GatewayResource)


class SyncError(ExceptionGroup):
    """Aggregate of every per-resource failure in one synchronization batch."""


class ResourceDiff(NamedTuple):
    added: list[Any]
    updated: list[Any]
    deleted: list[Any]


def diff_resources(olds: Sequence[R] | None, news: Sequence[R] | None) -> ResourceDiff:
    """Partition two resource lists by ID into added, updated and deleted.

    ``olds is None`` means there is no prior state (everything is added);
    ``news is None`` means the source object is gone (everything is deleted).
    Objects present on both sides and deep-equal are unchanged and omitted.
    """
    if olds is None:
        return ResourceDiff(list(news or []), [], [])
    if news is None:
        return ResourceDiff([], [], list(olds))

    old_by_id = {obj.id: obj for obj in olds}
    new_by_id = {obj.id: obj for obj in news}

    added: list[R] = []
    updated: list[R] = []
    deleted: list[R] = []
    for obj in news:
        previous = old_by_id.get(obj.id)
        if previous is None:
            added.append(obj)
        elif previous != obj:
            updated.append(obj)
    for obj in olds:
        if obj.id not in new_by_id:
            deleted.append(obj)
    return ResourceDiff(added, updated, deleted)


@dataclass
class Manifest:
    """Flattened, ID-keyed set of gateway resources ready for diffing and syncing."""

    routes: list[Route] = field(default_factory=list)
    upstreams: list[Upstream] = field(default_factory=list)
    stream_routes: list[StreamRoute] = field(default_factory=list)
    ssls: list[SSL] = field(default_factory=list)
    plugin_configs: list[PluginConfig] = field(default_factory=list)
    consumers: list[Consumer] = field(default_factory=list)
    global_rules: list[GlobalRule] = field(default_factory=list)
    plugin_metadatas: list[PluginMetadata] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not any(getattr(self, f.name) for f in fields(self))

    def diff(self, old: Manifest | None) -> tuple[Manifest | None, Manifest | None, Manifest | None]:
        """Diff this (new) manifest against ``old``.

        Returns ``(added, updated, deleted)``; a bucket is ``None`` when it
        holds nothing.
        """
        buckets: tuple[dict[str, list[Any]], ...] = ({}, {}, {})
        for f in fields(self):
            olds = getattr(old, f.name) if old is not None else None
            result = diff_resources(olds, getattr(self, f.name))
            for bucket, values in zip(buckets, result, strict=True):
                bucket[f.name] = values
        added, updated, deleted = (Manifest(**bucket) for bucket in buckets)
        return (
            None if added.is_empty() else added,
            None if updated.is_empty() else updated,
            None if deleted.is_empty() else deleted,
        )


def _apply(
    client: ResourceClient[Any],
    objects: Iterable[GatewayResource],
    action: str,
    errors: list[Exception],
) -> None:
    for obj in objects:
        try:
            if action == "delete":
                client.delete(obj)
            elif action == "create":
                client.create(obj)
            else:
                client.update(obj)
        except StillInUseError as exc:
            if action == "delete" and isinstance(obj, Upstream):
                LOGGER.info(
                    "Skipping delete of %s %s (id=%s): %s", obj.kind, obj.name, obj.id, exc
                )
                continue
            errors.append(exc)
        except Exception as exc:
            LOGGER.warning("Failed to %s %s %s (id=%s): %s", action, obj.kind, obj.name, obj.id, exc)
            errors.append(exc)


def _create_order(cluster: Cluster, m: Manifest) -> list[tuple[ResourceClient[Any], list[Any]]]:
    # Referenced objects first: routes point at upstreams and plugin configs.
    return [
        (cluster.ssl, m.ssls),
        (cluster.upstream, m.upstreams),
        (cluster.plugin_config, m.plugin_configs),
        (cluster.route, m.routes),
        (cluster.stream_route, m.stream_routes),
        (cluster.consumer, m.consumers),
        (cluster.global_rule, m.global_rules),
        (cluster.plugin_metadata, m.plugin_metadatas),
    ]


def _delete_order(cluster: Cluster, m: Manifest) -> list[tuple[ResourceClient[Any], list[Any]]]:
    # Referencing objects first so upstreams and plugin configs are free to go.
    return [
        (cluster.ssl, m.ssls),
        (cluster.route, m.routes),
        (cluster.stream_route, m.stream_routes),
        (cluster.upstream, m.upstreams),
        (cluster.plugin_config, m.plugin_configs),
        (cluster.consumer, m.consumers),
        (cluster.global_rule, m.global_rules),
        (cluster.plugin_metadata, m.plugin_metadatas),
    ]


def sync_manifests(
    cluster: Cluster,
    added: Manifest | None,
    updated: Manifest | None,
    deleted: Manifest | None,
) -> None:
    """Apply a diff to the gateway: deletes, then creates, then updates.

    Every resource is attempted; failures are collected and raised together
    as a :class:`SyncError` so one bad object does not block the others.  A
    :class:`StillInUseError` on an upstream delete is expected while another
    route shares it and is only logged.  A plugin config still in use is an
    error like any other, so the delete is retried until routes let go of it.
    """
    errors: list[Exception] = []
    if deleted is not None:
        for client, objects in _delete_order(cluster, deleted):
            _apply(client, objects, "delete", errors)
    if added is not None:
        for client, objects in _create_order(cluster, added):
            _apply(client, objects, "create", errors)
    if updated is not None:
        for client, objects in _create_order(cluster, updated):
            _apply(client, objects, "update", errors)
    if errors:
        raise SyncError(f"failed to sync {len(errors)} resource(s) to {cluster.name}", errors)


def sync_upstream_nodes(cluster: Cluster, upstream_name: str, nodes: list[UpstreamNode]) -> None:
    """Push a new node list to an existing upstream, leaving every other field alone.

    An upstream that does not exist yet is not an error: the route
    reconciliation that creates it will carry the nodes itself.
    """
    try:
        upstream = cluster.upstream.get(upstream_name)
    except NotFoundError:
        LOGGER.debug("Upstream %s not found, skipping node push", upstream_name)
        return
    upstream.nodes = list(nodes)
    LOGGER.debug("Pushing %d node(s) to upstream %s", len(nodes), upstream_name)
    sync_manifests(cluster, None, Manifest(upstreams=[upstream]), None)
