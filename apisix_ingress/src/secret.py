from __future__ import annotations

import logging

from apisix_ingress.src.apisix import Cluster
from apisix_ingress.src.apisix_types import SSL
from apisix_ingress.src.controller import ResourceController
from apisix_ingress.src.events import Event, EventDelete
from apisix_ingress.src.indexes import SecretReferenceIndex, WatchingNamespaces
from apisix_ingress.src.informer import Obj, ObjectNotFound, WatchCache, meta_key
from apisix_ingress.src.manifest import Manifest, sync_manifests
from apisix_ingress.src.status import StatusRecorder
from apisix_ingress.src.translate_apisix import ssl_delete_mark, translate_ssl
from apisix_ingress.src.translation import TranslateError, Translator


class SecretController(ResourceController):
    """Re-pushes the SSL objects of every ApisixTls that references a changed Secret.

    Secrets nobody references never reach the queue.  A Secret that no
    longer translates (a missing ``tls.key``, say) is reported on the
    referencing ApisixTls rather than retried: only a further Secret change
    can fix it.
    """

    kind = "Secret"
    records_status = False

    def __init__(
        self,
        cache: WatchCache,
        cluster: Cluster,
        namespaces: WatchingNamespaces,
        translator: Translator,
        secret_refs: SecretReferenceIndex,
        tls_cache: WatchCache,
        status: StatusRecorder | None = None,
        workers: int = 1,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(cache, cluster, namespaces, status, workers, logger)
        self.translator = translator
        self.secret_refs = secret_refs
        self.tls_cache = tls_cache

    def is_effective(self, obj: Obj) -> bool:
        return meta_key(obj) in self.secret_refs

    def reconcile(self, event: Event, obj: Obj) -> None:
        deleting = isinstance(event, EventDelete)
        updates: list[SSL] = []
        deletes: list[SSL] = []
        refreshed: list[Obj] = []
        for tls_key in self.secret_refs.lookup(event.key):
            try:
                tls = self.tls_cache.get_by_key(tls_key)
            except ObjectNotFound:
                self.logger.warning(
                    "ApisixTls %s referencing Secret %s not found, skipping", tls_key, event.key
                )
                continue
            if deleting:
                deletes.append(ssl_delete_mark(tls))
                continue
            try:
                updates.append(translate_ssl(self.translator, tls))
                refreshed.append(tls)
            except TranslateError as exc:
                self.logger.error(
                    "Secret %s required by ApisixTls %s is invalid: %s", event.key, tls_key, exc
                )
                if self.status is not None:
                    self.status.record("ApisixTls", tls, exc)

        sync_manifests(
            self.cluster,
            None,
            Manifest(ssls=updates) if updates else None,
            Manifest(ssls=deletes) if deletes else None,
        )
        if self.status is not None:
            for tls in refreshed:
                self.status.record("ApisixTls", tls, None)
