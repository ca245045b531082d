from __future__ import annotations

import logging

from apisix_ingress.src.apisix import Cluster
from apisix_ingress.src.controller import ResourceController, crd_class_matches
from apisix_ingress.src.events import Event, EventDelete, EventUpdate
from apisix_ingress.src.indexes import SecretReferenceIndex, WatchingNamespaces
from apisix_ingress.src.informer import Obj, WatchCache
from apisix_ingress.src.manifest import Manifest, sync_manifests
from apisix_ingress.src.status import StatusRecorder
from apisix_ingress.src.translate_apisix import ssl_delete_mark, tls_secret_keys, translate_ssl
from apisix_ingress.src.translation import Translator


class ApisixTlsController(ResourceController):
    """ApisixTls to gateway SSL.

    Secret references are indexed before translation, so a TLS object
    whose Secret does not exist yet is picked up again by the Secret
    controller the moment the Secret is created.
    """

    kind = "ApisixTls"

    def __init__(
        self,
        cache: WatchCache,
        cluster: Cluster,
        namespaces: WatchingNamespaces,
        translator: Translator,
        secret_refs: SecretReferenceIndex,
        ingress_class: str = "apisix",
        status: StatusRecorder | None = None,
        workers: int = 1,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(cache, cluster, namespaces, status, workers, logger)
        self.translator = translator
        self.secret_refs = secret_refs
        self.ingress_class = ingress_class

    def is_effective(self, obj: Obj) -> bool:
        return crd_class_matches(obj, self.ingress_class)

    def reconcile(self, event: Event, obj: Obj) -> None:
        if isinstance(event, EventDelete):
            self.secret_refs.remove_tls(event.key)
            sync_manifests(self.cluster, None, None, Manifest(ssls=[ssl_delete_mark(obj)]))
            return

        self.secret_refs.remove_tls(event.key)
        for secret_key, role in tls_secret_keys(obj):
            self.secret_refs.add(secret_key, event.key, role)

        ssl = translate_ssl(self.translator, obj)
        manifest = Manifest(ssls=[ssl])
        if isinstance(event, EventUpdate):
            sync_manifests(self.cluster, None, manifest, None)
        else:
            sync_manifests(self.cluster, manifest, None, None)

    def owned(self, obj: Obj) -> Manifest:
        return Manifest(ssls=[ssl_delete_mark(obj)])
