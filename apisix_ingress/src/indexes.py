from __future__ import annotations

import threading
from collections.abc import Iterable, Mapping


def split_meta_key(key: str) -> tuple[str, str]:
    """Split ``namespace/name`` (or a bare cluster-scoped ``name``)."""
    namespace, sep, name = key.partition("/")
    if not sep:
        return "", namespace
    if "/" in name:
        raise ValueError(f"unexpected key format: {key!r}")
    return namespace, name


class WatchingNamespaces:
    """Process-wide decision of which namespaces are reconciled.

    Three modes: an explicit namespace list, a label-selector driven set that
    the namespace controller keeps current, or (neither configured) every
    namespace.  Readers take the lock only for a set lookup.
    """

    def __init__(
        self,
        namespaces: Iterable[str] = (),
        selectors: Mapping[str, str] | None = None,
    ) -> None:
        self._explicit = frozenset(ns for ns in namespaces if ns)
        self._selectors = dict(selectors or {})
        self._dynamic: set[str] = set()
        self._lock = threading.Lock()

    @property
    def watch_all(self) -> bool:
        return not self._explicit and not self._selectors

    @property
    def selectors(self) -> dict[str, str]:
        return dict(self._selectors)

    @property
    def uses_selectors(self) -> bool:
        return not self._explicit and bool(self._selectors)

    def matches_labels(self, labels: Mapping[str, str] | None) -> bool:
        if not self._selectors:
            return False
        labels = labels or {}
        return all(labels.get(key) == value for key, value in self._selectors.items())

    def is_watching(self, namespace: str) -> bool:
        if self.watch_all or not namespace:
            return True
        if self._explicit:
            return namespace in self._explicit
        with self._lock:
            return namespace in self._dynamic

    def is_watching_key(self, key: str) -> bool:
        try:
            namespace, _ = split_meta_key(key)
        except ValueError:
            return False
        return self.is_watching(namespace)

    def add(self, namespace: str) -> None:
        with self._lock:
            self._dynamic.add(namespace)

    def remove(self, namespace: str) -> None:
        with self._lock:
            self._dynamic.discard(namespace)

    def replace(self, namespaces: Iterable[str]) -> None:
        fresh = set(namespaces)
        with self._lock:
            self._dynamic = fresh

    def snapshot(self) -> frozenset[str]:
        if self._explicit:
            return self._explicit
        with self._lock:
            return frozenset(self._dynamic)


ROLE_CERT = "cert"
ROLE_CA = "ca"


class SecretReferenceIndex:
    """Maps ``namespace/secret`` to the TLS object keys that reference it.

    The TLS controller writes entries while reconciling; the Secret
    controller only reads them to find which SSL objects need a re-push.
    """

    def __init__(self) -> None:
        self._refs: dict[str, dict[str, set[str]]] = {}
        self._lock = threading.Lock()

    def add(self, secret_key: str, tls_key: str, role: str = ROLE_CERT) -> None:
        with self._lock:
            self._refs.setdefault(secret_key, {}).setdefault(tls_key, set()).add(role)

    def remove_tls(self, tls_key: str) -> None:
        with self._lock:
            for secret_key in list(self._refs):
                refs = self._refs[secret_key]
                refs.pop(tls_key, None)
                if not refs:
                    del self._refs[secret_key]

    def lookup(self, secret_key: str) -> dict[str, frozenset[str]]:
        """Return a snapshot ``{tls_key: roles}`` for the secret."""
        with self._lock:
            refs = self._refs.get(secret_key, {})
            return {tls_key: frozenset(roles) for tls_key, roles in refs.items()}

    def __contains__(self, secret_key: object) -> bool:
        with self._lock:
            return secret_key in self._refs


class ReferenceIndex:
    """Maps a referenced ``namespace/name`` (a Service, a PluginConfig ...) to
    the keys of the objects that reference it.

    Each referencing object's set is replaced wholesale on every reconcile,
    so stale references disappear as soon as the object stops using them.
    """

    def __init__(self) -> None:
        self._by_owner: dict[str, frozenset[str]] = {}
        self._by_ref: dict[str, set[str]] = {}
        self._lock = threading.Lock()

    def set(self, owner_key: str, ref_keys: Iterable[str]) -> None:
        fresh = frozenset(ref_keys)
        with self._lock:
            for ref in self._by_owner.get(owner_key, frozenset()) - fresh:
                owners = self._by_ref.get(ref)
                if owners is not None:
                    owners.discard(owner_key)
                    if not owners:
                        del self._by_ref[ref]
            for ref in fresh:
                self._by_ref.setdefault(ref, set()).add(owner_key)
            if fresh:
                self._by_owner[owner_key] = fresh
            else:
                self._by_owner.pop(owner_key, None)

    def remove(self, owner_key: str) -> None:
        self.set(owner_key, ())

    def lookup(self, ref_key: str) -> frozenset[str]:
        with self._lock:
            return frozenset(self._by_ref.get(ref_key, ()))
