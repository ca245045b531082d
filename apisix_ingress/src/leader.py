from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from apisix_ingress.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class LeaseLeaderElector:
    """Single-writer election over a ``coordination.k8s.io/v1`` Lease.

    Only the holder of the Lease pushes configuration to the gateway and
    writes status back to the cluster.  Each cycle reads the Lease and:

    * creates it when missing,
    * renews it when this replica already holds it,
    * takes it over once the other holder let ``renewTime`` age past the
      lease duration,
    * otherwise waits for the next ``retry_period_seconds`` tick.

    A leader that cannot renew for ``renew_deadline_seconds`` steps down.
    :meth:`resign` lets the leader step down on its own, e.g. when the
    gateway it drives is unhealthy; the Lease is released so a healthy
    replica can take over without waiting out the lease duration.
    """

    def __init__(
        self,
        coordination_api: CoordinationV1Api,
        namespace: str,
        lease_name: str,
        identity: str,
        lease_duration_seconds: int = 15,
        renew_deadline_seconds: int = 5,
        retry_period_seconds: int = 2,
    ) -> None:
        if lease_duration_seconds < 1:
            raise ValueError("lease_duration_seconds must be >= 1")
        if renew_deadline_seconds < 1:
            raise ValueError("renew_deadline_seconds must be >= 1")
        if retry_period_seconds < 0:
            raise ValueError("retry_period_seconds must be >= 0")
        if renew_deadline_seconds >= lease_duration_seconds:
            raise ValueError("renew_deadline_seconds must be smaller than lease_duration_seconds")
        if retry_period_seconds >= renew_deadline_seconds:
            raise ValueError("retry_period_seconds must be smaller than renew_deadline_seconds")

        self.coordination_api = coordination_api
        self.namespace = namespace
        self.lease_name = lease_name
        self.identity = identity
        self.lease_duration_seconds = lease_duration_seconds
        self.renew_deadline_seconds = renew_deadline_seconds
        self.retry_period_seconds = retry_period_seconds
        self._is_leader = False
        self._resign_requested = threading.Event()

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    def resign(self) -> None:
        """Ask the election loop to give up leadership on its next tick.

        Safe to call from any thread, including from inside the leading
        callback's own workers.
        """
        self._resign_requested.set()

    def _now_utc(self) -> datetime:
        return datetime.now(UTC)

    def _try_acquire_or_renew(self) -> bool:
        now = self._now_utc()
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name,
                namespace=self.namespace,
            )
        except ApiException as exc:
            if exc.status == 404:
                return self._create_lease(now)
            LOGGER.warning("Failed to read lease %s: %s", self.lease_name, exc.reason)
            return False

        spec = lease.spec
        if spec is None or spec.holder_identity in (None, "", self.identity):
            return self._update_lease(lease, now)

        duration = spec.lease_duration_seconds or self.lease_duration_seconds
        if spec.renew_time is not None:
            renewed = spec.renew_time
            if renewed.tzinfo is None:
                renewed = renewed.replace(tzinfo=UTC)
            if (now - renewed).total_seconds() < duration:
                return False
        return self._update_lease(lease, now)

    def _create_lease(self, now: datetime) -> bool:
        lease = V1Lease(
            metadata=V1ObjectMeta(name=self.lease_name, namespace=self.namespace),
            spec=V1LeaseSpec(
                holder_identity=self.identity,
                lease_duration_seconds=self.lease_duration_seconds,
                acquire_time=now,
                renew_time=now,
            ),
        )
        try:
            self.coordination_api.create_namespaced_lease(namespace=self.namespace, body=lease)
        except ApiException as exc:
            if exc.status == 409:
                LOGGER.debug("Lease %s created concurrently, will retry", self.lease_name)
            else:
                LOGGER.warning("Failed to create lease %s: %s", self.lease_name, exc.reason)
            return False
        LOGGER.info("Created leader lease %s", self.lease_name)
        return True

    def _update_lease(self, lease: V1Lease, now: datetime) -> bool:
        if lease.spec is None:
            lease.spec = V1LeaseSpec()
        taking_over = lease.spec.holder_identity != self.identity
        lease.spec.holder_identity = self.identity
        lease.spec.renew_time = now
        lease.spec.lease_duration_seconds = self.lease_duration_seconds
        if taking_over or lease.spec.acquire_time is None:
            lease.spec.acquire_time = now
            lease.spec.lease_transitions = (lease.spec.lease_transitions or 0) + 1
        try:
            self.coordination_api.replace_namespaced_lease(
                name=self.lease_name,
                namespace=self.namespace,
                body=lease,
            )
        except ApiException as exc:
            if exc.status == 409:
                LOGGER.debug("Lease %s update conflict, will retry", self.lease_name)
            else:
                LOGGER.warning("Failed to update lease %s: %s", self.lease_name, exc.reason)
            return False
        return True

    def _release_lease(self) -> None:
        """Clear holderIdentity so another replica can take over immediately."""
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name, namespace=self.namespace
            )
            if lease.spec and lease.spec.holder_identity == self.identity:
                lease.spec.holder_identity = None
                self.coordination_api.replace_namespaced_lease(
                    name=self.lease_name, namespace=self.namespace, body=lease
                )
                LOGGER.info("Released leader lease %s", self.lease_name)
        except ApiException as exc:
            LOGGER.warning("Failed to release leader lease %s: %s", self.lease_name, exc.reason)

    def _step_down(self, transition: str, on_stopped_leading: Callable[[], None]) -> None:
        self._is_leader = False
        METRICS.leader_state.set(0)
        METRICS.leader_transitions_total.labels(transition=transition).inc()
        on_stopped_leading()

    def run(
        self,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
        stop_event: threading.Event,
    ) -> None:
        """Campaign until ``stop_event`` is set.

        ``on_started_leading`` must return promptly (start work in a thread);
        ``on_stopped_leading`` is expected to block until that work stopped.
        """
        LOGGER.info(
            "Starting leader election for lease %s (identity=%s)",
            self.lease_name,
            self.identity,
        )
        waiting_since = time.monotonic()
        last_renewed = waiting_since
        METRICS.leader_state.set(0)

        while not stop_event.is_set():
            if self._resign_requested.is_set():
                self._resign_requested.clear()
                if self._is_leader:
                    LOGGER.warning("Resigning leadership of lease %s", self.lease_name)
                    self._release_lease()
                    self._step_down("resigned", on_stopped_leading)
                    waiting_since = time.monotonic()
                    # Sit out one lease duration.
                    if stop_event.wait(timeout=self.lease_duration_seconds):
                        break
                    continue

            try:
                acquired = self._try_acquire_or_renew()
            except Exception:
                LOGGER.exception("Unexpected error in leader election cycle")
                acquired = False

            if acquired and not self._is_leader:
                self._is_leader = True
                last_renewed = time.monotonic()
                LOGGER.info("Became leader (identity=%s)", self.identity)
                METRICS.leader_state.set(1)
                METRICS.leader_transitions_total.labels(transition="acquired").inc()
                METRICS.leader_acquire_latency_seconds.observe(last_renewed - waiting_since)
                on_started_leading()
            elif acquired:
                last_renewed = time.monotonic()
            elif self._is_leader:
                elapsed = time.monotonic() - last_renewed
                if elapsed < self.renew_deadline_seconds:
                    LOGGER.warning(
                        "Lease renewal failed; holding leadership for up to %ss (elapsed %.2fs)",
                        self.renew_deadline_seconds,
                        elapsed,
                    )
                else:
                    LOGGER.warning("Lost leader lease after %.2fs without renewal", elapsed)
                    self._step_down("lost", on_stopped_leading)
                    waiting_since = time.monotonic()
            stop_event.wait(timeout=self.retry_period_seconds)

        if self._is_leader:
            self._release_lease()
            self._step_down("lost", on_stopped_leading)
