from __future__ import annotations

import logging
import random
import threading

from kubeconfig_controller.src.errors import AdmissionContractError
from kubeconfig_controller.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class NamespaceAdmission:
    """Bounds the number of in-flight reconciles per namespace.

    The global worker pool limits total concurrency; this gate additionally
    prevents a single namespace with many shoots from occupying every worker.
    A denied request is not a failure: the caller requeues it after
    :meth:`requeue_jitter` seconds so competing reconciles in a hot namespace
    spread out instead of retrying in lockstep.

    Counters live in memory only and start from zero after a restart.  Entries
    are dropped as soon as their count returns to zero, so the map only holds
    namespaces with work in flight.
    """

    def __init__(
        self,
        max_per_namespace: int,
        jitter_min_seconds: float = 0.1,
        jitter_max_seconds: float = 5.0,
    ) -> None:
        if max_per_namespace < 1:
            raise ValueError("max_per_namespace must be >= 1")
        if jitter_min_seconds < 0 or jitter_max_seconds < jitter_min_seconds:
            raise ValueError("admission jitter window must satisfy 0 <= min <= max")

        self.max_per_namespace = max_per_namespace
        self.jitter_min_seconds = jitter_min_seconds
        self.jitter_max_seconds = jitter_max_seconds
        self._in_flight: dict[str, int] = {}
        self._lock = threading.Lock()

    def admit(self, namespace: str) -> bool:
        """Take a ticket for *namespace*; returns False when the ceiling is reached."""
        with self._lock:
            current = self._in_flight.get(namespace, 0)
            if current >= self.max_per_namespace:
                granted = False
            else:
                self._in_flight[namespace] = current + 1
                granted = True
            total = sum(self._in_flight.values())

        METRICS.in_flight_reconciles.set(total)
        if not granted:
            METRICS.admission_denied_total.inc()
            LOGGER.info(
                "Maximum parallel reconciles reached for namespace %s; requeuing",
                namespace,
            )
        return granted

    def release(self, namespace: str) -> None:
        """Return a ticket previously granted by :meth:`admit`.

        Raises :class:`AdmissionContractError` when no ticket is outstanding,
        which means an ``admit``/``release`` pair was broken.
        """
        with self._lock:
            current = self._in_flight.get(namespace)
            if current is None:
                raise AdmissionContractError(
                    f"release for namespace {namespace!r} without a matching admit"
                )
            if current <= 1:
                del self._in_flight[namespace]
            else:
                self._in_flight[namespace] = current - 1
            total = sum(self._in_flight.values())

        METRICS.in_flight_reconciles.set(total)

    def in_flight(self, namespace: str) -> int:
        with self._lock:
            return self._in_flight.get(namespace, 0)

    def tracked_namespaces(self) -> list[str]:
        with self._lock:
            return sorted(self._in_flight)

    def requeue_jitter(self) -> float:
        """Return a random requeue delay inside the configured jitter window."""
        return random.uniform(self.jitter_min_seconds, self.jitter_max_seconds)  # noqa: S311
