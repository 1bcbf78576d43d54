from __future__ import annotations

import logging
import os
import socket
import threading
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from kubeconfig_controller.src.config import ConfigError, env_int
from kubeconfig_controller.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

DEFAULT_LEASE_NAME = "40ca8637.gardener.cloud"
DEFAULT_LEASE_NAMESPACE = "garden"


def default_identity() -> str:
    """Return a replica identity: the pod name plus a random suffix.

    The suffix keeps a restarted pod with the same name from silently
    inheriting a lease it no longer renews.
    """
    hostname = os.getenv("POD_NAME") or os.getenv("HOSTNAME") or socket.gethostname()
    return f"{hostname}_{uuid.uuid4().hex[:8]}"


@dataclass(frozen=True)
class LeaderElectionConfig:
    namespace: str = DEFAULT_LEASE_NAMESPACE
    lease_name: str = DEFAULT_LEASE_NAME
    identity: str = ""
    lease_duration_seconds: int = 15
    renew_deadline_seconds: int = 10
    retry_period_seconds: int = 2

    def validate(self) -> None:
        if not self.namespace or not self.lease_name:
            raise ConfigError("leader election namespace and lease name must not be empty")
        if not self.identity:
            raise ConfigError("leader election identity must not be empty")
        if self.retry_period_seconds < 0:
            raise ConfigError("LEADER_ELECTION_RETRY_PERIOD_SECONDS must be >= 0")
        if self.renew_deadline_seconds >= self.lease_duration_seconds:
            raise ConfigError(
                "LEADER_ELECTION_RENEW_DEADLINE_SECONDS must be smaller than "
                "LEADER_ELECTION_LEASE_DURATION_SECONDS"
            )
        if self.retry_period_seconds >= self.renew_deadline_seconds:
            raise ConfigError(
                "LEADER_ELECTION_RETRY_PERIOD_SECONDS must be smaller than "
                "LEADER_ELECTION_RENEW_DEADLINE_SECONDS"
            )

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> LeaderElectionConfig:
        values = env if env is not None else os.environ
        cfg = cls(
            namespace=values.get("LEADER_ELECTION_NAMESPACE")
            or values.get("POD_NAMESPACE")
            or DEFAULT_LEASE_NAMESPACE,
            lease_name=values.get("LEADER_ELECTION_LEASE_NAME", DEFAULT_LEASE_NAME),
            identity=values.get("LEADER_ELECTION_IDENTITY") or default_identity(),
            lease_duration_seconds=env_int(
                "LEADER_ELECTION_LEASE_DURATION_SECONDS", 15, minimum=1, env=values
            ),
            renew_deadline_seconds=env_int(
                "LEADER_ELECTION_RENEW_DEADLINE_SECONDS", 10, minimum=1, env=values
            ),
            retry_period_seconds=env_int(
                "LEADER_ELECTION_RETRY_PERIOD_SECONDS", 2, minimum=0, env=values
            ),
        )
        cfg.validate()
        return cfg


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


class LeaseLeaderElector:
    """Single-active-replica election on a ``coordination.k8s.io/v1`` Lease.

    Each cycle reads the Lease and then either creates it, renews it (we hold
    it), takes it over (the holder let it expire or released it) or backs off
    (someone else holds a live lease).  Writes use the Lease's
    ``resourceVersion``, so two replicas racing for an expired lease cannot
    both win; the loser sees ``409`` and tries again next cycle.

    A leader that cannot renew keeps leading until ``renew_deadline_seconds``
    have passed since its last successful renewal, then steps down.  On a
    clean stop the lease is released by clearing its holder so a standby can
    take over without waiting for expiry.
    """

    def __init__(
        self,
        coordination_api: CoordinationV1Api,
        config: LeaderElectionConfig,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        config.validate()
        self.coordination_api = coordination_api
        self.config = config
        self._clock = clock
        self._is_leader = False

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    @property
    def identity(self) -> str:
        return self.config.identity

    def _read(self) -> V1Lease | None:
        try:
            return self.coordination_api.read_namespaced_lease(
                name=self.config.lease_name, namespace=self.config.namespace
            )
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise

    def _expired(self, spec: V1LeaseSpec, now: datetime) -> bool:
        if not spec.holder_identity or spec.renew_time is None:
            return True
        duration = spec.lease_duration_seconds or self.config.lease_duration_seconds
        return (now - _as_utc(spec.renew_time)).total_seconds() >= duration

    def try_acquire_or_renew(self) -> bool:
        """Run one election cycle; returns True when this replica holds the lease afterwards."""
        now = self._clock()
        try:
            lease = self._read()
        except ApiException as exc:
            LOGGER.warning("Failed to read lease %s: %s", self.config.lease_name, exc.reason)
            return False

        if lease is None:
            return self._create(now)

        spec = lease.spec or V1LeaseSpec()
        if spec.holder_identity == self.identity:
            spec.renew_time = now
            spec.lease_duration_seconds = self.config.lease_duration_seconds
            lease.spec = spec
            return self._replace(lease, "renew")

        if not self._expired(spec, now):
            LOGGER.debug(
                "Lease %s is held by %s", self.config.lease_name, spec.holder_identity
            )
            return False

        LOGGER.info(
            "Taking over lease %s from %s",
            self.config.lease_name,
            spec.holder_identity or "<released>",
        )
        spec.holder_identity = self.identity
        spec.acquire_time = now
        spec.renew_time = now
        spec.lease_duration_seconds = self.config.lease_duration_seconds
        spec.lease_transitions = (spec.lease_transitions or 0) + 1
        lease.spec = spec
        return self._replace(lease, "takeover")

    def _create(self, now: datetime) -> bool:
        lease = V1Lease(
            metadata=V1ObjectMeta(name=self.config.lease_name, namespace=self.config.namespace),
            spec=V1LeaseSpec(
                holder_identity=self.identity,
                lease_duration_seconds=self.config.lease_duration_seconds,
                acquire_time=now,
                renew_time=now,
                lease_transitions=0,
            ),
        )
        try:
            self.coordination_api.create_namespaced_lease(
                namespace=self.config.namespace, body=lease
            )
        except ApiException as exc:
            if exc.status != 409:
                LOGGER.warning(
                    "Failed to create lease %s: %s", self.config.lease_name, exc.reason
                )
            return False
        return True

    def _replace(self, lease: V1Lease, action: str) -> bool:
        try:
            self.coordination_api.replace_namespaced_lease(
                name=self.config.lease_name, namespace=self.config.namespace, body=lease
            )
        except ApiException as exc:
            if exc.status != 409:
                LOGGER.warning(
                    "Failed to %s lease %s: %s", action, self.config.lease_name, exc.reason
                )
            return False
        return True

    def release(self) -> None:
        """Clear the holder so a standby replica can take over immediately."""
        try:
            lease = self._read()
            if lease is None or lease.spec is None or lease.spec.holder_identity != self.identity:
                return
            lease.spec.holder_identity = None
            lease.spec.renew_time = None
            self.coordination_api.replace_namespaced_lease(
                name=self.config.lease_name, namespace=self.config.namespace, body=lease
            )
            LOGGER.info("Released leader lease %s", self.config.lease_name)
        except ApiException as exc:
            LOGGER.warning("Failed to release lease %s: %s", self.config.lease_name, exc.reason)

    def _became_leader(self, on_started_leading: Callable[[], None]) -> None:
        self._is_leader = True
        METRICS.leader_state.set(1)
        METRICS.leader_transitions_total.labels(transition="acquired").inc()
        LOGGER.info("Became leader for lease %s (identity=%s)", self.config.lease_name, self.identity)
        on_started_leading()

    def _lost_leadership(self, on_stopped_leading: Callable[[], None]) -> None:
        self._is_leader = False
        METRICS.leader_state.set(0)
        METRICS.leader_transitions_total.labels(transition="lost").inc()
        on_stopped_leading()

    def run(
        self,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
        stop_event: threading.Event,
    ) -> None:
        """Campaign until *stop_event* is set, invoking the callbacks on every transition."""
        LOGGER.info(
            "Starting leader election for lease %s/%s (identity=%s)",
            self.config.namespace,
            self.config.lease_name,
            self.identity,
        )
        METRICS.leader_state.set(0)
        last_renewal = time.monotonic()

        while not stop_event.is_set():
            try:
                holding = self.try_acquire_or_renew()
            except Exception:
                LOGGER.exception("Unexpected error in leader election cycle")
                holding = False

            if holding:
                last_renewal = time.monotonic()
                if not self._is_leader:
                    self._became_leader(on_started_leading)
            elif self._is_leader:
                since_renewal = time.monotonic() - last_renewal
                if since_renewal >= self.config.renew_deadline_seconds:
                    LOGGER.warning(
                        "Lost lease %s: no successful renewal for %.1fs",
                        self.config.lease_name,
                        since_renewal,
                    )
                    self._lost_leadership(on_stopped_leading)
                else:
                    LOGGER.warning(
                        "Lease renewal failed, still leading for up to %.1fs",
                        self.config.renew_deadline_seconds - since_renewal,
                    )
            stop_event.wait(timeout=self.config.retry_period_seconds)

        if self._is_leader:
            self.release()
            self._lost_leadership(on_stopped_leading)
