from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass
from typing import Any

from kubernetes.client import ApiException

from kubeconfig_controller.src.admission import NamespaceAdmission
from kubeconfig_controller.src.config import ControllerManagerConfig
from kubeconfig_controller.src.constants import (
    DATA_KEY_KUBECONFIG,
    ROLE_KUBECONFIG,
    ROLE_LABEL,
    SHOOT_API_VERSION,
    SHOOT_KIND,
    kubeconfig_config_map_name,
)
from kubeconfig_controller.src.errors import (
    CaNotProvisionedError,
    NotFound,
    RetryableError,
    ValidationError,
)
from kubeconfig_controller.src.kube import KubeStore
from kubeconfig_controller.src.kubeconfig import (
    Endpoint,
    KubeconfigRequest,
    build_kubeconfig,
    format_for_version,
    host_from_url,
)
from kubeconfig_controller.src.metrics import METRICS
from kubeconfig_controller.src.quota import CONFIG_MAP_COUNT_RESOURCE, QuotaGate
from kubeconfig_controller.src.trust import cluster_ca_cert, validate_certificate

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, order=True)
class ReconcileKey:
    """Identifies a shoot (and thereby its kubeconfig ConfigMap)."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of a single reconcile.

    ``requeue_after`` is set when the request should run again after the given
    number of seconds even though nothing failed.
    """

    key: ReconcileKey
    outcome: str
    requeue_after: float | None = None


def _metadata(obj: dict[str, Any]) -> dict[str, Any]:
    return obj.get("metadata") or {}


def _terminating(obj: dict[str, Any]) -> bool:
    return _metadata(obj).get("deletionTimestamp") is not None


class ShootReconciler:
    """Maintains the ``<shoot>.kubeconfig`` ConfigMap of every shoot.

    Each call to :meth:`reconcile` runs the whole sequence from scratch and
    re-reads every object it depends on, so concurrent or repeated runs for
    the same shoot converge on the most recently observed state:

    1. Take an admission ticket for the namespace, or requeue with jitter.
    2. Fetch the shoot; delete the ConfigMap when it is gone or terminating.
    3. Check the ConfigMap quota, but only when the ConfigMap does not exist.
    4. Fetch the shoot state; delete the ConfigMap when it is gone or terminating.
    5. Defer shoots without advertised addresses.
    6. Read and validate the cluster CA.
    7. Resolve the garden cluster identity.
    8. Build the kubeconfig.
    9. Create the ConfigMap, or update it when its content differs.
    10. Release the admission ticket.
    """

    def __init__(
        self,
        store: KubeStore,
        admission: NamespaceAdmission,
        config: ControllerManagerConfig,
        quota_gate: QuotaGate | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.admission = admission
        self.config = config
        self.quota_gate = quota_gate or QuotaGate(store)
        self.logger = logger or LOGGER

    def reconcile(self, key: ReconcileKey) -> ReconcileResult:
        if not self.admission.admit(key.namespace):
            return ReconcileResult(
                key=key,
                outcome="admission_denied",
                requeue_after=self.admission.requeue_jitter(),
            )

        try:
            return self._handle_request(key)
        finally:
            self.admission.release(key.namespace)

    def _handle_request(self, key: ReconcileKey) -> ReconcileResult:
        self.logger.debug("Reconciling shoot %s", key)
        config_map_name = kubeconfig_config_map_name(key.name)

        try:
            shoot = self.store.get_shoot(key.namespace, key.name)
        except NotFound:
            return self._cleanup(key, "shoot no longer exists")
        if _terminating(shoot):
            return self._cleanup(key, "shoot is being deleted")

        try:
            existing = self.store.get_config_map(key.namespace, config_map_name)
        except NotFound:
            existing = None

        if existing is None and not self.quota_gate.has_capacity(
            key.namespace, CONFIG_MAP_COUNT_RESOURCE
        ):
            self.logger.info(
                "ConfigMap quota in namespace %s is not sufficient for %s; retrying in %.0fs",
                key.namespace,
                key,
                self.config.quota_exceeded_retry_delay_seconds,
            )
            return ReconcileResult(
                key=key,
                outcome="quota_exceeded",
                requeue_after=self.config.quota_exceeded_retry_delay_seconds,
            )

        try:
            shoot_state = self.store.get_shoot_state(key.namespace, key.name)
        except NotFound:
            return self._cleanup(key, "shoot state no longer exists")
        if _terminating(shoot_state):
            return self._cleanup(key, "shoot state is being deleted")

        addresses = (shoot.get("status") or {}).get("advertisedAddresses") or []
        if not addresses:
            # The shoot watch wakes us as soon as addresses are advertised.
            self.logger.info("Shoot %s has no advertised addresses yet", key)
            return self._deferred(key)

        try:
            ca_cert = cluster_ca_cert(shoot_state)
        except CaNotProvisionedError:
            self.logger.info("Certificate authority of shoot %s not yet provisioned", key)
            return self._deferred(key)
        validate_certificate(ca_cert)

        garden_cluster_identity = self.store.read_cluster_identity()
        if not garden_cluster_identity:
            raise RetryableError("garden cluster identity is not available yet")

        request = KubeconfigRequest(
            endpoints=tuple(
                Endpoint(name=address.get("name") or "", host=host_from_url(address.get("url") or ""))
                for address in addresses
            ),
            ca_cert=ca_cert,
            namespace=key.namespace,
            shoot_name=key.name,
            garden_cluster_identity=garden_cluster_identity,
            format=format_for_version(((shoot.get("spec") or {}).get("kubernetes") or {}).get("version")),
        )
        kubeconfig = build_kubeconfig(request)

        return self._upsert(key, shoot, existing, kubeconfig)

    def _deferred(self, key: ReconcileKey) -> ReconcileResult:
        return ReconcileResult(
            key=key,
            outcome="deferred",
            requeue_after=self.config.deferred_requeue_seconds,
        )

    def _cleanup(self, key: ReconcileKey, reason: str) -> ReconcileResult:
        config_map_name = kubeconfig_config_map_name(key.name)
        if not self.store.delete_config_map(key.namespace, config_map_name):
            return ReconcileResult(key=key, outcome="absent")

        METRICS.artifact_writes_total.labels(operation="delete").inc()
        self.logger.info(
            "Deleted kubeconfig ConfigMap %s/%s: %s", key.namespace, config_map_name, reason
        )
        return ReconcileResult(key=key, outcome="deleted")

    @staticmethod
    def _owner_reference(shoot: dict[str, Any]) -> dict[str, Any]:
        metadata = _metadata(shoot)
        return {
            "apiVersion": SHOOT_API_VERSION,
            "kind": SHOOT_KIND,
            "name": metadata.get("name"),
            "uid": metadata.get("uid"),
            "controller": True,
            "blockOwnerDeletion": False,
        }

    def _check_size(self, body: dict[str, Any]) -> None:
        size = len(json.dumps(body, separators=(",", ":")).encode("utf-8"))
        if size > self.config.max_object_size:
            raise ValidationError(
                f"kubeconfig ConfigMap has {size} bytes, more than the allowed "
                f"{self.config.max_object_size} bytes"
            )

    def _upsert(
        self,
        key: ReconcileKey,
        shoot: dict[str, Any],
        existing: dict[str, Any] | None,
        kubeconfig: str,
    ) -> ReconcileResult:
        config_map_name = kubeconfig_config_map_name(key.name)
        owner_reference = self._owner_reference(shoot)

        if existing is None:
            body = {
                "apiVersion": "v1",
                "kind": "ConfigMap",
                "metadata": {
                    "name": config_map_name,
                    "namespace": key.namespace,
                    "labels": {ROLE_LABEL: ROLE_KUBECONFIG},
                    "ownerReferences": [owner_reference],
                },
                "data": {DATA_KEY_KUBECONFIG: kubeconfig},
            }
            self._check_size(body)
            try:
                self.store.create_config_map(key.namespace, body)
            except ApiException as exc:
                if exc.status == 409:
                    raise RetryableError(
                        f"kubeconfig ConfigMap {key.namespace}/{config_map_name} was created concurrently"
                    ) from exc
                raise
            METRICS.artifact_writes_total.labels(operation="create").inc()
            self.logger.info("Created kubeconfig ConfigMap %s/%s", key.namespace, config_map_name)
            return ReconcileResult(key=key, outcome="created")

        desired = copy.deepcopy(existing)
        metadata = desired.setdefault("metadata", {})
        metadata["ownerReferences"] = [owner_reference]
        metadata["labels"] = {**(metadata.get("labels") or {}), ROLE_LABEL: ROLE_KUBECONFIG}
        desired["data"] = {**(desired.get("data") or {}), DATA_KEY_KUBECONFIG: kubeconfig}

        if (
            metadata["ownerReferences"] == _metadata(existing).get("ownerReferences")
            and metadata["labels"] == _metadata(existing).get("labels")
            and desired["data"] == existing.get("data")
        ):
            self.logger.debug("Kubeconfig ConfigMap %s/%s is up to date", key.namespace, config_map_name)
            return ReconcileResult(key=key, outcome="unchanged")

        self._check_size(desired)
        try:
            self.store.replace_config_map(key.namespace, config_map_name, desired)
        except ApiException as exc:
            if exc.status in {404, 409}:
                raise RetryableError(
                    f"kubeconfig ConfigMap {key.namespace}/{config_map_name} changed during update"
                ) from exc
            raise
        METRICS.artifact_writes_total.labels(operation="update").inc()
        self.logger.info("Updated kubeconfig ConfigMap %s/%s", key.namespace, config_map_name)
        return ReconcileResult(key=key, outcome="updated")


def requests_for_resource_quota(store: KubeStore, namespace: str) -> list[ReconcileKey]:
    """Map a ResourceQuota event to the shoots of its namespace that still lack a kubeconfig ConfigMap."""
    try:
        shoots = store.list_shoots(namespace)
    except ApiException:
        LOGGER.info("Failed to list shoots in namespace %s", namespace)
        return []

    try:
        config_maps = store.list_config_maps(namespace, f"{ROLE_LABEL}={ROLE_KUBECONFIG}")
    except ApiException:
        LOGGER.info("Failed to list kubeconfig ConfigMaps in namespace %s", namespace)
        return []

    existing = {_metadata(config_map).get("name") for config_map in config_maps}
    keys = []
    for shoot in shoots:
        name = _metadata(shoot).get("name")
        if name and kubeconfig_config_map_name(name) not in existing:
            keys.append(ReconcileKey(namespace=namespace, name=name))
    return keys
