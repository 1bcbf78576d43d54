from __future__ import annotations

import copy
from typing import Any

import pytest
import yaml
from kubernetes.client import ApiException

from kubeconfig_controller.src.admission import NamespaceAdmission
from kubeconfig_controller.src.config import ControllerManagerConfig
from kubeconfig_controller.src.errors import (
    NotFound,
    QuotaStatusUnknownError,
    RetryableError,
    TrustAnchorError,
    ValidationError,
)
from kubeconfig_controller.src.reconciler import (
    ReconcileKey,
    ShootReconciler,
    requests_for_resource_quota,
)
from kubeconfig_controller.tests.factories import make_quota, make_shoot, make_shoot_state

NAMESPACE = "garden-project"
KEY = ReconcileKey(namespace=NAMESPACE, name="shoot")
ROLE_LABEL = "operations.gardener.cloud/role"


class FakeStore:
    """In-memory stand-in for KubeStore that records every write."""

    def __init__(self, identity: str | None = "landscape-dev") -> None:
        self.shoots: dict[tuple[str, str], dict[str, Any]] = {}
        self.shoot_states: dict[tuple[str, str], dict[str, Any]] = {}
        self.config_maps: dict[tuple[str, str], dict[str, Any]] = {}
        self.quotas: dict[str, list[dict[str, Any]]] = {}
        self.identity = identity
        self.writes: list[tuple[str, str, str]] = []
        self.create_error: ApiException | None = None
        self.replace_error: ApiException | None = None
        self.list_error: ApiException | None = None
        self._resource_version = 0

    def _next_version(self) -> str:
        self._resource_version += 1
        return str(self._resource_version)

    def get_shoot(self, namespace: str, name: str) -> dict[str, Any]:
        try:
            return copy.deepcopy(self.shoots[(namespace, name)])
        except KeyError:
            raise NotFound(f"shoot {namespace}/{name}") from None

    def list_shoots(self, namespace: str) -> list[dict[str, Any]]:
        if self.list_error is not None:
            raise self.list_error
        return [copy.deepcopy(s) for (ns, _), s in sorted(self.shoots.items()) if ns == namespace]

    def get_shoot_state(self, namespace: str, name: str) -> dict[str, Any]:
        try:
            return copy.deepcopy(self.shoot_states[(namespace, name)])
        except KeyError:
            raise NotFound(f"shootstate {namespace}/{name}") from None

    def get_config_map(self, namespace: str, name: str) -> dict[str, Any]:
        try:
            return copy.deepcopy(self.config_maps[(namespace, name)])
        except KeyError:
            raise NotFound(f"configmap {namespace}/{name}") from None

    def list_config_maps(self, namespace: str, label_selector: str) -> list[dict[str, Any]]:
        key, _, value = label_selector.partition("=")
        return [
            copy.deepcopy(cm)
            for (ns, _), cm in self.config_maps.items()
            if ns == namespace and (cm["metadata"].get("labels") or {}).get(key) == value
        ]

    def create_config_map(self, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        if self.create_error is not None:
            raise self.create_error
        stored = copy.deepcopy(body)
        stored["metadata"]["resourceVersion"] = self._next_version()
        self.config_maps[(namespace, body["metadata"]["name"])] = stored
        self.writes.append(("create", namespace, body["metadata"]["name"]))
        return copy.deepcopy(stored)

    def replace_config_map(self, namespace: str, name: str, body: dict[str, Any]) -> dict[str, Any]:
        if self.replace_error is not None:
            raise self.replace_error
        stored = copy.deepcopy(body)
        stored["metadata"]["resourceVersion"] = self._next_version()
        self.config_maps[(namespace, name)] = stored
        self.writes.append(("replace", namespace, name))
        return copy.deepcopy(stored)

    def delete_config_map(self, namespace: str, name: str) -> bool:
        if self.config_maps.pop((namespace, name), None) is None:
            return False
        self.writes.append(("delete", namespace, name))
        return True

    def list_resource_quotas(self, namespace: str) -> list[dict[str, Any]]:
        return copy.deepcopy(self.quotas.get(namespace, []))

    def read_cluster_identity(self) -> str | None:
        return self.identity


def _reconciler(
    store: FakeStore,
    admission: NamespaceAdmission | None = None,
    **config_overrides: Any,
) -> ShootReconciler:
    config = ControllerManagerConfig(**config_overrides)
    return ShootReconciler(
        store=store,  # type: ignore[arg-type]
        admission=admission or NamespaceAdmission(config.max_concurrent_reconciles_per_namespace),
        config=config,
    )


@pytest.fixture
def store(ca_pem: bytes) -> FakeStore:
    fake = FakeStore()
    fake.shoots[(NAMESPACE, "shoot")] = make_shoot()
    fake.shoot_states[(NAMESPACE, "shoot")] = make_shoot_state(ca_pem=ca_pem)
    return fake


def _kubeconfig(store: FakeStore, name: str = "shoot") -> dict[str, Any]:
    return yaml.safe_load(store.config_maps[(NAMESPACE, f"{name}.kubeconfig")]["data"]["kubeconfig"])


def test_creates_kubeconfig_config_map(store: FakeStore) -> None:
    result = _reconciler(store).reconcile(KEY)

    assert result.outcome == "created"
    assert result.requeue_after is None
    config_map = store.config_maps[(NAMESPACE, "shoot.kubeconfig")]
    assert config_map["metadata"]["labels"] == {ROLE_LABEL: "kubeconfig"}
    assert config_map["metadata"]["ownerReferences"] == [
        {
            "apiVersion": "core.gardener.cloud/v1beta1",
            "kind": "Shoot",
            "name": "shoot",
            "uid": "shoot-uid",
            "controller": True,
            "blockOwnerDeletion": False,
        }
    ]
    document = _kubeconfig(store)
    assert document["clusters"][0]["cluster"]["extensions"][0]["extension"] == {
        "shootRef": {"namespace": NAMESPACE, "name": "shoot"},
        "gardenClusterIdentity": "landscape-dev",
    }


def test_second_reconcile_writes_nothing(store: FakeStore) -> None:
    reconciler = _reconciler(store)
    reconciler.reconcile(KEY)
    writes_after_first = list(store.writes)

    result = reconciler.reconcile(KEY)

    assert result.outcome == "unchanged"
    assert store.writes == writes_after_first


def test_legacy_shoot_gets_flag_based_kubeconfig(store: FakeStore) -> None:
    store.shoots[(NAMESPACE, "shoot")] = make_shoot(version="1.19.0")

    _reconciler(store).reconcile(KEY)

    document = _kubeconfig(store)
    assert "extensions" not in document["clusters"][0]["cluster"]
    assert "--name=shoot" in document["users"][0]["user"]["exec"]["args"]


def test_address_change_updates_config_map_and_keeps_foreign_labels(store: FakeStore) -> None:
    reconciler = _reconciler(store)
    reconciler.reconcile(KEY)
    store.config_maps[(NAMESPACE, "shoot.kubeconfig")]["metadata"]["labels"]["team"] = "a"
    store.shoots[(NAMESPACE, "shoot")] = make_shoot(
        addresses=[{"name": "external", "url": "https://api.moved.example.com"}]
    )

    result = reconciler.reconcile(KEY)

    assert result.outcome == "updated"
    config_map = store.config_maps[(NAMESPACE, "shoot.kubeconfig")]
    assert config_map["metadata"]["labels"] == {ROLE_LABEL: "kubeconfig", "team": "a"}
    assert _kubeconfig(store)["clusters"][0]["cluster"]["server"] == "https://api.moved.example.com"


def test_tampered_config_map_is_restored(store: FakeStore) -> None:
    reconciler = _reconciler(store)
    reconciler.reconcile(KEY)
    original = store.config_maps[(NAMESPACE, "shoot.kubeconfig")]["data"]["kubeconfig"]
    store.config_maps[(NAMESPACE, "shoot.kubeconfig")]["data"]["kubeconfig"] = "tampered"
    del store.config_maps[(NAMESPACE, "shoot.kubeconfig")]["metadata"]["labels"][ROLE_LABEL]

    assert reconciler.reconcile(KEY).outcome == "updated"
    config_map = store.config_maps[(NAMESPACE, "shoot.kubeconfig")]
    assert config_map["data"]["kubeconfig"] == original
    assert config_map["metadata"]["labels"][ROLE_LABEL] == "kubeconfig"


def test_missing_shoot_deletes_config_map(store: FakeStore) -> None:
    reconciler = _reconciler(store)
    reconciler.reconcile(KEY)
    del store.shoots[(NAMESPACE, "shoot")]

    assert reconciler.reconcile(KEY).outcome == "deleted"
    assert (NAMESPACE, "shoot.kubeconfig") not in store.config_maps


def test_missing_shoot_without_config_map_is_absent(store: FakeStore) -> None:
    del store.shoots[(NAMESPACE, "shoot")]

    result = _reconciler(store).reconcile(KEY)

    assert result.outcome == "absent"
    assert store.writes == []


def test_terminating_shoot_deletes_config_map(store: FakeStore) -> None:
    reconciler = _reconciler(store)
    reconciler.reconcile(KEY)
    store.shoots[(NAMESPACE, "shoot")] = make_shoot(deletion_timestamp="2026-01-01T00:00:00Z")

    assert reconciler.reconcile(KEY).outcome == "deleted"


def test_missing_or_terminating_shoot_state_deletes_config_map(
    store: FakeStore, ca_pem: bytes
) -> None:
    reconciler = _reconciler(store)
    reconciler.reconcile(KEY)
    store.shoot_states[(NAMESPACE, "shoot")] = make_shoot_state(
        ca_pem=ca_pem, deletion_timestamp="2026-01-01T00:00:00Z"
    )
    assert reconciler.reconcile(KEY).outcome == "deleted"

    del store.shoot_states[(NAMESPACE, "shoot")]
    assert reconciler.reconcile(KEY).outcome == "absent"


def test_shoot_without_addresses_is_deferred(store: FakeStore) -> None:
    store.shoots[(NAMESPACE, "shoot")] = make_shoot(addresses=[])

    result = _reconciler(store, deferred_requeue_seconds=3600).reconcile(KEY)

    assert result.outcome == "deferred"
    assert result.requeue_after == 3600
    assert store.writes == []


def test_unprovisioned_ca_is_deferred(store: FakeStore) -> None:
    store.shoot_states[(NAMESPACE, "shoot")] = make_shoot_state(ca_pem=None)

    result = _reconciler(store).reconcile(KEY)

    assert result.outcome == "deferred"
    assert store.writes == []


def test_malformed_ca_is_a_validation_error(store: FakeStore) -> None:
    state = make_shoot_state()
    state["spec"]["gardener"].append({"name": "ca", "data": {"ca.crt": "bm90IGEgY2VydA=="}})
    store.shoot_states[(NAMESPACE, "shoot")] = state

    with pytest.raises(TrustAnchorError):
        _reconciler(store).reconcile(KEY)
    assert store.writes == []


def test_missing_identity_is_retryable(store: FakeStore) -> None:
    store.identity = None

    with pytest.raises(RetryableError):
        _reconciler(store).reconcile(KEY)


def test_unparseable_version_is_a_validation_error(store: FakeStore) -> None:
    store.shoots[(NAMESPACE, "shoot")] = make_shoot(version="latest")

    with pytest.raises(ValidationError):
        _reconciler(store).reconcile(KEY)


def test_oversized_config_map_is_rejected(store: FakeStore) -> None:
    with pytest.raises(ValidationError, match="allowed"):
        _reconciler(store, max_object_size=512).reconcile(KEY)
    assert store.writes == []


def test_quota_exhausted_then_raised(store: FakeStore) -> None:
    store.quotas[NAMESPACE] = [make_quota(hard="2", used="2")]
    reconciler = _reconciler(store, quota_exceeded_retry_delay_seconds=600)

    result = reconciler.reconcile(KEY)
    assert result.outcome == "quota_exceeded"
    assert result.requeue_after == 600
    assert store.writes == []

    store.quotas[NAMESPACE] = [make_quota(hard="3", used="2")]
    assert reconciler.reconcile(KEY).outcome == "created"


def test_quota_is_not_consulted_for_existing_config_map(store: FakeStore) -> None:
    reconciler = _reconciler(store)
    reconciler.reconcile(KEY)
    store.quotas[NAMESPACE] = [make_quota(hard="1", used="1")]
    store.shoots[(NAMESPACE, "shoot")] = make_shoot(
        addresses=[{"name": "external", "url": "https://api.moved.example.com"}]
    )

    assert reconciler.reconcile(KEY).outcome == "updated"


def test_unobserved_quota_status_is_retryable(store: FakeStore) -> None:
    quota = make_quota(hard=None, used=None)
    quota["spec"]["hard"] = {"count/configmaps": "2"}
    store.quotas[NAMESPACE] = [quota]

    with pytest.raises(QuotaStatusUnknownError):
        _reconciler(store).reconcile(KEY)


def test_admission_denied_requeues_with_jitter(store: FakeStore) -> None:
    admission = NamespaceAdmission(max_per_namespace=1)
    assert admission.admit(NAMESPACE)

    result = _reconciler(store, admission=admission).reconcile(KEY)

    assert result.outcome == "admission_denied"
    assert result.requeue_after is not None
    assert 0.1 <= result.requeue_after <= 5.0
    assert store.writes == []
    assert admission.in_flight(NAMESPACE) == 1


def test_admission_ticket_released_after_failure(store: FakeStore) -> None:
    admission = NamespaceAdmission(max_per_namespace=1)
    store.identity = None

    with pytest.raises(RetryableError):
        _reconciler(store, admission=admission).reconcile(KEY)

    assert admission.in_flight(NAMESPACE) == 0


def test_create_conflict_is_retryable(store: FakeStore) -> None:
    store.create_error = ApiException(status=409, reason="AlreadyExists")

    with pytest.raises(RetryableError):
        _reconciler(store).reconcile(KEY)


def test_update_conflict_is_retryable(store: FakeStore) -> None:
    reconciler = _reconciler(store)
    reconciler.reconcile(KEY)
    store.config_maps[(NAMESPACE, "shoot.kubeconfig")]["data"]["kubeconfig"] = "stale"
    store.replace_error = ApiException(status=409, reason="Conflict")

    with pytest.raises(RetryableError):
        reconciler.reconcile(KEY)


def test_other_api_errors_propagate(store: FakeStore) -> None:
    store.create_error = ApiException(status=500, reason="boom")

    with pytest.raises(ApiException):
        _reconciler(store).reconcile(KEY)


def test_requests_for_resource_quota_lists_shoots_without_config_map(store: FakeStore) -> None:
    store.shoots[(NAMESPACE, "other")] = make_shoot(name="other")
    store.shoots[("elsewhere", "third")] = make_shoot(namespace="elsewhere", name="third")
    _reconciler(store).reconcile(KEY)

    assert requests_for_resource_quota(store, NAMESPACE) == [  # type: ignore[arg-type]
        ReconcileKey(namespace=NAMESPACE, name="other")
    ]


def test_requests_for_resource_quota_ignores_unlabelled_config_maps(store: FakeStore) -> None:
    store.config_maps[(NAMESPACE, "shoot.kubeconfig")] = {
        "metadata": {"name": "shoot.kubeconfig", "namespace": NAMESPACE, "labels": {}},
        "data": {},
    }

    assert requests_for_resource_quota(store, NAMESPACE) == [KEY]  # type: ignore[arg-type]


def test_requests_for_resource_quota_returns_nothing_on_list_error(store: FakeStore) -> None:
    store.list_error = ApiException(status=500, reason="boom")

    assert requests_for_resource_quota(store, NAMESPACE) == []  # type: ignore[arg-type]
