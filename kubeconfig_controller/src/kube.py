from __future__ import annotations

import logging
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiClient, ApiException, CoreV1Api, CustomObjectsApi
from kubernetes.config.config_exception import ConfigException

from kubeconfig_controller.src.errors import NotFound

LOGGER = logging.getLogger(__name__)

GARDENER_CORE_GROUP = "core.gardener.cloud"
SHOOT_VERSION = "v1beta1"
SHOOT_PLURAL = "shoots"
SHOOT_STATE_VERSION = "v1alpha1"
SHOOT_STATE_PLURAL = "shootstates"

CLUSTER_IDENTITY_NAMESPACE = "kube-system"
CLUSTER_IDENTITY_NAME = "cluster-identity"
CLUSTER_IDENTITY_KEY = "cluster-identity"


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, CustomObjectsApi]:
    """Return CoreV1 and CustomObjects API clients using the active kube configuration."""
    return client.CoreV1Api(), client.CustomObjectsApi()


class KubeStore:
    """Thin adapter over the Kubernetes API used by the reconciler and watches.

    Every object is returned as a JSON-shaped ``dict`` with camelCase keys,
    whether it was read through the typed core client or the custom objects
    client.  A ``404`` on a read surfaces as :class:`NotFound`; every other
    ``ApiException`` propagates to the caller unchanged.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        custom_api: CustomObjectsApi,
        request_timeout_seconds: float = 30.0,
        identity_timeout_seconds: float = 10.0,
    ) -> None:
        self.core_api = core_api
        self.custom_api = custom_api
        self.request_timeout_seconds = request_timeout_seconds
        self.identity_timeout_seconds = identity_timeout_seconds
        self._serializer = ApiClient()

    def to_dict(self, obj: Any) -> Any:
        """Convert a typed client model into its JSON representation."""
        if obj is None or isinstance(obj, dict):
            return obj
        return self._serializer.sanitize_for_serialization(obj)

    def _items(self, listing: Any) -> list[dict[str, Any]]:
        payload = self.to_dict(listing) or {}
        return list(payload.get("items") or [])

    def get_shoot(self, namespace: str, name: str) -> dict[str, Any]:
        try:
            return self.custom_api.get_namespaced_custom_object(
                group=GARDENER_CORE_GROUP,
                version=SHOOT_VERSION,
                namespace=namespace,
                plural=SHOOT_PLURAL,
                name=name,
                _request_timeout=self.request_timeout_seconds,
            )
        except ApiException as exc:
            if exc.status == 404:
                raise NotFound(f"shoot {namespace}/{name}") from exc
            raise

    def list_shoots(self, namespace: str) -> list[dict[str, Any]]:
        listing = self.custom_api.list_namespaced_custom_object(
            group=GARDENER_CORE_GROUP,
            version=SHOOT_VERSION,
            namespace=namespace,
            plural=SHOOT_PLURAL,
            _request_timeout=self.request_timeout_seconds,
        )
        return self._items(listing)

    def get_shoot_state(self, namespace: str, name: str) -> dict[str, Any]:
        try:
            return self.custom_api.get_namespaced_custom_object(
                group=GARDENER_CORE_GROUP,
                version=SHOOT_STATE_VERSION,
                namespace=namespace,
                plural=SHOOT_STATE_PLURAL,
                name=name,
                _request_timeout=self.request_timeout_seconds,
            )
        except ApiException as exc:
            if exc.status == 404:
                raise NotFound(f"shootstate {namespace}/{name}") from exc
            raise

    def get_config_map(self, namespace: str, name: str) -> dict[str, Any]:
        try:
            config_map = self.core_api.read_namespaced_config_map(
                name=name,
                namespace=namespace,
                _request_timeout=self.request_timeout_seconds,
            )
        except ApiException as exc:
            if exc.status == 404:
                raise NotFound(f"configmap {namespace}/{name}") from exc
            raise
        return self.to_dict(config_map)

    def list_config_maps(self, namespace: str, label_selector: str) -> list[dict[str, Any]]:
        listing = self.core_api.list_namespaced_config_map(
            namespace=namespace,
            label_selector=label_selector,
            _request_timeout=self.request_timeout_seconds,
        )
        return self._items(listing)

    def create_config_map(self, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        created = self.core_api.create_namespaced_config_map(
            namespace=namespace,
            body=body,
            _request_timeout=self.request_timeout_seconds,
        )
        return self.to_dict(created)

    def replace_config_map(self, namespace: str, name: str, body: dict[str, Any]) -> dict[str, Any]:
        """Replace a ConfigMap; ``metadata.resourceVersion`` in *body* guards against lost updates."""
        replaced = self.core_api.replace_namespaced_config_map(
            name=name,
            namespace=namespace,
            body=body,
            _request_timeout=self.request_timeout_seconds,
        )
        return self.to_dict(replaced)

    def delete_config_map(self, namespace: str, name: str) -> bool:
        """Delete a ConfigMap, returning False when it did not exist."""
        try:
            self.core_api.delete_namespaced_config_map(
                name=name,
                namespace=namespace,
                _request_timeout=self.request_timeout_seconds,
            )
        except ApiException as exc:
            if exc.status == 404:
                return False
            raise
        return True

    def list_resource_quotas(self, namespace: str) -> list[dict[str, Any]]:
        listing = self.core_api.list_namespaced_resource_quota(
            namespace=namespace,
            _request_timeout=self.request_timeout_seconds,
        )
        return self._items(listing)

    def read_cluster_identity(self) -> str | None:
        """Return the garden cluster identity, or None when it is not published yet."""
        try:
            config_map = self.core_api.read_namespaced_config_map(
                name=CLUSTER_IDENTITY_NAME,
                namespace=CLUSTER_IDENTITY_NAMESPACE,
                _request_timeout=self.identity_timeout_seconds,
            )
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise
        data = self.to_dict(config_map).get("data") or {}
        return data.get(CLUSTER_IDENTITY_KEY) or None
