from __future__ import annotations

# Label identifying kubeconfig ConfigMaps to the ConfigMap validating webhook.
ROLE_LABEL = "operations.gardener.cloud/role"
ROLE_KUBECONFIG = "kubeconfig"

# ConfigMap data key holding the kubeconfig document.
DATA_KEY_KUBECONFIG = "kubeconfig"

# The kubeconfig ConfigMap of shoot ``foo`` is named ``foo.kubeconfig``.
KUBECONFIG_CONFIG_MAP_SUFFIX = ".kubeconfig"

SHOOT_API_VERSION = "core.gardener.cloud/v1beta1"
SHOOT_KIND = "Shoot"


def kubeconfig_config_map_name(shoot_name: str) -> str:
    return f"{shoot_name}{KUBECONFIG_CONFIG_MAP_SUFFIX}"
