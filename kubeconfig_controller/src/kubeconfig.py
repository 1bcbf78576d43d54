"""Kubeconfig generation for the ``gardenlogin`` exec credential plugin.

The generated document never contains credentials.  Every user entry execs
``kubectl gardenlogin get-client-certificate``, which resolves a short-lived
client certificate when the kubeconfig is used.  The plugin learns which shoot
to authenticate against either from a cluster extension (current format) or
from command line flags (legacy format, for kubectl older than v1.20 which
does not pass cluster extensions to exec plugins).
"""

from __future__ import annotations

import base64
import enum
import re
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit

import yaml

from kubeconfig_controller.src.errors import ValidationError

EXEC_EXTENSION_NAME = "client.authentication.k8s.io/exec"
EXEC_API_VERSION = "client.authentication.k8s.io/v1beta1"
EXEC_COMMAND = "kubectl"
EXEC_BASE_ARGS = ("gardenlogin", "get-client-certificate")

# Shoots below this Kubernetes major.minor get the legacy kubeconfig layout.
LEGACY_VERSION_THRESHOLD = (1, 20)

_VERSION_PATTERN = re.compile(r"^v?(?P<major>\d+)\.(?P<minor>\d+)(?:\.\d+)?(?:[-+].*)?$")


class KubeconfigFormat(enum.Enum):
    CURRENT = "current"
    LEGACY = "legacy"


def format_for_version(version: str | None) -> KubeconfigFormat:
    """Select the kubeconfig format for a shoot's ``spec.kubernetes.version``."""
    match = _VERSION_PATTERN.match((version or "").strip())
    if match is None:
        raise ValidationError(f"could not parse kubernetes version {version!r} of shoot cluster")

    major_minor = (int(match.group("major")), int(match.group("minor")))
    if major_minor < LEGACY_VERSION_THRESHOLD:
        return KubeconfigFormat.LEGACY
    return KubeconfigFormat.CURRENT


def host_from_url(address: str) -> str:
    """Return ``host[:port]`` of an advertised address such as ``https://api.foo.example``.

    Addresses without a scheme are taken as a bare host.
    """
    if "://" not in address:
        return address.strip()
    try:
        return urlsplit(address).netloc
    except ValueError as exc:
        raise ValidationError(f"could not parse shoot server url {address!r}: {exc}") from exc


@dataclass(frozen=True)
class Endpoint:
    """One advertised kube-apiserver address, usually ``external``, ``internal`` or ``unmanaged``."""

    name: str
    host: str


@dataclass(frozen=True)
class KubeconfigRequest:
    endpoints: tuple[Endpoint, ...]
    ca_cert: bytes
    namespace: str
    shoot_name: str
    garden_cluster_identity: str
    format: KubeconfigFormat = KubeconfigFormat.CURRENT
    exec_base_args: tuple[str, ...] = field(default=EXEC_BASE_ARGS)

    def validate(self) -> None:
        """Raise :class:`ValidationError` unless every required field is set."""
        if not self.endpoints:
            raise ValidationError("missing clusters")

        for index, endpoint in enumerate(self.endpoints):
            if not endpoint.name:
                raise ValidationError(f"no name defined for cluster[{index}]")
            if not endpoint.host:
                raise ValidationError(f"no api server host defined for cluster[{index}]")

        if not self.namespace:
            raise ValidationError("no namespace defined for kubeconfig request")
        if not self.shoot_name:
            raise ValidationError("no shoot name defined for kubeconfig request")
        if not self.garden_cluster_identity:
            raise ValidationError("no garden cluster identity defined for kubeconfig request")

    @property
    def auth_name(self) -> str:
        return f"{self.namespace}--{self.shoot_name}"

    def context_name(self, endpoint: Endpoint) -> str:
        return f"{self.auth_name}-{endpoint.name}"


def _exec_args(request: KubeconfigRequest) -> list[str]:
    args = list(request.exec_base_args)
    if request.format is KubeconfigFormat.LEGACY:
        args.extend(
            [
                f"--name={request.shoot_name}",
                f"--namespace={request.namespace}",
                f"--garden-cluster-identity={request.garden_cluster_identity}",
            ]
        )
    return args


def _cluster_extensions(request: KubeconfigRequest) -> list[dict[str, Any]]:
    if request.format is KubeconfigFormat.LEGACY:
        return []
    return [
        {
            "name": EXEC_EXTENSION_NAME,
            "extension": {
                "shootRef": {
                    "namespace": request.namespace,
                    "name": request.shoot_name,
                },
                "gardenClusterIdentity": request.garden_cluster_identity,
            },
        }
    ]


def build_kubeconfig(request: KubeconfigRequest) -> str:
    """Render the kubeconfig for *request* as a YAML document.

    One cluster and one context is emitted per endpoint, in request order, all
    sharing a single exec user.  The first endpoint's context is the current
    context.  Output depends only on the request, so equal requests always
    render byte-identical documents.
    """
    request.validate()

    ca_data = base64.b64encode(request.ca_cert).decode("ascii")

    clusters: list[dict[str, Any]] = []
    contexts: list[dict[str, Any]] = []
    for endpoint in request.endpoints:
        name = request.context_name(endpoint)
        cluster: dict[str, Any] = {
            "certificate-authority-data": ca_data,
            "server": f"https://{endpoint.host}",
        }
        # A fresh list per cluster keeps the YAML free of anchors and aliases.
        extensions = _cluster_extensions(request)
        if extensions:
            cluster["extensions"] = extensions
        clusters.append({"name": name, "cluster": cluster})
        contexts.append(
            {
                "name": name,
                "context": {"cluster": name, "user": request.auth_name},
            }
        )

    document = {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": clusters,
        "contexts": contexts,
        "current-context": request.context_name(request.endpoints[0]),
        "preferences": {},
        "users": [
            {
                "name": request.auth_name,
                "user": {
                    "exec": {
                        "apiVersion": EXEC_API_VERSION,
                        "command": EXEC_COMMAND,
                        "args": _exec_args(request),
                        "provideClusterInfo": True,
                    }
                },
            }
        ],
    }
    return yaml.safe_dump(document, default_flow_style=False, sort_keys=False)
