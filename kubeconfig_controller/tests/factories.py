"""Builders for the Gardener objects used across the test modules."""

from __future__ import annotations

import base64
import datetime as dt
from typing import Any

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID


def make_ca_pem(common_name: str = "shoot-ca") -> bytes:
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = dt.datetime.now(dt.timezone.utc)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - dt.timedelta(minutes=1))
        .not_valid_after(now + dt.timedelta(days=1))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )
    return certificate.public_bytes(serialization.Encoding.PEM)


def make_shoot_state(
    namespace: str = "garden-project",
    name: str = "shoot",
    ca_pem: bytes | None = None,
    deletion_timestamp: str | None = None,
) -> dict[str, Any]:
    gardener: list[dict[str, Any]] = []
    if ca_pem is not None:
        gardener.append(
            {
                "name": "ca",
                "type": "certificate",
                "data": {"ca.crt": base64.b64encode(ca_pem).decode("ascii")},
            }
        )
    metadata: dict[str, Any] = {"namespace": namespace, "name": name, "resourceVersion": "1"}
    if deletion_timestamp:
        metadata["deletionTimestamp"] = deletion_timestamp
    return {
        "apiVersion": "core.gardener.cloud/v1alpha1",
        "kind": "ShootState",
        "metadata": metadata,
        "spec": {"gardener": gardener},
    }


def make_shoot(
    namespace: str = "garden-project",
    name: str = "shoot",
    version: str = "1.20.0",
    addresses: list[dict[str, str]] | None = None,
    uid: str = "shoot-uid",
    deletion_timestamp: str | None = None,
) -> dict[str, Any]:
    if addresses is None:
        addresses = [{"name": "external", "url": "https://api.shoot.example.com"}]
    metadata: dict[str, Any] = {
        "namespace": namespace,
        "name": name,
        "uid": uid,
        "resourceVersion": "1",
    }
    if deletion_timestamp:
        metadata["deletionTimestamp"] = deletion_timestamp
    return {
        "apiVersion": "core.gardener.cloud/v1beta1",
        "kind": "Shoot",
        "metadata": metadata,
        "spec": {"kubernetes": {"version": version}},
        "status": {"advertisedAddresses": addresses},
    }


def make_quota(
    hard: str | None = "2",
    used: str | None = "0",
    name: str = "configmaps",
    namespace: str = "garden-project",
) -> dict[str, Any]:
    resource = "count/configmaps"
    status: dict[str, Any] = {}
    if hard is not None:
        status["hard"] = {resource: hard}
    if used is not None:
        status["used"] = {resource: used}
    return {
        "metadata": {"name": name, "namespace": namespace},
        "spec": {"hard": {resource: hard or "0"}},
        "status": status,
    }
