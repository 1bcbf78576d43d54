from __future__ import annotations

import base64
import binascii
from collections.abc import Mapping
from typing import Any

from cryptography import x509

from kubeconfig_controller.src.errors import CaNotProvisionedError, TrustAnchorError

# Name of the gardener resource data entry holding the cluster CA.
CA_RESOURCE_DATA_NAME = "ca"
CA_CERT_DATA_KEY = "ca.crt"

_PEM_CERTIFICATE_BEGIN = b"-----BEGIN CERTIFICATE-----"
_PEM_CERTIFICATE_END = b"-----END CERTIFICATE-----"


def cluster_ca_cert(shoot_state: Mapping[str, Any]) -> bytes:
    """Return the PEM encoded cluster CA stored in a ShootState.

    Raises :class:`CaNotProvisionedError` when the ``ca`` resource data entry
    does not exist yet (a freshly created cluster) and :class:`TrustAnchorError`
    when the entry exists but cannot be decoded.
    """
    entries = (shoot_state.get("spec") or {}).get("gardener") or []
    ca_entry = next(
        (
            entry
            for entry in entries
            if isinstance(entry, Mapping) and entry.get("name") == CA_RESOURCE_DATA_NAME
        ),
        None,
    )
    if ca_entry is None:
        raise CaNotProvisionedError("certificate authority not yet provisioned")

    data = ca_entry.get("data")
    if not isinstance(data, Mapping):
        raise TrustAnchorError("failed to unmarshal certificate authority from raw data")

    encoded = data.get(CA_CERT_DATA_KEY)
    if encoded is None:
        return b""
    if not isinstance(encoded, str):
        raise TrustAnchorError("failed to unmarshal certificate authority from raw data")
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise TrustAnchorError("failed to unmarshal certificate authority from raw data") from exc


def validate_certificate(pem_bytes: bytes) -> None:
    """Ensure *pem_bytes* starts with a PEM ``CERTIFICATE`` block holding a valid X.509 certificate."""
    stripped = pem_bytes.strip()
    if not stripped.startswith(_PEM_CERTIFICATE_BEGIN) or _PEM_CERTIFICATE_END not in stripped:
        raise TrustAnchorError("PEM block type must be CERTIFICATE")

    try:
        x509.load_pem_x509_certificate(stripped)
    except ValueError as exc:
        raise TrustAnchorError(f"failed to parse certificate: {exc}") from exc
