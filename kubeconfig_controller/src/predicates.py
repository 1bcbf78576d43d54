"""Change-detection predicates for the watched kinds.

Create and delete events always pass.  Update events pass only when they carry
information that can change the generated kubeconfig or unblock a deferred
request; everything else (status churn, unrelated labels, resourceVersion
bumps) is dropped before it reaches the work queue.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable, Mapping
from typing import Any

from kubeconfig_controller.src.constants import DATA_KEY_KUBECONFIG, ROLE_KUBECONFIG, ROLE_LABEL
from kubeconfig_controller.src.errors import CaNotProvisionedError, TrustAnchorError
from kubeconfig_controller.src.quota import CONFIG_MAP_COUNT_RESOURCE, equals, less_than, mask
from kubeconfig_controller.src.trust import cluster_ca_cert

LOGGER = logging.getLogger(__name__)

Object = Mapping[str, Any]


class WatchedKind(enum.Enum):
    SHOOT = "Shoot"
    SHOOT_STATE = "ShootState"
    CONFIG_MAP = "ConfigMap"
    RESOURCE_QUOTA = "ResourceQuota"


def _advertised_addresses(shoot: Object) -> list[tuple[Any, Any]]:
    addresses = (shoot.get("status") or {}).get("advertisedAddresses") or []
    return [(address.get("name"), address.get("url")) for address in addresses]


def shoot_changed(old: Object, new: Object) -> bool:
    """Pass when the advertised addresses changed in count, name or url."""
    return _advertised_addresses(old) != _advertised_addresses(new)


def _labels(obj: Object) -> Mapping[str, str]:
    return (obj.get("metadata") or {}).get("labels") or {}


def _kubeconfig_data(obj: Object) -> Any:
    return (obj.get("data") or {}).get(DATA_KEY_KUBECONFIG)


def config_map_changed(old: Object, new: Object) -> bool:
    """Pass when the role label or the kubeconfig payload of a kubeconfig ConfigMap changed."""
    old_role = _labels(old).get(ROLE_LABEL)
    new_role = _labels(new).get(ROLE_LABEL)
    if old_role != ROLE_KUBECONFIG and new_role != ROLE_KUBECONFIG:
        return False

    if old_role != new_role:
        return True

    return _kubeconfig_data(old) != _kubeconfig_data(new)


def shoot_state_changed(old: Object, new: Object) -> bool:
    """Pass when the cluster CA changed.

    A missing CA on the old object is expected for new clusters.  When the new
    object has no decodable CA there is nothing to build yet, so the event is
    dropped.  The objects themselves are never logged as they carry secrets.
    """
    metadata = new.get("metadata") or {}
    try:
        old_ca: bytes | None = cluster_ca_cert(old)
    except CaNotProvisionedError:
        old_ca = None
    except TrustAnchorError as exc:
        LOGGER.error(
            "Failed to read cluster CA from old ShootState %s/%s: %s",
            metadata.get("namespace"),
            metadata.get("name"),
            exc,
        )
        return False

    try:
        new_ca = cluster_ca_cert(new)
    except CaNotProvisionedError:
        return False
    except TrustAnchorError as exc:
        LOGGER.error(
            "Failed to read cluster CA from new ShootState %s/%s: %s",
            metadata.get("namespace"),
            metadata.get("name"),
            exc,
        )
        return False

    return old_ca != new_ca


def resource_quota_changed(old: Object, new: Object) -> bool:
    """Pass when ConfigMap quota was raised or usage dropped below the limit again."""
    names = [CONFIG_MAP_COUNT_RESOURCE]
    old_status = old.get("status") or {}
    new_status = new.get("status") or {}

    old_hard = mask(old_status.get("hard"), names)
    new_hard = mask(new_status.get("hard"), names)
    if not equals(old_hard, new_hard) and less_than(old_hard, new_hard):
        return True

    old_used = mask(old_status.get("used"), names)
    new_used = mask(new_status.get("used"), names)
    if not equals(old_used, new_used):
        old_had_free_capacity = less_than(old_used, old_hard)
        new_has_free_capacity = less_than(new_used, new_hard)
        if not old_had_free_capacity and new_has_free_capacity:
            return True

    return False


UPDATE_PREDICATES: dict[WatchedKind, Callable[[Object, Object], bool]] = {
    WatchedKind.SHOOT: shoot_changed,
    WatchedKind.SHOOT_STATE: shoot_state_changed,
    WatchedKind.CONFIG_MAP: config_map_changed,
    WatchedKind.RESOURCE_QUOTA: resource_quota_changed,
}


def should_reconcile(
    kind: WatchedKind,
    event_type: str,
    old: Object | None,
    new: Object | None,
) -> bool:
    """Return True when a watch event of *kind* is relevant to the controller."""
    if event_type in {"ADDED", "DELETED"}:
        return True
    if event_type != "MODIFIED":
        return False

    if old is None:
        LOGGER.error("Update event for %s has no old object", kind.value)
        return False
    if new is None:
        LOGGER.error("Update event for %s has no new object", kind.value)
        return False

    return UPDATE_PREDICATES[kind](old, new)
