"""Resource quota arithmetic and the quota gate consulted before creating a kubeconfig.

Resource lists are the ``{resource name: quantity string}`` maps found in
``ResourceQuota.spec.hard``, ``status.hard`` and ``status.used``.  Quantities
are compared numerically, so ``"1k"`` and ``"1000"`` are equal.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from decimal import Decimal
from typing import Any, Protocol

from kubernetes.utils import parse_quantity

from kubeconfig_controller.src.errors import QuotaStatusUnknownError

LOGGER = logging.getLogger(__name__)

CONFIG_MAP_COUNT_RESOURCE = "count/configmaps"

ResourceList = Mapping[str, Any]


class QuotaLister(Protocol):
    def list_resource_quotas(self, namespace: str) -> list[dict[str, Any]]: ...


def _quantity(value: Any) -> Decimal:
    return parse_quantity(value)


def mask(resources: ResourceList | None, names: Iterable[str]) -> dict[str, Decimal]:
    """Return only the entries of *resources* whose name is in *names*."""
    wanted = set(names)
    return {
        name: _quantity(value)
        for name, value in (resources or {}).items()
        if name in wanted
    }


def equals(a: ResourceList, b: ResourceList) -> bool:
    if set(a) != set(b):
        return False
    return all(_quantity(a[name]) == _quantity(b[name]) for name in a)


def less_than(a: ResourceList, b: ResourceList) -> bool:
    """Return True if ``a[key] < b[key]`` for every key of *b* also present in *a*.

    Keys missing from *a* do not count against the result, so an empty *a*
    is less than anything.
    """
    for name, limit in b.items():
        if name in a and _quantity(a[name]) >= _quantity(limit):
            return False
    return True


def less_than_or_equal(a: ResourceList, b: ResourceList) -> bool:
    """Return True if ``a[key] <= b[key]`` for every key of *a* that *b* constrains."""
    for name, value in a.items():
        if name in b and _quantity(value) > _quantity(b[name]):
            return False
    return True


def add(a: ResourceList, b: ResourceList) -> dict[str, Decimal]:
    result = {name: _quantity(value) for name, value in a.items()}
    for name, value in b.items():
        result[name] = result.get(name, Decimal(0)) + _quantity(value)
    return result


def has_capacity(quotas: Iterable[Mapping[str, Any]], resource_name: str) -> bool:
    """Decide whether one more object of *resource_name* fits into every quota.

    Only quotas whose ``spec.hard`` names the resource participate.  A quota
    that restricts the resource but has no observed ``status.hard`` or
    ``status.used`` entry for it raises :class:`QuotaStatusUnknownError`
    instead of guessing.
    """
    for quota in quotas:
        spec_hard = (quota.get("spec") or {}).get("hard") or {}
        if resource_name not in spec_hard:
            continue

        quota_name = (quota.get("metadata") or {}).get("name", "<unknown>")
        status = quota.get("status") or {}
        status_hard = status.get("hard") or {}
        status_used = status.get("used") or {}
        if resource_name not in status_hard:
            raise QuotaStatusUnknownError(
                f"could not determine hard resource quota status of {quota_name}; "
                "status does not seem to be up-to-date"
            )
        if resource_name not in status_used:
            raise QuotaStatusUnknownError(
                f"could not determine used resource quota status of {quota_name}; "
                "status does not seem to be up-to-date"
            )

        requested = {resource_name: 1}
        new_usage = mask(add(status_used, requested), requested)
        if not less_than_or_equal(new_usage, status_hard):
            LOGGER.debug(
                "Quota %s exhausted for %s (used=%s hard=%s)",
                quota_name,
                resource_name,
                status_used[resource_name],
                status_hard[resource_name],
            )
            return False

    return True


class QuotaGate:
    """Checks namespace quotas before a new kubeconfig ConfigMap is created."""

    def __init__(self, store: QuotaLister) -> None:
        self.store = store

    def has_capacity(self, namespace: str, resource_name: str = CONFIG_MAP_COUNT_RESOURCE) -> bool:
        return has_capacity(self.store.list_resource_quotas(namespace), resource_name)
