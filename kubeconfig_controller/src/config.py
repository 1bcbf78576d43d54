from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

import yaml

DEFAULT_CONFIG_FILE = "/etc/gardenlogin-controller-manager/config.yaml"


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerManagerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        max_concurrent_reconciles: Size of the global worker pool.
        max_concurrent_reconciles_per_namespace: In-flight reconciles allowed
            per namespace, independent of who created the shoots.
        quota_exceeded_retry_delay_seconds: Requeue delay when the ConfigMap
            quota of a namespace is exhausted.
        max_object_size: Largest kubeconfig ConfigMap (bytes) accepted by the
            ConfigMap validating webhook.
        deferred_requeue_seconds: Requeue delay for shoots without advertised
            addresses or without a provisioned CA yet.
        resync_period_seconds: Interval at which every shoot is enqueued again.
        identity_timeout_seconds: Timeout for reading the garden cluster identity.
        request_timeout_seconds: Timeout for all other API calls.
        admission_jitter_min_seconds / admission_jitter_max_seconds: Window of
            the random requeue delay after an admission denial.
    """

    max_concurrent_reconciles: int = 50
    max_concurrent_reconciles_per_namespace: int = 3
    quota_exceeded_retry_delay_seconds: float = 600.0
    max_object_size: int = 100 * 1024
    deferred_requeue_seconds: float = 3600.0
    resync_period_seconds: float = 3600.0
    identity_timeout_seconds: float = 10.0
    request_timeout_seconds: float = 30.0
    admission_jitter_min_seconds: float = 0.1
    admission_jitter_max_seconds: float = 5.0

    def validate(self) -> None:
        if self.max_concurrent_reconciles < 1:
            raise ConfigError("controllers.shoot.maxConcurrentReconciles must be 1 or greater")
        if self.max_concurrent_reconciles_per_namespace < 1:
            raise ConfigError(
                "controllers.shoot.maxConcurrentReconcilesPerNamespace must be 1 or greater"
            )
        if self.max_concurrent_reconciles_per_namespace > self.max_concurrent_reconciles:
            raise ConfigError(
                "controllers.shoot.maxConcurrentReconcilesPerNamespace must not be greater "
                "than maxConcurrentReconciles"
            )
        if self.max_object_size < 1:
            raise ConfigError("webhooks.configMapValidation.maxObjectSize must be 1 or greater")
        for name in (
            "quota_exceeded_retry_delay_seconds",
            "deferred_requeue_seconds",
            "resync_period_seconds",
            "identity_timeout_seconds",
            "request_timeout_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be greater than 0")
        if not 0 <= self.admission_jitter_min_seconds <= self.admission_jitter_max_seconds:
            raise ConfigError("admission jitter window must satisfy 0 <= min <= max")


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_float(name: str, default: float, *, env: Mapping[str, str] | None = None) -> float:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number") from exc


def _section(document: Mapping[str, Any], *path: str) -> Mapping[str, Any]:
    current: Any = document
    for key in path:
        current = current.get(key) if isinstance(current, Mapping) else None
        if current is None:
            return {}
    if not isinstance(current, Mapping):
        raise ConfigError(f"{'.'.join(path)} must be a mapping")
    return current


def _from_document(document: Mapping[str, Any]) -> ControllerManagerConfig:
    """Map the YAML layout (``controllers.shoot``, ``webhooks.configMapValidation``) onto the config."""
    shoot = _section(document, "controllers", "shoot")
    validation = _section(document, "webhooks", "configMapValidation")
    defaults = ControllerManagerConfig()

    fields = {
        "max_concurrent_reconciles": shoot.get(
            "maxConcurrentReconciles", defaults.max_concurrent_reconciles
        ),
        "max_concurrent_reconciles_per_namespace": shoot.get(
            "maxConcurrentReconcilesPerNamespace",
            defaults.max_concurrent_reconciles_per_namespace,
        ),
        "quota_exceeded_retry_delay_seconds": shoot.get(
            "quotaExceededRetryDelaySeconds", defaults.quota_exceeded_retry_delay_seconds
        ),
        "deferred_requeue_seconds": shoot.get(
            "deferredRequeueSeconds", defaults.deferred_requeue_seconds
        ),
        "resync_period_seconds": shoot.get("resyncPeriodSeconds", defaults.resync_period_seconds),
        "identity_timeout_seconds": shoot.get(
            "identityTimeoutSeconds", defaults.identity_timeout_seconds
        ),
        "max_object_size": validation.get("maxObjectSize", defaults.max_object_size),
    }
    try:
        return ControllerManagerConfig(
            max_concurrent_reconciles=int(fields["max_concurrent_reconciles"]),
            max_concurrent_reconciles_per_namespace=int(
                fields["max_concurrent_reconciles_per_namespace"]
            ),
            quota_exceeded_retry_delay_seconds=float(fields["quota_exceeded_retry_delay_seconds"]),
            deferred_requeue_seconds=float(fields["deferred_requeue_seconds"]),
            resync_period_seconds=float(fields["resync_period_seconds"]),
            identity_timeout_seconds=float(fields["identity_timeout_seconds"]),
            max_object_size=int(fields["max_object_size"]),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"invalid configuration value: {exc}") from exc


def read_config_file(path: str | Path) -> ControllerManagerConfig:
    """Parse a controller manager configuration file."""
    try:
        with Path(path).open(encoding="utf-8") as handle:
            document = yaml.safe_load(handle) or {}
    except OSError as exc:
        raise ConfigError(f"could not read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"could not parse config file {path}: {exc}") from exc

    if not isinstance(document, Mapping):
        raise ConfigError(f"config file {path} must contain a mapping")
    return _from_document(document)


def load_config(env: Mapping[str, str] | None = None) -> ControllerManagerConfig:
    """Load and validate the controller configuration.

    Resolution order:
    1. Built-in defaults.
    2. The YAML file named by ``CONFIG_FILE``.  When unset, the default path is
       read only if it exists.
    3. Environment variable overrides (``MAX_CONCURRENT_RECONCILES`` and friends).

    Raises :class:`ConfigError` on any invalid value, so a misconfigured
    controller never starts.
    """
    values = env if env is not None else os.environ

    config_file = values.get("CONFIG_FILE")
    if config_file:
        cfg = read_config_file(config_file)
    elif Path(DEFAULT_CONFIG_FILE).is_file():
        cfg = read_config_file(DEFAULT_CONFIG_FILE)
    else:
        cfg = ControllerManagerConfig()

    cfg = replace(
        cfg,
        max_concurrent_reconciles=env_int(
            "MAX_CONCURRENT_RECONCILES", cfg.max_concurrent_reconciles, env=values
        ),
        max_concurrent_reconciles_per_namespace=env_int(
            "MAX_CONCURRENT_RECONCILES_PER_NAMESPACE",
            cfg.max_concurrent_reconciles_per_namespace,
            env=values,
        ),
        quota_exceeded_retry_delay_seconds=env_float(
            "QUOTA_EXCEEDED_RETRY_DELAY_SECONDS",
            cfg.quota_exceeded_retry_delay_seconds,
            env=values,
        ),
        max_object_size=env_int("MAX_OBJECT_SIZE", cfg.max_object_size, env=values),
        deferred_requeue_seconds=env_float(
            "DEFERRED_REQUEUE_SECONDS", cfg.deferred_requeue_seconds, env=values
        ),
        resync_period_seconds=env_float(
            "RESYNC_PERIOD_SECONDS", cfg.resync_period_seconds, env=values
        ),
        identity_timeout_seconds=env_float(
            "IDENTITY_TIMEOUT_SECONDS", cfg.identity_timeout_seconds, env=values
        ),
        request_timeout_seconds=env_float(
            "REQUEST_TIMEOUT_SECONDS", cfg.request_timeout_seconds, env=values
        ),
    )
    cfg.validate()
    return cfg
