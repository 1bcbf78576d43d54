from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading

from kubeconfig_controller.src.config import ConfigError, env_int, load_config
from kubeconfig_controller.src.controller import ControllerManager, build_controller_manager
from kubeconfig_controller.src.health import HealthChecks, start_health_server
from kubeconfig_controller.src.kube import build_clients, load_kube_configuration
from kubeconfig_controller.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
LOGGER = logging.getLogger(__name__)

_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key|client-key-data)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"-----BEGIN ([A-Z ]+)-----.*?-----END \1-----",
            re.DOTALL,
        ),
        r"[REDACTED \1]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def _parse_bool_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def configure_logging() -> None:
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def run_with_leader_election(
    controller: ControllerManager,
    shutdown_event: threading.Event,
    leader_ready: threading.Event,
) -> None:
    """Campaign for the lease and run *controller* only while holding it."""
    from kubernetes.client import CoordinationV1Api

    from kubeconfig_controller.src.leader import LeaderElectionConfig, LeaseLeaderElector

    elector = LeaseLeaderElector(
        coordination_api=CoordinationV1Api(),
        config=LeaderElectionConfig.from_env(),
    )
    stop_join_timeout_seconds = env_int(
        "LEADER_ELECTION_CONTROLLER_STOP_TIMEOUT_SECONDS", 45, minimum=1
    )
    state_lock = threading.Lock()
    controller_thread: threading.Thread | None = None
    controller_stop = threading.Event()

    def on_started_leading() -> None:
        nonlocal controller_thread, controller_stop
        with state_lock:
            if shutdown_event.is_set():
                return
            if controller_thread is not None and controller_thread.is_alive():
                LOGGER.error("Previous controller run is still active; refusing to start another")
                shutdown_event.set()
                return

            controller_stop = threading.Event()
            leader_ready.set()

            def _run() -> None:
                try:
                    controller.run_forever(shutdown_event=controller_stop)
                except Exception:
                    LOGGER.exception("Controller crashed")
                    controller.failed.set()
                if controller.failed.is_set():
                    shutdown_event.set()

            controller_thread = threading.Thread(target=_run, name="controller", daemon=True)
            controller_thread.start()

    def on_stopped_leading() -> None:
        nonlocal controller_thread
        with state_lock:
            leader_ready.clear()
            controller_stop.set()
            controller.request_stop()
            if controller_thread is None:
                return
            controller_thread.join(timeout=stop_join_timeout_seconds)
            if controller_thread.is_alive():
                LOGGER.error(
                    "Controller did not stop within %ss after losing leadership; shutting down",
                    stop_join_timeout_seconds,
                )
                shutdown_event.set()
                return
            controller_thread = None

    elector.run(
        on_started_leading=on_started_leading,
        on_stopped_leading=on_stopped_leading,
        stop_event=shutdown_event,
    )
    on_stopped_leading()


def main() -> int:
    """Controller entrypoint: configure logging, load config, then run the controller manager."""
    configure_logging()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    try:
        config = load_config()
    except ConfigError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return 1
    LOGGER.info(
        "Loaded configuration: maxConcurrentReconciles=%d maxConcurrentReconcilesPerNamespace=%d",
        config.max_concurrent_reconciles,
        config.max_concurrent_reconciles_per_namespace,
    )

    load_kube_configuration()
    core_api, custom_api = build_clients()
    controller = build_controller_manager(core_api=core_api, custom_api=custom_api, config=config)

    leader_election_enabled = _parse_bool_env("LEADER_ELECTION_ENABLED", default=False)
    leader_ready = threading.Event() if leader_election_enabled else None
    try:
        health_port = env_int("HEALTH_PORT", 8081, minimum=0, maximum=65535)
    except ConfigError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return 1
    health_server = start_health_server(
        HealthChecks(
            ready=controller.ready,
            failed=controller.failed,
            leader=leader_ready,
            watch_status=lambda: {w.kind.value: w.synced.is_set() for w in controller.watchers},
        ),
        port=health_port,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        if leader_ready is not None:
            run_with_leader_election(controller, shutdown_event, leader_ready)
        else:
            controller.run_forever(shutdown_event=shutdown_event)
    except ConfigError as exc:
        LOGGER.error("Invalid leader election configuration: %s", exc)
        return 1
    finally:
        health_server.shutdown()

    if controller.failed.is_set():
        LOGGER.error("Controller stopped after an unrecoverable error")
        return 1
    LOGGER.info("Controller stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
