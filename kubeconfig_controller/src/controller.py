from __future__ import annotations

import functools
import logging
import random
import threading
import time
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api, CustomObjectsApi

from kubeconfig_controller.src.admission import NamespaceAdmission
from kubeconfig_controller.src.config import ControllerManagerConfig
from kubeconfig_controller.src.constants import SHOOT_API_VERSION, SHOOT_KIND
from kubeconfig_controller.src.errors import (
    AdmissionContractError,
    RetryableError,
    ValidationError,
)
from kubeconfig_controller.src.kube import (
    GARDENER_CORE_GROUP,
    SHOOT_PLURAL,
    SHOOT_STATE_PLURAL,
    SHOOT_STATE_VERSION,
    SHOOT_VERSION,
    KubeStore,
)
from kubeconfig_controller.src.metrics import METRICS
from kubeconfig_controller.src.predicates import WatchedKind, should_reconcile
from kubeconfig_controller.src.reconciler import (
    ReconcileKey,
    ShootReconciler,
    requests_for_resource_quota,
)
from kubeconfig_controller.src.workqueue import RetryBackoff, WorkQueue

LOGGER = logging.getLogger(__name__)

EventHandler = Callable[[WatchedKind, str, "dict[str, Any] | None", "dict[str, Any] | None"], None]
ObjectKey = tuple[str, str]


def _object_key(obj: dict[str, Any]) -> ObjectKey | None:
    metadata = obj.get("metadata") or {}
    name = metadata.get("name")
    if not name:
        return None
    return metadata.get("namespace") or "", name


def _resource_version(obj: dict[str, Any] | None) -> str | None:
    return ((obj or {}).get("metadata") or {}).get("resourceVersion")


class ResourceWatcher:
    """List-then-watch loop for one kind, delivering ``(old, new)`` pairs.

    The Kubernetes watch API only sends the new object on ``MODIFIED``, so the
    watcher keeps the last seen object per ``(namespace, name)`` and hands the
    previous version to the handler alongside the new one.

    1. Lists all objects (retrying with jittered exponential backoff) and
       emits ``ADDED`` for each, then sets :attr:`synced`.
    2. Watches from the list's ``resourceVersion``.
    3. On ``410 Gone`` re-lists and emits the difference against the cache,
       so changes missed while disconnected are not lost.
    4. On ``401``/``403`` stops for good; RBAC problems do not heal by retrying.
    5. On other errors backs off with jitter, capped at 30 s.
    """

    def __init__(
        self,
        kind: WatchedKind,
        list_fn: Callable[..., Any],
        handler: EventHandler,
        to_dict: Callable[[Any], Any],
        logger: logging.Logger | None = None,
    ) -> None:
        self.kind = kind
        self.list_fn = list_fn
        self.handler = handler
        self.to_dict = to_dict
        self.logger = logger or LOGGER
        self.synced = threading.Event()
        self.denied = threading.Event()
        self._cache: dict[ObjectKey, dict[str, Any]] = {}
        self._cache_lock = threading.Lock()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def keys(self) -> list[ObjectKey]:
        with self._cache_lock:
            return list(self._cache)

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _emit(self, event_type: str, old: dict[str, Any] | None, new: dict[str, Any] | None) -> None:
        try:
            self.handler(self.kind, event_type, old, new)
        except Exception:
            self.logger.exception("Failed to handle %s %s event", self.kind.value, event_type)

    def _sync_from_list(self, listing: Any) -> str | None:
        """Replace the cache with a full listing, emitting events for every difference."""
        payload = self.to_dict(listing) or {}
        items = [item for item in payload.get("items") or [] if _object_key(item) is not None]

        events: list[tuple[str, dict[str, Any] | None, dict[str, Any] | None]] = []
        with self._cache_lock:
            previous = self._cache
            current: dict[ObjectKey, dict[str, Any]] = {}
            for item in items:
                key = _object_key(item)
                assert key is not None
                current[key] = item
                old = previous.get(key)
                if old is None:
                    events.append(("ADDED", None, item))
                elif _resource_version(old) != _resource_version(item):
                    events.append(("MODIFIED", old, item))
            for key, old in previous.items():
                if key not in current:
                    events.append(("DELETED", old, None))
            self._cache = current

        for event_type, old, new in events:
            self._emit(event_type, old, new)
        return (payload.get("metadata") or {}).get("resourceVersion")

    def handle_event(self, event: dict[str, Any]) -> str | None:
        """Apply one watch event to the cache and forward it; returns its resourceVersion."""
        event_type = str(event.get("type", ""))
        obj = event.get("raw_object")
        if not isinstance(obj, dict):
            obj = self.to_dict(event.get("object"))
        if not isinstance(obj, dict):
            return None

        resource_version = _resource_version(obj)
        if event_type == "BOOKMARK":
            return resource_version

        key = _object_key(obj)
        if key is None:
            return resource_version

        with self._cache_lock:
            if event_type == "DELETED":
                old = self._cache.pop(key, None)
            else:
                old = self._cache.get(key)
                self._cache[key] = obj

        if event_type == "DELETED":
            self._emit("DELETED", old or obj, None)
        elif event_type in {"ADDED", "MODIFIED"}:
            self._emit("MODIFIED" if old is not None else "ADDED", old, obj)
        return resource_version

    def _access_denied(self, exc: ApiException, phase: str) -> bool:
        if exc.status not in {401, 403}:
            return False
        self.logger.error(
            "Kubernetes API access denied during %s of %s (status=%s). "
            "Check controller RBAC and service account permissions.",
            phase,
            self.kind.value,
            exc.status,
        )
        METRICS.watch_errors_total.labels(kind=self.kind.value).inc()
        self.denied.set()
        return True

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        self.synced.clear()
        self.denied.clear()
        # A fresh run starts from an empty cache so the initial list emits ADDED for everything.
        with self._cache_lock:
            self._cache = {}

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self._sync_from_list(self.list_fn())
                self.synced.set()
                self.logger.info(
                    "Starting %s watch from resourceVersion %s", self.kind.value, resource_version
                )
                break
            except ApiException as exc:
                if self._access_denied(exc, "initial list"):
                    return
                self.logger.exception("Initial %s list failed", self.kind.value)
                METRICS.watch_errors_total.labels(kind=self.kind.value).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", self.kind.value)
                METRICS.watch_errors_total.labels(kind=self.kind.value).inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        backoff_seconds = 1
        watch_stream_count = 0
        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(kind=self.kind.value).inc()
                watch_stream_count += 1
                if resource_version is None:
                    resource_version = self._sync_from_list(self.list_fn())

                stream = watcher.stream(
                    self.list_fn,
                    resource_version=resource_version,
                    timeout_seconds=30,
                )
                for event in stream:
                    if self._should_stop(stop):
                        break
                    resource_version = self.handle_event(event) or resource_version

                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone: our resourceVersion was compacted away; re-list and diff.
                if exc.status == 410:
                    self.logger.warning(
                        "%s watch resource version expired, re-listing", self.kind.value
                    )
                    try:
                        resource_version = self._sync_from_list(self.list_fn())
                    except ApiException as relist_exc:
                        if self._access_denied(relist_exc, "410 re-list"):
                            return
                        self.logger.exception("Failed to re-list %s after 410", self.kind.value)
                        METRICS.watch_errors_total.labels(kind=self.kind.value).inc()
                        resource_version = None
                    continue

                if self._access_denied(exc, "watch"):
                    return

                self.logger.exception("Kubernetes API %s watch error", self.kind.value)
                METRICS.watch_errors_total.labels(kind=self.kind.value).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected %s watch error", self.kind.value)
                METRICS.watch_errors_total.labels(kind=self.kind.value).inc()
                resource_version = None
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None


class ControllerManager:
    """Runs the watches, the work queue and the reconcile worker pool.

    Watch events pass through the change-detection predicates, are mapped to
    shoot keys and land in a deduplicating work queue.  A fixed pool of
    ``max_concurrent_reconciles`` workers drains the queue; each worker runs
    one reconcile at a time.  Results are handled by error class:

    - success with ``requeue_after``: requeued after that delay,
    - :class:`ValidationError`: logged, left to the periodic resync,
    - any other exception: requeued with per-key exponential backoff,
    - :class:`AdmissionContractError`: crashes the worker and stops the
      controller.
    """

    def __init__(
        self,
        store: KubeStore,
        config: ControllerManagerConfig,
        reconciler: ShootReconciler | None = None,
        queue: WorkQueue[ReconcileKey] | None = None,
        backoff: RetryBackoff[ReconcileKey] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.config = config
        self.logger = logger or LOGGER
        self.admission = NamespaceAdmission(
            config.max_concurrent_reconciles_per_namespace,
            jitter_min_seconds=config.admission_jitter_min_seconds,
            jitter_max_seconds=config.admission_jitter_max_seconds,
        )
        self.reconciler = reconciler or ShootReconciler(
            store=store, admission=self.admission, config=config
        )
        self.queue: WorkQueue[ReconcileKey] = queue or WorkQueue()
        self.backoff: RetryBackoff[ReconcileKey] = backoff or RetryBackoff()
        self.watchers: list[ResourceWatcher] = []
        self.ready = threading.Event()
        self.failed = threading.Event()
        self._external_stop = threading.Event()

    def build_watchers(self, core_api: CoreV1Api, custom_api: CustomObjectsApi) -> None:
        """Create cluster-wide watchers for shoots, shoot states, ConfigMaps and ResourceQuotas."""
        list_functions = {
            WatchedKind.SHOOT: functools.partial(
                custom_api.list_cluster_custom_object,
                GARDENER_CORE_GROUP,
                SHOOT_VERSION,
                SHOOT_PLURAL,
            ),
            WatchedKind.SHOOT_STATE: functools.partial(
                custom_api.list_cluster_custom_object,
                GARDENER_CORE_GROUP,
                SHOOT_STATE_VERSION,
                SHOOT_STATE_PLURAL,
            ),
            WatchedKind.CONFIG_MAP: core_api.list_config_map_for_all_namespaces,
            WatchedKind.RESOURCE_QUOTA: core_api.list_resource_quota_for_all_namespaces,
        }
        self.watchers = [
            ResourceWatcher(
                kind=kind,
                list_fn=list_fn,
                handler=self.handle_event,
                to_dict=self.store.to_dict,
            )
            for kind, list_fn in list_functions.items()
        ]

    def _watcher(self, kind: WatchedKind) -> ResourceWatcher | None:
        return next((w for w in self.watchers if w.kind is kind), None)

    def keys_for_event(self, kind: WatchedKind, obj: dict[str, Any]) -> list[ReconcileKey]:
        """Translate a watched object into the shoot keys it affects."""
        metadata = obj.get("metadata") or {}
        namespace = metadata.get("namespace")
        name = metadata.get("name")
        if not namespace or not name:
            return []

        if kind in {WatchedKind.SHOOT, WatchedKind.SHOOT_STATE}:
            return [ReconcileKey(namespace=namespace, name=name)]

        if kind is WatchedKind.CONFIG_MAP:
            return [
                ReconcileKey(namespace=namespace, name=owner["name"])
                for owner in metadata.get("ownerReferences") or []
                if owner.get("controller")
                and owner.get("kind") == SHOOT_KIND
                and owner.get("apiVersion", "").split("/")[0] == SHOOT_API_VERSION.split("/")[0]
                and owner.get("name")
            ]

        return requests_for_resource_quota(self.store, namespace)

    def handle_event(
        self,
        kind: WatchedKind,
        event_type: str,
        old: dict[str, Any] | None,
        new: dict[str, Any] | None,
    ) -> None:
        if not should_reconcile(kind, event_type, old, new):
            METRICS.filtered_events_total.labels(kind=kind.value).inc()
            return

        obj = new if new is not None else old
        if obj is None:
            return
        for key in self.keys_for_event(kind, obj):
            self.queue.add(key)

    def resync(self) -> int:
        """Enqueue every known shoot; returns the number of keys added."""
        shoot_watcher = self._watcher(WatchedKind.SHOOT)
        if shoot_watcher is None:
            return 0
        keys = [
            ReconcileKey(namespace=namespace, name=name)
            for namespace, name in shoot_watcher.keys()
        ]
        for key in keys:
            self.queue.add(key)
        self.logger.info("Resync enqueued %d shoot(s)", len(keys))
        return len(keys)

    def process(self, key: ReconcileKey) -> None:
        """Run one reconcile for *key* and schedule follow-up work based on its outcome."""
        started = time.monotonic()
        try:
            result = self.reconciler.reconcile(key)
        except ValidationError as exc:
            self.backoff.forget(key)
            METRICS.reconcile_errors_total.labels(error="validation").inc()
            self.logger.error(
                "Reconcile of shoot %s failed validation, not retrying until inputs change: %s",
                key,
                exc,
            )
            return
        except AdmissionContractError:
            raise
        except Exception as exc:
            delay, attempt = self.backoff.next_delay(key)
            error_class = "retryable" if isinstance(exc, RetryableError) else "unexpected"
            if isinstance(exc, ApiException):
                error_class = "api"
            METRICS.reconcile_errors_total.labels(error=error_class).inc()
            self.logger.log(
                logging.INFO if attempt == 1 else logging.WARNING,
                "Reconcile of shoot %s failed (attempt %d), retrying in %.1fs: %s",
                key,
                attempt,
                delay,
                exc,
            )
            self.queue.add_after(key, delay)
            return
        finally:
            METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)

        self.backoff.forget(key)
        METRICS.reconcile_total.labels(outcome=result.outcome).inc()
        if result.requeue_after is not None:
            self.queue.add_after(key, result.requeue_after)

    def process_next_item(self) -> bool:
        """Take one key off the queue and process it; returns False once the queue shuts down."""
        key = self.queue.get()
        if key is None:
            return False
        try:
            self.process(key)
        finally:
            self.queue.done(key)
        return True

    def _run_worker(self, index: int, stop: threading.Event) -> None:
        try:
            while self.process_next_item():
                pass
        except Exception:
            self.logger.exception("Reconcile worker %d crashed; stopping controller", index)
            self.failed.set()
            stop.set()

    def request_stop(self) -> None:
        """Stop watches and stop handing out work; in-flight reconciles finish."""
        self._external_stop.set()
        for watcher in self.watchers:
            watcher.request_stop()
        self.queue.shut_down()

    def _should_stop(self, stop: threading.Event) -> bool:
        return stop.is_set() or self._external_stop.is_set()

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Start watches and workers and block until shutdown.

        Workers start only after every watch completed its initial list, so
        the first reconciles see a complete picture.  On shutdown no new keys
        are handed out and in-flight reconciles get ``request_timeout_seconds``
        per worker to drain.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        if self.queue.shutting_down:
            self.queue = WorkQueue()

        watcher_threads = [
            threading.Thread(
                target=watcher.run_forever,
                kwargs={"shutdown_event": stop},
                name=f"watch-{watcher.kind.value}",
                daemon=True,
            )
            for watcher in self.watchers
        ]
        for thread in watcher_threads:
            thread.start()

        while not self._should_stop(stop) and not all(w.synced.is_set() for w in self.watchers):
            if any(w.denied.is_set() for w in self.watchers):
                self.failed.set()
                break
            stop.wait(timeout=0.5)

        workers: list[threading.Thread] = []
        if not self._should_stop(stop) and not self.failed.is_set():
            self.ready.set()
            self.logger.info(
                "Caches synced; starting %d reconcile worker(s)",
                self.config.max_concurrent_reconciles,
            )
            workers = [
                threading.Thread(
                    target=self._run_worker,
                    args=(index, stop),
                    name=f"reconcile-{index}",
                    daemon=True,
                )
                for index in range(self.config.max_concurrent_reconciles)
            ]
            for worker in workers:
                worker.start()

            next_resync = time.monotonic() + self.config.resync_period_seconds
            while not self._should_stop(stop):
                if any(w.denied.is_set() for w in self.watchers):
                    self.logger.error("A watch was denied by the API server; stopping controller")
                    self.failed.set()
                    break
                if time.monotonic() >= next_resync:
                    self.resync()
                    next_resync = time.monotonic() + self.config.resync_period_seconds
                stop.wait(timeout=min(1.0, self.config.resync_period_seconds))

        self.ready.clear()
        self.request_stop()
        for worker in workers:
            worker.join(timeout=self.config.request_timeout_seconds)
            if worker.is_alive():
                self.logger.warning("Reconcile worker %s did not finish before shutdown", worker.name)
        for thread in watcher_threads:
            thread.join(timeout=self.config.request_timeout_seconds)
        self.logger.info("Controller manager stopped")


def build_controller_manager(
    core_api: CoreV1Api,
    custom_api: CustomObjectsApi,
    config: ControllerManagerConfig,
) -> ControllerManager:
    """Wire store, reconciler and watches into a ready-to-run :class:`ControllerManager`."""
    store = KubeStore(
        core_api=core_api,
        custom_api=custom_api,
        request_timeout_seconds=config.request_timeout_seconds,
        identity_timeout_seconds=config.identity_timeout_seconds,
    )
    manager = ControllerManager(store=store, config=config)
    manager.build_watchers(core_api=core_api, custom_api=custom_api)
    return manager
