from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, AppsV1Api, CoreV1Api
from urllib3.exceptions import HTTPError

from controller.src.cache import ConfigCache, ConfigTarget, composite_key, deployment_key
from controller.src.clb import BatchTarget, ClbClient, ClbError
from controller.src.kube import list_deployment_pod_ips, resolve_deployment_name
from controller.src.metrics import METRICS
from controller.src.rules import load_rule_document
from controller.src.sync import plan_target_sync

POD_EVENT_TYPES = frozenset({"ADDED", "MODIFIED", "DELETED"})


class WatchState(str, Enum):
    CONNECTING = "connecting"
    WATCHING = "watching"
    BACKOFF = "backoff"
    DRAINING = "draining"


@dataclass(frozen=True)
class SyncResult:
    """Outcome of reconciling one deployment against its load balancer targets.

    ``registered`` and ``deregistered`` count backends submitted in batch
    calls that succeeded; ``failed`` counts failed calls (pod listing or a
    batch register/deregister).
    """

    namespace: str
    deployment: str
    targets: int
    registered: int
    deregistered: int
    failed: int


class PodLoadBalancerSync:
    """Watches pods cluster-wide and keeps CLB backends in line with Deployment pod IPs.

    Every pod event is resolved to its owning Deployment and reconciled
    inline before the next event is read, so two reconciliations for the
    same backend group never overlap.  Reconciliation is level-triggered:
    it re-lists the Deployment's pod IPs, compares them with the backends
    recorded by the :class:`ConfigCache`, and issues at most one register
    and one deregister batch per ConfigTarget.  Failed batch calls are not
    retried; the next event for the deployment (or the next cache refresh)
    converges again.

    The watch loop is a small state machine (:class:`WatchState`):
    ``CONNECTING`` opens a stream bounded by ``watch_timeout_seconds``,
    ``WATCHING`` consumes it, ``BACKOFF`` waits a fixed
    ``retry_delay_seconds`` after the stream ends or fails, and
    ``DRAINING`` is entered once a stop is requested.  There is no retry
    ceiling and no exponential growth.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        cache: ConfigCache,
        clb: ClbClient,
        watch_timeout_seconds: int = 3600,
        retry_delay_seconds: float = 5,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.apps_api = apps_api
        self.cache = cache
        self.clb = clb
        self.watch_timeout_seconds = watch_timeout_seconds
        self.retry_delay_seconds = retry_delay_seconds
        self.logger = logger or logging.getLogger(__name__)

        self.state = WatchState.CONNECTING
        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _set_state(self, state: WatchState) -> None:
        if state is not self.state:
            self.logger.debug("Watch loop %s -> %s", self.state.value, state.value)
        self.state = state

    def _submit(
        self,
        operation: str,
        call: Any,
        target: ConfigTarget,
        entries: list[BatchTarget],
    ) -> bool:
        try:
            call(target.load_balancer_id, entries)
        except ClbError:
            METRICS.errors_total.labels(operation=operation).inc()
            self.logger.exception(
                "Failed to %s %d target(s) on load balancer %s",
                operation,
                len(entries),
                target.load_balancer_id,
            )
            return False
        return True

    def _sync_target(
        self,
        namespace: str,
        deployment: str,
        target: ConfigTarget,
        desired_ips: list[str],
        event_type: str,
        pod_name: str,
    ) -> tuple[int, int, int]:
        """Reconcile one ConfigTarget; return ``(registered, deregistered, failed)``."""
        backend_key = composite_key(namespace, deployment, target)
        plan = plan_target_sync(
            desired_ips=desired_ips,
            # Only registrations at the configured port count as present; an IP
            # still registered at an old port must be re-added at the new one.
            registered_ips=self.cache.get_backend_ips(backend_key, port=target.port),
            registered_ip_ports=self.cache.get_backend_ip_ports(backend_key),
            other_port_ip_ports=self.cache.get_backends_at_other_ports(backend_key, target.port),
            port=target.port,
        )
        registered = deregistered = failed = 0

        if plan.additions:
            new_ips = sorted(plan.additions)
            self.logger.info(
                "%s/%s %s pod=%s lb=%s adding backend(s): %s",
                namespace,
                deployment,
                event_type,
                pod_name,
                target.load_balancer_id,
                ", ".join(f"{ip}:{target.port}" for ip in new_ips),
            )
            entries = [
                BatchTarget(
                    listener_id=target.listener_id,
                    location_id=target.location_id,
                    port=target.port,
                    ip=ip,
                )
                for ip in new_ips
            ]
            if self._submit("register", self.clb.batch_register_targets, target, entries):
                registered = len(entries)
                METRICS.registered_targets_total.labels(
                    load_balancer=target.load_balancer_id
                ).inc(registered)
            else:
                failed += 1

        if plan.removals:
            stale = sorted(plan.removals, key=lambda backend: (backend.ip, backend.port))
            self.logger.info(
                "%s/%s %s pod=%s lb=%s removing backend(s): %s",
                namespace,
                deployment,
                event_type,
                pod_name,
                target.load_balancer_id,
                ", ".join(f"{backend.ip}:{backend.port}" for backend in stale),
            )
            entries = [
                BatchTarget(
                    listener_id=target.listener_id,
                    location_id=target.location_id,
                    port=backend.port,
                    ip=backend.ip,
                )
                for backend in stale
            ]
            if self._submit("deregister", self.clb.batch_deregister_targets, target, entries):
                deregistered = len(entries)
                METRICS.deregistered_targets_total.labels(
                    load_balancer=target.load_balancer_id
                ).inc(deregistered)
            else:
                failed += 1

        return registered, deregistered, failed

    def sync_deployment(
        self,
        namespace: str,
        deployment: str,
        event_type: str = "",
        pod_name: str = "",
    ) -> SyncResult:
        """Bring every ConfigTarget of ``namespace/deployment`` in line with its pod IPs."""
        targets = self.cache.get_targets(deployment_key(namespace, deployment))
        if not targets:
            self.logger.debug("No load balancer targets declared for %s/%s", namespace, deployment)
            return SyncResult(namespace, deployment, targets=0, registered=0, deregistered=0, failed=0)

        try:
            desired_ips = list_deployment_pod_ips(
                core_api=self.core_api,
                apps_api=self.apps_api,
                namespace=namespace,
                deployment_name=deployment,
            )
        except (ApiException, HTTPError):
            METRICS.errors_total.labels(operation="list_pod_ips").inc()
            self.logger.exception("Failed to list pod IPs for deployment %s/%s", namespace, deployment)
            return SyncResult(
                namespace, deployment, targets=len(targets), registered=0, deregistered=0, failed=1
            )

        registered = deregistered = failed = 0
        for target in targets:
            added, removed, errors = self._sync_target(
                namespace=namespace,
                deployment=deployment,
                target=target,
                desired_ips=desired_ips,
                event_type=event_type,
                pod_name=pod_name,
            )
            registered += added
            deregistered += removed
            failed += errors

        return SyncResult(
            namespace=namespace,
            deployment=deployment,
            targets=len(targets),
            registered=registered,
            deregistered=deregistered,
            failed=failed,
        )

    def handle_pod_event(self, event_type: str, pod: Any) -> SyncResult | None:
        """Process a single pod watch event.

        Returns ``None`` when the event was skipped: unknown event type,
        missing metadata, a failed ReplicaSet lookup, or a pod that is not
        owned by a Deployment.
        """
        if event_type not in POD_EVENT_TYPES:
            METRICS.skipped_events_total.labels(reason="event_type").inc()
            return None

        metadata = getattr(pod, "metadata", None)
        namespace = getattr(metadata, "namespace", None)
        pod_name = getattr(metadata, "name", None)
        if not namespace or not pod_name:
            METRICS.skipped_events_total.labels(reason="malformed").inc()
            self.logger.warning("Skipping %s pod event without namespace or name", event_type)
            return None

        METRICS.events_total.labels(event_type=event_type).inc()

        try:
            deployment = resolve_deployment_name(self.apps_api, pod)
        except ApiException as exc:
            METRICS.errors_total.labels(operation="resolve_deployment").inc()
            self.logger.error(
                "Failed to resolve deployment for pod %s/%s (status=%s): %s",
                namespace,
                pod_name,
                exc.status,
                exc.reason,
            )
            return None
        except HTTPError as exc:
            METRICS.errors_total.labels(operation="resolve_deployment").inc()
            self.logger.error(
                "Failed to resolve deployment for pod %s/%s: %s",
                namespace,
                pod_name,
                exc,
            )
            return None

        if not deployment:
            METRICS.skipped_events_total.labels(reason="no_deployment").inc()
            return None

        return self.sync_deployment(
            namespace=namespace,
            deployment=deployment,
            event_type=event_type,
            pod_name=pod_name,
        )

    def _wait_backoff(self, stop: threading.Event) -> None:
        self._set_state(WatchState.BACKOFF)
        stop.wait(timeout=self.retry_delay_seconds)

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Main control loop: watch pods cluster-wide until shutdown.

        1. Opens a watch on ``list_pod_for_all_namespaces`` bounded by
           ``watch_timeout_seconds``.
        2. Reconciles each event inline; events without an object are skipped.
        3. When the stream ends (server close or lifetime expiry) or raises,
           waits ``retry_delay_seconds`` and reconnects.  Every error class,
           including ``401``/``403``, is retried with the same fixed delay.
        4. Stops once ``shutdown_event`` is set or :meth:`request_stop` is
           called; the event being reconciled is finished first.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        self._set_state(WatchState.CONNECTING)

        watch_stream_count = 0

        while not self._should_stop(stop):
            self._set_state(WatchState.CONNECTING)
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.core_api.list_pod_for_all_namespaces,
                    timeout_seconds=self.watch_timeout_seconds,
                )
                self._set_state(WatchState.WATCHING)
                self.ready.set()
                self.logger.info("Watching pod events across all namespaces")

                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if obj is None:
                        continue

                    event_type = str(event.get("type", ""))
                    self.handle_pod_event(event_type=event_type, pod=obj)
                else:
                    self.logger.warning("Pod watch stream closed; reconnecting")
            except ApiException as exc:
                self.logger.exception("Kubernetes API watch error (status=%s)", exc.status)
                METRICS.watch_errors_total.inc()
            except Exception:
                self.logger.exception("Unexpected watch error")
                METRICS.watch_errors_total.inc()
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

            if self._should_stop(stop):
                break
            self._wait_backoff(stop)

        self._set_state(WatchState.DRAINING)
        self.ready.clear()
        self.logger.info("Pod watch loop stopped")


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def build_config_cache_from_env(resolver: ClbClient) -> ConfigCache:
    """Construct a :class:`ConfigCache` from environment variables.

    Environment variables (with defaults):
        ``RULES_FILE``: path to the rules YAML document (``rules.yaml``).
        ``CONFIG_TTL_SECONDS``: minimum seconds between refreshes (``60``).
    """
    rules_file = os.getenv("RULES_FILE", "rules.yaml")
    if not rules_file.strip():
        raise ValueError("RULES_FILE must be a non-empty string")

    ttl_seconds = env_int("CONFIG_TTL_SECONDS", 60, minimum=1)

    return ConfigCache(
        rules_loader=partial(load_rule_document, rules_file),
        resolver=resolver,
        ttl_seconds=ttl_seconds,
    )


def build_controller_from_env(
    core_api: CoreV1Api,
    apps_api: AppsV1Api,
    cache: ConfigCache,
    clb: ClbClient,
) -> PodLoadBalancerSync:
    """Construct a :class:`PodLoadBalancerSync` from environment variables.

    Environment variables (with defaults):
        ``WATCH_TIMEOUT_SECONDS``: lifetime of one watch stream (``3600``).
        ``WATCH_RETRY_DELAY_SECONDS``: fixed delay before reconnecting (``5``).
    """
    watch_timeout_seconds = env_int("WATCH_TIMEOUT_SECONDS", 3600, minimum=1)
    retry_delay_seconds = env_int("WATCH_RETRY_DELAY_SECONDS", 5, minimum=0)

    return PodLoadBalancerSync(
        core_api=core_api,
        apps_api=apps_api,
        cache=cache,
        clb=clb,
        watch_timeout_seconds=watch_timeout_seconds,
        retry_delay_seconds=retry_delay_seconds,
    )
