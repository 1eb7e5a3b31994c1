from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Protocol

from controller.src.clb import ClbError, LiveListener
from controller.src.metrics import METRICS
from controller.src.rules import RuleDocument, RuleDocumentError
from controller.src.sync import Backend, format_ip_port

SUPPORTED_PROTOCOLS = frozenset({"HTTP", "HTTPS"})
DEFAULT_TTL_SECONDS = 60.0


class ListenerResolver(Protocol):
    def describe_listeners(self, load_balancer_id: str) -> list[LiveListener]: ...


@dataclass(frozen=True)
class ConfigTarget:
    """A declared backend bound to a live listener/rule pair."""

    load_balancer_id: str
    listener_id: str
    location_id: str
    port: int


def deployment_key(namespace: str, deployment: str) -> str:
    return f"{namespace}/{deployment}"


def composite_key(namespace: str, deployment: str, target: ConfigTarget) -> str:
    return "/".join(
        (namespace, deployment, target.load_balancer_id, target.listener_id, target.location_id)
    )


class ReadWriteLock:
    """Many concurrent readers or a single writer; writers wait for readers to drain.

    Waiting writers block new readers so a steady stream of lookups cannot
    starve a refresh swap.  Not reentrant: a reader must release before it
    acquires for writing.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class ConfigCache:
    """Cross-references the rules document with live CLB listener state.

    Two indices are derived on every refresh:

    ``_targets``
        ``namespace/deployment`` to the ordered list of :class:`ConfigTarget`
        (document order, then listener match order).
    ``_backends``
        Composite key ``namespace/deployment/lb/listener/location`` to the
        backends registered on that rule when the refresh ran.

    Refreshes are rate limited by ``ttl_seconds``.  Candidate indices are
    built without holding the lock and swapped in under the write lock, so
    readers never see a half-built index and never wait on a cloud API call.
    The refresh timestamp advances on every attempt, including failed ones,
    so a broken rules file or control plane is retried at most once per TTL.
    """

    def __init__(
        self,
        rules_loader: Callable[[], RuleDocument],
        resolver: ListenerResolver,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.rules_loader = rules_loader
        self.resolver = resolver
        self.ttl_seconds = ttl_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock

        self._lock = ReadWriteLock()
        self._refresh_lock = threading.Lock()
        self._targets: dict[str, list[ConfigTarget]] = {}
        self._backends: dict[str, list[Backend]] = {}
        self._last_refresh: float | None = None
        self._loaded = threading.Event()

    @property
    def loaded(self) -> threading.Event:
        """Set once a refresh has swapped in indices built from a parsed document."""
        return self._loaded

    def _stale_at(self, now: float) -> bool:
        return self._last_refresh is None or now - self._last_refresh >= self.ttl_seconds

    def is_stale(self) -> bool:
        with self._lock.read():
            return self._stale_at(self.clock())

    def last_refresh_age(self) -> float | None:
        with self._lock.read():
            if self._last_refresh is None:
                return None
            return self.clock() - self._last_refresh

    def snapshot_sizes(self) -> tuple[int, int]:
        """Return ``(deployment keys, backend keys)`` currently indexed."""
        with self._lock.read():
            return len(self._targets), len(self._backends)

    def _mark_attempt(self, now: float) -> None:
        with self._lock.write():
            self._last_refresh = now

    def refresh(self, force: bool = False) -> bool:
        """Rebuild both indices if the TTL has elapsed.

        Returns ``True`` when new indices were swapped in and ``False`` when
        the call was a no-op.  Raises :class:`RuleDocumentError` if the rules
        document cannot be loaded; the previous indices are kept.
        """
        with self._refresh_lock:
            now = self.clock()
            with self._lock.read():
                if not force and not self._stale_at(now):
                    return False

            try:
                document = self.rules_loader()
            except RuleDocumentError:
                self._mark_attempt(now)
                METRICS.config_refreshes_total.labels(result="document_error").inc()
                self.logger.exception("Failed to load rules document; keeping previous targets")
                raise

            targets, backends, failed = self._build_indices(document)

            with self._lock.write():
                self._targets = targets
                self._backends = backends
                # TTL counts from the end of the refresh, after the describe calls.
                self._last_refresh = self.clock()
            self._loaded.set()

        METRICS.config_targets.set(sum(len(entries) for entries in targets.values()))
        METRICS.config_backends.set(len(backends))
        METRICS.config_refreshes_total.labels(result="partial" if failed else "ok").inc()
        self.logger.info(
            "Refreshed load balancer config: %d deployment key(s), %d backend key(s), "
            "%d load balancer(s) skipped",
            len(targets),
            len(backends),
            failed,
        )
        return True

    def _live_listeners(self, load_balancer_id: str) -> list[LiveListener] | None:
        try:
            listeners = self.resolver.describe_listeners(load_balancer_id)
        except ClbError:
            self.logger.exception(
                "Failed to describe listeners for load balancer %s; skipping it this cycle",
                load_balancer_id,
            )
            return None
        return [
            listener
            for listener in listeners
            if listener.protocol.upper() in SUPPORTED_PROTOCOLS
        ]

    def _build_indices(
        self, document: RuleDocument
    ) -> tuple[dict[str, list[ConfigTarget]], dict[str, list[Backend]], int]:
        targets: dict[str, list[ConfigTarget]] = {}
        backends: dict[str, list[Backend]] = {}
        failed = 0

        for lb_rule in document.load_balancers:
            listeners = self._live_listeners(lb_rule.load_balancer_id)
            if listeners is None:
                failed += 1
                continue

            for declared_listener in lb_rule.listeners:
                protocol = declared_listener.protocol.lower()
                matched = False
                for listener in listeners:
                    if (
                        declared_listener.port != listener.port
                        or protocol != listener.protocol.lower()
                    ):
                        continue
                    matched = True
                    for path_rule in declared_listener.rules:
                        for live_rule in listener.rules:
                            if path_rule.domain != live_rule.domain or path_rule.url != live_rule.url:
                                continue

                            backend = path_rule.backend
                            target = ConfigTarget(
                                load_balancer_id=lb_rule.load_balancer_id,
                                listener_id=listener.listener_id,
                                location_id=live_rule.location_id,
                                port=backend.port,
                            )
                            targets.setdefault(backend.deployment_key, []).append(target)

                            registered = [
                                Backend(ip=live.private_ip_addresses[0], port=live.port)
                                for live in live_rule.targets
                                if live.private_ip_addresses
                            ]
                            if registered:
                                key = composite_key(backend.namespace, backend.deployment, target)
                                backends[key] = registered
                if not matched:
                    self.logger.debug(
                        "No live %s listener on port %d for load balancer %s",
                        declared_listener.protocol,
                        declared_listener.port,
                        lb_rule.load_balancer_id,
                    )

        return targets, backends, failed

    def get_targets(self, key: str) -> list[ConfigTarget]:
        """Return the ConfigTargets for ``namespace/deployment``.

        A stale cache is refreshed first.  A failed refresh is logged and the
        previous targets are returned.
        """
        if self.is_stale():
            try:
                self.refresh()
            except RuleDocumentError:
                self.logger.warning("Serving stale load balancer targets after failed refresh")
        with self._lock.read():
            return list(self._targets.get(key, ()))

    def _backends_for(self, key: str) -> list[Backend]:
        with self._lock.read():
            return list(self._backends.get(key, ()))

    def get_backend_ips(self, key: str, port: int | None = None) -> set[str]:
        """Return registered IPs for *key*, optionally only those registered at *port*."""
        return {
            backend.ip
            for backend in self._backends_for(key)
            if port is None or backend.port == port
        }

    def get_backend_ip_ports(self, key: str) -> set[str]:
        return {format_ip_port(backend.ip, backend.port) for backend in self._backends_for(key)}

    def get_backends_at_other_ports(self, key: str, exclude_port: int) -> set[str]:
        return {
            format_ip_port(backend.ip, backend.port)
            for backend in self._backends_for(key)
            if backend.port != exclude_port
        }
