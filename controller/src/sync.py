from __future__ import annotations

from collections.abc import Hashable, Iterable
from dataclasses import dataclass, field
from typing import TypeVar

T = TypeVar("T", bound=Hashable)


@dataclass(frozen=True)
class Backend:
    ip: str
    port: int


@dataclass(frozen=True)
class SyncPlan:
    """Add/remove sets computed for one ConfigTarget.

    ``additions`` holds bare IPs to register at the target's configured port;
    ``removals`` holds parsed ``(ip, port)`` backends to deregister.
    """

    additions: frozenset[str] = field(default_factory=frozenset)
    removals: frozenset[Backend] = field(default_factory=frozenset)

    @property
    def is_empty(self) -> bool:
        return not self.additions and not self.removals


def difference(a: Iterable[T], b: Iterable[T]) -> set[T]:
    """Return the elements of *a* that are not in *b*."""
    return set(a) - set(b)


def intersection(a: Iterable[T], b: Iterable[T]) -> set[T]:
    """Return the elements present in both *a* and *b*."""
    return set(a) & set(b)


def format_ip_port(ip: str, port: int) -> str:
    return f"{ip}:{port}"


def parse_ip_port(value: str) -> Backend | None:
    """Split an ``ip:port`` string; return ``None`` for anything else."""
    ip, separator, raw_port = value.partition(":")
    if not separator or not ip or ":" in raw_port:
        return None
    try:
        port = int(raw_port)
    except ValueError:
        return None
    return Backend(ip=ip, port=port)


def compute_additions(desired_ips: Iterable[str], registered_ips: Iterable[str]) -> set[str]:
    """IPs to register: desired pod IPs missing from *registered_ips*."""
    return difference(desired_ips, registered_ips)


def compute_removals(
    desired_ips: Iterable[str],
    registered_ip_ports: Iterable[str],
    other_port_ip_ports: Iterable[str],
    port: int,
) -> set[str]:
    """``ip:port`` entries to deregister.

    Only backends registered at a port other than *port* and no longer desired
    at *port* are removed.  A registration at the configured port whose pod has
    gone away is left in place.
    """
    desired_ip_ports = {format_ip_port(ip, port) for ip in desired_ips}
    return intersection(difference(registered_ip_ports, desired_ip_ports), other_port_ip_ports)


def plan_target_sync(
    desired_ips: Iterable[str],
    registered_ips: Iterable[str],
    registered_ip_ports: Iterable[str],
    other_port_ip_ports: Iterable[str],
    port: int,
) -> SyncPlan:
    desired = set(desired_ips)
    removals: set[Backend] = set()
    for entry in compute_removals(desired, registered_ip_ports, other_port_ip_ports, port):
        backend = parse_ip_port(entry)
        if backend is not None:
            removals.add(backend)
    return SyncPlan(
        additions=frozenset(compute_additions(desired, registered_ips)),
        removals=frozenset(removals),
    )
