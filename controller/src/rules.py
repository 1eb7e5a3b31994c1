from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml


class RuleDocumentError(ValueError):
    """Raised when the rules document cannot be read or does not have the expected shape."""


@dataclass(frozen=True)
class BackendRef:
    namespace: str
    deployment: str
    port: int

    @property
    def deployment_key(self) -> str:
        return f"{self.namespace}/{self.deployment}"


@dataclass(frozen=True)
class PathRule:
    domain: str
    url: str
    backend: BackendRef


@dataclass(frozen=True)
class ListenerRule:
    port: int
    protocol: str
    rules: tuple[PathRule, ...]


@dataclass(frozen=True)
class LoadBalancerRule:
    load_balancer_id: str
    listeners: tuple[ListenerRule, ...]


@dataclass(frozen=True)
class RuleDocument:
    """Operator-declared mapping of load balancer listeners to backend deployments.

    Parsed once from YAML and never patched in place; a reload produces a new
    document that replaces the previous one wholesale.
    """

    load_balancers: tuple[LoadBalancerRule, ...] = ()


def _require_mapping(value: Any, where: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise RuleDocumentError(f"{where} must be a mapping, got {type(value).__name__}")
    return value


def _require_list(value: Any, where: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise RuleDocumentError(f"{where} must be a list, got {type(value).__name__}")
    return value


def _require_str(entry: dict[str, Any], key: str, where: str, *, allow_empty: bool = False) -> str:
    value = entry.get(key, "")
    if value is None:
        value = ""
    if not isinstance(value, str):
        raise RuleDocumentError(f"{where}.{key} must be a string")
    if not allow_empty and not value.strip():
        raise RuleDocumentError(f"{where}.{key} must be a non-empty string")
    return value


def _require_port(entry: dict[str, Any], key: str, where: str) -> int:
    value = entry.get(key)
    # bool is an int subclass; "port: true" is a typo, not port 1
    if isinstance(value, bool) or not isinstance(value, int):
        raise RuleDocumentError(f"{where}.{key} must be an integer")
    if not 1 <= value <= 65535:
        raise RuleDocumentError(f"{where}.{key} must be between 1 and 65535, got: {value}")
    return value


def _parse_backend(raw: Any, where: str) -> BackendRef:
    entry = _require_mapping(raw, where)
    return BackendRef(
        namespace=_require_str(entry, "namespace", where),
        deployment=_require_str(entry, "deployment", where),
        port=_require_port(entry, "port", where),
    )


def _parse_path_rule(raw: Any, where: str) -> PathRule:
    entry = _require_mapping(raw, where)
    return PathRule(
        domain=_require_str(entry, "domain", where, allow_empty=True),
        url=_require_str(entry, "url", where, allow_empty=True),
        backend=_parse_backend(entry.get("backend"), f"{where}.backend"),
    )


def _parse_listener(raw: Any, where: str) -> ListenerRule:
    entry = _require_mapping(raw, where)
    rules = _require_list(entry.get("rules"), f"{where}.rules")
    return ListenerRule(
        port=_require_port(entry, "port", where),
        protocol=_require_str(entry, "protocol", where),
        rules=tuple(
            _parse_path_rule(rule, f"{where}.rules[{index}]") for index, rule in enumerate(rules)
        ),
    )


def parse_rule_document(payload: Any) -> RuleDocument:
    """Build a :class:`RuleDocument` from the decoded YAML payload.

    The top level is a list of load balancer entries.  An empty document
    (``None``) is valid and declares no targets.
    """
    entries = _require_list(payload, "rules document")
    load_balancers: list[LoadBalancerRule] = []
    for index, raw in enumerate(entries):
        where = f"rules document[{index}]"
        entry = _require_mapping(raw, where)
        listeners = _require_list(entry.get("listeners"), f"{where}.listeners")
        load_balancers.append(
            LoadBalancerRule(
                load_balancer_id=_require_str(entry, "load_balancer_id", where),
                listeners=tuple(
                    _parse_listener(listener, f"{where}.listeners[{position}]")
                    for position, listener in enumerate(listeners)
                ),
            )
        )
    return RuleDocument(load_balancers=tuple(load_balancers))


def load_rule_document(path: Path | str) -> RuleDocument:
    """Read and parse the rules YAML file at *path*."""
    rules_path = Path(path)
    try:
        text = rules_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise RuleDocumentError(f"failed to read {rules_path}: {exc}") from exc

    try:
        payload = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise RuleDocumentError(f"failed to parse {rules_path}: {exc}") from exc

    return parse_rule_document(payload)
